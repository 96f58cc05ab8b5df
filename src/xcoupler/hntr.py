from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Optional, Tuple, Union

import numpy as np
import xarray as xr

from .errors import DimensionMismatchError, MalformedGridError, check_finite
from .sparse import DEFAULT_TOLERANCE, SparseMatrixCOO, check_row_sums

logger = logging.getLogger(__name__)

# Missing-data value written into B cells with zero integrated weight
DATMIS = -1e30

# Radius of the Earth (m) used for cell areas
EQ_RAD = 6.371e6

# Minutes of arc per radian
_MIN_TO_RAD = 2.0 * np.pi / (360.0 * 60.0)


def _sine_edges(jm: int, dlat: float) -> np.ndarray:
    """
    Sine of latitude of the northern edge of every row, plus the south pole.

    Returns an array of length ``jm + 1``; element ``j`` is the northern
    edge of row ``j - 1`` (element 0 is the south pole). The outermost rows
    absorb whatever the fixed spacing leaves to the poles.
    """
    sin = np.empty(jm + 1)
    fjeq = 0.5 * (1 + jm)
    j = np.arange(1, jm)
    sin[1:jm] = np.sin((j + 0.5 - fjeq) * dlat * _MIN_TO_RAD)
    sin[0] = -1.0
    sin[jm] = 1.0
    return sin


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


@dataclasses.dataclass(frozen=True)
class HntrGrid:
    """
    Structured global latitude-longitude grid.

    Attributes
    ----------
    im : int
        Number of cells in the east-west direction.
    jm : int
        Number of cells in the north-south direction.
    offi : float
        Number (fraction) of cells in the east-west direction from the
        International Date Line (180) to the western edge of cell ``i = 0``.
    dlat : float
        Minutes of latitude of the non-polar cells. Defaults to
        ``180 * 60 / jm`` (equal spacing from pole to pole).
    radius : float
        Sphere radius used for `dxyp`.

    Raises
    ------
    MalformedGridError
        If dimensions or spacing are non-positive, or the latitude edges
        are not strictly increasing (rows overrun the poles).
    """

    im: int
    jm: int
    offi: float = 0.0
    dlat: Optional[float] = None
    radius: float = EQ_RAD
    _dxyp: np.ndarray = dataclasses.field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if int(self.im) != self.im or int(self.jm) != self.jm:
            raise MalformedGridError(f"im, jm must be integers, got ({self.im}, {self.jm})")
        object.__setattr__(self, "im", int(self.im))
        object.__setattr__(self, "jm", int(self.jm))
        if self.im <= 0 or self.jm <= 0:
            raise MalformedGridError(f"im, jm must be positive, got ({self.im}, {self.jm})")
        if self.dlat is None:
            object.__setattr__(self, "dlat", 180.0 * 60.0 / self.jm)
        if not (np.isfinite(self.dlat) and self.dlat > 0):
            raise MalformedGridError(f"dlat must be positive, got {self.dlat}")
        if not np.isfinite(self.offi):
            raise MalformedGridError(f"offi must be finite, got {self.offi}")
        if not (np.isfinite(self.radius) and self.radius > 0):
            raise MalformedGridError(f"radius must be positive, got {self.radius}")

        sin = _sine_edges(self.jm, self.dlat)
        if np.any(np.diff(sin) <= 0):
            raise MalformedGridError(
                f"Latitude edges not monotonic: {self.jm} rows of {self.dlat} "
                "minutes overrun the poles"
            )
        dlon = 2.0 * np.pi / self.im
        object.__setattr__(
            self, "_dxyp", _readonly(dlon * np.diff(sin) * self.radius**2)
        )

    @property
    def size(self) -> int:
        return self.im * self.jm

    @property
    def shape(self) -> Tuple[int, int]:
        """Natural ``(jm, im)`` shape of a field on this grid."""
        return (self.jm, self.im)

    def dxyp(self, j: Optional[int] = None) -> Union[float, np.ndarray]:
        """Area of a cell in row `j` (or the vector of all rows)."""
        if j is None:
            return self._dxyp
        return float(self._dxyp[j])

    def cell_areas(self) -> np.ndarray:
        """Area of every cell as a flat vector of length `size`."""
        return np.repeat(self._dxyp, self.im)

    @property
    def sin_edges(self) -> np.ndarray:
        return _readonly(_sine_edges(self.jm, self.dlat))

    @property
    def lat_edges(self) -> np.ndarray:
        """Latitude (degrees) of the ``jm + 1`` row boundaries, south to north."""
        return np.degrees(np.arcsin(_sine_edges(self.jm, self.dlat)))

    @property
    def lon_edges(self) -> np.ndarray:
        """Longitude (degrees) of the ``im + 1`` column boundaries."""
        return -180.0 + (self.offi + np.arange(self.im + 1)) * (360.0 / self.im)

    @property
    def lat_centers(self) -> np.ndarray:
        edges = self.lat_edges
        return 0.5 * (edges[:-1] + edges[1:])

    @property
    def lon_centers(self) -> np.ndarray:
        edges = self.lon_edges
        return 0.5 * (edges[:-1] + edges[1:])

    def to_dataset(self, vname: str = "hntr") -> xr.Dataset:
        """Store the descriptor as attributes of a ``{vname}.info`` variable."""
        info = xr.DataArray(
            np.int64(0),
            attrs={
                "im": np.int64(self.im),
                "jm": np.int64(self.jm),
                "offi": float(self.offi),
                "dlat": float(self.dlat),
                "radius": float(self.radius),
                "offi.comment": "Fraction of cells from the date line to the western edge of cell 0",
                "dlat.comment": "Minutes of latitude of non-polar cells",
            },
        )
        return xr.Dataset({f"{vname}.info": info})

    @classmethod
    def from_dataset(cls, ds: xr.Dataset, vname: str = "hntr") -> "HntrGrid":
        attrs = ds[f"{vname}.info"].attrs
        return cls(
            int(attrs["im"]),
            int(attrs["jm"]),
            float(attrs["offi"]),
            float(attrs["dlat"]),
            float(attrs.get("radius", EQ_RAD)),
        )


class Hntr:
    """
    Conservative overlap interpolation between two `HntrGrid`s.

    Construction computes the overlap of every destination row (column)
    with the source rows (columns). Rows and columns are handled
    independently: the overlap of two cells is the product of their
    latitude overlap (in sine of latitude) and longitude overlap.

    Parameters
    ----------
    Agrid : HntrGrid
        Source grid.
    Bgrid : HntrGrid
        Destination grid.
    datmis : float, default DATMIS
        Value given to destination cells with zero integrated weight.

    Notes
    -----
    Flat field vectors are ordered C-style over ``(jm, im)``: the flat
    index of cell ``(j, i)`` is ``j * im + i``.

    The overlap tables (0-based) are exposed read-only:

    sina, sinb
        Sine of latitude of row edges (length ``jm + 1``).
    jmin, jmax, gmin, gmax
        Per destination row: southern/northern-most source row overlapping
        it, and the part (in sine of latitude) of those rows lying south /
        north of it.
    imin, imax, fmin, fmax
        Per destination column: western/eastern-most source column
        overlapping it, and the fraction of those columns lying west /
        east of it. Columns are unwrapped and may exceed ``Agrid.im``;
        fold them with ``% Agrid.im``.
    """

    def __init__(self, Agrid: HntrGrid, Bgrid: HntrGrid, datmis: float = DATMIS) -> None:
        # Grids are frozen, holding references is equivalent to copying them
        self.Agrid = Agrid
        self.Bgrid = Bgrid
        self.datmis = datmis

        self._partition_east_west()
        self._partition_north_south()
        self._lat_pairs: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]] = None
        self._lon_pairs: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]] = None
        logger.debug("Hntr %s -> %s ready", Agrid, Bgrid)

    def __repr__(self) -> str:
        return f"Hntr(Agrid={self.Agrid!r}, Bgrid={self.Bgrid!r})"

    # ------------------------------------------------------------------
    def _partition_east_west(self) -> None:
        ima, imb = self.Agrid.im, self.Bgrid.im
        # Distances are measured in units of 1/(ima*imb) of the circle
        dia = imb  # Width of one A cell
        imin = np.zeros(imb, dtype=np.int64)
        imax = np.zeros(imb, dtype=np.int64)
        fmin = np.zeros(imb)
        fmax = np.zeros(imb)

        # Work with 1-based unwrapped A column numbers; ria is the eastern
        # edge of A column `ia`, starting one revolution to the west
        ia = 1
        ria = (ia + self.Agrid.offi - ima) * imb
        ib = imb
        for ibp1 in range(1, imb + 1):
            rib = (ibp1 - 1 + self.Bgrid.offi) * ima  # Western edge of B column ibp1
            while ria < rib:
                ia += 1
                ria += dia
            if ria == rib:
                # Eastern edge of A column ia coincides with western edge of ibp1
                imax[ib - 1] = ia
                fmax[ib - 1] = 0.0
                ia += 1
                ria += dia
                imin[ibp1 - 1] = ia
                fmin[ibp1 - 1] = 0.0
            else:
                # A column ia straddles the western edge of ibp1
                imax[ib - 1] = ia
                fmax[ib - 1] = (ria - rib) / dia
                imin[ibp1 - 1] = ia
                fmin[ibp1 - 1] = 1.0 - fmax[ib - 1]
            ib = ibp1
        imax[imb - 1] += ima

        self._imin = _readonly(imin - 1)
        self._imax = _readonly(imax - 1)
        self._fmin = _readonly(fmin)
        self._fmax = _readonly(fmax)

    def _partition_north_south(self) -> None:
        jma, jmb = self.Agrid.jm, self.Bgrid.jm
        sina = _sine_edges(jma, self.Agrid.dlat)
        sinb = _sine_edges(jmb, self.Bgrid.dlat)

        jmin = np.zeros(jmb, dtype=np.int64)
        jmax = np.zeros(jmb, dtype=np.int64)
        gmin = np.zeros(jmb)
        gmax = np.zeros(jmb)

        # 1-based A row numbers: row ja spans sina[ja-1]..sina[ja]
        jmin[0] = 1
        gmin[0] = 0.0
        ja = 1
        for jb in range(1, jmb):
            while sina[ja] < sinb[jb]:
                ja += 1
            if sina[ja] == sinb[jb]:
                # Northern edges of ja and jb coincide
                jmax[jb - 1] = ja
                gmax[jb - 1] = 0.0
                ja += 1
                jmin[jb] = ja
                gmin[jb] = 0.0
            else:
                # A row ja straddles the northern edge of jb
                jmax[jb - 1] = ja
                gmax[jb - 1] = sina[ja] - sinb[jb]
                jmin[jb] = ja
                gmin[jb] = sinb[jb] - sina[ja - 1]
        jmax[jmb - 1] = jma
        gmax[jmb - 1] = 0.0

        self._sina = _readonly(sina)
        self._sinb = _readonly(sinb)
        self._jmin = _readonly(jmin - 1)
        self._jmax = _readonly(jmax - 1)
        self._gmin = _readonly(gmin)
        self._gmax = _readonly(gmax)

    # Read-only overlap tables
    sina = property(lambda self: self._sina)
    sinb = property(lambda self: self._sinb)
    imin = property(lambda self: self._imin)
    imax = property(lambda self: self._imax)
    fmin = property(lambda self: self._fmin)
    fmax = property(lambda self: self._fmax)
    jmin = property(lambda self: self._jmin)
    jmax = property(lambda self: self._jmax)
    gmin = property(lambda self: self._gmin)
    gmax = property(lambda self: self._gmax)

    # ------------------------------------------------------------------
    def lat_overlaps(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Every (destination row, source row) pair that overlaps.

        Returns
        -------
        jb, ja : np.ndarray
            Destination and source rows.
        g : np.ndarray
            Overlap in sine of latitude.
        """
        if self._lat_pairs is None:
            jbs, jas, gs = [], [], []
            for jb in range(self.Bgrid.jm):
                ja = np.arange(self._jmin[jb], self._jmax[jb] + 1)
                g = self._sina[ja + 1] - self._sina[ja]
                g[0] -= self._gmin[jb]
                g[-1] -= self._gmax[jb]
                jbs.append(np.full(len(ja), jb))
                jas.append(ja)
                gs.append(g)
            jb_all, ja_all, g_all = (np.concatenate(x) for x in (jbs, jas, gs))
            keep = g_all != 0
            self._lat_pairs = (jb_all[keep], ja_all[keep], g_all[keep])
        return self._lat_pairs

    def lon_overlaps(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Every (destination column, source column) pair that overlaps.

        Source columns are folded back into ``[0, Agrid.im)``, so a
        destination cell spanning the date line gets contributions from
        both ends of the source grid.

        Returns
        -------
        ib, ia : np.ndarray
            Destination and source columns.
        f : np.ndarray
            Overlap as a fraction of a source column.
        """
        if self._lon_pairs is None:
            ima = self.Agrid.im
            ibs, ias, fs = [], [], []
            for ib in range(self.Bgrid.im):
                iarev = np.arange(self._imin[ib], self._imax[ib] + 1)
                f = np.ones(len(iarev))
                f[0] -= self._fmin[ib]
                f[-1] -= self._fmax[ib]
                ibs.append(np.full(len(iarev), ib))
                ias.append(iarev % ima)
                fs.append(f)
            ib_all, ia_all, f_all = (np.concatenate(x) for x in (ibs, ias, fs))
            keep = f_all != 0
            self._lon_pairs = (ib_all[keep], ia_all[keep], f_all[keep])
        return self._lon_pairs

    def overlaps(
        self, b_rows: Optional[Tuple[int, int]] = None
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Every (destination cell, source cell) pair that overlaps.

        Parameters
        ----------
        b_rows : (start, stop), optional
            Only destination rows ``start <= jb < stop``.

        Returns
        -------
        ijb, ija : np.ndarray
            Flat destination and source cell indices.
        fg : np.ndarray
            ``F * G``: longitude fraction (in source columns) times
            latitude overlap (in sine of latitude).
        """
        jb, ja, g = self.lat_overlaps()
        if b_rows is not None:
            sel = (jb >= b_rows[0]) & (jb < b_rows[1])
            jb, ja, g = jb[sel], ja[sel], g[sel]
        ib, ia, f = self.lon_overlaps()
        ijb = (jb[:, None] * self.Bgrid.im + ib[None, :]).ravel()
        ija = (ja[:, None] * self.Agrid.im + ia[None, :]).ravel()
        fg = (g[:, None] * f[None, :]).ravel()
        return ijb, ija, fg

    # ------------------------------------------------------------------
    def _check_size(self, arr: Any, size: int, name: str) -> np.ndarray:
        arr = np.asarray(arr, dtype=np.float64).ravel()
        if arr.size != size:
            raise DimensionMismatchError(f"{name} has wrong size", expected=size, actual=arr.size)
        return arr

    def regrid1(
        self,
        wta: Any,
        a: Any,
        b: Optional[np.ndarray] = None,
        mean_polar: bool = False,
    ) -> np.ndarray:
        """
        Interpolate a per-unit-area (or per-unit-mass) quantity from A to B.

        The area weighted integral of the quantity is conserved. B cells
        whose covering A cells all have ``wta == 0`` are set to `datmis`.

        Parameters
        ----------
        wta : array_like
            Weight of each A cell (flat, length ``Agrid.size``).
        a : array_like
            Quantity on the A grid (flat).
        b : np.ndarray, optional
            Output array (flat, length ``Bgrid.size``); allocated if None.
        mean_polar : bool, default False
            Replace the values of the southern- and northern-most B rows by
            their weighted longitudinal mean.

        Returns
        -------
        np.ndarray
            The interpolated quantity on B (flat).

        Raises
        ------
        NaNInInputError
            If `wta` is not finite, or `a` is not finite where `wta` is
            non-zero (reported with the flat A index).
        """
        wta = self._check_size(wta, self.Agrid.size, "WTA")
        a = self._check_size(a, self.Agrid.size, "A")
        if b is None:
            b = np.empty(self.Bgrid.size)
        elif b.size != self.Bgrid.size:
            raise DimensionMismatchError("B has wrong size", expected=self.Bgrid.size, actual=b.size)
        bflat = b.reshape(-1)

        check_finite(wta, "WTA")
        weighted = np.flatnonzero(wta != 0)
        check_finite(a[weighted], "A", index_map=weighted.tolist())

        ijb, ija, fg = self.overlaps()
        w = fg * wta[ija]
        # A cells with no weight never contribute, even when their value is NaN
        v = np.where(w != 0, w * a[ija], 0.0)
        weight = np.bincount(ijb, weights=w, minlength=self.Bgrid.size)
        value = np.bincount(ijb, weights=v, minlength=self.Bgrid.size)

        with np.errstate(divide="ignore", invalid="ignore"):
            bflat[:] = np.where(weight != 0, value / np.where(weight != 0, weight, 1), self.datmis)

        if mean_polar:
            imb = self.Bgrid.im
            weight2 = weight.reshape(self.Bgrid.jm, imb)
            value2 = value.reshape(self.Bgrid.jm, imb)
            for jb in sorted({0, self.Bgrid.jm - 1}):
                wsum = weight2[jb].sum()
                bmean = value2[jb].sum() / wsum if wsum != 0 else self.datmis
                bflat[jb * imb : (jb + 1) * imb] = bmean
        return b

    def regrid(self, wta: Any, a: Any, mean_polar: bool = False) -> np.ndarray:
        """
        `regrid1` for fields in their natural ``(jm, im)`` shape.

        Returns
        -------
        np.ndarray
            Array of shape ``Bgrid.shape``.
        """
        wta = np.asarray(wta, dtype=np.float64)
        a = np.asarray(a, dtype=np.float64)
        for name, arr in (("WTA", wta), ("A", a)):
            if arr.shape != self.Agrid.shape:
                raise DimensionMismatchError(
                    f"{name} does not match source grid", expected=self.Agrid.shape, actual=arr.shape
                )
        b = np.empty(self.Bgrid.shape)
        self.regrid1(wta, a, b, mean_polar=mean_polar)
        return b

    def matrix(
        self,
        accum: Optional[SparseMatrixCOO] = None,
        bindex_clip: Optional[Union[Callable[[int], bool], np.ndarray]] = None,
        wtb: Optional[Any] = None,
        conservation_tol: Optional[float] = None,
        b_rows: Optional[Tuple[int, int]] = None,
    ) -> SparseMatrixCOO:
        """
        Build the sparse A -> B regridding operator.

        The entry for destination cell ``ijb`` and source cell ``ija`` is
        ``wtb[ijb]`` times the fraction of ``ijb`` covered by ``ija``, so
        with unit weights every row sums to 1, and with ``wtb = dxyp``
        the entries are overlap areas.

        Parameters
        ----------
        accum : SparseMatrixCOO, optional
            Matrix of shape ``(Bgrid.size, Agrid.size)`` to add into;
            a new one is created if None.
        bindex_clip : callable or boolean array, optional
            Destination cells for which this is False are skipped.
        wtb : array_like, optional
            Weight of each destination cell; defaults to 1.
        conservation_tol : float, optional
            If set, check that every destination row this call builds (within
            `b_rows` and kept by `bindex_clip`) sums to its `wtb` within this
            tolerance; offenders are warned about, not removed.
        b_rows : (start, stop), optional
            Only build destination rows ``start <= jb < stop``.

        Returns
        -------
        SparseMatrixCOO
            `accum` (or the new matrix) with the entries added.
        """
        nb, na = self.Bgrid.size, self.Agrid.size
        if accum is None:
            accum = SparseMatrixCOO((nb, na))
        elif accum.shape != (nb, na):
            raise DimensionMismatchError(
                "Accumulator does not match grids", expected=(nb, na), actual=accum.shape
            )
        wtb = np.ones(nb) if wtb is None else self._check_size(wtb, nb, "WTB")

        ijb, ija, fg = self.overlaps(b_rows)

        # F is in units of A columns; G in units of sine of latitude
        dsinb = np.diff(self._sinb)
        scale = self.Bgrid.im / self.Agrid.im
        jb = ijb // self.Bgrid.im
        vals = wtb[ijb] * fg * scale / dsinb[jb]

        # Destination cells this call is responsible for
        built = np.ones(nb, dtype=bool)
        if b_rows is not None:
            built[:] = False
            built[b_rows[0] * self.Bgrid.im : b_rows[1] * self.Bgrid.im] = True

        if bindex_clip is not None:
            if callable(bindex_clip):
                clip = np.fromiter((bool(bindex_clip(i)) for i in range(nb)), dtype=bool, count=nb)
            else:
                clip = np.asarray(bindex_clip, dtype=bool)
                if clip.shape != (nb,):
                    raise DimensionMismatchError(
                        "bindex_clip does not match destination grid", expected=(nb,), actual=clip.shape
                    )
            keep = clip[ijb]
            ijb, ija, vals = ijb[keep], ija[keep], vals[keep]
            built &= clip

        chunk = SparseMatrixCOO((nb, na), ijb, ija, vals)
        logger.debug("Hntr.matrix: %d entries for %d x %d", chunk.nnz, nb, na)
        if conservation_tol is not None:
            check_row_sums(
                chunk, expected=wtb, tol=conservation_tol, name="Hntr.matrix", rows=built
            )
        accum.append(chunk)
        return accum

    def check_conservation(
        self,
        matrix: SparseMatrixCOO,
        tol: float = DEFAULT_TOLERANCE,
        rows: Optional[Any] = None,
    ) -> dict:
        """
        Row-sum check of a unit-weight matrix built by `matrix`.

        `rows` masks the destination cells to check, e.g. the cells kept
        by a `bindex_clip`; all cells are checked by default.
        """
        return check_row_sums(matrix, expected=1.0, tol=tol, name=f"{self!r}", rows=rows)
