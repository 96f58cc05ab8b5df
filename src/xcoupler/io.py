from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Dict, Optional, Union

import numpy as np
import xarray as xr

from .errors import DimensionMismatchError, NotFoundError, UnsupportedVersionError
from .grid import Coordinates, Grid, GridType, Parameterization

logger = logging.getLogger(__name__)

# Only version of the grid layout we read or write
GRID_VERSION = 2

_COMMENTS = {
    "type.comment": (
        "The overall type of grid: "
        + ", ".join(f"{e.value}={e.name}" for e in GridType)
    ),
    "coordinates.comment": (
        "The coordinate system used to represent grid vertices: "
        + ", ".join(f"{e.value}={e.name}" for e in Coordinates)
        + ". LONLAT means longitude comes before latitude."
    ),
    "parameterization.comment": (
        "How values are represented on the grid: "
        + ", ".join(f"{e.value}={e.name}" for e in Parameterization)
        + ". L0 is constant per cell, L1 is vertex-valued with linear interpolation."
    ),
    "projection.comment": (
        "If coordinates = XY, the projection (PROJ string) used to convert "
        "local XY coordinates to LONLAT coordinates on the surface of the earth."
    ),
    "cells.nfull.comment": (
        "The total theoretical number of grid cells (polygons) in this grid. "
        "Depending on parameterization, either cells or vertices correspond "
        "to the dimensionality of the grid's vector space."
    ),
    "vertices.nfull.comment": "The total theoretical number of vertices on this grid.",
}


@dataclasses.dataclass
class GridWriteTicket:
    """
    Result of `define_grid`: metadata and dimensions of a grid to be written.

    The arrays themselves are only produced by `write`, which checks that
    the grid still has the shape that was declared.

    Attributes
    ----------
    grid : Grid
        The grid being written.
    vname : str
        Variable prefix.
    info : dict
        Attributes of the ``{vname}.info`` variable.
    dims : dict
        Declared dimension sizes.
    """

    grid: Grid
    vname: str
    info: Dict[str, Any]
    dims: Dict[str, int]

    def write(self, ds: Optional[xr.Dataset] = None) -> xr.Dataset:
        """
        Emit the grid's arrays.

        Parameters
        ----------
        ds : xr.Dataset, optional
            Store to add the variables to; a new Dataset if None.

        Returns
        -------
        xr.Dataset
            `ds` with the grid variables added (a new object).

        Raises
        ------
        DimensionMismatchError
            If the grid's realized counts changed since `define_grid`.
        """
        grid, vname = self.grid, self.vname
        vertices = grid.vertices.sorted()
        cells = grid.cells.sorted()
        nvref = sum(len(c) for c in cells)
        actual = {
            f"{vname}.vertices.nrealized": len(vertices),
            f"{vname}.cells.nrealized": len(cells),
            f"{vname}.cells.nrealized_plus1": len(cells) + 1,
            f"{vname}.cells.nvertex_refs": nvref,
        }
        for dim, size in actual.items():
            if self.dims[dim] != size:
                raise DimensionMismatchError(
                    f"Grid {grid.name!r} changed after define: {dim}",
                    expected=self.dims[dim],
                    actual=size,
                )

        vdim = f"{vname}.vertices.nrealized"
        cdim = f"{vname}.cells.nrealized"
        xy = np.array([(v.x, v.y) for v in vertices], dtype=np.float64).reshape(-1, 2)
        ijk = np.array([c.ijk for c in cells], dtype=np.int64).reshape(-1, 3)
        vrefs = np.array(
            [ref for c in cells for ref in c.vertex_refs], dtype=np.int64
        )
        vrefs_start = np.zeros(len(cells) + 1, dtype=np.int64)
        vrefs_start[1:] = np.cumsum([len(c) for c in cells])

        variables = {
            f"{vname}.info": xr.DataArray(np.int64(0), attrs=self.info),
            f"{vname}.vertices.index": (
                [vdim],
                np.array([v.index for v in vertices], dtype=np.int64),
            ),
            f"{vname}.vertices.xy": ([vdim, "two"], xy),
            f"{vname}.cells.index": (
                [cdim],
                np.array([c.index for c in cells], dtype=np.int64),
            ),
            f"{vname}.cells.ijk": ([cdim, "three"], ijk),
            f"{vname}.cells.native_area": (
                [cdim],
                np.array([c.native_area for c in cells], dtype=np.float64),
            ),
            f"{vname}.cells.vertex_refs": ([f"{vname}.cells.nvertex_refs"], vrefs),
            f"{vname}.cells.vertex_refs_start": (
                [f"{vname}.cells.nrealized_plus1"],
                vrefs_start,
            ),
        }
        if ds is None:
            ds = xr.Dataset()
        logger.debug(
            "Writing grid %s as %s: %d cells, %d vertices",
            grid.name,
            vname,
            len(cells),
            len(vertices),
        )
        return ds.assign(variables)


def define_grid(grid: Grid, vname: Optional[str] = None) -> GridWriteTicket:
    """
    Declare the metadata and dimensions of a grid to be written.

    Parameters
    ----------
    grid : Grid
        The grid.
    vname : str, optional
        Variable prefix; defaults to the grid's name (or ``"grid"``).

    Returns
    -------
    GridWriteTicket
        Call its `write` method to emit the arrays.
    """
    vname = vname or grid.name or "grid"
    info: Dict[str, Any] = {
        "name": grid.name,
        "version": np.int32(GRID_VERSION),
        "type": np.int32(grid.type.value),
        "coordinates": np.int32(grid.coordinates.value),
        "parameterization": np.int32(grid.parameterization.value),
    }
    if grid.coordinates == Coordinates.XY and grid.sproj:
        info["projection"] = grid.sproj
    info["cells.nfull"] = np.int64(grid.cells.nfull())
    info["vertices.nfull"] = np.int64(grid.vertices.nfull())
    info.update(
        (k, v)
        for k, v in _COMMENTS.items()
        if k != "projection.comment" or "projection" in info
    )

    ncells = grid.cells.nrealized()
    dims = {
        f"{vname}.vertices.nrealized": grid.vertices.nrealized(),
        f"{vname}.cells.nrealized": ncells,
        f"{vname}.cells.nrealized_plus1": ncells + 1,
        f"{vname}.cells.nvertex_refs": sum(len(c) for c in grid.cells),
        "two": 2,
        "three": 3,
    }
    return GridWriteTicket(grid, vname, info, dims)


def grid_to_dataset(
    grid: Grid, vname: Optional[str] = None, ds: Optional[xr.Dataset] = None
) -> xr.Dataset:
    """Define and write a grid in one step."""
    return define_grid(grid, vname).write(ds)


def _values(ds: xr.Dataset, name: str) -> np.ndarray:
    try:
        return ds[name].values
    except KeyError:
        raise NotFoundError(name, "dataset") from None


def _find_grid_vname(ds: xr.Dataset) -> str:
    """Prefix of the only grid stored in `ds`."""
    names = [
        str(name)[: -len(".info")]
        for name, var in ds.variables.items()
        if str(name).endswith(".info") and "cells.nfull" in var.attrs
    ]
    if not names:
        raise NotFoundError("*.info", "dataset")
    if len(names) > 1:
        raise ValueError(f"Dataset holds several grids {sorted(names)}; pass vname")
    return names[0]


def grid_from_dataset(ds: xr.Dataset, vname: Optional[str] = None) -> Grid:
    """
    Reconstruct a grid stored by `grid_to_dataset`.

    Parameters
    ----------
    ds : xr.Dataset
        The store.
    vname : str, optional
        Variable prefix; if None, the dataset must hold exactly one grid.

    Returns
    -------
    Grid
        The grid, with realized vertices and cells and full-space sizes.

    Raises
    ------
    UnsupportedVersionError
        If the stored version is not `GRID_VERSION`.
    DimensionMismatchError
        If array shapes or the vertex reference offsets are inconsistent.
    NotFoundError
        If a variable is missing or a cell refers to a missing vertex.
    ValueError
        If `vname` is None and the dataset holds several grids.
    """
    if vname is None:
        vname = _find_grid_vname(ds)
    info_name = f"{vname}.info"
    if info_name not in ds.variables:
        raise NotFoundError(info_name, "dataset")
    attrs = ds[info_name].attrs

    version = int(attrs.get("version", -1))
    if version != GRID_VERSION:
        raise UnsupportedVersionError(version, GRID_VERSION)

    coordinates = Coordinates(int(attrs["coordinates"]))
    sproj = None
    if coordinates == Coordinates.XY:
        sproj = attrs.get("projection") or None
    grid = Grid(
        name=str(attrs.get("name", vname)),
        type=GridType(int(attrs["type"])),
        coordinates=coordinates,
        parameterization=Parameterization(int(attrs["parameterization"])),
        sproj=sproj,
    )

    vindex = _values(ds, f"{vname}.vertices.index")
    xy = _values(ds, f"{vname}.vertices.xy")
    if xy.shape != (len(vindex), 2):
        raise DimensionMismatchError(
            f"{vname}.vertices.xy has wrong shape", expected=(len(vindex), 2), actual=xy.shape
        )
    for index, (x, y) in zip(vindex, xy):
        grid.add_vertex(x, y, int(index))

    cindex = _values(ds, f"{vname}.cells.index")
    ncells = len(cindex)
    ijk = _values(ds, f"{vname}.cells.ijk")
    native_area = _values(ds, f"{vname}.cells.native_area")
    vrefs = _values(ds, f"{vname}.cells.vertex_refs")
    vrefs_start = _values(ds, f"{vname}.cells.vertex_refs_start")
    if ijk.shape != (ncells, 3):
        raise DimensionMismatchError(
            f"{vname}.cells.ijk has wrong shape", expected=(ncells, 3), actual=ijk.shape
        )
    if native_area.shape != (ncells,):
        raise DimensionMismatchError(
            f"{vname}.cells.native_area has wrong shape",
            expected=(ncells,),
            actual=native_area.shape,
        )
    if vrefs_start.shape != (ncells + 1,):
        raise DimensionMismatchError(
            f"{vname}.cells.vertex_refs_start has wrong shape",
            expected=(ncells + 1,),
            actual=vrefs_start.shape,
        )
    if vrefs_start[0] != 0 or vrefs_start[-1] != len(vrefs) or np.any(np.diff(vrefs_start) < 0):
        raise DimensionMismatchError(
            f"{vname}.cells.vertex_refs_start is not a valid offset array",
            expected=f"0..{len(vrefs)} non-decreasing",
            actual=f"{vrefs_start[0]}..{vrefs_start[-1]}",
        )

    for n in range(ncells):
        grid.add_cell(
            vrefs[vrefs_start[n] : vrefs_start[n + 1]],
            index=int(cindex[n]),
            i=int(ijk[n, 0]),
            j=int(ijk[n, 1]),
            k=int(ijk[n, 2]),
            native_area=float(native_area[n]),
        )

    grid.cells.set_nfull(int(attrs.get("cells.nfull", -1)))
    grid.vertices.set_nfull(int(attrs.get("vertices.nfull", -1)))
    logger.debug("Read %r", grid)
    return grid


def write_grid(
    grid: Grid,
    path: Union[str, os.PathLike],
    vname: Optional[str] = None,
    mode: str = "w",
) -> None:
    """
    Write a grid to a netCDF-4 file.

    Parameters
    ----------
    grid : Grid
        The grid.
    path : str or path-like
        Output file.
    vname : str, optional
        Variable prefix; defaults to the grid's name.
    mode : {"w", "a"}, default "w"
        Overwrite, or add to an existing file (several grids per file).
    """
    ticket = define_grid(grid, vname)
    ds = ticket.write()
    # xarray's CF encoder treats a `coordinates` attribute as a list of names
    info = ds.variables[f"{ticket.vname}.info"]
    info.attrs["coordinates"] = str(int(info.attrs["coordinates"]))
    ds.to_netcdf(path, mode=mode, format="NETCDF4")


def read_grid(path: Union[str, os.PathLike], vname: Optional[str] = None) -> Grid:
    """Read a grid written by `write_grid` (the only one in the file if `vname` is None)."""
    # `coordinates` is a grid attribute here, not a CF coordinate list
    with xr.open_dataset(path, decode_coords=False, mask_and_scale=False) as ds:
        return grid_from_dataset(ds.load(), vname)
