from __future__ import annotations

import logging
import os
import time
from typing import Any, Optional, Tuple, Union

import cf_xarray  # noqa: F401
import numpy as np
import xarray as xr
from scipy.sparse import csr_matrix

from .core import apply_weights_core
from .errors import DimensionMismatchError
from .hntr import Hntr, HntrGrid
from .parallel import build_matrix_dask
from .sparse import DEFAULT_TOLERANCE, SparseMatrixCOO, check_row_sums
from .utils import create_hntr_grid_dataset, hntr_grid_from_dataset, update_history

logger = logging.getLogger(__name__)

_GRID_KEYS = ("im", "jm", "offi", "dlat")


class Regridder:
    """
    Conservative regridder between two global lat-lon grids for xarray objects.

    The operator is built with `Hntr` and applied with `xarray.apply_ufunc`,
    so both eager (NumPy) and lazy (Dask) inputs are supported.

    Attributes
    ----------
    source_grid : HntrGrid
        Source grid.
    target_grid : HntrGrid
        Destination grid.
    source_grid_ds, target_grid_ds : xr.Dataset
        CF descriptions of the grids.
    filename : str
        The path to save/load weights.
    skipna : bool
        Whether to handle NaNs by re-normalizing weights.
    na_thres : float
        Threshold for NaN handling.
    mean_polar : bool
        Whether polar rows of the result are replaced by their mean.
    """

    def __init__(
        self,
        source_grid: Union[HntrGrid, xr.Dataset],
        target_grid: Union[HntrGrid, xr.Dataset],
        reuse_weights: bool = False,
        filename: str = "weights.nc",
        skipna: bool = False,
        na_thres: float = 1.0,
        mean_polar: bool = False,
        parallel: bool = False,
        n_chunks: int = 4,
    ) -> None:
        """
        Initialize the Regridder.

        Parameters
        ----------
        source_grid : HntrGrid or xr.Dataset
            Source grid, or a dataset with CF latitude/longitude.
        target_grid : HntrGrid or xr.Dataset
            Destination grid, or a dataset with CF latitude/longitude.
        reuse_weights : bool, default False
            Load weights from filename if it exists (and save them there
            after generating them otherwise).
        filename : str, default 'weights.nc'
            Path to weights file.
        skipna : bool, default False
            Handle NaNs in input data by re-normalizing weights.
        na_thres : float, default 1.0
            Threshold for NaN handling.
        mean_polar : bool, default False
            Replace the values of the southern- and northern-most
            destination rows by their longitudinal mean.
        parallel : bool, default False
            Build the weights as dask tasks over destination row chunks.
        n_chunks : int, default 4
            Number of chunks when `parallel` is True.
        """
        self.source_grid = self._as_hntr_grid(source_grid)
        self.target_grid = self._as_hntr_grid(target_grid)
        self.source_grid_ds = create_hntr_grid_dataset(self.source_grid)
        self.target_grid_ds = create_hntr_grid_dataset(self.target_grid)
        self.filename = filename
        self.skipna = skipna
        self.na_thres = na_thres
        self.mean_polar = mean_polar
        self.parallel = parallel
        self.n_chunks = n_chunks

        self._shape_source: Tuple[int, int] = self.source_grid.shape
        self._shape_target: Tuple[int, int] = self.target_grid.shape
        self._dims_target: Tuple[str, str] = ("lat", "lon")
        self._weights_matrix: Optional[csr_matrix] = None
        self._total_weights: Optional[np.ndarray] = None
        self.generation_time: Optional[float] = None
        self.hntr = Hntr(self.source_grid, self.target_grid)

        if reuse_weights and os.path.exists(filename):
            self._load_weights()
            self._validate_weights()
        else:
            self._generate_weights()
            if reuse_weights:
                self._save_weights()

    @staticmethod
    def _as_hntr_grid(grid: Union[HntrGrid, xr.Dataset]) -> HntrGrid:
        if isinstance(grid, HntrGrid):
            return grid
        return hntr_grid_from_dataset(grid)

    # ------------------------------------------------------------------
    def _generate_weights(self) -> None:
        """Build the unit-weight operator (rows are destination-cell fractions)."""
        start = time.perf_counter()
        if self.parallel:
            matrix = build_matrix_dask(self.hntr, n_chunks=self.n_chunks)
        else:
            matrix = self.hntr.matrix()
        self.generation_time = time.perf_counter() - start
        self._set_matrix(matrix)
        logger.info(
            "Generated %d weights for %s -> %s in %.3fs",
            self._weights_matrix.nnz,
            self._shape_source,
            self._shape_target,
            self.generation_time,
        )

    def _set_matrix(self, matrix: SparseMatrixCOO) -> None:
        self._weights_matrix = matrix.to_scipy().tocsr()
        self._total_weights = np.asarray(self._weights_matrix.sum(axis=1)).ravel()

    def _weights_attrs(self) -> dict:
        attrs = {
            "shape_src": list(self._shape_source),
            "shape_dst": list(self._shape_target),
            "skipna": int(self.skipna),
            "na_thres": self.na_thres,
            "mean_polar": int(self.mean_polar),
            "generation_time": self.generation_time or 0.0,
        }
        for prefix, grid in (("src", self.source_grid), ("dst", self.target_grid)):
            for key in _GRID_KEYS:
                attrs[f"{prefix}_{key}"] = getattr(grid, key)
        return attrs

    def _save_weights(self) -> None:
        """Save regridding weights and metadata to a NetCDF file."""
        ds_weights = self.weights_to_xarray()
        update_history(ds_weights, "Weights generated by xcoupler.Regridder")
        ds_weights.to_netcdf(self.filename)

    def _load_weights(self) -> None:
        """Load regridding weights and metadata from a NetCDF file."""
        with xr.open_dataset(self.filename) as ds_weights:
            ds_weights.load()
            matrix = SparseMatrixCOO.from_dataset(ds_weights)
            self._loaded_attrs = dict(ds_weights.attrs)
        self.generation_time = self._loaded_attrs.get("generation_time")
        self._set_matrix(matrix)
        logger.info("Loaded %d weights from %s", self._weights_matrix.nnz, self.filename)

    def _validate_weights(self) -> None:
        """
        Validate loaded weights against the requested grids and options.

        Raises
        ------
        DimensionMismatchError
            If a grid differs from the one the weights were built for.
        ValueError
            If the NaN or polar handling options differ.
        """
        attrs = self._loaded_attrs
        for prefix, grid, label in (
            ("src", self.source_grid, "Source"),
            ("dst", self.target_grid, "Target"),
        ):
            loaded = tuple(float(attrs.get(f"{prefix}_{k}", np.nan)) for k in _GRID_KEYS)
            requested = tuple(float(getattr(grid, k)) for k in _GRID_KEYS)
            if not np.allclose(loaded, requested):
                raise DimensionMismatchError(
                    f"{label} grid does not match loaded weights",
                    expected=dict(zip(_GRID_KEYS, requested)),
                    actual=dict(zip(_GRID_KEYS, loaded)),
                )

        if self._weights_matrix.shape != (self.target_grid.size, self.source_grid.size):
            raise DimensionMismatchError(
                "Loaded weight matrix has wrong shape",
                expected=(self.target_grid.size, self.source_grid.size),
                actual=self._weights_matrix.shape,
            )

        if bool(attrs.get("skipna", self.skipna)) != self.skipna:
            raise ValueError(
                f"Requested skipna={self.skipna} does not match "
                f"loaded weights skipna={bool(attrs['skipna'])}"
            )
        if abs(float(attrs.get("na_thres", self.na_thres)) - self.na_thres) > 1e-6:
            raise ValueError(
                f"Requested na_thres={self.na_thres} does not match "
                f"loaded weights na_thres={attrs['na_thres']}"
            )
        if bool(attrs.get("mean_polar", self.mean_polar)) != self.mean_polar:
            raise ValueError(
                f"Requested mean_polar={self.mean_polar} does not match "
                f"loaded weights mean_polar={bool(attrs['mean_polar'])}"
            )

    @property
    def weights(self) -> csr_matrix:
        """The sparse weight matrix, shape ``(n_dst, n_src)``."""
        if self._weights_matrix is None:
            raise RuntimeError("Weights have not been generated yet.")
        return self._weights_matrix

    # ------------------------------------------------------------------
    def diagnostics(self) -> xr.Dataset:
        """
        Generate spatial diagnostics of the regridding weights.

        Returns
        -------
        xr.Dataset
            Dataset on the target grid containing:
            - weight_sum: Sum of weights for each destination cell.
            - unmapped_mask: 1 for unmapped cells, 0 for mapped.
        """
        weights_sum = np.asarray(self.weights.sum(axis=1)).ravel()
        unmapped = (weights_sum == 0).astype(np.int8)

        coords = {
            c: self.target_grid_ds.coords[c]
            for c in self.target_grid_ds.coords
            if set(self.target_grid_ds.coords[c].dims).issubset(self._dims_target)
        }
        ds = xr.Dataset(
            data_vars={
                "weight_sum": (self._dims_target, weights_sum.reshape(self._shape_target)),
                "unmapped_mask": (self._dims_target, unmapped.reshape(self._shape_target)),
            },
            coords=coords,
        )
        update_history(ds, "Generated spatial diagnostics from Regridder weights.")
        return ds

    def quality_report(
        self, tol: float = DEFAULT_TOLERANCE, format: str = "dict"
    ) -> Union[dict, xr.Dataset]:
        """
        Generate a quality report of the regridding weights.

        Parameters
        ----------
        tol : float
            Tolerance of the row-sum conservation check.
        format : str, default 'dict'
            The output format: 'dict' or 'dataset'.

        Returns
        -------
        dict or xr.Dataset
            - n_src, n_dst: Number of source and destination cells.
            - n_weights: Number of stored weights.
            - unmapped_count, unmapped_fraction: Destination cells with no weights.
            - weight_sum_min, weight_sum_max, weight_sum_mean: Row sums.
            - conservation_violations: Rows whose sum differs from 1 by more than `tol`.
        """
        ds_diag = self.diagnostics()
        weights_sum = ds_diag.weight_sum
        unmapped_count = int(ds_diag.unmapped_mask.sum())
        n_dst = self.target_grid.size
        bad = check_row_sums(
            SparseMatrixCOO.from_scipy(self.weights), tol=tol, name="Regridder weights"
        )

        report = {
            "n_src": self.source_grid.size,
            "n_dst": n_dst,
            "n_weights": int(self.weights.nnz),
            "unmapped_count": unmapped_count,
            "unmapped_fraction": float(unmapped_count / n_dst),
            "weight_sum_min": float(weights_sum.min()),
            "weight_sum_max": float(weights_sum.max()),
            "weight_sum_mean": float(weights_sum.mean()),
            "conservation_violations": len(bad),
        }

        if format == "dataset":
            ds_report = xr.Dataset(
                data_vars={
                    k: ([], v, {"description": f"Quality metric: {k}"})
                    for k, v in report.items()
                },
            )
            update_history(ds_report, "Generated quality report.")
            return ds_report
        if format != "dict":
            raise ValueError(f"Unknown format: '{format}'. Must be 'dict' or 'dataset'.")
        return report

    def weights_to_xarray(self) -> xr.Dataset:
        """
        Export regridding weights and metadata as an xarray Dataset.

        Returns
        -------
        xr.Dataset
            Dataset containing 1-based 'row', 'col', and 'S' (weights).
        """
        ds = SparseMatrixCOO.from_scipy(self.weights).to_dataset()
        ds.attrs.update(self._weights_attrs())
        return ds

    def __repr__(self) -> str:
        return (
            f"Regridder(src_shape={self._shape_source}, "
            f"dst_shape={self._shape_target}, "
            f"skipna={self.skipna}, mean_polar={self.mean_polar})"
        )

    # ------------------------------------------------------------------
    def __call__(
        self,
        obj: Union[xr.DataArray, xr.Dataset],
        skipna: Optional[bool] = None,
        na_thres: Optional[float] = None,
    ) -> Union[xr.DataArray, xr.Dataset]:
        """
        Apply regridding to an input DataArray or Dataset.

        Parameters
        ----------
        obj : xarray.DataArray or xarray.Dataset
            The input data to regrid.
        skipna : bool, optional
            Whether to handle NaNs by re-normalizing weights.
            If None, uses the value set during initialization.
        na_thres : float, optional
            Threshold for NaN handling.
            If None, uses the value set during initialization.

        Returns
        -------
        xarray.DataArray or xarray.Dataset
            The regridded data.
        """
        if skipna is None:
            skipna = self.skipna
        if na_thres is None:
            na_thres = self.na_thres

        if isinstance(obj, xr.Dataset):
            return self._regrid_dataset(obj, skipna=skipna, na_thres=na_thres)
        elif isinstance(obj, xr.DataArray):
            return self._regrid_dataarray(obj, skipna=skipna, na_thres=na_thres)
        raise TypeError("Input must be an xarray.DataArray or xarray.Dataset.")

    def _source_dims(self, da_in: xr.DataArray) -> Optional[Tuple[str, str]]:
        """Names of the (lat, lon) dimensions of `da_in`, None if it has none."""
        if "lat" in da_in.dims and "lon" in da_in.dims:
            return ("lat", "lon")
        try:
            lat_dims = da_in.cf["latitude"].dims
            lon_dims = da_in.cf["longitude"].dims
        except KeyError:
            return None
        if len(lat_dims) != 1 or len(lon_dims) != 1:
            return None
        return (lat_dims[0], lon_dims[0])

    def _regrid_dataarray(
        self,
        da_in: xr.DataArray,
        skipna: bool,
        na_thres: float,
        update_history_attr: bool = True,
    ) -> xr.DataArray:
        """
        Regrid a single DataArray.

        Parameters
        ----------
        da_in : xr.DataArray
            The input DataArray.
        skipna : bool
            Whether to handle NaNs.
        na_thres : float
            NaN threshold.
        update_history_attr : bool, default True
            Whether to update the history attribute.

        Returns
        -------
        xr.DataArray
            The regridded DataArray.
        """
        dims_source = self._source_dims(da_in)
        if dims_source is None:
            raise ValueError(
                f"Could not identify latitude/longitude dimensions of {da_in.name!r}"
            )
        shape = tuple(da_in.sizes[d] for d in dims_source)
        if shape != self._shape_source:
            raise DimensionMismatchError(
                f"Spatial shape of {da_in.name!r} does not match the source grid",
                expected=self._shape_source,
                actual=shape,
            )

        if not np.issubdtype(da_in.dtype, np.floating):
            da_in = da_in.astype(np.float64)

        temp_output_core_dims = [f"{d}_new" for d in self._dims_target]
        out = xr.apply_ufunc(
            apply_weights_core,
            da_in,
            kwargs={
                "weights_matrix": self.weights,
                "n_source_dims": 2,
                "shape_target": self._shape_target,
                "skipna": skipna,
                "total_weights": self._total_weights,
                "na_thres": na_thres,
                "mean_polar": self.mean_polar,
            },
            input_core_dims=[list(dims_source)],
            output_core_dims=[temp_output_core_dims],
            dask="parallelized",
            vectorize=False,
            output_dtypes=[da_in.dtype],
            dask_gufunc_kwargs={
                "output_sizes": dict(zip(temp_output_core_dims, self._shape_target)),
                "allow_rechunk": True,
            },
        )
        out = out.rename(dict(zip(temp_output_core_dims, self._dims_target)))

        out.name = da_in.name
        out.attrs.update(da_in.attrs)
        out = out.assign_coords(
            {
                c: self.target_grid_ds.coords[c]
                for c in self.target_grid_ds.coords
                if set(self.target_grid_ds.coords[c].dims).issubset(self._dims_target)
            }
        )

        if update_history_attr:
            history_msg = (
                "Regridded using xcoupler.Regridder (conservative overlap, "
                f"skipna={skipna}, na_thres={na_thres}, mean_polar={self.mean_polar})"
            )
            update_history(out, history_msg)
        return out

    def _regrid_dataset(
        self,
        ds_in: xr.Dataset,
        skipna: bool,
        na_thres: float,
    ) -> xr.Dataset:
        """
        Regrid all data variables with latitude/longitude dimensions.

        Variables without them are carried over unchanged.
        """
        regridded = {}
        for name, da in ds_in.data_vars.items():
            if self._source_dims(da) is not None:
                regridded[name] = self._regrid_dataarray(
                    da, skipna=skipna, na_thres=na_thres, update_history_attr=False
                )
            else:
                regridded[name] = da

        ds_out = xr.Dataset(regridded, attrs=dict(ds_in.attrs))
        update_history(
            ds_out,
            "Regridded using xcoupler.Regridder (conservative overlap, "
            f"skipna={skipna}, na_thres={na_thres}, mean_polar={self.mean_polar})",
        )
        return ds_out
