from __future__ import annotations

from typing import Any, Optional, Tuple

import numpy as np


def _matmul(matrix: Any, data: np.ndarray) -> np.ndarray:
    """
    Sparse matrix product ``(matrix @ data.T).T``.

    Parameters
    ----------
    matrix : scipy.sparse matrix
        The weight matrix, shape ``(n_dst, n_src)``.
    data : np.ndarray
        Dense data, shape ``(n_other, n_src)``.

    Returns
    -------
    np.ndarray
        Array of shape ``(n_other, n_dst)``.
    """
    return np.asarray((matrix @ data.T).T)


def apply_weights_core(
    data_block: np.ndarray,
    weights_matrix: Any,
    n_source_dims: int,
    shape_target: Tuple[int, ...],
    skipna: bool = False,
    total_weights: Optional[np.ndarray] = None,
    na_thres: float = 1.0,
    mean_polar: bool = False,
) -> np.ndarray:
    """
    Apply a regridding operator to a block of fields.

    Parameters
    ----------
    data_block : np.ndarray
        Input data. The ``n_source_dims`` spatial dimensions must be last.
    weights_matrix : scipy.sparse.csr_matrix
        The operator, shape ``(prod(shape_target), n_src)``.
    n_source_dims : int
        Number of trailing spatial dimensions of `data_block`.
    shape_target : tuple of int
        Shape of the destination spatial grid.
    skipna : bool, default False
        Renormalise by the weight of non-NaN source cells.
    total_weights : np.ndarray, optional
        Row sums of `weights_matrix` (weight of each destination cell
        when nothing is missing).
    na_thres : float, default 1.0
        With `skipna`, destination cells whose valid-weight fraction is
        below ``1 - na_thres`` are set to NaN.
    mean_polar : bool, default False
        Replace the southern- and northern-most destination rows by their
        longitudinal mean (see `mean_polar_rows`).

    Returns
    -------
    np.ndarray
        The regridded block, spatial dimensions replaced by `shape_target`.
    """
    original_shape = data_block.shape
    spatial_shape = original_shape[len(original_shape) - n_source_dims :]
    other_dims_shape = original_shape[: len(original_shape) - n_source_dims]
    n_spatial = int(np.prod(spatial_shape))
    n_other = int(np.prod(other_dims_shape))

    flat_data = data_block.reshape(n_other, n_spatial)

    if not skipna:
        result = _matmul(weights_matrix, flat_data)
    else:
        mask = np.isnan(flat_data)
        if not mask.any():
            result = _matmul(weights_matrix, flat_data)
            if total_weights is not None:
                with np.errstate(divide="ignore", invalid="ignore"):
                    result = result / total_weights
        else:
            # A mask that is the same for every slice only needs one product
            is_mask_stationary = n_other == 1 or bool(np.all(mask == mask[0:1]))
            if is_mask_stationary:
                mask = mask[0:1]

            safe_data = np.where(mask, flat_data.dtype.type(0), flat_data)
            result = _matmul(weights_matrix, safe_data)
            weights_sum = _matmul(weights_matrix, np.logical_not(mask).astype(np.float64))

            with np.errstate(divide="ignore", invalid="ignore"):
                result = result / weights_sum
                if total_weights is not None:
                    fraction_valid = weights_sum / total_weights
                    result = np.where(
                        fraction_valid < (1.0 - na_thres - 1e-6), np.nan, result
                    )
            # Destination cells that saw only missing input
            result = np.where(weights_sum == 0, np.nan, result)

    new_shape = other_dims_shape + tuple(shape_target)
    out = result.reshape(new_shape).astype(data_block.dtype, copy=False)
    if mean_polar:
        mean_polar_rows(out)
    return out


def mean_polar_rows(result: np.ndarray) -> np.ndarray:
    """
    Replace the first and last rows of ``(..., lat, lon)`` fields by their mean.

    Cells of a latitude row have equal area, so the plain mean over
    longitude is the area-weighted one. NaN cells are ignored; a row with
    no valid cell stays NaN.

    Parameters
    ----------
    result : np.ndarray
        Regridded fields, latitude and longitude as the last two axes.

    Returns
    -------
    np.ndarray
        `result`, modified in place.
    """
    for j in sorted({0, result.shape[-2] - 1}):
        row = result[..., j, :]
        valid = ~np.isnan(row)
        count = valid.sum(axis=-1, keepdims=True)
        total = np.where(valid, row, 0).sum(axis=-1, keepdims=True)
        with np.errstate(divide="ignore", invalid="ignore"):
            mean = np.where(count > 0, total / count, np.nan)
        result[..., j, :] = mean
    return result
