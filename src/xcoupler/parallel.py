from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

import dask
import numpy as np

from .hntr import Hntr
from .sparse import SparseMatrixCOO

if TYPE_CHECKING:
    import dask.distributed

logger = logging.getLogger(__name__)


def _row_chunks(jm: int, n_chunks: int) -> List[Tuple[int, int]]:
    """Split ``range(jm)`` into at most `n_chunks` contiguous (start, stop) pairs."""
    n_chunks = max(1, min(int(n_chunks), jm))
    bounds = np.linspace(0, jm, n_chunks + 1).round().astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


def _compute_chunk_weights(
    hntr: Hntr,
    b_rows: Tuple[int, int],
    wtb: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Worker function building the rows of the operator for some B latitudes.

    Parameters
    ----------
    hntr : Hntr
        The interpolator (read-only; shared by all tasks).
    b_rows : (start, stop)
        Destination latitude rows handled by this task.
    wtb : np.ndarray, optional
        Destination weights.

    Returns
    -------
    rows, cols, data : np.ndarray
        Entries of this chunk (0-based, global indices).
    """
    chunk = hntr.matrix(wtb=wtb, b_rows=b_rows)
    return chunk.row, chunk.col, chunk.data


def _assemble_weights_task(
    results: List[Tuple[np.ndarray, np.ndarray, np.ndarray]],
    n_dst: int,
    n_src: int,
) -> SparseMatrixCOO:
    """
    Concatenate the chunks, in order, into one matrix.

    Parameters
    ----------
    results : list of tuples
        ``(rows, cols, data)`` of every chunk.
    n_dst, n_src : int
        Shape of the full operator.

    Returns
    -------
    SparseMatrixCOO
        The combined operator.
    """
    matrix = SparseMatrixCOO((n_dst, n_src))
    for rows, cols, data in results:
        matrix.append(SparseMatrixCOO((n_dst, n_src), rows, cols, data))
    return matrix


def build_matrix_dask(
    hntr: Hntr,
    wtb: Optional[Any] = None,
    n_chunks: int = 4,
    client: Optional["dask.distributed.Client"] = None,
    scheduler: Optional[str] = None,
) -> SparseMatrixCOO:
    """
    Build `Hntr.matrix` as independent tasks over destination row chunks.

    Chunks are disjoint in destination rows, so the combination by
    `SparseMatrixCOO.append` gives the same entries as a single call to
    `Hntr.matrix`. The combine step runs sequentially on the caller.

    Parameters
    ----------
    hntr : Hntr
        The interpolator.
    wtb : array_like, optional
        Destination weights (default 1).
    n_chunks : int, default 4
        Number of tasks (capped at the number of destination rows).
    client : dask.distributed.Client, optional
        Submit the tasks to this cluster instead of using `dask.delayed`.
    scheduler : str, optional
        Scheduler passed to `dask.compute` when no client is given
        (e.g. ``"synchronous"``, ``"threads"``).

    Returns
    -------
    SparseMatrixCOO
        The operator, shape ``(Bgrid.size, Agrid.size)``.
    """
    if wtb is not None:
        wtb = np.asarray(wtb, dtype=np.float64).ravel()
    chunks = _row_chunks(hntr.Bgrid.jm, n_chunks)
    logger.debug("build_matrix_dask: %d chunks over %d rows", len(chunks), hntr.Bgrid.jm)

    if client is not None:
        hntr_future = client.scatter(hntr, broadcast=True)
        futures = [
            client.submit(_compute_chunk_weights, hntr_future, rows, wtb, pure=False)
            for rows in chunks
        ]
        results = client.gather(futures)
    else:
        tasks = [dask.delayed(_compute_chunk_weights)(hntr, rows, wtb) for rows in chunks]
        results = dask.compute(*tasks, scheduler=scheduler)

    return _assemble_weights_task(list(results), hntr.Bgrid.size, hntr.Agrid.size)
