from __future__ import annotations

import logging
import warnings
from typing import Any, Dict, Iterator, Optional, Tuple, Union

import numpy as np
import xarray as xr
from scipy.sparse import coo_matrix, spmatrix

from .errors import DimensionMismatchError, OutOfRangeError

logger = logging.getLogger(__name__)

# Tolerance of the row-sum conservation check
DEFAULT_TOLERANCE = 1e-9


class SparseMatrixCOO:
    """
    Mutable sparse matrix made of (row, col, value) triplets.

    Entries are accumulated with `add` / `add_entries`; entries sharing a
    coordinate are kept separately until `sum_duplicates` merges them.
    This is the output format of every regridding operator.

    Parameters
    ----------
    shape : tuple of int
        ``(nrow, ncol)``.
    rows, cols, vals : array_like, optional
        Initial entries.
    """

    def __init__(
        self,
        shape: Tuple[int, int],
        rows: Optional[Any] = None,
        cols: Optional[Any] = None,
        vals: Optional[Any] = None,
    ) -> None:
        nrow, ncol = shape
        if nrow < 0 or ncol < 0:
            raise DimensionMismatchError(f"Invalid matrix shape {shape}")
        self.shape: Tuple[int, int] = (int(nrow), int(ncol))
        self._row = np.zeros(0, dtype=np.int64)
        self._col = np.zeros(0, dtype=np.int64)
        self._val = np.zeros(0, dtype=np.float64)
        # Scalar adds are buffered and folded into the arrays on demand
        self._pending: list[Tuple[int, int, float]] = []
        if rows is not None:
            self.add_entries(rows, cols, vals)

    # ------------------------------------------------------------------
    @property
    def nrow(self) -> int:
        return self.shape[0]

    @property
    def ncol(self) -> int:
        return self.shape[1]

    def _flush(self) -> None:
        if self._pending:
            r, c, v = zip(*self._pending)
            self._pending = []
            self._row = np.concatenate([self._row, np.asarray(r, dtype=np.int64)])
            self._col = np.concatenate([self._col, np.asarray(c, dtype=np.int64)])
            self._val = np.concatenate([self._val, np.asarray(v, dtype=np.float64)])

    @property
    def row(self) -> np.ndarray:
        self._flush()
        return self._row

    @property
    def col(self) -> np.ndarray:
        self._flush()
        return self._col

    @property
    def data(self) -> np.ndarray:
        self._flush()
        return self._val

    @property
    def nnz(self) -> int:
        """Number of stored entries (duplicates included)."""
        return len(self._val) + len(self._pending)

    def __len__(self) -> int:
        return self.nnz

    def __iter__(self) -> Iterator[Tuple[int, int, float]]:
        self._flush()
        for r, c, v in zip(self._row, self._col, self._val):
            yield int(r), int(c), float(v)

    def __repr__(self) -> str:
        return f"SparseMatrixCOO(shape={self.shape}, nnz={self.nnz})"

    def copy(self) -> "SparseMatrixCOO":
        return SparseMatrixCOO(self.shape, self.row.copy(), self.col.copy(), self.data.copy())

    # ------------------------------------------------------------------
    def add(self, row: int, col: int, value: float) -> None:
        """Append one entry."""
        if not 0 <= row < self.nrow:
            raise OutOfRangeError(row, self.nrow, "matrix rows")
        if not 0 <= col < self.ncol:
            raise OutOfRangeError(col, self.ncol, "matrix columns")
        self._pending.append((int(row), int(col), float(value)))

    def add_entries(self, rows: Any, cols: Any, vals: Any) -> None:
        """Append many entries at once."""
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        vals = np.asarray(vals, dtype=np.float64).ravel()
        if not (len(rows) == len(cols) == len(vals)):
            raise DimensionMismatchError(
                "rows, cols and vals must have the same length",
                expected=len(rows),
                actual=(len(cols), len(vals)),
            )
        if len(rows) == 0:
            return
        self._check_bounds(rows, self.nrow, "matrix rows")
        self._check_bounds(cols, self.ncol, "matrix columns")
        self._flush()
        self._row = np.concatenate([self._row, rows])
        self._col = np.concatenate([self._col, cols])
        self._val = np.concatenate([self._val, vals])

    @staticmethod
    def _check_bounds(index: np.ndarray, size: int, where: str) -> None:
        bad = (index < 0) | (index >= size)
        if bad.any():
            raise OutOfRangeError(int(index[np.argmax(bad)]), size, where)

    def append(self, other: "SparseMatrixCOO") -> None:
        """Concatenate another matrix's entries verbatim."""
        if other.shape != self.shape:
            raise DimensionMismatchError(
                "Cannot append matrices of different shape",
                expected=self.shape,
                actual=other.shape,
            )
        self.add_entries(other.row, other.col, other.data)

    def clear(self) -> None:
        self._pending = []
        self._row = self._row[:0]
        self._col = self._col[:0]
        self._val = self._val[:0]

    # ------------------------------------------------------------------
    def sum_duplicates(self) -> "SparseMatrixCOO":
        """Merge entries sharing a coordinate by summation (in place)."""
        m = self.to_scipy()
        m.sum_duplicates()
        self._row = m.row.astype(np.int64)
        self._col = m.col.astype(np.int64)
        self._val = m.data.astype(np.float64)
        return self

    def transpose(self) -> "SparseMatrixCOO":
        return SparseMatrixCOO(
            (self.ncol, self.nrow), self.col.copy(), self.row.copy(), self.data.copy()
        )

    @property
    def T(self) -> "SparseMatrixCOO":
        return self.transpose()

    def sum_per_row(self) -> Dict[int, float]:
        """Total of the entries of every row that has at least one entry."""
        totals = np.bincount(self.row, weights=self.data, minlength=self.nrow)
        present = np.unique(self.row)
        return {int(r): float(totals[r]) for r in present}

    def sum_per_row_array(self) -> np.ndarray:
        """Row totals as a dense vector of length `nrow` (0 for empty rows)."""
        return np.bincount(self.row, weights=self.data, minlength=self.nrow)

    def scale_rows(self, factors: Any) -> "SparseMatrixCOO":
        """Multiply every entry by the factor of its row (in place)."""
        factors = np.asarray(factors, dtype=np.float64)
        if factors.shape != (self.nrow,):
            raise DimensionMismatchError(
                "Row factors do not match matrix", expected=(self.nrow,), actual=factors.shape
            )
        self._val = self.data * factors[self._row]
        return self

    def scale_cols(self, factors: Any) -> "SparseMatrixCOO":
        """Multiply every entry by the factor of its column (in place)."""
        factors = np.asarray(factors, dtype=np.float64)
        if factors.shape != (self.ncol,):
            raise DimensionMismatchError(
                "Column factors do not match matrix", expected=(self.ncol,), actual=factors.shape
            )
        self._val = self.data * factors[self.col]
        return self

    def lower_triangle(self) -> "SparseMatrixCOO":
        """Entries with ``row >= col`` only."""
        keep = self.row >= self.col
        return SparseMatrixCOO(self.shape, self._row[keep], self._col[keep], self._val[keep])

    def apply(self, x: Any, ignore_nan: bool = False) -> np.ndarray:
        """
        Compute ``y = M x``.

        Parameters
        ----------
        x : array_like
            Vector of length `ncol`.
        ignore_nan : bool, default False
            Skip entries whose input value is NaN instead of propagating it.
        """
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (self.ncol,):
            raise DimensionMismatchError(
                "Vector does not match matrix columns", expected=(self.ncol,), actual=x.shape
            )
        xs = x[self.col]
        vals = self.data
        if ignore_nan:
            ok = ~np.isnan(xs)
            return np.bincount(self._row[ok], weights=vals[ok] * xs[ok], minlength=self.nrow)
        return np.bincount(self._row, weights=vals * xs, minlength=self.nrow)

    def todense(self) -> np.ndarray:
        return self.to_scipy().toarray()

    # ------------------------------------------------------------------
    def to_scipy(self) -> coo_matrix:
        return coo_matrix((self.data, (self.row, self.col)), shape=self.shape)

    @classmethod
    def from_scipy(cls, matrix: spmatrix) -> "SparseMatrixCOO":
        m = coo_matrix(matrix)
        return cls(m.shape, m.row, m.col, m.data)

    def to_dataset(self) -> xr.Dataset:
        """
        Export as a Dataset of 1-based `row`, `col` and `S` vectors.

        Returns
        -------
        xr.Dataset
            The matrix in the ESMF/SCRIP weight-file layout.
        """
        return xr.Dataset(
            data_vars={
                "row": (["n_s"], self.row + 1),
                "col": (["n_s"], self.col + 1),
                "S": (["n_s"], self.data),
            },
            attrs={"n_dst": self.nrow, "n_src": self.ncol},
        )

    @classmethod
    def from_dataset(cls, ds: xr.Dataset) -> "SparseMatrixCOO":
        return cls(
            (int(ds.attrs["n_dst"]), int(ds.attrs["n_src"])),
            ds["row"].values - 1,
            ds["col"].values - 1,
            ds["S"].values,
        )


def multiply(a: SparseMatrixCOO, b: SparseMatrixCOO) -> SparseMatrixCOO:
    """
    Sparse product ``a @ b``; duplicate output coordinates are summed.

    Raises
    ------
    DimensionMismatchError
        If the inner dimensions differ.
    """
    if a.ncol != b.nrow:
        raise DimensionMismatchError(
            "Inner dimensions of matrix product differ", expected=a.ncol, actual=b.nrow
        )
    product = a.to_scipy().tocsr() @ b.to_scipy().tocsr()
    return SparseMatrixCOO.from_scipy(product)


def check_row_sums(
    matrix: SparseMatrixCOO,
    expected: Union[float, np.ndarray] = 1.0,
    tol: float = DEFAULT_TOLERANCE,
    name: str = "matrix",
    rows: Optional[Any] = None,
) -> Dict[int, float]:
    """
    Checksum an interpolation matrix: the weights of each row must sum to one.

    Every row is checked, including rows without entries (their sum is 0).
    Offending rows are reported (warned about), never corrected.

    Parameters
    ----------
    matrix : SparseMatrixCOO
        The operator to check.
    expected : float or np.ndarray, default 1.0
        Expected row sum, either a scalar or one value per row.
    tol : float
        Absolute tolerance.
    name : str
        Name used in the warning.
    rows : array_like of bool, optional
        Mask of the rows to check (length `nrow`); all rows if None.

    Returns
    -------
    dict
        Mapping of offending row -> computed sum (empty if all rows pass).
    """
    expected_arr = np.broadcast_to(np.asarray(expected, dtype=np.float64), (matrix.nrow,))
    totals = matrix.sum_per_row_array()
    failed = np.abs(totals - expected_arr) > tol
    if rows is not None:
        rows = np.asarray(rows, dtype=bool)
        if rows.shape != (matrix.nrow,):
            raise DimensionMismatchError(
                "Row mask does not match matrix", expected=(matrix.nrow,), actual=rows.shape
            )
        failed &= rows
    bad = {int(r): float(totals[r]) for r in np.flatnonzero(failed)}
    if bad:
        shown = ", ".join(f"{r}: {s:g}" for r, s in list(bad.items())[:10])
        warnings.warn(
            f"rowsum != expected in {name} for {len(bad)} rows ({shown})",
            RuntimeWarning,
            stacklevel=2,
        )
    return bad


def remove_small_constraints(
    constraints: SparseMatrixCOO, min_row_count: int
) -> SparseMatrixCOO:
    """
    Remove constraint rows that involve too few variables.

    Rows with fewer than `min_row_count` surviving entries are deleted
    together with every column they touch. Deleting columns can starve
    other rows, so the process iterates until nothing more is removed.

    Returns
    -------
    SparseMatrixCOO
        A new matrix of the same shape without the deleted rows/columns.
    """
    rows = constraints.row
    cols = constraints.col
    delete_row = np.zeros(constraints.nrow, dtype=bool)
    delete_col = np.zeros(constraints.ncol, dtype=bool)

    while True:
        alive = ~delete_row[rows] & ~delete_col[cols]
        row_count = np.bincount(rows[alive], minlength=constraints.nrow)
        starved = alive & (row_count[rows] < min_row_count)
        num_deleted = int(starved.sum())
        logger.debug("remove_small_constraints: num_deleted = %d", num_deleted)
        if num_deleted == 0:
            break
        delete_row[rows[starved]] = True
        delete_col[cols[starved]] = True

    keep = ~delete_row[rows] & ~delete_col[cols]
    return SparseMatrixCOO(constraints.shape, rows[keep], cols[keep], constraints.data[keep])
