import warnings

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from xcoupler.errors import DimensionMismatchError, OutOfRangeError
from xcoupler.sparse import (
    SparseMatrixCOO,
    check_row_sums,
    multiply,
    remove_small_constraints,
)


def test_add_and_sum_duplicates():
    """Repeated coordinates are kept until sum_duplicates merges them."""
    m = SparseMatrixCOO((2, 2))
    m.add(0, 1, 1.0)
    m.add(0, 1, 2.0)
    m.add(1, 0, 3.0)
    assert m.nnz == 3
    np.testing.assert_array_equal(m.todense(), [[0.0, 3.0], [3.0, 0.0]])

    m.sum_duplicates()
    assert m.nnz == 2
    np.testing.assert_array_equal(m.todense(), [[0.0, 3.0], [3.0, 0.0]])


def test_add_out_of_range():
    m = SparseMatrixCOO((2, 3))
    with pytest.raises(OutOfRangeError):
        m.add(2, 0, 1.0)
    with pytest.raises(OutOfRangeError):
        m.add_entries([0, 1], [0, 3], [1.0, 1.0])
    with pytest.raises(DimensionMismatchError):
        m.add_entries([0, 1], [0], [1.0, 1.0])
    assert m.nnz == 0


def test_transpose():
    m = SparseMatrixCOO((2, 3), [0, 1], [2, 0], [5.0, 7.0])
    t = m.transpose()
    assert t.shape == (3, 2)
    np.testing.assert_array_equal(t.todense(), m.todense().T)
    np.testing.assert_array_equal(m.T.todense(), m.todense().T)


def test_multiply_matches_dense(rng):
    a = SparseMatrixCOO.from_scipy(csr_matrix(rng.random((4, 3)) * (rng.random((4, 3)) > 0.5)))
    b = SparseMatrixCOO.from_scipy(csr_matrix(rng.random((3, 5)) * (rng.random((3, 5)) > 0.5)))
    np.testing.assert_allclose(multiply(a, b).todense(), a.todense() @ b.todense())

    with pytest.raises(DimensionMismatchError, match="Inner dimensions"):
        multiply(a, a)


def test_multiply_sums_duplicate_inputs():
    a = SparseMatrixCOO((1, 2), [0, 0], [1, 1], [1.0, 2.0])
    b = SparseMatrixCOO((2, 1), [1], [0], [4.0])
    np.testing.assert_array_equal(multiply(a, b).todense(), [[12.0]])


def test_sum_per_row():
    """Only rows with entries appear in the mapping."""
    m = SparseMatrixCOO((4, 2), [0, 0, 2], [0, 1, 1], [0.25, 0.75, 2.0])
    assert m.sum_per_row() == {0: 1.0, 2: 2.0}
    np.testing.assert_array_equal(m.sum_per_row_array(), [1.0, 0.0, 2.0, 0.0])


def test_append():
    a = SparseMatrixCOO((3, 4), [0], [0], [1.0])
    b = SparseMatrixCOO((3, 4), [2, 2], [3, 0], [2.0, 3.0])
    a.append(b)
    assert a.nnz == 3
    np.testing.assert_array_equal(a.row, [0, 2, 2])
    with pytest.raises(DimensionMismatchError):
        a.append(SparseMatrixCOO((4, 3)))


def test_scale_and_lower_triangle():
    m = SparseMatrixCOO((2, 2), [0, 0, 1, 1], [0, 1, 0, 1], [1.0, 2.0, 3.0, 4.0])
    np.testing.assert_array_equal(m.lower_triangle().todense(), [[1.0, 0.0], [3.0, 4.0]])

    m.scale_rows([2.0, 0.5])
    np.testing.assert_array_equal(m.todense(), [[2.0, 4.0], [1.5, 2.0]])
    m.scale_cols([1.0, 0.0])
    np.testing.assert_array_equal(m.todense(), [[2.0, 0.0], [1.5, 0.0]])
    with pytest.raises(DimensionMismatchError):
        m.scale_rows([1.0])


def test_apply_ignore_nan():
    m = SparseMatrixCOO((2, 3), [0, 0, 1], [0, 1, 2], [0.5, 0.5, 1.0])
    x = np.array([2.0, np.nan, 4.0])
    y = m.apply(x)
    assert np.isnan(y[0])
    assert y[1] == 4.0
    np.testing.assert_array_equal(m.apply(x, ignore_nan=True), [1.0, 4.0])


def test_dataset_is_one_based():
    m = SparseMatrixCOO((2, 3), [0, 1], [2, 0], [0.5, 1.0])
    ds = m.to_dataset()
    np.testing.assert_array_equal(ds["row"].values, [1, 2])
    np.testing.assert_array_equal(ds["col"].values, [3, 1])
    assert (ds.attrs["n_dst"], ds.attrs["n_src"]) == (2, 3)

    back = SparseMatrixCOO.from_dataset(ds)
    assert back.shape == m.shape
    np.testing.assert_array_equal(back.todense(), m.todense())


def test_check_row_sums_reports_bad_rows():
    """Violations are warned about and returned, never corrected."""
    m = SparseMatrixCOO((3, 2), [0, 0, 1], [0, 1, 0], [0.5, 0.5, 0.5])
    with pytest.warns(RuntimeWarning, match="rowsum != expected in weights"):
        bad = check_row_sums(m, tol=1e-9, name="weights")
    # Row 2 has no entries at all and sums to zero
    assert bad == {1: 0.5, 2: 0.0}
    assert m.nnz == 3

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert check_row_sums(m, expected=[1.0, 0.5, 0.0]) == {}


def test_check_row_sums_empty_row_and_mask():
    """A row that lost all its weights fails unless it is masked out."""
    m = SparseMatrixCOO((2, 2), [0], [0], [1.0])
    with pytest.warns(RuntimeWarning, match="rowsum"):
        assert check_row_sums(m, expected=1.0) == {1: 0.0}

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert check_row_sums(m, rows=[True, False]) == {}
    with pytest.raises(DimensionMismatchError):
        check_row_sums(m, rows=[True])


def test_remove_small_constraints():
    """Rows with too few columns go, taking their columns with them."""
    m = SparseMatrixCOO((2, 3), [0, 0, 0, 1], [0, 1, 2, 2], [1.0, 1.0, 1.0, 1.0])
    kept = remove_small_constraints(m, 2)
    assert kept.shape == m.shape
    np.testing.assert_array_equal(kept.todense(), [[1.0, 1.0, 0.0], [0.0, 0.0, 0.0]])


def test_remove_small_constraints_iterates():
    """Removing a column can starve another row."""
    m = SparseMatrixCOO((2, 2), [0, 0, 1], [0, 1, 1], [1.0, 1.0, 1.0])
    assert remove_small_constraints(m, 2).nnz == 0
    assert remove_small_constraints(m, 1).nnz == 3
