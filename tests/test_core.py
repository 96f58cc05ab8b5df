import numpy as np
from scipy.sparse import csr_matrix

from xcoupler.core import apply_weights_core, mean_polar_rows

W = csr_matrix(np.array([[0.5, 0.5, 0.0], [0.0, 0.0, 1.0]]))


def test_apply_weights_plain():
    """Leading dimensions are kept, spatial ones replaced by the target shape."""
    data = np.arange(12.0).reshape(2, 2, 3)
    out = apply_weights_core(data, W, n_source_dims=1, shape_target=(2,))
    assert out.shape == (2, 2, 2)
    np.testing.assert_allclose(out[0, 0], [0.5, 2.0])
    np.testing.assert_allclose(out[1, 1], [9.5, 11.0])


def test_apply_weights_keeps_dtype():
    data = np.ones((4, 3), dtype=np.float32)
    out = apply_weights_core(data, W, n_source_dims=1, shape_target=(2,))
    assert out.dtype == np.float32


def test_apply_weights_skipna_renormalises():
    """Missing inputs are dropped and the remaining weights renormalised."""
    data = np.array([[1.0, 3.0, 5.0], [np.nan, 3.0, 5.0], [np.nan, np.nan, np.nan]])
    total = np.asarray(W.sum(axis=1)).ravel()

    out = apply_weights_core(
        data, W, 1, (2,), skipna=True, total_weights=total, na_thres=1.0
    )
    np.testing.assert_allclose(out[0], [2.0, 5.0])
    np.testing.assert_allclose(out[1], [3.0, 5.0])
    assert np.isnan(out[2]).all()

    # Half of the first destination cell is missing: too much for na_thres=0.4
    out = apply_weights_core(
        data, W, 1, (2,), skipna=True, total_weights=total, na_thres=0.4
    )
    assert np.isnan(out[1, 0])
    assert out[1, 1] == 5.0


def test_apply_weights_stationary_mask():
    """A mask shared by every slice gives the same answer as slice by slice."""
    data = np.array([[np.nan, 2.0, 4.0], [np.nan, 6.0, 8.0]])
    total = np.ones(2)
    out = apply_weights_core(data, W, 1, (2,), skipna=True, total_weights=total)
    np.testing.assert_allclose(out, [[2.0, 4.0], [6.0, 8.0]])


def test_apply_weights_mean_polar():
    W2 = csr_matrix(np.eye(6))
    data = np.arange(6.0).reshape(1, 3, 2)
    out = apply_weights_core(data, W2, 2, (3, 2), mean_polar=True)
    np.testing.assert_allclose(out[0], [[0.5, 0.5], [2.0, 3.0], [4.5, 4.5]])


def test_mean_polar_rows_ignores_nan():
    field = np.array([[1.0, np.nan, 3.0], [4.0, 5.0, 6.0], [np.nan, np.nan, np.nan]])
    mean_polar_rows(field)
    np.testing.assert_allclose(field[0], [2.0, 2.0, 2.0])
    np.testing.assert_allclose(field[1], [4.0, 5.0, 6.0])
    assert np.isnan(field[2]).all()
