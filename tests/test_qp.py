import numpy as np
import pytest

from xcoupler.errors import NaNInInputError, OptimizationFailedError
from xcoupler.qp import (
    KKTSolver,
    QPSolver,
    SheetOperators,
    build_projection_problem,
    project_to_basis,
    solve_projection,
)
from xcoupler.sparse import SparseMatrixCOO


def identity(n):
    return SparseMatrixCOO((n, n), np.arange(n), np.arange(n), np.ones(n))


def single_sheet(f2, S=None):
    S = SparseMatrixCOO((1, 2), [0, 0], [0, 1], [1.0, 1.0]) if S is None else S
    return {"sheet": SheetOperators(S=S, XM=identity(2), f2=np.asarray(f2))}


def test_projection_keeps_feasible_field():
    """A fine field that already satisfies the constraints is returned as is."""
    RM = SparseMatrixCOO((1, 2), [0, 0], [0, 1], [0.5, 0.5])
    x = project_to_basis(RM, single_sheet([1.0, 3.0]))
    np.testing.assert_allclose(x, [1.0, 3.0], atol=1e-6)


def test_projection_enforces_constraints():
    """Constrained basis functions take the coarse integral; others follow f2."""
    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    x = project_to_basis(RM, single_sheet([1.0, 3.0]))
    np.testing.assert_allclose(x, [2.0, 3.0], atol=1e-6)


def test_problem_assembly():
    """Objective and constraints of the packed problem."""
    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    problem = build_projection_problem(RM, single_sheet([1.0, 3.0]))

    assert (problem.n, problem.m) == (2, 1)
    # Only the lower triangle of H is stored
    assert np.all(problem.H.row >= problem.H.col)
    np.testing.assert_allclose(problem.hessian().toarray(), 2.0 * np.eye(2))
    np.testing.assert_allclose(problem.g, [-2.0, -6.0])
    assert problem.f == pytest.approx(10.0)
    np.testing.assert_allclose(problem.b, [2.0])
    np.testing.assert_allclose(problem.x0, [0.0, 0.0])

    # The objective is |XM x - f2|^2
    assert problem.objective([1.0, 3.0]) == pytest.approx(0.0)
    assert problem.objective([2.0, 3.0]) == pytest.approx(1.0)
    np.testing.assert_allclose(problem.constraint_residual([2.0, 3.0]), [0.0])


def test_unused_basis_functions_are_nan():
    """Basis functions referenced by nothing are packed away and come back NaN."""
    RM = SparseMatrixCOO((2, 3), [0], [0], [1.0])
    S = SparseMatrixCOO((2, 2), [0, 0], [0, 1], [1.0, 1.0])
    XM = SparseMatrixCOO((2, 3), [0, 1], [0, 1], [1.0, 1.0])
    sheets = {"s": SheetOperators(S=S, XM=XM, f2=np.array([1.0, 3.0]))}

    problem = build_projection_problem(RM, sheets)
    assert problem.space3.size() == 2
    assert problem.space1.size() == 1

    x = solve_projection(problem)
    np.testing.assert_allclose(x[:2], [2.0, 3.0], atol=1e-6)
    assert np.isnan(x[2])


def test_multiple_sheets():
    """Sheets are packed side by side and share the coarse constraint."""
    RM = SparseMatrixCOO((1, 2), [0, 0], [0, 1], [0.5, 0.5])
    S_a = SparseMatrixCOO((1, 1), [0], [0], [1.0])
    S_b = SparseMatrixCOO((1, 1), [0], [0], [1.0])
    XM_a = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    XM_b = SparseMatrixCOO((1, 2), [0], [1], [1.0])
    sheets = {
        "a": SheetOperators(S=S_a, XM=XM_a, f2=np.array([1.0])),
        "b": SheetOperators(S=S_b, XM=XM_b, f2=np.array([3.0])),
    }
    problem = build_projection_problem(RM, sheets)
    assert problem.space2.size() == 2
    assert problem.space2.to_full(1) == ("b", 0)
    np.testing.assert_allclose(problem.b, [2.0])
    np.testing.assert_allclose(solve_projection(problem), [1.0, 3.0], atol=1e-6)


def test_nan_in_fine_field():
    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    with pytest.raises(NaNInInputError, match="f2") as info:
        build_projection_problem(RM, single_sheet([1.0, np.nan]))
    assert info.value.indices == [("sheet", 1)]


def test_nan_in_initial_guess():
    """NaN initial guesses are fatal unless the caller supplies a substitute."""
    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    with pytest.raises(NaNInInputError, match="initial guess") as info:
        build_projection_problem(RM, single_sheet([1.0, 3.0]), initial3=[np.nan, 1.0])
    assert info.value.indices == [0]

    problem = build_projection_problem(
        RM, single_sheet([1.0, 3.0]), initial3=[np.nan, 1.0], initial_fill=0.5
    )
    np.testing.assert_allclose(problem.x0, [0.5, 1.0])


def test_min_row_count_drops_constraints():
    """A dropped constraint disappears from A and b; the solution follows f2."""
    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    problem = build_projection_problem(RM, single_sheet([1.0, 3.0]), min_row_count=2)
    assert problem.A.nnz == 0
    assert problem.m == 0
    assert problem.b.shape == (0,)
    np.testing.assert_allclose(solve_projection(problem), [1.0, 3.0], atol=1e-6)


def test_min_row_count_keeps_other_constraints():
    """Only the starved constraint is dropped; the others are still enforced."""
    RM = SparseMatrixCOO((2, 3), [0, 1, 1], [0, 1, 2], [1.0, 0.5, 0.5])
    S = SparseMatrixCOO((2, 3), [0, 0, 1], [0, 1, 2], [1.0, 1.0, 1.0])
    sheets = {"s": SheetOperators(S=S, XM=identity(3), f2=np.array([1.0, 3.0, 5.0]))}

    problem = build_projection_problem(RM, sheets, min_row_count=2)
    assert problem.m == 1
    np.testing.assert_allclose(problem.b, [5.0])
    x = solve_projection(problem)
    # Basis function 0 follows f2; 1 and 2 share the shortfall of the kept constraint
    np.testing.assert_allclose(x, [1.0, 4.0, 6.0], atol=1e-6)


def test_custom_solver():
    """Any object with a matching solve method can stand in for the solver."""

    class ReturnsGuess:
        def solve(self, H, g, f, A, b, x0, infinity):
            return x0 + 1.0

    class WrongShape:
        def solve(self, H, g, f, A, b, x0, infinity):
            return np.zeros(len(x0) + 1)

    assert isinstance(ReturnsGuess(), QPSolver)
    assert isinstance(KKTSolver(), QPSolver)

    RM = SparseMatrixCOO((1, 2), [0], [0], [1.0])
    problem = build_projection_problem(RM, single_sheet([1.0, 3.0]))
    np.testing.assert_allclose(solve_projection(problem, ReturnsGuess()), [1.0, 1.0])
    with pytest.raises(OptimizationFailedError, match="shape"):
        solve_projection(problem, WrongShape())


def test_infeasible_constraints():
    """Contradicting constraints cannot be satisfied."""
    RM = SparseMatrixCOO((2, 2), [0, 1], [0, 0], [1.0, 1.0])
    S = SparseMatrixCOO((2, 2), [0, 1], [0, 1], [1.0, 1.0])
    sheets = {"s": SheetOperators(S=S, XM=identity(2), f2=np.array([1.0, 3.0]))}
    with pytest.raises(OptimizationFailedError, match="Constraints not satisfied"):
        project_to_basis(RM, sheets)
