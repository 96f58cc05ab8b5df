from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Hashable, Mapping, Optional, Protocol, runtime_checkable

import numpy as np
import scipy.sparse
import scipy.sparse.linalg

from .errors import DimensionMismatchError, OptimizationFailedError, check_finite
from .indexing import IndexSpace, IndexSpace2, pack_matrix
from .sparse import SparseMatrixCOO, multiply, remove_small_constraints

logger = logging.getLogger(__name__)

# Bound value the solver treats as unbounded
INFINITY = 1e20


@dataclasses.dataclass
class SheetOperators:
    """
    Operators of one fine sub-grid ("sheet") of a projection problem.

    Attributes
    ----------
    S : SparseMatrixCOO
        Fine -> coarse overlap matrix (``n1 x n2``), not yet normalised.
    XM : SparseMatrixCOO
        Basis -> fine interpolation matrix (``n2 x n3``).
    f2 : np.ndarray
        The field on the fine grid (length ``n2``).
    area1 : np.ndarray, optional
        Area of each coarse cell covered by this sheet (length ``n1``).
        Defaults to the row sums of `S`.
    """

    S: SparseMatrixCOO
    XM: SparseMatrixCOO
    f2: np.ndarray
    area1: Optional[np.ndarray] = None


@dataclasses.dataclass
class ProjectionProblem:
    """
    Packed equality-constrained quadratic program.

    ``min 1/2 x^T H x + g^T x + f  subject to  A x = b``

    Only the lower triangle of the symmetric `H` is stored.
    """

    H: SparseMatrixCOO
    g: np.ndarray
    f: float
    A: SparseMatrixCOO
    b: np.ndarray
    x0: np.ndarray
    space1: IndexSpace
    space2: IndexSpace2
    space3: IndexSpace

    @property
    def n(self) -> int:
        """Number of variables."""
        return self.space3.size()

    @property
    def m(self) -> int:
        """Number of constraints."""
        return self.space1.size()

    def hessian(self) -> scipy.sparse.csr_matrix:
        """The full symmetric `H` rebuilt from its lower triangle."""
        low = self.H.to_scipy().tocsr()
        return (low + low.T - scipy.sparse.diags(low.diagonal())).tocsr()

    def objective(self, x: Any) -> float:
        x = np.asarray(x, dtype=np.float64)
        return float(0.5 * x @ (self.hessian() @ x) + self.g @ x + self.f)

    def constraint_residual(self, x: Any) -> np.ndarray:
        return self.A.apply(np.asarray(x, dtype=np.float64)) - self.b

    def expand(self, x: Any, fill: float = np.nan) -> np.ndarray:
        """Scatter a packed solution back into the full basis space."""
        return self.space3.unpack(x, fill=fill)


@runtime_checkable
class QPSolver(Protocol):
    """Anything able to solve a packed `ProjectionProblem`."""

    def solve(
        self,
        H: SparseMatrixCOO,
        g: np.ndarray,
        f: float,
        A: SparseMatrixCOO,
        b: np.ndarray,
        x0: np.ndarray,
        infinity: float = INFINITY,
    ) -> np.ndarray:
        """
        Return the optimal vector.

        Raises
        ------
        OptimizationFailedError
            If no acceptable solution was found.
        """
        ...


class KKTSolver:
    """
    Reference solver: least squares on the KKT system of the problem.

    Solves ``[[H, A^T], [A, 0]] [dx, lam] = [-(g + H x0), b - A x0]``
    with LSMR, starting from the initial guess. A singular `H` is fine:
    LSMR returns the least-norm step.

    Parameters
    ----------
    tol : float, default 1e-8
        Relative tolerance of the constraint residual.
    maxiter : int, optional
        Iteration limit of LSMR, ``10 * (n + m)`` if None.
    """

    def __init__(self, tol: float = 1e-8, maxiter: Optional[int] = None) -> None:
        self.tol = tol
        self.maxiter = maxiter

    def solve(
        self,
        H: SparseMatrixCOO,
        g: np.ndarray,
        f: float,
        A: SparseMatrixCOO,
        b: np.ndarray,
        x0: np.ndarray,
        infinity: float = INFINITY,
    ) -> np.ndarray:
        # There are no bounds, `infinity` has nothing to cap
        n = H.nrow
        m = A.nrow
        low = H.to_scipy().tocsr()
        Hs = low + low.T - scipy.sparse.diags(low.diagonal())
        As = A.to_scipy().tocsr()
        x0 = np.asarray(x0, dtype=np.float64)
        if m == 0:
            kkt = Hs
            rhs = -(g + Hs @ x0)
        else:
            kkt = scipy.sparse.bmat([[Hs, As.T], [As, None]], format="csr")
            rhs = np.concatenate([-(g + Hs @ x0), b - As @ x0])
        result = scipy.sparse.linalg.lsmr(
            kkt,
            rhs,
            atol=self.tol * 1e-2,
            btol=self.tol * 1e-2,
            maxiter=self.maxiter or 10 * (n + m),
        )
        x = x0 + result[0][:n]
        logger.debug("KKTSolver: n=%d m=%d istop=%d itn=%d", n, m, result[1], result[2])

        if not np.all(np.isfinite(x)):
            raise OptimizationFailedError("KKT solve produced non-finite values")
        resid = np.linalg.norm(As @ x - b)
        if resid > self.tol * (1.0 + np.linalg.norm(b)) * max(1.0, np.sqrt(m)):
            raise OptimizationFailedError(
                f"Constraints not satisfied: |Ax - b| = {resid:g} (istop={result[1]})"
            )
        return x


def _pack_sheet_matrix(
    matrix: SparseMatrixCOO,
    sheet: Hashable,
    space2: IndexSpace2,
    row_space: Optional[IndexSpace],
    col_space: Optional[IndexSpace],
    fine_axis: int,
    drop_unused: bool = False,
) -> SparseMatrixCOO:
    """Pack a per-sheet matrix whose `fine_axis` is in the sheet's local space."""
    group = space2.group_space(sheet)
    offset = space2.packed_slice(sheet).start
    if fine_axis == 0:
        packed = pack_matrix(matrix, group, col_space)
        rows, cols = packed.row + offset, packed.col
        shape = (space2.size(), packed.ncol)
    else:
        packed = pack_matrix(matrix, row_space, group, drop_unused=drop_unused)
        rows, cols = packed.row, packed.col + offset
        shape = (packed.nrow, space2.size())
    return SparseMatrixCOO(shape, rows, cols, packed.data)


def build_projection_problem(
    RM: SparseMatrixCOO,
    sheets: Mapping[Hashable, SheetOperators],
    initial3: Optional[Any] = None,
    initial_fill: Optional[float] = None,
    min_row_count: Optional[int] = None,
) -> ProjectionProblem:
    """
    Assemble the packed QP projecting fine fields onto the basis space.

    Finds the basis-space vector ``x`` whose fine-grid rendition
    ``XM x`` is closest to the fine fields (least squares), subject to
    the coarse-grid integrals being exactly those of the fine fields:
    ``RM x = S f2``.

    Parameters
    ----------
    RM : SparseMatrixCOO
        Basis -> coarse operator (``n1 x n3``), the constraints.
    sheets : mapping
        Sheet id -> `SheetOperators`.
    initial3 : array_like, optional
        Initial guess in the full basis space (length ``n3``); zeros if None.
    initial_fill : float, optional
        Value substituted for NaN in `initial3`. If None, NaN raises.
    min_row_count : int, optional
        Drop constraints involving fewer basis functions than this
        (see `remove_small_constraints`). Rows of `S` for dropped
        constraints are dropped with them.

    Returns
    -------
    ProjectionProblem

    Raises
    ------
    DimensionMismatchError
        If the operators have inconsistent shapes.
    NaNInInputError
        If a used fine value or initial guess is NaN.
    """
    n1, n3 = RM.shape
    if min_row_count is not None:
        RM = remove_small_constraints(RM, min_row_count)

    # Only coarse cells still constrained by RM take part; S rows outside are dropped
    used1 = set(RM.row.tolist())
    used3 = set(RM.col.tolist())
    used2 = []
    sizes2: Dict[Hashable, int] = {}
    for sheet, ops in sheets.items():
        n2 = ops.S.ncol
        if ops.S.nrow != n1:
            raise DimensionMismatchError(
                f"S of sheet {sheet!r} does not match RM rows", expected=n1, actual=ops.S.nrow
            )
        if ops.XM.shape != (n2, n3):
            raise DimensionMismatchError(
                f"XM of sheet {sheet!r} has wrong shape", expected=(n2, n3), actual=ops.XM.shape
            )
        if np.shape(ops.f2) != (n2,):
            raise DimensionMismatchError(
                f"f2 of sheet {sheet!r} has wrong shape", expected=(n2,), actual=np.shape(ops.f2)
            )
        sizes2[sheet] = n2
        used2.extend((sheet, int(c)) for c in np.unique(ops.S.col))
        used2.extend((sheet, int(r)) for r in np.unique(ops.XM.row))
        used3.update(ops.XM.col.tolist())

    space1 = IndexSpace(n1, used1, "space1")
    space2 = IndexSpace2(sizes2, used2, "space2")
    space3 = IndexSpace(n3, used3, "space3")
    n1p, n2p, n3p = space1.size(), space2.size(), space3.size()
    logger.info("Projection problem: n1p=%d n2p=%d n3p=%d", n1p, n2p, n3p)

    RMp = pack_matrix(RM, space1, space3)
    Sp = SparseMatrixCOO((n1p, n2p))
    XMp = SparseMatrixCOO((n2p, n3p))
    area1 = np.zeros(n1)
    for sheet, ops in sheets.items():
        Sp.append(
            _pack_sheet_matrix(ops.S, sheet, space2, space1, None, fine_axis=1, drop_unused=True)
        )
        XMp.append(_pack_sheet_matrix(ops.XM, sheet, space2, None, space3, fine_axis=0))
        area1 += ops.S.sum_per_row_array() if ops.area1 is None else np.asarray(ops.area1)

    f2p = space2.pack({sheet: ops.f2 for sheet, ops in sheets.items()})
    check_finite(f2p, "f2", index_map=[space2.to_full(i) for i in range(n2p)])

    # Complete the regridding matrix by dividing by the coarse cell area
    area1p = space1.pack(area1)
    area1p_inv = np.zeros(n1p)
    np.divide(1.0, area1p, out=area1p_inv, where=area1p != 0)
    Sp.scale_rows(area1p_inv)

    # |XM x - f2|^2 = 1/2 x^T (2 XM^T XM) x - 2 f2 . XM x + f2 . f2
    XMp_T = XMp.transpose()
    H = multiply(XMp_T, XMp).lower_triangle()
    H.scale_rows(np.full(n3p, 2.0))
    g = -2.0 * XMp_T.apply(f2p)
    f = float(f2p @ f2p)

    b = Sp.apply(f2p)

    if initial3 is None:
        x0 = np.zeros(n3p)
    else:
        x0 = space3.pack(np.asarray(initial3, dtype=np.float64))
        nan = np.isnan(x0)
        if nan.any():
            if initial_fill is None:
                check_finite(x0, "initial guess", index_map=space3.full_ids)
            logger.warning(
                "NaN in initial guess at %d basis functions, using %g",
                int(nan.sum()),
                initial_fill,
            )
            x0 = np.where(nan, initial_fill, x0)

    return ProjectionProblem(H, g, f, RMp, b, x0, space1, space2, space3)


def solve_projection(
    problem: ProjectionProblem,
    solver: Optional[QPSolver] = None,
    infinity: float = INFINITY,
) -> np.ndarray:
    """
    Solve a packed problem and expand the answer to the full basis space.

    Returns
    -------
    np.ndarray
        Length ``n3``; NaN for basis functions not in the problem.
    """
    solver = KKTSolver() if solver is None else solver
    x = np.asarray(
        solver.solve(problem.H, problem.g, problem.f, problem.A, problem.b, problem.x0, infinity),
        dtype=np.float64,
    )
    if x.shape != (problem.n,):
        raise OptimizationFailedError(
            f"Solver returned shape {x.shape}, expected ({problem.n},)"
        )
    if not np.all(np.isfinite(x)):
        raise OptimizationFailedError("Solver returned non-finite values")
    logger.info("Projection solved: objective = %g", problem.objective(x))
    return problem.expand(x)


def project_to_basis(
    RM: SparseMatrixCOO,
    sheets: Mapping[Hashable, SheetOperators],
    initial3: Optional[Any] = None,
    solver: Optional[QPSolver] = None,
    **kwargs: Any,
) -> np.ndarray:
    """`build_projection_problem` followed by `solve_projection`."""
    problem = build_projection_problem(RM, sheets, initial3=initial3, **kwargs)
    return solve_projection(problem, solver)
