from .errors import (
    DimensionMismatchError,
    DuplicateIdentifierError,
    MalformedGridError,
    NaNInInputError,
    NotFoundError,
    OptimizationFailedError,
    OutOfRangeError,
    UnsupportedVersionError,
    XCouplerError,
)
from .grid import Cell, Coordinates, Grid, GridMap, GridType, Parameterization, Vertex
from .hntr import DATMIS, Hntr, HntrGrid
from .indexing import IndexSpace, IndexSpace2, pack_matrix
from .io import define_grid, grid_from_dataset, grid_to_dataset, read_grid, write_grid
from .parallel import build_matrix_dask
from .qp import KKTSolver, QPSolver, SheetOperators, build_projection_problem, project_to_basis
from .regridder import Regridder
from .sparse import SparseMatrixCOO, check_row_sums, multiply, remove_small_constraints
from .utils import (
    create_global_hntr_grid,
    create_hntr_grid_dataset,
    create_lonlat_grid,
    create_xy_grid,
    hntr_grid_from_dataset,
)

__all__ = [
    "Regridder",
    "Hntr",
    "HntrGrid",
    "DATMIS",
    "Grid",
    "GridMap",
    "Cell",
    "Vertex",
    "GridType",
    "Coordinates",
    "Parameterization",
    "SparseMatrixCOO",
    "multiply",
    "check_row_sums",
    "remove_small_constraints",
    "IndexSpace",
    "IndexSpace2",
    "pack_matrix",
    "define_grid",
    "grid_to_dataset",
    "grid_from_dataset",
    "write_grid",
    "read_grid",
    "build_matrix_dask",
    "SheetOperators",
    "build_projection_problem",
    "project_to_basis",
    "QPSolver",
    "KKTSolver",
    "create_global_hntr_grid",
    "create_hntr_grid_dataset",
    "create_lonlat_grid",
    "create_xy_grid",
    "hntr_grid_from_dataset",
    "XCouplerError",
    "DuplicateIdentifierError",
    "NotFoundError",
    "OutOfRangeError",
    "DimensionMismatchError",
    "UnsupportedVersionError",
    "MalformedGridError",
    "OptimizationFailedError",
    "NaNInInputError",
]
