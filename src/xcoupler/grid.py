from __future__ import annotations

import dataclasses
import logging
from enum import IntEnum
from typing import (
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

import numpy as np
import pyproj

from .errors import DuplicateIdentifierError, NotFoundError

logger = logging.getLogger(__name__)


class GridType(IntEnum):
    """Overall kind of grid."""

    GENERIC = 0  # No special structure
    XY = 1  # Rectilinear X/Y grid
    LONLAT = 2  # Global lat-lon grid (maybe with polar caps)
    EXCHANGE = 3  # Exchange grid, from overlap of two other grids


class Coordinates(IntEnum):
    """Coordinate system used for vertex positions."""

    XY = 0  # Vertices in x/y coordinates on a plane
    LONLAT = 1  # Vertices in lon/lat coordinates on a sphere


class Parameterization(IntEnum):
    """How values are represented on the grid."""

    L0 = 0  # Constant value in each grid cell
    L1 = 1  # Value specified at each vertex, linear in between


@dataclasses.dataclass(frozen=True)
class Vertex:
    """A point of the grid; ordered by `index`."""

    x: float
    y: float
    index: int = -1

    def __lt__(self, other: "Vertex") -> bool:
        return self.index < other.index

    def __str__(self) -> str:
        return f"{self.index}:({self.x}, {self.y})"


@dataclasses.dataclass
class Cell:
    """
    A polygonal grid cell.

    The cell refers to its vertices by identifier only; the vertices
    themselves are owned by the vertex GridMap of the enclosing Grid.

    Attributes
    ----------
    vertex_refs : tuple of int
        Identifiers of the bounding vertices, in winding order. The polygon
        is closed implicitly from the last vertex back to the first.
    index : int
        Identifier of the cell in the grid's full index space.
    i, j, k : int
        Optional auxiliary coordinates. For structured grids, the column
        and row of the cell; for exchange grids, the indices of the two
        overlapping source cells.
    native_area : float
        Area of the cell in its native (unprojected) coordinate system.
    """

    vertex_refs: Tuple[int, ...] = ()
    index: int = -1
    i: int = -1
    j: int = -1
    k: int = -1
    native_area: float = 0.0

    def __post_init__(self) -> None:
        self.vertex_refs = tuple(int(v) for v in self.vertex_refs)

    def __len__(self) -> int:
        return len(self.vertex_refs)

    def __iter__(self) -> Iterator[int]:
        return iter(self.vertex_refs)

    def __lt__(self, other: "Cell") -> bool:
        return self.index < other.index

    @property
    def ijk(self) -> Tuple[int, int, int]:
        return (self.i, self.j, self.k)

    def __str__(self) -> str:
        refs = ", ".join(str(v) for v in self.vertex_refs)
        return f"Cell(ix={self.index}: [{refs}])"


T = TypeVar("T", Vertex, Cell)


class GridMap(Generic[T]):
    """
    Dict-like container of the cells (or vertices) of a grid, keyed by index.

    A grid only needs to realize the entities relevant to its sub-domain;
    `nfull()` reports the size of the theoretical full index space while
    `nrealized()` counts what is actually stored.
    """

    def __init__(self, what: str = "entity") -> None:
        self._what = what
        self._items: Dict[int, T] = {}
        self._nfull: int = -1
        self._max_realized_index: int = -1

    def add(self, item: T) -> T:
        """
        Add an entity, assigning the next free index if it has none.

        Returns
        -------
        Vertex or Cell
            The stored entity (with its final index).

        Raises
        ------
        DuplicateIdentifierError
            If an entity with the same index is already present.
        """
        if item.index < 0:
            item = dataclasses.replace(item, index=self._max_realized_index + 1)
        if item.index in self._items:
            raise DuplicateIdentifierError(item.index, self._what)
        self._items[item.index] = item
        self._max_realized_index = max(self._max_realized_index, item.index)
        return item

    def erase(self, index: int) -> T:
        """Remove and return the entity with identifier `index`."""
        try:
            return self._items.pop(index)
        except KeyError:
            raise NotFoundError(index, f"{self._what} map") from None

    def at(self, index: int) -> T:
        try:
            return self._items[index]
        except KeyError:
            raise NotFoundError(index, f"{self._what} map") from None

    def __contains__(self, index: object) -> bool:
        return index in self._items

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def keys(self) -> List[int]:
        return list(self._items.keys())

    def clear(self) -> None:
        self._items.clear()
        self._max_realized_index = -1

    def nrealized(self) -> int:
        return len(self._items)

    def nfull(self) -> int:
        if self._nfull >= 0:
            return self._nfull
        return self._max_realized_index + 1

    def set_nfull(self, nfull: int) -> None:
        """Fix the size of the full index space (negative to infer it again)."""
        self._nfull = int(nfull)

    def sorted(self) -> List[T]:
        """Return the stored entities sorted by index."""
        return sorted(self._items.values(), key=lambda item: item.index)

    def _recompute_max_index(self) -> None:
        self._max_realized_index = max(self._items, default=-1)


def _make_transformer(
    proj: Union[str, pyproj.CRS, pyproj.Transformer],
) -> pyproj.Transformer:
    if isinstance(proj, pyproj.Transformer):
        return proj
    return pyproj.Transformer.from_crs("EPSG:4326", pyproj.CRS(proj), always_xy=True)


class Grid:
    """
    A named set of polygonal cells and the vertices bounding them.

    Attributes
    ----------
    name : str
        Name of the grid, also the default variable prefix when persisted.
    type : GridType
        Overall kind of grid.
    coordinates : Coordinates
        Coordinate system of the vertices.
    parameterization : Parameterization
        Whether values live on cells (L0) or on vertices (L1).
    sproj : str, optional
        If coordinates are XY: the projection (Proj/CRS string) relating
        the local x/y coordinates to a point on the globe.
    """

    def __init__(
        self,
        name: str = "",
        type: GridType = GridType.XY,
        coordinates: Coordinates = Coordinates.XY,
        parameterization: Parameterization = Parameterization.L0,
        sproj: Optional[str] = None,
    ) -> None:
        self.name = name
        self.type = GridType(type)
        self.coordinates = Coordinates(coordinates)
        self.parameterization = Parameterization(parameterization)
        self.sproj = sproj
        self.vertices: GridMap[Vertex] = GridMap("vertex")
        self.cells: GridMap[Cell] = GridMap("cell")

    def __repr__(self) -> str:
        return (
            f"Grid(name={self.name!r}, type={self.type.name}, "
            f"coordinates={self.coordinates.name}, "
            f"parameterization={self.parameterization.name}, "
            f"cells={self.cells.nrealized()}/{self.cells.nfull()}, "
            f"vertices={self.vertices.nrealized()}/{self.vertices.nfull()})"
        )

    def add_vertex(self, x: float, y: float, index: int = -1) -> Vertex:
        return self.vertices.add(Vertex(float(x), float(y), int(index)))

    def add_cell(
        self,
        vertex_refs: Sequence[int],
        index: int = -1,
        i: int = -1,
        j: int = -1,
        k: int = -1,
        native_area: float = 0.0,
    ) -> Cell:
        """
        Add a cell bounded by already-registered vertices.

        Raises
        ------
        NotFoundError
            If one of `vertex_refs` is not a vertex of this grid.
        """
        for ref in vertex_refs:
            if ref not in self.vertices:
                raise NotFoundError(ref, f"vertices of grid {self.name!r}")
        cell = Cell(tuple(vertex_refs), int(index), i, j, k, float(native_area))
        return self.cells.add(cell)

    def ndata(self) -> int:
        """Dimensionality of the vector space of fields on this grid."""
        if self.parameterization == Parameterization.L1:
            return self.vertices.nfull()
        elif self.parameterization == Parameterization.L0:
            return self.cells.nfull()
        raise ValueError(f"Unknown parameterization {self.parameterization!r}")

    def clear(self) -> None:
        self.vertices.clear()
        self.cells.clear()

    def vertex_xy(self, cell: Cell) -> np.ndarray:
        """Return the `(n, 2)` array of the cell's vertex coordinates."""
        xy = np.empty((len(cell), 2))
        for n, ref in enumerate(cell.vertex_refs):
            vertex = self.vertices.at(ref)
            xy[n, 0] = vertex.x
            xy[n, 1] = vertex.y
        return xy

    def ll_to_xy(self) -> pyproj.Transformer:
        """
        Transformer from lon/lat to this grid's projected x/y coordinates.

        Raises
        ------
        ValueError
            If the grid carries no projection.
        """
        if not self.sproj:
            raise ValueError(f"Grid {self.name!r} has no projection (sproj)")
        return _make_transformer(self.sproj)

    def proj_area(
        self,
        cell: Cell,
        proj: Optional[Union[str, pyproj.CRS, pyproj.Transformer]] = None,
        signed: bool = False,
    ) -> float:
        """
        Area of a cell's polygon by the surveyor's (shoelace) formula.

        Parameters
        ----------
        cell : Cell
            The cell; its vertices must belong to this grid.
        proj : str, pyproj.CRS or pyproj.Transformer, optional
            For cells in lon/lat coordinates: the projection to the plane.
            Strings and CRS objects are the target of a lon/lat -> x/y
            transform; a Transformer is used as given.
        signed : bool, default False
            Return the signed area (positive for counter-clockwise winding)
            instead of its absolute value.

        Returns
        -------
        float
            Area of the (projected) polygon.
        """
        if len(cell) == 0:
            return 0.0
        xy = self.vertex_xy(cell)
        x, y = xy[:, 0], xy[:, 1]
        if proj is not None:
            x, y = _make_transformer(proj).transform(x, y)
            x = np.asarray(x)
            y = np.asarray(y)
        # Closing edge runs from the last vertex back to the first
        x0 = np.roll(x, 1)
        y0 = np.roll(y, 1)
        area = 0.5 * float(np.sum(x0 * y - x * y0))
        return area if signed else abs(area)

    def native_areas(self) -> np.ndarray:
        """Native area of every realized cell, sorted by cell index."""
        return np.array([cell.native_area for cell in self.cells.sorted()])

    def filter_cells(self, include_cell: Callable[[Cell], bool]) -> None:
        """
        Remove cells (and then orphaned vertices) not relevant to us.

        The full-space sizes are frozen first, so downstream consumers still
        see the size of the original problem.

        Parameters
        ----------
        include_cell : callable
            Predicate; cells for which it returns False are removed.
        """
        logger.debug(
            "BEGIN filter_cells(%s): %d cells, %d vertices",
            self.name,
            self.cells.nrealized(),
            self.vertices.nrealized(),
        )
        self.cells.set_nfull(self.cells.nfull())
        self.vertices.set_nfull(self.vertices.nfull())

        good_vertices = set()
        for cell in self.cells:
            if include_cell(cell):
                good_vertices.update(cell.vertex_refs)
            else:
                self.cells.erase(cell.index)
        self.cells._recompute_max_index()

        for vertex in self.vertices:
            if vertex.index not in good_vertices:
                self.vertices.erase(vertex.index)
        self.vertices._recompute_max_index()

        logger.debug(
            "END filter_cells(%s): %d cells, %d vertices",
            self.name,
            self.cells.nrealized(),
            self.vertices.nrealized(),
        )
