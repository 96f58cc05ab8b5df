import numpy as np
import pytest

from xcoupler import Grid, HntrGrid
from xcoupler.grid import Coordinates, GridType, Parameterization


@pytest.fixture
def unit_square_grid():
    """One counter-clockwise unit square cell in x/y."""
    grid = Grid(name="square")
    for n, (x, y) in enumerate([(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]):
        grid.add_vertex(x, y, n)
    grid.add_cell([0, 1, 2, 3], index=0, native_area=1.0)
    return grid


@pytest.fixture
def sample_grid():
    """A grid with 5 cells of mixed shape over 8 vertices, with gaps in the indices."""
    grid = Grid(
        name="sample",
        type=GridType.EXCHANGE,
        coordinates=Coordinates.XY,
        parameterization=Parameterization.L0,
        sproj="+proj=stere +lat_0=90 +lat_ts=71 +lon_0=-39 +datum=WGS84 +units=m",
    )
    xy = [
        (0.0, 0.0),
        (1.0, 0.0),
        (2.0, 0.5),
        (0.0, 1.0),
        (1.0, 1.0),
        (2.0, 1.5),
        (0.5, 2.0),
        (1.5, 2.5),
    ]
    for n, (x, y) in enumerate(xy):
        grid.add_vertex(x, y, 2 * n)
    cells = [
        ((0, 2, 8, 6), 3, (0, 0, -1), 1.0),
        ((2, 4, 10, 8), 4, (1, 0, -1), 1.25),
        ((6, 8, 12), 7, (0, 1, 2), 0.5),
        ((8, 10, 14, 12), 11, (1, 1, 3), 0.9),
        ((10, 14, 8), 20, (-1, -1, 4), 0.33),
    ]
    for refs, index, (i, j, k), area in cells:
        grid.add_cell(refs, index=index, i=i, j=j, k=k, native_area=area)
    return grid


@pytest.fixture
def coarse_hntr_grid():
    """4 x 3 global grid with 60 degree rows."""
    return HntrGrid(4, 3, 0.0, 60.0 * 60)


@pytest.fixture
def fine_hntr_grid():
    """8 x 6 global grid with 30 degree rows."""
    return HntrGrid(8, 6, 0.0, 30.0 * 60)


@pytest.fixture
def rng():
    return np.random.default_rng(42)
