import numpy as np
import pytest

from xcoupler.errors import DimensionMismatchError, NotFoundError, UnsupportedVersionError
from xcoupler.grid import Coordinates, GridType, Parameterization
from xcoupler.io import (
    GRID_VERSION,
    define_grid,
    grid_from_dataset,
    grid_to_dataset,
    read_grid,
    write_grid,
)
from xcoupler.utils import create_lonlat_grid
from xcoupler import HntrGrid


def assert_same_grid(a, b):
    assert a.name == b.name
    assert a.type == b.type
    assert a.coordinates == b.coordinates
    assert a.parameterization == b.parameterization
    assert a.sproj == b.sproj
    assert a.cells.nfull() == b.cells.nfull()
    assert a.vertices.nfull() == b.vertices.nfull()

    va, vb = a.vertices.sorted(), b.vertices.sorted()
    assert [v.index for v in va] == [v.index for v in vb]
    np.testing.assert_array_equal([(v.x, v.y) for v in va], [(v.x, v.y) for v in vb])

    ca, cb = a.cells.sorted(), b.cells.sorted()
    assert [c.index for c in ca] == [c.index for c in cb]
    assert [c.ijk for c in ca] == [c.ijk for c in cb]
    assert [c.vertex_refs for c in ca] == [c.vertex_refs for c in cb]
    np.testing.assert_array_equal(
        [c.native_area for c in ca], [c.native_area for c in cb]
    )


def test_round_trip_netcdf(sample_grid, tmp_path):
    """A grid of 5 cells and 8 vertices survives a netCDF round trip."""
    assert sample_grid.cells.nrealized() == 5
    assert sample_grid.vertices.nrealized() == 8
    path = tmp_path / "grid.nc"

    write_grid(sample_grid, path, vname="ice")
    grid = read_grid(path, vname="ice")

    assert_same_grid(sample_grid, grid)
    assert grid.cells.nfull() == 21
    assert grid.vertices.nfull() == 15


def test_round_trip_lonlat(tmp_path):
    """Grids without a projection and several grids in one file."""
    lonlat = create_lonlat_grid(HntrGrid(4, 3, 0.0, 3600.0), name="atm")
    coarse = create_lonlat_grid(HntrGrid(2, 3, 0.5, 3600.0), name="coarse")
    path = tmp_path / "grids.nc"

    write_grid(lonlat, path)
    write_grid(coarse, path, mode="a")

    assert_same_grid(lonlat, read_grid(path, "atm"))
    assert_same_grid(coarse, read_grid(path, "coarse"))
    with pytest.raises(ValueError, match="several grids"):
        read_grid(path)


def test_read_grid_default_name(tmp_path):
    """With the default names, a single grid is found under its own name."""
    grid = create_lonlat_grid(HntrGrid(4, 3, 0.0, 3600.0), name="atm")
    path = tmp_path / "atm.nc"
    write_grid(grid, path)
    assert_same_grid(grid, read_grid(path))
    assert_same_grid(grid, grid_from_dataset(grid_to_dataset(grid)))

    with pytest.raises(NotFoundError):
        grid_from_dataset(HntrGrid(4, 3).to_dataset("atm"))


def test_dataset_layout(sample_grid):
    """Variables and metadata follow the documented layout."""
    ds = grid_to_dataset(sample_grid)
    info = ds["sample.info"].attrs
    assert info["version"] == GRID_VERSION
    assert info["type"] == GridType.EXCHANGE.value
    assert info["coordinates"] == Coordinates.XY.value
    assert info["parameterization"] == Parameterization.L0.value
    assert info["projection"].startswith("+proj=stere")
    assert info["cells.nfull"] == 21
    assert "type.comment" in info

    starts = ds["sample.cells.vertex_refs_start"].values
    np.testing.assert_array_equal(starts, [0, 4, 8, 11, 15, 18])
    assert ds["sample.cells.vertex_refs"].size == 18
    np.testing.assert_array_equal(ds["sample.cells.index"].values, [3, 4, 7, 11, 20])
    assert ds["sample.vertices.xy"].shape == (8, 2)
    assert ds["sample.cells.ijk"].shape == (5, 3)


def test_lonlat_grid_has_no_projection():
    grid = create_lonlat_grid(HntrGrid(2, 1, 0.0, 10800.0))
    grid.sproj = "EPSG:4326"
    info = define_grid(grid).info
    assert "projection" not in info
    assert grid_from_dataset(grid_to_dataset(grid), "lonlat").sproj is None


def test_write_ticket_detects_changes(sample_grid):
    """Writing fails if the grid changed after define."""
    ticket = define_grid(sample_grid, "g")
    sample_grid.add_vertex(9.0, 9.0)
    with pytest.raises(DimensionMismatchError, match="changed after define"):
        ticket.write()


def test_write_ticket_deferred(sample_grid):
    """The ticket can be written into an existing dataset later."""
    ticket = define_grid(sample_grid, "g")
    other = grid_to_dataset(create_lonlat_grid(HntrGrid(2, 1, 0.0, 10800.0)))
    ds = ticket.write(other)
    assert "g.info" in ds
    assert "lonlat.info" in ds
    assert_same_grid(sample_grid, grid_from_dataset(ds, "g"))


def test_read_version_mismatch(sample_grid):
    ds = grid_to_dataset(sample_grid, "g")
    ds.variables["g.info"].attrs["version"] = np.int32(1)
    with pytest.raises(UnsupportedVersionError, match="version 1"):
        grid_from_dataset(ds, "g")


def test_read_missing_grid(sample_grid):
    ds = grid_to_dataset(sample_grid, "g")
    with pytest.raises(NotFoundError, match="other.info"):
        grid_from_dataset(ds, "other")


def test_read_bad_offsets(sample_grid):
    ds = grid_to_dataset(sample_grid, "g")
    dim = "g.cells.nrealized_plus1"
    ds = ds.assign({"g.cells.vertex_refs_start": ([dim], np.array([0, 4, 8, 11, 15, 17]))})
    with pytest.raises(DimensionMismatchError, match="vertex_refs_start"):
        grid_from_dataset(ds, "g")


def test_read_dangling_vertex_ref(sample_grid):
    ds = grid_to_dataset(sample_grid, "g")
    refs = ds["g.cells.vertex_refs"].values.copy()
    refs[0] = 1000
    ds = ds.assign({"g.cells.vertex_refs": (["g.cells.nvertex_refs"], refs)})
    with pytest.raises(NotFoundError, match="1000"):
        grid_from_dataset(ds, "g")
