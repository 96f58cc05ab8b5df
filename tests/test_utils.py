import numpy as np
import pytest
import xarray as xr

from xcoupler import HntrGrid
from xcoupler.errors import MalformedGridError
from xcoupler.grid import Coordinates, GridType
from xcoupler.hntr import EQ_RAD
from xcoupler.utils import (
    create_global_hntr_grid,
    create_hntr_grid_dataset,
    create_lonlat_grid,
    create_xy_grid,
    hntr_grid_from_dataset,
    update_history,
)


def test_update_history_newest_first():
    da = xr.DataArray([1.0])
    update_history(da, "first")
    update_history(da, "second")
    lines = da.attrs["history"].split("\n")
    assert len(lines) == 2
    assert lines[0].endswith(": second")
    assert lines[1].endswith(": first")


def test_create_global_hntr_grid():
    grid = create_global_hntr_grid(10.0, 5.0)
    assert (grid.im, grid.jm) == (72, 18)
    assert grid.dlat == 600.0
    np.testing.assert_allclose(grid.lon_edges[[0, -1]], [-180.0, 180.0])


def test_grid_dataset_layout():
    grid = create_global_hntr_grid(30.0, 30.0)
    ds = create_hntr_grid_dataset(grid, history_msg="made for a test")
    assert ds.sizes["lat"] == 6
    assert ds.sizes["lon"] == 12
    assert ds["lat_b"].shape == (6, 2)
    assert ds["lon_b"].shape == (12, 2)
    np.testing.assert_allclose(ds["lat_b"].values[0], [-90.0, -60.0])
    np.testing.assert_allclose(ds["area"].sum(), 4.0 * np.pi * EQ_RAD**2)
    assert ds.cf["latitude"].name == "lat"
    assert "made for a test" in ds.attrs["history"]


def test_grid_dataset_round_trip():
    grid = HntrGrid(72, 46, 0.5, 240.0)
    assert hntr_grid_from_dataset(create_hntr_grid_dataset(grid)) == grid


@pytest.mark.parametrize(
    "lon, offi",
    [
        (np.arange(-175.0, 180.0, 10.0), 0.0),
        (np.arange(0.0, 360.0, 10.0), 17.5),
        (np.arange(5.0, 360.0, 10.0), 18.0),
    ],
)
def test_hntr_grid_from_cf_coordinates(lon, offi):
    """Latitude and longitude are found through their CF attributes."""
    lat = np.arange(-85.0, 90.0, 10.0)
    ds = xr.Dataset(
        coords={
            "y": ("y", lat, {"standard_name": "latitude", "units": "degrees_north"}),
            "x": ("x", lon, {"standard_name": "longitude", "units": "degrees_east"}),
        }
    )
    grid = hntr_grid_from_dataset(ds)
    assert (grid.im, grid.jm) == (36, 18)
    assert grid.dlat == pytest.approx(600.0)
    assert grid.offi == pytest.approx(offi)
    np.testing.assert_allclose(grid.lon_centers, lon)
    np.testing.assert_allclose(grid.lat_centers[1:-1], lat[1:-1])


def test_hntr_grid_from_plain_names():
    """Variables called lat/lon are used when no CF attributes are present."""
    ds = xr.Dataset(coords={"lat": np.array([-45.0, 45.0]), "lon": np.arange(45.0, 360.0, 90.0)})
    grid = hntr_grid_from_dataset(ds, radius=1.0)
    assert (grid.im, grid.jm) == (4, 2)
    assert grid.radius == 1.0
    assert grid.dlat == pytest.approx(90.0 * 60)


def test_hntr_grid_from_dataset_errors():
    with pytest.raises(MalformedGridError, match="latitude/longitude"):
        hntr_grid_from_dataset(xr.Dataset(coords={"x": [1.0, 2.0]}))

    irregular = xr.Dataset(coords={"lat": [-45.0, 45.0], "lon": [0.0, 90.0, 200.0, 270.0]})
    with pytest.raises(MalformedGridError, match="global grid"):
        hntr_grid_from_dataset(irregular)

    descending = xr.Dataset(coords={"lat": [60.0, 0.0, -60.0], "lon": [0.0, 180.0]})
    with pytest.raises(MalformedGridError, match="ascending"):
        hntr_grid_from_dataset(descending)


def test_create_lonlat_grid():
    hgrid = HntrGrid(4, 3, 0.0, 60.0 * 60)
    grid = create_lonlat_grid(hgrid)
    assert grid.type == GridType.LONLAT
    assert grid.coordinates == Coordinates.LONLAT
    assert grid.cells.nrealized() == 12
    assert grid.vertices.nrealized() == 20

    cell = grid.cells.at(6)
    assert (cell.i, cell.j) == (2, 1)
    assert cell.native_area == pytest.approx(hgrid.dxyp(1))
    np.testing.assert_allclose(
        grid.vertex_xy(cell), [[0.0, -30.0], [90.0, -30.0], [90.0, 30.0], [0.0, 30.0]]
    )
    # Counter-clockwise in lon/lat
    assert grid.proj_area(cell, signed=True) == pytest.approx(90.0 * 60.0)
    np.testing.assert_allclose(grid.native_areas().sum(), 4.0 * np.pi * EQ_RAD**2)


def test_create_xy_grid():
    grid = create_xy_grid([0.0, 1.0, 3.0], [0.0, 2.0], sproj="EPSG:3413")
    assert grid.type == GridType.XY
    assert grid.sproj == "EPSG:3413"
    np.testing.assert_allclose(grid.native_areas(), [2.0, 4.0])
    for cell in grid.cells:
        assert grid.proj_area(cell) == pytest.approx(cell.native_area)

    with pytest.raises(MalformedGridError):
        create_xy_grid([0.0, 0.0, 1.0], [0.0, 1.0])
