from __future__ import annotations

import datetime
from typing import Optional, Sequence, Union

import cf_xarray  # noqa: F401
import numpy as np
import xarray as xr

from .errors import MalformedGridError
from .grid import Coordinates, Grid, GridType, Parameterization
from .hntr import HntrGrid


def update_history(
    obj: Union[xr.DataArray, xr.Dataset], message: str
) -> Union[xr.DataArray, xr.Dataset]:
    """
    Update the 'history' attribute of an xarray object with a timestamped message.

    Parameters
    ----------
    obj : xr.DataArray or xr.Dataset
        The xarray object to update.
    message : str
        The message to add to the history.

    Returns
    -------
    xr.DataArray or xr.Dataset
        The updated xarray object.
    """
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    full_message = f"{timestamp}: {message}"
    if "history" in obj.attrs:
        obj.attrs["history"] = f"{full_message}\n" + obj.attrs["history"]
    else:
        obj.attrs["history"] = full_message
    return obj


def create_global_hntr_grid(
    res_lat: float, res_lon: float, offi: float = 0.0
) -> HntrGrid:
    """
    Create a global `HntrGrid` of the given resolution.

    Parameters
    ----------
    res_lat : float
        Latitude resolution in degrees.
    res_lon : float
        Longitude resolution in degrees.
    offi : float, default 0.0
        Offset of the first column from the date line, in cells.

    Returns
    -------
    HntrGrid
        The grid description.
    """
    im = int(round(360.0 / res_lon))
    jm = int(round(180.0 / res_lat))
    return HntrGrid(im, jm, offi, res_lat * 60.0)


def create_hntr_grid_dataset(
    hgrid: HntrGrid, history_msg: str = ""
) -> xr.Dataset:
    """
    CF description (centers and bounds) of an `HntrGrid`.

    Parameters
    ----------
    hgrid : HntrGrid
        The grid.
    history_msg : str, optional
        Message to add to the history attribute.

    Returns
    -------
    xr.Dataset
        Dataset with ``lat``/``lon`` coordinates and ``lat_b``/``lon_b``
        bounds, plus the cell area ``area``.
    """
    lat_edges = hgrid.lat_edges
    lon_edges = hgrid.lon_edges
    ds = xr.Dataset(
        coords={
            "lat": (
                ["lat"],
                hgrid.lat_centers,
                {"units": "degrees_north", "standard_name": "latitude", "bounds": "lat_b"},
            ),
            "lon": (
                ["lon"],
                hgrid.lon_centers,
                {"units": "degrees_east", "standard_name": "longitude", "bounds": "lon_b"},
            ),
        }
    )
    ds.coords["lat_b"] = (
        ["lat", "nv"],
        np.stack([lat_edges[:-1], lat_edges[1:]], axis=1),
    )
    ds.coords["lon_b"] = (
        ["lon", "nv"],
        np.stack([lon_edges[:-1], lon_edges[1:]], axis=1),
    )
    ds["area"] = (
        ["lat", "lon"],
        hgrid.cell_areas().reshape(hgrid.shape),
        {"units": "m2", "standard_name": "cell_area"},
    )
    ds.attrs.update(
        {"im": hgrid.im, "jm": hgrid.jm, "offi": hgrid.offi, "dlat": hgrid.dlat}
    )
    if history_msg:
        update_history(ds, history_msg)
    return ds


def hntr_grid_from_dataset(
    ds: Union[xr.Dataset, xr.DataArray], radius: Optional[float] = None
) -> HntrGrid:
    """
    Derive an `HntrGrid` from a global lat/lon dataset.

    Latitude and longitude are discovered through their CF attributes
    (cf_xarray), falling back to variables named ``lat`` / ``lon``.

    Parameters
    ----------
    ds : xr.Dataset or xr.DataArray
        Object with 1-D latitude and longitude coordinates of cell centers,
        latitude ascending.
    radius : float, optional
        Sphere radius of the grid.

    Returns
    -------
    HntrGrid

    Raises
    ------
    MalformedGridError
        If the coordinates are not those of a global, regularly spaced grid.
    """
    kw = {} if radius is None else {"radius": radius}
    if all(k in ds.attrs for k in ("im", "jm", "offi", "dlat")):
        return HntrGrid(
            int(ds.attrs["im"]),
            int(ds.attrs["jm"]),
            float(ds.attrs["offi"]),
            float(ds.attrs["dlat"]),
            **kw,
        )

    try:
        lat = ds.cf["latitude"]
        lon = ds.cf["longitude"]
    except KeyError:
        if "lat" in ds.coords and "lon" in ds.coords:
            lat, lon = ds["lat"], ds["lon"]
        else:
            raise MalformedGridError("Could not find latitude/longitude coordinates")
    if lat.ndim != 1 or lon.ndim != 1:
        raise MalformedGridError("Latitude and longitude must be 1-D")

    lat = np.asarray(lat.values, dtype=np.float64)
    lon = np.asarray(lon.values, dtype=np.float64)
    im, jm = len(lon), len(lat)

    dlon = 360.0 / im
    if im > 1 and not np.allclose(np.diff(lon), dlon):
        raise MalformedGridError(f"Longitudes are not a global grid with spacing {dlon}")
    offi = ((lon[0] - 0.5 * dlon + 180.0) / dlon) % im

    if jm == 1:
        dlat_deg = 180.0
    else:
        diffs = np.diff(lat)
        if np.any(diffs <= 0):
            raise MalformedGridError("Latitudes must be strictly ascending")
        # Polar rows may be enlarged; interior rows set the spacing
        inner = diffs[1:-1] if jm > 3 else diffs
        dlat_deg = float(np.median(inner))
        if not np.allclose(inner, dlat_deg):
            raise MalformedGridError("Latitudes are not regularly spaced")

    return HntrGrid(im, jm, float(offi), dlat_deg * 60.0, **kw)


def create_lonlat_grid(hgrid: HntrGrid, name: str = "lonlat") -> Grid:
    """
    Polygon `Grid` of an `HntrGrid`.

    Cell ``(j, i)`` gets index ``j * im + i``, auxiliary coordinates
    ``(i, j)`` and native area ``dxyp(j)``. Vertices sit on the cell
    corners in lon/lat; cells wind counter-clockwise.

    Parameters
    ----------
    hgrid : HntrGrid
        The structured grid.
    name : str, default "lonlat"
        Name of the new grid.

    Returns
    -------
    Grid
    """
    grid = Grid(
        name=name,
        type=GridType.LONLAT,
        coordinates=Coordinates.LONLAT,
        parameterization=Parameterization.L0,
    )
    lon_edges = hgrid.lon_edges
    lat_edges = hgrid.lat_edges
    nvi = hgrid.im + 1
    for j, lat in enumerate(lat_edges):
        for i, lon in enumerate(lon_edges):
            grid.add_vertex(lon, lat, j * nvi + i)

    dxyp = hgrid.dxyp()
    for j in range(hgrid.jm):
        for i in range(hgrid.im):
            v0 = j * nvi + i
            grid.add_cell(
                (v0, v0 + 1, v0 + nvi + 1, v0 + nvi),
                index=j * hgrid.im + i,
                i=i,
                j=j,
                native_area=dxyp[j],
            )
    return grid


def create_xy_grid(
    x_edges: Sequence[float],
    y_edges: Sequence[float],
    sproj: Optional[str] = None,
    name: str = "xy",
) -> Grid:
    """
    Rectilinear `Grid` in projected x/y coordinates.

    Parameters
    ----------
    x_edges, y_edges : sequence of float
        Cell boundaries, strictly increasing.
    sproj : str, optional
        Projection relating x/y to lon/lat.
    name : str, default "xy"
        Name of the new grid.

    Returns
    -------
    Grid
        Cell ``(j, i)`` has index ``j * nx + i`` and native area ``dx * dy``.
    """
    x_edges = np.asarray(x_edges, dtype=np.float64)
    y_edges = np.asarray(y_edges, dtype=np.float64)
    if np.any(np.diff(x_edges) <= 0) or np.any(np.diff(y_edges) <= 0):
        raise MalformedGridError("Grid edges must be strictly increasing")

    grid = Grid(
        name=name,
        type=GridType.XY,
        coordinates=Coordinates.XY,
        parameterization=Parameterization.L0,
        sproj=sproj,
    )
    nx, ny = len(x_edges) - 1, len(y_edges) - 1
    nvi = nx + 1
    for j, y in enumerate(y_edges):
        for i, x in enumerate(x_edges):
            grid.add_vertex(x, y, j * nvi + i)
    for j in range(ny):
        for i in range(nx):
            v0 = j * nvi + i
            grid.add_cell(
                (v0, v0 + 1, v0 + nvi + 1, v0 + nvi),
                index=j * nx + i,
                i=i,
                j=j,
                native_area=(x_edges[i + 1] - x_edges[i]) * (y_edges[j + 1] - y_edges[j]),
            )
    return grid
