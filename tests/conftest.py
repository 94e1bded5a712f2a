from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from wave_data_pipeline import DatasetType, month_url
from wave_grid_locator import LocationResolution

LONGITUDES = np.round(150.0 + 0.1 * np.arange(5), 4)
LATITUDES = np.round(-34.4 + 0.1 * np.arange(5), 4)
LAND_CELL = (2, 2)  # (lat_idx, lon_idx) -> 150.2E, -34.2N

STATION_LONGITUDES = np.array([150.5, -170.0, 151.2])
STATION_LATITUDES = np.array([-34.0, -14.3, -33.9])


class FakeArchive:
    """Stands in for the OPeNDAP opener; serves in-memory datasets by URL"""

    def __init__(self) -> None:
        self.sources: Dict[str, xr.Dataset] = {}
        self.failing: set[str] = set()
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def add(self, url: str, ds: xr.Dataset) -> None:
        self.sources[url] = ds

    def fail(self, url: str) -> None:
        self.failing.add(url)

    def calls_for(self, urls: Iterable[str]) -> int:
        urls = set(urls)
        return sum(1 for url in self.calls if url in urls)

    def __call__(self, url: str) -> xr.Dataset:
        with self._lock:
            self.calls.append(url)
        if url in self.failing:
            raise OSError(f"simulated outage for {url}")
        if url not in self.sources:
            raise OSError(f"NetCDF: file not found: {url}")
        return self.sources[url].copy()


def month_times(year_month: int) -> pd.DatetimeIndex:
    period = pd.Period(year=year_month // 100, month=year_month % 100, freq="M")
    return pd.date_range(period.start_time, periods=period.days_in_month * 24, freq="h")


def gridded_month(year_month: int, variables: Iterable[str] = ("t02", "hs", "dir"),
                  land: bool = True) -> xr.Dataset:
    """
    Hourly month on a 5x5 grid. Every variable is constant in time and
    encodes the month and the longitude index, e.g. hs = month + 0.01 * lon_idx.
    """
    time = month_times(year_month)
    month = year_month % 100
    base = month + 0.01 * np.arange(LONGITUDES.size)[np.newaxis, :] + 0 * LATITUDES[:, np.newaxis]
    offsets = {"t02": 5.0, "hs": 0.0, "dir": 90.0, "tm0m1": 7.0, "t0m1": 7.0, "t": 6.0}

    data_vars = {}
    for name in variables:
        field = np.broadcast_to(base + offsets.get(name, 20.0), (time.size,) + base.shape).copy()
        if land:
            field[:, LAND_CELL[0], LAND_CELL[1]] = np.nan
        data_vars[name] = (("time", "latitude", "longitude"), field)

    return xr.Dataset(data_vars, coords={"time": time, "latitude": LATITUDES, "longitude": LONGITUDES})


def spec_month(year_month: int, variables: Iterable[str] = ("wnd", "wnddir")) -> xr.Dataset:
    """Spectral-output month: time x station, station coordinates as variables"""
    time = month_times(year_month)
    n_station = STATION_LONGITUDES.size
    month = year_month % 100
    data_vars = {
        "longitude": ("station", STATION_LONGITUDES),
        "latitude": ("station", STATION_LATITUDES),
    }
    for name in variables:
        base = 180.0 if name in ("wnddir", "udir") else float(month)
        field = base + 0.1 * np.arange(n_station)[np.newaxis, :] + np.zeros((time.size, 1))
        data_vars[name] = (("time", "station"), field)
    return xr.Dataset(data_vars, coords={"time": time})


@pytest.fixture
def archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture
def make_gridded_month() -> Callable[..., xr.Dataset]:
    return gridded_month


@pytest.fixture
def make_spec_month() -> Callable[..., xr.Dataset]:
    return spec_month


@pytest.fixture
def wave_archive(archive: FakeArchive) -> FakeArchive:
    for ym in (201501, 201502, 201503):
        archive.add(month_url(DatasetType.WAVE, "aus_10m", ym), gridded_month(ym))
    return archive


@pytest.fixture
def wind_archive(archive: FakeArchive) -> FakeArchive:
    archive.add(month_url(DatasetType.WIND, "spec", 201501), spec_month(201501))
    archive.add(month_url(DatasetType.WIND, "spec", 201502), spec_month(201502, ("u10m", "udir")))
    return archive


@pytest.fixture
def ocean_location() -> LocationResolution:
    """The ocean cell next to the land cell (150.3E, -34.2N)"""
    return LocationResolution(
        target_lon=150.21,
        target_lat=-34.2,
        actual_lon=150.3,
        actual_lat=-34.2,
        dataset_type="wave",
        grid_label="aus_10m",
        index=(("latitude", 2), ("longitude", 3)),
    )
