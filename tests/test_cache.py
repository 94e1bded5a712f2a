from __future__ import annotations

import shutil
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from wave_data_pipeline import CacheKey, MonthlyCache, MonthlyRecord


def make_record(year_month: int = 201501, n: int = 48) -> MonthlyRecord:
    time = pd.date_range(f"{year_month // 100}-{year_month % 100:02d}-01", periods=n, freq="h")
    return MonthlyRecord(
        year_month,
        time.values,
        {"t02": np.full(n, 6.0), "hs": np.linspace(0.5, 2.5, n), "dir": np.full(n, np.nan)},
    )


@pytest.fixture
def key(ocean_location) -> CacheKey:
    return CacheKey.for_month(ocean_location, 201501)


def test_cache_key_paths():
    wave = CacheKey("wave", 150.3, -34.2, "aus_10m", 201501)
    wind = CacheKey("wind", 190.0, -14.3, "spec", 201501)

    assert wave.relative_path == (
        "lon150.3000E_lat-34.2000N/monthly_files/wave_data_201501_aus_10m_150.3000E_-34.2000N.zarr")
    assert wind.relative_path == (
        "lon190.0000E_lat-14.3000N_wind/monthly_files/wind_data_201501_190.0000E_-14.3000N.zarr")


def test_store_then_load(tmp_path, key):
    cache = MonthlyCache(tmp_path)
    record = make_record()

    cache.store(key, record)
    loaded = cache.load(key)

    assert cache.has(key)
    assert loaded.year_month == 201501
    np.testing.assert_array_equal(loaded.time, record.time)
    np.testing.assert_allclose(loaded.variables["hs"], record.variables["hs"])
    assert np.isnan(loaded.variables["dir"]).all()


def test_store_leaves_no_temporary_entries(tmp_path, key):
    cache = MonthlyCache(tmp_path)
    cache.store(key, make_record())
    cache.store(key, make_record(n=24))

    entries = list(Path(cache.path(key)).parent.iterdir())

    assert [p.name for p in entries] == [Path(cache.path(key)).name]
    assert len(cache.load(key)) == 24


def test_missing_entry_is_a_miss(tmp_path, key):
    cache = MonthlyCache(tmp_path)

    assert not cache.has(key)
    assert cache.load(key) is None


def test_corrupt_entry_is_removed_and_reported_as_miss(tmp_path, key, caplog):
    cache = MonthlyCache(tmp_path)
    path = Path(cache.path(key))
    path.mkdir(parents=True)
    (path / "zarr.json").write_text("{ truncated")
    (path / ".zgroup").write_text("{ truncated")

    assert cache.load(key) is None
    assert not path.exists()
    assert "Corrupted cache" in caplog.text


def test_entry_for_another_month_is_a_miss(tmp_path, key, ocean_location):
    cache = MonthlyCache(tmp_path)
    cache.store(key, make_record(201501))
    february = CacheKey.for_month(ocean_location, 201502)
    shutil.copytree(cache.path(key), cache.path(february))

    assert not cache.has(february)
    assert cache.has(key)


def test_open_lazy_returns_dask_backed_view(tmp_path, key):
    cache = MonthlyCache(tmp_path)
    cache.store(key, make_record())

    ds = cache.open_lazy(key)

    assert ds["hs"].chunks is not None
    assert ds.sizes["time"] == 48
