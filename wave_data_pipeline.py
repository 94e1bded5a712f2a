#!/usr/bin/env python3
"""
Wave Data Pipeline - Point time series from the CAWCR Wave Hindcast archive
Monthly fetch over OPeNDAP with per-month caching, resumable runs and
assembly into one contiguous table

DATA SOURCE REQUIREMENTS:

1. CAWCR WAVE HINDCAST, GRIDDED (wave parameters):
   - Source: CSIRO Data Access Portal THREDDS server, OPeNDAP
   - Model: WAVEWATCH III forced by CFSR / CFSv2 winds
   - Resolution: 4' or 10' (aus, pac), 24' (glob)
   - Temporal: Hourly, one file per month (ww3.<region>_<res>m.<YYYYMM>.nc)
   - Variables: t02, hs, dir (core) + t0m1, fp, dpm, uwnd, vwnd, ...
   - Renames across releases: t0m1 -> tm0m1, t01 -> t, uwnd -> U10
   - Missing: Land cells are NaN, some months lack optional parameters

2. CAWCR WAVE HINDCAST, SPECTRAL OUTPUT (wind at stations):
   - Same archive, spec/ww3.<YYYYMM>_spec.nc
   - Dimensions: time x station
   - Variables: wnd, wnddir (older files: u10m, udir)

3. LOCAL CACHE:
   - One zarr store per (location, dataset type, grid, month)
   - ~50 KB per month per location for the core parameters
   - Resume: months already cached are never fetched again

COMPUTATIONAL REQUIREMENTS:
- Network bound: one OPeNDAP subset request per variable per month
- Workers: 6 by default, clamped to the host CPU count
- Memory: a decade of hourly data is ~90k rows, streamed assembly exists for
  long multi-variable requests that do not fit
"""

import argparse
import json
import logging
import os
import sys
import tempfile
import uuid
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from concurrent.futures import BrokenExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr
import dask.array as da
import fsspec

from wave_grid_locator import (
    DEFAULT_SEARCH_RADIUS,
    GridLocator,
    LocationNotFoundError,
    LocationResolution,
    STATION_TABLE_NAME,
    StationTable,
    ValidPointTable,
    build_valid_point_table,
    normalize_longitude,
    open_remote_dataset,
    validate_latitude,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATASET REGISTRY
# =============================================================================

class DatasetType(Enum):
    """Hindcast products"""
    WAVE = "wave"  # gridded wave parameters
    WIND = "wind"  # spectral output stations


class Region(Enum):
    AUS = "aus"
    GLOB = "glob"
    PAC = "pac"


BASE_URL = ("https://data-cbr.csiro.au/thredds/dodsC/catch_all/"
            "CMAR_CAWCR-Wave_archive/CAWCR_Wave_Hindcast_aggregate/")
GRIDDED_BASE_URL = BASE_URL + "gridded/"
SPEC_BASE_URL = BASE_URL + "spec/"

VALID_RESOLUTIONS = (4, 10)  # arcminutes, aus and pac
GLOBAL_RESOLUTION = 24  # glob only exists at 24'
DEFAULT_MAX_WORKERS = 6

CORE_VARIABLES = {
    DatasetType.WAVE: ("t02", "hs", "dir"),
    DatasetType.WIND: ("wnd", "wnddir"),
}

# Canonical name -> names used by other releases of the archive, tried in order
VARIABLE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "t0m1": ("tm0m1",),
    "t01": ("t",),
    "uwnd": ("U10",),
    "vwnd": ("V10",),
    "wnd": ("u10m",),
    "wnddir": ("udir",),
}


def grid_label(dataset_type: DatasetType, region: str = "aus", resolution: int = 10) -> str:
    """Grid identifier used in file names: 'aus_10m', 'glob_24m', 'spec'"""
    if dataset_type is DatasetType.WIND:
        return "spec"
    return f"{region}_{resolution}m"


def month_url(dataset_type: DatasetType, label: str, year_month: int) -> str:
    if dataset_type is DatasetType.WIND:
        return f"{SPEC_BASE_URL}ww3.{year_month}_spec.nc"
    return f"{GRIDDED_BASE_URL}ww3.{label}.{year_month}.nc"


def requested_variables(dataset_type: DatasetType, extras: Sequence[str] = ()) -> Tuple[str, ...]:
    """Core variables first, then extras in the order requested, without repeats"""
    names = list(CORE_VARIABLES[dataset_type])
    for name in extras:
        if name not in names and name != "time":
            names.append(name)
    return tuple(names)


# =============================================================================
# YEAR-MONTH HANDLING
# =============================================================================

def validate_year_month(value: int) -> int:
    """Check a YYYYMM integer"""
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"Year-month must be an integer YYYYMM, got {value!r}")
    year, month = divmod(int(value), 100)
    if not 1000 <= year <= 9999:
        raise ValueError(f"Invalid year: {year}. Year must be 4 digits (YYYY).")
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}. Month must be 01..12.")
    return int(value)


def year_month_range(start: int, end: int) -> List[int]:
    """Inclusive list of YYYYMM from start to end"""
    start = validate_year_month(start)
    end = validate_year_month(end)
    if start > end:
        raise ValueError(f"Start {start} is after end {end}")
    periods = pd.period_range(
        start=pd.Period(year=start // 100, month=start % 100, freq="M"),
        end=pd.Period(year=end // 100, month=end % 100, freq="M"),
        freq="M",
    )
    return [p.year * 100 + p.month for p in periods]


# =============================================================================
# ERRORS
# =============================================================================

class MonthlyFetchError(RuntimeError):
    """A month's source file or its time axis could not be read"""


class EmptyDatasetError(RuntimeError):
    """No month produced usable data; nothing should be persisted"""


# =============================================================================
# MONTHLY RECORDS
# =============================================================================

@dataclass
class MonthlyRecord:
    """One month of point data. Every variable shares the time vector's length."""
    year_month: Optional[int]
    time: np.ndarray
    variables: Dict[str, np.ndarray]

    def __post_init__(self):
        self.time = np.asarray(self.time)
        if self.time.ndim != 1:
            raise ValueError("Time vector must be one-dimensional")
        n = self.time.size
        variables = {}
        for name, values in self.variables.items():
            values = np.asarray(values, dtype=float).ravel()
            if values.size != n:
                raise ValueError(f"Variable {name} has {values.size} samples, time has {n}")
            variables[name] = values
        self.variables = variables

    def __len__(self) -> int:
        return int(self.time.size)

    def with_variables(self, names: Sequence[str]) -> "MonthlyRecord":
        """Same record restricted to names, NaN-filling the ones it lacks"""
        n = len(self)
        return MonthlyRecord(
            year_month=self.year_month,
            time=self.time,
            variables={name: self.variables.get(name, np.full(n, np.nan)) for name in names},
        )

    def to_dataset(self) -> xr.Dataset:
        ds = xr.Dataset(
            {name: ("time", values) for name, values in self.variables.items()},
            coords={"time": self.time},
        )
        if self.year_month is not None:
            ds.attrs["year_month"] = int(self.year_month)
        ds.attrs["variables"] = list(self.variables)
        return ds

    @classmethod
    def from_dataset(cls, ds: xr.Dataset, year_month: Optional[int] = None) -> "MonthlyRecord":
        if year_month is None and "year_month" in ds.attrs:
            year_month = int(ds.attrs["year_month"])
        return cls(
            year_month=year_month,
            time=ds["time"].values,
            variables={name: ds[name].values for name in ds.data_vars},
        )


# =============================================================================
# MONTHLY FETCHER
# =============================================================================

def _read_point_series(var: xr.DataArray, indexer: Dict[str, int], n_time: int) -> Optional[np.ndarray]:
    """Subset one variable at the resolved point; None when it does not fit the grid"""
    if any(dim not in var.dims for dim in indexer):
        return None
    try:
        values = np.asarray(var.isel(indexer).values, dtype=float)
    except (OSError, RuntimeError, ValueError, IndexError) as e:
        logger.debug(f"  Failed to read {var.name}: {e}")
        return None
    if values.ndim != 1 or values.size != n_time:
        return None
    return values


class MonthlyFetcher:
    """
    Downloads one month of point data for a resolved location.

    Each variable is looked up through an ordered candidate list (canonical
    name, then its aliases); the first candidate present in the file that
    reads cleanly wins. A variable with no readable candidate becomes a NaN
    series. Only an unreadable file or time axis fails the month.
    """

    def __init__(self,
                 opener: Callable[[str], xr.Dataset] = open_remote_dataset,
                 aliases: Optional[Dict[str, Tuple[str, ...]]] = None):
        self.opener = opener
        self.aliases = dict(VARIABLE_ALIASES if aliases is None else aliases)

    def candidates(self, name: str) -> List[str]:
        return [name, *self.aliases.get(name, ())]

    def resolve_variable_name(self, name: str, available: Iterable[str]) -> Optional[str]:
        """First candidate for name that the file provides"""
        available = set(available)
        for candidate in self.candidates(name):
            if candidate in available:
                return candidate
        return None

    def fetch(self, url: str, location: LocationResolution,
              variables: Sequence[str], year_month: Optional[int] = None) -> MonthlyRecord:
        try:
            ds = self.opener(url)
        except (OSError, RuntimeError, ValueError, KeyError) as e:
            raise MonthlyFetchError(f"Could not open {url}: {e}") from e

        with ds:
            time = self._read_time(ds, url)
            n_time = time.size
            available = set(ds.variables)
            indexer = location.indexer

            data = {}
            for name in variables:
                series, used = self._first_readable(ds, name, available, indexer, n_time)
                if series is None:
                    logger.debug(f"  Variable '{name}' not found and no fallback available. Filling NaNs.")
                    series = np.full(n_time, np.nan)
                elif used != name:
                    logger.debug(f"  Using fallback '{used}' for requested '{name}'.")
                data[name] = series

        return MonthlyRecord(year_month=year_month, time=time, variables=data)

    def _read_time(self, ds: xr.Dataset, url: str) -> np.ndarray:
        if "time" not in ds.variables:
            raise MonthlyFetchError(f"No time axis in {url}")
        try:
            time = np.asarray(ds["time"].values)
        except (OSError, RuntimeError, ValueError) as e:
            raise MonthlyFetchError(f"Failed to read time axis of {url}: {e}") from e
        if time.ndim != 1 or time.size == 0:
            raise MonthlyFetchError(f"Malformed time axis in {url}: shape {time.shape}")
        return time

    def _first_readable(self, ds: xr.Dataset, name: str, available: set,
                        indexer: Dict[str, int], n_time: int) -> Tuple[Optional[np.ndarray], Optional[str]]:
        for candidate in self.candidates(name):
            if candidate not in available:
                continue
            series = _read_point_series(ds[candidate], indexer, n_time)
            if series is not None:
                return series, candidate
        return None, None


# =============================================================================
# MONTHLY CACHE
# =============================================================================

@dataclass(frozen=True)
class CacheKey:
    """Pure function of location, product, grid and month"""
    dataset_type: str
    lon: float
    lat: float
    grid_label: str
    year_month: int

    @classmethod
    def for_month(cls, location: LocationResolution, year_month: int) -> "CacheKey":
        return cls(location.dataset_type, location.actual_lon, location.actual_lat,
                   location.grid_label, int(year_month))

    @property
    def folder(self) -> str:
        suffix = "_wind" if self.dataset_type == DatasetType.WIND.value else ""
        return f"lon{self.lon:.4f}E_lat{self.lat:.4f}N{suffix}"

    @property
    def relative_path(self) -> str:
        if self.dataset_type == DatasetType.WIND.value:
            name = f"wind_data_{self.year_month}_{self.lon:.4f}E_{self.lat:.4f}N.zarr"
        else:
            name = (f"{self.dataset_type}_data_{self.year_month}_{self.grid_label}_"
                    f"{self.lon:.4f}E_{self.lat:.4f}N.zarr")
        return f"{self.folder}/monthly_files/{name}"


class MonthlyCache:
    """
    Per-month zarr stores under a root directory (any fsspec URL).

    Writes land in a unique temporary store and are moved into place, so an
    entry under its final key is always complete. Nothing is shared between
    workers: every month owns its own store.
    """

    def __init__(self, root: Union[str, Path], storage_options: Optional[Dict] = None):
        self.root = str(root).rstrip("/")
        self.storage_options = dict(storage_options or {})

    @property
    def fs(self) -> fsspec.AbstractFileSystem:
        fs, _ = fsspec.core.url_to_fs(self.root, **self.storage_options)
        return fs

    def path(self, key: CacheKey) -> str:
        return f"{self.root}/{key.relative_path}"

    def has(self, key: CacheKey) -> bool:
        return self._open_valid(key) is not None

    def load(self, key: CacheKey) -> Optional[MonthlyRecord]:
        """Cached record, or None on a miss (corrupt entries count as misses)"""
        ds = self._open_valid(key)
        if ds is None:
            return None
        try:
            ds = ds.load()
        except MemoryError:
            raise
        except Exception as e:
            self._discard(key, e)
            return None
        return MonthlyRecord.from_dataset(ds, key.year_month)

    def open_lazy(self, key: CacheKey) -> Optional[xr.Dataset]:
        """Dask-backed view of an entry; only the variables selected later are read"""
        return self._open_valid(key)

    def store(self, key: CacheKey, record: MonthlyRecord) -> str:
        final = self.path(key)
        tmp = f"{final}.tmp-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        ds = record.to_dataset()
        ds.attrs.update(
            year_month=int(key.year_month),
            dataset_type=key.dataset_type,
            grid_label=key.grid_label,
            actual_lon=float(key.lon),
            actual_lat=float(key.lat),
        )

        fs = self.fs
        fs.makedirs(final.rsplit("/", 1)[0], exist_ok=True)
        try:
            ds.to_zarr(tmp, mode="w", consolidated=False, storage_options=self.storage_options or None)
            if fs.exists(final):
                fs.rm(final, recursive=True)
            fs.mv(tmp, final, recursive=True)
        finally:
            if fs.exists(tmp):
                fs.rm(tmp, recursive=True)
        return final

    def _open_valid(self, key: CacheKey) -> Optional[xr.Dataset]:
        path = self.path(key)
        if not self.fs.exists(path):
            return None
        try:
            ds = xr.open_zarr(path, consolidated=False, storage_options=self.storage_options or None)
        except MemoryError:
            raise
        except Exception as e:
            self._discard(key, e)
            return None
        problem = self._validate(ds, key)
        if problem:
            self._discard(key, problem)
            return None
        return ds

    @staticmethod
    def _validate(ds: xr.Dataset, key: CacheKey) -> Optional[str]:
        if "time" not in ds.coords or ds.sizes.get("time", 0) == 0:
            return "missing or empty time axis"
        for name, var in ds.data_vars.items():
            if var.dims != ("time",):
                return f"variable {name} has dims {var.dims}"
        if int(ds.attrs.get("year_month", key.year_month)) != key.year_month:
            return f"entry belongs to {ds.attrs.get('year_month')}"
        return None

    def _discard(self, key: CacheKey, reason) -> None:
        path = self.path(key)
        logger.warning(f"Corrupted cache at {path} ({reason}), removing")
        fs = self.fs
        if fs.exists(path):
            fs.rm(path, recursive=True)


# =============================================================================
# FETCH SCHEDULER
# =============================================================================

@dataclass(frozen=True)
class MonthJob:
    year_month: int
    url: str
    key: CacheKey


@dataclass
class ScheduleReport:
    fetched: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    mode: str = "sequential"


def fetch_and_cache_month(job: MonthJob, location: LocationResolution,
                          variables: Tuple[str, ...], fetcher: MonthlyFetcher,
                          cache: MonthlyCache) -> str:
    """Unit of work for one month: skip if cached, else fetch then store"""
    if cache.has(job.key):
        return "skipped"
    record = fetcher.fetch(job.url, location, variables, job.year_month)
    cache.store(job.key, record)
    return "fetched"


def available_workers() -> int:
    try:
        return len(os.sched_getaffinity(0))
    except AttributeError:
        return os.cpu_count() or 1


POOL_BACKENDS = ("process", "thread", "dask")

# Failures that mean "no parallel substrate here", not "the request is broken"
POOL_INIT_ERRORS = (OSError, NotImplementedError, ImportError, PermissionError, RuntimeError)


class WorkerPool:
    """
    Worker pool scoped to one load. Width is min(max_workers, host CPUs).

    backend 'process' and 'thread' use concurrent.futures, 'dask' starts a
    local dask.distributed cluster.
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS, backend: str = "process"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if backend not in POOL_BACKENDS:
            raise ValueError(f"backend must be one of {POOL_BACKENDS}, got {backend!r}")
        self.width = max(1, min(max_workers, available_workers()))
        self.backend = backend
        self._executor = None

    def start(self) -> "WorkerPool":
        if self.backend == "process":
            self._executor = ProcessPoolExecutor(max_workers=self.width)
        elif self.backend == "thread":
            self._executor = ThreadPoolExecutor(max_workers=self.width)
        else:
            from dask.distributed import Client
            self._executor = Client(n_workers=self.width, threads_per_worker=1,
                                    processes=True, dashboard_address=None)
        return self

    def submit(self, fn, *args):
        if self._executor is None:
            raise RuntimeError("Worker pool not started")
        if self.backend == "dask":
            return self._executor.submit(fn, *args, pure=False)
        return self._executor.submit(fn, *args)

    def as_completed(self, futures):
        if self.backend == "dask":
            from dask.distributed import as_completed as dask_as_completed
            return dask_as_completed(list(futures))
        return as_completed(futures)

    def close(self) -> None:
        if self._executor is None:
            return
        if self.backend == "dask":
            self._executor.close()
        else:
            self._executor.shutdown(wait=True)
        self._executor = None

    def __enter__(self) -> "WorkerPool":
        if self._executor is None:
            self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class FetchScheduler:
    """
    Drives fetch+cache over all months, sequentially or on a WorkerPool.

    Per-month failures are logged and leave the month uncached; the run
    always completes. If the pool cannot start, or breaks mid-run, the
    remaining months run sequentially.
    """

    def __init__(self, parallel: bool = True, max_workers: int = DEFAULT_MAX_WORKERS,
                 backend: str = "process", verbose: bool = True):
        self.parallel = parallel
        self.max_workers = max_workers
        self.backend = backend
        self.level = logging.INFO if verbose else logging.DEBUG

    def run(self, jobs: Sequence[MonthJob], location: LocationResolution,
            variables: Tuple[str, ...], fetcher: MonthlyFetcher,
            cache: MonthlyCache) -> ScheduleReport:
        report = ScheduleReport()
        pending = list(jobs)

        if self.parallel and len(pending) > 1:
            try:
                pool = WorkerPool(self.max_workers, self.backend).start()
            except POOL_INIT_ERRORS as e:
                logger.warning(f"[parallel] disabled: {e}. Using serial mode instead.")
            else:
                logger.log(self.level, f"[parallel] Using {pool.width} workers ({pool.backend}).")
                report.mode = f"parallel:{pool.backend}"
                with pool:
                    pending = self._run_pool(pool, pending, location, variables, fetcher, cache, report)
                if pending:
                    logger.warning(f"[parallel] pool broke, finishing {len(pending)} months serially")

        self._run_sequential(pending, location, variables, fetcher, cache, report, total=len(jobs))
        report.fetched.sort()
        report.skipped.sort()
        if report.failed:
            logger.warning(f"{len(report.failed)} of {len(jobs)} months failed: {sorted(report.failed)}")
        return report

    def _progress(self, k: int, total: int, year_month: int) -> None:
        if k % 12 == 0:
            logger.log(self.level, f"  Starting year {year_month // 100}: Loading {year_month} "
                                   f"({k + 1} of {total})")

    def _record(self, report: ScheduleReport, job: MonthJob, outcome: str) -> None:
        if outcome == "skipped":
            report.skipped.append(job.year_month)
        else:
            report.fetched.append(job.year_month)

    def _record_failure(self, report: ScheduleReport, job: MonthJob, error: BaseException) -> None:
        logger.warning(f"Month {job.year_month} failed: {error}")
        report.failed[job.year_month] = str(error)

    def _run_sequential(self, jobs, location, variables, fetcher, cache, report, total) -> None:
        done = len(report.fetched) + len(report.skipped) + len(report.failed)
        for k, job in enumerate(sorted(jobs, key=lambda j: j.year_month), start=done):
            self._progress(k, total, job.year_month)
            try:
                outcome = fetch_and_cache_month(job, location, variables, fetcher, cache)
            except Exception as e:
                self._record_failure(report, job, e)
                continue
            self._record(report, job, outcome)

    def _run_pool(self, pool, jobs, location, variables, fetcher, cache, report) -> List[MonthJob]:
        futures = {}
        for k, job in enumerate(jobs):
            self._progress(k, len(jobs), job.year_month)
            futures[pool.submit(fetch_and_cache_month, job, location, variables, fetcher, cache)] = job

        leftover = []
        for future in pool.as_completed(futures):
            job = futures[future]
            try:
                outcome = future.result()
            except BrokenExecutor:
                leftover.append(job)
                continue
            except Exception as e:
                self._record_failure(report, job, e)
                continue
            self._record(report, job, outcome)
        return leftover


# =============================================================================
# DATASET ASSEMBLY
# =============================================================================

@dataclass
class AssembledDataset:
    """
    Month-ordered concatenation of monthly records over a single 'time'
    dimension. Backed by numpy (in-memory) or dask (streamed) arrays.
    Months that failed contribute no rows; they are listed in missing_months.
    """
    data: xr.Dataset
    variables: Tuple[str, ...]
    year_months: List[int]
    missing_months: List[int] = field(default_factory=list)
    strategy: str = "inmemory"

    def __len__(self) -> int:
        return int(self.data.sizes["time"])

    @property
    def n_rows(self) -> int:
        return len(self)

    @property
    def columns(self) -> List[str]:
        return ["time", *self.variables]

    @property
    def time(self) -> np.ndarray:
        return self.data["time"].values

    @property
    def is_lazy(self) -> bool:
        return any(isinstance(var.data, da.Array) for var in self.data.data_vars.values())

    def __getitem__(self, name: str) -> np.ndarray:
        if name == "time":
            return self.time
        return np.asarray(self.data[name].values)

    def to_dataframe(self) -> pd.DataFrame:
        df = self.data.to_dataframe().reset_index()
        return df[self.columns]

    def iter_frames(self, block_rows: int = 100_000) -> Iterator[pd.DataFrame]:
        """Row blocks as DataFrames; reads lazy data one block at a time"""
        for start in range(0, len(self), block_rows):
            block = self.data.isel(time=slice(start, start + block_rows))
            yield block.to_dataframe().reset_index()[self.columns]

    def load(self) -> "AssembledDataset":
        self.data = self.data.load()
        return self


class DatasetAssembler:
    """Concatenates monthly records in month order, in memory or streamed"""

    def __init__(self, variables: Sequence[str] = ()):
        self.variables = tuple(variables)

    def _columns(self, variables: Optional[Sequence[str]]) -> Tuple[str, ...]:
        columns = tuple(variables) if variables else self.variables
        if not columns:
            raise ValueError("No variables requested for assembly")
        return columns

    def assemble(self, records: Iterable[MonthlyRecord],
                 variables: Optional[Sequence[str]] = None) -> AssembledDataset:
        variables = self._columns(variables)
        records = [r.with_variables(variables) for r in records if r is not None and len(r) > 0]
        if not records:
            raise EmptyDatasetError("No data was successfully loaded for assembly.")

        time = np.concatenate([r.time for r in records])
        data = xr.Dataset(
            {name: ("time", np.concatenate([r.variables[name] for r in records]))
             for name in variables},
            coords={"time": time},
        )
        return AssembledDataset(data=data, variables=variables,
                                year_months=[r.year_month for r in records])

    def assemble_streamed(self, cache: MonthlyCache, keys: Sequence[CacheKey],
                          variables: Optional[Sequence[str]] = None) -> AssembledDataset:
        variables = self._columns(variables)
        parts = []
        year_months = []
        for key in keys:
            ds = cache.open_lazy(key)
            if ds is None or ds.sizes["time"] == 0:
                continue
            parts.append(self._select(ds, variables))
            year_months.append(key.year_month)
        if not parts:
            raise EmptyDatasetError("No data was successfully loaded for streaming assembly.")

        data = xr.concat(parts, dim="time", data_vars="all", coords="minimal", compat="override")
        return AssembledDataset(data=data, variables=variables,
                                year_months=year_months, strategy="streamed")

    def assemble_from_cache(self, cache: MonthlyCache, keys: Sequence[CacheKey],
                            variables: Optional[Sequence[str]] = None) -> AssembledDataset:
        """In-memory assembly, retried as streamed assembly on MemoryError"""
        try:
            return self.assemble((cache.load(key) for key in keys), variables)
        except MemoryError:
            logger.warning("Memory error in inmemory mode; switching to stream mode.")
            return self.assemble_streamed(cache, keys, variables)

    @staticmethod
    def _select(ds: xr.Dataset, variables: Tuple[str, ...]) -> xr.Dataset:
        """Only the needed variables, NaN-filled (lazily) where the entry lacks one"""
        n = ds.sizes["time"]
        columns = {}
        for name in variables:
            if name in ds.data_vars:
                columns[name] = ds[name].astype(float)
            else:
                columns[name] = xr.DataArray(da.full(n, np.nan, chunks=n), dims="time")
        return xr.Dataset(columns, coords={"time": ds["time"]})


# =============================================================================
# METADATA AND PERSISTENCE
# =============================================================================

@dataclass(frozen=True)
class DatasetMetadata:
    """Extraction and processing metadata, persisted next to the dataset"""
    target_lon: float
    target_lat: float
    actual_lon: float
    actual_lat: float
    location_offset_km: float
    start_year_month: int
    end_year_month: int
    dataset_type: str
    region: Optional[str]
    grid_resolution: Optional[int]
    station_idx: Optional[int]
    additional_params: Tuple[str, ...]
    identifier: str
    n_rows: int = 0
    missing_months: Tuple[int, ...] = ()
    source_url: str = BASE_URL
    created_at: str = ""

    @classmethod
    def build(cls, location: LocationResolution, options: "LoadOptions",
              start_year_month: int, end_year_month: int,
              dataset: AssembledDataset) -> "DatasetMetadata":
        wind = options.dataset_type is DatasetType.WIND
        suffix = "_wind" if wind else ""
        return cls(
            target_lon=location.target_lon,
            target_lat=location.target_lat,
            actual_lon=location.actual_lon,
            actual_lat=location.actual_lat,
            location_offset_km=location.offset_km,
            start_year_month=start_year_month,
            end_year_month=end_year_month,
            dataset_type=options.dataset_type.value,
            region=None if wind else options.region,
            grid_resolution=None if wind else options.grid_resolution,
            station_idx=location.indexer.get("station") if wind else None,
            additional_params=options.variables[len(CORE_VARIABLES[options.dataset_type]):],
            identifier=f"lon{location.actual_lon:.4f}E_lat{location.actual_lat:.4f}N{suffix}",
            n_rows=len(dataset),
            missing_months=tuple(dataset.missing_months),
            source_url=SPEC_BASE_URL if wind else GRIDDED_BASE_URL,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_dict(self) -> Dict:
        record = asdict(self)
        record["additional_params"] = list(self.additional_params)
        record["missing_months"] = list(self.missing_months)
        return record


@dataclass(frozen=True)
class PersistedPaths:
    csv: Path
    netcdf: Path
    metadata: Path


class DatasetPersister:
    """Writes the assembled table (NetCDF + CSV) and metadata (JSON)"""

    def __init__(self, output_dir: Path = Path("outputs"), block_rows: int = 100_000):
        self.output_dir = Path(output_dir)
        self.block_rows = block_rows

    def paths_for(self, metadata: DatasetMetadata) -> PersistedPaths:
        """Deterministic: same location, product and period -> same files"""
        folder = self.output_dir / metadata.identifier
        stem = f"{metadata.dataset_type}_data_{metadata.start_year_month}_{metadata.end_year_month}"
        if metadata.dataset_type == DatasetType.WAVE.value:
            stem += f"_{metadata.region}_{metadata.grid_resolution}m"
        stem += f"_{metadata.actual_lon:.4f}E_{metadata.actual_lat:.4f}N"
        return PersistedPaths(
            csv=folder / f"{stem}.csv",
            netcdf=folder / f"{stem}.nc",
            metadata=folder / f"{stem}_metadata.json",
        )

    def persist(self, dataset: AssembledDataset, metadata: DatasetMetadata) -> PersistedPaths:
        paths = self.paths_for(metadata)
        paths.csv.parent.mkdir(parents=True, exist_ok=True)

        ds = dataset.data.drop_encoding()
        ds.attrs = {k: v for k, v in metadata.to_dict().items() if isinstance(v, (str, int, float))}
        ds.to_netcdf(paths.netcdf, mode="w")

        with open(paths.csv, "w", newline="") as fh:
            for i, frame in enumerate(dataset.iter_frames(self.block_rows)):
                frame.to_csv(fh, index=False, header=(i == 0))

        with open(paths.metadata, "w") as fh:
            json.dump(metadata.to_dict(), fh, indent=2)

        logger.info(f"Complete {metadata.dataset_type} dataset saved to {paths.csv.parent}")
        return paths


# =============================================================================
# DATA PIPELINE ORCHESTRATOR
# =============================================================================

@dataclass(frozen=True)
class LoadOptions:
    """Request options for one load"""
    wind: bool = False
    region: str = "aus"
    resolution: int = 10  # arcminutes; ignored for glob (24')
    params: Tuple[str, ...] = ()
    use_parallel: bool = True
    max_workers: int = DEFAULT_MAX_WORKERS
    backend: str = "process"
    cache: bool = True
    lookup: str = "auto"
    search_radius: float = DEFAULT_SEARCH_RADIUS
    verbose: bool = True
    persist: bool = True

    def __post_init__(self):
        params = self.params
        if isinstance(params, str):
            params = (params,)
        object.__setattr__(self, "params", tuple(params or ()))
        Region(self.region)  # raises ValueError for unknown regions
        if self.region != Region.GLOB.value and self.resolution not in VALID_RESOLUTIONS:
            raise ValueError(f"resolution must be one of {VALID_RESOLUTIONS}, got {self.resolution}")
        if self.backend not in POOL_BACKENDS:
            raise ValueError(f"backend must be one of {POOL_BACKENDS}, got {self.backend!r}")

    @property
    def dataset_type(self) -> DatasetType:
        return DatasetType.WIND if self.wind else DatasetType.WAVE

    @property
    def grid_resolution(self) -> int:
        return GLOBAL_RESOLUTION if self.region == Region.GLOB.value else self.resolution

    @property
    def grid_label(self) -> str:
        return grid_label(self.dataset_type, self.region, self.grid_resolution)

    @property
    def variables(self) -> Tuple[str, ...]:
        return requested_variables(self.dataset_type, self.params)


class WaveDataPipeline:
    """
    Main orchestrator: locate once, fetch/cache every month, assemble, persist
    """

    def __init__(self,
                 output_dir: Path = Path("outputs"),
                 cache_dir: Optional[Union[str, Path]] = None,
                 tables_dir: Optional[Path] = None,
                 opener: Callable[[str], xr.Dataset] = open_remote_dataset,
                 storage_options: Optional[Dict] = None):
        self.output_dir = Path(output_dir)
        self.cache_dir = cache_dir if cache_dir is not None else self.output_dir
        self.tables_dir = tables_dir
        self.opener = opener
        self.storage_options = storage_options

    @contextmanager
    def _cache_scope(self, use_cache: bool) -> Iterator[MonthlyCache]:
        """Persistent cache, or a throwaway one when caching is disabled"""
        if use_cache:
            yield MonthlyCache(self.cache_dir, self.storage_options)
            return
        with tempfile.TemporaryDirectory(prefix="wave_months_") as tmp:
            yield MonthlyCache(tmp)

    def load(self, target_lon: float, target_lat: float,
             start_year_month: int, end_year_month: int,
             options: Optional[LoadOptions] = None,
             **overrides) -> Tuple[AssembledDataset, DatasetMetadata]:
        """
        Load a point time series between two year-months (inclusive).

        Args:
            target_lon: Longitude [deg E], -180..360
            target_lat: Latitude [deg N]
            start_year_month: YYYYMM
            end_year_month: YYYYMM
            options: LoadOptions; keyword overrides are applied on top

        Returns:
            (AssembledDataset, DatasetMetadata)

        Raises:
            LocationNotFoundError: no usable grid point near the target
            EmptyDatasetError: no month produced data
        """
        options = replace(options or LoadOptions(), **overrides)
        level = logging.INFO if options.verbose else logging.DEBUG

        target_lon = normalize_longitude(target_lon)
        target_lat = validate_latitude(target_lat)
        months = year_month_range(start_year_month, end_year_month)
        logger.log(level, f"Loading data from {months[0]} to {months[-1]} ({len(months)} months)")

        dataset_type = options.dataset_type
        label = options.grid_label
        urls = {ym: month_url(dataset_type, label, ym) for ym in months}

        locator = GridLocator(
            dataset_type=dataset_type.value,
            grid_label=label,
            tables_dir=self.tables_dir,
            lookup=options.lookup,
            search_radius=options.search_radius,
            scan_urls=[urls[ym] for ym in months],
            opener=self.opener,
        )
        location = locator.resolve(target_lon, target_lat)

        variables = options.variables
        fetcher = MonthlyFetcher(opener=self.opener)
        scheduler = FetchScheduler(parallel=options.use_parallel, max_workers=options.max_workers,
                                   backend=options.backend, verbose=options.verbose)
        assembler = DatasetAssembler(variables)
        persister = DatasetPersister(self.output_dir)

        with self._cache_scope(options.cache) as cache:
            jobs = [MonthJob(ym, urls[ym], CacheKey.for_month(location, ym)) for ym in months]
            scheduler.run(jobs, location, variables, fetcher, cache)

            dataset = assembler.assemble_from_cache(cache, [job.key for job in jobs])
            contributed = set(dataset.year_months)
            dataset.missing_months = [ym for ym in months if ym not in contributed]
            if dataset.missing_months:
                logger.warning(f"No data for {len(dataset.missing_months)} months: {dataset.missing_months}")

            metadata = DatasetMetadata.build(location, options, months[0], months[-1], dataset)
            paths = persister.persist(dataset, metadata) if options.persist else None

            if not options.cache and dataset.is_lazy:
                # the temporary cache disappears with this scope
                if paths is not None:
                    dataset.data = xr.open_dataset(paths.netcdf, chunks={})[list(variables)]
                else:
                    dataset.load()

        logger.log(level, f"Target location: {location.target_lon:.4f}E, {location.target_lat:.4f}N")
        logger.log(level, f"Extracting location: {location.actual_lon:.4f}E, {location.actual_lat:.4f}N")
        logger.log(level, f"Distance from target: {metadata.location_offset_km:.2f} km")
        return dataset, metadata


def load_hindcast(target_lon: float, target_lat: float,
                  start_year_month: int, end_year_month: int,
                  output_dir: Path = Path("outputs"),
                  cache_dir: Optional[Union[str, Path]] = None,
                  tables_dir: Optional[Path] = None,
                  opener: Callable[[str], xr.Dataset] = open_remote_dataset,
                  **options) -> Tuple[AssembledDataset, DatasetMetadata]:
    """Convenience wrapper around WaveDataPipeline.load"""
    pipeline = WaveDataPipeline(output_dir=output_dir, cache_dir=cache_dir,
                                tables_dir=tables_dir, opener=opener)
    return pipeline.load(target_lon, target_lat, start_year_month, end_year_month,
                         LoadOptions(**options))


# =============================================================================
# COMMAND LINE
# =============================================================================

def build_lookup_table(source_url: str, output: Path, wind: bool = False,
                       opener: Callable[[str], xr.Dataset] = open_remote_dataset) -> Path:
    """Produce the static lookup table for one grid (or the station list) from a month file"""
    with opener(source_url) as ds:
        table = StationTable.from_dataset(ds) if wind else build_valid_point_table(ds)
    return table.save(output)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Load point time series from the CAWCR Wave Hindcast archive")
    sub = parser.add_subparsers(dest="command", required=True)

    load = sub.add_parser("load", help="Fetch, cache, assemble and save a point time series")
    load.add_argument("lon", type=float, help="Target longitude [deg E]")
    load.add_argument("lat", type=float, help="Target latitude [deg N]")
    load.add_argument("start", type=int, help="Start year-month YYYYMM")
    load.add_argument("end", type=int, help="End year-month YYYYMM")
    load.add_argument("--wind", action="store_true", help="Load spectral-station wind data")
    load.add_argument("--region", default="aus", choices=[r.value for r in Region])
    load.add_argument("--resolution", type=int, default=10, choices=list(VALID_RESOLUTIONS))
    load.add_argument("--params", nargs="*", default=[], help="Additional variables, e.g. t0m1 fp dpm")
    load.add_argument("--no-parallel", action="store_true")
    load.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS)
    load.add_argument("--backend", default="process", choices=list(POOL_BACKENDS))
    load.add_argument("--no-cache", action="store_true", help="Do not keep monthly files")
    load.add_argument("--lookup", default="auto", choices=["auto", "table", "scan"])
    load.add_argument("--search-radius", type=float, default=DEFAULT_SEARCH_RADIUS)
    load.add_argument("--output-dir", type=Path, default=Path("outputs"))
    load.add_argument("--cache-dir", default=None, help="Cache root (local path or fsspec URL)")
    load.add_argument("--tables-dir", type=Path, default=None)
    load.add_argument("--plot", action="store_true", help="Save heatmap, rose and location figures")
    load.add_argument("--bins", type=int, default=15)
    load.add_argument("--quiet", action="store_true")

    table = sub.add_parser("build-table", help="Build a valid-point or station lookup table")
    table.add_argument("source", help="URL or path of one month file")
    table.add_argument("output", type=Path)
    table.add_argument("--wind", action="store_true")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "build-table":
        path = build_lookup_table(args.source, args.output, wind=args.wind)
        logger.info(f"Lookup table written to {path}")
        return 0

    pipeline = WaveDataPipeline(output_dir=args.output_dir, cache_dir=args.cache_dir,
                                tables_dir=args.tables_dir)
    options = LoadOptions(
        wind=args.wind, region=args.region, resolution=args.resolution,
        params=tuple(args.params), use_parallel=not args.no_parallel,
        max_workers=args.max_workers, backend=args.backend, cache=not args.no_cache,
        lookup=args.lookup, search_radius=args.search_radius, verbose=not args.quiet,
    )
    try:
        dataset, metadata = pipeline.load(args.lon, args.lat, args.start, args.end, options)
    except LocationNotFoundError as e:
        logger.error(f"Nearest grid lookup failed: {e}")
        return 1
    except EmptyDatasetError as e:
        logger.error(str(e))
        return 1

    if args.plot:
        import wave_hindcast_analysis as analysis
        figure_dir = args.output_dir / metadata.identifier
        if args.wind:
            rose = analysis.direction_rose(dataset["wnddir"], dataset["wnd"], kind="wind")
            analysis.save_figure(analysis.plot_direction_rose(rose, metadata, title="Wind"),
                                 figure_dir / analysis.figure_name("windRose", metadata))
        else:
            dist = analysis.joint_probability(dataset["t02"], dataset["hs"], bins=args.bins)
            analysis.save_figure(analysis.plot_joint_probability(dist, metadata),
                                 figure_dir / analysis.figure_name("biVariate", metadata))
            rose = analysis.direction_rose(dataset["dir"], dataset["hs"], kind="wave")
            analysis.save_figure(analysis.plot_direction_rose(rose, metadata, title="Wave"),
                                 figure_dir / analysis.figure_name("waveRose", metadata))
        analysis.save_figure(
            analysis.plot_location_comparison(metadata, **_reference_points(args.tables_dir, options)),
            figure_dir / analysis.figure_name("locationComparison", metadata))
    return 0


def _reference_points(tables_dir: Optional[Path], options: LoadOptions) -> Dict:
    """Grid cells or stations from the local lookup tables, for the location map"""
    if tables_dir is None:
        return {}
    if options.wind:
        path = Path(tables_dir) / STATION_TABLE_NAME
        if not path.exists():
            return {}
        stations = StationTable.load(path)
        return {"stations": (stations.longitude, stations.latitude)}
    path = Path(tables_dir) / f"{options.grid_label}.nc"
    if not path.exists():
        return {}
    table = ValidPointTable.load(path)
    points = (table.longitude[table.valid_lon_idx], table.latitude[table.valid_lat_idx])
    return {"grid_points": {options.grid_label: points}}


if __name__ == "__main__":
    sys.exit(main())
