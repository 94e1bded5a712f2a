#!/usr/bin/env python3
"""
Wave Grid Locator - resolves a target coordinate to the nearest hindcast
grid cell (or spectral output station) that actually carries data

SOURCE GRID REQUIREMENTS:

1. GRIDDED WAVE FILES (CAWCR Wave Hindcast, WAVEWATCH III):
   - Axes: longitude [0, 360) degE, latitude [-90, 90] degN, time
   - Regions: aus (4' or 10'), pac (4' or 10'), glob (24' only)
   - Land cells: NaN in every wave parameter, every time step
   - Reference variable for the ocean mask: hs (first time step)

2. SPECTRAL OUTPUT STATIONS (wind):
   - Fixed list of ~3000 output points, pre-vetted to lie over water
   - longitude/latitude stored per station (sometimes repeated per time step)

3. STATIC LOOKUP TABLES (one-time preprocessing):
   - <region>_<res>m.nc: coordinate axes plus the index pairs of all valid
     ocean cells, built from one month of the gridded archive
   - spec_stations.nc: station coordinates
   - Size: a few MB per region, avoids a remote coordinate scan per request

Distances used to pick the nearest point are planar on (lon, lat) degrees.
This is an approximation at grid spacing much smaller than the Earth radius
and is kept as is: switching to geodesic distance changes which cell wins
for borderline targets.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np
import xarray as xr

logger = logging.getLogger(__name__)

T = TypeVar("T")

EARTH_RADIUS_KM = 6371.0
DEFAULT_SEARCH_RADIUS = 1.0  # degrees
STATION_TABLE_NAME = "spec_stations.nc"

LOOKUP_MODES = ("auto", "table", "scan")

# Raised when a source file is unreachable or lacks the expected variables
SOURCE_ERRORS = (OSError, RuntimeError, ValueError, KeyError, IndexError)


class LocationNotFoundError(LookupError):
    """No usable grid cell or station within coverage of the target."""


def open_remote_dataset(url: str) -> xr.Dataset:
    """Open an OPeNDAP (or local) NetCDF file lazily"""
    return xr.open_dataset(url, engine="netcdf4")


# =============================================================================
# COORDINATES
# =============================================================================

def normalize_longitude(lon: float) -> float:
    """Map a longitude in [-180, 360] onto [0, 360) degrees east"""
    if not -180.0 <= lon <= 360.0:
        raise ValueError(f"Longitude {lon} outside [-180, 360]")
    return float(lon) % 360.0


def validate_latitude(lat: float) -> float:
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"Latitude {lat} outside [-90, 90]")
    return float(lat)


def great_circle_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in km on a sphere of mean Earth radius"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def planar_distance(lons: np.ndarray, lats: np.ndarray,
                    target_lon: float, target_lat: float) -> np.ndarray:
    """Euclidean distance in degree space (intentionally not geodesic)"""
    return np.sqrt((np.asarray(lons, dtype=float) - target_lon) ** 2 +
                   (np.asarray(lats, dtype=float) - target_lat) ** 2)


@dataclass(frozen=True)
class LocationResolution:
    """Where a request is actually extracted from. Shared read-only by all months."""
    target_lon: float
    target_lat: float
    actual_lon: float
    actual_lat: float
    dataset_type: str  # 'wave' or 'wind'
    grid_label: str  # 'aus_10m', 'glob_24m', 'spec', ...
    index: Tuple[Tuple[str, int], ...]  # ((dim, absolute zero-based index), ...)

    @property
    def indexer(self) -> Dict[str, int]:
        """Positional indexer for xarray .isel()"""
        return dict(self.index)

    @property
    def offset_km(self) -> float:
        return great_circle_km(self.target_lat, self.target_lon,
                               self.actual_lat, self.actual_lon)


# =============================================================================
# STATIC LOOKUP TABLES
# =============================================================================

@dataclass
class ValidPointTable:
    """Coordinate axes plus index pairs of every cell that carries data"""
    longitude: np.ndarray
    latitude: np.ndarray
    valid_lon_idx: np.ndarray
    valid_lat_idx: np.ndarray

    def __post_init__(self):
        self.longitude = np.asarray(self.longitude, dtype=float)
        self.latitude = np.asarray(self.latitude, dtype=float)
        self.valid_lon_idx = np.asarray(self.valid_lon_idx, dtype=np.int64)
        self.valid_lat_idx = np.asarray(self.valid_lat_idx, dtype=np.int64)
        if self.valid_lon_idx.shape != self.valid_lat_idx.shape:
            raise ValueError("valid_lon_idx and valid_lat_idx must be parallel arrays")

    def __len__(self) -> int:
        return int(self.valid_lon_idx.size)

    def nearest(self, target_lon: float, target_lat: float) -> Tuple[int, int]:
        """(lon_idx, lat_idx) of the valid cell closest to the target"""
        if len(self) == 0:
            raise LocationNotFoundError("Lookup table holds no valid ocean points")
        distances = planar_distance(self.longitude[self.valid_lon_idx],
                                    self.latitude[self.valid_lat_idx],
                                    target_lon, target_lat)
        k = int(np.argmin(distances))
        return int(self.valid_lon_idx[k]), int(self.valid_lat_idx[k])

    def to_dataset(self) -> xr.Dataset:
        return xr.Dataset(
            {
                "valid_lon_idx": ("point", self.valid_lon_idx),
                "valid_lat_idx": ("point", self.valid_lat_idx),
            },
            coords={"longitude": self.longitude, "latitude": self.latitude},
        )

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataset().to_netcdf(path)
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ValidPointTable":
        with xr.open_dataset(path) as ds:
            return cls(
                longitude=ds["longitude"].values,
                latitude=ds["latitude"].values,
                valid_lon_idx=ds["valid_lon_idx"].values,
                valid_lat_idx=ds["valid_lat_idx"].values,
            )


def build_valid_point_table(ds: xr.Dataset, reference_variable: str = "hs",
                            lon_dim: str = "longitude",
                            lat_dim: str = "latitude") -> ValidPointTable:
    """
    One-time preprocessing: scan the first time step of a gridded month and
    record every (lon, lat) index pair whose reference variable is not NaN
    """
    ref = ds[reference_variable]
    if "time" in ref.dims:
        ref = ref.isel(time=0)
    ref = ref.transpose(lat_dim, lon_dim).values
    lat_idx, lon_idx = np.nonzero(~np.isnan(ref))
    logger.info(f"Valid point table: {lat_idx.size} of {ref.size} cells carry data")
    return ValidPointTable(
        longitude=ds[lon_dim].values,
        latitude=ds[lat_dim].values,
        valid_lon_idx=lon_idx,
        valid_lat_idx=lat_idx,
    )


@dataclass
class StationTable:
    """Spectral output station coordinates"""
    longitude: np.ndarray
    latitude: np.ndarray

    def __post_init__(self):
        self.longitude = np.asarray(self.longitude, dtype=float) % 360.0
        self.latitude = np.asarray(self.latitude, dtype=float)
        if self.longitude.shape != self.latitude.shape:
            raise ValueError("Station longitude and latitude must be parallel arrays")

    def __len__(self) -> int:
        return int(self.longitude.size)

    def nearest(self, target_lon: float, target_lat: float) -> int:
        if len(self) == 0:
            raise LocationNotFoundError("Station table is empty")
        return int(np.argmin(planar_distance(self.longitude, self.latitude,
                                             target_lon, target_lat)))

    @classmethod
    def from_dataset(cls, ds: xr.Dataset) -> "StationTable":
        """Station coordinates from a spectral file (some repeat them per time step)"""
        lon = ds["longitude"]
        lat = ds["latitude"]
        if "time" in lon.dims:
            lon = lon.isel(time=0)
        if "time" in lat.dims:
            lat = lat.isel(time=0)
        return cls(longitude=lon.values, latitude=lat.values)

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        xr.Dataset({"longitude": ("station", self.longitude),
                    "latitude": ("station", self.latitude)}).to_netcdf(path)
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "StationTable":
        with xr.open_dataset(path) as ds:
            return cls(longitude=ds["longitude"].values, latitude=ds["latitude"].values)


# =============================================================================
# GRID LOCATOR
# =============================================================================

class GridLocator:
    """
    Nearest-valid-point resolution for one dataset type / grid combination.

    Wave data is resolved against a precomputed ValidPointTable when one is
    available ('table'), or by scanning the coordinate axes and the ocean mask
    of a source file around the target ('scan'). Wind data picks the nearest
    spectral station.
    """

    def __init__(self,
                 dataset_type: str = "wave",
                 grid_label: str = "aus_10m",
                 tables_dir: Optional[Path] = None,
                 lookup: str = "auto",
                 search_radius: float = DEFAULT_SEARCH_RADIUS,
                 reference_variable: str = "hs",
                 scan_urls: Union[str, Sequence[str], None] = None,
                 opener: Callable[[str], xr.Dataset] = open_remote_dataset):
        if dataset_type not in ("wave", "wind"):
            raise ValueError(f"Unknown dataset type: {dataset_type}")
        if lookup not in LOOKUP_MODES:
            raise ValueError(f"lookup must be one of {LOOKUP_MODES}, got {lookup!r}")
        if search_radius <= 0:
            raise ValueError("search_radius must be positive")

        self.dataset_type = dataset_type
        self.grid_label = grid_label
        self.tables_dir = Path(tables_dir) if tables_dir is not None else None
        self.lookup = lookup
        self.search_radius = search_radius
        self.reference_variable = reference_variable
        if isinstance(scan_urls, str):
            scan_urls = [scan_urls]
        self.scan_urls: List[str] = list(scan_urls or [])
        self.opener = opener

    @property
    def table_path(self) -> Optional[Path]:
        if self.tables_dir is None:
            return None
        name = STATION_TABLE_NAME if self.dataset_type == "wind" else f"{self.grid_label}.nc"
        return self.tables_dir / name

    def resolve(self, target_lon: float, target_lat: float) -> LocationResolution:
        """Resolve a target coordinate; raises LocationNotFoundError"""
        target_lon = normalize_longitude(target_lon)
        target_lat = validate_latitude(target_lat)

        if self.dataset_type == "wind":
            return self._resolve_station(target_lon, target_lat)

        mode = self._select_mode()
        logger.debug(f"Resolving {target_lon:.4f}E {target_lat:.4f}N on {self.grid_label} via {mode}")
        if mode == "table":
            table = ValidPointTable.load(self.table_path)
            lon_idx, lat_idx = table.nearest(target_lon, target_lat)
            actual_lon = float(table.longitude[lon_idx])
            actual_lat = float(table.latitude[lat_idx])
        else:
            lon_idx, lat_idx, actual_lon, actual_lat = self._scan(target_lon, target_lat)

        return LocationResolution(
            target_lon=target_lon,
            target_lat=target_lat,
            actual_lon=actual_lon,
            actual_lat=actual_lat,
            dataset_type=self.dataset_type,
            grid_label=self.grid_label,
            index=(("latitude", lat_idx), ("longitude", lon_idx)),
        )

    def _select_mode(self) -> str:
        path = self.table_path
        have_table = path is not None and path.exists()
        if self.lookup == "table":
            if not have_table:
                raise FileNotFoundError(f"Valid point table not found: {path}")
            return "table"
        if self.lookup == "scan" or not have_table:
            if not self.scan_urls:
                raise LocationNotFoundError(
                    f"No lookup table for {self.grid_label} and no source file to scan")
            return "scan"
        return "table"

    def _first_readable(self, read: Callable[[xr.Dataset], T]) -> T:
        """Apply read to the first source file that opens and reads cleanly"""
        last_error = None
        for url in self.scan_urls:
            try:
                with self.opener(url) as ds:
                    return read(ds)
            except SOURCE_ERRORS as e:
                logger.warning(f"Could not read grid from {url}: {e}")
                last_error = e
        raise LocationNotFoundError(
            f"Failed to find nearest grid point: none of {len(self.scan_urls)} "
            f"source files could be read") from last_error

    def _read_box(self, ds: xr.Dataset, target_lon: float, target_lat: float):
        """Coordinate axes and ocean mask of the box target +/- search_radius"""
        r = self.search_radius
        longitude_full = np.asarray(ds["longitude"].values, dtype=float)
        latitude_full = np.asarray(ds["latitude"].values, dtype=float)

        lon_indices = np.flatnonzero(np.abs(longitude_full - target_lon) <= r)
        lat_indices = np.flatnonzero(np.abs(latitude_full - target_lat) <= r)
        if lon_indices.size == 0 or lat_indices.size == 0:
            raise LocationNotFoundError(
                f"No grid points found within {r:.1f} deg of target location "
                f"({target_lon:.4f}E, {target_lat:.4f}N)")

        lon_start, lon_stop = int(lon_indices[0]), int(lon_indices[-1]) + 1
        lat_start, lat_stop = int(lat_indices[0]), int(lat_indices[-1]) + 1

        ref = ds[self.reference_variable]
        if "time" in ref.dims:
            ref = ref.isel(time=0)
        ref_map = np.asarray(
            ref.isel(longitude=slice(lon_start, lon_stop),
                     latitude=slice(lat_start, lat_stop))
            .transpose("latitude", "longitude").values,
            dtype=float,
        )
        return (longitude_full[lon_start:lon_stop], latitude_full[lat_start:lat_stop],
                ref_map, lon_start, lat_start)

    def _scan(self, target_lon: float, target_lat: float) -> Tuple[int, int, float, float]:
        """Live scan: bounding box, then ocean-mask check"""
        longitude, latitude, ref_map, lon_start, lat_start = self._first_readable(
            lambda ds: self._read_box(ds, target_lon, target_lat))

        valid = ~np.isnan(ref_map)
        i_lon = int(np.argmin(np.abs(longitude - target_lon)))
        i_lat = int(np.argmin(np.abs(latitude - target_lat)))

        if not valid[i_lat, i_lon]:
            ocean_lat, ocean_lon = np.nonzero(valid)
            if ocean_lat.size == 0:
                raise LocationNotFoundError(
                    f"Only land cells within {self.search_radius:.1f} deg of "
                    f"({target_lon:.4f}E, {target_lat:.4f}N)")
            distances = planar_distance(longitude[ocean_lon], latitude[ocean_lat],
                                        target_lon, target_lat)
            k = int(np.argmin(distances))
            logger.debug(f"Nearest cell ({longitude[i_lon]:.4f}E, {latitude[i_lat]:.4f}N) "
                         f"is land, moving to nearest ocean cell")
            i_lon, i_lat = int(ocean_lon[k]), int(ocean_lat[k])

        return (lon_start + i_lon, lat_start + i_lat,
                float(longitude[i_lon]), float(latitude[i_lat]))

    def _load_stations(self) -> StationTable:
        path = self.table_path
        if path is not None and path.exists() and self.lookup != "scan":
            return StationTable.load(path)
        if self.lookup == "table":
            raise FileNotFoundError(f"Station table not found: {path}")
        if not self.scan_urls:
            raise LocationNotFoundError("No station table and no spectral file to read stations from")
        return self._first_readable(StationTable.from_dataset)

    def _resolve_station(self, target_lon: float, target_lat: float) -> LocationResolution:
        stations = self._load_stations()
        station_idx = stations.nearest(target_lon, target_lat)
        return LocationResolution(
            target_lon=target_lon,
            target_lat=target_lat,
            actual_lon=float(stations.longitude[station_idx]),
            actual_lat=float(stations.latitude[station_idx]),
            dataset_type=self.dataset_type,
            grid_label=self.grid_label,
            index=(("station", station_idx),),
        )
