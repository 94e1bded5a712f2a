"""
Wave Hindcast Analysis - bivariate probability and directional rose
statistics for an assembled point time series, with matplotlib renderers
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.figure import Figure

logger = logging.getLogger(__name__)

N_SECTORS = 24
SECTOR_WIDTH = 360.0 / N_SECTORS  # 15 degrees

# Magnitude class edges for the rose; wind follows the Beaufort breaks
MAGNITUDE_EDGES = {
    "wave": np.array([0.0, 0.5, 1.0, 2.0, 3.0, 4.0, np.inf]),
    "wind": np.array([0.0, 1.6, 5.5, 10.8, 17.2, 24.5, np.inf]),
}
MAGNITUDE_UNITS = {"wave": "m", "wind": "m/s"}

PERCENT_LABEL_THRESHOLD = 0.3

GRID_COLORS = ("#ef476f", "#762a83", "#f9c74f", "#fc8d59", "#8cb369", "#3288bd")


# =============================================================================
# STATISTICS
# =============================================================================

@dataclass
class JointDistribution:
    """Probability matrix indexed [y_bin, x_bin]; sums to 1"""
    x_edges: np.ndarray
    y_edges: np.ndarray
    probability: np.ndarray
    n_samples: int
    x_name: str = "t02"
    y_name: str = "hs"

    @property
    def percent(self) -> np.ndarray:
        return self.probability * 100.0


@dataclass
class DirectionRose:
    """Percent of samples per (direction sector, magnitude class); sums to 100"""
    sector_centers: np.ndarray
    magnitude_edges: np.ndarray
    percent: np.ndarray  # [sector, magnitude class]
    mean_direction: float
    n_samples: int
    kind: str = "wave"


def _paired_finite(x, y):
    x = np.asarray(x, dtype=float).ravel()
    y = np.asarray(y, dtype=float).ravel()
    if x.shape != y.shape:
        raise ValueError(f"Series lengths differ: {x.size} vs {y.size}")
    keep = np.isfinite(x) & np.isfinite(y)
    if not keep.any():
        raise ValueError("No valid (non-NaN) sample pairs")
    return x[keep], y[keep]


def _edges(values: np.ndarray, bins: int) -> np.ndarray:
    lo, hi = float(values.min()), float(values.max())
    if lo == hi:
        lo, hi = lo - 0.5, hi + 0.5
    return np.linspace(lo, hi, bins)


def joint_probability(x, y, bins: int = 15,
                      x_name: str = "t02", y_name: str = "hs") -> JointDistribution:
    """
    Bivariate probability of (x, y), e.g. mean period against significant
    wave height. Pairs with a NaN on either side are dropped; both axes use
    `bins` evenly spaced edges between the observed min and max.
    """
    if bins < 2:
        raise ValueError("bins must be at least 2")
    x, y = _paired_finite(x, y)
    x_edges = _edges(x, bins)
    y_edges = _edges(y, bins)
    counts, _, _ = np.histogram2d(y, x, bins=[y_edges, x_edges])
    return JointDistribution(
        x_edges=x_edges,
        y_edges=y_edges,
        probability=counts / counts.sum(),
        n_samples=int(x.size),
        x_name=x_name,
        y_name=y_name,
    )


def circular_mean(directions) -> float:
    """Mean direction in [0, 360) degrees; NaN for no samples"""
    theta = np.deg2rad(np.asarray(directions, dtype=float))
    theta = theta[np.isfinite(theta)]
    if theta.size == 0:
        return float("nan")
    mean = np.rad2deg(np.arctan2(np.sin(theta).mean(), np.cos(theta).mean()))
    return float(mean % 360.0)


def direction_rose(directions, magnitudes, kind: str = "wave") -> DirectionRose:
    """
    Rose statistics in 24 sectors of 15 degrees, the first one centered on
    north (352.5 to 7.5). Magnitude classes come from MAGNITUDE_EDGES, or six
    even classes up to the maximum for any other kind.
    """
    directions, magnitudes = _paired_finite(directions, magnitudes)
    keep = magnitudes >= 0
    directions, magnitudes = directions[keep], magnitudes[keep]
    if directions.size == 0:
        raise ValueError("No non-negative magnitudes")

    if kind in MAGNITUDE_EDGES:
        edges = MAGNITUDE_EDGES[kind]
    else:
        edges = np.linspace(0.0, max(float(magnitudes.max()), np.finfo(float).eps), 7)

    sector = np.floor(((directions + SECTOR_WIDTH / 2) % 360.0) / SECTOR_WIDTH).astype(int)
    sector = np.minimum(sector, N_SECTORS - 1)
    n_classes = edges.size - 1
    mag_class = np.clip(np.searchsorted(edges, magnitudes, side="right") - 1, 0, n_classes - 1)

    counts = np.zeros((N_SECTORS, n_classes))
    np.add.at(counts, (sector, mag_class), 1)

    return DirectionRose(
        sector_centers=np.arange(N_SECTORS) * SECTOR_WIDTH,
        magnitude_edges=edges,
        percent=counts / counts.sum() * 100.0,
        mean_direction=circular_mean(directions),
        n_samples=int(directions.size),
        kind=kind,
    )


# =============================================================================
# RENDERERS
# =============================================================================

def _title(prefix: str, metadata) -> str:
    if metadata is None:
        return prefix
    return (f"{prefix} at {metadata.actual_lon:.4f}E, {metadata.actual_lat:.4f}N "
            f"({metadata.start_year_month} to {metadata.end_year_month})")


def figure_name(prefix: str, metadata) -> str:
    """Deterministic PNG name for a figure of one dataset"""
    return (f"{prefix}_{metadata.start_year_month}_{metadata.end_year_month}_"
            f"{metadata.actual_lon:.4f}E_{metadata.actual_lat:.4f}N.png")


def plot_joint_probability(dist: JointDistribution, metadata=None,
                           show_percentages: bool = True,
                           x_label: str = "Mean wave period T02 (s)",
                           y_label: str = "Significant wave height Hs (m)") -> Figure:
    """Heatmap of a JointDistribution in percent.

    Args:
        dist: Output of joint_probability.
        metadata: DatasetMetadata used for the title, optional.
        show_percentages: Write the percentage into every cell above 0.3%.

    Returns:
        matplotlib Figure object.
    """
    fig, ax = plt.subplots(figsize=(10, 8))
    percent = dist.percent
    mesh = ax.pcolormesh(dist.x_edges, dist.y_edges, percent, cmap="viridis", shading="flat")
    fig.colorbar(mesh, ax=ax, label="Probability (%)")

    if show_percentages:
        x_mid = (dist.x_edges[:-1] + dist.x_edges[1:]) / 2
        y_mid = (dist.y_edges[:-1] + dist.y_edges[1:]) / 2
        for i, j in zip(*np.nonzero(percent > PERCENT_LABEL_THRESHOLD)):
            ax.text(x_mid[j], y_mid[i], f"{percent[i, j]:.1f}",
                    ha="center", va="center", fontsize=7, color="white")

    ax.set_xlabel(x_label)
    ax.set_ylabel(y_label)
    ax.set_title(_title("Joint probability", metadata))
    return fig


def plot_direction_rose(rose: DirectionRose, metadata=None, title: str = "Wave",
                        colors: Optional[Sequence[str]] = None) -> Figure:
    """Stacked polar bars, clockwise from north; the mean direction is drawn as a line"""
    fig = plt.figure(figsize=(9, 9))
    ax = fig.add_subplot(projection="polar")
    ax.set_theta_zero_location("N")
    ax.set_theta_direction(-1)

    theta = np.deg2rad(rose.sector_centers)
    width = np.deg2rad(SECTOR_WIDTH) * 0.95
    n_classes = rose.percent.shape[1]
    if colors is None:
        colors = plt.cm.viridis(np.linspace(0, 1, n_classes))
    units = MAGNITUDE_UNITS.get(rose.kind, "")

    bottom = np.zeros(rose.percent.shape[0])
    for k in range(n_classes):
        lo, hi = rose.magnitude_edges[k], rose.magnitude_edges[k + 1]
        label = f">{lo:g} {units}" if np.isinf(hi) else f"{lo:g}-{hi:g} {units}"
        ax.bar(theta, rose.percent[:, k], width=width, bottom=bottom,
               color=colors[k], edgecolor="white", linewidth=0.5, label=label.strip())
        bottom += rose.percent[:, k]

    if np.isfinite(rose.mean_direction):
        ax.plot([np.deg2rad(rose.mean_direction)] * 2, [0, bottom.max()],
                color="black", linewidth=1.5, label=f"Mean {rose.mean_direction:.0f} deg")

    ax.legend(loc="upper left", bbox_to_anchor=(1.05, 1.0), fontsize=8)
    ax.set_title(_title(f"{title} rose", metadata), pad=20)
    return fig


def save_figure(fig: Figure, output_path: Path, dpi: int = 150) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Figure saved to {output_path}")
    return output_path


def plot_location_comparison(metadata, wind_metadata=None,
                             grid_points: Optional[Dict[str, Tuple[np.ndarray, np.ndarray]]] = None,
                             stations: Optional[Tuple[np.ndarray, np.ndarray]] = None,
                             window: Tuple[float, float] = (5.0, 3.0)) -> Figure:
    """Target against the resolved extraction point(s), over the grids they came from.

    Args:
        metadata: DatasetMetadata of a wave (or wind) extraction.
        wind_metadata: DatasetMetadata of a wind extraction at the same target, optional.
        grid_points: Grid label -> (lons, lats) of valid cells to draw underneath.
        stations: (lons, lats) of spectral output stations.
        window: Half-width of the view in degrees (lon, lat) around the target.

    Returns:
        matplotlib Figure object.
    """
    fig, ax = plt.subplots(figsize=(12, 8))

    for (label, (lons, lats)), color in zip((grid_points or {}).items(), GRID_COLORS):
        ax.scatter(lons, lats, s=20, alpha=0.7, color=color, label=label)
    if stations is not None:
        ax.scatter(stations[0], stations[1], s=100, marker="x", linewidths=2,
                   color=GRID_COLORS[-1], label="spec")

    if wind_metadata is not None:
        ax.plot(wind_metadata.actual_lon, wind_metadata.actual_lat, "rx",
                markersize=15, markeredgewidth=2, label="Wind data location")
    kind = "Wind" if getattr(metadata, "dataset_type", "wave") == "wind" else "Wave"
    marker = "rx" if kind == "Wind" else "r+"
    ax.plot(metadata.actual_lon, metadata.actual_lat, marker,
            markersize=15, markeredgewidth=2, label=f"{kind} data location")
    ax.plot(metadata.target_lon, metadata.target_lat, "o", markersize=15, markeredgewidth=2,
            markerfacecolor="none", color="red", label="Target location")

    ax.set_xlim(metadata.target_lon - window[0], metadata.target_lon + window[0])
    ax.set_ylim(metadata.target_lat - window[1], metadata.target_lat + window[1])
    ax.set_xlabel("Longitude (deg E)")
    ax.set_ylabel("Latitude (deg N)")
    ax.set_title("Location comparison")
    ax.legend(loc="best")
    return fig
