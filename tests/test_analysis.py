from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest
from matplotlib.figure import Figure

from wave_hindcast_analysis import (
    circular_mean,
    direction_rose,
    figure_name,
    joint_probability,
    plot_direction_rose,
    plot_joint_probability,
    plot_location_comparison,
    save_figure,
)

METADATA = SimpleNamespace(actual_lon=150.3, actual_lat=-34.2,
                           start_year_month=201501, end_year_month=201503)


@pytest.fixture
def sea_state():
    rng = np.random.default_rng(7)
    hs = rng.gamma(2.0, 0.6, 500)
    t02 = 4.0 + 1.5 * hs + rng.normal(0, 0.3, 500)
    direction = (150 + rng.normal(0, 20, 500)) % 360
    hs[:5] = np.nan
    return t02, hs, direction


def test_joint_probability_normalizes(sea_state):
    t02, hs, _ = sea_state

    dist = joint_probability(t02, hs, bins=15)

    assert dist.probability.shape == (14, 14)
    assert dist.probability.sum() == pytest.approx(1.0)
    assert dist.n_samples == 495
    assert dist.x_edges[0] == pytest.approx(np.nanmin(t02[5:]))
    assert dist.y_edges[-1] == pytest.approx(np.nanmax(hs))


def test_joint_probability_constant_series():
    dist = joint_probability([5.0, 5.0], [1.0, 1.0], bins=4)

    assert dist.probability.sum() == pytest.approx(1.0)


def test_joint_probability_rejects_all_nan():
    with pytest.raises(ValueError):
        joint_probability([np.nan], [1.0])


def test_rose_sector_zero_straddles_north():
    rose = direction_rose([359.0, 1.0, 7.4, 7.6], [0.2, 0.2, 0.2, 0.2])

    assert rose.percent[0, 0] == pytest.approx(75.0)
    assert rose.percent[1, 0] == pytest.approx(25.0)
    assert rose.percent.sum() == pytest.approx(100.0)


def test_rose_magnitude_classes():
    wave = direction_rose([90.0, 90.0], [0.7, 5.0], kind="wave")
    wind = direction_rose([90.0], [12.0], kind="wind")

    assert wave.percent[6, 1] == pytest.approx(50.0)
    assert wave.percent[6, 5] == pytest.approx(50.0)
    assert wind.percent[6, 3] == pytest.approx(100.0)


def test_rose_other_kind_uses_even_classes():
    rose = direction_rose([10.0, 20.0, 30.0], [0.0, 1.0, 3.0], kind="current")

    np.testing.assert_allclose(rose.magnitude_edges, np.linspace(0, 3.0, 7))
    assert rose.percent[2, 5] == pytest.approx(100 / 3)


def test_circular_mean_wraps():
    assert circular_mean([80.0, 100.0]) == pytest.approx(90.0)
    mean = circular_mean([350.0, 10.0])
    assert min(mean, 360.0 - mean) == pytest.approx(0.0, abs=1e-9)
    assert np.isnan(circular_mean([np.nan]))


def test_renderers_save_png(tmp_path, sea_state):
    t02, hs, direction = sea_state

    heatmap = plot_joint_probability(joint_probability(t02, hs), METADATA)
    rose = plot_direction_rose(direction_rose(direction, hs), METADATA)

    assert isinstance(heatmap, Figure) and isinstance(rose, Figure)
    assert "150.3000E" in heatmap.axes[0].get_title()
    path = save_figure(rose, tmp_path / figure_name("waveRose", METADATA))
    assert path.name == "waveRose_201501_201503_150.3000E_-34.2000N.png"
    assert path.exists()
    save_figure(heatmap, tmp_path / "heatmap.png")


def test_location_comparison_png(tmp_path):
    wave = SimpleNamespace(target_lon=150.21, target_lat=-34.2, actual_lon=150.3, actual_lat=-34.2,
                           dataset_type="wave", start_year_month=201501, end_year_month=201503)
    wind = SimpleNamespace(target_lon=150.21, target_lat=-34.2, actual_lon=150.5, actual_lat=-34.0,
                           dataset_type="wind", start_year_month=201501, end_year_month=201503)
    grid = (np.array([150.0, 150.3, 150.4]), np.array([-34.2, -34.2, -34.1]))

    fig = plot_location_comparison(wave, wind, grid_points={"aus_10m": grid},
                                   stations=(np.array([150.5]), np.array([-34.0])))

    ax = fig.axes[0]
    labels = [text.get_text() for text in ax.get_legend().get_texts()]
    assert labels == ["aus_10m", "spec", "Wind data location", "Wave data location", "Target location"]
    assert ax.get_xlim() == pytest.approx((145.21, 155.21))
    path = save_figure(fig, tmp_path / figure_name("locationComparison", wave))
    assert path.exists()
