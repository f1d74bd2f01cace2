import matplotlib.pyplot as plt
import numpy as np

from zeeman_pl.analysis import extract_channel_features
from zeeman_pl.models import Channel, ChannelData
from zeeman_pl.plotting import plot_channel_spectra, setup_plot_style, subplot_layout


def test_plot_style_keeps_panel_labels_compact():
    setup_plot_style()
    assert plt.rcParams["axes.labelsize"] == 10
    assert plt.rcParams["xtick.labelsize"] == 8
    assert plt.rcParams["grid.linestyle"] == "--"


def test_subplot_layout_fits_every_panel():
    for n_panels in (1, 2, 5, 12):
        rows, cols = subplot_layout(n_panels)
        assert rows * cols >= n_panels


def test_channel_plot_skips_markers_for_an_empty_series(tmp_path):
    energy = 1.45 + 5e-5 * np.arange(400)
    raw = np.column_stack(
        [np.exp(-0.5 * ((energy - 1.46) / 0.002) ** 2), np.full(energy.size, np.nan)]
    )
    features = extract_channel_features(energy, raw, raw, np.array([1.0, 2.0]))
    channel = ChannelData(channel=Channel.POSITIVE, raw=raw, smoothed=raw, features=features)

    written = plot_channel_spectra(energy, channel, ["B=1.00T", "B=2.00T"], tmp_path / "pos")

    assert written == tmp_path / "pos.png"
    assert written.stat().st_size > 0
