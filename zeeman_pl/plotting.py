from __future__ import annotations

import math
from collections.abc import Sequence
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.ticker import AutoMinorLocator

from .analysis import half_max_bounds
from .config import SAVE_DPI
from .io import atomic_write
from .models import ChannelData, GFactorFit, PolarizationResult

CHANNEL_COLORS = {
    "Pos": ("#c62828", "#ef9a9a"),
    "Neg": ("#1565c0", "#90caf9"),
}


def setup_plot_style() -> None:
    # Panel grids hold up to a dozen small axes; keep labels compact.
    plt.style.use("default")
    plt.rcParams.update(
        {
            "font.family": "serif",
            "mathtext.fontset": "stix",
            "axes.labelsize": 10,
            "axes.titlesize": 10,
            "xtick.labelsize": 8,
            "ytick.labelsize": 8,
            "grid.alpha": 0.22,
            "grid.linestyle": "--",
        }
    )


def style_axes(ax: plt.Axes) -> None:
    ax.tick_params(which="both", direction="in", top=True, right=True)
    ax.xaxis.set_minor_locator(AutoMinorLocator(2))
    ax.yaxis.set_minor_locator(AutoMinorLocator(2))
    ax.grid(True, which="major", linewidth=0.7)
    ax.grid(True, which="minor", linewidth=0.35, alpha=0.12)


def save_figure(fig: plt.Figure, outpath: Path) -> Path:
    png_outpath = Path(outpath).with_suffix(".png")
    try:
        return atomic_write(
            png_outpath,
            lambda tmp: fig.savefig(tmp, dpi=SAVE_DPI, bbox_inches="tight", format="png"),
        )
    finally:
        plt.close(fig)


def subplot_layout(n_panels: int) -> tuple[int, int]:
    rows = max(1, math.ceil(math.sqrt(n_panels)))
    cols = max(1, math.ceil(n_panels / rows))
    return rows, cols


def _panel_axes(n_panels: int, panel_size: tuple[float, float] = (3.6, 2.8)):
    rows, cols = subplot_layout(n_panels)
    fig, axes = plt.subplots(
        rows,
        cols,
        figsize=(panel_size[0] * cols, panel_size[1] * rows),
        squeeze=False,
    )
    flat = axes.ravel()
    for ax in flat[n_panels:]:
        ax.set_visible(False)
    return fig, flat[:n_panels]


def _annotate_series(
    ax: plt.Axes,
    energy: np.ndarray,
    intensity: np.ndarray,
    peak_x: float,
    peak_y: float,
    marker_color: str,
    fwhm_style: str,
) -> None:
    if not (np.isfinite(peak_x) and np.isfinite(peak_y)):
        return
    ax.plot(peak_x, peak_y, "*", color=marker_color, ms=7)
    ax.annotate(
        f"({peak_x:.3f}, {peak_y:.3g})",
        xy=(peak_x, peak_y),
        xytext=(-4, 4),
        textcoords="offset points",
        ha="right",
        fontsize=7,
    )
    bounds = half_max_bounds(energy, intensity)
    if bounds is not None:
        x0, x1, half = bounds
        ax.plot([x0, x1], [half, half], fwhm_style, lw=1.0)


def plot_channel_spectra(
    energy: np.ndarray,
    channel: ChannelData,
    titles: Sequence[str],
    outpath: Path,
    suptitle: str | None = None,
) -> Path:
    key = channel.channel.value if channel.channel is not None else None
    line_color, fill_color = CHANNEL_COLORS.get(key, ("#1565c0", "#90caf9"))
    n_series = channel.raw.shape[1]
    fig, axes = _panel_axes(n_series)

    for i, ax in enumerate(axes):
        raw = channel.raw[:, i]
        smoothed = channel.smoothed[:, i]
        positive = smoothed > 0
        ax.fill_between(
            energy,
            0.0,
            smoothed,
            where=positive,
            color=fill_color,
            alpha=0.35,
            lw=0,
        )
        ax.plot(energy, raw, color=line_color, lw=0.9, alpha=0.55, label="raw")
        ax.plot(energy, smoothed, color=line_color, lw=1.4, label="smoothed")

        raw_features = channel.features.raw[i]
        smooth_features = channel.features.smoothed[i]
        _annotate_series(ax, energy, raw, raw_features.peak_x, raw_features.peak_y, "k", "g--")
        _annotate_series(
            ax,
            energy,
            smoothed,
            smooth_features.peak_x,
            smooth_features.peak_y,
            "b",
            "b--",
        )
        style_axes(ax)
        ax.set_title(titles[i] if i < len(titles) else f"series {i + 1}")
        ax.set_xlabel("Energy (eV)")
        ax.set_ylabel("PL intensity (a.u.)")

    if n_series:
        axes[0].legend(loc="best", fontsize=7)
    if suptitle is None:
        suptitle = f"{channel.channel.title} Data" if channel.channel is not None else "Spectra"
    fig.suptitle(suptitle, fontsize=13)
    fig.tight_layout()
    return save_figure(fig, outpath)


def plot_channel_overlay(
    energy: np.ndarray,
    positive: ChannelData,
    negative: ChannelData,
    titles: Sequence[str],
    outpath: Path,
) -> Path:
    n_series = positive.raw.shape[1]
    fig, axes = _panel_axes(n_series)
    pos_color = CHANNEL_COLORS["Pos"][0]
    neg_color = CHANNEL_COLORS["Neg"][0]

    for i, ax in enumerate(axes):
        ax.plot(energy, negative.raw[:, i], color=neg_color, lw=0.8, alpha=0.45, label="Neg raw")
        ax.plot(energy, positive.raw[:, i], color=pos_color, lw=0.8, alpha=0.45, label="Pos raw")
        ax.plot(energy, positive.smoothed[:, i], color=pos_color, lw=1.4, label="Pos smoothed")
        ax.plot(energy, negative.smoothed[:, i], color=neg_color, lw=1.4, label="Neg smoothed")
        style_axes(ax)
        ax.set_title(titles[i] if i < len(titles) else f"series {i + 1}")
        ax.set_xlabel("Energy (eV)")
        ax.set_ylabel("PL intensity (a.u.)")

    if n_series:
        axes[0].legend(loc="best", fontsize=7)
    fig.suptitle("Pos & Neg Overlap", fontsize=13)
    fig.tight_layout()
    return save_figure(fig, outpath)


def plot_docp_and_zeeman(
    polarization: PolarizationResult,
    fit: GFactorFit,
    outpath: Path,
) -> Path:
    b = polarization.condition_values
    fig, (ax0, ax1) = plt.subplots(2, 1, figsize=(7.5, 7.2), sharex=True)

    ax0.plot(b, polarization.docp_raw, "o", color="#c62828", ms=5, label="raw")
    ax0.plot(b, polarization.docp_smoothed, "-", color="#1565c0", label="smoothed")
    style_axes(ax0)
    ax0.set_ylabel("DOCP")
    ax0.legend(loc="best")

    ax1.plot(b, polarization.zeeman_raw_mev, "o", color="#1565c0", ms=5, label="Exp")
    if fit.succeeded:
        order = np.argsort(b)
        ax1.plot(b[order], fit.fitted_shift_mev[order], "-", color="#c62828", lw=2.0, label="Fit")
        ax1.text(
            0.05,
            0.88,
            f"g = {fit.g:.3f}, slope = {fit.slope:.3f}",
            transform=ax1.transAxes,
            color="#c62828",
            fontweight="bold",
        )
    style_axes(ax1)
    ax1.set_xlabel("Magnetic field, $B$ (T)")
    ax1.set_ylabel(r"$\Delta E$ (meV)")
    ax1.legend(loc="best")

    fig.suptitle("DOCP & g-factor", fontsize=13)
    fig.tight_layout()
    return save_figure(fig, outpath)


def plot_dependence_trends(
    condition_values: np.ndarray,
    peak_energy: np.ndarray,
    peak_intensity: np.ndarray,
    area: np.ndarray,
    outpath: Path,
    condition_label: str = "Power",
) -> Path:
    x = np.asarray(condition_values, dtype=float)
    if not np.any(np.isfinite(x)):
        x = np.arange(1, peak_energy.size + 1, dtype=float)
        condition_label = "Series index"

    fig, axes = plt.subplots(1, 3, figsize=(13.0, 4.0))
    panels = (
        (peak_energy, "-o", "Energy (eV)"),
        (peak_intensity, "-s", "Peak intensity (a.u.)"),
        (area, "-^", "Area (smoothed)"),
    )
    for ax, (values, fmt, ylabel) in zip(axes, panels, strict=True):
        ax.plot(x, values, fmt, ms=4.5, color="#1565c0")
        style_axes(ax)
        ax.set_xlabel(condition_label)
        ax.set_ylabel(ylabel)

    fig.tight_layout()
    return save_figure(fig, outpath)
