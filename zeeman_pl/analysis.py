from __future__ import annotations

import logging
import warnings

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from .config import EV_TO_MEV, G_FACTOR_SLOPE_ALPHA, G_FACTOR_START
from .errors import InputShapeError
from .models import ChannelFeatures, FeatureRecord, GFactorFit, PolarizationResult

logger = logging.getLogger(__name__)


# ----------------------------- Per-series features -------------------------------


def find_peak(energy: np.ndarray, intensity: np.ndarray) -> tuple[float, float]:
    """First maximum over the finite samples; (NaN, NaN) when there are none."""
    finite = np.isfinite(intensity)
    if not np.any(finite):
        return np.nan, np.nan
    idx = int(np.argmax(np.where(finite, intensity, -np.inf)))
    return float(energy[idx]), float(intensity[idx])


def half_max_bounds(
    energy: np.ndarray, intensity: np.ndarray
) -> tuple[float, float, float] | None:
    """
    Energies of the first and last finite samples at or above half of the
    maximum, plus the half-maximum level. None when the maximum is not a
    positive finite value, which covers all-zero and fully negative columns.
    """
    finite = np.isfinite(intensity)
    if not np.any(finite):
        return None
    peak = float(np.max(intensity[finite]))
    if peak <= 0:
        return None

    half = peak / 2.0
    above = np.flatnonzero(finite & (np.where(finite, intensity, -np.inf) >= half))
    if above.size == 0:
        return None
    return float(energy[above[0]]), float(energy[above[-1]]), half


def compute_fwhm(energy: np.ndarray, intensity: np.ndarray) -> float:
    bounds = half_max_bounds(energy, intensity)
    if bounds is None:
        return np.nan
    x_first, x_last, _ = bounds
    return float(abs(x_last - x_first))


def integrated_area(energy: np.ndarray, intensity: np.ndarray) -> float:
    # Missing cells are skipped; the trapezoid bridges the neighbouring samples.
    mask = np.isfinite(energy) & np.isfinite(intensity)
    x = energy[mask]
    y = intensity[mask]
    if x.size < 2:
        return 0.0
    if x[0] > x[-1]:
        area = np.trapezoid(y[::-1], x[::-1])
    else:
        area = np.trapezoid(y, x)
    return float(abs(area))


def extract_features(energy: np.ndarray, intensity: np.ndarray) -> FeatureRecord:
    x = np.asarray(energy, dtype=float).ravel()
    y = np.asarray(intensity, dtype=float).ravel()
    if x.size != y.size:
        raise InputShapeError(
            f"Energy axis has {x.size} samples but the series has {y.size}.",
            stage="features",
        )
    if y.size == 0:
        raise InputShapeError("Cannot extract features from an empty series.", stage="features")
    if not np.any(np.isfinite(y)):
        return FeatureRecord(peak_x=np.nan, peak_y=np.nan, fwhm=np.nan, area=np.nan)

    peak_x, peak_y = find_peak(x, y)
    return FeatureRecord(
        peak_x=peak_x,
        peak_y=peak_y,
        fwhm=compute_fwhm(x, y),
        area=integrated_area(x, y),
    )


def extract_channel_features(
    energy: np.ndarray,
    raw: np.ndarray,
    smoothed: np.ndarray,
    condition_values: np.ndarray,
) -> ChannelFeatures:
    raw = np.asarray(raw, dtype=float)
    smoothed = np.asarray(smoothed, dtype=float)
    if raw.shape != smoothed.shape:
        raise InputShapeError(
            f"Raw matrix {raw.shape} and smoothed matrix {smoothed.shape} differ in shape.",
            stage="features",
        )
    n_series = raw.shape[1]
    conditions = np.asarray(condition_values, dtype=float)
    if conditions.size != n_series:
        raise InputShapeError(
            f"{conditions.size} condition values for {n_series} series.",
            stage="features",
        )

    raw_records: list[FeatureRecord | None] = [None] * n_series
    smoothed_records: list[FeatureRecord | None] = [None] * n_series
    for i in range(n_series):
        raw_records[i] = extract_features(energy, raw[:, i])
        smoothed_records[i] = extract_features(energy, smoothed[:, i])
        if not np.isfinite(raw_records[i].fwhm):
            logger.warning(
                "Series %d (condition %g): FWHM undefined, peak intensity is %g.",
                i,
                conditions[i],
                raw_records[i].peak_y,
            )

    return ChannelFeatures(
        condition_values=conditions.copy(),
        raw=tuple(raw_records),
        smoothed=tuple(smoothed_records),
    )


# ----------------------------- Channel pairing -----------------------------------


def split_channels(intensities: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Split interleaved intensity columns into (positive, negative) channels:
    the first Y column is positive, the second negative, and so on.
    """
    data = np.asarray(intensities, dtype=float)
    return data[:, 0::2], data[:, 1::2]


def series_count(n_positive: int, n_negative: int, n_conditions: int) -> int:
    return int(min(n_positive, n_negative, n_conditions))


# ----------------------------- DOCP & Zeeman -------------------------------------


def compute_docp(intensity_pos: np.ndarray, intensity_neg: np.ndarray) -> np.ndarray:
    i_pos = np.asarray(intensity_pos, dtype=float)
    i_neg = np.asarray(intensity_neg, dtype=float)
    total = i_pos + i_neg
    with np.errstate(divide="ignore", invalid="ignore"):
        docp = (i_pos - i_neg) / total
    return np.where(total == 0, np.nan, docp)


def compute_zeeman_shift(energy_pos: np.ndarray, energy_neg: np.ndarray) -> np.ndarray:
    return (np.asarray(energy_pos, dtype=float) - np.asarray(energy_neg, dtype=float)) * EV_TO_MEV


def analyze_polarization(
    positive: ChannelFeatures,
    negative: ChannelFeatures,
) -> PolarizationResult:
    if positive.n_series != negative.n_series:
        raise InputShapeError(
            f"Positive channel has {positive.n_series} series, negative has {negative.n_series}.",
            stage="polarization",
        )
    if not np.array_equal(positive.condition_values, negative.condition_values, equal_nan=True):
        raise InputShapeError(
            "Positive and negative channels do not share the same condition values.",
            stage="polarization",
        )

    return PolarizationResult(
        condition_values=positive.condition_values.copy(),
        docp_raw=compute_docp(
            positive.values("raw", "peak_y"), negative.values("raw", "peak_y")
        ),
        docp_smoothed=compute_docp(
            positive.values("smoothed", "peak_y"), negative.values("smoothed", "peak_y")
        ),
        zeeman_raw_mev=compute_zeeman_shift(
            positive.values("raw", "peak_x"), negative.values("raw", "peak_x")
        ),
        zeeman_smoothed_mev=compute_zeeman_shift(
            positive.values("smoothed", "peak_x"), negative.values("smoothed", "peak_x")
        ),
    )


def nan_mean(values: np.ndarray) -> float:
    arr = np.asarray(values, dtype=float)
    finite = arr[np.isfinite(arr)]
    if finite.size == 0:
        return np.nan
    return float(np.mean(finite))


# ----------------------------- g-factor fit --------------------------------------


def _zeeman_model(b_field: np.ndarray, g: float) -> np.ndarray:
    return g * b_field


def fit_g_factor(
    b_field: np.ndarray,
    shift_mev: np.ndarray,
    g0: float = G_FACTOR_START,
    alpha: float = G_FACTOR_SLOPE_ALPHA,
) -> GFactorFit:
    b = np.asarray(b_field, dtype=float).ravel()
    shift = np.asarray(shift_mev, dtype=float).ravel()
    if b.size != shift.size:
        raise InputShapeError(
            f"{b.size} field values for {shift.size} Zeeman shifts.",
            stage="fit",
        )

    usable = np.isfinite(b) & np.isfinite(shift)
    n_points = int(np.count_nonzero(usable))
    nan_fit = np.full_like(b, np.nan, dtype=float)
    if n_points == 0 or not np.any(b[usable] != 0):
        logger.warning(
            "g-factor fit skipped: %d usable (B, shift) pairs and no non-zero field value.",
            n_points,
        )
        return GFactorFit(g=np.nan, slope=np.nan, fitted_shift_mev=nan_fit, n_points=n_points)

    with warnings.catch_warnings():
        # A single free parameter on few points leaves the covariance undefined.
        warnings.simplefilter("ignore", OptimizeWarning)
        try:
            popt, _ = curve_fit(_zeeman_model, b[usable], shift[usable], p0=[g0])
        except (RuntimeError, ValueError) as exc:
            logger.warning("g-factor fit did not converge: %s", exc)
            return GFactorFit(g=np.nan, slope=np.nan, fitted_shift_mev=nan_fit, n_points=n_points)

    g = float(popt[0])
    return GFactorFit(
        g=g,
        slope=float(alpha * g),
        fitted_shift_mev=_zeeman_model(b, g),
        n_points=n_points,
    )
