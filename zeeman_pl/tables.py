from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd

from .models import ChannelFeatures, GFactorFit, PolarizationResult

# Empty cell in assembled tables; distinct from 0 and from NaN.
BLANK = None

ENERGY_HEADER = "Energy (eV)"

SUMMARY_COLUMNS = (
    "E_raw",
    "I_raw",
    "FWHM_raw",
    "E_filt",
    "I_filt",
    "FWHM_filt",
    "Area_raw",
    "Area_filt",
)
FIELD_HEADER = "B (T)"
DEPENDENCE_HEADER = "Power/Temper"
# Same quantities and order as SUMMARY_COLUMNS, named as in the dependence workbooks.
DEPENDENCE_SUMMARY_COLUMNS = (
    "X value",
    "Y value",
    "FWHM",
    "X value_filtered",
    "Y value_filtered",
    "FWHM_filtered",
    "Area",
    "Area_filtered",
)

DOCP_HEADERS = ("DOCP_raw", "DOCP_filt")
ZEEMAN_HEADERS = ("ΔE_raw (meV)", "ΔE_smooth (meV)", "ΔE_fit (meV)")


def field_label(value: float) -> str:
    return f"B={value:.2f}T"


def build_channel_summary(
    features: ChannelFeatures,
    condition_header: str = FIELD_HEADER,
    condition_labels: Sequence[Any] | None = None,
    columns: Sequence[str] = SUMMARY_COLUMNS,
) -> pd.DataFrame:
    labels = (
        list(condition_labels)
        if condition_labels is not None
        else [float(v) for v in features.condition_values]
    )
    series = (
        features.values("raw", "peak_x"),
        features.values("raw", "peak_y"),
        features.values("raw", "fwhm"),
        features.values("smoothed", "peak_x"),
        features.values("smoothed", "peak_y"),
        features.values("smoothed", "fwhm"),
        features.values("raw", "area"),
        features.values("smoothed", "area"),
    )
    frame = pd.DataFrame({condition_header: labels})
    for name, values in zip(columns, series, strict=True):
        frame[name] = values
    return frame


def build_spectra_table(
    energy: np.ndarray,
    matrix: np.ndarray,
    column_labels: Sequence[Any],
) -> list[list[Any]]:
    data = np.asarray(matrix, dtype=float)
    if data.ndim == 1:
        data = data[:, None]
    labels = list(column_labels)[: data.shape[1]]
    rows: list[list[Any]] = [[ENERGY_HEADER, *labels]]
    for x, row in zip(np.asarray(energy, dtype=float), data, strict=True):
        rows.append([float(x), *(float(v) for v in row)])
    return rows


def _cell(value: Any) -> Any:
    if value is BLANK:
        return BLANK
    if isinstance(value, np.generic):
        return value.item()
    return value


def frame_to_rows(frame: pd.DataFrame) -> list[list[Any]]:
    rows: list[list[Any]] = [[str(col) for col in frame.columns]]
    for record in frame.itertuples(index=False, name=None):
        rows.append([_cell(value) for value in record])
    return rows


def _block(headers: Sequence[str], columns: Sequence[np.ndarray]) -> list[list[Any]]:
    rows: list[list[Any]] = [list(headers)]
    n_rows = max((len(col) for col in columns), default=0)
    for i in range(n_rows):
        rows.append([float(col[i]) if i < len(col) else BLANK for col in columns])
    return rows


def _pad_block(block: list[list[Any]], n_rows: int, width: int) -> list[list[Any]]:
    padded = [row + [BLANK] * (width - len(row)) for row in block]
    padded.extend([BLANK] * width for _ in range(n_rows - len(block)))
    return padded


def _hconcat(blocks: Sequence[list[list[Any]]]) -> list[list[Any]]:
    n_rows = max(len(block) for block in blocks)
    widths = [max((len(row) for row in block), default=0) for block in blocks]
    padded = [_pad_block(block, n_rows, width) for block, width in zip(blocks, widths)]
    return [sum((block[i] for block in padded), []) for i in range(n_rows)]


def assemble_combined_summary(
    positive_summary: pd.DataFrame,
    negative_summary: pd.DataFrame,
    polarization: PolarizationResult,
    fit: GFactorFit,
    placeholder: tuple[float, float],
) -> list[list[Any]]:
    """
    Lay the per-channel summaries, DOCP and Zeeman blocks side by side,
    separated by one blank column each and padded downward to the tallest
    block. A leading row carries the placeholder tags at the first column of
    each channel block.
    """
    positive_block = frame_to_rows(positive_summary)
    negative_block = frame_to_rows(negative_summary)
    gap: list[list[Any]] = [[BLANK]]
    docp_block = _block(DOCP_HEADERS, (polarization.docp_raw, polarization.docp_smoothed))
    zeeman_block = _block(
        ZEEMAN_HEADERS,
        (
            polarization.zeeman_raw_mev,
            polarization.zeeman_smoothed_mev,
            fit.fitted_shift_mev,
        ),
    )

    body = _hconcat(
        [positive_block, gap, negative_block, gap, docp_block, gap, zeeman_block]
    )
    width = len(body[0])
    placeholder_row: list[Any] = [BLANK] * width
    placeholder_row[0] = float(placeholder[0])
    placeholder_row[positive_summary.shape[1] + 1] = float(placeholder[1])
    return [placeholder_row, *body]
