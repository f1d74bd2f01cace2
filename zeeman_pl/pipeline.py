from __future__ import annotations

import argparse
import logging
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from .analysis import (
    analyze_polarization,
    extract_channel_features,
    fit_g_factor,
    nan_mean,
    series_count,
    split_channels,
)
from .config import RunSettings, load_settings, validate_settings
from .errors import AnalysisError, InputShapeError
from .io import (
    export_table,
    export_text,
    load_spectrum_table,
    parse_column_title,
    parse_condition_value,
    parse_condition_values,
    prepare_output_dir,
)
from .models import (
    Channel,
    ChannelData,
    ChannelFeatures,
    GFactorFit,
    PolarizationResult,
    SpectrumTable,
)
from .plotting import (
    plot_channel_overlay,
    plot_channel_spectra,
    plot_dependence_trends,
    plot_docp_and_zeeman,
    setup_plot_style,
)
from .preprocessing import SmoothingSpec, preprocess, smooth_matrix
from .tables import (
    DEPENDENCE_HEADER,
    DEPENDENCE_SUMMARY_COLUMNS,
    FIELD_HEADER,
    assemble_combined_summary,
    build_channel_summary,
    build_spectra_table,
    field_label,
    frame_to_rows,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolarizationRun:
    input_path: Path
    settings: RunSettings
    smoothing: SmoothingSpec
    energy: np.ndarray
    positive: ChannelData
    negative: ChannelData
    polarization: PolarizationResult
    fit: GFactorFit
    positive_summary: pd.DataFrame
    negative_summary: pd.DataFrame
    combined_summary: list[list[Any]]
    started_at: float

    @property
    def condition_values(self) -> np.ndarray:
        return self.polarization.condition_values

    @property
    def mean_docp_raw(self) -> float:
        return nan_mean(self.polarization.docp_raw)

    @property
    def mean_docp_smoothed(self) -> float:
        return nan_mean(self.polarization.docp_smoothed)


@dataclass(frozen=True)
class DependenceRun:
    input_path: Path
    settings: RunSettings
    smoothing: SmoothingSpec
    energy: np.ndarray
    channel: ChannelData
    titles: list[float | str]
    summary: pd.DataFrame
    started_at: float


def _window(table: SpectrumTable, settings: RunSettings) -> tuple[np.ndarray, np.ndarray]:
    data = preprocess(
        table.data,
        start_row=settings.start_row,
        end_row=settings.end_row,
        baseline=settings.baseline_value,
    )
    energy = data[:, 0]
    intensities = data[:, 1:]
    if not np.all(np.isfinite(energy)):
        bad = int(np.count_nonzero(~np.isfinite(energy)))
        raise InputShapeError(
            f"{bad} non-numeric energy values in rows [{settings.start_row}, {settings.end_row}) "
            f"of {table.source_name}.",
            stage="preprocess",
        )
    if intensities.shape[1] == 0:
        raise InputShapeError(
            f"{table.source_name} has no intensity columns.",
            stage="preprocess",
        )
    n_missing = int(np.count_nonzero(~np.isfinite(intensities)))
    if n_missing:
        logger.warning("%d non-numeric intensity cells in the row window; kept as NaN.", n_missing)
    return energy, intensities


def _format_title(value: float | str) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


# ----------------------------- Compute --------------------------------------------


def run_polarization_analysis(input_path: Path, settings: RunSettings) -> PolarizationRun:
    started_at = time.perf_counter()
    smoothing = SmoothingSpec.from_config(settings.smooth_type, settings.smooth_param)
    table = load_spectrum_table(input_path, header_rows=settings.resolved_header_rows)
    energy, intensities = _window(table, settings)

    header_row = table.header_cells[0][1:] if table.header_cells else []
    condition_values = parse_condition_values(header_row)
    pos_raw, neg_raw = split_channels(intensities)
    n_series = series_count(pos_raw.shape[1], neg_raw.shape[1], condition_values.size)
    if n_series == 0:
        raise InputShapeError(
            "No usable series: "
            f"{pos_raw.shape[1]} positive, {neg_raw.shape[1]} negative columns and "
            f"{condition_values.size} field values in {table.source_name}. "
            "Check the header row and start_row/end_row.",
            stage="align",
        )
    if n_series < max(pos_raw.shape[1], neg_raw.shape[1], condition_values.size):
        logger.info(
            "Using %d series (positive=%d, negative=%d, field values=%d).",
            n_series,
            pos_raw.shape[1],
            neg_raw.shape[1],
            condition_values.size,
        )

    b_field = condition_values[:n_series]
    channels: dict[Channel, ChannelData] = {}
    for channel, raw in ((Channel.POSITIVE, pos_raw), (Channel.NEGATIVE, neg_raw)):
        raw = raw[:, :n_series]
        smoothed = smooth_matrix(raw, smoothing)
        features = extract_channel_features(energy, raw, smoothed, b_field)
        channels[channel] = ChannelData(
            channel=channel,
            raw=raw,
            smoothed=smoothed,
            features=features,
        )

    positive = channels[Channel.POSITIVE]
    negative = channels[Channel.NEGATIVE]
    polarization = analyze_polarization(positive.features, negative.features)
    fit = fit_g_factor(polarization.condition_values, polarization.zeeman_raw_mev)
    positive_summary = build_channel_summary(positive.features, FIELD_HEADER)
    negative_summary = build_channel_summary(negative.features, FIELD_HEADER)
    combined = assemble_combined_summary(
        positive_summary,
        negative_summary,
        polarization,
        fit,
        settings.pos_neg_placeholder,
    )

    return PolarizationRun(
        input_path=Path(input_path),
        settings=settings,
        smoothing=smoothing,
        energy=energy,
        positive=positive,
        negative=negative,
        polarization=polarization,
        fit=fit,
        positive_summary=positive_summary,
        negative_summary=negative_summary,
        combined_summary=combined,
        started_at=started_at,
    )


def run_dependence_analysis(input_path: Path, settings: RunSettings) -> DependenceRun:
    started_at = time.perf_counter()
    smoothing = SmoothingSpec.from_config(settings.smooth_type, settings.smooth_param)
    table = load_spectrum_table(input_path, header_rows=settings.resolved_header_rows)
    energy, raw = _window(table, settings)

    header_row = table.header_cells[0][1:] if table.header_cells else []
    titles = [parse_column_title(cell) for cell in header_row]
    n_titles = sum(1 for title in titles if title != "")
    if n_titles != raw.shape[1]:
        raise InputShapeError(
            f"Header has {n_titles} column titles but the data has {raw.shape[1]} "
            f"intensity columns in {table.source_name}.",
            stage="ingest",
        )

    condition_values = np.array([parse_condition_value(title) for title in titles], dtype=float)
    smoothed = smooth_matrix(raw, smoothing)
    features = extract_channel_features(energy, raw, smoothed, condition_values)
    summary = build_channel_summary(
        features,
        DEPENDENCE_HEADER,
        condition_labels=titles,
        columns=DEPENDENCE_SUMMARY_COLUMNS,
    )

    return DependenceRun(
        input_path=Path(input_path),
        settings=settings,
        smoothing=smoothing,
        energy=energy,
        channel=ChannelData(
            channel=None,
            raw=raw,
            smoothed=smoothed,
            features=features,
        ),
        titles=titles,
        summary=summary,
        started_at=started_at,
    )


# ----------------------------- Run log --------------------------------------------


def _common_log_lines(
    input_path: Path,
    settings: RunSettings,
    smoothing: SmoothingSpec,
    energy: np.ndarray,
) -> list[str]:
    return [
        f"Date           : {datetime.now():%Y-%m-%d %H:%M:%S}",
        f"File           : {input_path.name}",
        f"Rows           : {settings.start_row} -> {settings.end_row}",
        f"X-axis range   : Start_X = {energy[0]:.6g}, End_X = {energy[-1]:.6g}",
        f"Baseline       : {settings.baseline_value:g}",
        f"Smooth         : {smoothing.method.value} ({smoothing.parameter_label})",
    ]


def format_polarization_log(run: PolarizationRun, runtime_s: float) -> str:
    b_text = " ".join(f"{b:.4g}" for b in run.condition_values)
    tag0, tag1 = run.settings.pos_neg_placeholder
    lines = _common_log_lines(run.input_path, run.settings, run.smoothing, run.energy)
    lines += [
        f"Pos_Neg tag    : [{tag0:g}, {tag1:g}]",
        f"Magnetic-Field : [{b_text}] (T)",
        "",
        "Global g-factor fit",
        f"    g (dimensionless)        : {run.fit.g:.6f}",
        f"    Slope (meV/T)            : {run.fit.slope:.6f}",
        f"    Points used              : {run.fit.n_points:d}",
        "",
        "Additional statistics",
        f"    Mean DOCP (raw / filt) : {run.mean_docp_raw:.5f}  /  {run.mean_docp_smoothed:.5f}",
        f"    Script runtime (s)     : {runtime_s:.2f}",
    ]
    return "\n".join(lines) + "\n"


def format_dependence_log(run: DependenceRun, runtime_s: float) -> str:
    lines = _common_log_lines(run.input_path, run.settings, run.smoothing, run.energy)
    lines += [
        f"Columns        : {', '.join(_format_title(title) for title in run.titles)}",
        f"Script runtime (s) : {runtime_s:.2f}",
    ]
    return "\n".join(lines) + "\n"


# ----------------------------- Write ----------------------------------------------


def write_polarization_outputs(run: PolarizationRun, out_dir: Path) -> list[Path]:
    base = run.input_path.stem
    fmt = run.settings.export_format
    labels = [field_label(b) for b in run.condition_values]
    titles = [f"B = {b:.2f} T" for b in run.condition_values]
    written: list[Path] = []

    if run.settings.save_plots:
        written.append(
            plot_channel_spectra(run.energy, run.positive, titles, out_dir / f"0_Plots_Pos_{base}")
        )
        written.append(
            plot_channel_spectra(run.energy, run.negative, titles, out_dir / f"0_Plots_Neg_{base}")
        )
        written.append(
            plot_channel_overlay(
                run.energy, run.positive, run.negative, titles, out_dir / f"0_Plots_PosNeg_{base}"
            )
        )
        written.append(
            plot_docp_and_zeeman(run.polarization, run.fit, out_dir / f"0_Plots_DOCP_{base}")
        )

    tables = (
        (f"1_Pos_raw_{base}", build_spectra_table(run.energy, run.positive.raw, labels)),
        (f"2_Pos_filt_{base}", build_spectra_table(run.energy, run.positive.smoothed, labels)),
        (f"3_Pos_summary_{base}", frame_to_rows(run.positive_summary)),
        (f"4_Neg_raw_{base}", build_spectra_table(run.energy, run.negative.raw, labels)),
        (f"5_Neg_filt_{base}", build_spectra_table(run.energy, run.negative.smoothed, labels)),
        (f"6_Neg_summary_{base}", frame_to_rows(run.negative_summary)),
        (f"7_Summary_Combined_{base}", run.combined_summary),
    )
    for name, rows in tables:
        written.append(export_table(out_dir / name, rows, fmt))

    runtime_s = time.perf_counter() - run.started_at
    written.append(
        export_text(out_dir / f"Parameters_{base}.txt", format_polarization_log(run, runtime_s))
    )
    return written


def write_dependence_outputs(run: DependenceRun, out_dir: Path) -> list[Path]:
    base = run.input_path.stem
    fmt = run.settings.export_format
    titles = [_format_title(title) for title in run.titles]
    features: ChannelFeatures = run.channel.features
    written: list[Path] = []

    if run.settings.save_plots:
        written.append(
            plot_channel_spectra(
                run.energy,
                run.channel,
                titles,
                out_dir / f"1_Plots_{base}",
                suptitle="Power Dependence",
            )
        )
        written.append(
            plot_dependence_trends(
                features.condition_values,
                features.values("smoothed", "peak_x"),
                features.values("smoothed", "peak_y"),
                features.values("smoothed", "area"),
                out_dir / f"2_Summary_{base}",
            )
        )

    tables = (
        (f"3_Raw_{base}", build_spectra_table(run.energy, run.channel.raw, run.titles)),
        (f"4_Filtered_{base}", build_spectra_table(run.energy, run.channel.smoothed, run.titles)),
        (f"5_Result_{base}", frame_to_rows(run.summary)),
    )
    for name, rows in tables:
        written.append(export_table(out_dir / name, rows, fmt))

    runtime_s = time.perf_counter() - run.started_at
    written.append(
        export_text(out_dir / f"0_Parameters_{base}.txt", format_dependence_log(run, runtime_s))
    )
    return written


def analyze_file(
    input_path: Path,
    settings: RunSettings,
) -> tuple[PolarizationRun | DependenceRun, Path, list[Path]]:
    validate_settings(settings)
    input_path = Path(input_path)
    # Everything is computed before the output directory is touched.
    if settings.mode == "polarization":
        run: PolarizationRun | DependenceRun = run_polarization_analysis(input_path, settings)
    else:
        run = run_dependence_analysis(input_path, settings)

    out_dir = prepare_output_dir(
        input_path,
        settings.output_root,
        date_first=settings.mode == "dependence",
    )
    if isinstance(run, PolarizationRun):
        written = write_polarization_outputs(run, out_dir)
    else:
        written = write_dependence_outputs(run, out_dir)
    return run, out_dir, written


# ----------------------------- CLI ------------------------------------------------


def _print_run_summary(
    run: PolarizationRun | DependenceRun,
    out_dir: Path,
    written: list[Path],
) -> None:
    print("Done.")
    print(f"Input file:       {run.input_path}")
    print(f"Output folder:    {out_dir}")
    print(f"Artifacts:        {len(written)} files")
    print(
        f"Row window:       [{run.settings.start_row}, {run.settings.end_row}) | "
        f"baseline={run.settings.baseline_value:g} | "
        f"smoothing={run.smoothing.method.value} ({run.smoothing.parameter_label})"
    )
    if isinstance(run, PolarizationRun):
        print(f"Series used:      {run.condition_values.size}")
        if run.fit.succeeded:
            print(f"g-factor fit:     g = {run.fit.g:.4f}, slope = {run.fit.slope:.4f} meV/T")
        else:
            print("g-factor fit:     undefined (no usable field values)")
        print(
            f"Mean DOCP:        raw = {run.mean_docp_raw:.4f}, "
            f"smoothed = {run.mean_docp_smoothed:.4f}"
        )
    else:
        print(f"Series used:      {len(run.titles)}")


def _parse_smooth_param(text: str | None) -> float | tuple[int, int] | None:
    if text is None:
        return None
    parts = [part for part in text.replace(";", ",").split(",") if part.strip()]
    if len(parts) == 2:
        return int(float(parts[0])), int(float(parts[1]))
    return float(parts[0])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Photoluminescence table analysis: peak, FWHM and area per series; "
            "DOCP, Zeeman splitting and g-factor for circular-polarization data."
        )
    )
    parser.add_argument("input", help="Spectrum table (.xlsx, .xls, .csv or .txt)")
    parser.add_argument("--mode", choices=("polarization", "dependence"), help="Analysis mode")
    parser.add_argument("--config", help="YAML file overriding the defaults in config.py")
    parser.add_argument("--start-row", type=int, help="First data row (0-based)")
    parser.add_argument("--end-row", type=int, help="Row after the last data row")
    parser.add_argument("--baseline", type=float, help="Constant subtracted from every intensity")
    parser.add_argument(
        "--smooth-type",
        help="Smoothing method: loess, lowess, movmean or sgolay",
    )
    parser.add_argument(
        "--smooth-param",
        help="Span (loess/lowess), window (movmean) or 'order,frame' (sgolay)",
    )
    parser.add_argument(
        "--placeholder",
        type=float,
        nargs=2,
        metavar=("POS", "NEG"),
        help="Tags written into the combined summary",
    )
    parser.add_argument("--header-rows", type=int, help="Header rows above the numeric block")
    parser.add_argument("--format", choices=("xlsx", "csv"), dest="export_format")
    parser.add_argument("--output-root", help="Directory receiving the result folder")
    parser.add_argument("--no-plots", action="store_true", help="Skip PNG figures")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config).with_overrides(
            mode=args.mode,
            start_row=args.start_row,
            end_row=args.end_row,
            baseline_value=args.baseline,
            smooth_type=args.smooth_type,
            smooth_param=_parse_smooth_param(args.smooth_param),
            pos_neg_placeholder=tuple(args.placeholder) if args.placeholder else None,
            header_rows=args.header_rows,
            export_format=args.export_format,
            output_root=args.output_root,
            save_plots=False if args.no_plots else None,
        )
        setup_plot_style()
        run, out_dir, written = analyze_file(Path(args.input), settings)
    except AnalysisError as exc:
        print(f"error [{exc.stage}]: {exc.args[0]}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error [cli]: {exc}", file=sys.stderr)
        return 1

    _print_run_summary(run, out_dir, written)
    return 0
