from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

# ----------------------------- User-tunable settings -----------------------------
# "polarization": interleaved +45/-45 channels, DOCP and g-factor fit.
# "dependence": single channel, features vs power/temperature/field.
ANALYSIS_MODE = "polarization"

# Row window into the data block below the header rows (0-based, end exclusive).
START_ROW = 600
END_ROW = 1200

# Constant detector background subtracted from every intensity value.
BASELINE_VALUE = 486.0

# Smoothing: "loess", "lowess", "movmean" or "sgolay".
# loess/lowess -> span fraction, movmean -> window (samples),
# sgolay -> [order, frame]. None selects the defaults below.
SMOOTH_TYPE = "loess"
SMOOTH_PARAM: float | int | tuple[int, int] | None = 0.2

DEFAULT_LOESS_SPAN = 0.2
DEFAULT_MOVMEAN_WINDOW = 5
DEFAULT_SGOLAY_ORDER = 2
DEFAULT_SGOLAY_FRAME = 5

# Tags written into the combined summary (row 1, start of each channel block).
POS_NEG_PLACEHOLDER = (450.0, 4590.0)

# Header rows above the numeric block; None picks the mode default.
HEADER_ROWS: int | None = None
POLARIZATION_HEADER_ROWS = 2
DEPENDENCE_HEADER_ROWS = 1

# Table export format: "xlsx" or "csv".
EXPORT_FORMAT = "xlsx"
SAVE_PLOTS = True
SAVE_DPI = 200

# ----------------------------- g-factor fit -------------------------------------
# Free-electron g-factor used as the fit starting point.
G_FACTOR_START = 2.0
# Conversion from g to the observed splitting rate (meV/T) reported as "slope".
G_FACTOR_SLOPE_ALPHA = 17.2759858
EV_TO_MEV = 1e3


_MODES = ("polarization", "dependence")
_EXPORT_FORMATS = ("xlsx", "csv")

_KEY_ALIASES = {
    "startRow": "start_row",
    "endRow": "end_row",
    "baselineValue": "baseline_value",
    "userBaseline": "baseline_value",
    "smoothType": "smooth_type",
    "smoothParam": "smooth_param",
    "posNegPlaceholder": "pos_neg_placeholder",
    "posNeg": "pos_neg_placeholder",
    "headerRows": "header_rows",
    "exportFormat": "export_format",
    "outputRoot": "output_root",
    "savePlots": "save_plots",
}


@dataclass(frozen=True)
class RunSettings:
    mode: str = ANALYSIS_MODE
    start_row: int = START_ROW
    end_row: int = END_ROW
    baseline_value: float = BASELINE_VALUE
    smooth_type: str = SMOOTH_TYPE
    smooth_param: Any = SMOOTH_PARAM
    pos_neg_placeholder: tuple[float, float] = POS_NEG_PLACEHOLDER
    header_rows: int | None = HEADER_ROWS
    export_format: str = EXPORT_FORMAT
    output_root: Path | None = None
    save_plots: bool = SAVE_PLOTS

    @property
    def resolved_header_rows(self) -> int:
        if self.header_rows is not None:
            return int(self.header_rows)
        if self.mode == "polarization":
            return POLARIZATION_HEADER_ROWS
        return DEPENDENCE_HEADER_ROWS

    def with_overrides(self, **overrides: Any) -> RunSettings:
        values = {key: value for key, value in overrides.items() if value is not None}
        return _coerce_settings(replace(self, **values))


def _coerce_settings(settings: RunSettings) -> RunSettings:
    placeholder = settings.pos_neg_placeholder
    if isinstance(placeholder, (list, tuple)) and len(placeholder) == 2:
        try:
            placeholder = (float(placeholder[0]), float(placeholder[1]))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"pos_neg_placeholder must hold two numbers, got {settings.pos_neg_placeholder!r}.",
                stage="config",
            ) from exc
    smooth_param = settings.smooth_param
    if isinstance(smooth_param, list):
        smooth_param = tuple(smooth_param)
    output_root = settings.output_root
    if output_root is not None and not isinstance(output_root, Path):
        output_root = Path(output_root)
    return replace(
        settings,
        start_row=int(settings.start_row),
        end_row=int(settings.end_row),
        baseline_value=float(settings.baseline_value),
        smooth_type=str(settings.smooth_type).strip().lower(),
        smooth_param=smooth_param,
        pos_neg_placeholder=placeholder,
        export_format=str(settings.export_format).strip().lower(),
        output_root=output_root,
        save_plots=bool(settings.save_plots),
    )


def validate_settings(settings: RunSettings) -> None:
    placeholder = settings.pos_neg_placeholder
    checks = (
        (settings.mode in _MODES, f"mode must be one of {_MODES}, got {settings.mode!r}."),
        (
            settings.export_format in _EXPORT_FORMATS,
            f"export_format must be one of {_EXPORT_FORMATS}, got {settings.export_format!r}.",
        ),
        (
            isinstance(placeholder, tuple) and len(placeholder) == 2,
            "pos_neg_placeholder must be a pair of numbers.",
        ),
        (
            settings.header_rows is None or int(settings.header_rows) >= 0,
            "header_rows must be non-negative.",
        ),
    )
    for is_valid, message in checks:
        if not is_valid:
            raise ConfigurationError(message, stage="config")


def load_settings(config_path: str | Path | None = None) -> RunSettings:
    """
    Build the run settings from the module defaults, optionally overridden by a
    YAML mapping. Keys may use snake_case or the camelCase names of the
    acquisition notebooks (``startRow``, ``smoothType``, ...).
    """
    settings = RunSettings()
    if config_path is None:
        return settings

    path = Path(config_path)
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found at: {path}", stage="config")

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse {path}: {exc}", stage="config") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping at the top level.",
            stage="config",
        )

    known = {f.name for f in fields(RunSettings)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        name = _KEY_ALIASES.get(str(key), str(key))
        if name not in known:
            raise ConfigurationError(f"Unknown configuration key {key!r} in {path}.", stage="config")
        overrides[name] = value

    resolved = _coerce_settings(replace(settings, **overrides))
    validate_settings(resolved)
    return resolved
