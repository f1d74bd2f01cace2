from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum

import numpy as np


class Channel(str, Enum):
    POSITIVE = "Pos"
    NEGATIVE = "Neg"

    @property
    def title(self) -> str:
        return "Positive" if self is Channel.POSITIVE else "Negative"


@dataclass(frozen=True)
class FeatureRecord:
    peak_x: float
    peak_y: float
    fwhm: float
    area: float


FEATURE_FIELDS = tuple(f.name for f in fields(FeatureRecord))


@dataclass(frozen=True)
class ChannelFeatures:
    condition_values: np.ndarray
    raw: tuple[FeatureRecord, ...]
    smoothed: tuple[FeatureRecord, ...]

    @property
    def n_series(self) -> int:
        return len(self.raw)

    def values(self, stage: str, field_name: str) -> np.ndarray:
        if stage not in ("raw", "smoothed"):
            raise KeyError(f"Unknown feature stage {stage!r}.")
        if field_name not in FEATURE_FIELDS:
            raise KeyError(f"Unknown feature field {field_name!r}.")
        records = self.raw if stage == "raw" else self.smoothed
        return np.array([getattr(record, field_name) for record in records], dtype=float)


@dataclass(frozen=True)
class PolarizationResult:
    condition_values: np.ndarray
    docp_raw: np.ndarray
    docp_smoothed: np.ndarray
    zeeman_raw_mev: np.ndarray
    zeeman_smoothed_mev: np.ndarray


@dataclass(frozen=True)
class GFactorFit:
    g: float
    slope: float
    fitted_shift_mev: np.ndarray
    n_points: int

    @property
    def succeeded(self) -> bool:
        return bool(np.isfinite(self.g))


@dataclass(frozen=True)
class SpectrumTable:
    source_name: str
    header_cells: list[list[object]]
    data: np.ndarray

    @property
    def n_rows(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_columns(self) -> int:
        return int(self.data.shape[1]) if self.data.ndim == 2 else 0


@dataclass(frozen=True)
class ChannelData:
    channel: Channel | None
    raw: np.ndarray
    smoothed: np.ndarray
    features: ChannelFeatures
