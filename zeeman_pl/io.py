from __future__ import annotations

import logging
import math
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from openpyxl import Workbook

from .errors import ExportError, InputShapeError
from .models import SpectrumTable

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = (".xlsx", ".xls")
TEXT_SUFFIXES = (".csv", ".txt")

_NUMBER_PATTERN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


# ----------------------------- Ingest --------------------------------------------


def read_cell_table(path: Path) -> pd.DataFrame:
    file_path = Path(path)
    if not file_path.is_file():
        raise InputShapeError(f"Input file not found: {file_path}", stage="ingest")

    suffix = file_path.suffix.lower()
    try:
        if suffix in EXCEL_SUFFIXES:
            cells = pd.read_excel(file_path, header=None)
        elif suffix in TEXT_SUFFIXES:
            cells = pd.read_csv(file_path, header=None, sep=None, engine="python")
        else:
            raise InputShapeError(
                f"Unsupported input format {suffix!r} for {file_path.name}; "
                f"expected one of {EXCEL_SUFFIXES + TEXT_SUFFIXES}.",
                stage="ingest",
            )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise InputShapeError(f"Could not read {file_path.name}: {exc}", stage="ingest") from exc

    logger.info("Loaded %d x %d cells from %s", cells.shape[0], cells.shape[1], file_path)
    return cells


def load_spectrum_table(path: Path, header_rows: int) -> SpectrumTable:
    cells = read_cell_table(path)
    if cells.shape[0] <= header_rows:
        raise InputShapeError(
            f"{Path(path).name} has {cells.shape[0]} rows, not enough for "
            f"{header_rows} header rows plus data.",
            stage="ingest",
        )
    if cells.shape[1] < 2:
        raise InputShapeError(
            f"{Path(path).name} needs an energy column and at least one intensity column.",
            stage="ingest",
        )

    header_cells = [
        [None if _is_missing(value) else value for value in row]
        for row in cells.iloc[:header_rows].itertuples(index=False, name=None)
    ]
    body = cells.iloc[header_rows:].apply(pd.to_numeric, errors="coerce")
    # Only trailing padding is cut: interior gaps keep their position so the
    # column interleave and the row window stay aligned.
    filled_rows = np.flatnonzero(body.notna().any(axis=1).to_numpy())
    if filled_rows.size == 0:
        raise InputShapeError(
            f"{Path(path).name} has no numeric data below the header rows.",
            stage="ingest",
        )
    filled_columns = np.flatnonzero(body.notna().any(axis=0).to_numpy())
    titled_columns = [
        i for i in range(cells.shape[1]) if any(row[i] is not None for row in header_cells)
    ]
    n_columns = max(int(filled_columns[-1]), max(titled_columns, default=0)) + 1
    data = body.iloc[: filled_rows[-1] + 1, :n_columns].to_numpy(dtype=float)
    header_cells = [row[:n_columns] for row in header_cells]

    return SpectrumTable(
        source_name=Path(path).stem,
        header_cells=header_cells,
        data=data,
    )


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def parse_condition_value(value: Any) -> float:
    """
    Numeric condition value carried by a header cell: plain numbers pass
    through, labels such as ``"B=1.50T"`` or ``"20 mW"`` yield their first
    number, anything else is NaN.
    """
    if _is_missing(value) or isinstance(value, bool):
        return np.nan
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    match = _NUMBER_PATTERN.search(str(value))
    if match is None:
        return np.nan
    return float(match.group(0))


def parse_condition_values(header_row: Sequence[Any]) -> np.ndarray:
    """Finite condition values of a header row, de-duplicated keeping first occurrences."""
    values = np.array([parse_condition_value(cell) for cell in header_row], dtype=float)
    values = values[np.isfinite(values)]
    _, first_idx = np.unique(values, return_index=True)
    return values[np.sort(first_idx)]


def parse_column_title(value: Any) -> float | str:
    if _is_missing(value):
        return ""
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        return text


# ----------------------------- Export --------------------------------------------


def prepare_output_dir(
    input_path: Path,
    output_root: Path | None = None,
    date_first: bool = False,
) -> Path:
    """
    Fresh result folder ``<stem>_<YYYYMMDD>``, or ``<YYYYMMDD>_<stem>`` with
    ``date_first`` (dependence scans). An existing folder is replaced.
    """
    input_path = Path(input_path)
    root = Path(output_root) if output_root is not None else input_path.resolve().parent
    stamp = f"{datetime.now():%Y%m%d}"
    name = f"{stamp}_{input_path.stem}" if date_first else f"{input_path.stem}_{stamp}"
    target = root / name
    if target.exists():
        shutil.rmtree(target)
    target.mkdir(parents=True)
    return target


def _clean_cell(value: Any) -> Any:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return "NaN" if math.isnan(value) else ("Inf" if value > 0 else "-Inf")
    return value


def atomic_write(outpath: Path, writer: Callable[[Path], None]) -> Path:
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{outpath.stem}.", suffix=outpath.suffix, dir=outpath.parent
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        writer(tmp_path)
        os.replace(tmp_path, outpath)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise ExportError(f"Could not write {outpath.name}: {exc}", stage="export") from exc
    logger.info("Wrote %s", outpath)
    return outpath


def _write_xlsx(rows: Sequence[Sequence[Any]], path: Path) -> None:
    wb = Workbook()
    ws = wb.active
    ws.title = "Sheet1"
    for row in rows:
        ws.append([_clean_cell(value) for value in row])
    wb.save(path)


def _write_csv(rows: Sequence[Sequence[Any]], path: Path) -> None:
    frame = pd.DataFrame([[_clean_cell(value) for value in row] for row in rows])
    frame.to_csv(path, header=False, index=False, na_rep="")


def export_table(outpath: Path, rows: Sequence[Sequence[Any]], export_format: str) -> Path:
    fmt = export_format.lower()
    if fmt == "xlsx":
        target = Path(outpath).with_suffix(".xlsx")
        return atomic_write(target, lambda tmp: _write_xlsx(rows, tmp))
    if fmt == "csv":
        target = Path(outpath).with_suffix(".csv")
        return atomic_write(target, lambda tmp: _write_csv(rows, tmp))
    raise ExportError(f"Unsupported export format {export_format!r}.", stage="export")


def export_text(outpath: Path, text: str) -> Path:
    def _write(tmp: Path) -> None:
        tmp.write_text(text, encoding="utf-8")

    return atomic_write(Path(outpath), _write)
