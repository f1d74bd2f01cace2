import csv
from pathlib import Path

import numpy as np
import pytest

from zeeman_pl.config import RunSettings
from zeeman_pl.errors import InputShapeError, RowRangeError
from zeeman_pl.pipeline import (
    PolarizationRun,
    analyze_file,
    main,
    run_dependence_analysis,
    run_polarization_analysis,
)
from zeeman_pl.tables import DEPENDENCE_HEADER, DEPENDENCE_SUMMARY_COLUMNS

B_FIELD = (0.0, 1.0, 2.0, 3.0)
G_TRUE = 2.5


def _gaussian(x, center, width, height):
    return height * np.exp(-0.5 * ((x - center) / width) ** 2)


def _write_rows(path, rows):
    with open(path, "w", newline="", encoding="utf-8") as f:
        csv.writer(f).writerows(rows)
    return path


def _read_rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def write_polarization_scan(path, b_field=B_FIELD, g=G_TRUE, background=100.0):
    """Interleaved +/- columns whose peaks split by g*B meV on a 0.05 meV grid."""
    energy = 1.45 + 5e-5 * np.arange(2001)
    header = ["Energy"]
    polarizer = [""]
    columns = []
    for b in b_field:
        half_split_ev = 0.5 * g * b / 1e3
        header += [b, b]
        polarizer += ["+45", "-45"]
        columns.append(background + _gaussian(energy, 1.5 + half_split_ev, 0.002, 300.0))
        columns.append(background + _gaussian(energy, 1.5 - half_split_ev, 0.002, 100.0))
    rows = [header, polarizer]
    for i, x in enumerate(energy):
        rows.append([x, *(col[i] for col in columns)])
    return _write_rows(path, rows)


def write_dependence_scan(path, titles=(10, 20, 30, 40), n_rows=2000):
    energy = np.linspace(1.40, 1.60, n_rows)
    centers = (1.480, 1.485, 1.490, 1.495)
    columns = [
        486.0 + _gaussian(energy, center, 0.004, 50.0 * (k + 1))
        for k, center in enumerate(centers[: len(titles)])
    ]
    rows = [["Energy", *titles]]
    for i, x in enumerate(energy):
        rows.append([x, *(col[i] for col in columns)])
    _write_rows(path, rows)
    return energy


def _polarization_settings(tmp_path, **overrides):
    settings = RunSettings(
        mode="polarization",
        start_row=0,
        end_row=2001,
        baseline_value=100.0,
        smooth_type="movmean",
        smooth_param=3,
        export_format="csv",
        output_root=tmp_path / "out",
        save_plots=False,
    )
    return settings.with_overrides(**overrides)


def test_dependence_run_windows_rows_and_summarizes_each_column(tmp_path):
    path = tmp_path / "power.csv"
    energy = write_dependence_scan(path)
    settings = RunSettings(
        mode="dependence",
        start_row=600,
        end_row=1200,
        baseline_value=486.0,
        smooth_type="movmean",
        smooth_param=5,
        export_format="csv",
        output_root=tmp_path / "out",
        save_plots=False,
    )

    run = run_dependence_analysis(path, settings)

    np.testing.assert_array_equal(run.energy, energy[600:1200])
    assert run.channel.raw.shape == (600, 4)
    assert run.summary.shape == (4, 9)
    assert list(run.summary.columns) == [DEPENDENCE_HEADER, *DEPENDENCE_SUMMARY_COLUMNS]
    assert run.summary[DEPENDENCE_HEADER].tolist() == [10.0, 20.0, 30.0, 40.0]
    step = energy[1] - energy[0]
    np.testing.assert_allclose(
        run.summary["X value"], [1.480, 1.485, 1.490, 1.495], atol=step
    )
    np.testing.assert_allclose(run.summary["Y value"], [50.0, 100.0, 150.0, 200.0], rtol=1e-3)


def test_dependence_outputs_are_written(tmp_path):
    path = tmp_path / "power.csv"
    write_dependence_scan(path)
    settings = RunSettings(
        mode="dependence",
        start_row=600,
        end_row=1200,
        smooth_type="sgolay",
        smooth_param=(2, 7),
        export_format="csv",
        output_root=tmp_path / "out",
        save_plots=True,
    )

    _, out_dir, written = analyze_file(path, settings)

    assert out_dir.name.endswith("_power")
    assert out_dir.name[:8].isdigit()

    names = {p.name for p in written}
    assert names == {
        "1_Plots_power.png",
        "2_Summary_power.png",
        "3_Raw_power.csv",
        "4_Filtered_power.csv",
        "5_Result_power.csv",
        "0_Parameters_power.txt",
    }
    assert all(p.parent == out_dir and p.is_file() for p in written)
    raw_rows = _read_rows(out_dir / "3_Raw_power.csv")
    assert len(raw_rows) == 601
    assert raw_rows[0][1:] == ["10.0", "20.0", "30.0", "40.0"]
    log = (out_dir / "0_Parameters_power.txt").read_text(encoding="utf-8")
    assert "Rows           : 600 -> 1200" in log
    assert "sgolay (order = 2, frame = 7)" in log


def test_dependence_title_count_must_match_columns(tmp_path):
    path = tmp_path / "power.csv"
    write_dependence_scan(path, titles=(10, 20, 30, ""))
    settings = RunSettings(mode="dependence", start_row=0, end_row=100, output_root=tmp_path / "out")
    with pytest.raises(InputShapeError) as excinfo:
        run_dependence_analysis(path, settings)
    assert excinfo.value.stage == "ingest"


def test_polarization_run_recovers_g_factor(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    run = run_polarization_analysis(path, _polarization_settings(tmp_path))

    assert isinstance(run, PolarizationRun)
    np.testing.assert_array_equal(run.condition_values, B_FIELD)
    np.testing.assert_allclose(run.polarization.docp_raw, 0.5, atol=1e-9)
    np.testing.assert_allclose(run.polarization.docp_smoothed, 0.5, atol=1e-9)
    np.testing.assert_allclose(
        run.polarization.zeeman_raw_mev, G_TRUE * np.asarray(B_FIELD), atol=1e-6
    )
    assert run.fit.g == pytest.approx(G_TRUE, abs=1e-6)
    assert run.mean_docp_raw == pytest.approx(0.5)
    assert len(run.combined_summary) == 1 + 1 + len(B_FIELD)
    assert {len(row) for row in run.combined_summary} == {26}


def test_polarization_uses_the_smallest_series_count(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv", b_field=(1.0, 2.0, 3.0))
    # Dropping the last negative column leaves two complete pairs.
    rows = _read_rows(path)
    _write_rows(path, [row[:-1] for row in rows])

    run = run_polarization_analysis(path, _polarization_settings(tmp_path))
    np.testing.assert_array_equal(run.condition_values, [1.0, 2.0])
    assert run.positive.raw.shape[1] == 2
    assert run.negative.raw.shape[1] == 2


def test_polarization_outputs_are_written(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    run, out_dir, written = analyze_file(path, _polarization_settings(tmp_path, save_plots=True))

    expected = {
        "0_Plots_Pos_zeeman.png",
        "0_Plots_Neg_zeeman.png",
        "0_Plots_PosNeg_zeeman.png",
        "0_Plots_DOCP_zeeman.png",
        "1_Pos_raw_zeeman.csv",
        "2_Pos_filt_zeeman.csv",
        "3_Pos_summary_zeeman.csv",
        "4_Neg_raw_zeeman.csv",
        "5_Neg_filt_zeeman.csv",
        "6_Neg_summary_zeeman.csv",
        "7_Summary_Combined_zeeman.csv",
        "Parameters_zeeman.txt",
    }
    assert {p.name for p in written} == expected
    assert {p.name for p in out_dir.iterdir()} == expected

    combined = _read_rows(out_dir / "7_Summary_Combined_zeeman.csv")
    assert combined[0][0] == "450.0"
    assert combined[0][10] == "4590.0"
    assert combined[0][1] == ""
    assert combined[1][20:22] == ["DOCP_raw", "DOCP_filt"]

    raw_rows = _read_rows(out_dir / "1_Pos_raw_zeeman.csv")
    assert raw_rows[0] == ["Energy (eV)", "B=0.00T", "B=1.00T", "B=2.00T", "B=3.00T"]

    log = (out_dir / "Parameters_zeeman.txt").read_text(encoding="utf-8")
    assert f"g (dimensionless)        : {run.fit.g:.6f}" in log
    assert "Magnetic-Field : [0 1 2 3] (T)" in log


def test_polarization_without_field_values_fails_before_writing(tmp_path):
    path = tmp_path / "zeeman.csv"
    rows = [["Energy", "a", "b"], ["", "+45", "-45"]]
    rows += [[1.5 + 0.001 * i, 1.0, 2.0] for i in range(20)]
    _write_rows(path, rows)
    settings = _polarization_settings(tmp_path, end_row=20)

    with pytest.raises(InputShapeError) as excinfo:
        analyze_file(path, settings)
    assert excinfo.value.stage == "align"
    assert not (tmp_path / "out").exists()


def test_row_window_outside_the_data_is_reported(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    with pytest.raises(InputShapeError) as excinfo:
        analyze_file(path, _polarization_settings(tmp_path, end_row=5000))
    assert excinfo.value.stage == "preprocess"
    assert not (tmp_path / "out").exists()


def test_cli_reports_bad_smoothing_method(tmp_path, capsys):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    code = main(
        [
            str(path),
            "--smooth-type",
            "gaussian",
            "--start-row",
            "0",
            "--end-row",
            "100",
            "--output-root",
            str(tmp_path / "out"),
            "--no-plots",
        ]
    )
    assert code == 1
    assert "error [smooth]" in capsys.readouterr().err
    assert not (tmp_path / "out").exists()


def test_cli_runs_polarization_analysis(tmp_path, capsys):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    code = main(
        [
            str(path),
            "--mode",
            "polarization",
            "--start-row",
            "0",
            "--end-row",
            "2001",
            "--baseline",
            "100",
            "--smooth-type",
            "movmean",
            "--smooth-param",
            "3",
            "--format",
            "csv",
            "--output-root",
            str(tmp_path / "out"),
            "--no-plots",
        ]
    )
    out = capsys.readouterr().out
    assert code == 0
    assert "g-factor fit:     g = 2.5000" in out
    assert any(Path(tmp_path / "out").iterdir())


def test_blank_intensity_cell_keeps_peak_energies(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    rows = _read_rows(path)
    # Data row 5 of the B=1 positive column, far from the peak.
    rows[2 + 5][3] = ""
    _write_rows(path, rows)

    run = run_polarization_analysis(path, _polarization_settings(tmp_path))

    np.testing.assert_allclose(
        run.polarization.zeeman_raw_mev, G_TRUE * np.asarray(B_FIELD), atol=1e-6
    )
    np.testing.assert_allclose(run.polarization.docp_raw, 0.5, atol=1e-9)
    assert np.all(np.isfinite(run.positive.features.values("raw", "area")))
    assert run.fit.g == pytest.approx(G_TRUE, abs=1e-6)


def test_blank_interleaved_column_keeps_channel_pairs(tmp_path):
    b_field = (1.0, 2.0, 3.0)
    path = write_polarization_scan(tmp_path / "zeeman.csv", b_field=b_field)
    rows = _read_rows(path)
    # Empty the B=2 positive column below its header cells.
    for row in rows[2:]:
        row[3] = ""
    _write_rows(path, rows)

    run = run_polarization_analysis(path, _polarization_settings(tmp_path))

    np.testing.assert_array_equal(run.condition_values, b_field)
    assert run.positive.raw.shape[1] == 3
    assert np.all(np.isnan(run.positive.raw[:, 1]))
    neg_peaks = run.negative.features.values("raw", "peak_x")
    np.testing.assert_allclose(
        neg_peaks, 1.5 - 0.5 * G_TRUE * np.asarray(b_field) / 1e3, atol=1e-9
    )
    zeeman = run.polarization.zeeman_raw_mev
    assert zeeman[0] == pytest.approx(2.5, abs=1e-6)
    assert np.isnan(zeeman[1])
    assert zeeman[2] == pytest.approx(7.5, abs=1e-6)
    assert np.isnan(run.polarization.docp_raw[1])
    assert run.fit.n_points == 2
    assert run.fit.g == pytest.approx(G_TRUE, abs=1e-6)


def test_empty_row_window_is_a_row_range_error(tmp_path):
    path = write_polarization_scan(tmp_path / "zeeman.csv")
    settings = _polarization_settings(tmp_path, start_row=50, end_row=50)
    with pytest.raises(RowRangeError) as excinfo:
        analyze_file(path, settings)
    assert excinfo.value.stage == "preprocess"
    assert not (tmp_path / "out").exists()
