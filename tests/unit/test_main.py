# tests/unit/test_main.py - v3
"""Tests for main.py - CLI entry point."""

from __future__ import annotations

import logging
import signal
import threading
from unittest.mock import MagicMock, patch

import pytest

from vifit.core.models import RunSummary
from vifit.main import EXIT_ERROR, EXIT_INTERRUPTED, EXIT_OK, _build_parser, _install_stop_handlers, _restore_handlers, main
from vifit.storage.reader import read_output


@pytest.fixture(autouse=True)
def cli_env(monkeypatch):
    for name, value in {
        "VIFIT_BASELINE_YEAR_START": "2020",
        "VIFIT_BASELINE_YEAR_END": "2021",
        "VIFIT_TARGET_YEAR_START": "2020",
        "VIFIT_TARGET_YEAR_END": "2021",
        "VIFIT_N_POSTERIOR_SIMS": "20",
    }.items():
        monkeypatch.setenv(name, value)
    yield
    root = logging.getLogger("vifit")
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()


class TestBuildParser:
    def test_version_flag(self):
        with pytest.raises(SystemExit) as exc_info:
            _build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0

    def test_run_options(self, tmp_path):
        args = _build_parser().parse_args([
            "run", "year_spline", "-i", "in.csv", "-o", str(tmp_path),
            "--workers", "3", "--batch-size", "16", "--backend", "jsonl", "--no-retry-failed",
        ])
        assert args.phase == "year_spline"
        assert args.n_workers == 3
        assert args.batch_size == 16
        assert args.checkpoint_backend == "jsonl"
        assert args.retry_failed_on_resume is False

    def test_retry_default_left_to_settings(self):
        args = _build_parser().parse_args(["run", "baseline"])
        assert args.retry_failed_on_resume is None

    def test_unknown_phase(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["run", "weekly"])


class TestMain:
    def test_no_command(self, capsys):
        assert main([]) == EXIT_ERROR
        assert "usage" in capsys.readouterr().out.lower()

    def test_run_and_status(self, timeseries_csv, tmp_path, capsys):
        out = tmp_path / "out"
        code = main([
            "run", "baseline", "-i", str(timeseries_csv), "-o", str(out), "--workers", "1",
        ])
        assert code == EXIT_OK
        printed = capsys.readouterr().out
        assert "Phase baseline: completed" in printed
        assert "insufficient_data: 1" in printed
        assert len(read_output(out / "baseline.csv")) == 12

        assert main(["status", "baseline", "-o", str(out)]) == EXIT_OK
        status = capsys.readouterr().out
        assert "Checkpoint: none" in status
        assert "Manifest:   completed" in status

    def test_missing_input_is_an_error(self, tmp_path):
        code = main(["run", "baseline", "-i", str(tmp_path / "absent.csv"), "-o", str(tmp_path)])
        assert code == EXIT_ERROR

    def test_interrupted_exit_code(self, tmp_path):
        summary = RunSummary(
            phase="baseline", status="interrupted", total=10, succeeded=4, failed=0, remaining=6,
        )
        orchestrator = MagicMock()
        orchestrator.run.return_value = summary
        with patch("vifit.pipeline.builder.build_orchestrator", return_value=orchestrator):
            code = main(["run", "baseline", "-o", str(tmp_path)])
        assert code == EXIT_INTERRUPTED

    def test_anomalies(self, timeseries_csv, tmp_path, capsys):
        out = tmp_path / "out"
        for phase in ("baseline", "year_spline"):
            assert main(["run", phase, "-i", str(timeseries_csv), "-o", str(out), "--workers", "1"]) == EXIT_OK
        target = tmp_path / "anomalies.csv"
        code = main([
            "anomalies", "--baseline", str(out / "baseline.csv"),
            "--years", str(out / "year_spline.csv"), "-o", str(target),
        ])
        assert code == EXIT_OK
        rows = read_output(target)
        assert len(rows) == 24 * 365
        assert {"anomaly", "p_value", "is_significant"} <= set(rows[0])
        assert "Missing baseline:  0" in capsys.readouterr().out

    def test_derivative_anomalies(self, timeseries_csv, tmp_path):
        out = tmp_path / "out"
        for phase in ("baseline_derivatives", "year_derivatives"):
            assert main(["run", phase, "-i", str(timeseries_csv), "-o", str(out), "--workers", "1"]) == EXIT_OK
        target = tmp_path / "deriv_anomalies.csv"
        code = main([
            "anomalies", "--derivatives", "--baseline", str(out / "baseline_derivatives.csv"),
            "--years", str(out / "year_derivatives.csv"), "-o", str(target),
        ])
        assert code == EXIT_OK
        rows = read_output(target)
        assert len(rows) == 24 * 365
        assert {"deriv_anomaly", "deriv_anomaly_lwr", "deriv_anomaly_upr"} <= set(rows[0])
        assert all(r["deriv_anomaly_lwr"] <= r["deriv_anomaly_upr"] for r in rows[:365])

    def test_anomalies_missing_file(self, tmp_path):
        code = main([
            "anomalies", "--baseline", str(tmp_path / "b.csv"),
            "--years", str(tmp_path / "y.csv"), "-o", str(tmp_path / "a.csv"),
        ])
        assert code == EXIT_ERROR


class TestStopHandlers:
    def test_signal_sets_stop_flag(self):
        stop = threading.Event()
        previous = _install_stop_handlers(stop)
        try:
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        finally:
            _restore_handlers(previous)
        assert stop.is_set()
        assert signal.getsignal(signal.SIGTERM) is previous[signal.SIGTERM]
