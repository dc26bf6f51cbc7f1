# src/main.py - v3
"""CLI entry point: run, status and anomalies commands.

Usage:
    vifit run <phase> --input CSV --output-dir DIR [options]
    vifit status <phase> --output-dir DIR
    vifit anomalies --baseline FILE --years FILE -o OUT [--derivatives]

Exit codes: 0 on completion, 130 when stopped by a signal, 1 on error.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from vifit.version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_ERROR

    try:
        _setup_logging(args)
        return args.func(args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return EXIT_ERROR


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    from vifit.fitting.phases import PHASES

    parser = argparse.ArgumentParser(
        prog="vifit",
        description=f"vifit v{__version__} - resumable batch fitting of vegetation-index time series",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-format", choices=["text", "json"], default=None,
        help="Log line format (default: from settings)",
    )
    parser.add_argument(
        "--log-file", type=Path, default=None,
        help="Also log to a rotating file",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Fit every work unit of a phase")
    p_run.add_argument("phase", choices=sorted(PHASES), help="Processing phase")
    p_run.add_argument(
        "-i", "--input", dest="input_path", type=Path, default=None,
        help="Time series CSV (default: from settings)",
    )
    p_run.add_argument(
        "-o", "--output-dir", type=Path, default=None,
        help="Output directory (default: from settings)",
    )
    p_run.add_argument("--workers", dest="n_workers", type=int, default=None)
    p_run.add_argument("--batch-size", type=int, default=None)
    p_run.add_argument("--checkpoint-interval", type=int, default=None)
    p_run.add_argument(
        "--backend", dest="checkpoint_backend", choices=["sqlite", "jsonl"], default=None,
    )
    p_run.add_argument(
        "--format", dest="output_format", choices=["csv", "jsonl"], default=None,
    )
    p_run.add_argument(
        "--no-retry-failed", dest="retry_failed_on_resume", action="store_false", default=None,
        help="Do not re-attempt units that failed in an earlier run",
    )
    p_run.set_defaults(func=_cmd_run)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show checkpoint and manifest counters")
    p_status.add_argument("phase", choices=sorted(PHASES), help="Processing phase")
    p_status.add_argument("-o", "--output-dir", type=Path, default=None)
    p_status.add_argument(
        "--backend", dest="checkpoint_backend", choices=["sqlite", "jsonl"], default=None,
    )
    p_status.add_argument(
        "--format", dest="output_format", choices=["csv", "jsonl"], default=None,
    )
    p_status.set_defaults(func=_cmd_status)

    # --- anomalies ---
    p_anom = subparsers.add_parser("anomalies", help="Year curves versus baseline norms")
    p_anom.add_argument("--baseline", type=Path, required=True, help="Baseline phase output")
    p_anom.add_argument("--years", type=Path, required=True, help="year_spline phase output")
    p_anom.add_argument("-o", "--output", type=Path, required=True, help="Anomaly CSV to write")
    p_anom.add_argument("--alpha", type=float, default=None, help="Significance level")
    p_anom.add_argument(
        "--derivatives", action="store_true",
        help="Inputs are baseline_derivatives and year_derivatives outputs",
    )
    p_anom.set_defaults(func=_cmd_anomalies)

    return parser


def _overrides(args: argparse.Namespace, *names: str) -> dict[str, Any]:
    return {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}


def _cmd_run(args: argparse.Namespace) -> int:
    """Run one phase to completion, or until SIGINT/SIGTERM."""
    from vifit.config.settings import load_settings
    from vifit.pipeline.builder import build_orchestrator

    settings = load_settings(
        phase=args.phase,
        **_overrides(
            args, "input_path", "output_dir", "n_workers", "batch_size",
            "checkpoint_interval", "checkpoint_backend", "output_format",
            "retry_failed_on_resume",
        ),
    )
    stop = threading.Event()
    previous = _install_stop_handlers(stop)
    try:
        orchestrator = build_orchestrator(settings, stop_requested=stop.is_set)
        summary = orchestrator.run()
    finally:
        _restore_handlers(previous)

    print(f"\nPhase {summary.phase}: {summary.status}")
    print(f"  Total:      {summary.total}")
    print(f"  Succeeded:  {summary.succeeded}")
    print(f"  Failed:     {summary.failed}")
    for reason, count in summary.failures_by_reason.items():
        print(f"    {reason}: {count}")
    print(f"  Remaining:  {summary.remaining}")
    print(f"  Attempted:  {summary.attempted_this_run} this run")
    print(f"  Duration:   {summary.elapsed_seconds:.1f}s")
    if summary.output_path:
        print(f"  Output:     {summary.output_path}")
    return EXIT_INTERRUPTED if summary.status == "interrupted" else EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    """Print checkpoint and manifest counters for a phase."""
    from vifit.checkpoint.checkpoint_factory import create_checkpoint_store
    from vifit.config.settings import load_settings
    from vifit.storage import layout
    from vifit.storage.reader import load_manifest

    settings = load_settings(
        phase=args.phase, **_overrides(args, "output_dir", "checkpoint_backend", "output_format"),
    )
    output = layout.output_path(settings.output_dir, args.phase, settings.output_format)
    store = create_checkpoint_store(settings, args.phase)
    try:
        state = store.load()
    finally:
        store.close()
    manifest = load_manifest(output)

    print(f"\nStatus for phase {args.phase} in {settings.output_dir}:")
    if state is None:
        print("  Checkpoint: none")
    else:
        print(f"  Checkpoint: schema v{state.schema_version}{' (finalized)' if state.finalized else ''}")
        print(f"    Rows:      {len(state.rows)}")
        print(f"    Failed:    {len(state.failed_tokens())}")
        print(f"    Attempts:  {state.attempted_count}")
    if manifest is None:
        print("  Manifest:   none")
    else:
        print(f"  Manifest:   {manifest.status} (run {manifest.run_id})")
        print(f"    Total:     {manifest.total}")
        print(f"    Succeeded: {manifest.succeeded}")
        print(f"    Failed:    {manifest.failed}")
    return EXIT_OK


def _cmd_anomalies(args: argparse.Namespace) -> int:
    """Compute anomalies from baseline and year outputs (curves or derivatives)."""
    from vifit.anomalies.calculator import (
        ANOMALY_COLUMNS,
        DERIVATIVE_ANOMALY_COLUMNS,
        calculate_anomalies,
        calculate_derivative_anomalies,
    )
    from vifit.config.settings import load_settings
    from vifit.storage.csv_writer import CsvOutputWriter
    from vifit.storage.reader import read_output

    for path in (args.baseline, args.years):
        if not path.is_file():
            logger.error("File not found: %s", path)
            return EXIT_ERROR

    alpha = args.alpha if args.alpha is not None else load_settings().alpha
    if args.derivatives:
        calculate, columns = calculate_derivative_anomalies, DERIVATIVE_ANOMALY_COLUMNS
    else:
        calculate, columns = calculate_anomalies, ANOMALY_COLUMNS
    result = calculate(read_output(args.baseline), read_output(args.years), alpha=alpha)
    count = CsvOutputWriter().write(args.output, columns, result.rows)

    print(f"\nAnomalies written: {args.output}")
    print(f"  Pixel-years:       {result.pixel_years}")
    print(f"  Rows:              {count}")
    print(f"  Missing baseline:  {result.missing_baseline}")
    return EXIT_OK


def _install_stop_handlers(stop: threading.Event) -> dict[int, Any]:
    """Route SIGINT/SIGTERM to ``stop``; the run halts at the next batch boundary."""

    def _handler(signum: int, frame: object) -> None:
        logger.warning("Received %s; stopping after the current batch", signal.Signals(signum).name)
        stop.set()

    previous: dict[int, Any] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _setup_logging(args: argparse.Namespace) -> None:
    """Configure logging for CLI usage."""
    from vifit.config.settings import load_settings
    from vifit.logging.logger import setup_logging

    settings = load_settings()
    setup_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        log_format=args.log_format or settings.log_format,
        log_file=args.log_file or settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )


if __name__ == "__main__":
    sys.exit(main())
