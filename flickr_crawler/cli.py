#!/usr/bin/env python3
"""Discover result-capped time windows on Flickr search and download every page of them."""

from __future__ import annotations

import argparse
import csv
import json
import os
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .checkpoint import CheckpointStore, checkpoint_path_for, plan_downloads, read_interval_log
from .client import SERVICE_URL, CallStats, ClientSettings, FlickrSearchClient
from .config import config_to_parser_defaults, load_config_file
from .events import TeeStream, format_exception_message, log_event, new_run_dir, unix_to_iso, utc_now_iso
from .models import DEFAULT_STEP_SECONDS, IntervalFormatError
from .scheduler import MAX_FILES_PER_DIR, DownloadScheduler, DownloadSettings
from .search import IntervalSearchEngine, SearchSettings, resume_cursor_from_log

API_KEY_ENV = "FLICKR_API_KEY"


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("api_key", help=f"Flickr API key, or '-' to read it from {API_KEY_ENV}.")
    parser.add_argument("command", choices=("scan", "download"), help="Discover intervals or download their pages.")
    parser.add_argument("end_timestamp", type=int, help="UNIX timestamp at which discovery stops.")
    parser.add_argument("interval_log_file", type=Path, help="Interval log to append to (scan) or replay (download).")
    parser.add_argument("data_dir", type=Path, help="Directory for the downloaded raw XML pages.")
    parser.add_argument("proxy_host", nargs="?", default=None, help="Optional HTTP proxy host.")
    parser.add_argument("proxy_port", nargs="?", type=int, default=None, help="Optional HTTP proxy port.")
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument("--service-url", default=SERVICE_URL, help="Flickr REST endpoint.")
    parser.add_argument("--timeout-seconds", type=int, default=60, help="HTTP timeout in seconds.")
    parser.add_argument("--max-retries", type=int, default=3, help="HTTP attempts per remote call.")
    parser.add_argument("--retry-sleep-seconds", type=float, default=1.5, help="HTTP retry backoff factor.")
    parser.add_argument(
        "--request-interval-seconds",
        type=float,
        default=2.5,
        help="Minimum delay between requests on one client slot, and between page worker launches.",
    )
    parser.add_argument("--accept-threshold", type=int, default=3000, help="Smallest acceptable window count.")
    parser.add_argument("--hard-cap", type=int, default=4000, help="Largest usable window count.")
    parser.add_argument(
        "--default-step-seconds",
        type=int,
        default=DEFAULT_STEP_SECONDS,
        help="Initial window width estimate, also used after a skipped window.",
    )
    parser.add_argument("--zero-result-retries", type=int, default=3, help="Retries for an empty window count.")
    parser.add_argument(
        "--zero-result-backoff-seconds",
        type=float,
        default=1.0,
        help="Backoff unit for empty counts; attempt N sleeps N*N units.",
    )
    parser.add_argument(
        "--divergence-min-calls",
        type=int,
        default=20,
        help="Calls a window search may issue before oscillation is checked.",
    )
    parser.add_argument(
        "--divergence-repeat-threshold",
        type=int,
        default=5,
        help="Recurrences of a single count that trigger a search reset.",
    )
    parser.add_argument("--max-divergence-resets", type=int, default=10, help="Reset limit per window search.")
    parser.add_argument("--max-intervals", type=int, default=0, help="Stop scan after N new intervals (0 = no limit).")
    parser.add_argument("--max-workers", type=int, default=16, help="Concurrent page workers (1..16).")
    parser.add_argument(
        "--max-files-per-chunk",
        type=int,
        default=MAX_FILES_PER_DIR,
        help="Files per chunk directory before switching to the next one.",
    )
    parser.add_argument("--state-dir", default="state", help="Directory for the download checkpoint file.")
    parser.add_argument("--logs-dir", default="logs/runs", help="Directory where per-run logs are written.")
    parser.add_argument(
        "--no-progress",
        dest="show_progress",
        action="store_false",
        default=True,
        help="Disable the tqdm page progress bar.",
    )

    if config_defaults:
        parser.set_defaults(**config_defaults)

    args = parser.parse_args(argv)
    if (args.proxy_host is None) != (args.proxy_port is None):
        parser.error("proxy_host and proxy_port must be given together.")
    return args


def resolve_api_key(value: str) -> str:
    if value and value != "-":
        return value
    env_value = os.getenv(API_KEY_ENV, "").strip()
    if not env_value:
        raise SystemExit(f"Missing API key. Pass it positionally or set {API_KEY_ENV} and pass '-'.")
    return env_value


def build_client(args: argparse.Namespace, stats: CallStats) -> FlickrSearchClient:
    if args.timeout_seconds <= 0:
        raise SystemExit("--timeout-seconds must be greater than 0.")
    if args.request_interval_seconds < 0:
        raise SystemExit("--request-interval-seconds must be 0 or greater.")
    settings = ClientSettings(
        api_key=resolve_api_key(args.api_key),
        service_url=args.service_url,
        timeout_seconds=args.timeout_seconds,
        max_retries=args.max_retries,
        retry_sleep_seconds=args.retry_sleep_seconds,
        request_interval_seconds=args.request_interval_seconds,
        proxy_host=args.proxy_host,
        proxy_port=args.proxy_port,
    )
    if args.proxy_host:
        log_event("PROXY", host=args.proxy_host, port=args.proxy_port)
    return FlickrSearchClient(settings, stats=stats)


def run_scan(args: argparse.Namespace, client: FlickrSearchClient) -> Dict[str, Any]:
    settings = SearchSettings(
        accept_threshold=args.accept_threshold,
        hard_cap=args.hard_cap,
        default_step_seconds=args.default_step_seconds,
        zero_result_retries=args.zero_result_retries,
        zero_result_backoff_seconds=args.zero_result_backoff_seconds,
        divergence_min_calls=args.divergence_min_calls,
        divergence_repeat_threshold=args.divergence_repeat_threshold,
        max_divergence_resets=args.max_divergence_resets,
    )
    try:
        settings.validate()
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    if args.end_timestamp < 0:
        raise SystemExit("end_timestamp must not be before the epoch (0).")
    log_event("SCAN_END_DATE", end_date=args.end_timestamp, end=unix_to_iso(args.end_timestamp))
    cursor = resume_cursor_from_log(args.interval_log_file, args.end_timestamp)
    cursor.step_estimate = settings.default_step_seconds
    engine = IntervalSearchEngine(client, cursor, settings)
    try:
        found = engine.identify_intervals(args.interval_log_file, limit=args.max_intervals)
    except OSError as exc:
        raise SystemExit(f"Could not write interval log {args.interval_log_file}: {exc}") from exc
    return {
        "intervals_found": len(found),
        "intervals_skipped": sum(1 for interval in found if interval.is_skip_marker),
        "results_found": cursor.results_found,
        "search_calls": engine.calls_issued,
    }


def run_download(args: argparse.Namespace, client: FlickrSearchClient, record_failure) -> Dict[str, Any]:
    if not 1 <= args.max_workers <= client.slot_count:
        raise SystemExit(f"--max-workers must be between 1 and {client.slot_count}.")
    if args.max_files_per_chunk <= 0:
        raise SystemExit("--max-files-per-chunk must be greater than 0.")
    if not args.interval_log_file.exists():
        raise SystemExit(f"Interval log not found: {args.interval_log_file}")
    checkpoint = CheckpointStore(checkpoint_path_for(Path(args.state_dir), args.interval_log_file))
    intervals = read_interval_log(args.interval_log_file)
    last = checkpoint.load()
    log_event("RESUME_STATE", checkpoint=checkpoint.path, last_interval=last.to_line() if last else None)
    plan = plan_downloads(intervals, last)
    args.data_dir.mkdir(parents=True, exist_ok=True)
    scheduler = DownloadScheduler(
        client,
        checkpoint,
        args.data_dir,
        DownloadSettings(
            max_workers=args.max_workers,
            max_files_per_chunk=args.max_files_per_chunk,
            launch_interval_seconds=args.request_interval_seconds,
            show_progress=args.show_progress,
        ),
        record_failure=record_failure,
    )
    try:
        report = scheduler.run(plan)
    except OSError as exc:
        raise SystemExit(f"Could not write checkpoint {checkpoint.path}: {exc}") from exc
    return {
        "intervals_planned": len(plan.queue),
        "intervals_skipped": plan.skipped,
        "intervals_completed": report.intervals_completed,
        "pages_planned": plan.total_pages,
        "pages_present": report.pages_present,
        "pages_downloaded": report.pages_downloaded,
        "pages_failed": report.pages_failed,
    }


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    run_started_at = utc_now_iso()
    run_started_monotonic = time.monotonic()
    run_dir = new_run_dir(Path(args.logs_dir))
    run_log_path = run_dir / "run.log"
    failures_csv_path = run_dir / "failures.csv"
    summary_json_path = run_dir / "summary.json"

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = open(run_log_path, "a", encoding="utf-8")
    failures_handle = open(failures_csv_path, "w", encoding="utf-8", newline="")
    failure_writer = csv.DictWriter(
        failures_handle,
        fieldnames=("timestamp", "command", "min_date", "max_date", "page", "error"),
    )
    failure_writer.writeheader()
    failures_handle.flush()
    failures_lock = threading.Lock()
    sys.stdout = TeeStream(original_stdout, run_log_handle)
    sys.stderr = TeeStream(original_stderr, run_log_handle)

    def record_failure(*, min_date: int, max_date: int, page: int, error: str) -> None:
        with failures_lock:
            failure_writer.writerow(
                {
                    "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
                    "command": args.command,
                    "min_date": min_date,
                    "max_date": max_date,
                    "page": page,
                    "error": error,
                }
            )
            failures_handle.flush()

    stats = CallStats()
    summary_status = "completed"
    fatal_error: Optional[str] = None
    outcome: Dict[str, Any] = {}
    client: Optional[FlickrSearchClient] = None
    try:
        log_event("RUN_PATHS", run_dir=run_dir, run_log=run_log_path, failure_log=failures_csv_path)
        if args.config:
            log_event("RUN_CONFIG", config=args.config)
        client = build_client(args, stats)
        if args.command == "scan":
            outcome = run_scan(args, client)
        else:
            outcome = run_download(args, client, record_failure)
    except IntervalFormatError as exc:
        summary_status = "failed"
        fatal_error = str(exc)
        log_event("STATE_FILE_ERROR", error=fatal_error)
        raise SystemExit(f"Cannot resume: {exc}") from exc
    except KeyboardInterrupt:
        summary_status = "interrupted"
        log_event("RUN_INTERRUPTED")
        raise
    except SystemExit as exc:
        summary_status = "failed"
        fatal_error = str(exc.code) if exc.code is not None else None
        raise
    except Exception as exc:  # noqa: BLE001
        summary_status = "failed"
        fatal_error = format_exception_message(exc)
        log_event("RUN_ERROR", error=fatal_error)
        raise
    finally:
        if client is not None:
            client.close()
        summary = {
            "status": summary_status,
            "command": args.command,
            "started_at": run_started_at,
            "finished_at": utc_now_iso(),
            "elapsed_seconds": round(time.monotonic() - run_started_monotonic, 1),
            "interval_log": str(args.interval_log_file),
            "data_dir": str(args.data_dir),
            "calls_succeeded": stats.succeeded,
            "calls_failed": stats.failed,
            "fatal_error": fatal_error,
            **outcome,
        }
        log_event("RUN_SUMMARY", **{key: value for key, value in summary.items() if key != "fatal_error"})
        try:
            summary_json_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
        except OSError as exc:
            log_event("SUMMARY_WRITE_WARN", error=str(exc))
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        run_log_handle.close()
        failures_handle.close()


if __name__ == "__main__":
    main()
