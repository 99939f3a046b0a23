"""Concurrent, checkpointed download of every page of the logged intervals."""

from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from tqdm import tqdm

from .checkpoint import CheckpointStore, DownloadPlan
from .client import DEFAULT_SLOTS, FlickrSearchClient, RequestPacer
from .events import format_exception_message, log_event
from .models import Interval

CHUNK_DIR_PATTERN = re.compile(r"^chunk_(\d+)$")
MAX_FILES_PER_DIR = 10000
MIN_VALID_FILE_BYTES = 100


def page_filename(max_date: int, page: int) -> str:
    return f"response_{max_date}_page_{page:02d}.xml"


def chunk_dir_name(number: int) -> str:
    return f"chunk_{number:03d}"


class ChunkDirectory:
    """Numbered output shards, each holding at most ``max_files`` files before rolling over."""

    def __init__(self, data_dir: Path, max_files: int = MAX_FILES_PER_DIR) -> None:
        self.data_dir = Path(data_dir)
        self.max_files = max_files
        self.number = self._latest_number()
        self.roll_if_full()

    def _latest_number(self) -> int:
        if not self.data_dir.exists():
            return 1
        numbers = []
        for entry in self.data_dir.iterdir():
            match = CHUNK_DIR_PATTERN.match(entry.name)
            if match and entry.is_dir():
                numbers.append(int(match.group(1)))
        return max(numbers) if numbers else 1

    @property
    def path(self) -> Path:
        return self.data_dir / chunk_dir_name(self.number)

    @property
    def previous_path(self) -> Optional[Path]:
        if self.number <= 1:
            return None
        return self.data_dir / chunk_dir_name(self.number - 1)

    def file_count(self) -> int:
        if not self.path.exists():
            return 0
        return sum(1 for _ in self.path.iterdir())

    def roll_if_full(self) -> bool:
        if self.file_count() <= self.max_files:
            return False
        self.number += 1
        log_event("CHUNK_SWITCH", chunk=self.path)
        return True

    def ensure(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path


class ProgressCounter:
    """Thread-safe count of processed pages, mirrored to an optional tqdm bar."""

    def __init__(self, total: int, bar: Optional[tqdm] = None) -> None:
        self.total = total
        self.done = 0
        self.failed = 0
        self.bar = bar
        self._lock = threading.Lock()

    def record(self, ok: bool) -> None:
        with self._lock:
            self.done += 1
            if not ok:
                self.failed += 1
            if self.bar is not None:
                self.bar.update(1)
                self.bar.set_postfix(failed=self.failed)

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()


@dataclass
class DownloadSettings:
    max_workers: int = DEFAULT_SLOTS
    max_files_per_chunk: int = MAX_FILES_PER_DIR
    min_valid_file_bytes: int = MIN_VALID_FILE_BYTES
    launch_interval_seconds: float = 2.5
    show_progress: bool = True


@dataclass
class PageOutcome:
    page: int
    ok: bool
    path: Path
    error: str = ""


@dataclass
class DownloadReport:
    intervals_completed: int = 0
    pages_present: int = 0
    pages_downloaded: int = 0
    pages_failed: int = 0
    failures: List[Dict[str, object]] = field(default_factory=list)


class DownloadScheduler:
    """Downloads the planned intervals one at a time, pages of an interval in parallel.

    Interval N+1 never starts before every page worker of interval N has
    finished; only then is the checkpoint advanced.  Pages that fail are
    left missing, and the checkpoint is not advanced past them, so the
    size check of a later run picks them up.
    """

    def __init__(
        self,
        client: FlickrSearchClient,
        checkpoint: CheckpointStore,
        data_dir: Path,
        settings: Optional[DownloadSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        record_failure: Optional[Callable[..., None]] = None,
    ) -> None:
        self.client = client
        self.checkpoint = checkpoint
        self.data_dir = Path(data_dir)
        self.settings = settings or DownloadSettings()
        self.max_workers = max(1, min(self.settings.max_workers, client.slot_count))
        self.launch_pacer = RequestPacer(self.settings.launch_interval_seconds, sleep=sleep)
        self.record_failure = record_failure
        self.chunks = ChunkDirectory(self.data_dir, self.settings.max_files_per_chunk)

    def is_downloaded(self, filename: str) -> bool:
        candidates = [self.chunks.path / filename]
        if self.chunks.previous_path is not None:
            candidates.append(self.chunks.previous_path / filename)
        for candidate in candidates:
            try:
                if candidate.stat().st_size >= self.settings.min_valid_file_bytes:
                    return True
            except FileNotFoundError:
                continue
        return False

    def _download_page(
        self,
        interval: Interval,
        page: int,
        destination: Path,
        slot: int,
        progress: ProgressCounter,
    ) -> PageOutcome:
        response = self.client.call(interval.min_date, interval.max_date, page=page, want_details=True, slot=slot)
        if response is None:
            progress.record(False)
            return PageOutcome(page=page, ok=False, path=destination, error="remote_call_failed")
        tmp_path = destination.with_suffix(destination.suffix + ".part")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(response.text)
                handle.write("\n")
            tmp_path.replace(destination)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            progress.record(False)
            return PageOutcome(page=page, ok=False, path=destination, error=format_exception_message(exc))
        progress.record(True)
        return PageOutcome(page=page, ok=True, path=destination)

    def download_interval(self, interval: Interval, progress: ProgressCounter, report: DownloadReport) -> None:
        output_dir = self.chunks.ensure()
        log_event("INTERVAL_START", interval=interval.to_line(), chunk=output_dir)
        futures: Dict[Future, int] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for page in range(1, interval.page_count + 1):
                filename = page_filename(interval.max_date, page)
                if self.is_downloaded(filename):
                    report.pages_present += 1
                    progress.record(True)
                    continue
                slot = (page - 1) % self.client.slot_count
                future = executor.submit(
                    self._download_page, interval, page, output_dir / filename, slot, progress
                )
                futures[future] = page
                self.launch_pacer.pause()
            wait(futures)

        for future, page in sorted(futures.items(), key=lambda item: item[1]):
            try:
                outcome = future.result()
            except Exception as exc:  # noqa: BLE001
                outcome = PageOutcome(
                    page=page,
                    ok=False,
                    path=output_dir / page_filename(interval.max_date, page),
                    error=format_exception_message(exc),
                )
            if outcome.ok:
                report.pages_downloaded += 1
                continue
            report.pages_failed += 1
            failure = {
                "min_date": interval.min_date,
                "max_date": interval.max_date,
                "page": outcome.page,
                "error": outcome.error,
            }
            report.failures.append(failure)
            log_event("PAGE_FAILED", **failure)
            if self.record_failure is not None:
                self.record_failure(**failure)

    def run(self, plan: DownloadPlan) -> DownloadReport:
        report = DownloadReport()
        bar = None
        if self.settings.show_progress:
            bar = tqdm(total=plan.total_pages, desc="Pages", unit="page")
        progress = ProgressCounter(plan.total_pages, bar)
        log_event(
            "DOWNLOAD_PLAN",
            intervals=len(plan.queue),
            skipped=plan.skipped,
            pages=plan.total_pages,
            results=plan.total_results,
            chunk=self.chunks.path,
        )
        try:
            for interval in plan.queue:
                self.download_interval(interval, progress, report)
                # The checkpoint stays before the earliest interval with a missing page.
                if report.pages_failed == 0:
                    self.checkpoint.save(interval)
                else:
                    log_event("CHECKPOINT_HELD", interval=interval.to_line(), pages_failed=report.pages_failed)
                report.intervals_completed += 1
                log_event(
                    "INTERVAL_DONE",
                    interval=interval.to_line(),
                    progress=f"{progress.done}/{progress.total}",
                    failed=progress.failed,
                )
                self.chunks.roll_if_full()
        finally:
            progress.close()
        stats = self.client.stats
        log_event(
            "DOWNLOAD_DONE",
            intervals=report.intervals_completed,
            pages_present=report.pages_present,
            pages_downloaded=report.pages_downloaded,
            pages_failed=report.pages_failed,
            succeeded=stats.succeeded,
            failed=stats.failed,
        )
        return report
