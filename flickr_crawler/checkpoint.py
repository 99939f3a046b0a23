"""Interval log and download checkpoint persistence."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from .events import log_event
from .models import Interval, IntervalFormatError


def read_interval_log(path: Path) -> List[Interval]:
    intervals: List[Interval] = []
    if not path.exists():
        return intervals
    with open(path, "r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            raw = line.strip()
            if not raw:
                continue
            intervals.append(Interval.from_line(raw, source=path, line_number=line_number))
    return intervals


def append_interval(path: Path, interval: Interval) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(interval.to_line())
        handle.write("\n")
        handle.flush()


def checkpoint_path_for(state_dir: Path, interval_log: Path) -> Path:
    return Path(state_dir) / f"{Path(interval_log).name}.last_interval"


class CheckpointStore:
    """Single-line record of the last fully downloaded interval."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Interval]:
        if not self.path.exists():
            return None
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return None
        lines = raw.splitlines()
        if len(lines) != 1:
            raise IntervalFormatError(raw, f"checkpoint holds {len(lines)} lines", source=self.path)
        return Interval.from_line(lines[0], source=self.path, line_number=1)

    def save(self, interval: Interval) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(interval.to_line())
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class DownloadPlan:
    queue: List[Interval] = field(default_factory=list)
    skipped: int = 0
    total_pages: int = 0
    total_results: int = 0
    checkpoint_found: bool = True


def plan_downloads(intervals: Iterable[Interval], last: Optional[Interval]) -> DownloadPlan:
    """Select the intervals still to download.

    Everything strictly before ``last`` was fully downloaded by an earlier
    run.  ``last`` itself is enqueued again so a partially written interval
    gets re-verified.  Skip markers are never enqueued.
    """
    intervals = list(intervals)
    plan = DownloadPlan()
    seen_last = last is None
    for interval in intervals:
        if not seen_last and interval == last:
            seen_last = True
            log_event("CHECKPOINT_MATCHED", interval=interval.to_line(), skipped=plan.skipped)
        if seen_last and not interval.is_skip_marker:
            plan.queue.append(interval)
            plan.total_pages += interval.page_count
            plan.total_results += interval.result_count
        else:
            plan.skipped += 1
    if not seen_last:
        log_event("CHECKPOINT_NOT_IN_LOG", checkpoint=last.to_line(), action="replay_full_log")
        fallback = plan_downloads(intervals, None)
        fallback.checkpoint_found = False
        return fallback
    return plan
