"""Adaptive discovery of time windows that fit under the search result cap.

The search service stops returning usable results beyond roughly 4000
matches per query, and the counts it reports are neither strictly
monotonic nor stable between identical calls.  Discovery therefore walks
backward from "now", growing each window's lower bound until the reported
count reaches the accept threshold, backing off when it overshoots the
hard cap, and resetting the search when the same counts keep coming back.
Each accepted (or explicitly skipped) window is appended to the interval
log as soon as it is found.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .checkpoint import append_interval, read_interval_log
from .client import FlickrSearchClient
from .events import format_exception_message, log_event, unix_to_iso
from .models import DEFAULT_STEP_SECONDS, CrawlCursor, Interval

# Search states as reported in SEARCH_* events.
SEARCHING = "searching"
BACKING_OFF = "backing_off"
RESET = "reset"
ACCEPTED = "accepted"
SKIPPED = "skipped"


@dataclass
class SearchSettings:
    accept_threshold: int = 3000
    hard_cap: int = 4000
    default_step_seconds: int = DEFAULT_STEP_SECONDS
    zero_result_retries: int = 3
    zero_result_backoff_seconds: float = 1.0
    divergence_min_calls: int = 20
    divergence_repeat_threshold: int = 5
    max_divergence_resets: int = 10

    def validate(self) -> None:
        if self.accept_threshold <= 0 or self.hard_cap < self.accept_threshold:
            raise ValueError("accept_threshold must be positive and not above hard_cap")
        if self.default_step_seconds < 1:
            raise ValueError("default_step_seconds must be at least 1")
        if self.zero_result_retries < 0 or self.divergence_min_calls < 0:
            raise ValueError("retry and divergence limits must be non-negative")
        if self.divergence_repeat_threshold < 1:
            raise ValueError("divergence_repeat_threshold must be at least 1")


class IntervalSearchEngine:
    def __init__(
        self,
        client: FlickrSearchClient,
        cursor: CrawlCursor,
        settings: Optional[SearchSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.cursor = cursor
        self.settings = settings or SearchSettings()
        self.settings.validate()
        self.sleep = sleep
        self.calls_issued = 0

    def _query(self) -> Tuple[int, int]:
        self.calls_issued += 1
        response = self.client.call(self.cursor.current_min, self.cursor.current_max, page=1, want_details=False)
        if response is None:
            return 0, 0
        return response.total, response.pages

    def _count_with_retries(self, history: Counter, state: str) -> Tuple[int, int, int]:
        """Query the current window, retrying empty answers with quadratic backoff.

        Returns ``(count, pages, calls)``.
        """
        cursor = self.cursor
        count, pages = self._query()
        calls = 1
        history[count] += 1
        retries = 0
        while count == 0 and retries < self.settings.zero_result_retries:
            retries += 1
            backoff = self.settings.zero_result_backoff_seconds * retries * retries
            self.sleep(backoff)
            count, pages = self._query()
            calls += 1
            history[count] += 1
            log_event(
                "SEARCH_RETRY",
                state=state,
                attempt=retries,
                sleep_seconds=backoff,
                count=count,
                min_date=cursor.current_min,
                max_date=cursor.current_max,
            )
        log_event(
            "SEARCH_PROBE",
            state=state,
            count=count,
            min_date=cursor.current_min,
            max_date=cursor.current_max,
            window_from=unix_to_iso(max(cursor.current_min, 0)),
            window_to=unix_to_iso(max(cursor.current_max, 0)),
        )
        return count, pages, calls

    def _diverging(self, calls: int, history: Counter) -> bool:
        if calls < self.settings.divergence_min_calls or not history:
            return False
        return max(history.values()) >= self.settings.divergence_repeat_threshold

    def find_next_interval(self) -> Interval:
        """Find the window ending at the cursor's current_max and move current_min to its start."""
        cursor = self.cursor
        settings = self.settings
        initial_min = cursor.current_min
        initial_max = cursor.current_max
        calls = 0
        resets = 0
        history: Counter = Counter()
        count = 0
        pages = 0
        step = cursor.step_estimate
        skip = False

        while True:
            skip = False

            # Descend until the window holds enough results.
            while True:
                cursor.current_min = max(cursor.current_min - max(step // 2, 1), 0)
                count, pages, used = self._count_with_retries(history, SEARCHING)
                calls += used
                if count == 0:
                    skip = True
                if not (count < settings.accept_threshold and cursor.current_min > 0 and not skip):
                    break

            # Overshot the cap: shrink the window from below.
            back = max(step // 5, 1)
            while count > settings.hard_cap:
                cursor.current_min += back
                if cursor.current_min >= cursor.current_max:
                    cursor.step_estimate = max(cursor.step_estimate // 2, 1)
                    step = cursor.step_estimate
                    count = 0
                    log_event("SEARCH_STEP_HALVED", step=step, max_date=cursor.current_max)
                else:
                    count, pages, used = self._count_with_retries(history, BACKING_OFF)
                    calls += used

            if cursor.current_min < 0:
                cursor.current_min = 0
                count, pages = self._query()

            if not skip and resets < settings.max_divergence_resets and self._diverging(calls, history):
                resets += 1
                repeated_count, repeats = history.most_common(1)[0]
                log_event(
                    "SEARCH_RESET",
                    state=RESET,
                    calls=calls,
                    repeated_count=repeated_count,
                    repeats=repeats,
                    reset=f"{resets}/{settings.max_divergence_resets}",
                )
                cursor.current_min = initial_min
                cursor.current_max = initial_max
                history.clear()
                calls = 0
                count = 0

            if not (count == 0 and cursor.current_min > 0 and not skip):
                break

        cursor.step_estimate = cursor.current_max - cursor.current_min
        if skip:
            cursor.step_estimate = settings.default_step_seconds
            interval = Interval(cursor.current_min, cursor.current_max, page_count=0, result_count=0)
            log_event("SEARCH_SKIPPED", state=SKIPPED, interval=interval.to_line())
            return interval

        cursor.results_found += count
        interval = Interval(cursor.current_min, cursor.current_max, page_count=pages, result_count=count)
        log_event(
            "SEARCH_ACCEPTED",
            state=ACCEPTED,
            interval=interval.to_line(),
            results_so_far=cursor.results_found,
        )
        return interval

    def identify_intervals(self, log_path: Path, limit: int = 0) -> List[Interval]:
        """Discover windows until the cursor passes end_date, appending each to ``log_path``.

        ``limit`` caps the number of windows found in this run (0 means no cap).
        Failing to write the log is fatal; the exception propagates.
        """
        found: List[Interval] = []
        started = time.monotonic()
        log_event(
            "DISCOVERY_START",
            max_date=self.cursor.current_max,
            end_date=self.cursor.end_date,
            end=unix_to_iso(max(self.cursor.end_date, 0)),
            results_so_far=self.cursor.results_found,
        )
        while not self.cursor.finished:
            interval = self.find_next_interval()
            try:
                append_interval(log_path, interval)
            except OSError as exc:
                log_event("INTERVAL_LOG_WRITE_ERROR", path=log_path, error=format_exception_message(exc))
                raise
            found.append(interval)
            self.cursor.advance_past(interval)
            if limit and len(found) >= limit:
                break
        stats = self.client.stats
        log_event(
            "DISCOVERY_DONE",
            intervals=len(found),
            results_so_far=self.cursor.results_found,
            calls=self.calls_issued,
            succeeded=stats.succeeded,
            failed=stats.failed,
            elapsed_seconds=f"{time.monotonic() - started:.1f}",
        )
        return found


def resume_cursor_from_log(log_path: Path, end_date: int, now: Optional[int] = None) -> CrawlCursor:
    """Build the discovery cursor, continuing below the last logged window if there is one."""
    if now is None:
        now = int(time.time())
    cursor = CrawlCursor.starting_at(now, end_date)
    intervals = read_interval_log(log_path)
    if not intervals:
        return cursor
    cursor.results_found = sum(interval.result_count for interval in intervals)
    cursor.advance_past(intervals[-1])
    log_event(
        "DISCOVERY_RESUME",
        from_min_date=intervals[-1].min_date,
        resume_at=unix_to_iso(max(intervals[-1].min_date, 0)),
        logged_intervals=len(intervals),
        results_so_far=cursor.results_found,
    )
    return cursor
