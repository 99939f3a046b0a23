"""Data model shared by discovery and download."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

DEFAULT_STEP_SECONDS = 3600
PAGE_SIZE = 250


class IntervalFormatError(ValueError):
    """Raised when a persisted interval line cannot be parsed."""

    def __init__(self, line: str, reason: str, source: Optional[Union[str, Path]] = None, line_number: int = 0) -> None:
        self.line = line
        self.reason = reason
        self.source = str(source) if source is not None else None
        self.line_number = line_number
        where = ""
        if self.source:
            where = f"{self.source}:{line_number}: " if line_number else f"{self.source}: "
        super().__init__(f"{where}malformed interval line ({reason}): {line!r}")


@dataclass(frozen=True)
class Interval:
    """A time window [min_date, max_date] and what the search service reported for it.

    Two intervals are the same window when their bounds match; the counts are
    informational and ignored by ``==`` and ``hash``.
    """

    min_date: int
    max_date: int
    page_count: int = field(default=0, compare=False)
    result_count: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if self.min_date < 0:
            raise ValueError(f"min_date {self.min_date} is before the epoch")
        if self.min_date > self.max_date:
            raise ValueError(f"min_date {self.min_date} is after max_date {self.max_date}")
        if self.page_count < 0 or self.result_count < 0:
            raise ValueError("page_count and result_count must be non-negative")

    @property
    def is_skip_marker(self) -> bool:
        return self.result_count == 0 and self.page_count == 0

    @property
    def width(self) -> int:
        return self.max_date - self.min_date

    def to_line(self) -> str:
        return (
            f"[ {self.min_date} , {self.max_date} ] results in "
            f"{self.result_count} results over {self.page_count} pages."
        )

    def __str__(self) -> str:
        return self.to_line()

    @classmethod
    def from_line(
        cls,
        line: str,
        source: Optional[Union[str, Path]] = None,
        line_number: int = 0,
    ) -> "Interval":
        # Positional fields: 1=min, 3=max, 7=count, 10=pages.
        values = line.split()
        if len(values) != 12:
            raise IntervalFormatError(line, f"expected 12 fields, got {len(values)}", source, line_number)
        if values[0] != "[" or values[2] != "," or values[4] != "]" or values[11] != "pages.":
            raise IntervalFormatError(line, "unexpected separators", source, line_number)
        try:
            min_date = int(values[1])
            max_date = int(values[3])
            result_count = int(values[7])
            page_count = int(values[10])
        except ValueError as exc:
            raise IntervalFormatError(line, "non-numeric field", source, line_number) from exc
        try:
            return cls(min_date, max_date, page_count=page_count, result_count=result_count)
        except ValueError as exc:
            raise IntervalFormatError(line, str(exc), source, line_number) from exc


@dataclass
class CrawlCursor:
    """Mutable discovery position, scanning backward from current_max toward end_date."""

    current_min: int
    current_max: int
    end_date: int
    results_found: int = 0
    step_estimate: int = DEFAULT_STEP_SECONDS

    @classmethod
    def starting_at(cls, now: int, end_date: int) -> "CrawlCursor":
        return cls(current_min=now - 1, current_max=now, end_date=end_date)

    @property
    def finished(self) -> bool:
        return self.current_min <= self.end_date

    def advance_past(self, interval: Interval) -> None:
        self.current_max = interval.min_date - 1
        self.current_min = self.current_max - 1
