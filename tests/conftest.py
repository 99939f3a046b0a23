import math
import threading
from typing import Callable, List, Optional, Tuple

import pytest

from flickr_crawler.client import CallStats, SearchResponse
from flickr_crawler.models import PAGE_SIZE

T = 1_300_000_000


def search_xml(total: int, pages: Optional[int] = None, page: int = 1) -> str:
    """Render a minimal flickr.photos.search REST payload."""
    if pages is None:
        pages = math.ceil(total / PAGE_SIZE)
    return (
        '<?xml version="1.0" encoding="utf-8" ?>\n'
        '<rsp stat="ok">\n'
        f'<photos page="{page}" pages="{pages}" perpage="{PAGE_SIZE}" total="{total}">\n'
        f'\t<photo id="{page}000" owner="12345@N00" secret="abc" server="1" farm="1" '
        'title="harbour" ispublic="1" isfriend="0" isfamily="0" latitude="51.05" longitude="3.72" accuracy="16" />\n'
        "</photos>\n"
        "</rsp>"
    )


class FakeSearchClient:
    """Stand-in for FlickrSearchClient driven by an oracle ``(min, max, page, details) -> count | None``."""

    def __init__(self, oracle: Callable[[int, int, int, bool], Optional[int]], slots: int = 16) -> None:
        self.oracle = oracle
        self.stats = CallStats()
        self.slot_count = slots
        self.calls: List[Tuple[int, int, int, bool, int]] = []
        self._lock = threading.Lock()

    def call(self, min_date, max_date, page=1, want_details=False, slot=0):
        with self._lock:
            self.calls.append((min_date, max_date, page, want_details, slot))
        count = self.oracle(min_date, max_date, page, want_details)
        if count is None:
            self.stats.record_failure()
            return None
        self.stats.record_success()
        pages = math.ceil(count / PAGE_SIZE)
        return SearchResponse(text=search_xml(count, pages, page), total=count, pages=pages)


class ScriptedOracle:
    """Returns counts from a list in call order, repeating the last one when exhausted."""

    def __init__(self, counts: List[Optional[int]]) -> None:
        self.counts = list(counts)
        self.index = 0

    def __call__(self, min_date, max_date, page, want_details):
        value = self.counts[min(self.index, len(self.counts) - 1)]
        self.index += 1
        return value


@pytest.fixture
def no_sleep():
    slept: List[float] = []
    return slept.append, slept
