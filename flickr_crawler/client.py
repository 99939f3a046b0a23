"""Rate-limited client for the fixed ``flickr.photos.search`` query."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import requests

from .events import format_exception_message, log_event
from .models import PAGE_SIZE

SERVICE_URL = "https://api.flickr.com/services/rest/"
METHOD_NAME = "flickr.photos.search"
# Region level accuracy or better.
MIN_ACCURACY = "1"
DETAIL_EXTRAS = (
    "description,license,date_upload,date_taken,owner_name,last_update,geo,"
    "tags,machine_tags,views,media,path_alias,url_o"
)
MIN_RESPONSE_CHARS = 100
DEFAULT_SLOTS = 16
RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class ResponseParseError(ValueError):
    """The response text does not carry locatable total/pages attributes."""


def _extract_attribute(text: str, name: str) -> int:
    marker = f'{name}="'
    start = text.find(marker)
    if start < 0:
        raise ResponseParseError(f"attribute {name!r} not found")
    start += len(marker)
    stop = text.find('"', start)
    if stop < 0:
        raise ResponseParseError(f"attribute {name!r} is not terminated")
    try:
        return int(text[start:stop])
    except ValueError as exc:
        raise ResponseParseError(f"attribute {name!r} is not an integer: {text[start:stop]!r}") from exc


def extract_total_and_pages(text: str) -> Tuple[int, int]:
    # Substring scan; only two scalars are needed from the payload.
    return _extract_attribute(text, "total"), _extract_attribute(text, "pages")


def parse_retry_after_seconds(value: Optional[str]) -> float:
    if not value:
        return 0.0
    value = value.strip()
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date values fall back to the regular retry backoff.
        return 0.0


@dataclass
class SearchResponse:
    text: str
    total: int
    pages: int


@dataclass
class CallStats:
    """Process-wide remote call tallies, for reporting only."""

    succeeded: int = 0
    failed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self) -> None:
        with self._lock:
            self.succeeded += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failed += 1

    @property
    def total(self) -> int:
        return self.succeeded + self.failed


class RequestPacer:
    """Enforces a minimum delay between successive request issuances."""

    def __init__(
        self,
        interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval_seconds = max(0.0, interval_seconds)
        self.clock = clock
        self.sleep = sleep
        self.next_request_at = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        """Block until the next issuance slot and reserve it."""
        with self._lock:
            if self.interval_seconds > 0:
                now = self.clock()
                if now < self.next_request_at:
                    self.sleep(self.next_request_at - now)
            self.next_request_at = self.clock() + self.interval_seconds

    def pause(self) -> None:
        if self.interval_seconds > 0:
            self.sleep(self.interval_seconds)


@dataclass
class ClientSettings:
    api_key: str
    service_url: str = SERVICE_URL
    timeout_seconds: int = 60
    max_retries: int = 3
    retry_sleep_seconds: float = 1.5
    request_interval_seconds: float = 2.5
    slots: int = DEFAULT_SLOTS
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None


class FlickrSearchClient:
    """Issues the fixed search query from one of several paced client slots.

    Every slot owns its own ``requests.Session`` and pacer so that
    concurrent page downloads do not serialize on each other.  ``call``
    never raises for remote trouble; it returns ``None`` and counts the
    failure in the shared ``CallStats``.
    """

    def __init__(
        self,
        settings: ClientSettings,
        stats: Optional[CallStats] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if settings.slots < 1:
            raise ValueError("at least one client slot is required")
        self.settings = settings
        self.stats = stats if stats is not None else CallStats()
        self.sleep = sleep
        self.sessions: List[requests.Session] = []
        self.pacers: List[RequestPacer] = []
        proxies = self._proxies()
        for _ in range(settings.slots):
            session = session_factory()
            if proxies:
                session.proxies.update(proxies)
            self.sessions.append(session)
            self.pacers.append(RequestPacer(settings.request_interval_seconds, clock=clock, sleep=sleep))

    def _proxies(self) -> Dict[str, str]:
        if not self.settings.proxy_host:
            return {}
        address = f"http://{self.settings.proxy_host}"
        if self.settings.proxy_port:
            address += f":{self.settings.proxy_port}"
        return {"http": address, "https": address}

    @property
    def slot_count(self) -> int:
        return len(self.sessions)

    def build_params(self, min_date: int, max_date: int, page: int, want_details: bool) -> Dict[str, object]:
        params: Dict[str, object] = {
            "method": METHOD_NAME,
            "api_key": self.settings.api_key,
            "accuracy": MIN_ACCURACY,
            "has_geo": "1",
            "media": "photos",
            "min_upload_date": str(min_date),
            "max_upload_date": str(max_date),
            "per_page": str(PAGE_SIZE),
            "page": page,
        }
        if want_details:
            params["extras"] = DETAIL_EXTRAS
        return params

    def _fetch_text(self, slot: int, params: Dict[str, object]) -> Optional[str]:
        session = self.sessions[slot]
        pacer = self.pacers[slot]
        max_retries = max(1, self.settings.max_retries)
        for attempt in range(1, max_retries + 1):
            try:
                pacer.wait()
                response = session.get(
                    self.settings.service_url,
                    params=params,
                    timeout=self.settings.timeout_seconds,
                )
                if response.status_code in RETRYABLE_STATUS and attempt < max_retries:
                    retry_after = parse_retry_after_seconds(response.headers.get("Retry-After"))
                    response.close()
                    self.sleep(max(self.settings.retry_sleep_seconds * attempt, retry_after))
                    continue
                response.raise_for_status()
                return response.text
            except requests.RequestException as exc:
                if attempt >= max_retries:
                    log_event("CALL_ERROR", slot=slot, page=params.get("page"), error=format_exception_message(exc))
                    return None
                self.sleep(self.settings.retry_sleep_seconds * attempt)
        return None

    def call(
        self,
        min_date: int,
        max_date: int,
        page: int = 1,
        want_details: bool = False,
        slot: int = 0,
    ) -> Optional[SearchResponse]:
        if not 0 <= slot < self.slot_count:
            raise ValueError(f"client slot {slot} out of range 0..{self.slot_count - 1}")
        params = self.build_params(min_date, max_date, page, want_details)
        text = self._fetch_text(slot, params)
        if text is None or len(text) < MIN_RESPONSE_CHARS:
            self.stats.record_failure()
            log_event("CALL_FAILED", min_date=min_date, max_date=max_date, page=page, reason="empty_or_short")
            return None
        try:
            total, pages = extract_total_and_pages(text)
        except ResponseParseError as exc:
            self.stats.record_failure()
            log_event("CALL_FAILED", min_date=min_date, max_date=max_date, page=page, reason=str(exc))
            return None
        self.stats.record_success()
        return SearchResponse(text=text, total=total, pages=pages)

    def close(self) -> None:
        for session in self.sessions:
            session.close()
