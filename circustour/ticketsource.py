"""
TicketSource API client.

Endpoints used (all return {"data": [...], "links": {...}}):
  GET /events              paginated via links.next; each event carries
                           links.venues and links.dates URLs
  GET <event.links.venues> venue records; address.line_3 is the town
  GET <event.links.dates>  performance dates; attributes.start is ISO 8601,
                           links.book_now is the booking page

Venue and date lookups are fanned out per event across a small thread pool.
Transient failures (connection errors, 429, 5xx) are retried with
exponential backoff; anything else is raised as TicketSourceError.
"""

import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

import requests
from dateutil import parser as dateparser

import circustour.config as cfg_module
from circustour import __version__
from circustour.models import UNKNOWN_TOWN, EventDate, EventRecord, VenueInfo

_HEADERS = {"User-Agent": f"circustour-bot/{__version__}", "Accept": "application/json"}


class TicketSourceError(RuntimeError):
    pass


class ResponseCache:
    """In-memory response cache with a fixed TTL and an injectable clock."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Any) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Any, value: Any) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After", "")
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class TicketSourceClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.ticketsource.io",
        max_workers: int = 8,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        timeout: float = 15,
        cache: Optional[ResponseCache] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        country: str = "",
    ):
        if not api_key:
            raise TicketSourceError(
                "TicketSource API key required. Set TICKETSOURCE_API_KEY in the "
                "environment or the secrets file."
            )
        self.base_url = base_url.rstrip("/")
        self.max_workers = max(int(max_workers), 1)
        self.max_retries = max(int(max_retries), 1)
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.cache = cache
        self.country = country
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update(_HEADERS)
        self.session.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "TicketSourceClient":
        ts_cfg = cfg_module.get_ticketsource(cfg)
        kwargs.setdefault("cache", ResponseCache(ttl=float(ts_cfg["cache_ttl"])))
        return cls(
            api_key=cfg_module.get_api_key(cfg),
            base_url=ts_cfg["base_url"],
            max_workers=ts_cfg["max_workers"],
            max_retries=ts_cfg["max_retries"],
            backoff_factor=ts_cfg["backoff_factor"],
            timeout=ts_cfg["timeout"],
            country=cfg_module.get_site(cfg).get("country", ""),
            **kwargs,
        )

    # --- HTTP ---

    def get_json(self, url: str, params: Optional[dict] = None) -> dict:
        key = (url, tuple(sorted((params or {}).items())))
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        data = self._request_with_retry(url, params)
        if self.cache is not None:
            self.cache.set(key, data)
        return data

    def _request_with_retry(self, url: str, params: Optional[dict]) -> dict:
        last_error = ""
        for attempt in range(self.max_retries):
            delay = self.backoff_factor * (2 ** attempt)
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = str(exc)
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    retry_after = _retry_after(response) if response.status_code == 429 else None
                    if retry_after is not None:
                        delay = retry_after
                else:
                    try:
                        response.raise_for_status()
                    except requests.HTTPError as exc:
                        raise TicketSourceError(f"GET {url} failed: {exc}") from exc
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise TicketSourceError(f"GET {url} returned invalid JSON") from exc

            if attempt < self.max_retries - 1:
                print(f"  Retrying {url} in {delay:g}s ({last_error})", file=sys.stderr)
                self._sleep(delay)

        raise TicketSourceError(f"GET {url} failed after {self.max_retries} attempts ({last_error})")

    def _get_data(self, url: str) -> list[dict]:
        data = self.get_json(url).get("data", [])
        return data if isinstance(data, list) else []

    # --- Events ---

    def fetch_all_events(self, reference: Optional[str] = None) -> list[dict]:
        """
        Page through /events and return the raw event objects.

        When *reference* is given it is sent upstream and also matched
        case-insensitively against attributes.reference, since the API
        does not reliably filter on its own.
        """
        reference = reference.lower() if reference else None
        params = {"reference": reference} if reference else None

        events: list[dict] = []
        next_url: Optional[str] = f"{self.base_url}/events"
        while next_url:
            page = self.get_json(next_url, params)
            events.extend(page.get("data") or [])
            next_url = (page.get("links") or {}).get("next")
            params = None  # next links already carry the query string

        if reference:
            events = [
                e for e in events
                if str((e.get("attributes") or {}).get("reference") or "").lower() == reference
            ]
        return events

    def fetch_event_records(self, reference: Optional[str] = None) -> list[EventRecord]:
        """Fetch events plus their venues and dates, as EventRecords in upstream order."""
        events = self.fetch_all_events(reference)
        if not events:
            return []

        def links(event: dict, name: str) -> Optional[str]:
            return (event.get("links") or {}).get(name)

        def fetch(url: Optional[str]) -> list[dict]:
            return self._get_data(url) if url else []

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            venues = list(pool.map(fetch, [links(e, "venues") for e in events]))
            dates = list(pool.map(fetch, [links(e, "dates") for e in events]))

        return [
            parse_event(event, event_venues, event_dates, country=self.country)
            for event, event_venues, event_dates in zip(events, venues, dates)
        ]


# --- Parsing ---

def parse_venue(venue: dict, country: str = "") -> VenueInfo:
    attrs = venue.get("attributes") or {}
    address = attrs.get("address") or {}
    return VenueInfo(
        name=attrs.get("name") or "",
        address=[line for line in (address.get("line_1"), address.get("line_2")) if line],
        town=(address.get("line_3") or "").strip(),
        county=address.get("line_4") or "",
        postcode=address.get("postcode") or "",
        country=country,
    )


def parse_date(item: dict) -> Optional[EventDate]:
    attrs = item.get("attributes") or {}
    if attrs.get("cancelled"):
        return None
    start_raw = attrs.get("start")
    try:
        start = dateparser.isoparse(start_raw)
    except (ValueError, TypeError, OverflowError):
        print(f"  Skipping date {item.get('id', '?')}: unparseable start {start_raw!r}", file=sys.stderr)
        return None
    return EventDate(start=start, book_now_url=(item.get("links") or {}).get("book_now") or "")


def parse_event(event: dict, venues: list[dict], dates: list[dict], country: str = "") -> EventRecord:
    attrs = event.get("attributes") or {}
    venue = parse_venue(venues[0], country) if venues else VenueInfo(country=country)
    thumbnail = next(
        (img.get("src", "") for img in attrs.get("images") or [] if img.get("type") == "thumbnail"),
        "",
    )
    parsed_dates = [d for d in (parse_date(item) for item in dates) if d is not None]
    parsed_dates.sort(key=lambda d: d.start)

    return EventRecord(
        event_name=attrs.get("name") or "",
        description=attrs.get("description") or "",
        thumbnail_url=thumbnail,
        town=venue.town or UNKNOWN_TOWN,
        dates=parsed_dates,
        venue=venue,
        reference=attrs.get("reference"),
    )
