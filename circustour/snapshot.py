"""
Latest-fetch snapshot.

`ct fetch` writes the grouped events it pulled from TicketSource to a
single JSON file so `ct generate` can rebuild the site without hitting
the API again. Each fetch overwrites the file; nothing older is kept.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dateutil import parser as dateparser

from circustour.models import UNKNOWN_TOWN, EventDate, EventRecord, VenueInfo


def save(path: Path, grouped: dict[str, list[EventRecord]], fetched_at: Optional[datetime] = None) -> None:
    fetched_at = fetched_at or datetime.now(timezone.utc)
    payload = {
        "fetchedAt": fetched_at.isoformat(),
        "towns": {town: [e.to_dict() for e in events] for town, events in grouped.items()},
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def load(path: Path) -> tuple[dict[str, list[EventRecord]], Optional[datetime]]:
    """Return (grouped events, fetched_at). Raises FileNotFoundError if missing."""
    payload = json.loads(path.read_text(encoding="utf-8"))

    fetched_at = None
    if payload.get("fetchedAt"):
        try:
            fetched_at = dateparser.isoparse(payload["fetchedAt"])
        except ValueError:
            fetched_at = None

    grouped: dict[str, list[EventRecord]] = {}
    for town, events in (payload.get("towns") or {}).items():
        if not isinstance(events, list):
            continue
        grouped[town] = [event_from_dict(e, town) for e in events if isinstance(e, dict)]
    return grouped, fetched_at


def event_from_dict(data: dict, town: str = UNKNOWN_TOWN) -> EventRecord:
    venue = data.get("venue") or {}
    dates: list[EventDate] = []
    for d in data.get("dates") or []:
        if not isinstance(d, dict):
            continue
        try:
            start = dateparser.isoparse(d.get("startISO") or "")
        except (ValueError, TypeError, OverflowError):
            continue
        dates.append(EventDate(start=start, book_now_url=d.get("bookNowLink") or ""))

    return EventRecord(
        event_name=data.get("eventName") or "",
        description=data.get("description") or "",
        thumbnail_url=data.get("thumbnail") or "",
        town=data.get("town") or town,
        dates=dates,
        venue=VenueInfo(
            name=venue.get("name", ""),
            address=list(venue.get("address") or []),
            town=venue.get("town", ""),
            county=venue.get("county", ""),
            postcode=venue.get("postcode", ""),
            country=venue.get("country", ""),
        ),
        reference=data.get("reference"),
    )
