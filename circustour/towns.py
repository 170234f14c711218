"""
Town index: group-level status classification for the tour listing.

Given events already grouped by town, work out where the show is now,
where it goes next and what is coming up. Every comparison is done on
local calendar days in the site's timezone, so a performance at 10:00
today still counts as "today" when the page is built at 09:00.

Status rules, checked in order against each town's future dates:

  FINAL_DAY    today is the last performance day
  IN_TOWN_NOW  first day <= today < last day
  COMING_SOON  first day within coming_soon_days of today (inclusive)
  LATER        everything else still in the future

After that, exactly one town may be promoted to NEXT_STOP: the
earliest-starting town after the run(s) currently in town, or the
earliest future town when nothing is in town. Towns with no future
dates are dropped entirely.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Optional

from dateutil import parser as dateparser

from circustour.models import UNKNOWN_TOWN, TownRecord, TownStatus

DEFAULT_COMING_SOON_DAYS = 28

_STATUS_RANK = {
    TownStatus.FINAL_DAY: 0,
    TownStatus.IN_TOWN_NOW: 1,
    TownStatus.NEXT_STOP: 2,
    TownStatus.COMING_SOON: 2,
    TownStatus.LATER: 3,
}

_IN_TOWN = (TownStatus.FINAL_DAY, TownStatus.IN_TOWN_NOW)


def slugify_town(town: Any) -> str:
    text = str(town or "").strip().lower()
    text = text.replace("&", "and")
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")


def unique_town_slugs(records: Iterable[TownRecord]) -> dict[str, str]:
    """
    Map each town name to a slug that no other town in *records* uses.

    Suffixes are handed out in town-name order, not listing order, so a
    town keeps its URL when statuses or dates change between builds. The
    first name to claim a slug keeps it; later names that normalise to the
    same slug get -2, -3, ... appended.
    """
    slugs: dict[str, str] = {}
    taken: set[str] = set()
    for record in sorted(records, key=lambda r: r.town):
        base = record.town_slug or "town"
        slug = base
        n = 2
        while slug in taken:
            slug = f"{base}-{n}"
            n += 1
        taken.add(slug)
        slugs[record.town] = slug
    return slugs


def group_by_town(events: Iterable[Any]) -> dict[str, list]:
    """Bucket events by their town, keeping first-seen town order."""
    grouped: dict[str, list] = {}
    for event in events:
        town = _field(event, "town") or UNKNOWN_TOWN
        grouped.setdefault(town, []).append(event)
    return grouped


def _field(obj: Any, *names: str) -> Any:
    if isinstance(obj, Mapping):
        for name in names:
            if name in obj:
                return obj[name]
        return None
    for name in names:
        value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _parse_start(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return dateparser.isoparse(value.strip())
    except (ValueError, OverflowError):
        return None


def to_local(dt: datetime, tz: Optional[tzinfo]) -> datetime:
    """Convert *dt* to the site timezone. Raises OverflowError near datetime.min/max."""
    # Naive timestamps are taken to already be in local time
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz) if tz else dt.astimezone()
    return dt.astimezone(tz) if tz else dt.astimezone()


def _future_starts(events: Any, today: date, tz: Optional[tzinfo]) -> list[datetime]:
    if not isinstance(events, (list, tuple)):
        return []

    starts: list[datetime] = []
    for event in events:
        dates = _field(event, "dates")
        if not isinstance(dates, (list, tuple)):
            continue
        for d in dates:
            dt = _parse_start(_field(d, "start", "startISO"))
            if dt is None:
                continue
            try:
                local = to_local(dt, tz)
            except (OverflowError, ValueError, OSError):
                continue
            if local.date() >= today:
                starts.append(local)
    return starts


def _base_status(start: datetime, end: datetime, today: date, coming_soon_limit: date) -> Optional[TownStatus]:
    start_day, end_day = start.date(), end.date()
    if today > end_day:
        return None
    if today == end_day:
        return TownStatus.FINAL_DAY
    if start_day <= today < end_day:
        return TownStatus.IN_TOWN_NOW
    if start_day <= coming_soon_limit:
        return TownStatus.COMING_SOON
    return TownStatus.LATER


def _pick_next_stop(towns: list[dict], today: date) -> Optional[dict]:
    in_town = [t for t in towns if t["status"] in _IN_TOWN]
    if in_town:
        latest_end = max(t["end"] for t in in_town)
        candidates = [
            t for t in towns
            if t["status"] not in _IN_TOWN and t["start"] > latest_end
        ]
    else:
        candidates = [t for t in towns if t["start"].date() > today]

    if not candidates:
        return None
    # min() keeps the first of equal starts, i.e. input order wins ties
    return min(candidates, key=lambda t: t["start"])


def build_town_index(
    grouped_events: Mapping[str, Any],
    coming_soon_days: int = DEFAULT_COMING_SOON_DAYS,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> list[TownRecord]:
    """
    Classify and order towns for the tour listing.

    Args:
        grouped_events: town name -> list of EventRecord (or plain dicts
                        with a "dates" list of {"start"/"startISO": ...}).
        coming_soon_days: Size of the coming-soon window in days. A town
                          starting exactly this many days out still counts.
        today: The local calendar day to classify against. Defaults to
               today in *tz*.
        tz: Site timezone. Defaults to the system local timezone.

    Bad records (missing dates, unparseable timestamps) count as having no
    dates; this function never raises on malformed event data.
    """
    if today is None:
        today = datetime.now(tz).date()
    try:
        coming_soon_limit = today + timedelta(days=max(int(coming_soon_days or 0), 0))
    except OverflowError:
        coming_soon_limit = date.max

    towns: list[dict] = []
    for town, town_events in grouped_events.items():
        starts = _future_starts(town_events, today, tz)
        if not starts:
            continue

        start, end = min(starts), max(starts)
        status = _base_status(start, end, today, coming_soon_limit)
        if status is None:
            continue

        towns.append({
            "town": town,
            "start": start,
            "end": end,
            "status": status,
            "events": town_events,
        })

    next_stop = _pick_next_stop(towns, today)
    if next_stop is not None:
        next_stop["status"] = TownStatus.NEXT_STOP

    towns.sort(key=lambda t: (_STATUS_RANK[t["status"]], t["start"]))

    return [
        TownRecord(
            town=t["town"],
            town_slug=slugify_town(t["town"]),
            start_date=t["start"],
            end_date=t["end"],
            status=t["status"],
            events=t["events"],
        )
        for t in towns
    ]


def current_town(records: Iterable[TownRecord]) -> Optional[TownRecord]:
    """Return the town the show is in today, if any."""
    for record in records:
        if record.status in _IN_TOWN:
            return record
    return None
