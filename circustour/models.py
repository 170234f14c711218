from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

UNKNOWN_TOWN = "Unknown Town"


class TownStatus(str, Enum):
    FINAL_DAY = "FINAL_DAY"
    IN_TOWN_NOW = "IN_TOWN_NOW"
    NEXT_STOP = "NEXT_STOP"
    COMING_SOON = "COMING_SOON"
    LATER = "LATER"


@dataclass(frozen=True)
class EventDate:
    start: datetime
    book_now_url: str = ""

    def to_dict(self) -> dict:
        return {"startISO": self.start.isoformat(), "bookNowLink": self.book_now_url}


@dataclass
class VenueInfo:
    name: str = ""
    address: list[str] = field(default_factory=list)   # street lines only
    town: str = ""
    county: str = ""
    postcode: str = ""
    country: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "address": list(self.address),
            "town": self.town,
            "county": self.county,
            "postcode": self.postcode,
            "country": self.country,
        }


@dataclass
class EventRecord:
    event_name: str
    town: str
    dates: list[EventDate] = field(default_factory=list)
    description: str = ""
    thumbnail_url: str = ""
    venue: VenueInfo = field(default_factory=VenueInfo)
    reference: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "eventName": self.event_name,
            "description": self.description,
            "thumbnail": self.thumbnail_url,
            "town": self.town,
            "reference": self.reference,
            "venue": self.venue.to_dict(),
            "dates": [d.to_dict() for d in self.dates],
        }


@dataclass(frozen=True)
class TownRecord:
    town: str
    town_slug: str
    start_date: datetime
    end_date: datetime
    status: TownStatus
    # Passed through untouched from the grouped input
    events: list[Any] = field(default_factory=list, compare=False)

    @property
    def start_date_iso(self) -> str:
        return self.start_date.isoformat()

    @property
    def end_date_iso(self) -> str:
        return self.end_date.isoformat()

    def to_dict(self) -> dict:
        return {
            "town": self.town,
            "townSlug": self.town_slug,
            "startDateISO": self.start_date_iso,
            "endDateISO": self.end_date_iso,
            "status": self.status.value,
            "events": [e.to_dict() if hasattr(e, "to_dict") else e for e in self.events],
        }
