import json
import shutil
from datetime import date, datetime, tzinfo
from pathlib import Path
from typing import Optional

from bs4 import BeautifulSoup
from jinja2 import Environment, FileSystemLoader, select_autoescape

import circustour.config as cfg_module
from circustour.models import EventDate, EventRecord, TownRecord, TownStatus
from circustour.towns import DEFAULT_COMING_SOON_DAYS, build_town_index, current_town, to_local, unique_town_slugs

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
TOWN_PATH_PREFIX = "circus-in"

STATUS_LABELS = {
    TownStatus.FINAL_DAY: "Final day",
    TownStatus.IN_TOWN_NOW: "In town now",
    TownStatus.NEXT_STOP: "Next stop",
    TownStatus.COMING_SOON: "Coming soon",
    TownStatus.LATER: "Later in the tour",
}


def html_to_text(html: str) -> str:
    """Flatten an upstream HTML description into a single line of text."""
    if not html:
        return ""
    return BeautifulSoup(html, "lxml").get_text(" ", strip=True)


def _summary(text: str, limit: int = 160) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rsplit(" ", 1)[0].rstrip(",.;:") + "…"


def town_url(base_url: str, slug: str) -> str:
    return f"{base_url}/{TOWN_PATH_PREFIX}/{slug}/"


def _upcoming(dates: list[EventDate], today: date, tz: Optional[tzinfo]) -> list[EventDate]:
    """Future performances with their start in site-local time, soonest first."""
    upcoming = []
    for d in dates:
        try:
            start = to_local(d.start, tz)
        except (OverflowError, ValueError, OSError):
            continue
        if start.date() >= today:
            upcoming.append(EventDate(start=start, book_now_url=d.book_now_url))
    return sorted(upcoming, key=lambda d: d.start)


def _event_to_dict(event: EventRecord, today: date, tz: Optional[tzinfo]) -> dict:
    """Serialise an EventRecord to the plain dict the town template renders."""
    dates = _upcoming(event.dates, today, tz)
    return {
        "name": event.event_name,
        "description": html_to_text(event.description),
        "thumbnail": event.thumbnail_url,
        "venue": event.venue,
        "from_date": dates[0].start.strftime("%d/%m/%Y") if dates else None,
        "to_date": dates[-1].start.strftime("%d/%m/%Y") if dates else None,
        "dates": [
            {
                "date": d.start.strftime("%d/%m/%Y"),
                "day": d.start.strftime("%A"),
                "time": d.start.strftime("%H:%M"),
                "book_now": d.book_now_url,
            }
            for d in dates
        ],
    }


def event_json_ld(event: EventRecord, page_url: str, today: date, tz: Optional[tzinfo]) -> list[dict]:
    """Return one schema.org Event object per upcoming performance of *event*."""
    venue = event.venue
    place = {
        "@type": "Place",
        "name": venue.name or event.town,
        "address": {
            "@type": "PostalAddress",
            "streetAddress": ", ".join(venue.address),
            "addressLocality": venue.town or event.town,
            "addressRegion": venue.county,
            "postalCode": venue.postcode,
            "addressCountry": venue.country,
        },
    }
    description = _summary(html_to_text(event.description), limit=300)

    items = []
    for d in _upcoming(event.dates, today, tz):
        item = {
            "@context": "https://schema.org",
            "@type": "Event",
            "name": event.event_name,
            "startDate": d.start.isoformat(),
            "eventStatus": "https://schema.org/EventScheduled",
            "eventAttendanceMode": "https://schema.org/OfflineEventAttendanceMode",
            "location": place,
            "url": page_url,
        }
        if description:
            item["description"] = description
        if event.thumbnail_url:
            item["image"] = [event.thumbnail_url]
        if d.book_now_url:
            item["offers"] = {
                "@type": "Offer",
                "url": d.book_now_url,
                "availability": "https://schema.org/InStock",
            }
        items.append(item)
    return items


def _json_for_script(data) -> str:
    # "</" inside a <script> block would end it early
    return json.dumps(data, ensure_ascii=False, indent=2).replace("</", "<\\/")


def _town_to_dict(record: TownRecord, slug: str, base_url: str) -> dict:
    return {
        "town": record.town,
        "slug": slug,
        "url": town_url(base_url, slug),
        "status": record.status.value,
        "status_label": STATUS_LABELS[record.status],
        "start": record.start_date.strftime("%d/%m/%Y"),
        "end": record.end_date.strftime("%d/%m/%Y"),
        "event_count": len(record.events),
    }


def build_site(
    grouped: dict[str, list[EventRecord]],
    cfg: dict,
    output_dir: Path,
    today: Optional[date] = None,
    fetched_at: Optional[datetime] = None,
) -> list[TownRecord]:
    """Render the whole site into *output_dir* and return the town index it used."""
    site_cfg = cfg_module.get_site(cfg)
    base_url = site_cfg.get("base_url", "").rstrip("/")
    site_title = site_cfg.get("title", "The Circus Is Coming To Town")
    coming_soon_days = site_cfg.get("coming_soon_days", DEFAULT_COMING_SOON_DAYS)
    tz = cfg_module.get_timezone(cfg)

    today = today or datetime.now(tz).date()

    towns = build_town_index(grouped, coming_soon_days=coming_soon_days, today=today, tz=tz)
    slugs = unique_town_slugs(towns)

    # Prepare output directory
    output_dir.mkdir(parents=True, exist_ok=True)
    towns_dst = output_dir / TOWN_PATH_PREFIX
    if towns_dst.exists():
        shutil.rmtree(towns_dst)

    # Copy static assets
    static_src = Path(site_cfg.get("static_dir", "static"))
    static_dst = output_dir / "static"
    if static_src.exists():
        if static_dst.exists():
            shutil.rmtree(static_dst)
        shutil.copytree(static_src, static_dst)

    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.globals["base_url"] = base_url
    env.globals["site_title"] = site_title
    env.globals["generated_date"] = today.isoformat()

    town_list = [_town_to_dict(t, slugs[t.town], base_url) for t in towns]
    now_town = current_town(towns)

    _render(env, "index.html", output_dir / "index.html", {
        "towns": town_list,
        "now_town": _town_to_dict(now_town, slugs[now_town.town], base_url) if now_town else None,
        "page_title": site_title,
    })

    for record, town_info in zip(towns, town_list):
        page_url = town_info["url"]
        json_ld = []
        for event in record.events:
            json_ld.extend(event_json_ld(event, page_url, today, tz))

        dest = towns_dst / town_info["slug"] / "index.html"
        dest.parent.mkdir(parents=True, exist_ok=True)
        _render(env, "town.html", dest, {
            "town": town_info,
            "events": [_event_to_dict(e, today, tz) for e in record.events],
            "json_ld": _json_for_script(json_ld),
            "page_title": f"Circus in {record.town} | {site_title}",
            "meta_description": _summary(" ".join(html_to_text(e.description) for e in record.events)),
        })

    # JSON API files
    api_dir = output_dir / "api"
    api_dir.mkdir(exist_ok=True)
    (api_dir / "events.json").write_text(
        json.dumps({town: [e.to_dict() for e in events] for town, events in grouped.items()},
                   ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    (api_dir / "towns.json").write_text(
        json.dumps({
            "generatedDate": today.isoformat(),
            "fetchedAt": fetched_at.isoformat() if fetched_at else None,
            "towns": [{**t.to_dict(), "townSlug": slugs[t.town]} for t in towns],
        }, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )

    # SEO
    page_urls = [f"{base_url}/"] + [t["url"] for t in town_list]
    _render(env, "sitemap.xml", output_dir / "sitemap.xml", {"urls": page_urls})
    _render(env, "robots.txt", output_dir / "robots.txt", {})

    return towns


def _render(env: Environment, template_name: str, dest: Path, context: dict) -> None:
    template = env.get_template(template_name)
    dest.write_text(template.render(**context), encoding="utf-8")
