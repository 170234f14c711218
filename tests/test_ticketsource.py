"""
TicketSource client tests.

HTTP is mocked with the `responses` library; the client's sleep function is
swapped for a list append so backoff delays can be asserted without waiting.
"""

from datetime import datetime, timezone

import pytest
import requests
import responses
from responses import matchers

from circustour.ticketsource import (
    ResponseCache,
    TicketSourceClient,
    TicketSourceError,
    parse_date,
    parse_event,
)

BASE = "https://api.ticketsource.test"


def _client(sleeps=None, **kwargs):
    return TicketSourceClient(
        "skl-test",
        base_url=BASE,
        max_workers=2,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
        **kwargs,
    )


def _event(event_id, name, reference="general"):
    return {
        "id": event_id,
        "type": "event",
        "attributes": {
            "name": name,
            "description": "<p>Clowns, acrobats and more</p>",
            "reference": reference,
            "images": [
                {"type": "banner", "src": f"https://img.test/{event_id}-banner.jpg"},
                {"type": "thumbnail", "src": f"https://img.test/{event_id}-thumb.jpg"},
            ],
        },
        "links": {
            "venues": f"{BASE}/events/{event_id}/venues",
            "dates": f"{BASE}/events/{event_id}/dates",
        },
    }


def _venue(town, name="Recreation Ground"):
    return {
        "id": "ven-1",
        "type": "venue",
        "attributes": {
            "name": name,
            "address": {
                "line_1": "Station Road",
                "line_2": "",
                "line_3": town,
                "line_4": "Northamptonshire",
                "postcode": "PE8 4AA",
            },
        },
    }


def _date(date_id, start, cancelled=False):
    return {
        "id": date_id,
        "type": "date",
        "attributes": {"start": start, "cancelled": cancelled},
        "links": {"book_now": f"https://www.ticketsource.co.uk/booking/{date_id}"},
    }


@responses.activate
def test_fetch_all_events_follows_pagination():
    responses.add(responses.GET, f"{BASE}/events", json={
        "data": [_event("evt-1", "Circus One")],
        "links": {"next": f"{BASE}/events/page/2"},
    })
    responses.add(responses.GET, f"{BASE}/events/page/2", json={
        "data": [_event("evt-2", "Circus Two")],
        "links": {"next": None},
    })

    events = _client().fetch_all_events()

    assert [e["id"] for e in events] == ["evt-1", "evt-2"]
    assert responses.calls[0].request.headers["Authorization"] == "Bearer skl-test"


@responses.activate
def test_fetch_all_events_filters_reference_case_insensitively():
    responses.add(
        responses.GET, f"{BASE}/events",
        match=[matchers.query_param_matcher({"reference": "halloween"})],
        json={"data": [
            _event("evt-1", "Spooky Circus", reference="Halloween"),
            _event("evt-2", "Summer Circus", reference="Summer"),
            _event("evt-3", "No Reference", reference=None),
        ], "links": {}},
    )

    events = _client().fetch_all_events(reference="HALLOWEEN")

    assert [e["id"] for e in events] == ["evt-1"]


@responses.activate
def test_fetch_event_records_merges_venues_and_dates():
    responses.add(responses.GET, f"{BASE}/events", json={
        "data": [_event("evt-1", "Circus Oundle"), _event("evt-2", "Circus Nowhere")],
        "links": {},
    })
    responses.add(responses.GET, f"{BASE}/events/evt-1/venues", json={"data": [_venue("Oundle")]})
    responses.add(responses.GET, f"{BASE}/events/evt-1/dates", json={"data": [
        _date("d-2", "2024-01-02T19:00:00+00:00"),
        _date("d-1", "2024-01-01T14:00:00+00:00"),
        _date("d-3", "2024-01-03T19:00:00+00:00", cancelled=True),
        _date("d-4", "not a date"),
    ]})
    responses.add(responses.GET, f"{BASE}/events/evt-2/venues", json={"data": []})
    responses.add(responses.GET, f"{BASE}/events/evt-2/dates", json={"data": []})

    records = _client(country="GB").fetch_event_records()

    assert [r.event_name for r in records] == ["Circus Oundle", "Circus Nowhere"]
    oundle, nowhere = records

    assert oundle.town == "Oundle"
    assert oundle.reference == "general"
    assert oundle.thumbnail_url == "https://img.test/evt-1-thumb.jpg"
    assert oundle.venue.name == "Recreation Ground"
    assert oundle.venue.address == ["Station Road"]
    assert oundle.venue.county == "Northamptonshire"
    assert oundle.venue.postcode == "PE8 4AA"
    assert oundle.venue.country == "GB"
    assert [d.start for d in oundle.dates] == [
        datetime(2024, 1, 1, 14, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 2, 19, 0, tzinfo=timezone.utc),
    ]
    assert oundle.dates[0].book_now_url == "https://www.ticketsource.co.uk/booking/d-1"

    assert nowhere.town == "Unknown Town"
    assert nowhere.dates == []


@responses.activate
def test_no_events_makes_no_further_requests():
    responses.add(responses.GET, f"{BASE}/events", json={"data": [], "links": {}})

    assert _client().fetch_event_records() == []
    assert len(responses.calls) == 1


@responses.activate
def test_retries_server_error_with_backoff():
    responses.add(responses.GET, f"{BASE}/events", status=502)
    responses.add(responses.GET, f"{BASE}/events", json={"data": [_event("evt-1", "Circus")], "links": {}})
    sleeps = []

    events = _client(sleeps).fetch_all_events()

    assert len(events) == 1
    assert len(responses.calls) == 2
    assert sleeps == [0.5]


@responses.activate
def test_rate_limit_honours_retry_after():
    responses.add(responses.GET, f"{BASE}/events", status=429, headers={"Retry-After": "3"})
    responses.add(responses.GET, f"{BASE}/events", json={"data": [], "links": {}})
    sleeps = []

    _client(sleeps).fetch_all_events()

    assert sleeps == [3.0]


@responses.activate
def test_retries_connection_errors():
    responses.add(responses.GET, f"{BASE}/events", body=requests.ConnectionError("connection reset"))
    responses.add(responses.GET, f"{BASE}/events", json={"data": [], "links": {}})

    assert _client().fetch_all_events() == []
    assert len(responses.calls) == 2


@responses.activate
def test_gives_up_after_max_retries():
    for _ in range(3):
        responses.add(responses.GET, f"{BASE}/events", status=503)
    sleeps = []

    with pytest.raises(TicketSourceError, match="after 3 attempts"):
        _client(sleeps).fetch_all_events()

    assert len(responses.calls) == 3
    assert sleeps == [0.5, 1.0]


@responses.activate
def test_client_error_is_not_retried():
    responses.add(responses.GET, f"{BASE}/events", status=404)

    with pytest.raises(TicketSourceError):
        _client().fetch_all_events()

    assert len(responses.calls) == 1


def test_missing_api_key_is_an_error():
    with pytest.raises(TicketSourceError, match="API key"):
        TicketSourceClient("")


@responses.activate
def test_responses_are_cached_until_ttl_expires():
    now = [1000.0]
    cache = ResponseCache(ttl=60, clock=lambda: now[0])
    responses.add(responses.GET, f"{BASE}/events/evt-1/dates", json={"data": []})
    client = _client(cache=cache)

    client.get_json(f"{BASE}/events/evt-1/dates")
    client.get_json(f"{BASE}/events/evt-1/dates")
    assert len(responses.calls) == 1

    now[0] += 61
    client.get_json(f"{BASE}/events/evt-1/dates")
    assert len(responses.calls) == 2


def test_response_cache_expiry_and_clear():
    now = [0.0]
    cache = ResponseCache(ttl=10, clock=lambda: now[0])
    cache.set("k", {"data": []})

    now[0] = 9.9
    assert cache.get("k") == {"data": []}
    now[0] = 10.0
    assert cache.get("k") is None

    cache.set("k", {"data": [1]})
    cache.clear()
    assert len(cache) == 0


def test_zero_ttl_disables_cache():
    cache = ResponseCache(ttl=0)
    cache.set("k", {"data": []})
    assert cache.get("k") is None


def test_from_config_reads_settings():
    cfg = {
        "secrets": {"ticketsource_api_key": "skl-from-config"},
        "site": {"country": "GB"},
        "ticketsource": {"base_url": BASE + "/", "max_workers": 3, "max_retries": 5, "cache_ttl": 30},
    }
    client = TicketSourceClient.from_config(cfg)

    assert client.base_url == BASE
    assert client.max_workers == 3
    assert client.max_retries == 5
    assert client.cache.ttl == 30
    assert client.country == "GB"
    assert client.session.headers["Authorization"] == "Bearer skl-from-config"


def test_parse_date_handles_zulu_and_rejects_garbage():
    parsed = parse_date(_date("d-1", "2024-06-01T18:30:00Z"))
    assert parsed.start == datetime(2024, 6, 1, 18, 30, tzinfo=timezone.utc)

    assert parse_date({"attributes": {}}) is None
    assert parse_date(_date("d-2", "31/06/2024")) is None


def test_parse_event_without_thumbnail_or_venue():
    event = _event("evt-9", "Bare Circus")
    event["attributes"]["images"] = []

    record = parse_event(event, venues=[], dates=[])

    assert record.thumbnail_url == ""
    assert record.town == "Unknown Town"
    assert record.description == "<p>Clowns, acrobats and more</p>"
