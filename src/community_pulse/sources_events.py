from __future__ import annotations

import datetime as dt
import json

from bs4 import BeautifulSoup

from .http_client import http_get
from .sources_base import HttpSettings

ONLINE_MODE = "https://schema.org/OnlineEventAttendanceMode"


def parse_json_ld(html: str) -> list[dict]:
    """Every JSON-LD object on the page; array blocks are flattened and invalid blocks skipped."""
    soup = BeautifulSoup(html, "html.parser")
    out: list[dict] = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(tag.string or tag.get_text() or "")
        except json.JSONDecodeError:
            continue
        items = data if isinstance(data, list) else [data]
        out.extend(i for i in items if isinstance(i, dict))
    return out


def _address_parts(address: object) -> tuple[str, str]:
    if isinstance(address, str):
        parts = [p.strip() for p in address.split(",")]
        return parts[0] if parts else "", parts[-1] if parts else ""
    if not isinstance(address, dict):
        return "", ""
    city = str(address.get("addressLocality") or "")
    country = address.get("addressCountry")
    if isinstance(country, dict):
        country = country.get("name")
    return city, str(country or "")


def parse_event(schema: dict) -> dict[str, object] | None:
    if schema.get("@type") != "Event":
        return None
    location = schema.get("location") if isinstance(schema.get("location"), dict) else {}
    address = location.get("address") or {}
    city, country = _address_parts(address)

    loc_name = str(location.get("name") or "")
    is_online = (
        location.get("@type") == "VirtualLocation"
        or schema.get("eventAttendanceMode") == ONLINE_MODE
        or "online" in loc_name.lower()
        or "virtual" in loc_name.lower()
    )

    coordinates = None
    geo = location.get("geo") if isinstance(location.get("geo"), dict) else {}
    if geo.get("latitude") and geo.get("longitude"):
        try:
            coordinates = {"lat": float(geo["latitude"]), "lng": float(geo["longitude"])}
        except (TypeError, ValueError):
            coordinates = None

    url = str(schema.get("url") or "")
    name = str(schema.get("name") or "")
    event_id = url.rstrip("/").split("/")[-1] if url else "-".join(name.lower().split())

    return {
        "id": event_id,
        "name": name or "Untitled Event",
        "description": schema.get("description"),
        "startDate": schema.get("startDate"),
        "endDate": schema.get("endDate"),
        "url": url,
        "location": {
            "name": loc_name or ("Online" if is_online else "TBA"),
            "address": address if isinstance(address, str) else (address.get("streetAddress") if isinstance(address, dict) else None),
            "city": city,
            "country": country,
            "coordinates": coordinates,
        },
        "isOnline": is_online,
        "registrations": 0,
    }


def _events_in(node: dict) -> list[dict]:
    if node.get("@type") == "Event":
        return [node]
    if node.get("@type") == "Organization" and isinstance(node.get("events"), list):
        return [e for e in node["events"] if isinstance(e, dict)]
    return []


def extract_events(html: str) -> list[dict[str, object]]:
    """Events from direct Event blocks, Organization.events arrays and @graph wrappers."""
    schemas: list[dict] = []
    for block in parse_json_ld(html):
        if isinstance(block.get("@graph"), list) and block.get("@type") not in ("Event", "Organization"):
            for item in block["@graph"]:
                if isinstance(item, dict):
                    schemas.extend(_events_in(item))
        else:
            schemas.extend(_events_in(block))
    return [e for e in (parse_event(s) for s in schemas) if e is not None]


def _start(event: dict) -> dt.datetime | None:
    s = str(event.get("startDate") or "")
    if not s:
        return None
    try:
        d = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return d


def sort_events(events: list[dict], *, newest_first: bool) -> list[dict]:
    floor = dt.datetime.min.replace(tzinfo=dt.timezone.utc)
    return sorted(events, key=lambda e: _start(e) or floor, reverse=newest_first)


def fetch_events(*, calendar_url: str, period: str, http: HttpSettings) -> list[dict[str, object]]:
    sep = "&" if "?" in calendar_url else "?"
    url = f"{calendar_url}{sep}k=c&period=past" if period == "past" else f"{calendar_url}{sep}k=c"
    html = http_get(
        url,
        headers={"Accept": "text/html,application/xhtml+xml"},
        timeout_s=http.timeout_s,
        ca_bundle_path=http.ca_bundle_path,
        user_agent=http.user_agent,
    )
    return sort_events(extract_events(html), newest_first=period == "past")


def group_by_month(events: list[dict]) -> list[dict[str, object]]:
    by_month: dict[str, dict[str, int]] = {}
    for e in events:
        d = _start(e)
        if d is None:
            continue
        row = by_month.setdefault(d.strftime("%Y-%m"), {"count": 0, "registrations": 0})
        row["count"] += 1
        row["registrations"] += int(e.get("registrations") or 0)
    return [{"month": m, **v} for m, v in sorted(by_month.items())]


def group_by_country(events: list[dict]) -> list[dict[str, object]]:
    by_country: dict[str, dict[str, object]] = {}
    for e in events:
        if e.get("isOnline"):
            continue
        loc = e.get("location") or {}
        country = loc.get("country") or "Unknown"
        row = by_country.setdefault(country, {"country": country, "count": 0, "registrations": 0, "coordinates": None})
        row["count"] += 1
        row["registrations"] += int(e.get("registrations") or 0)
        if row["coordinates"] is None:
            row["coordinates"] = loc.get("coordinates")
    return sorted(by_country.values(), key=lambda r: -int(r["count"]))


def aggregate_locations(events: list[dict]) -> list[dict[str, object]]:
    # Venues within ~1km (2 decimal places) collapse into one map pin.
    pins: dict[str, dict[str, object]] = {}
    for e in events:
        loc = e.get("location") or {}
        coords = loc.get("coordinates")
        if e.get("isOnline") or not coords:
            continue
        key = f"{coords['lat']:.2f},{coords['lng']:.2f}"
        pin = pins.get(key)
        if pin is not None:
            pin["eventCount"] += 1
            pin["totalRegistrations"] += int(e.get("registrations") or 0)
            continue
        pins[key] = {
            "name": loc.get("name", ""),
            "city": loc.get("city") or "",
            "country": loc.get("country") or "",
            "lat": coords["lat"],
            "lng": coords["lng"],
            "eventCount": 1,
            "totalRegistrations": int(e.get("registrations") or 0),
        }
    return sorted(pins.values(), key=lambda p: -int(p["eventCount"]))


def event_stats(upcoming: list[dict], past: list[dict]) -> dict[str, object]:
    events = [*upcoming, *past]
    countries = {
        (e.get("location") or {}).get("country") for e in events if not e.get("isOnline")
    }
    countries.discard("")
    countries.discard(None)
    starts = sorted(d for d in (_start(e) for e in events) if d is not None)
    return {
        "totalEvents": len(events),
        "totalRegistrations": sum(int(e.get("registrations") or 0) for e in events),
        "upcomingCount": len(upcoming),
        "pastCount": len(past),
        "countriesCount": len(countries),
        "onlineCount": sum(1 for e in events if e.get("isOnline")),
        "firstEventDate": starts[0].astimezone(dt.timezone.utc).date().isoformat() if starts else "",
        "lastEventDate": starts[-1].astimezone(dt.timezone.utc).date().isoformat() if starts else "",
    }


def build_events_document(upcoming: list[dict], past: list[dict], *, last_updated: str) -> dict[str, object]:
    events = [*upcoming, *past]
    return {
        "lastUpdated": last_updated,
        "upcoming": upcoming,
        "past": past,
        "byMonth": group_by_month(events),
        "byCountry": group_by_country(events),
        "stats": event_stats(upcoming, past),
        "locations": aggregate_locations(events),
    }
