from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from typing import Any

import httpx

from observability.logging import get_logger

logger = get_logger(__name__)

_NOMINATIM_BASE = "https://nominatim.openstreetmap.org"
_USER_AGENT = "carely-agent/1.0"

_MEDICAL_KEYWORDS = (
    "clinic",
    "health",
    "medical",
    "hospital",
    "urgent care",
    "doctor",
    "physician",
    "pharmacy",
    "emergency",
    "dental",
    "dentist",
    "pediatric",
    "laboratory",
)

_MEDICAL_TYPES = {
    "hospital": "Hospital",
    "clinic": "Clinic",
    "doctors": "Doctor's Office",
    "pharmacy": "Pharmacy",
    "dentist": "Dentist",
    "laboratory": "Laboratory",
    "medical_laboratory": "Laboratory",
    "healthcare": "Healthcare Facility",
}


def _safe_float(value: Any) -> float | None:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_medical_candidate(*parts: str) -> bool:
    text = " ".join(part for part in parts if part).lower()
    return any(keyword in text for keyword in _MEDICAL_KEYWORDS)


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    radius_km = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    km = radius_km * c
    return km * 0.621371


def _viewbox(latitude: float, longitude: float, radius_miles: float) -> str:
    lat_delta = radius_miles / 69.0
    lon_delta = radius_miles / max(69.0 * math.cos(math.radians(latitude)), 1.0)
    return f"{longitude - lon_delta},{latitude + lat_delta},{longitude + lon_delta},{latitude - lat_delta}"


@dataclass
class SearchHit:
    name: str
    address: str
    facility_type: str
    url: str | None
    phone: str | None
    hours: str | None
    city: str
    lat: float | None = None
    lon: float | None = None


class FacilitySearch:
    """Nearby healthcare lookup against OpenStreetMap Nominatim.

    Results are restricted to a bounding box around the patient's coordinates and sorted
    by great-circle distance. When live search is disabled or finds nothing usable, a
    static list is returned and labelled as such.
    """

    def __init__(self) -> None:
        self.disable_external = os.getenv("CARELY_DISABLE_EXTERNAL_WEB", "false").lower() == "true"
        self.timeout = float(os.getenv("CARELY_WEB_TIMEOUT_SECONDS", "5.0"))

    def search(
        self,
        *,
        latitude: float,
        longitude: float,
        search_query: str,
        radius_miles: float = 10.0,
        limit: int = 5,
    ) -> dict[str, Any]:
        if self.disable_external:
            return self._fallback_result(search_query=search_query, reason="external_web_disabled")

        hits = self._nominatim_search(
            query=search_query,
            latitude=latitude,
            longitude=longitude,
            radius_miles=radius_miles,
            limit=20,
        )
        facilities: list[dict[str, Any]] = []
        for hit in hits:
            distance_miles: float | None = None
            if hit.lat is not None and hit.lon is not None:
                distance_miles = _haversine_miles(latitude, longitude, hit.lat, hit.lon)
                if distance_miles > radius_miles * 1.5:
                    continue
            facilities.append(
                {
                    "name": hit.name,
                    "type": hit.facility_type,
                    "address": hit.address,
                    "city": hit.city,
                    "phone": hit.phone,
                    "rating": None,
                    "hours": hit.hours,
                    "description": None,
                    "distanceMiles": round(distance_miles, 2) if distance_miles is not None else None,
                    "url": hit.url,
                }
            )

        if not facilities:
            return self._fallback_result(search_query=search_query, reason="no_live_results")

        facilities.sort(key=lambda row: row["distanceMiles"] if row["distanceMiles"] is not None else math.inf)
        city = next((row["city"] for row in facilities if row["city"]), "")
        return {
            "success": True,
            "facilities": facilities[:limit],
            "searchContext": f"Showing {search_query} near {city}" if city else f"Showing {search_query} near you",
            "searchQuery": search_query,
            "usingLiveData": True,
            "fallbackReason": None,
        }

    def _nominatim_search(
        self,
        *,
        query: str,
        latitude: float,
        longitude: float,
        radius_miles: float,
        limit: int,
    ) -> list[SearchHit]:
        try:
            response = httpx.get(
                f"{_NOMINATIM_BASE}/search",
                params={
                    "q": query,
                    "format": "jsonv2",
                    "addressdetails": 1,
                    "extratags": 1,
                    "bounded": 1,
                    "viewbox": _viewbox(latitude, longitude, radius_miles),
                    "limit": max(1, min(limit, 40)),
                },
                headers={"User-Agent": _USER_AGENT},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("facility_search_failed", error=str(exc))
            return []

        rows = response.json() if response.content else []
        hits: list[SearchHit] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            row_type = str(row.get("type") or "")
            display_name = _normalize_whitespace(str(row.get("display_name") or ""))
            name = _normalize_whitespace(str(row.get("name") or "")) or display_name.split(",")[0]
            if row_type not in _MEDICAL_TYPES and not _is_medical_candidate(name, row_type):
                continue
            extratags = row.get("extratags") if isinstance(row.get("extratags"), dict) else {}
            address = row.get("address") if isinstance(row.get("address"), dict) else {}
            hits.append(
                SearchHit(
                    name=name or "Healthcare facility",
                    address=display_name,
                    facility_type=_MEDICAL_TYPES.get(row_type, "Healthcare Facility"),
                    url=str(extratags.get("website") or "").strip() or None,
                    phone=str(extratags.get("phone") or "").strip() or None,
                    hours=str(extratags.get("opening_hours") or "").strip() or None,
                    city=str(address.get("city") or address.get("town") or address.get("village") or ""),
                    lat=_safe_float(row.get("lat")),
                    lon=_safe_float(row.get("lon")),
                )
            )
        return hits

    def _fallback_result(self, *, search_query: str, reason: str) -> dict[str, Any]:
        base_options = [
            ("Nearest Emergency Department", "Hospital", "Call 911 for emergencies", "24/7"),
            ("Urgent Care Center", "Urgent Care", "Search your maps app for 'urgent care'", "Typically 8am-8pm"),
            ("Retail Pharmacy Clinic", "Pharmacy", "Most pharmacy chains offer walk-in clinics", None),
        ]
        facilities = [
            {
                "name": name,
                "type": facility_type,
                "address": address,
                "city": "",
                "phone": "911" if facility_type == "Hospital" else None,
                "rating": None,
                "hours": hours,
                "description": "General guidance; live search results were unavailable.",
                "distanceMiles": None,
                "url": None,
            }
            for name, facility_type, address, hours in base_options
        ]
        return {
            "success": True,
            "facilities": facilities,
            "searchContext": "Live search unavailable, showing general options",
            "searchQuery": search_query,
            "usingLiveData": False,
            "fallbackReason": reason,
        }
