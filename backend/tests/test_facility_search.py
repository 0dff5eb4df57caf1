from __future__ import annotations

from typing import Any

import httpx

from carely_tools.facility_search import FacilitySearch


class _FakeResponse:
    def __init__(self, *, status_code: int = 200, json_data: Any = None, url: str = "https://example.test") -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.url = url
        self.content = b"1"

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                "error", request=httpx.Request("GET", self.url), response=httpx.Response(self.status_code)
            )

    def json(self) -> Any:
        return self._json_data


def test_search_uses_nominatim_results_sorted_by_distance(monkeypatch):
    monkeypatch.setenv("CARELY_DISABLE_EXTERNAL_WEB", "false")
    search = FacilitySearch()
    captured: dict[str, Any] = {}

    def fake_get(url: str, **kwargs):
        assert "nominatim.openstreetmap.org/search" in url
        captured.update(kwargs.get("params") or {})
        return _FakeResponse(
            json_data=[
                {
                    "name": "Northside Urgent Care",
                    "display_name": "Northside Urgent Care, Pittsburgh, Pennsylvania, USA",
                    "type": "clinic",
                    "lat": "40.4700",
                    "lon": "-80.0100",
                    "address": {"city": "Pittsburgh"},
                    "extratags": {"phone": "+1 412 555 0100", "opening_hours": "Mo-Su 08:00-20:00"},
                },
                {
                    "name": "Downtown Medical Center",
                    "display_name": "Downtown Medical Center, Pittsburgh, Pennsylvania, USA",
                    "type": "hospital",
                    "lat": "40.4410",
                    "lon": "-79.9960",
                    "address": {"city": "Pittsburgh"},
                    "extratags": {"website": "https://downtown.example"},
                },
                {
                    "name": "Market Square Cafe",
                    "display_name": "Market Square Cafe, Pittsburgh",
                    "type": "cafe",
                    "lat": "40.4410",
                    "lon": "-79.9960",
                },
                {
                    "name": "Cleveland Clinic",
                    "display_name": "Cleveland Clinic, Cleveland, Ohio, USA",
                    "type": "hospital",
                    "lat": "41.5020",
                    "lon": "-81.6210",
                },
            ]
        )

    monkeypatch.setattr("carely_tools.facility_search.httpx.get", fake_get)
    result = search.search(latitude=40.4406, longitude=-79.9959, search_query="urgent care")

    assert result["usingLiveData"] is True
    assert result["fallbackReason"] is None
    assert result["searchContext"] == "Showing urgent care near Pittsburgh"
    assert [row["name"] for row in result["facilities"]] == ["Downtown Medical Center", "Northside Urgent Care"]
    assert result["facilities"][0]["type"] == "Hospital"
    assert result["facilities"][0]["url"] == "https://downtown.example"
    assert result["facilities"][1]["phone"] == "+1 412 555 0100"
    assert result["facilities"][0]["distanceMiles"] < result["facilities"][1]["distanceMiles"]
    assert captured["bounded"] == 1
    assert captured["q"] == "urgent care"


def test_search_falls_back_when_lookup_fails(monkeypatch):
    monkeypatch.setenv("CARELY_DISABLE_EXTERNAL_WEB", "false")
    search = FacilitySearch()

    def failing_get(url: str, **kwargs):
        raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr("carely_tools.facility_search.httpx.get", failing_get)
    result = search.search(latitude=40.4406, longitude=-79.9959, search_query="pharmacy")

    assert result["success"] is True
    assert result["usingLiveData"] is False
    assert result["fallbackReason"] == "no_live_results"
    assert len(result["facilities"]) == 3


def test_search_skips_network_when_external_web_disabled(monkeypatch):
    monkeypatch.setenv("CARELY_DISABLE_EXTERNAL_WEB", "true")
    search = FacilitySearch()

    def unexpected_get(url: str, **kwargs):
        raise AssertionError(f"Unexpected URL: {url}")

    monkeypatch.setattr("carely_tools.facility_search.httpx.get", unexpected_get)
    result = search.search(latitude=40.4406, longitude=-79.9959, search_query="clinic")

    assert result["fallbackReason"] == "external_web_disabled"
    assert result["facilities"][0]["phone"] == "911"
