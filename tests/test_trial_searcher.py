"""Tests for registry query construction and the search stage."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import httpx
import pytest

from trialmatch.clients.clinical_trials import STUDY_FIELDS, ClinicalTrialsClient
from trialmatch.clients.geocoding import PostalCodeGeocoder
from trialmatch.errors import UpstreamMalformed, UpstreamRequestFailure
from trialmatch.models.clinical import ExtractedFacts
from trialmatch.models.trial import SearchFilters
from trialmatch.stages.trial_searcher import TrialSearcher, build_advanced_filter

FACTS = ExtractedFacts(
    age=55,
    gender="Female",
    conditions=[{"term": "diabetes"}, {"term": "hypertension"}],
    zipCode="10001",
)


# ---------------------------------------------------------------------------
# build_advanced_filter
# ---------------------------------------------------------------------------


class TestBuildAdvancedFilter:
    def test_defaults_to_recruiting(self):
        query = build_advanced_filter(ExtractedFacts(), SearchFilters())
        assert query == "AREA[OverallStatus]RECRUITING"

    def test_any_status_omits_status_clause(self):
        query = build_advanced_filter(ExtractedFacts(), SearchFilters(recruitingStatus="ANY"))
        assert query is None

    def test_explicit_status(self):
        query = build_advanced_filter(ExtractedFacts(), SearchFilters(recruitingStatus="COMPLETED"))
        assert query == "AREA[OverallStatus]COMPLETED"

    def test_condition_terms_are_or_joined(self):
        query = build_advanced_filter(FACTS, SearchFilters(recruitingStatus="ANY"))
        assert 'AREA[Condition]("diabetes" OR "hypertension")' in query

    def test_keyword_overrides_condition_terms(self):
        query = build_advanced_filter(FACTS, SearchFilters(conditionKeyword="obesity"))
        assert 'AREA[Condition]("obesity")' in query
        assert "diabetes" not in query

    def test_blank_keyword_falls_back_to_terms(self):
        query = build_advanced_filter(FACTS, SearchFilters(conditionKeyword="  "))
        assert 'AREA[Condition]("diabetes" OR "hypertension")' in query

    def test_multi_word_terms_stay_phrases(self):
        facts = ExtractedFacts(conditions=[{"term": "type 2 diabetes"}, {"term": 'heart failure (the "HF")'}])
        query = build_advanced_filter(facts, SearchFilters(recruitingStatus="ANY"))
        assert query == 'AREA[Condition]("type 2 diabetes" OR "heart failure (the \\"HF\\")")'

    @pytest.mark.parametrize(
        "gender,clause",
        [
            ("Female", "AREA[Sex](FEMALE OR ALL)"),
            ("male", "AREA[Sex](MALE OR ALL)"),
            ("Other", "AREA[Sex]ALL"),
            ("Unknown", "AREA[Sex]ALL"),
        ],
    )
    def test_gender_mapping(self, gender, clause):
        query = build_advanced_filter(ExtractedFacts(gender=gender), SearchFilters())
        assert clause in query

    def test_no_gender_no_sex_clause(self):
        assert "AREA[Sex]" not in build_advanced_filter(ExtractedFacts(), SearchFilters())

    def test_proximity_needs_radius_zip_and_point(self):
        point = (40.75, -73.99)
        with_radius = SearchFilters(travelRadiusMiles=50)

        query = build_advanced_filter(FACTS, with_radius, geo_point=point)
        assert "AREA[LocationGeoPoint]DISTANCE[40.750000,-73.990000,50mi]" in query

        assert "LocationGeoPoint" not in build_advanced_filter(FACTS, SearchFilters(), geo_point=point)
        assert "LocationGeoPoint" not in build_advanced_filter(
            ExtractedFacts(), with_radius, geo_point=point
        )
        assert "LocationGeoPoint" not in build_advanced_filter(FACTS, with_radius)

    def test_phases_accept_form_spelling(self):
        query = build_advanced_filter(ExtractedFacts(), SearchFilters(phase=["PHASE_2", "PHASE3"]))
        assert "AREA[Phase](PHASE2 OR PHASE3)" in query

    def test_any_phase_is_ignored(self):
        query = build_advanced_filter(ExtractedFacts(), SearchFilters(phase=["ANY"]))
        assert "AREA[Phase]" not in query

    def test_age_clause_only_when_enabled(self):
        assert "MinimumAge" not in build_advanced_filter(FACTS, SearchFilters())
        query = build_advanced_filter(FACTS, SearchFilters(), include_age=True)
        assert "AREA[MinimumAge]RANGE[MIN, 55 years]" in query
        assert "AREA[MaximumAge]RANGE[55 years, MAX]" in query

    def test_clauses_are_and_joined_in_order(self):
        query = build_advanced_filter(
            FACTS,
            SearchFilters(travelRadiusMiles=25, phase=["PHASE_1"]),
            geo_point=(1.0, 2.0),
        )
        assert query == (
            "AREA[OverallStatus]RECRUITING"
            ' AND AREA[Condition]("diabetes" OR "hypertension")'
            " AND AREA[Sex](FEMALE OR ALL)"
            " AND AREA[LocationGeoPoint]DISTANCE[1.000000,2.000000,25mi]"
            " AND AREA[Phase](PHASE1)"
        )


# ---------------------------------------------------------------------------
# TrialSearcher.search
# ---------------------------------------------------------------------------


def _searcher(studies=None, point=None, **kwargs) -> tuple[TrialSearcher, MagicMock, MagicMock]:
    registry = MagicMock(spec=ClinicalTrialsClient)
    registry.search_studies = AsyncMock(return_value=studies or [])
    geocoder = MagicMock(spec=PostalCodeGeocoder)
    geocoder.geocode = AsyncMock(return_value=point)
    return TrialSearcher(registry, geocoder=geocoder, **kwargs), registry, geocoder


class TestTrialSearcher:
    async def test_returns_studies_unmodified(self, two_studies):
        searcher, registry, geocoder = _searcher(two_studies, page_size=20)
        result = await searcher.search(FACTS, SearchFilters())

        assert result == two_studies
        geocoder.geocode.assert_not_awaited()
        registry.search_studies.assert_awaited_once()
        query = registry.search_studies.await_args.args[0]
        assert query.startswith("AREA[OverallStatus]RECRUITING")
        assert registry.search_studies.await_args.kwargs == {"page_size": 20}

    async def test_geocodes_zip_for_travel_radius(self):
        searcher, registry, geocoder = _searcher(point=(40.75, -73.99))
        await searcher.search(FACTS, SearchFilters(travelRadiusMiles=10))

        geocoder.geocode.assert_awaited_once_with("10001")
        assert "DISTANCE[40.750000,-73.990000,10mi]" in registry.search_studies.await_args.args[0]

    async def test_unresolved_zip_omits_proximity(self):
        searcher, registry, _ = _searcher(point=None)
        await searcher.search(FACTS, SearchFilters(travelRadiusMiles=10))
        assert "LocationGeoPoint" not in registry.search_studies.await_args.args[0]

    async def test_age_filter_setting(self):
        searcher, registry, _ = _searcher(age_filter_enabled=True)
        await searcher.search(FACTS, SearchFilters())
        assert "AREA[MinimumAge]" in registry.search_studies.await_args.args[0]

    async def test_registry_failure_propagates(self):
        searcher, registry, _ = _searcher()
        registry.search_studies.side_effect = UpstreamRequestFailure("boom", upstream_status=503, body="down")
        with pytest.raises(UpstreamRequestFailure) as info:
            await searcher.search(FACTS, SearchFilters())
        assert info.value.upstream_status == 503


# ---------------------------------------------------------------------------
# ClinicalTrialsClient.search_studies
# ---------------------------------------------------------------------------


class TestClinicalTrialsClient:
    async def test_builds_request_params(self, two_studies, monkeypatch):
        client = ClinicalTrialsClient()
        get = AsyncMock(return_value={"studies": two_studies})
        monkeypatch.setattr(client, "_get", get)

        result = await client.search_studies("AREA[OverallStatus]RECRUITING", page_size=50)

        assert result == two_studies
        path, params = get.await_args.args
        assert path == "/studies"
        assert params["filter.advanced"] == "AREA[OverallStatus]RECRUITING"
        assert params["pageSize"] == 50
        assert params["format"] == "json"
        assert params["fields"] == ",".join(STUDY_FIELDS)

    async def test_no_filter_no_advanced_param(self, monkeypatch):
        client = ClinicalTrialsClient()
        get = AsyncMock(return_value={})
        monkeypatch.setattr(client, "_get", get)

        assert await client.search_studies(None) == []
        assert "filter.advanced" not in get.await_args.args[1]


class _FakeResponse:
    def __init__(self, status: int, text: str):
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    """Stands in for aiohttp.ClientSession; records the GET it receives."""

    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _patch_session(monkeypatch, session: _FakeSession) -> None:
    monkeypatch.setattr(aiohttp, "ClientSession", lambda *a, **kw: session)


class TestClinicalTrialsClientHttp:
    async def test_success_decodes_studies(self, monkeypatch, two_studies):
        session = _FakeSession(_FakeResponse(200, json.dumps({"studies": two_studies})))
        _patch_session(monkeypatch, session)

        client = ClinicalTrialsClient("https://registry.test/api/v2/")
        result = await client.search_studies("AREA[OverallStatus]RECRUITING")

        assert result == two_studies
        url, kwargs = session.calls[0]
        assert url == "https://registry.test/api/v2/studies"
        assert kwargs["params"]["filter.advanced"] == "AREA[OverallStatus]RECRUITING"

    async def test_non_2xx_carries_status_and_body(self, monkeypatch):
        _patch_session(monkeypatch, _FakeSession(_FakeResponse(400, "bad filter.advanced")))

        with pytest.raises(UpstreamRequestFailure) as info:
            await ClinicalTrialsClient().search_studies("AREA[Nope]x")
        assert info.value.upstream_status == 400
        assert info.value.body == "bad filter.advanced"
        assert "400" in info.value.message

    async def test_non_json_body_is_malformed(self, monkeypatch):
        _patch_session(monkeypatch, _FakeSession(_FakeResponse(200, "<html>maintenance</html>")))

        with pytest.raises(UpstreamMalformed):
            await ClinicalTrialsClient().search_studies(None)

    async def test_non_object_body_is_malformed(self, monkeypatch):
        _patch_session(monkeypatch, _FakeSession(_FakeResponse(200, "[1, 2]")))

        with pytest.raises(UpstreamMalformed):
            await ClinicalTrialsClient().search_studies(None)

    @pytest.mark.parametrize(
        "error",
        [aiohttp.ClientConnectionError("connection refused"), asyncio.TimeoutError()],
    )
    async def test_transport_error_has_no_status(self, monkeypatch, error):
        _patch_session(monkeypatch, _FakeSession(error=error))

        with pytest.raises(UpstreamRequestFailure) as info:
            await ClinicalTrialsClient().search_studies(None)
        assert info.value.upstream_status is None


# ---------------------------------------------------------------------------
# PostalCodeGeocoder.geocode
# ---------------------------------------------------------------------------


def _patch_transport(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    transport = httpx.MockTransport(recording)
    real_client = httpx.AsyncClient
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kw: real_client(transport=transport, **kw))
    return seen


class TestPostalCodeGeocoder:
    async def test_resolves_first_result(self, monkeypatch):
        seen = _patch_transport(
            monkeypatch,
            lambda request: httpx.Response(
                200, json={"results": [{"latitude": 40.75, "longitude": -73.99}, {"latitude": 0, "longitude": 0}]}
            ),
        )

        point = await PostalCodeGeocoder("https://geo.test/v1", country_code="US").geocode(" 10001 ")

        assert point == (40.75, -73.99)
        params = seen[0].url.params
        assert seen[0].url.path == "/v1/search"
        assert params["name"] == "10001"
        assert params["countryCode"] == "US"
        assert params["count"] == "1"

    async def test_no_results_is_none(self, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={"generationtime_ms": 0.4}))
        assert await PostalCodeGeocoder().geocode("99999") is None

    async def test_http_error_is_none(self, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(503, text="unavailable"))
        assert await PostalCodeGeocoder().geocode("10001") is None

    async def test_non_json_body_is_none(self, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(200, text="not json"))
        assert await PostalCodeGeocoder().geocode("10001") is None

    async def test_transport_error_is_none(self, monkeypatch):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        _patch_transport(monkeypatch, refuse)
        assert await PostalCodeGeocoder().geocode("10001") is None

    async def test_too_short_code_skips_lookup(self, monkeypatch):
        seen = _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={}))
        assert await PostalCodeGeocoder().geocode("1") is None
        assert seen == []
