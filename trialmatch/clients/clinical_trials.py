"""ClinicalTrials.gov API v2 wrapper.

API docs: https://clinicaltrials.gov/data-api/api
No authentication required. Rate limit ~10 req/sec.

Uses aiohttp instead of httpx because ClinicalTrials.gov blocks httpx's
TLS fingerprint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from trialmatch.errors import UpstreamMalformed, UpstreamRequestFailure

logger = logging.getLogger(__name__)

# Returned per study; everything else in the record is dropped by the API.
STUDY_FIELDS = (
    "NCTId",
    "BriefTitle",
    "Condition",
    "Keyword",
    "OverallStatus",
    "Phase",
    "StudyType",
    "EligibilityCriteria",
    "Sex",
    "StdAge",
    "MinimumAge",
    "MaximumAge",
    "BriefSummary",
    "DetailedDescription",
    "CentralContactName",
    "CentralContactPhone",
    "LocationFacility",
    "LocationCity",
    "LocationState",
    "LocationZip",
    "LocationCountry",
    "LocationGeoPoint",
)


class ClinicalTrialsClient:
    def __init__(
        self,
        base_url: str = "https://clinicaltrials.gov/api/v2",
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, params: dict[str, Any]) -> dict:
        """GET a registry path and decode the JSON body."""
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    params=params,
                    headers={"Accept": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        logger.error("ClinicalTrials.gov API error (%s): %s", resp.status, body)
                        raise UpstreamRequestFailure(
                            f"ClinicalTrials.gov API request failed with status {resp.status}",
                            upstream_status=resp.status,
                            body=body,
                        )
                    text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("ClinicalTrials.gov request to %s failed: %s", path, exc)
            raise UpstreamRequestFailure(f"ClinicalTrials.gov request failed: {exc}") from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("ClinicalTrials.gov returned non-JSON body: %s", text[:500])
            raise UpstreamMalformed("ClinicalTrials.gov returned an invalid JSON body") from exc
        if not isinstance(data, dict):
            raise UpstreamMalformed("ClinicalTrials.gov returned an unexpected payload")
        return data

    async def search_studies(
        self,
        advanced_filter: str | None,
        page_size: int = 50,
        fields: tuple[str, ...] = STUDY_FIELDS,
    ) -> list[dict]:
        """Run one search page and return the raw ``studies`` list."""
        params: dict[str, Any] = {
            "format": "json",
            "pageSize": page_size,
            "fields": ",".join(fields),
        }
        if advanced_filter:
            params["filter.advanced"] = advanced_filter

        logger.info("Querying ClinicalTrials.gov with filter.advanced=%r", advanced_filter)
        data = await self._get("/studies", params)
        studies = data.get("studies") or []
        if not isinstance(studies, list):
            raise UpstreamMalformed("ClinicalTrials.gov 'studies' is not a list")
        logger.info("Received %d trials from ClinicalTrials.gov", len(studies))
        return studies
