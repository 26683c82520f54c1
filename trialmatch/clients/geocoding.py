"""Open-Meteo geocoding API wrapper.

Resolves a postal code to coordinates for the registry's geo-distance
filter.

API docs: https://open-meteo.com/en/docs/geocoding-api
No authentication required. Postal codes are accepted as search names.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


class PostalCodeGeocoder:
    def __init__(
        self,
        base_url: str = "https://geocoding-api.open-meteo.com/v1",
        country_code: str = "",
        timeout: float = 30.0,
    ):
        self.base_url = base_url
        self.country_code = country_code
        self.timeout = timeout

    async def geocode(self, postal_code: str) -> tuple[float, float] | None:
        """Return ``(latitude, longitude)`` for a postal code, or None if unresolved.

        Lookup problems are logged and reported as None; the caller decides
        what to do without a point.
        """
        query = postal_code.strip()
        if len(query) < 2:
            return None

        params: dict[str, str | int] = {
            "name": query,
            "count": 1,
            "language": "en",
            "format": "json",
        }
        if self.country_code:
            params["countryCode"] = self.country_code

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.get("/search", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Geocoding API HTTP error %s for postal code=%r: %s",
                exc.response.status_code,
                query,
                exc,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Geocoding request failed for postal code=%r: %s", query, exc)
            return None

        results = data.get("results") or []
        if not results:
            logger.info("No geocoding results for postal code: %r", query)
            return None

        first = results[0]
        lat, lon = first.get("latitude"), first.get("longitude")
        if lat is None or lon is None:
            return None
        return float(lat), float(lon)
