"""ExtractedFacts + SearchFilters -> raw ClinicalTrials.gov study records.

The search is a single ``filter.advanced`` expression in the registry's
Essie syntax, built from AND-ed clauses.
"""

from __future__ import annotations

import logging

from trialmatch.clients.clinical_trials import ClinicalTrialsClient
from trialmatch.clients.geocoding import PostalCodeGeocoder
from trialmatch.models.clinical import ExtractedFacts
from trialmatch.models.trial import RecruitingStatus, SearchFilters

logger = logging.getLogger(__name__)

_SEX_VALUES = {
    "male": "MALE",
    "m": "MALE",
    "female": "FEMALE",
    "f": "FEMALE",
}


def status_clause(filters: SearchFilters) -> str | None:
    status = filters.recruitingStatus or RecruitingStatus.RECRUITING
    if status == RecruitingStatus.ANY:
        return None
    return f"AREA[OverallStatus]{status.value}"


def quote_term(term: str) -> str:
    """Wrap a condition as an exact phrase so multi-word terms stay together."""
    return '"{}"'.format(term.strip().replace('"', '\\"'))


def condition_clause(facts: ExtractedFacts, filters: SearchFilters) -> str | None:
    if filters.conditionKeyword:
        return f"AREA[Condition]({quote_term(filters.conditionKeyword)})"
    terms = facts.condition_terms()
    if not terms:
        return None
    return f"AREA[Condition]({' OR '.join(quote_term(t) for t in terms)})"


def sex_clause(gender: str | None) -> str | None:
    if not gender or not gender.strip():
        return None
    sex = _SEX_VALUES.get(gender.strip().lower())
    if sex is None:
        return "AREA[Sex]ALL"
    return f"AREA[Sex]({sex} OR ALL)"


def age_clause(age: float | None) -> str | None:
    if age is None:
        return None
    years = int(age)
    return (
        f"AREA[MinimumAge]RANGE[MIN, {years} years] AND "
        f"AREA[MaximumAge]RANGE[{years} years, MAX]"
    )


def proximity_clause(
    radius_miles: float | None,
    zip_code: str | None,
    geo_point: tuple[float, float] | None,
) -> str | None:
    if not radius_miles or not zip_code or geo_point is None:
        return None
    lat, lon = geo_point
    return f"AREA[LocationGeoPoint]DISTANCE[{lat:.6f},{lon:.6f},{radius_miles:g}mi]"


def phase_clause(filters: SearchFilters) -> str | None:
    if not filters.phase:
        return None
    return f"AREA[Phase]({' OR '.join(p.value for p in filters.phase)})"


def build_advanced_filter(
    facts: ExtractedFacts,
    filters: SearchFilters,
    geo_point: tuple[float, float] | None = None,
    include_age: bool = False,
) -> str | None:
    """Join the applicable clauses with AND; None when no clause applies."""
    clauses = [
        status_clause(filters),
        condition_clause(facts, filters),
        age_clause(facts.age) if include_age else None,
        sex_clause(facts.gender),
        proximity_clause(filters.travelRadiusMiles, facts.zipCode, geo_point),
        phase_clause(filters),
    ]
    present = [c for c in clauses if c]
    return " AND ".join(present) if present else None


class TrialSearcher:
    def __init__(
        self,
        registry: ClinicalTrialsClient,
        geocoder: PostalCodeGeocoder | None = None,
        page_size: int = 50,
        age_filter_enabled: bool = False,
    ):
        self.registry = registry
        self.geocoder = geocoder
        self.page_size = page_size
        self.age_filter_enabled = age_filter_enabled

    async def _locate(self, facts: ExtractedFacts, filters: SearchFilters) -> tuple[float, float] | None:
        if not filters.travelRadiusMiles or not facts.zipCode or self.geocoder is None:
            return None
        point = await self.geocoder.geocode(facts.zipCode)
        if point is None:
            logger.warning(
                "Could not geocode postal code %r; searching without a travel radius",
                facts.zipCode,
            )
        return point

    async def search(self, facts: ExtractedFacts, filters: SearchFilters) -> list[dict]:
        geo_point = await self._locate(facts, filters)
        advanced = build_advanced_filter(
            facts,
            filters,
            geo_point=geo_point,
            include_age=self.age_filter_enabled,
        )
        return await self.registry.search_studies(advanced, page_size=self.page_size)
