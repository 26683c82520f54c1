from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from trialmatch.models.clinical import ExtractedFacts


class RecruitingStatus(str, Enum):
    RECRUITING = "RECRUITING"
    NOT_YET_RECRUITING = "NOT_YET_RECRUITING"
    ACTIVE_NOT_RECRUITING = "ACTIVE_NOT_RECRUITING"
    COMPLETED = "COMPLETED"
    ANY = "ANY"


class TrialPhase(str, Enum):
    EARLY_PHASE1 = "EARLY_PHASE1"
    PHASE1 = "PHASE1"
    PHASE2 = "PHASE2"
    PHASE3 = "PHASE3"
    PHASE4 = "PHASE4"


class SearchFilters(BaseModel):
    recruitingStatus: RecruitingStatus | None = None
    travelRadiusMiles: float | None = Field(default=None, ge=0)
    phase: list[TrialPhase] = Field(default_factory=list)
    conditionKeyword: str | None = None

    @field_validator("phase", mode="before")
    @classmethod
    def _normalise_phase(cls, value: Any) -> Any:
        # The intake form sends PHASE_1 while the registry uses PHASE1.
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        out = []
        for item in value:
            if isinstance(item, str):
                item = item.upper().replace("PHASE_", "PHASE")
                if item == "ANY":
                    continue
            out.append(item)
        return out

    @field_validator("conditionKeyword", mode="before")
    @classmethod
    def _blank_keyword(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RankedTrial(BaseModel):
    nctId: str
    matchPercentage: float
    summaryNote: str = ""

    @field_validator("matchPercentage")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return max(0.0, min(100.0, value))


class SearchRequest(BaseModel):
    extractedFacts: ExtractedFacts = Field(default_factory=ExtractedFacts)
    filters: SearchFilters = Field(default_factory=SearchFilters)


class RankRequest(BaseModel):
    extractedFacts: ExtractedFacts = Field(default_factory=ExtractedFacts)
    trials: list[dict[str, Any]] = Field(default_factory=list)


class MatchRequest(BaseModel):
    document: str
    filters: SearchFilters = Field(default_factory=SearchFilters)
