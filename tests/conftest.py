from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from trialmatch.clients.llm import LLMClient


def make_study(nct_id: str, title: str = "", conditions: list[str] | None = None) -> dict:
    """Minimal registry record in the API v2 layout."""
    return {
        "protocolSection": {
            "identificationModule": {"nctId": nct_id, "briefTitle": title or f"Trial {nct_id}"},
            "statusModule": {"overallStatus": "RECRUITING"},
            "designModule": {"studyType": "INTERVENTIONAL", "phases": ["PHASE2"]},
            "conditionsModule": {"conditions": conditions or ["Type 2 Diabetes"]},
            "eligibilityModule": {
                "eligibilityCriteria": "Inclusion Criteria:\n* Adults with type 2 diabetes",
                "sex": "ALL",
                "minimumAge": "18 Years",
                "stdAges": ["ADULT", "OLDER_ADULT"],
            },
        }
    }


@pytest.fixture
def fake_llm() -> MagicMock:
    llm = MagicMock(spec=LLMClient)
    llm.configured = True
    llm.complete_text = AsyncMock()
    llm.complete_structured = AsyncMock()
    return llm


@pytest.fixture
def two_studies() -> list[dict]:
    return [
        make_study("NCT11111111", "Metformin add-on study"),
        make_study("NCT22222222", "Insulin pump study", ["Diabetes Mellitus"]),
    ]
