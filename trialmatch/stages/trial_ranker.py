"""ExtractedFacts + trial records -> one RankedTrial per trial."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from trialmatch.clients.llm import LLMClient
from trialmatch.errors import BadRequest, UpstreamMalformed
from trialmatch.models.clinical import ExtractedFacts
from trialmatch.models.trial import RankedTrial

logger = logging.getLogger(__name__)

TOOL_NAME = "record_trial_rankings"
ELIGIBILITY_PREVIEW_CHARS = 500

RANKED_TRIAL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "nctId": {"type": "string"},
        "matchPercentage": {
            "type": "number",
            "minimum": 0,
            "maximum": 100,
            "description": "Estimated match likelihood (0-100) based on condition, age, gender, and proximity.",
        },
        "summaryNote": {
            "type": "string",
            "description": (
                "Brief summary (1-2 sentences) explaining the match score, highlighting key "
                "eligibility factors (condition, age, gender) and potential issues or proximity."
            ),
        },
    },
    "required": ["nctId", "matchPercentage", "summaryNote"],
}

RANKINGS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "rankings": {
            "type": "array",
            "description": "Exactly one entry per input trial.",
            "items": RANKED_TRIAL_SCHEMA,
        },
    },
    "required": ["rankings"],
}

PROMPT_TEMPLATE = """Given the following de-identified patient profile and a list of clinical trials, please analyze each trial's relevance to the patient.

Patient Profile:
```json
{facts}
```

Clinical Trials:
```json
{trials}
```

For EACH trial, provide:
1. A 'matchPercentage' (0-100) based on how well the trial's conditions, eligibility criteria (age, gender), and potentially proximity (if patient zip code is available) align with the patient profile. Higher percentage means better potential match.
2. A concise 'summaryNote' (1-2 sentences) explaining the match score, highlighting key positive/negative factors related to condition, age, gender, etc.

Record the results with the {tool_name} tool. The rankings array must have exactly {count} elements, one per trial above, each using that trial's nctId."""


def _joined(values: Any) -> str:
    if isinstance(values, str) and values.strip():
        return values.strip()
    if isinstance(values, list) and values:
        return ", ".join(str(v) for v in values)
    return "N/A"


def simplify_trial(trial: dict[str, Any]) -> dict[str, Any]:
    """Flatten a registry record into the handful of fields the prompt needs."""
    ps = trial.get("protocolSection") or {}
    ident = ps.get("identificationModule") or {}
    status = ps.get("statusModule") or {}
    design = ps.get("designModule") or {}
    conditions = ps.get("conditionsModule") or {}
    eligibility = ps.get("eligibilityModule") or {}

    phases = design.get("phases")
    if phases is None:
        # older record layout nests phases one level deeper
        legacy = design.get("phase")
        phases = legacy.get("phases") if isinstance(legacy, dict) else legacy

    criteria = eligibility.get("eligibilityCriteria") or ""
    if len(criteria) > ELIGIBILITY_PREVIEW_CHARS:
        criteria = criteria[:ELIGIBILITY_PREVIEW_CHARS] + "..."

    age_range = _joined(eligibility.get("stdAges"))
    if eligibility.get("minimumAge") or eligibility.get("maximumAge"):
        age_range = (
            f"{eligibility.get('minimumAge') or 'no minimum'} to "
            f"{eligibility.get('maximumAge') or 'no maximum'} ({age_range})"
        )

    return {
        "nctId": ident.get("nctId"),
        "title": ident.get("briefTitle") or "N/A",
        "status": status.get("overallStatus") or "N/A",
        "phase": _joined(phases),
        "conditions": _joined(conditions.get("conditions")),
        "eligibilityCriteriaSummary": criteria or "N/A",
        "genderEligible": eligibility.get("sex") or eligibility.get("gender") or "N/A",
        "ageRange": age_range,
    }


def reconcile_rankings(expected_ids: list[str], entries: list[RankedTrial]) -> list[RankedTrial]:
    """Match model entries to input trials by identifier, in input order.

    Unknown and repeated identifiers are dropped. A trial listed twice gets
    the same entry at both positions. A trial with no entry is an error:
    the caller gets one ranking per trial or nothing.
    """
    wanted = set(expected_ids)
    by_id: dict[str, RankedTrial] = {}
    for entry in entries:
        nct_id = entry.nctId.strip()
        if nct_id not in wanted:
            logger.warning("Dropping ranking for unknown trial %r", entry.nctId)
            continue
        if nct_id in by_id:
            logger.warning("Dropping duplicate ranking for trial %s", nct_id)
            continue
        by_id[nct_id] = entry.model_copy(update={"nctId": nct_id})

    missing = [i for i in wanted if i not in by_id]
    if missing:
        logger.error("LLM rankings are missing trials: %s", ", ".join(sorted(missing)))
        raise UpstreamMalformed(
            f"LLM returned no ranking for {len(missing)} of {len(wanted)} trials"
        )
    return [by_id[i] for i in expected_ids]


class TrialRanker:
    def __init__(self, llm: LLMClient, max_tokens: int = 4096):
        self.llm = llm
        self.max_tokens = max_tokens

    def build_prompt(self, facts: ExtractedFacts, simplified: list[dict[str, Any]]) -> str:
        return PROMPT_TEMPLATE.format(
            facts=json.dumps(facts.model_dump(), indent=2),
            trials=json.dumps(simplified, indent=2),
            tool_name=TOOL_NAME,
            count=len(simplified),
        )

    async def rank(self, facts: ExtractedFacts, trials: list[dict[str, Any]]) -> list[RankedTrial]:
        if not trials:
            return []

        simplified = [simplify_trial(t) for t in trials]
        for s in simplified:
            if isinstance(s["nctId"], str):
                s["nctId"] = s["nctId"].strip()
        expected_ids = [s["nctId"] for s in simplified]
        if not all(isinstance(i, str) and i for i in expected_ids):
            # without identifiers the answers cannot be matched back to trials
            raise BadRequest("Every trial must carry protocolSection.identificationModule.nctId")
        # the registry never repeats a study, but callers may; ask once per study
        unique = list({s["nctId"]: s for s in simplified}.values())

        logger.info("Ranking %d trials with the LLM", len(unique))
        raw = await self.llm.complete_structured(
            self.build_prompt(facts, unique),
            tool_name=TOOL_NAME,
            description="Record one match assessment per clinical trial.",
            schema=RANKINGS_SCHEMA,
            max_tokens=self.max_tokens,
        )

        items = raw.get("rankings")
        if not isinstance(items, list):
            logger.error("LLM rankings payload has no 'rankings' array. Raw: %s", raw)
            raise UpstreamMalformed("LLM returned rankings in an unexpected shape")
        try:
            entries = [RankedTrial.model_validate(item) for item in items]
        except ValidationError as exc:
            logger.error("LLM ranking entries did not match the schema: %s. Raw: %s", exc, raw)
            raise UpstreamMalformed(f"LLM returned rankings in an unexpected shape: {exc}") from exc

        return reconcile_rankings(expected_ids, entries)
