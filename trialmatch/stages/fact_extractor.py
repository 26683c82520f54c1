"""ClinicalSummary -> ExtractedFacts via a schema-constrained LLM call."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from trialmatch.clients.llm import LLMClient
from trialmatch.deidentify import deidentify
from trialmatch.errors import UpstreamMalformed
from trialmatch.models.clinical import ExtractedFacts

logger = logging.getLogger(__name__)

TOOL_NAME = "record_patient_facts"

FACTS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "age": {"type": ["number", "null"], "description": "Patient's age in years"},
        "gender": {
            "type": ["string", "null"],
            "description": "Patient's gender (e.g., Male, Female, Other)",
        },
        "conditions": {
            "type": "array",
            "description": "List of major medical conditions or diagnoses, preferably with ICD-10 codes if available.",
            "items": {
                "type": "object",
                "properties": {
                    "term": {"type": "string", "description": "Condition name/term"},
                    "icd10Code": {"type": "string", "description": "ICD-10 code, if found"},
                },
                "required": ["term"],
            },
        },
        "medications": {
            "type": "array",
            "description": "List of relevant medications the patient is taking.",
            "items": {"type": "string"},
        },
        "immunizations": {
            "type": "array",
            "description": "List of immunizations the patient has received",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Name of the vaccine/immunization"},
                    "date": {"type": "string", "description": "Date of immunization if available"},
                    "status": {
                        "type": "string",
                        "description": "Status of the immunization (completed, in progress, etc.)",
                    },
                },
                "required": ["name"],
            },
        },
        "zipCode": {
            "type": ["string", "null"],
            "description": "Patient's 5-digit ZIP code for location/distance calculation.",
        },
    },
    "required": ["age", "gender", "conditions", "zipCode"],
}

PROMPT_TEMPLATE = """Analyze the following de-identified patient data, which originated from a CCD or FHIR document. Extract the specified information and record it with the {tool_name} tool.

Patient Data:
```json
{patient_data}
```

Focus on extracting:
- Age (years)
- Gender
- Conditions (list with terms and ICD-10 if available)
- Medications (list)
- Immunizations (with name, date if available, and status). Look for fields like "immunization", "vaccine", "vaccination" or "immunizationHistory", or sections called "immunizations" or "vaccinations".
- 5-digit ZIP Code

If a required field isn't clearly present, use null or an empty list as appropriate for the type."""


class FactExtractor:
    def __init__(self, llm: LLMClient, max_tokens: int = 2048):
        self.llm = llm
        self.max_tokens = max_tokens

    def build_prompt(self, deidentified: Any) -> str:
        return PROMPT_TEMPLATE.format(
            tool_name=TOOL_NAME,
            patient_data=json.dumps(deidentified, indent=2, default=str),
        )

    async def extract(self, summary: Any) -> ExtractedFacts:
        """De-identify ``summary`` and ask the LLM for the compact fact set.

        ``summary`` is any JSON value; it is not checked against the
        ClinicalSummary layout.
        """
        cleaned = deidentify(summary)
        logger.info("Sending de-identified record to LLM for fact extraction")
        raw = await self.llm.complete_structured(
            self.build_prompt(cleaned),
            tool_name=TOOL_NAME,
            description="Record the structured patient facts extracted from the record.",
            schema=FACTS_SCHEMA,
            max_tokens=self.max_tokens,
        )
        try:
            facts = ExtractedFacts.model_validate(raw)
        except ValidationError as exc:
            logger.error("LLM facts did not match the schema: %s. Raw: %s", exc, raw)
            raise UpstreamMalformed(f"LLM returned facts in an unexpected shape: {exc}") from exc

        logger.info(
            "Extracted facts: age=%s gender=%s conditions=%d medications=%d",
            facts.age,
            facts.gender,
            len(facts.conditions),
            len(facts.medications),
        )
        return facts
