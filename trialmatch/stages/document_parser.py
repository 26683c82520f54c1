"""Care-record document -> ClinicalSummary.

The document (usually CCD XML) is handed to the LLM with a fixed layout to
fill in. Model output is then coerced into that layout: echoed placeholder
tokens become null, list fields are always lists, and an implausible age is
recomputed from the birth year.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any

from trialmatch.clients.llm import LLMClient, parse_json_text
from trialmatch.errors import BadRequest, UpstreamMalformed
from trialmatch.models.clinical import ClinicalSummary, Demographics, VitalSigns

logger = logging.getLogger(__name__)

TEST_MODE_DOCUMENT = "TEST_MODE"

LIST_FIELDS = ("conditions", "medications", "allergies", "procedures")
DEMOGRAPHIC_FIELDS = tuple(Demographics.model_fields)
VITAL_SIGN_FIELDS = tuple(VitalSigns.model_fields)

# Values the model sometimes copies from the layout instead of the document.
PLACEHOLDER_TOKENS = frozenset({"string", "number", "YYYY-MM-DD", "N/A", "null", "[object Object]"})

MIN_PLAUSIBLE_AGE = 2
MAX_PLAUSIBLE_AGE = 120

SAMPLE_SUMMARY: dict[str, Any] = {
    "demographics": {
        "name": "John Doe",
        "gender": "Male",
        "birthDate": "1950-01-01",
        "age": 73,
        "address": "123 Main St, Anytown",
        "zipCode": "12345",
        "phone": "555-123-4567",
    },
    "conditions": ["Hypertension", "Type 2 Diabetes", "Hyperlipidemia"],
    "medications": [
        "Lisinopril 10mg daily",
        "Metformin 500mg twice daily",
        "Atorvastatin 20mg daily",
    ],
    "allergies": ["Penicillin", "Sulfa drugs"],
    "procedures": ["Colonoscopy (2020-03-15)", "Cataract surgery (2019-07-10)"],
    "vitalSigns": {
        "height": "5'10\" (178 cm)",
        "weight": "180 lbs (82 kg)",
        "bloodPressure": "130/82 mmHg",
        "temperature": "98.6 F (37 C)",
        "pulse": "72 bpm",
        "respiratoryRate": "16 breaths/min",
    },
}

PROMPT_TEMPLATE = """Parse the following Continuity of Care Document (CCD) data and extract the patient's key clinical information. Format the output as a single JSON object with the following structure:

{{
  "demographics": {{
    "name": "string", // Full patient name
    "gender": "string", // "Male", "Female", etc.
    "birthDate": "YYYY-MM-DD", // Date of birth
    "age": number, // Age in years, calculated from birthDate if available
    "address": "string", // Full address as a single string
    "zipCode": "string", // Postal/ZIP code only
    "phone": "string" // Phone number if available
  }},
  "conditions": ["string"], // One entry per condition/problem
  "medications": ["string"], // One entry per medication with dosage if available
  "allergies": ["string"], // One entry per allergy
  "procedures": ["string"], // One entry per procedure
  "vitalSigns": {{
    "height": "string", // Height with units
    "weight": "string", // Weight with units
    "bloodPressure": "string", // BP with units
    "temperature": "string", // Temperature with units
    "pulse": "string", // Heart rate with units
    "respiratoryRate": "string" // Respiratory rate with units
  }}
}}

If certain sections are empty or not found in the document, return empty arrays [] or null values as appropriate.

IMPORTANT:
- Extract real values from the document, not placeholder schema values like "string"
- Return actual values - if you can't find a value, use null for simple fields or [] for arrays
- Do not include any labels like "Patient name:" in the values - just the actual data
- Format dates as YYYY-MM-DD when possible
- For age, calculate from birthDate if available
- Respond with the JSON object only

CCD Data:
```
{document}
```
"""


def _unwrap_json(raw: str, *, strict: bool) -> str:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        if strict:
            logger.error("Error parsing JSON request: %s", exc)
            raise BadRequest("Invalid JSON in request body") from exc
        return raw
    if isinstance(payload, dict) and isinstance(payload.get("xml"), str):
        logger.debug("Found XML data inside JSON wrapper")
        return payload["xml"]
    return raw


def read_document(body: bytes | str, content_type: str = "") -> str:
    """Turn a request body into the document text sent to the LLM.

    XML bodies are used as they are. JSON bodies may wrap the XML in an
    ``xml`` field; any other JSON is passed on verbatim. Without a telling
    content type the body is sniffed for a JSON object.
    """
    raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    logger.info("Received document with Content-Type=%r, length=%d", content_type, len(raw))

    if not raw or not raw.strip():
        raise BadRequest("Empty request body")

    content_type = (content_type or "").lower()
    if "xml" in content_type:
        return raw
    if "json" in content_type:
        return _unwrap_json(raw, strict=True)

    stripped = raw.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return _unwrap_json(raw, strict=False)
    return raw


def _clean_scalar(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value or value in PLACEHOLDER_TOKENS:
            return None
    return value


def _clean_record(raw: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {field: None for field in fields}
    return {field: _clean_scalar(raw.get(field)) for field in fields}


def _birth_year(birth_date: Any) -> int | None:
    if not isinstance(birth_date, str) or len(birth_date) < 4 or not birth_date[:4].isdigit():
        return None
    return int(birth_date[:4])


def _plausible_age(demographics: dict[str, Any], today: date) -> int | None:
    age = demographics.get("age")
    if isinstance(age, str):
        try:
            age = float(age)
        except ValueError:
            age = None
    if isinstance(age, (int, float)) and not isinstance(age, bool):
        if MIN_PLAUSIBLE_AGE <= age <= MAX_PLAUSIBLE_AGE:
            return int(age)
        logger.warning("Suspicious age value: %s, attempting to calculate from birthDate", age)

    year = _birth_year(demographics.get("birthDate"))
    if year is not None and 1900 < year < today.year:
        return today.year - year
    return None


def _clean_list(value: Any, field: str) -> list[str]:
    if not isinstance(value, list):
        if value is not None:
            logger.warning("Field %s is not an array, converting to empty array", field)
        return []
    items = []
    for item in value:
        if item is None:
            continue
        if isinstance(item, dict):
            item = ", ".join(str(v) for v in item.values() if v not in (None, ""))
        text = str(item).strip()
        if text and text not in PLACEHOLDER_TOKENS:
            items.append(text)
    return items


def normalize_summary(data: dict[str, Any], today: date | None = None) -> ClinicalSummary:
    """Coerce a decoded model answer into a ClinicalSummary."""
    today = today or date.today()

    demographics = _clean_record(data.get("demographics"), DEMOGRAPHIC_FIELDS)
    demographics["age"] = _plausible_age(demographics, today)
    for field in ("name", "gender", "birthDate", "address", "zipCode", "phone"):
        if demographics[field] is not None:
            demographics[field] = str(demographics[field])

    vitals = _clean_record(data.get("vitalSigns"), VITAL_SIGN_FIELDS)
    vitals = {k: (str(v) if v is not None else None) for k, v in vitals.items()}

    return ClinicalSummary(
        demographics=Demographics(**demographics),
        vitalSigns=VitalSigns(**vitals),
        **{field: _clean_list(data.get(field), field) for field in LIST_FIELDS},
    )


class DocumentParser:
    def __init__(
        self,
        llm: LLMClient,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        bypass_llm: bool = False,
    ):
        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.bypass_llm = bypass_llm

    def build_prompt(self, document: str) -> str:
        return PROMPT_TEMPLATE.format(document=document)

    async def parse(self, document: str, today: date | None = None) -> ClinicalSummary:
        if self.bypass_llm or document == TEST_MODE_DOCUMENT:
            logger.info("Bypassing LLM - returning sample summary")
            return ClinicalSummary.model_validate(SAMPLE_SUMMARY)

        logger.info("Calling LLM to parse document (%d chars)", len(document))
        text = await self.llm.complete_text(
            self.build_prompt(document),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        data = parse_json_text(text)
        if not isinstance(data, dict):
            logger.error("LLM returned non-object JSON. Raw text: %s", text)
            raise UpstreamMalformed("LLM returned JSON that is not an object")
        return normalize_summary(data, today)
