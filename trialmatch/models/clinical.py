from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class Demographics(BaseModel):
    name: str | None = None
    gender: str | None = None
    birthDate: str | None = None
    age: int | None = None
    address: str | None = None
    zipCode: str | None = None
    phone: str | None = None


class VitalSigns(BaseModel):
    height: str | None = None
    weight: str | None = None
    bloodPressure: str | None = None
    temperature: str | None = None
    pulse: str | None = None
    respiratoryRate: str | None = None


class ClinicalSummary(BaseModel):
    demographics: Demographics = Field(default_factory=Demographics)
    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    vitalSigns: VitalSigns = Field(default_factory=VitalSigns)


class FactCondition(BaseModel):
    term: str
    icd10Code: str | None = None


class Immunization(BaseModel):
    name: str
    date: str | None = None
    status: str | None = None


class ExtractedFacts(BaseModel):
    """Compact patient profile used for searching and ranking.

    Every key is always present in the serialised form; absent values are
    ``None`` or an empty list.
    """

    age: int | float | None = None
    gender: str | None = None
    conditions: list[FactCondition] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    zipCode: str | None = None
    immunizations: list[Immunization] = Field(default_factory=list)

    @field_validator("conditions", "medications", "immunizations", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("zipCode", mode="before")
    @classmethod
    def _zip_as_text(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    def condition_terms(self) -> list[str]:
        return [c.term for c in self.conditions if c.term and c.term.strip()]
