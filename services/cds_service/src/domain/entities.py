"""
Solace-AI CDS Service - Domain Entities.
Read-only patient snapshot and presentation-neutral card entities.
"""
from __future__ import annotations
from datetime import datetime, timezone, timedelta
from typing import Any
from uuid import uuid4
from pydantic import BaseModel, Field, field_validator

from .value_objects import (
    AllergenType, AllergySeverity, AllergyStatus, CardIndicator, ConditionStatus,
    LabStatus, MedicationStatus, Sex, VerificationStatus,
)


def _new_id() -> str:
    return str(uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so they compare with aware clock readings."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Medication(BaseModel):
    """Medication order. Identity is name-based, optionally keyed by RxNorm code."""
    medication_id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1, max_length=200)
    generic_name: str | None = Field(default=None)
    rxcui: str | None = Field(default=None, description="RxNorm concept identifier")
    dose: str = Field(default="")
    route: str = Field(default="")
    frequency: str = Field(default="")
    status: MedicationStatus = Field(default=MedicationStatus.ACTIVE)
    start_date: datetime | None = Field(default=None)
    indication: str | None = Field(default=None)

    model_config = {"frozen": True}

    @field_validator("start_date")
    @classmethod
    def validate_start_date(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status == MedicationStatus.ACTIVE

    @property
    def normalized_name(self) -> str:
        return self.name.strip().lower()

    def contains_ingredient(self, ingredient: str) -> bool:
        """Case-insensitive substring match on the medication name."""
        return ingredient.strip().lower() in self.normalized_name


class Allergy(BaseModel):
    """Documented allergy or intolerance."""
    allergen: str = Field(..., min_length=1, max_length=200)
    allergen_type: AllergenType = Field(default=AllergenType.DRUG)
    severity: AllergySeverity = Field(default=AllergySeverity.UNKNOWN)
    reaction: list[str] = Field(default_factory=list)
    onset_date: datetime | None = Field(default=None)
    status: AllergyStatus = Field(default=AllergyStatus.ACTIVE)
    verification_status: VerificationStatus = Field(default=VerificationStatus.CONFIRMED)

    model_config = {"frozen": True}

    @field_validator("onset_date")
    @classmethod
    def validate_onset_date(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status == AllergyStatus.ACTIVE


class MedicalCondition(BaseModel):
    """Coded condition from the problem list."""
    condition_id: str = Field(default_factory=_new_id)
    icd10_code: str = Field(..., min_length=1, max_length=20)
    description: str = Field(default="")
    status: ConditionStatus = Field(default=ConditionStatus.ACTIVE)
    onset_date: datetime | None = Field(default=None)

    model_config = {"frozen": True}

    @field_validator("onset_date")
    @classmethod
    def validate_onset_date(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status == ConditionStatus.ACTIVE


class LabResult(BaseModel):
    """Single lab observation."""
    test_name: str = Field(..., min_length=1)
    loinc_code: str | None = Field(default=None)
    value: float | str = Field(...)
    unit: str = Field(default="")
    result_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: LabStatus = Field(default=LabStatus.FINAL)

    model_config = {"frozen": True}

    @field_validator("result_date")
    @classmethod
    def validate_result_date(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def numeric_value(self) -> float | None:
        if isinstance(self.value, (int, float)):
            return float(self.value)
        return None


class VitalSigns(BaseModel):
    """Most recent vital sign set."""
    temperature: float | None = Field(default=None)
    systolic_bp: float | None = Field(default=None, ge=0)
    diastolic_bp: float | None = Field(default=None, ge=0)
    heart_rate: float | None = Field(default=None, ge=0)
    respiratory_rate: float | None = Field(default=None, ge=0)
    oxygen_saturation: float | None = Field(default=None, ge=0, le=100)
    height_cm: float | None = Field(default=None, gt=0)
    weight_kg: float | None = Field(default=None, gt=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    def get(self, name: str) -> float | None:
        """Look up a vital by name, accepting the short forms used in criteria."""
        aliases = {"systolic": "systolic_bp", "diastolic": "diastolic_bp",
                   "height": "height_cm", "weight": "weight_kg"}
        value = getattr(self, aliases.get(name.lower(), name.lower()), None)
        return value if isinstance(value, (int, float)) else None


class ProcedureRecord(BaseModel):
    """Completed procedure from the care history."""
    code: str = Field(..., min_length=1)
    description: str = Field(default="")
    code_system: str | None = Field(default=None)
    performed_date: datetime = Field(...)

    model_config = {"frozen": True}

    @field_validator("performed_date")
    @classmethod
    def validate_performed_date(cls, v: datetime) -> datetime:
        return as_utc(v)


class Demographics(BaseModel):
    """Patient demographics used by scoring and applicability rules."""
    age: int = Field(..., ge=0, le=130)
    sex: Sex = Field(default=Sex.OTHER)
    weight_kg: float | None = Field(default=None, gt=0)
    height_cm: float | None = Field(default=None, gt=0)

    model_config = {"frozen": True}


class PatientSnapshot(BaseModel):
    """Immutable per-call view of a patient's current clinical state."""
    patient_id: str = Field(..., min_length=1)
    demographics: Demographics
    allergies: list[Allergy] = Field(default_factory=list)
    current_medications: list[Medication] = Field(default_factory=list)
    medical_history: list[MedicalCondition] = Field(default_factory=list)
    lab_results: list[LabResult] = Field(default_factory=list)
    vital_signs: VitalSigns | None = Field(default=None)
    procedures: list[ProcedureRecord] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def age(self) -> int:
        return self.demographics.age

    @property
    def sex(self) -> Sex:
        return self.demographics.sex

    def active_medications(self) -> list[Medication]:
        return [m for m in self.current_medications if m.is_active]

    def active_allergies(self) -> list[Allergy]:
        return [a for a in self.allergies if a.is_active]

    def active_conditions(self) -> list[MedicalCondition]:
        return [c for c in self.medical_history if c.is_active]

    def has_condition(self, prefixes: list[str] | tuple[str, ...]) -> bool:
        """True if any active condition code starts with one of the prefixes."""
        return any(
            condition.icd10_code.startswith(prefix)
            for condition in self.active_conditions()
            for prefix in prefixes
        )

    def has_active_medication(self, names: list[str] | tuple[str, ...]) -> bool:
        return any(med.contains_ingredient(name) for med in self.active_medications() for name in names)

    def find_lab(self, test_name: str) -> LabResult | None:
        """Most recent final numeric lab whose name contains test_name."""
        needle = test_name.lower()
        matches = [
            lab for lab in self.lab_results
            if needle in lab.test_name.lower()
            and lab.status in (LabStatus.FINAL, LabStatus.CORRECTED)
            and lab.numeric_value is not None
        ]
        if not matches:
            return None
        return max(matches, key=lambda lab: lab.result_date)

    def get_lab_value(self, test_name: str) -> float | None:
        lab = self.find_lab(test_name)
        return lab.numeric_value if lab else None

    def last_procedure(self, codes: list[str] | tuple[str, ...]) -> ProcedureRecord | None:
        """Most recent procedure whose code starts with one of the given codes."""
        matches = [p for p in self.procedures if any(p.code.startswith(code) for code in codes)]
        if not matches:
            return None
        return max(matches, key=lambda p: p.performed_date)

    def has_procedure_within(self, codes: list[str] | tuple[str, ...], days: int | None,
                             now: datetime | None = None) -> bool:
        record = self.last_procedure(codes)
        if record is None:
            return False
        if days is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - record.performed_date <= timedelta(days=days)

    def body_measurements(self) -> tuple[float | None, float | None]:
        """Height (cm) and weight (kg), preferring demographics over vitals."""
        height = self.demographics.height_cm
        weight = self.demographics.weight_kg
        if self.vital_signs is not None:
            height = height or self.vital_signs.height_cm
            weight = weight or self.vital_signs.weight_kg
        return height, weight


class CardSource(BaseModel):
    """Attribution for a card."""
    label: str
    url: str | None = None


class CardAction(BaseModel):
    """Action a calling workflow can take from a suggestion."""
    type: str = Field(default="create")
    description: str = Field(default="")
    resource: dict[str, Any] = Field(default_factory=dict)


class Suggestion(BaseModel):
    """Suggested next step on a card."""
    label: str
    uuid: str = Field(default_factory=_new_id)
    is_recommended: bool = Field(default=False)
    actions: list[CardAction] = Field(default_factory=list)


class OverrideReason(BaseModel):
    """Coded reason a clinician may give for overriding a card."""
    code: str
    display: str


class CardLink(BaseModel):
    """Reference link attached to a card."""
    label: str
    url: str
    type: str = Field(default="absolute")


class Card(BaseModel):
    """Presentation-neutral unit summarizing a recommendation or alert."""
    uuid: str = Field(default_factory=_new_id)
    summary: str = Field(..., min_length=1)
    detail: str | None = Field(default=None)
    indicator: CardIndicator = Field(default=CardIndicator.INFO)
    source: CardSource
    suggestions: list[Suggestion] = Field(default_factory=list)
    override_reasons: list[OverrideReason] = Field(default_factory=list)
    links: list[CardLink] = Field(default_factory=list)
