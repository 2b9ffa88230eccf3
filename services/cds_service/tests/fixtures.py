"""
Test fixtures for Solace-AI CDS Service.
In-memory snapshot readers, a controllable clock and snapshot builders for use in tests only.
"""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from services.cds_service.src.domain.entities import (
    Allergy, Demographics, LabResult, MedicalCondition, Medication, PatientSnapshot,
    ProcedureRecord, VitalSigns,
)
from services.cds_service.src.domain.value_objects import AllergenType, AllergySeverity, Sex
from services.cds_service.src.exceptions import SnapshotNotFoundError, SnapshotUnavailableError
from services.cds_service.src.infrastructure.snapshot_reader import ClinicalSnapshotReader

logger = structlog.get_logger(__name__)

FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Clock whose current time tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemorySnapshotReader(ClinicalSnapshotReader):
    """Snapshot reader over a dict; listed ids fail as unavailable."""

    def __init__(self, snapshots: list[PatientSnapshot] | None = None,
                 unavailable_ids: set[str] | None = None) -> None:
        self._snapshots = {s.patient_id: s for s in snapshots or []}
        self._unavailable = set(unavailable_ids or ())
        self.requests: list[str] = []

    def add(self, snapshot: PatientSnapshot) -> None:
        self._snapshots[snapshot.patient_id] = snapshot

    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        self.requests.append(patient_id)
        if patient_id in self._unavailable:
            raise SnapshotUnavailableError(patient_id)
        snapshot = self._snapshots.get(patient_id)
        if snapshot is None:
            raise SnapshotNotFoundError(patient_id)
        logger.debug("snapshot_served", patient_id=patient_id)
        return snapshot


class ExplodingSnapshotReader(ClinicalSnapshotReader):
    """Reader that fails with an unexpected error."""

    async def get_snapshot(self, patient_id: str) -> PatientSnapshot:
        raise RuntimeError(f"connection reset while reading {patient_id}")


def med(name: str, **kwargs: Any) -> Medication:
    return Medication(name=name, **kwargs)


def allergy(allergen: str, severity: AllergySeverity = AllergySeverity.SEVERE,
            allergen_type: AllergenType = AllergenType.DRUG, **kwargs: Any) -> Allergy:
    return Allergy(allergen=allergen, severity=severity, allergen_type=allergen_type,
                   reaction=kwargs.pop("reaction", ["hives"]), **kwargs)


def condition(code: str, description: str = "", **kwargs: Any) -> MedicalCondition:
    return MedicalCondition(icd10_code=code, description=description, **kwargs)


def lab(name: str, value: float | str, days_ago: int = 10, **kwargs: Any) -> LabResult:
    return LabResult(test_name=name, value=value, result_date=FIXED_NOW - timedelta(days=days_ago), **kwargs)


def procedure(code: str, days_ago: int) -> ProcedureRecord:
    return ProcedureRecord(code=code, performed_date=FIXED_NOW - timedelta(days=days_ago))


def make_snapshot(patient_id: str = "patient-1", age: int = 55, sex: Sex = Sex.MALE, *,
                  weight_kg: float | None = None, height_cm: float | None = None,
                  medications: list[Medication] | None = None,
                  allergies: list[Allergy] | None = None,
                  conditions: list[MedicalCondition] | None = None,
                  labs: list[LabResult] | None = None,
                  vitals: VitalSigns | None = None,
                  procedures: list[ProcedureRecord] | None = None) -> PatientSnapshot:
    return PatientSnapshot(
        patient_id=patient_id,
        demographics=Demographics(age=age, sex=sex, weight_kg=weight_kg, height_cm=height_cm),
        current_medications=medications or [],
        allergies=allergies or [],
        medical_history=conditions or [],
        lab_results=labs or [],
        vital_signs=vitals,
        procedures=procedures or [],
    )


def atrial_fibrillation_patient(patient_id: str = "af-patient") -> PatientSnapshot:
    """76-year-old woman with AF and hypertension: CHA2DS2-VASc 4 (High)."""
    return make_snapshot(patient_id, age=76, sex=Sex.FEMALE,
                         conditions=[condition("I48.91", "Atrial fibrillation"),
                                     condition("I10", "Essential hypertension")])


def medication_request(name: str, resource_id: str = "med-req-1", rxcui: str | None = None) -> dict[str, Any]:
    coding = [{"system": "http://www.nlm.nih.gov/research/umls/rxnorm", "code": rxcui}] if rxcui else []
    return {
        "resourceType": "MedicationRequest",
        "id": resource_id,
        "status": "draft",
        "medicationCodeableConcept": {"text": name, "coding": coding},
        "dosageInstruction": [{
            "doseAndRate": [{"doseQuantity": {"value": 5, "unit": "mg"}}],
            "route": {"text": "oral"},
            "timing": {"repeat": {"frequency": 1}},
        }],
    }


def draft_bundle(*resources: dict[str, Any]) -> dict[str, Any]:
    return {"resourceType": "Bundle", "entry": [{"resource": r} for r in resources]}
