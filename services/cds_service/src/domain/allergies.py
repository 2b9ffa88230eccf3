"""
Solace-AI CDS Service - Allergy Alert Checker.
Direct, cross-reactivity, drug-class and food-drug allergy matching.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4
from pydantic import BaseModel, Field
import structlog

from .entities import Allergy, Medication, PatientSnapshot
from .value_objects import (
    AllergenType, AllergyAlertSeverity, AllergySeverity, VerificationStatus,
)
from ..infrastructure.reference_data import ReferenceData, build_static_reference_data

logger = structlog.get_logger(__name__)

_OUTDATED_AFTER_YEARS = 10


class AllergyMatchType(str, Enum):
    """How a medication was linked to an allergy."""
    DIRECT = "direct"
    CROSS_REACTIVITY = "cross-reactivity"
    DRUG_CLASS = "drug-class"
    FOOD_DRUG = "food-drug"


class AllergyAlert(BaseModel):
    """Allergy finding for a proposed medication."""
    alert_id: str = Field(default_factory=lambda: str(uuid4()))
    allergen: str
    medication: str
    severity: AllergyAlertSeverity
    match_type: AllergyMatchType
    cross_reactivity: bool = Field(default=False)
    mechanism: str | None = Field(default=None)
    likelihood: int | None = Field(default=None, ge=0, le=100)
    reaction: list[str] = Field(default_factory=list)
    message: str
    recommendation: str

    model_config = {"frozen": True}


class AllergyProfile(BaseModel):
    """Summary of a patient's allergy exposure risk."""
    patient_id: str
    active_allergies: list[Allergy] = Field(default_factory=list)
    risk_medications: list[str] = Field(default_factory=list)
    recommended_precautions: list[str] = Field(default_factory=list)
    alert_level: AllergyAlertSeverity = Field(default=AllergyAlertSeverity.LOW)


class AllergyValidationResult(BaseModel):
    """Completeness review of documented allergies."""
    valid: bool
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class AlternativeSafety(str, Enum):
    SAFE = "Safe"
    CAUTION = "Caution"
    AVOID = "Avoid"


class AlternativeSuggestion(BaseModel):
    """Therapeutic alternative ranked against the patient's allergies."""
    name: str
    therapeutic_class: str | None = None
    safety: AlternativeSafety
    reason: str


def sort_allergy_alerts(alerts: list[AllergyAlert]) -> list[AllergyAlert]:
    """Stable sort High > Medium > Low."""
    return sorted(alerts, key=lambda a: -a.severity.rank)


class AllergyChecker:
    """Matches medications against documented allergies using the reference tables."""

    def __init__(self, reference_data: ReferenceData | None = None,
                 severity_threshold: AllergyAlertSeverity = AllergyAlertSeverity.MEDIUM) -> None:
        self._data = reference_data or build_static_reference_data()
        self._threshold = severity_threshold
        logger.info("allergy_checker_initialized", threshold=severity_threshold.value,
                    cross_reactivity_allergens=len(self._data.cross_reactivity))

    @property
    def severity_threshold(self) -> AllergyAlertSeverity:
        return self._threshold

    def check_allergies(self, medication: Medication, allergies: list[Allergy],
                        threshold: AllergyAlertSeverity | None = None) -> list[AllergyAlert]:
        """Findings at or above the alert threshold, most severe first."""
        threshold = threshold or self._threshold
        findings = self.find_allergy_matches(medication, allergies)
        return [a for a in findings if a.severity.rank >= threshold.rank]

    def find_allergy_matches(self, medication: Medication, allergies: list[Allergy]) -> list[AllergyAlert]:
        """Every allergy match for the medication, unfiltered and sorted by severity."""
        active = [a for a in allergies if a.is_active
                  and a.verification_status != VerificationStatus.ENTERED_IN_ERROR]
        alerts: list[AllergyAlert] = []
        for allergy in active:
            if self.is_direct_match(medication.name, allergy.allergen):
                alerts.append(self._direct_alert(medication, allergy))
                continue
            alerts.extend(self._cross_reactivity_alerts(medication, allergy))
            alerts.extend(self._drug_class_alerts(medication, allergy))
        alerts.extend(self._food_drug_alerts(medication, active))
        return sort_allergy_alerts(alerts)

    @staticmethod
    def is_direct_match(medication_name: str, allergen: str) -> bool:
        med = medication_name.strip().lower()
        allergen_name = allergen.strip().lower()
        return bool(med and allergen_name) and (allergen_name in med or med in allergen_name)

    def has_cross_reactivity(self, medication: Medication, allergen: str) -> bool:
        return any(self._matching_rules(medication, allergen))

    def get_cross_reactive_medications(self, allergen: str) -> list[str]:
        allergen_name = allergen.strip().lower()
        drugs: list[str] = []
        for key, rules in self._data.cross_reactivity.items():
            if key in allergen_name:
                for rule in rules:
                    drugs.extend(d for d in rule.cross_reactive_with if d not in drugs)
        return drugs

    def get_patient_allergy_profile(self, snapshot: PatientSnapshot) -> AllergyProfile:
        active = snapshot.active_allergies()
        risk_medications: list[str] = []
        for allergy in active:
            if allergy.allergen_type == AllergenType.DRUG:
                risk_medications.extend(
                    d for d in self.get_cross_reactive_medications(allergy.allergen)
                    if d not in risk_medications
                )
        precautions: list[str] = []
        if any(a.severity == AllergySeverity.SEVERE for a in active):
            precautions.extend(["Emergency medications readily available",
                                "Consider allergy specialist consultation"])
        if any(a.allergen_type == AllergenType.DRUG and a.severity != AllergySeverity.MILD for a in active):
            precautions.extend(["Enhanced medication verification protocols",
                                "Patient education on allergy management"])
        if any(a.severity == AllergySeverity.SEVERE for a in active):
            level = AllergyAlertSeverity.HIGH
        elif any(a.severity == AllergySeverity.MODERATE for a in active):
            level = AllergyAlertSeverity.MEDIUM
        else:
            level = AllergyAlertSeverity.LOW
        return AllergyProfile(patient_id=snapshot.patient_id, active_allergies=active,
                              risk_medications=risk_medications,
                              recommended_precautions=precautions, alert_level=level)

    def validate_allergy_information(self, allergies: list[Allergy],
                                     now: datetime | None = None) -> AllergyValidationResult:
        now = now or datetime.now(timezone.utc)
        issues: list[str] = []
        suggestions: list[str] = []
        for allergy in allergies:
            if not allergy.reaction:
                issues.append(f"Missing reaction details for {allergy.allergen}")
                suggestions.append(f"Specify reaction symptoms for {allergy.allergen}")
            if allergy.severity == AllergySeverity.UNKNOWN:
                issues.append(f"Unknown severity for {allergy.allergen}")
                suggestions.append(f"Determine severity level for {allergy.allergen}")
            if allergy.verification_status == VerificationStatus.UNCONFIRMED:
                suggestions.append(f"Consider verifying allergy to {allergy.allergen}")
            if allergy.onset_date is not None:
                years = int((now - allergy.onset_date).days / 365)
                if years > _OUTDATED_AFTER_YEARS:
                    suggestions.append(
                        f"Consider re-evaluating allergy to {allergy.allergen} (reported {years} years ago)"
                    )
        return AllergyValidationResult(valid=not issues, issues=issues, suggestions=suggestions)

    def suggest_alternatives(self, medication: Medication,
                             allergies: list[Allergy]) -> list[AlternativeSuggestion]:
        """Same-indication alternatives, safest first; candidates with a high-severity match are dropped."""
        drug_class = self._allergy_class_of(medication.name) or self._data.therapeutic_class_of(medication.name)
        if drug_class is None:
            return []
        suggestions: list[AlternativeSuggestion] = []
        for name in self._data.therapeutic_alternatives.get(drug_class, ()):
            candidate = Medication(name=name)
            findings = self.find_allergy_matches(candidate, allergies)
            if any(f.severity == AllergyAlertSeverity.HIGH for f in findings):
                continue
            if findings:
                suggestions.append(AlternativeSuggestion(
                    name=name, therapeutic_class=self._data.therapeutic_class_of(name),
                    safety=AlternativeSafety.CAUTION,
                    reason=f"Lower-severity match with {findings[0].allergen}",
                ))
            else:
                suggestions.append(AlternativeSuggestion(
                    name=name, therapeutic_class=self._data.therapeutic_class_of(name),
                    safety=AlternativeSafety.SAFE, reason="No documented allergy conflicts",
                ))
        return sorted(suggestions, key=lambda s: s.safety != AlternativeSafety.SAFE)

    def _direct_alert(self, medication: Medication, allergy: Allergy) -> AllergyAlert:
        reactions = ", ".join(allergy.reaction) or "not documented"
        return AllergyAlert(
            allergen=allergy.allergen, medication=medication.name,
            severity=AllergyAlertSeverity.from_allergy_severity(allergy.severity),
            match_type=AllergyMatchType.DIRECT, reaction=list(allergy.reaction),
            message=(f"Patient has a documented {allergy.severity.value.lower()} allergy to "
                     f"{allergy.allergen}. Reactions include: {reactions}."),
            recommendation="Do not administer. Select alternative medication.",
        )

    def _matching_rules(self, medication: Medication, allergen: str):
        allergen_name = allergen.strip().lower()
        for key, rules in self._data.cross_reactivity.items():
            if key not in allergen_name:
                continue
            for rule in rules:
                if any(medication.contains_ingredient(drug) for drug in rule.cross_reactive_with):
                    yield rule

    def _cross_reactivity_alerts(self, medication: Medication, allergy: Allergy) -> list[AllergyAlert]:
        return [
            AllergyAlert(
                allergen=allergy.allergen, medication=medication.name, severity=rule.severity,
                match_type=AllergyMatchType.CROSS_REACTIVITY, cross_reactivity=True,
                mechanism=rule.mechanism, likelihood=rule.likelihood, reaction=list(allergy.reaction),
                message=(f"Potential cross-reactivity with {allergy.allergen} allergy. "
                         f"{rule.mechanism}. Likelihood: {rule.likelihood}%."),
                recommendation=("Consider alternative medication" if rule.severity == AllergyAlertSeverity.HIGH
                                else "Use with caution and monitoring"),
            )
            for rule in self._matching_rules(medication, allergy.allergen)
        ]

    def _drug_class_alerts(self, medication: Medication, allergy: Allergy) -> list[AllergyAlert]:
        alerts: list[AllergyAlert] = []
        allergen_name = allergy.allergen.lower()
        for class_name, drugs in self._data.allergy_drug_classes.items():
            allergen_in_class = any(drug in allergen_name for drug in drugs)
            medication_in_class = any(medication.contains_ingredient(drug) for drug in drugs)
            if allergen_in_class and medication_in_class:
                alerts.append(AllergyAlert(
                    allergen=allergy.allergen, medication=medication.name,
                    severity=AllergyAlertSeverity.MEDIUM, match_type=AllergyMatchType.DRUG_CLASS,
                    cross_reactivity=True, mechanism=f"Same drug class ({class_name})",
                    reaction=list(allergy.reaction),
                    message=f"{medication.name} belongs to the same drug class ({class_name}) as {allergy.allergen}.",
                    recommendation="Use with caution. Consider alternative from different drug class.",
                ))
        return alerts

    def _food_drug_alerts(self, medication: Medication, allergies: list[Allergy]) -> list[AllergyAlert]:
        alerts: list[AllergyAlert] = []
        for allergy in allergies:
            if allergy.allergen_type != AllergenType.FOOD:
                continue
            drugs = self._data.food_drug_interactions.get(allergy.allergen.strip().lower(), ())
            if any(medication.contains_ingredient(drug) for drug in drugs):
                alerts.append(AllergyAlert(
                    allergen=allergy.allergen, medication=medication.name,
                    severity=AllergyAlertSeverity.MEDIUM, match_type=AllergyMatchType.FOOD_DRUG,
                    cross_reactivity=True, reaction=list(allergy.reaction),
                    message=f"Patient has {allergy.allergen} allergy. {medication.name} may cause cross-reaction.",
                    recommendation="Consider pre-medication or alternative agent if high risk.",
                ))
        return alerts

    def _allergy_class_of(self, medication_name: str) -> str | None:
        name = medication_name.lower()
        for class_name, drugs in self._data.allergy_drug_classes.items():
            if any(drug in name for drug in drugs):
                return class_name
        return None
