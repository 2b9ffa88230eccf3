"""
Solace-AI CDS Service - Hook Requests and Card Builders.
Hook request/response contracts, draft-order parsing and the card family
produced for each kind of finding.
"""
from __future__ import annotations
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field

from .allergies import AllergyAlert
from .entities import Card, CardAction, CardSource, Medication, OverrideReason, Suggestion
from .guidelines import ClinicalGuideline, GuidelineContraindications, Recommendation
from .interactions import DrugInteraction
from .quality_measures import MeasureResult
from .risk_scoring import RiskScore
from .value_objects import AllergyAlertSeverity, CardIndicator, Priority
from ..exceptions import InputInvalidError

WEIGHT_BASED_MEDICATIONS = ("warfarin", "heparin", "chemotherapy")
CONTRAST_KEYWORDS = ("contrast", "iodinated")
FALLBACK_SUMMARY = "Clinical decision support temporarily unavailable"


class HookType(str, Enum):
    MEDICATION_PRESCRIBE = "medication-prescribe"
    ORDER_SELECT = "order-select"
    PATIENT_VIEW = "patient-view"


class HookRequest(BaseModel):
    """Workflow hook invocation from a calling layer."""
    hook: str
    hook_instance: str
    user_id: str | None = None
    patient_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    def validate_request(self) -> HookType:
        """Reject requests missing required identifiers before any lookup."""
        if not self.hook_instance:
            raise InputInvalidError("Hook request requires a hook instance", field="hook_instance")
        if not self.resolved_patient_id:
            raise InputInvalidError("Hook request requires a patient id", field="patient_id")
        try:
            return HookType(self.hook)
        except ValueError as e:
            raise InputInvalidError(f"Unsupported hook type: {self.hook}", field="hook") from e

    @property
    def resolved_patient_id(self) -> str | None:
        return self.patient_id or self.context.get("patientId") or self.context.get("patient_id")


class HookResponse(BaseModel):
    cards: list[Card] = Field(default_factory=list)
    system_actions: list[dict[str, Any]] = Field(default_factory=list)


def fhir_to_medication(resource: dict[str, Any]) -> Medication:
    dosage = (resource.get("dosageInstruction") or [{}])[0]
    dose_quantity = ((dosage.get("doseAndRate") or [{}])[0]).get("doseQuantity") or {}
    frequency = ((dosage.get("timing") or {}).get("repeat") or {}).get("frequency")
    concept = resource.get("medicationCodeableConcept") or {}
    rxcui = next((c.get("code") for c in concept.get("coding", [])
                  if "rxnorm" in str(c.get("system", "")).lower()), None)
    fields: dict[str, Any] = {
        "name": concept.get("text") or "Unknown",
        "rxcui": rxcui,
        "dose": str(dose_quantity.get("value", "")),
        "route": str((dosage.get("route") or {}).get("text", "")),
        "frequency": str(frequency) if frequency is not None else "",
    }
    if resource.get("id"):
        fields["medication_id"] = str(resource["id"])
    return Medication(**fields)


def draft_resources(context: dict[str, Any]) -> list[dict[str, Any]]:
    draft = context.get("draftOrders") or context.get("draft") or {}
    return [entry["resource"] for entry in draft.get("entry", []) if isinstance(entry.get("resource"), dict)]


def extract_medications_from_draft(context: dict[str, Any]) -> list[Medication]:
    return [fhir_to_medication(r) for r in draft_resources(context)
            if r.get("resourceType") == "MedicationRequest"]


def extract_selected_orders(context: dict[str, Any]) -> list[dict[str, Any]]:
    """Draft resources named in the selections list; all drafts when nothing is selected."""
    resources = draft_resources(context)
    selections = set(context.get("selections") or [])
    if not selections:
        return resources
    return [r for r in resources
            if r.get("id") in selections or f"{r.get('resourceType')}/{r.get('id')}" in selections]


def is_contrast_order(resource: dict[str, Any]) -> bool:
    if resource.get("resourceType") not in ("ServiceRequest", "ImagingStudy", "ProcedureRequest"):
        return False
    text = str((resource.get("code") or {}).get("text", "")).lower()
    return any(keyword in text for keyword in CONTRAST_KEYWORDS)


def is_weight_based_medication(medication: Medication) -> bool:
    return any(medication.contains_ingredient(name) for name in WEIGHT_BASED_MEDICATIONS)


def filter_cards(cards: list[Card]) -> list[Card]:
    """Drop repeated summaries, then order critical > warning > info."""
    seen: set[str] = set()
    unique: list[Card] = []
    for card in cards:
        if card.summary in seen:
            continue
        seen.add(card.summary)
        unique.append(card)
    return sorted(unique, key=lambda c: -c.indicator.rank)


def fallback_response(source_label: str) -> HookResponse:
    return HookResponse(cards=[Card(summary=FALLBACK_SUMMARY, indicator=CardIndicator.WARNING,
                                    source=CardSource(label=source_label))])


def _indicator_for_interaction(interaction: DrugInteraction) -> CardIndicator:
    return interaction.severity.to_alert_severity().to_indicator()


def interaction_card(interaction: DrugInteraction) -> Card:
    return Card(
        summary=f"{interaction.severity.value} drug interaction: {interaction.drug1} + {interaction.drug2}",
        detail=f"{interaction.effect}\n\nManagement: {interaction.management}",
        indicator=_indicator_for_interaction(interaction),
        source=CardSource(label="Drug Interaction Database"),
        suggestions=[Suggestion(label="Review interaction details", actions=[CardAction(
            type="create", description="Open interaction details",
            resource={"resourceType": "Communication", "category": "drug-interaction-review",
                      "payload": interaction.model_dump(mode="json")},
        )])],
        override_reasons=[
            OverrideReason(code="patient-tolerates", display="Patient tolerates combination well"),
            OverrideReason(code="benefit-outweighs-risk", display="Benefit outweighs risk"),
            OverrideReason(code="monitoring-planned", display="Appropriate monitoring planned"),
        ],
    )


def contraindication_card(finding: DrugInteraction) -> Card:
    return Card(
        summary=f"Contraindication: {finding.drug1} with {finding.drug2}",
        detail=f"{finding.effect}\n\nManagement: {finding.management}",
        indicator=_indicator_for_interaction(finding),
        source=CardSource(label="Drug Interaction Database"),
        override_reasons=[
            OverrideReason(code="benefit-outweighs-risk", display="Benefit outweighs risk"),
            OverrideReason(code="monitoring-planned", display="Appropriate monitoring planned"),
        ],
    )


def allergy_card(alert: AllergyAlert) -> Card:
    return Card(
        summary=f"Allergy Alert: {alert.allergen}",
        detail=alert.message,
        indicator=CardIndicator.CRITICAL if alert.severity == AllergyAlertSeverity.HIGH else CardIndicator.WARNING,
        source=CardSource(label="Allergy Database"),
        suggestions=[Suggestion(label="Select alternative medication", actions=[CardAction(
            type="create", description="Open alternative medication selector",
            resource={"resourceType": "MedicationRequest", "status": "draft", "intent": "order"},
        )])],
        override_reasons=[
            OverrideReason(code="allergy-unconfirmed", display="Allergy status unconfirmed"),
            OverrideReason(code="no-alternative", display="No suitable alternative available"),
            OverrideReason(code="life-threatening-indication", display="Life-threatening indication"),
        ],
    )


def weight_required_card(medication: Medication) -> Card:
    return Card(
        summary="Weight required for safe dosing",
        detail=f"{medication.name} requires weight-based dosing. Please record patient weight.",
        indicator=CardIndicator.WARNING, source=CardSource(label="Dosing Safety"),
    )


def dosing_card(medication: Medication, message: str, indicator: CardIndicator = CardIndicator.WARNING) -> Card:
    return Card(summary=f"Dosing review: {medication.name}", detail=message, indicator=indicator,
                source=CardSource(label="Dosing Safety"))


def duplicate_therapy_card(proposed: Medication, duplicates: list[str]) -> Card:
    return Card(
        summary="Potential duplicate therapy detected",
        detail=(f"Patient is already taking {', '.join(duplicates)} which may have similar "
                "therapeutic effects."),
        indicator=CardIndicator.WARNING, source=CardSource(label="Duplicate Therapy Check"),
        suggestions=[Suggestion(label="Review current medications", actions=[CardAction(
            type="create", description="Open medication review",
            resource={"resourceType": "Task", "code": "medication-review", "for": proposed.name},
        )])],
        override_reasons=[
            OverrideReason(code="intentional-combination", display="Combination is intentional"),
            OverrideReason(code="transitioning-therapy", display="Transitioning between therapies"),
        ],
    )


def guideline_card(guideline: ClinicalGuideline) -> Card:
    return Card(
        summary=f"Clinical Guideline: {guideline.title}",
        detail="\n".join(r.description for r in guideline.recommendations) or None,
        indicator=CardIndicator.INFO, source=CardSource(label=guideline.organization),
    )


def guideline_contraindication_cards(medication: Medication,
                                     findings: GuidelineContraindications) -> list[Card]:
    cards = [
        Card(summary=f"Guideline contraindication: {medication.name}", detail=text,
             indicator=CardIndicator.CRITICAL, source=CardSource(label="Clinical Guidelines"))
        for text in findings.contraindications
    ]
    cards.extend(
        Card(summary=f"Guideline caution: {medication.name}", detail=text,
             indicator=CardIndicator.WARNING, source=CardSource(label="Clinical Guidelines"))
        for text in findings.warnings
    )
    cards.extend(dosing_card(medication, text) for text in findings.adjustments)
    return cards


def preventive_care_card(recommendation: Recommendation) -> Card:
    actions = "; ".join(
        f"{a.description} ({a.frequency})" if a.frequency else a.description for a in recommendation.actions
    )
    return Card(
        summary=f"Preventive care due: {recommendation.title}",
        detail=f"{recommendation.description}. {actions}".strip(),
        indicator=CardIndicator.WARNING if recommendation.priority == Priority.HIGH else CardIndicator.INFO,
        source=CardSource(label="Preventive Care"),
        override_reasons=[
            OverrideReason(code="already-addressed", display="Already addressed"),
            OverrideReason(code="patient-refuses", display="Patient refuses"),
        ],
    )


def quality_gap_card(result: MeasureResult) -> Card:
    due = f" Due by {result.due_date.date().isoformat()}." if result.due_date else ""
    return Card(
        summary=f"Quality Measure Gap: {result.measure_name}",
        detail=f"{result.gap_description}.{due}\n" + "\n".join(result.recommendations),
        indicator=CardIndicator.WARNING if result.priority == Priority.HIGH else CardIndicator.INFO,
        source=CardSource(label="Quality Measures"),
    )


def risk_score_card(score: RiskScore) -> Card:
    return Card(
        summary=f"{score.score_name}: {score.risk.value} Risk",
        detail=f"{score.interpretation} (score {score.score:g})",
        indicator=score.risk.to_alert_severity().to_indicator(),
        source=CardSource(label="Risk Scoring"),
    )


def contrast_metformin_card(medication: Medication) -> Card:
    return Card(
        summary="Iodinated contrast with metformin",
        detail=(f"Patient is taking {medication.name}. Hold metformin at the time of contrast "
                "administration and for 48 hours after; check renal function before restarting."),
        indicator=CardIndicator.WARNING, source=CardSource(label="Order Safety"),
    )
