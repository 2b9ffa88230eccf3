"""
Solace-AI CDS Service - Clinical Guidelines Engine.
Guideline applicability, preventive care, treatment recommendations and
guideline-based contraindication checks.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import structlog

from .criteria import evaluate_criteria
from .entities import MedicalCondition, Medication, PatientSnapshot
from .value_objects import ClinicalCriteria, Comparator, CriteriaType, Priority, Sex
from ..infrastructure.reference_data import ReferenceData, build_static_reference_data

logger = structlog.get_logger(__name__)


class RecommendedAction(BaseModel):
    """Concrete step attached to a recommendation."""
    action_type: str = Field(..., description="Order, Monitoring, Medication, Education or Referral")
    description: str
    frequency: str | None = None
    priority: Priority = Field(default=Priority.MEDIUM)


class Recommendation(BaseModel):
    """Guideline recommendation with applicability criteria."""
    recommendation_id: str
    title: str
    description: str
    strength: str = Field(default="Strong")
    category: str = Field(default="Treatment")
    applicability: list[ClinicalCriteria] = Field(default_factory=list)
    actions: list[RecommendedAction] = Field(default_factory=list)
    care_codes: list[str] = Field(default_factory=list, description="Procedure codes that satisfy the recommendation")
    interval_days: int | None = Field(default=None, ge=1)
    overdue: bool | None = Field(default=None, description="Care-history status; None when not tracked")

    model_config = {"frozen": True}

    @property
    def priority(self) -> Priority:
        """Highest priority among the recommendation's actions."""
        order = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}
        if not self.actions:
            return Priority.LOW
        return max((a.priority for a in self.actions), key=lambda p: order[p])


class ClinicalGuideline(BaseModel):
    """Published guideline mapped to conditions and medications."""
    guideline_id: str
    title: str
    organization: str
    version: str
    last_updated: datetime
    conditions: list[str] = Field(default_factory=list)
    evidence_level: str = Field(default="A")
    recommendations: list[Recommendation] = Field(default_factory=list)

    model_config = {"frozen": True}


class GuidelineContraindications(BaseModel):
    """Guideline-based concerns for prescribing a medication."""
    contraindications: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    adjustments: list[str] = Field(default_factory=list)

    @property
    def has_findings(self) -> bool:
        return bool(self.contraindications or self.warnings or self.adjustments)


@dataclass(frozen=True)
class _DrugRule:
    drug: str
    reason: str
    condition: str | None = None


def _age(op: Comparator, years: int) -> ClinicalCriteria:
    return ClinicalCriteria(type=CriteriaType.AGE, operator=op, value=years, unit="years")


def _gender(sex: Sex) -> ClinicalCriteria:
    return ClinicalCriteria(type=CriteriaType.GENDER, value=sex.value)


def _condition(*codes: str) -> ClinicalCriteria:
    return ClinicalCriteria(type=CriteriaType.CONDITION, code_system="ICD-10", codes=list(codes))


def _code_matches(icd10_code: str, guideline_code: str) -> bool:
    """Exact match, or same ICD-10 category (the part before the dot)."""
    return icd10_code == guideline_code or icd10_code.startswith(guideline_code.split(".")[0])


class GuidelineEngine:
    """In-memory guideline repository and recommendation generator."""

    def __init__(self, reference_data: ReferenceData | None = None) -> None:
        self._data = reference_data or build_static_reference_data()
        self._guidelines: dict[str, ClinicalGuideline] = {}
        self._condition_guidelines: dict[str, list[str]] = {}
        self._medication_guidelines: dict[str, list[str]] = {}
        self._preventive = self._load_preventive_recommendations()
        self._pediatric = self._load_pediatric_contraindications()
        self._geriatric = self._load_geriatric_warnings()
        self._condition_rules = self._load_condition_contraindications()
        self._load_guidelines()
        logger.info("guideline_engine_initialized", guidelines=len(self._guidelines),
                    preventive_recommendations=len(self._preventive))

    @property
    def guidelines(self) -> list[ClinicalGuideline]:
        return list(self._guidelines.values())

    def get_guideline(self, guideline_id: str) -> ClinicalGuideline | None:
        return self._guidelines.get(guideline_id)

    def get_applicable_guidelines(self, medication: Medication,
                                  snapshot: PatientSnapshot) -> list[ClinicalGuideline]:
        """Guidelines linked to the medication whose conditions the patient has."""
        ids = self._medication_guidelines.get(medication.normalized_name, [])
        if not ids:
            ids = [gid for name, gids in self._medication_guidelines.items()
                   if medication.contains_ingredient(name) for gid in gids]
        return [self._guidelines[gid] for gid in dict.fromkeys(ids)
                if self.is_guideline_applicable(self._guidelines[gid], snapshot)]

    def get_guidelines_for_conditions(self, conditions: list[MedicalCondition],
                                      snapshot: PatientSnapshot) -> list[ClinicalGuideline]:
        found: dict[str, ClinicalGuideline] = {}
        for condition in conditions:
            if not condition.is_active:
                continue
            for code, gids in self._condition_guidelines.items():
                if not _code_matches(condition.icd10_code, code):
                    continue
                for gid in gids:
                    guideline = self._guidelines[gid]
                    if gid not in found and self.is_guideline_applicable(guideline, snapshot):
                        found[gid] = guideline
        return list(found.values())

    @staticmethod
    def is_guideline_applicable(guideline: ClinicalGuideline, snapshot: PatientSnapshot) -> bool:
        """Active condition matching a guideline code exactly or by its category prefix."""
        return any(
            _code_matches(condition.icd10_code, code)
            for condition in snapshot.active_conditions()
            for code in guideline.conditions
        )

    def get_preventive_care_recommendations(self, snapshot: PatientSnapshot,
                                            now: datetime | None = None) -> list[Recommendation]:
        """Applicable screening recommendations, each marked with its care-history status."""
        now = now or datetime.now(timezone.utc)
        return [
            rec.model_copy(update={"overdue": self.is_preventive_care_overdue(rec, snapshot, now)})
            for rec in self._preventive
            if evaluate_criteria(rec.applicability, snapshot, now)
        ]

    def get_overdue_preventive_care(self, snapshot: PatientSnapshot,
                                    now: datetime | None = None) -> list[Recommendation]:
        return [r for r in self.get_preventive_care_recommendations(snapshot, now) if r.overdue]

    @staticmethod
    def is_preventive_care_overdue(recommendation: Recommendation, snapshot: PatientSnapshot,
                                   now: datetime | None = None) -> bool:
        """Overdue when no qualifying procedure was performed within the recommended interval."""
        if not recommendation.care_codes:
            return False
        return not snapshot.has_procedure_within(recommendation.care_codes,
                                                 recommendation.interval_days, now)

    def get_treatment_recommendations(self, condition: MedicalCondition,
                                      snapshot: PatientSnapshot) -> list[Recommendation]:
        recommendations: list[Recommendation] = []
        if condition.icd10_code.startswith("E11"):
            recommendations.extend([
                Recommendation(
                    recommendation_id="diabetes-hba1c-monitoring", title="HbA1c Monitoring",
                    description="Regular HbA1c monitoring for diabetes management",
                    category="Monitoring", applicability=[_condition("E11")],
                    actions=[RecommendedAction(action_type="Order", description="HbA1c",
                                               frequency="Every 3-6 months", priority=Priority.HIGH)],
                ),
                Recommendation(
                    recommendation_id="diabetes-metformin", title="First-line Metformin Therapy",
                    description="Metformin is recommended as first-line therapy for type 2 diabetes",
                    category="Treatment", applicability=[_condition("E11")],
                    actions=[RecommendedAction(action_type="Medication",
                                               description="Initiate metformin if no contraindications",
                                               priority=Priority.HIGH)],
                ),
            ])
        if condition.icd10_code.startswith("I10"):
            recommendations.extend([
                Recommendation(
                    recommendation_id="hypertension-lifestyle", title="Lifestyle Modifications",
                    description="Lifestyle modifications including diet, exercise, and weight management",
                    category="Prevention", applicability=[_condition("I10")],
                    actions=[RecommendedAction(action_type="Education",
                                               description="Patient education on lifestyle modifications",
                                               priority=Priority.HIGH)],
                ),
                Recommendation(
                    recommendation_id="hypertension-medication", title="Antihypertensive Therapy",
                    description="Pharmacological treatment based on blood pressure targets",
                    category="Treatment", applicability=[_condition("I10")],
                    actions=[RecommendedAction(action_type="Medication",
                                               description="Initiate ACE inhibitor or ARB as first-line therapy",
                                               priority=Priority.HIGH)],
                ),
            ])
        return [r for r in recommendations if evaluate_criteria(r.applicability, snapshot)]

    def check_guideline_contraindications(self, medication: Medication,
                                          snapshot: PatientSnapshot) -> GuidelineContraindications:
        result = GuidelineContraindications()
        if snapshot.age < 18:
            result.contraindications.extend(
                f"Contraindicated in pediatric patients: {rule.reason}"
                for rule in self._pediatric if medication.contains_ingredient(rule.drug)
            )
        if snapshot.age >= 65:
            result.warnings.extend(
                f"Use with caution in elderly: {rule.reason}"
                for rule in self._geriatric if medication.contains_ingredient(rule.drug)
            )
        for condition in snapshot.active_conditions():
            for rule in self._condition_rules:
                if (condition.icd10_code.startswith(rule.condition)
                        and self._data.drug_matches(medication.name, rule.drug)):
                    label = condition.description or condition.icd10_code
                    result.contraindications.append(f"Contraindicated with {label}: {rule.reason}")
        result.adjustments.extend(self._dose_adjustments(medication, snapshot))
        return result

    def get_quality_improvement_recommendations(self, snapshot: PatientSnapshot) -> list[Recommendation]:
        recommendations: list[Recommendation] = []
        if len(snapshot.current_medications) > 3:
            recommendations.append(Recommendation(
                recommendation_id="medication-adherence", title="Medication Adherence Assessment",
                description="Assess and improve medication adherence for patients on multiple medications",
                strength="Weak", category="Monitoring",
                actions=[RecommendedAction(action_type="Education",
                                           description="Medication adherence counseling")],
            ))
        if len(snapshot.active_medications()) > 5:
            recommendations.append(Recommendation(
                recommendation_id="polypharmacy-review", title="Polypharmacy Review",
                description="Regular review of medications to minimize polypharmacy risks",
                category="Monitoring",
                actions=[RecommendedAction(action_type="Referral",
                                           description="Pharmacist consultation for medication review")],
            ))
        return recommendations

    def _dose_adjustments(self, medication: Medication, snapshot: PatientSnapshot) -> list[str]:
        adjustments: list[str] = []
        creatinine = snapshot.get_lab_value("creatinine")
        if creatinine is not None and creatinine > 1.5:
            if any(medication.contains_ingredient(d) for d in ("metformin", "gabapentin", "digoxin")):
                adjustments.append(
                    f"Consider dose reduction due to elevated creatinine ({creatinine:g} mg/dL)"
                )
        alt = snapshot.get_lab_value("alt") or snapshot.get_lab_value("alanine")
        if alt is not None and alt > 40:
            if any(self._data.drug_matches(medication.name, d) for d in ("acetaminophen", "statins")):
                adjustments.append(
                    f"Consider dose reduction due to elevated liver enzymes (ALT: {alt:g} U/L)"
                )
        return adjustments

    def _load_guidelines(self) -> None:
        diabetes = ClinicalGuideline(
            guideline_id="ada-diabetes-2023", title="Standards of Medical Care in Diabetes",
            organization="American Diabetes Association", version="2023",
            last_updated=datetime(2023, 1, 1, tzinfo=timezone.utc), conditions=["E11.9"],
            recommendations=[Recommendation(
                recommendation_id="diabetes-hba1c-target", title="HbA1c Target",
                description="HbA1c target of <7% for most adults with diabetes",
                applicability=[_condition("E11.9")],
                actions=[RecommendedAction(action_type="Monitoring",
                                           description="Monitor HbA1c every 3-6 months",
                                           priority=Priority.HIGH)],
            )],
        )
        hypertension = ClinicalGuideline(
            guideline_id="aha-acc-hypertension-2017",
            title="High Blood Pressure Clinical Practice Guideline",
            organization="American Heart Association/American College of Cardiology", version="2017",
            last_updated=datetime(2017, 11, 13, tzinfo=timezone.utc), conditions=["I10"],
            recommendations=[Recommendation(
                recommendation_id="hypertension-bp-target", title="Blood Pressure Target",
                description="Blood pressure target <130/80 mmHg for most adults",
                applicability=[_condition("I10")],
                actions=[RecommendedAction(action_type="Monitoring",
                                           description="Regular blood pressure monitoring",
                                           priority=Priority.HIGH)],
            )],
        )
        for guideline in (diabetes, hypertension):
            self._guidelines[guideline.guideline_id] = guideline
        self._condition_guidelines = {"E11.9": [diabetes.guideline_id], "I10": [hypertension.guideline_id]}
        self._medication_guidelines = {"metformin": [diabetes.guideline_id],
                                       "lisinopril": [hypertension.guideline_id]}

    def _load_preventive_recommendations(self) -> list[Recommendation]:
        return [
            Recommendation(
                recommendation_id="colorectal-screening", title="Colorectal Cancer Screening",
                description="Regular screening for colorectal cancer is recommended for adults aged 50 to 75",
                category="Screening",
                applicability=[_age(Comparator.GE, 50), _age(Comparator.LE, 75)],
                actions=[RecommendedAction(action_type="Order",
                                           description="Order colonoscopy or alternative screening method",
                                           frequency="Every 10 years", priority=Priority.MEDIUM)],
                care_codes=["45378", "45380", "45385", "G0105", "G0121"], interval_days=3650,
            ),
            Recommendation(
                recommendation_id="cervical-screening", title="Cervical Cancer Screening",
                description="Cervical cancer screening with Pap smear for women aged 21-65",
                category="Screening",
                applicability=[_gender(Sex.FEMALE), _age(Comparator.GE, 21), _age(Comparator.LE, 65)],
                actions=[RecommendedAction(action_type="Order", description="Pap smear",
                                           frequency="Every 3 years", priority=Priority.HIGH)],
                care_codes=["88142", "88175", "Q0091"], interval_days=1095,
            ),
            Recommendation(
                recommendation_id="mammography-screening", title="Breast Cancer Screening",
                description="Mammography screening for women aged 40 and older",
                category="Screening",
                applicability=[_gender(Sex.FEMALE), _age(Comparator.GE, 40)],
                actions=[RecommendedAction(action_type="Order", description="Mammography",
                                           frequency="Annually", priority=Priority.HIGH)],
                care_codes=["77067", "77057", "77052"], interval_days=365,
            ),
            Recommendation(
                recommendation_id="cardiovascular-risk", title="Cardiovascular Risk Assessment",
                description=("Assess cardiovascular risk factors including blood pressure, "
                             "cholesterol, and diabetes screening"),
                category="Prevention",
                applicability=[_age(Comparator.GE, 40)],
                actions=[
                    RecommendedAction(action_type="Order", description="Lipid panel",
                                      frequency="Every 5 years", priority=Priority.MEDIUM),
                    RecommendedAction(action_type="Monitoring", description="Blood pressure monitoring",
                                      frequency="At each visit", priority=Priority.HIGH),
                ],
                care_codes=["80061"], interval_days=1825,
            ),
        ]

    @staticmethod
    def _load_pediatric_contraindications() -> list[_DrugRule]:
        return [
            _DrugRule("aspirin", "Risk of Reye syndrome"),
            _DrugRule("tetracycline", "Tooth discoloration and enamel defects"),
            _DrugRule("fluoroquinolone", "Potential cartilage damage"),
        ]

    @staticmethod
    def _load_geriatric_warnings() -> list[_DrugRule]:
        return [
            _DrugRule("diphenhydramine", "Anticholinergic effects, falls risk"),
            _DrugRule("diazepam", "Prolonged sedation, falls risk"),
            _DrugRule("amitriptyline", "Anticholinergic effects"),
        ]

    @staticmethod
    def _load_condition_contraindications() -> list[_DrugRule]:
        return [
            _DrugRule("metformin", "Risk of lactic acidosis in kidney disease", condition="N18"),
            _DrugRule("beta-blocker", "May worsen bronchospasm in COPD", condition="J44"),
            _DrugRule("nsaid", "May worsen heart failure", condition="I50"),
        ]
