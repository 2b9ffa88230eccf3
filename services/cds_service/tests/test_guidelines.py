"""
Unit tests for Solace-AI CDS Guidelines Engine and criteria evaluation.
"""
from __future__ import annotations
import pytest
from services.cds_service.src.domain.criteria import evaluate_criteria, evaluate_criterion
from services.cds_service.src.domain.entities import VitalSigns
from services.cds_service.src.domain.guidelines import GuidelineEngine, Recommendation, RecommendedAction
from services.cds_service.src.domain.value_objects import (
    ClinicalCriteria, Comparator, CriteriaType, Priority, Sex,
)
from services.cds_service.tests.fixtures import (
    FIXED_NOW, condition, lab, make_snapshot, med, procedure,
)


class TestCriteriaEvaluation:
    """Tests for applicability criteria."""

    def test_empty_criteria_apply(self) -> None:
        """Test an empty list is vacuously true."""
        assert evaluate_criteria([], make_snapshot(), FIXED_NOW) is True

    def test_age_range(self) -> None:
        """Test AND semantics over two age bounds."""
        criteria = [ClinicalCriteria(type=CriteriaType.AGE, operator=Comparator.GE, value=50),
                    ClinicalCriteria(type=CriteriaType.AGE, operator=Comparator.LE, value=75)]
        assert evaluate_criteria(criteria, make_snapshot(age=60), FIXED_NOW) is True
        assert evaluate_criteria(criteria, make_snapshot(age=76), FIXED_NOW) is False

    def test_gender(self) -> None:
        """Test gender match and the Any wildcard."""
        female = make_snapshot(sex=Sex.FEMALE)
        assert evaluate_criterion(ClinicalCriteria(type=CriteriaType.GENDER, value="F"), female) is True
        assert evaluate_criterion(ClinicalCriteria(type=CriteriaType.GENDER, value="M"), female) is False
        assert evaluate_criterion(ClinicalCriteria(type=CriteriaType.GENDER, value="Any"), female) is True

    def test_condition_prefix(self) -> None:
        """Test condition codes match by prefix."""
        criterion = ClinicalCriteria(type=CriteriaType.CONDITION, codes=["E11"])
        assert evaluate_criterion(criterion, make_snapshot(conditions=[condition("E11.65")])) is True

    def test_missing_vitals_never_match(self) -> None:
        """Test absent data does not satisfy a criterion."""
        criterion = ClinicalCriteria(type=CriteriaType.VITAL, operator=Comparator.LT, value=140,
                                     codes=["systolic"])
        assert evaluate_criterion(criterion, make_snapshot()) is False
        assert evaluate_criterion(criterion, make_snapshot(vitals=VitalSigns(systolic_bp=120))) is True

    def test_lab_lookback(self) -> None:
        """Test labs outside the lookback window are ignored."""
        criterion = ClinicalCriteria(type=CriteriaType.LAB, operator=Comparator.LT, value=8,
                                     codes=["HbA1c"], within_days=180)
        recent = make_snapshot(labs=[lab("HbA1c", 7.1, days_ago=30)])
        stale = make_snapshot(labs=[lab("HbA1c", 7.1, days_ago=400)])
        assert evaluate_criterion(criterion, recent, FIXED_NOW) is True
        assert evaluate_criterion(criterion, stale, FIXED_NOW) is False

    def test_procedure_window(self) -> None:
        """Test procedure must be performed within the window."""
        criterion = ClinicalCriteria(type=CriteriaType.PROCEDURE, codes=["77057"], within_days=730)
        assert evaluate_criterion(criterion, make_snapshot(procedures=[procedure("77057", 100)]), FIXED_NOW)
        assert not evaluate_criterion(criterion, make_snapshot(procedures=[procedure("77057", 800)]), FIXED_NOW)

    def test_incomparable_value(self) -> None:
        """Test a type mismatch evaluates to false."""
        criterion = ClinicalCriteria(type=CriteriaType.AGE, operator=Comparator.GE, value="old")
        assert evaluate_criterion(criterion, make_snapshot()) is False


class TestGuidelineEngine:
    """Tests for GuidelineEngine."""

    @pytest.fixture
    def engine(self, reference_data) -> GuidelineEngine:
        """Create guideline engine."""
        return GuidelineEngine(reference_data)

    def test_applicable_guidelines_for_medication(self, engine: GuidelineEngine) -> None:
        """Test metformin maps to the diabetes guideline for a diabetic."""
        snapshot = make_snapshot(conditions=[condition("E11.65")])
        found = engine.get_applicable_guidelines(med("Metformin 500 mg"), snapshot)
        assert [g.guideline_id for g in found] == ["ada-diabetes-2023"]

    def test_guideline_requires_condition(self, engine: GuidelineEngine) -> None:
        """Test no guideline without the linked condition."""
        assert engine.get_applicable_guidelines(med("metformin"), make_snapshot()) == []

    def test_guidelines_for_conditions(self, engine: GuidelineEngine) -> None:
        """Test condition lookup."""
        conditions = [condition("I10")]
        found = engine.get_guidelines_for_conditions(conditions, make_snapshot(conditions=conditions))
        assert [g.guideline_id for g in found] == ["aha-acc-hypertension-2017"]

    def test_guidelines_for_condition_subcode(self, engine: GuidelineEngine) -> None:
        """Test a more specific code in the same category finds the guideline."""
        conditions = [condition("E11.65")]
        found = engine.get_guidelines_for_conditions(conditions, make_snapshot(conditions=conditions))
        assert [g.guideline_id for g in found] == ["ada-diabetes-2023"]

    def test_preventive_care_for_woman(self, engine: GuidelineEngine) -> None:
        """Test applicable screenings for a 55-year-old woman."""
        snapshot = make_snapshot(age=55, sex=Sex.FEMALE, procedures=[procedure("77067", 100)])
        recs = {r.recommendation_id: r for r in engine.get_preventive_care_recommendations(snapshot, FIXED_NOW)}
        assert set(recs) == {"colorectal-screening", "cervical-screening", "mammography-screening",
                             "cardiovascular-risk"}
        assert recs["mammography-screening"].overdue is False
        assert recs["colorectal-screening"].overdue is True

    def test_overdue_preventive_care(self, engine: GuidelineEngine) -> None:
        """Test overdue list for a man with a recent lipid panel."""
        snapshot = make_snapshot(age=45, procedures=[procedure("80061", 200)])
        overdue = engine.get_overdue_preventive_care(snapshot, FIXED_NOW)
        assert overdue == []

    def test_treatment_recommendations(self, engine: GuidelineEngine) -> None:
        """Test diabetes treatment recommendations."""
        diabetes = condition("E11.9")
        recs = engine.get_treatment_recommendations(diabetes, make_snapshot(conditions=[diabetes]))
        assert [r.recommendation_id for r in recs] == ["diabetes-hba1c-monitoring", "diabetes-metformin"]

    def test_pediatric_contraindication(self, engine: GuidelineEngine) -> None:
        """Test aspirin for a child."""
        result = engine.check_guideline_contraindications(med("aspirin"), make_snapshot(age=10))
        assert result.contraindications == ["Contraindicated in pediatric patients: Risk of Reye syndrome"]

    def test_geriatric_warning(self, engine: GuidelineEngine) -> None:
        """Test diazepam for an older adult."""
        result = engine.check_guideline_contraindications(med("diazepam"), make_snapshot(age=80))
        assert result.warnings == ["Use with caution in elderly: Prolonged sedation, falls risk"]
        assert result.contraindications == []

    def test_condition_contraindication_and_adjustment(self, engine: GuidelineEngine) -> None:
        """Test metformin in CKD with elevated creatinine."""
        snapshot = make_snapshot(conditions=[condition("N18.4", "CKD stage 4")], labs=[lab("Creatinine", 2.0)])
        result = engine.check_guideline_contraindications(med("metformin"), snapshot)
        assert result.contraindications == ["Contraindicated with CKD stage 4: Risk of lactic acidosis in kidney disease"]
        assert result.adjustments == ["Consider dose reduction due to elevated creatinine (2 mg/dL)"]
        assert result.has_findings

    def test_class_contraindication(self, engine: GuidelineEngine) -> None:
        """Test beta blocker in COPD matches by class."""
        snapshot = make_snapshot(conditions=[condition("J44.9")])
        result = engine.check_guideline_contraindications(med("metoprolol"), snapshot)
        assert len(result.contraindications) == 1

    def test_quality_improvement_for_polypharmacy(self, engine: GuidelineEngine) -> None:
        """Test adherence and polypharmacy recommendations."""
        snapshot = make_snapshot(medications=[med(f"drug-{i}") for i in range(6)])
        recs = engine.get_quality_improvement_recommendations(snapshot)
        assert [r.recommendation_id for r in recs] == ["medication-adherence", "polypharmacy-review"]

    def test_recommendation_priority(self) -> None:
        """Test priority is the highest action priority."""
        rec = Recommendation(recommendation_id="r", title="t", description="d", actions=[
            RecommendedAction(action_type="Order", description="a", priority=Priority.LOW),
            RecommendedAction(action_type="Order", description="b", priority=Priority.HIGH),
        ])
        assert rec.priority == Priority.HIGH
