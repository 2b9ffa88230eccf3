"""
Solace-AI CDS Service - Quality Measure Evaluation.
HEDIS and CMS measure eligibility, compliance and gap detection.
"""
from __future__ import annotations
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from pydantic import BaseModel, Field
import structlog

from .criteria import evaluate_criteria
from .entities import PatientSnapshot
from .value_objects import ClinicalCriteria, Comparator, CriteriaType, Priority, Sex
from ..exceptions import DataUnavailableError

if TYPE_CHECKING:
    from ..infrastructure.snapshot_reader import ClinicalSnapshotReader

logger = structlog.get_logger(__name__)

GAP_DUE_WITHIN_DAYS = 90


class MeasureCriteria(BaseModel):
    """Described criteria set used for a measure population, numerator or exclusion."""
    description: str
    criteria: list[ClinicalCriteria] = Field(default_factory=list)


class QualityMeasure(BaseModel):
    """Quality measure definition."""
    measure_id: str
    title: str
    description: str
    category: str = Field(default="Process")
    denominator: MeasureCriteria
    numerator: MeasureCriteria
    exclusions: MeasureCriteria | None = None
    reporting_period_start: datetime
    reporting_period_end: datetime
    gap_description: str = Field(default="")
    recommendations: list[str] = Field(default_factory=list)
    gap_priority: Priority = Field(default=Priority.MEDIUM)

    model_config = {"frozen": True}


class MeasureResult(BaseModel):
    """Outcome of evaluating one measure for one patient."""
    measure_id: str
    measure_name: str
    eligible: bool = False
    compliant: bool = False
    numerator_met: bool = False
    denominator_met: bool = False
    exclusions: list[str] = Field(default_factory=list)
    gap_description: str | None = None
    due_date: datetime | None = None
    recommendations: list[str] = Field(default_factory=list)
    priority: Priority = Field(default=Priority.MEDIUM)

    @property
    def has_gap(self) -> bool:
        return self.eligible and not self.compliant


class MeasureGap(BaseModel):
    patient_id: str
    gap_description: str
    due_date: datetime | None = None


class MeasurePerformance(BaseModel):
    """Population compliance for one measure."""
    measure_id: str
    measure_name: str
    total_eligible: int = 0
    total_compliant: int = 0
    compliance_rate: float = 0.0
    gaps: list[MeasureGap] = Field(default_factory=list)
    failed_patients: list[str] = Field(default_factory=list)


def calculate_due_date(measure: QualityMeasure, now: datetime) -> datetime:
    """Earlier of the reporting-period end and 90 days out."""
    return min(measure.reporting_period_end, now + timedelta(days=GAP_DUE_WITHIN_DAYS))


class QualityMeasureEvaluator:
    """Evaluates the measure catalogue against patient snapshots."""

    def __init__(self, snapshot_reader: ClinicalSnapshotReader | None = None,
                 clock: Callable[[], datetime] | None = None) -> None:
        self._reader = snapshot_reader
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._measures: dict[str, QualityMeasure] = {m.measure_id: m for m in self._load_measures()}
        logger.info("quality_measure_evaluator_initialized", measures=list(self._measures))

    @property
    def measures(self) -> list[QualityMeasure]:
        return list(self._measures.values())

    def get_measure(self, measure_id: str) -> QualityMeasure | None:
        return self._measures.get(measure_id)

    def get_hedis_measures(self) -> list[QualityMeasure]:
        return [m for m in self._measures.values() if m.measure_id.startswith("HEDIS")]

    def get_cms_measures(self) -> list[QualityMeasure]:
        return [m for m in self._measures.values() if m.measure_id.startswith("CMS")]

    def evaluate_measure(self, measure: QualityMeasure, snapshot: PatientSnapshot,
                         now: datetime | None = None) -> MeasureResult:
        """Denominator, then exclusions, then numerator; a missed numerator yields a gap."""
        now = now or self._clock()
        result = MeasureResult(measure_id=measure.measure_id, measure_name=measure.title,
                               priority=measure.gap_priority)
        result.denominator_met = evaluate_criteria(measure.denominator.criteria, snapshot, now)
        if not result.denominator_met:
            return result
        if measure.exclusions and evaluate_criteria(measure.exclusions.criteria, snapshot, now):
            result.exclusions.append(measure.exclusions.description)
            return result
        result.eligible = True
        result.numerator_met = evaluate_criteria(measure.numerator.criteria, snapshot, now)
        result.compliant = result.numerator_met
        if not result.compliant:
            result.gap_description = measure.gap_description or f"{measure.title} requirements not met"
            result.recommendations = list(measure.recommendations) or ["Review quality measure requirements"]
            result.due_date = calculate_due_date(measure, now)
        return result

    def evaluate_patient_measures(self, snapshot: PatientSnapshot,
                                  now: datetime | None = None) -> list[MeasureResult]:
        """Results for every measure the patient is eligible for."""
        results = [self.evaluate_measure(m, snapshot, now) for m in self._measures.values()]
        return [r for r in results if r.eligible]

    def get_quality_gaps(self, snapshot: PatientSnapshot, now: datetime | None = None) -> list[MeasureResult]:
        return [r for r in self.evaluate_patient_measures(snapshot, now) if not r.compliant]

    async def evaluate_population_performance(self, patient_ids: list[str],
                                              measure_ids: list[str] | None = None) -> list[MeasurePerformance]:
        """Compliance per measure across patients; a patient whose snapshot fails is skipped."""
        if self._reader is None:
            raise DataUnavailableError("No snapshot reader configured for population evaluation")
        measures = [m for m in self._measures.values() if measure_ids is None or m.measure_id in measure_ids]
        performance = {m.measure_id: MeasurePerformance(measure_id=m.measure_id, measure_name=m.title)
                       for m in measures}
        now = self._clock()
        for patient_id in patient_ids:
            try:
                snapshot = await self._reader.get_snapshot(patient_id)
            except DataUnavailableError as e:
                logger.warning("measure_patient_skipped", patient_id=patient_id, error_code=e.error_code)
                for perf in performance.values():
                    perf.failed_patients.append(patient_id)
                continue
            for measure in measures:
                result = self.evaluate_measure(measure, snapshot, now)
                if not result.eligible:
                    continue
                perf = performance[measure.measure_id]
                perf.total_eligible += 1
                if result.compliant:
                    perf.total_compliant += 1
                else:
                    perf.gaps.append(MeasureGap(patient_id=patient_id,
                                                gap_description=result.gap_description or "Quality measure not met",
                                                due_date=result.due_date))
        for perf in performance.values():
            if perf.total_eligible:
                perf.compliance_rate = round(perf.total_compliant / perf.total_eligible * 100, 2)
        return list(performance.values())

    def _reporting_period(self) -> tuple[datetime, datetime]:
        year = self._clock().year
        return (datetime(year, 1, 1, tzinfo=timezone.utc),
                datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc))

    def _load_measures(self) -> list[QualityMeasure]:
        start, end = self._reporting_period()

        def age_between(low: int, high: int) -> list[ClinicalCriteria]:
            return [ClinicalCriteria(type=CriteriaType.AGE, operator=Comparator.GE, value=low),
                    ClinicalCriteria(type=CriteriaType.AGE, operator=Comparator.LE, value=high)]

        diabetes_population = MeasureCriteria(
            description="Patients with diabetes aged 18-75",
            criteria=age_between(18, 75) + [
                ClinicalCriteria(type=CriteriaType.CONDITION, codes=["E11"], code_system="ICD-10")],
        )
        women_50_74 = MeasureCriteria(
            description="Women aged 50-74",
            criteria=age_between(50, 74) + [ClinicalCriteria(type=CriteriaType.GENDER, value=Sex.FEMALE.value)],
        )
        hypertension_population = MeasureCriteria(
            description="Patients aged 18-85 with hypertension",
            criteria=age_between(18, 85) + [
                ClinicalCriteria(type=CriteriaType.CONDITION, codes=["I10"], code_system="ICD-10")],
        )
        hospice = MeasureCriteria(
            description="Patient in hospice care",
            criteria=[ClinicalCriteria(type=CriteriaType.CONDITION, codes=["Z51.5"], code_system="ICD-10")],
        )
        return [
            QualityMeasure(
                measure_id="HEDIS-CDC-HbA1c", title="Diabetes HbA1c Control (<8%)",
                description="Percentage of patients with diabetes whose HbA1c is <8%",
                denominator=diabetes_population, exclusions=hospice,
                numerator=MeasureCriteria(description="HbA1c <8% in measurement period", criteria=[
                    ClinicalCriteria(type=CriteriaType.LAB, operator=Comparator.LT, value=8, codes=["HbA1c"]),
                ]),
                reporting_period_start=start, reporting_period_end=end,
                gap_description="Recent HbA1c result >=8% or missing",
                recommendations=["Order HbA1c test", "Review diabetes management plan",
                                 "Consider medication adjustment if HbA1c >=8%"],
                gap_priority=Priority.HIGH,
            ),
            QualityMeasure(
                measure_id="HEDIS-BCS", title="Breast Cancer Screening",
                description="Percentage of women aged 50-74 who had mammography in past 2 years",
                denominator=women_50_74,
                exclusions=MeasureCriteria(description="Bilateral mastectomy", criteria=[
                    ClinicalCriteria(type=CriteriaType.CONDITION, codes=["Z90.13"], code_system="ICD-10")]),
                numerator=MeasureCriteria(description="Mammography in past 2 years", criteria=[
                    ClinicalCriteria(type=CriteriaType.PROCEDURE, codes=["77057", "77052"],
                                     code_system="CPT", within_days=730),
                ]),
                reporting_period_start=start, reporting_period_end=end,
                gap_description="Mammography screening overdue or missing",
                recommendations=["Schedule mammography", "Patient education on breast cancer screening",
                                 "Address barriers to screening"],
                gap_priority=Priority.HIGH,
            ),
            QualityMeasure(
                measure_id="CMS-165", title="Controlling High Blood Pressure",
                description="Percentage of patients with hypertension whose BP is <140/90",
                category="Outcome", denominator=hypertension_population, exclusions=hospice,
                numerator=MeasureCriteria(description="Blood pressure <140/90 mmHg", criteria=[
                    ClinicalCriteria(type=CriteriaType.VITAL, operator=Comparator.LT, value=140,
                                     codes=["systolic"], unit="mmHg"),
                    ClinicalCriteria(type=CriteriaType.VITAL, operator=Comparator.LT, value=90,
                                     codes=["diastolic"], unit="mmHg"),
                ]),
                reporting_period_start=start, reporting_period_end=end,
                gap_description="Blood pressure not controlled or recent reading missing",
                recommendations=["Measure blood pressure", "Review antihypertensive medications",
                                 "Lifestyle counseling for hypertension management"],
                gap_priority=Priority.MEDIUM,
            ),
        ]
