"""
Solace-AI CDS Service - Clinical Decision Support Orchestrator.
Composes the rule modules and the alert service into hook processing,
patient assessment, medication safety checks and population assessment.
"""
from __future__ import annotations
import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from pydantic import BaseModel, Field, ValidationError
import structlog

from services.shared import ServiceBase
from .alerts import Alert, AlertService
from .allergies import AllergyAlert, AllergyChecker, AllergyProfile
from .entities import Card, Medication, PatientSnapshot
from .guidelines import ClinicalGuideline, GuidelineContraindications, GuidelineEngine, Recommendation
from .hooks import (
    HookRequest, HookResponse, HookType, allergy_card, contraindication_card, contrast_metformin_card,
    dosing_card, duplicate_therapy_card, extract_medications_from_draft, extract_selected_orders,
    fallback_response, fhir_to_medication, filter_cards, guideline_card, guideline_contraindication_cards,
    interaction_card, is_contrast_order, is_weight_based_medication, preventive_care_card,
    quality_gap_card, risk_score_card, weight_required_card,
)
from .interactions import DrugInteraction, DrugInteractionChecker, InteractionReport
from .quality_measures import MeasureResult, QualityMeasureEvaluator
from .risk_scoring import RiskScore, RiskScoringService
from .value_objects import AlertSeverity, AllergyAlertSeverity, InteractionSeverity, Priority
from ..config import CDSConfig
from ..exceptions import CDSError, DataUnavailableError, InputInvalidError, ReferenceDataError
from ..infrastructure.interaction_lookup import CachedInteractionLookup, HttpInteractionLookup, InteractionLookup
from ..infrastructure.reference_data import (
    HttpReferenceDataSource, ReferenceData, ReferenceDataSource, StaticReferenceDataSource,
)
from ..infrastructure.snapshot_reader import ClinicalSnapshotReader

logger = structlog.get_logger(__name__)

CONTRAST_AGENT = "iodinated contrast media"
DASHBOARD_RECOMMENDATIONS = 5


class PatientAssessment(BaseModel):
    """Risk scores, guidelines and recommendations for one patient."""
    patient_id: str
    risk_scores: list[RiskScore] = Field(default_factory=list)
    skipped_scores: list[str] = Field(default_factory=list)
    guidelines: list[ClinicalGuideline] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    risk_recommendations: list[str] = Field(default_factory=list)
    alert_ids: list[str] = Field(default_factory=list)

    @property
    def high_risk_scores(self) -> list[RiskScore]:
        return [s for s in self.risk_scores if s.risk.is_high]


class MedicationSafetyResult(BaseModel):
    """Findings for a proposed medication, each forwarded to the alert service."""
    patient_id: str
    medication: str
    interactions: list[DrugInteraction] = Field(default_factory=list)
    contraindications: list[DrugInteraction] = Field(default_factory=list)
    allergy_alerts: list[AllergyAlert] = Field(default_factory=list)
    guideline_findings: GuidelineContraindications = Field(default_factory=GuidelineContraindications)
    recommendations: list[str] = Field(default_factory=list)
    alert_ids: list[str] = Field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not (self.interactions or self.contraindications or self.allergy_alerts
                    or self.guideline_findings.contraindications)


class QualityGap(BaseModel):
    """Overdue preventive care item or unmet quality measure."""
    measure_name: str
    description: str
    due_date: datetime | None = None
    priority: Priority = Field(default=Priority.MEDIUM)
    source: str = Field(default="preventive-care")


class QualityGapAnalysis(BaseModel):
    patient_id: str
    gaps: list[QualityGap] = Field(default_factory=list)
    measure_results: list[MeasureResult] = Field(default_factory=list)
    improvement_recommendations: list[Recommendation] = Field(default_factory=list)
    alert_ids: list[str] = Field(default_factory=list)


class PatientDashboard(BaseModel):
    """Combined view of alerts, risk and gaps; degraded when the snapshot is unavailable."""
    patient_id: str
    available: bool = True
    error_code: str | None = None
    active_alerts: list[Alert] = Field(default_factory=list)
    risk_scores: list[RiskScore] = Field(default_factory=list)
    quality_gaps: list[QualityGap] = Field(default_factory=list)
    recent_recommendations: list[Recommendation] = Field(default_factory=list)
    interaction_report: InteractionReport | None = None
    allergy_profile: AllergyProfile | None = None


class HighRiskPatient(BaseModel):
    patient_id: str
    risk_scores: list[RiskScore] = Field(default_factory=list)


class PatientQualityGaps(BaseModel):
    patient_id: str
    gaps: list[QualityGap] = Field(default_factory=list)


class PopulationSummary(BaseModel):
    patients_requested: int = 0
    patients_assessed: int = 0
    high_risk_count: int = 0
    total_gaps: int = 0
    average_risk_score: float = 0.0


class PopulationAssessment(BaseModel):
    """Aggregated population results; failed patients are excluded from every aggregate."""
    summary: PopulationSummary = Field(default_factory=PopulationSummary)
    high_risk_patients: list[HighRiskPatient] = Field(default_factory=list)
    quality_gaps: list[PatientQualityGaps] = Field(default_factory=list)
    total_alerts: int = 0
    failed_patients: list[str] = Field(default_factory=list)


class _PatientOutcome(BaseModel):
    patient_id: str
    assessment: PatientAssessment
    quality: QualityGapAnalysis
    interaction_risk_score: int = 0


class CDSOrchestrator(ServiceBase):
    """
    Entry point for clinical decision support.

    The snapshot reader is the only per-request collaborator; reference data
    is loaded once by initialize() and treated as immutable afterwards.
    """

    def __init__(self, snapshot_reader: ClinicalSnapshotReader,
                 config: CDSConfig | None = None,
                 alert_service: AlertService | None = None,
                 reference_source: ReferenceDataSource | None = None,
                 interaction_lookup: InteractionLookup | None = None,
                 clock: Callable[[], datetime] | None = None) -> None:
        self._config = config or CDSConfig()
        self._reader = snapshot_reader
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._alerts = alert_service or AlertService(self._config.alerts, clock=self._clock)
        self._reference_source = reference_source
        self._lookup = interaction_lookup
        self._owned_http_lookup: HttpInteractionLookup | None = None
        self._reference_data: ReferenceData | None = None
        self._interaction_checker: DrugInteractionChecker | None = None
        self._allergy_checker: AllergyChecker | None = None
        self._guideline_engine: GuidelineEngine | None = None
        self._risk_scoring = RiskScoringService()
        self._quality_evaluator = QualityMeasureEvaluator(snapshot_reader, clock=self._clock)
        self._interaction_threshold = InteractionSeverity(self._config.rules.drug_interaction_threshold)
        self._allergy_threshold = AllergyAlertSeverity(self._config.rules.allergy_threshold)
        self._degraded = False
        self._initialized = False
        self._stats = {
            "hooks_processed": 0, "hook_failures": 0, "hook_timeouts": 0,
            "assessments": 0, "safety_checks": 0, "quality_analyses": 0,
            "population_runs": 0, "population_failures": 0, "alerts_raised": 0,
        }

    @property
    def alert_service(self) -> AlertService:
        return self._alerts

    @property
    def reference_data(self) -> ReferenceData:
        self._require_initialized()
        return self._reference_data

    async def initialize(self) -> None:
        """Load reference data, build the rule modules and start the alert service."""
        logger.info("cds_orchestrator_initializing", enabled_categories=self._config.rules.enabled_categories())
        self._reference_data = await self._load_reference_data()
        if self._lookup is None and self._config.reference.source == "http":
            self._owned_http_lookup = HttpInteractionLookup(
                self._config.reference.interaction_db_url,
                timeout_seconds=self._config.hooks.external_service_timeout_ms / 1000,
            )
            self._lookup = CachedInteractionLookup(
                self._owned_http_lookup,
                staleness_hours=self._config.reference.lookup_cache_staleness_hours,
                clock=self._clock,
            )
        self._interaction_checker = DrugInteractionChecker(
            self._reference_data, lookup=self._lookup,
            lookup_timeout_seconds=self._config.hooks.external_service_timeout_ms / 1000,
        )
        self._allergy_checker = AllergyChecker(self._reference_data, severity_threshold=self._allergy_threshold)
        self._guideline_engine = GuidelineEngine(self._reference_data)
        await self._alerts.initialize()
        self._initialized = True
        logger.info("cds_orchestrator_initialized", reference_version=self._reference_data.version,
                    degraded=self._degraded, external_lookup=self._lookup is not None)

    async def shutdown(self) -> None:
        logger.info("cds_orchestrator_shutting_down")
        await self._alerts.shutdown()
        if self._owned_http_lookup is not None:
            await self._owned_http_lookup.close()
            self._owned_http_lookup = None
        self._initialized = False
        logger.info("cds_orchestrator_shutdown_complete", statistics=self.stats)

    async def get_status(self) -> dict[str, Any]:
        status = "initializing"
        if self._initialized:
            status = "degraded" if self._degraded else "operational"
        return {
            "status": status,
            "initialized": self._initialized,
            "statistics": self.stats,
            "enabled_categories": self._config.rules.enabled_categories(),
            "thresholds": {
                "drug_interaction": self._interaction_threshold.value,
                "allergy": self._allergy_threshold.value,
            },
            "reference_data": self._reference_data.summary() if self._reference_data else None,
            "alert_service": await self._alerts.get_status(),
        }

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def process_hook_request(self, request: HookRequest | dict[str, Any]) -> HookResponse:
        """Run the hook's checks; any failure yields the single fallback card."""
        start = time.perf_counter()
        self._stats["hooks_processed"] += 1
        label = self._config.hooks.fallback_source_label
        try:
            if isinstance(request, dict):
                try:
                    request = HookRequest.model_validate(request)
                except ValidationError as e:
                    raise InputInvalidError("Malformed hook request", cause=e) from e
            hook = request.validate_request()
            self._require_initialized()
            snapshot = await self._reader.get_snapshot(request.resolved_patient_id)
            if hook == HookType.MEDICATION_PRESCRIBE:
                cards = await self._medication_prescribe_cards(snapshot, request.context)
            elif hook == HookType.ORDER_SELECT:
                cards = await self._order_select_cards(snapshot, request.context)
            else:
                cards = await self._patient_view_cards(snapshot)
            response = HookResponse(cards=filter_cards(cards))
        except CDSError as e:
            self._stats["hook_failures"] += 1
            logger.warning("hook_request_failed", hook=getattr(request, "hook", None),
                           error_code=e.error_code, error=e.message)
            return fallback_response(label)
        except Exception:
            self._stats["hook_failures"] += 1
            logger.exception("hook_processing_error", hook=getattr(request, "hook", None))
            return fallback_response(label)
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            if elapsed_ms > self._config.hooks.hook_timeout_ms:
                self._stats["hook_timeouts"] += 1
                logger.warning("hook_timeout_exceeded", elapsed_ms=elapsed_ms,
                               timeout_ms=self._config.hooks.hook_timeout_ms)
        logger.info("hook_processed", hook=hook.value, hook_instance=request.hook_instance,
                    cards=len(response.cards))
        return response

    async def assess_patient(self, snapshot: PatientSnapshot) -> PatientAssessment:
        """Risk scores, guidelines and preventive care computed concurrently; high risk raises alerts."""
        self._require_initialized()
        self._stats["assessments"] += 1
        now = self._clock()
        score_set, guidelines, preventive = await asyncio.gather(
            self._risk_scores(snapshot), self._guidelines_for(snapshot), self._preventive_care(snapshot, now),
        )
        assessment = PatientAssessment(
            patient_id=snapshot.patient_id,
            risk_scores=score_set[0], skipped_scores=score_set[1],
            guidelines=guidelines, recommendations=list(preventive),
            risk_recommendations=self._risk_scoring.get_risk_score_recommendations(score_set[0]),
        )
        if self._config.rules.enable_guidelines:
            for condition in snapshot.active_conditions():
                assessment.recommendations.extend(
                    self._guideline_engine.get_treatment_recommendations(condition, snapshot))
        for score in assessment.high_risk_scores:
            assessment.alert_ids.append(await self._alerts.create_risk_score_alert(snapshot.patient_id, score))
        self._stats["alerts_raised"] += len(assessment.alert_ids)
        logger.info("patient_assessed", patient_id=snapshot.patient_id, risk_scores=len(assessment.risk_scores),
                    high_risk=len(assessment.high_risk_scores), recommendations=len(assessment.recommendations))
        return assessment

    async def check_medication_safety(self, medication: Medication,
                                      snapshot: PatientSnapshot) -> MedicationSafetyResult:
        """Interaction, contraindication, allergy and guideline checks, each finding raised as an alert."""
        self._require_initialized()
        self._stats["safety_checks"] += 1
        patient_id = snapshot.patient_id
        result = MedicationSafetyResult(patient_id=patient_id, medication=medication.name)
        if self._config.rules.enable_drug_interactions:
            result.interactions = await self._interaction_findings(medication, snapshot)
            result.contraindications = [
                f for f in self._interaction_checker.check_contraindications(medication, snapshot)
                if f.meets_threshold(self._interaction_threshold)
            ]
            for finding in result.interactions + result.contraindications:
                result.alert_ids.append(await self._alerts.create_drug_interaction_alert(patient_id, finding))
        if self._config.rules.enable_allergies:
            result.allergy_alerts = self._allergy_checker.check_allergies(medication, snapshot.allergies)
            for allergy_alert in result.allergy_alerts:
                result.alert_ids.append(await self._alerts.create_allergy_alert(patient_id, allergy_alert))
        if self._config.rules.enable_guidelines:
            findings = self._guideline_engine.check_guideline_contraindications(medication, snapshot)
            result.guideline_findings = findings
            result.recommendations.extend(findings.warnings + findings.adjustments)
            for text in findings.contraindications:
                result.alert_ids.append(await self._alerts.create_guideline_alert(
                    patient_id, f"{medication.name} contraindicated", text, severity=AlertSeverity.CRITICAL))
            for text in findings.warnings:
                result.alert_ids.append(await self._alerts.create_guideline_alert(
                    patient_id, f"{medication.name} caution", text))
            for text in findings.adjustments:
                result.alert_ids.append(await self._alerts.create_dosing_alert(patient_id, medication.name, text))
        self._stats["alerts_raised"] += len(result.alert_ids)
        logger.info("medication_safety_checked", patient_id=patient_id, medication=medication.name,
                    interactions=len(result.interactions), contraindications=len(result.contraindications),
                    allergy_alerts=len(result.allergy_alerts), alerts=len(result.alert_ids))
        return result

    async def analyze_quality_gaps(self, snapshot: PatientSnapshot) -> QualityGapAnalysis:
        """Overdue preventive care plus unmet quality measures; high-priority gaps raise alerts."""
        self._require_initialized()
        self._stats["quality_analyses"] += 1
        now = self._clock()
        analysis = QualityGapAnalysis(patient_id=snapshot.patient_id)
        if self._config.rules.enable_guidelines:
            for rec in self._guideline_engine.get_overdue_preventive_care(snapshot, now):
                analysis.gaps.append(QualityGap(measure_name=rec.title, description=rec.description,
                                                priority=rec.priority))
                if rec.priority == Priority.HIGH:
                    analysis.alert_ids.append(await self._alerts.create_guideline_alert(
                        snapshot.patient_id, rec.title, f"Overdue: {rec.description}",
                        related_data={"recommendation_id": rec.recommendation_id}))
            analysis.improvement_recommendations = (
                self._guideline_engine.get_quality_improvement_recommendations(snapshot))
        if self._config.rules.enable_quality_measures:
            analysis.measure_results = self._quality_evaluator.evaluate_patient_measures(snapshot, now)
            for result in analysis.measure_results:
                if not result.has_gap:
                    continue
                analysis.gaps.append(QualityGap(
                    measure_name=result.measure_name,
                    description=result.gap_description or f"{result.measure_name} not met",
                    due_date=result.due_date, priority=result.priority, source="quality-measure",
                ))
                if result.priority == Priority.HIGH:
                    analysis.alert_ids.append(
                        await self._alerts.create_quality_measure_alert(snapshot.patient_id, result))
        self._stats["alerts_raised"] += len(analysis.alert_ids)
        logger.info("quality_gaps_analyzed", patient_id=snapshot.patient_id, gaps=len(analysis.gaps),
                    alerts=len(analysis.alert_ids))
        return analysis

    async def get_patient_dashboard(self, patient_id: str) -> PatientDashboard:
        """Dashboard for one patient; an unavailable snapshot yields active alerts only."""
        if not patient_id:
            raise InputInvalidError("Patient id is required", field="patient_id")
        self._require_initialized()
        active = self._alerts.get_active_alerts_for_patient(patient_id)
        try:
            snapshot = await self._reader.get_snapshot(patient_id)
        except DataUnavailableError as e:
            logger.warning("dashboard_snapshot_unavailable", patient_id=patient_id, error_code=e.error_code)
            return PatientDashboard(patient_id=patient_id, available=False, error_code=e.error_code,
                                    active_alerts=active)
        assessment, quality = await asyncio.gather(self.assess_patient(snapshot),
                                                   self.analyze_quality_gaps(snapshot))
        return PatientDashboard(
            patient_id=patient_id,
            active_alerts=self._alerts.get_active_alerts_for_patient(patient_id),
            risk_scores=assessment.risk_scores,
            quality_gaps=quality.gaps,
            recent_recommendations=assessment.recommendations[:DASHBOARD_RECOMMENDATIONS],
            interaction_report=(await self._interaction_checker.get_patient_interaction_report(snapshot)
                                if self._config.rules.enable_drug_interactions else None),
            allergy_profile=(self._allergy_checker.get_patient_allergy_profile(snapshot)
                             if self._config.rules.enable_allergies else None),
        )

    async def assess_patient_population(self, patient_ids: list[str]) -> PopulationAssessment:
        """
        Assess patients in fixed-size chunks, each chunk gathered concurrently.

        A patient whose snapshot fetch or assessment fails is logged and left
        out of every aggregate; the batch always completes.
        """
        self._require_initialized()
        self._stats["population_runs"] += 1
        chunk_size = self._config.population.chunk_size
        population = PopulationAssessment()
        population.summary.patients_requested = len(patient_ids)
        outcomes: list[_PatientOutcome] = []
        for offset in range(0, len(patient_ids), chunk_size):
            chunk = patient_ids[offset:offset + chunk_size]
            results = await asyncio.gather(*(self._assess_member(pid) for pid in chunk),
                                           return_exceptions=True)
            for patient_id, result in zip(chunk, results):
                if isinstance(result, Exception):
                    self._stats["population_failures"] += 1
                    population.failed_patients.append(patient_id)
                    logger.warning("population_patient_failed", patient_id=patient_id,
                                   error_code=getattr(result, "error_code", type(result).__name__),
                                   error=str(result))
                    continue
                outcomes.append(result)
        for outcome in outcomes:
            high_risk = outcome.assessment.high_risk_scores
            if high_risk:
                population.summary.high_risk_count += 1
                population.high_risk_patients.append(
                    HighRiskPatient(patient_id=outcome.patient_id, risk_scores=high_risk))
            if outcome.quality.gaps:
                population.summary.total_gaps += len(outcome.quality.gaps)
                population.quality_gaps.append(
                    PatientQualityGaps(patient_id=outcome.patient_id, gaps=outcome.quality.gaps))
            population.total_alerts += len(outcome.assessment.alert_ids) + len(outcome.quality.alert_ids)
        population.summary.patients_assessed = len(outcomes)
        if outcomes:
            population.summary.average_risk_score = round(
                sum(o.interaction_risk_score for o in outcomes) / len(outcomes), 2)
        logger.info("population_assessed", requested=len(patient_ids),
                    assessed=population.summary.patients_assessed,
                    failed=len(population.failed_patients),
                    high_risk=population.summary.high_risk_count)
        return population

    async def _assess_member(self, patient_id: str) -> _PatientOutcome:
        snapshot = await self._reader.get_snapshot(patient_id)
        assessment, quality = await asyncio.gather(self.assess_patient(snapshot),
                                                   self.analyze_quality_gaps(snapshot))
        risk_score = 0
        if self._config.rules.enable_drug_interactions:
            report = await self._interaction_checker.get_patient_interaction_report(snapshot)
            risk_score = report.risk_score
        return _PatientOutcome(patient_id=patient_id, assessment=assessment, quality=quality,
                               interaction_risk_score=risk_score)

    async def _risk_scores(self, snapshot: PatientSnapshot) -> tuple[list[RiskScore], list[str]]:
        if not self._config.rules.enable_risk_scoring:
            return [], []
        score_set = self._risk_scoring.get_all_risk_scores(snapshot)
        return score_set.scores, score_set.skipped

    async def _guidelines_for(self, snapshot: PatientSnapshot) -> list[ClinicalGuideline]:
        if not self._config.rules.enable_guidelines:
            return []
        return self._guideline_engine.get_guidelines_for_conditions(snapshot.medical_history, snapshot)

    async def _preventive_care(self, snapshot: PatientSnapshot, now: datetime) -> list[Recommendation]:
        if not self._config.rules.enable_guidelines:
            return []
        return self._guideline_engine.get_preventive_care_recommendations(snapshot, now)

    async def _interaction_findings(self, medication: Medication,
                                    snapshot: PatientSnapshot) -> list[DrugInteraction]:
        """Pairwise, class-duplicate, high-risk and age findings involving the medication."""
        checker = self._interaction_checker
        findings = await checker.check_interactions(medication, snapshot.current_medications)
        findings.extend(
            f for f in checker.check_high_risk_combinations([medication] + snapshot.active_medications())
            if medication.name in (f.drug1, f.drug2)
        )
        findings.extend(checker.get_age_specific_warnings(medication, snapshot.age))
        return [f for f in findings if f.meets_threshold(self._interaction_threshold)]

    async def _medication_cards(self, medication: Medication, snapshot: PatientSnapshot) -> list[Card]:
        cards: list[Card] = []
        if self._config.rules.enable_drug_interactions:
            findings = await self._interaction_findings(medication, snapshot)
            duplicates = [f.drug2 for f in findings if f.source == "class"]
            if duplicates:
                cards.append(duplicate_therapy_card(medication, duplicates))
            for finding in findings:
                if finding.source == "age":
                    cards.append(dosing_card(medication, f"{finding.effect}. {finding.management}",
                                             indicator=finding.severity.to_alert_severity().to_indicator()))
                elif finding.source != "class":
                    cards.append(interaction_card(finding))
            cards.extend(
                contraindication_card(f)
                for f in self._interaction_checker.check_contraindications(medication, snapshot)
                if f.meets_threshold(self._interaction_threshold)
            )
        if self._config.rules.enable_allergies:
            cards.extend(allergy_card(a) for a in self._allergy_checker.check_allergies(medication, snapshot.allergies))
        if is_weight_based_medication(medication) and snapshot.body_measurements()[1] is None:
            cards.append(weight_required_card(medication))
        if self._config.rules.enable_guidelines:
            findings = self._guideline_engine.check_guideline_contraindications(medication, snapshot)
            cards.extend(guideline_contraindication_cards(medication, findings))
            cards.extend(guideline_card(g) for g in
                         self._guideline_engine.get_applicable_guidelines(medication, snapshot))
        return cards

    async def _medication_prescribe_cards(self, snapshot: PatientSnapshot,
                                          context: dict[str, Any]) -> list[Card]:
        medications = extract_medications_from_draft(context)
        if not medications:
            raise InputInvalidError("medication-prescribe hook requires a draft medication order",
                                    field="draftOrders")
        cards: list[Card] = []
        for medication in medications:
            cards.extend(await self._medication_cards(medication, snapshot))
        return cards

    async def _order_select_cards(self, snapshot: PatientSnapshot, context: dict[str, Any]) -> list[Card]:
        cards: list[Card] = []
        for order in extract_selected_orders(context):
            if order.get("resourceType") == "MedicationRequest":
                cards.extend(await self._medication_cards(fhir_to_medication(order), snapshot))
            elif is_contrast_order(order):
                cards.extend(self._contrast_cards(snapshot))
        return cards

    def _contrast_cards(self, snapshot: PatientSnapshot) -> list[Card]:
        cards = [contrast_metformin_card(m) for m in snapshot.active_medications()
                 if m.contains_ingredient("metformin")]
        if self._config.rules.enable_allergies:
            contrast = Medication(name=CONTRAST_AGENT)
            cards.extend(allergy_card(a) for a in self._allergy_checker.check_allergies(contrast, snapshot.allergies))
        return cards

    async def _patient_view_cards(self, snapshot: PatientSnapshot) -> list[Card]:
        now = self._clock()
        cards: list[Card] = []
        if self._config.rules.enable_guidelines:
            cards.extend(preventive_care_card(r)
                         for r in self._guideline_engine.get_overdue_preventive_care(snapshot, now))
        if self._config.rules.enable_quality_measures:
            cards.extend(quality_gap_card(r) for r in self._quality_evaluator.get_quality_gaps(snapshot, now))
        if self._config.rules.enable_risk_scoring:
            score_set = self._risk_scoring.get_all_risk_scores(snapshot)
            cards.extend(risk_score_card(s) for s in score_set.high_risk_scores)
        return cards

    async def _load_reference_data(self) -> ReferenceData:
        source = self._reference_source
        if source is None:
            ref = self._config.reference
            if ref.source == "http":
                source = HttpReferenceDataSource(
                    ref.interaction_db_url, timeout_seconds=self._config.hooks.external_service_timeout_ms / 1000)
            else:
                source = StaticReferenceDataSource(ref.version)
        try:
            return await source.load()
        except ReferenceDataError as e:
            self._degraded = True
            logger.warning("reference_data_fallback_to_static", error_code=e.error_code, error=e.message)
            return await StaticReferenceDataSource(self._config.reference.version).load()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise DataUnavailableError("CDS orchestrator is not initialized")
