"""
Unit tests for Solace-AI CDS Orchestrator.
Tests hook processing, patient assessment, medication safety, quality gaps,
dashboards and population assessment.
"""
from __future__ import annotations
from typing import Any, AsyncIterator
import pytest
import pytest_asyncio
from services.cds_service.src.config import AlertLifecycleConfig, CDSConfig, RuleCategoryConfig
from services.cds_service.src.domain.hooks import FALLBACK_SUMMARY, HookRequest
from services.cds_service.src.domain.orchestrator import CDSOrchestrator
from services.cds_service.src.domain.value_objects import (
    AllergenType, AllergySeverity, CardIndicator, InteractionSeverity, Sex,
)
from services.cds_service.src.exceptions import DataUnavailableError, InputInvalidError, ReferenceDataError
from services.cds_service.src.infrastructure.reference_data import ReferenceData, ReferenceDataSource
from services.cds_service.src.main import cds_engine
from services.cds_service.tests.fixtures import (
    ExplodingSnapshotReader, InMemorySnapshotReader, MutableClock, allergy, atrial_fibrillation_patient,
    condition, draft_bundle, lab, make_snapshot, med, medication_request,
)


def _config(**rules: Any) -> CDSConfig:
    return CDSConfig(alerts=AlertLifecycleConfig(enable_expiry_sweep=False), rules=RuleCategoryConfig(**rules))


def _hook(hook: str, patient_id: str = "patient-1", **context: Any) -> HookRequest:
    return HookRequest(hook=hook, hook_instance="hook-instance-1", patient_id=patient_id, context=context)


class _FailingReferenceSource(ReferenceDataSource):
    async def load(self) -> ReferenceData:
        raise ReferenceDataError("rules service unreachable")


@pytest.fixture
def reader() -> InMemorySnapshotReader:
    """Reader holding a warfarin patient, an AF patient and an unavailable record."""
    return InMemorySnapshotReader(
        [make_snapshot("patient-1", medications=[med("aspirin")]), atrial_fibrillation_patient("af-1")],
        unavailable_ids={"offline-1"},
    )


@pytest_asyncio.fixture
async def orchestrator(reader: InMemorySnapshotReader, clock: MutableClock) -> AsyncIterator[CDSOrchestrator]:
    """Initialized orchestrator on the fixed clock."""
    cds = CDSOrchestrator(reader, config=_config(), clock=clock)
    await cds.initialize()
    yield cds
    await cds.shutdown()


class TestLifecycle:
    """Tests for initialization and status."""

    @pytest.mark.asyncio
    async def test_status_operational(self, orchestrator: CDSOrchestrator) -> None:
        """Test status after initialization."""
        status = await orchestrator.get_status()
        assert status["status"] == "operational"
        assert status["thresholds"] == {"drug_interaction": "Moderate", "allergy": "Medium"}
        assert status["reference_data"]["version"] == "2024.1"
        assert orchestrator.is_initialized

    @pytest.mark.asyncio
    async def test_reference_failure_degrades(self, reader: InMemorySnapshotReader, clock: MutableClock) -> None:
        """Test a failing reference source falls back to static data."""
        cds = CDSOrchestrator(reader, config=_config(), reference_source=_FailingReferenceSource(), clock=clock)
        await cds.initialize()
        try:
            status = await cds.get_status()
            assert status["status"] == "degraded"
            assert cds.reference_data.interactions_for("warfarin", "aspirin")
        finally:
            await cds.shutdown()

    @pytest.mark.asyncio
    async def test_requires_initialization(self, reader: InMemorySnapshotReader) -> None:
        """Test operations before initialize fail or fall back."""
        cds = CDSOrchestrator(reader, config=_config())
        with pytest.raises(DataUnavailableError):
            await cds.assess_patient(make_snapshot())
        response = await cds.process_hook_request(_hook("patient-view"))
        assert response.cards[0].summary == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_engine_context_manager(self, reader: InMemorySnapshotReader) -> None:
        """Test the managed engine starts and stops the orchestrator."""
        async with cds_engine(reader, config=_config()) as cds:
            assert (await cds.get_status())["status"] == "operational"
        assert cds.is_initialized is False


class TestHookProcessing:
    """Tests for hook request processing."""

    @pytest.mark.asyncio
    async def test_medication_prescribe(self, orchestrator: CDSOrchestrator) -> None:
        """Test warfarin for a patient on aspirin yields interaction and weight cards."""
        response = await orchestrator.process_hook_request(
            _hook("medication-prescribe", draftOrders=draft_bundle(medication_request("warfarin"))))
        summaries = [c.summary for c in response.cards]
        assert summaries == ["Major drug interaction: warfarin + aspirin", "Weight required for safe dosing"]
        assert response.cards[0].indicator == CardIndicator.CRITICAL

    @pytest.mark.asyncio
    async def test_prescribe_without_draft_falls_back(self, orchestrator: CDSOrchestrator) -> None:
        """Test a prescribe hook with no draft medication returns the fallback card."""
        response = await orchestrator.process_hook_request(_hook("medication-prescribe"))
        assert [c.summary for c in response.cards] == [FALLBACK_SUMMARY]
        assert orchestrator.stats["hook_failures"] == 1

    @pytest.mark.asyncio
    async def test_unknown_patient_falls_back(self, orchestrator: CDSOrchestrator) -> None:
        """Test a missing snapshot returns the fallback card."""
        response = await orchestrator.process_hook_request(_hook("patient-view", patient_id="nobody"))
        assert response.cards[0].summary == FALLBACK_SUMMARY
        assert response.cards[0].indicator == CardIndicator.WARNING

    @pytest.mark.asyncio
    async def test_malformed_dict_falls_back(self, orchestrator: CDSOrchestrator) -> None:
        """Test a request missing required keys returns the fallback card."""
        response = await orchestrator.process_hook_request({"hook": "patient-view"})
        assert response.cards[0].summary == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, clock: MutableClock) -> None:
        """Test an unexpected reader failure never escapes hook processing."""
        cds = CDSOrchestrator(ExplodingSnapshotReader(), config=_config(), clock=clock)
        await cds.initialize()
        try:
            response = await cds.process_hook_request(_hook("patient-view"))
            assert response.cards[0].summary == FALLBACK_SUMMARY
        finally:
            await cds.shutdown()

    @pytest.mark.asyncio
    async def test_dict_request_accepted(self, orchestrator: CDSOrchestrator) -> None:
        """Test dict requests with the patient in context."""
        response = await orchestrator.process_hook_request({
            "hook": "patient-view", "hook_instance": "h-2", "context": {"patientId": "af-1"},
        })
        assert response.cards[0].summary == "CHA2DS2-VASc Score: High Risk"

    @pytest.mark.asyncio
    async def test_patient_view(self, orchestrator: CDSOrchestrator) -> None:
        """Test overdue care, quality gaps and high risk scores, critical first."""
        response = await orchestrator.process_hook_request(_hook("patient-view", patient_id="af-1"))
        summaries = [c.summary for c in response.cards]
        assert summaries[0] == "CHA2DS2-VASc Score: High Risk"
        assert "Preventive care due: Breast Cancer Screening" in summaries
        assert "Quality Measure Gap: Controlling High Blood Pressure" in summaries
        ranks = [c.indicator.rank for c in response.cards]
        assert ranks == sorted(ranks, reverse=True)

    @pytest.mark.asyncio
    async def test_order_select_contrast(self, orchestrator: CDSOrchestrator, reader: InMemorySnapshotReader) -> None:
        """Test contrast orders flag metformin and shellfish allergy."""
        reader.add(make_snapshot("imaging-1", medications=[med("metformin 1000mg")], allergies=[
            allergy("shellfish", AllergySeverity.MODERATE, allergen_type=AllergenType.FOOD)]))
        contrast = {"resourceType": "ServiceRequest", "id": "sr-1", "code": {"text": "CT abdomen with contrast"}}
        response = await orchestrator.process_hook_request(
            _hook("order-select", patient_id="imaging-1", draftOrders=draft_bundle(contrast),
                  selections=["ServiceRequest/sr-1"]))
        summaries = {c.summary for c in response.cards}
        assert summaries == {"Iodinated contrast with metformin", "Allergy Alert: shellfish"}

    @pytest.mark.asyncio
    async def test_order_select_respects_selection(self, orchestrator: CDSOrchestrator) -> None:
        """Test only selected orders are checked."""
        drafts = draft_bundle(medication_request("warfarin", "mr-1"), medication_request("loratadine", "mr-2"))
        response = await orchestrator.process_hook_request(
            _hook("order-select", draftOrders=drafts, selections=["MedicationRequest/mr-2"]))
        assert response.cards == []


class TestClinicalOperations:
    """Tests for assessment, medication safety and quality gaps."""

    @pytest.mark.asyncio
    async def test_assess_patient_raises_risk_alert(self, orchestrator: CDSOrchestrator) -> None:
        """Test high risk scores create risk alerts."""
        assessment = await orchestrator.assess_patient(atrial_fibrillation_patient("af-1"))
        assert [s.score_name for s in assessment.high_risk_scores] == ["CHA2DS2-VASc Score"]
        assert assessment.skipped_scores == ["ASCVD Risk Calculator"]
        assert "Consider anticoagulation therapy" in assessment.risk_recommendations
        assert any(r.recommendation_id == "hypertension-lifestyle" for r in assessment.recommendations)
        await orchestrator.alert_service.flush()
        titles = [a.title for a in orchestrator.alert_service.get_active_alerts_for_patient("af-1")]
        assert titles == ["CHA2DS2-VASc Score: High Risk"]

    @pytest.mark.asyncio
    async def test_disabled_risk_scoring(self, reader: InMemorySnapshotReader, clock: MutableClock) -> None:
        """Test disabled categories produce no findings."""
        cds = CDSOrchestrator(reader, config=_config(enable_risk_scoring=False), clock=clock)
        await cds.initialize()
        try:
            assessment = await cds.assess_patient(atrial_fibrillation_patient())
            assert assessment.risk_scores == []
            assert assessment.alert_ids == []
        finally:
            await cds.shutdown()

    @pytest.mark.asyncio
    async def test_medication_safety_allergy(self, orchestrator: CDSOrchestrator) -> None:
        """Test amoxicillin for a penicillin-allergic patient."""
        snapshot = make_snapshot("allergic-1", allergies=[allergy("Penicillin")])
        result = await orchestrator.check_medication_safety(med("amoxicillin"), snapshot)
        assert result.is_safe is False
        assert [c.severity for c in result.contraindications] == [InteractionSeverity.CONTRAINDICATED]
        assert len(result.allergy_alerts) == 2
        assert len(result.alert_ids) == 3
        await orchestrator.alert_service.flush()
        active = orchestrator.alert_service.get_active_alerts_for_patient("allergic-1")
        assert sorted(a.title for a in active) == ["Allergy Alert: Penicillin",
                                                   "Drug Interaction: amoxicillin + Penicillin"]

    @pytest.mark.asyncio
    async def test_medication_safety_threshold(self, reader: InMemorySnapshotReader, clock: MutableClock) -> None:
        """Test findings below the interaction threshold are dropped."""
        cds = CDSOrchestrator(reader, config=_config(drug_interaction_threshold="Major"), clock=clock)
        await cds.initialize()
        try:
            snapshot = make_snapshot(medications=[med("simvastatin")])
            result = await cds.check_medication_safety(med("atorvastatin"), snapshot)
            assert result.interactions == []
            assert result.is_safe
        finally:
            await cds.shutdown()

    @pytest.mark.asyncio
    async def test_medication_safety_guideline_findings(self, orchestrator: CDSOrchestrator) -> None:
        """Test guideline contraindications and dose adjustments become recommendations."""
        snapshot = make_snapshot(conditions=[condition("N18.4", "CKD stage 4")], labs=[lab("creatinine", 2.4)])
        result = await orchestrator.check_medication_safety(med("metformin"), snapshot)
        assert result.guideline_findings.contraindications
        assert result.recommendations == ["Consider dose reduction due to elevated creatinine (2.4 mg/dL)"]

    @pytest.mark.asyncio
    async def test_quality_gap_analysis(self, orchestrator: CDSOrchestrator) -> None:
        """Test preventive and measure gaps with high-priority alerts."""
        snapshot = make_snapshot("dm-1", age=60, sex=Sex.FEMALE, conditions=[condition("E11.9")],
                                 labs=[lab("HbA1c", 9.0)])
        analysis = await orchestrator.analyze_quality_gaps(snapshot)
        sources = [g.source for g in analysis.gaps]
        assert sources.count("preventive-care") == 4
        assert sources.count("quality-measure") == 2
        assert len(analysis.alert_ids) == 5


class TestDashboardAndPopulation:
    """Tests for dashboards and population assessment."""

    @pytest.mark.asyncio
    async def test_dashboard(self, orchestrator: CDSOrchestrator) -> None:
        """Test dashboard combines scores, gaps and reports."""
        dashboard = await orchestrator.get_patient_dashboard("af-1")
        assert dashboard.available is True
        assert dashboard.interaction_report is not None
        assert dashboard.allergy_profile is not None
        assert len(dashboard.recent_recommendations) <= 5
        assert dashboard.quality_gaps

    @pytest.mark.asyncio
    async def test_dashboard_degraded(self, orchestrator: CDSOrchestrator) -> None:
        """Test an unavailable snapshot still returns active alerts."""
        await orchestrator.alert_service.create_alert({
            "patient_id": "offline-1", "alert_type": "Dosing", "severity": "Warning", "title": "Recheck dose",
        })
        await orchestrator.alert_service.flush()
        dashboard = await orchestrator.get_patient_dashboard("offline-1")
        assert dashboard.available is False
        assert dashboard.error_code == "SNAPSHOT_UNAVAILABLE"
        assert [a.title for a in dashboard.active_alerts] == ["Recheck dose"]

    @pytest.mark.asyncio
    async def test_dashboard_requires_patient(self, orchestrator: CDSOrchestrator) -> None:
        """Test empty patient id is rejected."""
        with pytest.raises(InputInvalidError):
            await orchestrator.get_patient_dashboard("")

    @pytest.mark.asyncio
    async def test_population_isolates_failures(self, clock: MutableClock) -> None:
        """Test one failing patient out of 25 does not abort the batch."""
        patient_ids = [f"p-{i:02d}" for i in range(25)]
        snapshots = [make_snapshot(pid, age=45) for pid in patient_ids if pid not in ("p-00", "p-03", "p-12")]
        snapshots.append(make_snapshot("p-00", age=45, medications=[med("warfarin"), med("aspirin")]))
        snapshots.append(atrial_fibrillation_patient("p-03"))
        reader = InMemorySnapshotReader(snapshots, unavailable_ids={"p-12"})
        cds = CDSOrchestrator(reader, config=_config(), clock=clock)
        await cds.initialize()
        try:
            population = await cds.assess_patient_population(patient_ids)
        finally:
            await cds.shutdown()
        assert population.summary.patients_requested == 25
        assert population.summary.patients_assessed == 24
        assert population.failed_patients == ["p-12"]
        assert population.summary.high_risk_count == 1
        assert [p.patient_id for p in population.high_risk_patients] == ["p-03"]
        assert population.summary.average_risk_score == round(7 / 24, 2)
        assert len(population.quality_gaps) == 24
        assert population.total_alerts > 0

    @pytest.mark.asyncio
    async def test_population_unexpected_error(self, clock: MutableClock) -> None:
        """Test unexpected errors are isolated as failures too."""
        cds = CDSOrchestrator(ExplodingSnapshotReader(), config=_config(), clock=clock)
        await cds.initialize()
        try:
            population = await cds.assess_patient_population(["a", "b"])
        finally:
            await cds.shutdown()
        assert population.failed_patients == ["a", "b"]
        assert population.summary.patients_assessed == 0
        assert population.summary.average_risk_score == 0.0
