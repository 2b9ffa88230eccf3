"""
Unit tests for Solace-AI CDS Drug Interaction Checker.
Tests pairwise matching, class duplication, contraindications and risk scoring.
"""
from __future__ import annotations
import asyncio
import pytest
from services.cds_service.src.domain.interactions import (
    DrugInteraction, DrugInteractionChecker, calculate_interaction_risk_score,
    sort_interactions_by_severity,
)
from services.cds_service.src.domain.value_objects import (
    AllergySeverity, InteractionSeverity, MedicationStatus, Sex,
)
from services.cds_service.src.exceptions import ExternalLookupError
from services.cds_service.src.infrastructure.interaction_lookup import InteractionLookup
from services.cds_service.tests.fixtures import allergy, condition, make_snapshot, med


class _StubLookup(InteractionLookup):
    """Lookup returning canned findings, or failing."""

    def __init__(self, findings: list[DrugInteraction] | None = None, error: Exception | None = None,
                 delay: float = 0.0) -> None:
        self.findings = findings or []
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def fetch_interactions(self, drug1: str, drug2: str) -> list[DrugInteraction]:
        self.calls.append((drug1, drug2))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.findings


def _finding(severity: InteractionSeverity, tag: str) -> DrugInteraction:
    return DrugInteraction(interaction_id=tag, drug1="a", drug2="b", severity=severity)


class TestSortAndScore:
    """Tests for severity ordering and the capped risk score."""

    def test_sort_is_non_increasing(self) -> None:
        """Test results are ordered by severity rank descending."""
        items = [_finding(InteractionSeverity.MINOR, "1"), _finding(InteractionSeverity.CONTRAINDICATED, "2"),
                 _finding(InteractionSeverity.MODERATE, "3"), _finding(InteractionSeverity.MAJOR, "4")]
        ranks = [i.severity.rank for i in sort_interactions_by_severity(items)]
        assert ranks == sorted(ranks, reverse=True)

    def test_sort_is_stable(self) -> None:
        """Test ties keep discovery order."""
        items = [_finding(InteractionSeverity.MAJOR, "first"), _finding(InteractionSeverity.MINOR, "x"),
                 _finding(InteractionSeverity.MAJOR, "second"), _finding(InteractionSeverity.MAJOR, "third")]
        ordered = [i.interaction_id for i in sort_interactions_by_severity(items)]
        assert ordered == ["first", "second", "third", "x"]

    def test_risk_score_weights(self) -> None:
        """Test weights 10/7/4/1 are summed."""
        items = [_finding(s, s.value) for s in InteractionSeverity]
        assert calculate_interaction_risk_score(items) == 22

    def test_risk_score_capped(self) -> None:
        """Test score never exceeds 100."""
        items = [_finding(InteractionSeverity.CONTRAINDICATED, str(i)) for i in range(15)]
        assert calculate_interaction_risk_score(items) == 100


class TestDrugInteractionChecker:
    """Tests for DrugInteractionChecker."""

    @pytest.fixture
    def checker(self, reference_data) -> DrugInteractionChecker:
        """Create checker over the static tables."""
        return DrugInteractionChecker(reference_data)

    @pytest.mark.asyncio
    async def test_known_pair_is_bidirectional(self, checker: DrugInteractionChecker) -> None:
        """Test lookup does not depend on argument order."""
        forward = await checker.get_interactions_between_drugs(med("Warfarin"), med("Aspirin"))
        backward = await checker.get_interactions_between_drugs(med("aspirin"), med("warfarin"))
        assert [i.interaction_id for i in forward] == ["warfarin-aspirin-001"]
        assert [i.interaction_id for i in backward] == ["warfarin-aspirin-001"]
        assert forward[0].severity == InteractionSeverity.MAJOR

    @pytest.mark.asyncio
    async def test_ingredient_substring_match(self, checker: DrugInteractionChecker) -> None:
        """Test branded strength names still match by ingredient."""
        found = await checker.get_interactions_between_drugs(med("Simvastatin 40 mg"), med("Clarithromycin 500mg"))
        assert found[0].severity == InteractionSeverity.CONTRAINDICATED

    def test_rxcui_match(self, checker: DrugInteractionChecker) -> None:
        """Test RxNorm codes match even when names differ."""
        found = checker.find_local_interactions(med("Coumadin", rxcui="11289"), med("ASA", rxcui="1191"))
        assert [i.interaction_id for i in found] == ["warfarin-aspirin-001"]

    @pytest.mark.asyncio
    async def test_unknown_pair_without_lookup(self, checker: DrugInteractionChecker) -> None:
        """Test an absent pair is treated as no interaction."""
        assert await checker.get_interactions_between_drugs(med("acetaminophen"), med("loratadine")) == []

    @pytest.mark.asyncio
    async def test_check_interactions_skips_inactive(self, checker: DrugInteractionChecker) -> None:
        """Test discontinued medications are ignored."""
        current = [med("aspirin", status=MedicationStatus.DISCONTINUED), med("amiodarone")]
        found = await checker.check_interactions(med("warfarin"), current)
        assert found == []

    @pytest.mark.asyncio
    async def test_check_interactions_sorted(self, checker: DrugInteractionChecker) -> None:
        """Test results across several current medications are sorted by severity."""
        current = [med("levothyroxine"), med("clarithromycin")]
        found = await checker.check_interactions(med("simvastatin"), current)
        assert found[0].severity == InteractionSeverity.CONTRAINDICATED

    def test_class_duplication_is_moderate(self, checker: DrugInteractionChecker) -> None:
        """Test two statins flag a moderate class interaction."""
        found = checker.check_therapeutic_class_duplication(med("atorvastatin"), [med("rosuvastatin 10mg")])
        assert len(found) == 1
        assert found[0].severity == InteractionSeverity.MODERATE
        assert found[0].source == "class"

    def test_class_duplication_ignores_same_drug(self, checker: DrugInteractionChecker) -> None:
        """Test the same drug is not a duplicate of itself."""
        assert checker.check_therapeutic_class_duplication(med("atorvastatin"), [med("Atorvastatin")]) == []

    def test_high_risk_combination(self, checker: DrugInteractionChecker) -> None:
        """Test warfarin with clopidogrel is flagged."""
        found = checker.check_high_risk_combinations([med("warfarin"), med("clopidogrel")])
        assert found[0].severity == InteractionSeverity.MAJOR
        assert "bleeding" in found[0].effect

    def test_high_risk_class_word(self, checker: DrugInteractionChecker) -> None:
        """Test class words in the high-risk table match class members."""
        found = checker.check_high_risk_combinations([med("lithium"), med("lisinopril")])
        assert any("lithium toxicity" in f.effect for f in found)

    def test_condition_contraindication(self, checker: DrugInteractionChecker) -> None:
        """Test metformin is contraindicated in CKD stage 4."""
        snapshot = make_snapshot(conditions=[condition("N18.4", "CKD stage 4")])
        found = checker.check_contraindications(med("metformin 500mg"), snapshot)
        assert found[0].severity == InteractionSeverity.CONTRAINDICATED
        assert found[0].drug2 == "CKD stage 4"

    def test_condition_contraindication_by_class(self, checker: DrugInteractionChecker) -> None:
        """Test an NSAID is contraindicated in heart failure."""
        snapshot = make_snapshot(conditions=[condition("I50.9")])
        found = checker.check_contraindications(med("naproxen"), snapshot)
        assert [f.source for f in found] == ["condition"]

    def test_allergy_cross_reactivity_contraindication(self, checker: DrugInteractionChecker) -> None:
        """Test severe penicillin allergy contraindicates amoxicillin."""
        snapshot = make_snapshot(allergies=[allergy("Penicillin", AllergySeverity.SEVERE)])
        found = checker.check_contraindications(med("amoxicillin"), snapshot)
        assert found[0].severity == InteractionSeverity.CONTRAINDICATED
        assert found[0].source == "allergy"

    def test_mild_allergy_cross_reactivity_is_major(self, checker: DrugInteractionChecker) -> None:
        """Test a non-severe allergy yields a major finding."""
        snapshot = make_snapshot(allergies=[allergy("penicillin", AllergySeverity.MILD)])
        found = checker.check_contraindications(med("ampicillin"), snapshot)
        assert found[0].severity == InteractionSeverity.MAJOR

    def test_pediatric_warning(self, checker: DrugInteractionChecker) -> None:
        """Test aspirin in a child raises a major age warning."""
        found = checker.get_age_specific_warnings(med("aspirin 81mg"), 8)
        assert found[0].severity == InteractionSeverity.MAJOR
        assert found[0].drug2 == "Pediatric Population"

    def test_geriatric_warning(self, checker: DrugInteractionChecker) -> None:
        """Test diphenhydramine in an older adult raises a moderate warning."""
        found = checker.get_age_specific_warnings(med("diphenhydramine"), 80)
        assert found[0].severity == InteractionSeverity.MODERATE

    def test_no_age_warning_for_adult(self, checker: DrugInteractionChecker) -> None:
        """Test adults between 18 and 64 get no age warnings."""
        assert checker.get_age_specific_warnings(med("aspirin"), 40) == []

    @pytest.mark.asyncio
    async def test_patient_report(self, checker: DrugInteractionChecker) -> None:
        """Test report covers all active pairs and adds the geriatric caution."""
        snapshot = make_snapshot(age=70, sex=Sex.FEMALE,
                                 medications=[med("warfarin"), med("aspirin"), med("digoxin"), med("amiodarone")])
        report = await checker.get_patient_interaction_report(snapshot)
        assert len(report.interactions) == 2
        assert report.risk_score == 14
        assert any("age" in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_patient_report_no_interactions(self, checker: DrugInteractionChecker) -> None:
        """Test empty report message."""
        report = await checker.get_patient_interaction_report(make_snapshot(medications=[med("loratadine")]))
        assert report.risk_score == 0
        assert report.recommendations == ["No significant drug interactions detected."]


class TestExternalLookup:
    """Tests for the external lookup fallback."""

    @pytest.mark.asyncio
    async def test_lookup_used_for_unknown_pair(self, reference_data) -> None:
        """Test the lookup is consulted when the local table has nothing."""
        external = DrugInteraction(drug1="x", drug2="y", severity=InteractionSeverity.MINOR, source="external")
        lookup = _StubLookup([external])
        checker = DrugInteractionChecker(reference_data, lookup=lookup)
        found = await checker.get_interactions_between_drugs(med("loratadine"), med("acetaminophen"))
        assert found == [external]
        assert lookup.calls == [("loratadine", "acetaminophen")]

    @pytest.mark.asyncio
    async def test_lookup_skipped_for_known_pair(self, reference_data) -> None:
        """Test local rules are authoritative."""
        lookup = _StubLookup()
        checker = DrugInteractionChecker(reference_data, lookup=lookup)
        await checker.get_interactions_between_drugs(med("warfarin"), med("aspirin"))
        assert lookup.calls == []

    @pytest.mark.asyncio
    async def test_lookup_failure_means_no_interactions(self, reference_data) -> None:
        """Test a failing lookup degrades to an empty result."""
        checker = DrugInteractionChecker(reference_data, lookup=_StubLookup(error=ExternalLookupError("down")))
        assert await checker.get_interactions_between_drugs(med("loratadine"), med("acetaminophen")) == []

    @pytest.mark.asyncio
    async def test_lookup_timeout_means_no_interactions(self, reference_data) -> None:
        """Test a slow lookup is abandoned after the timeout."""
        checker = DrugInteractionChecker(reference_data, lookup=_StubLookup(delay=1.0), lookup_timeout_seconds=0.01)
        assert await checker.get_interactions_between_drugs(med("loratadine"), med("acetaminophen")) == []
