"""
Solace-AI CDS Service - Drug Interaction Checker.
Pairwise, therapeutic-class, high-risk and drug-disease interaction matching.
"""
from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING
from uuid import uuid4
from pydantic import BaseModel, Field
import structlog

from .entities import Medication, PatientSnapshot
from .value_objects import AllergenType, AllergySeverity, EvidenceLevel, InteractionSeverity
from ..exceptions import ExternalLookupError
from ..infrastructure.reference_data import (
    AgeWarningRule, InteractionRule, ReferenceData, build_static_reference_data,
)

if TYPE_CHECKING:
    from ..infrastructure.interaction_lookup import InteractionLookup

logger = structlog.get_logger(__name__)


class DrugInteraction(BaseModel):
    """Interaction or contraindication finding."""
    interaction_id: str = Field(default_factory=lambda: str(uuid4()))
    drug1: str = Field(..., description="Proposed or first medication")
    drug2: str = Field(..., description="Counterpart medication, condition or population")
    severity: InteractionSeverity
    mechanism: str = Field(default="")
    effect: str = Field(default="")
    management: str = Field(default="")
    evidence: EvidenceLevel = Field(default=EvidenceLevel.GOOD)
    references: list[str] = Field(default_factory=list)
    source: str = Field(default="local", description="local, external, class, high-risk, condition, allergy or age")

    model_config = {"frozen": True}

    @classmethod
    def from_rule(cls, rule: InteractionRule, drug1: str, drug2: str) -> DrugInteraction:
        return cls(
            interaction_id=rule.interaction_id, drug1=drug1, drug2=drug2,
            severity=rule.severity, mechanism=rule.mechanism, effect=rule.effect,
            management=rule.management, evidence=rule.evidence,
            references=list(rule.references),
        )

    def meets_threshold(self, threshold: InteractionSeverity) -> bool:
        return self.severity.rank >= threshold.rank


class InteractionReport(BaseModel):
    """Interaction review across every active medication pair."""
    patient_id: str
    interactions: list[DrugInteraction] = Field(default_factory=list)
    risk_score: int = Field(default=0, ge=0, le=100)
    recommendations: list[str] = Field(default_factory=list)


def sort_interactions_by_severity(interactions: list[DrugInteraction]) -> list[DrugInteraction]:
    """Stable sort, most severe first; ties keep discovery order."""
    return sorted(interactions, key=lambda i: -i.severity.rank)


def calculate_interaction_risk_score(interactions: list[DrugInteraction]) -> int:
    """Sum of severity weights capped at 100."""
    return min(sum(i.severity.weight for i in interactions), 100)


class DrugInteractionChecker:
    """
    Interaction matcher over the reference tables.
    Local rules are authoritative; an optional external lookup is consulted
    only for pairs the local table does not know.
    """

    def __init__(self, reference_data: ReferenceData | None = None,
                 lookup: InteractionLookup | None = None,
                 lookup_timeout_seconds: float = 10.0) -> None:
        self._data = reference_data or build_static_reference_data()
        self._lookup = lookup
        self._lookup_timeout_seconds = lookup_timeout_seconds
        logger.info("drug_interaction_checker_initialized", version=self._data.version,
                    external_lookup=lookup is not None)

    @property
    def reference_data(self) -> ReferenceData:
        return self._data

    async def check_interactions(self, proposed: Medication,
                                 current_medications: list[Medication]) -> list[DrugInteraction]:
        """Interactions between a proposed medication and the active medication list."""
        interactions: list[DrugInteraction] = []
        for current in current_medications:
            if not current.is_active:
                continue
            interactions.extend(await self.get_interactions_between_drugs(proposed, current))
        interactions.extend(self.check_therapeutic_class_duplication(proposed, current_medications))
        return sort_interactions_by_severity(interactions)

    async def get_interactions_between_drugs(self, drug1: Medication,
                                             drug2: Medication) -> list[DrugInteraction]:
        """Local table first, then the external lookup for unknown pairs."""
        local = self.find_local_interactions(drug1, drug2)
        if local or self._lookup is None:
            return local
        try:
            return await asyncio.wait_for(
                self._lookup.fetch_interactions(drug1.name, drug2.name),
                timeout=self._lookup_timeout_seconds,
            )
        except (ExternalLookupError, asyncio.TimeoutError) as e:
            logger.warning("external_interaction_lookup_failed", drug1=drug1.name,
                           drug2=drug2.name, error=str(e) or type(e).__name__)
            return []

    def find_local_interactions(self, drug1: Medication, drug2: Medication) -> list[DrugInteraction]:
        """Match by RxNorm pair when both codes are present, otherwise by name."""
        if drug1.rxcui and drug2.rxcui:
            rules = self._data.interactions_for_rxcui(drug1.rxcui, drug2.rxcui)
            if rules:
                return [DrugInteraction.from_rule(r, drug1.name, drug2.name) for r in rules]
        rules = self._data.interactions_for(drug1.name, drug2.name)
        if not rules:
            rules = tuple(
                rule
                for pair_rules in self._data.interactions.values()
                for rule in pair_rules
                if (drug1.contains_ingredient(rule.drug1) and drug2.contains_ingredient(rule.drug2))
                or (drug1.contains_ingredient(rule.drug2) and drug2.contains_ingredient(rule.drug1))
            )
        return [DrugInteraction.from_rule(r, drug1.name, drug2.name) for r in rules]

    def check_therapeutic_class_duplication(self, proposed: Medication,
                                            current_medications: list[Medication]) -> list[DrugInteraction]:
        """Flag active medications sharing the proposed drug's therapeutic class."""
        proposed_class = self._data.therapeutic_class_of(proposed.name)
        if proposed_class is None:
            return []
        duplicates: list[DrugInteraction] = []
        for current in current_medications:
            if not current.is_active or current.normalized_name == proposed.normalized_name:
                continue
            if self._data.therapeutic_class_of(current.name) == proposed_class:
                duplicates.append(DrugInteraction(
                    interaction_id=f"dup-{uuid4().hex[:12]}",
                    drug1=proposed.name, drug2=current.name,
                    severity=InteractionSeverity.MODERATE,
                    mechanism="Duplicate therapeutic class",
                    effect=f"Both medications are {proposed_class}; potential for additive effects or increased adverse reactions",
                    management="Consider discontinuing one medication or adjusting doses. Monitor for enhanced therapeutic effects.",
                    evidence=EvidenceLevel.GOOD, source="class",
                ))
        return duplicates

    def check_high_risk_combinations(self, medications: list[Medication]) -> list[DrugInteraction]:
        """Flag well-known dangerous combinations among active medications."""
        active = [m for m in medications if m.is_active]
        findings: list[DrugInteraction] = []
        for pair in self._data.high_risk_pairs:
            first = next((m for m in active if self._matches_ingredient(m, pair.ingredient_a)), None)
            second = next((m for m in active if m is not first
                           and self._matches_ingredient(m, pair.ingredient_b)), None)
            if first is None or second is None:
                continue
            findings.append(DrugInteraction(
                interaction_id=f"high-risk-{pair.risk.replace(' ', '-')}-{uuid4().hex[:8]}",
                drug1=first.name, drug2=second.name,
                severity=InteractionSeverity.MAJOR,
                mechanism=f"High-risk combination for {pair.risk}",
                effect=f"Increased risk of {pair.risk}",
                management=f"Monitor closely for signs of {pair.risk}. Consider alternative therapy.",
                evidence=EvidenceLevel.EXCELLENT, source="high-risk",
            ))
        return findings

    def check_contraindications(self, medication: Medication,
                                snapshot: PatientSnapshot) -> list[DrugInteraction]:
        """Drug-disease contraindications and drug-allergy cross-reactivity."""
        findings: list[DrugInteraction] = []
        for condition in snapshot.active_conditions():
            for rule in self._data.condition_contraindications:
                if not any(condition.icd10_code.startswith(p) for p in rule.code_prefixes):
                    continue
                if not self._matches_contraindication(medication, rule.ingredient, rule.drug_class):
                    continue
                label = condition.description or condition.icd10_code
                findings.append(DrugInteraction(
                    interaction_id=f"contra-{condition.condition_id}",
                    drug1=medication.name, drug2=label,
                    severity=InteractionSeverity.CONTRAINDICATED,
                    mechanism="Disease-drug contraindication",
                    effect=f"Contraindicated in {label}: {rule.reason}",
                    management="Select alternative medication. Do not administer.",
                    evidence=EvidenceLevel.EXCELLENT, source="condition",
                ))
                break
        for allergy in snapshot.active_allergies():
            if allergy.allergen_type != AllergenType.DRUG:
                continue
            if not self.is_cross_reactive(medication, allergy.allergen):
                continue
            severity = (InteractionSeverity.CONTRAINDICATED if allergy.severity == AllergySeverity.SEVERE
                        else InteractionSeverity.MAJOR)
            findings.append(DrugInteraction(
                interaction_id=f"allergy-{allergy.allergen.lower().replace(' ', '-')}",
                drug1=medication.name, drug2=allergy.allergen,
                severity=severity,
                mechanism="Cross-reactivity with known allergy",
                effect=f"Risk of allergic reaction due to cross-reactivity with {allergy.allergen}",
                management="Consider alternative medication. If no alternative, proceed with caution and monitoring.",
                evidence=EvidenceLevel.GOOD, source="allergy",
            ))
        return sort_interactions_by_severity(findings)

    def is_cross_reactive(self, medication: Medication, allergen: str) -> bool:
        allergen_name = allergen.strip().lower()
        for key, rules in self._data.cross_reactivity.items():
            if key not in allergen_name:
                continue
            return any(medication.contains_ingredient(drug) for rule in rules for drug in rule.cross_reactive_with)
        return False

    def get_age_specific_warnings(self, medication: Medication, age: int) -> list[DrugInteraction]:
        """Pediatric (<18) and geriatric (>=65) medication concerns."""
        warnings: list[DrugInteraction] = []
        if age < 18:
            warnings.extend(self._age_warnings(medication, self._data.pediatric_warnings,
                                               "Pediatric Population", InteractionSeverity.MAJOR,
                                               "Age-related contraindication",
                                               "Consider alternative therapy appropriate for pediatric use."))
        if age >= 65:
            warnings.extend(self._age_warnings(medication, self._data.geriatric_warnings,
                                               "Geriatric Population", InteractionSeverity.MODERATE,
                                               "Age-related increased sensitivity",
                                               "Consider alternative therapy or dose reduction. Monitor closely."))
        return warnings

    async def get_patient_interaction_report(self, snapshot: PatientSnapshot) -> InteractionReport:
        """Check every active medication pair and score the result."""
        medications = snapshot.active_medications()
        interactions: list[DrugInteraction] = []
        for i, first in enumerate(medications):
            for second in medications[i + 1:]:
                interactions.extend(await self.get_interactions_between_drugs(first, second))
        risk_score = calculate_interaction_risk_score(interactions)
        report = InteractionReport(
            patient_id=snapshot.patient_id,
            interactions=sort_interactions_by_severity(interactions),
            risk_score=risk_score,
            recommendations=self._generate_recommendations(interactions, snapshot.age),
        )
        logger.debug("interaction_report_generated", patient_id=snapshot.patient_id,
                     interactions=len(interactions), risk_score=risk_score)
        return report

    def _generate_recommendations(self, interactions: list[DrugInteraction], age: int) -> list[str]:
        if not interactions:
            return ["No significant drug interactions detected."]
        recommendations: list[str] = []
        severe = sum(1 for i in interactions if i.severity.rank >= InteractionSeverity.MAJOR.rank)
        if severe:
            recommendations.append(f"{severe} major/contraindicated interaction(s) require immediate attention.")
        recommendations.extend([
            "Review all medication interactions with patient.",
            "Consider therapeutic alternatives where appropriate.",
            "Implement enhanced monitoring protocols.",
        ])
        if age >= 65:
            recommendations.append("Apply extra caution due to patient age (>=65 years).")
        return recommendations

    def _age_warnings(self, medication: Medication, rules: tuple[AgeWarningRule, ...], population: str,
                      severity: InteractionSeverity, mechanism: str, management: str) -> list[DrugInteraction]:
        return [
            DrugInteraction(
                interaction_id=f"{population.split()[0].lower()}-{rule.ingredient}",
                drug1=medication.name, drug2=population, severity=severity,
                mechanism=mechanism, effect=rule.concern, management=management,
                evidence=EvidenceLevel.GOOD, source="age",
            )
            for rule in rules
            if medication.contains_ingredient(rule.ingredient)
        ]

    def _matches_ingredient(self, medication: Medication, ingredient: str) -> bool:
        return self._data.drug_matches(medication.name, ingredient)

    def _matches_contraindication(self, medication: Medication, ingredient: str | None,
                                  drug_class: str | None) -> bool:
        if ingredient and self._matches_ingredient(medication, ingredient):
            return True
        return drug_class is not None and self._data.therapeutic_class_of(medication.name) == drug_class
