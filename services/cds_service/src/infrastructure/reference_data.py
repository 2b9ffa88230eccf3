"""
Solace-AI CDS Service - Interaction and Cross-Reactivity Reference Data.
Versioned, read-only rule tables seeded at process start from static definitions or an external service.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any
import httpx
import structlog

from ..domain.value_objects import AllergyAlertSeverity, EvidenceLevel, InteractionSeverity
from ..exceptions import ReferenceDataError

logger = structlog.get_logger(__name__)

# Class words accepted wherever rule tables name a drug class instead of an ingredient
CLASS_ALIASES = {
    "ace inhibitor": "ACE Inhibitors",
    "beta-blocker": "Beta Blockers",
    "statin": "Statins",
    "statins": "Statins",
    "ssri": "SSRIs",
    "nsaid": "NSAIDs",
}


def interaction_key(drug1: str, drug2: str) -> str:
    """Order-independent key for a drug pair."""
    first, second = sorted((drug1.strip().lower(), drug2.strip().lower()))
    return f"{first}|{second}"


@dataclass(frozen=True)
class InteractionRule:
    """Known pairwise drug interaction."""
    interaction_id: str
    drug1: str
    drug2: str
    severity: InteractionSeverity
    mechanism: str
    effect: str
    management: str
    evidence: EvidenceLevel = EvidenceLevel.GOOD
    rxcui1: str | None = None
    rxcui2: str | None = None
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionContraindication:
    """Drug-disease contraindication keyed by ingredient or therapeutic class."""
    code_prefixes: tuple[str, ...]
    reason: str
    ingredient: str | None = None
    drug_class: str | None = None


@dataclass(frozen=True)
class CrossReactivityRule:
    """Allergen to structurally related drug mapping."""
    allergen: str
    cross_reactive_with: tuple[str, ...]
    mechanism: str
    severity: AllergyAlertSeverity
    likelihood: int


@dataclass(frozen=True)
class HighRiskPair:
    """Ingredient combination flagged regardless of the pairwise table."""
    ingredient_a: str
    ingredient_b: str
    risk: str


@dataclass(frozen=True)
class AgeWarningRule:
    """Age-restricted medication concern."""
    ingredient: str
    concern: str


@dataclass(frozen=True)
class ReferenceData:
    """Immutable snapshot of every rule table used by the matchers."""
    version: str
    interactions: Mapping[str, tuple[InteractionRule, ...]]
    therapeutic_classes: Mapping[str, tuple[str, ...]]
    condition_contraindications: tuple[ConditionContraindication, ...]
    cross_reactivity: Mapping[str, tuple[CrossReactivityRule, ...]]
    allergy_drug_classes: Mapping[str, tuple[str, ...]]
    food_drug_interactions: Mapping[str, tuple[str, ...]]
    high_risk_pairs: tuple[HighRiskPair, ...]
    pediatric_warnings: tuple[AgeWarningRule, ...]
    geriatric_warnings: tuple[AgeWarningRule, ...]
    therapeutic_alternatives: Mapping[str, tuple[str, ...]]
    _class_by_drug: Mapping[str, str] = field(init=False, repr=False)
    _interactions_by_rxcui: Mapping[str, tuple[InteractionRule, ...]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        class_by_drug = {
            drug.lower(): class_name
            for class_name, drugs in self.therapeutic_classes.items()
            for drug in drugs
        }
        by_rxcui: dict[str, list[InteractionRule]] = {}
        for rules in self.interactions.values():
            for rule in rules:
                if rule.rxcui1 and rule.rxcui2:
                    by_rxcui.setdefault(interaction_key(rule.rxcui1, rule.rxcui2), []).append(rule)
        object.__setattr__(self, "_class_by_drug", MappingProxyType(class_by_drug))
        object.__setattr__(self, "_interactions_by_rxcui",
                           MappingProxyType({k: tuple(v) for k, v in by_rxcui.items()}))

    def therapeutic_class_of(self, drug_name: str) -> str | None:
        """Therapeutic class by exact name, falling back to ingredient containment."""
        name = drug_name.strip().lower()
        if name in self._class_by_drug:
            return self._class_by_drug[name]
        for drug, class_name in self._class_by_drug.items():
            if drug in name:
                return class_name
        return None

    def drug_matches(self, drug_name: str, ingredient: str) -> bool:
        """Ingredient substring match that also accepts class words such as "nsaid"."""
        needle = ingredient.strip().lower()
        if needle in drug_name.strip().lower():
            return True
        class_name = CLASS_ALIASES.get(needle)
        return class_name is not None and self.therapeutic_class_of(drug_name) == class_name

    def interactions_for(self, drug1: str, drug2: str) -> tuple[InteractionRule, ...]:
        return self.interactions.get(interaction_key(drug1, drug2), ())

    def interactions_for_rxcui(self, rxcui1: str, rxcui2: str) -> tuple[InteractionRule, ...]:
        return self._interactions_by_rxcui.get(interaction_key(rxcui1, rxcui2), ())

    def summary(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "interaction_pairs": len(self.interactions),
            "therapeutic_classes": len(self.therapeutic_classes),
            "cross_reactivity_allergens": len(self.cross_reactivity),
            "high_risk_pairs": len(self.high_risk_pairs),
        }


def _freeze(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType({k: tuple(v) for k, v in mapping.items()})


def _index_interactions(rules: list[InteractionRule]) -> Mapping[str, tuple[InteractionRule, ...]]:
    indexed: dict[str, list[InteractionRule]] = {}
    for rule in rules:
        indexed.setdefault(interaction_key(rule.drug1, rule.drug2), []).append(rule)
    return _freeze(indexed)


def _load_interaction_rules() -> list[InteractionRule]:
    """Pairwise interaction table."""
    return [
        InteractionRule(
            interaction_id="warfarin-aspirin-001",
            drug1="warfarin", drug2="aspirin",
            severity=InteractionSeverity.MAJOR,
            mechanism="Additive anticoagulant and antiplatelet effects",
            effect="Increased risk of bleeding",
            management="Monitor INR more frequently. Consider gastroprotection. Watch for signs of bleeding.",
            evidence=EvidenceLevel.EXCELLENT,
            rxcui1="11289", rxcui2="1191",
            references=("Holbrook A, et al. Chest. 2012;141(2 Suppl):e152S-e184S.",),
        ),
        InteractionRule(
            interaction_id="ace-inhibitor-potassium-001",
            drug1="lisinopril", drug2="potassium chloride",
            severity=InteractionSeverity.MAJOR,
            mechanism="ACE inhibitors reduce potassium excretion",
            effect="Risk of hyperkalemia",
            management="Monitor serum potassium levels. Consider dose reduction or discontinuation of potassium supplementation.",
            evidence=EvidenceLevel.EXCELLENT,
            rxcui1="29046", rxcui2="8591",
        ),
        InteractionRule(
            interaction_id="digoxin-amiodarone-001",
            drug1="digoxin", drug2="amiodarone",
            severity=InteractionSeverity.MAJOR,
            mechanism="Amiodarone inhibits P-glycoprotein, increasing digoxin levels",
            effect="Increased risk of digoxin toxicity",
            management="Reduce digoxin dose by 50%. Monitor digoxin levels and signs of toxicity.",
            evidence=EvidenceLevel.EXCELLENT,
            rxcui1="3407", rxcui2="703",
        ),
        InteractionRule(
            interaction_id="simvastatin-clarithromycin-001",
            drug1="simvastatin", drug2="clarithromycin",
            severity=InteractionSeverity.CONTRAINDICATED,
            mechanism="Strong CYP3A4 inhibition raises statin exposure",
            effect="Risk of myopathy and rhabdomyolysis",
            management="Do not co-administer. Suspend simvastatin during clarithromycin therapy.",
            evidence=EvidenceLevel.EXCELLENT,
        ),
        InteractionRule(
            interaction_id="sertraline-tramadol-001",
            drug1="sertraline", drug2="tramadol",
            severity=InteractionSeverity.MAJOR,
            mechanism="Additive serotonergic activity",
            effect="Risk of serotonin syndrome and lowered seizure threshold",
            management="Avoid combination where possible. Monitor for agitation, hyperthermia and clonus.",
            evidence=EvidenceLevel.GOOD,
        ),
        InteractionRule(
            interaction_id="omeprazole-clopidogrel-001",
            drug1="omeprazole", drug2="clopidogrel",
            severity=InteractionSeverity.MODERATE,
            mechanism="CYP2C19 inhibition reduces clopidogrel activation",
            effect="Reduced antiplatelet effect",
            management="Prefer pantoprazole if acid suppression is required.",
            evidence=EvidenceLevel.GOOD,
        ),
        InteractionRule(
            interaction_id="levothyroxine-calcium-001",
            drug1="levothyroxine", drug2="calcium carbonate",
            severity=InteractionSeverity.MINOR,
            mechanism="Calcium binds levothyroxine in the gut",
            effect="Reduced levothyroxine absorption",
            management="Separate administration by at least 4 hours.",
            evidence=EvidenceLevel.FAIR,
        ),
    ]


def _load_therapeutic_classes() -> dict[str, list[str]]:
    return {
        "ACE Inhibitors": ["lisinopril", "enalapril", "captopril", "ramipril"],
        "ARBs": ["losartan", "valsartan", "irbesartan", "candesartan"],
        "Beta Blockers": ["metoprolol", "atenolol", "propranolol", "carvedilol"],
        "Statins": ["atorvastatin", "simvastatin", "rosuvastatin", "pravastatin"],
        "Proton Pump Inhibitors": ["omeprazole", "lansoprazole", "pantoprazole", "esomeprazole"],
        "SSRIs": ["sertraline", "fluoxetine", "paroxetine", "citalopram"],
        "NSAIDs": ["ibuprofen", "naproxen", "diclofenac", "celecoxib"],
    }


def _load_condition_contraindications() -> list[ConditionContraindication]:
    return [
        ConditionContraindication(ingredient="metformin", code_prefixes=("N18.3", "N18.4", "N18.5", "N18.6"),
                                  reason="Risk of lactic acidosis in chronic kidney disease"),
        ConditionContraindication(ingredient="nsaid", drug_class="NSAIDs", code_prefixes=("I50",),
                                  reason="May worsen heart failure"),
        ConditionContraindication(ingredient="warfarin", code_prefixes=("K92.2", "I85.0"),
                                  reason="Active or recent gastrointestinal bleeding"),
    ]


def _load_cross_reactivity_rules() -> dict[str, list[CrossReactivityRule]]:
    return {
        "penicillin": [
            CrossReactivityRule(
                allergen="penicillin",
                cross_reactive_with=("amoxicillin", "ampicillin", "amoxicillin/clavulanate", "piperacillin"),
                mechanism="Beta-lactam ring structure similarity",
                severity=AllergyAlertSeverity.HIGH, likelihood=95,
            ),
            CrossReactivityRule(
                allergen="penicillin",
                cross_reactive_with=("cephalexin", "cefazolin", "ceftriaxone"),
                mechanism="Beta-lactam cross-reactivity (lower risk with newer cephalosporins)",
                severity=AllergyAlertSeverity.MEDIUM, likelihood=15,
            ),
        ],
        "sulfa": [
            CrossReactivityRule(
                allergen="sulfa",
                cross_reactive_with=("sulfamethoxazole", "sulfasalazine", "sulfadiazine"),
                mechanism="Sulfonamide structure similarity",
                severity=AllergyAlertSeverity.HIGH, likelihood=90,
            ),
            CrossReactivityRule(
                allergen="sulfa",
                cross_reactive_with=("furosemide", "hydrochlorothiazide", "celecoxib"),
                mechanism="Non-antibiotic sulfonamides (lower cross-reactivity risk)",
                severity=AllergyAlertSeverity.LOW, likelihood=5,
            ),
        ],
        "aspirin": [
            CrossReactivityRule(
                allergen="aspirin",
                cross_reactive_with=("ibuprofen", "naproxen", "diclofenac", "indomethacin"),
                mechanism="COX inhibition and prostaglandin pathway",
                severity=AllergyAlertSeverity.HIGH, likelihood=85,
            ),
        ],
    }


def _load_allergy_drug_classes() -> dict[str, list[str]]:
    return {
        "Beta-lactams": ["penicillin", "amoxicillin", "ampicillin", "cephalexin", "cefazolin", "ceftriaxone"],
        "Sulfonamides": ["sulfamethoxazole", "sulfasalazine", "sulfadiazine"],
        "NSAIDs": ["aspirin", "ibuprofen", "naproxen", "diclofenac", "celecoxib"],
    }


def _load_food_drug_interactions() -> dict[str, list[str]]:
    return {
        "shellfish": ["iodinated contrast media"],
        "egg": ["propofol"],
        "soy": ["propofol"],
    }


def _load_high_risk_pairs() -> list[HighRiskPair]:
    return [
        HighRiskPair("warfarin", "aspirin", "bleeding"),
        HighRiskPair("warfarin", "clopidogrel", "bleeding"),
        HighRiskPair("metformin", "contrast", "lactic acidosis"),
        HighRiskPair("ace inhibitor", "potassium", "hyperkalemia"),
        HighRiskPair("digoxin", "amiodarone", "toxicity"),
        HighRiskPair("warfarin", "amiodarone", "bleeding"),
        HighRiskPair("lithium", "ace inhibitor", "lithium toxicity"),
        HighRiskPair("tramadol", "ssri", "serotonin syndrome"),
    ]


def _load_therapeutic_alternatives() -> dict[str, list[str]]:
    return {
        "Beta-lactams": ["azithromycin", "doxycycline", "levofloxacin"],
        "Sulfonamides": ["nitrofurantoin", "ciprofloxacin"],
        "NSAIDs": ["acetaminophen"],
        "ACE Inhibitors": ["losartan", "valsartan"],
        "ARBs": ["lisinopril", "amlodipine"],
        "Statins": ["ezetimibe"],
        "SSRIs": ["bupropion", "mirtazapine"],
        "Proton Pump Inhibitors": ["famotidine"],
        "Beta Blockers": ["amlodipine", "diltiazem"],
    }


def build_static_reference_data(version: str = "2024.1") -> ReferenceData:
    """Build the reference tables from the static definitions in this module."""
    return ReferenceData(
        version=version,
        interactions=_index_interactions(_load_interaction_rules()),
        therapeutic_classes=_freeze(_load_therapeutic_classes()),
        condition_contraindications=tuple(_load_condition_contraindications()),
        cross_reactivity=_freeze(_load_cross_reactivity_rules()),
        allergy_drug_classes=_freeze(_load_allergy_drug_classes()),
        food_drug_interactions=_freeze(_load_food_drug_interactions()),
        high_risk_pairs=tuple(_load_high_risk_pairs()),
        pediatric_warnings=(
            AgeWarningRule("aspirin", "Reye syndrome risk"),
            AgeWarningRule("tetracycline", "Tooth discoloration"),
            AgeWarningRule("fluoroquinolone", "Cartilage development concerns"),
        ),
        geriatric_warnings=(
            AgeWarningRule("diphenhydramine", "Anticholinergic effects, cognitive impairment"),
            AgeWarningRule("diazepam", "Falls risk, cognitive impairment"),
            AgeWarningRule("amitriptyline", "Anticholinergic effects, sedation"),
        ),
        therapeutic_alternatives=_freeze(_load_therapeutic_alternatives()),
    )


def reference_data_from_dict(payload: dict[str, Any]) -> ReferenceData:
    """Parse a reference-data document served by an external rules service."""
    try:
        interactions = [
            InteractionRule(
                interaction_id=item["interaction_id"],
                drug1=item["drug1"], drug2=item["drug2"],
                severity=InteractionSeverity(item["severity"]),
                mechanism=item.get("mechanism", ""),
                effect=item.get("effect", ""),
                management=item.get("management", ""),
                evidence=EvidenceLevel(item.get("evidence", EvidenceLevel.GOOD.value)),
                rxcui1=item.get("rxcui1"), rxcui2=item.get("rxcui2"),
                references=tuple(item.get("references", ())),
            )
            for item in payload.get("interactions", [])
        ]
        cross_reactivity: dict[str, list[CrossReactivityRule]] = {}
        for item in payload.get("cross_reactivity", []):
            rule = CrossReactivityRule(
                allergen=item["allergen"].lower(),
                cross_reactive_with=tuple(item["cross_reactive_with"]),
                mechanism=item.get("mechanism", ""),
                severity=AllergyAlertSeverity(item["severity"]),
                likelihood=int(item.get("likelihood", 0)),
            )
            cross_reactivity.setdefault(rule.allergen, []).append(rule)
        return ReferenceData(
            version=str(payload.get("version", "external")),
            interactions=_index_interactions(interactions),
            therapeutic_classes=_freeze(payload.get("therapeutic_classes", {})),
            condition_contraindications=tuple(
                ConditionContraindication(
                    code_prefixes=tuple(item["code_prefixes"]), reason=item.get("reason", ""),
                    ingredient=item.get("ingredient"), drug_class=item.get("drug_class"),
                )
                for item in payload.get("condition_contraindications", [])
            ),
            cross_reactivity=_freeze(cross_reactivity),
            allergy_drug_classes=_freeze(payload.get("allergy_drug_classes", {})),
            food_drug_interactions=_freeze(payload.get("food_drug_interactions", {})),
            high_risk_pairs=tuple(
                HighRiskPair(item["ingredient_a"], item["ingredient_b"], item["risk"])
                for item in payload.get("high_risk_pairs", [])
            ),
            pediatric_warnings=tuple(
                AgeWarningRule(item["ingredient"], item["concern"])
                for item in payload.get("pediatric_warnings", [])
            ),
            geriatric_warnings=tuple(
                AgeWarningRule(item["ingredient"], item["concern"])
                for item in payload.get("geriatric_warnings", [])
            ),
            therapeutic_alternatives=_freeze(payload.get("therapeutic_alternatives", {})),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ReferenceDataError("Malformed reference data document", cause=e) from e


class ReferenceDataSource(ABC):
    """Source of reference data, read once at engine start."""

    @abstractmethod
    async def load(self) -> ReferenceData:
        """Load the reference tables."""
        pass


class StaticReferenceDataSource(ReferenceDataSource):
    """Reference data from the built-in static definitions."""

    def __init__(self, version: str = "2024.1") -> None:
        self._version = version

    async def load(self) -> ReferenceData:
        data = build_static_reference_data(self._version)
        logger.info("reference_data_loaded", source="static", **data.summary())
        return data


class HttpReferenceDataSource(ReferenceDataSource):
    """Reference data fetched from an external rules service."""

    def __init__(self, base_url: str, timeout_seconds: float = 10.0,
                 client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def load(self) -> ReferenceData:
        client = self._client or httpx.AsyncClient(base_url=self._base_url,
                                                   timeout=httpx.Timeout(self._timeout_seconds))
        try:
            response = await client.get("/reference-data")
            response.raise_for_status()
            data = reference_data_from_dict(response.json())
        except httpx.HTTPError as e:
            raise ReferenceDataError(f"Reference data fetch failed: {e}", cause=e) from e
        except ValueError as e:
            raise ReferenceDataError("Reference data response is not valid JSON", cause=e) from e
        finally:
            if self._client is None:
                await client.aclose()
        logger.info("reference_data_loaded", source="http", **data.summary())
        return data
