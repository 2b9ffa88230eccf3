"""CDS Service domain package - rule modules, alert lifecycle and orchestration."""
from __future__ import annotations
import importlib

_EXPORTS = {
    "AlertService": "alerts",
    "Alert": "alerts",
    "AllergyChecker": "allergies",
    "DrugInteractionChecker": "interactions",
    "GuidelineEngine": "guidelines",
    "QualityMeasureEvaluator": "quality_measures",
    "RiskScoringService": "risk_scoring",
    "CDSOrchestrator": "orchestrator",
    "HookRequest": "hooks",
    "HookResponse": "hooks",
    "PatientSnapshot": "entities",
    "Medication": "entities",
    "Card": "entities",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str):
    """Lazy imports; the rule modules and infrastructure import each other's submodules."""
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(f".{module}", __name__), name)
