"""
CDS Service - Infrastructure Layer.
Snapshot reader contract, reference-data sources and the external interaction lookup.
"""
from __future__ import annotations
import importlib

_EXPORTS = {
    "ClinicalSnapshotReader": "snapshot_reader",
    "ReferenceData": "reference_data",
    "ReferenceDataSource": "reference_data",
    "StaticReferenceDataSource": "reference_data",
    "HttpReferenceDataSource": "reference_data",
    "build_static_reference_data": "reference_data",
    "InteractionLookup": "interaction_lookup",
    "HttpInteractionLookup": "interaction_lookup",
    "CachedInteractionLookup": "interaction_lookup",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str):
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(f".{module}", __name__), name)
