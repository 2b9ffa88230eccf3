"""CDS Service source package."""
from __future__ import annotations

__all__ = ["CDSOrchestrator", "cds_engine", "configure_logging"]


def __getattr__(name: str):
    """Lazy imports so domain and infrastructure modules load independently."""
    if name == "CDSOrchestrator":
        from .domain.orchestrator import CDSOrchestrator
        return CDSOrchestrator
    if name in ("cds_engine", "configure_logging"):
        from .main import cds_engine, configure_logging
        return {"cds_engine": cds_engine, "configure_logging": configure_logging}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
