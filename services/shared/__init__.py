"""
Solace-AI Shared Services Module.
Common lifecycle contract shared by the CDS services.
"""
from .service_base import ServiceBase

__all__ = ["ServiceBase"]
