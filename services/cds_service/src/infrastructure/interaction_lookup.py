"""
Solace-AI CDS Service - External Interaction Lookup.
Optional external drug interaction database with a bidirectional staleness cache.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
import httpx
import structlog

from .reference_data import interaction_key
from ..domain.interactions import DrugInteraction
from ..domain.value_objects import EvidenceLevel, InteractionSeverity
from ..exceptions import ExternalLookupError

logger = structlog.get_logger(__name__)


class InteractionLookup(ABC):
    """Source of interactions for drug pairs the local tables do not cover."""

    @abstractmethod
    async def fetch_interactions(self, drug1: str, drug2: str) -> list[DrugInteraction]:
        """Return interactions for the pair, raising ExternalLookupError on failure."""
        pass


class HttpInteractionLookup(InteractionLookup):
    """Interaction lookup against an external HTTP interaction database."""

    def __init__(self, base_url: str, timeout_seconds: float = 10.0,
                 client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self._base_url,
                                                   timeout=httpx.Timeout(timeout_seconds))
        self._owns_client = client is None

    async def fetch_interactions(self, drug1: str, drug2: str) -> list[DrugInteraction]:
        try:
            response = await self._client.get("/interactions", params={"drug1": drug1, "drug2": drug2})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalLookupError(f"Interaction lookup failed for {drug1}/{drug2}: {e}",
                                      cause=e, details={"drug1": drug1, "drug2": drug2}) from e
        try:
            return [self._parse(item, drug1, drug2) for item in payload.get("interactions", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ExternalLookupError("Malformed interaction lookup response", cause=e) from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _parse(item: dict[str, Any], drug1: str, drug2: str) -> DrugInteraction:
        return DrugInteraction(
            interaction_id=str(item["interaction_id"]),
            drug1=item.get("drug1", drug1), drug2=item.get("drug2", drug2),
            severity=InteractionSeverity(item["severity"]),
            mechanism=item.get("mechanism", ""), effect=item.get("effect", ""),
            management=item.get("management", ""),
            evidence=EvidenceLevel(item.get("evidence", EvidenceLevel.FAIR.value)),
            references=list(item.get("references", [])), source="external",
        )


class CachedInteractionLookup(InteractionLookup):
    """Caches lookup results by order-independent pair key until they go stale."""

    def __init__(self, inner: InteractionLookup, staleness_hours: int = 24,
                 clock: Callable[[], datetime] | None = None) -> None:
        self._inner = inner
        self._staleness = timedelta(hours=staleness_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, tuple[datetime, list[DrugInteraction]]] = {}
        self._hits = 0
        self._misses = 0

    async def fetch_interactions(self, drug1: str, drug2: str) -> list[DrugInteraction]:
        key = interaction_key(drug1, drug2)
        cached = self._cache.get(key)
        now = self._clock()
        if cached is not None and now - cached[0] < self._staleness:
            self._hits += 1
            return list(cached[1])
        self._misses += 1
        interactions = await self._inner.fetch_interactions(drug1, drug2)
        self._cache[key] = (now, interactions)
        logger.debug("interaction_lookup_cached", key=key, count=len(interactions))
        return list(interactions)

    @property
    def stats(self) -> dict[str, int]:
        return {"entries": len(self._cache), "hits": self._hits, "misses": self._misses}

    def clear(self) -> None:
        self._cache.clear()
