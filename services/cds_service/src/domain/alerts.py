"""
Solace-AI CDS Service - Alert Lifecycle Service.
Queued creation, deduplication, active/history stores, subscriber notification
and age-based expiry for clinical alerts.
"""
from __future__ import annotations
import asyncio
import inspect
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Union
from uuid import uuid4
from pydantic import BaseModel, Field, field_validator
import structlog

from services.shared import ServiceBase
from .allergies import AllergyAlert
from .entities import Card, CardSource, OverrideReason, as_utc
from .interactions import DrugInteraction
from .quality_measures import MeasureResult
from .risk_scoring import RiskScore
from .value_objects import AlertSeverity, AlertStatus, AlertType, Priority
from ..config import AlertLifecycleConfig
from ..exceptions import InputInvalidError

logger = structlog.get_logger(__name__)

AUTO_DISMISS_REASON = "Auto-dismissed due to age"
SYSTEM_ACTOR = "system"

AlertCallback = Callable[["Alert"], Union[Awaitable[None], None]]


class Alert(BaseModel):
    """Lifecycle-managed clinical alert. Transitions produce copies."""
    alert_id: str
    patient_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    source: str = Field(default="CDS")
    actionable: bool = Field(default=True)
    status: AlertStatus = Field(default=AlertStatus.QUEUED)
    dismissed: bool = Field(default=False)
    dismissed_by: str | None = None
    dismissed_at: datetime | None = None
    dismissal_reason: str | None = None
    related_data: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class AlertCreate(BaseModel):
    """Input for alert creation."""
    patient_id: str = Field(..., min_length=1)
    alert_type: AlertType
    severity: AlertSeverity
    title: str = Field(..., min_length=1)
    message: str = Field(default="")
    source: str = Field(default="CDS")
    actionable: bool = Field(default=True)
    related_data: dict[str, Any] = Field(default_factory=dict)
    alert_id: str | None = None
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class AlertFieldFilter(BaseModel):
    """Equality filter on an alert attribute or related-data key."""
    field: str
    value: Any

    def matches(self, alert: Alert) -> bool:
        if self.field in Alert.model_fields:
            return getattr(alert, self.field) == self.value
        return alert.related_data.get(self.field) == self.value


class SubscriptionFilter(BaseModel):
    """Subscriber interest; empty lists match everything."""
    alert_types: list[AlertType] = Field(default_factory=list)
    severities: list[AlertSeverity] = Field(default_factory=list)
    filters: list[AlertFieldFilter] = Field(default_factory=list)

    def matches(self, alert: Alert) -> bool:
        if self.alert_types and alert.alert_type not in self.alert_types:
            return False
        if self.severities and alert.severity not in self.severities:
            return False
        return all(f.matches(alert) for f in self.filters)


@dataclass
class Subscription:
    subscription_id: str
    subscriber_id: str
    filter: SubscriptionFilter
    callback: AlertCallback
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DismissalReasonCount(BaseModel):
    reason: str
    count: int


class AlertStatistics(BaseModel):
    """Aggregate view over alerts created in a time range."""
    total_alerts: int = 0
    active_alerts: int = 0
    dismissed_alerts: int = 0
    expired_alerts: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    dismissal_rate: float = 0.0
    average_time_to_dismiss_seconds: float | None = None
    top_dismissal_reasons: list[DismissalReasonCount] = Field(default_factory=list)


_CARD_OVERRIDE_REASONS = [
    OverrideReason(code="not-applicable", display="Not applicable to this patient"),
    OverrideReason(code="already-addressed", display="Already addressed"),
    OverrideReason(code="patient-refuses", display="Patient refuses"),
    OverrideReason(code="clinical-judgment", display="Clinical judgment"),
]


class AlertService(ServiceBase):
    """
    Owns the alert queue, active set, history and subscription table.

    Drain, dismiss and sweep are serialized by one lock, so the
    deduplication check and the store mutation it guards are atomic.
    An alert is in exactly one of queue, active set or history.
    """

    def __init__(self, config: AlertLifecycleConfig | None = None,
                 clock: Callable[[], datetime] | None = None) -> None:
        self._config = config or AlertLifecycleConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._queue: asyncio.Queue[Alert] = asyncio.Queue()
        self._active: dict[str, Alert] = {}
        self._history: list[Alert] = []
        self._history_ids: set[str] = set()
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._drain_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._running = False
        self._initialized = False
        self._stats = {
            "alerts_queued": 0, "alerts_created": 0, "alerts_deduplicated": 0,
            "alerts_dismissed": 0, "alerts_expired": 0, "notifications_sent": 0,
            "notification_failures": 0,
        }

    async def initialize(self) -> None:
        self._running = True
        if self._config.enable_expiry_sweep and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._initialized = True
        logger.info("alert_service_initialized", dedup_window_seconds=self._config.dedup_window_seconds,
                    sweep_interval_seconds=self._config.sweep_interval_seconds)

    async def shutdown(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            await self.flush()
        self._running = False
        for task in (self._drain_task, self._sweep_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
        self._sweep_task = None
        self._initialized = False
        logger.info("alert_service_shutdown", active_alerts=len(self._active), history=len(self._history))

    async def get_status(self) -> dict[str, Any]:
        return {
            "status": "operational" if self._initialized else "initializing",
            "initialized": self._initialized,
            "statistics": self.stats,
            "active_alerts": len(self._active),
            "history_size": len(self._history),
            "queue_depth": self._queue.qsize(),
            "subscriptions": len(self._subscriptions),
        }

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def create_alert(self, data: AlertCreate | dict[str, Any]) -> str:
        """Enqueue an alert and return its id; dedup happens during drain."""
        if isinstance(data, dict):
            if not data.get("patient_id"):
                raise InputInvalidError("Alert requires a patient id", field="patient_id")
            data = AlertCreate(**data)
        alert = Alert(
            alert_id=data.alert_id or str(uuid4()),
            patient_id=data.patient_id, alert_type=data.alert_type, severity=data.severity,
            title=data.title, message=data.message, timestamp=data.timestamp or self._clock(),
            source=data.source, actionable=data.actionable, related_data=dict(data.related_data),
        )
        self._queue.put_nowait(alert)
        self._stats["alerts_queued"] += 1
        self._ensure_drain()
        logger.debug("alert_queued", alert_id=alert.alert_id, patient_id=alert.patient_id,
                     alert_type=alert.alert_type.value)
        return alert.alert_id

    async def flush(self) -> None:
        """Wait until every queued alert has been processed."""
        self._ensure_drain()
        await self._queue.join()

    async def dismiss_alert(self, alert_id: str, dismissed_by: str, reason: str | None = None) -> bool:
        """Move an active alert to history; False if the id is not active."""
        async with self._lock:
            alert = self._active.pop(alert_id, None)
            if alert is None:
                logger.debug("alert_dismiss_not_active", alert_id=alert_id)
                return False
            dismissed = alert.model_copy(update={
                "status": AlertStatus.DISMISSED, "dismissed": True, "dismissed_by": dismissed_by,
                "dismissed_at": self._clock(), "dismissal_reason": reason,
            })
            self._archive(dismissed)
            self._stats["alerts_dismissed"] += 1
        logger.info("alert_dismissed", alert_id=alert_id, dismissed_by=dismissed_by, reason=reason)
        await self._notify_subscribers(dismissed)
        return True

    async def sweep_expired_alerts(self, now: datetime | None = None) -> int:
        """Auto-dismiss active alerts older than their type's max age."""
        now = now or self._clock()
        expired: list[Alert] = []
        async with self._lock:
            for alert_id, alert in list(self._active.items()):
                if now - alert.timestamp <= self.max_age_for(alert.alert_type):
                    continue
                del self._active[alert_id]
                moved = alert.model_copy(update={
                    "status": AlertStatus.EXPIRED, "dismissed": True, "dismissed_by": SYSTEM_ACTOR,
                    "dismissed_at": now, "dismissal_reason": AUTO_DISMISS_REASON,
                })
                self._archive(moved)
                expired.append(moved)
            self._stats["alerts_expired"] += len(expired)
        if expired:
            logger.info("alerts_expired", count=len(expired))
        for alert in expired:
            await self._notify_subscribers(alert)
        return len(expired)

    def max_age_for(self, alert_type: AlertType) -> timedelta:
        hours = {
            AlertType.DRUG_INTERACTION: self._config.drug_interaction_max_age_hours,
            AlertType.ALLERGY: self._config.allergy_max_age_hours,
            AlertType.RISK_SCORE: self._config.risk_score_max_age_hours,
            AlertType.CLINICAL_GUIDELINE: self._config.guideline_max_age_hours,
            AlertType.QUALITY_MEASURE: self._config.quality_measure_max_age_hours,
        }.get(alert_type, self._config.default_max_age_hours)
        return timedelta(hours=hours)

    def get_active_alerts_for_patient(self, patient_id: str) -> list[Alert]:
        """Active alerts, most severe first, then most recent first."""
        alerts = [a for a in self._active.values() if a.patient_id == patient_id]
        return sorted(alerts, key=lambda a: (-a.severity.rank, -a.timestamp.timestamp()))

    def get_alert(self, alert_id: str) -> Alert | None:
        if alert_id in self._active:
            return self._active[alert_id]
        if alert_id not in self._history_ids:
            return None
        return next((a for a in self._history if a.alert_id == alert_id), None)

    def get_alert_history(self, patient_id: str | None = None) -> list[Alert]:
        return [a for a in self._history if patient_id is None or a.patient_id == patient_id]

    def subscribe(self, filter_spec: SubscriptionFilter | dict[str, Any], callback: AlertCallback,
                  subscriber_id: str | None = None) -> str:
        if isinstance(filter_spec, dict):
            filter_spec = SubscriptionFilter(**filter_spec)
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = Subscription(
            subscription_id=subscription_id, subscriber_id=subscriber_id or subscription_id,
            filter=filter_spec, callback=callback,
        )
        logger.info("alert_subscription_added", subscription_id=subscription_id,
                    alert_types=[t.value for t in filter_spec.alert_types],
                    severities=[s.value for s in filter_spec.severities])
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.info("alert_subscription_removed", subscription_id=subscription_id)
        return removed

    def get_alert_statistics(self, start: datetime | None = None,
                             end: datetime | None = None) -> AlertStatistics:
        alerts = [
            a for a in [*self._active.values(), *self._history]
            if (start is None or a.timestamp >= start) and (end is None or a.timestamp <= end)
        ]
        stats = AlertStatistics(total_alerts=len(alerts))
        if not alerts:
            return stats
        stats.active_alerts = sum(1 for a in alerts if a.status == AlertStatus.ACTIVE)
        stats.dismissed_alerts = sum(1 for a in alerts if a.status == AlertStatus.DISMISSED)
        stats.expired_alerts = sum(1 for a in alerts if a.status == AlertStatus.EXPIRED)
        stats.by_type = dict(Counter(a.alert_type.value for a in alerts))
        stats.by_severity = dict(Counter(a.severity.value for a in alerts))
        stats.dismissal_rate = round(stats.dismissed_alerts / len(alerts), 4)
        response_times = [
            (a.dismissed_at - a.timestamp).total_seconds()
            for a in alerts if a.status == AlertStatus.DISMISSED and a.dismissed_at is not None
        ]
        if response_times:
            stats.average_time_to_dismiss_seconds = round(sum(response_times) / len(response_times), 2)
        reasons = Counter(a.dismissal_reason for a in alerts if a.dismissed and a.dismissal_reason)
        stats.top_dismissal_reasons = [
            DismissalReasonCount(reason=reason, count=count)
            for reason, count in reasons.most_common(self._config.top_dismissal_reasons)
        ]
        return stats

    async def create_drug_interaction_alert(self, patient_id: str, interaction: DrugInteraction) -> str:
        duplicate = interaction.source == "class"
        return await self.create_alert(AlertCreate(
            patient_id=patient_id,
            alert_type=AlertType.DUPLICATE_THERAPY if duplicate else AlertType.DRUG_INTERACTION,
            severity=interaction.severity.to_alert_severity(),
            title=(f"Duplicate Therapy: {interaction.drug1} + {interaction.drug2}" if duplicate
                   else f"Drug Interaction: {interaction.drug1} + {interaction.drug2}"),
            message=f"{interaction.effect} {interaction.management}".strip(),
            source="Drug Interaction Checker",
            related_data={"interaction": interaction.model_dump(mode="json")},
        ))

    async def create_allergy_alert(self, patient_id: str, allergy_alert: AllergyAlert) -> str:
        return await self.create_alert(AlertCreate(
            patient_id=patient_id, alert_type=AlertType.ALLERGY,
            severity=allergy_alert.severity.to_alert_severity(),
            title=f"Allergy Alert: {allergy_alert.allergen}",
            message=f"{allergy_alert.message} {allergy_alert.recommendation}",
            source="Allergy Checker",
            related_data={"allergy_alert": allergy_alert.model_dump(mode="json")},
        ))

    async def create_risk_score_alert(self, patient_id: str, score: RiskScore) -> str:
        return await self.create_alert(AlertCreate(
            patient_id=patient_id, alert_type=AlertType.RISK_SCORE,
            severity=score.risk.to_alert_severity(),
            title=f"{score.score_name}: {score.risk.value} Risk",
            message=f"{score.interpretation} (score {score.score:g})",
            source="Risk Scoring",
            related_data={"risk_score": score.model_dump(mode="json")},
        ))

    async def create_guideline_alert(self, patient_id: str, title: str, message: str,
                                     severity: AlertSeverity = AlertSeverity.WARNING,
                                     related_data: dict[str, Any] | None = None) -> str:
        return await self.create_alert(AlertCreate(
            patient_id=patient_id, alert_type=AlertType.CLINICAL_GUIDELINE, severity=severity,
            title=f"Clinical Guideline: {title}", message=message, source="Clinical Guidelines",
            related_data=related_data or {},
        ))

    async def create_dosing_alert(self, patient_id: str, medication: str, message: str,
                                  severity: AlertSeverity = AlertSeverity.WARNING) -> str:
        return await self.create_alert(AlertCreate(
            patient_id=patient_id, alert_type=AlertType.DOSING, severity=severity,
            title=f"Dosing: {medication}", message=message, source="Clinical Guidelines",
        ))

    async def create_quality_measure_alert(self, patient_id: str, result: MeasureResult) -> str:
        return await self.create_alert(AlertCreate(
            patient_id=patient_id, alert_type=AlertType.QUALITY_MEASURE,
            severity=AlertSeverity.WARNING if result.priority == Priority.HIGH else AlertSeverity.INFO,
            title=f"Quality Measure Gap: {result.measure_name}",
            message=result.gap_description or f"{result.measure_name} not met",
            source="Quality Measures",
            related_data={"measure_id": result.measure_id,
                          "due_date": result.due_date.isoformat() if result.due_date else None,
                          "recommendations": result.recommendations},
        ))

    @staticmethod
    def convert_alerts_to_cards(alerts: list[Alert]) -> list[Card]:
        return [
            Card(
                summary=alert.title, detail=alert.message or None,
                indicator=alert.severity.to_indicator(), source=CardSource(label=alert.source),
                override_reasons=list(_CARD_OVERRIDE_REASONS) if alert.actionable else [],
            )
            for alert in alerts
        ]

    def _ensure_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._running = True
            self._drain_task = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        """Single consumer; alerts are activated strictly one at a time."""
        while self._running:
            try:
                alert = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._activate(alert)
            except Exception:
                logger.exception("alert_processing_failed", alert_id=alert.alert_id)
            finally:
                self._queue.task_done()

    async def _activate(self, alert: Alert) -> None:
        async with self._lock:
            duplicate = self._find_duplicate(alert)
            if duplicate is not None:
                self._stats["alerts_deduplicated"] += 1
                logger.debug("alert_deduplicated", alert_id=alert.alert_id,
                             existing_alert_id=duplicate.alert_id, patient_id=alert.patient_id)
                return
            activated = alert.model_copy(update={"status": AlertStatus.ACTIVE})
            self._active[activated.alert_id] = activated
            self._stats["alerts_created"] += 1
        logger.info("alert_created", alert_id=activated.alert_id, patient_id=activated.patient_id,
                    alert_type=activated.alert_type.value, severity=activated.severity.value)
        await self._notify_subscribers(activated)

    def _find_duplicate(self, alert: Alert) -> Alert | None:
        window = timedelta(seconds=self._config.dedup_window_seconds)
        now = self._clock()
        for existing in self._active.values():
            if (existing.patient_id == alert.patient_id
                    and existing.alert_type == alert.alert_type
                    and existing.title == alert.title
                    and not existing.dismissed
                    and now - existing.timestamp < window):
                return existing
        return None

    def _archive(self, alert: Alert) -> None:
        self._history.append(alert)
        self._history_ids.add(alert.alert_id)

    async def _notify_subscribers(self, alert: Alert) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.filter.matches(alert):
                continue
            try:
                result = subscription.callback(alert)
                if inspect.isawaitable(result):
                    await result
                self._stats["notifications_sent"] += 1
            except Exception:
                self._stats["notification_failures"] += 1
                logger.exception("subscriber_callback_failed", subscription_id=subscription.subscription_id,
                                 subscriber_id=subscription.subscriber_id, alert_id=alert.alert_id)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.sweep_interval_seconds)
                await self.sweep_expired_alerts()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("alert_sweep_failed")
