"""
Solace-AI CDS Service - Applicability Criteria Evaluation.
"""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
import structlog

from .entities import PatientSnapshot
from .value_objects import ClinicalCriteria, Comparator, CriteriaType

logger = structlog.get_logger(__name__)


def evaluate_criteria(criteria: list[ClinicalCriteria], snapshot: PatientSnapshot,
                      now: datetime | None = None) -> bool:
    """Logical AND over the criteria; an empty list always applies."""
    now = now or datetime.now(timezone.utc)
    return all(evaluate_criterion(c, snapshot, now) for c in criteria)


def evaluate_criterion(criterion: ClinicalCriteria, snapshot: PatientSnapshot,
                       now: datetime | None = None) -> bool:
    """Evaluate one criterion. Missing snapshot data never satisfies a criterion."""
    now = now or datetime.now(timezone.utc)
    kind = criterion.type
    if kind == CriteriaType.AGE:
        return _compare(criterion, snapshot.age)
    if kind == CriteriaType.GENDER:
        expected = criterion.value
        return expected in (None, "Any") or snapshot.sex.value == expected
    if kind == CriteriaType.CONDITION:
        return snapshot.has_condition(criterion.codes)
    if kind == CriteriaType.MEDICATION:
        return snapshot.has_active_medication(criterion.codes)
    if kind == CriteriaType.PROCEDURE:
        return snapshot.has_procedure_within(criterion.codes, criterion.within_days, now)
    if kind == CriteriaType.LAB:
        return any(_lab_matches(criterion, snapshot, code, now) for code in criterion.codes)
    if kind == CriteriaType.VITAL:
        if snapshot.vital_signs is None:
            return False
        return any(_compare(criterion, snapshot.vital_signs.get(code)) for code in criterion.codes)
    logger.warning("unknown_criterion_type", criterion_type=str(kind))
    return False


def _lab_matches(criterion: ClinicalCriteria, snapshot: PatientSnapshot, test_name: str,
                 now: datetime) -> bool:
    lab = snapshot.find_lab(test_name)
    if lab is None:
        return False
    if criterion.within_days is not None and now - lab.result_date > timedelta(days=criterion.within_days):
        return False
    if criterion.operator is None:
        return True
    return _compare(criterion, lab.numeric_value)


def _compare(criterion: ClinicalCriteria, actual: float | int | None) -> bool:
    if actual is None or criterion.value is None:
        return False
    operator = criterion.operator or Comparator.EQ
    try:
        return operator.apply(actual, criterion.value)
    except TypeError:
        logger.warning("criterion_comparison_failed", criterion_type=criterion.type.value,
                       operator=operator.value, value=repr(criterion.value))
        return False
