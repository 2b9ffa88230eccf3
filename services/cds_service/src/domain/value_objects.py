"""
Solace-AI CDS Service - Domain Value Objects.
Clinical vocabularies, severity scales with ranking, and applicability criteria.
"""
from __future__ import annotations
import operator
from collections.abc import Callable
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field


class MedicationStatus(str, Enum):
    """Status of a medication order."""
    ACTIVE = "Active"
    DISCONTINUED = "Discontinued"
    HELD = "Held"
    COMPLETED = "Completed"


class AllergenType(str, Enum):
    """Category of allergen."""
    DRUG = "Drug"
    FOOD = "Food"
    ENVIRONMENTAL = "Environmental"
    OTHER = "Other"


class AllergySeverity(str, Enum):
    """Documented reaction severity for an allergy."""
    MILD = "Mild"
    MODERATE = "Moderate"
    SEVERE = "Severe"
    UNKNOWN = "Unknown"


class AllergyStatus(str, Enum):
    """Clinical status of an allergy record."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    RESOLVED = "Resolved"


class VerificationStatus(str, Enum):
    """Verification state of an allergy record."""
    CONFIRMED = "Confirmed"
    UNCONFIRMED = "Unconfirmed"
    ENTERED_IN_ERROR = "Entered-in-error"


class ConditionStatus(str, Enum):
    """Clinical status of a condition."""
    ACTIVE = "Active"
    RESOLVED = "Resolved"
    INACTIVE = "Inactive"


class Sex(str, Enum):
    """Administrative sex used by scoring formulas."""
    MALE = "M"
    FEMALE = "F"
    OTHER = "Other"


class LabStatus(str, Enum):
    """Status of a lab result."""
    FINAL = "Final"
    PRELIMINARY = "Preliminary"
    CORRECTED = "Corrected"
    CANCELLED = "Cancelled"


class InteractionSeverity(str, Enum):
    """Drug interaction severity, ranked Contraindicated > Major > Moderate > Minor."""
    CONTRAINDICATED = "Contraindicated"
    MAJOR = "Major"
    MODERATE = "Moderate"
    MINOR = "Minor"

    @property
    def rank(self) -> int:
        return _INTERACTION_RANK[self]

    @property
    def weight(self) -> int:
        """Points contributed to the patient interaction risk score."""
        return _INTERACTION_WEIGHT[self]

    def to_alert_severity(self) -> AlertSeverity:
        if self in (InteractionSeverity.CONTRAINDICATED, InteractionSeverity.MAJOR):
            return AlertSeverity.CRITICAL
        if self == InteractionSeverity.MODERATE:
            return AlertSeverity.WARNING
        return AlertSeverity.INFO


_INTERACTION_RANK = {
    InteractionSeverity.CONTRAINDICATED: 4,
    InteractionSeverity.MAJOR: 3,
    InteractionSeverity.MODERATE: 2,
    InteractionSeverity.MINOR: 1,
}
_INTERACTION_WEIGHT = {
    InteractionSeverity.CONTRAINDICATED: 10,
    InteractionSeverity.MAJOR: 7,
    InteractionSeverity.MODERATE: 4,
    InteractionSeverity.MINOR: 1,
}


class AllergyAlertSeverity(str, Enum):
    """Severity of an allergy finding."""
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return {"High": 3, "Medium": 2, "Low": 1}[self.value]

    @classmethod
    def from_allergy_severity(cls, severity: AllergySeverity) -> AllergyAlertSeverity:
        if severity == AllergySeverity.SEVERE:
            return cls.HIGH
        if severity in (AllergySeverity.MODERATE, AllergySeverity.UNKNOWN):
            return cls.MEDIUM
        return cls.LOW

    def to_alert_severity(self) -> AlertSeverity:
        if self == AllergyAlertSeverity.HIGH:
            return AlertSeverity.CRITICAL
        if self == AllergyAlertSeverity.MEDIUM:
            return AlertSeverity.WARNING
        return AlertSeverity.INFO


class AlertSeverity(str, Enum):
    """Severity of a lifecycle-managed alert."""
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return {"Critical": 3, "Warning": 2, "Info": 1}[self.value]

    def to_indicator(self) -> CardIndicator:
        return CardIndicator(self.value.lower())


class AlertType(str, Enum):
    """Kind of clinical finding an alert carries."""
    DRUG_INTERACTION = "Drug Interaction"
    ALLERGY = "Allergy"
    DUPLICATE_THERAPY = "Duplicate Therapy"
    DOSING = "Dosing"
    CLINICAL_GUIDELINE = "Clinical Guideline"
    QUALITY_MEASURE = "Quality Measure"
    RISK_SCORE = "Risk Score"


class AlertStatus(str, Enum):
    """Lifecycle state of an alert."""
    QUEUED = "queued"
    ACTIVE = "active"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class RiskLevel(str, Enum):
    """Risk bucket produced by a clinical score."""
    LOW = "Low"
    INTERMEDIATE = "Intermediate"
    HIGH = "High"
    VERY_HIGH = "Very High"

    @property
    def is_high(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.VERY_HIGH)

    def to_alert_severity(self) -> AlertSeverity:
        if self.is_high:
            return AlertSeverity.CRITICAL
        if self == RiskLevel.INTERMEDIATE:
            return AlertSeverity.WARNING
        return AlertSeverity.INFO


class CardIndicator(str, Enum):
    """Urgency indicator on a presentation card."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"critical": 3, "warning": 2, "info": 1}[self.value]


class EvidenceLevel(str, Enum):
    """Strength of evidence behind an interaction record."""
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"


class Priority(str, Enum):
    """Priority of a recommended action or care gap."""
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class CriteriaType(str, Enum):
    """Dimension of the snapshot a criterion inspects."""
    AGE = "Age"
    GENDER = "Gender"
    CONDITION = "Condition"
    MEDICATION = "Medication"
    PROCEDURE = "Procedure"
    LAB = "Lab"
    VITAL = "Vital"


class Comparator(str, Enum):
    """Numeric comparison operator used by criteria."""
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "="
    NE = "!="

    def apply(self, left: Any, right: Any) -> bool:
        return _COMPARATORS[self](left, right)


_COMPARATORS: dict[Comparator, Callable[[Any, Any], bool]] = {
    Comparator.GT: operator.gt,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.LE: operator.le,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}


class ClinicalCriteria(BaseModel):
    """Single applicability criterion; a list of these is evaluated as a logical AND."""
    type: CriteriaType = Field(..., description="Snapshot dimension to test")
    operator: Comparator | None = Field(default=None, description="Comparator for numeric criteria")
    value: Any = Field(default=None, description="Comparison value or expected gender")
    unit: str | None = Field(default=None)
    code_system: str | None = Field(default=None)
    codes: list[str] = Field(default_factory=list, description="Code prefixes, drug names or test names")
    within_days: int | None = Field(default=None, ge=1, description="Lookback window for dated records")

    model_config = {"frozen": True}
