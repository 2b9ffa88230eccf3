"""
Solace-AI CDS Service - Clinical Risk Scoring.
Pure calculators for published clinical scores plus an applicability dispatcher.
Calculators return None when a required input is missing; absence means
"not computable" and is never a zero-risk result.
"""
from __future__ import annotations
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4
from pydantic import BaseModel, Field
import structlog

from .entities import PatientSnapshot
from .value_objects import RiskLevel, Sex

logger = structlog.get_logger(__name__)

LIVER_DISEASE_CODES = ("K70", "K71", "K72", "K73", "K74", "K76")
ATRIAL_FIBRILLATION_CODES = ("I48",)
PNEUMONIA_CODES = ("J12", "J13", "J14", "J15", "J16", "J18")
HEART_FAILURE_CODES = ("I50",)
HYPERTENSION_CODES = ("I10", "I11", "I12", "I13")
DIABETES_CODES = ("E10", "E11", "E12", "E13", "E14")
STROKE_TIA_CODES = ("I63", "G93.1", "Z87.891")
VASCULAR_DISEASE_CODES = ("I25", "I70", "I73")
BLEEDING_HISTORY_CODES = ("K92.2", "I85.0", "S06")
SMOKING_CODES = ("Z87.891", "F17")
ANTIPLATELETS = ("aspirin", "clopidogrel", "prasugrel")
ANTIHYPERTENSIVES = (
    "lisinopril", "enalapril", "ramipril", "losartan", "valsartan", "amlodipine",
    "hydrochlorothiazide", "chlorthalidone", "metoprolol", "atenolol", "carvedilol",
)


class ScoreName(str, Enum):
    MELD = "MELD Score"
    CHA2DS2_VASC = "CHA2DS2-VASc Score"
    HAS_BLED = "HAS-BLED Score"
    CURB_65 = "CURB-65 Score"
    ASCVD = "ASCVD Risk Calculator"
    FRAMINGHAM = "Framingham Risk Score"
    BMI = "Body Mass Index"
    EGFR = "eGFR (CKD-EPI 2021)"


class RiskFactor(BaseModel):
    """Contribution of one input to a score."""
    name: str
    value: Any = None
    points: float = Field(default=0)
    weight: float = Field(default=1)
    description: str | None = None


class RiskScore(BaseModel):
    """Derived clinical score; recomputed on demand, never persisted."""
    score_id: str
    score_name: str
    score: float
    risk: RiskLevel
    interpretation: str
    category: str | None = Field(default=None, description="Named category where the score defines one")
    factors: list[RiskFactor] = Field(default_factory=list)
    calculated_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    validity_period_days: int = Field(default=365, ge=1)

    model_config = {"frozen": True}


class RiskScoreSet(BaseModel):
    """Dispatcher result: applicable scores and the ones that could not be computed."""
    patient_id: str
    scores: list[RiskScore] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    @property
    def high_risk_scores(self) -> list[RiskScore]:
        return [s for s in self.scores if s.risk.is_high]


def _score_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def calculate_meld(snapshot: PatientSnapshot) -> RiskScore | None:
    """MELD score for end-stage liver disease severity."""
    creatinine = snapshot.get_lab_value("creatinine")
    bilirubin = snapshot.get_lab_value("bilirubin")
    inr = snapshot.get_lab_value("inr")
    if not creatinine or not bilirubin or not inr:
        return None
    clamped_cr = min(max(creatinine, 1.0), 4.0)
    clamped_bili = max(bilirubin, 1.0)
    clamped_inr = max(inr, 1.0)
    raw = round(3.78 * math.log(clamped_bili) + 11.2 * math.log(clamped_inr)
                + 9.57 * math.log(clamped_cr) + 6.43)
    score = max(6, min(40, raw))
    if score < 15:
        risk, interpretation = RiskLevel.LOW, "Low mortality risk. 3-month mortality ~3%"
    elif score < 25:
        risk, interpretation = RiskLevel.INTERMEDIATE, "Intermediate mortality risk. 3-month mortality ~10-20%"
    elif score < 35:
        risk, interpretation = RiskLevel.HIGH, "High mortality risk. 3-month mortality ~50%"
    else:
        risk, interpretation = RiskLevel.VERY_HIGH, "Very high mortality risk. 3-month mortality >70%"
    return RiskScore(
        score_id=_score_id("meld"), score_name=ScoreName.MELD.value, score=score,
        risk=risk, interpretation=interpretation, validity_period_days=90,
        factors=[
            RiskFactor(name="Serum Creatinine", value=creatinine, weight=9.57, description="mg/dL"),
            RiskFactor(name="Total Bilirubin", value=bilirubin, weight=3.78, description="mg/dL"),
            RiskFactor(name="INR", value=inr, weight=11.2, description="ratio"),
        ],
    )


def calculate_cha2ds2_vasc(snapshot: PatientSnapshot) -> RiskScore:
    """CHA2DS2-VASc stroke risk in atrial fibrillation."""
    score = 0
    factors: list[RiskFactor] = []

    def add(name: str, points: int, value: Any = True, description: str | None = None) -> None:
        nonlocal score
        score += points
        factors.append(RiskFactor(name=name, value=value, points=points, description=description))

    if snapshot.has_condition(HEART_FAILURE_CODES):
        add("Congestive Heart Failure", 1)
    if snapshot.has_condition(HYPERTENSION_CODES):
        add("Hypertension", 1)
    if snapshot.age >= 75:
        add("Age >=75", 2, snapshot.age, "years")
    elif snapshot.age >= 65:
        add("Age 65-74", 1, snapshot.age, "years")
    if snapshot.has_condition(DIABETES_CODES):
        add("Diabetes Mellitus", 1)
    if snapshot.has_condition(STROKE_TIA_CODES):
        add("Prior Stroke/TIA", 2)
    if snapshot.has_condition(VASCULAR_DISEASE_CODES):
        add("Vascular Disease", 1)
    if snapshot.sex == Sex.FEMALE:
        add("Female Sex", 1)

    if score == 0:
        risk, interpretation = RiskLevel.LOW, "Low stroke risk. Annual stroke rate ~0%"
    elif score == 1:
        risk, interpretation = RiskLevel.LOW, "Low stroke risk. Annual stroke rate ~1.3%"
    elif score == 2:
        risk, interpretation = RiskLevel.INTERMEDIATE, "Moderate stroke risk. Annual stroke rate ~2.2%"
    elif score <= 4:
        risk, interpretation = RiskLevel.HIGH, "High stroke risk. Annual stroke rate ~4-7%"
    else:
        risk, interpretation = RiskLevel.VERY_HIGH, "Very high stroke risk. Annual stroke rate >7%"
    return RiskScore(score_id=_score_id("cha2ds2vasc"), score_name=ScoreName.CHA2DS2_VASC.value,
                     score=score, risk=risk, interpretation=interpretation, factors=factors,
                     validity_period_days=365)


def calculate_has_bled(snapshot: PatientSnapshot) -> RiskScore:
    """HAS-BLED major bleeding risk on anticoagulation."""
    factors: list[RiskFactor] = []
    if snapshot.has_condition(HYPERTENSION_CODES):
        factors.append(RiskFactor(name="Hypertension", value=True, points=1))
    creatinine = snapshot.get_lab_value("creatinine")
    if creatinine is not None and creatinine > 2.3:
        factors.append(RiskFactor(name="Abnormal Renal Function", value=creatinine, points=1,
                                  description="mg/dL"))
    if snapshot.age > 65:
        factors.append(RiskFactor(name="Age >65", value=snapshot.age, points=1, description="years"))
    if snapshot.has_condition(BLEEDING_HISTORY_CODES):
        factors.append(RiskFactor(name="Bleeding History", value=True, points=1))
    if snapshot.has_active_medication(("warfarin",)):
        factors.append(RiskFactor(name="Labile INR (on warfarin)", value=True, points=1))
    if snapshot.has_active_medication(ANTIPLATELETS):
        factors.append(RiskFactor(name="Antiplatelet Drugs", value=True, points=1))
    score = int(sum(f.points for f in factors))

    if score <= 2:
        risk, interpretation = RiskLevel.LOW, "Low bleeding risk. Annual major bleeding rate ~1-2%"
    elif score == 3:
        risk, interpretation = RiskLevel.INTERMEDIATE, "Moderate bleeding risk. Annual major bleeding rate ~3-4%"
    else:
        risk, interpretation = RiskLevel.HIGH, "High bleeding risk. Annual major bleeding rate >4%"
    return RiskScore(score_id=_score_id("hasbled"), score_name=ScoreName.HAS_BLED.value, score=score,
                     risk=risk, interpretation=interpretation, factors=factors, validity_period_days=365)


def calculate_curb65(snapshot: PatientSnapshot) -> RiskScore:
    """CURB-65 pneumonia severity. Confusion needs bedside assessment and is not scored."""
    factors: list[RiskFactor] = []
    bun = snapshot.get_lab_value("bun") or snapshot.get_lab_value("urea")
    if bun is not None and bun > 19:
        factors.append(RiskFactor(name="Elevated BUN", value=bun, points=1, description="mg/dL"))
    vitals = snapshot.vital_signs
    if vitals is not None:
        if vitals.respiratory_rate is not None and vitals.respiratory_rate >= 30:
            factors.append(RiskFactor(name="Respiratory Rate >=30", value=vitals.respiratory_rate,
                                      points=1, description="/min"))
        if vitals.systolic_bp is not None and vitals.diastolic_bp is not None:
            if vitals.systolic_bp < 90 or vitals.diastolic_bp <= 60:
                factors.append(RiskFactor(name="Hypotension",
                                          value=f"{vitals.systolic_bp:g}/{vitals.diastolic_bp:g}",
                                          points=1, description="mmHg"))
    if snapshot.age >= 65:
        factors.append(RiskFactor(name="Age >=65", value=snapshot.age, points=1, description="years"))
    score = int(sum(f.points for f in factors))

    if score <= 1:
        risk, interpretation = RiskLevel.LOW, "Low mortality risk. Consider outpatient treatment"
    elif score == 2:
        risk, interpretation = RiskLevel.INTERMEDIATE, "Intermediate mortality risk. Consider short hospital stay"
    else:
        risk, interpretation = RiskLevel.HIGH, "High mortality risk. Hospitalization recommended"
    return RiskScore(score_id=_score_id("curb65"), score_name=ScoreName.CURB_65.value, score=score,
                     risk=risk, interpretation=interpretation, factors=factors, validity_period_days=7)


# Pooled Cohort Equations (Goff 2013), white cohort coefficients
_PCE = {
    Sex.MALE: {
        "ln_age": 12.344, "ln_age_sq": 0.0, "ln_tc": 11.853, "ln_age_ln_tc": -2.664,
        "ln_hdl": -7.990, "ln_age_ln_hdl": 1.769, "ln_sbp_treated": 1.797, "ln_sbp_untreated": 1.764,
        "smoker": 7.837, "ln_age_smoker": -1.795, "diabetes": 0.658,
        "baseline": 0.9144, "mean": 61.18,
    },
    Sex.FEMALE: {
        "ln_age": -29.799, "ln_age_sq": 4.884, "ln_tc": 13.540, "ln_age_ln_tc": -3.114,
        "ln_hdl": -13.578, "ln_age_ln_hdl": 3.149, "ln_sbp_treated": 2.019, "ln_sbp_untreated": 1.957,
        "smoker": 7.574, "ln_age_smoker": -1.665, "diabetes": 0.661,
        "baseline": 0.9665, "mean": -29.18,
    },
}


def calculate_ascvd(snapshot: PatientSnapshot) -> RiskScore | None:
    """10-year ASCVD risk by the Pooled Cohort Equations."""
    total_cholesterol = snapshot.get_lab_value("total cholesterol")
    hdl = snapshot.get_lab_value("hdl")
    sbp = snapshot.vital_signs.systolic_bp if snapshot.vital_signs else None
    if not total_cholesterol or not hdl or not sbp or snapshot.age <= 0:
        return None
    coeffs = _PCE[Sex.FEMALE if snapshot.sex == Sex.FEMALE else Sex.MALE]
    treated = snapshot.has_active_medication(ANTIHYPERTENSIVES)
    smoker = snapshot.has_condition(SMOKING_CODES)
    diabetic = snapshot.has_condition(DIABETES_CODES)
    ln_age = math.log(snapshot.age)
    ln_tc = math.log(total_cholesterol)
    ln_hdl = math.log(hdl)
    sbp_coeff = coeffs["ln_sbp_treated"] if treated else coeffs["ln_sbp_untreated"]
    total = (coeffs["ln_age"] * ln_age + coeffs["ln_age_sq"] * ln_age ** 2
             + coeffs["ln_tc"] * ln_tc + coeffs["ln_age_ln_tc"] * ln_age * ln_tc
             + coeffs["ln_hdl"] * ln_hdl + coeffs["ln_age_ln_hdl"] * ln_age * ln_hdl
             + sbp_coeff * math.log(sbp))
    factors = [
        RiskFactor(name="Age", value=snapshot.age, weight=coeffs["ln_age"], description="years"),
        RiskFactor(name="Total Cholesterol", value=total_cholesterol, weight=coeffs["ln_tc"], description="mg/dL"),
        RiskFactor(name="HDL Cholesterol", value=hdl, weight=coeffs["ln_hdl"], description="mg/dL"),
        RiskFactor(name="Systolic BP (treated)" if treated else "Systolic BP", value=sbp,
                   weight=sbp_coeff, description="mmHg"),
    ]
    if smoker:
        smoking_weight = coeffs["smoker"] + coeffs["ln_age_smoker"] * ln_age
        total += smoking_weight
        factors.append(RiskFactor(name="Current Smoker", value=True, weight=round(smoking_weight, 3)))
    if diabetic:
        total += coeffs["diabetes"]
        factors.append(RiskFactor(name="Diabetes", value=True, weight=coeffs["diabetes"]))
    percent = round((1 - math.pow(coeffs["baseline"], math.exp(total - coeffs["mean"]))) * 100, 1)

    if percent < 5:
        risk, label = RiskLevel.LOW, "Low"
    elif percent < 7.5:
        risk, label = RiskLevel.INTERMEDIATE, "Borderline"
    elif percent < 20:
        risk, label = RiskLevel.HIGH, "Intermediate"
    else:
        risk, label = RiskLevel.VERY_HIGH, "High"
    return RiskScore(score_id=_score_id("ascvd"), score_name=ScoreName.ASCVD.value, score=percent,
                     risk=risk, interpretation=f"{label} 10-year ASCVD risk ({percent}%)",
                     factors=factors, validity_period_days=365)


# D'Agostino 2008 general cardiovascular disease coefficients
_FRAMINGHAM = {
    Sex.MALE: {
        "age": 3.06117, "tc": 1.12370, "hdl": -0.93263, "sbp_untreated": 1.93303,
        "sbp_treated": 1.99881, "smoker": 0.65451, "diabetes": 0.57367,
        "baseline": 0.88936, "mean": 23.9802,
    },
    Sex.FEMALE: {
        "age": 2.32888, "tc": 1.20904, "hdl": -0.70833, "sbp_untreated": 2.76157,
        "sbp_treated": 2.82263, "smoker": 0.52873, "diabetes": 0.69154,
        "baseline": 0.95012, "mean": 26.1931,
    },
}


def calculate_framingham(snapshot: PatientSnapshot) -> RiskScore | None:
    """10-year general cardiovascular risk (Framingham, D'Agostino 2008)."""
    total_cholesterol = snapshot.get_lab_value("total cholesterol")
    hdl = snapshot.get_lab_value("hdl")
    sbp = snapshot.vital_signs.systolic_bp if snapshot.vital_signs else None
    if not total_cholesterol or not hdl or not sbp or snapshot.age <= 0:
        return None
    coeffs = _FRAMINGHAM[Sex.FEMALE if snapshot.sex == Sex.FEMALE else Sex.MALE]
    treated = snapshot.has_active_medication(ANTIHYPERTENSIVES)
    smoker = snapshot.has_condition(SMOKING_CODES)
    diabetic = snapshot.has_condition(DIABETES_CODES)
    sbp_coeff = coeffs["sbp_treated"] if treated else coeffs["sbp_untreated"]
    total = (coeffs["age"] * math.log(snapshot.age) + coeffs["tc"] * math.log(total_cholesterol)
             + coeffs["hdl"] * math.log(hdl) + sbp_coeff * math.log(sbp))
    factors = [
        RiskFactor(name="Age", value=snapshot.age, weight=coeffs["age"], description="years"),
        RiskFactor(name="Total Cholesterol", value=total_cholesterol, weight=coeffs["tc"], description="mg/dL"),
        RiskFactor(name="HDL Cholesterol", value=hdl, weight=coeffs["hdl"], description="mg/dL"),
        RiskFactor(name="Systolic BP (treated)" if treated else "Systolic BP", value=sbp,
                   weight=sbp_coeff, description="mmHg"),
    ]
    if smoker:
        total += coeffs["smoker"]
        factors.append(RiskFactor(name="Current Smoker", value=True, weight=coeffs["smoker"]))
    if diabetic:
        total += coeffs["diabetes"]
        factors.append(RiskFactor(name="Diabetes", value=True, weight=coeffs["diabetes"]))
    percent = round((1 - math.pow(coeffs["baseline"], math.exp(total - coeffs["mean"]))) * 100, 1)

    if percent < 10:
        risk = RiskLevel.LOW
    elif percent < 20:
        risk = RiskLevel.INTERMEDIATE
    else:
        risk = RiskLevel.HIGH
    return RiskScore(score_id=_score_id("framingham"), score_name=ScoreName.FRAMINGHAM.value,
                     score=percent, risk=risk,
                     interpretation=f"{risk.value} 10-year cardiovascular disease risk ({percent}%)",
                     factors=factors, validity_period_days=365)


def calculate_bmi(snapshot: PatientSnapshot) -> RiskScore | None:
    """Body mass index with WHO weight categories."""
    height_cm, weight_kg = snapshot.body_measurements()
    if not height_cm or not weight_kg:
        return None
    bmi = round(weight_kg / (height_cm / 100) ** 2, 1)
    if bmi < 18.5:
        category, risk = "Underweight", RiskLevel.INTERMEDIATE
    elif bmi < 25:
        category, risk = "Normal", RiskLevel.LOW
    elif bmi < 30:
        category, risk = "Overweight", RiskLevel.INTERMEDIATE
    elif bmi < 35:
        category, risk = "Obese Class I", RiskLevel.HIGH
    elif bmi < 40:
        category, risk = "Obese Class II", RiskLevel.VERY_HIGH
    else:
        category, risk = "Obese Class III", RiskLevel.VERY_HIGH
    return RiskScore(
        score_id=_score_id("bmi"), score_name=ScoreName.BMI.value, score=bmi, risk=risk,
        interpretation=f"BMI {bmi} kg/m2 ({category})", category=category,
        factors=[
            RiskFactor(name="Height", value=height_cm, description="cm"),
            RiskFactor(name="Weight", value=weight_kg, description="kg"),
        ],
        validity_period_days=365,
    )


def calculate_egfr(snapshot: PatientSnapshot) -> RiskScore | None:
    """Estimated GFR by the race-free CKD-EPI 2021 creatinine equation."""
    creatinine = snapshot.get_lab_value("creatinine")
    if not creatinine:
        return None
    female = snapshot.sex == Sex.FEMALE
    kappa = 0.7 if female else 0.9
    alpha = -0.241 if female else -0.302
    ratio = creatinine / kappa
    egfr = 142 * (ratio ** alpha if ratio <= 1 else ratio ** -1.200) * 0.9938 ** snapshot.age
    if female:
        egfr *= 1.012
    egfr = round(egfr, 1)
    if egfr >= 90:
        stage, risk = "G1", RiskLevel.LOW
    elif egfr >= 60:
        stage, risk = "G2", RiskLevel.LOW
    elif egfr >= 45:
        stage, risk = "G3a", RiskLevel.INTERMEDIATE
    elif egfr >= 30:
        stage, risk = "G3b", RiskLevel.HIGH
    elif egfr >= 15:
        stage, risk = "G4", RiskLevel.HIGH
    else:
        stage, risk = "G5", RiskLevel.VERY_HIGH
    return RiskScore(
        score_id=_score_id("egfr"), score_name=ScoreName.EGFR.value, score=egfr, risk=risk,
        interpretation=f"eGFR {egfr} mL/min/1.73m2 (KDIGO stage {stage})", category=stage,
        factors=[
            RiskFactor(name="Serum Creatinine", value=creatinine, description="mg/dL"),
            RiskFactor(name="Age", value=snapshot.age, description="years"),
            RiskFactor(name="Female Sex", value=female),
        ],
        validity_period_days=90,
    )


class RiskScoringService:
    """Computes the risk scores whose prerequisites the snapshot meets."""

    def get_all_risk_scores(self, snapshot: PatientSnapshot) -> RiskScoreSet:
        result = RiskScoreSet(patient_id=snapshot.patient_id)
        for name, applicable, calculator in self._dispatch_table(snapshot):
            if not applicable:
                continue
            score = calculator(snapshot)
            if score is None:
                result.skipped.append(name.value)
            else:
                result.scores.append(score)
        logger.debug("risk_scores_calculated", patient_id=snapshot.patient_id,
                     calculated=[s.score_name for s in result.scores], skipped=result.skipped)
        return result

    def get_risk_score_recommendations(self, scores: list[RiskScore]) -> list[str]:
        recommendations: list[str] = []
        for score in scores:
            recommendations.extend(
                r for r in self._recommendations_for(score) if r not in recommendations
            )
        return recommendations

    @staticmethod
    def _dispatch_table(snapshot: PatientSnapshot):
        atrial_fibrillation = snapshot.has_condition(ATRIAL_FIBRILLATION_CODES)
        height, weight = snapshot.body_measurements()
        return [
            (ScoreName.MELD, snapshot.has_condition(LIVER_DISEASE_CODES), calculate_meld),
            (ScoreName.CHA2DS2_VASC, atrial_fibrillation, calculate_cha2ds2_vasc),
            (ScoreName.HAS_BLED, atrial_fibrillation, calculate_has_bled),
            (ScoreName.ASCVD, 40 <= snapshot.age <= 79, calculate_ascvd),
            (ScoreName.CURB_65, snapshot.has_condition(PNEUMONIA_CODES), calculate_curb65),
            (ScoreName.FRAMINGHAM, 30 <= snapshot.age <= 74, calculate_framingham),
            (ScoreName.BMI, height is not None and weight is not None, calculate_bmi),
            (ScoreName.EGFR, snapshot.find_lab("creatinine") is not None, calculate_egfr),
        ]

    @staticmethod
    def _recommendations_for(score: RiskScore) -> list[str]:
        name, value = score.score_name, score.score
        if name == ScoreName.MELD.value and value >= 15:
            return ["Consider liver transplant evaluation", "Hepatology consultation recommended"]
        if name == ScoreName.CHA2DS2_VASC.value:
            if value >= 2:
                return ["Consider anticoagulation therapy"]
            if value == 1:
                return ["Consider anticoagulation or antiplatelet therapy"]
        if name == ScoreName.HAS_BLED.value and value >= 3:
            return ["High bleeding risk - enhanced monitoring if anticoagulated",
                    "Address modifiable bleeding risk factors"]
        if name == ScoreName.ASCVD.value and value >= 7.5:
            return ["Consider statin therapy for primary prevention", "Lifestyle modifications recommended"]
        if name == ScoreName.CURB_65.value and value >= 3:
            return ["Consider hospitalization", "IV antibiotics may be required"]
        if name == ScoreName.FRAMINGHAM.value and value >= 20:
            return ["Consider statin therapy for primary prevention",
                    "Intensive cardiovascular risk factor management"]
        if name == ScoreName.BMI.value and value >= 30:
            return ["Weight management counseling recommended"]
        if name == ScoreName.EGFR.value:
            if value < 30:
                return ["Nephrology referral recommended", "Review renally cleared medication doses"]
            if value < 60:
                return ["Review renally cleared medication doses"]
        return []
