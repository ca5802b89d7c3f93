"""
Verification (KYC) risk assessment.

Five component scores (identity, document, business, behavioural,
geographic), each in [0, 100], combined with fixed weights into an overall
score that drives the category, review and auto-approval decisions.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from trustgate.config import (
    COMPONENT_WEIGHTS,
    RISK_THRESHOLDS,
    IDENTITY_RULES,
    DOCUMENT_RULES,
    BUSINESS_RULES,
    BUSINESS_REQUIRED_FIELDS,
    SUSPICIOUS_BUSINESS_NAME_PATTERN,
    BEHAVIORAL_RULES,
    GEOGRAPHIC_RULES,
    ASSESSMENT_CONFIDENCE_DEFAULT,
)
from trustgate.errors import ExternalFetchError, NotFoundError
from trustgate.schemas.common import (
    BusinessVerificationStatus,
    RiskCategory,
    RiskComponent,
    Severity,
    ValidationStatus,
)
from trustgate.schemas.verification import (
    BusinessRecord,
    DocumentRecord,
    RiskAssessmentResult,
    RiskFactor,
    VerificationRecord,
)
from trustgate.services.scoring import age_in_days, clamp, dedupe, round2, weighted_average
from trustgate.services.strategies import (
    BehavioralRiskScorer,
    GeographicRiskScorer,
    NeutralBehavioralScorer,
    RegionalGeographicScorer,
)

logger = logging.getLogger(__name__)

_suspicious_name = re.compile(SUSPICIOUS_BUSINESS_NAME_PATTERN, re.IGNORECASE)

_HIGH_SEVERITIES = (Severity.high, Severity.critical)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _account_age_days(verification: VerificationRecord, now: datetime) -> float:
    created = verification.account.created_at if verification.account else verification.submitted_at
    return age_in_days(created, now)


def _email_confirmed(verification: VerificationRecord) -> bool:
    return verification.account is not None and verification.account.email_confirmed_at is not None


# ----------------------
# Component scores
# ----------------------

def score_identity(verification: VerificationRecord, now: datetime, prior_verifications: Optional[int] = None,
                   rules: Dict[str, float] = None) -> float:
    """Account age, email confirmation and repeat submissions.

    `prior_verifications` is None when the count could not be fetched, in
    which case the repeat-submission penalty is skipped.
    """
    if rules is None:
        rules = IDENTITY_RULES
    score = rules["base"]
    age = _account_age_days(verification, now)
    if age < 1:
        score += rules["age_under_1_day"]
    elif age < 7:
        score += rules["age_under_7_days"]
    elif age < 30:
        score += rules["age_under_30_days"]
    if not _email_confirmed(verification):
        score += rules["unconfirmed_email"]
    if prior_verifications is not None and prior_verifications > rules["repeat_verification_limit"]:
        score += rules["repeat_verifications"]
    return clamp(score, 0, 100)


def score_documents(documents: List[DocumentRecord], rules: Dict[str, float] = None) -> float:
    if rules is None:
        rules = DOCUMENT_RULES
    if not documents:
        return float(rules["missing_documents"])

    score = rules["base"]
    suspicious = 0
    low_quality = 0
    for doc in documents:
        if doc.validation_status == ValidationStatus.suspicious:
            suspicious += 1
            score += rules["suspicious"]
        elif doc.validation_status == ValidationStatus.invalid:
            suspicious += 1
            score += rules["invalid"]
        elif doc.validation_status == ValidationStatus.expired:
            score += rules["expired"]

        # None means the quality was never measured
        if doc.quality_score is not None:
            if doc.quality_score < rules["quality_low"]:
                low_quality += 1
                score += rules["quality_low_penalty"]
            elif doc.quality_score < rules["quality_fair"]:
                score += rules["quality_fair_penalty"]
        if doc.ocr_confidence is not None and doc.ocr_confidence < rules["ocr_low"]:
            score += rules["ocr_low_penalty"]

        score += len(doc.fraud_indicators) * rules["per_fraud_tag"]

    if suspicious / len(documents) > rules["suspicious_ratio"]:
        score += rules["suspicious_ratio_penalty"]
    if low_quality / len(documents) > rules["low_quality_ratio"]:
        score += rules["low_quality_ratio_penalty"]
    return clamp(score, 0, 100)


def score_business(business: Optional[BusinessRecord], now: datetime, rules: Dict[str, float] = None) -> float:
    # Individual verifications carry no business; the weight still applies
    if business is None:
        return 0.0
    if rules is None:
        rules = BUSINESS_RULES
    score = rules["base"]
    if business.created_at is not None:
        age = age_in_days(business.created_at, now)
        if age < 30:
            score += rules["age_under_30_days"]
        elif age < 90:
            score += rules["age_under_90_days"]

    if business.verification_status == BusinessVerificationStatus.rejected:
        score += rules["rejected"]
    elif business.verification_status == BusinessVerificationStatus.pending:
        score += rules["pending"]

    for field in BUSINESS_REQUIRED_FIELDS:
        value = getattr(business, field)
        if not value or not value.strip():
            score += rules["missing_field"]

    if business.name and _suspicious_name.search(business.name):
        score += rules["suspicious_name"]
    return clamp(score, 0, 100)


def categorize_risk(score: float, thresholds: Dict[str, float] = None) -> RiskCategory:
    if thresholds is None:
        thresholds = RISK_THRESHOLDS
    if score <= thresholds["low"]:
        return RiskCategory.low
    if score <= thresholds["medium"]:
        return RiskCategory.medium
    if score <= thresholds["high"]:
        return RiskCategory.high
    return RiskCategory.critical


# ----------------------
# Risk factors
# ----------------------

def identity_risk_factors(verification: VerificationRecord, now: datetime) -> List[RiskFactor]:
    factors = []
    if _account_age_days(verification, now) < 1:
        factors.append(RiskFactor(
            type="new_account",
            category=RiskComponent.identity,
            severity=Severity.high,
            impact=40,
            confidence=95,
            description="User account created within 24 hours",
            source="account_analysis",
        ))
    if not _email_confirmed(verification):
        factors.append(RiskFactor(
            type="unconfirmed_email",
            category=RiskComponent.identity,
            severity=Severity.medium,
            impact=20,
            confidence=90,
            description="Email address has not been confirmed",
            source="account_analysis",
        ))
    return factors


def document_risk_factors(documents: List[DocumentRecord]) -> List[RiskFactor]:
    if not documents:
        return [RiskFactor(
            type="no_documents",
            category=RiskComponent.document,
            severity=Severity.critical,
            impact=80,
            confidence=100,
            description="No documents submitted for verification",
            source="document_analysis",
        )]
    flagged = [d for d in documents if d.validation_status in (ValidationStatus.suspicious, ValidationStatus.invalid)]
    if flagged:
        return [RiskFactor(
            type="suspicious_documents",
            category=RiskComponent.document,
            severity=Severity.high,
            impact=30,
            confidence=85,
            description=f"{len(flagged)} document(s) failed validation or look suspicious",
            source="document_analysis",
        )]
    return []


def business_risk_factors(business: Optional[BusinessRecord], now: datetime) -> List[RiskFactor]:
    if business is None:
        return []
    factors = []
    if business.created_at is not None and age_in_days(business.created_at, now) < 30:
        factors.append(RiskFactor(
            type="new_business",
            category=RiskComponent.business,
            severity=Severity.medium,
            impact=25,
            confidence=90,
            description="Business registered within the last 30 days",
            source="business_analysis",
        ))
    if business.name and _suspicious_name.search(business.name):
        factors.append(RiskFactor(
            type="suspicious_business_name",
            category=RiskComponent.business,
            severity=Severity.high,
            impact=20,
            confidence=80,
            description="Business name contains a placeholder or test keyword",
            source="business_analysis",
        ))
    return factors


# ----------------------
# Decisions
# ----------------------

def generate_recommendations(score: float, factors: List[RiskFactor]) -> List[str]:
    recommendations = []
    if score > RISK_THRESHOLDS["high"]:
        recommendations.append("Requires manual review by senior compliance officer")
        recommendations.append("Consider requesting additional documentation")
    elif score > RISK_THRESHOLDS["medium"]:
        recommendations.append("Requires manual review")
        recommendations.append("Verify document authenticity")

    document_factors = [f for f in factors if f.category == RiskComponent.document]
    if document_factors:
        recommendations.append("Review document quality and validation results")
    if any(f.severity in _HIGH_SEVERITIES for f in document_factors):
        recommendations.append("Requires manual review")
    if any(f.category == RiskComponent.identity for f in factors):
        recommendations.append("Perform additional identity verification checks")
    if any(f.category == RiskComponent.business and f.severity in _HIGH_SEVERITIES for f in factors):
        recommendations.append("Verify business registration details")
    return dedupe(recommendations)


def requires_manual_review(score: float, factors: List[RiskFactor]) -> bool:
    return score > RISK_THRESHOLDS["medium"] or any(f.severity == Severity.critical for f in factors)


def auto_approval_eligible(score: float, factors: List[RiskFactor]) -> bool:
    return score <= RISK_THRESHOLDS["low"] and not any(f.severity in _HIGH_SEVERITIES for f in factors)


def calculate_assessment_confidence(factors: List[RiskFactor]) -> float:
    if not factors:
        return ASSESSMENT_CONFIDENCE_DEFAULT
    return sum(f.confidence for f in factors) / len(factors)


class RiskAssessmentService:
    def __init__(
        self,
        store,
        behavioral_scorer: Optional[BehavioralRiskScorer] = None,
        geographic_scorer: Optional[GeographicRiskScorer] = None,
        cache=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.behavioral_scorer = behavioral_scorer or NeutralBehavioralScorer()
        self.geographic_scorer = geographic_scorer or RegionalGeographicScorer()
        self.cache = cache
        self.clock = clock

    async def _load(self, verification_id: str) -> VerificationRecord:
        try:
            verification = await self.store.get_verification_by_id(verification_id)
        except ExternalFetchError as e:
            logger.warning(f"Verification fetch failed for {verification_id}: {e}")
            raise NotFoundError("Verification not found") from e
        if verification is None:
            raise NotFoundError("Verification not found")
        return verification

    async def _identity_risk(self, verification, now):
        try:
            prior = await self.store.count_recent_verifications(verification.user_id, None)
        except ExternalFetchError as e:
            logger.warning(f"Verification count unavailable for {verification.user_id}: {e}")
            prior = None
        return score_identity(verification, now, prior)

    async def _document_risk(self, verification):
        return score_documents(verification.documents)

    async def _business_risk(self, verification, now):
        return score_business(verification.business, now)

    async def _behavioral_risk(self, verification):
        try:
            return clamp(await self.behavioral_scorer.score(verification, self.store), 0, 100)
        except ExternalFetchError as e:
            logger.warning(f"Behavioral scoring degraded for {verification.id}: {e}")
            return BEHAVIORAL_RULES["neutral"]

    async def _geographic_risk(self, verification):
        try:
            return clamp(await self.geographic_scorer.score(verification), 0, 100)
        except ExternalFetchError as e:
            logger.warning(f"Geographic scoring degraded for {verification.id}: {e}")
            return GEOGRAPHIC_RULES["neutral"]

    async def assess_verification_risk(self, verification_id: str) -> RiskAssessmentResult:
        verification = await self._load(verification_id)
        now = self.clock()

        identity, document, business, behavioral, geographic = await asyncio.gather(
            self._identity_risk(verification, now),
            self._document_risk(verification),
            self._business_risk(verification, now),
            self._behavioral_risk(verification),
            self._geographic_risk(verification),
        )
        component_scores = {
            RiskComponent.identity: round2(identity),
            RiskComponent.document: round2(document),
            RiskComponent.business: round2(business),
            RiskComponent.behavioral: round2(behavioral),
            RiskComponent.geographic: round2(geographic),
        }
        overall = round2(weighted_average(
            {component.value: score for component, score in component_scores.items()},
            COMPONENT_WEIGHTS,
        ))

        factors = (
            identity_risk_factors(verification, now)
            + document_risk_factors(verification.documents)
            + business_risk_factors(verification.business, now)
        )

        result = RiskAssessmentResult(
            verification_id=verification.id,
            overall_score=overall,
            risk_category=categorize_risk(overall),
            component_scores=component_scores,
            risk_factors=factors,
            recommendations=generate_recommendations(overall, factors),
            requires_manual_review=requires_manual_review(overall, factors),
            auto_approval_eligible=auto_approval_eligible(overall, factors),
            confidence=round2(calculate_assessment_confidence(factors)),
            assessed_at=now,
        )
        logger.info(
            f"Risk assessment {verification.id}: score={overall} category={result.risk_category.value} "
            f"manual_review={result.requires_manual_review}"
        )
        if self.cache is not None:
            await self.cache.store(result)
        return result
