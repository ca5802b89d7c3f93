"""
Pluggable analyses used by the engines.

Each abstract strategy has a neutral default so an engine built with no
arguments behaves predictably. Deployments swap in real implementations
(ML models, threat feeds, behavioural profiling) at construction time.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import uuid4

from trustgate.config import BEHAVIORAL_RULES, GEOGRAPHIC_RULES, HOME_COUNTRIES
from trustgate.errors import ExternalFetchError
from trustgate.schemas.analytics import SecurityEvent, ThreatIntelligence, ThreatDetection, ComplianceViolation
from trustgate.schemas.common import SecurityEventType, ViolationSeverity
from trustgate.schemas.device import TypingPattern, MousePattern
from trustgate.schemas.verification import VerificationRecord
from trustgate.services.scoring import clamp, ensure_utc

logger = logging.getLogger(__name__)


# ----------------------
# Verification risk
# ----------------------

class BehavioralRiskScorer(ABC):
    @abstractmethod
    async def score(self, verification: VerificationRecord, store) -> float:
        """Return a behavioural risk score in [0, 100]."""


class NeutralBehavioralScorer(BehavioralRiskScorer):
    """No behavioural signal available: always the midpoint."""

    async def score(self, verification, store):
        return BEHAVIORAL_RULES["neutral"]


class SubmissionPatternScorer(BehavioralRiskScorer):
    """Scores how the submission was made: speed and prior rejections."""

    def __init__(self, rules=None):
        self.rules = rules or BEHAVIORAL_RULES

    async def score(self, verification, store):
        score = float(self.rules["base"])
        if verification.initiated_at is not None:
            elapsed = ensure_utc(verification.submitted_at) - ensure_utc(verification.initiated_at)
            if elapsed < timedelta(minutes=self.rules["fast_submission_minutes"]):
                score += self.rules["fast_submission"]
        try:
            rejections = await store.count_rejected_verifications(verification.user_id)
        except ExternalFetchError as e:
            logger.warning(f"Rejection history unavailable for {verification.user_id}: {e}")
            rejections = 0
        if rejections > 1:
            score += self.rules["per_rejection"] * rejections
        return clamp(score, 0, 100)


class GeographicRiskScorer(ABC):
    @abstractmethod
    async def score(self, verification: VerificationRecord) -> float:
        """Return a geographic risk score in [0, 100]."""


class RegionalGeographicScorer(GeographicRiskScorer):
    """Low risk at home, a little more abroad, neutral when the country is unknown."""

    def __init__(self, home_countries: Optional[Sequence[str]] = None, rules=None):
        self.home_countries = {c.upper() for c in (home_countries or HOME_COUNTRIES)}
        self.rules = rules or GEOGRAPHIC_RULES

    async def score(self, verification):
        country = verification.geo_country
        if not country and verification.business is not None:
            country = verification.business.country
        if not country:
            return self.rules["neutral"]
        score = float(self.rules["base"])
        if country.strip().upper() not in self.home_countries:
            score += self.rules["international"]
        return clamp(score, 0, 100)


# ----------------------
# Device trust
# ----------------------

class PatternComparator:
    """Compares stored and current interaction patterns, returning [0, 1].

    The default has no biometric model and reports a fixed, moderately
    consistent result.
    """

    default_consistency = 0.8

    def compare_typing(self, stored: TypingPattern, current: Optional[TypingPattern]) -> float:
        return self.default_consistency

    def compare_mouse(self, stored: Optional[MousePattern], current: Optional[MousePattern]) -> float:
        return self.default_consistency


# ----------------------
# Security analytics
# ----------------------

class BehaviorModel(ABC):
    @abstractmethod
    async def anomaly_score(self, event: SecurityEvent) -> Optional[float]:
        """Anomaly score in [0, 1], or None when the user has no profile yet."""


class NullBehaviorModel(BehaviorModel):
    async def anomaly_score(self, event):
        return None


class AnomalyModel(ABC):
    name = "anomaly_model"

    @abstractmethod
    async def predict(self, event: SecurityEvent) -> Optional[float]:
        """Anomaly score in [0, 1]."""


class ThreatIntelProvider(ABC):
    @abstractmethod
    async def lookup(self, ip_address: str) -> Optional[ThreatIntelligence]:
        ...


class NullThreatIntelProvider(ThreatIntelProvider):
    async def lookup(self, ip_address):
        return None


class PatternDetector(ABC):
    """Detector for a single attack pattern (credential stuffing, privilege escalation...)."""

    @abstractmethod
    async def detect(self, event: SecurityEvent) -> Optional[ThreatDetection]:
        ...


class NullPatternDetector(PatternDetector):
    async def detect(self, event):
        return None


class ComplianceRuleSet(ABC):
    regulation = ""

    @abstractmethod
    def evaluate(self, event: SecurityEvent, now: datetime) -> List[ComplianceViolation]:
        ...

    def _violation(self, type_: str, severity: ViolationSeverity, description: str,
                   affected_data: List[str], required_actions: List[str], deadline: Optional[datetime]) -> ComplianceViolation:
        return ComplianceViolation(
            id=f"{self.regulation.lower()}_{uuid4().hex[:12]}",
            regulation=self.regulation,
            type=type_,
            severity=severity,
            description=description,
            affected_data=affected_data,
            required_actions=required_actions,
            deadline=deadline,
        )


class GDPRRuleSet(ComplianceRuleSet):
    regulation = "GDPR"

    def evaluate(self, event, now):
        data = event.compliance_data
        if data is None or not data.pii_accessed:
            return []
        if event.evidence.get("audit_trail"):
            return []
        return [self._violation(
            "pii_access_without_audit",
            ViolationSeverity.major,
            "Personal data accessed without an audit trail",
            [f"user:{event.user_id}"] if event.user_id else [],
            ["Record access justification", "Review data access logs"],
            # breach notification window
            now + timedelta(hours=72),
        )]


class SOXRuleSet(ComplianceRuleSet):
    regulation = "SOX"

    flagged_types = {
        SecurityEventType.admin_action_suspicious,
        SecurityEventType.privilege_escalation_attempt,
    }

    def evaluate(self, event, now):
        if event.type not in self.flagged_types:
            return []
        return [self._violation(
            "access_control_violation",
            ViolationSeverity.critical if event.type == SecurityEventType.privilege_escalation_attempt else ViolationSeverity.major,
            f"Privileged access control event: {event.type.value}",
            ["access_controls", "financial_reporting_systems"],
            ["Review privileged access", "Document control exception"],
            now + timedelta(days=7),
        )]


class PCIRuleSet(ComplianceRuleSet):
    regulation = "PCI"

    def evaluate(self, event, now):
        if event.type != SecurityEventType.data_exfiltration_attempt:
            return []
        return [self._violation(
            "cardholder_data_exposure",
            ViolationSeverity.critical,
            "Possible exfiltration of cardholder data",
            ["cardholder_data"],
            ["Isolate affected systems", "Notify payment processor"],
            now + timedelta(hours=24),
        )]


class CCPARuleSet(ComplianceRuleSet):
    regulation = "CCPA"

    def evaluate(self, event, now):
        return []


def default_rule_sets(compliance_config) -> List[ComplianceRuleSet]:
    rule_sets = {
        "gdpr": GDPRRuleSet,
        "sox": SOXRuleSet,
        "pci": PCIRuleSet,
        "ccpa": CCPARuleSet,
    }
    return [cls() for key, cls in rule_sets.items() if compliance_config.get(key, {}).get("enabled")]
