"""
Service construction and FastAPI dependencies.

Engines are built once at startup and stored on ``app.state``; routers
receive them through ``Depends`` so tests can override any of them.
"""
import logging

from fastapi import FastAPI, Request

from trustgate.services.device_trust import DeviceTrustService
from trustgate.services.fraud_detection import FraudDetector
from trustgate.services.mfa_enforcement import MFAEnforcementService
from trustgate.services.risk_assessment import RiskAssessmentService
from trustgate.services.risk_cache import RiskAssessmentCache
from trustgate.services.screening import ComplianceScreeningService
from trustgate.services.strategies import SubmissionPatternScorer
from trustgate.services.threat_analytics import SecurityAnalyticsEngine

logger = logging.getLogger(__name__)


def install_services(app: FastAPI, store, redis_client=None) -> None:
    cache = RiskAssessmentCache(redis_client)
    device_trust = DeviceTrustService(store)
    app.state.store = store
    app.state.risk_cache = cache
    app.state.risk_service = RiskAssessmentService(store, behavioral_scorer=SubmissionPatternScorer(), cache=cache)
    app.state.fraud_detector = FraudDetector(store)
    app.state.screening_service = ComplianceScreeningService(store)
    app.state.device_trust = device_trust
    app.state.mfa_service = MFAEnforcementService(store, device_trust)
    app.state.analytics_engine = SecurityAnalyticsEngine(store)
    logger.info(f"Services installed on {type(store).__name__}")


def get_risk_service(request: Request) -> RiskAssessmentService:
    return request.app.state.risk_service


def get_risk_cache(request: Request) -> RiskAssessmentCache:
    return request.app.state.risk_cache


def get_fraud_detector(request: Request) -> FraudDetector:
    return request.app.state.fraud_detector


def get_screening_service(request: Request) -> ComplianceScreeningService:
    return request.app.state.screening_service


def get_device_trust_service(request: Request) -> DeviceTrustService:
    return request.app.state.device_trust


def get_mfa_service(request: Request) -> MFAEnforcementService:
    return request.app.state.mfa_service


def get_analytics_engine(request: Request) -> SecurityAnalyticsEngine:
    return request.app.state.analytics_engine
