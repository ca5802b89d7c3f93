import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from trustgate.database import get_db
from trustgate.dependencies import get_fraud_detector, get_risk_cache, get_risk_service, get_screening_service
from trustgate.errors import NotFoundError
from trustgate.middlewares.rbac import require_roles
from trustgate.schemas.verification import ComplianceFlag, FraudIndicator, RiskAssessmentResult
from trustgate.services.audit_log_service import log_risk_decision
from trustgate.services.rate_limit import ASSESSMENT_LIMIT, READ_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verifications", tags=["verifications"])

REVIEWER_ROLES = ("admin", "compliance", "service")


@router.post("/{verification_id}/risk-assessment", response_model=RiskAssessmentResult)
@limiter.limit(ASSESSMENT_LIMIT)
async def assess_verification(
    verification_id: str,
    request: Request,
    claims: dict = Depends(require_roles(*REVIEWER_ROLES)),
    service=Depends(get_risk_service),
    db=Depends(get_db),
):
    try:
        result = await service.assess_verification_risk(verification_id)
    except NotFoundError:
        raise
    except Exception as e:
        logger.error(f"Risk assessment failed for {verification_id}: {e}")
        # Avoid leaking internal details
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to assess verification risk"},
        ) from e

    if db is not None:
        await log_risk_decision(
            db,
            str(claims.get("sub")),
            verification_id,
            result.risk_category.value,
            result.overall_score,
            result.requires_manual_review,
        )
    return result


@router.get("/{verification_id}/risk-assessment", response_model=RiskAssessmentResult)
@limiter.limit(READ_LIMIT)
async def latest_assessment(
    verification_id: str,
    request: Request,
    _claims: dict = Depends(require_roles(*REVIEWER_ROLES)),
    cache=Depends(get_risk_cache),
):
    result = await cache.get(verification_id)
    if result is None:
        raise NotFoundError("No cached assessment for this verification")
    return result


@router.get("/{verification_id}/fraud-indicators", response_model=List[FraudIndicator])
@limiter.limit(READ_LIMIT)
async def fraud_indicators(
    verification_id: str,
    request: Request,
    _claims: dict = Depends(require_roles(*REVIEWER_ROLES)),
    detector=Depends(get_fraud_detector),
):
    return await detector.detect_fraud_indicators(verification_id)


@router.get("/{verification_id}/compliance-screening", response_model=List[ComplianceFlag])
@limiter.limit(READ_LIMIT)
async def compliance_screening(
    verification_id: str,
    request: Request,
    _claims: dict = Depends(require_roles(*REVIEWER_ROLES)),
    service=Depends(get_screening_service),
):
    return await service.perform_compliance_screening(verification_id)
