import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from trustgate.dependencies import get_analytics_engine
from trustgate.middlewares.rbac import require_roles
from trustgate.schemas.analytics import ProcessingResult, SecurityEventIn, SecurityMetricsSnapshot
from trustgate.services.rate_limit import EVENT_INGEST_LIMIT, READ_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/security-events", tags=["security-events"])


@router.post("", response_model=ProcessingResult, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(EVENT_INGEST_LIMIT)
async def submit_security_event(
    event: SecurityEventIn,
    request: Request,
    _claims: dict = Depends(require_roles("service", "admin")),
    engine=Depends(get_analytics_engine),
):
    try:
        return await engine.process_security_event(event)
    except Exception as e:
        logger.error(f"Security event processing failed for {event.type.value}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to process security event"},
        ) from e


@router.get("/metrics", response_model=SecurityMetricsSnapshot)
@limiter.limit(READ_LIMIT)
async def security_metrics(
    request: Request,
    _claims: dict = Depends(require_roles("service", "admin")),
    engine=Depends(get_analytics_engine),
):
    return engine.generate_security_metrics()
