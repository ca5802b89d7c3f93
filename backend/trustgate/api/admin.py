from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.future import select

from trustgate.database import get_db
from trustgate.dependencies import get_analytics_engine
from trustgate.middlewares.rbac import require_roles
from trustgate.models.audit_log import AuditLog
from trustgate.schemas.audit import AuditLogOut
from trustgate.services.alert_service import get_alerts
from trustgate.services.rate_limit import READ_LIMIT, limiter

router = APIRouter(prefix="/admin", tags=["admin"])


def get_admin_claims(claims: dict = Depends(require_roles("admin"))):
    return claims


@router.get("/audit-logs", response_model=List[AuditLogOut])
@limiter.limit(READ_LIMIT)
async def audit_logs(
    request: Request,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db=Depends(get_db),
    _admin=Depends(get_admin_claims),
):
    if db is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"message": "Audit database unavailable"})
    query = select(AuditLog)
    if user_id:
        query = query.where(AuditLog.user_id == user_id)
    if action:
        query = query.where(AuditLog.action == action)
    result = await db.execute(query.order_by(AuditLog.timestamp.desc()).limit(limit))
    return result.scalars().all()


@router.get("/alerts", response_model=List[dict])
@limiter.limit(READ_LIMIT)
async def recent_alerts(request: Request, _admin=Depends(get_admin_claims)):
    return get_alerts()


@router.post("/security-events/process-batch", response_model=dict)
@limiter.limit("10/minute")
async def process_event_batch(request: Request, _admin=Depends(get_admin_claims), engine=Depends(get_analytics_engine)):
    """Drain one batch of queued events now instead of waiting for a full batch."""
    return await engine.process_batch()
