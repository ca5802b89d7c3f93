from trustgate.models.audit_log import AuditLog
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone


async def _persist(db, log: AuditLog) -> AuditLog:
    db.add(log)
    # Sync sessions are used by the test suite and scripts
    if isinstance(db, AsyncSession):
        await db.commit()
    else:
        db.commit()
    return log


async def log_audit_event(db, user_id: str | None, action: str, details: str | None = None):
    log = AuditLog(
        user_id=user_id,
        action=action,
        details=details,
        timestamp=datetime.now(timezone.utc)
    )
    return await _persist(db, log)


async def log_risk_decision(db, user_id: str, verification_id: str, category: str, score: float, manual_review: bool):
    details = f"Verification ID: {verification_id}. Score: {score} ({category})"
    if manual_review:
        details += ". Manual review required"
    log = AuditLog(
        user_id=user_id,
        action=f"risk_assessment_{category}",
        details=details,
        timestamp=datetime.now(timezone.utc)
    )
    return await _persist(db, log)


async def log_device_event(db, user_id: str, device_id: str, action: str, details: str | None = None):
    log = AuditLog(
        user_id=user_id,
        action=f"device_{action}",
        details=f"Device ID: {device_id}. {details or ''}".strip(),
        timestamp=datetime.now(timezone.utc)
    )
    return await _persist(db, log)


async def log_mfa_decision(db, user_id: str, required: bool, reason: str):
    log = AuditLog(
        user_id=user_id,
        action="mfa_required" if required else "mfa_not_required",
        details=reason,
        timestamp=datetime.now(timezone.utc)
    )
    return await _persist(db, log)
