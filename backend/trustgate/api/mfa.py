from fastapi import APIRouter, Depends, HTTPException, Request, status

from trustgate.database import get_db
from trustgate.dependencies import get_mfa_service
from trustgate.errors import NotFoundError
from trustgate.middlewares.rbac import claim_roles, get_current_claims, require_roles
from trustgate.schemas.mfa import (
    ActionRequirement,
    MFAEnforcementContext,
    MFAEnforcementResult,
    PolicyValidation,
    RoleRequirement,
)
from trustgate.services.audit_log_service import log_mfa_decision
from trustgate.services.mfa_enforcement import get_action_requirements, get_role_requirements, validate_policy_config
from trustgate.services.rate_limit import MFA_CHECK_LIMIT, READ_LIMIT, limiter

router = APIRouter(prefix="/mfa", tags=["mfa"])

# Callers allowed to ask about users other than themselves
DELEGATE_ROLES = {"admin", "service"}


@router.post("/check", response_model=MFAEnforcementResult)
@limiter.limit(MFA_CHECK_LIMIT)
async def check_mfa(
    context: MFAEnforcementContext,
    request: Request,
    claims: dict = Depends(get_current_claims),
    service=Depends(get_mfa_service),
    db=Depends(get_db),
):
    if str(claims.get("sub")) != context.user_id and not claim_roles(claims) & DELEGATE_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions.")
    result = await service.check_mfa_requirement(context)
    if db is not None:
        await log_mfa_decision(db, context.user_id, result.required, result.reason)
    return result


@router.get("/policies/roles/{role}", response_model=RoleRequirement)
@limiter.limit(READ_LIMIT)
async def role_policy(role: str, request: Request, _claims: dict = Depends(get_current_claims)):
    requirement = get_role_requirements(role)
    if requirement is None:
        raise NotFoundError(f"No MFA policy for role {role}")
    return requirement


@router.get("/policies/actions/{action}", response_model=ActionRequirement)
@limiter.limit(READ_LIMIT)
async def action_policy(action: str, request: Request, _claims: dict = Depends(get_current_claims)):
    requirement = get_action_requirements(action)
    if requirement is None:
        raise NotFoundError(f"No MFA policy for action {action}")
    return requirement


@router.get("/policies/validate", response_model=PolicyValidation)
@limiter.limit(READ_LIMIT)
async def validate_policies(request: Request, _admin: dict = Depends(require_roles("admin"))):
    return validate_policy_config()
