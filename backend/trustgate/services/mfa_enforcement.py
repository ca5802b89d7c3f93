"""
MFA enforcement policy engine.

Four policies (role, action, risk, device) are evaluated independently and
consolidated: MFA is required if any policy enforces it. Bypasses (admin
override, emergency access, completed recovery) are checked afterwards.
The engine fails secure: any internal error means MFA is required.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from trustgate.config import (
    MFA_ROLE_HIERARCHY,
    MFA_DEFAULT_ROLE,
    MFA_ROLE_REQUIREMENTS,
    MFA_ACTION_REQUIREMENTS,
    MFA_RISK_TRIGGERS,
    MFA_STANDARD_METHODS,
    MFA_FAIL_SECURE_METHODS,
    MFA_SESSION_FRESHNESS_SECONDS,
    MFA_RECOVERY_TOKEN_HOURS,
)
from trustgate.errors import PolicyEngineInternalError
from trustgate.schemas.common import MFAMethod
from trustgate.schemas.mfa import (
    ActionRequirement,
    BypassCheck,
    MFAEnforcementContext,
    MFAEnforcementResult,
    MFAPolicyResult,
    PolicyValidation,
    RoleRequirement,
)
from trustgate.services.scoring import dedupe, ensure_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _methods(names: Iterable[str]) -> List[MFAMethod]:
    return [MFAMethod(name) for name in names]


# ----------------------
# Policy utilities
# ----------------------

def get_highest_privilege_role(roles: Iterable[str]) -> str:
    roles = set(roles)
    for role in MFA_ROLE_HIERARCHY:
        if role in roles:
            return role
    return MFA_DEFAULT_ROLE


def get_role_requirements(role: str) -> Optional[RoleRequirement]:
    config = MFA_ROLE_REQUIREMENTS.get(role)
    if config is None:
        return None
    return RoleRequirement(
        role=role,
        required=config["required"],
        grace_period_days=config["grace_period_days"],
        methods=_methods(config["methods"]),
    )


def get_action_requirements(action: str) -> Optional[ActionRequirement]:
    config = MFA_ACTION_REQUIREMENTS.get(action)
    if config is None:
        return None
    return ActionRequirement(action=action, required=config["required"], freshness=config.get("freshness"))


def validate_policy_config(role_requirements=None, action_requirements=None) -> PolicyValidation:
    if role_requirements is None:
        role_requirements = MFA_ROLE_REQUIREMENTS
    if action_requirements is None:
        action_requirements = MFA_ACTION_REQUIREMENTS
    errors = []
    for role, config in role_requirements.items():
        if config["grace_period_days"] < 0:
            errors.append(f"Role {role} has negative grace period")
        if config["required"] and not config["methods"]:
            errors.append(f"Role {role} requires MFA but has no methods")
    for action, config in action_requirements.items():
        freshness = config.get("freshness")
        if freshness is not None and freshness < 60:
            errors.append(f"Action {action} freshness must be at least 60 seconds")
    return PolicyValidation(valid=not errors, errors=errors)


def consolidate_enforcement(policies: List[MFAPolicyResult]) -> MFAPolicyResult:
    enforcing = [p for p in policies if p.enforce]
    if not enforcing:
        graces = [p.grace_period for p in policies if p.grace_period is not None]
        return MFAPolicyResult(
            enforce=False,
            policy="none",
            grace_period=min(graces) if graces else None,
        )

    methods: List[MFAMethod] = []
    factors: List[str] = []
    freshness = None
    grace = None
    for policy in enforcing:
        methods.extend(policy.methods)
        factors.extend(policy.risk_factors)
        if policy.freshness is not None:
            freshness = policy.freshness if freshness is None else min(freshness, policy.freshness)
        if policy.grace_period is not None:
            grace = policy.grace_period if grace is None else min(grace, policy.grace_period)

    trust_scores = [p.trust_score for p in enforcing if p.trust_score is not None]
    return MFAPolicyResult(
        enforce=True,
        policy=", ".join(p.policy for p in enforcing),
        methods=dedupe(methods),
        freshness=freshness,
        grace_period=grace,
        trust_score=trust_scores[0] if trust_scores else None,
        risk_factors=dedupe(factors),
    )


def format_enforcement_reason(enforcement: MFAPolicyResult) -> str:
    if not enforcement.risk_factors:
        return f"MFA required by {enforcement.policy} policy"
    return f"MFA required: {', '.join(enforcement.risk_factors)}"


class MFAEnforcementService:
    def __init__(self, store, device_trust, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.device_trust = device_trust
        self.clock = clock

    # ----------------------
    # Policies
    # ----------------------

    async def check_role_based_policy(self, context: MFAEnforcementContext, now: datetime) -> MFAPolicyResult:
        roles = context.user_roles or await self.store.get_user_roles(context.user_id)
        role = get_highest_privilege_role(roles)
        config = MFA_ROLE_REQUIREMENTS.get(role)
        if not config or not config["required"]:
            return MFAPolicyResult(enforce=False, policy="role_based")

        grace_expires = None
        if config["grace_period_days"] > 0:
            created = await self.store.get_account_creation_date(context.user_id)
            if created is not None:
                grace_expires = ensure_utc(created) + timedelta(days=config["grace_period_days"])
                mfa_config = await self.store.get_mfa_config(context.user_id)
                mfa_enabled = mfa_config is not None and mfa_config.mfa_enabled
                if now < grace_expires and not mfa_enabled:
                    return MFAPolicyResult(
                        enforce=False,
                        policy="role_based_grace",
                        methods=_methods(config["methods"]),
                        grace_period=grace_expires,
                        risk_factors=["grace_period_active"],
                    )

        return MFAPolicyResult(
            enforce=True,
            policy="role_based",
            methods=_methods(config["methods"]),
            grace_period=grace_expires,
            risk_factors=[f"role_{role}_requires_mfa"],
        )

    async def check_action_based_policy(self, context: MFAEnforcementContext, last_mfa: Optional[datetime],
                                        now: datetime) -> MFAPolicyResult:
        if not context.action:
            return MFAPolicyResult(enforce=False, policy="action_based")
        config = MFA_ACTION_REQUIREMENTS.get(context.action)
        if not config or not config["required"]:
            return MFAPolicyResult(enforce=False, policy="action_based")

        freshness = config.get("freshness")
        if freshness and last_mfa is not None:
            if (now - ensure_utc(last_mfa)).total_seconds() <= freshness:
                return MFAPolicyResult(
                    enforce=False,
                    policy="action_based_fresh",
                    methods=_methods(MFA_STANDARD_METHODS),
                    freshness=freshness,
                    risk_factors=["mfa_recently_verified"],
                )
        return MFAPolicyResult(
            enforce=True,
            policy="action_based",
            methods=_methods(MFA_STANDARD_METHODS),
            freshness=freshness,
            risk_factors=[f"action_{context.action}_requires_mfa"],
        )

    async def check_risk_based_policy(self, context: MFAEnforcementContext) -> MFAPolicyResult:
        factors = []
        device_trust = context.device_trust_score if context.device_trust_score is not None else 0.0
        if context.is_new_device and device_trust < MFA_RISK_TRIGGERS["new_device_trust_threshold"]:
            factors.append("new_untrusted_device")
        if context.is_new_location:
            factors.append("new_geographic_location")
        if context.risk_score is not None and context.risk_score > MFA_RISK_TRIGGERS["suspicious_score_threshold"]:
            factors.append("high_risk_activity")
        return MFAPolicyResult(
            enforce=bool(factors),
            policy="risk_based",
            methods=_methods(MFA_STANDARD_METHODS),
            trust_score=context.device_trust_score,
            risk_factors=factors,
        )

    async def check_device_based_policy(self, context: MFAEnforcementContext) -> MFAPolicyResult:
        if not context.device_id:
            return MFAPolicyResult(
                enforce=True,
                policy="device_based",
                methods=_methods(MFA_STANDARD_METHODS),
                risk_factors=["no_device_identification"],
            )
        status = await self.device_trust.get_device_trust_status(context.user_id, context.device_id)
        return MFAPolicyResult(
            enforce=status.requires_mfa,
            policy="device_based",
            methods=_methods(MFA_STANDARD_METHODS),
            trust_score=status.trust_score,
            risk_factors=list(status.risk_factors),
        )

    async def check_bypass_conditions(self, context: MFAEnforcementContext, now: datetime) -> BypassCheck:
        override_expires = await self.store.get_active_admin_override(context.user_id, now)
        if override_expires is not None:
            return BypassCheck(
                can_bypass=True,
                available=True,
                reason=f"Admin override active until {ensure_utc(override_expires).isoformat()}",
            )
        if await self.store.has_active_emergency_access(context.user_id, now):
            return BypassCheck(can_bypass=True, available=True, reason="Emergency access code used")
        since = now - timedelta(hours=MFA_RECOVERY_TOKEN_HOURS)
        if await self.store.has_completed_recovery_since(context.user_id, since):
            return BypassCheck(can_bypass=True, available=True, reason="Recovery token active")
        return BypassCheck()

    async def _session_last_mfa(self, context: MFAEnforcementContext) -> Optional[datetime]:
        if not context.session_id:
            return None
        return await self.store.get_session_mfa_verified_at(context.session_id)

    # ----------------------
    # Entry point
    # ----------------------

    async def check_mfa_requirement(self, context: MFAEnforcementContext) -> MFAEnforcementResult:
        try:
            now = self.clock()
            session_mfa = await self._session_last_mfa(context)
            last_mfa = context.last_mfa_time or session_mfa

            policies = await asyncio.gather(
                self.check_role_based_policy(context, now),
                self.check_action_based_policy(context, last_mfa, now),
                self.check_risk_based_policy(context),
                self.check_device_based_policy(context),
            )
            enforcement = consolidate_enforcement(list(policies))

            if enforcement.enforce:
                bypass = await self.check_bypass_conditions(context, now)
                if bypass.can_bypass:
                    logger.info(f"MFA bypass for {context.user_id}: {bypass.reason}")
                    return MFAEnforcementResult(
                        required=False,
                        methods=[],
                        reason=f"Bypass applied: {bypass.reason}",
                        bypass_available=True,
                        skip_reasons=[bypass.reason or "Unknown bypass reason"],
                    )
            else:
                bypass = BypassCheck()

            freshness_met = (
                session_mfa is not None
                and (now - ensure_utc(session_mfa)).total_seconds() <= MFA_SESSION_FRESHNESS_SECONDS
            )
            result = MFAEnforcementResult(
                required=enforcement.enforce,
                methods=enforcement.methods,
                reason=format_enforcement_reason(enforcement) if enforcement.enforce else "MFA not required",
                grace_period_expires=enforcement.grace_period,
                freshness_seconds=enforcement.freshness,
                freshness_met=freshness_met,
                bypass_available=bypass.available,
            )
            logger.info(f"MFA check for {context.user_id}: required={result.required} policy={enforcement.policy}")
            return result
        except Exception as e:
            error = PolicyEngineInternalError(str(e))
            logger.error(f"MFA enforcement check error for {context.user_id}: {error!r}")
            return MFAEnforcementResult(
                required=True,
                methods=_methods(MFA_FAIL_SECURE_METHODS),
                reason="System error - MFA required for security",
                error_message=str(e) or type(e).__name__,
            )
