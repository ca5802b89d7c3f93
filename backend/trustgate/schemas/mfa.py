from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from trustgate.schemas.common import MFAMethod


class MFAEnforcementContext(BaseModel):
    user_id: str
    session_id: Optional[str] = None
    user_roles: List[str] = Field(default_factory=list)
    action: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: str = "0.0.0.0"
    user_agent: str = ""
    risk_score: Optional[float] = Field(default=None, ge=0, le=1)
    device_trust_score: Optional[float] = Field(default=None, ge=0, le=1)
    is_new_device: bool = False
    is_new_location: bool = False
    last_mfa_time: Optional[datetime] = None


class MFAPolicyResult(BaseModel):
    enforce: bool
    policy: str
    methods: List[MFAMethod] = Field(default_factory=list)
    freshness: Optional[int] = None
    grace_period: Optional[datetime] = None
    trust_score: Optional[float] = None
    risk_factors: List[str] = Field(default_factory=list)


class MFAEnforcementResult(BaseModel):
    required: bool
    methods: List[MFAMethod] = Field(default_factory=list)
    reason: str
    grace_period_expires: Optional[datetime] = None
    freshness_seconds: Optional[int] = None
    freshness_met: Optional[bool] = None
    bypass_available: bool = False
    skip_reasons: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class MFAConfig(BaseModel):
    user_id: str
    mfa_enabled: bool = False
    enrolled_methods: List[MFAMethod] = Field(default_factory=list)


class BypassCheck(BaseModel):
    can_bypass: bool = False
    available: bool = False
    reason: Optional[str] = None


class RoleRequirement(BaseModel):
    role: str
    required: bool
    grace_period_days: int
    methods: List[MFAMethod] = Field(default_factory=list)


class ActionRequirement(BaseModel):
    action: str
    required: bool
    freshness: Optional[int] = None


class PolicyValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
