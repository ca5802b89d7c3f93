from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from trustgate.schemas.common import TrustLevel


class ScreenInfo(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    color_depth: int = 24
    pixel_ratio: float = 1.0

    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class TimezoneInfo(BaseModel):
    offset: int
    name: Optional[str] = None


class HardwareInfo(BaseModel):
    cores: int = Field(ge=0)
    memory: Optional[float] = None
    touch: bool = False


class DeviceFingerprint(BaseModel):
    canvas: Optional[str] = None
    webgl: Optional[str] = None
    audio: Optional[str] = None
    fonts: Optional[List[str]] = None
    screen: ScreenInfo
    timezone: TimezoneInfo
    language: List[str] = Field(default_factory=list)
    platform: str
    user_agent: str
    plugins: Optional[List[str]] = None
    hardware: Optional[HardwareInfo] = None


class TypingPattern(BaseModel):
    avg_speed: float
    variance: float = 0.0
    rhythm: List[float] = Field(default_factory=list)


class MousePattern(BaseModel):
    avg_speed: float
    acceleration: float = 0.0
    click_pattern: List[float] = Field(default_factory=list)


class InteractionPattern(BaseModel):
    session_duration: float
    click_rate: float = 0.0
    scroll_behavior: List[float] = Field(default_factory=list)


class BehavioralPattern(BaseModel):
    typing: Optional[TypingPattern] = None
    mouse: Optional[MousePattern] = None
    interaction: Optional[InteractionPattern] = None


class GeographicContext(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    timezone: Optional[str] = None
    accuracy: Optional[float] = None


class NetworkContext(BaseModel):
    ip_address: str
    isp: Optional[str] = None
    asn: Optional[int] = None
    is_vpn: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    is_residential: Optional[bool] = None


class DeviceContext(BaseModel):
    ip_address: str
    user_agent: str = ""
    geographic: Optional[GeographicContext] = None
    network: Optional[NetworkContext] = None
    behavioral: Optional[BehavioralPattern] = None


class DeviceTrustAnalysis(BaseModel):
    fingerprint: float = 0.0
    behavioral: float = 0.0
    geographic: float = 0.0
    network: float = 0.0
    temporal: float = 0.0
    success_rate: float = 0.0


class DeviceTrustResult(BaseModel):
    device_id: str
    trust_score: float = Field(ge=0, le=1)
    trust_level: TrustLevel
    risk_factors: List[str] = Field(default_factory=list)
    requires_mfa: bool
    can_remember: bool
    analysis: DeviceTrustAnalysis


class DeviceRegistrationRequest(BaseModel):
    """Raw payloads; the trust engine validates them itself so it can report a 400."""
    fingerprint: Dict[str, Any]
    context: Dict[str, Any]


class DeviceRevocationRequest(BaseModel):
    reason: str = "user_revoked"


class DeviceRegistrationResult(BaseModel):
    success: bool
    device_id: str
    trust_score: Optional[float] = None
    trust_level: Optional[TrustLevel] = None
    requires_verification: bool = True
    error: Optional[str] = None


class DeviceRevocationResult(BaseModel):
    success: bool
    error: Optional[str] = None


class DeviceTrustStatus(BaseModel):
    is_trusted: bool
    # a TrustLevel value, or "unknown" / "error"
    trust_level: str
    trust_score: float
    requires_mfa: bool
    risk_factors: List[str] = Field(default_factory=list)
    last_verified: Optional[datetime] = None


class DeviceTrustRecord(BaseModel):
    user_id: str
    device_id: str
    canvas_fingerprint: Optional[str] = None
    webgl_fingerprint: Optional[str] = None
    audio_fingerprint: Optional[str] = None
    font_fingerprint: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone_offset: Optional[int] = None
    language_preference: Optional[str] = None
    platform_details: Dict[str, Any] = Field(default_factory=dict)
    typing_pattern: Optional[TypingPattern] = None
    mouse_movement_pattern: Optional[MousePattern] = None
    trust_score: float = Field(default=0.0, ge=0, le=1)
    risk_flags: List[str] = Field(default_factory=list)
    risk_score: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TrustedDeviceRecord(BaseModel):
    user_id: str
    device_id: str
    device_name: Optional[str] = None
    trust_level: TrustLevel
    last_verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None


class SessionRecord(BaseModel):
    id: Optional[str] = None
    user_id: str
    device_id: Optional[str] = None
    created_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country_code: Optional[str] = None
    mfa_verified_at: Optional[datetime] = None


class MFAAttemptStats(BaseModel):
    total: int = 0
    successful: int = 0
