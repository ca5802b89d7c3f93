"""
Device trust scoring.

A device is identified by a hash of its stable fingerprint fields. Trust is
a weighted blend of six analyses, each in [0, 1]:

    fingerprint stability   0.25
    behavioural consistency 0.20
    geographic consistency  0.15
    network context         0.15
    temporal pattern        0.10
    MFA success rate        0.10

The ``user_designation`` weight (0.05) in the config is reserved and not
applied, so a perfect device tops out at 0.95.
"""
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as SchemaError

from trustgate.config import DEVICE_TRUST_CONFIG
from trustgate.errors import ExternalFetchError, ValidationError
from trustgate.schemas.audit import AuditEvent
from trustgate.schemas.common import TrustLevel
from trustgate.schemas.device import (
    BehavioralPattern,
    DeviceContext,
    DeviceFingerprint,
    DeviceRegistrationResult,
    DeviceRevocationResult,
    DeviceTrustAnalysis,
    DeviceTrustRecord,
    DeviceTrustResult,
    DeviceTrustStatus,
    GeographicContext,
    NetworkContext,
    TrustedDeviceRecord,
)
from trustgate.services.scoring import clamp, dedupe, ensure_utc, haversine_km
from trustgate.services.strategies import PatternComparator

logger = logging.getLogger(__name__)

NEUTRAL = 0.5
NOT_TRUSTED_ERROR = "Device is not trusted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_device_id(fingerprint: DeviceFingerprint) -> str:
    """Stable 32-hex-char id from the fingerprint fields that survive browser restarts."""
    canonical = json.dumps({
        "canvas": fingerprint.canvas,
        "webgl": fingerprint.webgl,
        "audio": fingerprint.audio,
        "screen": fingerprint.screen.model_dump(),
        "timezone": fingerprint.timezone.model_dump(),
        "platform": fingerprint.platform,
        "user_agent": fingerprint.user_agent[:100],
        "language": ",".join(fingerprint.language),
        "hardware": fingerprint.hardware.model_dump() if fingerprint.hardware else None,
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def get_trust_level(score: float, thresholds: Dict[str, float] = None) -> TrustLevel:
    if thresholds is None:
        thresholds = DEVICE_TRUST_CONFIG["trust_thresholds"]
    # Levels line up with requires_mfa (< high) and can_remember (>= medium)
    if score >= thresholds["verified"]:
        return TrustLevel.verified
    if score >= thresholds["high"]:
        return TrustLevel.high
    if score >= thresholds["medium"]:
        return TrustLevel.medium
    return TrustLevel.low


def calculate_risk_score(risk_factors: List[str]) -> float:
    values = DEVICE_TRUST_CONFIG["risk_factors"]
    return round(sum(values.get(factor, 0) for factor in risk_factors), 4)


def analyze_fingerprint_stability(current: DeviceFingerprint, existing: Optional[DeviceTrustRecord]) -> float:
    if existing is None:
        return NEUTRAL
    checks = [
        (current.canvas, existing.canvas_fingerprint, "canvas"),
        (current.webgl, existing.webgl_fingerprint, "webgl"),
        (current.audio, existing.audio_fingerprint, "audio"),
        (current.screen.resolution(), existing.screen_resolution, "screen"),
    ]
    weights = DEVICE_TRUST_CONFIG["fingerprint_checks"]
    score = 0.0
    for current_value, stored_value, name in checks:
        if current_value and stored_value:
            if current_value == stored_value:
                score += weights[name]
        else:
            # unknown on either side earns half credit
            score += weights[name] * 0.5
    return clamp(score, 0.0, 1.0)


def analyze_network_context(network: Optional[NetworkContext]) -> Tuple[float, List[str]]:
    if network is None:
        return NEUTRAL, []
    penalties = DEVICE_TRUST_CONFIG["risk_factors"]
    score = 0.8
    factors = []
    if network.is_vpn:
        factors.append("vpn_usage")
        score *= 1 - penalties["vpn_usage"]
    if network.is_tor:
        factors.append("tor_usage")
        score *= 1 - penalties["tor_usage"]
    if network.is_datacenter:
        factors.append("datacenter_ip")
        score *= 1 - penalties["datacenter_ip"]
    return clamp(score, 0.0, 1.0), factors


class DeviceTrustService:
    def __init__(self, store, comparator: Optional[PatternComparator] = None,
                 clock: Callable[[], datetime] = _utcnow, config: Dict[str, Any] = None):
        self.store = store
        self.comparator = comparator or PatternComparator()
        self.clock = clock
        self.config = config or DEVICE_TRUST_CONFIG

    # ----------------------
    # Sub-analyses
    # ----------------------

    def _behavioral(self, current: Optional[BehavioralPattern], existing: Optional[DeviceTrustRecord]) -> float:
        if current is None:
            return NEUTRAL
        if existing is None or existing.typing_pattern is None:
            return 0.6
        score = 0.8
        if current.typing is not None:
            score *= self.comparator.compare_typing(existing.typing_pattern, current.typing)
        if current.mouse is not None and existing.mouse_movement_pattern is not None:
            score *= self.comparator.compare_mouse(existing.mouse_movement_pattern, current.mouse)
        return clamp(score, 0.1, 1.0)

    async def _geographic(self, user_id: str, device_id: str, current: Optional[GeographicContext],
                          now: datetime) -> Tuple[float, List[str]]:
        if current is None:
            return NEUTRAL, []
        if current.latitude is None or current.longitude is None:
            return NEUTRAL, ["no_location_data"]

        history = self.config["geo_history"]
        thresholds = self.config["geo_thresholds_km"]
        try:
            sessions = await self.store.get_recent_sessions(
                user_id, device_id, now - timedelta(days=history["days"]), history["limit"] * 5
            )
        except ExternalFetchError as e:
            logger.warning(f"Session history unavailable for device {device_id}: {e}")
            return NEUTRAL, []
        located = [s for s in sessions if s.latitude is not None and s.longitude is not None][:history["limit"]]

        score = 0.8
        factors = []
        if located:
            distances = [haversine_km(current.latitude, current.longitude, s.latitude, s.longitude) for s in located]
            avg_distance = sum(distances) / len(distances)
            if max(distances) > thresholds["suspicious"]:
                factors.append("rapid_location_change")
                score *= 0.3
            elif avg_distance > thresholds["same_country"]:
                factors.append("inconsistent_location")
                score *= 0.6
            elif avg_distance > thresholds["same_region"]:
                factors.append("new_region")
                score *= 0.8

            countries = {s.country_code for s in located if s.country_code}
            if len(countries) > history["max_countries"]:
                factors.append("multiple_countries")
                score *= 0.5
        return clamp(score, 0.0, 1.0), factors

    async def _temporal(self, user_id: str, device_id: str, now: datetime) -> Tuple[float, List[str]]:
        patterns = self.config["time_patterns"]
        try:
            sessions = await self.store.get_recent_sessions(
                user_id, device_id, now - timedelta(days=patterns["window_days"]), patterns["limit"]
            )
        except ExternalFetchError as e:
            logger.warning(f"Session history unavailable for device {device_id}: {e}")
            return 0.8, []

        score = 0.8
        factors = []
        if len(sessions) >= patterns["min_sessions"]:
            hours = [ensure_utc(s.created_at).hour for s in sessions]
            mean_hour = sum(hours) / len(hours)
            difference = abs(ensure_utc(now).hour - mean_hour)
            if difference > patterns["suspicious_variance_hours"]:
                factors.append("unusual_time")
                score *= 1 - self.config["risk_factors"]["unusual_time"]
            elif difference > patterns["normal_variance_hours"]:
                score *= 0.9
        return score, factors

    async def _success_rate(self, user_id: str, device_id: str, now: datetime) -> float:
        window = self.config["device_lifecycle"]["success_rate_window_days"]
        try:
            stats = await self.store.get_mfa_verification_attempts(user_id, device_id, now - timedelta(days=window))
        except ExternalFetchError as e:
            logger.warning(f"MFA history unavailable for device {device_id}: {e}")
            return NEUTRAL
        if stats.total == 0:
            return NEUTRAL
        return clamp(stats.successful / stats.total, 0.1, 1.0)

    # ----------------------
    # Public API
    # ----------------------

    async def calculate_trust_score(self, user_id: str, device_id: str, fingerprint: DeviceFingerprint,
                                    context: DeviceContext,
                                    existing_device: Optional[DeviceTrustRecord] = None) -> DeviceTrustResult:
        now = self.clock()
        risk_factors: List[str] = []

        fingerprint_score = analyze_fingerprint_stability(fingerprint, existing_device)
        behavioral_score = self._behavioral(context.behavioral, existing_device)
        geographic_score, geo_factors = await self._geographic(user_id, device_id, context.geographic, now)
        risk_factors.extend(geo_factors)
        network_score, network_factors = analyze_network_context(context.network)
        risk_factors.extend(network_factors)
        temporal_score, temporal_factors = await self._temporal(user_id, device_id, now)
        risk_factors.extend(temporal_factors)
        success_rate = await self._success_rate(user_id, device_id, now)

        weights = self.config["trust_weights"]
        trust_score = clamp(
            fingerprint_score * weights["fingerprint"]
            + behavioral_score * weights["behavioral"]
            + geographic_score * weights["geographic"]
            + network_score * weights["network"]
            + temporal_score * weights["temporal"]
            + success_rate * weights["successful_auth"],
            0.0,
            1.0,
        )
        thresholds = self.config["trust_thresholds"]
        return DeviceTrustResult(
            device_id=device_id,
            trust_score=trust_score,
            trust_level=get_trust_level(trust_score, thresholds),
            risk_factors=dedupe(risk_factors),
            requires_mfa=trust_score < thresholds["high"],
            can_remember=trust_score >= thresholds["medium"],
            analysis=DeviceTrustAnalysis(
                fingerprint=fingerprint_score,
                behavioral=behavioral_score,
                geographic=geographic_score,
                network=network_score,
                temporal=temporal_score,
                success_rate=success_rate,
            ),
        )

    async def register_device(self, user_id: str, fingerprint: Union[DeviceFingerprint, Dict[str, Any]],
                              context: Union[DeviceContext, Dict[str, Any]]) -> DeviceRegistrationResult:
        try:
            fingerprint = DeviceFingerprint.model_validate(fingerprint)
            context = DeviceContext.model_validate(context)
        except SchemaError as e:
            raise ValidationError(f"Invalid device fingerprint or context: {e.errors()[0]['msg']}") from e

        device_id = generate_device_id(fingerprint)
        try:
            existing = await self.store.get_device_trust_record(user_id, device_id)
            trust = await self.calculate_trust_score(user_id, device_id, fingerprint, context, existing)
            now = self.clock()

            behavioral = context.behavioral
            record = DeviceTrustRecord(
                user_id=user_id,
                device_id=device_id,
                canvas_fingerprint=fingerprint.canvas,
                webgl_fingerprint=fingerprint.webgl,
                audio_fingerprint=fingerprint.audio,
                font_fingerprint=",".join(fingerprint.fonts) if fingerprint.fonts else None,
                screen_resolution=fingerprint.screen.resolution(),
                timezone_offset=fingerprint.timezone.offset,
                language_preference=fingerprint.language[0] if fingerprint.language else None,
                platform_details={
                    "platform": fingerprint.platform,
                    "user_agent": context.user_agent or fingerprint.user_agent,
                    "hardware": fingerprint.hardware.model_dump() if fingerprint.hardware else None,
                },
                typing_pattern=(behavioral.typing if behavioral and behavioral.typing else
                                existing.typing_pattern if existing else None),
                mouse_movement_pattern=(behavioral.mouse if behavioral and behavioral.mouse else
                                        existing.mouse_movement_pattern if existing else None),
                trust_score=trust.trust_score,
                risk_flags=trust.risk_factors,
                risk_score=calculate_risk_score(trust.risk_factors),
                created_at=existing.created_at if existing and existing.created_at else now,
                updated_at=now,
            )
            await self.store.upsert_device_trust_record(record)

            if existing is None:
                await self.store.append_audit_event(AuditEvent(
                    event_type="device_registered",
                    event_category="device_trust",
                    user_id=user_id,
                    ip_address=context.ip_address,
                    event_data={"device_id": device_id, "trust_score": trust.trust_score},
                    created_at=now,
                ))

            if trust.trust_score >= self.config["trust_thresholds"]["medium"]:
                expires_at = now + timedelta(days=self.config["device_lifecycle"]["trust_decay_days"])
                await self.store.upsert_trusted_device(user_id, device_id, trust.trust_level, expires_at)

            logger.info(f"Device {device_id} registered for {user_id}: trust={trust.trust_score:.3f} ({trust.trust_level.value})")
            return DeviceRegistrationResult(
                success=True,
                device_id=device_id,
                trust_score=trust.trust_score,
                trust_level=trust.trust_level,
                requires_verification=trust.requires_mfa,
            )
        except Exception as e:
            logger.error(f"Device registration failed for {user_id}: {e}")
            return DeviceRegistrationResult(
                success=False,
                device_id=device_id,
                requires_verification=True,
                error=str(e) or "Registration failed",
            )

    async def get_device_trust_status(self, user_id: str, device_id: str) -> DeviceTrustStatus:
        try:
            device = await self.store.get_device_trust_record(user_id, device_id)
        except Exception as e:
            logger.error(f"Error getting device trust status for {device_id}: {e}")
            return DeviceTrustStatus(
                is_trusted=False,
                trust_level="error",
                trust_score=0.0,
                requires_mfa=True,
                risk_factors=["system_error"],
            )
        if device is None:
            return DeviceTrustStatus(
                is_trusted=False,
                trust_level="unknown",
                trust_score=0.0,
                requires_mfa=True,
                risk_factors=["unregistered_device"],
            )
        thresholds = self.config["trust_thresholds"]
        return DeviceTrustStatus(
            is_trusted=device.trust_score >= thresholds["medium"],
            trust_level=get_trust_level(device.trust_score, thresholds).value,
            trust_score=device.trust_score,
            requires_mfa=device.trust_score < thresholds["high"],
            risk_factors=list(device.risk_flags),
            last_verified=device.updated_at,
        )

    async def get_trusted_devices(self, user_id: str) -> List[TrustedDeviceRecord]:
        try:
            devices = await self.store.list_trusted_devices(user_id)
        except ExternalFetchError as e:
            logger.warning(f"Trusted devices unavailable for {user_id}: {e}")
            return []
        active = [d for d in devices if d.is_active]
        never_used = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(active, key=lambda d: ensure_utc(d.last_used_at) if d.last_used_at else never_used, reverse=True)

    async def revoke_device_trust(self, user_id: str, device_id: str, reason: str = "user_revoked") -> DeviceRevocationResult:
        now = self.clock()
        try:
            revoked = await self.store.deactivate_trusted_device(user_id, device_id, reason, now)
            if not revoked:
                return DeviceRevocationResult(success=False, error=NOT_TRUSTED_ERROR)
            await self.store.append_audit_event(AuditEvent(
                event_type="device_trust_revoked",
                event_category="device_trust",
                user_id=user_id,
                event_data={"device_id": device_id, "reason": reason},
                created_at=now,
            ))
        except ExternalFetchError as e:
            logger.error(f"Error revoking device trust for {device_id}: {e}")
            return DeviceRevocationResult(success=False, error=str(e))
        logger.info(f"Device {device_id} trust revoked for {user_id}: {reason}")
        return DeviceRevocationResult(success=True)
