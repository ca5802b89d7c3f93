"""
Tests for device trust scoring and the trusted device lifecycle.
"""
from datetime import datetime, timedelta, timezone

import pytest

from trustgate.config import DEVICE_TRUST_CONFIG
from trustgate.errors import ValidationError
from trustgate.schemas.common import TrustLevel
from trustgate.schemas.device import (
    DeviceContext,
    DeviceFingerprint,
    DeviceTrustRecord,
    NetworkContext,
    SessionRecord,
    TrustedDeviceRecord,
)
from trustgate.services.device_trust import (
    NOT_TRUSTED_ERROR,
    DeviceTrustService,
    analyze_fingerprint_stability,
    analyze_network_context,
    calculate_risk_score,
    generate_device_id,
    get_trust_level,
)

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)

FINGERPRINT = {
    "canvas": "canvas-abc",
    "webgl": "webgl-def",
    "audio": "audio-123",
    "fonts": ["Arial", "Helvetica"],
    "screen": {"width": 1920, "height": 1080},
    "timezone": {"offset": -300, "name": "America/New_York"},
    "language": ["en-US", "en"],
    "platform": "MacIntel",
    "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)",
}

FULL_CONTEXT = {
    "ip_address": "203.0.113.7",
    "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)",
    "geographic": {"latitude": 40.71, "longitude": -74.0, "country": "US"},
    "network": {"ip_address": "203.0.113.7", "is_residential": True},
    "behavioral": {"typing": {"avg_speed": 210.0, "variance": 12.0}},
}


def _fingerprint(**overrides) -> DeviceFingerprint:
    return DeviceFingerprint.model_validate({**FINGERPRINT, **overrides})


def _session(hours_ago: float, lat=None, lon=None, country=None, device_id=None) -> SessionRecord:
    return SessionRecord(
        user_id="user-1",
        device_id=device_id,
        created_at=NOW - timedelta(hours=hours_ago),
        latitude=lat,
        longitude=lon,
        country_code=country,
    )


class TestDeviceIdentity:
    """Device ids and the pure analyses."""

    def test_device_id_is_stable_32_hex(self):
        """Test device id is stable 32 hex."""
        first = generate_device_id(_fingerprint())
        assert first == generate_device_id(_fingerprint())
        assert len(first) == 32
        int(first, 16)

    def test_device_id_changes_with_canvas(self):
        """Test device id changes with canvas."""
        assert generate_device_id(_fingerprint()) != generate_device_id(_fingerprint(canvas="other"))

    def test_device_id_ignores_fonts(self):
        """Test device id ignores fonts."""
        assert generate_device_id(_fingerprint()) == generate_device_id(_fingerprint(fonts=["Comic Sans"]))

    @pytest.mark.parametrize("score,expected", [
        (0.0, TrustLevel.low), (0.3, TrustLevel.low), (0.5, TrustLevel.low),
        (0.6, TrustLevel.medium), (0.7, TrustLevel.medium), (0.79, TrustLevel.medium),
        (0.8, TrustLevel.high), (0.85, TrustLevel.high), (0.94, TrustLevel.high),
        (0.95, TrustLevel.verified), (1.0, TrustLevel.verified),
    ])
    def test_trust_levels(self, score, expected):
        """Scores bucket by the medium, high and verified thresholds."""
        assert get_trust_level(score) == expected

    @pytest.mark.parametrize("score", [0.1, 0.5, 0.6, 0.7, 0.8, 0.9, 0.97])
    def test_level_agrees_with_mfa_and_remember_flags(self, score):
        """A high or verified level never requires MFA; medium and above can be remembered."""
        thresholds = DEVICE_TRUST_CONFIG["trust_thresholds"]
        level = get_trust_level(score)

        assert (level in (TrustLevel.high, TrustLevel.verified)) == (score >= thresholds["high"])
        assert (level != TrustLevel.low) == (score >= thresholds["medium"])

    def test_new_device_fingerprint_is_neutral(self):
        """Test new device fingerprint is neutral."""
        assert analyze_fingerprint_stability(_fingerprint(), None) == 0.5

    def test_matching_fingerprint_scores_full(self):
        """Test matching fingerprint scores full."""
        existing = DeviceTrustRecord(
            user_id="user-1", device_id="d", canvas_fingerprint="canvas-abc",
            webgl_fingerprint="webgl-def", audio_fingerprint="audio-123", screen_resolution="1920x1080",
        )
        assert analyze_fingerprint_stability(_fingerprint(), existing) == pytest.approx(1.0)

    def test_unknown_values_earn_half_credit(self):
        """A changed canvas earns nothing, a missing audio value earns half."""
        existing = DeviceTrustRecord(
            user_id="user-1", device_id="d", canvas_fingerprint="old-canvas",
            webgl_fingerprint="webgl-def", audio_fingerprint=None, screen_resolution="1920x1080",
        )
        # webgl 0.3 + audio 0.1 + screen 0.2
        assert analyze_fingerprint_stability(_fingerprint(), existing) == pytest.approx(0.6)

    def test_network_penalties_compound(self):
        """Test network penalties compound."""
        score, factors = analyze_network_context(NetworkContext(ip_address="x", is_vpn=True, is_datacenter=True))
        assert score == pytest.approx(0.8 * 0.7 * 0.6)
        assert factors == ["vpn_usage", "datacenter_ip"]

    def test_tor_is_heavily_penalised(self):
        """Test Tor is heavily penalised."""
        score, factors = analyze_network_context(NetworkContext(ip_address="x", is_tor=True))
        assert score == pytest.approx(0.16)
        assert factors == ["tor_usage"]

    def test_missing_network_is_neutral(self):
        """Test missing network is neutral."""
        assert analyze_network_context(None) == (0.5, [])

    def test_risk_score_sums_known_factors(self):
        """Test risk score sums known factors."""
        assert calculate_risk_score(["vpn_usage", "unusual_time", "made_up"]) == pytest.approx(0.5)


class TestTrustScore:
    """Combined trust scoring against the in-memory store."""

    async def test_bare_context_scores_neutral(self, store, clock):
        """Test bare context scores neutral."""
        service = DeviceTrustService(store, clock=clock)

        result = await service.calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext(ip_address="203.0.113.7"),
        )

        # 0.5 everywhere except temporal 0.8
        assert result.trust_score == pytest.approx(0.505)
        assert result.trust_level == TrustLevel.low
        assert result.requires_mfa is True
        assert result.can_remember is False
        assert result.risk_factors == []

    async def test_same_inputs_same_score(self, store, clock):
        """Test same inputs same score."""
        service = DeviceTrustService(store, clock=clock)
        context = DeviceContext.model_validate(FULL_CONTEXT)

        first = await service.calculate_trust_score("user-1", "device-1", _fingerprint(), context)
        second = await service.calculate_trust_score("user-1", "device-1", _fingerprint(), context)

        assert first == second

    async def test_rapid_location_change(self, store, clock):
        """A recent session on another continent is flagged."""
        store.add_session(_session(2, lat=35.68, lon=139.69, country="JP", device_id="device-1"))
        service = DeviceTrustService(store, clock=clock)

        result = await service.calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext.model_validate(FULL_CONTEXT),
        )

        assert "rapid_location_change" in result.risk_factors
        assert result.analysis.geographic == pytest.approx(0.24)

    async def test_nearby_sessions_keep_geographic_base(self, store, clock):
        """Test nearby sessions keep geographic base."""
        store.add_session(_session(2, lat=40.73, lon=-73.99, country="US", device_id="device-1"))
        service = DeviceTrustService(store, clock=clock)

        result = await service.calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext.model_validate(FULL_CONTEXT),
        )

        assert result.analysis.geographic == pytest.approx(0.8)
        assert result.risk_factors == []

    async def test_missing_coordinates(self, store, clock):
        """Test missing coordinates."""
        context = DeviceContext(ip_address="x", geographic={"country": "US"})
        result = await DeviceTrustService(store, clock=clock).calculate_trust_score(
            "user-1", "device-1", _fingerprint(), context,
        )
        assert result.analysis.geographic == 0.5
        assert "no_location_data" in result.risk_factors

    async def test_session_fetch_failure_is_neutral(self, store, clock):
        """Test session fetch failure is neutral."""
        store.failing.add("get_recent_sessions")
        result = await DeviceTrustService(store, clock=clock).calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext.model_validate(FULL_CONTEXT),
        )
        assert result.analysis.geographic == 0.5
        assert result.analysis.temporal == 0.8

    async def test_unusual_time(self, store):
        """Sessions clustered around 02:00 make a 20:00 login unusual."""
        evening = datetime(2025, 6, 2, 20, 0, tzinfo=timezone.utc)
        for day in range(4):
            store.add_session(SessionRecord(
                user_id="user-1", device_id="device-1",
                created_at=datetime(2025, 6, 2, 2, 0, tzinfo=timezone.utc) - timedelta(days=day),
            ))
        service = DeviceTrustService(store, clock=lambda: evening)

        result = await service.calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext(ip_address="x"),
        )

        assert "unusual_time" in result.risk_factors
        assert result.analysis.temporal == pytest.approx(0.64)

    async def test_success_rate(self, store, clock):
        """Test success rate."""
        for i in range(4):
            store.add_mfa_attempt("user-1", "device-1", NOW - timedelta(days=1), success=i != 0)
        result = await DeviceTrustService(store, clock=clock).calculate_trust_score(
            "user-1", "device-1", _fingerprint(), DeviceContext(ip_address="x"),
        )
        assert result.analysis.success_rate == pytest.approx(0.75)


class TestDeviceLifecycle:
    """Registration, status, listing and revocation."""

    async def test_first_registration_records_audit_event(self, store, clock):
        """Test first registration records audit event."""
        service = DeviceTrustService(store, clock=clock)

        result = await service.register_device("user-1", FINGERPRINT, {"ip_address": "203.0.113.7"})

        assert result.success is True
        assert result.device_id == generate_device_id(_fingerprint())
        assert result.trust_level == TrustLevel.low
        assert result.requires_verification is True
        assert [e.event_type for e in store.audit_events] == ["device_registered"]
        assert store.trusted_devices == {}

    async def test_returning_device_becomes_trusted(self, store, clock):
        """A second visit with a stable fingerprint and good MFA history is remembered."""
        service = DeviceTrustService(store, clock=clock)
        device_id = generate_device_id(_fingerprint())
        for _ in range(4):
            store.add_mfa_attempt("user-1", device_id, NOW - timedelta(days=2), success=True)

        await service.register_device("user-1", FINGERPRINT, FULL_CONTEXT)
        result = await service.register_device("user-1", FINGERPRINT, FULL_CONTEXT)

        # 1.0*.25 + .64*.2 + .8*.15 + .8*.15 + .8*.1 + 1.0*.1
        assert result.trust_score == pytest.approx(0.798)
        assert result.trust_level == TrustLevel.medium
        assert len(store.audit_events) == 1
        trusted = await service.get_trusted_devices("user-1")
        assert [d.device_id for d in trusted] == [device_id]
        assert trusted[0].expires_at == NOW + timedelta(days=30)

    async def test_invalid_fingerprint_raises(self, store, clock):
        """Test invalid fingerprint raises."""
        bad = {**FINGERPRINT, "screen": {"width": 0, "height": 1080}}
        with pytest.raises(ValidationError):
            await DeviceTrustService(store, clock=clock).register_device("user-1", bad, {"ip_address": "x"})

    async def test_store_failure_reports_unsuccessful(self, store, clock):
        """Test store failure reports unsuccessful."""
        store.failing.add("upsert_device_trust_record")
        result = await DeviceTrustService(store, clock=clock).register_device(
            "user-1", FINGERPRINT, {"ip_address": "x"},
        )
        assert result.success is False
        assert result.requires_verification is True
        assert result.error

    async def test_status_of_unknown_device(self, store, clock):
        """Test status of unknown device."""
        status = await DeviceTrustService(store, clock=clock).get_device_trust_status("user-1", "nope")
        assert status.trust_level == "unknown"
        assert status.risk_factors == ["unregistered_device"]
        assert status.requires_mfa is True

    async def test_status_on_store_error(self, store, clock):
        """Test status on store error."""
        store.failing.add("get_device_trust_record")
        status = await DeviceTrustService(store, clock=clock).get_device_trust_status("user-1", "d")
        assert status.trust_level == "error"
        assert status.risk_factors == ["system_error"]

    async def test_status_of_registered_device(self, store, clock):
        """Test status of registered device."""
        service = DeviceTrustService(store, clock=clock)
        registered = await service.register_device("user-1", FINGERPRINT, {"ip_address": "x"})

        status = await service.get_device_trust_status("user-1", registered.device_id)

        assert status.trust_score == pytest.approx(registered.trust_score)
        assert status.trust_level == "low"
        assert status.is_trusted is False
        assert status.last_verified == NOW

    async def test_trusted_devices_most_recent_first(self, store, clock):
        """Test trusted devices most recent first."""
        for device_id, hours_ago, active in (("old", 48, True), ("new", 1, True), ("revoked", 0, False)):
            store.add_trusted_device(TrustedDeviceRecord(
                user_id="user-1", device_id=device_id, trust_level=TrustLevel.high,
                last_used_at=NOW - timedelta(hours=hours_ago), expires_at=NOW + timedelta(days=10),
                is_active=active,
            ))
        store.add_trusted_device(TrustedDeviceRecord(
            user_id="user-1", device_id="never-used", trust_level=TrustLevel.medium,
            expires_at=NOW + timedelta(days=10),
        ))

        devices = await DeviceTrustService(store, clock=clock).get_trusted_devices("user-1")

        assert [d.device_id for d in devices] == ["new", "old", "never-used"]

    async def test_revoke_trusted_device(self, store, clock):
        """Test revoke trusted device."""
        store.add_trusted_device(TrustedDeviceRecord(
            user_id="user-1", device_id="d1", trust_level=TrustLevel.high, expires_at=NOW + timedelta(days=10),
        ))
        service = DeviceTrustService(store, clock=clock)

        result = await service.revoke_device_trust("user-1", "d1", reason="lost_device")

        assert result.success is True
        record = store.trusted_devices[("user-1", "d1")]
        assert record.is_active is False
        assert record.revoke_reason == "lost_device"
        assert record.revoked_at == NOW
        assert store.audit_events[-1].event_type == "device_trust_revoked"
        assert await service.get_trusted_devices("user-1") == []

    async def test_revoke_untrusted_device(self, store, clock):
        """Test revoke untrusted device."""
        result = await DeviceTrustService(store, clock=clock).revoke_device_trust("user-1", "nope")
        assert result.success is False
        assert result.error == NOT_TRUSTED_ERROR
        assert store.audit_events == []
