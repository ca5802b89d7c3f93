"""
Tests for the security analytics engine.
"""
import asyncio
import copy
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from trustgate.config import ANALYTICS_CONFIG
from trustgate.errors import ExternalServiceDegraded
from trustgate.schemas.analytics import EventDevice, GeoLocation, SecurityEvent, ThreatIntelligence
from trustgate.schemas.common import SecurityEventType, Severity, ViolationSeverity
from trustgate.schemas.device import SessionRecord
from trustgate.services import alert_service
from trustgate.services.strategies import AnomalyModel, BehaviorModel, PatternDetector, ThreatIntelProvider
from trustgate.services.threat_analytics import (
    SecurityAnalyticsEngine,
    calculate_event_risk_score,
    detect_impossible_travel,
    requires_investigation,
)

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)

NEW_YORK = GeoLocation(country="US", city="New York", latitude=40.71, longitude=-74.01)
BOSTON = GeoLocation(country="US", city="Boston", latitude=42.36, longitude=-71.06)
LONDON = GeoLocation(country="GB", city="London", latitude=51.51, longitude=-0.13)

ATTACKER_IP = "198.51.100.9"


class FixedIntel(ThreatIntelProvider):
    def __init__(self, reputation):
        self.reputation = reputation

    async def lookup(self, ip_address):
        return ThreatIntelligence(ip_reputation=self.reputation, sources=["test_feed"])


class SlowIntel(ThreatIntelProvider):
    async def lookup(self, ip_address):
        await asyncio.sleep(1)


class DegradedIntel(ThreatIntelProvider):
    async def lookup(self, ip_address):
        raise ExternalServiceDegraded("threat_feed")


class FixedBehavior(BehaviorModel):
    def __init__(self, score):
        self.score = score

    async def anomaly_score(self, event):
        return self.score


class FixedModel(AnomalyModel):
    def __init__(self, name, score):
        self.name = name
        self.score = score

    async def predict(self, event):
        return self.score


class ExplodingDetector(PatternDetector):
    async def detect(self, event):
        raise RuntimeError("model offline")


def _config(**processing):
    config = copy.deepcopy(ANALYTICS_CONFIG)
    config["processing"].update(processing)
    return config


def _engine(store, **kwargs) -> SecurityAnalyticsEngine:
    kwargs.setdefault("geo_lookup", lambda ip: None)
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("alerter", MagicMock())
    return SecurityAnalyticsEngine(store, **kwargs)


def _event(type_="login_failed", severity="high", **overrides):
    payload = {"type": type_, "severity": severity, "user_id": "user-1", "ip_address": "203.0.113.7"}
    payload.update(overrides)
    return payload


def _login(event_id, location, at, user_id="user-1") -> SecurityEvent:
    return SecurityEvent(
        id=event_id,
        type=SecurityEventType.login_success,
        severity=Severity.low,
        user_id=user_id,
        geo_location=location,
        timestamp=at,
    )


def _seed_failed_logins(store, count):
    for i in range(count):
        store.add_security_event(SecurityEvent(
            id=f"failed-{i}",
            type=SecurityEventType.login_failed,
            severity=Severity.medium,
            user_id="user-1",
            ip_address=ATTACKER_IP,
            timestamp=NOW - timedelta(seconds=10 * i),
        ))


class TestEventScoring:
    """Risk score and investigation rules."""

    def test_risk_score_adds_severity_and_reputation(self):
        """Test risk score adds severity and reputation."""
        event = SecurityEvent(
            id="e", type=SecurityEventType.brute_force_attack, severity=Severity.medium, timestamp=NOW,
            threat_intelligence=ThreatIntelligence(ip_reputation=15),
        )
        assert calculate_event_risk_score(event) == 95

    def test_risk_score_is_capped(self):
        """Test risk score is capped."""
        event = SecurityEvent(id="e", type=SecurityEventType.data_exfiltration_attempt,
                              severity=Severity.critical, timestamp=NOW)
        assert calculate_event_risk_score(event) == 100

    def test_unlisted_type_uses_default(self):
        """Test unlisted type uses default."""
        event = SecurityEvent(id="e", type=SecurityEventType.login_failed, severity=Severity.low, timestamp=NOW)
        assert calculate_event_risk_score(event) == 20

    @pytest.mark.parametrize("type_,severity,risk,expected", [
        (SecurityEventType.login_failed, Severity.low, 20, False),
        (SecurityEventType.login_failed, Severity.critical, 20, True),
        (SecurityEventType.login_failed, Severity.low, 70, True),
        (SecurityEventType.account_takeover_attempt, Severity.low, 0, True),
    ])
    def test_requires_investigation(self, type_, severity, risk, expected):
        """Test requires investigation."""
        event = SecurityEvent(id="e", type=type_, severity=severity, risk_score=risk, timestamp=NOW)
        assert requires_investigation(event) is expected


class TestEnrichment:
    """Event enrichment."""

    async def test_defaults_are_filled(self, store):
        """Test defaults are filled."""
        event = await _engine(store).enrich_security_event({"type": "login_failed"})

        assert event.id.startswith("event_")
        assert event.timestamp == NOW
        assert event.severity == Severity.medium
        assert event.ip_address == "unknown"
        assert event.user_agent == "unknown"
        assert event.geo_location is None
        assert event.risk_score == 30
        assert event.requires_investigation is False

    async def test_geo_lookup_and_threat_intel(self, store):
        """Test geo lookup and threat intel."""
        engine = _engine(store, geo_lookup=lambda ip: LONDON, threat_intel=FixedIntel(15))

        event = await engine.enrich_security_event(_event(severity="low"))

        assert event.geo_location == LONDON
        assert event.threat_intelligence.sources == ["test_feed"]
        assert event.risk_score == 35

    async def test_supplied_location_is_kept(self, store):
        """Test supplied location is kept."""
        engine = _engine(store, geo_lookup=lambda ip: LONDON)
        event = await engine.enrich_security_event(_event(geo_location=NEW_YORK.model_dump()))
        assert event.geo_location == NEW_YORK

    async def test_slow_threat_intel_times_out(self, store):
        """Test slow threat intel times out."""
        engine = _engine(store, threat_intel=SlowIntel(), external_timeout=0.01)
        event = await engine.enrich_security_event(_event())
        assert event.threat_intelligence is None

    async def test_degraded_threat_intel_is_ignored(self, store):
        """Test degraded threat intel is ignored."""
        event = await _engine(store, threat_intel=DegradedIntel()).enrich_security_event(_event())
        assert event.threat_intelligence is None

    async def test_prediction_model(self, store):
        """Test prediction model."""
        event = await _engine(store, prediction_model=FixedModel("clf", 0.4)).enrich_security_event(_event())
        assert event.ml_predictions.anomaly_score == 0.4

    async def test_compliance_data(self, store):
        """Test compliance data."""
        event = await _engine(store).enrich_security_event(_event("data_exfiltration_attempt"))

        assert event.compliance_data.pii_accessed is True
        assert event.compliance_data.gdpr_relevant is True
        assert event.compliance_data.audit_required is True
        assert event.compliance_data.retention_days == 1095
        assert event.requires_investigation is True


class TestImpossibleTravel:
    """Travel speed between successive logins."""

    @pytest.mark.parametrize("previous,gap,fires", [
        (LONDON, timedelta(hours=1), True),
        (BOSTON, timedelta(hours=1), False),
        (LONDON, timedelta(hours=13), False),
        (NEW_YORK, timedelta(0), False),
        (LONDON, timedelta(0), True),
    ])
    def test_travel_detection(self, previous, gap, fires):
        """Test travel detection."""
        event = _login("current", NEW_YORK, NOW)
        detection = detect_impossible_travel(event, [_login("previous", previous, NOW - gap)])
        assert (detection is not None) is fires

    def test_detection_details(self):
        """Test detection details."""
        event = _login("current", NEW_YORK, NOW)

        detection = detect_impossible_travel(event, [_login("previous", LONDON, NOW - timedelta(hours=1))])

        assert detection.type == "impossible_travel"
        assert detection.severity == Severity.critical
        assert detection.automatic_response is True
        assert detection.confidence == 0.99
        assert detection.affected_entities == ["user-1"]
        assert detection.evidence["previous_event_id"] == "previous"
        assert 5000 < detection.evidence["distance_km"] < 6000

    def test_simultaneous_logins_have_infinite_speed(self):
        """Test simultaneous logins have infinite speed."""
        event = _login("current", NEW_YORK, NOW)
        detection = detect_impossible_travel(event, [_login("previous", LONDON, NOW)])
        assert detection.evidence["speed_kmh"] is None

    def test_event_is_not_compared_with_itself(self):
        """Test event is not compared with itself."""
        event = _login("current", NEW_YORK, NOW)
        assert detect_impossible_travel(event, [event]) is None

    def test_event_without_coordinates(self):
        """Test event without coordinates."""
        event = _login("current", GeoLocation(country="US"), NOW)
        assert detect_impossible_travel(event, [_login("previous", LONDON, NOW)]) is None


class TestThreatDetection:
    """Detectors run against live events."""

    async def test_impossible_travel_triggers_automatic_response(self, store):
        """Test impossible travel triggers automatic response."""
        store.add_security_event(_login("prev", LONDON, NOW - timedelta(hours=1)))
        alerter = MagicMock()
        engine = _engine(store, alerter=alerter)

        result = await engine.process_security_event(_event(
            "suspicious_login_pattern", geo_location=NEW_YORK.model_dump(),
        ))

        assert [t.type for t in result.threat_detections] == ["impossible_travel"]
        alerter.assert_called_once()
        name, details, severity, context = alerter.call_args[0]
        assert name == "threat_impossible_travel"
        assert severity == "critical"
        assert context["event_id"] == result.event_id

    async def test_brute_force_at_threshold(self, store):
        """Test brute force at threshold."""
        _seed_failed_logins(store, 10)

        result = await _engine(store).process_security_event(_event(ip_address=ATTACKER_IP))

        threat = result.threat_detections[0]
        assert threat.type == "brute_force"
        assert threat.severity == Severity.high
        assert threat.confidence == pytest.approx(0.7)
        assert threat.automatic_response is False
        assert threat.affected_entities == ["user-1", ATTACKER_IP]

    async def test_sustained_brute_force_is_automatic(self, store):
        """Test sustained brute force is automatic."""
        _seed_failed_logins(store, 20)
        alerter = MagicMock()

        result = await _engine(store, alerter=alerter).process_security_event(_event(ip_address=ATTACKER_IP))

        assert result.threat_detections[0].automatic_response is True
        assert alerter.call_args[0][0] == "threat_brute_force"

    async def test_few_failures_are_not_brute_force(self, store):
        """Test few failures are not brute force."""
        _seed_failed_logins(store, 9)
        result = await _engine(store).process_security_event(_event(ip_address=ATTACKER_IP))
        assert result.threat_detections == []

    async def test_unknown_risky_device(self, store):
        """Test unknown risky device."""
        result = await _engine(store).process_security_event(_event(
            "suspicious_login_pattern", device={"id": "dev-x", "risk_score": 0.93},
        ))

        threat = result.threat_detections[0]
        assert threat.type == "unknown_device"
        assert threat.severity == Severity.high
        assert threat.automatic_response is False
        assert threat.affected_entities == ["user-1", "dev-x"]

    async def test_known_device_is_not_flagged(self, store):
        """Test known device is not flagged."""
        store.add_session(SessionRecord(user_id="user-1", device_id="dev-x", created_at=NOW - timedelta(days=1)))
        result = await _engine(store).process_security_event(_event(
            "suspicious_login_pattern", device={"id": "dev-x", "risk_score": 0.93},
        ))
        assert result.threat_detections == []

    @pytest.mark.parametrize("score,severity,automatic", [
        (0.9, Severity.high, False),
        (0.97, Severity.critical, False),
        (0.99, Severity.critical, True),
    ])
    async def test_behavioral_anomaly(self, store, score, severity, automatic):
        """Test behavioral anomaly."""
        engine = _engine(store, behavior_model=FixedBehavior(score))

        event = await engine.enrich_security_event(_event())
        threat = await engine.detect_behavioral_anomaly(event)

        assert threat.type == "behavioral_anomaly"
        assert threat.severity == severity
        assert threat.automatic_response is automatic

    async def test_behavioral_score_below_threshold(self, store):
        """Test behavioral score below threshold."""
        engine = _engine(store, behavior_model=FixedBehavior(0.85))
        event = await engine.enrich_security_event(_event())
        assert await engine.detect_behavioral_anomaly(event) is None

    async def test_ml_anomaly_models(self, store):
        """Test ML anomaly models."""
        engine = _engine(store, anomaly_models=[FixedModel("iforest", 0.9), FixedModel("lof", 0.5)])

        event = await engine.enrich_security_event(_event())
        detections = await engine.run_ml_anomaly_detection(event)

        assert [d.type for d in detections] == ["ml_anomaly_iforest"]
        assert detections[0].severity == Severity.medium
        assert detections[0].automatic_response is False

    async def test_failing_detectors_are_skipped(self, store):
        """A broken detector or store call drops only that detector's finding."""
        _seed_failed_logins(store, 10)
        store.failing.update({"get_recent_security_events", "get_known_device_ids"})
        engine = _engine(store, credential_stuffing=ExplodingDetector())

        result = await engine.process_security_event(_event(
            ip_address=ATTACKER_IP, geo_location=NEW_YORK.model_dump(), device={"id": "dev-x", "risk_score": 0.99},
        ))

        assert [t.type for t in result.threat_detections] == ["brute_force"]


class TestCompliance:
    """Compliance rule evaluation."""

    async def test_suspicious_admin_action_is_sox_violation(self, store):
        """Test suspicious admin action is SOX violation."""
        result = await _engine(store).process_security_event(_event("admin_action_suspicious"))

        assert [(v.regulation, v.severity) for v in result.compliance_violations] == [("SOX", ViolationSeverity.major)]
        assert result.compliance_violations[0].deadline == NOW + timedelta(days=7)
        assert store.compliance_violations == result.compliance_violations

    async def test_privilege_escalation_is_critical(self, store):
        """Test privilege escalation is critical."""
        result = await _engine(store).process_security_event(_event("privilege_escalation_attempt"))
        assert result.compliance_violations[0].severity == ViolationSeverity.critical

    async def test_exfiltration_violates_gdpr_and_pci(self, store):
        """Test exfiltration violates GDPR and PCI."""
        result = await _engine(store).process_security_event(_event("data_exfiltration_attempt", severity="critical"))
        assert {v.regulation for v in result.compliance_violations} == {"GDPR", "PCI"}

    async def test_audited_pii_access_is_not_gdpr_violation(self, store):
        """Test audited PII access is not GDPR violation."""
        result = await _engine(store).process_security_event(_event(
            "data_exfiltration_attempt", evidence={"audit_trail": "ticket-42"},
        ))
        assert [v.regulation for v in result.compliance_violations] == ["PCI"]

    async def test_store_failure_returns_no_violations(self, store):
        """Test store failure returns no violations."""
        store.failing.add("append_compliance_violations")
        result = await _engine(store).process_security_event(_event("admin_action_suspicious"))
        assert result.compliance_violations == []

    async def test_disabled_regulations(self, store):
        """Test disabled regulations."""
        config = copy.deepcopy(ANALYTICS_CONFIG)
        config["compliance"]["sox"]["enabled"] = False
        result = await _engine(store, config=config).process_security_event(_event("admin_action_suspicious"))
        assert result.compliance_violations == []


class TestProcessing:
    """Immediate analysis, queueing and batches."""

    async def test_low_severity_is_queued(self, store):
        """Test low severity is queued."""
        engine = _engine(store)

        result = await engine.process_security_event(_event("admin_action_suspicious", severity="medium"))

        assert result.queued is True
        assert result.compliance_violations == []
        assert len(engine.queue) == 1
        assert store.security_events[-1].id == result.event_id

    async def test_queue_drops_oldest_when_full(self, store):
        """Test queue drops oldest when full."""
        engine = _engine(store, config=_config(queue_max_size=2, batch_size=100))

        for i in range(3):
            await engine.process_security_event(_event(severity="low", id=f"evt-{i}"))

        assert [e.id for e in engine.queue] == ["evt-1", "evt-2"]

    async def test_full_batch_is_processed_inline(self, store):
        """Test full batch is processed inline."""
        engine = _engine(store, config=_config(batch_size=2))

        await engine.process_security_event(_event("admin_action_suspicious", severity="low"))
        await engine.process_security_event(_event("admin_action_suspicious", severity="low"))

        assert len(engine.queue) == 0
        assert len(store.compliance_violations) == 2

    async def test_process_batch(self, store):
        """Test process batch."""
        engine = _engine(store)
        for _ in range(3):
            await engine.process_security_event(_event("admin_action_suspicious", severity="medium"))

        summary = await engine.process_batch()

        assert summary == {"processed": 3, "threats": 0, "violations": 3}
        assert await engine.process_batch() == {"processed": 0, "threats": 0, "violations": 0}

    async def test_persist_failure_keeps_event_id(self, store):
        """Test persist failure keeps event id."""
        store.failing.add("append_security_event")
        result = await _engine(store).process_security_event(_event(id="evt-keep"))
        assert result.event_id == "evt-keep"

    async def test_default_alerter_records_and_dispatches(self, store, mock_alert_dispatch):
        """Test default alerter records and dispatches."""
        store.add_security_event(_login("prev", LONDON, NOW - timedelta(hours=1)))
        engine = SecurityAnalyticsEngine(store, geo_lookup=lambda ip: None, clock=lambda: NOW)

        await engine.process_security_event(_event("suspicious_login_pattern", geo_location=NEW_YORK.model_dump()))

        assert alert_service.get_alerts()[-1]["event_type"] == "threat_impossible_travel"
        mock_alert_dispatch.assert_called_once()


class TestMetrics:
    """Rolling security metrics."""

    async def test_snapshot_counts(self, store):
        """Test snapshot counts."""
        _seed_failed_logins(store, 10)
        engine = _engine(store, behavior_model=FixedBehavior(0.9))

        await engine.process_security_event(_event(ip_address=ATTACKER_IP))
        await engine.process_security_event(_event("admin_action_suspicious"))
        await engine.process_security_event(_event(severity="low"))
        metrics = engine.generate_security_metrics()

        assert metrics.timestamp == NOW
        assert metrics.events_processed == 3
        # brute force plus a behavioural anomaly per analysed event
        assert metrics.active_threats == 3
        assert metrics.anomalies_detected == 2
        assert metrics.compliance_score == 95
        assert metrics.threat_detection_accuracy is None
        assert metrics.system_health.queue_depth == 1
        assert metrics.system_health.alerting_system == "healthy"
        assert metrics.average_response_time_ms >= 0

    async def test_old_activity_falls_out_of_window(self, store):
        """Test old activity falls out of window."""
        clock = {"now": NOW}
        engine = _engine(store, clock=lambda: clock["now"], behavior_model=FixedBehavior(0.9))
        await engine.process_security_event(_event())

        clock["now"] = NOW + timedelta(hours=2)
        metrics = engine.generate_security_metrics()

        assert metrics.events_processed == 0
        assert metrics.active_threats == 0

    async def test_old_violations_stop_counting(self, store):
        """Compliance score recovers once violations leave the metrics window."""
        clock = {"now": NOW}
        engine = _engine(store, clock=lambda: clock["now"], config=_config(batch_size=100, queue_max_size=100))
        for _ in range(20):
            await engine.process_security_event(_event("admin_action_suspicious"))
        assert engine.generate_security_metrics().compliance_score == 0

        clock["now"] = NOW + timedelta(days=30)
        metrics = engine.generate_security_metrics()

        assert metrics.events_processed == 0
        assert metrics.compliance_score == 100

    @pytest.mark.parametrize("queued,health", [(8, "healthy"), (9, "degraded"), (10, "critical")])
    async def test_alerting_health_tracks_queue_depth(self, store, queued, health):
        """Test alerting health tracks queue depth."""
        engine = _engine(store, config=_config(queue_max_size=10, batch_size=100))
        for _ in range(queued):
            await engine.process_security_event(_event(severity="low"))

        assert engine.generate_security_metrics().system_health.alerting_system == health
