"""
Security event analytics: enrichment, threat detection, compliance checks
and rolling metrics.

High and critical events are analysed as they arrive. Everything else goes
to a bounded in-process queue that is drained in batches, either inline
when a full batch has accumulated or by the Celery beat task in worker
deployments.
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from trustgate.config import (
    ANALYTICS_CONFIG,
    EVENT_TYPE_BASE_SCORES,
    EVENT_TYPE_DEFAULT_SCORE,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    INVESTIGATION_EVENT_TYPES,
    SEVERITY_MODIFIERS,
)
from trustgate.errors import ExternalFetchError, ExternalServiceDegraded
from trustgate.schemas.analytics import (
    ComplianceData,
    ComplianceViolation,
    MLPrediction,
    ProcessingResult,
    SecurityEvent,
    SecurityEventIn,
    SecurityMetricsSnapshot,
    SystemHealth,
    ThreatDetection,
)
from trustgate.schemas.common import SecurityEventType, Severity
from trustgate.services import alert_service
from trustgate.services.geoip import lookup_location
from trustgate.services.scoring import clamp, ensure_utc, haversine_km
from trustgate.services.strategies import (
    AnomalyModel,
    BehaviorModel,
    ComplianceRuleSet,
    NullBehaviorModel,
    NullPatternDetector,
    NullThreatIntelProvider,
    PatternDetector,
    ThreatIntelProvider,
    default_rule_sets,
)

logger = logging.getLogger(__name__)

_IMMEDIATE = (Severity.critical, Severity.high)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_event_risk_score(event: SecurityEvent) -> float:
    score = EVENT_TYPE_BASE_SCORES.get(event.type.value, EVENT_TYPE_DEFAULT_SCORE)
    score += SEVERITY_MODIFIERS[event.severity.value]
    if event.threat_intelligence is not None:
        score += event.threat_intelligence.ip_reputation
    return clamp(score, 0, 100)


def requires_investigation(event: SecurityEvent, config=None) -> bool:
    if config is None:
        config = ANALYTICS_CONFIG
    return (
        event.severity == Severity.critical
        or event.risk_score >= config["investigation"]["risk_score_high"]
        or event.type.value in INVESTIGATION_EVENT_TYPES
    )


def detect_impossible_travel(event: SecurityEvent, recent_logins: List[SecurityEvent],
                             config=None) -> Optional[ThreatDetection]:
    """Compare the event location with recent successful logins.

    Fires on the fastest implied journey above the speed limit within the
    time window. A zero time gap over a non-zero distance is infinite speed.
    """
    if config is None:
        config = ANALYTICS_CONFIG["travel"]
    location = event.geo_location
    if location is None or location.latitude is None or location.longitude is None:
        return None

    worst: Optional[Tuple[float, float, float, SecurityEvent]] = None
    for previous in recent_logins:
        if previous.id == event.id:
            continue
        prev_location = previous.geo_location
        if prev_location is None or prev_location.latitude is None or prev_location.longitude is None:
            continue
        distance = haversine_km(location.latitude, location.longitude, prev_location.latitude, prev_location.longitude)
        hours = abs((ensure_utc(event.timestamp) - ensure_utc(previous.timestamp)).total_seconds()) / 3600
        if hours >= config["max_window_hours"]:
            continue
        if hours == 0:
            if distance == 0:
                continue
            speed = float("inf")
        else:
            speed = distance / hours
        if speed > config["max_speed_kmh"] and (worst is None or speed > worst[0]):
            worst = (speed, distance, hours, previous)

    if worst is None:
        return None
    speed, distance, hours, previous = worst
    return ThreatDetection(
        threat_id=f"impossible_travel_{event.id}",
        type="impossible_travel",
        severity=Severity.critical,
        confidence=min(0.99, speed / config["max_speed_kmh"] * 0.8),
        affected_entities=[event.user_id] if event.user_id else [],
        evidence={
            "distance_km": round(distance, 1),
            "time_hours": round(hours, 3),
            "speed_kmh": None if speed == float("inf") else round(speed, 1),
            "previous_event_id": previous.id,
            "previous_location": previous.geo_location.model_dump() if previous.geo_location else None,
            "current_location": location.model_dump(),
        },
        recommended_actions=[
            "Verify user identity immediately",
            "Consider temporary account suspension",
            "Review recent account activity",
        ],
        automatic_response=True,
        estimated_impact={"scope": "single_user", "severity": "high", "business_impact": "account_compromise"},
    )


class SecurityAnalyticsEngine:
    def __init__(
        self,
        store,
        geo_lookup: Callable[[str], Any] = lookup_location,
        threat_intel: Optional[ThreatIntelProvider] = None,
        behavior_model: Optional[BehaviorModel] = None,
        prediction_model: Optional[AnomalyModel] = None,
        anomaly_models: Optional[List[AnomalyModel]] = None,
        credential_stuffing: Optional[PatternDetector] = None,
        privilege_escalation: Optional[PatternDetector] = None,
        rule_sets: Optional[List[ComplianceRuleSet]] = None,
        alerter: Callable[..., Any] = None,
        clock: Callable[[], datetime] = _utcnow,
        config: Dict[str, Any] = None,
        external_timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.config = config or ANALYTICS_CONFIG
        self.geo_lookup = geo_lookup
        self.threat_intel = threat_intel or NullThreatIntelProvider()
        self.behavior_model = behavior_model or NullBehaviorModel()
        self.prediction_model = prediction_model
        self.anomaly_models = anomaly_models or []
        self.credential_stuffing = credential_stuffing or NullPatternDetector()
        self.privilege_escalation = privilege_escalation or NullPatternDetector()
        self.rule_sets = rule_sets if rule_sets is not None else default_rule_sets(self.config["compliance"])
        self.alerter = alerter or alert_service.trigger_alert
        self.clock = clock
        self.external_timeout = external_timeout

        self.queue_max_size = self.config["processing"]["queue_max_size"]
        self.batch_size = self.config["processing"]["batch_size"]
        self.queue: Deque[SecurityEvent] = deque()

        self._processed: Deque[Tuple[datetime, float]] = deque()
        self._threats: Deque[Tuple[datetime, ThreatDetection]] = deque()
        self._violations: Deque[Tuple[datetime, ComplianceViolation]] = deque()

    # ----------------------
    # Enrichment
    # ----------------------

    async def _lookup_threat_intel(self, ip_address: str):
        try:
            return await asyncio.wait_for(self.threat_intel.lookup(ip_address), timeout=self.external_timeout)
        except (asyncio.TimeoutError, ExternalServiceDegraded) as e:
            logger.warning(f"Threat intel unavailable for {ip_address}: {e!r}")
            return None

    async def _predict(self, event: SecurityEvent) -> Optional[MLPrediction]:
        if self.prediction_model is None:
            return None
        try:
            score = await self.prediction_model.predict(event)
        except Exception as e:
            logger.warning(f"ML prediction failed for {event.id}: {e}")
            return None
        if score is None:
            return None
        return MLPrediction(anomaly_score=clamp(score, 0.0, 1.0), confidence=clamp(score, 0.0, 1.0))

    def _compliance_data(self, event: SecurityEvent) -> ComplianceData:
        gdpr = self.config["compliance"].get("gdpr", {})
        return ComplianceData(
            gdpr_relevant=bool(gdpr.get("enabled")) and (event.user_id is not None or event.ip_address != "unknown"),
            pii_accessed=bool(event.evidence.get("pii_accessed"))
            or event.type == SecurityEventType.data_exfiltration_attempt,
            audit_required=event.severity in _IMMEDIATE or event.type.value in INVESTIGATION_EVENT_TYPES,
            retention_days=gdpr.get("retention_days", 0),
        )

    async def enrich_security_event(self, event: Union[SecurityEventIn, SecurityEvent, Dict[str, Any]]) -> SecurityEvent:
        if isinstance(event, dict):
            event = SecurityEventIn.model_validate(event)
        data = event.model_dump()
        data["id"] = data.get("id") or f"event_{uuid4().hex}"
        data["timestamp"] = ensure_utc(data.get("timestamp") or self.clock())
        data["ip_address"] = data.get("ip_address") or "unknown"
        data["user_agent"] = data.get("user_agent") or "unknown"
        enriched = SecurityEvent.model_validate(data)

        if enriched.geo_location is None and enriched.ip_address != "unknown":
            enriched.geo_location = self.geo_lookup(enriched.ip_address)
        if enriched.threat_intelligence is None and enriched.ip_address != "unknown":
            enriched.threat_intelligence = await self._lookup_threat_intel(enriched.ip_address)
        if enriched.ml_predictions is None:
            enriched.ml_predictions = await self._predict(enriched)
        if enriched.compliance_data is None:
            enriched.compliance_data = self._compliance_data(enriched)

        enriched.risk_score = calculate_event_risk_score(enriched)
        enriched.requires_investigation = requires_investigation(enriched, self.config)
        return enriched

    # ----------------------
    # Threat detectors
    # ----------------------

    async def detect_behavioral_anomaly(self, event: SecurityEvent) -> Optional[ThreatDetection]:
        if not event.user_id:
            return None
        score = await self.behavior_model.anomaly_score(event)
        if score is None or score <= self.config["ml"]["anomaly_threshold"]:
            return None
        return ThreatDetection(
            threat_id=f"behavior_anomaly_{event.id}",
            type="behavioral_anomaly",
            severity=Severity.critical if score > 0.95 else Severity.high,
            confidence=score,
            affected_entities=[event.user_id],
            evidence={"anomaly_score": score},
            recommended_actions=[
                "Review user activity patterns",
                "Consider requiring additional authentication",
                "Monitor subsequent activities closely",
            ],
            automatic_response=score > 0.98,
            estimated_impact={"scope": "single_user", "severity": "medium", "business_impact": "potential_account_compromise"},
        )

    async def detect_geographic_anomaly(self, event: SecurityEvent) -> Optional[ThreatDetection]:
        if not event.user_id or event.geo_location is None:
            return None
        travel = self.config["travel"]
        since = ensure_utc(event.timestamp) - timedelta(hours=travel["lookback_hours"])
        recent = await self.store.get_recent_security_events(
            event.user_id, SecurityEventType.login_success, since, travel["lookback_limit"]
        )
        return detect_impossible_travel(event, recent, travel)

    async def detect_device_anomaly(self, event: SecurityEvent) -> Optional[ThreatDetection]:
        if not event.user_id or event.device is None:
            return None
        device_config = self.config["device"]
        known = await self.store.get_known_device_ids(event.user_id, device_config["known_device_limit"])
        if event.device.id in known or event.device.risk_score <= device_config["risk_threshold"]:
            return None
        risk = event.device.risk_score
        return ThreatDetection(
            threat_id=f"device_anomaly_{event.id}",
            type="unknown_device",
            severity=Severity.high if risk > 0.9 else Severity.medium,
            confidence=risk,
            affected_entities=[event.user_id, event.device.id],
            evidence={"device_id": event.device.id, "device_risk_score": risk, "known_devices": len(known)},
            recommended_actions=[
                "Require device verification",
                "Send security notification to user",
            ],
            automatic_response=risk > 0.95,
            estimated_impact={"scope": "single_user", "severity": "medium", "business_impact": "unauthorized_access"},
        )

    async def detect_brute_force(self, event: SecurityEvent) -> Optional[ThreatDetection]:
        if event.type not in (SecurityEventType.login_failed, SecurityEventType.brute_force_attack):
            return None
        rules = self.config["brute_force"]
        since = ensure_utc(event.timestamp) - timedelta(minutes=rules["window_minutes"])
        ip = event.ip_address if event.ip_address != "unknown" else None
        attempts = await self.store.count_failed_logins(ip, event.user_id, since)
        if attempts < rules["attempts"]:
            return None
        return ThreatDetection(
            threat_id=f"brute_force_{event.id}",
            type="brute_force",
            severity=Severity.high,
            confidence=min(0.99, 0.7 + 0.02 * (attempts - rules["attempts"])),
            affected_entities=[e for e in (event.user_id, ip) if e],
            evidence={"failed_attempts": attempts, "window_minutes": rules["window_minutes"]},
            recommended_actions=[
                "Temporarily block source IP",
                "Lock targeted account",
                "Require CAPTCHA on subsequent attempts",
            ],
            automatic_response=attempts >= rules["attempts"] * 2,
            estimated_impact={"scope": "single_user" if event.user_id else "multiple_users", "severity": "high",
                              "business_impact": "credential_compromise"},
        )

    async def detect_threat_patterns(self, event: SecurityEvent) -> List[ThreatDetection]:
        detections = []
        for detector in (self.detect_brute_force, self.credential_stuffing.detect, self.privilege_escalation.detect):
            detection = await self._fail_closed(detector, event)
            if detection is not None:
                detections.append(detection)
        return detections

    async def run_ml_anomaly_detection(self, event: SecurityEvent) -> List[ThreatDetection]:
        detections = []
        threshold = self.config["ml"]["anomaly_threshold"]
        for model in self.anomaly_models:
            score = await self._fail_closed(model.predict, event)
            if score is None or score <= threshold:
                continue
            detections.append(ThreatDetection(
                threat_id=f"ml_{model.name}_{event.id}",
                type=f"ml_anomaly_{model.name}",
                severity=Severity.high if score > 0.95 else Severity.medium,
                confidence=score,
                affected_entities=[event.user_id] if event.user_id else [],
                evidence={"model": model.name, "anomaly_score": score},
                recommended_actions=["Investigate ML-detected anomaly"],
                automatic_response=False,
                estimated_impact={"scope": "unknown", "severity": "medium", "business_impact": "unknown"},
            ))
        return detections

    async def _fail_closed(self, detector, event: SecurityEvent):
        try:
            return await detector(event)
        except Exception as e:
            logger.warning(f"Threat detector {getattr(detector, '__name__', detector)} failed for {event.id}: {e}")
            return None

    async def perform_threat_analysis(self, event: SecurityEvent) -> List[ThreatDetection]:
        threats: List[ThreatDetection] = []
        for detector in (self.detect_behavioral_anomaly, self.detect_geographic_anomaly, self.detect_device_anomaly):
            detection = await self._fail_closed(detector, event)
            if detection is not None:
                threats.append(detection)
        threats.extend(await self.detect_threat_patterns(event))
        threats.extend(await self.run_ml_anomaly_detection(event))
        return threats

    # ----------------------
    # Compliance
    # ----------------------

    async def check_compliance_violations(self, event: SecurityEvent) -> List[ComplianceViolation]:
        try:
            now = self.clock()
            violations = []
            for rule_set in self.rule_sets:
                violations.extend(rule_set.evaluate(event, now))
            if violations:
                await self.store.append_compliance_violations(violations)
                self._violations.extend((now, v) for v in violations)
            return violations
        except Exception as e:
            logger.error(f"Compliance checking error for {event.id}: {e}")
            return []

    # ----------------------
    # Processing
    # ----------------------

    def _enqueue(self, event: SecurityEvent):
        if len(self.queue) >= self.queue_max_size:
            dropped = self.queue.popleft()
            logger.warning(f"Security event queue full; dropped oldest event {dropped.id}")
        self.queue.append(event)

    async def _analyze(self, event: SecurityEvent) -> Tuple[List[ThreatDetection], List[ComplianceViolation]]:
        threats = await self.perform_threat_analysis(event)
        violations = await self.check_compliance_violations(event)
        now = self.clock()
        for threat in threats:
            self._threats.append((now, threat))
        automatic = [t for t in threats if t.automatic_response]
        if automatic:
            self.trigger_automatic_response(event, automatic)
        return threats, violations

    def trigger_automatic_response(self, event: SecurityEvent, threats: List[ThreatDetection]):
        for threat in threats:
            self.alerter(
                f"threat_{threat.type}",
                f"{threat.type} detected for event {event.id} (confidence {threat.confidence:.2f})",
                threat.severity.value,
                {"event_id": event.id, "user_id": event.user_id, "threat_id": threat.threat_id},
            )

    async def process_security_event(self, event: Union[SecurityEventIn, SecurityEvent, Dict[str, Any]]) -> ProcessingResult:
        started = time.perf_counter()
        enriched = await self.enrich_security_event(event)

        threats: List[ThreatDetection] = []
        violations: List[ComplianceViolation] = []
        queued = False
        if enriched.severity in _IMMEDIATE:
            threats, violations = await self._analyze(enriched)
        else:
            self._enqueue(enriched)
            queued = True

        try:
            event_id = await self.store.append_security_event(enriched)
        except ExternalFetchError as e:
            logger.warning(f"Security event {enriched.id} not persisted: {e}")
            event_id = enriched.id

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._processed.append((self.clock(), elapsed_ms))

        if queued and len(self.queue) >= self.batch_size:
            await self.process_batch()

        return ProcessingResult(
            event_id=event_id,
            threat_detections=threats,
            compliance_violations=violations,
            queued=queued,
            processing_time_ms=round(elapsed_ms, 3),
        )

    async def process_batch(self) -> Dict[str, int]:
        batch = [self.queue.popleft() for _ in range(min(self.batch_size, len(self.queue)))]
        threat_count = 0
        violation_count = 0
        for event in batch:
            threats, violations = await self._analyze(event)
            threat_count += len(threats)
            violation_count += len(violations)
        if batch:
            logger.info(f"Processed batch of {len(batch)} security events: {threat_count} threats, {violation_count} violations")
        return {"processed": len(batch), "threats": threat_count, "violations": violation_count}

    # ----------------------
    # Metrics
    # ----------------------

    def _prune(self, since: datetime):
        while self._processed and self._processed[0][0] < since:
            self._processed.popleft()
        while self._threats and self._threats[0][0] < since:
            self._threats.popleft()
        while self._violations and self._violations[0][0] < since:
            self._violations.popleft()

    def _alerting_health(self) -> str:
        depth = len(self.queue)
        if depth >= self.queue_max_size:
            return "critical"
        if depth > self.queue_max_size * 0.8:
            return "degraded"
        return "healthy"

    def generate_security_metrics(self) -> SecurityMetricsSnapshot:
        now = self.clock()
        self._prune(now - timedelta(minutes=self.config["metrics_window_minutes"]))
        latencies = [ms for _, ms in self._processed]
        average_latency = sum(latencies) / len(latencies) if latencies else 0.0
        open_violations = sum(1 for _, v in self._violations if v.status == "open")
        return SecurityMetricsSnapshot(
            timestamp=now,
            active_threats=len(self._threats),
            events_processed=len(self._processed),
            anomalies_detected=sum(1 for _, t in self._threats if "anomaly" in t.type),
            compliance_score=max(0.0, 100.0 - 5 * open_violations),
            # no labelled feedback loop yet
            threat_detection_accuracy=None,
            false_positive_rate=None,
            average_response_time_ms=round(average_latency, 3),
            system_health=SystemHealth(
                event_processing_latency_ms=round(average_latency, 3),
                queue_depth=len(self.queue),
                model_accuracy=None,
                alerting_system=self._alerting_health(),
            ),
        )
