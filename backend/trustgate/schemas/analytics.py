from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from trustgate.schemas.common import Severity, SecurityEventType, ViolationSeverity


class GeoLocation(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class EventDevice(BaseModel):
    id: str
    trusted: bool = False
    risk_score: float = Field(default=0.0, ge=0, le=1)


class ThreatIntelligence(BaseModel):
    ip_reputation: float = Field(default=0.0, ge=0, le=100)
    known_threats: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class MLPrediction(BaseModel):
    anomaly_score: float = Field(default=0.0, ge=0, le=1)
    predicted_outcome: Optional[str] = None
    confidence: float = 0.0


class ComplianceData(BaseModel):
    gdpr_relevant: bool = False
    pii_accessed: bool = False
    audit_required: bool = False
    retention_days: int = 0


class SecurityEventIn(BaseModel):
    """Inbound event as submitted by callers; enrichment fills the rest."""
    id: Optional[str] = None
    type: SecurityEventType
    severity: Severity = Severity.medium
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geo_location: Optional[GeoLocation] = None
    device: Optional[EventDevice] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class SecurityEvent(BaseModel):
    id: str
    type: SecurityEventType
    severity: Severity
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    geo_location: Optional[GeoLocation] = None
    device: Optional[EventDevice] = None
    threat_intelligence: Optional[ThreatIntelligence] = None
    ml_predictions: Optional[MLPrediction] = None
    compliance_data: Optional[ComplianceData] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    risk_score: float = Field(default=0.0, ge=0, le=100)
    requires_investigation: bool = False
    timestamp: datetime


class ThreatDetection(BaseModel):
    threat_id: str
    type: str
    severity: Severity
    confidence: float
    affected_entities: List[str] = Field(default_factory=list)
    evidence: Dict[str, Any] = Field(default_factory=dict)
    recommended_actions: List[str] = Field(default_factory=list)
    automatic_response: bool = False
    estimated_impact: Dict[str, str] = Field(default_factory=dict)


class ComplianceViolation(BaseModel):
    id: str
    regulation: str
    type: str
    severity: ViolationSeverity
    description: str
    affected_data: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    deadline: Optional[datetime] = None
    status: str = "open"


class ProcessingResult(BaseModel):
    event_id: str
    threat_detections: List[ThreatDetection] = Field(default_factory=list)
    compliance_violations: List[ComplianceViolation] = Field(default_factory=list)
    queued: bool = False
    processing_time_ms: float = 0.0


class SystemHealth(BaseModel):
    event_processing_latency_ms: float
    queue_depth: int
    model_accuracy: Optional[float] = None
    alerting_system: str


class SecurityMetricsSnapshot(BaseModel):
    timestamp: datetime
    active_threats: int
    events_processed: int
    anomalies_detected: int
    compliance_score: float
    threat_detection_accuracy: Optional[float] = None
    false_positive_rate: Optional[float] = None
    average_response_time_ms: float
    system_health: SystemHealth
