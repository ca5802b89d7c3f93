from enum import Enum


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class RiskCategory(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class RiskComponent(str, Enum):
    identity = "identity"
    document = "document"
    business = "business"
    behavioral = "behavioral"
    geographic = "geographic"


class TrustLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    verified = "verified"


class ValidationStatus(str, Enum):
    pending = "pending"
    valid = "valid"
    suspicious = "suspicious"
    invalid = "invalid"
    expired = "expired"


class VerificationStatus(str, Enum):
    pending = "pending"
    under_review = "under_review"
    approved = "approved"
    rejected = "rejected"


class BusinessVerificationStatus(str, Enum):
    pending = "pending"
    verified = "verified"
    rejected = "rejected"


class MFAMethod(str, Enum):
    totp = "totp"
    sms = "sms"
    backup_code = "backup_code"


class ComplianceFlagType(str, Enum):
    aml = "aml"
    sanctions = "sanctions"
    pep = "pep"
    adverse_media = "adverse_media"


class ViolationSeverity(str, Enum):
    minor = "minor"
    major = "major"
    critical = "critical"


class SecurityEventType(str, Enum):
    suspicious_login_pattern = "suspicious_login_pattern"
    brute_force_attack = "brute_force_attack"
    credential_stuffing = "credential_stuffing"
    account_takeover_attempt = "account_takeover_attempt"
    password_breach_detected = "password_breach_detected"
    location_anomaly = "location_anomaly"
    device_anomaly = "device_anomaly"
    privilege_escalation_attempt = "privilege_escalation_attempt"
    data_exfiltration_attempt = "data_exfiltration_attempt"
    admin_action_suspicious = "admin_action_suspicious"
    rate_limit_exceeded = "rate_limit_exceeded"
    authentication_bypass_attempt = "authentication_bypass_attempt"
    # authentication outcomes, used as history by the travel / brute force detectors
    login_success = "login_success"
    login_failed = "login_failed"


SEVERITY_RANK = {
    Severity.critical: 4,
    Severity.high: 3,
    Severity.medium: 2,
    Severity.low: 1,
}
