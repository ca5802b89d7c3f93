import os
from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

JWT_SECRET = os.getenv("JWT_SECRET", "fallback-secret-key-for-development-only")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Outbound calls to screening / threat-intel providers fail open after this
EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "3"))
WATCHLIST_SCREENING_URL = os.getenv("WATCHLIST_SCREENING_URL")
WATCHLIST_SCREENING_API_KEY = os.getenv("WATCHLIST_SCREENING_API_KEY")

# ----------------------
# Verification risk
# ----------------------

COMPONENT_WEIGHTS = {
    "identity": 0.25,
    "document": 0.35,
    "business": 0.20,
    "behavioral": 0.10,
    "geographic": 0.10,
}

RISK_THRESHOLDS = {
    "low": int(os.getenv("RISK_THRESHOLD_LOW", "25")),
    "medium": int(os.getenv("RISK_THRESHOLD_MEDIUM", "60")),
    "high": int(os.getenv("RISK_THRESHOLD_HIGH", "80")),
}

IDENTITY_RULES = {
    "base": 10,
    "age_under_1_day": 40,
    "age_under_7_days": 25,
    "age_under_30_days": 15,
    "unconfirmed_email": 20,
    "repeat_verifications": 15,
    "repeat_verification_limit": 3,
}

DOCUMENT_RULES = {
    "missing_documents": 80,
    "base": 5,
    "suspicious": 25,
    "invalid": 30,
    "expired": 20,
    "quality_low": 50,
    "quality_low_penalty": 15,
    "quality_fair": 70,
    "quality_fair_penalty": 8,
    "ocr_low": 70,
    "ocr_low_penalty": 10,
    "per_fraud_tag": 5,
    "suspicious_ratio": 0.5,
    "suspicious_ratio_penalty": 20,
    "low_quality_ratio": 0.3,
    "low_quality_ratio_penalty": 15,
}

BUSINESS_RULES = {
    "base": 5,
    "age_under_30_days": 25,
    "age_under_90_days": 15,
    "rejected": 35,
    "pending": 10,
    "missing_field": 5,
    "suspicious_name": 20,
}
BUSINESS_REQUIRED_FIELDS = ["name", "description", "phone", "email", "address_line_1", "city", "state"]
SUSPICIOUS_BUSINESS_NAME_PATTERN = r"test|fake|dummy|example"

BEHAVIORAL_RULES = {
    "neutral": 50.0,
    "base": 5,
    "fast_submission_minutes": 5,
    "fast_submission": 15,
    "per_rejection": 10,
}

GEOGRAPHIC_RULES = {
    "neutral": 50.0,
    "base": 5,
    "international": 10,
}
HOME_COUNTRIES = [c.strip() for c in os.getenv("HOME_COUNTRIES", "US,USA,United States").split(",") if c.strip()]

ASSESSMENT_CONFIDENCE_DEFAULT = 50.0

# ----------------------
# Fraud indicators
# ----------------------

FRAUD_RULES = {
    "rapid_upload_seconds": 10,
    "velocity_window_days": 7,
    "velocity_min_count": 4,
    "quality_floor": 30,
    "ocr_floor": 60,
}

# ----------------------
# Device trust
# ----------------------

DEVICE_TRUST_CONFIG = {
    "trust_thresholds": {
        "low": 0.3,
        "medium": 0.6,
        "high": 0.8,
        "verified": 0.95,
    },
    # user_designation is reserved; it is not part of the combined score
    "trust_weights": {
        "fingerprint": 0.25,
        "behavioral": 0.20,
        "geographic": 0.15,
        "network": 0.15,
        "temporal": 0.10,
        "successful_auth": 0.10,
        "user_designation": 0.05,
    },
    "fingerprint_checks": {
        "canvas": 0.3,
        "webgl": 0.3,
        "audio": 0.2,
        "screen": 0.2,
    },
    "geo_thresholds_km": {
        "same_city": 50,
        "same_region": 500,
        "same_country": 2000,
        "suspicious": 5000,
    },
    "geo_history": {
        "days": 30,
        "limit": 10,
        "max_countries": 3,
    },
    "time_patterns": {
        "normal_variance_hours": 4,
        "suspicious_variance_hours": 12,
        "window_days": 7,
        "limit": 20,
        "min_sessions": 4,
    },
    "device_lifecycle": {
        "max_trusted_devices": 10,
        "trust_decay_days": int(os.getenv("DEVICE_TRUST_DECAY_DAYS", "30")),
        "success_rate_window_days": 30,
    },
    "risk_factors": {
        "vpn_usage": 0.3,
        "tor_usage": 0.8,
        "datacenter_ip": 0.4,
        "new_region": 0.5,
        "new_network": 0.3,
        "unusual_time": 0.2,
        "rapid_location_change": 0.7,
    },
}

# ----------------------
# MFA enforcement
# ----------------------

MFA_ROLE_HIERARCHY = ["super_admin", "admin", "moderator", "business_owner", "user", "guest"]
MFA_DEFAULT_ROLE = "user"

MFA_ROLE_REQUIREMENTS = {
    "super_admin": {"required": True, "grace_period_days": 0, "methods": ["totp", "backup_code"]},
    "admin": {"required": True, "grace_period_days": 7, "methods": ["totp", "sms", "backup_code"]},
    "moderator": {"required": False, "grace_period_days": 14, "methods": ["totp", "sms", "backup_code"]},
    "business_owner": {"required": True, "grace_period_days": 30, "methods": ["totp", "sms", "backup_code"]},
    "user": {"required": False, "grace_period_days": 0, "methods": ["totp", "sms", "backup_code"]},
    "guest": {"required": False, "grace_period_days": 0, "methods": []},
}

# freshness is in seconds
MFA_ACTION_REQUIREMENTS = {
    "admin:user:impersonate": {"required": True, "freshness": 300},
    "admin:user:delete": {"required": True, "freshness": 300},
    "admin:system:configure": {"required": True, "freshness": 600},
    "admin:roles:assign": {"required": True, "freshness": 300},
    "business:create": {"required": False, "freshness": 1800},
    "business:transfer": {"required": True, "freshness": 300},
    "business:delete": {"required": True, "freshness": 300},
    "business:verify": {"required": True, "freshness": 600},
    "subscription:upgrade": {"required": True, "freshness": 900},
    "subscription:cancel": {"required": True, "freshness": 600},
    "payment:add": {"required": True, "freshness": 900},
    "payment:delete": {"required": True, "freshness": 300},
    "account:password:change": {"required": True, "freshness": 300},
    "account:email:change": {"required": True, "freshness": 300},
    "account:mfa:disable": {"required": True, "freshness": 300},
    "account:delete": {"required": True, "freshness": 300},
    "data:export": {"required": True, "freshness": 1800},
    "analytics:export": {"required": True, "freshness": 1800},
}

MFA_RISK_TRIGGERS = {
    "new_device_trust_threshold": 0.6,
    "suspicious_score_threshold": 0.7,
}

MFA_STANDARD_METHODS = ["totp", "sms", "backup_code"]
MFA_FAIL_SECURE_METHODS = ["totp", "sms", "backup_code"]
MFA_SESSION_FRESHNESS_SECONDS = 30 * 60
MFA_RECOVERY_TOKEN_HOURS = 1

# ----------------------
# Security analytics
# ----------------------

ANALYTICS_CONFIG = {
    "processing": {
        "batch_size": int(os.getenv("ANALYTICS_BATCH_SIZE", "1000")),
        "queue_max_size": int(os.getenv("ANALYTICS_QUEUE_MAX", "50000")),
    },
    "ml": {
        "anomaly_threshold": 0.85,
    },
    "travel": {
        "max_speed_kmh": 800,
        "max_window_hours": 12,
        "lookback_hours": 6,
        "lookback_limit": 5,
    },
    "device": {
        "risk_threshold": 0.7,
        "known_device_limit": 20,
    },
    "brute_force": {
        "attempts": 10,
        "window_minutes": 5,
    },
    "investigation": {
        "risk_score_high": 70,
        "risk_score_critical": 90,
    },
    "compliance": {
        "gdpr": {"enabled": True, "retention_days": 1095},
        "sox": {"enabled": True},
        "pci": {"enabled": True},
        "ccpa": {"enabled": True},
    },
    "metrics_window_minutes": 60,
}

EVENT_TYPE_BASE_SCORES = {
    "suspicious_login_pattern": 40,
    "brute_force_attack": 70,
    "credential_stuffing": 80,
    "account_takeover_attempt": 90,
    "password_breach_detected": 85,
    "location_anomaly": 30,
    "device_anomaly": 35,
    "privilege_escalation_attempt": 95,
    "data_exfiltration_attempt": 100,
    "admin_action_suspicious": 75,
    "rate_limit_exceeded": 25,
    "authentication_bypass_attempt": 95,
}
EVENT_TYPE_DEFAULT_SCORE = 20

SEVERITY_MODIFIERS = {
    "low": 0,
    "medium": 10,
    "high": 25,
    "critical": 40,
}

INVESTIGATION_EVENT_TYPES = [
    "account_takeover_attempt",
    "privilege_escalation_attempt",
    "data_exfiltration_attempt",
    "authentication_bypass_attempt",
]

RISK_CACHE_TTL_SECONDS = int(os.getenv("RISK_CACHE_TTL_SECONDS", "900"))
