from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

from trustgate.errors import ExternalFetchError
from trustgate.schemas.audit import AuditEvent
from trustgate.schemas.analytics import SecurityEvent, ComplianceViolation
from trustgate.schemas.common import SecurityEventType, TrustLevel, VerificationStatus
from trustgate.schemas.device import (
    DeviceTrustRecord,
    TrustedDeviceRecord,
    SessionRecord,
    MFAAttemptStats,
)
from trustgate.schemas.mfa import MFAConfig
from trustgate.schemas.verification import VerificationRecord, DocumentRef
from trustgate.services.scoring import ensure_utc
from trustgate.store.base import RecordStore


class InMemoryRecordStore(RecordStore):
    """Dict-backed store used by tests and single-process deployments.

    ``failing`` names operations that should raise ExternalFetchError, so the
    degraded paths of the engines can be exercised.
    """

    def __init__(self):
        self.verifications: Dict[str, VerificationRecord] = {}
        self.sessions: List[SessionRecord] = []
        self.device_trust: Dict[Tuple[str, str], DeviceTrustRecord] = {}
        self.trusted_devices: Dict[Tuple[str, str], TrustedDeviceRecord] = {}
        self.mfa_attempts: List[Tuple[str, str, datetime, bool]] = []
        self.user_roles: Dict[str, Set[str]] = {}
        self.account_created: Dict[str, datetime] = {}
        self.mfa_configs: Dict[str, MFAConfig] = {}
        self.session_mfa: Dict[str, datetime] = {}
        self.admin_overrides: Dict[str, datetime] = {}
        self.emergency_access: Dict[str, datetime] = {}
        self.recoveries: List[Tuple[str, datetime]] = []
        self.security_events: List[SecurityEvent] = []
        self.compliance_violations: List[ComplianceViolation] = []
        self.audit_events: List[AuditEvent] = []
        self.failing: Set[str] = set()

    def _check(self, operation: str):
        if operation in self.failing:
            raise ExternalFetchError(operation)

    # ----------------------
    # Seeding helpers
    # ----------------------

    def add_verification(self, verification: VerificationRecord):
        self.verifications[verification.id] = verification

    def add_session(self, session: SessionRecord):
        self.sessions.append(session)

    def add_mfa_attempt(self, user_id: str, device_id: str, at: datetime, success: bool):
        self.mfa_attempts.append((user_id, device_id, ensure_utc(at), success))

    def set_user_roles(self, user_id: str, roles: Set[str]):
        self.user_roles[user_id] = set(roles)

    def set_account_created(self, user_id: str, created_at: datetime):
        self.account_created[user_id] = ensure_utc(created_at)

    def set_mfa_config(self, config: MFAConfig):
        self.mfa_configs[config.user_id] = config

    def set_session_mfa(self, session_id: str, verified_at: datetime):
        self.session_mfa[session_id] = ensure_utc(verified_at)

    def set_admin_override(self, user_id: str, expires_at: datetime):
        self.admin_overrides[user_id] = ensure_utc(expires_at)

    def set_emergency_access(self, user_id: str, expires_at: datetime):
        self.emergency_access[user_id] = ensure_utc(expires_at)

    def add_recovery(self, user_id: str, completed_at: datetime):
        self.recoveries.append((user_id, ensure_utc(completed_at)))

    def add_security_event(self, event: SecurityEvent):
        self.security_events.append(event)

    def add_trusted_device(self, device: TrustedDeviceRecord):
        self.trusted_devices[(device.user_id, device.device_id)] = device

    # ----------------------
    # Verifications
    # ----------------------

    async def get_verification_by_id(self, verification_id):
        self._check("get_verification_by_id")
        return self.verifications.get(verification_id)

    async def find_documents_by_hash(self, file_hash, exclude_verification_id):
        self._check("find_documents_by_hash")
        refs = []
        for verification in self.verifications.values():
            if verification.id == exclude_verification_id:
                continue
            for doc in verification.documents:
                if doc.file_hash and doc.file_hash == file_hash:
                    refs.append(DocumentRef(document_id=doc.id, verification_id=verification.id))
        return refs

    async def count_recent_verifications(self, user_id, since):
        self._check("count_recent_verifications")
        return sum(
            1 for v in self.verifications.values()
            if v.user_id == user_id and (since is None or ensure_utc(v.submitted_at) >= ensure_utc(since))
        )

    async def count_rejected_verifications(self, user_id):
        self._check("count_rejected_verifications")
        return sum(
            1 for v in self.verifications.values()
            if v.user_id == user_id and v.status == VerificationStatus.rejected
        )

    # ----------------------
    # Devices and sessions
    # ----------------------

    async def get_recent_sessions(self, user_id, device_id, since, limit):
        self._check("get_recent_sessions")
        since = ensure_utc(since)
        matches = [
            s for s in self.sessions
            if s.user_id == user_id
            and (device_id is None or s.device_id == device_id)
            and ensure_utc(s.created_at) >= since
        ]
        matches.sort(key=lambda s: ensure_utc(s.created_at), reverse=True)
        return matches[:limit]

    async def get_device_trust_record(self, user_id, device_id):
        self._check("get_device_trust_record")
        return self.device_trust.get((user_id, device_id))

    async def upsert_device_trust_record(self, record):
        self._check("upsert_device_trust_record")
        self.device_trust[(record.user_id, record.device_id)] = record.model_copy(deep=True)

    async def upsert_trusted_device(self, user_id, device_id, trust_level, expires_at):
        self._check("upsert_trusted_device")
        key = (user_id, device_id)
        existing = self.trusted_devices.get(key)
        now = datetime.now(timezone.utc)
        record = TrustedDeviceRecord(
            user_id=user_id,
            device_id=device_id,
            device_name=existing.device_name if existing else None,
            trust_level=TrustLevel(trust_level),
            last_verified_at=now,
            last_used_at=now,
            expires_at=expires_at,
            is_active=True,
        )
        self.trusted_devices[key] = record

    async def list_trusted_devices(self, user_id):
        self._check("list_trusted_devices")
        return [d for d in self.trusted_devices.values() if d.user_id == user_id]

    async def deactivate_trusted_device(self, user_id, device_id, reason, revoked_at):
        self._check("deactivate_trusted_device")
        record = self.trusted_devices.get((user_id, device_id))
        if record is None or not record.is_active:
            return False
        record.is_active = False
        record.revoked_at = revoked_at
        record.revoke_reason = reason
        return True

    async def get_mfa_verification_attempts(self, user_id, device_id, since):
        self._check("get_mfa_verification_attempts")
        since = ensure_utc(since)
        attempts = [
            success for uid, did, at, success in self.mfa_attempts
            if uid == user_id and did == device_id and at >= since
        ]
        return MFAAttemptStats(total=len(attempts), successful=sum(1 for ok in attempts if ok))

    # ----------------------
    # Users and MFA
    # ----------------------

    async def get_user_roles(self, user_id):
        self._check("get_user_roles")
        return set(self.user_roles.get(user_id, set()))

    async def get_account_creation_date(self, user_id):
        self._check("get_account_creation_date")
        return self.account_created.get(user_id)

    async def get_mfa_config(self, user_id):
        self._check("get_mfa_config")
        return self.mfa_configs.get(user_id)

    async def get_session_mfa_verified_at(self, session_id):
        self._check("get_session_mfa_verified_at")
        return self.session_mfa.get(session_id)

    async def get_active_admin_override(self, user_id, now):
        self._check("get_active_admin_override")
        expires_at = self.admin_overrides.get(user_id)
        if expires_at and expires_at > ensure_utc(now):
            return expires_at
        return None

    async def has_active_emergency_access(self, user_id, now):
        self._check("has_active_emergency_access")
        expires_at = self.emergency_access.get(user_id)
        return bool(expires_at and expires_at > ensure_utc(now))

    async def has_completed_recovery_since(self, user_id, since):
        self._check("has_completed_recovery_since")
        since = ensure_utc(since)
        return any(uid == user_id and at >= since for uid, at in self.recoveries)

    # ----------------------
    # Security events
    # ----------------------

    async def get_recent_security_events(self, user_id, event_type, since, limit):
        self._check("get_recent_security_events")
        since = ensure_utc(since)
        matches = [
            e for e in self.security_events
            if e.user_id == user_id
            and e.type == SecurityEventType(event_type)
            and ensure_utc(e.timestamp) >= since
        ]
        matches.sort(key=lambda e: ensure_utc(e.timestamp), reverse=True)
        return matches[:limit]

    async def get_known_device_ids(self, user_id, limit):
        self._check("get_known_device_ids")
        sessions = sorted(
            (s for s in self.sessions if s.user_id == user_id and s.device_id),
            key=lambda s: ensure_utc(s.created_at),
            reverse=True,
        )[:limit]
        return [s.device_id for s in sessions]

    async def count_failed_logins(self, ip_address, user_id, since):
        self._check("count_failed_logins")
        since = ensure_utc(since)
        count = 0
        for e in self.security_events:
            if e.type != SecurityEventType.login_failed or ensure_utc(e.timestamp) < since:
                continue
            if ip_address and ip_address != "unknown":
                if e.ip_address == ip_address:
                    count += 1
            elif user_id and e.user_id == user_id:
                count += 1
        return count

    async def append_security_event(self, event):
        self._check("append_security_event")
        self.security_events.append(event)
        return event.id or str(uuid4())

    async def append_compliance_violations(self, violations):
        self._check("append_compliance_violations")
        self.compliance_violations.extend(violations)

    # ----------------------
    # Audit
    # ----------------------

    async def append_audit_event(self, event):
        self._check("append_audit_event")
        self.audit_events.append(event)
