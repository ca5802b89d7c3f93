from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Set

from trustgate.schemas.audit import AuditEvent
from trustgate.schemas.analytics import SecurityEvent, ComplianceViolation
from trustgate.schemas.common import SecurityEventType, TrustLevel
from trustgate.schemas.device import (
    DeviceTrustRecord,
    TrustedDeviceRecord,
    SessionRecord,
    MFAAttemptStats,
)
from trustgate.schemas.mfa import MFAConfig
from trustgate.schemas.verification import VerificationRecord, DocumentRef


class RecordStore(ABC):
    """Everything the engines need from persistence.

    Implementations return validated records and raise
    ``trustgate.errors.ExternalFetchError`` when the backend call itself fails.
    A missing row is ``None`` / empty, never an error.
    """

    # --- verifications ---

    @abstractmethod
    async def get_verification_by_id(self, verification_id: str) -> Optional[VerificationRecord]:
        ...

    @abstractmethod
    async def find_documents_by_hash(self, file_hash: str, exclude_verification_id: str) -> List[DocumentRef]:
        ...

    @abstractmethod
    async def count_recent_verifications(self, user_id: str, since: Optional[datetime]) -> int:
        """Verifications submitted by ``user_id`` at or after ``since`` (all time when None)."""

    @abstractmethod
    async def count_rejected_verifications(self, user_id: str) -> int:
        ...

    # --- devices and sessions ---

    @abstractmethod
    async def get_recent_sessions(
        self, user_id: str, device_id: Optional[str], since: datetime, limit: int
    ) -> List[SessionRecord]:
        """Newest first. ``device_id=None`` means sessions from any device."""

    @abstractmethod
    async def get_device_trust_record(self, user_id: str, device_id: str) -> Optional[DeviceTrustRecord]:
        ...

    @abstractmethod
    async def upsert_device_trust_record(self, record: DeviceTrustRecord) -> None:
        ...

    @abstractmethod
    async def upsert_trusted_device(
        self, user_id: str, device_id: str, trust_level: TrustLevel, expires_at: datetime
    ) -> None:
        ...

    @abstractmethod
    async def list_trusted_devices(self, user_id: str) -> List[TrustedDeviceRecord]:
        ...

    @abstractmethod
    async def deactivate_trusted_device(
        self, user_id: str, device_id: str, reason: str, revoked_at: datetime
    ) -> bool:
        """Returns False when there was no active trusted device to revoke."""

    @abstractmethod
    async def get_mfa_verification_attempts(
        self, user_id: str, device_id: str, since: datetime
    ) -> MFAAttemptStats:
        ...

    # --- users and MFA ---

    @abstractmethod
    async def get_user_roles(self, user_id: str) -> Set[str]:
        ...

    @abstractmethod
    async def get_account_creation_date(self, user_id: str) -> Optional[datetime]:
        ...

    @abstractmethod
    async def get_mfa_config(self, user_id: str) -> Optional[MFAConfig]:
        ...

    @abstractmethod
    async def get_session_mfa_verified_at(self, session_id: str) -> Optional[datetime]:
        ...

    @abstractmethod
    async def get_active_admin_override(self, user_id: str, now: datetime) -> Optional[datetime]:
        """Expiry of an active admin MFA override, if any."""

    @abstractmethod
    async def has_active_emergency_access(self, user_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def has_completed_recovery_since(self, user_id: str, since: datetime) -> bool:
        ...

    # --- security events ---

    @abstractmethod
    async def get_recent_security_events(
        self, user_id: str, event_type: SecurityEventType, since: datetime, limit: int
    ) -> List[SecurityEvent]:
        """Newest first."""

    @abstractmethod
    async def get_known_device_ids(self, user_id: str, limit: int) -> List[str]:
        """Device ids from the user's most recent sessions."""

    @abstractmethod
    async def count_failed_logins(
        self, ip_address: Optional[str], user_id: Optional[str], since: datetime
    ) -> int:
        ...

    @abstractmethod
    async def append_security_event(self, event: SecurityEvent) -> str:
        ...

    @abstractmethod
    async def append_compliance_violations(self, violations: List[ComplianceViolation]) -> None:
        ...

    # --- audit ---

    @abstractmethod
    async def append_audit_event(self, event: AuditEvent) -> None:
        ...
