import functools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from trustgate.errors import ExternalFetchError
from trustgate.schemas.analytics import SecurityEvent
from trustgate.schemas.common import SecurityEventType, TrustLevel
from trustgate.schemas.device import (
    DeviceTrustRecord,
    TrustedDeviceRecord,
    SessionRecord,
    MFAAttemptStats,
)
from trustgate.schemas.mfa import MFAConfig
from trustgate.schemas.verification import (
    VerificationRecord,
    DocumentRef,
    BusinessRecord,
    AccountRecord,
)
from trustgate.store.base import RecordStore

logger = logging.getLogger(__name__)


def _fetch(operation: str):
    """Turn driver and row-validation failures into ExternalFetchError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (PyMongoError, SchemaError) as e:
                logger.warning(f"Mongo {operation} failed: {e}")
                raise ExternalFetchError(operation, e) from e
        return wrapper
    return decorator


def _plain(doc: Optional[Dict[str, Any]], id_field: Optional[str] = "id") -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if id_field and id_field not in doc and _id is not None:
        doc[id_field] = str(_id)
    return doc


class MongoRecordStore(RecordStore):
    """Record store on a motor database.

    Collections: verifications (documents embedded), businesses, users,
    sessions, device_trust, trusted_devices, mfa_attempts, mfa_overrides,
    emergency_access, recovery_tokens, security_events,
    compliance_violations, audit_events.
    """

    def __init__(self, db):
        self.db = db

    # ----------------------
    # Verifications
    # ----------------------

    @_fetch("get_verification_by_id")
    async def get_verification_by_id(self, verification_id):
        doc = _plain(await self.db.verifications.find_one({"_id": verification_id}))
        if doc is None:
            return None
        if doc.get("business_id") and not doc.get("business"):
            business = _plain(await self.db.businesses.find_one({"_id": doc["business_id"]}))
            if business is not None:
                doc["business"] = BusinessRecord.model_validate(business)
        if not doc.get("account"):
            user = await self.db.users.find_one({"_id": doc["user_id"]})
            if user is not None and user.get("created_at"):
                doc["account"] = AccountRecord(
                    user_id=doc["user_id"],
                    email=user.get("email"),
                    created_at=user["created_at"],
                    email_confirmed_at=user.get("email_confirmed_at"),
                )
        return VerificationRecord.model_validate(doc)

    @_fetch("find_documents_by_hash")
    async def find_documents_by_hash(self, file_hash, exclude_verification_id):
        cursor = self.db.verifications.find(
            {"documents.file_hash": file_hash, "_id": {"$ne": exclude_verification_id}},
            {"documents": 1},
        )
        refs = []
        async for doc in cursor:
            for item in doc.get("documents", []):
                if item.get("file_hash") == file_hash:
                    refs.append(DocumentRef(document_id=str(item.get("id")), verification_id=str(doc["_id"])))
        return refs

    @_fetch("count_recent_verifications")
    async def count_recent_verifications(self, user_id, since):
        query: Dict[str, Any] = {"user_id": user_id}
        if since is not None:
            query["submitted_at"] = {"$gte": since}
        return await self.db.verifications.count_documents(query)

    @_fetch("count_rejected_verifications")
    async def count_rejected_verifications(self, user_id):
        return await self.db.verifications.count_documents({"user_id": user_id, "status": "rejected"})

    # ----------------------
    # Devices and sessions
    # ----------------------

    @_fetch("get_recent_sessions")
    async def get_recent_sessions(self, user_id, device_id, since, limit):
        query: Dict[str, Any] = {"user_id": user_id, "created_at": {"$gte": since}}
        if device_id is not None:
            query["device_id"] = device_id
        docs = await self.db.sessions.find(query).sort("created_at", DESCENDING).limit(limit).to_list(length=limit)
        return [SessionRecord.model_validate(_plain(d)) for d in docs]

    @_fetch("get_device_trust_record")
    async def get_device_trust_record(self, user_id, device_id):
        doc = await self.db.device_trust.find_one({"user_id": user_id, "device_id": device_id})
        if doc is None:
            return None
        return DeviceTrustRecord.model_validate(_plain(doc, id_field=None))

    @_fetch("upsert_device_trust_record")
    async def upsert_device_trust_record(self, record):
        await self.db.device_trust.update_one(
            {"user_id": record.user_id, "device_id": record.device_id},
            {"$set": record.model_dump(mode="python")},
            upsert=True,
        )

    @_fetch("upsert_trusted_device")
    async def upsert_trusted_device(self, user_id, device_id, trust_level, expires_at):
        now = datetime.now(expires_at.tzinfo)
        await self.db.trusted_devices.update_one(
            {"user_id": user_id, "device_id": device_id},
            {
                "$set": {
                    "trust_level": TrustLevel(trust_level).value,
                    "expires_at": expires_at,
                    "last_verified_at": now,
                    "last_used_at": now,
                    "is_active": True,
                    "revoked_at": None,
                    "revoke_reason": None,
                },
            },
            upsert=True,
        )

    @_fetch("list_trusted_devices")
    async def list_trusted_devices(self, user_id):
        docs = await self.db.trusted_devices.find({"user_id": user_id}).to_list(length=None)
        return [TrustedDeviceRecord.model_validate(_plain(d, id_field=None)) for d in docs]

    @_fetch("deactivate_trusted_device")
    async def deactivate_trusted_device(self, user_id, device_id, reason, revoked_at):
        result = await self.db.trusted_devices.update_one(
            {"user_id": user_id, "device_id": device_id, "is_active": True},
            {"$set": {"is_active": False, "revoked_at": revoked_at, "revoke_reason": reason}},
        )
        return result.modified_count > 0

    @_fetch("get_mfa_verification_attempts")
    async def get_mfa_verification_attempts(self, user_id, device_id, since):
        query = {"user_id": user_id, "device_id": device_id, "created_at": {"$gte": since}}
        total = await self.db.mfa_attempts.count_documents(query)
        successful = await self.db.mfa_attempts.count_documents({**query, "success": True})
        return MFAAttemptStats(total=total, successful=successful)

    # ----------------------
    # Users and MFA
    # ----------------------

    @_fetch("get_user_roles")
    async def get_user_roles(self, user_id):
        user = await self.db.users.find_one({"_id": user_id}, {"roles": 1})
        if user is None:
            return set()
        return set(user.get("roles") or [])

    @_fetch("get_account_creation_date")
    async def get_account_creation_date(self, user_id):
        user = await self.db.users.find_one({"_id": user_id}, {"created_at": 1})
        return user.get("created_at") if user else None

    @_fetch("get_mfa_config")
    async def get_mfa_config(self, user_id):
        user = await self.db.users.find_one({"_id": user_id}, {"mfa_enabled": 1, "mfa_methods": 1})
        if user is None:
            return None
        return MFAConfig(
            user_id=user_id,
            mfa_enabled=bool(user.get("mfa_enabled")),
            enrolled_methods=user.get("mfa_methods") or [],
        )

    @_fetch("get_session_mfa_verified_at")
    async def get_session_mfa_verified_at(self, session_id):
        session = await self.db.sessions.find_one({"_id": session_id}, {"mfa_verified_at": 1})
        return session.get("mfa_verified_at") if session else None

    @_fetch("get_active_admin_override")
    async def get_active_admin_override(self, user_id, now):
        doc = await self.db.mfa_overrides.find_one(
            {"user_id": user_id, "is_active": True, "expires_at": {"$gt": now}},
            sort=[("expires_at", DESCENDING)],
        )
        return doc["expires_at"] if doc else None

    @_fetch("has_active_emergency_access")
    async def has_active_emergency_access(self, user_id, now):
        doc = await self.db.emergency_access.find_one(
            {"user_id": user_id, "is_active": True, "expires_at": {"$gt": now}}
        )
        return doc is not None

    @_fetch("has_completed_recovery_since")
    async def has_completed_recovery_since(self, user_id, since):
        doc = await self.db.recovery_tokens.find_one(
            {"user_id": user_id, "status": "completed", "completed_at": {"$gte": since}}
        )
        return doc is not None

    # ----------------------
    # Security events
    # ----------------------

    @_fetch("get_recent_security_events")
    async def get_recent_security_events(self, user_id, event_type, since, limit):
        query = {
            "user_id": user_id,
            "type": SecurityEventType(event_type).value,
            "timestamp": {"$gte": since},
        }
        docs = await self.db.security_events.find(query).sort("timestamp", DESCENDING).limit(limit).to_list(length=limit)
        return [SecurityEvent.model_validate(_plain(d)) for d in docs]

    @_fetch("get_known_device_ids")
    async def get_known_device_ids(self, user_id, limit):
        docs = await (
            self.db.sessions.find({"user_id": user_id, "device_id": {"$ne": None}}, {"device_id": 1})
            .sort("created_at", DESCENDING)
            .limit(limit)
            .to_list(length=limit)
        )
        return [d["device_id"] for d in docs]

    @_fetch("count_failed_logins")
    async def count_failed_logins(self, ip_address, user_id, since):
        query: Dict[str, Any] = {"type": SecurityEventType.login_failed.value, "timestamp": {"$gte": since}}
        if ip_address and ip_address != "unknown":
            query["ip_address"] = ip_address
        elif user_id:
            query["user_id"] = user_id
        else:
            return 0
        return await self.db.security_events.count_documents(query)

    @_fetch("append_security_event")
    async def append_security_event(self, event):
        doc = event.model_dump(mode="json")
        doc["_id"] = doc.pop("id")
        # keep timestamp as a BSON date so range queries work
        doc["timestamp"] = event.timestamp
        await self.db.security_events.insert_one(doc)
        return event.id

    @_fetch("append_compliance_violations")
    async def append_compliance_violations(self, violations):
        if not violations:
            return
        await self.db.compliance_violations.insert_many([v.model_dump(mode="python") for v in violations])

    # ----------------------
    # Audit
    # ----------------------

    @_fetch("append_audit_event")
    async def append_audit_event(self, event):
        await self.db.audit_events.insert_one(event.model_dump(mode="python"))


async def ensure_record_indexes(db):
    """Indexes the record store relies on; safe to call repeatedly."""
    await db.device_trust.create_index([("user_id", ASCENDING), ("device_id", ASCENDING)], unique=True)
    await db.trusted_devices.create_index([("user_id", ASCENDING), ("device_id", ASCENDING)], unique=True)
    await db.trusted_devices.create_index([("expires_at", ASCENDING)])
    await db.sessions.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.mfa_attempts.create_index([("user_id", ASCENDING), ("device_id", ASCENDING), ("created_at", DESCENDING)])
    await db.verifications.create_index([("user_id", ASCENDING), ("submitted_at", DESCENDING)])
    await db.verifications.create_index([("documents.file_hash", ASCENDING)])
    await db.security_events.create_index([("user_id", ASCENDING), ("type", ASCENDING), ("timestamp", DESCENDING)])
    await db.security_events.create_index([("ip_address", ASCENDING), ("timestamp", DESCENDING)])
    # append-only trails, retained for the GDPR window
    await db.security_events.create_index([("timestamp", ASCENDING)], expireAfterSeconds=1095 * 24 * 3600, name="security_events_ttl")
    await db.audit_events.create_index([("created_at", ASCENDING)], expireAfterSeconds=1095 * 24 * 3600)
