"""
Compliance screening: AML, sanctions, PEP and adverse media.

Each list is a pluggable ComplianceScreener. Only AML ships with a real
client (an HTTP watchlist service); the others default to no-op screeners
until a provider is wired in.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from trustgate.config import (
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    WATCHLIST_SCREENING_URL,
    WATCHLIST_SCREENING_API_KEY,
)
from trustgate.errors import ExternalFetchError, ExternalServiceDegraded
from trustgate.schemas.common import ComplianceFlagType, Severity
from trustgate.schemas.verification import ComplianceFlag, VerificationRecord

logger = logging.getLogger(__name__)


class ComplianceScreener(ABC):
    flag_type: ComplianceFlagType

    @abstractmethod
    async def screen(self, verification: VerificationRecord) -> List[ComplianceFlag]:
        """Raise ExternalServiceDegraded when the provider cannot answer."""


class NullScreener(ComplianceScreener):
    def __init__(self, flag_type: ComplianceFlagType):
        self.flag_type = flag_type

    async def screen(self, verification):
        return []


class WatchlistScreeningClient(ComplianceScreener):
    """AML screening against an internal watchlist HTTP service.

    POSTs the entity to ``{base_url}/screen`` and expects
    ``{"high_risk_matches": int, ...}`` back.
    """

    flag_type = ComplianceFlagType.aml

    def __init__(self, base_url: Optional[str] = WATCHLIST_SCREENING_URL, api_key: Optional[str] = WATCHLIST_SCREENING_API_KEY,
                 timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def screen(self, verification):
        if not self.base_url:
            return []

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "entity_type": "person",
            "entity_value": verification.account.email if verification.account and verification.account.email else "",
            "verification_id": verification.id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/screen", json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            matches = int(data.get("high_risk_matches") or 0)
        except (httpx.HTTPStatusError, httpx.RequestError, TypeError, ValueError) as e:
            # RequestError covers timeouts and connection failures; ValueError a malformed body
            raise ExternalServiceDegraded("watchlist_screening", e) from e

        if matches > 0:
            return [ComplianceFlag(
                type=ComplianceFlagType.aml,
                severity=Severity.critical,
                description="Found matches in AML watchlists",
                source="internal_watchlist",
                requires_escalation=True,
            )]
        return []


def default_screeners() -> List[ComplianceScreener]:
    return [
        WatchlistScreeningClient(),
        NullScreener(ComplianceFlagType.sanctions),
        NullScreener(ComplianceFlagType.pep),
        NullScreener(ComplianceFlagType.adverse_media),
    ]


class ComplianceScreeningService:
    def __init__(self, store, screeners: Optional[List[ComplianceScreener]] = None):
        self.store = store
        self.screeners = screeners if screeners is not None else default_screeners()

    async def _run(self, screener: ComplianceScreener, verification: VerificationRecord) -> List[ComplianceFlag]:
        try:
            return await screener.screen(verification)
        except ExternalServiceDegraded as e:
            logger.warning(f"{screener.flag_type.value} screening degraded for {verification.id}: {e}")
            return []

    async def perform_compliance_screening(self, verification_id: str) -> List[ComplianceFlag]:
        try:
            verification = await self.store.get_verification_by_id(verification_id)
        except ExternalFetchError as e:
            logger.warning(f"Compliance screening skipped for {verification_id}: {e}")
            return []
        if verification is None:
            return []

        results = await asyncio.gather(*(self._run(s, verification) for s in self.screeners))
        flags = [flag for result in results for flag in result]
        if flags:
            logger.info(f"Compliance flags for {verification_id}: {[f.type.value for f in flags]}")
        return flags
