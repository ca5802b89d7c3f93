import json
import logging
from typing import Optional

from redis.exceptions import RedisError

from trustgate.config import RISK_CACHE_TTL_SECONDS
from trustgate.schemas.verification import RiskAssessmentResult

logger = logging.getLogger(__name__)


class RiskAssessmentCache:
    """Latest assessment per verification, kept in Redis for cheap re-reads.

    Never the source of truth: every read or write failure is logged and
    treated as a cache miss. With no client configured it does nothing.
    """

    key_prefix = "risk_assessment:"

    def __init__(self, redis_client=None, ttl: int = RISK_CACHE_TTL_SECONDS):
        self.redis = redis_client
        self.ttl = ttl

    def _key(self, verification_id: str) -> str:
        return f"{self.key_prefix}{verification_id}"

    async def store(self, result: RiskAssessmentResult) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(self._key(result.verification_id), self.ttl, result.model_dump_json())
        except RedisError as e:
            logger.warning(f"Risk cache write failed for {result.verification_id}: {e}")

    async def get(self, verification_id: str) -> Optional[RiskAssessmentResult]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self._key(verification_id))
        except RedisError as e:
            logger.warning(f"Risk cache read failed for {verification_id}: {e}")
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return RiskAssessmentResult.model_validate(json.loads(raw))
        except ValueError as e:
            logger.warning(f"Discarding malformed cached assessment for {verification_id}: {e}")
            return None
