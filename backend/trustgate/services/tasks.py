import asyncio
import logging
from typing import Any, Dict, Optional

from trustgate.services.celery_app import celery

logger = logging.getLogger(__name__)

# One engine and one event loop per worker process: the batch queue lives on
# the engine, and motor clients are bound to the loop that first used them.
_worker_loop: Optional[asyncio.AbstractEventLoop] = None
_worker_engine = None


def _run(coro):
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        _worker_loop = asyncio.new_event_loop()
    return _worker_loop.run_until_complete(coro)


def get_worker_engine():
    global _worker_engine
    if _worker_engine is None:
        from trustgate.database import mongo_db
        from trustgate.services.threat_analytics import SecurityAnalyticsEngine
        from trustgate.store.memory import InMemoryRecordStore
        from trustgate.store.mongo import MongoRecordStore

        if mongo_db is None:
            logger.warning("MONGODB_URI not set; worker security events are kept in memory only")
            store = InMemoryRecordStore()
        else:
            store = MongoRecordStore(mongo_db)
        _worker_engine = SecurityAnalyticsEngine(store)
    return _worker_engine


@celery.task(name="ingest_security_event")
def ingest_security_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Run one inbound event through the worker's analytics engine."""
    result = _run(get_worker_engine().process_security_event(event))
    return result.model_dump(mode="json")


@celery.task(name="process_security_event_batch")
def process_security_event_batch() -> Dict[str, int]:
    """Drain one batch of queued low and medium severity events."""
    summary = _run(get_worker_engine().process_batch())
    if summary["processed"]:
        logger.info(f"[AnalyticsWorker] batch: {summary}")
    return summary


@celery.task(name="dispatch_alert")
def dispatch_alert(event_type: str, details: str, severity: str = "high"):
    # Notification channels (pager, chat, email) hook in here
    logger.warning(f"[AlertWorker] {severity.upper()} {event_type}: {details}")
