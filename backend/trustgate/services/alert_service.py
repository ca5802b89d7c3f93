import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Dict, Any, Optional
from typing import cast

logger = logging.getLogger(__name__)

MAX_ALERTS = 50

alerts: Deque[Dict[str, Any]] = deque(maxlen=MAX_ALERTS)


def trigger_alert(event_type: str, details: str, severity: str = "high", context: Optional[Dict[str, Any]] = None):
    alert = {
        "event_type": event_type,
        "details": details,
        "severity": severity,
        "context": context or {},
        "raised_at": datetime.now(timezone.utc).isoformat(),
    }
    alerts.append(alert)
    logger.warning(f"[ALERT] {event_type}: {details}")
    try:
        from trustgate.services.tasks import dispatch_alert as dispatch_alert_task
        cast(Any, dispatch_alert_task).delay(event_type, details, severity)
    except Exception as e:
        # Broker unavailable; the alert is still recorded and logged
        logger.warning(f"[ALERT] Celery dispatch failed: {e}")
    return alert


def get_alerts() -> List[Dict[str, Any]]:
    return list(alerts)
