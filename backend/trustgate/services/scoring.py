"""
Scoring primitives shared by every engine.

Everything here is pure: no I/O, no clock reads, deterministic for the same input.
"""
from datetime import datetime, timezone
from math import radians, cos, sin, asin, sqrt, log2
from typing import Dict, Iterable, List, Optional, TypeVar, Callable, Any

from trustgate.schemas.common import Severity, SEVERITY_RANK

T = TypeVar("T")

EARTH_RADIUS_KM = 6371


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def weighted_average(components: Dict[str, float], weights: Dict[str, float]) -> float:
    """Weighted mean over the components that carry a weight.

    Weights need not sum to 1; the divisor is the sum of the weights for the
    components actually present, so partial component sets are handled.
    """
    total = 0.0
    weight_sum = 0.0
    for key, value in components.items():
        weight = weights.get(key)
        if weight is None or value is None:
            continue
        total += value * weight
        weight_sum += weight
    if weight_sum <= 0:
        return 0.0
    return total / weight_sum


def entropy(charset_size: int, length: int) -> float:
    """Bits of entropy for `length` symbols drawn from `charset_size` symbols: log2(charset_size ** length)."""
    if charset_size <= 1 or length <= 0:
        return 0.0
    return length * log2(charset_size)


def time_decay(age_days: float, half_life_days: float) -> float:
    if half_life_days <= 0:
        return 1.0
    return 0.5 ** (max(0.0, age_days) / half_life_days)


def haversine_km(lat1: Optional[float], lon1: Optional[float], lat2: Optional[float], lon2: Optional[float]) -> float:
    if None in [lat1, lon1, lat2, lon2]:
        return float("inf")
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))
    return c * EARTH_RADIUS_KM


def severity_rank(severity: Any) -> int:
    try:
        return SEVERITY_RANK[Severity(severity)]
    except ValueError:
        return 0


def sort_by_severity(items: Iterable[T], key: Callable[[T], Any] = lambda item: item.severity) -> List[T]:
    # sorted() is stable, so equal severities keep detection order
    return sorted(items, key=lambda item: severity_rank(key(item)), reverse=True)


def dedupe(items: Iterable[T]) -> List[T]:
    seen = set()
    out: List[T] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def round2(value: float) -> float:
    return round(value, 2)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_in_days(created_at: datetime, now: datetime) -> float:
    return (ensure_utc(now) - ensure_utc(created_at)).total_seconds() / 86400
