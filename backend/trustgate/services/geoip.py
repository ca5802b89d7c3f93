from __future__ import annotations
from typing import Any, Dict, Optional
from pathlib import Path
import logging
import os

import maxminddb

from trustgate.schemas.analytics import GeoLocation

logger = logging.getLogger(__name__)

# Lazy-initialized reader; None when no database is available
_CITY_READER = None
_READER_LOADED = False


def _candidate_paths() -> list[Path]:
    paths: list[Path] = []
    configured = os.getenv("GEOIP2_CITY_DB")
    if configured:
        paths.append(Path(configured))
    # .../backend/trustgate/services/geoip.py -> repo root is parents[3]
    repo_root = Path(__file__).resolve().parents[3]
    paths.append(repo_root / "data" / "GeoLite2-City.mmdb")
    paths.append(repo_root / "backend" / "data" / "GeoLite2-City.mmdb")
    return paths


def init_geoip_reader() -> None:
    global _CITY_READER, _READER_LOADED
    if _READER_LOADED:
        return
    _READER_LOADED = True
    for path in _candidate_paths():
        if not path.exists():
            continue
        try:
            _CITY_READER = maxminddb.open_database(str(path))
            logger.info(f"GeoIP city database loaded from {path}")
            return
        except (OSError, maxminddb.InvalidDatabaseError) as e:
            logger.warning(f"GeoIP database at {path} unusable: {e}")
    logger.info("No GeoIP city database found; event geolocation disabled")


def _english_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        names = value.get("names")
        if isinstance(names, dict) and isinstance(names.get("en"), str):
            return names["en"]
    return None


def parse_city_record(rec: Dict[str, Any]) -> GeoLocation:
    country = rec.get("country") if isinstance(rec.get("country"), dict) else {}
    subdivisions = rec.get("subdivisions")
    region = None
    if isinstance(subdivisions, list) and subdivisions:
        region = _english_name(subdivisions[0])
    location = rec.get("location") if isinstance(rec.get("location"), dict) else {}
    lat = location.get("latitude")
    lon = location.get("longitude")
    return GeoLocation(
        country=country.get("iso_code") or _english_name(country),
        region=region,
        city=_english_name(rec.get("city")),
        latitude=float(lat) if isinstance(lat, (int, float)) else None,
        longitude=float(lon) if isinstance(lon, (int, float)) else None,
    )


def lookup_location(ip: str) -> Optional[GeoLocation]:
    init_geoip_reader()
    if not ip or ip == "unknown" or _CITY_READER is None:
        return None
    try:
        raw = _CITY_READER.get(ip)
    except ValueError:
        # not an IP address
        return None
    if not isinstance(raw, dict):
        return None
    return parse_city_record(raw)
