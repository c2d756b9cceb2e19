# Helpers shared by the proxy, the offline worker and the client.

import datetime
import math
from typing import Any, Mapping, Optional, Tuple

LAT_KEYS = ("lat", "latitude", "stop_lat")
LNG_KEYS = ("lng", "lon", "longitude", "stop_lon")


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


def first_float(record: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[float]:
    for key in keys:
        value = record.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return None


def record_coordinates(
    record: Any,
    lat_keys: Tuple[str, ...] = LAT_KEYS,
    lng_keys: Tuple[str, ...] = LNG_KEYS,
) -> Optional[Tuple[float, float]]:
    if not isinstance(record, Mapping):
        return None
    lat = first_float(record, lat_keys)
    lng = first_float(record, lng_keys)
    if lat is None or lng is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng
