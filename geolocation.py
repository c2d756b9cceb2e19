# Location lookup for the client: device GPS, then IP lookup, then the city centre.

from dataclasses import dataclass
import logging
import os
from typing import Callable, Dict, Optional, Tuple

import requests

from transporte_common import record_coordinates

log = logging.getLogger("geolocation")

PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3

GPS_TIMEOUT_SEC = 15.0
GPS_MAXIMUM_AGE_SEC = 60.0
GPS_MAX_ACCURACY_M = 1000.0

IP_LOOKUP_URL = os.getenv("IP_LOOKUP_URL", "https://ipapi.co/json/")
IP_LOOKUP_TIMEOUT_SEC = 5.0

# Obelisco, Buenos Aires.
DEFAULT_LATITUDE = -34.6037
DEFAULT_LONGITUDE = -58.3816

ERROR_MESSAGES: Dict[int, str] = {
    PERMISSION_DENIED: "Permiso de ubicación denegado. Usando ubicación aproximada.",
    POSITION_UNAVAILABLE: "Ubicación no disponible. Usando ubicación aproximada.",
    TIMEOUT: "Tiempo de espera agotado al obtener la ubicación. Usando ubicación aproximada.",
}
UNKNOWN_ERROR_MESSAGE = "Error obteniendo ubicación. Usando ubicación aproximada."
LOW_ACCURACY_MESSAGE = "La precisión del GPS es baja. Usando ubicación aproximada."
DEFAULT_LOCATION_MESSAGE = "No se pudo determinar tu ubicación. Mostrando el centro de Buenos Aires."


@dataclass(frozen=True)
class PositionOptions:
    enable_high_accuracy: bool = True
    timeout_sec: float = GPS_TIMEOUT_SEC
    maximum_age_sec: float = GPS_MAXIMUM_AGE_SEC


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    accuracy_m: float


@dataclass(frozen=True)
class LocationResult:
    latitude: float
    longitude: float
    source: str
    accuracy_m: Optional[float] = None
    message: Optional[str] = None


class GeolocationError(Exception):
    def __init__(self, code: int, message: str = ""):
        super().__init__(message or f"geolocation error {code}")
        self.code = code


GpsProvider = Callable[[PositionOptions], Position]
IpLookup = Callable[[], Optional[Tuple[float, float]]]


def error_message(code: int) -> str:
    return ERROR_MESSAGES.get(code, UNKNOWN_ERROR_MESSAGE)


def lookup_ip_location(
    session: Optional[requests.Session] = None,
    url: str = IP_LOOKUP_URL,
    timeout: float = IP_LOOKUP_TIMEOUT_SEC,
) -> Optional[Tuple[float, float]]:
    http = session or requests
    try:
        resp = http.get(url, timeout=timeout, headers={"Accept": "application/json"})
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        log.warning("IP geolocation failed: %s", exc)
        return None

    if not isinstance(data, dict):
        return None
    return record_coordinates(data, ("latitude", "lat"), ("longitude", "lon", "lng"))


def locate(
    gps: Optional[GpsProvider],
    ip_lookup: IpLookup = lookup_ip_location,
    options: Optional[PositionOptions] = None,
) -> LocationResult:
    """Resolve the user's position, degrading step by step.

    Each step runs once. A GPS fix is kept only when its accuracy is within
    ``GPS_MAX_ACCURACY_M``; otherwise the IP lookup is tried, and when that
    yields nothing the fixed city-centre coordinate is returned. The message
    of the first failure is carried through so the UI can show it.
    """
    options = options or PositionOptions()
    message: Optional[str] = None

    if gps is None:
        message = error_message(POSITION_UNAVAILABLE)
    else:
        try:
            position = gps(options)
        except GeolocationError as exc:
            log.info("GPS failed with code %s", exc.code)
            message = error_message(exc.code)
        except Exception:
            log.exception("GPS provider crashed")
            message = UNKNOWN_ERROR_MESSAGE
        else:
            if position.accuracy_m <= GPS_MAX_ACCURACY_M:
                return LocationResult(
                    position.latitude, position.longitude, "gps", accuracy_m=position.accuracy_m
                )
            log.info("GPS accuracy %.0f m too coarse, trying IP lookup", position.accuracy_m)
            message = LOW_ACCURACY_MESSAGE

    try:
        coords = ip_lookup()
    except Exception:
        log.exception("IP lookup crashed")
        coords = None
    if coords is not None:
        return LocationResult(coords[0], coords[1], "ip", message=message)

    return LocationResult(
        DEFAULT_LATITUDE,
        DEFAULT_LONGITUDE,
        "default",
        message=f"{message} {DEFAULT_LOCATION_MESSAGE}" if message else DEFAULT_LOCATION_MESSAGE,
    )
