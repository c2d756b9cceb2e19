#!/usr/bin/env python3
# Transporte BA proxy: forwards to the city transit API and serves the app shell.

from dataclasses import dataclass
import logging
import math
import os
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response, send_from_directory
import requests

from transporte_common import record_coordinates, utc_now_iso

load_dotenv()

log = logging.getLogger("transporte_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


APP_VERSION = "1.2.0"

TRANSPORTE_BASE = os.getenv("TRANSPORTE_BASE_URL", "https://apitransporte.buenosaires.gob.ar")
TRANSPORTE_CLIENT_ID = os.getenv("TRANSPORTE_CLIENT_ID")
TRANSPORTE_CLIENT_SECRET = os.getenv("TRANSPORTE_CLIENT_SECRET")

TRANSPORTE_CONNECT_TIMEOUT_SEC = env_float("TRANSPORTE_CONNECT_TIMEOUT_SEC", 3.0)
TRANSPORTE_READ_TIMEOUT_SEC = env_float("TRANSPORTE_READ_TIMEOUT_SEC", 10.0)

MAX_RECORDS = env_int("MAX_RECORDS", 100)

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
    )
)

ENABLE_HSTS = env_bool("ENABLE_HSTS", False)
HSTS_MAX_AGE_SEC = env_int("HSTS_MAX_AGE_SEC", 15552000)

STATIC_DIR = os.path.abspath(
    os.getenv("STATIC_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "static"))
)
SHELL_DOCUMENT = "index.html"
NO_CACHE_SUFFIXES = (".js", ".css", ".html", ".json", ".svg")

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", env_int("PORT", 3000))

EARTH_RADIUS_KM = 6371.0

UPSTREAM_FAILURE = "API falló"
INVALID_PARAMS = "Parámetros inválidos"

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class TransitRoute:
    upstream_path: str
    default_radius_km: Optional[float]
    record_kind: str


TRANSIT_ROUTES: Dict[Tuple[str, str], TransitRoute] = {
    ("colectivos", "posiciones"): TransitRoute(
        os.getenv("UPSTREAM_COLECTIVOS_POSICIONES", "/colectivos/vehiclePositionsSimple"), 5.0, "vehicle"
    ),
    ("colectivos", "paradas"): TransitRoute(
        os.getenv("UPSTREAM_COLECTIVOS_PARADAS", "/colectivos/stops"), 2.0, "stop"
    ),
    ("colectivos", "lineas"): TransitRoute(
        os.getenv("UPSTREAM_COLECTIVOS_LINEAS", "/colectivos/routes"), None, "route"
    ),
    ("subtes", "estaciones"): TransitRoute(
        os.getenv("UPSTREAM_SUBTES_ESTACIONES", "/subtes/estaciones"), None, "station"
    ),
    ("subtes", "estado"): TransitRoute(
        os.getenv("UPSTREAM_SUBTES_ESTADO", "/subtes/serviceAlerts"), None, "status"
    ),
    ("trenes", "estaciones"): TransitRoute(
        os.getenv("UPSTREAM_TRENES_ESTACIONES", "/trenes/estaciones"), None, "station"
    ),
    ("trenes", "estado"): TransitRoute(
        os.getenv("UPSTREAM_TRENES_ESTADO", "/trenes/serviceAlerts"), None, "status"
    ),
    ("ecobici", "estaciones"): TransitRoute(
        os.getenv("UPSTREAM_ECOBICI_ESTACIONES", "/ecobici/gbfs/stationInformation"), 2.0, "station"
    ),
}

LEGACY_STOPS_RADIUS_KM = 1.0


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class InvalidParameter(Exception):
    pass


app = Flask(__name__, static_folder=None)
session = requests.Session()


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = phi2 - phi1
    d_lambda = math.radians(b.longitude - a.longitude)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push h a hair past 1 for antipodal points.
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, h)))


def record_point(record: Any) -> Optional[GeoPoint]:
    coords = record_coordinates(record)
    return GeoPoint(*coords) if coords is not None else None


def filter_by_radius(records: List[Any], origin: GeoPoint, radius_km: float) -> List[Any]:
    kept: List[Any] = []
    for record in records:
        point = record_point(record)
        if point is None:
            continue
        if haversine_km(origin, point) <= radius_km:
            kept.append(record)
    return kept


def extract_records(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("stations"), list):
            return data["stations"]
        for key in ("stations", "entity", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise UpstreamError(502, "upstream returned an unexpected payload")


def request_json(
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    service_name: str = "upstream",
) -> Any:
    try:
        resp = session.get(
            url,
            params=params,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
    except requests.RequestException as exc:
        raise UpstreamError(504, f"{service_name} request failed") from exc

    if resp.status_code < 200 or resp.status_code >= 300:
        raise UpstreamError(resp.status_code, f"{service_name} upstream error {resp.status_code}")

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON") from exc


def transporte_get_json(path: str) -> Any:
    if not (TRANSPORTE_CLIENT_ID and TRANSPORTE_CLIENT_SECRET):
        raise MissingConfig("transit API credentials not set")
    url = f"{TRANSPORTE_BASE}{path}"
    log.info("Upstream request: %s", path)
    return request_json(
        url,
        params={"client_id": TRANSPORTE_CLIENT_ID, "client_secret": TRANSPORTE_CLIENT_SECRET},
        timeout=(TRANSPORTE_CONNECT_TIMEOUT_SEC, TRANSPORTE_READ_TIMEOUT_SEC),
        service_name="transit API",
    )


def parse_float_arg(name: str) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise InvalidParameter(f"{name} must be numeric") from exc
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be finite")
    return value


def parse_origin() -> Optional[GeoPoint]:
    lat = parse_float_arg("lat")
    lng = parse_float_arg("lng")
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise InvalidParameter("lat and lng must be given together")
    if not -90.0 <= lat <= 90.0:
        raise InvalidParameter("lat out of range")
    if not -180.0 <= lng <= 180.0:
        raise InvalidParameter("lng out of range")
    return GeoPoint(lat, lng)


def parse_radius(default_km: float) -> float:
    radius = parse_float_arg("radio")
    if radius is None:
        return default_km
    if radius <= 0:
        raise InvalidParameter("radio must be positive")
    return radius


def build_envelope(records: List[Any], total: int) -> JsonDict:
    return {
        "success": True,
        "data": records,
        "total": total,
        "filtered": len(records),
        "timestamp": utc_now_iso(),
    }


def error_response(status: int, error: str, details: Optional[str] = None) -> Response:
    payload: JsonDict = {
        "success": False,
        "data": [],
        "total": 0,
        "filtered": 0,
        "error": error,
        "timestamp": utc_now_iso(),
    }
    if details is not None:
        payload["details"] = details
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def fetch_transit(route: TransitRoute, origin: Optional[GeoPoint], radius_km: Optional[float]) -> JsonDict:
    records = extract_records(transporte_get_json(route.upstream_path))
    total = len(records)
    if origin is not None and radius_km is not None:
        records = filter_by_radius(records, origin, radius_km)
        log.info("Filtered %d of %d %s records within %.2f km", len(records), total, route.record_kind, radius_km)
    return build_envelope(records[:MAX_RECORDS], total)


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ALLOWED_ORIGINS and request.path.startswith("/api/"):
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Max-Age"] = "600"

    # The offline worker decides freshness; the HTTP cache must not.
    if request.path == "/" or request.path.endswith(NO_CACHE_SUFFIXES):
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        resp.headers["Pragma"] = "no-cache"
        resp.headers["Expires"] = "0"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")

    if ENABLE_HSTS and request.is_secure:
        resp.headers.setdefault(
            "Strict-Transport-Security",
            f"max-age={HSTS_MAX_AGE_SEC}; includeSubDomains",
        )
    return resp


@app.route("/health", methods=["GET"])
def health() -> Response:
    return jsonify(
        {
            "message": "Backend Transporte BA funcionando",
            "status": "OK",
            "timestamp": utc_now_iso(),
            "version": APP_VERSION,
            "features": ["colectivos", "subtes", "trenes", "ecobici"],
        }
    )


@app.route("/api/paradas-cercanas", methods=["GET", "OPTIONS"])
def paradas_cercanas() -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    try:
        origin = parse_origin()
        radius_km = parse_radius(LEGACY_STOPS_RADIUS_KM)
    except InvalidParameter as exc:
        resp = jsonify({"error": INVALID_PARAMS, "details": str(exc)})
        resp.status_code = 400
        return resp
    if origin is None:
        resp = jsonify({"error": INVALID_PARAMS, "details": "lat and lng are required"})
        resp.status_code = 400
        return resp

    route = TRANSIT_ROUTES[("colectivos", "paradas")]
    try:
        records = extract_records(transporte_get_json(route.upstream_path))
    except (UpstreamError, MissingConfig) as exc:
        log.warning("Legacy nearby stops failed: %s", exc)
        resp = jsonify({"error": UPSTREAM_FAILURE, "details": str(exc)})
        resp.status_code = 500
        return resp

    paradas = filter_by_radius(records, origin, radius_km)[:MAX_RECORDS]
    return jsonify(
        {
            "ubicacion": {"lat": origin.latitude, "lng": origin.longitude},
            "radio": radius_km,
            "paradas": paradas,
            "total": len(paradas),
            "timestamp": utc_now_iso(),
        }
    )


@app.route("/api/<mode>/<resource>", methods=["GET", "OPTIONS"])
def transit_collection(mode: str, resource: str) -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    route = TRANSIT_ROUTES.get((mode, resource))
    if route is None:
        return error_response(404, "Recurso no encontrado")

    origin: Optional[GeoPoint] = None
    radius_km: Optional[float] = None
    if route.default_radius_km is not None:
        try:
            origin = parse_origin()
            radius_km = parse_radius(route.default_radius_km)
        except InvalidParameter as exc:
            return error_response(400, INVALID_PARAMS, str(exc))

    try:
        payload = fetch_transit(route, origin, radius_km)
    except (UpstreamError, MissingConfig) as exc:
        log.warning("Upstream failure on /api/%s/%s: %s", mode, resource, exc)
        return error_response(500, UPSTREAM_FAILURE, str(exc))
    except Exception:
        log.exception("Unexpected error on /api/%s/%s", mode, resource)
        return error_response(500, UPSTREAM_FAILURE, "unexpected error")

    return jsonify(payload)


@app.route("/api/<path:unknown>", methods=["GET"])
def unknown_api(unknown: str) -> Response:
    return error_response(404, "Recurso no encontrado")


@app.route("/", defaults={"path": ""}, methods=["GET"])
@app.route("/<path:path>", methods=["GET"])
def app_shell(path: str) -> Response:
    if path:
        candidate = os.path.abspath(os.path.join(STATIC_DIR, path))
        if candidate.startswith(STATIC_DIR + os.sep) and os.path.isfile(candidate):
            return send_from_directory(STATIC_DIR, path)
        if os.path.splitext(path)[1]:
            return make_response("Not found", 404)
    return send_from_directory(STATIC_DIR, SHELL_DOCUMENT)


if __name__ == "__main__":
    if not (TRANSPORTE_CLIENT_ID and TRANSPORTE_CLIENT_SECRET):
        log.warning("TRANSPORTE_CLIENT_ID/TRANSPORTE_CLIENT_SECRET not set; /api routes will fail")
    log.info("Serving Transporte BA on http://%s:%d (health: /health)", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)
