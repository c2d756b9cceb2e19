import importlib
import sys

import pytest
import requests


_ENV_KEYS = [
    "TRANSPORTE_BASE_URL",
    "TRANSPORTE_CLIENT_ID",
    "TRANSPORTE_CLIENT_SECRET",
    "MAX_RECORDS",
    "CORS_ALLOWED_ORIGINS",
    "STATIC_DIR",
]

CENTER = (-34.6037, -58.3816)


def load_module(monkeypatch, **env):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    sys.modules.pop("transporte_proxy", None)
    import transporte_proxy
    return importlib.reload(transporte_proxy)


def with_credentials(monkeypatch, **env):
    return load_module(
        monkeypatch,
        TRANSPORTE_CLIENT_ID="secret_id",
        TRANSPORTE_CLIENT_SECRET="secret_value",
        **env,
    )


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("No JSON")
        return self._payload


def vehicles_near_center():
    lat, lng = CENTER
    inside = [0.001, 0.003, 0.005]
    outside = [0.02, 0.03, 0.05, 0.08, 0.1, 0.2, 0.5]
    return [
        {"id": i, "latitude": lat + offset, "longitude": lng, "route_short_name": str(i)}
        for i, offset in enumerate(inside + outside)
    ]


def test_health(monkeypatch):
    mod = load_module(monkeypatch)
    resp = mod.app.test_client().get("/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "OK"
    assert data["features"] == ["colectivos", "subtes", "trenes", "ecobici"]
    assert data["version"] == mod.APP_VERSION


def test_unfiltered_collection(monkeypatch):
    mod = with_credentials(monkeypatch)
    stations = [{"nombre": f"Estación {i}", "linea": "A", "lat": -34.6, "lon": -58.4} for i in range(5)]
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: stations)

    resp = mod.app.test_client().get("/api/subtes/estaciones")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert len(data["data"]) == data["total"] == 5
    assert data["filtered"] == 5
    assert data["timestamp"].endswith("Z")


def test_unfiltered_collection_is_capped(monkeypatch):
    mod = with_credentials(monkeypatch, MAX_RECORDS="3")
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: vehicles_near_center())

    data = mod.app.test_client().get("/api/colectivos/posiciones").get_json()
    assert data["total"] == 10
    assert len(data["data"]) == data["filtered"] == 3


def test_radius_filter(monkeypatch):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: vehicles_near_center())

    resp = mod.app.test_client().get(
        "/api/colectivos/posiciones?lat=-34.6037&lng=-58.3816&radio=1"
    )
    data = resp.get_json()
    assert data["success"] is True
    assert data["total"] == 10
    assert data["filtered"] == 3
    assert [v["id"] for v in data["data"]] == [0, 1, 2]


def test_default_radius_per_route(monkeypatch):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: vehicles_near_center())
    client = mod.app.test_client()

    # 5 km keeps everything up to 0.03 degrees (~3.3 km).
    data = client.get("/api/colectivos/posiciones?lat=-34.6037&lng=-58.3816").get_json()
    assert data["filtered"] == 5

    # 2 km keeps the three closest and not the one at ~2.2 km.
    data = client.get("/api/ecobici/estaciones?lat=-34.6037&lng=-58.3816").get_json()
    assert data["filtered"] == 3


def test_records_without_coordinates_are_dropped_when_filtering(monkeypatch):
    mod = with_credentials(monkeypatch)
    records = [
        {"lat": CENTER[0], "lng": CENTER[1]},
        {"name": "no coords"},
        {"lat": "n/a", "lng": CENTER[1]},
        "garbage",
    ]
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: records)

    data = mod.app.test_client().get(
        "/api/colectivos/paradas?lat=-34.6037&lng=-58.3816"
    ).get_json()
    assert data["total"] == 4
    assert data["filtered"] == 1


def test_gbfs_payload_is_unwrapped(monkeypatch):
    mod = with_credentials(monkeypatch)
    payload = {"last_updated": 1, "data": {"stations": [{"name": "Plaza de Mayo", "lat": -34.6083, "lon": -58.3712}]}}
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: payload)

    data = mod.app.test_client().get("/api/ecobici/estaciones").get_json()
    assert data["success"] is True
    assert data["data"][0]["name"] == "Plaza de Mayo"


def test_non_geo_route_ignores_coordinates(monkeypatch):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: vehicles_near_center())

    data = mod.app.test_client().get("/api/trenes/estaciones?lat=0&lng=0&radio=1").get_json()
    assert data["filtered"] == 10


def test_upstream_network_error(monkeypatch):
    mod = with_credentials(monkeypatch)

    def boom(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(mod.session, "get", boom)

    resp = mod.app.test_client().get("/api/colectivos/posiciones")
    assert resp.status_code == 500
    data = resp.get_json()
    assert data["success"] is False
    assert data["error"] == "API falló"
    assert data["details"] == "transit API request failed"
    assert data["data"] == []


@pytest.mark.parametrize(
    "fake",
    [FakeResponse(status_code=503), FakeResponse(invalid_json=True), FakeResponse(payload={"odd": 1})],
)
def test_upstream_bad_responses(monkeypatch, fake):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod.session, "get", lambda *args, **kwargs: fake)

    resp = mod.app.test_client().get("/api/subtes/estado")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "API falló"


def test_single_upstream_call_with_credentials(monkeypatch):
    mod = with_credentials(monkeypatch)
    calls = []

    def fake_get(url, params=None, timeout=None, headers=None):
        calls.append((url, params))
        return FakeResponse(payload=[])

    monkeypatch.setattr(mod.session, "get", fake_get)

    mod.app.test_client().get("/api/colectivos/lineas")
    assert len(calls) == 1
    url, params = calls[0]
    assert url == "https://apitransporte.buenosaires.gob.ar/colectivos/routes"
    assert params == {"client_id": "secret_id", "client_secret": "secret_value"}


def test_missing_credentials(monkeypatch):
    mod = load_module(monkeypatch)
    resp = mod.app.test_client().get("/api/colectivos/posiciones")
    assert resp.status_code == 500
    assert resp.get_json()["success"] is False


def test_secrets_not_leaked(monkeypatch):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod.session, "get", lambda *args, **kwargs: FakeResponse(status_code=401))

    body = mod.app.test_client().get("/api/colectivos/posiciones").get_data(as_text=True)
    assert "secret_id" not in body
    assert "secret_value" not in body


@pytest.mark.parametrize(
    "query",
    ["lat=abc&lng=-58.4", "lat=-34.6", "lat=-95&lng=-58.4", "lat=-34.6&lng=200", "lat=-34.6&lng=-58.4&radio=0"],
)
def test_invalid_parameters(monkeypatch, query):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: [])

    resp = mod.app.test_client().get(f"/api/colectivos/posiciones?{query}")
    assert resp.status_code == 400
    data = resp.get_json()
    assert data["success"] is False
    assert data["error"] == "Parámetros inválidos"


def test_unknown_api_route(monkeypatch):
    mod = load_module(monkeypatch)
    client = mod.app.test_client()
    assert client.get("/api/aviones/estaciones").status_code == 404
    assert client.get("/api/a/b/c").get_json()["success"] is False


def test_legacy_nearby_stops(monkeypatch):
    mod = with_credentials(monkeypatch)
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: vehicles_near_center())

    resp = mod.app.test_client().get("/api/paradas-cercanas?lat=-34.6037&lng=-58.3816")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ubicacion"] == {"lat": -34.6037, "lng": -58.3816}
    assert data["radio"] == 1.0
    assert data["total"] == len(data["paradas"]) == 3


def test_legacy_nearby_stops_failure(monkeypatch):
    mod = with_credentials(monkeypatch)

    def boom(path):
        raise mod.UpstreamError(503, "transit API upstream error 503")

    monkeypatch.setattr(mod, "transporte_get_json", boom)

    resp = mod.app.test_client().get("/api/paradas-cercanas?lat=-34.6037&lng=-58.3816")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "API falló", "details": "transit API upstream error 503"}


def test_legacy_nearby_stops_requires_coordinates(monkeypatch):
    mod = with_credentials(monkeypatch)
    assert mod.app.test_client().get("/api/paradas-cercanas").status_code == 400


def test_cors_allow_deny(monkeypatch):
    mod = with_credentials(monkeypatch, CORS_ALLOWED_ORIGINS="http://allowed.test")
    monkeypatch.setattr(mod, "transporte_get_json", lambda path: [])

    client = mod.app.test_client()
    resp = client.get("/api/subtes/estaciones", headers={"Origin": "http://allowed.test"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "http://allowed.test"

    resp = client.get("/api/subtes/estaciones", headers={"Origin": "http://blocked.test"})
    assert "Access-Control-Allow-Origin" not in resp.headers


def test_app_shell_and_spa_fallback(monkeypatch, tmp_path):
    (tmp_path / "index.html").write_text("<html>shell</html>", encoding="utf-8")
    (tmp_path / "manifest.json").write_text('{"name": "Transporte BA"}', encoding="utf-8")
    mod = load_module(monkeypatch, STATIC_DIR=str(tmp_path))
    client = mod.app.test_client()

    resp = client.get("/")
    assert b"shell" in resp.data
    assert resp.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"

    resp = client.get("/manifest.json")
    assert resp.get_json() == {"name": "Transporte BA"}
    assert resp.headers["Pragma"] == "no-cache"

    resp = client.get("/mapa/cercanos")
    assert resp.status_code == 200
    assert b"shell" in resp.data


def test_shipped_static_assets_precache_without_shell_fallback(monkeypatch):
    from urllib.parse import urlsplit

    from offline_worker import STATIC_ASSETS, CacheStorage, FetchResponse, OfflineWorker, static_cache_name

    mod = load_module(monkeypatch)
    client = mod.app.test_client()

    def network(request):
        resp = client.get(urlsplit(request.url).path)
        return FetchResponse(resp.status_code, resp.data, dict(resp.headers))

    storage = CacheStorage()
    worker = OfflineWorker("http://localhost:3000/", network, storage, version="test")
    worker.install()
    assert worker.state == "installed"

    cache = storage.open(static_cache_name("test"))
    for path in STATIC_ASSETS:
        cached = cache.match(worker.asset_url(path))
        assert cached is not None and cached.status == 200
        if path not in ("/", "/index.html"):
            assert b"<!DOCTYPE html>" not in cached.body, path


def test_missing_file_with_extension_is_not_found(monkeypatch):
    mod = load_module(monkeypatch)
    client = mod.app.test_client()

    assert client.get("/js/app.js").status_code == 404
    assert client.get("/nope.css").status_code == 404

    resp = client.get("/mapa/cercanos")
    assert resp.status_code == 200
    assert b"<!DOCTYPE html>" in resp.data
