# Client application state: active map layers, saved preferences and layer refresh.

from dataclasses import dataclass
import json
import logging
import os
import tempfile
import time
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urljoin

from geolocation import GpsProvider, IpLookup, LocationResult, locate, lookup_ip_location
from offline_worker import (
    CacheStorage,
    FetchRequest,
    FetchResponse,
    NetworkError,
    OfflineWorker,
    Registration,
    RequestsNetwork,
)
from transporte_common import record_coordinates

log = logging.getLogger("transporte_client")

PREFERENCES_KEY = "transporte-ba-capas"
LAYER_REFRESH_DELAY_SEC = 0.4


@dataclass(frozen=True)
class Layer:
    path: str
    label: str
    sends_location: bool
    default_active: bool = False


LAYERS: Dict[str, Layer] = {
    "colectivos": Layer("/api/colectivos/posiciones", "colectivos", True, default_active=True),
    "paradas": Layer("/api/colectivos/paradas", "paradas de colectivo", True),
    "subtes": Layer("/api/subtes/estaciones", "estaciones de subte", False),
    "trenes": Layer("/api/trenes/estaciones", "estaciones de tren", False),
    "ecobici": Layer("/api/ecobici/estaciones", "estaciones de Ecobici", True),
}

TITLE_KEYS = ("name", "nombre", "routeName", "route_short_name", "headsign", "stop_name")

Fetch = Callable[[FetchRequest], FetchResponse]
Handler = Callable[[Any], None]


@dataclass(frozen=True)
class Marker:
    layer: str
    latitude: float
    longitude: float
    title: str


class LocalStorage:
    """String key/value store persisted as one JSON file."""

    def __init__(self, path: str) -> None:
        self.path = path

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except ValueError:
            log.warning("Local storage at %s is corrupt, starting empty", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".storage-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise


class LayerPreferences:
    def __init__(self, storage: LocalStorage, key: str = PREFERENCES_KEY) -> None:
        self.storage = storage
        self.key = key

    def load(self) -> Dict[str, bool]:
        raw = self.storage.get_item(self.key)
        if raw is None:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            log.warning("Ignoring unreadable layer preferences")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if k in LAYERS and isinstance(v, bool)}

    def save(self, layers: Mapping[str, bool]) -> None:
        self.storage.set_item(self.key, json.dumps(dict(layers)))


def record_marker(layer_id: str, record: Any) -> Optional[Marker]:
    coords = record_coordinates(record)
    if coords is None:
        return None
    lat, lng = coords
    title = next((str(record[k]) for k in TITLE_KEYS if record.get(k)), LAYERS[layer_id].label)
    return Marker(layer_id, lat, lng, title)


class AppState:
    def __init__(
        self,
        base_url: str,
        fetch: Fetch,
        preferences: LayerPreferences,
        *,
        sleep: Callable[[float], None] = time.sleep,
        refresh_delay_sec: float = LAYER_REFRESH_DELAY_SEC,
    ) -> None:
        self.base_url = base_url
        self.fetch = fetch
        self.preferences = preferences
        self.sleep = sleep
        self.refresh_delay_sec = refresh_delay_sec

        self.layers: Dict[str, bool] = {k: layer.default_active for k, layer in LAYERS.items()}
        self.layers.update(preferences.load())
        self.markers: Dict[str, List[Marker]] = {}
        self.location: Optional[LocationResult] = None
        self.banner: Optional[str] = None
        self.can_retry = False
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _emit(self, event: str, payload: Any) -> None:
        for handler in self._handlers.get(event, []):
            handler(payload)

    def show_message(self, message: str, *, retry: bool = False) -> None:
        self.banner = message
        self.can_retry = retry
        self._emit("message", message)

    def start(self, gps: Optional[GpsProvider], ip_lookup: IpLookup = lookup_ip_location) -> None:
        self.set_location(locate(gps, ip_lookup))
        self.refresh_layers()

    def set_location(self, result: LocationResult) -> None:
        self.location = result
        if result.message:
            self.show_message(result.message)
        self._emit("location", result)

    def active_layers(self) -> List[str]:
        return [k for k in LAYERS if self.layers.get(k)]

    def toggle_layer(self, layer_id: str) -> bool:
        if layer_id not in LAYERS:
            raise KeyError(layer_id)
        active = not self.layers.get(layer_id, False)
        self.layers[layer_id] = active
        self.preferences.save(self.layers)
        self._emit("layer-toggled", (layer_id, active))
        if active:
            self.load_layer(layer_id)
        else:
            self.markers.pop(layer_id, None)
        return active

    def layer_url(self, layer_id: str) -> str:
        layer = LAYERS[layer_id]
        url = urljoin(self.base_url, layer.path)
        if layer.sends_location and self.location is not None:
            url += "?" + urlencode({"lat": self.location.latitude, "lng": self.location.longitude})
        return url

    def load_layer(self, layer_id: str) -> bool:
        layer = LAYERS[layer_id]
        request = FetchRequest(self.layer_url(layer_id))
        try:
            resp = self.fetch(request)
            payload = resp.json()
        except NetworkError:
            self.show_message(f"Sin conexión: no se pudieron cargar {layer.label}.", retry=True)
            return False
        except ValueError:
            self.show_message(f"Respuesta inválida al cargar {layer.label}.", retry=True)
            return False

        if resp.status != 200 or not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else None
            self.show_message(
                f"No se pudieron cargar {layer.label}: {error or 'error ' + str(resp.status)}",
                retry=True,
            )
            return False

        records = payload.get("data")
        if records is None:
            records = []
        if not isinstance(records, list):
            self.show_message(f"Respuesta inválida al cargar {layer.label}.", retry=True)
            return False
        markers = [m for m in (record_marker(layer_id, r) for r in records) if m is not None]
        skipped = len(records) - len(markers)
        if skipped:
            log.debug("Skipped %d %s records without coordinates", skipped, layer_id)
        self.markers[layer_id] = markers
        self._emit("layer-loaded", (layer_id, markers))
        if not markers:
            self._emit("empty", layer_id)
        return True

    def refresh_layers(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for index, layer_id in enumerate(self.active_layers()):
            if index:
                self.sleep(self.refresh_delay_sec)
            results[layer_id] = self.load_layer(layer_id)
        return results


def create_app_state(base_url: str, storage_path: str) -> AppState:
    network = RequestsNetwork()
    registration = Registration(network)
    registration.register(OfflineWorker(base_url, network, CacheStorage()))
    return AppState(base_url, registration.fetch, LayerPreferences(LocalStorage(storage_path)))
