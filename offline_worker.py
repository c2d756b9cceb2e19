# Offline cache layer: intercepts app fetches and keeps the app usable offline.

from dataclasses import dataclass, field
import json
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests

from transporte_common import utc_now_iso

log = logging.getLogger("offline_worker")

CACHE_PREFIX = "transporte-ba"
CACHE_VERSION = os.getenv("CACHE_VERSION", "v5")

STATIC_ASSETS: Tuple[str, ...] = (
    "/",
    "/index.html",
    "/css/styles.css",
    "/manifest.json",
    "/icons/icon-192.svg",
    "/icons/icon-512.svg",
)
ROOT_DOCUMENTS: Tuple[str, ...] = ("/index.html", "/")

API_PATHS = frozenset(
    {
        "/api/colectivos/posiciones",
        "/api/colectivos/paradas",
        "/api/colectivos/lineas",
        "/api/subtes/estaciones",
        "/api/subtes/estado",
        "/api/trenes/estaciones",
        "/api/trenes/estado",
        "/api/ecobici/estaciones",
        "/api/paradas-cercanas",
    }
)

SKIP_WAITING = "SKIP_WAITING"
NO_CACHE_ERROR = "API falló - Sin conexión y sin datos en cache"

NETWORK_CONNECT_TIMEOUT_SEC = 3.0
NETWORK_READ_TIMEOUT_SEC = 15.0


def static_cache_name(version: str = CACHE_VERSION) -> str:
    return f"{CACHE_PREFIX}-static-{version}"


def api_cache_name(version: str = CACHE_VERSION) -> str:
    return f"{CACHE_PREFIX}-api-{version}"


@dataclass(frozen=True)
class FetchRequest:
    url: str
    method: str = "GET"
    # "document" for page navigations, empty for subresources and XHR.
    destination: str = ""

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"


@dataclass
class FetchResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    def clone(self) -> "FetchResponse":
        return FetchResponse(self.status, self.body, dict(self.headers))


@dataclass
class CacheEntry:
    status: int
    body: bytes
    headers: Dict[str, str]
    captured_at: str

    def to_response(self) -> FetchResponse:
        return FetchResponse(self.status, self.body, dict(self.headers))


class NetworkError(Exception):
    pass


class PrecacheError(Exception):
    def __init__(self, url: str, status: Optional[int]):
        super().__init__(f"precache failed for {url} (status {status})")
        self.url = url
        self.status = status


Network = Callable[[FetchRequest], FetchResponse]


class Cache:
    def __init__(self, name: str, lock: threading.Lock) -> None:
        self.name = name
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = lock

    def put(self, url: str, response: FetchResponse) -> None:
        entry = CacheEntry(
            status=response.status,
            body=response.body,
            headers=dict(response.headers),
            captured_at=utc_now_iso(),
        )
        with self._lock:
            self._entries[url] = entry

    def match(self, url: str) -> Optional[FetchResponse]:
        with self._lock:
            entry = self._entries.get(url)
        return entry.to_response() if entry is not None else None

    def entry(self, url: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(url)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)


class CacheStorage:
    """Named cache namespaces, shared by every worker generation of an origin."""

    def __init__(self) -> None:
        self._caches: Dict[str, Cache] = {}
        self._lock = threading.Lock()

    def open(self, name: str) -> Cache:
        with self._lock:
            cache = self._caches.get(name)
            if cache is None:
                cache = Cache(name, self._lock)
                self._caches[name] = cache
            return cache

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._caches

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._caches)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._caches.pop(name, None) is not None


class RequestsNetwork:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (NETWORK_CONNECT_TIMEOUT_SEC, NETWORK_READ_TIMEOUT_SEC),
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def __call__(self, request: FetchRequest) -> FetchResponse:
        try:
            resp = self.session.request(request.method, request.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"network request failed: {exc.__class__.__name__}") from exc
        return FetchResponse(resp.status_code, resp.content, dict(resp.headers))


def no_cache_response() -> FetchResponse:
    body = json.dumps({"success": False, "error": NO_CACHE_ERROR}).encode("utf-8")
    return FetchResponse(503, body, {"Content-Type": "application/json"})


def not_found_response() -> FetchResponse:
    return FetchResponse(404, b"Not found", {"Content-Type": "text/plain"})


class OfflineWorker:
    """One generation of the offline worker.

    Static assets and transit data are both served network-first; the caches
    are only consulted after the network has failed or answered non-200.
    Requests outside the asset list and the API allow-list are not handled
    (``handle_fetch`` returns ``None``) and go to the network untouched.
    """

    def __init__(
        self,
        scope: str,
        network: Network,
        storage: CacheStorage,
        version: str = CACHE_VERSION,
    ) -> None:
        self.scope = scope if scope.endswith("/") else scope + "/"
        self.network = network
        self.storage = storage
        self.version = version
        self.static_cache = static_cache_name(version)
        self.api_cache = api_cache_name(version)
        self.state = "parsed"
        self.registration: Optional["Registration"] = None
        scope_parts = urlsplit(self.scope)
        self._origin = (scope_parts.scheme, scope_parts.netloc)

    def asset_url(self, path: str) -> str:
        return urljoin(self.scope, path)

    def install(self) -> None:
        self.state = "installing"
        log.info("Worker %s installing, precaching %d assets", self.version, len(STATIC_ASSETS))
        fetched: List[Tuple[str, FetchResponse]] = []
        for path in STATIC_ASSETS:
            url = self.asset_url(path)
            try:
                resp = self.network(FetchRequest(url))
            except NetworkError as exc:
                self.state = "redundant"
                raise PrecacheError(url, None) from exc
            if resp.status != 200:
                self.state = "redundant"
                raise PrecacheError(url, resp.status)
            fetched.append((url, resp))

        cache = self.storage.open(self.static_cache)
        for url, resp in fetched:
            cache.put(url, resp)
        self.state = "installed"

    def activate(self) -> List[str]:
        self.state = "activating"
        current = {self.static_cache, self.api_cache}
        deleted: List[str] = []
        for name in self.storage.keys():
            if name not in current and self.storage.delete(name):
                log.info("Deleting stale cache %s", name)
                deleted.append(name)
        self.state = "activated"
        return deleted

    def handle_message(self, message: Any) -> bool:
        if isinstance(message, dict) and message.get("type") == SKIP_WAITING:
            if self.registration is not None:
                self.registration.skip_waiting(self)
            return True
        log.debug("Ignoring worker message: %r", message)
        return False

    def handle_fetch(self, request: FetchRequest) -> Optional[FetchResponse]:
        if request.method.upper() != "GET":
            return None
        parts = urlsplit(request.url)
        if (parts.scheme, parts.netloc) != self._origin:
            return None
        path = request.path
        if path in API_PATHS:
            return self._api_network_first(request)
        if path in STATIC_ASSETS:
            return self._static_network_first(request)
        return None

    def _try_network(self, request: FetchRequest) -> Optional[FetchResponse]:
        try:
            return self.network(request)
        except (NetworkError, requests.RequestException) as exc:
            log.info("Network unavailable for %s: %s", request.path, exc)
            return None
        except Exception:
            log.exception("Network adapter failed for %s", request.url)
            return None

    def _static_network_first(self, request: FetchRequest) -> FetchResponse:
        cache = self.storage.open(self.static_cache)
        resp = self._try_network(request)
        if resp is not None and resp.status == 200:
            cache.put(request.url, resp.clone())
            return resp

        entry = cache.entry(request.url)
        if entry is not None:
            log.info("Serving cached asset %s captured at %s", request.path, entry.captured_at)
            return entry.to_response()

        if request.destination == "document":
            for path in ROOT_DOCUMENTS:
                shell = cache.match(self.asset_url(path))
                if shell is not None:
                    return shell
        return not_found_response()

    def _api_network_first(self, request: FetchRequest) -> FetchResponse:
        cache = self.storage.open(self.api_cache)
        resp = self._try_network(request)
        if resp is not None and resp.status == 200:
            cache.put(request.url, resp.clone())
            return resp

        entry = cache.entry(request.url)
        if entry is not None:
            log.info("Serving cached data for %s captured at %s", request.url, entry.captured_at)
            return entry.to_response()
        log.warning("No network and no cached data for %s", request.url)
        return no_cache_response()


class Registration:
    """Page-side view of the worker lifecycle.

    Holds at most one active and one waiting generation. The page talks to a
    worker only through ``fetch`` and ``post_message``.
    """

    def __init__(self, network: Network) -> None:
        self.network = network
        self.active: Optional[OfflineWorker] = None
        self.waiting: Optional[OfflineWorker] = None

    @property
    def controller(self) -> Optional[OfflineWorker]:
        return self.active

    def register(self, worker: OfflineWorker) -> None:
        worker.registration = self
        try:
            worker.install()
        except PrecacheError as exc:
            log.error("Worker %s install failed: %s", worker.version, exc)
            return
        if self.active is None:
            self._promote(worker)
        else:
            log.info("Worker %s installed, waiting for activation", worker.version)
            self.waiting = worker

    def post_message(self, message: Any) -> bool:
        target = self.waiting or self.active
        if target is None:
            return False
        return target.handle_message(message)

    def skip_waiting(self, worker: OfflineWorker) -> None:
        if worker is not self.waiting:
            return
        self.waiting = None
        if self.active is not None:
            self.active.state = "redundant"
        self._promote(worker)

    def _promote(self, worker: OfflineWorker) -> None:
        worker.activate()
        self.active = worker
        log.info("Worker %s controls %s", worker.version, worker.scope)

    def fetch(self, request: FetchRequest) -> FetchResponse:
        controller = self.active
        if controller is not None:
            resp = controller.handle_fetch(request)
            if resp is not None:
                return resp
        return self.network(request)
