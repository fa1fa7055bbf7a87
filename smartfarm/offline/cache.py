"""
Response cache at the HTTP transport boundary.

`OfflineCacheTransport` wraps another httpx transport and keeps the client
usable with stale data while offline:

- non-GET requests go straight to the network and are never cached;
- GET /api/... is network first, falling back to the runtime cache;
- any other GET is cache first, falling back to the network.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

CACHE_NAME = "smartfarm-v1"
RUNTIME_CACHE = "smartfarm-runtime"

STATIC_ASSETS = [
    "/",
    "/offline.html",
    "/manifest.json",
    "/icons/icon-192.png",
    "/icons/icon-512.png",
]
OFFLINE_PAGE = "/offline.html"


@dataclass(frozen=True)
class CachedResponse:
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    content: bytes

    def to_response(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(self.status_code, headers=list(self.headers), content=self.content, request=request)


class ResponseCache:
    """In-memory named caches keyed by URL."""

    def __init__(self):
        self._caches: Dict[str, Dict[str, CachedResponse]] = {}

    def open(self, name: str) -> Dict[str, CachedResponse]:
        return self._caches.setdefault(name, {})

    def keys(self) -> List[str]:
        return list(self._caches)

    def delete(self, name: str) -> None:
        self._caches.pop(name, None)

    def match(self, url: str, names: Optional[Iterable[str]] = None) -> Optional[CachedResponse]:
        for name in names or list(self._caches):
            hit = self._caches.get(name, {}).get(url)
            if hit is not None:
                return hit
        return None


def _key(request: httpx.Request) -> str:
    return str(request.url)


def _is_navigation(request: httpx.Request) -> bool:
    if request.headers.get("sec-fetch-mode") == "navigate":
        return True
    return request.headers.get("accept", "").startswith("text/html")


class OfflineCacheTransport(httpx.AsyncBaseTransport):
    def __init__(self, inner: Optional[httpx.AsyncBaseTransport] = None, cache: Optional[ResponseCache] = None,
                 static_assets: Optional[List[str]] = None, api_prefix: str = "/api/"):
        self.inner = inner or httpx.AsyncHTTPTransport()
        self.cache = cache or ResponseCache()
        self.static_assets = list(STATIC_ASSETS if static_assets is None else static_assets)
        self.api_prefix = api_prefix

    async def _fetch(self, request: httpx.Request) -> Tuple[httpx.Response, CachedResponse]:
        response = await self.inner.handle_async_request(request)
        try:
            content = await response.aread()
        finally:
            await response.aclose()
        # aread() already decoded the body
        headers = tuple(
            (k, v) for k, v in response.headers.multi_items()
            if k.lower() not in ("content-encoding", "content-length", "transfer-encoding")
        )
        entry = CachedResponse(response.status_code, headers, content)
        return entry.to_response(request), entry

    async def install(self, base_url: str) -> None:
        """Pre-cache the static asset list; missing assets are skipped."""
        static = self.cache.open(CACHE_NAME)
        base = httpx.URL(base_url)
        for path in self.static_assets:
            request = httpx.Request("GET", base.join(path))
            try:
                response, entry = await self._fetch(request)
            except httpx.TransportError as e:
                logger.warning("[Cache] could not pre-cache %s: %s", path, e)
                continue
            if response.status_code == 200:
                static[_key(request)] = entry
        logger.info("[Cache] cached %d static asset(s)", len(static))

    def activate(self, keep: Iterable[str] = (CACHE_NAME, RUNTIME_CACHE)) -> None:
        keep = set(keep)
        for name in self.cache.keys():
            if name not in keep:
                logger.info("[Cache] deleting old cache: %s", name)
                self.cache.delete(name)

    def _offline_response(self, request: httpx.Request, message: str) -> httpx.Response:
        if _is_navigation(request):
            page = self.cache.match(str(request.url.join(OFFLINE_PAGE)))
            if page is not None:
                return page.to_response(request)
        return httpx.Response(503, text=message, request=request)

    async def _network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            response, entry = await self._fetch(request)
        except httpx.TransportError as e:
            cached = self.cache.match(_key(request))
            if cached is not None:
                logger.info("[Cache] network failed (%s), serving cached %s", e, request.url)
                return cached.to_response(request)
            return self._offline_response(request, "Offline - no cached data available")
        self.cache.open(RUNTIME_CACHE)[_key(request)] = entry
        return response

    async def _cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = self.cache.match(_key(request), (CACHE_NAME, RUNTIME_CACHE))
        if cached is not None:
            logger.debug("[Cache] serving from cache: %s", request.url)
            return cached.to_response(request)
        try:
            response, entry = await self._fetch(request)
        except httpx.TransportError:
            return self._offline_response(request, "Offline")
        if response.status_code == 200:
            self.cache.open(RUNTIME_CACHE)[_key(request)] = entry
        return response

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method != "GET":
            return await self.inner.handle_async_request(request)
        if request.url.path.startswith(self.api_prefix):
            return await self._network_first(request)
        return await self._cache_first(request)

    async def aclose(self) -> None:
        await self.inner.aclose()
