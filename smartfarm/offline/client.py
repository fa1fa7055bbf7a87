"""
Async client for the SmartFarm API.

JSON writes that cannot reach the server are handed to the `OfflineQueue`
and replayed when `set_online(True)` reports that connectivity is back.
"""
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from smartfarm.offline.queue import OfflineQueue

logger = logging.getLogger(__name__)

API_BASE = os.getenv("SMARTFARM_API_BASE", "http://localhost:3001")


class RequestQueued(Exception):
    """Raised when a write was stored for later delivery instead of sent."""

    def __init__(self, request_id: str, endpoint: str):
        super().__init__(f"{endpoint} queued for delivery when back online (id={request_id})")
        self.request_id = request_id
        self.endpoint = endpoint


class ConnectivityMonitor:
    """Tracks online state and fires listeners on an offline -> online transition."""

    def __init__(self, online: bool = True):
        self.online = online
        self._listeners: List[Callable[[], Awaitable[Any]]] = []

    def on_online(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._listeners.append(callback)

    async def set_online(self, online: bool) -> None:
        came_back = online and not self.online
        self.online = online
        if not came_back:
            return
        logger.info("[Offline Queue] Back online, processing queue...")
        for callback in list(self._listeners):
            try:
                await callback()
            except Exception:
                logger.exception("[Offline Queue] online listener failed")


class SmartFarmClient:
    def __init__(self, base_url: str = API_BASE, queue: Optional[OfflineQueue] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 monitor: Optional[ConnectivityMonitor] = None, timeout: float = 60.0):
        self.http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.queue = queue or OfflineQueue(client=self.http)
        self.monitor = monitor or ConnectivityMonitor()
        self.monitor.on_online(self.queue.process_queue)

    async def __aenter__(self) -> "SmartFarmClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def set_online(self, online: bool) -> None:
        await self.monitor.set_online(online)

    def _url(self, path: str) -> str:
        return str(self.http.base_url.join(path))

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http.post(path, json=payload)
        except httpx.TransportError as e:
            logger.warning("POST %s failed (%s); queueing for later", path, e)
            self.monitor.online = False
            request_id = self.queue.enqueue(self._url(path), "POST", payload)
            raise RequestQueued(request_id, path) from e
        response.raise_for_status()
        return response.json()

    async def health(self) -> Dict[str, Any]:
        response = await self.http.get("/health")
        response.raise_for_status()
        return response.json()

    async def analyze_disease_image(self, image: bytes, filename: str = "image.jpg",
                                    content_type: str = "image/jpeg", crop_type: Optional[str] = None,
                                    language: Optional[str] = None,
                                    location: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
        """Upload a crop photo. Uploads are not queued; transport errors propagate."""
        data = {}
        if crop_type:
            data["cropType"] = crop_type
        if language:
            data["language"] = language
        if location:
            data["location"] = json.dumps(location)
        response = await self.http.post(
            "/api/analyze-disease",
            files={"image": (filename, image, content_type)},
            data=data,
        )
        response.raise_for_status()
        return response.json()

    async def send_chat_message(self, message: str, history: Optional[List[Dict[str, str]]] = None,
                                language: Optional[str] = None,
                                farmer_profile: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {
            "message": message,
            "history": history or [],
            "language": language or "en",
        }
        if farmer_profile is not None:
            payload["farmerProfile"] = farmer_profile
        return await self._post_json("/api/chat", payload)

    async def get_weather_advisory(self, location: Dict[str, float], activity: str,
                                   crop_type: Optional[str] = None) -> Dict[str, Any]:
        payload = {"location": location, "activity": activity}
        if crop_type:
            payload["cropType"] = crop_type
        return await self._post_json("/api/weather-advisory", payload)
