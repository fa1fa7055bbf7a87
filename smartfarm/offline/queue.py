"""
Durable queue of write requests that could not be delivered.

Requests are persisted as a JSON array under a single storage key, survive
restarts, and are replayed by `process_queue` once connectivity returns.
"""
import asyncio
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from smartfarm.models import QueuedRequest

logger = logging.getLogger(__name__)

QUEUE_KEY = "smartfarm-offline-queue"


class QueueStorage:
    """Named-key JSON document store, one file per key."""

    def __init__(self, directory: Optional[str] = None):
        directory = directory or os.getenv("SMARTFARM_QUEUE_DIR") or os.path.join(Path.home(), ".smartfarm")
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


def _new_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class OfflineQueue:
    """Persisted FIFO of pending requests with all-settled replay.

    Every read-modify-write of the stored array goes through one lock, so
    concurrent `enqueue` calls and an in-flight replay never overwrite each
    other. Failed deliveries stay queued with no retry limit.
    """

    def __init__(self, storage: Optional[QueueStorage] = None, key: str = QUEUE_KEY,
                 client: Optional[httpx.AsyncClient] = None):
        self.storage = storage or QueueStorage()
        self.key = key
        self.client = client
        self._lock = threading.Lock()

    def _load(self) -> List[QueuedRequest]:
        raw = self.storage.get(self.key)
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.error("[Offline Queue] stored queue is not valid JSON; ignoring it")
            return []
        if not isinstance(items, list):
            logger.error("[Offline Queue] stored queue is not a list; ignoring it")
            return []

        queue: List[QueuedRequest] = []
        for item in items:
            try:
                queue.append(QueuedRequest.model_validate(item))
            except ValidationError as e:
                logger.error("[Offline Queue] dropping malformed entry: %s", e)
        return queue

    def _save(self, queue: List[QueuedRequest]) -> None:
        self.storage.set(self.key, json.dumps([r.model_dump() for r in queue]))

    def enqueue(self, endpoint: str, method: str, body: Any) -> str:
        """Append a request and persist it; returns the request id.

        `endpoint` must be an absolute URL unless the queue's client has a
        `base_url` to resolve it against.
        """
        if httpx.URL(endpoint).is_relative_url and not (self.client and str(self.client.base_url)):
            raise ValueError(f"queued endpoint must be an absolute URL: {endpoint!r}")
        now = int(time.time() * 1000)
        request = QueuedRequest(id=_new_id(), endpoint=endpoint, method=method.upper(), body=body, timestamp=now)
        with self._lock:
            queue = self._load()
            queue.append(request)
            try:
                self._save(queue)
            except OSError as e:
                logger.error("[Offline Queue] could not persist request to %s: %s", endpoint, e)
                raise
        logger.info("[Offline Queue] queued %s %s (id=%s)", request.method, endpoint, request.id)
        return request.id

    def get_queue(self) -> List[QueuedRequest]:
        with self._lock:
            return self._load()

    def queue_size(self) -> int:
        return len(self.get_queue())

    def clear_queue(self) -> None:
        with self._lock:
            self.storage.remove(self.key)

    async def _deliver(self, client: httpx.AsyncClient, request: QueuedRequest) -> Dict[str, Any]:
        try:
            response = await client.request(request.method, request.endpoint, json=request.body)
            response.raise_for_status()
            return {"id": request.id, "success": True}
        except httpx.HTTPError as e:
            logger.warning("[Offline Queue] replay of %s failed: %s", request.id, e)
            return {"id": request.id, "success": False, "error": str(e)}

    async def process_queue(self) -> List[Dict[str, Any]]:
        """Replay every queued request concurrently and drop the delivered ones."""
        queue = self.get_queue()
        if not queue:
            return []

        logger.info("[Offline Queue] processing %d queued request(s)", len(queue))
        client = self.client or httpx.AsyncClient()
        try:
            results = await asyncio.gather(
                *(self._deliver(client, request) for request in queue),
                return_exceptions=True,
            )
        finally:
            if self.client is None:
                await client.aclose()

        outcomes: List[Dict[str, Any]] = []
        for request, result in zip(queue, results):
            if isinstance(result, BaseException):
                logger.warning("[Offline Queue] replay of %s raised: %s", request.id, result)
                result = {"id": request.id, "success": False, "error": str(result)}
            outcomes.append(result)

        delivered = {o["id"] for o in outcomes if o["success"]}
        if delivered:
            with self._lock:
                # Re-read so requests queued during the replay are kept
                remaining = [r for r in self._load() if r.id not in delivered]
                self._save(remaining)
            logger.info("[Offline Queue] delivered %d, %d still queued", len(delivered), len(remaining))
        return outcomes
