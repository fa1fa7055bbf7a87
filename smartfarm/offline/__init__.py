"""Client side: API client, durable offline queue and transport cache."""
from .cache import OfflineCacheTransport, ResponseCache
from .client import ConnectivityMonitor, RequestQueued, SmartFarmClient
from .queue import OfflineQueue, QueueStorage

__all__ = [
    'OfflineCacheTransport',
    'ResponseCache',
    'ConnectivityMonitor',
    'RequestQueued',
    'SmartFarmClient',
    'OfflineQueue',
    'QueueStorage',
]
