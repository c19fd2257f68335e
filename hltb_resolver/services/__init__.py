"""Caching, request queueing, the fallback database and the tiered lookup service."""

from .cache_service import CacheService, JsonFileStore, MemoryStore
from .fallback_db import FallbackDatabase
from .integrated_service import IntegratedService
from .queue_service import QueueService

__all__ = [
    "CacheService",
    "FallbackDatabase",
    "IntegratedService",
    "JsonFileStore",
    "MemoryStore",
    "QueueService",
]
