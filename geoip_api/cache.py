import hashlib
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import redis
from pydantic import ValidationError

from geoip_api.errors import CacheBackendError
from geoip_api.logger import logger
from geoip_api.models.common import GeoRecord


class CacheBackend(ABC):
    """Key/value store with per-entry time-to-live."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self, prefix: str) -> None:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    """In-process store.

    Expired entries are dropped when read, and writes sweep out every expired
    entry at most once per `sweep_interval` seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._entries = {entry_key: entry for entry_key, entry in self._entries.items() if entry[0] > now}
                self._next_sweep = now + self.sweep_interval
            self._entries[key] = (now + ttl, value)

    def clear(self, prefix: str) -> None:
        with self._lock:
            self._entries = {key: entry for key, entry in self._entries.items() if not key.startswith(prefix)}

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Shared store for multi-process deployments (GET/SETEX of JSON strings)."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except redis.RedisError as exc:
            raise CacheBackendError(str(exc)) from exc
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self._client.setex(key, ttl, value)
        except redis.RedisError as exc:
            raise CacheBackendError(str(exc)) from exc

    def clear(self, prefix: str) -> None:
        try:
            for key in self._client.scan_iter(match=f"{prefix}*"):
                self._client.delete(key)
        except redis.RedisError as exc:
            raise CacheBackendError(str(exc)) from exc


class LookupCache:
    """Memoizes resolved GeoRecords per (provider, address).

    Best effort: backend failures are logged and behave as a miss (get) or a
    no-op (put), so a broken store never fails a lookup.
    """

    def __init__(self, backend: CacheBackend, ttl: int = 3600, prefix: str = "geoip_", enabled: bool = True) -> None:
        self._backend = backend
        self.ttl = ttl
        self.prefix = prefix
        self.enabled = enabled

    def key_for(self, provider_id: str, ip: str) -> str:
        digest = hashlib.sha1(f"{provider_id}|{ip}".encode()).hexdigest()
        return f"{self.prefix}{digest}"

    def get(self, provider_id: str, ip: str) -> GeoRecord | None:
        if not self.enabled:
            return None
        key = self.key_for(provider_id, ip)
        try:
            cached = self._backend.get(key)
        except CacheBackendError as exc:
            logger.warning(f"Cache read failed, bypassing cache provider={provider_id} ip={ip} error={exc}")
            return None
        if cached is None:
            return None
        try:
            return GeoRecord.model_validate_json(cached)
        except ValidationError:
            logger.warning(f"Discarding unreadable cache entry provider={provider_id} ip={ip}")
            return None

    def put(self, provider_id: str, ip: str, record: GeoRecord, ttl: int | None = None) -> None:
        if not self.enabled:
            return
        try:
            self._backend.set(self.key_for(provider_id, ip), record.model_dump_json(), ttl or self.ttl)
        except CacheBackendError as exc:
            logger.warning(f"Cache write failed provider={provider_id} ip={ip} error={exc}")

    def clear(self) -> None:
        try:
            self._backend.clear(self.prefix)
        except CacheBackendError as exc:
            logger.warning(f"Cache clear failed error={exc}")
