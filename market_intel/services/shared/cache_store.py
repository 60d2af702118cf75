from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import asdict, is_dataclass
from datetime import UTC, datetime
from threading import Event, RLock
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "defi:market"


def _canonical(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda item: str(item[0]))}
    if isinstance(value, (list, tuple, set, frozenset)):
        members = [_canonical(v) for v in value]
        return sorted(members, key=lambda item: json.dumps(item, sort_keys=True, default=str))
    if isinstance(value, str):
        return value.lower()
    return value


def make_cache_key(endpoint: str, options: Any) -> str:
    """Deterministic key for one endpoint and validated query: order and casing never matter."""
    payload = json.dumps(_canonical(options), sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(payload.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}:{endpoint}:{digest}"


class QueryCache:
    def __init__(self, ttl_seconds: float, max_entries: int, wait_timeout_seconds: float = 60.0) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._wait_timeout_seconds = wait_timeout_seconds
        self._cache: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._inflight: dict[str, Event] = {}
        self._lock = RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        now_ts = datetime.now(UTC).timestamp()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if expires_at <= now_ts:
                del self._cache[key]
                self._misses += 1
                return None
            self._cache.move_to_end(key)
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> Any:
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = datetime.now(UTC).timestamp() + max(ttl, 0.0)
        with self._lock:
            self._cache[key] = (expires_at, value)
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_entries:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("Evicted cache key %s", evicted)
        return value

    def cached(self, key: str, loader: Callable[[], Any], ttl_seconds: float | None = None) -> Any:
        existing = self.get(key)
        if existing is not None:
            logger.debug("Cache hit %s", key)
            return existing

        is_loader = False
        with self._lock:
            wait_event = self._inflight.get(key)
            if wait_event is None:
                wait_event = Event()
                self._inflight[key] = wait_event
                is_loader = True

        if not is_loader:
            # Provider fetches can outlast a short TTL, so waiters use their own bound.
            wait_event.wait(timeout=max(self._wait_timeout_seconds, 1.0))
            existing_after_wait = self.get(key)
            if existing_after_wait is not None:
                return existing_after_wait
            return self.set(key, loader(), ttl_seconds=ttl_seconds)

        logger.debug("Cache miss %s", key)
        try:
            value = loader()
            return self.set(key, value, ttl_seconds=ttl_seconds)
        finally:
            with self._lock:
                event = self._inflight.pop(key, None)
                if event is not None:
                    event.set()

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._cache),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "inflight": len(self._inflight),
            }
