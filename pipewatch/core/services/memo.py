"""
Content-addressed result cache for the analytics engine.

Keys are a SHA-256 of the canonical JSON form of the call arguments, so two
calls with equal inputs share an entry regardless of object identity.
"""

import hashlib
import json
import threading
import time
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any, Callable, TypeVar

import cachetools
from pydantic import BaseModel

T = TypeVar("T")


def content_key(namespace: str, *args: Any, **kwargs: Any) -> str:
    payload = json.dumps(
        {"op": namespace, "args": args, "kwargs": kwargs},
        sort_keys=True,
        default=_encode,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return repr(value)


class ResultCache:
    """Thread-safe LRU cache with a per-entry time to live."""

    def __init__(self, max_size: int = 256, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._entries = cachetools.TTLCache(maxsize=max(max_size, 1), ttl=ttl_seconds, timer=clock)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, key: str, compute: Callable[[], T]) -> T:
        if self.max_size <= 0:
            return compute()

        with self._lock:
            try:
                value = self._entries[key]
            except KeyError:
                self.misses += 1
            else:
                self.hits += 1
                return value

        # Computed outside the lock; a concurrent miss on the same key just
        # computes the same pure value twice.
        value = compute()

        with self._lock:
            self._entries[key] = value
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"size": len(self), "hits": self.hits, "misses": self.misses}
