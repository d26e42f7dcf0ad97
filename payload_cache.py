# Two-tier cache for the computed arrival payload.
#
# Tier one is an in-process slot written by the refresher on this instance.
# Tier two is a durable key-value store shared by all instances; it may lag
# by one refresh on instances that did not perform it.

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from arrivals import ArrivalTable

log = logging.getLogger("muni_proxy.cache")

DEFAULT_CACHE_KEY = "arrivals"


@dataclass(frozen=True)
class CachedPayload:
    table: ArrivalTable
    compute_cost_ms: int
    updated_at: int

    def to_json(self) -> bytes:
        body = {"data": self.table, "cpuMs": self.compute_cost_ms, "updatedAt": self.updated_at}
        return json.dumps(body, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "CachedPayload":
        body = json.loads(raw)
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise ValueError("cached payload has no data object")
        return cls(
            table=body["data"],
            compute_cost_ms=int(body.get("cpuMs") or 0),
            updated_at=int(body.get("updatedAt") or 0),
        )


class DurableStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, value: bytes) -> None: ...


class RedisStore:
    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, timeout_sec: float = 2.0) -> "RedisStore":
        client = redis.Redis.from_url(
            url, socket_timeout=timeout_sec, socket_connect_timeout=timeout_sec
        )
        return cls(client)

    def get(self, key: str) -> Optional[bytes]:
        value = self.client.get(key)
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def put(self, key: str, value: bytes) -> None:
        self.client.set(key, value)


class MemoryStore:
    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = value


class MemorySlot:
    def __init__(self) -> None:
        self._payload: Optional[CachedPayload] = None

    def get(self) -> Optional[CachedPayload]:
        return self._payload

    def set(self, payload: CachedPayload) -> None:
        self._payload = payload


class PayloadCache:
    def __init__(
        self,
        slot: MemorySlot,
        store: DurableStore,
        *,
        key: str = DEFAULT_CACHE_KEY,
        store_hint_ttl_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.slot = slot
        self.store = store
        self.key = key
        self.store_hint_ttl_sec = store_hint_ttl_sec
        self._clock = clock
        self._store_hint: Optional[Tuple[float, CachedPayload]] = None

    def read(self) -> Optional[CachedPayload]:
        payload = self.slot.get()
        if payload is not None:
            return payload

        now = self._clock()
        hint = self._store_hint
        if hint is not None and now - hint[0] < self.store_hint_ttl_sec:
            return hint[1]

        payload = self._read_store()
        if payload is not None:
            self._store_hint = (now, payload)
        return payload

    def _read_store(self) -> Optional[CachedPayload]:
        try:
            raw = self.store.get(self.key)
        except (redis.RedisError, OSError) as exc:
            log.warning("Durable store read failed: %s", exc)
            return None
        if raw is None:
            return None
        try:
            return CachedPayload.from_json(raw)
        except (TypeError, ValueError) as exc:
            log.warning("Discarding undecodable cached payload: %s", exc)
            return None

    def write(self, payload: CachedPayload) -> None:
        self.slot.set(payload)
        try:
            self.store.put(self.key, payload.to_json())
        except (redis.RedisError, OSError) as exc:
            log.warning("Durable store write failed: %s", exc)
