# Refresh cycle: fetch -> scan -> aggregate -> write both cache tiers.

import logging
import threading
import time
from typing import Callable, Optional

from arrivals import MAX_ARRIVALS_PER_STOP, build_arrival_table
from payload_cache import CachedPayload, PayloadCache
from stop_allowlist import AllowList
from upstream import FETCH_ERRORS
from visit_scan import MalformedDocument

log = logging.getLogger("muni_proxy.refresh")


def epoch_ms() -> int:
    return int(time.time() * 1000)


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[CachedPayload] = None


class Refresher:
    """Produces CachedPayloads; at most one refresh runs per instance.

    Callers arriving while a refresh is in flight wait for it and share
    its result instead of starting their own upstream fetch.
    """

    def __init__(
        self,
        fetch_document: Callable[[], str],
        allow: AllowList,
        cache: PayloadCache,
        *,
        max_per_stop: int = MAX_ARRIVALS_PER_STOP,
        mode: str = "stream",
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self.fetch_document = fetch_document
        self.allow = allow
        self.cache = cache
        self.max_per_stop = max_per_stop
        self.mode = mode
        self._clock_ms = clock_ms
        self._lock = threading.Lock()
        self._flight: Optional[_Flight] = None

    @property
    def in_flight(self) -> bool:
        return self._flight is not None

    def refresh(self) -> Optional[CachedPayload]:
        with self._lock:
            flight = self._flight
            leader = flight is None
            if flight is None:
                flight = self._flight = _Flight()

        if not leader:
            flight.done.wait()
            return flight.result
        return self._lead(flight)

    def _lead(self, flight: _Flight) -> Optional[CachedPayload]:
        try:
            flight.result = self._run()
        except Exception:
            log.exception("Arrivals refresh failed")
        finally:
            with self._lock:
                self._flight = None
            flight.done.set()
        return flight.result

    def _run(self) -> Optional[CachedPayload]:
        try:
            text = self.fetch_document()
        except FETCH_ERRORS as exc:
            log.warning("Arrivals refresh skipped, fetch failed: %s", exc)
            return None

        started = time.perf_counter()
        try:
            table, reference = build_arrival_table(
                text, self.allow, max_per_stop=self.max_per_stop, mode=self.mode
            )
        except MalformedDocument as exc:
            log.warning("Arrivals refresh skipped, malformed document: %s", exc)
            return None
        cost_ms = int((time.perf_counter() - started) * 1000)

        payload = CachedPayload(table=table, compute_cost_ms=cost_ms, updated_at=self._clock_ms())
        self.cache.write(payload)
        log.info(
            "Refreshed arrivals: cpu_ms=%d lines=%d response_ts=%s",
            cost_ms,
            len(table),
            reference.isoformat(),
        )
        return payload

    def refresh_in_background(self) -> bool:
        with self._lock:
            if self._flight is not None:
                return False
            flight = self._flight = _Flight()
        threading.Thread(
            target=self._lead, args=(flight,), name="arrivals-refresh", daemon=True
        ).start()
        return True


class RefreshTimer:
    def __init__(self, refresher: Refresher, interval_sec: float) -> None:
        self.refresher = refresher
        self.interval_sec = max(1.0, interval_sec)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="arrivals-timer", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.refresher.refresh()
            self._stop.wait(self.interval_sec)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def get_or_refresh(cache: PayloadCache, refresher: Refresher) -> Optional[CachedPayload]:
    payload = cache.read()
    if payload is not None:
        return payload
    log.info("No cached arrivals, refreshing before responding")
    return refresher.refresh()
