# 511.org StopMonitoring client.

from collections import deque
import logging
import random
import threading
import time
from typing import Callable, Deque, Dict, List, Optional, Tuple

import requests

log = logging.getLogger("muni_proxy.upstream")

DEFAULT_BASE_URL = "https://api.511.org/transit"
_CHUNK_SIZE = 64 * 1024


class UpstreamUnavailable(Exception):
    def __init__(self, message: str, *, status: int = 0, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class OutboundRateLimited(UpstreamUnavailable):
    def __init__(self, retry_after: int):
        super().__init__("outbound quota used up", retry_after=retry_after)


class UpstreamRateLimited(UpstreamUnavailable):
    def __init__(self, retry_after: Optional[int], status: int):
        super().__init__(f"upstream rate limited ({status})", status=status, retry_after=retry_after)


class UpstreamError(UpstreamUnavailable):
    def __init__(self, status: int, message: str):
        super().__init__(message, status=status)


class MissingConfig(Exception):
    pass


FETCH_ERRORS = (UpstreamUnavailable, MissingConfig)


class SlidingWindowLimiter:
    """Caps outbound calls at `limit` per rolling `window_sec`."""

    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._sent: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        now = time.monotonic()
        with self._lock:
            horizon = now - self.window_sec
            while self._sent and self._sent[0] <= horizon:
                self._sent.popleft()
            if len(self._sent) < self.limit:
                self._sent.append(now)
                return
            oldest = self._sent[0]
        raise OutboundRateLimited(max(1, int(oldest - horizon)))


# 511 only sends delta-seconds.
def parse_retry_after(value: Optional[str]) -> Optional[int]:
    value = (value or "").strip()
    return int(value) if value.isdigit() else None


def compute_backoff(attempt: int, base: float, maximum: float) -> float:
    delay = min(maximum, base * (2**attempt))
    return delay * random.uniform(0.7, 1.3)


def _attempt_timeout(
    timeout: Optional[Tuple[float, float]], remaining: Optional[float]
) -> Optional[Tuple[float, float]]:
    if remaining is None:
        return timeout
    if timeout is None:
        return (remaining, remaining)
    return (min(timeout[0], remaining), min(timeout[1], remaining))


def _read_body(
    resp: requests.Response,
    deadline: Optional[float],
    clock: Callable[[], float],
    service_name: str,
) -> bytes:
    chunks: List[bytes] = []
    try:
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            chunks.append(chunk)
            if deadline is not None and clock() >= deadline:
                raise UpstreamError(504, f"{service_name} response exceeded deadline")
    except requests.RequestException:
        raise UpstreamError(502, f"{service_name} response interrupted") from None
    finally:
        resp.close()
    return b"".join(chunks)


def request_text(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    total_timeout: Optional[float] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
    max_retries: int = 0,
    backoff_base: float = 0.5,
    backoff_max: float = 6.0,
    service_name: str = "upstream",
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """GET url and return the body as text, BOM included.

    total_timeout bounds the whole call: every attempt, every backoff pause
    and the body read. A retry whose pause would cross it is not made.
    """
    deadline = clock() + total_timeout if total_timeout is not None else None

    def remaining() -> Optional[float]:
        if deadline is None:
            return None
        left = deadline - clock()
        if left <= 0:
            raise UpstreamError(504, f"{service_name} deadline exceeded")
        return left

    def can_retry(attempt: int, delay: float) -> bool:
        if attempt >= max_retries:
            return False
        return deadline is None or clock() + delay < deadline

    attempt = 0
    while True:
        left = remaining()
        if limiter is not None:
            limiter.acquire()

        try:
            resp = session.get(
                url,
                params=params,
                timeout=_attempt_timeout(timeout, left),
                headers={"Accept": "application/json"},
                stream=True,
            )
        except requests.RequestException as exc:
            delay = compute_backoff(attempt, backoff_base, backoff_max)
            # The exception text carries the full URL, key included.
            if not can_retry(attempt, delay):
                raise UpstreamError(504, f"{service_name} request failed") from None
            log.info("%s request failed (%s), retrying", service_name, type(exc).__name__)
            time.sleep(delay)
            attempt += 1
            continue

        status = resp.status_code
        if status < 400:
            return _read_body(resp, deadline, clock, service_name).decode("utf-8", errors="replace")
        resp.close()

        if status in (420, 429):
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            delay = min(
                backoff_max,
                retry_after if retry_after is not None else compute_backoff(attempt, backoff_base, backoff_max),
            )
            if not can_retry(attempt, delay):
                raise UpstreamRateLimited(retry_after, status)
        elif status >= 500:
            delay = compute_backoff(attempt, backoff_base, backoff_max)
            if not can_retry(attempt, delay):
                raise UpstreamError(status, f"{service_name} upstream error")
        else:
            raise UpstreamError(status, f"{service_name} upstream error")

        log.info("%s answered %d, retrying", service_name, status)
        time.sleep(delay)
        attempt += 1


class StopMonitoringClient:
    def __init__(
        self,
        api_key: Optional[str],
        agency: str = "SF",
        *,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 7.0,
        total_timeout: Optional[float] = 8.0,
        limiter: Optional[SlidingWindowLimiter] = None,
        max_retries: int = 1,
        backoff_base: float = 0.5,
        backoff_max: float = 4.0,
    ) -> None:
        self.api_key = api_key
        self.agency = agency
        self.url = f"{base_url.rstrip('/')}/StopMonitoring"
        self.session = session or requests.Session()
        self.timeout = (connect_timeout, read_timeout)
        self.total_timeout = total_timeout
        self.limiter = limiter
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def fetch(self) -> str:
        if not self.api_key:
            raise MissingConfig("511 API key not set")
        return request_text(
            self.session,
            self.url,
            params={"api_key": self.api_key, "agency": self.agency, "format": "json"},
            timeout=self.timeout,
            total_timeout=self.total_timeout,
            limiter=self.limiter,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            service_name="511",
        )
