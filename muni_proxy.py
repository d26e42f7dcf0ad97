#!/usr/bin/env python3
# SFMTA arrivals proxy: serves pre-computed 511.org arrivals from cache.

import hmac
import logging
import os
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv
from flask import Flask, jsonify, request, Response

from arrivals import MAX_ARRIVALS_PER_STOP as DEFAULT_MAX_ARRIVALS, SCAN_MODES
from payload_cache import (
    DEFAULT_CACHE_KEY,
    DurableStore,
    MemorySlot,
    MemoryStore,
    PayloadCache,
    RedisStore,
)
from refresh import Refresher, RefreshTimer, get_or_refresh
from stop_allowlist import DEFAULT_ALLOWED_STOPS, AllowList, build_allow_list, load_allow_list
from upstream import DEFAULT_BASE_URL, SlidingWindowLimiter, StopMonitoringClient

load_dotenv()

log = logging.getLogger("muni_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

Number = TypeVar("Number", int, float)


def env_number(name: str, default: Number, cast: Callable[[str], Number]) -> Number:
    try:
        return cast(os.environ[name])
    except (KeyError, ValueError):
        return default


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


SF511_API_KEY = env_str("SF511_API_KEY")
SF511_AGENCY = env_str("SF511_AGENCY", "SF") or "SF"
SF511_BASE_URL = env_str("SF511_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL

AUTH_TOKEN = env_str("AUTH_TOKEN")

REDIS_URL = env_str("REDIS_URL")
REDIS_TIMEOUT_SEC = env_number("REDIS_TIMEOUT_SEC", 2.0, float)
CACHE_KEY = env_str("CACHE_KEY", DEFAULT_CACHE_KEY) or DEFAULT_CACHE_KEY
STORE_HINT_TTL_SEC = env_number("STORE_HINT_TTL_SEC", 60, int)

MAX_ARRIVALS_PER_STOP = max(1, env_number("MAX_ARRIVALS_PER_STOP", DEFAULT_MAX_ARRIVALS, int))
SCAN_MODE = (env_str("SCAN_MODE", "stream") or "stream").lower()
if SCAN_MODE not in SCAN_MODES:
    log.warning("Unknown SCAN_MODE %r, using stream", SCAN_MODE)
    SCAN_MODE = "stream"
ALLOWED_STOPS_FILE = env_str("ALLOWED_STOPS_FILE")

REFRESH_INTERVAL_SEC = env_number("REFRESH_INTERVAL_SEC", 0.0, float)
NO_DATA_RETRY_AFTER_SEC = env_number("NO_DATA_RETRY_AFTER_SEC", 30, int)

UPSTREAM_CONNECT_TIMEOUT_SEC = env_number("UPSTREAM_CONNECT_TIMEOUT_SEC", 3.0, float)
UPSTREAM_READ_TIMEOUT_SEC = env_number("UPSTREAM_READ_TIMEOUT_SEC", 7.0, float)
UPSTREAM_TOTAL_TIMEOUT_SEC = env_number("UPSTREAM_TOTAL_TIMEOUT_SEC", 8.0, float)
UPSTREAM_MAX_RETRIES = env_number("UPSTREAM_MAX_RETRIES", 1, int)
UPSTREAM_BACKOFF_BASE_SEC = env_number("UPSTREAM_BACKOFF_BASE_SEC", 0.5, float)
UPSTREAM_BACKOFF_MAX_SEC = env_number("UPSTREAM_BACKOFF_MAX_SEC", 4.0, float)
# 511.org allows 60 requests per hour per key.
UPSTREAM_RATE_LIMIT = env_number("UPSTREAM_RATE_LIMIT", 60, int)
UPSTREAM_RATE_WINDOW_SEC = env_number("UPSTREAM_RATE_WINDOW_SEC", 3600, int)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_number("APP_PORT", 5010, int)


def load_configured_allow_list() -> AllowList:
    if ALLOWED_STOPS_FILE:
        return load_allow_list(ALLOWED_STOPS_FILE)
    return build_allow_list(DEFAULT_ALLOWED_STOPS)


def build_store() -> DurableStore:
    if REDIS_URL:
        return RedisStore.from_url(REDIS_URL, timeout_sec=REDIS_TIMEOUT_SEC)
    log.warning("REDIS_URL not set; durable cache tier is process-local")
    return MemoryStore()


def bearer_token(header: str) -> str:
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return ""


def is_authorized(token: str, secret: Optional[str]) -> bool:
    if not secret or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def error_response(
    status: int,
    code: str,
    message: str,
    *,
    retry_after: Optional[int] = None,
) -> Response:
    resp = jsonify({"error": {"code": code, "message": message}})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


def create_app(cache: PayloadCache, refresher: Refresher, auth_token: Optional[str]) -> Flask:
    app = Flask(__name__)

    @app.before_request
    def require_auth() -> Optional[Response]:
        token = bearer_token(request.headers.get("Authorization", ""))
        if not is_authorized(token, auth_token):
            return error_response(401, "unauthorized", "Unauthorized")
        return None

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    @app.route("/", methods=["GET"])
    @app.route("/api/arrivals", methods=["GET"])
    def arrivals() -> Response:
        payload = get_or_refresh(cache, refresher)
        if payload is None:
            return error_response(
                503,
                "no_data",
                "Failed to fetch data",
                retry_after=NO_DATA_RETRY_AFTER_SEC,
            )

        resp = jsonify(payload.table)
        resp.headers["X-Cpu-Ms"] = str(payload.compute_cost_ms)
        resp.headers["X-Updated-At"] = str(payload.updated_at)
        resp.headers["Cache-Control"] = "no-cache"
        return resp

    @app.route("/internal/refresh", methods=["POST"])
    def trigger_refresh() -> Response:
        started = refresher.refresh_in_background()
        resp = jsonify({"started": started})
        resp.status_code = 202
        return resp

    return app


upstream_limiter = SlidingWindowLimiter(UPSTREAM_RATE_LIMIT, UPSTREAM_RATE_WINDOW_SEC)
client = StopMonitoringClient(
    SF511_API_KEY,
    SF511_AGENCY,
    base_url=SF511_BASE_URL,
    connect_timeout=UPSTREAM_CONNECT_TIMEOUT_SEC,
    read_timeout=UPSTREAM_READ_TIMEOUT_SEC,
    total_timeout=UPSTREAM_TOTAL_TIMEOUT_SEC,
    limiter=upstream_limiter,
    max_retries=UPSTREAM_MAX_RETRIES,
    backoff_base=UPSTREAM_BACKOFF_BASE_SEC,
    backoff_max=UPSTREAM_BACKOFF_MAX_SEC,
)
allow_list = load_configured_allow_list()
cache = PayloadCache(
    MemorySlot(),
    build_store(),
    key=CACHE_KEY,
    store_hint_ttl_sec=STORE_HINT_TTL_SEC,
)
refresher = Refresher(
    client.fetch,
    allow_list,
    cache,
    max_per_stop=MAX_ARRIVALS_PER_STOP,
    mode=SCAN_MODE,
)
app = create_app(cache, refresher, AUTH_TOKEN)

if not AUTH_TOKEN:
    log.warning("AUTH_TOKEN not set; every request will be rejected")

refresh_timer: Optional[RefreshTimer] = None
if REFRESH_INTERVAL_SEC > 0:
    refresh_timer = RefreshTimer(refresher, REFRESH_INTERVAL_SEC)
    refresh_timer.start()


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
