# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory rate limiting for auth endpoints (brute-force protection)."""

import time
from collections import defaultdict

from fastapi import Request

from tripdesk_server.config import settings
from tripdesk_server.errors import TooManyRequests

# (client_key, endpoint) -> list of request timestamps in window
_buckets: defaultdict[tuple[str, str], list[float]] = defaultdict(list)
_last_prune = 0.0
LIMITED_PATHS = frozenset(
    {
        "/api/v1/auth/register-otp",
        "/api/v1/auth/verify-otp",
        "/api/v1/auth/login-otp",
        "/api/v1/auth/verify-login-otp",
    }
)


def client_address(request: Request) -> str:
    """Prefer X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def _clean_old(bucket: list[float], now: float) -> None:
    cutoff = now - settings.rate_limit_window_seconds
    while bucket and bucket[0] < cutoff:
        bucket.pop(0)


def reset() -> None:
    global _last_prune
    _buckets.clear()
    _last_prune = 0.0


def prune(now: float | None = None) -> int:
    """Forget clients with no requests left in the window. Returns how many."""
    global _last_prune
    now = time.monotonic() if now is None else now
    _last_prune = now
    idle = []
    for key, bucket in _buckets.items():
        _clean_old(bucket, now)
        if not bucket:
            idle.append(key)
    for key in idle:
        del _buckets[key]
    return len(idle)


def check_rate_limit(request: Request, path: str) -> None:
    """Raise 429 if the client has exceeded the limit for this path."""
    now = time.monotonic()
    if now - _last_prune >= settings.rate_limit_window_seconds:
        prune(now)
    bucket = _buckets[(client_address(request), path)]
    _clean_old(bucket, now)
    if len(bucket) >= settings.rate_limit_max:
        raise TooManyRequests()
    bucket.append(now)


async def rate_limit_auth_dep(request: Request) -> None:
    """FastAPI dependency: rate limit the code endpoints."""
    if not settings.rate_limit_enabled:
        return
    path = request.url.path.rstrip("/")
    if path in LIMITED_PATHS:
        check_rate_limit(request, path)
