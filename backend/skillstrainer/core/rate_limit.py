from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from skillstrainer.core.config import settings
from skillstrainer.core.redis_client import get_redis


@dataclass(frozen=True)
class RateLimit:
    key: str
    limit: int
    window_seconds: int


def _client_ip(request: Request) -> str:
    if bool(getattr(settings, "trust_proxy_headers", False)):
        xri = str(request.headers.get("x-real-ip") or "").strip()
        if xri:
            return xri
        xff = request.headers.get("x-forwarded-for")
        if xff:
            ip = xff.split(",")[0].strip()
            if ip:
                return ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _subject(request: Request) -> str:
    # Authenticated routes resolve the user first; fall back to the client address otherwise.
    user_id = getattr(getattr(request, "state", None), "user_id", None)
    if user_id:
        return f"u:{user_id}"
    return f"ip:{_client_ip(request)}"


def rate_limit(*, key_prefix: str, limit: int, window_seconds: int, per_path: bool = True):
    async def _dep(request: Request) -> RateLimit:
        r = get_redis()
        scope = f"{request.method}:{request.url.path}:" if per_path else ""
        key = f"rl:{key_prefix}:{scope}{_subject(request)}"

        try:
            current = r.incr(key)
            if current == 1:
                r.expire(key, int(window_seconds))
        except Exception:
            return RateLimit(key=key, limit=int(limit), window_seconds=int(window_seconds))

        if int(current) > int(limit):
            ttl = r.ttl(key)
            retry_after = int(ttl) if ttl and ttl > 0 else int(window_seconds)
            raise HTTPException(
                status_code=429,
                detail={"error_code": "rate_limited", "error_message": "rate limit exceeded"},
                headers={"Retry-After": str(retry_after)},
            )

        return RateLimit(key=key, limit=int(limit), window_seconds=int(window_seconds))

    return Depends(_dep)
