"""Caller identification and response headers for rate limiting."""

import math
from typing import Dict, Optional

from fastapi import Request

from apiguard.app.middleware.rate_limit.models import RateLimitResult, RateLimitTier

UNKNOWN_CLIENT = "unknown"


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """Best-effort client IP for a request.

    Proxy headers are checked in order: ``X-Forwarded-For`` (first hop),
    ``X-Real-IP``, ``CF-Connecting-IP``. The socket peer is used when none
    is present or when ``trust_forwarded`` is False.

    Args:
        request: FastAPI request object
        trust_forwarded: Honour proxy headers (only safe behind a proxy
            that overwrites them)

    Returns:
        IP string, or ``"unknown"`` if nothing identifies the client
    """
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop

        for header in ("X-Real-IP", "CF-Connecting-IP"):
            value = request.headers.get(header)
            if value and value.strip():
                return value.strip()

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def resolve_identifier(
    request: Request,
    tier: RateLimitTier,
    user_id: Optional[str] = None,
    trust_forwarded: bool = True,
) -> str:
    """Derive the identifier a policy's tier counts against.

    - GLOBAL: one shared ``"global"`` bucket
    - IP: client IP
    - USER: ``"user:{id}"`` when known, else ``"ip:{ip}"``
    - API_KEY: ``"key:{X-API-Key}"`` when present, else ``"ip:{ip}"``
    - ENDPOINT: ``"{ip}:{path}"``

    Tiers that fall back to the IP prefix both forms so a user id or key
    that looks like an address never shares a slot with that address.
    """
    tier = RateLimitTier(tier)
    if tier is RateLimitTier.GLOBAL:
        return "global"

    ip = get_client_ip(request, trust_forwarded=trust_forwarded)
    if tier is RateLimitTier.USER:
        return f"user:{user_id}" if user_id else f"ip:{ip}"
    if tier is RateLimitTier.API_KEY:
        api_key = request.headers.get("X-API-Key")
        return f"key:{api_key}" if api_key else f"ip:{ip}"
    if tier is RateLimitTier.ENDPOINT:
        return f"{ip}:{request.url.path}"
    return ip


def create_rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    """Build the ``X-RateLimit-*`` headers describing a decision."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_time))),
        "X-RateLimit-Strategy": result.strategy.value,
        "X-RateLimit-Tier": result.tier.value,
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers
