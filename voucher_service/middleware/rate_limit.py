"""
Distributed rate limiting via Upstash Redis.

Two buckets: the general API limit, and a much tighter one for the payout
code endpoints so a payee's phone cannot be flooded. Fails open when the
cache is missing or erroring.
"""

import base64
import json

from fastapi import Request
from fastapi.responses import JSONResponse
import structlog

from voucher_service.config import settings
from voucher_service.middleware.auth import client_ip

logger = structlog.get_logger()

SKIP_PATHS = {"/health"}
_OTP_SUFFIXES = ("/send-otp", "/verify-otp")


def _limits() -> dict:
    return {
        "otp": {"limit": settings.RATE_LIMIT_OTP, "window": settings.RATE_LIMIT_OTP_WINDOW},
        "default": {"limit": settings.RATE_LIMIT_API, "window": settings.RATE_LIMIT_API_WINDOW},
    }


def _extract_user_id(request: Request) -> str | None:
    """
    Unverified read of the JWT subject, only used as a bucket key.
    Returns None for unauthenticated or undecodable requests.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    try:
        payload_b64 = auth_header.split(" ", 1)[1].split(".")[1]
        payload_b64 += "=" * (-len(payload_b64) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
        return payload.get("sub")
    except (IndexError, ValueError):
        return None


def _get_path_category(path: str) -> str:
    if path.endswith(_OTP_SUFFIXES):
        return "otp"
    return "default"


async def rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    cache = getattr(request.app.state, "cache", None)
    if cache is None or path in SKIP_PATHS:
        return await call_next(request)

    ip = client_ip(request)
    category = _get_path_category(path)
    config = _limits()[category]
    limit, window = config["limit"], config["window"]

    # Authenticated callers are bucketed per user so a shared office IP is not throttled.
    identity = _extract_user_id(request) or ip
    key = f"rl:{category}:{identity}" if category == "default" else f"rl:{category}:{identity}:{path}"

    try:
        results = await cache.pipeline([
            ["INCR", key],
            ["EXPIRE", key, window, "NX"],
        ])
        current = results[0].get("result", 0) if isinstance(results[0], dict) else 0
    except Exception as e:
        logger.warning("rate_limit_cache_error", error=str(e))
        return await call_next(request)

    if current > limit:
        logger.warning(
            "rate_limited",
            ip=ip,
            path=path,
            category=category,
            current=current,
            limit=limit,
        )
        return JSONResponse(
            status_code=429,
            content={
                "error": {
                    "code": "RATE_LIMITED",
                    "message": "Too many requests, please try again later",
                }
            },
            headers={"Retry-After": str(window)},
        )

    return await call_next(request)
