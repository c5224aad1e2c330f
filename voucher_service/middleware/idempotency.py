"""
Idempotency-Key deduplication for voucher mutations.

Clients may send an `Idempotency-Key` header on POST requests. The first
request is processed and its response cached for 24h; a replay with the same
key gets the cached response without re-running the handler, so a retried
create cannot produce a second voucher or consume quota twice.
5xx responses are not cached, so the client may retry them.
Keys are namespaced by the verified tenant and user; requests without a
valid access token bypass the cache entirely.
"""

import json
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from voucher_service.services.auth_service import verify_access_token

logger = structlog.get_logger()

_IDEMPOTENCY_TTL = 86_400
_LOCK_TTL = 30
_APPLICABLE_PATHS_PREFIX = "/api/v1/"


def _caller_scope(request: Request) -> Optional[str]:
    """Verified tenant and user behind the request, or None when unauthenticated."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    try:
        claims = verify_access_token(auth_header.split(" ", 1)[1])
        return f"{claims['tenant_id']}:{claims['sub']}"
    except (JWTError, KeyError):
        return None


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method != "POST" or not request.url.path.startswith(_APPLICABLE_PATHS_PREFIX):
            return await call_next(request)

        idempotency_key = request.headers.get("Idempotency-Key")
        cache = getattr(request.app.state, "cache", None)
        if not idempotency_key or cache is None:
            return await call_next(request)

        scope = _caller_scope(request)
        if scope is None:
            # Unauthenticated requests are never cached or replayed.
            return await call_next(request)
        cache_key = f"idempotency:{scope}:{request.url.path}:{idempotency_key}"
        lock_key = f"idempotency_lock:{scope}:{idempotency_key}"

        try:
            cached = await cache.get(cache_key)
            if cached:
                logger.info("idempotency_cache_hit", key=idempotency_key, path=request.url.path)
                payload = json.loads(cached)
                return JSONResponse(
                    status_code=payload["status_code"],
                    content=payload["body"],
                    headers={"X-Idempotent-Replayed": "true"},
                )

            if not await cache.setnx(lock_key, "1", ex=_LOCK_TTL):
                return JSONResponse(
                    status_code=409,
                    content={
                        "error": {
                            "code": "CONCURRENT_REQUEST",
                            "message": "A request with this Idempotency-Key is already being processed",
                        }
                    },
                )
        except Exception as e:
            logger.warning("idempotency_cache_check_failed", error=str(e))
            return await call_next(request)

        response = await call_next(request)

        try:
            if response.status_code < 500:
                body_bytes = b""
                async for chunk in response.body_iterator:
                    body_bytes += chunk
                try:
                    body_json = json.loads(body_bytes.decode("utf-8"))
                except ValueError:
                    body_json = {"raw": body_bytes.decode("utf-8", errors="replace")}
                headers = {
                    k: v for k, v in response.headers.items() if k.lower() != "content-length"
                }
                response = JSONResponse(
                    status_code=response.status_code, content=body_json, headers=headers
                )
                try:
                    await cache.set(
                        cache_key,
                        json.dumps({"status_code": response.status_code, "body": body_json}),
                        _IDEMPOTENCY_TTL,
                    )
                except Exception as e:
                    logger.warning("idempotency_cache_store_failed", error=str(e))
        finally:
            try:
                await cache.delete(lock_key)
            except Exception as e:
                logger.warning("idempotency_lock_release_failed", error=str(e))

        return response
