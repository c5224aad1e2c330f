from __future__ import annotations
# Upstash Redis over its REST API; backs rate limiting and idempotency keys.
from typing import Optional

import httpx

from voucher_service.config import settings


class UpstashClient:
    def __init__(self, url: Optional[str] = None, token: Optional[str] = None):
        self.url = (url or settings.UPSTASH_REDIS_REST_URL).rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {token or settings.UPSTASH_REDIS_REST_TOKEN}"
        }
        # One pooled client per process instead of a TLS handshake per call.
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(5.0, connect=2.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30),
        )

    async def get(self, key: str) -> str | None:
        r = await self._http.get(f"{self.url}/get/{key}", headers=self.headers)
        return r.json().get("result")

    async def set(self, key: str, value: str, ex: int = 300):
        # Value goes in the body so JSON payloads need no URL escaping.
        await self._http.post(f"{self.url}/set/{key}/ex/{ex}", headers=self.headers, content=value)

    async def setnx(self, key: str, value: str, ex: int = 300) -> bool:
        """Set key only if it does not exist. Returns True if the key was set."""
        r = await self._http.get(
            f"{self.url}/set/{key}/{value}/nx/ex/{ex}", headers=self.headers
        )
        return r.json().get("result") == "OK"

    async def delete(self, key: str):
        await self._http.get(f"{self.url}/del/{key}", headers=self.headers)

    async def pipeline(self, commands: list[list]) -> list:
        r = await self._http.post(
            f"{self.url}/pipeline", headers=self.headers, json=commands
        )
        return r.json()

    async def ping(self) -> bool:
        r = await self._http.get(f"{self.url}/ping", headers=self.headers)
        return r.json().get("result") == "PONG"

    async def aclose(self) -> None:
        await self._http.aclose()


def build_cache() -> Optional[UpstashClient]:
    if not settings.UPSTASH_REDIS_REST_URL:
        return None
    return UpstashClient()
