"""
One-time code provider for payout confirmation.

The voucher state machine only depends on the OtpProvider protocol and owns
the validity window itself. TwoFactorOtpProvider talks to the 2Factor.in
HTTP API.
"""

import logging
import re
from typing import Optional, Protocol

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from voucher_service.config import settings
from voucher_service.errors import OtpDeliveryFailed

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)


class OtpProvider(Protocol):
    async def request_code(self, channel: str) -> str:
        """Send a code to ``channel`` and return the provider's session id."""

    async def verify_code(self, session_id: str, code: str) -> bool:
        """True when ``code`` matches the one issued for ``session_id``."""


class _TwoFactorRetryableError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


def normalize_mobile(mobile: str) -> str:
    digits = re.sub(r"\D", "", mobile or "")
    return digits[-10:] if len(digits) > 10 else digits


def mask_mobile(mobile: Optional[str]) -> str:
    digits = normalize_mobile(mobile or "")
    return f"****{digits[-4:]}" if digits else ""


class TwoFactorOtpProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        template: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or settings.TWOFACTOR_API_KEY
        self.base_url = (base_url or settings.TWOFACTOR_BASE_URL).rstrip("/")
        self.template = template or settings.TWOFACTOR_OTP_TEMPLATE
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(_TwoFactorRetryableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        reraise=True,
    )
    async def _get(self, url: str) -> dict:
        try:
            response = await self._http().get(url)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("otp_provider_network_error_retrying", error=str(exc))
            raise _TwoFactorRetryableError(str(exc)) from exc
        if response.status_code >= 500:
            logger.warning("otp_provider_5xx_retrying", status_code=response.status_code)
            raise _TwoFactorRetryableError(f"2Factor returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return {"Status": "Error", "Details": response.text[:200]}

    async def request_code(self, channel: str) -> str:
        if not self.api_key:
            raise OtpDeliveryFailed("OTP provider is not configured")
        mobile = normalize_mobile(channel)
        url = f"{self.base_url}/{self.api_key}/SMS/{mobile}/AUTOGEN/{self.template}"
        try:
            data = await self._get(url)
        except _TwoFactorRetryableError as exc:
            logger.error("otp_send_retries_exhausted", error=str(exc))
            raise OtpDeliveryFailed("OTP provider is unavailable") from exc

        if data.get("Status") == "Success" and data.get("Details"):
            logger.info("otp_sent", to=mask_mobile(mobile))
            return str(data["Details"])
        logger.error("otp_send_rejected", details=str(data.get("Details"))[:200])
        raise OtpDeliveryFailed("Failed to send OTP", {"provider_details": data.get("Details")})

    async def verify_code(self, session_id: str, code: str) -> bool:
        if not self.api_key:
            raise OtpDeliveryFailed("OTP provider is not configured")
        url = f"{self.base_url}/{self.api_key}/SMS/VERIFY/{session_id}/{code}"
        try:
            data = await self._get(url)
        except _TwoFactorRetryableError as exc:
            logger.error("otp_verify_retries_exhausted", error=str(exc))
            raise OtpDeliveryFailed("OTP provider is unavailable") from exc
        return data.get("Status") == "Success" and data.get("Details") == "OTP Matched"
