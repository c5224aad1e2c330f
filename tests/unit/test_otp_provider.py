"""
Unit tests for voucher_service/services/otp_service.py, with the 2Factor API
replaced by an httpx MockTransport.
"""

import httpx
import pytest
from tenacity import wait_none

from voucher_service.errors import OtpDeliveryFailed
from voucher_service.services.otp_service import (
    TwoFactorOtpProvider,
    mask_mobile,
    normalize_mobile,
)

BASE = "https://2factor.test/API/V1"


def _provider(handler) -> TwoFactorOtpProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwoFactorOtpProvider(api_key="KEY", base_url=BASE, template="OTP1", client=client)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(TwoFactorOtpProvider._get.retry, "wait", wait_none())


def test_normalize_and_mask_mobile():
    assert normalize_mobile("+91 98765-43210") == "9876543210"
    assert mask_mobile("+91 98765 43210") == "****3210"
    assert mask_mobile(None) == ""


@pytest.mark.asyncio
async def test_request_code_returns_session_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"Status": "Success", "Details": "sess-42"})

    provider = _provider(handler)
    assert await provider.request_code("+91 98765 43210") == "sess-42"
    assert seen == ["/API/V1/KEY/SMS/9876543210/AUTOGEN/OTP1"]
    await provider.aclose()


@pytest.mark.asyncio
async def test_request_code_rejected_by_provider():
    provider = _provider(lambda r: httpx.Response(200, json={"Status": "Error", "Details": "Invalid number"}))
    with pytest.raises(OtpDeliveryFailed) as exc_info:
        await provider.request_code("123")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_request_code_retries_server_errors():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"Status": "Success", "Details": "sess-1"})

    assert await _provider(handler).request_code("9876543210") == "sess-1"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_request_code_gives_up_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(OtpDeliveryFailed):
        await _provider(handler).request_code("9876543210")


@pytest.mark.asyncio
async def test_verify_code_matched():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"Status": "Success", "Details": "OTP Matched"})

    assert await _provider(handler).verify_code("sess-42", "123456") is True
    assert seen == ["/API/V1/KEY/SMS/VERIFY/sess-42/123456"]


@pytest.mark.asyncio
async def test_verify_code_mismatch():
    provider = _provider(lambda r: httpx.Response(200, json={"Status": "Error", "Details": "OTP Mismatch"}))
    assert await provider.verify_code("sess-42", "000000") is False


@pytest.mark.asyncio
async def test_unconfigured_provider_fails():
    provider = TwoFactorOtpProvider(api_key="", base_url=BASE)
    provider.api_key = ""
    with pytest.raises(OtpDeliveryFailed):
        await provider.request_code("9876543210")
