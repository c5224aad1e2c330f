"""
Unit tests for voucher_service/services/license_service.py

Tests: authorize (not found, inactive, expired, hardware lock, IP whitelist,
       expiry warning, decision log), consume (allowed, refused with usage details).
"""

import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from voucher_service.errors import (
    LicenseExpired,
    LicenseInactive,
    LicenseNotFound,
    LicenseRestricted,
    QuotaExceeded,
)
from voucher_service.services.license_service import LicenseGate, _ip_allowed
from voucher_service.services.quota_service import QuotaCounter

NOW = datetime(2026, 10, 17, 12, 0, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _config(**overrides):
    values = dict(
        ENABLE_HARDWARE_LOCK=False,
        ENABLE_IP_WHITELIST=False,
        LICENSE_EXPIRY_WARNING_DAYS=7,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _make_license(**overrides):
    lic = MagicMock()
    lic.id = uuid.uuid4()
    lic.tenant_id = uuid.uuid4()
    lic.status = "active"
    lic.plan_type = "starter"
    lic.expiry_date = NOW + timedelta(days=90)
    lic.hardware_id = None
    lic.ip_whitelist = None
    lic.max_vouchers_per_month = 10
    lic.sms_credits = 5
    lic.last_verified = None
    for key, value in overrides.items():
        setattr(lic, key, value)
    return lic


def _mock_session(license) -> AsyncMock:
    session = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = license
    session.execute.return_value = result
    session.add = MagicMock()
    return session


def _logged(session) -> list[str]:
    return [c.args[0].status for c in session.add.call_args_list]


def _gate(ledger=None, **config) -> LicenseGate:
    return LicenseGate(ledger=ledger or AsyncMock(), clock=lambda: NOW, config=_config(**config))


# ---------------------------------------------------------------------------
# authorize
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authorize_active_license():
    lic = _make_license()
    check = await _gate().authorize(_mock_session(lic), lic.tenant_id)
    assert check.license is lic
    assert check.days_remaining == 90
    assert check.warning is None
    assert lic.last_verified == NOW


@pytest.mark.asyncio
async def test_authorize_missing_license():
    with pytest.raises(LicenseNotFound) as exc_info:
        await _gate().authorize(_mock_session(None), uuid.uuid4())
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["pending", "suspended", "revoked", "expired"])
async def test_authorize_inactive_license(status):
    lic = _make_license(status=status)
    with pytest.raises(LicenseInactive) as exc_info:
        await _gate().authorize(_mock_session(lic), lic.tenant_id)
    assert exc_info.value.details == {"status": status}
    assert exc_info.value.code == f"LICENSE_{status.upper()}"


@pytest.mark.asyncio
async def test_authorize_expired_license_is_marked_and_committed():
    lic = _make_license(expiry_date=NOW - timedelta(seconds=1))
    session = _mock_session(lic)
    with pytest.raises(LicenseExpired):
        await _gate().authorize(session, lic.tenant_id)
    assert lic.status == "expired"
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_authorize_warns_when_expiry_is_near():
    lic = _make_license(expiry_date=NOW + timedelta(days=3, hours=2))
    check = await _gate().authorize(_mock_session(lic), lic.tenant_id)
    assert check.days_remaining == 3
    assert check.warning == "License expires in 3 days"


@pytest.mark.asyncio
async def test_hardware_lock_enforced_only_when_enabled():
    lic = _make_license(hardware_id="HW-1")
    await _gate().authorize(_mock_session(lic), lic.tenant_id, hardware_id="HW-2")

    with pytest.raises(LicenseRestricted) as exc_info:
        await _gate(ENABLE_HARDWARE_LOCK=True).authorize(
            _mock_session(lic), lic.tenant_id, hardware_id="HW-2"
        )
    assert exc_info.value.details == {"restriction": "hardware_lock"}

    with pytest.raises(LicenseRestricted):
        await _gate(ENABLE_HARDWARE_LOCK=True).authorize(_mock_session(lic), lic.tenant_id)

    await _gate(ENABLE_HARDWARE_LOCK=True).authorize(
        _mock_session(lic), lic.tenant_id, hardware_id="HW-1"
    )


@pytest.mark.asyncio
async def test_ip_whitelist_enforced_when_enabled():
    lic = _make_license(ip_whitelist=["203.0.113.0/24", "198.51.100.7"])
    gate = _gate(ENABLE_IP_WHITELIST=True)

    await gate.authorize(_mock_session(lic), lic.tenant_id, client_ip="203.0.113.50")
    await gate.authorize(_mock_session(lic), lic.tenant_id, client_ip="198.51.100.7")
    with pytest.raises(LicenseRestricted) as exc_info:
        await gate.authorize(_mock_session(lic), lic.tenant_id, client_ip="192.0.2.1")
    assert exc_info.value.details == {"restriction": "ip_whitelist"}


def test_ip_allowed_fails_closed():
    assert _ip_allowed(None, ["10.0.0.0/8"]) is False
    assert _ip_allowed("unknown", ["10.0.0.0/8"]) is False
    assert _ip_allowed("10.1.2.3", ["garbage", "10.0.0.0/8"]) is True


# ---------------------------------------------------------------------------
# Decision log
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_is_logged_without_commit():
    lic = _make_license()
    session = _mock_session(lic)
    await _gate().authorize(session, lic.tenant_id, client_ip="10.0.0.5", hardware_id="HW-1")

    [entry] = [c.args[0] for c in session.add.call_args_list]
    assert entry.status == "success"
    assert entry.license_id == lic.id
    assert entry.tenant_id == lic.tenant_id
    assert entry.ip_address == "10.0.0.5"
    assert entry.hardware_id == "HW-1"
    assert entry.verified_at == NOW
    session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_license_is_logged_as_invalid():
    tenant_id = uuid.uuid4()
    session = _mock_session(None)
    with pytest.raises(LicenseNotFound):
        await _gate().authorize(session, tenant_id)

    [entry] = [c.args[0] for c in session.add.call_args_list]
    assert entry.status == "invalid"
    assert entry.license_id is None
    assert entry.tenant_id == tenant_id
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, config, kwargs, expected, error",
    [
        ({"status": "suspended"}, {}, {}, "suspended", LicenseInactive),
        ({"expiry_date": NOW - timedelta(days=1)}, {}, {}, "expired", LicenseExpired),
        (
            {"hardware_id": "HW-1"},
            {"ENABLE_HARDWARE_LOCK": True},
            {"hardware_id": "HW-2"},
            "hardware_mismatch",
            LicenseRestricted,
        ),
        (
            {"ip_whitelist": ["203.0.113.0/24"]},
            {"ENABLE_IP_WHITELIST": True},
            {"client_ip": "192.0.2.1"},
            "ip_not_whitelisted",
            LicenseRestricted,
        ),
    ],
)
async def test_refusals_are_logged_and_committed(overrides, config, kwargs, expected, error):
    lic = _make_license(**overrides)
    session = _mock_session(lic)
    with pytest.raises(error):
        await _gate(**config).authorize(session, lic.tenant_id, **kwargs)
    assert _logged(session) == [expected]
    session.commit.assert_awaited_once()


# ---------------------------------------------------------------------------
# consume
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_consume_allowed():
    ledger = AsyncMock()
    ledger.check_and_increment.return_value = True
    lic = _make_license()
    await _gate(ledger).consume(AsyncMock(), lic, QuotaCounter.VOUCHERS)
    args = ledger.check_and_increment.await_args.args
    assert args[1:] == (lic.id, QuotaCounter.VOUCHERS, 10)


@pytest.mark.asyncio
async def test_consume_refused_names_counter_plan_limit_and_usage():
    ledger = AsyncMock()
    ledger.check_and_increment.return_value = False
    ledger.get_usage.return_value = {"month": "2026-10", "vouchers_count": 3, "sms_sent": 5}
    lic = _make_license()

    with pytest.raises(QuotaExceeded) as exc_info:
        await _gate(ledger).consume(AsyncMock(), lic, QuotaCounter.SMS)
    assert exc_info.value.details == {"counter": "sms", "plan": "starter", "limit": 5, "used": 5}
    assert exc_info.value.status_code == 429


def test_limit_for_treats_missing_as_unlimited():
    lic = _make_license(max_vouchers_per_month=None, sms_credits=None)
    gate = _gate()
    assert gate.limit_for(lic, QuotaCounter.VOUCHERS) == 0
    assert gate.limit_for(lic, QuotaCounter.SMS) == 0
