"""
Unit tests for voucher_service/services/quota_service.py

The real atomicity is covered against SQLite in the integration suite; these
check the statement shape and the rowcount contract.
"""

import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from voucher_service.services.quota_service import QuotaCounter, QuotaLedger, month_key

NOW = datetime(2026, 10, 17, 12, 0, 0)


def _mock_session(rowcount: int) -> AsyncMock:
    session = AsyncMock()
    bind = MagicMock()
    bind.dialect.name = "sqlite"
    session.get_bind = MagicMock(return_value=bind)

    insert_result = MagicMock()
    update_result = MagicMock()
    update_result.rowcount = rowcount
    session.execute.side_effect = [insert_result, update_result]
    return session


def _sql(call) -> str:
    return str(call.args[0].compile(compile_kwargs={"literal_binds": False}))


def test_month_key():
    assert month_key(NOW) == "2026-10"
    assert month_key(datetime(2027, 1, 1)) == "2027-01"


def test_counter_labels():
    assert QuotaCounter.VOUCHERS.label == "vouchers"
    assert QuotaCounter.SMS.label == "sms"


@pytest.mark.asyncio
async def test_allowed_when_one_row_updated():
    session = _mock_session(rowcount=1)
    ledger = QuotaLedger(clock=lambda: NOW)
    assert await ledger.check_and_increment(session, uuid.uuid4(), QuotaCounter.VOUCHERS, 10) is True

    insert_call, update_call = session.execute.await_args_list
    assert "ON CONFLICT" in _sql(insert_call).upper()
    update_sql = _sql(update_call)
    assert "vouchers_count < " in update_sql
    assert "vouchers_count + " in update_sql


@pytest.mark.asyncio
async def test_refused_when_no_row_updated():
    session = _mock_session(rowcount=0)
    ledger = QuotaLedger(clock=lambda: NOW)
    assert await ledger.check_and_increment(session, uuid.uuid4(), QuotaCounter.SMS, 3) is False


@pytest.mark.asyncio
async def test_unlimited_has_no_bound():
    session = _mock_session(rowcount=1)
    ledger = QuotaLedger(clock=lambda: NOW)
    assert await ledger.check_and_increment(session, uuid.uuid4(), QuotaCounter.SMS, 0) is True
    update_sql = _sql(session.execute.await_args_list[1])
    assert "sms_sent <" not in update_sql


@pytest.mark.asyncio
async def test_get_usage_without_row_is_zero():
    session = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    session.execute.return_value = result

    usage = await QuotaLedger(clock=lambda: NOW).get_usage(session, uuid.uuid4())
    assert usage == {"month": "2026-10", "vouchers_count": 0, "sms_sent": 0}
