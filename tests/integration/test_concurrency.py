"""
Concurrent requests against a shared (SQLite) database.

Tests:
- Parallel creates never overshoot the monthly voucher quota
- Parallel creates get distinct voucher numbers
- A write based on a stale read is refused with CONFLICT
- A rotation committed after a read does not fail a later approval
"""

import asyncio

import pytest
from sqlalchemy import event, func, select, update

from tests.conftest import FakeOtpProvider, provision_tenant, voucher_input
from voucher_service.errors import Conflict, QuotaExceeded
from voucher_service.models.audit_log import SecurityEvent
from voucher_service.models.voucher import Voucher
from voucher_service.services import audit_service
from voucher_service.services.quota_service import QuotaLedger
from voucher_service.services.voucher_state_machine import VoucherStateMachine

PARALLEL_REQUESTS = 6
VOUCHER_LIMIT = 3


async def _create_in_own_session(session_factory, signer, actor):
    machine = VoucherStateMachine(signer=signer, otp_provider=FakeOtpProvider())
    async with session_factory() as session:
        voucher = await machine.create(session, actor, voucher_input())
        await session.commit()
        return voucher


@pytest.mark.asyncio
async def test_parallel_creates_respect_quota(session_factory, signer, tenant_id, accounts):
    lic = await provision_tenant(
        session_factory, signer, tenant_id, max_vouchers_per_month=VOUCHER_LIMIT
    )

    results = await asyncio.gather(
        *[_create_in_own_session(session_factory, signer, accounts) for _ in range(PARALLEL_REQUESTS)],
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, Voucher)]
    refused = [r for r in results if isinstance(r, QuotaExceeded)]
    assert len(created) == VOUCHER_LIMIT
    assert len(refused) == PARALLEL_REQUESTS - VOUCHER_LIMIT
    assert len({v.voucher_number for v in created}) == VOUCHER_LIMIT

    async with session_factory() as session:
        usage = await QuotaLedger().get_usage(session, lic.id)
        stored = (await session.execute(select(func.count(Voucher.id)))).scalar()
    assert usage["vouchers_count"] == VOUCHER_LIMIT
    assert stored == VOUCHER_LIMIT


@pytest.mark.asyncio
async def test_parallel_creates_get_unique_numbers(session_factory, signer, tenant_license, accounts):
    vouchers = await asyncio.gather(
        *[_create_in_own_session(session_factory, signer, accounts) for _ in range(4)]
    )
    numbers = sorted(v.voucher_number for v in vouchers)
    assert [n[-5:] for n in numbers] == ["00001", "00002", "00003", "00004"]


@pytest.mark.asyncio
async def test_stale_approve_is_a_conflict(session_factory, machine, tenant_license, accounts, approver):
    async with session_factory() as session:
        voucher = await machine.create(session, accounts, voucher_input())
        await session.commit()

    table = Voucher.__table__

    def concurrent_write(sess, flush_context, instances):
        # Another writer bumps the row between our read and our UPDATE.
        if any(isinstance(obj, Voucher) for obj in sess.dirty):
            sess.connection().execute(
                update(table).where(table.c.id == voucher.id).values(version=table.c.version + 1)
            )

    stale_session = session_factory()
    event.listen(stale_session.sync_session, "before_flush", concurrent_write)
    try:
        with pytest.raises(Conflict) as exc_info:
            await machine.approve(stale_session, approver, voucher.id)
        assert exc_info.value.details == {
            "voucher_id": str(voucher.id),
            "status": "pending_approval",
            "version": 1,
        }
        await stale_session.rollback()
    finally:
        event.remove(stale_session.sync_session, "before_flush", concurrent_write)
        await stale_session.close()

    async with session_factory() as session:
        stored = await session.get(Voucher, voucher.id)
        entries = await audit_service.list_voucher_entries(session, accounts.tenant_id, voucher.id)
    assert stored.status == "pending_approval"
    assert stored.version == 1
    assert [e.action for e in entries] == ["created"]


@pytest.mark.asyncio
async def test_approve_after_rotation_between_read_and_approve(
    session_factory, signer, machine, tenant_license, accounts, approver, admin, tenant_id
):
    async with session_factory() as session:
        voucher = await machine.create(session, accounts, voucher_input())
        await session.commit()

    reader = session_factory()
    try:
        seen = await machine.get(reader, approver, voucher.id)
        old_signature = seen.digital_signature

        async with session_factory() as session:
            await signer.rotate_secret(session, admin)
            await session.commit()

        approved = await machine.approve(reader, approver, voucher.id)
        await reader.commit()
        assert approved.status == "approved"
        assert approved.digital_signature != old_signature
    finally:
        await reader.close()

    async with session_factory() as session:
        events = (
            await session.execute(select(SecurityEvent).where(SecurityEvent.tenant_id == tenant_id))
        ).scalars().all()
        stored = await session.get(Voucher, voucher.id)
        assert await signer.verify_voucher(session, stored)
    assert events == []
    assert stored.status == "approved"
