"""
Signing secret lifecycle against a real (SQLite) database.

Tests:
- Rotation re-signs every intact voucher and skips tampered ones
- Old signatures no longer verify after rotation
- Batch verification reports per-item results
- Verification log, history and stats
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from tests.conftest import make_actor, voucher_input
from voucher_service.errors import SigningSecretMissing
from voucher_service.models.signing_secret import TenantSigningSecret
from voucher_service.models.voucher import Voucher
from voucher_service.permissions import Role
from voucher_service.services import audit_service
from voucher_service.services.signature_service import verify


async def _create(session_factory, machine, actor, count=1):
    ids = []
    for _ in range(count):
        async with session_factory() as session:
            voucher = await machine.create(session, actor, voucher_input())
            await session.commit()
            ids.append(voucher.id)
    return ids


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_secret_is_stored_encrypted(session_factory, signer, tenant_license, tenant_id):
    async with session_factory() as session:
        row = await session.get(TenantSigningSecret, tenant_id)
        secret = await signer.load_secret(session, tenant_id)
    assert len(secret) == 64
    assert secret not in row.encrypted_secret


@pytest.mark.asyncio
async def test_provision_is_idempotent(session_factory, signer, tenant_license, tenant_id):
    async with session_factory() as session:
        before = await signer.load_secret(session, tenant_id)
        await signer.provision_secret(session, tenant_id)
        await session.commit()
    async with session_factory() as session:
        assert await signer.load_secret(session, tenant_id) == before


@pytest.mark.asyncio
async def test_missing_secret(session_factory, signer):
    async with session_factory() as session:
        with pytest.raises(SigningSecretMissing):
            await signer.load_secret(session, uuid.uuid4())


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rotation_resigns_and_skips_tampered(session_factory, signer, machine, tenant_license, accounts, admin, tenant_id):
    ids = await _create(session_factory, machine, accounts, count=3)
    tampered = ids[1]
    async with session_factory() as session:
        await session.execute(update(Voucher).where(Voucher.id == tampered).values(amount=Decimal("99.00")))
        await session.commit()

    async with session_factory() as session:
        old_secret = await signer.load_secret(session, tenant_id)
        old_sigs = {
            v.id: v.digital_signature
            for v in (await session.execute(select(Voucher))).scalars().all()
        }

    async with session_factory() as session:
        result = await signer.rotate_secret(session, admin)
        await session.commit()

    assert result.total == 3
    assert result.resigned == 2
    assert result.failed == 1
    assert result.failed_voucher_ids == [str(tampered)]

    async with session_factory() as session:
        new_secret = await signer.load_secret(session, tenant_id)
        assert new_secret != old_secret
        vouchers = {v.id: v for v in (await session.execute(select(Voucher))).scalars().all()}
        for voucher_id in (ids[0], ids[2]):
            voucher = vouchers[voucher_id]
            assert voucher.digital_signature != old_sigs[voucher_id]
            assert await signer.verify_voucher(session, voucher)
            assert not verify(voucher, old_sigs[voucher_id], new_secret)
        assert vouchers[tampered].digital_signature == old_sigs[tampered]
        assert not await signer.verify_voucher(session, vouchers[tampered])

        row = await session.get(TenantSigningSecret, tenant_id)
        assert row.rotated_at is not None

        events = await audit_service.list_security_events(session, tenant_id, tampered)
    assert [e.event_type for e in events] == ["signature_mismatch_on_rotation"]


@pytest.mark.asyncio
async def test_rotation_rolled_back_keeps_old_secret(session_factory, signer, machine, tenant_license, accounts, admin, tenant_id):
    [voucher_id] = await _create(session_factory, machine, accounts)
    async with session_factory() as session:
        old_secret = await signer.load_secret(session, tenant_id)

    async with session_factory() as session:
        await signer.rotate_secret(session, admin)
        await session.rollback()

    async with session_factory() as session:
        assert await signer.load_secret(session, tenant_id) == old_secret
        voucher = await session.get(Voucher, voucher_id)
        assert await signer.verify_voucher(session, voucher)


@pytest.mark.asyncio
async def test_rotation_is_tenant_scoped(session_factory, signer, machine, tenant_license, accounts, admin):
    from tests.conftest import provision_tenant

    other_tenant = uuid.uuid4()
    await provision_tenant(session_factory, signer, other_tenant)
    [other_id] = await _create(session_factory, machine, make_actor(Role.ACCOUNTS, other_tenant))
    await _create(session_factory, machine, accounts)

    async with session_factory() as session:
        result = await signer.rotate_secret(session, admin)
        await session.commit()
    assert result.total == 1

    async with session_factory() as session:
        voucher = await session.get(Voucher, other_id)
        assert await signer.verify_voucher(session, voucher)


# ---------------------------------------------------------------------------
# Batch and logged verification
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_batch_verify(session_factory, signer, machine, tenant_license, accounts, tenant_id):
    good, bad = await _create(session_factory, machine, accounts, count=2)
    async with session_factory() as session:
        await session.execute(update(Voucher).where(Voucher.id == bad).values(head_of_account="Bribes"))
        await session.commit()
    missing = uuid.uuid4()

    async with session_factory() as session:
        items = await signer.batch_verify(session, tenant_id, [good, bad, missing])

    assert [(i.voucher_id, i.is_valid) for i in items] == [
        (str(good), True), (str(bad), False), (str(missing), None),
    ]
    assert items[2].error == "Voucher not found"
    assert items[0].voucher_number.startswith("VCH-")


@pytest.mark.asyncio
async def test_batch_verify_ignores_other_tenants(session_factory, signer, machine, tenant_license, accounts):
    [voucher_id] = await _create(session_factory, machine, accounts)
    from tests.conftest import provision_tenant

    other_tenant = uuid.uuid4()
    await provision_tenant(session_factory, signer, other_tenant)
    async with session_factory() as session:
        [item] = await signer.batch_verify(session, other_tenant, [voucher_id])
    assert item.is_valid is None


@pytest.mark.asyncio
async def test_verify_and_log_history_and_stats(session_factory, signer, machine, tenant_license, accounts, approver, tenant_id):
    good, bad = await _create(session_factory, machine, accounts, count=2)
    async with session_factory() as session:
        await session.execute(update(Voucher).where(Voucher.id == bad).values(payment_mode="cheque"))
        await session.commit()

    async with session_factory() as session:
        ok = await signer.verify_and_log(session, await session.get(Voucher, good), approver, "qr")
        broken = await signer.verify_and_log(session, await session.get(Voucher, bad), approver)
        await session.commit()
    assert ok.is_valid is True
    assert ok.status == "pending_approval"
    assert broken.is_valid is False

    async with session_factory() as session:
        [entry] = await signer.verification_history(session, tenant_id, good)
        stats = await signer.verification_stats(session, tenant_id, days=7)
        events = await audit_service.list_security_events(session, tenant_id, bad)

    assert entry.verification_result == "VALID"
    assert entry.request_source == "qr"
    assert entry.verified_by == approver.id
    assert stats == {
        "period_days": 7,
        "total_verifications": 2,
        "valid": 1,
        "invalid": 1,
        "success_rate": 50.0,
    }
    assert [e.event_type for e in events] == ["signature_mismatch"]


@pytest.mark.asyncio
async def test_stats_without_checks(session_factory, signer, tenant_license, tenant_id):
    async with session_factory() as session:
        stats = await signer.verification_stats(session, tenant_id)
    assert stats["total_verifications"] == 0
    assert stats["success_rate"] is None
