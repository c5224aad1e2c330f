"""Audit trail: append-only voucher history and the security event log."""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.database import utcnow
from voucher_service.models.audit_log import SecurityEvent, VoucherAuditLog
from voucher_service.models.voucher import Voucher
from voucher_service.permissions import Actor

logger = structlog.get_logger()

_SNAPSHOT_FIELDS = (
    "voucher_number",
    "company_id",
    "payee_id",
    "payee_name",
    "amount",
    "currency",
    "payment_mode",
    "head_of_account",
    "description",
    "remarks",
    "status",
    "approved_by",
    "rejection_reason",
    "cancellation_reason",
    "otp_sent_at",
    "payee_otp_verified",
)


def _json_safe(value):
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def voucher_snapshot(voucher: Voucher) -> dict:
    """JSON-serialisable copy of the fields the audit trail tracks."""
    return {name: _json_safe(getattr(voucher, name)) for name in _SNAPSHOT_FIELDS}


def _compute_changed_fields(
    before: Optional[dict], after: Optional[dict]
) -> Optional[list[str]]:
    """Diff two state dicts and return list of changed field names."""
    if not before or not after:
        return None
    changed = []
    all_keys = set(before.keys()) | set(after.keys())
    for key in sorted(all_keys):
        if before.get(key) != after.get(key):
            changed.append(key)
    return changed or None


async def append_entry(
    session: AsyncSession,
    voucher_id: uuid.UUID,
    action: str,
    actor: Actor,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    notes: Optional[str] = None,
) -> VoucherAuditLog:
    """
    Insert one audit entry.

    Uses session.flush(); the caller owns the transaction, so a failed insert
    fails the transition that produced it.
    """
    entry = VoucherAuditLog(
        tenant_id=actor.tenant_id,
        voucher_id=voucher_id,
        action=action,
        actor_id=actor.id,
        actor_name=actor.name,
        actor_role=actor.role.value,
        before_state=before_state,
        after_state=after_state,
        changed_fields=_compute_changed_fields(before_state, after_state),
        notes=notes,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        request_id=actor.request_id,
        created_at=utcnow(),
    )
    session.add(entry)
    await session.flush()

    logger.info(
        "voucher_audit_appended",
        action=action,
        voucher_id=str(voucher_id),
        actor_id=str(actor.id),
    )
    return entry


async def record_security_event(
    session: AsyncSession,
    event_type: str,
    actor: Actor,
    voucher_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
    severity: str = "high",
) -> SecurityEvent:
    event = SecurityEvent(
        tenant_id=actor.tenant_id,
        voucher_id=voucher_id,
        event_type=event_type,
        severity=severity,
        actor_id=actor.id,
        actor_name=actor.name,
        actor_role=actor.role.value,
        details=details,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        request_id=actor.request_id,
        created_at=utcnow(),
    )
    session.add(event)
    await session.flush()

    logger.warning(
        "security_event_recorded",
        event_type=event_type,
        severity=severity,
        voucher_id=str(voucher_id) if voucher_id else None,
        actor_id=str(actor.id),
    )
    return event


async def list_voucher_entries(
    session: AsyncSession, tenant_id: uuid.UUID, voucher_id: uuid.UUID
) -> list[VoucherAuditLog]:
    """Full history of one voucher, oldest first."""
    result = await session.execute(
        select(VoucherAuditLog)
        .where(
            VoucherAuditLog.tenant_id == tenant_id,
            VoucherAuditLog.voucher_id == voucher_id,
        )
        .order_by(VoucherAuditLog.created_at.asc(), VoucherAuditLog.id)
    )
    return list(result.scalars().all())


def _filtered(q, voucher_id, actor_id, action, from_dt, to_dt):
    if voucher_id:
        q = q.where(VoucherAuditLog.voucher_id == voucher_id)
    if actor_id:
        q = q.where(VoucherAuditLog.actor_id == actor_id)
    if action:
        q = q.where(VoucherAuditLog.action == action)
    if from_dt:
        q = q.where(VoucherAuditLog.created_at >= from_dt)
    if to_dt:
        q = q.where(VoucherAuditLog.created_at <= to_dt)
    return q


async def list_entries(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    voucher_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    action: Optional[str] = None,
    from_dt: Optional[datetime] = None,
    to_dt: Optional[datetime] = None,
    offset: int = 0,
    limit: Optional[int] = 20,
) -> tuple[list[VoucherAuditLog], int]:
    """Tenant-wide listing, newest first. Returns (page, total)."""
    base = select(VoucherAuditLog).where(VoucherAuditLog.tenant_id == tenant_id)
    count_q = select(func.count(VoucherAuditLog.id)).where(
        VoucherAuditLog.tenant_id == tenant_id
    )
    q = _filtered(base, voucher_id, actor_id, action, from_dt, to_dt)
    count_q = _filtered(count_q, voucher_id, actor_id, action, from_dt, to_dt)

    total = (await session.execute(count_q)).scalar() or 0
    q = q.order_by(VoucherAuditLog.created_at.desc()).offset(offset)
    if limit is not None:
        q = q.limit(limit)
    result = await session.execute(q)
    return list(result.scalars().all()), total


async def list_security_events(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    voucher_id: Optional[uuid.UUID] = None,
) -> list[SecurityEvent]:
    q = select(SecurityEvent).where(SecurityEvent.tenant_id == tenant_id)
    if voucher_id:
        q = q.where(SecurityEvent.voucher_id == voucher_id)
    result = await session.execute(q.order_by(SecurityEvent.created_at.desc()))
    return list(result.scalars().all())
