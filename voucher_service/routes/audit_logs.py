import csv
import io
import json
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.database import utcnow
from voucher_service.errors import ValidationError
from voucher_service.middleware.auth import get_actor
from voucher_service.middleware.authorization import require_capabilities
from voucher_service.middleware.tenant import get_db_with_tenant
from voucher_service.permissions import Actor, Capability
from voucher_service.routes.vouchers import audit_to_response
from voucher_service.schemas.audit_log import VoucherAuditEntryResponse
from voucher_service.schemas.common import PaginatedResponse, build_pagination, page_offset
from voucher_service.services import audit_service

router = APIRouter()

EXPORT_MAX_ROWS = 10_000


def _uuid_or_none(value: Optional[str], field_name: str) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be a valid UUID", {"field": field_name})


def _range(from_date: Optional[date], to_date: Optional[date]):
    from_dt = datetime.combine(from_date, datetime.min.time()) if from_date else None
    to_dt = datetime.combine(to_date, datetime.max.time()) if to_date else None
    return from_dt, to_dt


@router.get("", response_model=PaginatedResponse[VoucherAuditEntryResponse])
async def list_audit_logs(
    voucher_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_AUDIT)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    from_dt, to_dt = _range(from_date, to_date)
    entries, total = await audit_service.list_entries(
        db,
        actor.tenant_id,
        voucher_id=_uuid_or_none(voucher_id, "voucher_id"),
        actor_id=_uuid_or_none(actor_id, "actor_id"),
        action=action,
        from_dt=from_dt,
        to_dt=to_dt,
        offset=page_offset(page, limit),
        limit=limit,
    )
    items = [audit_to_response(e) for e in entries]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/export")
async def export_audit_logs(
    voucher_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.EXPORT_AUDIT)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Compliance export as CSV. Max 10,000 rows."""
    from_dt, to_dt = _range(from_date, to_date)
    entries, _ = await audit_service.list_entries(
        db,
        actor.tenant_id,
        voucher_id=_uuid_or_none(voucher_id, "voucher_id"),
        actor_id=_uuid_or_none(actor_id, "actor_id"),
        action=action,
        from_dt=from_dt,
        to_dt=to_dt,
        limit=EXPORT_MAX_ROWS,
    )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "id", "voucher_id", "action", "actor_id", "actor_name", "actor_role",
        "changed_fields", "before_state", "after_state", "notes", "ip_address", "created_at",
    ])
    for e in entries:
        writer.writerow([
            str(e.id),
            str(e.voucher_id),
            e.action,
            str(e.actor_id) if e.actor_id else "",
            e.actor_name or "",
            e.actor_role or "",
            ";".join(e.changed_fields or []),
            json.dumps(e.before_state, sort_keys=True) if e.before_state else "",
            json.dumps(e.after_state, sort_keys=True) if e.after_state else "",
            e.notes or "",
            e.ip_address or "",
            e.created_at.isoformat() if e.created_at else "",
        ])

    filename = f"voucher_audit_{utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
