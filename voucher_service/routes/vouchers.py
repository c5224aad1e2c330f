import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.dependencies import get_state_machine
from voucher_service.errors import ValidationError
from voucher_service.middleware.auth import get_actor
from voucher_service.middleware.authorization import require_capabilities
from voucher_service.middleware.tenant import get_db_with_tenant
from voucher_service.models.audit_log import VoucherAuditLog
from voucher_service.models.voucher import Voucher
from voucher_service.permissions import Actor, Capability
from voucher_service.schemas.audit_log import VoucherAuditEntryResponse
from voucher_service.schemas.common import (
    MessageResponse,
    PaginatedResponse,
    build_pagination,
    page_offset,
)
from voucher_service.schemas.voucher import (
    CancelRequest,
    OtpSentResponse,
    RejectRequest,
    VerifyOtpRequest,
    VoucherCreate,
    VoucherResponse,
    VoucherUpdate,
)
from voucher_service.services import audit_service
from voucher_service.services.voucher_state_machine import VoucherInput, VoucherStateMachine

logger = structlog.get_logger()
router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


def audit_to_response(entry: VoucherAuditLog) -> VoucherAuditEntryResponse:
    return VoucherAuditEntryResponse(
        id=str(entry.id),
        voucher_id=str(entry.voucher_id),
        action=entry.action,
        actor_id=_str(entry.actor_id),
        actor_name=entry.actor_name,
        actor_role=entry.actor_role,
        before_state=entry.before_state,
        after_state=entry.after_state,
        changed_fields=entry.changed_fields,
        notes=entry.notes,
        ip_address=entry.ip_address,
        created_at=entry.created_at.isoformat() if entry.created_at else "",
    )


def _to_response(
    v: Voucher, audit_trail: Optional[list[VoucherAuditLog]] = None
) -> VoucherResponse:
    return VoucherResponse(
        id=str(v.id),
        tenant_id=str(v.tenant_id),
        voucher_number=v.voucher_number,
        financial_year=v.financial_year,
        company_id=str(v.company_id),
        payee_id=str(v.payee_id),
        payee_name=v.payee_name,
        amount=f"{v.amount:.2f}",
        currency=v.currency,
        payment_mode=v.payment_mode,
        head_of_account=v.head_of_account,
        description=v.description,
        remarks=v.remarks,
        status=v.status,
        digital_signature=v.digital_signature,
        signature_timestamp=_iso(v.signature_timestamp),
        signature_verified=bool(v.signature_verified),
        created_by=str(v.created_by),
        created_at=v.created_at.isoformat(),
        updated_at=_iso(v.updated_at),
        approved_by=_str(v.approved_by),
        approved_at=_iso(v.approved_at),
        rejected_by=_str(v.rejected_by),
        rejected_at=_iso(v.rejected_at),
        rejection_reason=v.rejection_reason,
        cancelled_by=_str(v.cancelled_by),
        cancelled_at=_iso(v.cancelled_at),
        cancellation_reason=v.cancellation_reason,
        completed_by=_str(v.completed_by),
        completed_at=_iso(v.completed_at),
        otp_sent_at=_iso(v.otp_sent_at),
        payee_otp_verified=bool(v.payee_otp_verified),
        version=v.version,
        audit_trail=[audit_to_response(e) for e in audit_trail] if audit_trail is not None else None,
    )


def _license_headers(response: Response, machine: VoucherStateMachine) -> None:
    check = machine.license_check
    if check and check.warning:
        response.headers["X-License-Warning"] = check.warning


def _parse_id(value: str, field_name: str = "voucher_id") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be a valid UUID", {"field": field_name})


# ---------- LIST / GET ----------


@router.get("", response_model=PaginatedResponse[VoucherResponse])
async def list_vouchers(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    voucher_status: Optional[str] = Query(None, alias="status"),
    company_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_VOUCHERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    conditions = [Voucher.tenant_id == actor.tenant_id]
    if voucher_status:
        conditions.append(Voucher.status == voucher_status)
    if company_id:
        conditions.append(Voucher.company_id == _parse_id(company_id, "company_id"))
    if from_date:
        conditions.append(Voucher.created_at >= datetime.combine(from_date, datetime.min.time()))
    if to_date:
        conditions.append(Voucher.created_at <= datetime.combine(to_date, datetime.max.time()))
    if search:
        pattern = f"%{search}%"
        conditions.append(
            or_(Voucher.voucher_number.ilike(pattern), Voucher.payee_name.ilike(pattern))
        )

    total = (await db.execute(select(func.count(Voucher.id)).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(Voucher)
        .where(*conditions)
        .order_by(Voucher.created_at.desc())
        .offset(page_offset(page, limit))
        .limit(limit)
    )
    items = [_to_response(v) for v in result.scalars().all()]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/heads-of-account", response_model=list[str])
async def list_heads_of_account(
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_VOUCHERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Distinct account heads already used by this organization, for autocomplete."""
    result = await db.execute(
        select(Voucher.head_of_account)
        .where(Voucher.tenant_id == actor.tenant_id, Voucher.head_of_account.is_not(None))
        .distinct()
        .order_by(Voucher.head_of_account)
    )
    return [row for row in result.scalars().all()]


@router.get("/{voucher_id}", response_model=VoucherResponse)
async def get_voucher(
    voucher_id: str,
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_VOUCHERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher = await machine.get(db, actor, _parse_id(voucher_id))
    trail = await audit_service.list_voucher_entries(db, actor.tenant_id, voucher.id)
    return _to_response(voucher, trail)


@router.get("/{voucher_id}/audit-log", response_model=list[VoucherAuditEntryResponse])
async def get_voucher_audit_log(
    voucher_id: str,
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_AUDIT)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    trail = await audit_service.list_voucher_entries(db, actor.tenant_id, _parse_id(voucher_id))
    return [audit_to_response(e) for e in trail]


# ---------- CREATE / UPDATE / DELETE ----------


@router.post("", response_model=VoucherResponse, status_code=status.HTTP_201_CREATED)
async def create_voucher(
    body: VoucherCreate,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    data = VoucherInput(
        company_id=_parse_id(body.company_id, "company_id"),
        payee_id=_parse_id(body.payee_id, "payee_id"),
        amount=body.amount,
        payment_mode=body.payment_mode.value,
        head_of_account=body.head_of_account,
        description=body.description,
        remarks=body.remarks,
        payee_name=body.payee_name,
        payee_mobile=body.payee_mobile,
        currency=body.currency,
    )
    voucher = await machine.create(db, actor, data)
    _license_headers(response, machine)
    return _to_response(voucher)


@router.put("/{voucher_id}", response_model=VoucherResponse)
async def update_voucher(
    voucher_id: str,
    body: VoucherUpdate,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    changes = body.model_dump(exclude_unset=True)
    if "payment_mode" in changes and changes["payment_mode"] is not None:
        changes["payment_mode"] = changes["payment_mode"].value
    voucher = await machine.update(db, actor, _parse_id(voucher_id), changes)
    _license_headers(response, machine)
    return _to_response(voucher)


@router.delete("/{voucher_id}", response_model=MessageResponse)
async def delete_voucher(
    voucher_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    await machine.delete(db, actor, _parse_id(voucher_id))
    return MessageResponse(message="Voucher deleted")


# ---------- WORKFLOW ----------


@router.post("/{voucher_id}/approve", response_model=VoucherResponse)
async def approve_voucher(
    voucher_id: str,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher = await machine.approve(db, actor, _parse_id(voucher_id))
    _license_headers(response, machine)
    return _to_response(voucher)


@router.post("/{voucher_id}/reject", response_model=VoucherResponse)
async def reject_voucher(
    voucher_id: str,
    body: RejectRequest,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher = await machine.reject(db, actor, _parse_id(voucher_id), body.rejection_reason)
    _license_headers(response, machine)
    return _to_response(voucher)


@router.post("/{voucher_id}/cancel", response_model=VoucherResponse)
async def cancel_voucher(
    voucher_id: str,
    body: CancelRequest,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher = await machine.cancel(db, actor, _parse_id(voucher_id), body.cancellation_reason)
    _license_headers(response, machine)
    return _to_response(voucher)


@router.post("/{voucher_id}/send-otp", response_model=OtpSentResponse)
async def send_payout_otp(
    voucher_id: str,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher, masked = await machine.request_code(db, actor, _parse_id(voucher_id))
    _license_headers(response, machine)
    return OtpSentResponse(
        message="OTP sent to payee mobile",
        otp_sent_to=masked,
        otp_sent_at=voucher.otp_sent_at.isoformat(),
    )


@router.post("/{voucher_id}/verify-otp", response_model=VoucherResponse)
async def verify_payout_otp(
    voucher_id: str,
    body: VerifyOtpRequest,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
):
    voucher = await machine.confirm_code(db, actor, _parse_id(voucher_id), body.otp)
    _license_headers(response, machine)
    return _to_response(voucher)
