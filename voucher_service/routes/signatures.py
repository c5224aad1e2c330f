import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.database import get_db
from voucher_service.dependencies import get_signature_engine, get_state_machine
from voucher_service.errors import NotFound, ValidationError
from voucher_service.middleware.auth import get_actor
from voucher_service.middleware.authorization import require_capabilities
from voucher_service.middleware.tenant import get_db_with_tenant
from voucher_service.models.voucher import Voucher
from voucher_service.permissions import Actor, Capability
from voucher_service.schemas.signature import (
    BatchVerifyItemResponse,
    BatchVerifyRequest,
    BatchVerifyResponse,
    RotateSecretResponse,
    SignatureHistoryItem,
    SignatureStatusResponse,
    SignatureVerifyResponse,
    VerificationStatsResponse,
)
from voucher_service.services.signature_service import SignatureEngine
from voucher_service.services.voucher_state_machine import VoucherStateMachine

logger = structlog.get_logger()
router = APIRouter()

PUBLIC_SIGNATURE_PREFIX = 16


def _parse_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError("voucher_id must be a valid UUID", {"field": "voucher_id"})


@router.post("/verify/{voucher_id}", response_model=SignatureVerifyResponse)
async def verify_signature(
    voucher_id: str,
    source: str = Query("web", max_length=20),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VERIFY_SIGNATURE)),
    db: AsyncSession = Depends(get_db_with_tenant),
    machine: VoucherStateMachine = Depends(get_state_machine),
    signer: SignatureEngine = Depends(get_signature_engine),
):
    """Re-verify one voucher and record the check."""
    voucher = await machine.get(db, actor, _parse_id(voucher_id))
    result = await signer.verify_and_log(db, voucher, actor, request_source=source)
    return SignatureVerifyResponse(
        voucher_id=result.voucher_id,
        voucher_number=result.voucher_number,
        is_valid=result.is_valid,
        status=result.status,
        verified_at=result.checked_at.isoformat(),
        message=(
            "Signature is valid. Voucher has not been tampered with."
            if result.is_valid
            else "Signature is invalid. Voucher may have been tampered with."
        ),
    )


@router.get("/status/{voucher_id}", response_model=SignatureStatusResponse)
async def signature_status(
    voucher_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Public summary for QR-code checks. Never returns the full signature."""
    result = await db.execute(select(Voucher).where(Voucher.id == _parse_id(voucher_id)))
    voucher = result.scalar_one_or_none()
    if voucher is None:
        raise NotFound("Voucher not found", {"voucher_id": voucher_id})

    prefix = None
    if voucher.digital_signature:
        prefix = voucher.digital_signature[:PUBLIC_SIGNATURE_PREFIX] + "..."
    return SignatureStatusResponse(
        voucher_number=voucher.voucher_number,
        status=voucher.status,
        amount=f"{voucher.amount:.2f}",
        created_at=voucher.created_at.isoformat(),
        signature_prefix=prefix,
        signature_timestamp=voucher.signature_timestamp.isoformat() if voucher.signature_timestamp else None,
        approved_at=voucher.approved_at.isoformat() if voucher.approved_at else None,
    )


@router.get("/history/{voucher_id}", response_model=list[SignatureHistoryItem])
async def verification_history(
    voucher_id: str,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VERIFY_SIGNATURE)),
    db: AsyncSession = Depends(get_db_with_tenant),
    signer: SignatureEngine = Depends(get_signature_engine),
):
    rows = await signer.verification_history(db, actor.tenant_id, _parse_id(voucher_id), limit)
    return [
        SignatureHistoryItem(
            id=str(r.id),
            verification_result=r.verification_result,
            verified_by=str(r.verified_by) if r.verified_by else None,
            request_source=r.request_source,
            ip_address=r.ip_address,
            verified_at=r.verified_at.isoformat(),
        )
        for r in rows
    ]


@router.post("/batch-verify", response_model=BatchVerifyResponse)
async def batch_verify(
    body: BatchVerifyRequest,
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.MANAGE_SIGNATURES)),
    db: AsyncSession = Depends(get_db_with_tenant),
    signer: SignatureEngine = Depends(get_signature_engine),
):
    ids = [_parse_id(v) for v in body.voucher_ids]
    items = await signer.batch_verify(db, actor.tenant_id, ids)
    results = [
        BatchVerifyItemResponse(
            voucher_id=i.voucher_id,
            voucher_number=i.voucher_number,
            is_valid=i.is_valid,
            error=i.error,
        )
        for i in items
    ]
    valid = sum(1 for i in items if i.is_valid is True)
    invalid = sum(1 for i in items if i.is_valid is False)
    logger.info("batch_verify_completed", total=len(items), valid=valid, invalid=invalid)
    return BatchVerifyResponse(
        total=len(items),
        valid=valid,
        invalid=invalid,
        errors=len(items) - valid - invalid,
        results=results,
    )


@router.post("/rotate-secret", response_model=RotateSecretResponse)
async def rotate_secret(
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.MANAGE_SIGNATURES)),
    db: AsyncSession = Depends(get_db_with_tenant),
    signer: SignatureEngine = Depends(get_signature_engine),
):
    logger.warning("signing_secret_rotation_requested", admin_user=str(actor.id))
    result = await signer.rotate_secret(db, actor)
    return RotateSecretResponse(
        total_vouchers=result.total,
        resigned_count=result.resigned,
        failed_count=result.failed,
        failed_voucher_ids=result.failed_voucher_ids,
        rotated_at=result.rotated_at.isoformat(),
    )


@router.get("/verification-stats", response_model=VerificationStatsResponse)
async def verification_stats(
    days: int = Query(30, ge=1, le=365),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.MANAGE_SIGNATURES)),
    db: AsyncSession = Depends(get_db_with_tenant),
    signer: SignatureEngine = Depends(get_signature_engine),
):
    return VerificationStatsResponse(**await signer.verification_stats(db, actor.tenant_id, days))
