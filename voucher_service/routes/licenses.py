from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.dependencies import get_license_gate
from voucher_service.middleware.auth import get_actor
from voucher_service.middleware.authorization import require_capabilities
from voucher_service.middleware.tenant import get_db_with_tenant
from voucher_service.permissions import Actor, Capability
from voucher_service.schemas.license import (
    LicenseResponse,
    LicenseUsageResponse,
    LicenseVerificationResponse,
)
from voucher_service.services.license_service import LicenseGate

router = APIRouter()


@router.get("/current", response_model=LicenseResponse)
async def current_license(
    response: Response,
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_LICENSE)),
    db: AsyncSession = Depends(get_db_with_tenant),
    gate: LicenseGate = Depends(get_license_gate),
):
    """The caller's license with this month's usage."""
    check = await gate.authorize(db, actor.tenant_id, actor.ip_address, actor.hardware_id)
    if check.warning:
        response.headers["X-License-Warning"] = check.warning
    lic = check.license
    usage = await gate.usage(db, lic)
    return LicenseResponse(
        id=str(lic.id),
        tenant_id=str(lic.tenant_id),
        plan_type=lic.plan_type,
        status=lic.status,
        expiry_date=lic.expiry_date.isoformat(),
        days_remaining=check.days_remaining,
        last_verified=lic.last_verified.isoformat() if lic.last_verified else None,
        usage=LicenseUsageResponse(**usage),
    )


@router.get("/verifications", response_model=list[LicenseVerificationResponse])
async def recent_verifications(
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    _auth: None = Depends(require_capabilities(Capability.VIEW_AUDIT)),
    db: AsyncSession = Depends(get_db_with_tenant),
    gate: LicenseGate = Depends(get_license_gate),
):
    """Latest license gate decisions for the caller's organization, newest first."""
    entries = await gate.recent_verifications(db, actor.tenant_id, limit)
    return [
        LicenseVerificationResponse(
            id=str(e.id),
            status=e.status,
            ip_address=e.ip_address,
            hardware_id=e.hardware_id,
            verified_at=e.verified_at.isoformat(),
        )
        for e in entries
    ]
