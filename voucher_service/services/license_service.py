"""
License gate: every metered voucher operation passes through here first.

authorize() checks, in order: license exists, license is active, license has
not expired, optional IP and hardware locks. Each decision is logged to
license_verifications. consume() meters one unit of a monthly counter through
the quota ledger.
"""

import ipaddress
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.config import Settings, settings
from voucher_service.database import utcnow
from voucher_service.errors import (
    LicenseExpired,
    LicenseInactive,
    LicenseNotFound,
    LicenseRestricted,
    QuotaExceeded,
)
from voucher_service.models.license import License, LicenseStatus, LicenseVerification
from voucher_service.services.quota_service import QuotaCounter, QuotaLedger

logger = structlog.get_logger()


@dataclass
class LicenseCheck:
    license: License
    days_remaining: int
    warning: Optional[str] = None


def _ip_allowed(client_ip: Optional[str], whitelist: list) -> bool:
    if not client_ip:
        return False
    try:
        addr = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in whitelist:
        try:
            if addr in ipaddress.ip_network(str(entry), strict=False):
                return True
        except ValueError:
            logger.warning("license_ip_whitelist_entry_invalid", entry=str(entry))
    return False


class LicenseGate:
    def __init__(
        self,
        ledger: Optional[QuotaLedger] = None,
        clock: Callable[[], datetime] = utcnow,
        config: Settings = settings,
    ):
        self.clock = clock
        self.ledger = ledger or QuotaLedger(clock=clock)
        self.config = config

    async def get_license(self, session: AsyncSession, tenant_id: uuid.UUID) -> Optional[License]:
        result = await session.execute(select(License).where(License.tenant_id == tenant_id))
        return result.scalar_one_or_none()

    async def authorize(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        client_ip: Optional[str] = None,
        hardware_id: Optional[str] = None,
    ) -> LicenseCheck:
        """
        Validate the tenant's license and log the decision.

        Refusals are committed before the error is raised, together with the
        'expired' status change, so they survive the failed request. A
        successful check is only added to the session and commits with it.
        """
        license = await self.get_license(session, tenant_id)
        if license is None:
            await self._refuse(session, tenant_id, None, "invalid", client_ip, hardware_id)
            logger.warning("license_not_found", tenant_id=str(tenant_id))
            raise LicenseNotFound(str(tenant_id))

        if license.status != LicenseStatus.ACTIVE.value:
            await self._refuse(session, tenant_id, license, license.status, client_ip, hardware_id)
            logger.warning("license_inactive", tenant_id=str(tenant_id), status=license.status)
            raise LicenseInactive(license.status)

        now = self.clock()
        if license.expiry_date < now:
            license.status = LicenseStatus.EXPIRED.value
            await self._refuse(session, tenant_id, license, "expired", client_ip, hardware_id)
            logger.warning(
                "license_expired",
                tenant_id=str(tenant_id),
                expiry_date=license.expiry_date.isoformat(),
            )
            raise LicenseExpired(license.expiry_date.isoformat())

        if self.config.ENABLE_HARDWARE_LOCK and license.hardware_id:
            if hardware_id != license.hardware_id:
                await self._refuse(
                    session, tenant_id, license, "hardware_mismatch", client_ip, hardware_id
                )
                logger.warning("license_hardware_mismatch", tenant_id=str(tenant_id))
                raise LicenseRestricted(
                    "hardware_lock", "License is locked to a different device"
                )

        if self.config.ENABLE_IP_WHITELIST and license.ip_whitelist:
            if not _ip_allowed(client_ip, license.ip_whitelist):
                await self._refuse(
                    session, tenant_id, license, "ip_not_whitelisted", client_ip, hardware_id
                )
                logger.warning("license_ip_not_whitelisted", tenant_id=str(tenant_id), ip=client_ip)
                raise LicenseRestricted(
                    "ip_whitelist", "Access from this IP address is not allowed"
                )

        license.last_verified = now
        self._record(session, tenant_id, license, "success", client_ip, hardware_id)
        days_remaining = (license.expiry_date - now).days
        warning = None
        if days_remaining <= self.config.LICENSE_EXPIRY_WARNING_DAYS:
            warning = f"License expires in {days_remaining} days"
        return LicenseCheck(license=license, days_remaining=days_remaining, warning=warning)

    def _record(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        license: Optional[License],
        status: str,
        client_ip: Optional[str],
        hardware_id: Optional[str],
    ) -> LicenseVerification:
        entry = LicenseVerification(
            tenant_id=tenant_id,
            license_id=license.id if license is not None else None,
            status=status,
            ip_address=client_ip,
            hardware_id=hardware_id,
            verified_at=self.clock(),
        )
        session.add(entry)
        return entry

    async def _refuse(self, session, tenant_id, license, status, client_ip, hardware_id) -> None:
        self._record(session, tenant_id, license, status, client_ip, hardware_id)
        await session.commit()

    async def recent_verifications(
        self, session: AsyncSession, tenant_id: uuid.UUID, limit: int = 20
    ) -> list[LicenseVerification]:
        result = await session.execute(
            select(LicenseVerification)
            .where(LicenseVerification.tenant_id == tenant_id)
            .order_by(LicenseVerification.verified_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    def limit_for(self, license: License, counter: QuotaCounter) -> int:
        if counter is QuotaCounter.VOUCHERS:
            return license.max_vouchers_per_month or 0
        return license.sms_credits or 0

    async def consume(
        self, session: AsyncSession, license: License, counter: QuotaCounter
    ) -> None:
        """Meter one unit, or raise QuotaExceeded naming the counter and plan."""
        limit = self.limit_for(license, counter)
        allowed = await self.ledger.check_and_increment(session, license.id, counter, limit)
        if allowed:
            return
        usage = await self.ledger.get_usage(session, license.id)
        logger.warning(
            "quota_exceeded",
            license_id=str(license.id),
            counter=counter.value,
            plan=license.plan_type,
            limit=limit,
        )
        raise QuotaExceeded(counter.label, license.plan_type, limit, usage[counter.value])

    async def usage(self, session: AsyncSession, license: License) -> dict:
        current = await self.ledger.get_usage(session, license.id)
        return {
            **current,
            "max_vouchers_per_month": license.max_vouchers_per_month,
            "sms_credits": license.sms_credits,
        }
