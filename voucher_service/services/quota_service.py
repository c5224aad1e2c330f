"""
Quota ledger: monthly usage counters per license.

check_and_increment is one conditional UPDATE bounded by the limit, so
concurrent callers near the limit can never overshoot it. A refused call
changes nothing.
"""

import enum
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.database import insert_if_absent, utcnow
from voucher_service.models.license import LicenseUsage

logger = structlog.get_logger()


class QuotaCounter(str, enum.Enum):
    VOUCHERS = "vouchers_count"
    SMS = "sms_sent"

    @property
    def label(self) -> str:
        return "vouchers" if self is QuotaCounter.VOUCHERS else "sms"


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


class QuotaLedger:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    async def _ensure_row(self, session: AsyncSession, license_id: uuid.UUID, month: str) -> None:
        await insert_if_absent(
            session,
            LicenseUsage,
            dict(
                id=uuid.uuid4(),
                license_id=license_id,
                month=month,
                vouchers_count=0,
                sms_sent=0,
                last_activity=self.clock(),
            ),
            index_elements=["license_id", "month"],
        )

    async def check_and_increment(
        self,
        session: AsyncSession,
        license_id: uuid.UUID,
        counter: QuotaCounter,
        limit: int,
        month: Optional[str] = None,
    ) -> bool:
        """Add one to ``counter`` unless it already reached ``limit`` (<= 0 means unlimited)."""
        month = month or month_key(self.clock())
        await self._ensure_row(session, license_id, month)

        column = getattr(LicenseUsage, counter.value)
        stmt = (
            update(LicenseUsage)
            .where(LicenseUsage.license_id == license_id, LicenseUsage.month == month)
            .values({counter.value: column + 1, "last_activity": self.clock()})
        )
        if limit > 0:
            stmt = stmt.where(column < limit)
        result = await session.execute(stmt.execution_options(synchronize_session=False))
        allowed = result.rowcount == 1

        logger.info(
            "quota_check",
            license_id=str(license_id),
            counter=counter.value,
            month=month,
            limit=limit,
            allowed=allowed,
        )
        return allowed

    async def get_usage(
        self, session: AsyncSession, license_id: uuid.UUID, month: Optional[str] = None
    ) -> dict:
        month = month or month_key(self.clock())
        result = await session.execute(
            select(LicenseUsage)
            .where(LicenseUsage.license_id == license_id, LicenseUsage.month == month)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return {
            "month": month,
            "vouchers_count": row.vouchers_count if row else 0,
            "sms_sent": row.sms_sent if row else 0,
        }
