"""
Seed a development tenant: an active license and a signing secret, plus
access tokens for each role.
Run from the project root: python -m scripts.seed
"""
import asyncio
import os
import sys
import uuid
from datetime import timedelta

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from jose import JWTError

import voucher_service.models  # noqa: F401
from voucher_service.database import (
    Base,
    create_engine_from_settings,
    create_session_factory,
    utcnow,
)
from voucher_service.models.license import License, LicenseStatus
from voucher_service.permissions import Role
from voucher_service.services.auth_service import create_access_token
from voucher_service.services.signature_service import SignatureEngine

# ---------- Fixed UUIDs ----------

TENANT_ACME_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")
USER_IDS = {
    Role.ORG_ADMIN: uuid.UUID("a0000000-0000-0000-0000-000000000101"),
    Role.COMPANY_ADMIN: uuid.UUID("a0000000-0000-0000-0000-000000000102"),
    Role.APPROVER: uuid.UUID("a0000000-0000-0000-0000-000000000103"),
    Role.ACCOUNTS: uuid.UUID("a0000000-0000-0000-0000-000000000104"),
    Role.VIEWER: uuid.UUID("a0000000-0000-0000-0000-000000000105"),
}


async def seed():
    engine = create_engine_from_settings()
    if engine.dialect.name == "sqlite":
        # Local SQLite has no alembic history; build the schema directly.
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    session_factory = create_session_factory(engine)
    async with session_factory() as db:
        existing = (
            await db.execute(select(License).where(License.tenant_id == TENANT_ACME_ID))
        ).scalar_one_or_none()
        if existing:
            print(f"License for {TENANT_ACME_ID} already exists ({existing.status})")
        else:
            db.add(
                License(
                    tenant_id=TENANT_ACME_ID,
                    license_key=f"DEV-{uuid.uuid4().hex[:16].upper()}",
                    plan_type="professional",
                    status=LicenseStatus.ACTIVE.value,
                    max_vouchers_per_month=500,
                    sms_credits=200,
                    expiry_date=utcnow() + timedelta(days=365),
                )
            )
            print(f"Created license for {TENANT_ACME_ID}")
        await SignatureEngine().provision_secret(db, TENANT_ACME_ID)
        await db.commit()
    await engine.dispose()

    for role, user_id in USER_IDS.items():
        try:
            token = create_access_token(
                user_id=str(user_id),
                tenant_id=str(TENANT_ACME_ID),
                role=role.value,
                email=f"{role.value}@acme.com",
                name=role.value.replace("_", " ").title(),
                expires_minutes=24 * 60,
            )
        except (JWTError, OSError) as e:
            print(f"Skipping tokens: {e}")
            break
        print(f"{role.value:15} {token}")


if __name__ == "__main__":
    asyncio.run(seed())
