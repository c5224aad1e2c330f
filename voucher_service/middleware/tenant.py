from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.database import get_db, set_tenant_context
from voucher_service.middleware.auth import get_actor
from voucher_service.permissions import Actor


async def get_db_with_tenant(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> AsyncSession:
    """FastAPI dependency: get DB session with RLS tenant context set."""
    await set_tenant_context(db, str(actor.tenant_id))
    return db
