from fastapi import Depends

from voucher_service.middleware.auth import get_actor
from voucher_service.permissions import Actor, Capability, require_capability


def require_capabilities(*capabilities: Capability):
    """
    FastAPI dependency factory for capability checks outside the state machine.

    Usage:
        @router.get("/export")
        async def export_audit_logs(
            actor: Actor = Depends(get_actor),
            _auth: None = Depends(require_capabilities(Capability.EXPORT_AUDIT)),
        ):
    """
    async def check(actor: Actor = Depends(get_actor)):
        for capability in capabilities:
            require_capability(actor, capability)
        return None

    return check
