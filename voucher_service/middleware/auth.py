import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
import structlog

from voucher_service.config import settings
from voucher_service.permissions import Actor, parse_role
from voucher_service.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer()


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": {"code": "AUTH_TOKEN_INVALID", "message": message}},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """FastAPI dependency: extract and verify JWT, return user claims dict."""
    token = credentials.credentials
    try:
        payload = verify_access_token(token)
        return {
            "user_id": payload["sub"],
            "tenant_id": payload["tenant_id"],
            "role": payload["role"],
            "email": payload.get("email"),
            "name": payload.get("name"),
        }
    except (JWTError, KeyError) as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise _unauthorized("Invalid or expired token")


def client_ip(request: Request) -> str:
    """
    Address the request came from.

    X-Forwarded-For is only read when TRUSTED_PROXY_HOPS is set, and then
    from the right: each trusted proxy appends the address it received
    the request from, so entries further left are client-controlled.
    """
    peer = request.client.host if request.client else "unknown"
    hops = settings.TRUSTED_PROXY_HOPS
    forwarded_for = request.headers.get("X-Forwarded-For")
    if hops <= 0 or not forwarded_for:
        return peer
    chain = [part.strip() for part in forwarded_for.split(",") if part.strip()]
    if not chain:
        return peer
    return chain[-hops] if len(chain) >= hops else chain[0]


async def get_actor(
    request: Request,
    current_user: dict = Depends(get_current_user),
) -> Actor:
    """FastAPI dependency: the caller as the services see it."""
    role = parse_role(current_user["role"])
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": {
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": f"Unknown role '{current_user['role']}'",
                }
            },
        )
    try:
        user_id = uuid.UUID(str(current_user["user_id"]))
        tenant_id = uuid.UUID(str(current_user["tenant_id"]))
    except ValueError:
        raise _unauthorized("Token carries malformed identifiers")

    structlog.contextvars.bind_contextvars(
        tenant_id=str(tenant_id), user_id=str(user_id)
    )
    return Actor(
        id=user_id,
        tenant_id=tenant_id,
        role=role,
        name=current_user.get("name") or current_user.get("email"),
        email=current_user.get("email"),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        request_id=getattr(request.state, "request_id", None),
        hardware_id=request.headers.get("X-Hardware-ID"),
    )
