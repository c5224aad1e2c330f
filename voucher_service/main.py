from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.config import settings
from voucher_service.database import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_db,
    init_db,
)
from voucher_service.errors import VoucherServiceError
from voucher_service.logging_config import setup_logging
from voucher_service.middleware.correlation import CorrelationIdMiddleware
from voucher_service.middleware.idempotency import IdempotencyMiddleware
from voucher_service.middleware.rate_limit import rate_limit_middleware
from voucher_service.services.cache import build_cache
from voucher_service.services.otp_service import TwoFactorOtpProvider
from voucher_service.services.signature_service import SignatureEngine

# Import models so they are registered with Base.metadata
import voucher_service.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_voucher_service", env=settings.ENVIRONMENT)
    engine = create_engine_from_settings()
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.signature_engine = SignatureEngine()
    app.state.otp_provider = TwoFactorOtpProvider()
    app.state.cache = build_cache()
    await init_db(engine)
    yield
    await app.state.otp_provider.aclose()
    if app.state.cache is not None:
        await app.state.cache.aclose()
    await close_db(engine)


def register_exception_handlers(app: FastAPI) -> None:
    """Every error leaves as {"error": {"code": ..., "message": ...}}."""

    @app.exception_handler(VoucherServiceError)
    async def service_error_handler(request: Request, exc: VoucherServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", code=exc.code, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(DBAPIError)
    async def storage_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
        logger.error("storage_error", error=str(exc.orig))
        return JSONResponse(
            status_code=503,
            content={"error": {"code": "STORAGE_UNAVAILABLE", "message": "Storage is unavailable"}},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail
        if isinstance(detail, str):
            detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
        elif isinstance(detail, dict) and "error" not in detail:
            detail = {"error": detail}
        return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": jsonable_errors(exc),
                }
            },
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic v2 puts the raw exception under ctx for custom validators
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors


async def health(response: Response, request: Request, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except DBAPIError as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    cache = getattr(request.app.state, "cache", None)
    if cache is not None:
        try:
            await cache.ping()
            health_status["checks"]["cache"] = "ok"
        except Exception as e:
            logger.error("health_check_cache_failed", error=str(e))
            health_status["checks"]["cache"] = "error"
            health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.middleware("http")(rate_limit_middleware)
    app.add_middleware(IdempotencyMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_origin_regex=settings.CORS_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Idempotency-Key",
            "X-Request-ID",
            "X-Hardware-ID",
        ],
        expose_headers=["X-Request-ID", "X-License-Warning"],
    )

    app.add_api_route("/health", health, methods=["GET"], tags=["System"])

    from voucher_service.routes.audit_logs import router as audit_logs_router
    from voucher_service.routes.licenses import router as licenses_router
    from voucher_service.routes.signatures import router as signatures_router
    from voucher_service.routes.vouchers import router as vouchers_router

    app.include_router(vouchers_router, prefix="/api/v1/vouchers", tags=["Vouchers"])
    app.include_router(signatures_router, prefix="/api/v1/signatures", tags=["Signatures"])
    app.include_router(audit_logs_router, prefix="/api/v1/audit-logs", tags=["Audit Logs"])
    app.include_router(licenses_router, prefix="/api/v1/licenses", tags=["Licenses"])
    return app


app = create_app()
