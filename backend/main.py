import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paywall.api.endpoints import admin, cron, pix, subscriber, webhook
from paywall.core.auth import enforce_basic_auth_for_request, is_public_path
from paywall.core.database import Base, engine
from paywall.core.errors import GatewayError, PaywallError
from paywall.core.settings import settings

# Register tables on Base.metadata before create_all.
from paywall.models import subscriber_profile, subscription  # noqa: F401

logger = logging.getLogger("paywall")
logger.setLevel(settings.log_level)
if not logger.handlers:
    _log_handler = logging.StreamHandler()
    _log_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(_log_handler)

app = FastAPI(title="Paywall Subscriptions API")

origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def startup() -> None:
    if settings.basic_auth_enabled and (settings.basic_auth_username is None or settings.basic_auth_password is None):
        raise RuntimeError("Basic Auth is enabled but BASIC_AUTH_USERNAME/BASIC_AUTH_PASSWORD are not set")
    if not settings.mercadopago_access_token:
        logger.warning("startup.mercadopago_token_missing")
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)


@app.exception_handler(PaywallError)
async def paywall_error_handler(request: Request, exc: PaywallError) -> JSONResponse:
    content: dict = {"success": False, "error": exc.message}
    if exc.details is not None and not settings.is_production:
        content["details"] = exc.details
    if isinstance(exc, GatewayError) and exc.retryable:
        content["suggestion"] = "The payment may still be processing. Try again in a few minutes."
    if exc.status_code >= 500:
        logger.error("request.failed path=%s error=%s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    content: dict = {"success": False, "error": "Invalid request body"}
    if not settings.is_production:
        content["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=400, content=content)


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if is_public_path(request.url.path):
        return await call_next(request)

    if request.method == "OPTIONS":
        return await call_next(request)

    try:
        enforce_basic_auth_for_request(request)
    except HTTPException as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    return await call_next(request)


# API Routes
app.include_router(pix.router, prefix="/api", tags=["pix"])
app.include_router(webhook.router, prefix="/api", tags=["webhook"])
app.include_router(subscriber.router, prefix="/api", tags=["subscriber"])
app.include_router(admin.router, prefix="/api", tags=["admin"])
app.include_router(cron.router, prefix="/api", tags=["cron"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
