from contextlib import asynccontextmanager

from backend.app.core.errors import register_exception_handlers
from backend.app.core.logging import setup_logging

# Configure logging (JSON structured)
logger = setup_logging()

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from secure import (
    ContentSecurityPolicy,
    ReferrerPolicy,
    Secure,
    StrictTransportSecurity,
    XContentTypeOptions,
    XFrameOptions,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from backend.app.api.endpoints import access, credits, subscription, webhooks
from backend.app.core.config import settings
from backend.app.core.database import Database
from backend.app.core.metrics import EventSink
from backend.app.services.payments import build_payment_provider


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.db = Database()
    app.state.events = EventSink(config=settings)
    app.state.payment_provider = build_payment_provider(settings.payment_provider)
    logger.info(
        "Billing service started",
        extra={
            "data": {
                "app_env": settings.app_env.value,
                "payment_provider": settings.payment_provider,
                "provider_ready": app.state.payment_provider is not None,
            }
        },
    )
    yield
    # Shutdown
    db: Database | None = getattr(app.state, "db", None)
    if db is not None:
        db.dispose()


app = FastAPI(
    title="Margin Billing API",
    description="Credits ledger, feature gating and payment webhooks",
    version="1.0.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# Register Global Exception Handlers
register_exception_handlers(app)


def _env_list(key: str, default: list[str]) -> list[str]:
    if "PYTEST_CURRENT_TEST" in os.environ:
        return default
    value = os.getenv(key)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


# Configure CORS (secure-by-default in production)
default_origins = (
    [
        "http://localhost:3000",  # Next.js frontend
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]
    if settings.is_dev
    else list(settings.allowed_origins)
)
origins = _env_list("MARGIN_ALLOWED_ORIGINS", default_origins)
if not settings.is_dev and not origins:
    raise RuntimeError("MARGIN_ALLOWED_ORIGINS must be set in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Enable GZip compression for responses > 1000 bytes
app.add_middleware(GZipMiddleware, minimum_size=1000)

default_trusted_hosts = (
    ["localhost", "127.0.0.1", "0.0.0.0", "[::1]", "testserver"]
    if settings.is_dev
    else list(settings.trusted_hosts)
)
trusted_hosts = _env_list("MARGIN_TRUSTED_HOSTS", default_trusted_hosts)
if not settings.is_dev and "*" in trusted_hosts:
    raise RuntimeError("MARGIN_TRUSTED_HOSTS cannot include '*' in production")
app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

# API-only responses: nothing may be framed, embedded or fetched cross-origin
SECURE_HEADERS = Secure(
    hsts=StrictTransportSecurity().max_age(63072000).include_subdomains().preload(),
    xfo=XFrameOptions().deny(),
    referrer=ReferrerPolicy().strict_origin_when_cross_origin(),
    csp=ContentSecurityPolicy().default_src("'none'").frame_ancestors("'none'"),
    xcto=XContentTypeOptions().nosniff(),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, secure_headers: Secure) -> None:
        super().__init__(app)
        self.secure_headers = secure_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        await self.secure_headers.set_headers_async(response)
        # No HSTS on cleartext requests in dev so local proxies keep working
        if settings.is_dev and request.url.scheme not in ("https", "wss"):
            if "Strict-Transport-Security" in response.headers:
                del response.headers["Strict-Transport-Security"]

        # Balances and subscription state must never land in shared caches
        if request.url.path.startswith(("/credits", "/subscription", "/access", "/webhooks")):
            response.headers["Cache-Control"] = "no-store"

        return response


app.add_middleware(
    SecurityHeadersMiddleware,
    secure_headers=SECURE_HEADERS,
)

if settings.force_https:
    app.add_middleware(HTTPSRedirectMiddleware)

# Added last (executed first) so request.client.host & scheme are correct.
proxy_trusted_hosts: list[str] | str = (
    "*"
    if settings.is_dev
    else _env_list("MARGIN_PROXY_TRUSTED_HOSTS", list(settings.proxy_trusted_hosts))
)
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=proxy_trusted_hosts)

# Include Routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(access.router, prefix="/access", tags=["access"])
app.include_router(subscription.router, prefix="/subscription", tags=["subscription"])


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "margin-billing-api", "app_env": settings.app_env.value}


@app.get("/")
async def root():
    return {"message": "Welcome to the Margin Billing API"}
