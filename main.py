"""
Innerbloom Billing API
Subscription state machine, plan catalog and payment provider plumbing
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from routers.billing_router import billing_router
from utils.errors import AppError
from utils.rate_limit import RateLimiterMiddleware
from database import init_db
from config.settings import settings, IS_PRODUCTION, STORE_DATABASE
from backend.utils.responses import error_response

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Innerbloom Billing API")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return error_response("internal_error", status=500, message="Internal Server Error")


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Production is served over HTTPS only
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(RateLimiterMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return error_response(exc.code, status=exc.status_code, message=exc.message, data=exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response(
        "invalid_request",
        status=400,
        message="Request validation failed",
        data={"errors": [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
            for error in exc.errors()
        ]},
    )


# ============================================================================
# STARTUP
# ============================================================================
@app.on_event("startup")
async def initialize_database():
    """Create the billing tables when subscriptions are stored in the database."""
    if settings.billing_store != STORE_DATABASE:
        logger.info("Billing subscriptions kept in memory (BILLING_STORE=memory)")
        return
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


@app.on_event("startup")
async def check_billing_configuration():
    """Warn about billing configuration that only works locally (non-fatal)"""
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Webhook signatures will not be verified.")
    if not settings.jwt_secret_key:
        logger.warning("JWT_SECRET_KEY is not set. Only demo user headers can authenticate.")
    logger.info(f"Billing provider: {settings.billing_provider}")


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)


@app.get("/health")
async def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
