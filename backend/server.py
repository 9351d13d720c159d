from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from auth import check_auth_configuration
from database import database
from routes import auth, billing, essays, journals, webhooks
from services.errors import BillingError, ConfigurationError, ProviderError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _check_billing_configuration():
    """Log which provider ids are missing. BILLING_CONFIG_STRICT=true makes it fatal."""
    from services.plan_registry import plan_registry

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Stripe charges will fail.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)

    if not (os.environ.get("PAYPAL_CLIENT_ID") and os.environ.get("PAYPAL_CLIENT_SECRET")):
        logger.error("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET not set. PayPal charges will fail.")

    missing = plan_registry.missing_provider_configuration()
    for env_name in missing:
        logger.error("Billing plan id not configured: %s", env_name)
    if missing and os.environ.get("BILLING_CONFIG_STRICT", "").strip().lower() == "true":
        raise ConfigurationError(f"Missing billing configuration: {', '.join(missing)}")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting PhD Writer Pro API")
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    check_auth_configuration()
    await database.connect()
    _check_billing_configuration()

    yield

    # Shutdown
    logger.info("Shutting down PhD Writer Pro API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="PhD Writer Pro API",
    description="Essay generation, journal search and subscription billing",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(essays.router)
app.include_router(journals.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "PhD Writer Pro",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Typed service errors: structured detail with request_id for log correlation
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    request_id = str(uuid.uuid4())
    if isinstance(exc, ProviderError):
        logger.error(
            "PROVIDER_ERROR provider=%s kind=%s error_code=%s request_id=%s path=%s message=%s",
            exc.provider, exc.kind, exc.error_code, request_id, request.url.path, exc.message,
        )
    elif exc.status_code >= 500:
        logger.error(
            "BILLING_ERROR error_code=%s request_id=%s path=%s message=%s",
            exc.error_code, request_id, request.url.path, exc.message,
        )
    else:
        logger.info(
            "REQUEST_REJECTED error_code=%s request_id=%s path=%s message=%s",
            exc.error_code, request_id, request.url.path, exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {"error_code": exc.error_code, "message": exc.message, "request_id": request_id}},
    )


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    # pydantic puts the raw exception in ctx for custom validators
    return [{k: v for k, v in e.items() if k != "ctx"} for e in errors]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"INTERNAL_ERROR path={request.url.path} error={exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
