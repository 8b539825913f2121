# backend/app/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import uvicorn
import time
import logging

from app.db.database import init_db, check_db_connection
from app.api.billing import router as billing_router
from app.api.telephony import router as telephony_router
from app.api.sms import router as sms_router
from app.api.documents import router as documents_router
from app.api.clients import router as clients_router
from app.core.config import settings
from app.core.exceptions import ServiceError
from app.security.security_middleware import SecurityHeadersMiddleware, RequestSizeLimitMiddleware
from app.security.error_handlers import error_handler
from app.security.env_validator import env_validator

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Silence noisy third-party loggers
logging.getLogger('multipart.multipart').setLevel(logging.WARNING)
logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('stripe').setLevel(logging.WARNING)
logging.getLogger('twilio.http_client').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting up {settings.PROJECT_NAME} API...")

    # Refuse to serve webhooks we could not verify
    validation_results = env_validator.ensure_valid()
    if validation_results["status"] == "warning":
        logger.warning("⚠️  Environment validation warnings:")
        for warning in validation_results.get("warnings", []):
            logger.warning(f"  - {warning}")
    else:
        logger.info("✅ Environment variables validated successfully")

    try:
        await init_db()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise

    logger.info("✅ Application startup complete")
    yield
    logger.info("🛑 Application shutdown complete")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.API_VERSION,
    description="Multi-tenant funding operations backend: telephony, SMS, billing and documents",
    lifespan=lifespan
)

# Security middleware (order matters - add these first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.MAX_REQUEST_BYTES)

logger.info(f"🌐 CORS origins: {settings.CORS_ORIGINS}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with its status and timing"""
    start_time = time.time()
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"📨 HTTP: {request.method} {request.url.path} from {client_host}")

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(f"✅ HTTP response: {response.status_code} ({process_time:.3f}s)")
    return response


# Secure exception handlers
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return await error_handler.handle_service_error(request, exc)


@app.exception_handler(StarletteHTTPException)
async def secure_http_exception_handler(request: Request, exc: StarletteHTTPException):
    return await error_handler.handle_http_exception(request, exc)


@app.exception_handler(RequestValidationError)
async def secure_validation_exception_handler(request: Request, exc: RequestValidationError):
    return await error_handler.handle_validation_error(request, exc)


@app.exception_handler(Exception)
async def secure_general_exception_handler(request: Request, exc: Exception):
    return await error_handler.handle_internal_error(request, exc)


@app.get("/health")
async def health_check():
    """Primary health check endpoint"""
    database_ok = await check_db_connection()
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": "nexus-ops-backend",
        "version": settings.API_VERSION,
        "database": database_ok,
        "timestamp": time.time()
    }


logger.info("📋 Registering API routers...")

for router_name, router in (
    ("Billing", billing_router),
    ("Telephony", telephony_router),
    ("SMS", sms_router),
    ("Documents", documents_router),
    ("Clients", clients_router),
):
    try:
        app.include_router(router)
        logger.info(f"✅ {router_name} router registered")
    except Exception as e:
        logger.error(f"❌ Failed to register {router_name} router: {e}")


if __name__ == "__main__":
    logger.info("🚀 Starting server directly...")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
