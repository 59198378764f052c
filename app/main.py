from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
import uuid
from dotenv import load_dotenv

# Load environment variables before settings are read elsewhere
load_dotenv()

# Import core components
from app.core.logging_config import setup_logging
from app.core.settings import settings

# Import configuration
from app.config import init_firebase

# Import route modules
from app.routes import automations, health, scheduled_tasks
from app.exceptions import APIException

# Set up logging first
logger = setup_logging()

# Allow exposing the interactive docs in development or when explicitly enabled
# via the SHOW_DOCS environment variable (useful for temporary access on Cloud Run).
_docs_enabled = settings.is_development or os.getenv("SHOW_DOCS", "").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logger.info("=" * 50)
    logger.info(f"{settings.automation_app_name} Automation API starting up")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"CORS origins: {settings.cors_origins}")
    logger.info(f"SQL Debug: {'enabled' if settings.sql_debug else 'disabled'}")

    from app.services.email import get_sendgrid_client
    from app.services.push_notification import _is_fcm_available
    email_status = "configured" if get_sendgrid_client() else "not configured"
    push_status = "configured" if _is_fcm_available() else "not configured"
    logger.info(f"SendGrid Email: {email_status} (automation channel {'on' if settings.automation_email_enabled else 'off'})")
    logger.info(f"FCM Push: {push_status} (automation channel {'on' if settings.automation_push_enabled else 'off'})")
    logger.info(f"Automation rule workers: {settings.automation_rule_workers}")
    logger.info("=" * 50)

    yield
    # Shutdown logic
    logger.info(f"{settings.automation_app_name} Automation API shutting down gracefully")

app = FastAPI(
    title=f"{settings.automation_app_name} Automation API",
    description="Behavioral automation engine for coaching engagement",
    version="1.0.0",
    docs_url="/docs" if _docs_enabled else None,
    redoc_url="/redoc" if _docs_enabled else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:16]
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    return response


# Initialize Firebase (skip in test environment)
if not settings.is_test:
    init_firebase()

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(automations.router)
app.include_router(scheduled_tasks.router, prefix="/scheduled", tags=["Scheduled"])


# Exception handlers
@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    correlation_id = getattr(request.state, 'correlation_id', 'unknown')
    logger.warning(f"[{correlation_id}] {type(exc).__name__} on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "correlation_id": correlation_id}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    correlation_id = getattr(request.state, 'correlation_id', 'unknown')
    logger.error(f"[{correlation_id}] Unhandled exception on {request.url.path}: {str(exc)}", exc_info=True)

    content = {"detail": "Internal server error", "correlation_id": correlation_id}
    if settings.is_development:
        content.update({"error": str(exc), "type": type(exc).__name__})
    return JSONResponse(status_code=500, content=content)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "message": f"{settings.automation_app_name} Automation API",
        "version": "1.0.0",
        "environment": settings.environment,
        "docs_url": "/docs" if _docs_enabled else None,
        "health_check": "/health",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info" if settings.is_development else "warning"
    )
