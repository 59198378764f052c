"""
Health check and monitoring endpoints.
"""
import time
import logging
from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session
from app.db import get_db, check_database_health
from app.models.automation import AutomationLease, AutomationRule
from app.services.email import get_sendgrid_client
from app.services.push_notification import _is_fcm_available
from app.core.settings import settings
from app.utils.datetime import utc_now_naive

logger = logging.getLogger("app.health")
router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "environment": settings.environment,
        "version": "1.0.0"
    }


@router.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_db)):
    """Detailed health check with service status."""
    start_time = time.time()

    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "environment": settings.environment,
        "services": {}
    }

    db_health = await check_database_health()
    health_status["services"]["database"] = db_health
    if db_health["status"] != "healthy":
        health_status["status"] = "degraded"

    # Notification sinks used by the automation dispatcher
    health_status["services"]["push"] = {
        "status": "configured" if _is_fcm_available() else "not_configured",
        "enabled": settings.automation_push_enabled,
    }
    health_status["services"]["email"] = {
        "status": "configured" if get_sendgrid_client() else "not_configured",
        "enabled": settings.automation_email_enabled,
        "provider": "sendgrid",
    }

    if db_health["status"] == "healthy":
        enabled_rules = db.query(func.count(AutomationRule.id)).filter(AutomationRule.enabled.is_(True)).scalar()
        lease = db.query(AutomationLease).first()
        health_status["services"]["automation"] = {
            "enabled_rules": enabled_rules,
            "run_in_progress": bool(lease and lease.expires_at > utc_now_naive()),
            "workers": settings.automation_rule_workers,
        }

    response_time = (time.time() - start_time) * 1000
    health_status["response_time_ms"] = round(response_time, 2)
    return health_status


@router.get("/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    db_health = await check_database_health()
    if db_health["status"] != "healthy":
        return {"status": "not_ready", "reason": "database_unavailable"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"status": "alive", "timestamp": time.time()}
