"""Scheduled tasks endpoint for cron jobs (Cloud Scheduler).

These endpoints are meant to be called by Cloud Scheduler or a similar
cron service on every tick; the automation pass itself decides what, if
anything, needs to be sent.
"""

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from typing import Optional
import logging

from app.core.settings import settings
from app.db import get_session_factory
from app.exceptions import RuleStoreUnavailable
from app.services.automation import run_automation_pass

logger = logging.getLogger(__name__)
router = APIRouter()


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)):
    """Verify the cron secret header for scheduled job authentication."""
    if not x_cron_secret or x_cron_secret != settings.cron_secret:
        raise HTTPException(status_code=403, detail="Invalid cron secret")
    return True


@router.post("/automations/run")
def trigger_automation_run(
    max_workers: Optional[int] = Query(None, ge=1, le=32, description="Override AUTOMATION_RULE_WORKERS"),
    session_factory=Depends(get_session_factory),
    _verified: bool = Depends(verify_cron_secret)
):
    """Run one automation evaluation pass over every enabled rule.

    Example Cloud Scheduler config:
    - Schedule: */30 * * * * (every 30 minutes, matches AUTOMATION_EVENT_WINDOW_MINUTES)
    - Target: POST https://api.example.com/scheduled/automations/run
    - Headers: X-Cron-Secret: <your-secret>

    Returns the run summary. ``locked: true`` means another pass was
    still running and this tick did nothing.
    """
    logger.info("Triggering automation pass")
    try:
        summary = run_automation_pass(session_factory, max_workers=max_workers)
    except RuleStoreUnavailable as e:
        logger.error(f"Automation pass aborted, rule store unavailable: {e}")
        raise HTTPException(status_code=503, detail="Automation rules unavailable")

    logger.info(f"Automation pass finished: {summary.to_dict()}")
    return {
        "message": "Automation pass skipped (already running)" if summary.locked else "Automation pass complete",
        "summary": summary.to_dict(),
    }
