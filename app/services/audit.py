"""Audit logging helper functions for automation events.

Standard single-line logs (``AUDIT event=... key=value``) so they are easy
to index. The durable audit trail is the automation_logs table; these
lines mirror it and add run/rule level events that have no row there.
"""
from __future__ import annotations
import logging
from typing import Optional, Any

from app.utils.datetime import utc_now

_logger = logging.getLogger("app.audit")


def _emit(event: str, user_id: Optional[str] = None, **data: Any):
    payload = {"ts": utc_now().isoformat(), "event": event}
    if user_id:
        payload["user_id"] = user_id
    payload.update(data)
    parts = [f"{k}={repr(v)}" for k, v in payload.items()]
    _logger.info("AUDIT " + " ".join(parts))

# Public convenience wrappers

def log_run_started(run_id: str, rule_count: int):
    _emit("automation.run.start", run_id=run_id, rule_count=rule_count)

def log_run_finished(run_id: str, summary: dict):
    _emit("automation.run.finish", run_id=run_id, **summary)

def log_rule_quarantined(run_id: str, rule_id: str, detail: str):
    _emit("automation.rule.quarantined", run_id=run_id, rule_id=rule_id, detail=detail)

def log_rule_failed(run_id: str, rule_id: str, error: str):
    _emit("automation.rule.failed", run_id=run_id, rule_id=rule_id, error=error)

def log_stage_transition(run_id: str, rule_id: str, user_id: str, from_stage: int, to_stage: int, kind: str):
    _emit(
        "automation.stage.transition",
        user_id=user_id,
        run_id=run_id,
        rule_id=rule_id,
        from_stage=from_stage,
        to_stage=to_stage,
        kind=kind,
    )

def log_action(run_id: str, rule_id: str, user_id: str, action_kind: str | None, stage: int | None,
               status: str, reason: str | None = None):
    _emit(
        "automation.action",
        user_id=user_id,
        run_id=run_id,
        rule_id=rule_id,
        action_kind=action_kind,
        stage=stage,
        status=status,
        reason=reason,
    )
