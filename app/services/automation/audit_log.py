"""Audit Log: append-only automation_logs rows.

Rows are inserted and queried, never updated. The cooldown and cap
checks count only ``sent`` rows.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.automation import AutomationLog, LogStatus


class AuditLog:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        rule_id: str,
        user_id: str,
        status: LogStatus,
        now: datetime,
        action_kind: Optional[str] = None,
        stage: Optional[int] = None,
        rendered_message: Optional[str] = None,
        reason: Optional[str] = None,
        channel_results: Optional[Dict[str, Any]] = None,
    ) -> AutomationLog:
        entry = AutomationLog(
            rule_id=rule_id,
            user_id=user_id,
            action_kind=action_kind,
            stage=stage,
            rendered_message=rendered_message,
            status=LogStatus(status).value,
            reason=reason,
            channel_results=channel_results,
            created_at=now,
        )
        self.db.add(entry)
        return entry

    def last_sent_at(self, rule_id: str, user_id: str) -> Optional[datetime]:
        return self.db.query(func.max(AutomationLog.created_at)).filter(
            AutomationLog.rule_id == rule_id,
            AutomationLog.user_id == user_id,
            AutomationLog.status == LogStatus.sent.value,
        ).scalar()

    def sent_count(self, rule_id: str, user_id: str) -> int:
        return self.db.query(func.count(AutomationLog.id)).filter(
            AutomationLog.rule_id == rule_id,
            AutomationLog.user_id == user_id,
            AutomationLog.status == LogStatus.sent.value,
        ).scalar() or 0

    def for_rule(self, rule_id: str, user_id: Optional[str] = None, limit: int = 100) -> List[AutomationLog]:
        query = self.db.query(AutomationLog).filter(AutomationLog.rule_id == rule_id)
        if user_id:
            query = query.filter(AutomationLog.user_id == user_id)
        return query.order_by(AutomationLog.created_at.desc()).limit(limit).all()

    def has_failure(self, rule_id: str, user_id: str, stage: int, reason: str, since: datetime) -> bool:
        """Whether this exact failure was already recorded at or after ``since``."""
        return self.db.query(AutomationLog.id).filter(
            AutomationLog.rule_id == rule_id,
            AutomationLog.user_id == user_id,
            AutomationLog.status == LogStatus.failed.value,
            AutomationLog.stage == stage,
            AutomationLog.reason == reason,
            AutomationLog.created_at >= since,
        ).first() is not None
