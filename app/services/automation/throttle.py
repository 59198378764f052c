"""Cooldown/Cap Controller.

Runs after a forward transition has been persisted and only decides
whether the action is dispatched. A veto never rolls the stage back.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.schemas.automation import RuleDefinition
from app.services.automation.audit_log import AuditLog
from app.utils.datetime import to_naive_utc

REASON_COOLDOWN = "cooldown active"
REASON_MAX_SENDS = "max sends reached"


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: Optional[str] = None


ALLOW = Verdict(True)


class CooldownCapController:
    def __init__(self, audit: AuditLog):
        self.audit = audit

    def check(self, rule_id: str, definition: RuleDefinition, user_id: str, now: datetime) -> Verdict:
        if definition.cooldown_days:
            last_sent = self.audit.last_sent_at(rule_id, user_id)
            if last_sent is not None and to_naive_utc(now) - to_naive_utc(last_sent) < timedelta(days=definition.cooldown_days):
                return Verdict(False, REASON_COOLDOWN)

        if definition.max_sends_per_user:
            if self.audit.sent_count(rule_id, user_id) >= definition.max_sends_per_user:
                return Verdict(False, REASON_MAX_SENDS)

        return ALLOW
