"""Persistence for the behavioral automation engine.

- AutomationRule: configured trigger + audience + staged actions.
- UserAutomationState: per (rule, user) stage machine instance.
- AutomationLog: append-only record of every attempted action.
- AutomationLease: named run lock that keeps scheduler ticks from overlapping.
"""
from sqlalchemy import (
    Column, String, DateTime, Integer, Boolean, Text, JSON, ForeignKey,
    Enum as SQLEnum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from app.db import Base
from app.utils.datetime import utc_now_naive, to_naive_utc
import uuid
import enum


class RuleScope(enum.Enum):
    coach = "coach"
    platform = "platform"


class ActionKind(str, enum.Enum):
    auto_message = "auto_message"
    alert_only = "alert_only"
    assisted = "assisted"


class LogStatus(str, enum.Enum):
    sent = "sent"
    skipped = "skipped"
    failed = "failed"


class AutomationRule(Base):
    __tablename__ = "automation_rules"
    __table_args__ = (
        Index("ix_automation_rules_enabled_priority", "enabled", "priority"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    scope = Column(SQLEnum(RuleScope), nullable=False, default=RuleScope.platform)
    owner_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)  # coach for coach scope
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)  # higher runs first

    trigger_type = Column(String, nullable=False)
    trigger_config = Column(JSON, nullable=False, default=dict)
    target_audience = Column(String, nullable=False, default="clients")  # clients|coaches|all
    audience_filters = Column(JSON, nullable=False, default=dict)
    signals_enabled = Column(JSON, nullable=False, default=list)
    stages = Column(JSON, nullable=False, default=list)

    channels = Column(JSON, nullable=False, default=lambda: ["in_app"])
    required_channels = Column(JSON, nullable=True)
    message_subject = Column(String, nullable=True)

    cooldown_days = Column(Integer, nullable=True)
    max_sends_per_user = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, nullable=False)

    states = relationship("UserAutomationState", back_populates="rule")

    def __repr__(self):
        return f"<AutomationRule {self.name!r} trigger={self.trigger_type} scope={self.scope.value}>"


class UserAutomationState(Base):
    """Current stage of one user under one rule.

    ``current_stage`` only moves up, except the reset to 0 on recovery.
    Rows are never deleted; dashboards read them for "at risk" lists.
    """
    __tablename__ = "user_automation_states"
    __table_args__ = (
        UniqueConstraint("rule_id", "user_id", name="uq_user_automation_state_rule_user"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String, ForeignKey("automation_rules.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    current_stage = Column(Integer, nullable=False, default=0)
    muted_until = Column(DateTime, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    last_alert_at = Column(DateTime, nullable=True)
    last_escalation_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=utc_now_naive, nullable=False)

    rule = relationship("AutomationRule", back_populates="states")

    def is_muted(self, now) -> bool:
        return self.muted_until is not None and to_naive_utc(self.muted_until) > to_naive_utc(now)


class AutomationLog(Base):
    """Audit trail row. Inserted once, never updated.

    Cooldown and cap checks read the ``sent`` rows of this table.
    """
    __tablename__ = "automation_logs"
    __table_args__ = (
        Index("ix_automation_logs_rule_user_status_created", "rule_id", "user_id", "status", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String, ForeignKey("automation_rules.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    action_kind = Column(String, nullable=True)  # null when the failure happened before classification
    stage = Column(Integer, nullable=True)
    rendered_message = Column(Text, nullable=True)
    status = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    channel_results = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)


class AutomationLease(Base):
    __tablename__ = "automation_leases"

    name = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
