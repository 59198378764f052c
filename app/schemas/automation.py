"""Pydantic schemas for automation rules, their typed configs and API payloads."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.automation import ActionKind, RuleScope


class Tone(str, Enum):
    supportive = "supportive"
    motivational = "motivational"
    direct = "direct"


class Channel(str, Enum):
    in_app = "in_app"
    push = "push"
    email = "email"


class SignalName(str, Enum):
    training_logs = "training_logs"
    meal_logs = "meal_logs"
    message_replies = "message_replies"
    completed_sessions = "completed_sessions"
    wearable_activity = "wearable_activity"


class TargetAudience(str, Enum):
    clients = "clients"
    coaches = "coaches"
    all = "all"


class StageConfig(BaseModel):
    """One severity level. Stage numbers are positions in the rule's list, starting at 1."""
    model_config = ConfigDict(extra="forbid")

    threshold_days: int = Field(..., ge=0)
    action_kind: ActionKind
    tone: Tone = Tone.supportive
    template: Optional[str] = None


class AudienceFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    statuses: List[str] = Field(default_factory=lambda: ["active"])
    exclude_user_ids: List[str] = Field(default_factory=list)


# --- trigger configs (one model per trigger family) ---

class EmptyTriggerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class InactivityTriggerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lookback_days: Optional[int] = Field(None, ge=1, description="Ignore signal readings older than this")


class EventWindowConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window_minutes: Optional[int] = Field(None, ge=1, description="Defaults to one scheduler tick")


class DaysConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    days: int = Field(..., ge=1)


class ThresholdWindowConfig(EventWindowConfig):
    threshold: int = Field(..., ge=1)


class WeeklyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day_of_week: int = Field(0, ge=0, le=6, description="0 = Monday")


class MonthlyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day_of_month: int = Field(1, ge=1, le=31)


class RuleDefinition(BaseModel):
    """The validated shape of a rule, shared by the API and the engine's loader."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    scope: RuleScope = RuleScope.platform
    owner_id: Optional[str] = None
    enabled: bool = True
    priority: int = 0
    trigger_type: str
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    target_audience: TargetAudience = TargetAudience.clients
    audience_filters: AudienceFilters = Field(default_factory=AudienceFilters)
    signals_enabled: List[SignalName] = Field(default_factory=list)
    stages: List[StageConfig]
    channels: List[Channel] = Field(default_factory=lambda: [Channel.in_app])
    required_channels: Optional[List[Channel]] = None
    message_subject: Optional[str] = None
    cooldown_days: Optional[int] = Field(None, ge=0)
    max_sends_per_user: Optional[int] = Field(None, ge=1)

    @field_validator("trigger_config", "audience_filters", mode="before")
    @classmethod
    def _none_as_empty(cls, v):
        return {} if v is None else v

    @field_validator("signals_enabled", mode="before")
    @classmethod
    def _signals_from_mapping(cls, v):
        # Accept the {"training_logs": true, ...} toggle form as well as a list
        if isinstance(v, dict):
            return [name for name, enabled in v.items() if enabled]
        return [] if v is None else v

    @model_validator(mode="after")
    def _check_structure(self):
        if not self.stages:
            raise ValueError("at least one stage is required")
        thresholds = [s.threshold_days for s in self.stages]
        if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
            raise ValueError("stage thresholds must be strictly increasing")
        if not self.channels:
            raise ValueError("at least one channel is required")
        if len(set(self.channels)) != len(self.channels):
            raise ValueError("channels must be unique")
        if self.required_channels is not None:
            missing = set(self.required_channels) - set(self.channels)
            if missing:
                raise ValueError(f"required channels not enabled: {sorted(c.value for c in missing)}")
        if self.scope == RuleScope.coach and not self.owner_id:
            raise ValueError("coach-scoped rules need an owner_id")
        if len(set(self.signals_enabled)) != len(self.signals_enabled):
            raise ValueError("signals must be unique")
        return self

    @property
    def thresholds(self) -> List[int]:
        return [s.threshold_days for s in self.stages]

    @property
    def primary_channels(self) -> List[Channel]:
        """Channels that must succeed for an action to count as sent."""
        return list(self.required_channels) if self.required_channels else [self.channels[0]]


class RuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    trigger_config: Optional[Dict[str, Any]] = None
    target_audience: Optional[TargetAudience] = None
    audience_filters: Optional[Dict[str, Any]] = None
    signals_enabled: Optional[List[SignalName]] = None
    stages: Optional[List[StageConfig]] = None
    channels: Optional[List[Channel]] = None
    required_channels: Optional[List[Channel]] = None
    message_subject: Optional[str] = None
    cooldown_days: Optional[int] = Field(None, ge=0)
    max_sends_per_user: Optional[int] = Field(None, ge=1)


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    scope: RuleScope
    owner_id: Optional[str]
    enabled: bool
    priority: int
    trigger_type: str
    trigger_config: Dict[str, Any]
    target_audience: str
    audience_filters: Dict[str, Any]
    signals_enabled: List[str]
    stages: List[Dict[str, Any]]
    channels: List[str]
    required_channels: Optional[List[str]]
    message_subject: Optional[str]
    cooldown_days: Optional[int]
    max_sends_per_user: Optional[int]
    created_at: datetime
    updated_at: datetime


class StateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    user_id: str
    current_stage: int
    muted_until: Optional[datetime]
    last_message_at: Optional[datetime]
    last_alert_at: Optional[datetime]
    last_escalation_at: Optional[datetime]
    updated_at: datetime


class LogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_id: str
    user_id: str
    action_kind: Optional[str]
    stage: Optional[int]
    rendered_message: Optional[str]
    status: str
    reason: Optional[str]
    channel_results: Optional[Dict[str, Any]]
    created_at: datetime


class MuteRequest(BaseModel):
    user_id: str = Field(..., description="User to silence under this rule")
    until: datetime = Field(..., description="Evaluation resumes after this instant (UTC)")

    model_config = {
        "json_schema_extra": {
            "example": {"user_id": "c0a8...", "until": "2026-11-01T00:00:00Z"}
        }
    }
