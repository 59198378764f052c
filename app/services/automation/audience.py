"""Audience Resolver: trigger strategies that pick a rule's candidate users.

Every trigger type is a TriggerStrategy registered under its name in
TRIGGER_REGISTRY. A strategy owns its config model, its structural
checks on the rule, and the directory query that selects candidates.
Adding a trigger type means adding a strategy class here.
"""
from __future__ import annotations

import calendar
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from app.exceptions import AudienceResolutionError
from app.models.activity import CoachingSession
from app.models.automation import RuleScope
from app.models.coach_client import CoachClient
from app.models.user import User, UserRole
from app.schemas.automation import (
    DaysConfig,
    EmptyTriggerConfig,
    EventWindowConfig,
    InactivityTriggerConfig,
    MonthlyConfig,
    RuleDefinition,
    TargetAudience,
    ThresholdWindowConfig,
    WeeklyConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """Detached snapshot of a directory user plus trigger-supplied metadata."""
    user_id: str
    email: str
    role: str
    first_name: Optional[str]
    last_name: Optional[str]
    display_name: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User, metadata: Optional[Dict[str, Any]] = None) -> "Candidate":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role.value if user.role else "",
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            created_at=user.created_at,
            updated_at=user.updated_at,
            metadata=dict(metadata or {}),
        )


_AUDIENCE_ROLES = {
    TargetAudience.clients: [UserRole.client],
    TargetAudience.coaches: [UserRole.coach],
    TargetAudience.all: [UserRole.client, UserRole.coach],
}


class UserDirectory:
    """Read-only queries over the users table scoped to one rule."""

    def __init__(self, db: Session):
        self.db = db

    def in_scope(self, definition: RuleDefinition) -> Query:
        query = self.db.query(User)
        if definition.scope == RuleScope.coach:
            query = query.join(CoachClient, CoachClient.client_id == User.id).filter(
                CoachClient.coach_id == definition.owner_id,
                CoachClient.status == "active",
            )
        else:
            query = query.filter(User.role.in_(_AUDIENCE_ROLES[definition.target_audience]))

        filters = definition.audience_filters
        if filters.statuses:
            status_clause = User.status.in_(filters.statuses)
            if "active" in filters.statuses:
                status_clause = status_clause | User.status.is_(None)
            query = query.filter(status_clause)
        if filters.exclude_user_ids:
            query = query.filter(User.id.notin_(filters.exclude_user_ids))
        return query

    def get(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def admins(self) -> List[User]:
        return self.db.query(User).filter(User.role == UserRole.admin).order_by(User.created_at).all()


Selection = List[Tuple[User, Dict[str, Any]]]


class TriggerStrategy(ABC):
    trigger_type: str = ""
    config_model: Type[BaseModel] = EventWindowConfig
    measures_inactivity = False

    def parse_config(self, raw: Dict[str, Any]) -> BaseModel:
        return self.config_model.model_validate(raw or {})

    def validate(self, definition: RuleDefinition) -> BaseModel:
        """Parse the trigger config and check the stage layout this trigger needs.

        Raises ValueError (or pydantic's ValidationError) on a bad rule.
        """
        config = self.parse_config(definition.trigger_config)
        if self.measures_inactivity:
            if definition.thresholds[0] <= 0:
                raise ValueError("inactivity stages need a first threshold above 0 days")
            if not definition.signals_enabled:
                raise ValueError("inactivity triggers need at least one enabled signal")
        elif definition.thresholds != [0]:
            raise ValueError("event triggers take exactly one stage with threshold_days 0")
        return config

    @abstractmethod
    def select(self, directory: UserDirectory, definition: RuleDefinition, config: BaseModel,
               now: datetime, window: timedelta) -> Selection:
        ...


TRIGGER_REGISTRY: Dict[str, TriggerStrategy] = {}


def register_trigger(cls):
    TRIGGER_REGISTRY[cls.trigger_type] = cls()
    return cls


def _plain(query: Query) -> Selection:
    return [(user, {}) for user in query.all()]


def _event_window(config: EventWindowConfig, window: timedelta) -> timedelta:
    return timedelta(minutes=config.window_minutes) if config.window_minutes else window


# --- inactivity ---

@register_trigger
class ClientDropoffTrigger(TriggerStrategy):
    trigger_type = "client_dropoff"
    config_model = InactivityTriggerConfig
    measures_inactivity = True

    def select(self, directory, definition, config, now, window):
        return _plain(directory.in_scope(definition))


@register_trigger
class InactiveDaysTrigger(TriggerStrategy):
    """Only users whose profile hasn't been touched for the first threshold."""
    trigger_type = "inactive_days"
    config_model = InactivityTriggerConfig
    measures_inactivity = True

    def select(self, directory, definition, config, now, window):
        cutoff = now - timedelta(days=definition.thresholds[0])
        return _plain(directory.in_scope(definition).filter(User.updated_at <= cutoff))


# --- lifecycle events ---

@register_trigger
class UserSignupTrigger(TriggerStrategy):
    trigger_type = "user_signup"

    def select(self, directory, definition, config, now, window):
        since = now - _event_window(config, window)
        return _plain(directory.in_scope(definition).filter(User.created_at >= since))


@register_trigger
class ProfileCompleteTrigger(TriggerStrategy):
    trigger_type = "profile_complete"

    def select(self, directory, definition, config, now, window):
        since = now - _event_window(config, window)
        return _plain(directory.in_scope(definition).filter(
            User.onboarding_completed.is_(True),
            User.updated_at >= since,
        ))


@register_trigger
class OnboardingIncompleteTrigger(TriggerStrategy):
    """Accounts older than ``days`` that still haven't finished onboarding."""
    trigger_type = "onboarding_incomplete"
    config_model = DaysConfig

    def select(self, directory, definition, config, now, window):
        cutoff = now - timedelta(days=config.days)
        return _plain(directory.in_scope(definition).filter(
            User.onboarding_completed.is_(False),
            User.created_at <= cutoff,
        ))


@register_trigger
class CoachVerifiedTrigger(TriggerStrategy):
    trigger_type = "coach_verified"

    def select(self, directory, definition, config, now, window):
        since = now - _event_window(config, window)
        return _plain(directory.in_scope(definition).filter(
            User.role == UserRole.coach,
            User.is_verified.is_(True),
            User.verified_at >= since,
        ))


@register_trigger
class AccountAnniversaryTrigger(TriggerStrategy):
    trigger_type = "account_anniversary"
    config_model = EmptyTriggerConfig

    def select(self, directory, definition, config, now, window):
        users = directory.in_scope(definition).filter(User.created_at <= now - timedelta(days=365)).all()
        selection = []
        for user in users:
            created = user.created_at
            if (created.month, created.day) == (now.month, now.day):
                selection.append((user, {"years": now.year - created.year}))
        return selection


def _booking_counts(db: Session, since: datetime) -> Dict[str, int]:
    """Total bookings per client, for clients with a booking created since ``since``."""
    recent = db.query(CoachingSession.client_id).filter(CoachingSession.created_at >= since).distinct()
    rows = db.query(CoachingSession.client_id, func.count(CoachingSession.id)).filter(
        CoachingSession.client_id.in_(recent)
    ).group_by(CoachingSession.client_id).all()
    return {client_id: count for client_id, count in rows}


class _BookingCountTrigger(TriggerStrategy):
    def target_count(self, config) -> int:
        raise NotImplementedError

    def select(self, directory, definition, config, now, window):
        counts = _booking_counts(directory.db, now - _event_window(config, window))
        wanted = self.target_count(config)
        client_ids = [cid for cid, count in counts.items() if count == wanted]
        if not client_ids:
            return []
        users = directory.in_scope(definition).filter(User.id.in_(client_ids)).all()
        return [(user, {"booking_count": wanted}) for user in users]


@register_trigger
class FirstBookingTrigger(_BookingCountTrigger):
    trigger_type = "first_booking"

    def target_count(self, config) -> int:
        return 1


@register_trigger
class BookingMilestoneTrigger(_BookingCountTrigger):
    trigger_type = "booking_milestone"
    config_model = ThresholdWindowConfig

    def target_count(self, config) -> int:
        return config.threshold


@register_trigger
class NoBookingsDaysTrigger(TriggerStrategy):
    """Clients (older than ``days``) with no booking created in the last ``days``."""
    trigger_type = "no_bookings_days"
    config_model = DaysConfig

    def select(self, directory, definition, config, now, window):
        cutoff = now - timedelta(days=config.days)
        booked = directory.db.query(CoachingSession.client_id).filter(CoachingSession.created_at >= cutoff)
        return _plain(directory.in_scope(definition).filter(
            User.role == UserRole.client,
            User.created_at <= cutoff,
            User.id.notin_(booked),
        ))


# --- calendar ---

@register_trigger
class WeeklyMotivationTrigger(TriggerStrategy):
    trigger_type = "weekly_motivation"
    config_model = WeeklyConfig

    def select(self, directory, definition, config, now, window):
        if now.weekday() != config.day_of_week:
            return []
        return _plain(directory.in_scope(definition))


@register_trigger
class MonthlySummaryTrigger(TriggerStrategy):
    trigger_type = "monthly_summary"
    config_model = MonthlyConfig

    def select(self, directory, definition, config, now, window):
        # day 31 in a 30-day month lands on the 30th
        last_day = calendar.monthrange(now.year, now.month)[1]
        if now.day != min(config.day_of_month, last_day):
            return []
        return _plain(directory.in_scope(definition))


class AudienceResolver:
    def __init__(self, db: Session):
        self.directory = UserDirectory(db)

    def resolve(self, rule, now: datetime, window: timedelta) -> Iterator[Candidate]:
        """Yield the rule's candidates, each user at most once.

        The directory is read in full on the first ``next()`` and turned
        into detached snapshots, so the caller can commit between users or
        stop early without touching the database again.
        """
        definition = rule.definition
        strategy = TRIGGER_REGISTRY[definition.trigger_type]
        try:
            selection = strategy.select(self.directory, definition, rule.trigger_config, now, window)
            extra = {}
            if definition.scope == RuleScope.coach:
                owner = self.directory.get(definition.owner_id)
                if owner is not None:
                    extra["coach_name"] = owner.name
            candidates = [Candidate.from_user(user, {**extra, **meta}) for user, meta in selection]
        except SQLAlchemyError as e:
            raise AudienceResolutionError(definition.trigger_type, e) from e

        logger.info(f"[automation] {definition.trigger_type} resolved {len(candidates)} candidates for rule {rule.id}")
        seen = set()
        for candidate in candidates:
            if candidate.user_id in seen:
                continue
            seen.add(candidate.user_id)
            yield candidate
