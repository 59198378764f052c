"""Signal sources and the aggregator that reduces them to one "last activity".

Each source answers a single question: the most recent qualifying
timestamp for a user, or None. Sources are registered by name and a
rule enables any subset of them.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import SignalSourceError
from app.models.activity import CoachingSession, MealLog, Message, TrainingLog, WearableSync

logger = logging.getLogger(__name__)


class SignalSource(ABC):
    name: str = ""

    @abstractmethod
    def latest(self, db: Session, user_id: str, since: Optional[datetime] = None) -> Optional[datetime]:
        """Most recent qualifying event for ``user_id`` (at or after ``since``)."""


class _MaxTimestampSource(SignalSource):
    """MAX(column) over one table filtered by the owning user column."""
    model = None
    user_column = "user_id"
    timestamp_column = ""

    def extra_filters(self):
        return []

    def latest(self, db: Session, user_id: str, since: Optional[datetime] = None) -> Optional[datetime]:
        ts = getattr(self.model, self.timestamp_column)
        query = db.query(func.max(ts)).filter(getattr(self.model, self.user_column) == user_id)
        for clause in self.extra_filters():
            query = query.filter(clause)
        if since is not None:
            query = query.filter(ts >= since)
        return query.scalar()


SIGNAL_REGISTRY: Dict[str, SignalSource] = {}


def register_signal(cls):
    SIGNAL_REGISTRY[cls.name] = cls()
    return cls


@register_signal
class TrainingLogSignal(_MaxTimestampSource):
    name = "training_logs"
    model = TrainingLog
    timestamp_column = "logged_at"


@register_signal
class MealLogSignal(_MaxTimestampSource):
    name = "meal_logs"
    model = MealLog
    timestamp_column = "logged_at"


@register_signal
class MessageReplySignal(_MaxTimestampSource):
    # Messages the user sent; messages sent to them are not activity
    name = "message_replies"
    model = Message
    user_column = "sender_id"
    timestamp_column = "created_at"


@register_signal
class CompletedSessionSignal(_MaxTimestampSource):
    name = "completed_sessions"
    model = CoachingSession
    user_column = "client_id"
    timestamp_column = "start_time"

    def extra_filters(self):
        return [CoachingSession.status == "completed"]


@register_signal
class WearableActivitySignal(_MaxTimestampSource):
    name = "wearable_activity"
    model = WearableSync
    timestamp_column = "synced_at"


class SignalAggregator:
    def __init__(self, db: Session, sources: Optional[Dict[str, SignalSource]] = None):
        self.db = db
        self.sources = SIGNAL_REGISTRY if sources is None else sources

    def last_activity(
        self,
        user_id: str,
        signals: Iterable[str],
        now: Optional[datetime] = None,
        lookback_days: Optional[int] = None,
    ) -> Optional[datetime]:
        """Latest timestamp across the enabled sources, or None if none has one.

        An absent reading just drops out of the max. A source that errors
        raises SignalSourceError: ignoring it would under-report activity.
        """
        since = None
        if lookback_days and now is not None:
            since = now - timedelta(days=lookback_days)

        latest = None
        for name in signals:
            source = self.sources.get(str(getattr(name, "value", name)))
            if source is None:
                logger.warning(f"Unknown signal source {name!r}; ignoring")
                continue
            try:
                reading = source.latest(self.db, user_id, since)
            except SQLAlchemyError as e:
                raise SignalSourceError(source.name, user_id, e) from e
            if reading is not None and (latest is None or reading > latest):
                latest = reading
        return latest
