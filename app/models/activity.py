"""Engagement tables written by the client apps.

The automation engine reads them as signal sources (latest qualifying
timestamp per user) and as event sources for booking triggers.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from app.db import Base
from app.utils.datetime import utc_now_naive
import uuid


class TrainingLog(Base):
    __tablename__ = "training_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    logged_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)


class MealLog(Base):
    __tablename__ = "meal_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    logged_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sender_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)


class CoachingSession(Base):
    __tablename__ = "coaching_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    coach_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="scheduled")  # scheduled|completed|cancelled
    start_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive, onupdate=utc_now_naive)


class WearableSync(Base):
    __tablename__ = "wearable_syncs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)  # garmin|fitbit|apple_health
    synced_at = Column(DateTime, nullable=False, default=utc_now_naive)
