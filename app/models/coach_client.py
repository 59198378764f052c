from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from app.db import Base
from app.utils.datetime import utc_now_naive
import uuid


class CoachClient(Base):
    """Coach/client relationship; coach-scoped automation rules only see active links."""
    __tablename__ = "coach_clients"
    __table_args__ = (UniqueConstraint("coach_id", "client_id", name="uq_coach_client"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    coach_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="active")  # active|paused|ended
    created_at = Column(DateTime, default=utc_now_naive)
