from sqlalchemy import Column, String, DateTime, Enum, Boolean
from sqlalchemy.orm import relationship
import enum
from app.db import Base
from app.utils.datetime import utc_now_naive
import uuid


class UserRole(enum.Enum):
    client = "client"
    coach = "coach"
    admin = "admin"


class User(Base):
    """Directory entry for clients, coaches and admins.

    The automation engine only reads this table: candidate selection,
    template attributes (names, role, account age) and alert recipients.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(Enum(UserRole), nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    display_name = Column(String, nullable=True)  # coaches use a single public name
    status = Column(String, nullable=True, default="active")  # active|paused|archived
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, nullable=False)

    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")
    device_tokens = relationship("DeviceToken", back_populates="user", cascade="all, delete-orphan")

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.email.split("@")[0]
