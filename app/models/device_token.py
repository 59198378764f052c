"""Device token model for push notifications."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db import Base
from app.utils.datetime import utc_now_naive
import uuid
import enum


class DevicePlatform(enum.Enum):
    ios = "ios"
    android = "android"
    web = "web"


class DeviceToken(Base):
    """FCM registration token for one of a user's devices.

    Registered by the mobile apps; the push channel reads the active ones
    and deactivates tokens FCM reports as unregistered.
    """
    __tablename__ = "device_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    fcm_token = Column(String, nullable=False, unique=True, index=True)
    platform = Column(SQLEnum(DevicePlatform), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now_naive)
    last_used = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    user = relationship("User", back_populates="device_tokens")

    def __repr__(self):
        return f"<DeviceToken user={self.user_id} platform={self.platform.value}>"
