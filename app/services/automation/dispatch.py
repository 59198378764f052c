"""Dispatcher: deliver a rendered action over one or more channels.

Channels are tried independently and each one commits its own writes,
so a channel that blows up afterwards can't take an earlier channel's
notification row down with it. The aggregate is ``sent`` only when every
required channel reports ``sent``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.activity import Message
from app.models.automation import LogStatus
from app.models.notification import Notification
from app.services.email import send_automation_email
from app.services.push_notification import PushNotificationPayload, PushNotificationService

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    recipient_id: str
    recipient_email: Optional[str]
    recipient_name: str
    title: str
    body: str
    notification_type: str = "automation"
    data: Dict[str, Any] = field(default_factory=dict)
    sender_id: Optional[str] = None  # set when a coach "speaks" to their client


@dataclass
class ChannelResult:
    channel: str
    status: LogStatus
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"status": self.status.value, "detail": self.detail}


@dataclass
class DispatchResult:
    status: LogStatus
    reason: Optional[str] = None
    channel_results: Dict[str, Dict[str, dict]] = field(default_factory=dict)


class NotificationChannel(ABC):
    name: str = ""

    @abstractmethod
    def deliver(self, db: Session, delivery: Delivery) -> ChannelResult:
        ...


class InAppChannel(NotificationChannel):
    """Writes a notifications row, or a chat message when a sender is set."""
    name = "in_app"

    def deliver(self, db: Session, delivery: Delivery) -> ChannelResult:
        if delivery.sender_id:
            db.add(Message(
                sender_id=delivery.sender_id,
                receiver_id=delivery.recipient_id,
                content=delivery.body,
            ))
        else:
            db.add(Notification(
                user_id=delivery.recipient_id,
                type=delivery.notification_type,
                title=delivery.title,
                message=delivery.body,
                data=delivery.data or None,
            ))
        db.commit()
        return ChannelResult(self.name, LogStatus.sent)


class PushChannel(NotificationChannel):
    name = "push"

    def deliver(self, db: Session, delivery: Delivery) -> ChannelResult:
        if not settings.automation_push_enabled:
            return ChannelResult(self.name, LogStatus.skipped, "push disabled")

        payload = PushNotificationPayload(
            title=delivery.title,
            body=delivery.body[:240],
            data={"type": delivery.notification_type, **delivery.data},
        )
        result = PushNotificationService.send_to_user(db, delivery.recipient_id, payload)
        # Persist any token deactivations
        db.commit()

        if result.get("success_count", 0) > 0:
            return ChannelResult(self.name, LogStatus.sent)
        if "message" in result:
            return ChannelResult(self.name, LogStatus.skipped, result["message"])
        return ChannelResult(self.name, LogStatus.failed, result.get("error") or "all devices failed")


class EmailChannel(NotificationChannel):
    name = "email"

    def deliver(self, db: Session, delivery: Delivery) -> ChannelResult:
        if not settings.automation_email_enabled:
            return ChannelResult(self.name, LogStatus.skipped, "email disabled")
        if not delivery.recipient_email:
            return ChannelResult(self.name, LogStatus.skipped, "no email address")
        ok = send_automation_email(
            delivery.recipient_email, delivery.recipient_name, delivery.title, delivery.body
        )
        if ok:
            return ChannelResult(self.name, LogStatus.sent)
        return ChannelResult(self.name, LogStatus.failed, "email send failed")


CHANNEL_REGISTRY: Dict[str, NotificationChannel] = {
    channel.name: channel for channel in (InAppChannel(), PushChannel(), EmailChannel())
}


class Dispatcher:
    def __init__(self, db: Session, channels: Optional[Dict[str, NotificationChannel]] = None):
        self.db = db
        self.channels = CHANNEL_REGISTRY if channels is None else channels

    def _deliver_one(self, delivery: Delivery, channel_names: Iterable[str]) -> List[ChannelResult]:
        results = []
        for name in channel_names:
            channel = self.channels.get(name)
            if channel is None:
                results.append(ChannelResult(name, LogStatus.failed, "channel not available"))
                continue
            try:
                results.append(channel.deliver(self.db, delivery))
            except Exception as e:  # one broken channel must not stop the others
                self.db.rollback()
                logger.error(
                    f"[automation] {name} delivery to {delivery.recipient_id} failed: {e}", exc_info=True
                )
                results.append(ChannelResult(name, LogStatus.failed, str(e)))
        return results

    def dispatch(
        self,
        deliveries: Sequence[Delivery],
        channels: Sequence[str],
        required: Sequence[str],
    ) -> DispatchResult:
        """Deliver to every recipient; ``sent`` if at least one recipient got all required channels."""
        if not deliveries:
            return DispatchResult(LogStatus.failed, "no recipients")

        channel_names = [str(getattr(c, "value", c)) for c in channels]
        required_names = {str(getattr(c, "value", c)) for c in required}

        per_recipient: Dict[str, Dict[str, dict]] = {}
        problems = []
        any_sent = False
        for delivery in deliveries:
            results = self._deliver_one(delivery, channel_names)
            per_recipient[delivery.recipient_id] = {r.channel: r.to_dict() for r in results}
            missing = [r for r in results if r.channel in required_names and r.status != LogStatus.sent]
            if missing:
                problems.extend(f"{r.channel}: {r.detail or r.status.value}" for r in missing)
            else:
                any_sent = True

        if any_sent:
            return DispatchResult(LogStatus.sent, None, per_recipient)
        return DispatchResult(
            LogStatus.failed, "required channel not delivered (" + "; ".join(problems) + ")", per_recipient
        )
