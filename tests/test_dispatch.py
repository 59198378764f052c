"""Tests for the dispatcher and the in-app, push and email channels."""

from unittest.mock import MagicMock, patch

import pytest

from app.core.settings import settings
from app.models.activity import Message
from app.models.device_token import DevicePlatform, DeviceToken
from app.models.automation import LogStatus
from app.models.notification import Notification
from app.services.automation.dispatch import (
    ChannelResult,
    Delivery,
    Dispatcher,
    EmailChannel,
    InAppChannel,
    NotificationChannel,
    PushChannel,
)
from app.services.email import render_automation_email
from app.services.push_notification import PushNotificationPayload, PushNotificationService


class StubChannel(NotificationChannel):
    def __init__(self, name, outcomes=None, error=None):
        self.name = name
        self.outcomes = outcomes or {}
        self.error = error

    def deliver(self, db, delivery):
        if self.error:
            raise self.error
        status = self.outcomes.get(delivery.recipient_id, LogStatus.sent)
        return ChannelResult(self.name, status, None if status == LogStatus.sent else "nope")


def _delivery(user, **overrides):
    fields = {
        "recipient_id": user.id,
        "recipient_email": user.email,
        "recipient_name": user.name,
        "title": "Checking in",
        "body": "How are you doing?",
        "data": {"rule_id": "r-1", "stage": 1},
    }
    fields.update(overrides)
    return Delivery(**fields)


class TestDispatcher:

    def test_no_recipients_fails(self, db_session):
        result = Dispatcher(db_session, {"in_app": StubChannel("in_app")}).dispatch([], ["in_app"], ["in_app"])
        assert result.status == LogStatus.failed
        assert result.reason == "no recipients"

    def test_unknown_channel_is_reported(self, db_session, client_user):
        result = Dispatcher(db_session, {}).dispatch([_delivery(client_user)], ["sms"], ["sms"])
        assert result.status == LogStatus.failed
        assert result.channel_results[client_user.id]["sms"] == {
            "status": "failed", "detail": "channel not available",
        }

    def test_any_recipient_with_all_required_channels_is_enough(self, db_session, admin_user, make_user):
        other_admin = make_user("admin", first_name="Bo")
        channel = StubChannel("in_app", outcomes={other_admin.id: LogStatus.failed})

        result = Dispatcher(db_session, {"in_app": channel}).dispatch(
            [_delivery(admin_user), _delivery(other_admin)], ["in_app"], ["in_app"]
        )

        assert result.status == LogStatus.sent
        assert result.reason is None
        assert result.channel_results[other_admin.id]["in_app"]["status"] == "failed"

    def test_channel_exception_is_isolated(self, db_session, client_user):
        channels = {
            "push": StubChannel("push", error=RuntimeError("fcm exploded")),
            "in_app": StubChannel("in_app"),
        }

        result = Dispatcher(db_session, channels).dispatch(
            [_delivery(client_user)], ["push", "in_app"], ["in_app"]
        )

        assert result.status == LogStatus.sent
        assert result.channel_results[client_user.id]["push"] == {"status": "failed", "detail": "fcm exploded"}

    def test_required_channel_skipped_is_a_failure(self, db_session, client_user):
        channel = StubChannel("email", outcomes={client_user.id: LogStatus.skipped})
        result = Dispatcher(db_session, {"email": channel}).dispatch(
            [_delivery(client_user)], ["email"], ["email"]
        )
        assert result.status == LogStatus.failed
        assert result.reason == "required channel not delivered (email: nope)"


class TestInAppChannel:

    def test_writes_notification(self, db_session, client_user):
        result = InAppChannel().deliver(db_session, _delivery(client_user, notification_type="automation_alert"))

        assert result.status == LogStatus.sent
        [note] = db_session.query(Notification).filter(Notification.user_id == client_user.id).all()
        assert note.type == "automation_alert"
        assert note.title == "Checking in"
        assert note.message == "How are you doing?"
        assert note.data == {"rule_id": "r-1", "stage": 1}
        assert note.is_read is False

    def test_writes_chat_message_when_sender_set(self, db_session, client_user, coach_user):
        InAppChannel().deliver(db_session, _delivery(client_user, sender_id=coach_user.id))

        [message] = db_session.query(Message).all()
        assert message.sender_id == coach_user.id
        assert message.receiver_id == client_user.id
        assert message.content == "How are you doing?"
        assert db_session.query(Notification).count() == 0


class TestPushChannel:

    def test_disabled(self, db_session, client_user, monkeypatch):
        monkeypatch.setattr(settings, "automation_push_enabled", False)
        result = PushChannel().deliver(db_session, _delivery(client_user))
        assert result.status == LogStatus.skipped
        assert result.detail == "push disabled"

    def test_without_fcm_is_skipped(self, db_session, client_user, monkeypatch):
        monkeypatch.setattr(settings, "automation_push_enabled", True)
        with patch("app.services.push_notification._is_fcm_available", return_value=False):
            result = PushChannel().deliver(db_session, _delivery(client_user))
        assert result.status == LogStatus.skipped
        assert result.detail == "FCM not configured"

    @pytest.mark.parametrize("response,status,detail", [
        ({"success_count": 2, "failure_count": 0}, LogStatus.sent, None),
        ({"success_count": 0, "failure_count": 0, "message": "No registered devices"},
         LogStatus.skipped, "No registered devices"),
        ({"success_count": 0, "failure_count": 1, "error": "quota exceeded"}, LogStatus.failed, "quota exceeded"),
        ({"success_count": 0, "failure_count": 3}, LogStatus.failed, "all devices failed"),
    ])
    def test_send_results(self, db_session, client_user, monkeypatch, response, status, detail):
        monkeypatch.setattr(settings, "automation_push_enabled", True)
        with patch("app.services.automation.dispatch.PushNotificationService.send_to_user",
                   return_value=response) as send:
            result = PushChannel().deliver(db_session, _delivery(client_user))

        assert result.status == status
        assert result.detail == detail
        _, user_id, payload = send.call_args[0]
        assert user_id == client_user.id
        assert payload.title == "Checking in"
        assert payload.data["type"] == "automation"
        assert payload.data["stage"] == 1


class TestEmailChannel:

    def test_disabled(self, db_session, client_user, monkeypatch):
        monkeypatch.setattr(settings, "automation_email_enabled", False)
        result = EmailChannel().deliver(db_session, _delivery(client_user))
        assert result.status == LogStatus.skipped
        assert result.detail == "email disabled"

    def test_no_address(self, db_session, client_user, monkeypatch):
        monkeypatch.setattr(settings, "automation_email_enabled", True)
        result = EmailChannel().deliver(db_session, _delivery(client_user, recipient_email=None))
        assert result.status == LogStatus.skipped
        assert result.detail == "no email address"

    @pytest.mark.parametrize("ok,status", [(True, LogStatus.sent), (False, LogStatus.failed)])
    def test_send(self, db_session, client_user, monkeypatch, ok, status):
        monkeypatch.setattr(settings, "automation_email_enabled", True)
        with patch("app.services.automation.dispatch.send_automation_email", return_value=ok) as send:
            result = EmailChannel().deliver(db_session, _delivery(client_user))

        assert result.status == status
        send.assert_called_once_with(client_user.email, "Jamie Lee", "Checking in", "How are you doing?")

    def test_sendgrid_missing_means_failed(self, db_session, client_user, monkeypatch):
        monkeypatch.setattr(settings, "automation_email_enabled", True)
        monkeypatch.delenv("SENDGRID_API_KEY", raising=False)
        result = EmailChannel().deliver(db_session, _delivery(client_user))
        assert result.status == LogStatus.failed
        assert result.detail == "email send failed"

    def test_email_layout(self):
        html, plain = render_automation_email("We miss you", "Come back soon", "Jamie")
        assert "Hi Jamie," in html
        assert "Come back soon" in html
        assert settings.automation_app_name in html
        assert plain.startswith("We miss you")
        assert "Come back soon" in plain


class TestPushNotificationService:

    def _register(self, db, user, token):
        db.add(DeviceToken(user_id=user.id, fcm_token=token, platform=DevicePlatform.ios))
        db.commit()

    def test_no_devices(self, db_session, client_user):
        with patch("app.services.push_notification._is_fcm_available", return_value=True):
            result = PushNotificationService.send_to_user(
                db_session, client_user.id, PushNotificationPayload(title="t", body="b")
            )
        assert result["message"] == "No registered devices"

    def test_unregistered_tokens_are_deactivated(self, db_session, client_user):
        self._register(db_session, client_user, "token-good")
        self._register(db_session, client_user, "token-stale")
        response = MagicMock(success_count=1, failure_count=1)
        response.responses = [
            MagicMock(success=True, exception=None),
            MagicMock(success=False, exception=Exception("UNREGISTERED")),
        ]

        with patch("app.services.push_notification._is_fcm_available", return_value=True), \
                patch("firebase_admin.messaging.send_each_for_multicast", return_value=response) as send:
            result = PushNotificationService.send_to_user(
                db_session, client_user.id,
                PushNotificationPayload(title="Checking in", body="Hi", data={"stage": 1}),
            )
            db_session.commit()

        assert result == {"success_count": 1, "failure_count": 1}
        message = send.call_args[0][0]
        assert message.data == {"stage": "1"}
        stale = db_session.query(DeviceToken).filter(DeviceToken.fcm_token == "token-stale").one()
        assert stale.is_active is False
