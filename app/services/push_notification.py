"""Push notification service using Firebase Cloud Messaging."""

import logging
from typing import List, Optional, Dict, Any

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.models.device_token import DeviceToken

logger = logging.getLogger(__name__)


class PushNotificationPayload(BaseModel):
    """Content of a push notification."""
    title: str
    body: str
    data: Optional[dict] = None
    badge: Optional[int] = None
    sound: Optional[str] = "default"
    channel_id: Optional[str] = "automations"


def _is_fcm_available() -> bool:
    """Check if Firebase Cloud Messaging is available."""
    try:
        import firebase_admin
        firebase_admin.get_app()
        return True
    except (ImportError, ValueError):
        return False


def _convert_data_to_strings(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Convert data payload values to strings (FCM requirement)."""
    if not data:
        return {}
    return {k: str(v) for k, v in data.items()}


class PushNotificationService:
    """Service for sending push notifications via FCM."""

    @staticmethod
    def send_to_user(
        db: Session,
        user_id: str,
        payload: PushNotificationPayload
    ) -> Dict[str, Any]:
        """Send push notification to all active devices of a user.

        Returns a dict with ``success_count`` / ``failure_count`` and, when
        nothing could be attempted, a ``message`` explaining why.
        """
        if not _is_fcm_available():
            logger.warning("FCM not available - push notification skipped")
            return {"success_count": 0, "failure_count": 0, "message": "FCM not configured"}

        tokens = db.query(DeviceToken).filter(
            DeviceToken.user_id == user_id,
            DeviceToken.is_active.is_(True)
        ).all()

        if not tokens:
            logger.info(f"No active device tokens for user {user_id}")
            return {"success_count": 0, "failure_count": 0, "message": "No registered devices"}

        return PushNotificationService._send_multicast(db, [t.fcm_token for t in tokens], payload)

    @staticmethod
    def _send_multicast(
        db: Session,
        fcm_tokens: List[str],
        payload: PushNotificationPayload
    ) -> Dict[str, Any]:
        """Send to multiple tokens using multicast (FCM caps a call at 500 tokens)."""
        from firebase_admin import messaging
        from firebase_admin.exceptions import FirebaseError

        if not fcm_tokens:
            return {"success_count": 0, "failure_count": 0}

        message = messaging.MulticastMessage(
            tokens=fcm_tokens[:500],
            notification=messaging.Notification(title=payload.title, body=payload.body),
            data=_convert_data_to_strings(payload.data),
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    sound=payload.sound or "default",
                    channel_id=payload.channel_id or "default",
                ),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(sound=payload.sound or "default", badge=payload.badge)
                )
            ),
        )

        try:
            response = messaging.send_each_for_multicast(message)
        except FirebaseError as e:
            logger.error(f"Multicast send failed: {e}")
            return {"success_count": 0, "failure_count": len(fcm_tokens), "error": str(e)}

        logger.info(
            f"Multicast result: {response.success_count} success, "
            f"{response.failure_count} failures"
        )
        # Tokens FCM no longer recognises are switched off
        if response.failure_count > 0:
            for idx, send_response in enumerate(response.responses):
                error = send_response.exception
                if not send_response.success and error and (
                    "UNREGISTERED" in str(error) or "INVALID" in str(error)
                ):
                    PushNotificationService._deactivate_token(db, fcm_tokens[idx])

        return {
            "success_count": response.success_count,
            "failure_count": response.failure_count
        }

    @staticmethod
    def _deactivate_token(db: Session, fcm_token: str):
        """Mark a token as inactive (invalid/expired). Flushed with the caller's transaction."""
        token = db.query(DeviceToken).filter(DeviceToken.fcm_token == fcm_token).first()
        if token:
            token.is_active = False
            db.flush()
            logger.warning(f"Deactivated invalid token for user {token.user_id}: {fcm_token[:20]}...")
