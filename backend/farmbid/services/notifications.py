"""Notification dispatcher: in-app rows plus best-effort SMS and email.

Every notification is stored as a `Notification` row (the in-app channel).
SMS goes through Twilio, email through SendGrid's v3 API; both are skipped
when no credentials are configured.  Delivery failures are recorded on the
row and logged, never raised: callers treat `notify` as fire-and-forget.
"""

import asyncio
import logging

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.config import settings
from farmbid.models.notification import Notification
from farmbid.models.user import User

logger = logging.getLogger("farmbid.notifications")

IN_APP = "in_app"
SMS = "sms"
EMAIL = "email"

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        sms_client=None,
        email_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session_factory = session_factory
        self._sms_client = sms_client
        self._email_transport = email_transport

    @property
    def sms_client(self):
        # Skip in dev if no credentials configured
        if self._sms_client is None and settings.twilio_account_sid:
            from twilio.rest import Client
            self._sms_client = Client(
                settings.twilio_account_sid, settings.twilio_auth_token
            )
        return self._sms_client

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict | None = None,
        channels: list[str] | None = None,
    ) -> Notification | None:
        """Store and deliver one notification.  Returns None if it could not be stored."""
        channels = list(channels or [IN_APP])
        if IN_APP not in channels:
            channels.insert(0, IN_APP)

        try:
            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    logger.warning("Notification %s dropped: user %s not found", type, user_id)
                    return None
                phone, email = user.phone, user.email

            delivery = {}
            if SMS in channels:
                delivery[SMS] = await self._send_sms(phone, message)
            if EMAIL in channels:
                delivery[EMAIL] = await self._send_email(email, title, message)

            notification = Notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                data=_jsonable(data),
                channels=channels,
                delivery=delivery or None,
            )
            async with self.session_factory() as db:
                db.add(notification)
                await db.commit()
            logger.info("Notification %s sent to user %s via %s", type, user_id, ",".join(channels))
            return notification
        except Exception:
            logger.exception("Failed to store %s notification for user %s", type, user_id)
            return None

    async def _send_sms(self, phone: str | None, body: str) -> dict:
        if not phone:
            return {"success": False, "error": "User has no phone number"}
        client = self.sms_client
        if client is None:
            return {"success": False, "error": "SMS not configured"}

        kwargs = {"body": body, "to": phone}
        if settings.twilio_messaging_service_sid:
            kwargs["messaging_service_sid"] = settings.twilio_messaging_service_sid
        else:
            kwargs["from_"] = settings.twilio_from_number
        try:
            await asyncio.to_thread(client.messages.create, **kwargs)
            return {"success": True}
        except Exception as e:
            logger.warning("SMS delivery to %s failed: %s", phone, e)
            return {"success": False, "error": str(e)[:200]}

    async def _send_email(self, to_address: str, subject: str, body: str) -> dict:
        if not settings.sendgrid_api_key:
            return {"success": False, "error": "Email not configured"}
        payload = {
            "personalizations": [{"to": [{"email": to_address}]}],
            "from": {"email": settings.email_from_address},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._email_transport) as http_client:
                response = await http_client.post(
                    SENDGRID_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
                )
            if response.status_code >= 400:
                return {"success": False, "error": f"HTTP {response.status_code}"}
            return {"success": True}
        except httpx.HTTPError as e:
            logger.warning("Email delivery to %s failed: %s", to_address, e)
            return {"success": False, "error": str(e)[:200]}


def _jsonable(data: dict | None) -> dict | None:
    """Stringify dates and decimals so the payload fits a JSON column."""
    if not data:
        return data
    out = {}
    for key, value in data.items():
        if hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool, type(None), list, dict)):
            out[key] = value
        else:
            out[key] = str(value)
    return out
