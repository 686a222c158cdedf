"""Notification dispatcher tests (Twilio and SendGrid faked)."""

import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from farmbid.config import settings
from farmbid.models.notification import Notification
from farmbid.services.notifications import SENDGRID_URL, NotificationDispatcher


class FakeMessages:
    def __init__(self, fail=False):
        self.created = []
        self.fail = fail

    def create(self, **kwargs):
        if self.fail:
            raise RuntimeError("Twilio is down")
        self.created.append(kwargs)
        return {"sid": "SM123"}


class FakeTwilio:
    def __init__(self, fail=False):
        self.messages = FakeMessages(fail)


async def _stored(session_factory, user_id) -> list[Notification]:
    async with session_factory() as db:
        result = await db.execute(select(Notification).where(Notification.user_id == user_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
class TestNotificationDispatcher:
    async def test_in_app_only_by_default(self, session_factory, make):
        user = await make.buyer()
        dispatcher = NotificationDispatcher(session_factory)

        notification = await dispatcher.notify(user.id, "payment_success", "Paid", "All good")

        assert notification is not None
        [row] = await _stored(session_factory, user.id)
        assert row.type == "payment_success"
        assert row.channels == ["in_app"]
        assert row.delivery is None
        assert row.read is False

    async def test_sms_goes_through_twilio(self, session_factory, make, monkeypatch):
        monkeypatch.setattr(settings, "twilio_from_number", "+15550009999")
        user = await make.buyer(phone="+15551234567")
        twilio = FakeTwilio()
        dispatcher = NotificationDispatcher(session_factory, sms_client=twilio)

        await dispatcher.notify(
            user.id, "payment_failed", "Payment failed", "Card declined", channels=["sms"]
        )

        assert twilio.messages.created == [
            {"body": "Card declined", "to": "+15551234567", "from_": "+15550009999"}
        ]
        [row] = await _stored(session_factory, user.id)
        assert row.channels == ["in_app", "sms"]
        assert row.delivery == {"sms": {"success": True}}

    async def test_sms_failure_is_recorded_not_raised(self, session_factory, make):
        user = await make.buyer()
        dispatcher = NotificationDispatcher(session_factory, sms_client=FakeTwilio(fail=True))

        notification = await dispatcher.notify(
            user.id, "payment_failed", "Payment failed", "Card declined", channels=["in_app", "sms"]
        )

        assert notification is not None
        [row] = await _stored(session_factory, user.id)
        assert row.delivery["sms"]["success"] is False
        assert "Twilio is down" in row.delivery["sms"]["error"]

    async def test_email_posts_to_sendgrid(self, session_factory, make, monkeypatch):
        monkeypatch.setattr(settings, "sendgrid_api_key", "SG.test")
        user = await make.buyer(email="buyer@example.com")
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        dispatcher = NotificationDispatcher(
            session_factory, email_transport=httpx.MockTransport(handler)
        )
        await dispatcher.notify(
            user.id, "payment_reminder", "Payment due", "Due in 3 days", channels=["email"]
        )

        [request] = requests
        assert str(request.url) == SENDGRID_URL
        assert request.headers["Authorization"] == "Bearer SG.test"
        body = json.loads(request.content)
        assert body["personalizations"][0]["to"] == [{"email": "buyer@example.com"}]
        assert body["subject"] == "Payment due"
        [row] = await _stored(session_factory, user.id)
        assert row.delivery == {"email": {"success": True}}

    async def test_unconfigured_channels_are_skipped(self, session_factory, make, monkeypatch):
        monkeypatch.setattr(settings, "twilio_account_sid", "")
        monkeypatch.setattr(settings, "sendgrid_api_key", "")
        user = await make.buyer()
        dispatcher = NotificationDispatcher(session_factory)

        await dispatcher.notify(
            user.id, "payment_reminder", "Due", "Soon", channels=["in_app", "email", "sms"]
        )

        [row] = await _stored(session_factory, user.id)
        assert row.delivery["sms"] == {"success": False, "error": "SMS not configured"}
        assert row.delivery["email"] == {"success": False, "error": "Email not configured"}

    async def test_missing_user_is_dropped(self, session_factory):
        dispatcher = NotificationDispatcher(session_factory)

        assert await dispatcher.notify("no-such-user", "payment_success", "Paid", "x") is None

    async def test_payload_is_made_json_safe(self, session_factory, make):
        user = await make.buyer()
        dispatcher = NotificationDispatcher(session_factory)

        await dispatcher.notify(
            user.id,
            "payment_success",
            "Paid",
            "ok",
            data={"amount": Decimal("115.00"), "due": datetime(2024, 2, 1), "n": 1},
        )

        [row] = await _stored(session_factory, user.id)
        assert row.data == {"amount": "115.00", "due": "2024-02-01T00:00:00", "n": 1}
