import asyncio
from decimal import Decimal

import pytest

from settlement.exceptions import MissingTemplateVariablesError, UnknownTemplateError
from settlement.models.db.enums import DeliveryStatus, NotificationChannel, PayoutStatus, TemplateType
from settlement.models.schemas.payouts import PayoutNotification
from settlement.services.notifications import NotificationDispatcher, PayoutNotifier, render


class RecordingTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, channel, recipient_id, subject, body):
        if self.fail:
            raise ConnectionError("channel unavailable")
        self.sent.append((channel, recipient_id, subject))


COMPLETED_VARS = {
    "promoter_name": "Sinta",
    "amount": Decimal("1234567"),
    "campaign_title": "Ramadan Sale",
    "transaction_id": "TXN123",
}


def test_completed_template_renders_on_all_channels():
    email, in_app = RecordingTransport(), RecordingTransport()
    dispatcher = NotificationDispatcher(
        transports={NotificationChannel.EMAIL: email, NotificationChannel.IN_APP: in_app}
    )
    record = asyncio.run(dispatcher.send("promoter_1", TemplateType.PAYMENT_COMPLETED, COMPLETED_VARS))

    assert record.subject == "Payment Received - Rp1.234.567"
    assert "Hi Sinta" in record.body
    assert "Transaction ID: TXN123" in record.body
    assert [d.channel for d in record.deliveries] == [NotificationChannel.EMAIL, NotificationChannel.IN_APP]
    assert record.delivered
    assert email.sent == [(NotificationChannel.EMAIL, "promoter_1", record.subject)]
    assert len(in_app.sent) == 1


def test_template_type_accepts_plain_string():
    dispatcher = NotificationDispatcher(default_transport=RecordingTransport())
    record = asyncio.run(dispatcher.send(
        "promoter_1",
        "payment_processing",
        {"promoter_name": "Sinta", "amount": 5000, "campaign_title": "Launch"},
    ))
    assert record.template_type == TemplateType.PAYMENT_PROCESSING
    assert "Rp5.000" in record.body


def test_unknown_template_fails_fast():
    dispatcher = NotificationDispatcher()
    with pytest.raises(UnknownTemplateError):
        asyncio.run(dispatcher.send("promoter_1", "payment_refunded", {}))


def test_missing_variables_are_reported():
    dispatcher = NotificationDispatcher()
    with pytest.raises(MissingTemplateVariablesError) as exc_info:
        asyncio.run(dispatcher.send(
            "promoter_1",
            TemplateType.PAYMENT_RETRY,
            {"promoter_name": "Sinta", "amount": 100, "campaign_title": "Launch", "retry_count": None},
        ))
    assert exc_info.value.missing == ["max_retries", "retry_count"]
    assert dispatcher.history() == []


def test_transport_failure_is_recorded_not_raised():
    dispatcher = NotificationDispatcher(
        transports={NotificationChannel.EMAIL: RecordingTransport(fail=True)},
        default_transport=RecordingTransport(),
    )
    record = asyncio.run(dispatcher.send("promoter_1", TemplateType.PAYMENT_COMPLETED, COMPLETED_VARS))

    statuses = {d.channel: d.status for d in record.deliveries}
    assert statuses[NotificationChannel.EMAIL] == DeliveryStatus.FAILED
    assert statuses[NotificationChannel.IN_APP] == DeliveryStatus.SENT
    stats = dispatcher.stats()
    assert stats["sent"] == 1
    assert stats["failed"] == 1
    assert stats["by_template"] == {"payment_completed": 1}


def test_render_is_literal_substitution():
    text = render("Hi {name}, {unknown} stays; {{name}}", {"name": "{amount}"})
    assert text == "Hi {amount}, {unknown} stays; {{amount}}"


def test_history_is_bounded_and_filterable():
    dispatcher = NotificationDispatcher(default_transport=RecordingTransport(), history_limit=2)

    async def scenario():
        for recipient in ("a", "b", "c"):
            await dispatcher.send(recipient, TemplateType.PAYMENT_COMPLETED, COMPLETED_VARS)

    asyncio.run(scenario())
    assert [r.recipient_id for r in dispatcher.history()] == ["b", "c"]
    assert len(dispatcher.history("c")) == 1


def test_payout_notifier_maps_status_to_template():
    dispatcher = NotificationDispatcher(default_transport=RecordingTransport())
    notifier = PayoutNotifier(dispatcher, campaign_title=lambda cid: f"Campaign {cid}")
    notifications = [
        PayoutNotification(promoter_id="p1", campaign_id="c1", amount=Decimal("9500"),
                           status=PayoutStatus.COMPLETED, message="done", transaction_id="TXN1"),
        PayoutNotification(promoter_id="p2", campaign_id="c1", amount=Decimal("9500"),
                           status=PayoutStatus.FAILED, message="account closed"),
        PayoutNotification(promoter_id="p3", campaign_id="c1", amount=Decimal("9500"),
                           status=PayoutStatus.PROCESSING, message="on its way"),
    ]
    records = asyncio.run(notifier(notifications))

    assert [r.template_type for r in records] == [
        TemplateType.PAYMENT_COMPLETED,
        TemplateType.PAYMENT_FAILED,
        TemplateType.PAYMENT_PROCESSING,
    ]
    assert "Campaign c1" in records[0].body
    assert "Reason: account closed" in records[1].body
