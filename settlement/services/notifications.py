"""Payment status notifications.

Templates (required variables):
1. payment_completed  -> promoter_name, amount, campaign_title, transaction_id
2. payment_failed     -> promoter_name, amount, campaign_title, failure_reason
3. payment_processing -> promoter_name, amount, campaign_title
4. payment_retry      -> promoter_name, amount, campaign_title, retry_count, max_retries

Rendering is literal ``{name}`` replacement, nothing else is interpreted, so
promoter-supplied text can never break or inject into a template. Numeric
amounts render as Rupiah.

Delivery goes out on every channel of the template through the transport
registered for that channel. A failing transport is recorded on the
notification (``failed`` delivery) and logged; ``send`` itself only raises for
caller mistakes (unknown template, missing variables).
"""
from __future__ import annotations

import re
from collections import Counter
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from settlement.exceptions import MissingTemplateVariablesError, UnknownTemplateError
from settlement.models.db.enums import DeliveryStatus, NotificationChannel, PayoutStatus, TemplateType
from settlement.models.schemas.notifications import DeliveryRecord, NotificationRecord, NotificationTemplate
from settlement.models.schemas.payouts import PayoutNotification
from settlement.utils import get_logger
from settlement.utils.metrics import format_rupiah

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([a-z_][a-z0-9_]*)\}")
_SIGNATURE = "\n\nBest regards,\nCreator Promotion Platform Team"

DEFAULT_TEMPLATES: Dict[TemplateType, NotificationTemplate] = {
    TemplateType.PAYMENT_COMPLETED: NotificationTemplate(
        type=TemplateType.PAYMENT_COMPLETED,
        subject="Payment Received - {amount}",
        body=(
            "Hi {promoter_name},\n\n"
            "Great news! Your payment of {amount} for {campaign_title} has been processed.\n"
            "Transaction ID: {transaction_id}\n\n"
            "Please allow 1-2 business days for the funds to appear in your account." + _SIGNATURE
        ),
        variables=frozenset({"promoter_name", "amount", "campaign_title", "transaction_id"}),
        channels=(NotificationChannel.EMAIL, NotificationChannel.IN_APP),
    ),
    TemplateType.PAYMENT_FAILED: NotificationTemplate(
        type=TemplateType.PAYMENT_FAILED,
        subject="Payment Failed - {amount}",
        body=(
            "Hi {promoter_name},\n\n"
            "We're sorry, your payment of {amount} for {campaign_title} could not be processed.\n"
            "Reason: {failure_reason}\n\n"
            "If this keeps happening, please contact support." + _SIGNATURE
        ),
        variables=frozenset({"promoter_name", "amount", "campaign_title", "failure_reason"}),
        channels=(NotificationChannel.EMAIL, NotificationChannel.IN_APP),
    ),
    TemplateType.PAYMENT_PROCESSING: NotificationTemplate(
        type=TemplateType.PAYMENT_PROCESSING,
        subject="Payment Processing - {amount}",
        body=(
            "Hi {promoter_name},\n\n"
            "Your payment of {amount} for {campaign_title} is being processed. "
            "We'll notify you once it is completed." + _SIGNATURE
        ),
        variables=frozenset({"promoter_name", "amount", "campaign_title"}),
        channels=(NotificationChannel.IN_APP,),
    ),
    TemplateType.PAYMENT_RETRY: NotificationTemplate(
        type=TemplateType.PAYMENT_RETRY,
        subject="Payment Retry - {amount}",
        body=(
            "Hi {promoter_name},\n\n"
            "We're retrying your payment of {amount} for {campaign_title} "
            "(attempt {retry_count} of {max_retries})." + _SIGNATURE
        ),
        variables=frozenset({"promoter_name", "amount", "campaign_title", "retry_count", "max_retries"}),
        channels=(NotificationChannel.IN_APP,),
    ),
}


class NotificationTransport(Protocol):
    async def send(self, channel: NotificationChannel, recipient_id: str, subject: str, body: str) -> None: ...


class LoggingTransport:
    """Writes notifications to the log; stands in wherever no real channel is wired."""

    async def send(self, channel: NotificationChannel, recipient_id: str, subject: str, body: str) -> None:
        logger.info("Notification delivered", channel=channel.value, recipient_id=recipient_id, subject=subject)


def _stringify(name: str, value: Any) -> str:
    if name == "amount" and isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return format_rupiah(value)
    return str(value)


def render(text: str, variables: Mapping[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: variables.get(m.group(1), m.group(0)), text)


class NotificationDispatcher:
    def __init__(
        self,
        *,
        transports: Optional[Mapping[NotificationChannel, NotificationTransport]] = None,
        default_transport: Optional[NotificationTransport] = None,
        templates: Optional[Mapping[TemplateType, NotificationTemplate]] = None,
        history_limit: int = 1000,
    ) -> None:
        self.transports = dict(transports or {})
        self.default_transport: NotificationTransport = default_transport or LoggingTransport()
        self.templates = dict(templates or DEFAULT_TEMPLATES)
        self._history: List[NotificationRecord] = []
        self._history_limit = history_limit

    def template_for(self, template_type: TemplateType | str) -> NotificationTemplate:
        try:
            key = TemplateType(getattr(template_type, "value", template_type))
            return self.templates[key]
        except (ValueError, KeyError) as e:
            raise UnknownTemplateError(str(getattr(template_type, "value", template_type))) from e

    async def send(
        self,
        recipient_id: str,
        template_type: TemplateType | str,
        variables: Mapping[str, Any],
    ) -> NotificationRecord:
        template = self.template_for(template_type)
        missing = sorted(name for name in template.variables if variables.get(name) is None)
        if missing:
            raise MissingTemplateVariablesError(template.type.value, missing)

        values = {name: _stringify(name, value) for name, value in variables.items() if value is not None}
        record = NotificationRecord(
            recipient_id=recipient_id,
            template_type=template.type,
            subject=render(template.subject, values),
            body=render(template.body, values),
            variables=values,
        )
        for channel in template.channels:
            transport = self.transports.get(channel, self.default_transport)
            try:
                await transport.send(channel, recipient_id, record.subject, record.body)
                record.deliveries.append(DeliveryRecord(channel=channel, status=DeliveryStatus.SENT))
            except Exception as e:
                record.deliveries.append(DeliveryRecord(channel=channel, status=DeliveryStatus.FAILED, error=str(e)))
                logger.error(
                    "Notification delivery failed",
                    notification_id=record.id,
                    channel=channel.value,
                    recipient_id=recipient_id,
                    error=str(e),
                )
        self._remember(record)
        return record

    def _remember(self, record: NotificationRecord) -> None:
        self._history.append(record)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

    def history(self, recipient_id: Optional[str] = None) -> List[NotificationRecord]:
        if recipient_id is None:
            return list(self._history)
        return [r for r in self._history if r.recipient_id == recipient_id]

    def stats(self) -> Dict[str, Any]:
        deliveries = [d for r in self._history for d in r.deliveries]
        return {
            "notifications": len(self._history),
            "sent": sum(1 for d in deliveries if d.status == DeliveryStatus.SENT),
            "failed": sum(1 for d in deliveries if d.status == DeliveryStatus.FAILED),
            "by_template": dict(Counter(r.template_type.value for r in self._history)),
            "by_channel": dict(Counter(d.channel.value for d in deliveries)),
        }


_PAYOUT_TEMPLATES = {
    PayoutStatus.COMPLETED: TemplateType.PAYMENT_COMPLETED,
    PayoutStatus.FAILED: TemplateType.PAYMENT_FAILED,
    PayoutStatus.PROCESSING: TemplateType.PAYMENT_PROCESSING,
    PayoutStatus.PENDING: TemplateType.PAYMENT_PROCESSING,
}


class PayoutNotifier:
    """``send_payout_notifications`` collaborator backed by the dispatcher."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        promoter_name: Callable[[str], str] = str,
        campaign_title: Callable[[str], str] = str,
    ) -> None:
        self.dispatcher = dispatcher
        self._promoter_name = promoter_name
        self._campaign_title = campaign_title

    async def __call__(self, notifications: Sequence[PayoutNotification]) -> List[NotificationRecord]:
        sent: List[NotificationRecord] = []
        for n in notifications:
            variables: Dict[str, Any] = {
                "promoter_name": self._promoter_name(n.promoter_id),
                "amount": n.amount,
                "campaign_title": self._campaign_title(n.campaign_id),
                "transaction_id": n.transaction_id or "-",
                "failure_reason": n.message,
            }
            sent.append(await self.dispatcher.send(n.promoter_id, _PAYOUT_TEMPLATES[n.status], variables))
        logger.info("Payout notifications sent", count=len(sent))
        return sent


__all__ = [
    "NotificationDispatcher",
    "NotificationTransport",
    "LoggingTransport",
    "PayoutNotifier",
    "DEFAULT_TEMPLATES",
    "render",
]
