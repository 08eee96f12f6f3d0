"""Central Enum definitions for core domain states.

These replace scattered string literals so DB models, schemas, and business
logic agree on the exact values that end up in the ledger and in payloads.
"""
from __future__ import annotations
import enum


class Platform(str, enum.Enum):
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"

# ------------------------------ Fraud Enums ------------------------------ #

class FraudAction(str, enum.Enum):
    NONE = "none"
    MONITOR = "monitor"
    WARNING = "warning"
    BAN = "ban"


class Confidence(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

# ----------------------------- Payout Enums ------------------------------ #

class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed forward moves; terminal states have none.
PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}


class BatchStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"

# ------------------------------ Job Enums -------------------------------- #

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IngestionOutcome(str, enum.Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    RETRY_SCHEDULED = "retry_scheduled"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class JobPriority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

# ---------------------------- Payment Enums ------------------------------ #

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class Currency(str, enum.Enum):
    IDR = "IDR"
    USD = "USD"

# -------------------------- Notification Enums --------------------------- #

class TemplateType(str, enum.Enum):
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_RETRY = "payment_retry"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    SMS = "sms"
    PUSH = "push"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


__all__ = [
    "Platform",
    "FraudAction",
    "Confidence",
    "PayoutStatus",
    "PAYOUT_TRANSITIONS",
    "BatchStatus",
    "JobStatus",
    "JobPriority",
    "IngestionOutcome",
    "PaymentStatus",
    "Currency",
    "TemplateType",
    "NotificationChannel",
    "DeliveryStatus",
]
