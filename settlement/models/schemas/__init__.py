from .base import ResponseBase
from .metrics import RawMetricsSnapshot, ViewMetricsSnapshot, SnapshotDelta, StoredSnapshot, ViewRecord
from .fraud import FraudMetrics, FraudAssessment
from .payouts import (
    PayoutPeriod,
    ActivePromotion,
    PayoutCalculation,
    PayoutValidation,
    PayoutJob,
    PayoutBatch,
    PayoutNotification,
)
from .tokens import SocialToken, RefreshedCredentials, TokenRefreshResult, TokenValidation
from .payments import (
    BankAccount,
    EWallet,
    RecipientInfo,
    PaymentRequest,
    GatewayResponse,
    PaymentResult,
    PaymentBatchResult,
)
from .notifications import NotificationTemplate, DeliveryRecord, NotificationRecord
from .requests import PayoutRunRequest, CollectionRequest

__all__ = [
    # Base
    "ResponseBase",

    # Metrics
    "RawMetricsSnapshot",
    "ViewMetricsSnapshot",
    "SnapshotDelta",
    "StoredSnapshot",
    "ViewRecord",

    # Fraud
    "FraudMetrics",
    "FraudAssessment",

    # Payouts
    "PayoutPeriod",
    "ActivePromotion",
    "PayoutCalculation",
    "PayoutValidation",
    "PayoutJob",
    "PayoutBatch",
    "PayoutNotification",

    # Credentials
    "SocialToken",
    "RefreshedCredentials",
    "TokenRefreshResult",
    "TokenValidation",

    # Payments
    "BankAccount",
    "EWallet",
    "RecipientInfo",
    "PaymentRequest",
    "GatewayResponse",
    "PaymentResult",
    "PaymentBatchResult",

    # Notifications
    "NotificationTemplate",
    "DeliveryRecord",
    "NotificationRecord",

    # Requests
    "PayoutRunRequest",
    "CollectionRequest",
]
