from .snapshots import MetricSnapshot
from .promotions import Promotion
from .payouts import PayoutBatchRecord, PayoutRecord, PlatformRevenue

__all__ = [
    "MetricSnapshot",
    "Promotion",
    "PayoutBatchRecord",
    "PayoutRecord",
    "PlatformRevenue",
]
