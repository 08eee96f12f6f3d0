"""
Payment schemas: requests handed to a gateway provider and the results the
settlement processor reports back.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from settlement.models.db.enums import Currency, PaymentStatus
from settlement.utils.time import utc_now


class BankAccount(BaseModel):
    bank_code: str = Field(min_length=2)
    account_number: str = Field(min_length=4)
    account_name: str = Field(min_length=1)


class EWallet(BaseModel):
    provider: str = Field(min_length=2, description="e.g. OVO, DANA, GOPAY")
    account_number: str = Field(min_length=4)


class RecipientInfo(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    bank_account: Optional[BankAccount] = None
    e_wallet: Optional[EWallet] = None

    @model_validator(mode="after")
    def _has_destination(self) -> "RecipientInfo":
        if self.bank_account is None and self.e_wallet is None:
            raise ValueError("recipient needs a bank account or an e-wallet")
        return self


class PaymentRequest(BaseModel):
    id: str = Field(default_factory=lambda: f"pay_{uuid.uuid4().hex}")
    payout_id: Optional[str] = None
    promoter_id: str
    amount: Decimal = Field(gt=0)
    currency: Currency = Currency.IDR
    description: str = ""
    recipient: RecipientInfo
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class GatewayResponse(BaseModel):
    payment_id: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    request_id: str
    payment_id: Optional[str] = None
    status: PaymentStatus
    amount: Decimal
    currency: Currency
    attempts: int = Field(ge=0)
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class PaymentBatchResult(BaseModel):
    results: List[PaymentResult] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0
    processing: int = 0

    @property
    def total(self) -> int:
        return len(self.results)


__all__ = [
    "BankAccount",
    "EWallet",
    "RecipientInfo",
    "PaymentRequest",
    "GatewayResponse",
    "PaymentResult",
    "PaymentBatchResult",
]
