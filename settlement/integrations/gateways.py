"""
Payment gateway providers.

Every provider speaks the same four operations and reports outcomes as a
``GatewayResponse``; failures surface as ``PaymentGatewayError`` whose
``retryable`` flag tells the processor whether dispatching again is safe:

    network error / timeout / 5xx / 429 -> retryable
    other 4xx, auth failures            -> not retryable

The payment request id doubles as the idempotency key, so a retried dispatch
of a request the gateway already accepted returns the original payment instead
of paying twice.
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

import aiohttp

from settlement.config import GATEWAY_SETTINGS, PAYMENT_GATEWAY
from settlement.exceptions import PaymentGatewayError, PlatformAPIError, ValidationFailure
from settlement.models.db.enums import PaymentStatus
from settlement.models.schemas.payments import GatewayResponse, PaymentRequest
from settlement.utils import get_logger
from .base import request_json

logger = get_logger(__name__)


class GatewayProvider(ABC):
    name: str

    @abstractmethod
    async def process_payment(self, request: PaymentRequest) -> GatewayResponse:
        """Dispatch a payment; may return a non-terminal ``processing`` status."""

    @abstractmethod
    async def check_status(self, payment_id: str) -> GatewayResponse:
        """Current state of a dispatched payment."""

    @abstractmethod
    async def cancel(self, payment_id: str) -> GatewayResponse:
        """Cancel a payment that has not settled yet."""

    @abstractmethod
    async def history(
        self,
        *,
        promoter_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[GatewayResponse]:
        """Payments known to the gateway, newest last."""


class MockGatewayProvider(GatewayProvider):
    """
    Deterministic in-process gateway.

    - ``settle_after_polls``: 0 completes on dispatch, N > 0 answers
      ``processing`` until the Nth status check.
    - ``script``: exceptions raised by successive ``process_payment`` calls
      (``None`` entries let the call through).
    - ``decline``: request or promoter ids the gateway rejects (status ``failed``).
    """

    name = "mock"

    def __init__(
        self,
        *,
        settle_after_polls: int = 0,
        script: Optional[Iterable[Optional[Exception]]] = None,
        decline: Optional[Iterable[str]] = None,
        decline_reason: str = "Insufficient funds or invalid account",
    ) -> None:
        self.settle_after_polls = settle_after_polls
        self._script = list(script or [])
        self.decline = set(decline or [])
        self.decline_reason = decline_reason
        self.dispatch_count = 0
        self.status_checks: Dict[str, int] = {}
        self._payments: Dict[str, GatewayResponse] = {}
        self._owners: Dict[str, str] = {}
        self._by_request: Dict[str, str] = {}

    async def process_payment(self, request: PaymentRequest) -> GatewayResponse:
        self.dispatch_count += 1
        if self._script:
            scripted = self._script.pop(0)
            if scripted is not None:
                raise scripted
        if request.id in self._by_request:
            return self._payments[self._by_request[request.id]]

        payment_id = f"mock_{uuid.uuid4().hex[:12]}"
        if request.id in self.decline or request.promoter_id in self.decline:
            response = GatewayResponse(payment_id=payment_id, status=PaymentStatus.FAILED,
                                       failure_reason=self.decline_reason)
        elif self.settle_after_polls <= 0:
            response = GatewayResponse(payment_id=payment_id, status=PaymentStatus.COMPLETED,
                                       transaction_id=f"TXN{uuid.uuid4().hex[:10].upper()}")
        else:
            response = GatewayResponse(payment_id=payment_id, status=PaymentStatus.PROCESSING)
        self._payments[payment_id] = response
        self._owners[payment_id] = request.promoter_id
        self._by_request[request.id] = payment_id
        return response

    def _get(self, payment_id: str) -> GatewayResponse:
        try:
            return self._payments[payment_id]
        except KeyError as e:
            raise PaymentGatewayError(f"payment not found: {payment_id}", retryable=False, code="NOT_FOUND") from e

    async def check_status(self, payment_id: str) -> GatewayResponse:
        current = self._get(payment_id)
        checks = self.status_checks.get(payment_id, 0) + 1
        self.status_checks[payment_id] = checks
        if current.status == PaymentStatus.PROCESSING and checks >= self.settle_after_polls:
            current = current.model_copy(update={
                "status": PaymentStatus.COMPLETED,
                "transaction_id": f"TXN{uuid.uuid4().hex[:10].upper()}",
            })
            self._payments[payment_id] = current
        return current

    async def cancel(self, payment_id: str) -> GatewayResponse:
        current = self._get(payment_id)
        if current.status.is_terminal:
            raise PaymentGatewayError(f"payment {payment_id} already {current.status.value}",
                                      retryable=False, code="INVALID_STATE")
        current = current.model_copy(update={"status": PaymentStatus.CANCELLED})
        self._payments[payment_id] = current
        return current

    async def history(
        self,
        *,
        promoter_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[GatewayResponse]:
        payments = [
            p for pid, p in self._payments.items()
            if (promoter_id is None or self._owners.get(pid) == promoter_id)
            and (status is None or p.status == status)
        ]
        return payments[:limit] if limit else payments


_XENDIT_STATUS = {
    "PENDING": PaymentStatus.PROCESSING,
    "ACCEPTED": PaymentStatus.PROCESSING,
    "COMPLETED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
}


class XenditGatewayProvider(GatewayProvider):
    """Xendit disbursement API (bank transfers and e-wallets)."""

    name = "xendit"

    def __init__(self, *, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout_seconds: Optional[float] = None) -> None:
        cfg = GATEWAY_SETTINGS["xendit"]
        self.secret_key = str(secret_key if secret_key is not None else cfg["secret_key"])
        self.base_url = str(base_url or cfg["base_url"]).rstrip("/")
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else cfg["timeout_seconds"])
        self._owners: Dict[str, str] = {}

    async def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            status, _, body = await request_json(
                self.name,
                method,
                f"{self.base_url}{path}",
                timeout_seconds=self.timeout_seconds,
                auth=aiohttp.BasicAuth(self.secret_key, ""),
                **kwargs,
            )
        except PlatformAPIError as e:
            raise PaymentGatewayError(f"xendit unreachable: {e}", retryable=e.retryable) from e
        if 200 <= status < 300:
            return body
        code = body.get("error_code")
        message = f"xendit {status} {code or ''}: {body.get('message', '')}".strip()
        raise PaymentGatewayError(message, retryable=status >= 500 or status == 429, code=code)

    def _response(self, body: Mapping[str, Any]) -> GatewayResponse:
        status = _XENDIT_STATUS.get(str(body.get("status", "")).upper(), PaymentStatus.PROCESSING)
        return GatewayResponse(
            payment_id=str(body.get("id", "")),
            status=status,
            transaction_id=body.get("id") if status == PaymentStatus.COMPLETED else None,
            failure_reason=body.get("failure_code"),
            raw=dict(body),
        )

    async def process_payment(self, request: PaymentRequest) -> GatewayResponse:
        recipient = request.recipient
        if recipient.bank_account is not None:
            bank_code = recipient.bank_account.bank_code
            account_number = recipient.bank_account.account_number
            holder = recipient.bank_account.account_name
        elif recipient.e_wallet is not None:
            bank_code = recipient.e_wallet.provider.upper()
            account_number = recipient.e_wallet.account_number
            holder = recipient.name
        else:
            raise ValidationFailure(f"payment {request.id} has no destination account")
        payload: Dict[str, Any] = {
            "external_id": request.id,
            "amount": int(request.amount) if request.currency.value == "IDR" else float(request.amount),
            "bank_code": bank_code,
            "account_holder_name": holder,
            "account_number": account_number,
            "description": request.description or f"Payout {request.payout_id or request.id}",
        }
        if recipient.email:
            payload["email_to"] = [recipient.email]
        body = await self._call("POST", "/disbursements", json=payload,
                                headers={"X-IDEMPOTENCY-KEY": request.id})
        response = self._response(body)
        self._owners[response.payment_id] = request.promoter_id
        return response

    async def check_status(self, payment_id: str) -> GatewayResponse:
        return self._response(await self._call("GET", f"/disbursements/{payment_id}"))

    async def cancel(self, payment_id: str) -> GatewayResponse:
        raise PaymentGatewayError("xendit disbursements cannot be cancelled once created",
                                  retryable=False, code="UNSUPPORTED")

    async def history(
        self,
        *,
        promoter_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[GatewayResponse]:
        ids = [pid for pid, owner in self._owners.items() if promoter_id is None or owner == promoter_id]
        payments = [await self.check_status(pid) for pid in ids]
        payments = [p for p in payments if status is None or p.status == status]
        return payments[:limit] if limit else payments


def create_gateway(name: Optional[str] = None, **options: Any) -> GatewayProvider:
    """Build the gateway named by ``name`` (default: ``PAYMENT_GATEWAY``)."""
    selected = (name or PAYMENT_GATEWAY).strip().lower()
    if selected == "mock":
        return MockGatewayProvider(**options)
    if selected == "xendit":
        return XenditGatewayProvider(**options)
    raise ValidationFailure(f"unknown payment gateway {selected!r}")


__all__ = [
    "GatewayProvider",
    "MockGatewayProvider",
    "XenditGatewayProvider",
    "create_gateway",
]
