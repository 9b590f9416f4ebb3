"""Provider webhook payloads, as a tagged union, and their payment lifecycle classification."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from paygate.exceptions import InvalidPayloadError
from paygate.webhooks.signatures import Provider

Identifier = str | int


class PaymentLifecycle(str, Enum):
    """Provider-neutral payment state."""

    CREATED = "created"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    RESOLVED = "resolved"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentLifecycle.CONFIRMED, PaymentLifecycle.FAILED, PaymentLifecycle.EXPIRED)


def _processed_at() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookEventBase(BaseModel, ABC):
    """Fields every event carries. Unknown payload fields are kept."""

    model_config = ConfigDict(extra="allow")

    @property
    @abstractmethod
    def event_id(self) -> str: ...

    @abstractmethod
    def lifecycle(self, *, min_confirmations: int = 6) -> PaymentLifecycle: ...

    @abstractmethod
    def acknowledgment(self, lifecycle: PaymentLifecycle) -> dict[str, Any]: ...


class CoinPaymentsEvent(WebhookEventBase):
    """CoinPayments IPN, posted as a form."""

    provider: Literal["coinpayments"] = "coinpayments"
    txn_id: str
    status: int
    status_text: str | None = None
    ipn_version: str | None = None
    ipn_type: str | None = None
    ipn_mode: str | None = None
    ipn_id: str | None = None
    merchant: str | None = None
    currency1: str | None = None
    currency2: str | None = None
    amount1: str | None = None
    amount2: str | None = None
    fee: str | None = None
    buyer_name: str | None = None
    email: str | None = None
    item_name: str | None = None
    item_number: str | None = None
    invoice: str | None = None
    custom: str | None = None
    received_amount: str | None = None
    received_confirms: str | None = None

    @property
    def event_id(self) -> str:
        return self.txn_id

    def lifecycle(self, *, min_confirmations: int = 6) -> PaymentLifecycle:
        # 2 queued for payout, 3 payout sent, >= 100 complete; -1 cancelled or timed out.
        if self.status >= 100 or self.status in (2, 3):
            return PaymentLifecycle.CONFIRMED
        if self.status == -1:
            return PaymentLifecycle.EXPIRED
        if self.status < -1:
            return PaymentLifecycle.FAILED
        return PaymentLifecycle.PENDING

    def acknowledgment(self, lifecycle: PaymentLifecycle) -> dict[str, Any]:
        return {
            "status": "received",
            "txn_id": self.txn_id,
            "ipn_status": self.status,
            "status_text": self.status_text,
            "lifecycle": lifecycle.value,
            "processed_at": _processed_at(),
        }


_NOWPAYMENTS_LIFECYCLE = {
    "waiting": PaymentLifecycle.CREATED,
    "confirming": PaymentLifecycle.PENDING,
    "confirmed": PaymentLifecycle.PENDING,
    "sending": PaymentLifecycle.PENDING,
    "partially_paid": PaymentLifecycle.PENDING,
    "finished": PaymentLifecycle.CONFIRMED,
    "failed": PaymentLifecycle.FAILED,
    "refunded": PaymentLifecycle.FAILED,
    "expired": PaymentLifecycle.EXPIRED,
}


class NowPaymentsEvent(WebhookEventBase):
    """NowPayments IPN callback (JSON)."""

    provider: Literal["nowpayments"] = "nowpayments"
    payment_id: Identifier
    payment_status: str
    order_id: str | None = None
    order_description: str | None = None
    pay_address: str | None = None
    pay_amount: float | None = None
    pay_currency: str | None = None
    price_amount: float | None = None
    price_currency: str | None = None
    actually_paid: float | None = None
    purchase_id: Identifier | None = None
    outcome_amount: float | None = None
    outcome_currency: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def event_id(self) -> str:
        return str(self.payment_id)

    def lifecycle(self, *, min_confirmations: int = 6) -> PaymentLifecycle:
        return _NOWPAYMENTS_LIFECYCLE.get(self.payment_status, PaymentLifecycle.UNKNOWN)

    def acknowledgment(self, lifecycle: PaymentLifecycle) -> dict[str, Any]:
        return {
            "status": "received",
            "payment_id": self.payment_id,
            "payment_status": self.payment_status,
            "order_id": self.order_id,
            "lifecycle": lifecycle.value,
            "processed_at": _processed_at(),
        }


_COINBASE_LIFECYCLE = {
    "charge:created": PaymentLifecycle.CREATED,
    "charge:pending": PaymentLifecycle.PENDING,
    "charge:delayed": PaymentLifecycle.PENDING,
    "charge:confirmed": PaymentLifecycle.CONFIRMED,
    "charge:failed": PaymentLifecycle.FAILED,
    "charge:resolved": PaymentLifecycle.RESOLVED,
}


class CoinbaseCharge(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    code: str | None = None
    name: str | None = None
    description: str | None = None
    pricing: dict[str, Any] | None = None
    payments: list[dict[str, Any]] = Field(default_factory=list)
    timeline: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    @property
    def current_status(self) -> str | None:
        return self.timeline[-1].get("status") if self.timeline else None


class CoinbaseCommerceEvent(WebhookEventBase):
    """Coinbase Commerce event.

    Deliveries wrap the event in ``{"id", "scheduled_for", "event": {...}}``;
    a bare event object is accepted as well.
    """

    provider: Literal["coinbase-commerce"] = "coinbase-commerce"
    id: str
    type: str
    api_version: str | None = None
    created_at: str | None = None
    data: CoinbaseCharge = Field(default_factory=CoinbaseCharge)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_delivery(cls, value: Any) -> Any:
        if isinstance(value, dict) and "type" not in value and isinstance(value.get("event"), dict):
            return {**value["event"], "provider": value.get("provider", "coinbase-commerce")}
        return value

    @property
    def event_id(self) -> str:
        return self.id

    @property
    def charge_id(self) -> str | None:
        return self.data.id

    def lifecycle(self, *, min_confirmations: int = 6) -> PaymentLifecycle:
        return _COINBASE_LIFECYCLE.get(self.type, PaymentLifecycle.UNKNOWN)

    def acknowledgment(self, lifecycle: PaymentLifecycle) -> dict[str, Any]:
        return {
            "status": "received",
            "event_id": self.id,
            "event_type": self.type,
            "charge_id": self.charge_id,
            "lifecycle": lifecycle.value,
            "processed_at": _processed_at(),
        }


class DirectCryptoEvent(WebhookEventBase):
    """On-chain transfer reported by the gateway's own chain watcher."""

    provider: Literal["direct-crypto"] = "direct-crypto"
    transaction_hash: str = Field(min_length=1)
    contract_address: str = Field(min_length=1)
    amount: str | float
    currency: str = Field(min_length=1)
    from_address: str | None = None
    to_address: str | None = None
    block_number: int | None = None
    block_timestamp: str | int | None = None
    gas_used: str | int | None = None
    gas_price: str | int | None = None
    order_id: Identifier | None = None
    gig_id: Identifier | None = None
    client_address: str | None = None
    provider_address: str | None = None
    payment_type: str | None = None
    network: str | None = None
    confirmations: int = 0

    @field_validator("confirmations", mode="before")
    @classmethod
    def _null_confirmations(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("amount")
    @classmethod
    def _amount_present(cls, value: str | float) -> str | float:
        if value in ("", 0):
            raise ValueError("amount is required")
        return value

    @property
    def event_id(self) -> str:
        return self.transaction_hash

    def lifecycle(self, *, min_confirmations: int = 6) -> PaymentLifecycle:
        if self.confirmations >= min_confirmations:
            return PaymentLifecycle.CONFIRMED
        return PaymentLifecycle.PENDING

    def acknowledgment(self, lifecycle: PaymentLifecycle) -> dict[str, Any]:
        return {
            "status": "received",
            "transaction_hash": self.transaction_hash,
            "payment_type": self.payment_type,
            "amount": self.amount,
            "currency": self.currency,
            "network": self.network,
            "confirmations": self.confirmations,
            "processing_status": "processed" if lifecycle is PaymentLifecycle.CONFIRMED else "pending_confirmations",
            "lifecycle": lifecycle.value,
            "processed_at": _processed_at(),
            "order_id": self.order_id,
            "gig_id": self.gig_id,
        }


WebhookEvent = Annotated[
    CoinPaymentsEvent | NowPaymentsEvent | CoinbaseCommerceEvent | DirectCryptoEvent,
    Field(discriminator="provider"),
]

WebhookEventAdapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


def decode_payload(provider: Provider, raw_body: bytes) -> dict[str, Any]:
    """Decode the delivery body: a form for CoinPayments, a JSON object for the rest.

    Raises:
        InvalidPayloadError: if the body cannot be decoded into fields.
    """
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidPayloadError("Body is not valid UTF-8") from None

    if provider is Provider.COINPAYMENTS:
        return dict(parse_qsl(text, keep_blank_values=True))

    try:
        payload = json.loads(text)
    except ValueError:
        raise InvalidPayloadError("Body is not valid JSON") from None
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Body must be a JSON object")
    return payload


def parse_event(provider: Provider, raw_body: bytes) -> WebhookEvent:
    """Parse *raw_body* into the event model for *provider*.

    Raises:
        InvalidPayloadError: if the body is undecodable or misses required fields.
    """
    payload = decode_payload(provider, raw_body)
    try:
        return WebhookEventAdapter.validate_python({**payload, "provider": provider.value})
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in error["loc"][1:]) or "body" for error in e.errors()})
        raise InvalidPayloadError(f"Missing or invalid fields: {', '.join(fields)}") from None


def classify(event: WebhookEvent, *, min_confirmations: int = 6) -> PaymentLifecycle:
    return event.lifecycle(min_confirmations=min_confirmations)
