"""Frozen dataclasses for Mostro orders, Nostr events and direct messages.

Nothing in this module performs I/O. Invariants are checked in
``__post_init__`` so an invalid ``Order`` never escapes its constructor.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Protocol constants
# ---------------------------------------------------------------------------

NOSTR_ORDER_EVENT_KIND = 38383  # NIP-69 order announcements
NOSTR_DISPUTE_EVENT_KIND = 38386
NOSTR_GIFT_WRAP_KIND = 1059  # NIP-59 gift wrap, carries every Mostro message
NOSTR_SEAL_KIND = 13
NOSTR_RUMOR_KIND = 1
NOSTR_PRIVATE_DM_KIND = 14  # NIP-44 encrypted, not wrapped
NOSTR_LEGACY_DM_KIND = 4  # NIP-04, decode only
PROTOCOL_VERSION = 1


class OrderKind(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    CANCELED_BY_ADMIN = "canceled-by-admin"
    SETTLED_BY_ADMIN = "settled-by-admin"
    COMPLETED_BY_ADMIN = "completed-by-admin"
    DISPUTE = "dispute"
    EXPIRED = "expired"
    FIAT_SENT = "fiat-sent"
    SETTLED_HOLD_INVOICE = "settled-hold-invoice"
    PENDING = "pending"
    SUCCESS = "success"
    WAITING_BUYER_INVOICE = "waiting-buyer-invoice"
    WAITING_PAYMENT = "waiting-payment"
    COOPERATIVELY_CANCELED = "cooperatively-canceled"
    IN_PROGRESS = "in-progress"


class OrderState(str, Enum):
    """Lifecycle of an order as seen from this client."""

    CREATED = "created"
    PUBLISHED = "published"
    AWAITING_TAKER = "awaiting-taker"
    TAKEN_CONFIRMED = "taken-confirmed"
    TIMED_OUT = "timed-out"


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FixedFiat:
    amount: int


@dataclass(frozen=True)
class FiatRange:
    min_amount: int
    max_amount: int


@dataclass(frozen=True)
class Order:
    """A trade intent, either built locally or decoded from an order event.

    ``amount == 0`` means the sats amount is set at market price when taken.
    Either ``fiat_amount`` or the ``min_amount``/``max_amount`` pair is set,
    never both.
    """

    id: str
    kind: OrderKind | None
    fiat_code: str
    payment_method: str
    amount: int = 0
    fiat_amount: int | None = None
    min_amount: int | None = None
    max_amount: int | None = None
    premium: int = 0
    status: OrderStatus | None = None
    created_at: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        has_range = self.min_amount is not None or self.max_amount is not None
        if has_range and (self.min_amount is None or self.max_amount is None):
            raise ValueError("min_amount and max_amount must be set together")
        if has_range and self.fiat_amount is not None:
            raise ValueError("fiat_amount and a fiat range are mutually exclusive")
        if has_range and self.min_amount > self.max_amount:
            raise ValueError(
                f"min_amount {self.min_amount} exceeds max_amount {self.max_amount}"
            )

    @classmethod
    def new(
        cls,
        kind: OrderKind,
        fiat_code: str,
        payment_method: str,
        fiat: "FixedFiat | FiatRange",
        amount: int = 0,
        premium: int = 0,
    ) -> "Order":
        """Create a local order with a fresh UUID."""
        if isinstance(fiat, FiatRange):
            fixed, low, high = None, fiat.min_amount, fiat.max_amount
        else:
            fixed, low, high = fiat.amount, None, None
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            fiat_code=fiat_code,
            payment_method=payment_method,
            amount=amount,
            fiat_amount=fixed,
            min_amount=low,
            max_amount=high,
            premium=premium,
            status=OrderStatus.PENDING,
        )

    @property
    def fiat(self) -> FixedFiat | FiatRange | None:
        if self.min_amount is not None and self.max_amount is not None:
            return FiatRange(self.min_amount, self.max_amount)
        if self.fiat_amount is not None:
            return FixedFiat(self.fiat_amount)
        return None

    @property
    def is_market_price(self) -> bool:
        return self.amount == 0


@dataclass(frozen=True)
class Dispute:
    id: str
    status: str
    created_at: int = 0


# ---------------------------------------------------------------------------
# Nostr events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    """A NIP-01 event as received from (or sent to) a relay. Never mutated."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Event":
        """Build an Event from relay JSON.

        Raises:
            KeyError, TypeError, ValueError: on a malformed event object
        """
        event_id = raw["id"]
        if not isinstance(event_id, str) or not event_id:
            raise ValueError("event id must be a non-empty string")
        return cls(
            id=event_id,
            pubkey=str(raw.get("pubkey", "")),
            created_at=int(raw.get("created_at", 0)),
            kind=int(raw["kind"]),
            tags=tuple(tuple(str(v) for v in tag) for tag in raw.get("tags", [])),
            content=str(raw.get("content", "")),
            sig=str(raw.get("sig", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def tag_values(self, name: str) -> list[str]:
        """Primary values of every tag called ``name``."""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def first_tag(self, name: str) -> str | None:
        values = self.tag_values(name)
        return values[0] if values else None


# ---------------------------------------------------------------------------
# Application messages
# ---------------------------------------------------------------------------


class Action(str, Enum):
    NEW_ORDER = "new-order"
    TAKE_SELL = "take-sell"
    TAKE_BUY = "take-buy"
    ADD_INVOICE = "add-invoice"
    WAITING_SELLER_TO_PAY = "waiting-seller-to-pay"
    CANT_DO = "cant-do"


CANT_DO_DESCRIPTIONS: dict[str, str] = {
    "invalid_signature": "Invalid signature - authentication failed",
    "invalid_trade_index": "Invalid trade index - please try again",
    "invalid_amount": "Invalid amount - check your order values",
    "invalid_invoice": "Invalid invoice - please provide a valid lightning invoice",
    "invalid_payment_request": "Invalid payment request",
    "invalid_peer": "Invalid peer information",
    "invalid_rating": "Invalid rating value",
    "invalid_text_message": "Invalid text message",
    "invalid_order_kind": "Invalid order kind - must be 'buy' or 'sell'",
    "invalid_order_status": "Invalid order status",
    "invalid_pubkey": "Invalid public key",
    "invalid_parameters": "Invalid parameters - check your order details",
    "order_already_canceled": "Order is already canceled",
    "cant_create_user": "Cannot create user - please contact support",
    "is_not_your_order": "This is not your order",
    "not_allowed_by_status": "Action not allowed - order status prevents this operation",
    "out_of_range_fiat_amount": "Fiat amount is out of acceptable range",
    "out_of_range_sats_amount": "Satoshis amount is out of acceptable range",
    "is_not_your_dispute": "This is not your dispute",
    "dispute_taken_by_admin": "Dispute has been taken over by an administrator",
    "dispute_creation_error": "Cannot create dispute for this order",
    "not_found": "Resource not found",
    "invalid_dispute_status": "Invalid dispute status",
    "invalid_action": "Invalid action for current state",
    "pending_order_exists": (
        "You already have a pending order - please complete or cancel it first"
    ),
    "invalid_fiat_currency": (
        "Invalid fiat currency - currency not supported or specify a fixed rate"
    ),
    "too_many_requests": "Too many requests - please wait and try again",
}


def cant_do_description(reason: str | None) -> str:
    if reason is None:
        return "Unknown error - Mostro couldn't process your request"
    return CANT_DO_DESCRIPTIONS.get(reason, f"Request refused: {reason}")


@dataclass(frozen=True)
class Message:
    """Mostro application message: ``[{"<kind>": {...}}, <signature|null>]``.

    ``action`` is kept as a plain string so replies with actions this client
    does not know about still parse.
    """

    action: str
    id: str | None = None
    request_id: int | None = None
    trade_index: int | None = None
    payload: dict[str, Any] | None = None
    kind: str = "order"
    version: int = PROTOCOL_VERSION

    def as_json(self) -> str:
        """The ``{"<kind>": {...}}`` object alone; this is what gets signed."""
        inner = {
            "version": self.version,
            "id": self.id,
            "request_id": self.request_id,
            "trade_index": self.trade_index,
            "action": str(getattr(self.action, "value", self.action)),
            "payload": self.payload,
        }
        return json.dumps({self.kind: inner}, separators=(",", ":"))

    def to_json(self, signature: str | None = None) -> str:
        return f"[{self.as_json()},{json.dumps(signature)}]"

    @classmethod
    def from_json(cls, raw: str) -> "Message":
        """Parse a message body; accepts the tuple form or a bare wrapper object.

        Raises:
            ValueError, TypeError: if the body is not a Mostro message
        """
        data = json.loads(raw)
        if isinstance(data, list):
            if not data:
                raise ValueError("empty message array")
            data = data[0]
        if not isinstance(data, dict) or len(data) != 1:
            raise ValueError("message must be a single-key object")

        kind, inner = next(iter(data.items()))
        if not isinstance(inner, dict) or not isinstance(inner.get("action"), str):
            raise ValueError("message has no action")

        payload = inner.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise ValueError("message payload must be an object")

        request_id = inner.get("request_id")
        trade_index = inner.get("trade_index")
        msg_id = inner.get("id")
        return cls(
            action=inner["action"],
            id=str(msg_id) if msg_id is not None else None,
            request_id=int(request_id) if request_id is not None else None,
            trade_index=int(trade_index) if trade_index is not None else None,
            payload=payload,
            kind=kind,
            version=int(inner.get("version", PROTOCOL_VERSION)),
        )

    @property
    def cant_do_reason(self) -> str | None:
        if self.payload is None:
            return None
        reason = self.payload.get("cant_do")
        return str(reason) if reason is not None else None

    @property
    def is_cant_do(self) -> bool:
        return self.action == Action.CANT_DO.value or (
            self.payload is not None and "cant_do" in self.payload
        )


@dataclass(frozen=True)
class DirectMessage:
    event_id: str
    sender: str
    created_at: int
    message: Message

    @property
    def correlation_id(self) -> str | None:
        """Id of the order (or prior message) this message refers to."""
        return self.message.id


@dataclass(frozen=True)
class TakeResult:
    """The daemon's answer to a take request.

    When ``invoice`` is set the taker must pay that hold invoice
    (``sat_amount`` sats) before the trade can go on.
    """

    order: Order
    invoice: str | None = None
    sat_amount: int | None = None

    @property
    def payment_required(self) -> bool:
        return self.invoice is not None
