"""Order tag codec: ``Order`` <-> NIP-69 tag set, plus order/dispute event lists.

Wire tags (order independent):

    d        order id                       1 value
    k        buy | sell                     1 value
    f        fiat currency code             1 value
    s        order status                   1 value
    amt      sats amount (0 = market)       1 value
    fa       fixed fiat amount, or min,max  1 or 2 values
    pm       payment method(s)              1+ values
    premium  premium percentage             1 value
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import Any

from .errors import (
    DecodeError,
    InvalidEnumError,
    InvalidNumberError,
    InvalidRangeError,
    MissingFieldError,
)
from .models import Dispute, Event, FiatRange, FixedFiat, Order, OrderKind, OrderStatus

logger = logging.getLogger(__name__)

Tags = Sequence[Sequence[str]]

REQUIRED_ORDER_TAGS = ("d", "f", "pm")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise InvalidNumberError(name, value) from None


def _decode_fiat(values: Sequence[str]) -> FixedFiat | FiatRange:
    """Branch on ``fa`` arity: one value is a fixed amount, two are min/max."""
    if not values or not values[0]:
        raise MissingFieldError("fa")
    if len(values) >= 2:
        low = _parse_int("fa", values[0])
        high = _parse_int("fa", values[1])
        if low > high:
            raise InvalidRangeError("fa", low, high)
        return FiatRange(low, high)
    return FixedFiat(_parse_int("fa", values[0]))


def _parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        return OrderStatus.PENDING


def decode_order(tags: Tags, *, strict: bool = False) -> Order:
    """Decode an order from its event tags.

    An unknown ``k`` value leaves ``kind`` as ``None`` and is only logged,
    unless ``strict`` is set.

    Raises:
        MissingFieldError: ``d``, ``f`` or ``pm`` absent or empty
        InvalidNumberError: non-integer ``amt``, ``fa`` or ``premium``
        InvalidRangeError: ``fa`` min greater than max
        InvalidEnumError: unknown ``k`` value, with ``strict=True`` only
    """
    fields: dict[str, Any] = {}
    fiat: FixedFiat | FiatRange | None = None

    for tag in tags:
        if not tag:
            continue
        key, values = tag[0], list(tag[1:])
        value = values[0] if values else ""

        if key == "d":
            fields["id"] = value
        elif key == "k":
            try:
                fields["kind"] = OrderKind(value.lower())
            except ValueError:
                error = InvalidEnumError("k", value)
                if strict:
                    raise error from None
                logger.warning("%s; decoding order without a kind", error)
                fields["kind"] = None
        elif key == "f":
            fields["fiat_code"] = value
        elif key == "s":
            fields["status"] = _parse_status(value)
        elif key == "amt":
            fields["amount"] = _parse_int("amt", value)
        elif key == "fa":
            fiat = _decode_fiat(values)
        elif key == "pm":
            fields["payment_method"] = ",".join(v for v in values if v)
        elif key == "premium":
            fields["premium"] = _parse_int("premium", value)

    for name, attr in zip(REQUIRED_ORDER_TAGS, ("id", "fiat_code", "payment_method")):
        if not fields.get(attr):
            raise MissingFieldError(name)

    if isinstance(fiat, FiatRange):
        fields["min_amount"] = fiat.min_amount
        fields["max_amount"] = fiat.max_amount
    elif isinstance(fiat, FixedFiat):
        fields["fiat_amount"] = fiat.amount
    elif fields.get("amount", 0) != 0:
        # only a market-price order may omit the fiat amount
        raise MissingFieldError("fa")

    fields.setdefault("kind", None)
    return Order(**fields)


def encode_order(order: Order) -> list[list[str]]:
    """Encode an order as event tags; the inverse of ``decode_order``."""
    tags: list[list[str]] = [["d", order.id]]
    if order.kind is not None:
        tags.append(["k", order.kind.value])
    tags.append(["f", order.fiat_code])
    if order.status is not None:
        tags.append(["s", order.status.value])
    tags.append(["amt", str(order.amount)])

    fiat = order.fiat
    if isinstance(fiat, FiatRange):
        tags.append(["fa", str(fiat.min_amount), str(fiat.max_amount)])
    elif isinstance(fiat, FixedFiat):
        tags.append(["fa", str(fiat.amount)])

    tags.append(["pm", order.payment_method])
    tags.append(["premium", str(order.premium)])
    return tags


def decode_dispute(tags: Tags) -> Dispute:
    """Decode a dispute from its ``d`` and ``s`` tags.

    Raises:
        MissingFieldError: no dispute id
    """
    dispute_id = ""
    status = ""
    for tag in tags:
        if len(tag) < 2:
            continue
        if tag[0] == "d":
            dispute_id = tag[1]
        elif tag[0] == "s":
            status = tag[1]
    if not dispute_id:
        raise MissingFieldError("d")
    return Dispute(id=dispute_id, status=status)


# ---------------------------------------------------------------------------
# JSON order payloads carried inside Mostro messages
# ---------------------------------------------------------------------------


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidNumberError(key, str(value)) from None


def order_from_payload(payload: dict[str, Any]) -> Order:
    """Build an Order from a Mostro ``SmallOrder`` JSON object.

    Raises:
        DecodeError: on missing or invalid fields
    """
    kind_raw = payload.get("kind")
    try:
        kind = OrderKind(kind_raw) if kind_raw is not None else None
    except ValueError:
        raise InvalidEnumError("kind", str(kind_raw)) from None

    order_id = payload.get("id")
    if not order_id:
        raise MissingFieldError("id")

    status_raw = payload.get("status")
    amount = _optional_int(payload, "amount") or 0
    premium = _optional_int(payload, "premium") or 0
    created_at = _optional_int(payload, "created_at")
    min_amount = _optional_int(payload, "min_amount")
    max_amount = _optional_int(payload, "max_amount")
    fiat_amount = _optional_int(payload, "fiat_amount")
    if min_amount is not None and max_amount is not None:
        # Mostro sends fiat_amount 0 alongside a range
        fiat_amount = None
        if min_amount > max_amount:
            raise InvalidRangeError("min_amount", min_amount, max_amount)
    elif min_amount is not None or max_amount is not None:
        raise MissingFieldError("max_amount" if max_amount is None else "min_amount")

    return Order(
        id=str(order_id),
        kind=kind,
        fiat_code=str(payload.get("fiat_code") or ""),
        payment_method=str(payload.get("payment_method") or ""),
        amount=amount,
        fiat_amount=fiat_amount,
        min_amount=min_amount,
        max_amount=max_amount,
        premium=premium,
        status=_parse_status(status_raw) if status_raw is not None else None,
        created_at=created_at,
    )


def order_to_payload(order: Order) -> dict[str, Any]:
    return {
        "id": order.id or None,
        "kind": order.kind.value if order.kind is not None else None,
        "status": order.status.value if order.status is not None else None,
        "amount": order.amount,
        "fiat_code": order.fiat_code,
        "min_amount": order.min_amount,
        "max_amount": order.max_amount,
        "fiat_amount": order.fiat_amount if order.fiat_amount is not None else 0,
        "payment_method": order.payment_method,
        "premium": order.premium,
    }


# ---------------------------------------------------------------------------
# Event lists
# ---------------------------------------------------------------------------


def parse_order_events(
    events: Iterable[Event],
    currencies: Sequence[str] | None = None,
    status: OrderStatus | None = None,
    kind: OrderKind | None = None,
) -> list[Order]:
    """Decode order events, keeping only the newest event per order id.

    Orders that fail to decode or carry no kind are skipped. An empty or
    missing ``currencies`` list means no currency filter. Newest first.
    """
    latest: dict[str, Order] = {}
    for event in events:
        try:
            order = decode_order(event.tags)
        except DecodeError as exc:
            logger.warning("Skipping order event %s: %s", event.id, exc)
            continue
        if order.kind is None:
            logger.info("Skipping order %s with no kind", order.id)
            continue

        order = replace(order, created_at=event.created_at)
        existing = latest.get(order.id)
        if existing is None or (order.created_at or 0) > (existing.created_at or 0):
            latest[order.id] = order

    selected = [
        o
        for o in latest.values()
        if (status is None or o.status == status)
        and (not currencies or o.fiat_code in currencies)
        and (kind is None or o.kind == kind)
    ]
    selected.sort(key=lambda o: o.created_at or 0, reverse=True)
    return selected


def parse_dispute_events(events: Iterable[Event]) -> list[Dispute]:
    """Decode dispute events, newest status per dispute id, newest first."""
    latest: dict[str, Dispute] = {}
    for event in events:
        try:
            dispute = decode_dispute(event.tags)
        except DecodeError as exc:
            logger.warning("Skipping dispute event %s: %s", event.id, exc)
            continue
        dispute = replace(dispute, created_at=event.created_at)
        existing = latest.get(dispute.id)
        if existing is None or dispute.created_at > existing.created_at:
            latest[dispute.id] = dispute
    return sorted(latest.values(), key=lambda d: d.created_at, reverse=True)
