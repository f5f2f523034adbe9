"""Mostro P2P order client over Nostr relays -- thin configuration wiring."""

import os
from typing import Any

from .actions import OrderActions
from .codec import decode_order, encode_order
from .crypto import Keys
from .fetcher import FETCH_EVENTS_TIMEOUT, EventFetcher
from .filters import FetchParams, ListKind
from .models import (
    FiatRange,
    FixedFiat,
    Order,
    OrderKind,
    OrderState,
    OrderStatus,
    TakeResult,
)
from .relay import RelayClient, RelayPool
from .waiter import ResponseWaiter

DEFAULT_RELAYS = "wss://relay.mostro.network"

__all__ = [
    "EventFetcher",
    "FetchParams",
    "FiatRange",
    "FixedFiat",
    "Keys",
    "ListKind",
    "Order",
    "OrderActions",
    "OrderKind",
    "OrderState",
    "OrderStatus",
    "RelayClient",
    "RelayPool",
    "ResponseWaiter",
    "TakeResult",
    "create_client",
    "decode_order",
    "encode_order",
]


def _relay_urls(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [url.strip() for url in value if url and url.strip()]


def create_client(config: dict[str, Any] | None = None) -> OrderActions:
    """Build an ``OrderActions`` from config keys, then env vars, then defaults."""
    config = config or {}

    relays = _relay_urls(
        config.get("relays") or os.environ.get("MOSTRO_RELAYS", DEFAULT_RELAYS)
    )
    if not relays:
        raise ValueError("At least one relay URL is required (config: relays or env: MOSTRO_RELAYS)")

    mostro_pubkey = config.get("mostro_pubkey") or os.environ.get("MOSTRO_PUBKEY")
    if not mostro_pubkey:
        raise ValueError("Mostro pubkey is required (config: mostro_pubkey or env: MOSTRO_PUBKEY)")

    privkey = config.get("private_key") or os.environ.get("MOSTRO_PRIVKEY")
    if not privkey:
        raise ValueError("Private key is required (config: private_key or env: MOSTRO_PRIVKEY)")

    timeout = float(
        config.get("timeout") or os.environ.get("MOSTRO_TIMEOUT", FETCH_EVENTS_TIMEOUT)
    )

    return OrderActions(RelayPool.from_urls(relays), Keys(privkey), mostro_pubkey, timeout)
