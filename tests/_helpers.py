"""Shared keys, event builders and in-memory relays for the test suite.

Importable from any test module or conftest.py.
"""

import asyncio
import os
from collections.abc import Callable
from contextlib import contextmanager

from mostro_orders.crypto import Keys
from mostro_orders.messages import build_direct_message
from mostro_orders.models import NOSTR_ORDER_EVENT_KIND, Event, Message

# BIP-340 test vector: secret key 1
SK1_HEX = "00" * 31 + "01"
SK1_PUBKEY = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"

USER_SK = "00" * 31 + "03"
MOSTRO_SK = "00" * 31 + "02"
STRANGER_SK = "00" * 31 + "05"


def make_event(event_id: str, created_at: int = 1700000000, kind: int = 1, tags=None) -> dict:
    """Build a raw (unsigned) relay event dict."""
    return {
        "id": event_id,
        "pubkey": "aa" * 32,
        "created_at": created_at,
        "kind": kind,
        "tags": tags or [],
        "content": "",
        "sig": "",
    }


def make_order_event(
    event_id: str,
    order_id: str = "abc",
    kind: str = "sell",
    fiat_code: str = "USD",
    status: str = "pending",
    created_at: int = 1700000000,
) -> dict:
    return make_event(
        event_id,
        created_at=created_at,
        kind=NOSTR_ORDER_EVENT_KIND,
        tags=[
            ["d", order_id],
            ["k", kind],
            ["f", fiat_code],
            ["s", status],
            ["amt", "0"],
            ["fa", "100"],
            ["pm", "bank_transfer"],
            ["premium", "1"],
        ],
    )


def make_dm(sender: Keys, recipient: Keys, message: Message, created_at: int | None = None) -> Event:
    """Gift-wrap ``message`` from ``sender``; ``created_at`` sets the inner message time."""
    return build_direct_message(sender, recipient.public_key, message, created_at=created_at)


class FakeRelay:
    """In-memory relay speaking the ``RelayTransport`` interface.

    ``events`` are replayed to every subscription, followed by EOSE. After
    EOSE a live subscription (or one on a ``hang`` relay) keeps waiting for
    events pushed by ``responders`` when something is published. A ``stall``
    relay accepts the subscription and never answers at all.
    """

    def __init__(
        self,
        url: str,
        events=(),
        *,
        fail: bool = False,
        hang: bool = False,
        stall: bool = False,
        publish_status: str = "accepted",
    ) -> None:
        self.url = url
        self.events = list(events)
        self.fail = fail
        self.hang = hang
        self.stall = stall
        self.publish_status = publish_status
        self.published: list[dict] = []
        self.subscriptions: list[dict] = []
        self.responders: list[Callable[[dict], list[dict]]] = []
        self._live: asyncio.Queue = asyncio.Queue()

    async def subscribe(self, filters, *, close_on_eose=True):
        self.subscriptions.append(filters)
        if self.fail:
            raise ConnectionError(f"Cannot connect to relay {self.url}: refused")
        if self.stall:
            await asyncio.Event().wait()
        for event in self.events:
            yield event
        if close_on_eose and not self.hang:
            return
        while True:
            yield await self._live.get()

    async def publish(self, event, timeout=10.0):
        if self.fail:
            raise ConnectionError(f"Cannot connect to relay {self.url}: refused")
        self.published.append(event)
        for responder in self.responders:
            for reply in responder(event):
                self._live.put_nowait(reply)
        return self.publish_status

    def push(self, event: dict) -> None:
        self._live.put_nowait(event)


@contextmanager
def override_env(**env_vars):
    """Temporarily set/unset environment variables, restoring originals on exit.

    Pass a value of ``None`` to unset a variable for the duration of the block.
    """
    saved: dict[str, str | None] = {}
    try:
        for key, value in env_vars.items():
            saved[key] = os.environ.get(key)
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        yield
    finally:
        for key, original in saved.items():
            if original is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = original
