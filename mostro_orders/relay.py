"""Nostr relay I/O: one ``RelayClient`` per relay, grouped in a ``RelayPool``."""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from .errors import AllRelaysUnreachable
from .models import Event

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 5.0


class RelayTransport(Protocol):
    """What the fetcher, waiter and driver need from a relay."""

    @property
    def url(self) -> str: ...

    def subscribe(
        self, filters: dict[str, Any], *, close_on_eose: bool = True
    ) -> AsyncIterator[dict]: ...

    async def publish(self, event: dict, timeout: float = 10.0) -> str: ...


class RelayClient:
    """Async client for a single Nostr relay.

    Every call opens its own websocket connection; nothing is held between
    calls, so one instance can be shared by concurrent fetches and waits.
    """

    def __init__(self, url: str, open_timeout: float = DEFAULT_OPEN_TIMEOUT) -> None:
        self._url = url
        self._open_timeout = open_timeout

    @property
    def url(self) -> str:
        return self._url

    def __repr__(self) -> str:
        return f"RelayClient({self._url!r})"

    async def subscribe(
        self, filters: dict[str, Any], *, close_on_eose: bool = True
    ) -> AsyncIterator[dict]:
        """Send a REQ and yield matching raw events.

        Stops at EOSE when ``close_on_eose`` is set; otherwise keeps streaming
        live events until the caller stops iterating or the relay hangs up.

        Raises:
            ConnectionError: if the relay cannot be reached or drops the socket
        """
        sub_id = uuid.uuid4().hex[:12]

        try:
            async with websockets.connect(self._url, open_timeout=self._open_timeout) as ws:
                logger.debug("REQ %s -> %s %s", sub_id, self._url, filters)
                await ws.send(json.dumps(["REQ", sub_id, filters]))

                while True:
                    raw = await ws.recv()

                    try:
                        msg = json.loads(raw)
                    except json.JSONDecodeError:
                        continue

                    if not isinstance(msg, list) or len(msg) < 2 or msg[1] != sub_id:
                        continue

                    if msg[0] == "EVENT" and len(msg) >= 3 and isinstance(msg[2], dict):
                        yield msg[2]
                    elif msg[0] == "EOSE" and close_on_eose:
                        break
                    elif msg[0] == "CLOSED":
                        reason = msg[2] if len(msg) > 2 else ""
                        logger.info("Relay %s closed subscription %s: %s", self._url, sub_id, reason)
                        return

                try:
                    await ws.send(json.dumps(["CLOSE", sub_id]))
                except Exception as exc:
                    logger.debug("Failed to send CLOSE to %s: %s", self._url, exc)

        except (OSError, WebSocketException) as exc:
            raise ConnectionError(f"Cannot connect to relay {self._url}: {exc}") from exc

    async def query(self, filters: dict[str, Any], timeout: float = 10.0) -> list[dict]:
        """Collect events until EOSE or ``timeout``; keeps what arrived in time."""
        events: list[dict] = []

        async def _drain() -> None:
            async for event in self.subscribe(filters):
                events.append(event)

        try:
            await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Query on %s timed out with %d event(s)", self._url, len(events))
        return events

    async def publish(self, event: dict, timeout: float = 10.0) -> str:
        """Publish a signed Nostr event; return a human-readable relay response."""
        try:
            async with websockets.connect(self._url, open_timeout=self._open_timeout) as ws:
                await ws.send(json.dumps(["EVENT", event]))

                loop = asyncio.get_running_loop()
                deadline = loop.time() + timeout

                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return "timeout - relay did not acknowledge"

                    try:
                        raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
                    except asyncio.TimeoutError:
                        return "timeout - relay did not acknowledge"

                    try:
                        msg = json.loads(raw)
                    except json.JSONDecodeError:
                        continue

                    if not isinstance(msg, list) or len(msg) < 3:
                        continue

                    # ["OK", event_id, accepted, message?]
                    if msg[0] == "OK" and msg[1] == event.get("id"):
                        accepted = bool(msg[2])
                        note = msg[3] if len(msg) > 3 else ""
                        return "accepted" if accepted else f"rejected: {note}"

        except (OSError, WebSocketException) as exc:
            raise ConnectionError(f"Cannot connect to relay {self._url}: {exc}") from exc


class RelayPool:
    """The configured relay set, shared read-only by every component."""

    def __init__(self, relays: Sequence[RelayTransport]) -> None:
        if not relays:
            raise ValueError("At least one relay is required")
        self._relays = tuple(relays)

    @classmethod
    def from_urls(cls, urls: Iterable[str]) -> "RelayPool":
        return cls([RelayClient(url) for url in urls])

    @property
    def relays(self) -> tuple[RelayTransport, ...]:
        return self._relays

    @property
    def urls(self) -> list[str]:
        return [relay.url for relay in self._relays]

    def __iter__(self):
        return iter(self._relays)

    def __len__(self) -> int:
        return len(self._relays)

    async def publish(self, event: Event, timeout: float = 10.0) -> dict[str, str]:
        """Publish to every relay concurrently; return each relay's status.

        Raises:
            AllRelaysUnreachable: if no relay could be reached
        """
        raw = event.to_dict()
        results = await asyncio.gather(
            *(relay.publish(raw, timeout=timeout) for relay in self._relays),
            return_exceptions=True,
        )

        statuses: dict[str, str] = {}
        failures: dict[str, BaseException] = {}
        for relay, result in zip(self._relays, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning("Publish of %s to %s failed: %s", event.id, relay.url, result)
                failures[relay.url] = result
            else:
                logger.debug("Publish of %s to %s: %s", event.id, relay.url, result)
                statuses[relay.url] = result

        if not statuses:
            raise AllRelaysUnreachable(failures)
        return statuses
