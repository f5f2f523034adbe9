"""Bounded-time, multi-relay event fetch with merge by event id."""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from .codec import parse_dispute_events, parse_order_events
from .crypto import Keys
from .errors import AllRelaysUnreachable
from .filters import FetchParams, ListKind, build_filter
from .messages import parse_direct_messages
from .models import DirectMessage, Dispute, Event, Order, OrderKind, OrderStatus
from .relay import RelayPool, RelayTransport

logger = logging.getLogger(__name__)

FETCH_EVENTS_TIMEOUT = 15.0


class EventFetcher:
    """Fan a filter out to every relay and merge what comes back.

    Each relay runs in its own task. At the deadline unfinished relays are
    abandoned and the events already collected are returned. A relay that has
    not produced a single event or EOSE by then counts as failed; the call
    only fails when every relay failed.
    """

    def __init__(self, pool: RelayPool, timeout: float = FETCH_EVENTS_TIMEOUT) -> None:
        self._pool = pool
        self._timeout = timeout

    async def fetch(
        self,
        list_kind: ListKind,
        params: FetchParams | None = None,
        timeout: float | None = None,
    ) -> list[Event]:
        """Fetch events of ``list_kind`` from all relays, newest first.

        Raises:
            AllRelaysUnreachable: if every relay failed
            ValueError: if ``params`` lacks what ``list_kind`` needs
        """
        filters = build_filter(list_kind, params or FetchParams())
        return await self.fetch_filter(filters, timeout=timeout)

    async def fetch_filter(
        self, filters: dict[str, Any], timeout: float | None = None
    ) -> list[Event]:
        timeout = self._timeout if timeout is None else timeout
        collected: dict[str, Event] = {}
        responded: set[str] = set()

        tasks = {
            asyncio.create_task(self._drain(relay, filters, collected, responded)): relay
            for relay in self._pool
        }
        try:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        failures: dict[str, BaseException] = {}
        for task in done:
            exc = task.exception()
            if exc is not None:
                relay = tasks[task]
                logger.warning("Relay %s failed during fetch: %s", relay.url, exc)
                failures[relay.url] = exc

        for task in pending:
            relay = tasks[task]
            if relay.url in responded:
                logger.debug("Fetch deadline reached while %s was still streaming", relay.url)
                continue
            logger.warning("Relay %s did not respond within %gs", relay.url, timeout)
            failures[relay.url] = TimeoutError(f"no response within {timeout:g}s")

        if len(failures) == len(tasks):
            raise AllRelaysUnreachable(failures)

        logger.debug(
            "Fetched %d unique event(s) from %d relay(s)",
            len(collected),
            len(tasks) - len(failures),
        )
        return sorted(collected.values(), key=lambda e: e.created_at, reverse=True)

    @staticmethod
    async def _drain(
        relay: RelayTransport,
        filters: dict[str, Any],
        collected: dict[str, Event],
        responded: set[str],
    ) -> None:
        async for raw in relay.subscribe(filters):
            responded.add(relay.url)
            try:
                event = Event.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Dropping malformed event from %s: %s", relay.url, exc)
                continue
            collected.setdefault(event.id, event)
        responded.add(relay.url)

    # -- Typed lists ---------------------------------------------------------

    async def fetch_orders(
        self,
        author: str,
        status: OrderStatus | None = OrderStatus.PENDING,
        currencies: Sequence[str] | None = None,
        kind: OrderKind | None = None,
        timeout: float | None = None,
    ) -> list[Order]:
        events = await self.fetch(ListKind.ORDERS, FetchParams(author=author), timeout)
        return parse_order_events(events, currencies=currencies, status=status, kind=kind)

    async def fetch_disputes(self, author: str, timeout: float | None = None) -> list[Dispute]:
        events = await self.fetch(ListKind.DISPUTES, FetchParams(author=author), timeout)
        return parse_dispute_events(events)

    async def fetch_direct_messages(
        self,
        keys: Keys,
        since: int | None = None,
        timeout: float | None = None,
    ) -> list[DirectMessage]:
        # gift-wrap timestamps are randomized, so "since" is applied to the
        # decrypted message time rather than in the relay filter
        params = FetchParams(recipient=keys.public_key, since=None, limit=None)
        events = await self.fetch(ListKind.DIRECT_MESSAGES, params, timeout)
        return parse_direct_messages(events, keys, since=since)
