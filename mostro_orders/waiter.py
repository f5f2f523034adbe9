"""Publish a request and wait, with a hard deadline, for its correlated reply."""

import asyncio
import logging
from dataclasses import dataclass

from .crypto import Keys
from .errors import AllRelaysUnreachable, ParseError, ResponseTimeout, TransportError
from .messages import parse_direct_message
from .models import NOSTR_GIFT_WRAP_KIND, DirectMessage, Event
from .relay import RelayPool, RelayTransport

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIMEOUT = 15.0


@dataclass(frozen=True)
class _ListenerEnded:
    url: str
    error: BaseException | None


@dataclass(frozen=True)
class _PublishDone:
    task: asyncio.Task


def _matches(dm: DirectMessage, correlation_id: str | None, request_id: int | None) -> bool:
    """A reply matches on a known id and contradicts neither id."""
    if correlation_id is not None and dm.correlation_id not in (None, correlation_id):
        return False
    if request_id is not None and dm.message.request_id not in (None, request_id):
        return False
    return (correlation_id is not None and dm.correlation_id == correlation_id) or (
        request_id is not None and dm.message.request_id == request_id
    )


class ResponseWaiter:
    """One bounded attempt at getting the reply to a request.

    Listens on every relay for direct messages to ``keys``, publishes the
    request, and returns the first reply that parses and matches. No retry
    happens here.
    """

    def __init__(self, pool: RelayPool, keys: Keys) -> None:
        self._pool = pool
        self._keys = keys

    @property
    def keys(self) -> Keys:
        return self._keys

    async def send_and_wait(
        self,
        request: Event,
        correlation_id: str | None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
        *,
        request_id: int | None = None,
        sender: str | None = None,
    ) -> DirectMessage:
        """Publish ``request`` and return the first correlated reply.

        A reply matches when its order id equals ``correlation_id`` or its
        request id equals ``request_id``, and neither id contradicts the
        request. With ``sender`` set, replies from other authors are ignored.

        Raises:
            ResponseTimeout: nothing matched before the deadline
            TransportError: no relay accepted the request or could be listened on
        """
        if correlation_id is None and request_id is None:
            raise ValueError("Need a correlation_id or a request_id to match replies")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        # gift-wrap timestamps are randomized into the past, so no "since":
        # limit 0 skips stored events and streams only new ones
        filters = {
            "kinds": [NOSTR_GIFT_WRAP_KIND],
            "#p": [self._keys.public_key],
            "limit": 0,
        }
        queue: asyncio.Queue = asyncio.Queue()
        tasks = [
            asyncio.create_task(self._listen(relay, filters, queue)) for relay in self._pool
        ]
        listener_count = len(tasks)

        publish = asyncio.create_task(self._pool.publish(request, timeout=timeout))
        publish.add_done_callback(lambda task: queue.put_nowait(_PublishDone(task)))
        tasks.append(publish)

        try:
            return await self._collect(
                queue, listener_count, deadline, timeout, correlation_id, request_id, sender
            )
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _collect(
        self,
        queue: asyncio.Queue,
        listener_count: int,
        deadline: float,
        timeout: float,
        correlation_id: str | None,
        request_id: int | None,
        sender: str | None,
    ) -> DirectMessage:
        loop = asyncio.get_running_loop()
        seen: set[str] = set()
        ended: dict[str, BaseException | None] = {}

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            try:
                item = await asyncio.wait_for(queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break

            if isinstance(item, _PublishDone):
                if not item.task.cancelled() and isinstance(
                    item.task.exception(), AllRelaysUnreachable
                ):
                    raise TransportError("Request was not published") from item.task.exception()
                continue

            if isinstance(item, _ListenerEnded):
                ended[item.url] = item.error
                if len(ended) == listener_count:
                    failures = {url: err for url, err in ended.items() if err is not None}
                    cause = AllRelaysUnreachable(failures) if failures else None
                    raise TransportError("Every relay subscription ended") from cause
                continue

            event: Event = item
            if event.id in seen:
                continue
            seen.add(event.id)

            try:
                dm = parse_direct_message(event, self._keys)
            except ParseError as exc:
                logger.debug("Ignoring reply candidate: %s", exc)
                continue

            # the wrap is signed by a throwaway key; the sender is known only now
            if sender is not None and dm.sender != sender:
                continue

            if _matches(dm, correlation_id, request_id):
                logger.debug("Matched reply %s (action %s)", dm.event_id, dm.message.action)
                return dm

        logger.info("No reply within %gs", timeout)
        raise ResponseTimeout(timeout)

    @staticmethod
    async def _listen(relay: RelayTransport, filters: dict, queue: asyncio.Queue) -> None:
        error: BaseException | None = None
        try:
            async for raw in relay.subscribe(filters, close_on_eose=False):
                try:
                    queue.put_nowait(Event.from_dict(raw))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.debug("Dropping malformed event from %s: %s", relay.url, exc)
        except ConnectionError as exc:
            logger.warning("Listening on %s failed: %s", relay.url, exc)
            error = exc
        queue.put_nowait(_ListenerEnded(relay.url, error))
