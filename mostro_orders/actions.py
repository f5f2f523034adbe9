"""Order actions against a Mostro daemon: publish, take, add an invoice, and list."""

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from .codec import encode_order, order_from_payload, order_to_payload
from .crypto import Keys
from .errors import (
    AllRelaysUnreachable,
    DecodeError,
    NoResponse,
    RelayFailure,
    RequestRejected,
    ResponseTimeout,
    TransportError,
    UnexpectedResponse,
)
from .fetcher import FETCH_EVENTS_TIMEOUT, EventFetcher
from .messages import build_direct_message
from .models import (
    NOSTR_ORDER_EVENT_KIND,
    Action,
    DirectMessage,
    Dispute,
    Event,
    Message,
    Order,
    OrderKind,
    OrderState,
    OrderStatus,
    TakeResult,
    cant_do_description,
)
from .relay import RelayPool
from .waiter import ResponseWaiter

logger = logging.getLogger(__name__)


def _new_request_id() -> int:
    # Mostro request ids are u64
    return uuid.uuid4().int & ((1 << 64) - 1)


def _take_payload(kind: OrderKind, amount: int | None, invoice: str | None) -> dict | None:
    """Payload of a take request.

    Taking a buy order only ever carries an amount (range orders). Taking a
    sell order carries the buyer's invoice when one is known.
    """
    if kind is OrderKind.BUY:
        return {"amount": amount} if amount is not None else None
    if invoice is not None:
        return {"payment_request": [None, invoice, amount]}
    return {"amount": amount if amount is not None else 0}


class OrderActions:
    """Composes codec, fetcher and waiter into the client's order operations.

    Tracks each order's lifecycle state as seen by this client:
    created -> published -> awaiting-taker | taken-confirmed | timed-out.
    """

    def __init__(
        self,
        pool: RelayPool,
        keys: Keys,
        mostro_pubkey: str,
        timeout: float = FETCH_EVENTS_TIMEOUT,
    ) -> None:
        self._pool = pool
        self._keys = keys
        self._mostro_pubkey = mostro_pubkey
        self._timeout = timeout
        self._fetcher = EventFetcher(pool, timeout=timeout)
        self._states: dict[str, OrderState] = {}

    # -- Properties ----------------------------------------------------------

    @property
    def pool(self) -> RelayPool:
        return self._pool

    @property
    def keys(self) -> Keys:
        return self._keys

    @property
    def mostro_pubkey(self) -> str:
        return self._mostro_pubkey

    @property
    def fetcher(self) -> EventFetcher:
        return self._fetcher

    def state_of(self, order_id: str) -> OrderState | None:
        return self._states.get(order_id)

    def _advance(self, order_id: str, state: OrderState) -> None:
        previous = self._states.get(order_id)
        self._states[order_id] = state
        logger.info("Order %s: %s -> %s", order_id, previous and previous.value, state.value)

    # -- Publishing ----------------------------------------------------------

    async def publish_new_order(self, order: Order) -> Event:
        """Sign and publish ``order`` as an order event; no reply is awaited.

        Raises:
            RelayFailure: no relay could be reached
        """
        self._advance(order.id, OrderState.CREATED)
        event = self._keys.sign_event(NOSTR_ORDER_EVENT_KIND, encode_order(order), "")

        try:
            statuses = await self._pool.publish(event, timeout=self._timeout)
        except AllRelaysUnreachable as exc:
            raise RelayFailure(f"Order {order.id} was not published: {exc}") from exc

        logger.info("Published order %s as event %s: %s", order.id, event.id, statuses)
        self._advance(order.id, OrderState.PUBLISHED)
        self._advance(order.id, OrderState.AWAITING_TAKER)
        return event

    async def request_new_order(self, order: Order, timeout: float | None = None) -> Order:
        """Ask the Mostro daemon to create ``order`` and return its confirmation.

        The daemon assigns the order id: the request carries ``id: null``
        and the reply is matched on the request id alone.

        Raises:
            NoResponse, RelayFailure, RequestRejected, UnexpectedResponse
        """
        request_id = _new_request_id()
        payload = order_to_payload(order)
        payload["id"] = None
        message = Message(
            action=Action.NEW_ORDER.value,
            request_id=request_id,
            payload={"order": payload},
        )
        logger.info("Sending new order request %s", request_id)
        reply = await self._exchange(message, None, request_id, self._keys, timeout, attempts=1)
        return self._order_from_reply(reply, None)

    # -- Taking --------------------------------------------------------------

    async def take_order(
        self,
        order_id: str,
        kind: OrderKind,
        *,
        amount: int | None = None,
        invoice: str | None = None,
        keys: Keys | None = None,
        timeout: float | None = None,
        attempts: int = 1,
    ) -> TakeResult:
        """Take someone else's order and return the daemon's confirmation.

        ``kind`` is the kind of the order being taken: a sell order is taken
        with ``take-sell``, a buy order with ``take-buy``. ``attempts`` > 1
        re-sends the same request after a timeout. When the daemon answers
        with a payment request, its invoice and sats amount are returned in
        the result.

        Raises:
            NoResponse: the daemon did not answer in time
            RelayFailure: the relays could not be reached
            RequestRejected: the daemon answered ``cant-do``
            UnexpectedResponse: the reply carried no order
        """
        action = Action.TAKE_SELL if kind is OrderKind.SELL else Action.TAKE_BUY
        request_id = _new_request_id()
        message = Message(
            action=action.value,
            id=order_id,
            request_id=request_id,
            payload=_take_payload(kind, amount, invoice),
        )
        logger.info("Taking order %s (%s) with request_id %s", order_id, action.value, request_id)

        keys = keys or self._keys
        try:
            reply = await self._exchange(message, order_id, request_id, keys, timeout, attempts)
        except NoResponse:
            self._advance(order_id, OrderState.TIMED_OUT)
            raise

        result = self._take_result(reply, order_id)
        self._advance(order_id, OrderState.TAKEN_CONFIRMED)
        return result

    async def add_invoice(
        self,
        order_id: str,
        invoice: str,
        *,
        keys: Keys | None = None,
        timeout: float | None = None,
    ) -> DirectMessage:
        """Send the buyer's lightning invoice for a taken order.

        The daemon acknowledges with ``waiting-seller-to-pay``.

        Raises:
            ValueError: ``invoice`` is empty
            NoResponse, RelayFailure, RequestRejected
            UnexpectedResponse: the daemon answered with any other action
        """
        if not invoice:
            raise ValueError("An invoice is required")

        request_id = _new_request_id()
        message = Message(
            action=Action.ADD_INVOICE.value,
            id=order_id,
            request_id=request_id,
            payload={"payment_request": [None, invoice, None]},
        )
        logger.info("Adding invoice to order %s with request_id %s", order_id, request_id)

        reply = await self._exchange(
            message, order_id, request_id, keys or self._keys, timeout, attempts=1
        )
        self._raise_if_rejected(reply.message)
        if reply.message.action != Action.WAITING_SELLER_TO_PAY.value:
            raise UnexpectedResponse(
                f"Expected {Action.WAITING_SELLER_TO_PAY.value} for order {order_id}, "
                f"got {reply.message.action}"
            )
        return reply

    async def _exchange(
        self,
        message: Message,
        correlation_id: str | None,
        request_id: int,
        keys: Keys,
        timeout: float | None,
        attempts: int,
    ) -> DirectMessage:
        timeout = self._timeout if timeout is None else timeout
        request = build_direct_message(keys, self._mostro_pubkey, message)
        waiter = ResponseWaiter(self._pool, keys)

        for attempt in range(1, max(attempts, 1) + 1):
            try:
                return await waiter.send_and_wait(
                    request,
                    correlation_id,
                    timeout,
                    request_id=request_id,
                    sender=self._mostro_pubkey,
                )
            except ResponseTimeout as exc:
                logger.info("Attempt %d/%d got no reply", attempt, attempts)
                timed_out = exc
            except TransportError as exc:
                raise RelayFailure(str(exc)) from exc

        raise NoResponse(f"Mostro did not respond within {timeout:g}s") from timed_out

    @staticmethod
    def _raise_if_rejected(message: Message) -> None:
        if message.is_cant_do:
            reason = message.cant_do_reason
            description = cant_do_description(reason)
            logger.error("Mostro refused request %s: %s", message.request_id, description)
            raise RequestRejected(reason, description)

    def _take_result(self, reply: DirectMessage, order_id: str) -> TakeResult:
        """``payment_request`` is ``[order, invoice, sats]``; a plain ``order`` has neither."""
        payload: dict[str, Any] = reply.message.payload or {}
        request = payload.get("payment_request")
        if "order" in payload or not isinstance(request, list):
            return TakeResult(self._order_from_reply(reply, order_id))

        self._raise_if_rejected(reply.message)
        raw_order, invoice, sat_amount = (list(request) + [None, None, None])[:3]
        order = self._decode_order(raw_order, reply.message, order_id)
        if invoice is not None and not isinstance(invoice, str):
            raise UnexpectedResponse(f"Payment request for {order_id} has an invalid invoice")
        try:
            sat_amount = int(sat_amount) if sat_amount is not None else None
        except (TypeError, ValueError) as exc:
            raise UnexpectedResponse(
                f"Payment request for {order_id} has an invalid amount"
            ) from exc
        return TakeResult(order=order, invoice=invoice, sat_amount=sat_amount)

    def _order_from_reply(self, reply: DirectMessage, order_id: str | None) -> Order:
        self._raise_if_rejected(reply.message)
        payload: dict[str, Any] = reply.message.payload or {}
        return self._decode_order(payload.get("order"), reply.message, order_id)

    @staticmethod
    def _decode_order(raw_order: Any, message: Message, order_id: str | None) -> Order:
        if not isinstance(raw_order, dict):
            raise UnexpectedResponse(
                f"Reply to {order_id or message.request_id} ({message.action}) carries no order"
            )

        try:
            return order_from_payload(raw_order)
        except DecodeError as exc:
            raise UnexpectedResponse(f"Reply carries an invalid order: {exc}") from exc

    # -- Listing -------------------------------------------------------------

    async def get_orders(
        self,
        status: OrderStatus | None = OrderStatus.PENDING,
        currencies: Sequence[str] | None = None,
        kind: OrderKind | None = None,
    ) -> list[Order]:
        return await self._fetcher.fetch_orders(
            self._mostro_pubkey, status=status, currencies=currencies, kind=kind
        )

    async def get_disputes(self) -> list[Dispute]:
        return await self._fetcher.fetch_disputes(self._mostro_pubkey)

    async def get_messages(self, since: int | None = None) -> list[DirectMessage]:
        return await self._fetcher.fetch_direct_messages(self._keys, since=since)
