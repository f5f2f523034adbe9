"""Relay filters for each category of event this client lists."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import NOSTR_DISPUTE_EVENT_KIND, NOSTR_GIFT_WRAP_KIND, NOSTR_ORDER_EVENT_KIND

DEFAULT_LIST_LIMIT = 50


class ListKind(Enum):
    ORDERS = "orders"
    DISPUTES = "disputes"
    DIRECT_MESSAGES = "direct-messages"

    @property
    def event_kind(self) -> int:
        return _EVENT_KINDS[self]


_EVENT_KINDS: dict[ListKind, int] = {
    ListKind.ORDERS: NOSTR_ORDER_EVENT_KIND,
    ListKind.DISPUTES: NOSTR_DISPUTE_EVENT_KIND,
    ListKind.DIRECT_MESSAGES: NOSTR_GIFT_WRAP_KIND,
}


@dataclass(frozen=True)
class FetchParams:
    """Filter parameters for a fetch.

    ``author`` is the Mostro daemon pubkey that publishes order and dispute
    events; ``recipient`` is the pubkey direct messages are addressed to.
    """

    author: str | None = None
    recipient: str | None = None
    since: int | None = None
    limit: int | None = DEFAULT_LIST_LIMIT


def build_filter(list_kind: ListKind, params: FetchParams) -> dict[str, Any]:
    """Build the NIP-01 REQ filter for ``list_kind``.

    Raises:
        ValueError: if the parameter the list kind needs is missing
    """
    filters: dict[str, Any] = {"kinds": [list_kind.event_kind]}

    if list_kind is ListKind.DIRECT_MESSAGES:
        if not params.recipient:
            raise ValueError("Direct-message fetch needs a recipient pubkey")
        filters["#p"] = [params.recipient]
    else:
        if not params.author:
            raise ValueError(f"{list_kind.value} fetch needs the Mostro pubkey as author")
        filters["authors"] = [params.author]

    if params.since is not None:
        filters["since"] = params.since
    if params.limit is not None:
        filters["limit"] = params.limit
    return filters
