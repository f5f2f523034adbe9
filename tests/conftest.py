"""Shared fixtures: key pairs and a scripted Mostro daemon on fake relays."""

import pytest
from _helpers import MOSTRO_SK, STRANGER_SK, USER_SK, FakeRelay

from mostro_orders.crypto import Keys
from mostro_orders.messages import build_direct_message, parse_direct_message
from mostro_orders.models import Event
from mostro_orders.relay import RelayPool


@pytest.fixture
def user_keys():
    return Keys(USER_SK)


@pytest.fixture
def mostro_keys():
    return Keys(MOSTRO_SK)


@pytest.fixture
def stranger_keys():
    return Keys(STRANGER_SK)


@pytest.fixture
def relays():
    return [FakeRelay("ws://relay-a.test"), FakeRelay("ws://relay-b.test")]


@pytest.fixture
def pool(relays):
    return RelayPool(relays)


@pytest.fixture
def mostro_daemon(relays, mostro_keys):
    """Install a responder on every fake relay that answers like a Mostro daemon.

    Call the fixture with a function ``reply(request: Message) -> Message | None``;
    the returned message is gift-wrapped back to the requester.
    """

    def install(reply):
        answered: set[str] = set()

        def responder(raw: dict) -> list[dict]:
            # every relay sees the same publish; answer it once
            if raw["id"] in answered:
                return []
            answered.add(raw["id"])
            request = parse_direct_message(Event.from_dict(raw), mostro_keys)
            response = reply(request.message)
            if response is None:
                return []
            return [build_direct_message(mostro_keys, request.sender, response).to_dict()]

        for relay in relays:
            relay.responders.append(responder)

    return install
