"""Tests for direct-message parsing and construction."""

import hashlib
import json
import logging

import pytest
from _helpers import MOSTRO_SK, make_dm, make_event

from mostro_orders.crypto import Keys, _nip04_encrypt
from mostro_orders.errors import DecryptionFailed, MalformedContent, NotAddressedToMe, ParseError
from mostro_orders.messages import (
    build_direct_message,
    gift_wrap,
    parse_direct_message,
    parse_direct_messages,
    unwrap_gift,
)
from mostro_orders.models import Event, Message


def _wrap_layers(seal_keys, rumor_keys, recipient, content, seal_kind=13):
    """Gift wrap whose seal and rumor may come from different keys."""
    rumor = rumor_keys.rumor(1, [], content)
    rumor_json = json.dumps({k: v for k, v in rumor.to_dict().items() if k != "sig"})
    seal = seal_keys.sign_event(seal_kind, [], seal_keys.encrypt(rumor_json, recipient.public_key))
    ephemeral = Keys.generate()
    return ephemeral.sign_event(
        1059,
        [["p", recipient.public_key]],
        ephemeral.encrypt(json.dumps(seal.to_dict()), recipient.public_key),
    )


def test_parse_valid_direct_message(user_keys, mostro_keys):
    message = Message(action="new-order", id="o1", request_id=7, payload={"amount": 5})
    event = make_dm(mostro_keys, user_keys, message)

    dm = parse_direct_message(event, user_keys)

    assert dm.event_id == event.id
    assert dm.sender == mostro_keys.public_key
    assert dm.message == message
    assert dm.correlation_id == "o1"


def test_sender_is_seal_author_not_wrap_key(user_keys, mostro_keys):
    event = make_dm(mostro_keys, user_keys, Message(action="new-order", id="o1"), 1700000000)

    dm = parse_direct_message(event, user_keys)

    assert event.pubkey != mostro_keys.public_key
    assert dm.sender == mostro_keys.public_key
    # wrap time is randomized; the reported time is the rumor's
    assert dm.created_at == 1700000000


def test_message_not_addressed_to_me_is_rejected_before_decrypting(
    user_keys, mostro_keys, stranger_keys, mocker
):
    event = make_dm(mostro_keys, stranger_keys, Message(action="new-order"))
    decrypt = mocker.spy(user_keys, "decrypt")

    with pytest.raises(NotAddressedToMe):
        parse_direct_message(event, user_keys)

    decrypt.assert_not_called()


def test_undecryptable_content_raises_decryption_failed(user_keys, mostro_keys):
    event = mostro_keys.sign_event(1059, [["p", user_keys.public_key]], "garbage")

    with pytest.raises(DecryptionFailed) as excinfo:
        parse_direct_message(event, user_keys)

    assert excinfo.value.event_id == event.id


@pytest.mark.parametrize(
    "plaintext",
    ["not json", "[]", '{"order": {}}', '[{"order": {"action": "x", "payload": 3}}, null]'],
)
def test_non_message_plaintext_raises_malformed_content(user_keys, mostro_keys, plaintext):
    event = gift_wrap(mostro_keys, user_keys.public_key, plaintext)

    with pytest.raises(MalformedContent):
        parse_direct_message(event, user_keys)


def test_wrong_event_kind_is_a_parse_error(user_keys):
    event = user_keys.sign_event(1, [["p", user_keys.public_key]], "hi")

    with pytest.raises(ParseError):
        parse_direct_message(event, user_keys)


def test_bare_wrapper_object_is_accepted(user_keys, mostro_keys):
    event = gift_wrap(
        mostro_keys, user_keys.public_key, '{"order": {"action": "canceled", "id": "o9"}}'
    )

    assert parse_direct_message(event, user_keys).message.action == "canceled"


# ---------------------------------------------------------------------------
# Gift wrap layers
# ---------------------------------------------------------------------------


def test_rumor_signed_by_someone_else_is_malformed(user_keys, mostro_keys, stranger_keys):
    event = _wrap_layers(mostro_keys, stranger_keys, user_keys, '[{"order":{"action":"x"}},null]')

    with pytest.raises(MalformedContent, match="rumor author"):
        parse_direct_message(event, user_keys)


def test_seal_of_wrong_kind_is_malformed(user_keys, mostro_keys):
    event = _wrap_layers(mostro_keys, mostro_keys, user_keys, "{}", seal_kind=1)

    with pytest.raises(MalformedContent, match="seal"):
        unwrap_gift(event, user_keys)


def test_unwrap_gift_returns_rumor_and_sender(user_keys, mostro_keys):
    event = gift_wrap(mostro_keys, user_keys.public_key, "hello", created_at=1234)

    rumor, sender = unwrap_gift(event, user_keys)

    assert sender == mostro_keys.public_key
    assert rumor.kind == 1
    assert rumor.content == "hello"
    assert rumor.created_at == 1234
    assert rumor.sig == ""


def test_private_message_kind_14_is_decoded(user_keys, mostro_keys):
    content = mostro_keys.encrypt('[{"order":{"action":"canceled","id":"o2"}},null]',
                                  user_keys.public_key)
    event = mostro_keys.sign_event(14, [["p", user_keys.public_key]], content, 1700000000)

    dm = parse_direct_message(event, user_keys)

    assert dm.sender == mostro_keys.public_key
    assert dm.message.id == "o2"


def test_legacy_nip04_message_is_decoded(user_keys, mostro_keys):
    content = _nip04_encrypt(MOSTRO_SK, user_keys.public_key, '{"order":{"action":"canceled"}}')
    event = mostro_keys.sign_event(4, [["p", user_keys.public_key]], content, 1700000000)

    dm = parse_direct_message(event, user_keys)

    assert dm.message.action == "canceled"
    assert dm.created_at == 1700000000


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def test_one_bad_message_does_not_abort_the_batch(user_keys, mostro_keys, caplog):
    good1 = make_dm(mostro_keys, user_keys, Message(action="new-order", id="o1"), 100)
    bad = mostro_keys.sign_event(1059, [["p", user_keys.public_key]], "garbage", 200)
    good2 = make_dm(mostro_keys, user_keys, Message(action="canceled", id="o1"), 300)

    with caplog.at_level(logging.WARNING):
        parsed = parse_direct_messages([good2, bad, good1], user_keys)

    assert [dm.event_id for dm in parsed] == [good1.id, good2.id]
    assert bad.id in caplog.text


def test_duplicate_events_are_parsed_once(user_keys, mostro_keys):
    event = make_dm(mostro_keys, user_keys, Message(action="new-order", id="o1"))

    assert len(parse_direct_messages([event, event], user_keys)) == 1


def test_messages_before_since_are_dropped(user_keys, mostro_keys):
    old = make_dm(mostro_keys, user_keys, Message(action="new-order", id="o1"), 100)
    new = make_dm(mostro_keys, user_keys, Message(action="canceled", id="o1"), 200)

    parsed = parse_direct_messages([old, new], user_keys, since=150)

    assert [dm.event_id for dm in parsed] == [new.id]


def test_since_uses_message_time_not_wrap_time(user_keys, mostro_keys):
    now = 1_900_000_000
    event = make_dm(mostro_keys, user_keys, Message(action="new-order", id="o1"), now)

    # the wrap itself is stamped in the past, before ``since``
    assert event.created_at < now
    assert len(parse_direct_messages([event], user_keys, since=now - 1)) == 1


def test_events_for_other_keys_are_skipped_quietly(user_keys, mostro_keys, stranger_keys):
    other = make_dm(mostro_keys, stranger_keys, Message(action="new-order"))

    assert parse_direct_messages([other], user_keys) == []


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_build_direct_message_gift_wraps_a_signed_message(user_keys, mostro_keys):
    from coincurve import PublicKeyXOnly

    message = Message(action="take-sell", id="o1", request_id=42, payload={"amount": 0})

    event = build_direct_message(user_keys, mostro_keys.public_key, message)

    assert event.kind == 1059
    assert event.tags == (("p", mostro_keys.public_key),)
    assert event.pubkey != user_keys.public_key
    assert message.as_json() not in event.content

    rumor, sender = unwrap_gift(event, mostro_keys)
    body, sig = json.loads(rumor.content)
    assert sender == user_keys.public_key
    assert Message.from_json(rumor.content) == message
    assert json.dumps(body, separators=(",", ":")) == message.as_json()
    xonly = PublicKeyXOnly(bytes.fromhex(user_keys.public_key))
    digest = hashlib.sha256(message.as_json().encode()).digest()
    assert xonly.verify(bytes.fromhex(sig), digest)


def test_each_wrap_uses_a_fresh_key(user_keys, mostro_keys):
    message = Message(action="new-order", request_id=1)

    first = build_direct_message(user_keys, mostro_keys.public_key, message)
    second = build_direct_message(user_keys, mostro_keys.public_key, message)

    assert first.pubkey != second.pubkey


def test_raw_event_without_p_tag_is_not_addressed(user_keys):
    event = Event.from_dict(make_event("e1", kind=1059))

    with pytest.raises(NotAddressedToMe):
        parse_direct_message(event, user_keys)
