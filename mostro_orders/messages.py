"""Direct-message parsing and construction.

Mostro messages travel as NIP-59 gift wraps: a kind-1 rumor, sealed (kind 13)
by the author and wrapped (kind 1059) by a throwaway key, both layers
NIP-44 encrypted. Unwrapped kind-14 messages and legacy NIP-04 kind-4
messages are still decoded.
"""

import json
import logging
import secrets
import time
from collections.abc import Iterable

from .crypto import Keys
from .errors import DecryptionFailed, MalformedContent, NotAddressedToMe, ParseError
from .models import (
    NOSTR_GIFT_WRAP_KIND,
    NOSTR_LEGACY_DM_KIND,
    NOSTR_PRIVATE_DM_KIND,
    NOSTR_RUMOR_KIND,
    NOSTR_SEAL_KIND,
    DirectMessage,
    Event,
    Message,
)

logger = logging.getLogger(__name__)

RANDOM_TIME_WINDOW = 2 * 24 * 60 * 60  # wrap/seal timestamps are pushed up to 2 days back


def _tweaked_timestamp() -> int:
    return int(time.time()) - secrets.randbelow(RANDOM_TIME_WINDOW)


def gift_wrap(
    keys: Keys, recipient: str, content: str, created_at: int | None = None
) -> Event:
    """Wrap ``content`` for ``recipient`` as rumor -> seal -> gift wrap."""
    rumor = keys.rumor(NOSTR_RUMOR_KIND, [], content, created_at)
    rumor_json = {k: v for k, v in rumor.to_dict().items() if k != "sig"}
    seal = keys.sign_event(
        NOSTR_SEAL_KIND,
        [],
        keys.encrypt(json.dumps(rumor_json, ensure_ascii=False), recipient),
        _tweaked_timestamp(),
    )

    ephemeral = Keys.generate()
    return ephemeral.sign_event(
        NOSTR_GIFT_WRAP_KIND,
        [["p", recipient]],
        ephemeral.encrypt(json.dumps(seal.to_dict(), ensure_ascii=False), recipient),
        _tweaked_timestamp(),
    )


def _decrypt_event(keys: Keys, payload: str, author: str, event_id: str) -> Event:
    try:
        plaintext = keys.decrypt(payload, author)
    except ValueError as exc:
        raise DecryptionFailed(event_id, str(exc)) from exc
    try:
        return Event.from_dict(json.loads(plaintext))
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedContent(event_id, f"inner event is invalid: {exc}") from exc


def unwrap_gift(event: Event, keys: Keys) -> tuple[Event, str]:
    """Open a gift wrap and return ``(rumor, sender)``.

    The sender is the seal's author, not the wrap's throwaway key.

    Raises:
        DecryptionFailed: either layer does not decrypt with ``keys``
        MalformedContent: the seal or rumor is not a well-formed event
    """
    seal = _decrypt_event(keys, event.content, event.pubkey, event.id)
    if seal.kind != NOSTR_SEAL_KIND:
        raise MalformedContent(event.id, f"seal has kind {seal.kind}")

    rumor = _decrypt_event(keys, seal.content, seal.pubkey, event.id)
    if rumor.pubkey != seal.pubkey:
        raise MalformedContent(event.id, "rumor author does not match seal author")
    return rumor, seal.pubkey


def parse_direct_message(event: Event, keys: Keys) -> DirectMessage:
    """Decrypt and parse one direct-message event addressed to ``keys``.

    The recipient check runs before any cryptographic work. For gift wraps
    the reported time is the rumor's, since the wrap time is randomized.

    Raises:
        NotAddressedToMe: no ``p`` tag names ``keys.public_key``
        DecryptionFailed: wrong key or corrupted ciphertext
        MalformedContent: decrypted body is not a Mostro message
        ParseError: the event is not a direct message at all
    """
    if event.kind not in (NOSTR_GIFT_WRAP_KIND, NOSTR_PRIVATE_DM_KIND, NOSTR_LEGACY_DM_KIND):
        raise ParseError(event.id, f"Event {event.id} has kind {event.kind}, not a DM")

    if keys.public_key not in event.tag_values("p"):
        raise NotAddressedToMe(event.id)

    sender, created_at = event.pubkey, event.created_at
    if event.kind == NOSTR_GIFT_WRAP_KIND:
        rumor, sender = unwrap_gift(event, keys)
        plaintext, created_at = rumor.content, rumor.created_at
    else:
        decrypt = keys.decrypt if event.kind == NOSTR_PRIVATE_DM_KIND else keys.decrypt_nip04
        try:
            plaintext = decrypt(event.content, event.pubkey)
        except ValueError as exc:
            raise DecryptionFailed(event.id, str(exc)) from exc

    try:
        message = Message.from_json(plaintext)
    except (ValueError, TypeError) as exc:
        raise MalformedContent(event.id, str(exc)) from exc

    return DirectMessage(
        event_id=event.id,
        sender=sender,
        created_at=created_at,
        message=message,
    )


def parse_direct_messages(
    events: Iterable[Event],
    keys: Keys,
    since: int | None = None,
) -> list[DirectMessage]:
    """Parse a batch of DM events, oldest first.

    A failure on one event is logged and skipped; it never aborts the batch.
    Duplicate event ids are parsed once. Messages created before ``since``
    (unix seconds, compared with the decrypted message time) are dropped.
    """
    seen: set[str] = set()
    parsed: list[DirectMessage] = []

    for event in events:
        if event.id in seen:
            continue
        seen.add(event.id)

        try:
            dm = parse_direct_message(event, keys)
        except NotAddressedToMe as exc:
            logger.debug("%s", exc)
            continue
        except ParseError as exc:
            logger.warning("Skipping direct message: %s", exc)
            continue

        if since is None or dm.created_at >= since:
            parsed.append(dm)

    parsed.sort(key=lambda dm: dm.created_at)
    return parsed


def build_direct_message(
    keys: Keys, recipient: str, message: Message, created_at: int | None = None
) -> Event:
    """Sign ``message`` with ``keys`` and gift-wrap it for ``recipient``."""
    content = message.to_json(keys.sign_message(message.as_json()))
    return gift_wrap(keys, recipient, content, created_at)
