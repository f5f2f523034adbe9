"""Nostr signing, NIP-44 (and legacy NIP-04) encryption, and the ``Keys`` holder."""

import base64
import hashlib
import json
import os
import secrets
import struct
import time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .models import Event

_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F  # secp256k1 field prime


# ---------------------------------------------------------------------------
# Pure crypto functions (module-level for independent testability)
# ---------------------------------------------------------------------------


def _nostr_event_id(
    pubkey: str, created_at: int, kind: int, tags: list, content: str
) -> str:
    """SHA256 of the canonical NIP-01 commitment array."""
    commitment = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(commitment.encode("utf-8")).hexdigest()


def _derive_pubkey(privkey_hex: str) -> str:
    """BIP340 x-only public key (32 bytes) as lowercase hex."""
    from coincurve import PrivateKey as _SK

    # format(compressed=True) -> [02/03] + 32-byte x; drop the prefix byte
    return _SK(bytes.fromhex(privkey_hex)).public_key.format(compressed=True)[1:].hex()


def _schnorr_sign(privkey_hex: str, event_id_hex: str) -> str:
    """BIP340 Schnorr signature over the 32-byte event ID, as hex."""
    from coincurve import PrivateKey as _SK

    sk = _SK(bytes.fromhex(privkey_hex))
    return sk.sign_schnorr(bytes.fromhex(event_id_hex)).hex()


def _lift_x_even(x_hex: str) -> tuple[int, int]:
    """Return (x, y) for a Nostr x-only pubkey, choosing even y."""
    x = int(x_hex, 16)
    y_sq = (pow(x, 3, _P) + 7) % _P
    y = pow(y_sq, (_P + 1) // 4, _P)
    if y % 2 != 0:
        y = _P - y
    return x, y


def _shared_secret(privkey_hex: str, pubkey_hex: str) -> bytes:
    """ECDH shared x-coordinate between a private key and an x-only pubkey."""
    privkey = ec.derive_private_key(int(privkey_hex, 16), ec.SECP256K1())
    x, y = _lift_x_even(pubkey_hex)
    peer = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256K1()).public_key()
    return privkey.exchange(ec.ECDH(), peer)


def _nip04_encrypt(sender_privkey_hex: str, recipient_pubkey_hex: str, plaintext: str) -> str:
    """NIP-04 encrypt: ECDH shared-x -> AES-256-CBC. Content = base64(ct)?iv=base64(iv)"""
    shared_x = _shared_secret(sender_privkey_hex, recipient_pubkey_hex)

    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    enc = Cipher(algorithms.AES(shared_x), modes.CBC(iv)).encryptor()
    ct = enc.update(data) + enc.finalize()
    return base64.b64encode(ct).decode() + "?iv=" + base64.b64encode(iv).decode()


def _nip04_decrypt(recipient_privkey_hex: str, sender_pubkey_hex: str, content: str) -> str:
    """NIP-04 decrypt.

    Raises:
        ValueError: on a malformed payload, bad padding (wrong key) or non-UTF-8 plaintext
    """
    ct_b64, sep, iv_b64 = content.partition("?iv=")
    if not sep:
        raise ValueError("NIP-04 content has no '?iv=' separator")
    ct = base64.b64decode(ct_b64, validate=True)
    iv = base64.b64decode(iv_b64, validate=True)

    shared_x = _shared_secret(recipient_privkey_hex, sender_pubkey_hex)
    dec = Cipher(algorithms.AES(shared_x), modes.CBC(iv)).decryptor()
    data = dec.update(ct) + dec.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    data = unpadder.update(data) + unpadder.finalize()
    return data.decode("utf-8")


# NIP-44 v2: ECDH -> HKDF -> ChaCha20 + HMAC-SHA256, padded plaintext

_NIP44_VERSION = 2
_NIP44_SALT = b"nip44-v2"
_NIP44_MAX_PLAINTEXT = 65535


def _nip44_conversation_key(privkey_hex: str, pubkey_hex: str) -> bytes:
    """HKDF-extract of the ECDH shared x with the ``nip44-v2`` salt."""
    h = hmac.HMAC(_NIP44_SALT, hashes.SHA256())
    h.update(_shared_secret(privkey_hex, pubkey_hex))
    return h.finalize()


def _nip44_message_keys(conversation_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return okm[:32], okm[32:44], okm[44:]


def _nip44_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _nip44_pad(plaintext: bytes) -> bytes:
    size = len(plaintext)
    if not 1 <= size <= _NIP44_MAX_PLAINTEXT:
        raise ValueError(f"NIP-44 plaintext must be 1..{_NIP44_MAX_PLAINTEXT} bytes, got {size}")
    return struct.pack(">H", size) + plaintext + bytes(_nip44_padded_len(size) - size)


def _nip44_unpad(padded: bytes) -> bytes:
    (size,) = struct.unpack(">H", padded[:2])
    plaintext = padded[2 : 2 + size]
    if size == 0 or len(plaintext) != size or len(padded) != 2 + _nip44_padded_len(size):
        raise ValueError("NIP-44 padding is invalid")
    return plaintext


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 4-byte little-endian counter (0) + 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, bytes(4) + nonce), mode=None)
    return cipher.encryptor().update(data)


def _nip44_encrypt(conversation_key: bytes, plaintext: str, nonce: bytes | None = None) -> str:
    """NIP-44 v2 payload: base64(0x02 || nonce || ciphertext || mac)."""
    nonce = nonce if nonce is not None else os.urandom(32)
    chacha_key, chacha_nonce, hmac_key = _nip44_message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _nip44_pad(plaintext.encode("utf-8")))

    mac = hmac.HMAC(hmac_key, hashes.SHA256())
    mac.update(nonce + ciphertext)
    data = bytes([_NIP44_VERSION]) + nonce + ciphertext + mac.finalize()
    return base64.b64encode(data).decode()


def _nip44_decrypt(conversation_key: bytes, payload: str) -> str:
    """Decrypt a NIP-44 v2 payload.

    Raises:
        ValueError: unknown version, bad length or encoding, MAC mismatch, bad padding
    """
    if not payload or payload[0] == "#":
        raise ValueError("NIP-44 payload has an unsupported encoding")
    if not 132 <= len(payload) <= 87472:
        raise ValueError(f"NIP-44 payload has invalid length {len(payload)}")
    data = base64.b64decode(payload, validate=True)
    if data[0] != _NIP44_VERSION:
        raise ValueError(f"Unknown NIP-44 version {data[0]}")

    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _nip44_message_keys(conversation_key, nonce)

    check = hmac.HMAC(hmac_key, hashes.SHA256())
    check.update(nonce + ciphertext)
    try:
        check.verify(mac)
    except InvalidSignature as exc:
        raise ValueError("NIP-44 MAC does not match") from exc

    return _nip44_unpad(_chacha20(chacha_key, chacha_nonce, ciphertext)).decode("utf-8")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class Keys:
    """A Nostr key pair able to sign events and encrypt/decrypt NIP-44 payloads.

    Derives the public key eagerly at init for fail-fast validation.
    """

    def __init__(self, privkey_hex: str) -> None:
        self._privkey = privkey_hex
        self._pubkey = _derive_pubkey(privkey_hex)

    @classmethod
    def generate(cls) -> "Keys":
        return cls(secrets.token_hex(32))

    @property
    def public_key(self) -> str:
        return self._pubkey

    def __repr__(self) -> str:
        return f"Keys(public_key={self._pubkey!r})"

    def sign_event(
        self,
        kind: int,
        tags: list[list[str]],
        content: str,
        created_at: int | None = None,
    ) -> Event:
        """Build and sign a complete Nostr event."""
        if created_at is None:
            created_at = int(time.time())
        event_id = _nostr_event_id(self._pubkey, created_at, kind, tags, content)
        return Event(
            id=event_id,
            pubkey=self._pubkey,
            created_at=created_at,
            kind=kind,
            tags=tuple(tuple(tag) for tag in tags),
            content=content,
            sig=_schnorr_sign(self._privkey, event_id),
        )

    def rumor(
        self,
        kind: int,
        tags: list[list[str]],
        content: str,
        created_at: int | None = None,
    ) -> Event:
        """An unsigned event (NIP-59 rumor): it has an id but no signature."""
        if created_at is None:
            created_at = int(time.time())
        return Event(
            id=_nostr_event_id(self._pubkey, created_at, kind, tags, content),
            pubkey=self._pubkey,
            created_at=created_at,
            kind=kind,
            tags=tuple(tuple(tag) for tag in tags),
            content=content,
        )

    def sign_message(self, text: str) -> str:
        """Schnorr signature over SHA256(text), as Mostro signs message bodies."""
        return _schnorr_sign(self._privkey, hashlib.sha256(text.encode("utf-8")).hexdigest())

    def encrypt(self, plaintext: str, recipient_pubkey: str) -> str:
        """NIP-44 v2 encrypt to ``recipient_pubkey``."""
        return _nip44_encrypt(_nip44_conversation_key(self._privkey, recipient_pubkey), plaintext)

    def decrypt(self, content: str, sender_pubkey: str) -> str:
        """NIP-44 v2 decrypt a payload from ``sender_pubkey``."""
        return _nip44_decrypt(_nip44_conversation_key(self._privkey, sender_pubkey), content)

    def decrypt_nip04(self, content: str, sender_pubkey: str) -> str:
        return _nip04_decrypt(self._privkey, sender_pubkey, content)
