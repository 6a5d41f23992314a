"""
Encrypted payloads between two Nostr identities.

Two schemes, both keyed by ECDH over secp256k1:

- NIP-04 (legacy): AES-256-CBC keyed with the raw shared x-coordinate,
  fresh random IV, wire format ``base64(ct) + "?iv=" + base64(iv)``.
- NIP-44 v2: conversation key = HKDF-extract(salt="nip44-v2", shared_x);
  per-message keys = HKDF-expand(conversation_key, info=nonce, 76 bytes)
  split into ChaCha20 key (32) / ChaCha20 nonce (12) / HMAC key (32).
  Plaintext is length-prefixed and padded, encrypted with ChaCha20 and
  authenticated with HMAC-SHA256(nonce || ciphertext).
  Wire format: ``base64(0x02 || nonce(32) || ciphertext || mac(32))``.

Decryption failures raise DecryptionError; the MAC is always checked before
any decryption or unpadding.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import struct
from enum import Enum
from typing import NamedTuple

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from nac.crypto.keys import shared_secret

NIP04_IV_SIZE = 16
NIP04_SEPARATOR = "?iv="

NIP44_VERSION = 2
NIP44_SALT = b"nip44-v2"
NIP44_NONCE_SIZE = 32
NIP44_MAC_SIZE = 32
NIP44_MESSAGE_KEYS_SIZE = 76  # chacha key (32) + chacha nonce (12) + hmac key (32)
NIP44_MIN_PLAINTEXT = 1
NIP44_MAX_PLAINTEXT = 65535
# version(1) + nonce(32) + smallest padded block (2 + 32) + mac(32)
NIP44_MIN_PAYLOAD = 99
NIP44_MAX_PAYLOAD = 65603
NIP44_MIN_ENCODED = 132
NIP44_MAX_ENCODED = 87472


class DecryptionError(ValueError):
    """Payload cannot be decrypted: malformed, unauthenticated, or wrong key."""


class PaddingError(DecryptionError):
    """Decrypted NIP-44 buffer has an invalid length prefix or padding."""


class PlaintextLengthError(ValueError):
    """Plaintext is outside the [1, 65535] byte range NIP-44 can carry."""


class Scheme(str, Enum):
    NIP44 = "nip44"
    NIP04 = "nip04"


class Decrypted(NamedTuple):
    """Result of a scheme-dispatched decryption."""
    scheme: Scheme
    plaintext: str


# ---------------------------------------------------------------------------
# NIP-04: AES-256-CBC
# ---------------------------------------------------------------------------

def nip04_encrypt(
    plaintext: str,
    private_key: bytes,
    peer_pubkey: bytes | str,
    iv: bytes | None = None,
) -> str:
    """Encrypt text for ``peer_pubkey`` with the legacy NIP-04 scheme."""
    key = shared_secret(private_key, peer_pubkey)
    iv = iv if iv is not None else os.urandom(NIP04_IV_SIZE)
    if len(iv) != NIP04_IV_SIZE:
        raise ValueError(f"IV must be {NIP04_IV_SIZE} bytes")

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (
        base64.b64encode(ciphertext).decode("ascii")
        + NIP04_SEPARATOR
        + base64.b64encode(iv).decode("ascii")
    )


def nip04_decrypt(payload: str, private_key: bytes, peer_pubkey: bytes | str) -> str:
    """Decrypt a NIP-04 payload from ``peer_pubkey``."""
    if NIP04_SEPARATOR not in payload:
        raise DecryptionError("NIP-04 payload is missing the '?iv=' separator")
    ct_b64, iv_b64 = payload.split(NIP04_SEPARATOR, 1)
    try:
        ciphertext = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"NIP-04 payload is not valid base64: {e}") from e
    if len(iv) != NIP04_IV_SIZE:
        raise DecryptionError(f"NIP-04 IV must be {NIP04_IV_SIZE} bytes")
    if not ciphertext or len(ciphertext) % (algorithms.AES.block_size // 8):
        raise DecryptionError("NIP-04 ciphertext is not a whole number of blocks")

    key = shared_secret(private_key, peer_pubkey)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError("NIP-04 decryption failed — wrong key or corrupted data") from e


# ---------------------------------------------------------------------------
# ChaCha20 (RFC 8439 block function)
# ---------------------------------------------------------------------------

_CHACHA_CONSTANTS = (0x61707865, 0x3320646E, 0x79622D32, 0x6B206574)
_MASK32 = 0xFFFFFFFF


def _rotl32(v: int, n: int) -> int:
    return ((v << n) & _MASK32) | (v >> (32 - n))


def _quarter_round(s: list[int], a: int, b: int, c: int, d: int) -> None:
    s[a] = (s[a] + s[b]) & _MASK32
    s[d] = _rotl32(s[d] ^ s[a], 16)
    s[c] = (s[c] + s[d]) & _MASK32
    s[b] = _rotl32(s[b] ^ s[c], 12)
    s[a] = (s[a] + s[b]) & _MASK32
    s[d] = _rotl32(s[d] ^ s[a], 8)
    s[c] = (s[c] + s[d]) & _MASK32
    s[b] = _rotl32(s[b] ^ s[c], 7)


def chacha20_block(key: bytes, nonce: bytes, counter: int) -> bytes:
    """One 64-byte keystream block: 20 rounds, little-endian words.

    State layout: constants (0-3), key (4-11), counter (12), nonce (13-15).
    """
    if len(key) != 32:
        raise ValueError("ChaCha20 key must be 32 bytes")
    if len(nonce) != 12:
        raise ValueError("ChaCha20 nonce must be 12 bytes")

    state = [
        *_CHACHA_CONSTANTS,
        *struct.unpack("<8I", key),
        counter & _MASK32,
        *struct.unpack("<3I", nonce),
    ]
    working = list(state)
    for _ in range(10):
        # column rounds
        _quarter_round(working, 0, 4, 8, 12)
        _quarter_round(working, 1, 5, 9, 13)
        _quarter_round(working, 2, 6, 10, 14)
        _quarter_round(working, 3, 7, 11, 15)
        # diagonal rounds
        _quarter_round(working, 0, 5, 10, 15)
        _quarter_round(working, 1, 6, 11, 12)
        _quarter_round(working, 2, 7, 8, 13)
        _quarter_round(working, 3, 4, 9, 14)

    return struct.pack("<16I", *((w + s) & _MASK32 for w, s in zip(working, state)))


def chacha20(key: bytes, nonce: bytes, data: bytes, counter: int = 0) -> bytes:
    """XOR ``data`` with the ChaCha20 keystream. Encryption == decryption."""
    out = bytearray(len(data))
    for offset in range(0, len(data), 64):
        block = chacha20_block(key, nonce, counter + offset // 64)
        chunk = data[offset:offset + 64]
        out[offset:offset + len(chunk)] = bytes(a ^ b for a, b in zip(chunk, block))
    return bytes(out)


# ---------------------------------------------------------------------------
# NIP-44 v2
# ---------------------------------------------------------------------------

def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """HKDF-Extract (RFC 5869) with SHA-256: HMAC(salt, ikm)."""
    return hmac.new(salt, ikm, hashlib.sha256).digest()


def hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    """HKDF-Expand (RFC 5869) with SHA-256."""
    return HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info).derive(prk)


def get_conversation_key(private_key: bytes, peer_pubkey: bytes | str) -> bytes:
    """Per-pair key shared by both parties: HKDF-extract over the ECDH secret."""
    return hkdf_extract(NIP44_SALT, shared_secret(private_key, peer_pubkey))


def _message_keys(conversation_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    if len(conversation_key) != 32:
        raise ValueError("Conversation key must be 32 bytes")
    if len(nonce) != NIP44_NONCE_SIZE:
        raise ValueError(f"Nonce must be {NIP44_NONCE_SIZE} bytes")
    keys = hkdf_expand(conversation_key, nonce, NIP44_MESSAGE_KEYS_SIZE)
    return keys[0:32], keys[32:44], keys[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    """Padded length for a plaintext of ``unpadded_len`` bytes.

    Up to 32 bytes pads to 32. Above that, pads to the next multiple of
    max(32, next_power_of_two(len - 1) / 8).
    """
    if unpadded_len < NIP44_MIN_PLAINTEXT or unpadded_len > NIP44_MAX_PLAINTEXT:
        raise PlaintextLengthError(
            f"Plaintext length {unpadded_len} outside "
            f"[{NIP44_MIN_PLAINTEXT}, {NIP44_MAX_PLAINTEXT}]"
        )
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = max(32, next_power // 8)
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    """2-byte big-endian length prefix + UTF-8 text + zero padding."""
    data = plaintext.encode("utf-8")
    padded_len = calc_padded_len(len(data))
    return struct.pack(">H", len(data)) + data + b"\x00" * (padded_len - len(data))


def unpad(padded: bytes) -> str:
    """Reverse ``pad``, validating the length prefix and zero padding."""
    if len(padded) < 2:
        raise PaddingError("Padded buffer too short")
    (unpadded_len,) = struct.unpack(">H", padded[:2])
    if unpadded_len < NIP44_MIN_PLAINTEXT or 2 + unpadded_len > len(padded):
        raise PaddingError("Invalid plaintext length prefix")
    if len(padded) != 2 + calc_padded_len(unpadded_len):
        raise PaddingError("Padded length does not match plaintext length")
    if any(padded[2 + unpadded_len:]):
        raise PaddingError("Non-zero padding bytes")
    try:
        return padded[2:2 + unpadded_len].decode("utf-8")
    except UnicodeDecodeError as e:
        raise PaddingError("Plaintext is not valid UTF-8") from e


def nip44_encrypt(plaintext: str, conversation_key: bytes, nonce: bytes | None = None) -> str:
    """Encrypt with NIP-44 v2. ``nonce`` is random unless given (test vectors)."""
    nonce = nonce if nonce is not None else os.urandom(NIP44_NONCE_SIZE)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)

    ciphertext = chacha20(chacha_key, chacha_nonce, pad(plaintext))
    mac = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()

    payload = bytes([NIP44_VERSION]) + nonce + ciphertext + mac
    return base64.b64encode(payload).decode("ascii")


def _nip44_decode(payload: str) -> bytes:
    if not payload or payload[0] == "#":
        raise DecryptionError("Unknown NIP-44 encryption version")
    if not NIP44_MIN_ENCODED <= len(payload) <= NIP44_MAX_ENCODED:
        raise DecryptionError(f"Invalid NIP-44 payload size: {len(payload)}")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"NIP-44 payload is not valid base64: {e}") from e
    if not NIP44_MIN_PAYLOAD <= len(raw) <= NIP44_MAX_PAYLOAD:
        raise DecryptionError(f"Invalid NIP-44 data size: {len(raw)}")
    if raw[0] != NIP44_VERSION:
        raise DecryptionError(f"Unknown NIP-44 encryption version: {raw[0]}")
    return raw


def nip44_decrypt(payload: str, conversation_key: bytes) -> str:
    """Authenticate, then decrypt and unpad a NIP-44 v2 payload."""
    raw = _nip44_decode(payload)
    nonce = raw[1:1 + NIP44_NONCE_SIZE]
    ciphertext = raw[1 + NIP44_NONCE_SIZE:-NIP44_MAC_SIZE]
    mac = raw[-NIP44_MAC_SIZE:]

    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    expected = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected):
        raise DecryptionError("Invalid MAC")

    return unpad(chacha20(chacha_key, chacha_nonce, ciphertext))


# ---------------------------------------------------------------------------
# Scheme dispatch
# ---------------------------------------------------------------------------

def detect_scheme(payload: str) -> Scheme | None:
    """Classify a payload by shape: NIP-44 is checked first, then NIP-04."""
    if not isinstance(payload, str) or not payload:
        return None
    if NIP04_SEPARATOR not in payload:
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        if raw and raw[0] == NIP44_VERSION:
            return Scheme.NIP44
        return None
    return Scheme.NIP04


def encrypt(
    plaintext: str,
    private_key: bytes,
    peer_pubkey: bytes | str,
    scheme: Scheme = Scheme.NIP44,
) -> str:
    """Encrypt ``plaintext`` for ``peer_pubkey`` with the chosen scheme."""
    if scheme is Scheme.NIP44:
        return nip44_encrypt(plaintext, get_conversation_key(private_key, peer_pubkey))
    return nip04_encrypt(plaintext, private_key, peer_pubkey)


def decrypt_payload(payload: str, private_key: bytes, peer_pubkey: bytes | str) -> Decrypted:
    """Decrypt a payload of either scheme, reporting which one was used.

    Raises DecryptionError if the payload matches neither shape or fails
    to decrypt under the detected scheme.
    """
    scheme = detect_scheme(payload)
    if scheme is Scheme.NIP44:
        conversation_key = get_conversation_key(private_key, peer_pubkey)
        return Decrypted(scheme, nip44_decrypt(payload, conversation_key))
    if scheme is Scheme.NIP04:
        return Decrypted(scheme, nip04_decrypt(payload, private_key, peer_pubkey))
    raise DecryptionError("Payload is neither NIP-44 nor NIP-04")
