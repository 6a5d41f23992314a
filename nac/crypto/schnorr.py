"""
BIP-340 Schnorr signatures over secp256k1.

- Tagged hash: SHA256(SHA256(tag) || SHA256(tag) || msg)
- Nonce: k0 = H_nonce(d' || Px || m) mod N, deterministic by default. When
  ``aux_rand`` is given, d' is masked with H_aux(aux_rand) first, exactly
  as BIP-340 specifies.
- Signature: Rx || s, 64 bytes.

``verify`` never raises for bad input; any rejection returns False.
"""

from __future__ import annotations

import hashlib

from nac.crypto.curve import (
    N,
    P,
    G,
    has_even_y,
    lift_x,
    point_add,
    scalar_multiply,
)
from nac.crypto.keys import KEY_SIZE, private_key_scalar

SIGNATURE_SIZE = 64
MESSAGE_SIZE = 32

TAG_AUX = "BIP0340/aux"
TAG_NONCE = "BIP0340/nonce"
TAG_CHALLENGE = "BIP0340/challenge"


class SigningError(Exception):
    """A signature could not be produced, or failed its own verification."""


def tagged_hash(tag: str, *parts: bytes) -> bytes:
    """BIP-340 domain-separated SHA-256 over the concatenated parts."""
    tag_hash = hashlib.sha256(tag.encode("utf-8")).digest()
    h = hashlib.sha256(tag_hash + tag_hash)
    for part in parts:
        h.update(part)
    return h.digest()


def _int(b: bytes) -> int:
    return int.from_bytes(b, "big")


def _bytes(x: int) -> bytes:
    return x.to_bytes(KEY_SIZE, "big")


def sign(message: bytes, private_key: bytes, aux_rand: bytes | None = None) -> bytes:
    """Sign a 32-byte message hash. Returns the 64-byte signature.

    Raises InvalidKeyError for an out-of-range key and SigningError if the
    nonce degenerates or the result does not verify.
    """
    if len(message) != MESSAGE_SIZE:
        raise ValueError(f"Message must be a {MESSAGE_SIZE}-byte hash")
    if aux_rand is not None and len(aux_rand) != 32:
        raise ValueError("aux_rand must be 32 bytes")

    d0 = private_key_scalar(private_key)
    pub = scalar_multiply(d0)
    # Use the even-y representative: negate the secret if P.y is odd
    d = d0 if has_even_y(pub) else N - d0
    px = _bytes(pub[0])

    t = _bytes(d)
    if aux_rand is not None:
        t = bytes(a ^ b for a, b in zip(t, tagged_hash(TAG_AUX, aux_rand)))

    k0 = _int(tagged_hash(TAG_NONCE, t, px, message)) % N
    if k0 == 0:
        raise SigningError("Derived nonce is zero")

    R = scalar_multiply(k0)
    k = k0 if has_even_y(R) else N - k0
    rx = _bytes(R[0])

    e = _int(tagged_hash(TAG_CHALLENGE, rx, px, message)) % N
    sig = rx + _bytes((k + e * d) % N)

    if not verify(message, sig, px):
        raise SigningError("Produced signature failed verification")
    return sig


def verify(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """Verify a BIP-340 signature against an x-only public key."""
    if len(message) != MESSAGE_SIZE or len(signature) != SIGNATURE_SIZE:
        return False
    if len(public_key) != KEY_SIZE:
        return False

    pub = lift_x(_int(public_key))
    if pub is None:
        return False

    r = _int(signature[:32])
    s = _int(signature[32:])
    if r >= P or s >= N:
        return False

    e = _int(tagged_hash(TAG_CHALLENGE, signature[:32], public_key, message)) % N
    # R' = s·G - e·P
    R = point_add(scalar_multiply(s, G), scalar_multiply(N - e, pub))
    if R is None or not has_even_y(R):
        return False
    return R[0] == r

