"""
Cryptographic primitives for Nostr identities.

Provides:
    - curve   — secp256k1 field and point arithmetic (pure Python)
    - bech32  — BIP-173 checksummed encoding for npub/nsec keys
    - keys    — KeyPair, key derivation, ECDH, NIP-19 helpers
    - schnorr — BIP-340 sign / verify
    - cipher  — NIP-04 (AES-CBC) and NIP-44 v2 (ChaCha20 + HMAC) payloads

AES and HKDF-Expand come from the `cryptography` package; everything else is
implemented here on top of hashlib/hmac.
"""

from nac.crypto.keys import (
    KeyPair,
    InvalidKeyError,
    derive_public_key,
    shared_secret,
    encode_npub,
    decode_npub,
    encode_nsec,
    decode_nsec,
)
from nac.crypto.schnorr import sign, verify, SigningError
from nac.crypto.cipher import (
    Scheme,
    Decrypted,
    DecryptionError,
    encrypt,
    decrypt_payload,
)

__all__ = [
    "KeyPair",
    "InvalidKeyError",
    "derive_public_key",
    "shared_secret",
    "encode_npub",
    "decode_npub",
    "encode_nsec",
    "decode_nsec",
    "sign",
    "verify",
    "SigningError",
    "Scheme",
    "Decrypted",
    "DecryptionError",
    "encrypt",
    "decrypt_payload",
]
