"""
Key management — secp256k1 key pairs, x-only public keys, ECDH, NIP-19.

Private keys are 32-byte big-endian scalars in (0, N). Public keys are the
32-byte x-coordinate of d·G; the y-coordinate is implicitly even (BIP-340).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from nac.crypto import bech32
from nac.crypto.curve import N, lift_x, scalar_multiply

log = logging.getLogger(__name__)

KEY_SIZE = 32
NPUB_PREFIX = "npub"
NSEC_PREFIX = "nsec"

# Default identity key file location
DEFAULT_KEY_PATH = Path.home() / ".nac" / "identity_key"


class InvalidKeyError(ValueError):
    """Key material is malformed or outside the valid range."""


def private_key_scalar(private_key: bytes) -> int:
    if not isinstance(private_key, (bytes, bytearray)) or len(private_key) != KEY_SIZE:
        raise InvalidKeyError(f"Private key must be {KEY_SIZE} bytes")
    d = int.from_bytes(private_key, "big")
    if not 0 < d < N:
        raise InvalidKeyError("Private key out of range: must satisfy 0 < k < N")
    return d


def generate_private_key() -> bytes:
    """Generate a random 32-byte private key in (0, N)."""
    while True:
        candidate = os.urandom(KEY_SIZE)
        if 0 < int.from_bytes(candidate, "big") < N:
            return candidate


def derive_public_key(private_key: bytes) -> bytes:
    """Derive the x-only (32-byte) public key for a private key."""
    d = private_key_scalar(private_key)
    point = scalar_multiply(d)
    return point[0].to_bytes(KEY_SIZE, "big")


def parse_public_key(public_key: bytes | str):
    """Lift an x-only public key (bytes or hex) to its even-y curve point."""
    if isinstance(public_key, str):
        try:
            public_key = bytes.fromhex(public_key)
        except ValueError as e:
            raise InvalidKeyError(f"Public key is not valid hex: {e}") from e
    if len(public_key) != KEY_SIZE:
        raise InvalidKeyError(f"Public key must be {KEY_SIZE} bytes")
    point = lift_x(int.from_bytes(public_key, "big"))
    if point is None:
        raise InvalidKeyError("Public key is not a valid x-coordinate on secp256k1")
    return point


def shared_secret(private_key: bytes, public_key: bytes | str) -> bytes:
    """ECDH: the 32-byte x-coordinate of private_key · lift_x(public_key).

    Symmetric: shared_secret(a, B) == shared_secret(b, A).
    """
    d = private_key_scalar(private_key)
    point = scalar_multiply(d, parse_public_key(public_key))
    return point[0].to_bytes(KEY_SIZE, "big")


# ---------------------------------------------------------------------------
# NIP-19 encoding
# ---------------------------------------------------------------------------

def _decode_prefixed(value: str, prefix: str) -> bytes:
    hrp, data = bech32.decode(value)
    if hrp != prefix:
        raise bech32.Bech32Error(f"Expected {prefix!r} prefix, got {hrp!r}")
    if len(data) != KEY_SIZE:
        raise bech32.Bech32Error(f"Expected {KEY_SIZE}-byte key, got {len(data)} bytes")
    return data


def encode_npub(public_key: bytes) -> str:
    if len(public_key) != KEY_SIZE:
        raise InvalidKeyError(f"Public key must be {KEY_SIZE} bytes")
    return bech32.encode(NPUB_PREFIX, public_key)


def decode_npub(npub: str) -> bytes:
    return _decode_prefixed(npub, NPUB_PREFIX)


def encode_nsec(private_key: bytes) -> str:
    if len(private_key) != KEY_SIZE:
        raise InvalidKeyError(f"Private key must be {KEY_SIZE} bytes")
    return bech32.encode(NSEC_PREFIX, private_key)


def decode_nsec(nsec: str) -> bytes:
    return _decode_prefixed(nsec, NSEC_PREFIX)


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KeyPair:
    """An identity: x-only public key plus (optionally) its private key.

    Construct through ``generate``, ``from_private_key`` or
    ``from_public_key``; the constructor checks that a supplied private key
    actually derives the supplied public key.

    Attributes:
        public_key: 32-byte x-only public key.
        private_key: 32-byte scalar, or None for public-only identities.
    """

    public_key: bytes
    private_key: bytes | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        parse_public_key(self.public_key)
        if self.private_key is not None:
            if derive_public_key(self.private_key) != self.public_key:
                raise InvalidKeyError("Private key does not match public key")

    @classmethod
    def generate(cls) -> KeyPair:
        return cls.from_private_key(generate_private_key())

    @classmethod
    def from_private_key(cls, private_key: bytes | str) -> KeyPair:
        if isinstance(private_key, str):
            try:
                private_key = bytes.fromhex(private_key)
            except ValueError as e:
                raise InvalidKeyError(f"Private key is not valid hex: {e}") from e
        private_key = bytes(private_key)
        return cls(public_key=derive_public_key(private_key), private_key=private_key)

    @classmethod
    def from_public_key(cls, public_key: bytes | str) -> KeyPair:
        if isinstance(public_key, str):
            try:
                public_key = bytes.fromhex(public_key)
            except ValueError as e:
                raise InvalidKeyError(f"Public key is not valid hex: {e}") from e
        return cls(public_key=bytes(public_key))

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def private_key_hex(self) -> str | None:
        return self.private_key.hex() if self.private_key is not None else None

    @property
    def npub(self) -> str:
        return encode_npub(self.public_key)

    @property
    def nsec(self) -> str | None:
        return encode_nsec(self.private_key) if self.private_key is not None else None

    def to_dict(self, include_private: bool = True) -> dict[str, str]:
        """Serialize as the ``{pubkey, npub, privkey, nsec}`` record layout."""
        data = {"pubkey": self.public_key_hex, "npub": self.npub}
        if include_private and self.private_key is not None:
            data["privkey"] = self.private_key_hex
            data["nsec"] = self.nsec
        return data

    @classmethod
    def from_dict(cls, data: dict) -> KeyPair:
        """Rebuild from ``to_dict`` output; ``privkey`` is optional."""
        privkey = data.get("privkey")
        if privkey is not None and not isinstance(privkey, str):
            raise InvalidKeyError("privkey must be a hex string")
        if not isinstance(data.get("pubkey", ""), str):
            raise InvalidKeyError("pubkey must be a hex string")
        pair = cls.from_private_key(privkey) if privkey else cls.from_public_key(data["pubkey"])
        pubkey = data.get("pubkey")
        if pubkey and pubkey.lower() != pair.public_key_hex:
            raise InvalidKeyError("Record pubkey does not match its private key")
        return pair


def save_key(path: Path, pair: KeyPair) -> None:
    """Write the private key as hex, restricting the file to mode 600."""
    if not pair.has_private_key:
        raise InvalidKeyError("Cannot save a key pair without a private key")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(pair.private_key_hex)
    try:
        path.chmod(0o600)
    except OSError:
        log.warning("Could not restrict permissions on %s", path)


def load_or_create_key(key_path: Path | None = None) -> KeyPair:
    """Load or generate the local identity key pair.

    Key file is stored as hex at ``~/.nac/identity_key`` with mode 600.
    """
    path = Path(key_path or DEFAULT_KEY_PATH)

    if path.is_file():
        pair = KeyPair.from_private_key(path.read_text().strip())
    else:
        pair = KeyPair.generate()
        save_key(path, pair)
        log.info("Created identity key %s", pair.public_key_hex[:12])

    return pair
