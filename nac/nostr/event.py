"""
NIP-01 events — canonical serialization, id hashing, signing, verification.

The event id is SHA-256 over the UTF-8 JSON of the fixed array
``[0, pubkey, created_at, kind, tags, content]`` (no whitespace, non-ASCII
kept as-is). The signature is BIP-340 Schnorr over the 32-byte id.

Events are immutable: signing returns a new Event with ``id`` and ``sig`` set.

Usage:
    ev = Event.create(pair.public_key_hex, KIND_ARTICLE, "hello", tags=[["t", "news"]])
    signed = sign_event(ev, pair.private_key)
    assert verify_event(signed)
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

from nac.crypto import schnorr
from nac.crypto.keys import derive_public_key

log = logging.getLogger(__name__)

_HEX_CHARS = frozenset("0123456789abcdef")


class EventError(ValueError):
    """Event record is malformed (wrong field types, bad hex, wrong key)."""


class SignatureError(Exception):
    """A freshly signed event failed local verification."""


def _is_hex(value: Any, length: int) -> bool:
    return isinstance(value, str) and len(value) == length and set(value) <= _HEX_CHARS


def _freeze_tags(tags: Iterable[Iterable[str]]) -> tuple[tuple[str, ...], ...]:
    frozen = []
    for tag in tags:
        if not isinstance(tag, (list, tuple)):
            raise EventError("Each tag must be a list of strings")
        items = tuple(tag)
        if not all(isinstance(item, str) for item in items):
            raise EventError(f"Tag values must be strings: {list(items)!r}")
        frozen.append(items)
    return tuple(frozen)


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Iterable[Iterable[str]],
    content: str,
) -> str:
    """Compute the NIP-01 event id (hex SHA-256 of the canonical array)."""
    serialized = json.dumps(
        [0, pubkey, created_at, kind, [list(t) for t in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Event:
    """A Nostr event.

    ``id`` and ``sig`` are empty until the event is signed.
    """

    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""
    id: str = ""
    sig: str = ""

    def __post_init__(self) -> None:
        # Accept lists from callers; store tuples so the event stays hashable
        object.__setattr__(self, "tags", _freeze_tags(self.tags))

    @classmethod
    def create(
        cls,
        pubkey: str,
        kind: int,
        content: str = "",
        tags: Iterable[Iterable[str]] = (),
        created_at: int | None = None,
    ) -> Event:
        """Build an unsigned event stamped with the current time."""
        return cls(
            pubkey=pubkey,
            created_at=int(time.time()) if created_at is None else created_at,
            kind=kind,
            tags=tags,
            content=content,
        )

    def compute_id(self) -> str:
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    @property
    def is_signed(self) -> bool:
        return bool(self.id and self.sig)

    def tag_values(self, name: str) -> list[str]:
        """First value of every tag named ``name``, in order."""
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]

    def tag_value(self, name: str) -> str | None:
        values = self.tag_values(name)
        return values[0] if values else None

    def to_dict(self) -> dict[str, Any]:
        """Wire representation (NIP-01 JSON object)."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        """Parse a wire event, checking field types. Raises EventError."""
        if not isinstance(data, dict):
            raise EventError("Event must be a JSON object")

        for name in ("pubkey", "created_at", "kind", "tags", "content"):
            if name not in data:
                raise EventError(f"Missing required field: {name!r}")

        if not _is_hex(data["pubkey"], 64):
            raise EventError("pubkey must be 64 lowercase hex characters")
        for name in ("created_at", "kind"):
            value = data[name]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise EventError(f"{name} must be a non-negative integer")
        if not isinstance(data["tags"], list):
            raise EventError("tags must be a list")
        if not isinstance(data["content"], str):
            raise EventError("content must be a string")

        event_id = data.get("id", "")
        sig = data.get("sig", "")
        if event_id and not _is_hex(event_id, 64):
            raise EventError("id must be 64 lowercase hex characters")
        if sig and not _is_hex(sig, 128):
            raise EventError("sig must be 128 lowercase hex characters")

        return cls(
            pubkey=data["pubkey"],
            created_at=data["created_at"],
            kind=data["kind"],
            tags=data["tags"],
            content=data["content"],
            id=event_id,
            sig=sig,
        )


# ---------------------------------------------------------------------------
# Signing / verification
# ---------------------------------------------------------------------------

def sign_event(event: Event, private_key: bytes, aux_rand: bytes | None = None) -> Event:
    """Return a copy of ``event`` with ``id`` and ``sig`` filled in.

    An empty ``pubkey`` is filled from the private key; a pubkey that does
    not belong to the private key raises EventError. The result is verified
    before it is returned.
    """
    pubkey = derive_public_key(private_key).hex()
    if event.pubkey and event.pubkey != pubkey:
        raise EventError("Event pubkey does not match the signing key")

    unsigned = dataclasses.replace(event, pubkey=pubkey, id="", sig="")
    event_id = unsigned.compute_id()
    sig = schnorr.sign(bytes.fromhex(event_id), private_key, aux_rand=aux_rand)
    signed = dataclasses.replace(unsigned, id=event_id, sig=sig.hex())

    if not verify_event(signed):
        raise SignatureError(f"Signed event {event_id[:12]} failed verification")
    return signed


def verify_event(event: Event | dict) -> bool:
    """Check that the id matches the content and the signature matches the id.

    Returns False for any malformed or invalid event; never raises.
    """
    if isinstance(event, dict):
        try:
            event = Event.from_dict(event)
        except EventError:
            return False

    if not _is_hex(event.id, 64) or not _is_hex(event.sig, 128):
        return False
    if event.compute_id() != event.id:
        log.debug("Event %s id does not match its content", event.id[:12])
        return False

    return schnorr.verify(
        bytes.fromhex(event.id),
        bytes.fromhex(event.sig),
        bytes.fromhex(event.pubkey),
    )
