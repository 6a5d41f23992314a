"""
Nostr protocol layer — events, relay frames, and the relay client.

Modules:
    event     — NIP-01 event model, id hashing, sign / verify
    builders  — NIP-23 article and kind-0 profile event builders
    protocol  — Relay wire frames: types, encoding, validation
    relay     — Session cache, concurrent publish, sequential subscribe
"""

from nac.nostr.event import Event, EventError, SignatureError, sign_event, verify_event

__all__ = [
    "Event",
    "EventError",
    "SignatureError",
    "sign_event",
    "verify_event",
]
