"""
Nostr Article Capture — identity, signing, encryption and relay sync for Nostr.

Architecture:
    crypto  — secp256k1 arithmetic, BIP-340 Schnorr, bech32 keys, NIP-04/NIP-44
    nostr   — NIP-01 events, relay wire frames, multi-relay publish/subscribe
    sync    — entity records, last-writer-wins merge, encrypted relay sync
"""

__version__ = "2.0.0"

# Relay defaults
DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
]

# Relay timing (seconds)
PUBLISH_TIMEOUT = 5.0
SUBSCRIBE_IDLE_TIMEOUT = 10.0
SUBSCRIBE_TOTAL_TIMEOUT = 15.0
CONNECT_MAX_RETRIES = 3  # 4 attempts total
CONNECT_BACKOFF_BASE = 1.0  # 1s, 2s, 4s

# Event kinds
KIND_METADATA = 0
KIND_ARTICLE = 30023  # NIP-23 long-form content
KIND_APP_DATA = 30078  # NIP-78 application-specific data

# Tagging
CLIENT_TAG = "nostr-article-capture"
LABEL_NAMESPACE = "nac"  # NIP-32 "L" tag
LABEL_ENTITY_SYNC = "entity-sync"  # NIP-32 "l" tag
SUMMARY_MAX_LENGTH = 500
