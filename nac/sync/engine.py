"""
Entity sync engine — encrypted entity records over Nostr relays.

Each entity is published as a kind-30078 (NIP-78) replaceable event
addressed by ``["d", entity_id]``, labelled with the ``nac`` namespace
(NIP-32), and with the serialized record encrypted to the user's own key.

Push:  record → JSON → encrypt to self → sign → self-verify → publish
Pull:  subscribe → verify author → newest per d-tag → decrypt → validate → merge

Usage:
    async with RelayClient(relays) as client:
        engine = SyncEngine(keypair, client)
        await engine.push(registry)
        result = await engine.pull(registry)
        registry = result.entities
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Mapping

from nac import CLIENT_TAG, KIND_APP_DATA, LABEL_ENTITY_SYNC, LABEL_NAMESPACE
from nac.crypto.cipher import (
    DecryptionError,
    PlaintextLengthError,
    Scheme,
    decrypt_payload,
    encrypt,
)
from nac.crypto.keys import KeyPair
from nac.nostr.event import Event, sign_event
from nac.nostr.relay import PublishResult, RelayClient
from nac.sync.entity import Entity, MergeResult, merge_entities

log = logging.getLogger(__name__)

ENTITY_TYPE_TAG = "entity-type"


class SyncEngine:
    """Push and pull the local entity registry through relays.

    Operations are serialized; a push and a pull never share relay sessions
    concurrently.
    """

    def __init__(
        self,
        keypair: KeyPair,
        client: RelayClient,
        scheme: Scheme = Scheme.NIP44,
    ) -> None:
        if not keypair.has_private_key:
            raise ValueError("SyncEngine needs a key pair with a private key")
        self.keypair = keypair
        self.client = client
        self.scheme = scheme
        self._lock = asyncio.Lock()

    @property
    def filter(self) -> dict[str, Any]:
        """Relay filter selecting this user's entity-sync events."""
        return {
            "kinds": [KIND_APP_DATA],
            "authors": [self.keypair.public_key_hex],
            "#L": [LABEL_NAMESPACE],
        }

    def build_entity_event(self, entity: Entity, created_at: int | None = None) -> Event:
        """Encrypt an entity to our own key and wrap it in a signed event."""
        plaintext = json.dumps(entity.to_dict(), separators=(",", ":"), ensure_ascii=False)
        content = encrypt(
            plaintext,
            self.keypair.private_key,
            self.keypair.public_key,
            scheme=self.scheme,
        )
        tags = [
            ["d", entity.id],
            ["client", CLIENT_TAG],
            [ENTITY_TYPE_TAG, entity.type.value],
            ["L", LABEL_NAMESPACE],
            ["l", LABEL_ENTITY_SYNC, LABEL_NAMESPACE],
        ]
        event = Event.create(
            self.keypair.public_key_hex, KIND_APP_DATA, content, tags, created_at,
        )
        return sign_event(event, self.keypair.private_key)

    async def push(
        self,
        entities: Mapping[str, Entity] | Iterable[Entity],
    ) -> dict[str, dict[str, PublishResult]]:
        """Publish every entity. Returns entity id → relay URL → result."""
        items = entities.values() if isinstance(entities, Mapping) else entities
        results: dict[str, dict[str, PublishResult]] = {}

        async with self._lock:
            for entity in items:
                try:
                    event = self.build_entity_event(entity)
                except PlaintextLengthError as e:
                    log.warning("Entity %s too large to sync: %s", entity.id[:20], e)
                    results[entity.id] = {
                        url: PublishResult(False, "record too large") for url in self.client.relays
                    }
                    continue
                results[entity.id] = await self.client.publish(event)

        log.info("Pushed %d entities", len(results))
        return results

    async def pull(
        self,
        local: Mapping[str, Entity] | Iterable[Entity],
    ) -> MergeResult:
        """Fetch our entity events from relays and merge them into ``local``."""
        async with self._lock:
            events = await self.client.subscribe(self.filter)

        records, failed = self._decrypt_records(self._latest_per_d_tag(events))
        result = merge_entities(local, records)
        result.rejected += failed
        log.info("Pulled %d events: %s", len(events), result.summary())
        return result

    def _latest_per_d_tag(self, events: Iterable[Event]) -> list[Event]:
        latest: dict[str, Event] = {}
        for event in events:
            if event.pubkey != self.keypair.public_key_hex or event.kind != KIND_APP_DATA:
                log.warning("Ignoring event %s from unexpected author/kind", event.id[:12])
                continue
            d_tag = event.tag_value("d")
            if not d_tag:
                continue
            current = latest.get(d_tag)
            # newest wins; equal timestamps go to the lowest id
            if current is None or (event.created_at, current.id) > (current.created_at, event.id):
                latest[d_tag] = event
        return list(latest.values())

    def _decrypt_records(self, events: Iterable[Event]) -> tuple[list[dict], int]:
        records: list[dict] = []
        failed = 0
        for event in events:
            try:
                decrypted = decrypt_payload(
                    event.content, self.keypair.private_key, self.keypair.public_key,
                )
                record = json.loads(decrypted.plaintext)
            except (DecryptionError, json.JSONDecodeError) as e:
                log.warning("Could not decrypt entity event %s: %s", event.id[:12], e)
                failed += 1
                continue
            if decrypted.scheme is not self.scheme:
                log.debug("Event %s uses %s", event.id[:12], decrypted.scheme.value)
            records.append(record)
        return records, failed
