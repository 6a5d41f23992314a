"""
Event builders — NIP-23 long-form articles and kind-0 entity profiles.

Builders return unsigned Events; sign them with ``nac.nostr.event.sign_event``.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Iterable, Mapping

from nac import CLIENT_TAG, KIND_ARTICLE, KIND_METADATA, SUMMARY_MAX_LENGTH
from nac.nostr.event import Event

# Entity type → name tag emitted next to the entity's "p" tag
_ENTITY_NAME_TAGS = {
    "person": "person",
    "organization": "org",
    "place": "place",
    "thing": "thing",
}


def generate_d_tag(url: str) -> str:
    """Stable article identifier: first 16 hex chars of SHA-256(url)."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def build_article_event(
    article: Mapping[str, Any],
    entities: Iterable[Any] = (),
    pubkey: str = "",
    created_at: int | None = None,
) -> Event:
    """Build a kind-30023 long-form event for a captured article.

    ``article`` keys: url (required), title, content, published_at, excerpt,
    image, byline, domain. ``entities`` are Entity records tagged in the
    article; only those holding a key pair are referenced. The context for
    each entity comes from its article link for this URL, default "mentioned".
    """
    url = article["url"]
    if created_at is None:
        created_at = int(time.time())

    tags = [
        ["d", generate_d_tag(url)],
        ["title", article.get("title") or "Untitled"],
        ["published_at", str(article.get("published_at") or created_at)],
        ["r", url],
        ["client", CLIENT_TAG],
    ]

    if article.get("excerpt"):
        tags.append(["summary", article["excerpt"][:SUMMARY_MAX_LENGTH]])
    if article.get("image"):
        tags.append(["image", article["image"]])
    if article.get("byline"):
        tags.append(["author", article["byline"]])

    for entity in entities:
        if entity.keypair is None:
            continue
        context = next((a.context for a in entity.articles if a.url == url), "mentioned")
        tags.append(["p", entity.keypair.public_key_hex, "", context])
        tags.append([_ENTITY_NAME_TAGS.get(entity.type.value, "thing"), entity.name, context])

    tags.append(["t", "article"])
    if article.get("domain"):
        tags.append(["t", article["domain"].replace(".", "-")])

    return Event.create(pubkey, KIND_ARTICLE, article.get("content") or "", tags, created_at)


def build_profile_event(entity: Any, created_at: int | None = None) -> Event:
    """Build the kind-0 metadata event an entity publishes under its own key."""
    if entity.keypair is None:
        raise ValueError(f"Entity {entity.id} has no key pair")

    profile = {
        "name": entity.name,
        "about": f"{entity.type.value} entity created by {CLIENT_TAG}",
    }
    nip05 = entity.metadata.get("nip05")
    if nip05:
        profile["nip05"] = nip05

    return Event.create(
        entity.keypair.public_key_hex,
        KIND_METADATA,
        json.dumps(profile, separators=(",", ":"), ensure_ascii=False),
        created_at=created_at,
    )
