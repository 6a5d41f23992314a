"""
Entity records — people, organizations, places and things tagged in articles.

Each entity carries its own Nostr key pair so it can be referenced with
``p`` tags and publish a profile. Records are immutable; every change
returns a new Entity with ``updated`` advanced.

Merging is last-writer-wins on ``updated``, except that article links are
always unioned (by URL, newest ``tagged_at`` kept) whichever side wins.

Registry files are JSON objects keyed by entity id, written atomically
(temp file + os.replace).
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

from nac.crypto.keys import InvalidKeyError, KeyPair

log = logging.getLogger(__name__)

ENTITY_ID_PREFIX = "entity_"
DEFAULT_CONTEXT = "mentioned"

_HEX_CHARS = frozenset("0123456789abcdefABCDEF")


class EntityError(ValueError):
    """Entity record failed validation."""


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


class EntityType(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    PLACE = "place"
    THING = "thing"


@dataclass(frozen=True)
class Article:
    """A link from an entity to an article that mentions it."""
    url: str
    title: str = ""
    context: str = DEFAULT_CONTEXT
    tagged_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "context": self.context,
            "tagged_at": self.tagged_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Article:
        if not isinstance(data, Mapping) or not isinstance(data.get("url"), str):
            raise EntityError("Article link must be an object with a string url")
        tagged_at = data.get("tagged_at", 0)
        if not _is_finite_number(tagged_at):
            raise EntityError(f"Article {data['url']!r} has a non-numeric tagged_at")
        return cls(
            url=data["url"],
            title=str(data.get("title") or ""),
            context=str(data.get("context") or DEFAULT_CONTEXT),
            tagged_at=int(tagged_at),
        )


def merge_articles(first: Iterable[Article], second: Iterable[Article]) -> tuple[Article, ...]:
    """Union two article lists by URL, keeping the greatest ``tagged_at``.

    Order is first-seen; on equal timestamps the entry from ``first`` wins.
    """
    merged: dict[str, Article] = {}
    for article in (*first, *second):
        current = merged.get(article.url)
        if current is None or article.tagged_at > current.tagged_at:
            merged[article.url] = article
    return tuple(merged.values())


@dataclass(frozen=True)
class Entity:
    """A synchronized identity record.

    ``articles`` is deduplicated by URL on construction and ``aliases`` keeps
    the first occurrence of each alias.
    """

    id: str
    type: EntityType
    name: str
    aliases: tuple[str, ...] = ()
    keypair: KeyPair | None = field(default=None, repr=False)
    created_by: str = ""
    created_at: int = 0
    updated: int = 0
    articles: tuple[Article, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", EntityType(self.type))
        object.__setattr__(self, "aliases", tuple(dict.fromkeys(self.aliases)))
        object.__setattr__(self, "articles", merge_articles(self.articles, ()))

    @property
    def pubkey(self) -> str | None:
        return self.keypair.public_key_hex if self.keypair is not None else None

    def touched(self, now: int | None = None) -> Entity:
        """Copy with ``updated`` advanced; never moves backwards or stays put."""
        now = int(time.time()) if now is None else now
        return dataclasses.replace(self, updated=max(now, self.updated + 1))

    def link_article(
        self,
        url: str,
        title: str = "",
        context: str = DEFAULT_CONTEXT,
        tagged_at: int | None = None,
    ) -> Entity:
        """Copy with an article link added (or refreshed) and ``updated`` advanced."""
        now = int(time.time())
        article = Article(url, title, context, now if tagged_at is None else tagged_at)
        linked = dataclasses.replace(self, articles=merge_articles(self.articles, [article]))
        return linked.touched(now)

    def to_dict(self, include_private: bool = True) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "aliases": list(self.aliases),
            "keypair": (
                self.keypair.to_dict(include_private=include_private)
                if self.keypair is not None else None
            ),
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated": self.updated,
            "articles": [a.to_dict() for a in self.articles],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Entity:
        """Validate and parse a record. Raises EntityError."""
        validate_entity(data)

        try:
            keypair = KeyPair.from_dict(data["keypair"])
        except (InvalidKeyError, KeyError, ValueError) as e:
            raise EntityError(f"Entity {data['id']!r} has an invalid key pair: {e}") from e

        aliases = data.get("aliases") or []
        if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
            raise EntityError(f"Entity {data['id']!r} aliases must be a list of strings")
        articles = data.get("articles") or []
        if not isinstance(articles, list):
            raise EntityError(f"Entity {data['id']!r} articles must be a list")
        created_at = data.get("created_at") or 0
        if not _is_finite_number(created_at):
            raise EntityError(f"Entity {data['id']!r} has a non-numeric created_at")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise EntityError(f"Entity {data['id']!r} metadata must be an object")

        return cls(
            id=data["id"],
            type=EntityType(data["type"]),
            name=data["name"],
            aliases=tuple(aliases),
            keypair=keypair,
            created_by=str(data.get("created_by") or ""),
            created_at=int(created_at),
            updated=int(data["updated"]),
            articles=tuple(Article.from_dict(a) for a in articles),
            metadata=dict(metadata),
        )


def validate_entity(data: Any) -> None:
    """Check a raw record before it is trusted. Raises EntityError.

    Requires string ``id`` and ``name``, a known ``type``, a 64-hex-char
    ``keypair.pubkey`` and a numeric ``updated``.
    """
    if not isinstance(data, Mapping):
        raise EntityError("Entity record must be an object")

    for name in ("id", "name"):
        if not isinstance(data.get(name), str) or not data[name]:
            raise EntityError(f"Entity field {name!r} must be a non-empty string")

    if data.get("type") not in [t.value for t in EntityType]:
        raise EntityError(f"Entity {data['id']!r} has unknown type {data.get('type')!r}")

    keypair = data.get("keypair")
    pubkey = keypair.get("pubkey") if isinstance(keypair, Mapping) else None
    if not isinstance(pubkey, str) or len(pubkey) != 64 or not set(pubkey) <= _HEX_CHARS:
        raise EntityError(f"Entity {data['id']!r} needs a 64-hex-character public key")

    updated = data.get("updated")
    if not _is_finite_number(updated):
        raise EntityError(f"Entity {data['id']!r} has a non-numeric 'updated' field")


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

@dataclass
class MergeResult:
    """Outcome of merging remote records into a local registry."""
    entities: dict[str, Entity]
    imported: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    rejected: int = 0

    def summary(self) -> str:
        return (
            f"{len(self.imported)} imported, {len(self.updated)} updated, "
            f"{len(self.unchanged)} unchanged, {self.rejected} rejected"
        )


def merge_entities(
    local: Mapping[str, Entity] | Iterable[Entity],
    remote: Iterable[Mapping[str, Any] | Entity],
) -> MergeResult:
    """Merge remote records into a copy of the local registry.

    Remote records that fail validation are logged and counted as rejected.
    A newer remote record replaces the local one; an older or equally old one
    leaves the local fields in place. Article links are unioned either way.
    The caller's ``local`` is not modified.
    """
    result = MergeResult(entities=dict(_by_id(local)))

    for item in remote:
        try:
            incoming = item if isinstance(item, Entity) else Entity.from_dict(item)
        except EntityError as e:
            log.warning("Rejected remote entity: %s", e)
            result.rejected += 1
            continue

        existing = result.entities.get(incoming.id)
        if existing is None:
            result.entities[incoming.id] = incoming
            result.imported.append(incoming.id)
            continue

        if incoming.updated > existing.updated:
            merged = dataclasses.replace(
                incoming, articles=merge_articles(incoming.articles, existing.articles)
            )
        else:
            merged = dataclasses.replace(
                existing, articles=merge_articles(existing.articles, incoming.articles)
            )

        if merged == existing:
            result.unchanged.append(incoming.id)
        else:
            result.entities[incoming.id] = merged
            result.updated.append(incoming.id)

    return result


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------

def _by_id(entities: Mapping[str, Entity] | Iterable[Entity]) -> dict[str, Entity]:
    if isinstance(entities, Mapping):
        return dict(entities)
    return {e.id: e for e in entities}


def entity_id(entity_type: EntityType | str, name: str) -> str:
    """Deterministic id: ``entity_`` + SHA-256(type + name)."""
    type_value = EntityType(entity_type).value
    return ENTITY_ID_PREFIX + hashlib.sha256((type_value + name).encode("utf-8")).hexdigest()


def new_entity(
    entity_type: EntityType | str,
    name: str,
    created_by: str = "unknown",
    article: Article | None = None,
    now: int | None = None,
) -> Entity:
    """Create an entity with a fresh key pair."""
    now = int(time.time()) if now is None else now
    return Entity(
        id=entity_id(entity_type, name),
        type=EntityType(entity_type),
        name=name,
        keypair=KeyPair.generate(),
        created_by=created_by,
        created_at=now,
        updated=now,
        articles=(article,) if article is not None else (),
    )


def search_entities(
    entities: Mapping[str, Entity] | Iterable[Entity],
    query: str,
    entity_type: EntityType | str | None = None,
) -> list[Entity]:
    """Case-insensitive substring match on name and aliases."""
    needle = query.lower()
    wanted = EntityType(entity_type) if entity_type is not None else None
    return [
        e for e in _by_id(entities).values()
        if (wanted is None or e.type is wanted)
        and (needle in e.name.lower() or any(needle in a.lower() for a in e.aliases))
    ]


def find_by_pubkey(
    entities: Mapping[str, Entity] | Iterable[Entity],
    pubkey: str,
) -> Entity | None:
    pubkey = pubkey.lower()
    for entity in _by_id(entities).values():
        if entity.pubkey == pubkey:
            return entity
    return None


def load_registry(path: Path) -> dict[str, Entity]:
    """Read a registry file. Invalid records are logged and skipped."""
    path = Path(path)
    if not path.is_file():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise EntityError(f"{path} must contain a JSON object keyed by entity id")

    registry: dict[str, Entity] = {}
    for key, record in data.items():
        try:
            entity = Entity.from_dict(record)
        except EntityError as e:
            log.warning("Skipping entity %s in %s: %s", key[:20], path, e)
            continue
        registry[entity.id] = entity
    return registry


def save_registry(path: Path, entities: Mapping[str, Entity] | Iterable[Entity]) -> None:
    """Atomically write a registry file (temp + rename), mode 600."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(
        {eid: e.to_dict() for eid, e in _by_id(entities).items()},
        indent=2,
        sort_keys=True,
        ensure_ascii=False,
    )
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".registry_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, str(path))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
