"""
Entity sync — identity records and their encrypted replication via relays.

Modules:
    entity  — Entity / Article records, validation, last-writer-wins merge
    engine  — SyncEngine: push and pull encrypted entity events
"""

from nac.sync.entity import (
    Article,
    Entity,
    EntityError,
    EntityType,
    MergeResult,
    merge_articles,
    merge_entities,
    validate_entity,
)

__all__ = [
    "Article",
    "Entity",
    "EntityError",
    "EntityType",
    "MergeResult",
    "merge_articles",
    "merge_entities",
    "validate_entity",
]
