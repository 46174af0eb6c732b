"""Entity types, timestamps and identifiers."""

from .entities import (
    ENTITY_TYPES,
    Ack,
    Agent,
    AgentStatus,
    BaseEntity,
    Dependency,
    DependencyRelation,
    Entity,
    Issue,
    IssueKind,
    IssueStatus,
    Message,
    entity_class_for,
    format_timestamp,
    normalize_body,
    normalize_timestamp,
    repair_close_state,
    resolve_entity_type,
)
from .ids import generate_id, id_prefix, normalize_id, short_id

__all__ = [
    "Ack",
    "Agent",
    "AgentStatus",
    "BaseEntity",
    "Dependency",
    "DependencyRelation",
    "ENTITY_TYPES",
    "Entity",
    "Issue",
    "IssueKind",
    "IssueStatus",
    "Message",
    "entity_class_for",
    "format_timestamp",
    "generate_id",
    "id_prefix",
    "normalize_body",
    "normalize_id",
    "normalize_timestamp",
    "repair_close_state",
    "resolve_entity_type",
    "short_id",
]
