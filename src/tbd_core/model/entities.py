"""Pydantic models for synchronized entities.

Every entity type shares the ``BaseEntity`` envelope (id, type, version,
timestamps, extensions) and adds a type-specific payload:

- ``Issue`` (prefix ``is``): tracked work items.
- ``Agent`` (prefix ``ag``): registered human or AI participants.
- ``Message`` (prefix ``ms``): messages exchanged between agents.

Models are frozen.  Validators canonicalize the fields whose on-disk
order would otherwise depend on insertion order (labels, dependencies,
recipients, acks), normalize timestamps to millisecond ``...Z`` strings
so they compare correctly as text, and normalize free-text bodies so a
decode of an encoded entity is equal to the original.

Fields a newer writer added that this version does not know about are
kept (``extra="allow"``) and re-emitted on the next encode.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from tbd_core.validators import validate_entity_id

# ---------------------------------------------------------------------------
# Timestamps and text
# ---------------------------------------------------------------------------


def format_timestamp(moment: datetime) -> str:
    """Render *moment* as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{moment.microsecond // 1000:03d}Z"
    )


def normalize_timestamp(value: Any) -> str:
    """Normalize a ``datetime`` or ISO-8601 string to canonical form.

    Raises:
        ValueError: If *value* is not a parseable timestamp.
    """
    if isinstance(value, datetime):
        return format_timestamp(value)
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 timestamp, got {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return format_timestamp(datetime.fromisoformat(text))


_LEADING_BLANK_LINES = re.compile(r"\A(?:[ \t]*\n)+")


def normalize_body(text: str | None) -> str:
    """Normalize a free-text body.

    Line endings become LF, leading blank lines and trailing whitespace
    are removed.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _LEADING_BLANK_LINES.sub("", text)
    return text.rstrip()


def _sorted_unique(values: Any) -> list[str]:
    if values is None:
        return []
    return sorted({str(v) for v in values})


# ---------------------------------------------------------------------------
# Enums and nested records
# ---------------------------------------------------------------------------


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class IssueKind(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    RETIRED = "retired"


class DependencyRelation(str, Enum):
    BLOCKS = "blocks"
    RELATED = "related"
    PARENT_CHILD = "parent-child"
    DISCOVERED_FROM = "discovered-from"


class Dependency(BaseModel):
    """A directed edge from an issue to *target*."""

    target: str
    relation: DependencyRelation = DependencyRelation.BLOCKS

    model_config = {"frozen": True}

    def sort_key(self) -> tuple[str, str]:
        return (self.target, self.relation.value)


class Ack(BaseModel):
    """Acknowledgement of a message by one agent.  Never edited."""

    agent: str
    at: str

    model_config = {"frozen": True}

    @field_validator("at", mode="before")
    @classmethod
    def _normalize_at(cls, value: Any) -> str:
        return normalize_timestamp(value)

    def sort_key(self) -> tuple[str, str]:
        return (self.at, self.agent)


# ---------------------------------------------------------------------------
# Entity envelope
# ---------------------------------------------------------------------------


class BaseEntity(BaseModel):
    """Fields shared by every synchronized entity.

    Attributes:
        type: Two-letter type prefix; immutable.
        id: ``{type}-{base36}``; immutable.
        version: Incremented by exactly one on every write and merge.
        created_at: Creation time (earliest replica wins on merge).
        updated_at: Last modification time, used for last-write-wins.
        created_by: Optional creator identity.
        extensions: Open namespace map for tool-specific data.
    """

    PREFIX: ClassVar[str] = ""
    TYPE_NAME: ClassVar[str] = ""
    BODY_FIELD: ClassVar[str | None] = None

    type: str
    id: str
    version: int = Field(default=1, ge=0)
    created_at: str
    updated_at: str
    created_by: str | None = None
    extensions: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True, "extra": "allow"}

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _normalize_required_ts(cls, value: Any) -> str:
        return normalize_timestamp(value)

    @field_validator("extensions", mode="before")
    @classmethod
    def _default_extensions(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _check_id(self) -> "BaseEntity":
        ok, message = validate_entity_id(self.id)
        if not ok:
            raise ValueError(message)
        if not self.id.startswith(f"{self.type}-"):
            raise ValueError(
                f"Entity id '{self.id}' does not match type '{self.type}'"
            )
        return self

    def evolve(self, **changes: Any) -> "BaseEntity":
        """Return a validated copy with *changes* applied."""
        data = self.model_dump(mode="json")
        data.update(changes)
        return type(self).model_validate(data)

    def body_text(self) -> str:
        """Return the free-text body stored after the front matter."""
        if self.BODY_FIELD is None:
            return ""
        return getattr(self, self.BODY_FIELD)


class Issue(BaseEntity):
    """A tracked unit of work."""

    PREFIX: ClassVar[str] = "is"
    TYPE_NAME: ClassVar[str] = "issue"
    BODY_FIELD: ClassVar[str | None] = "description"

    type: Literal["is"] = "is"
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    notes: str | None = None
    kind: IssueKind = IssueKind.TASK
    status: IssueStatus = IssueStatus.OPEN
    priority: int = Field(default=2, ge=0, le=4)
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    parent_id: str | None = None
    due_date: str | None = None
    deferred_until: str | None = None
    closed_at: str | None = None
    close_reason: str | None = None

    @field_validator("description", mode="before")
    @classmethod
    def _normalize_description(cls, value: Any) -> str:
        return normalize_body(value)

    @field_validator("labels", mode="before")
    @classmethod
    def _canonical_labels(cls, value: Any) -> list[str]:
        return _sorted_unique(value)

    @field_validator("dependencies", mode="after")
    @classmethod
    def _canonical_dependencies(
        cls, value: list[Dependency]
    ) -> list[Dependency]:
        unique = {dep.sort_key(): dep for dep in value}
        return [unique[key] for key in sorted(unique)]

    @field_validator(
        "closed_at", "due_date", "deferred_until", mode="before"
    )
    @classmethod
    def _normalize_optional_ts(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return normalize_timestamp(value)

    @property
    def is_closed(self) -> bool:
        return self.status == IssueStatus.CLOSED


class Agent(BaseEntity):
    """A participant (human or AI) that reads and writes entities."""

    PREFIX: ClassVar[str] = "ag"
    TYPE_NAME: ClassVar[str] = "agent"
    BODY_FIELD: ClassVar[str | None] = "description"

    type: Literal["ag"] = "ag"
    name: str = Field(min_length=1)
    role: str | None = None
    status: AgentStatus = AgentStatus.ACTIVE
    capabilities: list[str] = Field(default_factory=list)
    last_seen_at: str | None = None
    description: str = ""

    @field_validator("description", mode="before")
    @classmethod
    def _normalize_description(cls, value: Any) -> str:
        return normalize_body(value)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _canonical_capabilities(cls, value: Any) -> list[str]:
        return _sorted_unique(value)

    @field_validator("last_seen_at", mode="before")
    @classmethod
    def _normalize_last_seen(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return normalize_timestamp(value)


class Message(BaseEntity):
    """A message from one agent to others."""

    PREFIX: ClassVar[str] = "ms"
    TYPE_NAME: ClassVar[str] = "message"
    BODY_FIELD: ClassVar[str | None] = "body"

    type: Literal["ms"] = "ms"
    sender: str = Field(min_length=1)
    recipients: list[str] = Field(default_factory=list)
    subject: str | None = None
    body: str = ""
    thread_id: str | None = None
    in_reply_to: str | None = None
    acks: list[Ack] = Field(default_factory=list)

    @field_validator("body", mode="before")
    @classmethod
    def _normalize_body(cls, value: Any) -> str:
        return normalize_body(value)

    @field_validator("recipients", mode="before")
    @classmethod
    def _canonical_recipients(cls, value: Any) -> list[str]:
        return _sorted_unique(value)

    @field_validator("acks", mode="after")
    @classmethod
    def _canonical_acks(cls, value: list[Ack]) -> list[Ack]:
        unique = {ack.sort_key(): ack for ack in value}
        return [unique[key] for key in sorted(unique)]


Entity = Union[Issue, Agent, Message]

ENTITY_TYPES: dict[str, type[BaseEntity]] = {
    cls.PREFIX: cls for cls in (Issue, Agent, Message)
}

_NAMES_TO_PREFIX: dict[str, str] = {
    cls.TYPE_NAME: cls.PREFIX for cls in ENTITY_TYPES.values()
}


def resolve_entity_type(name_or_prefix: str) -> str:
    """Map ``"issue"`` or ``"is"`` to the prefix ``"is"``.

    Raises:
        KeyError: If the name is not a known entity type.
    """
    if name_or_prefix in ENTITY_TYPES:
        return name_or_prefix
    try:
        return _NAMES_TO_PREFIX[name_or_prefix]
    except KeyError:
        raise KeyError(
            f"Unknown entity type '{name_or_prefix}'. Valid types: "
            f"{sorted(_NAMES_TO_PREFIX)}"
        ) from None


def entity_class_for(prefix: str) -> type[BaseEntity]:
    """Return the model class for a type prefix."""
    return ENTITY_TYPES[resolve_entity_type(prefix)]


def repair_close_state(fields: dict[str, Any], closed_at: str | None) -> None:
    """Keep ``status`` and ``closed_at`` of an issue mapping consistent.

    A closed issue without ``closed_at`` gets *closed_at*; any other
    status clears it.  Mutates *fields* in place.
    """
    if fields.get("type") != Issue.PREFIX:
        return
    if fields.get("status") == IssueStatus.CLOSED.value:
        if not fields.get("closed_at"):
            fields["closed_at"] = closed_at
    else:
        fields["closed_at"] = None
