"""
Task and activity schema.

Task lifecycle:
  created → updated / moved between columns → deleted (hard delete)

Activities are append-only audit records; nothing here mutates one after
insertion.
"""
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any


class TaskValidationError(ValueError):
    """Raised when a task mutation is rejected before reaching any backend."""
    pass


class TaskColumn(Enum):
    """Board columns, in display order."""
    BACKLOG = "backlog"
    TODO = "todo"
    DOING = "doing"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def parse(cls, value: Any) -> Optional["TaskColumn"]:
        """Strict lookup: None when the value is not a known column."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @classmethod
    def from_str(cls, value: Any) -> "TaskColumn":
        return cls.parse(value) or cls.BACKLOG

    @property
    def label(self) -> str:
        return self.value.capitalize()


TASK_COLUMNS = tuple(c.value for c in TaskColumn)


class ActivitySource(Enum):
    """Who produced an activity."""
    AGENT = "agent"
    TASK = "task"

    @classmethod
    def from_str(cls, value: Any) -> "ActivitySource":
        if isinstance(value, cls):
            return value
        return cls.TASK if value == "task" else cls.AGENT


class ActivityType(Enum):
    """Closed set of activity kinds shown in the feed."""
    FILE_EDIT = "file_edit"
    TOOL_CALL = "tool_call"
    MESSAGE_SENT = "message_sent"
    COMMAND_RUN = "command_run"
    RESEARCH = "research"
    THINKING = "thinking"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_MOVED = "task_moved"
    TASK_COMPLETED = "task_completed"
    TASK_DELETED = "task_deleted"

    @classmethod
    def from_str(cls, value: Any) -> "ActivityType":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.MESSAGE_SENT
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.MESSAGE_SENT


class SyncMode(Enum):
    """Which backend serves task calls."""
    LOCAL = "LOCAL"
    CLOUD = "CLOUD"


# ── Normalizers ──────────────────────────────────────────────────────────────


def utc_now() -> str:
    """Canonical ISO-8601 UTC timestamp (fixed width, microseconds)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        # SQLite CURRENT_TIMESTAMP and legacy rows are naive UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> str:
    """Coerce any timestamp-ish value to the canonical form; unparseable means now."""
    parsed = _parse_timestamp(value)
    if parsed is None:
        return utc_now()
    return parsed.isoformat(timespec="microseconds")


def next_timestamp(previous: Optional[str]) -> str:
    """Current time, bumped past `previous` so mutations strictly advance."""
    now = datetime.now(timezone.utc)
    prior = _parse_timestamp(previous)
    if prior is not None and now <= prior:
        now = prior + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


def clean_text(value: Any) -> Optional[str]:
    """Trimmed string, or None for blanks and non-strings."""
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def parse_task_id(value: Any) -> Optional[int]:
    """Positive integer id, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def require_task_id(value: Any) -> int:
    task_id = parse_task_id(value)
    if task_id is None:
        raise TaskValidationError(f"invalid task id: {value!r}")
    return task_id


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Task:
    """One card on the board."""

    id: int
    name: str
    description: Optional[str] = None
    column: TaskColumn = TaskColumn.BACKLOG
    assignee: str = "Unassigned"
    metadata: str = "{}"
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "column": self.column.value,
            "assignee": self.assignee,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build from a row or payload, applying column/assignee/timestamp defaults."""
        created_at = normalize_timestamp(data.get("created_at"))
        updated_raw = data.get("updated_at") or data.get("created_at")
        updated_at = normalize_timestamp(updated_raw) if updated_raw else created_at
        description = data.get("description")
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or "").strip(),
            description=description if isinstance(description, str) else None,
            column=TaskColumn.from_str(data.get("column")),
            assignee=clean_text(data.get("assignee")) or "Unassigned",
            metadata=data["metadata"] if isinstance(data.get("metadata"), str) else "{}",
            created_at=created_at,
            updated_at=max(updated_at, created_at),
        )


@dataclass(frozen=True)
class Activity:
    """Immutable audit record for one domain event."""

    id: int
    source: ActivitySource
    type: ActivityType
    action: str
    description: str
    agent_name: Optional[str] = None
    agent_emoji: Optional[str] = None
    file_path: Optional[str] = None
    task_id: Optional[int] = None
    task_column: Optional[str] = None
    metadata: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "type": self.type.value,
            "action": self.action,
            "description": self.description,
            "agent_name": self.agent_name,
            "agent_emoji": self.agent_emoji,
            "file_path": self.file_path,
            "task_id": self.task_id,
            "task_column": self.task_column,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Activity":
        task_id = data.get("task_id")
        return cls(
            id=int(data["id"]),
            source=ActivitySource.from_str(data.get("source")),
            type=ActivityType.from_str(data.get("type")),
            action=str(data.get("action") or ""),
            description=str(data.get("description") or ""),
            agent_name=data.get("agent_name"),
            agent_emoji=data.get("agent_emoji"),
            file_path=data.get("file_path"),
            task_id=task_id if isinstance(task_id, int) and not isinstance(task_id, bool) else None,
            task_column=data.get("task_column"),
            metadata=data.get("metadata"),
            created_at=normalize_timestamp(data.get("created_at")),
        )
