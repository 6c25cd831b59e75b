"""
Activity log: append-only record of task and file mutations.

Route handlers derive one activity per externally visible mutation and append
it here. Nothing in this module updates or deletes an activity.
"""
import json
import logging
import os
from typing import Any, Dict, List, Optional

from .schema import (
    Activity,
    ActivitySource,
    ActivityType,
    Task,
    TaskColumn,
    clean_text,
)
from .store import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 100
MAX_ACTIVITY_LIMIT = 500

FILE_AGENT_NAME = "Entity"
FILE_AGENT_EMOJI = "⚡"


class ActivityValidationError(ValueError):
    """Raised when an activity is missing its action or description."""
    pass


def clamp_activity_limit(limit: Any) -> int:
    """Clamp to [1, 500]; absent or non-integer means the default of 100."""
    if isinstance(limit, bool):
        return DEFAULT_ACTIVITY_LIMIT
    if isinstance(limit, float) and limit.is_integer():
        limit = int(limit)
    if not isinstance(limit, int):
        return DEFAULT_ACTIVITY_LIMIT
    return max(1, min(MAX_ACTIVITY_LIMIT, limit))


def _coerce_task_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class ActivityLog:
    """Validates, normalizes and appends activities to the store."""

    def __init__(self, store: EntityStore):
        self.store = store

    def create_activity(
        self,
        type: Any = None,
        action: Any = "",
        description: Any = "",
        source: Any = None,
        agent_name: Any = None,
        agent_emoji: Any = None,
        file_path: Any = None,
        task_id: Any = None,
        task_column: Any = None,
        metadata: Any = None,
    ) -> Activity:
        """
        Append one activity and return the stored record.

        Raises:
            ActivityValidationError: action or description blank after trimming.
        """
        action_text = clean_text(action)
        description_text = clean_text(description)
        if not action_text or not description_text:
            raise ActivityValidationError("activity action and description are required")

        if isinstance(metadata, (dict, list)):
            metadata = json.dumps(metadata)

        fields = {
            "source": ActivitySource.from_str(source).value,
            "type": ActivityType.from_str(type).value,
            "action": action_text,
            "description": description_text,
            "agent_name": clean_text(agent_name),
            "agent_emoji": clean_text(agent_emoji),
            "file_path": clean_text(file_path),
            "task_id": _coerce_task_id(task_id),
            "task_column": clean_text(task_column),
            "metadata": clean_text(metadata),
        }
        activity = self.store.insert_activity(fields)
        logger.debug("Activity %s: %s %s", activity.id, activity.type.value, activity.action)
        return activity

    def list_activities(self, limit: Any = None) -> List[Activity]:
        """Most recent first."""
        return self.store.list_activities(clamp_activity_limit(limit))


# ── Derivation ───────────────────────────────────────────────────────────────

TASK_CHANGES = ("created", "updated", "moved", "deleted")


def task_activity(change: str, task: Task, previous: Optional[Task] = None) -> Dict[str, Any]:
    """
    Build the activity fields for one task mutation.

    A transition into done collapses into task_completed, superseding
    task_created/task_updated/task_moved for that event. `previous` is the
    record as stored before the mutation; without it, landing in done counts.
    """
    if change not in TASK_CHANGES:
        raise ValueError(f"Unknown task change: {change}")

    in_done = task.column is TaskColumn.DONE
    was_done = previous is not None and previous.column is TaskColumn.DONE
    became_done = in_done and not was_done
    column_label = task.column.label

    if change == "deleted":
        activity_type, action = ActivityType.TASK_DELETED, "Deleted task"
        description = f"{task.name} removed from {column_label}."
    elif became_done:
        activity_type, action = ActivityType.TASK_COMPLETED, "Completed task"
        verb = "moved to" if change == "moved" else "in"
        description = f"{task.name} {verb} {column_label}."
    elif change == "created":
        activity_type, action = ActivityType.TASK_CREATED, "Created task"
        description = f"{task.name} in {column_label}."
    elif change == "updated":
        activity_type, action = ActivityType.TASK_UPDATED, "Updated task"
        description = f"{task.name} in {column_label}."
    else:
        activity_type, action = ActivityType.TASK_MOVED, "Moved task"
        description = f"{task.name} moved to {column_label}."

    return {
        "source": ActivitySource.TASK,
        "type": activity_type,
        "action": action,
        "description": description,
        "task_id": task.id,
        "task_column": task.column.value,
        "metadata": {"taskName": task.name, "assignee": task.assignee},
    }


FILE_ACTIONS = {
    "changed": ("Edited file", "Updated {path}."),
    "created": ("Created file", "Created {path}."),
    "deleted": ("Deleted file", "Deleted {path}."),
}


def workspace_relative(path: str, workspace: str) -> str:
    """Path relative to the workspace, or unchanged when it lies outside."""
    if not os.path.isabs(path):
        return path
    relative = os.path.relpath(path, workspace)
    if relative.startswith(".."):
        return path
    return relative if relative != "." else os.path.basename(path)


def file_activity(change: str, path: str, workspace: str,
                  destination: Optional[str] = None) -> Dict[str, Any]:
    """Build the activity fields for one workspace file mutation."""
    if change == "moved":
        action = "Moved file"
        description = (
            f"Moved {workspace_relative(path, workspace)} "
            f"to {workspace_relative(destination or '', workspace)}."
        )
        file_path = destination
    elif change in FILE_ACTIONS:
        action, template = FILE_ACTIONS[change]
        description = template.format(path=workspace_relative(path, workspace))
        file_path = path
    else:
        raise ValueError(f"Unknown file change: {change}")

    return {
        "source": ActivitySource.AGENT,
        "type": ActivityType.FILE_EDIT,
        "action": action,
        "description": description,
        "file_path": file_path,
        "agent_name": FILE_AGENT_NAME,
        "agent_emoji": FILE_AGENT_EMOJI,
    }
