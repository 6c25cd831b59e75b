"""
Task and activity storage backend (SQLite).

Provides task CRUD, the append-only activity table, and the one-time seed
import from a legacy mission-control database.
"""
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from .schema import (
    Activity,
    Task,
    TaskColumn,
    TaskValidationError,
    clean_text,
    next_timestamp,
    normalize_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

# Partial updates touch only these columns.
UPDATABLE_FIELDS = ("name", "description", "column", "assignee", "metadata")


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class EntityStore:
    """SQLite-backed store for tasks and activities."""

    def __init__(self, db_path: str):
        """Initialize store and create tables if needed."""
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    "column" TEXT NOT NULL DEFAULT 'backlog',
                    assignee TEXT DEFAULT 'Unassigned',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL DEFAULT 'agent',
                    type TEXT NOT NULL,
                    action TEXT NOT NULL,
                    description TEXT NOT NULL,
                    agent_name TEXT,
                    agent_emoji TEXT,
                    file_path TEXT,
                    task_id INTEGER,
                    task_column TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            # Board and feed queries
            conn.execute('CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks("column")')
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_updated_at ON tasks(updated_at DESC)")
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_activities_created_at
                ON activities(created_at DESC, id DESC)
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_source ON activities(source)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_task_id ON activities(task_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_file_path ON activities(file_path)")
            conn.commit()

    # ── Tasks ────────────────────────────────────────────────────────────────

    def list_tasks(self) -> List[Task]:
        """All tasks, most recently updated first."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM tasks ORDER BY updated_at DESC, id DESC"
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_task(self, task_id: int) -> Optional[Task]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def count_tasks(self) -> int:
        with _connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]

    def create_task(
        self,
        name: str,
        description: Optional[str] = None,
        column: Any = None,
        assignee: Optional[str] = None,
        metadata: Optional[str] = None,
    ) -> Task:
        """Insert a task; created_at and updated_at start out equal."""
        task_name = clean_text(name)
        if not task_name:
            raise TaskValidationError("task name is required")

        now = utc_now()
        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO tasks (name, description, "column", assignee, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_name,
                    clean_text(description),
                    TaskColumn.from_str(column).value,
                    clean_text(assignee) or "Unassigned",
                    clean_text(metadata) or "{}",
                    now,
                    now,
                ),
            )
            task_id = cursor.lastrowid
            conn.commit()

        task = self.get_task(task_id)
        if task is None:
            raise sqlite3.DatabaseError(f"Failed to read back task {task_id}")
        return task

    def update_task(self, task_id: int, updates: Dict[str, Any]) -> Optional[Task]:
        """
        Apply only the fields present in `updates`.

        Returns None for an unknown id. With nothing applicable the record comes
        back unchanged and updated_at is not bumped.
        """
        existing = self.get_task(task_id)
        if existing is None:
            return None

        assignments = []
        values: List[Any] = []
        for key in UPDATABLE_FIELDS:
            if key not in updates:
                continue
            value = updates[key]
            if key == "description" and value is None:
                assignments.append("description = ?")
                values.append(None)
                continue
            if not isinstance(value, str):
                continue
            if key == "name":
                if not value.strip():
                    raise TaskValidationError("name cannot be empty")
                assignments.append("name = ?")
                values.append(value.strip())
            elif key == "description":
                assignments.append("description = ?")
                values.append(clean_text(value))
            elif key == "column":
                assignments.append('"column" = ?')
                values.append(TaskColumn.from_str(value).value)
            elif key == "assignee":
                assignments.append("assignee = ?")
                values.append(clean_text(value) or "Unassigned")
            elif key == "metadata":
                assignments.append("metadata = ?")
                values.append(clean_text(value) or "{}")

        if not assignments:
            return existing

        assignments.append("updated_at = ?")
        values.append(next_timestamp(existing.updated_at))
        values.append(task_id)
        with _connect(self.db_path) as conn:
            conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", values)
            conn.commit()
        return self.get_task(task_id)

    def move_task(self, task_id: int, column: Any) -> Optional[Task]:
        """Set the column (normalized) and bump updated_at."""
        existing = self.get_task(task_id)
        if existing is None:
            return None
        with _connect(self.db_path) as conn:
            conn.execute(
                'UPDATE tasks SET "column" = ?, updated_at = ? WHERE id = ?',
                (TaskColumn.from_str(column).value, next_timestamp(existing.updated_at), task_id),
            )
            conn.commit()
        return self.get_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        """Hard delete. True if a row was removed."""
        with _connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
            return cursor.rowcount > 0

    # ── Legacy seed ──────────────────────────────────────────────────────────

    def seed_from_legacy(self, legacy_path: Optional[str]) -> int:
        """
        One-time import from a mission-control tasks.db.

        Skipped when this store already has tasks or the source is missing or
        unreadable. INSERT OR IGNORE keyed by id, so re-running is harmless.
        Returns the number of rows inserted.
        """
        if not legacy_path or self.count_tasks() > 0:
            return 0
        source_path = Path(legacy_path)
        if not source_path.exists():
            return 0

        try:
            rows = self._load_legacy_rows(source_path)
        except sqlite3.Error as e:
            logger.warning("Legacy task import skipped (%s): %s", source_path, e)
            return 0
        if not rows:
            return 0

        inserted = 0
        try:
            with _connect(self.db_path) as conn:
                for row in rows:
                    if not clean_text(row["name"]):
                        logger.debug("Skipping legacy task %s with no name", row["id"])
                        continue
                    created_at = normalize_timestamp(row["created_at"])
                    updated_at = normalize_timestamp(row["updated_at"] or row["created_at"])
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO tasks
                        (id, name, description, "column", assignee, created_at, updated_at, metadata)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            row["id"],
                            row["name"],
                            row["description"],
                            TaskColumn.from_str(row["task_column"]).value,
                            row["assignee"] or "Unassigned",
                            created_at,
                            max(updated_at, created_at),
                            "{}",
                        ),
                    )
                    inserted += cursor.rowcount
                conn.commit()
        except sqlite3.Error as e:
            # The connection context rolls back, so a failed import leaves no rows behind
            logger.warning("Legacy task import aborted (%s): %s", source_path, e)
            return 0
        logger.info("Imported %d legacy tasks from %s", inserted, source_path)
        return inserted

    @staticmethod
    def _load_legacy_rows(source_path: Path) -> List[sqlite3.Row]:
        source = sqlite3.connect(f"file:{source_path}?mode=ro", uri=True)
        source.row_factory = sqlite3.Row
        try:
            columns = {r["name"] for r in source.execute("PRAGMA table_info(tasks)")}
            where = "WHERE archived = 0" if "archived" in columns else ""
            return source.execute(f"""
                SELECT id, name, description, "column" AS task_column,
                       assignee, created_at, updated_at
                FROM tasks
                {where}
                ORDER BY id ASC
            """).fetchall()
        finally:
            source.close()

    # ── Activities ───────────────────────────────────────────────────────────

    def insert_activity(self, fields: Dict[str, Any]) -> Activity:
        """Append one activity row; created_at is assigned here."""
        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO activities
                (source, type, action, description, agent_name, agent_emoji,
                 file_path, task_id, task_column, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fields["source"],
                    fields["type"],
                    fields["action"],
                    fields["description"],
                    fields.get("agent_name"),
                    fields.get("agent_emoji"),
                    fields.get("file_path"),
                    fields.get("task_id"),
                    fields.get("task_column"),
                    fields.get("metadata"),
                    utc_now(),
                ),
            )
            activity_id = cursor.lastrowid
            conn.commit()

        activity = self.get_activity(activity_id)
        if activity is None:
            raise sqlite3.DatabaseError(f"Failed to read back activity {activity_id}")
        return activity

    def get_activity(self, activity_id: int) -> Optional[Activity]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM activities WHERE id = ?", (activity_id,)).fetchone()
        return self._row_to_activity(row) if row else None

    def list_activities(self, limit: int) -> List[Activity]:
        """Most recent first; id breaks ties within one timestamp."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM activities ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_activity(row) for row in rows]

    # ── Row mapping ──────────────────────────────────────────────────────────

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task.from_dict(dict(row))

    def _row_to_activity(self, row: sqlite3.Row) -> Activity:
        return Activity.from_dict(dict(row))
