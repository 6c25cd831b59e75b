"""
Local task adapter: the SQLite store behind the async adapter contract.
"""
import logging
from typing import Any, Dict, List, Optional

from .schema import SyncMode, Task
from .store import EntityStore

logger = logging.getLogger(__name__)


class LocalTaskAdapter:
    """Serves task calls from the embedded store."""

    mode = SyncMode.LOCAL

    def __init__(self, store: EntityStore, legacy_db_path: Optional[str] = None):
        """Wrap `store`, seeding it once from the legacy database when empty."""
        self.store = store
        if legacy_db_path:
            self.store.seed_from_legacy(legacy_db_path)

    async def list_tasks(self) -> List[Task]:
        return self.store.list_tasks()

    async def get_task(self, task_id: int) -> Optional[Task]:
        return self.store.get_task(task_id)

    async def create_task(self, payload: Dict[str, Any]) -> Task:
        return self.store.create_task(
            name=payload.get("name", ""),
            description=payload.get("description"),
            column=payload.get("column"),
            assignee=payload.get("assignee"),
            metadata=payload.get("metadata"),
        )

    async def update_task(self, task_id: int, updates: Dict[str, Any]) -> Optional[Task]:
        return self.store.update_task(task_id, updates)

    async def move_task(self, task_id: int, column: Any) -> Optional[Task]:
        return self.store.move_task(task_id, column)

    async def delete_task(self, task_id: int) -> bool:
        deleted = self.store.delete_task(task_id)
        if deleted:
            logger.debug("Deleted local task %s", task_id)
        return deleted
