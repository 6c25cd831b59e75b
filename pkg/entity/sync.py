"""
Sync mode resolution and the task facade.

- LOCAL: tasks live in the embedded SQLite store
- CLOUD: tasks live on a peer instance reached over HTTP

The mode is re-resolved on every call, so a flip takes effect on the next call
while a call already in flight finishes on the adapter it started with.
"""
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Union

from .cloud import CloudTaskAdapter
from .config import DB_MODE_ENV_KEYS, EntityConfig
from .local import LocalTaskAdapter
from .schema import SyncMode, Task, TaskValidationError, clean_text, require_task_id
from .store import EntityStore

logger = logging.getLogger(__name__)

LOCAL_PLATFORMS = {"electron", "desktop", "mobile"}


def normalize_mode(value: Any) -> Optional[SyncMode]:
    """Map "local"/"CLOUD"/SyncMode to SyncMode; anything else is None."""
    if isinstance(value, SyncMode):
        return value
    text = clean_text(value)
    if not text:
        return None
    try:
        return SyncMode(text.upper())
    except ValueError:
        return None


def prefers_local_runtime(platform: Optional[str]) -> bool:
    return bool(platform) and platform.strip().lower() in LOCAL_PLATFORMS


def resolve_mode(
    override: Optional[SyncMode],
    cloud_configured: bool,
    platform: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncMode:
    """
    Pick the backend for one call. No I/O.

    Precedence: runtime override, then the DB mode env keys, then the platform
    hint, then "cloud if configured".
    """
    if override is SyncMode.CLOUD and cloud_configured:
        return SyncMode.CLOUD
    if override is SyncMode.LOCAL:
        return SyncMode.LOCAL

    env = environ if environ is not None else {}
    for key in DB_MODE_ENV_KEYS:
        env_mode = normalize_mode(env.get(key))
        if env_mode is None:
            continue
        if env_mode is SyncMode.CLOUD and cloud_configured:
            return SyncMode.CLOUD
        return SyncMode.LOCAL

    if prefers_local_runtime(platform):
        return SyncMode.LOCAL

    return SyncMode.CLOUD if cloud_configured else SyncMode.LOCAL


class TaskSyncFacade:
    """Routes each task call to exactly one of the local or cloud adapters."""

    def __init__(
        self,
        local: LocalTaskAdapter,
        cloud: Optional[CloudTaskAdapter] = None,
        mode: Union[SyncMode, str, None] = None,
        platform: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.local = local
        self.cloud = cloud
        self.platform = clean_text(platform)
        self._environ = environ
        self._override = normalize_mode(mode)

    @classmethod
    def from_config(cls, config: EntityConfig,
                    environ: Optional[Mapping[str, str]] = None) -> "TaskSyncFacade":
        store = EntityStore(config.db_path)
        local = LocalTaskAdapter(store, legacy_db_path=config.legacy_db_path)
        cloud = None
        if clean_text(config.cloud_base_url):
            cloud = CloudTaskAdapter(
                config.cloud_base_url,
                headers=config.cloud_headers,
                timeout=config.cloud_timeout,
            )
        return cls(local, cloud, mode=config.mode, platform=config.platform, environ=environ)

    # ── Mode ─────────────────────────────────────────────────────────────────

    def _env(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def get_mode(self) -> SyncMode:
        return resolve_mode(self._override, self.cloud is not None, self.platform, self._env())

    def set_mode(self, mode: Union[SyncMode, str, None]) -> None:
        """Pin the mode, or clear the pin with None."""
        if mode is None:
            new_override = None
        else:
            new_override = normalize_mode(mode)
            if new_override is None:
                raise ValueError(f"Invalid mode: {mode!r}")
        if new_override != self._override:
            logger.info(
                "Sync mode override %s -> %s",
                self._override.value if self._override else None,
                new_override.value if new_override else None,
            )
        self._override = new_override

    def has_cloud_adapter(self) -> bool:
        return self.cloud is not None

    def _adapter(self) -> Union[LocalTaskAdapter, CloudTaskAdapter]:
        if self.get_mode() is SyncMode.CLOUD and self.cloud is not None:
            return self.cloud
        return self.local

    # ── Adapter contract ─────────────────────────────────────────────────────

    async def list_tasks(self) -> List[Task]:
        return await self._adapter().list_tasks()

    async def get_task(self, task_id: Any) -> Optional[Task]:
        task_id = require_task_id(task_id)
        return await self._adapter().get_task(task_id)

    async def create_task(self, payload: Dict[str, Any]) -> Task:
        if not clean_text(payload.get("name")):
            raise TaskValidationError("name required")
        return await self._adapter().create_task(payload)

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Optional[Task]:
        task_id = require_task_id(task_id)
        name = updates.get("name")
        if isinstance(name, str) and not name.strip():
            raise TaskValidationError("name cannot be empty")
        return await self._adapter().update_task(task_id, updates)

    async def move_task(self, task_id: Any, column: Any) -> Optional[Task]:
        task_id = require_task_id(task_id)
        return await self._adapter().move_task(task_id, column)

    async def delete_task(self, task_id: Any) -> bool:
        task_id = require_task_id(task_id)
        return await self._adapter().delete_task(task_id)
