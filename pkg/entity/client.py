"""
Client-side task board state and mutation controller.

Moves are applied to local state before the server confirms them. Each move
runs as a MoveTransaction:

  Pending → Committed    server record replaces the optimistic one
  Pending → RolledBack   the snapshot taken at Pending is restored verbatim

There is no partial outcome, and concurrent moves of the same task from
different viewers are not coordinated: the last write to the store wins and
every viewer converges on its next reload or broadcast.
"""
import asyncio
import json
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .cloud import normalize_task_record, parse_task_list
from .schema import SyncMode, Task, TaskColumn, TaskValidationError, clean_text, utc_now
from .sync import normalize_mode

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://127.0.0.1:3001"


class ClientError(Exception):
    """Raised when the server rejects a request or cannot be reached."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransactionStateError(RuntimeError):
    """Raised when a finished MoveTransaction is driven again."""
    pass


# ── Network boundary ─────────────────────────────────────────────────────────


class TaskBoardClient:
    """HTTP client for the task server; `/api` prefix first, bare prefix on 404."""

    def __init__(self, api_base: str = DEFAULT_API_BASE,
                 session: Optional[requests.Session] = None,
                 timeout: float = 10.0,
                 api_key: str = ""):
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_key = api_key

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        headers = {}
        if body is not None:
            headers["Content-Type"] = "application/json"
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        for url in (f"{self.api_base}/api{path}", f"{self.api_base}{path}"):
            try:
                response = self.session.request(
                    method,
                    url,
                    data=json.dumps(body) if body is not None else None,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise ClientError(f"Request to {url} failed: {e}") from e
            if response.status_code == 404:
                continue

            payload = None
            if response.text:
                try:
                    payload = json.loads(response.text)
                except ValueError as e:
                    raise ClientError("Invalid server response while handling tasks.",
                                      response.status_code) from e
            if not 200 <= response.status_code < 300:
                message = f"Request failed with status {response.status_code}"
                if isinstance(payload, dict) and isinstance(payload.get("error"), str):
                    message = payload["error"]
                raise ClientError(message, response.status_code)
            return payload

        raise ClientError(f"Unable to reach {path} (404 on every prefix).", 404)

    async def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, body)

    @staticmethod
    def _task(payload: Any, operation: str) -> Task:
        task = normalize_task_record(payload)
        if task is None:
            raise ClientError(f"Failed to {operation} task from server response.")
        return task

    async def list_tasks(self) -> List[Task]:
        return parse_task_list(await self._call("GET", "/tasks"))

    async def create_task(self, payload: Dict[str, Any]) -> Task:
        return self._task(await self._call("POST", "/tasks", payload), "create")

    async def update_task(self, task_id: int, updates: Dict[str, Any]) -> Task:
        return self._task(await self._call("PUT", f"/tasks/{task_id}", updates), "update")

    async def move_task(self, task_id: int, column: TaskColumn) -> Task:
        payload = await self._call("PUT", f"/tasks/{task_id}/move", {"column": column.value})
        return self._task(payload, "move")

    async def get_db_mode(self) -> Tuple[SyncMode, bool]:
        payload = await self._call("GET", "/db-mode") or {}
        mode = normalize_mode(payload.get("mode")) or SyncMode.LOCAL
        return mode, payload.get("cloudConfigured") is True

    async def set_db_mode(self, mode: Optional[SyncMode]) -> Tuple[SyncMode, bool]:
        body = {"mode": mode.value if mode is not None else None}
        payload = await self._call("POST", "/db-mode", body) or {}
        resolved = normalize_mode(payload.get("mode")) or SyncMode.LOCAL
        return resolved, payload.get("cloudConfigured") is True


def resolve_sync_status(mode: SyncMode, cloud_configured: bool, online: bool = True) -> str:
    """"online" only when the browser is online and tasks are served from the cloud."""
    if online and mode is SyncMode.CLOUD and cloud_configured:
        return "online"
    return "offline"


# ── Local state ──────────────────────────────────────────────────────────────


class TaskBoard:
    """In-memory list of tasks as one viewer sees them."""

    def __init__(self, tasks: Optional[List[Task]] = None,
                 clock: Callable[[], str] = utc_now):
        self.tasks: List[Task] = list(tasks or [])
        self.error: Optional[str] = None
        self._clock = clock

    def snapshot(self) -> Tuple[Task, ...]:
        # Tasks are frozen, so a tuple of the same objects is a full pre-image
        return tuple(self.tasks)

    def restore(self, snapshot: Tuple[Task, ...]) -> None:
        self.tasks = list(snapshot)

    def set_tasks(self, tasks: List[Task]) -> None:
        self.tasks = list(tasks)

    def get(self, task_id: int) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def upsert_task(self, task: Task) -> None:
        """Replace by id, or prepend a task not seen before."""
        for index, existing in enumerate(self.tasks):
            if existing.id == task.id:
                self.tasks[index] = task
                return
        self.tasks.insert(0, task)

    def set_task_column(self, task_id: int, column: TaskColumn) -> None:
        now = self._clock()
        self.tasks = [
            replace(task, column=column, updated_at=now) if task.id == task_id else task
            for task in self.tasks
        ]

    def remove_task(self, task_id: int) -> None:
        self.tasks = [task for task in self.tasks if task.id != task_id]

    def apply_event(self, event: Dict[str, Any]) -> bool:
        """
        Reconcile one broadcast event. Returns True if local state changed.

        Last write wins: a pushed record simply replaces whatever this viewer
        holds, optimistic or not.
        """
        kind = event.get("type")
        if kind in ("task:created", "task:updated"):
            task = normalize_task_record(event.get("task"))
            if task is None:
                return False
            self.upsert_task(task)
            return True
        if kind == "task:moved":
            column = TaskColumn.parse(event.get("column"))
            task_id = event.get("taskId")
            if column is None or self.get(task_id) is None:
                return False
            self.tasks = [replace(t, column=column) if t.id == task_id else t for t in self.tasks]
            return True
        if kind == "task:deleted":
            before = len(self.tasks)
            self.remove_task(event.get("taskId"))
            return len(self.tasks) != before
        return False


# ── Optimistic move ──────────────────────────────────────────────────────────


class MoveState(Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MoveTransaction:
    """One optimistic column move, owned by the caller that issued it."""

    def __init__(self, board: TaskBoard, task_id: int, column: TaskColumn):
        self.board = board
        self.task_id = task_id
        self.column = column
        self.pre_image = board.snapshot()
        self.state = MoveState.PENDING
        self.result: Optional[Task] = None
        self.error: Optional[BaseException] = None
        board.set_task_column(task_id, column)

    def _finish(self, state: MoveState) -> None:
        if self.state is not MoveState.PENDING:
            raise TransactionStateError(
                f"move of task {self.task_id} already {self.state.value}"
            )
        self.state = state

    def commit(self, confirmed: Task) -> Task:
        self._finish(MoveState.COMMITTED)
        self.result = confirmed
        self.board.upsert_task(confirmed)
        return confirmed

    def rollback(self, error: BaseException) -> None:
        self._finish(MoveState.ROLLED_BACK)
        self.error = error
        self.board.restore(self.pre_image)
        self.board.error = str(error) or type(error).__name__


class TaskBoardController:
    """Issues task mutations and keeps a TaskBoard in step with the server."""

    def __init__(self, client: TaskBoardClient, board: Optional[TaskBoard] = None):
        self.client = client
        self.board = board or TaskBoard()

    async def reload_tasks(self) -> List[Task]:
        """Full refresh; on failure the error is recorded and the board kept."""
        self.board.error = None
        try:
            tasks = await self.client.list_tasks()
        except ClientError as e:
            self.board.error = str(e)
            logger.warning("Task reload failed: %s", e)
            return []
        self.board.set_tasks(tasks)
        return tasks

    async def create_task(self, name: str, **fields: Any) -> Task:
        task_name = clean_text(name)
        if not task_name:
            raise TaskValidationError("Task title is required.")
        self.board.error = None
        task = await self.client.create_task({"name": task_name, **fields})
        self.board.upsert_task(task)
        return task

    async def update_task(self, task_id: int, **fields: Any) -> Task:
        self.board.error = None
        task = await self.client.update_task(task_id, fields)
        self.board.upsert_task(task)
        return task

    async def move_task(self, task_id: int, column: Any) -> Task:
        """
        Move optimistically; on any failure restore the pre-move snapshot
        and re-raise.
        """
        target = TaskColumn.parse(column)
        if target is None:
            raise TaskValidationError(f"invalid column: {column!r}")

        txn = MoveTransaction(self.board, task_id, target)
        try:
            confirmed = await self.client.move_task(task_id, target)
        except Exception as e:
            txn.rollback(e)
            logger.warning("Move of task %s to %s rolled back: %s", task_id, target.value, e)
            raise
        return txn.commit(confirmed)

    def apply_event(self, event: Dict[str, Any]) -> bool:
        return self.board.apply_event(event)
