"""
Cloud task adapter: the same contract served by a peer instance over HTTP.

The peer may expose its task routes under `/api` or at the root, so every call
tries `{base}/api{endpoint}` first and falls back to `{base}{endpoint}` on 404.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import requests

from .schema import SyncMode, Task, TaskColumn

logger = logging.getLogger(__name__)


class CloudRequestError(Exception):
    """Raised for transport failures, error statuses and malformed peer payloads."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


# ── Payload parsing ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Found:
    task: Task


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class Invalid:
    reason: str


ParsedTask = Union[Found, NotFound, Invalid]


def normalize_task_record(raw: Any) -> Optional[Task]:
    """Task from a peer record, or None when id/name fail validation."""
    if not isinstance(raw, dict):
        return None
    raw_id = raw.get("id")
    if isinstance(raw_id, bool):
        return None
    try:
        task_id = int(raw_id)
    except (TypeError, ValueError):
        return None
    if isinstance(raw_id, float) and not raw_id.is_integer():
        return None
    name = raw.get("name")
    if task_id <= 0 or not isinstance(name, str) or not name.strip():
        return None
    return Task.from_dict({**raw, "id": task_id})


def parse_task_payload(payload: Any) -> ParsedTask:
    """
    Classify a peer response.

    Accepts a bare task object or a {"task": {...}} wrapper; a NotFound result
    from the transport passes through unchanged.
    """
    if isinstance(payload, NotFound):
        return payload
    if payload is None:
        return Invalid("empty payload")
    task = normalize_task_record(payload)
    if task is not None:
        return Found(task)
    if isinstance(payload, dict) and isinstance(payload.get("task"), dict):
        task = normalize_task_record(payload["task"])
        if task is not None:
            return Found(task)
    return Invalid("payload is not a task record")


def parse_task_list(payload: Any) -> List[Task]:
    """Accept a bare array or a {"tasks": [...]} wrapper; invalid records are dropped."""
    if isinstance(payload, dict):
        payload = payload.get("tasks")
    if not isinstance(payload, list):
        return []
    tasks = []
    for raw in payload:
        task = normalize_task_record(raw)
        if task is None:
            logger.debug("Dropping invalid task record from peer: %r", raw)
            continue
        tasks.append(task)
    return tasks


def _read_json(response: requests.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError as e:
        raise CloudRequestError("Cloud adapter received invalid JSON.", response.status_code) from e


def _error_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
    return f"Cloud request failed with status {status}."


# ── Adapter ──────────────────────────────────────────────────────────────────


class CloudTaskAdapter:
    """HTTP mirror of the task adapter contract."""

    mode = SyncMode.CLOUD

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.session = session or requests.Session()

    def _candidate_urls(self, endpoint: str) -> List[str]:
        return [f"{self.base_url}/api{endpoint}", f"{self.base_url}{endpoint}"]

    def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Union[NotFound, Any]:
        """
        Run one call against both prefixes.

        Returns the decoded payload, or NotFound() when every prefix answered
        404 and the operation tolerates absence.
        """
        headers = dict(self.headers)
        if body is not None:
            headers["Content-Type"] = "application/json"

        urls = self._candidate_urls(endpoint)
        last_status = None
        for url in urls:
            try:
                response = self.session.request(
                    method,
                    url,
                    data=json.dumps(body) if body is not None else None,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                if last_status == 404 and allow_not_found:
                    logger.warning("Cloud %s %s failed after a 404: %s", method, url, e)
                    return NotFound()
                raise CloudRequestError(f"Cloud request to {url} failed: {e}") from e

            if response.status_code == 404:
                last_status = 404
                continue

            payload = _read_json(response)
            if not 200 <= response.status_code < 300:
                raise CloudRequestError(
                    _error_message(payload, response.status_code), response.status_code
                )
            return payload

        if allow_not_found:
            return NotFound()
        raise CloudRequestError(_error_message(None, 404), 404)

    async def _call(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None,
                    allow_not_found: bool = False) -> Union[NotFound, Any]:
        return await asyncio.to_thread(self._request, method, endpoint, body, allow_not_found)

    def _expect_task(self, result: Any, operation: str) -> Optional[Task]:
        parsed = parse_task_payload(result)
        if isinstance(parsed, Found):
            return parsed.task
        if isinstance(parsed, NotFound):
            return None
        raise CloudRequestError(f"Cloud {operation} returned an invalid task payload.")

    async def list_tasks(self) -> List[Task]:
        payload = await self._call("GET", "/tasks")
        return parse_task_list(payload)

    async def get_task(self, task_id: int) -> Optional[Task]:
        result = await self._call("GET", f"/tasks/{task_id}", allow_not_found=True)
        return self._expect_task(result, "getTask")

    async def create_task(self, payload: Dict[str, Any]) -> Task:
        body = {k: v for k, v in payload.items() if v is not None}
        result = await self._call("POST", "/tasks", body)
        task = self._expect_task(result, "createTask")
        if task is None:
            raise CloudRequestError("Cloud createTask returned no task.")
        return task

    async def update_task(self, task_id: int, updates: Dict[str, Any]) -> Optional[Task]:
        result = await self._call("PUT", f"/tasks/{task_id}", dict(updates), allow_not_found=True)
        return self._expect_task(result, "updateTask")

    async def move_task(self, task_id: int, column: Any) -> Optional[Task]:
        if isinstance(column, TaskColumn):
            column = column.value
        result = await self._call("PUT", f"/tasks/{task_id}/move", {"column": column}, allow_not_found=True)
        return self._expect_task(result, "moveTask")

    async def delete_task(self, task_id: int) -> bool:
        result = await self._call("DELETE", f"/tasks/{task_id}", allow_not_found=True)
        return not isinstance(result, NotFound)
