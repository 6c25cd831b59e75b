#!/usr/bin/env python3
"""
Entity Task Server
------------------
JSON API over the task sync facade, the activity log and workspace files, plus
a Server-Sent Events stream that pushes every change to connected viewers.

Usage:
    python entity_server.py
    python entity_server.py --config config/entity.yaml --port 3001

API (every route is served under /api and at the root):
    GET    /db-mode               → { mode, cloudConfigured }
    POST   /db-mode               → body { mode: "LOCAL"|"CLOUD"|null }
    GET    /activities?limit=N    → { activities }
    POST   /activities            → body { type, action, description, ... }
    GET    /tasks                 → { tasks }
    GET    /tasks/<id>            → task
    POST   /tasks                 → body { name, description?, column?, assignee?, metadata? }
    PUT    /tasks/<id>            → body: any subset of the task fields
    PUT    /tasks/<id>/move       → body { column }
    DELETE /tasks/<id>            → 204
    GET    /file?path=            → { content, size, mtime }
    PUT    /file?path=            → body { content }
    POST   /file                  → body { path, content }
    DELETE /file?path=
    POST   /file/move             → body { from, to }
    GET    /events                → text/event-stream
    GET    /health                → { status, db, mode }

Mutating routes require X-API-Key when ENTITY_API_SECRET (or api_secret in
the config file) is set.
"""

import argparse
import hmac
import inspect
import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    jsonify,
    request,
    stream_with_context,
)

from pkg.entity.activity import (
    ActivityLog,
    ActivityValidationError,
    file_activity,
    task_activity,
)
from pkg.entity.broadcast import (
    ACTIVITY_CREATED,
    FILE_CHANGED,
    FILE_CREATED,
    FILE_DELETED,
    FILE_MOVED,
    TASK_CREATED,
    TASK_DELETED,
    TASK_MOVED,
    TASK_UPDATED,
    Broadcaster,
    RegistryFull,
    sse_stream,
)
from pkg.entity.cloud import CloudRequestError
from pkg.entity.config import ConfigError, EntityConfig
from pkg.entity.schema import TaskColumn, TaskValidationError, clean_text
from pkg.entity.sync import TaskSyncFacade, normalize_mode

logger = logging.getLogger("entity_server")

bp = Blueprint("entity", __name__)


class WorkspacePathError(ValueError):
    """Raised when a requested file path escapes the workspace."""
    pass


@dataclass
class EntityServices:
    config: EntityConfig
    facade: TaskSyncFacade
    activity_log: ActivityLog
    broadcaster: Broadcaster


def services() -> EntityServices:
    return current_app.extensions["entity"]


# ── Auth ─────────────────────────────────────────────────────────────────────


def require_api_key(f):
    """Decorator: when a secret is configured, reject requests without a valid X-API-Key."""
    @wraps(f)
    async def decorated(*args, **kwargs):
        secret = services().config.api_secret
        if secret:
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
        result = f(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────


def _json_body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _publish(event: Dict[str, Any]) -> None:
    services().broadcaster.broadcast(event)


def _log_activity(fields: Dict[str, Any]) -> None:
    """Append and broadcast one activity. Failures are logged, never raised."""
    try:
        activity = services().activity_log.create_activity(**fields)
    except (ActivityValidationError, sqlite3.Error) as e:
        logger.error("Failed to log activity: %s", e)
        return
    _publish({"type": ACTIVITY_CREATED, "activity": activity.to_dict()})


def safe_path(workspace: str, raw: Any) -> Path:
    """
    Resolve `raw` (absolute or workspace-relative) and assert it stays within
    the workspace.
    """
    text = clean_text(raw)
    if not text:
        raise WorkspacePathError("path required")
    base = Path(workspace).resolve()
    resolved = (base / text).resolve()
    if resolved != base and base not in resolved.parents:
        raise WorkspacePathError(f"Path escapes workspace: {text}")
    return resolved


# ── Sync mode ────────────────────────────────────────────────────────────────


def _mode_payload():
    facade = services().facade
    return jsonify({
        "mode": facade.get_mode().value,
        "cloudConfigured": facade.has_cloud_adapter(),
    })


@bp.route("/db-mode", methods=["GET"])
def db_mode_get():
    return _mode_payload()


@bp.route("/db-mode", methods=["POST"])
@require_api_key
def db_mode_set():
    data = _json_body()
    raw = data.get("mode")
    mode = normalize_mode(raw)
    if "mode" not in data or (raw is not None and mode is None):
        return jsonify({"error": "mode must be LOCAL, CLOUD, or null"}), 400
    services().facade.set_mode(mode)
    return _mode_payload()


# ── Activities ───────────────────────────────────────────────────────────────


@bp.route("/activities", methods=["GET"])
def activities_list():
    limit = request.args.get("limit", type=int)
    activities = services().activity_log.list_activities(limit)
    return jsonify({"activities": [a.to_dict() for a in activities]})


@bp.route("/activities", methods=["POST"])
@require_api_key
def activities_create():
    data = _json_body()
    try:
        activity = services().activity_log.create_activity(
            type=data.get("type"),
            action=data.get("action"),
            description=data.get("description"),
            source=data.get("source"),
            agent_name=data.get("agent_name", data.get("agentName")),
            agent_emoji=data.get("agent_emoji", data.get("agentEmoji")),
            file_path=data.get("file_path", data.get("filePath")),
            task_id=data.get("task_id", data.get("taskId")),
            task_column=data.get("task_column", data.get("taskColumn")),
            metadata=data.get("metadata"),
        )
    except ActivityValidationError as e:
        return jsonify({"error": str(e)}), 400
    _publish({"type": ACTIVITY_CREATED, "activity": activity.to_dict()})
    return jsonify(activity.to_dict()), 201


# ── Tasks ────────────────────────────────────────────────────────────────────


@bp.route("/tasks", methods=["GET"])
async def tasks_list():
    tasks = await services().facade.list_tasks()
    return jsonify({"tasks": [t.to_dict() for t in tasks]})


@bp.route("/tasks/<task_id>", methods=["GET"])
async def tasks_get(task_id):
    task = await services().facade.get_task(task_id)
    if task is None:
        return jsonify({"error": "task not found"}), 404
    return jsonify(task.to_dict())


@bp.route("/tasks", methods=["POST"])
@require_api_key
async def tasks_create():
    data = _json_body()
    task = await services().facade.create_task({
        "name": data.get("name"),
        "description": data.get("description"),
        "column": data.get("column"),
        "assignee": data.get("assignee"),
        "metadata": data.get("metadata"),
    })
    _log_activity(task_activity("created", task))
    _publish({"type": TASK_CREATED, "task": task.to_dict()})
    return jsonify(task.to_dict()), 201


@bp.route("/tasks/<task_id>", methods=["PUT"])
@require_api_key
async def tasks_update(task_id):
    facade = services().facade
    data = _json_body()
    if "column" in data and TaskColumn.parse(data["column"]) is None:
        return jsonify({"error": "invalid column"}), 400
    previous = await facade.get_task(task_id)
    if previous is None:
        return jsonify({"error": "task not found"}), 404

    updates = {k: data[k] for k in ("name", "description", "column", "assignee", "metadata") if k in data}
    task = await facade.update_task(previous.id, updates)
    if task is None:
        return jsonify({"error": "task not found"}), 404

    _log_activity(task_activity("updated", task, previous))
    _publish({"type": TASK_UPDATED, "task": task.to_dict()})
    return jsonify(task.to_dict())


@bp.route("/tasks/<task_id>/move", methods=["PUT"])
@require_api_key
async def tasks_move(task_id):
    facade = services().facade
    column = TaskColumn.parse(_json_body().get("column"))
    if column is None:
        return jsonify({"error": "valid column required"}), 400

    previous = await facade.get_task(task_id)
    if previous is None:
        return jsonify({"error": "task not found"}), 404
    task = await facade.move_task(previous.id, column)
    if task is None:
        return jsonify({"error": "task not found"}), 404

    _log_activity(task_activity("moved", task, previous))
    _publish({"type": TASK_MOVED, "taskId": task.id, "column": task.column.value})
    return jsonify(task.to_dict())


@bp.route("/tasks/<task_id>", methods=["DELETE"])
@require_api_key
async def tasks_delete(task_id):
    facade = services().facade
    task = await facade.get_task(task_id)
    if task is None:
        return jsonify({"error": "task not found"}), 404
    if not await facade.delete_task(task.id):
        return jsonify({"error": "task not found"}), 404

    _log_activity(task_activity("deleted", task))
    _publish({"type": TASK_DELETED, "taskId": task.id})
    return "", 204


# ── Workspace files ──────────────────────────────────────────────────────────


@bp.route("/file", methods=["GET"])
def file_read():
    path = safe_path(services().config.workspace, request.args.get("path"))
    if not path.is_file():
        return jsonify({"error": "file not found"}), 404
    stats = path.stat()
    return jsonify({
        "content": path.read_text(encoding="utf-8"),
        "size": stats.st_size,
        "mtime": datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat(),
    })


@bp.route("/file", methods=["PUT"])
@require_api_key
def file_write():
    workspace = services().config.workspace
    path = safe_path(workspace, request.args.get("path"))
    content = _json_body().get("content")
    if not isinstance(content, str):
        return jsonify({"error": "content must be a string"}), 400

    path.write_text(content, encoding="utf-8")
    _log_activity(file_activity("changed", str(path), workspace))
    _publish({"type": FILE_CHANGED, "path": str(path), "content": content})
    return jsonify({"success": True})


@bp.route("/file", methods=["POST"])
@require_api_key
def file_create():
    workspace = services().config.workspace
    data = _json_body()
    path = safe_path(workspace, data.get("path"))
    content = data.get("content")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content if isinstance(content, str) else "", encoding="utf-8")
    _log_activity(file_activity("created", str(path), workspace))
    _publish({"type": FILE_CREATED, "path": str(path)})
    return jsonify({"success": True})


@bp.route("/file", methods=["DELETE"])
@require_api_key
def file_delete():
    workspace = services().config.workspace
    path = safe_path(workspace, request.args.get("path"))
    if not path.is_file():
        return jsonify({"error": "file not found"}), 404

    path.unlink()
    _log_activity(file_activity("deleted", str(path), workspace))
    _publish({"type": FILE_DELETED, "path": str(path)})
    return jsonify({"success": True})


@bp.route("/file/move", methods=["POST"])
@require_api_key
def file_move():
    workspace = services().config.workspace
    data = _json_body()
    if not clean_text(data.get("from")) or not clean_text(data.get("to")):
        return jsonify({"error": "from and to required"}), 400
    source = safe_path(workspace, data["from"])
    target = safe_path(workspace, data["to"])
    if not source.exists():
        return jsonify({"error": "file not found"}), 404

    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
    _log_activity(file_activity("moved", str(source), workspace, destination=str(target)))
    _publish({"type": FILE_MOVED, "from": str(source), "to": str(target)})
    return jsonify({"success": True})


# ── Live events ──────────────────────────────────────────────────────────────


@bp.route("/events")
def events():
    svc = services()
    try:
        viewer = svc.broadcaster.connect()
    except RegistryFull as e:
        return jsonify({"error": str(e)}), 503
    stream = sse_stream(svc.broadcaster, viewer, svc.config.keepalive_secs)
    return Response(
        stream_with_context(stream),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@bp.route("/health")
def health():
    svc = services()
    return jsonify({
        "status": "ok",
        "db": svc.facade.local.store.db_path,
        "mode": svc.facade.get_mode().value,
    })


# ── Errors ───────────────────────────────────────────────────────────────────


def _bad_request(e):
    return jsonify({"error": str(e)}), 400


def _server_error(e):
    logger.error("Request failed: %s", e)
    return jsonify({"error": str(e)}), 500


# ── App factory ──────────────────────────────────────────────────────────────


def create_app(
    config: Optional[EntityConfig] = None,
    facade: Optional[TaskSyncFacade] = None,
    activity_log: Optional[ActivityLog] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> Flask:
    """Build the Flask app; services not passed in are built from `config`."""
    config = config or EntityConfig.load()
    facade = facade or TaskSyncFacade.from_config(config)
    activity_log = activity_log or ActivityLog(facade.local.store)
    broadcaster = broadcaster or Broadcaster(config.max_viewers, config.viewer_queue_size)

    app = Flask(__name__)
    app.extensions["entity"] = EntityServices(config, facade, activity_log, broadcaster)

    app.register_blueprint(bp, url_prefix="/api", name="api")
    app.register_blueprint(bp)

    app.register_error_handler(TaskValidationError, _bad_request)
    app.register_error_handler(WorkspacePathError, _bad_request)
    app.register_error_handler(CloudRequestError, _server_error)
    app.register_error_handler(sqlite3.Error, _server_error)
    app.register_error_handler(OSError, _server_error)
    app.register_error_handler(UnicodeDecodeError, _server_error)
    return app


# ── Main ─────────────────────────────────────────────────────────────────────


def main(argv=None):
    parser = argparse.ArgumentParser(description="Entity Task Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3001)
    parser.add_argument("--config", help="Path to entity.yaml")
    parser.add_argument("--db", help="Path to the task database (overrides ENTITY_TASK_DB_PATH)")
    args = parser.parse_args(argv)

    try:
        config = EntityConfig.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)
    if args.db:
        config.db_path = str(Path(args.db).expanduser())

    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s [entity-server] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app = create_app(config)
    facade = app.extensions["entity"].facade
    logger.info("Serving on http://%s:%d", args.host, args.port)
    logger.info("DB: %s  Mode: %s  Workspace: %s",
                config.db_path, facade.get_mode().value, config.workspace)

    # Each SSE viewer holds a worker thread for the life of its stream
    app.run(host=args.host, port=args.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
