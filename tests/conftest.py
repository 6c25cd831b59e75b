"""Shared test fixtures for the entity sync core and server."""

import pytest

from pkg.entity.activity import ActivityLog
from pkg.entity.broadcast import Broadcaster
from pkg.entity.config import EntityConfig
from pkg.entity.local import LocalTaskAdapter
from pkg.entity.store import EntityStore
from pkg.entity.sync import TaskSyncFacade


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "entity-tasks.db")


@pytest.fixture
def store(db_path):
    return EntityStore(db_path)


@pytest.fixture
def facade(store):
    """Local-only facade that ignores the real process environment."""
    return TaskSyncFacade(LocalTaskAdapter(store), environ={})


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def config(tmp_path, db_path, workspace):
    return EntityConfig(
        db_path=db_path,
        legacy_db_path=str(tmp_path / "missing-legacy.db"),
        workspace=str(workspace),
        keepalive_secs=0.05,
    ).resolve(environ={})


@pytest.fixture
def broadcaster():
    return Broadcaster(max_viewers=4, max_pending=16)


@pytest.fixture
def app(config, facade, store, broadcaster):
    from entity_server import create_app
    return create_app(config, facade=facade, activity_log=ActivityLog(store), broadcaster=broadcaster)


@pytest.fixture
def client(app):
    return app.test_client()
