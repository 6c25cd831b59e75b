#!/usr/bin/env python3
"""
Quick verification that the task sync core works end-to-end.
"""
import asyncio
import tempfile
from pathlib import Path

from pkg.entity.activity import ActivityLog, task_activity
from pkg.entity.broadcast import Broadcaster
from pkg.entity.local import LocalTaskAdapter
from pkg.entity.store import EntityStore
from pkg.entity.sync import TaskSyncFacade


async def run(db_path: str):
    # Create store and facade
    print("\n[1/5] Creating SQLite store and local facade...")
    store = EntityStore(db_path)
    facade = TaskSyncFacade(LocalTaskAdapter(store), environ={})
    activity_log = ActivityLog(store)
    broadcaster = Broadcaster()
    viewer = broadcaster.connect()
    print(f"✅ Mode: {facade.get_mode().value}")

    print("\n[2/5] Creating task...")
    task = await facade.create_task({"name": "Deploy staging", "column": "todo"})
    activity_log.create_activity(**task_activity("created", task))
    broadcaster.broadcast({"type": "task:created", "task": task.to_dict()})
    print(f"✅ Task {task.id}: {task.name} ({task.column.value})")

    print("\n[3/5] Moving task to done...")
    moved = await facade.move_task(task.id, "done")
    activity_log.create_activity(**task_activity("moved", moved, previous=task))
    broadcaster.broadcast({"type": "task:moved", "taskId": moved.id, "column": moved.column.value})
    print(f"   → Column: {moved.column.value}")
    print(f"   → updated_at advanced: {moved.updated_at > task.updated_at}")

    print("\n[4/5] Reading activity feed...")
    for activity in activity_log.list_activities(10):
        print(f"   {activity.type.value:<16} {activity.description}")

    print("\n[5/5] Draining viewer queue...")
    while True:
        message = viewer.receive(timeout=0)
        if message is None:
            break
        print(f"   {message}")
    broadcaster.disconnect(viewer)


def main():
    print("=" * 60)
    print("Entity Sync Core Verification")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run(str(Path(tmp) / "entity-tasks.db")))

    print("\n" + "=" * 60)
    print("✅ ALL CHECKS PASSED")
    print("=" * 60)


if __name__ == "__main__":
    main()
