"""
Tests for broadcast fan-out.

Covers:
    - Broadcaster registry  — bounded connect, disconnect hook
    - broadcast()           — serialize once, prune dead viewers
    - sse_stream()          — connected frame, data frames, keepalive, cleanup
"""

import json
from unittest.mock import patch

import pytest

from pkg.entity.broadcast import (
    TASK_MOVED,
    Broadcaster,
    RegistryFull,
    ViewerClosed,
    ViewerConnection,
    sse_stream,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Registry
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_connect_is_bounded():
    broadcaster = Broadcaster(max_viewers=2)
    broadcaster.connect()
    broadcaster.connect()
    with pytest.raises(RegistryFull):
        broadcaster.connect()
    assert broadcaster.viewer_count == 2


def test_disconnect_frees_a_slot():
    broadcaster = Broadcaster(max_viewers=1)
    viewer = broadcaster.connect()
    broadcaster.disconnect(viewer)

    assert not viewer.is_open
    assert broadcaster.viewer_count == 0
    broadcaster.connect()


def test_send_to_closed_viewer_raises():
    viewer = ViewerConnection(1)
    viewer.close()
    with pytest.raises(ViewerClosed):
        viewer.send("{}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Fan-out
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_broadcast_reaches_every_viewer():
    broadcaster = Broadcaster()
    viewers = [broadcaster.connect() for _ in range(3)]
    event = {"type": TASK_MOVED, "taskId": 1, "column": "done"}

    assert broadcaster.broadcast(event) == 3
    for viewer in viewers:
        assert json.loads(viewer.receive(timeout=0)) == event


def test_broadcast_serializes_once():
    broadcaster = Broadcaster()
    for _ in range(3):
        broadcaster.connect()
    with patch("pkg.entity.broadcast.json.dumps", wraps=json.dumps) as dumps:
        broadcaster.broadcast({"type": "task:deleted", "taskId": 2})
    assert dumps.call_count == 1


def test_backed_up_viewer_is_pruned_without_blocking_others():
    broadcaster = Broadcaster(max_pending=1)
    slow = broadcaster.connect()
    fast = broadcaster.connect()

    assert broadcaster.broadcast({"n": 1}) == 2
    fast.receive(timeout=0)
    # slow never drained its single slot
    assert broadcaster.broadcast({"n": 2}) == 1

    assert not slow.is_open
    assert broadcaster.viewer_count == 1
    assert json.loads(fast.receive(timeout=0)) == {"n": 2}


def test_closed_viewer_is_pruned():
    broadcaster = Broadcaster()
    gone = broadcaster.connect()
    stays = broadcaster.connect()
    gone.close()

    assert broadcaster.broadcast({"n": 1}) == 1
    assert broadcaster.viewer_count == 1
    assert stays.receive(timeout=0) is not None


def test_late_viewer_sees_no_replay():
    broadcaster = Broadcaster()
    broadcaster.broadcast({"n": 1})
    viewer = broadcaster.connect()
    assert viewer.receive(timeout=0) is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SSE framing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_sse_stream_frames_and_cleanup():
    broadcaster = Broadcaster()
    viewer = broadcaster.connect()
    stream = sse_stream(broadcaster, viewer, keepalive_secs=0.01)

    assert next(stream) == 'data: {"type": "connected"}\n\n'
    assert next(stream) == ": keepalive\n\n"

    broadcaster.broadcast({"type": "task:deleted", "taskId": 3})
    assert next(stream) == 'data: {"type": "task:deleted", "taskId": 3}\n\n'

    stream.close()
    assert broadcaster.viewer_count == 0
    assert not viewer.is_open
