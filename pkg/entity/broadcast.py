"""
Fan-out of state changes to live viewers.

Each viewer owns a bounded queue that its Server-Sent Events stream drains.
Delivery is best-effort and at-most-once: no acknowledgement, no retry, and
a viewer that connects later never sees earlier events.
"""
import itertools
import json
import logging
import queue
import threading
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Wire event types
TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"
TASK_MOVED = "task:moved"
TASK_DELETED = "task:deleted"
ACTIVITY_CREATED = "activity:created"
FILE_CHANGED = "file:changed"
FILE_CREATED = "file:created"
FILE_DELETED = "file:deleted"
FILE_MOVED = "file:moved"


class RegistryFull(Exception):
    """Raised when the viewer registry is at capacity."""
    pass


class ViewerClosed(Exception):
    """Raised when sending to a viewer whose connection has closed."""
    pass


class ViewerConnection:
    """One live viewer: a bounded outbox plus an open flag."""

    def __init__(self, viewer_id: int, max_pending: int = 256):
        self.viewer_id = viewer_id
        self.outbox: "queue.Queue[str]" = queue.Queue(maxsize=max_pending)
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, message: str) -> None:
        """Queue one serialized event; raises if closed or backed up."""
        if not self._open:
            raise ViewerClosed(f"viewer {self.viewer_id} is closed")
        try:
            self.outbox.put_nowait(message)
        except queue.Full:
            raise ViewerClosed(f"viewer {self.viewer_id} outbox full") from None

    def close(self) -> None:
        self._open = False

    def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next message, or None when `timeout` passes with nothing queued."""
        try:
            return self.outbox.get(timeout=timeout)
        except queue.Empty:
            return None


class Broadcaster:
    """Bounded registry of viewers with explicit connect/disconnect hooks."""

    def __init__(self, max_viewers: int = 64, max_pending: int = 256):
        self.max_viewers = max_viewers
        self.max_pending = max_pending
        self._viewers: Dict[int, ViewerConnection] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def connect(self) -> ViewerConnection:
        with self._lock:
            if len(self._viewers) >= self.max_viewers:
                raise RegistryFull(f"viewer limit {self.max_viewers} reached")
            viewer = ViewerConnection(next(self._ids), self.max_pending)
            self._viewers[viewer.viewer_id] = viewer
            count = len(self._viewers)
        logger.info("Viewer %d connected (%d total)", viewer.viewer_id, count)
        return viewer

    def disconnect(self, viewer: ViewerConnection) -> None:
        viewer.close()
        with self._lock:
            removed = self._viewers.pop(viewer.viewer_id, None)
            count = len(self._viewers)
        if removed is not None:
            logger.info("Viewer %d disconnected (%d total)", viewer.viewer_id, count)

    @property
    def viewer_count(self) -> int:
        with self._lock:
            return len(self._viewers)

    def broadcast(self, event: Dict[str, Any]) -> int:
        """
        Serialize once and hand the message to every open viewer.

        Viewers that are closed or cannot accept the message are pruned; one
        failure never stops delivery to the rest. Returns the delivered count.
        """
        message = json.dumps(event)
        with self._lock:
            viewers: List[ViewerConnection] = list(self._viewers.values())

        delivered = 0
        dead = []
        for viewer in viewers:
            if not viewer.is_open:
                dead.append(viewer)
                continue
            try:
                viewer.send(message)
                delivered += 1
            except ViewerClosed as e:
                logger.warning("Dropping viewer: %s", e)
                dead.append(viewer)

        for viewer in dead:
            self.disconnect(viewer)
        return delivered


def sse_stream(broadcaster: Broadcaster, viewer: ViewerConnection,
               keepalive_secs: float = 30.0) -> Iterator[str]:
    """
    Server-Sent Events frames for one viewer.

    Starts with a "connected" frame, then one `data:` frame per event and a
    keepalive comment after each quiet interval. Closing the stream runs the
    disconnect hook.
    """
    try:
        yield f"data: {json.dumps({'type': 'connected'})}\n\n"
        while viewer.is_open:
            message = viewer.receive(timeout=keepalive_secs)
            if message is None:
                yield ": keepalive\n\n"
                continue
            yield f"data: {message}\n\n"
    finally:
        broadcaster.disconnect(viewer)
