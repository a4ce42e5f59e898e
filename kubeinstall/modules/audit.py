"""
Audit log of orchestration steps and live broadcast to subscribers.

Every remote command run on behalf of a batch or the bootstrap workflow is
recorded as a ``running`` entry at dispatch and updated exactly once to
``success`` or ``failed`` when it finishes. Each write is fanned out to live
subscribers (the ``/logs/stream`` SSE endpoint, ``kubeinstall logs follow``).
"""
import logging
import threading
import time
import uuid
from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional

from .errors import LogTransitionError
from .models import LogEntry, LogStatus, utcnow
from .store import LOGS, RecordStore

logger = logging.getLogger("kubeinstall.audit")

DEFAULT_BUFFER_SIZE = 100


def new_log_id() -> str:
    return f"{time.time_ns()}-{uuid.uuid4().hex[:6]}"


class Subscription:
    """A bounded queue of events for one live observer.

    When the buffer is full the oldest event is discarded so that a reader
    which stopped consuming never holds up a producer. ``dropped`` counts the
    discarded events.
    """

    def __init__(self, broadcaster: "Broadcaster", sub_id: str, maxlen: int):
        self.id = sub_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Dict[str, Any]) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Return the next event, or None on timeout or after close."""
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._closed, timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def _shutdown(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        while not self._closed:
            event = self.get(timeout=1.0)
            if event is not None:
                yield event

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Broadcaster:
    """Fan each published event out to every subscriber without blocking."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(self, buffer_size: Optional[int] = None) -> Subscription:
        sub = Subscription(self, f"sub_{time.time_ns()}_{uuid.uuid4().hex[:6]}", buffer_size or self.buffer_size)
        with self._lock:
            self._subscribers[sub.id] = sub
        logger.debug(f"Subscriber {sub.id} connected ({len(self._subscribers)} active)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.pop(sub.id, None)
        sub._shutdown()
        logger.debug(f"Subscriber {sub.id} disconnected")

    def publish(self, event: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for sub in subscribers:
            sub.offer(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class AuditLog:
    """Persisted log entries plus live broadcast."""

    def __init__(self, store: RecordStore, broadcaster: Optional[Broadcaster] = None):
        self.store = store
        self.broadcaster = broadcaster or Broadcaster()
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> LogEntry:
        """Persist an entry (upsert by id) and publish it."""
        with self._lock:
            existing = self.store.get(LOGS, entry.id)
            if existing and LogStatus(existing["status"]).terminal:
                raise LogTransitionError(f"log entry {entry.id} is already {existing['status']}")
            self.store.put(LOGS, entry.id, entry.to_dict())
        self.broadcaster.publish(entry.to_dict())
        return entry

    def update_status(self, entry_id: str, status: LogStatus, output: Optional[str] = None) -> LogEntry:
        """Move a running entry to its terminal status.

        Raises:
            KeyError: If the entry does not exist
            LogTransitionError: If the entry is already terminal
        """
        return self._complete(entry_id, LogStatus(status), output)

    def _complete(self, entry_id: str, status: LogStatus, output: Optional[str],
                  started: Optional[LogEntry] = None) -> LogEntry:
        with self._lock:
            record = self.store.get(LOGS, entry_id)
            if record is not None:
                entry = LogEntry.from_dict(record)
            elif started is not None:
                # cleared while the command was running
                logger.warning(f"Log entry {entry_id} was removed while running, writing it again")
                entry = LogEntry.from_dict(started.to_dict())
                entry.status = LogStatus.RUNNING
            else:
                raise KeyError(entry_id)
            if entry.status.terminal:
                raise LogTransitionError(
                    f"log entry {entry_id} cannot move from {entry.status.value} to {status.value}"
                )
            entry.status = status
            if output is not None:
                entry.output = output
            entry.updated_at = utcnow()
            self.store.put(LOGS, entry.id, entry.to_dict())
        self.broadcaster.publish(entry.to_dict())
        return entry

    def start(self, operation: str, command: str = "", node_id: str = "", node_name: str = "",
              output: str = "") -> LogEntry:
        return self.append(LogEntry(
            id=new_log_id(),
            node_id=node_id,
            node_name=node_name,
            operation=operation,
            command=command,
            output=output,
            status=LogStatus.RUNNING,
        ))

    def finish(self, entry: LogEntry, success: bool, output: str) -> LogEntry:
        """Complete an entry from ``start``, writing it again if the log was cleared meanwhile."""
        return self._complete(entry.id, LogStatus.SUCCESS if success else LogStatus.FAILED, output, entry)

    def record(self, operation: str, output: str, success: bool = True, node_id: str = "",
               node_name: str = "", command: str = "") -> LogEntry:
        """Write a single already-finished entry."""
        now = utcnow()
        return self.append(LogEntry(
            id=new_log_id(),
            node_id=node_id,
            node_name=node_name,
            operation=operation,
            command=command,
            output=output,
            status=LogStatus.SUCCESS if success else LogStatus.FAILED,
            created_at=now,
            updated_at=now,
        ))

    def list(self) -> List[LogEntry]:
        entries = [LogEntry.from_dict(r) for r in self.store.list(LOGS)]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def list_by_node(self, node_id: str) -> List[LogEntry]:
        return [e for e in self.list() if e.node_id == node_id]

    def clear(self) -> None:
        with self._lock:
            self.store.clear(LOGS)

    def subscribe(self, buffer_size: Optional[int] = None) -> Subscription:
        return self.broadcaster.subscribe(buffer_size)
