"""Delay-visibility message queues carrying kill requests."""

import heapq
import itertools
import json
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from procwatch.errors import QueueError


@dataclass(slots=True, frozen=True)
class QueueMessage:
    """A delivered message; pass it back to ``acknowledge`` to delete it."""

    id: int
    body: dict[str, Any]
    receive_count: int = 1


class DelayQueue(Protocol):
    """
    Queue with delayed visibility and delete-on-acknowledge semantics.

    A message enqueued with a delay is not delivered before the delay has
    elapsed. A delivered message is hidden for the queue's time in flight and
    delivered again afterwards unless it was acknowledged.
    """

    def enqueue(self, body: dict[str, Any], delay_seconds: int = 0) -> None: ...

    def dequeue(self) -> QueueMessage | None: ...

    def acknowledge(self, message: QueueMessage) -> None: ...


@dataclass(order=True)
class _Pending:
    visible_at: float
    id: int
    body: dict[str, Any] = field(compare=False)
    receive_count: int = field(default=0, compare=False)


class MemoryDelayQueue:
    """
    In-process delay queue.

    Useful for tests and for a launcher and watchdog living in one process.
    Safe to share between threads.
    """

    def __init__(
        self,
        time_in_flight: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the MemoryDelayQueue.

        Args:
            time_in_flight: Seconds a delivered message stays hidden.
            clock: Time source, injectable for tests.
        """
        self._time_in_flight = max(0.0, time_in_flight)
        self._clock = clock
        self._heap: list[_Pending] = []
        self._in_flight: dict[int, _Pending] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def enqueue(self, body: dict[str, Any], delay_seconds: int = 0) -> None:
        pending = _Pending(
            visible_at=self._clock() + max(0, delay_seconds),
            id=next(self._ids),
            body=dict(body),
        )
        with self._lock:
            heapq.heappush(self._heap, pending)

    def dequeue(self) -> QueueMessage | None:
        now = self._clock()
        with self._lock:
            self._restore_expired(now)
            if not self._heap or self._heap[0].visible_at > now:
                return None
            pending = heapq.heappop(self._heap)
            pending.receive_count += 1
            pending.visible_at = now + self._time_in_flight
            self._in_flight[pending.id] = pending
            return QueueMessage(
                id=pending.id, body=dict(pending.body), receive_count=pending.receive_count
            )

    def acknowledge(self, message: QueueMessage) -> None:
        with self._lock:
            if self._in_flight.pop(message.id, None) is not None:
                return
            # Already back in the ready heap after its time in flight ran out
            self._heap = [pending for pending in self._heap if pending.id != message.id]
            heapq.heapify(self._heap)

    def count(self) -> int:
        """Messages stored, visible or not."""
        with self._lock:
            return len(self._heap) + len(self._in_flight)

    def is_empty(self) -> bool:
        return self.count() == 0

    def purge(self) -> None:
        with self._lock:
            self._heap.clear()
            self._in_flight.clear()

    def _restore_expired(self, now: float) -> None:
        expired = [pending for pending in self._in_flight.values() if pending.visible_at <= now]
        for pending in expired:
            del self._in_flight[pending.id]
            heapq.heappush(self._heap, pending)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS procwatch_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    body TEXT NOT NULL,
    visible_at REAL NOT NULL,
    created_at REAL NOT NULL,
    receive_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS procwatch_messages_due
    ON procwatch_messages (queue, visible_at, id);
"""


class SqliteDelayQueue:
    """
    Delay queue stored in a SQLite file, shared between processes.

    A message is claimed under ``BEGIN IMMEDIATE`` so two watchdog passes
    never receive the same message at the same time.
    """

    def __init__(
        self,
        path: str | Path,
        name: str = "pid_killer",
        time_in_flight: float = 30.0,
        busy_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the SqliteDelayQueue.

        Args:
            path: Database file (``":memory:"`` for a private queue).
            name: Queue name; several queues may share one file.
            time_in_flight: Seconds a delivered message stays hidden.
            busy_timeout: Seconds to wait for another process's write lock.
            clock: Wall-clock time source, injectable for tests.

        Raises:
            QueueError: If the database cannot be opened or initialized.
        """
        if not name or any(char.isspace() for char in name):
            raise ValueError(f"Invalid queue name: {name!r}")
        self._name = name
        self._time_in_flight = max(0.0, time_in_flight)
        self._clock = clock
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                str(path), timeout=busy_timeout, isolation_level=None, check_same_thread=False
            )
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise QueueError(f"Cannot open queue database {path}: {exc}") from exc

    @property
    def name(self) -> str:
        return self._name

    def enqueue(self, body: dict[str, Any], delay_seconds: int = 0) -> None:
        now = self._clock()
        try:
            payload = json.dumps(body, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise QueueError(f"Message body is not JSON serializable: {exc}") from exc
        self._execute(
            "INSERT INTO procwatch_messages (queue, body, visible_at, created_at)"
            " VALUES (?, ?, ?, ?)",
            (self._name, payload, now + max(0, delay_seconds), now),
        )

    def dequeue(self) -> QueueMessage | None:
        now = self._clock()
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    row = self._conn.execute(
                        "SELECT id, body, receive_count FROM procwatch_messages"
                        " WHERE queue = ? AND visible_at <= ?"
                        " ORDER BY visible_at, id LIMIT 1",
                        (self._name, now),
                    ).fetchone()
                    if row is not None:
                        self._conn.execute(
                            "UPDATE procwatch_messages"
                            " SET visible_at = ?, receive_count = receive_count + 1"
                            " WHERE id = ?",
                            (now + self._time_in_flight, row[0]),
                        )
                    self._conn.execute("COMMIT")
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise QueueError(f"Cannot receive from queue {self._name!r}: {exc}") from exc

        if row is None:
            return None
        message_id, payload, receive_count = row
        try:
            body = json.loads(payload)
        except ValueError:
            body = {"raw": payload}
        if not isinstance(body, dict):
            body = {"raw": body}
        return QueueMessage(id=message_id, body=body, receive_count=receive_count + 1)

    def acknowledge(self, message: QueueMessage) -> None:
        self._execute(
            "DELETE FROM procwatch_messages WHERE queue = ? AND id = ?",
            (self._name, message.id),
        )

    def count(self) -> int:
        """Messages stored, visible or not."""
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM procwatch_messages WHERE queue = ?", (self._name,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise QueueError(f"Cannot count queue {self._name!r}: {exc}") from exc
        return int(row[0])

    def is_empty(self) -> bool:
        return self.count() == 0

    def purge(self) -> None:
        self._execute("DELETE FROM procwatch_messages WHERE queue = ?", (self._name,))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise QueueError(f"Queue {self._name!r} operation failed: {exc}") from exc
