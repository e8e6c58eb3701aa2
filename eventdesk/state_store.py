from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from eventdesk.errors import UpstreamTimeout


logger = logging.getLogger(__name__)

LOCK_POLL_SECONDS = 0.05


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LockLease:
    store: StateStore
    key: str
    owner: str
    ttl_seconds: float
    lost: bool = False

    def ensure_held(self) -> None:
        """Extend the lease now, or raise if another owner has taken the key."""
        if self.lost or not self.store.try_acquire_lock(self.key, self.owner, self.ttl_seconds):
            self.lost = True
            raise UpstreamTimeout(f"Lock {self.key} expired before the write; try again shortly.")


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS advisory_locks (
            lock_key TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            actor_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def try_acquire_lock(self, key: str, owner: str, ttl_seconds: float) -> bool:
        """Take ``key`` for ``owner`` unless another owner holds an unexpired lease."""
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO advisory_locks(lock_key, owner, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(lock_key) DO UPDATE SET
                        owner = excluded.owner,
                        expires_at = excluded.expires_at
                    WHERE advisory_locks.expires_at <= ? OR advisory_locks.owner = excluded.owner
                    """,
                    (str(key), str(owner), now + float(ttl_seconds), now),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT owner FROM advisory_locks WHERE lock_key = ?",
                    (str(key),),
                ).fetchone()
        return row is not None and row["owner"] == str(owner)

    def release_lock(self, key: str, owner: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM advisory_locks WHERE lock_key = ? AND owner = ?",
                    (str(key), str(owner)),
                )
                conn.commit()

    def _renew_lease(self, lease: LockLease, stop: threading.Event) -> None:
        interval = max(LOCK_POLL_SECONDS, lease.ttl_seconds / 3)
        while not stop.wait(interval):
            try:
                renewed = self.try_acquire_lock(lease.key, lease.owner, lease.ttl_seconds)
            except sqlite3.Error as exc:
                logger.warning("Could not renew lock %s: %s", lease.key, exc)
                continue
            if not renewed:
                lease.lost = True
                logger.warning("Lost lock %s to another owner", lease.key)
                return

    @contextmanager
    def advisory_lock(self, key: str, *, ttl_seconds: float, wait_seconds: float) -> Iterator[LockLease]:
        """Hold a per-key lease for the duration of the block.

        A background thread renews the lease every third of ``ttl_seconds``
        while the block runs, so the TTL only bounds how long a crashed holder
        keeps the key. Raises ``UpstreamTimeout`` if the key stays busy for
        longer than ``wait_seconds``.
        """
        owner = uuid.uuid4().hex
        deadline = time.monotonic() + max(0.0, float(wait_seconds))
        while not self.try_acquire_lock(key, owner, ttl_seconds):
            if time.monotonic() >= deadline:
                logger.warning("Gave up waiting for lock %s after %ss", key, wait_seconds)
                raise UpstreamTimeout(f"Another request is already syncing {key}; try again shortly.")
            time.sleep(LOCK_POLL_SECONDS)

        lease = LockLease(store=self, key=key, owner=owner, ttl_seconds=float(ttl_seconds))
        stop = threading.Event()
        renewer = threading.Thread(
            target=self._renew_lease,
            args=(lease, stop),
            name=f"lease-{key}",
            daemon=True,
        )
        renewer.start()
        try:
            yield lease
        finally:
            stop.set()
            renewer.join()
            self.release_lock(key, owner)

    def record_audit_event(
        self,
        *,
        actor_id: str,
        item_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, actor_id, item_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), str(actor_id), str(item_id), action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, actor_id, item_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, actor_id, item_id, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
