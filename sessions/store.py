"""
Session Orchestrator — Session Store

SQLite-backed persistence for sessions, their interactions, driver events,
and the action ledger. The store is the single synchronization point for
concurrent callers:

  - every façade call runs inside ``transaction()`` (BEGIN IMMEDIATE)
  - session rows carry a version; a stale update raises ConcurrentUpdateError
  - a partial unique index allows at most one pending interaction per session
  - completing an interaction only succeeds while its result is still NULL
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from sessions.errors import ConcurrentUpdateError, InteractionAlreadyCompleted
from sessions.types import (
    Command,
    EventType,
    ExecutionMode,
    Interaction,
    Result,
    Session,
    SessionEvent,
    SessionStatus,
)


class _Transaction:
    """
    SQLite transaction context manager.

    Re-entrant: a nested transaction() joins the outer one. While active,
    individual writes skip their commit; the real COMMIT happens when the
    outermost block exits cleanly.
    """
    def __init__(self, store: SessionStore):
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        if self.store._tx_depth == 0:
            try:
                self.store.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                self.store._lock.release()
                raise
        self.store._tx_depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.store._tx_depth -= 1
            if self.store._tx_depth == 0:
                if exc_type is None:
                    self.store.conn.commit()
                else:
                    self.store.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class SessionStore:
    """SQLite-backed store for sessions and interactions."""

    def __init__(self, db_path: str | Path = "sessions.db", busy_timeout: int = 5000):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout)}")
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._create_tables()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self.in_transaction:
            self.conn.commit()

    def transaction(self) -> _Transaction:
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                session = store.get_session(sid)
                store.add_interaction(interaction)
                store.update_session(session)
                # Both committed atomically, or both rolled back
        """
        return _Transaction(self)

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    workflow_type TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    user_id TEXT DEFAULT '',
                    project_id TEXT DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'active',
                    subject TEXT DEFAULT '{}',
                    state TEXT DEFAULT '{}',
                    parent_session_id TEXT,
                    execution_mode TEXT NOT NULL DEFAULT 'manual',
                    correlation_id TEXT DEFAULT '',
                    external_conversation_id TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS interactions (
                    interaction_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    step_id TEXT NOT NULL,
                    command TEXT NOT NULL,
                    result TEXT,
                    created_at REAL NOT NULL,
                    completed_at REAL,
                    UNIQUE (session_id, sequence)
                );

                CREATE TABLE IF NOT EXISTS session_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    data TEXT DEFAULT '{}',
                    sent_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS action_ledger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    correlation_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    details TEXT NOT NULL,
                    idempotency_key TEXT UNIQUE,
                    created_at REAL NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_interactions_one_pending
                    ON interactions(session_id) WHERE result IS NULL;
                CREATE INDEX IF NOT EXISTS idx_sessions_account ON sessions(account_id);
                CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(parent_session_id);
                CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
                CREATE INDEX IF NOT EXISTS idx_events_session ON session_events(session_id);
                CREATE INDEX IF NOT EXISTS idx_ledger_session ON action_ledger(session_id);
            """)
            self._commit()

    # ─── Session CRUD ────────────────────────────────────────────────

    def insert_session(self, session: Session):
        with self._lock:
            self.conn.execute("""
                INSERT INTO sessions
                (session_id, workflow_type, account_id, user_id, project_id,
                 status, subject, state, parent_session_id, execution_mode,
                 correlation_id, external_conversation_id, version,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session.session_id, session.workflow_type, session.account_id,
                session.user_id, session.project_id, session.status.value,
                json.dumps(session.subject), json.dumps(session.state, default=str),
                session.parent_session_id, session.execution_mode.value,
                session.correlation_id, session.external_conversation_id,
                session.version, session.created_at, session.updated_at,
            ))
            self._commit()

    def update_session(self, session: Session):
        """
        Persist session fields, guarded by the version the caller loaded.
        Raises ConcurrentUpdateError if another writer got there first.
        """
        with self._lock:
            session.updated_at = time.time()
            cursor = self.conn.execute("""
                UPDATE sessions SET
                    status = ?, state = ?, subject = ?, execution_mode = ?,
                    external_conversation_id = ?, parent_session_id = ?,
                    version = version + 1, updated_at = ?
                WHERE session_id = ? AND version = ?
            """, (
                session.status.value, json.dumps(session.state, default=str),
                json.dumps(session.subject), session.execution_mode.value,
                session.external_conversation_id, session.parent_session_id,
                session.updated_at, session.session_id, session.version,
            ))
            if cursor.rowcount == 0:
                raise ConcurrentUpdateError(
                    f"Session {session.session_id} was modified concurrently "
                    f"(expected version {session.version})"
                )
            session.version += 1
            self._commit()

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if not row:
                return None
            return self._hydrate(row)

    def list_sessions(
        self,
        account_id: str | None = None,
        project_id: str | None = None,
        status: SessionStatus | None = None,
        workflow_type: str | None = None,
        parent_session_id: str | None = None,
        limit: int = 500,
    ) -> list[Session]:
        query = "SELECT * FROM sessions WHERE 1=1"
        params: list[Any] = []
        if account_id:
            query += " AND account_id = ?"
            params.append(account_id)
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if workflow_type:
            query += " AND workflow_type = ?"
            params.append(workflow_type)
        if parent_session_id:
            query += " AND parent_session_id = ?"
            params.append(parent_session_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
            return [self._hydrate(r) for r in rows]

    def get_children(self, session_id: str) -> list[Session]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM sessions WHERE parent_session_id = ? ORDER BY created_at, rowid",
                (session_id,),
            ).fetchall()
            return [self._hydrate(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a session with its interactions and events.
        Children are detached, never deleted. The ledger is kept.
        """
        with self._lock:
            self.conn.execute(
                "UPDATE sessions SET parent_session_id = NULL, version = version + 1 "
                "WHERE parent_session_id = ?",
                (session_id,),
            )
            self.conn.execute("DELETE FROM interactions WHERE session_id = ?", (session_id,))
            self.conn.execute("DELETE FROM session_events WHERE session_id = ?", (session_id,))
            cursor = self.conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            self._commit()
            return cursor.rowcount > 0

    def _hydrate(self, row) -> Session:
        session = self._row_to_session(row)
        session.interactions = self.get_interactions(session.session_id)
        session.child_session_ids = [
            r["session_id"] for r in self.conn.execute(
                "SELECT session_id FROM sessions WHERE parent_session_id = ? "
                "ORDER BY created_at, rowid",
                (session.session_id,),
            ).fetchall()
        ]
        return session

    def _row_to_session(self, row) -> Session:
        return Session(
            session_id=row["session_id"],
            workflow_type=row["workflow_type"],
            account_id=row["account_id"],
            user_id=row["user_id"] or "",
            project_id=row["project_id"] or "",
            status=SessionStatus(row["status"]),
            subject=json.loads(row["subject"] or "{}"),
            state=json.loads(row["state"] or "{}"),
            parent_session_id=row["parent_session_id"],
            execution_mode=ExecutionMode(row["execution_mode"]),
            correlation_id=row["correlation_id"],
            external_conversation_id=row["external_conversation_id"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Interactions ────────────────────────────────────────────────

    def add_interaction(self, interaction: Interaction):
        """
        Insert a new pending interaction. A second pending interaction or a
        duplicate sequence number for the same session is a concurrent write.
        """
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO interactions
                    (interaction_id, session_id, sequence, step_id, command,
                     result, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    interaction.interaction_id, interaction.session_id,
                    interaction.sequence, interaction.step_id,
                    json.dumps(interaction.command.to_dict(), default=str),
                    json.dumps(interaction.result.to_dict(), default=str) if interaction.result else None,
                    interaction.created_at, interaction.completed_at,
                ))
            except sqlite3.IntegrityError as e:
                raise ConcurrentUpdateError(
                    f"Session {interaction.session_id} already has a pending "
                    f"interaction or sequence {interaction.sequence}"
                ) from e
            self._commit()

    def complete_interaction(self, interaction: Interaction):
        """Attach the result. Only succeeds once per interaction."""
        if interaction.result is None:
            raise ValueError("complete_interaction requires a result")
        with self._lock:
            cursor = self.conn.execute("""
                UPDATE interactions SET result = ?, completed_at = ?
                WHERE interaction_id = ? AND result IS NULL
            """, (
                json.dumps(interaction.result.to_dict(), default=str),
                interaction.completed_at,
                interaction.interaction_id,
            ))
            if cursor.rowcount == 0:
                raise InteractionAlreadyCompleted(
                    f"Interaction {interaction.interaction_id} is already completed"
                )
            self._commit()

    def get_interactions(self, session_id: str) -> list[Interaction]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM interactions WHERE session_id = ? ORDER BY sequence",
                (session_id,),
            ).fetchall()
            return [self._row_to_interaction(r) for r in rows]

    def get_interaction(self, interaction_id: str) -> Interaction | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM interactions WHERE interaction_id = ?", (interaction_id,)
            ).fetchone()
            return self._row_to_interaction(row) if row else None

    def _row_to_interaction(self, row) -> Interaction:
        return Interaction(
            interaction_id=row["interaction_id"],
            session_id=row["session_id"],
            step_id=row["step_id"],
            command=Command.from_dict(json.loads(row["command"])),
            sequence=row["sequence"],
            result=Result.from_dict(json.loads(row["result"])) if row["result"] else None,
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    # ─── Session Events ──────────────────────────────────────────────

    def append_event(self, event: SessionEvent) -> SessionEvent:
        with self._lock:
            cursor = self.conn.execute("""
                INSERT INTO session_events (session_id, event_type, data, sent_at)
                VALUES (?, ?, ?, ?)
            """, (
                event.session_id, event.event_type.value,
                json.dumps(event.data, default=str), event.sent_at or time.time(),
            ))
            event.event_id = cursor.lastrowid
            self._commit()
            return event

    def get_events(self, session_id: str, limit: int = 1000) -> list[SessionEvent]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM session_events WHERE session_id = ? ORDER BY id LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [
            SessionEvent(
                event_id=r["id"],
                session_id=r["session_id"],
                event_type=EventType(r["event_type"]),
                data=json.loads(r["data"] or "{}"),
                sent_at=r["sent_at"],
            )
            for r in rows
        ]

    # ─── Action Ledger ───────────────────────────────────────────────

    def log_action(
        self,
        session_id: str,
        correlation_id: str,
        action_type: str,
        details: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> bool:
        """
        Log an action to the ledger. Returns False if the idempotency
        key already exists.
        """
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO action_ledger
                    (session_id, correlation_id, action_type, details,
                     idempotency_key, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    session_id, correlation_id, action_type,
                    json.dumps(details, default=str),
                    idempotency_key, time.time(),
                ))
                self._commit()
                return True
            except sqlite3.IntegrityError:
                return False

    def get_ledger(
        self,
        session_id: str | None = None,
        correlation_id: str | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM action_ledger WHERE 1=1"
        params = []
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if correlation_id:
            query += " AND correlation_id = ?"
            params.append(correlation_id)
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            {
                "id": r["id"],
                "session_id": r["session_id"],
                "correlation_id": r["correlation_id"],
                "action_type": r["action_type"],
                "details": json.loads(r["details"]),
                "idempotency_key": r["idempotency_key"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self, account_id: str | None = None) -> dict[str, Any]:
        """Summary counts for dashboards and the CLI, optionally for one account."""
        where, params = ("WHERE s.account_id = ?", [account_id]) if account_id else ("", [])
        in_sessions = "SELECT session_id FROM sessions s " + where
        with self._lock:
            sessions = self.conn.execute(
                f"SELECT status, COUNT(*) as cnt FROM sessions s {where} GROUP BY status",
                params,
            ).fetchall()
            workflows = self.conn.execute(
                f"SELECT workflow_type, COUNT(*) as cnt FROM sessions s {where} "
                "GROUP BY workflow_type",
                params,
            ).fetchall()
            pending = self.conn.execute(
                "SELECT COUNT(*) as cnt FROM interactions WHERE result IS NULL"
                + (f" AND session_id IN ({in_sessions})" if account_id else ""),
                params,
            ).fetchone()["cnt"]
            ledger_count = self.conn.execute(
                "SELECT COUNT(*) as cnt FROM action_ledger"
                + (f" WHERE session_id IN ({in_sessions})" if account_id else ""),
                params,
            ).fetchone()["cnt"]

        return {
            "sessions": {r["status"]: r["cnt"] for r in sessions},
            "workflows": {r["workflow_type"]: r["cnt"] for r in workflows},
            "pending_interactions": pending,
            "action_ledger_entries": ledger_count,
        }

    def close(self):
        self.conn.close()
