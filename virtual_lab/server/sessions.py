from __future__ import annotations

import json
import secrets
import sqlite3
import string
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from ..lab.models import CodeSnapshot, DebugLog, LabSession, SessionStatus

_DEFAULT_DB_PATH = Path.home() / ".virtual_lab" / "virtual_lab.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS lab_sessions (
    id                   TEXT PRIMARY KEY,
    session_code         TEXT NOT NULL,
    mentor_id            TEXT NOT NULL,
    student_id           TEXT NOT NULL,
    project_ref          TEXT,
    status               TEXT NOT NULL DEFAULT 'active',
    started_at           TEXT NOT NULL,
    ended_at             TEXT,
    ai_interaction_count INTEGER NOT NULL DEFAULT 0,
    final_code_snapshot  TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_lab_sessions_code ON lab_sessions(session_code);
CREATE INDEX IF NOT EXISTS idx_lab_sessions_status ON lab_sessions(status);

CREATE TABLE IF NOT EXISTS code_snapshots (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  TEXT NOT NULL REFERENCES lab_sessions(id) ON DELETE CASCADE,
    author_id   TEXT,
    code        TEXT NOT NULL,
    language    TEXT NOT NULL,
    captured_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_code_snapshots_session ON code_snapshots(session_id);

CREATE TABLE IF NOT EXISTS debug_logs (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id    TEXT NOT NULL REFERENCES lab_sessions(id) ON DELETE CASCADE,
    author_id     TEXT,
    error_message TEXT NOT NULL,
    code_snippet  TEXT NOT NULL,
    ai_response   TEXT NOT NULL,
    used_fallback INTEGER NOT NULL DEFAULT 0,
    captured_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_debug_logs_session ON debug_logs(session_id);
"""

_SESSION_COLUMNS = (
    "id, session_code, mentor_id, student_id, project_ref, status, started_at, "
    "ended_at, ai_interaction_count, final_code_snapshot"
)

_CODE_ATTEMPTS = 5
_CODE_ALPHABET = string.digits + string.ascii_uppercase


class SessionNotFound(Exception):
    """No lab session with the given id or code."""


class SessionAlreadyEnded(Exception):
    """EndSession was called on a session that is already completed."""

    def __init__(self, session: LabSession) -> None:
        super().__init__(f"Session {session.session_code} already ended")
        self.session = session


class SessionCodeCollision(Exception):
    """Could not mint a unique session code within the retry budget."""


class PersistenceFailure(Exception):
    """A durable write failed. Callers on the live path log it and move on."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_session_code() -> str:
    """``LAB-<epoch millis>-<6 base36 chars>``, short enough to read out loud."""
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"LAB-{int(time.time() * 1000)}-{suffix}"


def _session_from_row(row: tuple) -> LabSession:
    return LabSession(
        id=row[0],
        session_code=row[1],
        mentor_id=row[2],
        student_id=row[3],
        project_ref=row[4],
        status=SessionStatus(row[5]),
        started_at=row[6],
        ended_at=row[7],
        ai_interaction_count=row[8],
        final_code_snapshot=row[9],
    )


class SessionStore:
    def __init__(
        self,
        db_path: Path | None = None,
        code_factory: Callable[[], str] = generate_session_code,
    ) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._code_factory = code_factory
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def create_session(
        self,
        mentor_id: str | int,
        student_id: str | int,
        project_ref: str | int | None = None,
    ) -> LabSession:
        session_id = uuid.uuid4().hex
        now = _now()
        project = str(project_ref) if project_ref is not None else None
        for _ in range(_CODE_ATTEMPTS):
            code = self._code_factory()
            with self._lock:
                try:
                    self._conn.execute(
                        "INSERT INTO lab_sessions (id, session_code, mentor_id, student_id, project_ref, status, started_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (session_id, code, str(mentor_id), str(student_id), project, SessionStatus.ACTIVE.value, now),
                    )
                    self._conn.commit()
                except sqlite3.IntegrityError:
                    self._conn.rollback()
                    continue
            return LabSession(
                id=session_id,
                session_code=code,
                mentor_id=str(mentor_id),
                student_id=str(student_id),
                project_ref=project,
                status=SessionStatus.ACTIVE,
                started_at=now,
            )
        raise SessionCodeCollision(f"no unique session code after {_CODE_ATTEMPTS} attempts")

    def get_session(self, session_id: str) -> LabSession | None:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM lab_sessions WHERE id = ?",
                (session_id,),
            )
            row = cur.fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_code(self, session_code: str) -> LabSession | None:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM lab_sessions WHERE session_code = ?",
                (session_code,),
            )
            row = cur.fetchone()
        return _session_from_row(row) if row else None

    def get_active_session(self, session_code: str) -> LabSession | None:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM lab_sessions WHERE session_code = ? AND status = ?",
                (session_code, SessionStatus.ACTIVE.value),
            )
            row = cur.fetchone()
        return _session_from_row(row) if row else None

    def list_active_sessions(self) -> list[LabSession]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM lab_sessions WHERE status = ? ORDER BY started_at DESC",
                (SessionStatus.ACTIVE.value,),
            )
            rows = cur.fetchall()
        return [_session_from_row(row) for row in rows]

    def end_session(self, session_id: str, final_snapshot: str | None = None) -> LabSession:
        """Mark a session completed.

        The status check and the update run under one lock, so two concurrent
        calls cannot both write a final snapshot. The loser gets
        ``SessionAlreadyEnded`` with the stored record.
        """
        now = _now()
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM lab_sessions WHERE id = ?",
                (session_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise SessionNotFound(session_id)
            session = _session_from_row(row)
            if not session.is_active:
                raise SessionAlreadyEnded(session)
            try:
                self._conn.execute(
                    "UPDATE lab_sessions SET status = ?, ended_at = ?, final_code_snapshot = ? "
                    "WHERE id = ? AND status = ?",
                    (SessionStatus.COMPLETED.value, now, final_snapshot, session_id, SessionStatus.ACTIVE.value),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceFailure(f"failed to end session {session_id}") from exc
        session.status = SessionStatus.COMPLETED
        session.ended_at = now
        session.final_code_snapshot = final_snapshot
        return session

    def end_session_by_code(self, session_code: str, final_snapshot: str | None = None) -> LabSession:
        session = self.get_session_by_code(session_code)
        if session is None:
            raise SessionNotFound(session_code)
        return self.end_session(session.id, final_snapshot)

    def increment_ai_interactions(self, session_id: str) -> int:
        with self._lock:
            try:
                self._conn.execute(
                    "UPDATE lab_sessions SET ai_interaction_count = ai_interaction_count + 1 WHERE id = ?",
                    (session_id,),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceFailure(f"failed to count AI interaction for {session_id}") from exc
            cur = self._conn.execute(
                "SELECT ai_interaction_count FROM lab_sessions WHERE id = ?",
                (session_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise SessionNotFound(session_id)
        return row[0]

    # -- Audit trail ----------------------------------------------------------

    def save_code_snapshot(self, session_id: str, author_id: str | None, code: str, language: str) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(
                    "INSERT INTO code_snapshots (session_id, author_id, code, language, captured_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (session_id, author_id, code, language, _now()),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceFailure(f"failed to save code snapshot for {session_id}") from exc
            return cur.lastrowid

    def save_debug_log(
        self,
        session_id: str,
        author_id: str | None,
        error_message: str,
        code_snippet: str,
        ai_response: dict,
        used_fallback: bool = False,
    ) -> int:
        with self._lock:
            try:
                cur = self._conn.execute(
                    "INSERT INTO debug_logs (session_id, author_id, error_message, code_snippet, ai_response, "
                    "used_fallback, captured_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (session_id, author_id, error_message, code_snippet, json.dumps(ai_response),
                     int(used_fallback), _now()),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceFailure(f"failed to save debug log for {session_id}") from exc
            return cur.lastrowid

    def get_code_snapshots(self, session_id: str, limit: int = 200) -> list[CodeSnapshot]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, session_id, author_id, code, language, captured_at FROM code_snapshots "
                "WHERE session_id = ? ORDER BY id ASC LIMIT ?",
                (session_id, limit),
            )
            rows = cur.fetchall()
        return [CodeSnapshot(*row) for row in rows]

    def get_debug_logs(self, session_id: str, limit: int = 200) -> list[DebugLog]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, session_id, author_id, error_message, code_snippet, ai_response, used_fallback, "
                "captured_at FROM debug_logs WHERE session_id = ? ORDER BY id ASC LIMIT ?",
                (session_id, limit),
            )
            rows = cur.fetchall()
        results = []
        for row in rows:
            try:
                response = json.loads(row[5])
            except (json.JSONDecodeError, TypeError):
                response = {"raw": row[5]}
            results.append(DebugLog(
                id=row[0],
                session_id=row[1],
                author_id=row[2],
                error_message=row[3],
                code_snippet=row[4],
                ai_response=response,
                used_fallback=bool(row[6]),
                captured_at=row[7],
            ))
        return results
