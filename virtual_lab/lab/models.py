from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionStatus(Enum):
    """Lifecycle of a durable lab session. ``COMPLETED`` is terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class LabSession:
    """Durable record of one mentoring session."""

    id: str
    session_code: str
    mentor_id: str
    student_id: str
    project_ref: str | None
    status: SessionStatus
    started_at: str
    ended_at: str | None = None
    ai_interaction_count: int = 0
    final_code_snapshot: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_code": self.session_code,
            "mentor_id": self.mentor_id,
            "student_id": self.student_id,
            "project_ref": self.project_ref,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "ai_interaction_count": self.ai_interaction_count,
            "final_code_snapshot": self.final_code_snapshot,
        }


@dataclass
class CodeSnapshot:
    """Audit row for one mirrored buffer. Never used to rebuild live state."""

    id: int
    session_id: str
    author_id: str | None
    code: str
    language: str
    captured_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "author_id": self.author_id,
            "code": self.code,
            "language": self.language,
            "captured_at": self.captured_at,
        }


@dataclass
class DebugLog:
    """Audit row for one AI debug request and the answer it got."""

    id: int
    session_id: str
    author_id: str | None
    error_message: str
    code_snippet: str
    ai_response: dict
    used_fallback: bool
    captured_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "author_id": self.author_id,
            "error_message": self.error_message,
            "code_snippet": self.code_snippet,
            "ai_response": self.ai_response,
            "used_fallback": self.used_fallback,
            "captured_at": self.captured_at,
        }
