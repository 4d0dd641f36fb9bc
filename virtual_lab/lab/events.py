from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LabEvent:
    """Base class for server-to-client lab events."""


@dataclass
class Connected(LabEvent):
    connection_id: str


@dataclass
class LabJoined(LabEvent):
    session_code: str
    current_code: str
    language: str
    role: str


@dataclass
class CodeMirrored(LabEvent):
    code: str
    language: str


@dataclass
class ParticipantJoined(LabEvent):
    """Role label only; the joiner's user id is never forwarded."""
    user_role: str


@dataclass
class ParticipantLeft(LabEvent):
    pass


@dataclass
class ParticipantDisconnected(LabEvent):
    pass


@dataclass
class DebugResponse(LabEvent):
    cause: str | None = None
    fix: str | None = None
    best_practices: str | None = None
    error: str | None = None


@dataclass
class CodeSuggestionResponse(LabEvent):
    suggestion: str | None = None
    error: str | None = None


@dataclass
class SessionEnded(LabEvent):
    session_code: str


@dataclass
class LabError(LabEvent):
    message: str
