"""In-process room state for lab sessions.

The registry is a cache derived from the session store: an entry is built on
the first successful join and holds the store's session id, the connections
bound to each role slot, and the last buffer received. It is never consulted
to decide whether a session exists.

Every method is synchronous and takes the registry lock, so callers on the
event loop see each mutation as atomic. Callers must re-read state after any
``await`` of their own.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum


class Role(Enum):
    MENTOR = "Mentor"
    STUDENT = "Student"

    @classmethod
    def parse(cls, value: object) -> "Role":
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            for role in cls:
                if role.value.lower() == value.strip().lower():
                    return role
        raise ValueError(f"Invalid role: {value!r} (expected Mentor or Student)")


class RoleCollisionPolicy(Enum):
    """What a second join for an occupied role slot does."""

    RECONNECT = "reconnect"  # newer connection supersedes the bound one
    REJECT = "reject"  # joiner is refused while the slot is held


class SessionInvalid(Exception):
    """Unknown, inactive or already-ended session code."""


class RoleConflict(Exception):
    """Role slot is held by another connection and the policy is REJECT."""

    def __init__(self, session_code: str, role: Role) -> None:
        super().__init__(f"{role.value} slot of {session_code} is already taken")
        self.session_code = session_code
        self.role = role


@dataclass
class LiveSession:
    session_code: str
    persistent_session_id: str
    current_code: str = ""
    current_language: str = "javascript"
    mentor_connection_id: str | None = None
    student_connection_id: str | None = None
    last_activity: float = field(default_factory=time.monotonic)

    def connection_for(self, role: Role) -> str | None:
        match role:
            case Role.MENTOR:
                return self.mentor_connection_id
            case Role.STUDENT:
                return self.student_connection_id

    def _set_slot(self, role: Role, connection_id: str | None) -> None:
        match role:
            case Role.MENTOR:
                self.mentor_connection_id = connection_id
            case Role.STUDENT:
                self.student_connection_id = connection_id

    def role_of(self, connection_id: str) -> Role | None:
        for role in Role:
            if self.connection_for(role) == connection_id:
                return role
        return None

    def connections(self) -> list[str]:
        return [cid for cid in (self.mentor_connection_id, self.student_connection_id) if cid]

    def roles_present(self) -> list[str]:
        return [role.value for role in Role if self.connection_for(role)]

    @property
    def is_empty(self) -> bool:
        return not self.connections()

    def to_dict(self) -> dict:
        return {
            "session_code": self.session_code,
            "session_id": self.persistent_session_id,
            "language": self.current_language,
            "code_length": len(self.current_code),
            "participants": self.roles_present(),
        }


@dataclass
class JoinResult:
    live: LiveSession
    role: Role
    created: bool = False
    superseded_connection_id: str | None = None


class SessionRegistry:
    def __init__(
        self,
        policy: RoleCollisionPolicy = RoleCollisionPolicy.RECONNECT,
        default_language: str = "javascript",
        max_tombstones: int = 1024,
    ) -> None:
        self.policy = policy
        self.default_language = default_language
        self.max_tombstones = max_tombstones
        self._lock = threading.Lock()
        self._rooms: dict[str, LiveSession] = {}
        # Ended session ids, oldest first. Only guards the window between the
        # store lookup in a join and the registry update; the store refuses
        # completed sessions after that.
        self._ended: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def __contains__(self, session_code: object) -> bool:
        with self._lock:
            return session_code in self._rooms

    def get(self, session_code: str) -> LiveSession | None:
        with self._lock:
            return self._rooms.get(session_code)

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(live.connections()) for live in self._rooms.values())

    def join(self, session_code: str, session_id: str, role: Role, connection_id: str) -> JoinResult:
        """Bind ``connection_id`` to ``role`` in the room, creating it if needed.

        A connection already bound to another slot of the same room is moved,
        so one connection never holds two slots.
        """
        with self._lock:
            if session_id in self._ended:
                raise SessionInvalid(session_code)
            live = self._rooms.get(session_code)
            created = False
            if live is None or live.persistent_session_id != session_id:
                live = LiveSession(
                    session_code=session_code,
                    persistent_session_id=session_id,
                    current_language=self.default_language,
                )
                self._rooms[session_code] = live
                created = True

            holder = live.connection_for(role)
            superseded = None
            if holder is not None and holder != connection_id:
                match self.policy:
                    case RoleCollisionPolicy.REJECT:
                        raise RoleConflict(session_code, role)
                    case RoleCollisionPolicy.RECONNECT:
                        superseded = holder

            previous_role = live.role_of(connection_id)
            if previous_role is not None and previous_role is not role:
                live._set_slot(previous_role, None)
            live._set_slot(role, connection_id)
            live.last_activity = time.monotonic()
            return JoinResult(live=live, role=role, created=created, superseded_connection_id=superseded)

    def leave(self, session_code: str, connection_id: str) -> Role | None:
        """Unbind a connection from one room. The buffer stays."""
        with self._lock:
            live = self._rooms.get(session_code)
            if live is None:
                return None
            role = live.role_of(connection_id)
            if role is not None:
                live._set_slot(role, None)
                live.last_activity = time.monotonic()
            return role

    def disconnect(self, connection_id: str) -> list[LiveSession]:
        """Unbind a connection from every room it held; return those rooms."""
        affected: list[LiveSession] = []
        with self._lock:
            for live in self._rooms.values():
                role = live.role_of(connection_id)
                if role is None:
                    continue
                live._set_slot(role, None)
                live.last_activity = time.monotonic()
                affected.append(live)
        return affected

    def update_code(self, session_code: str, code: str, language: str | None) -> LiveSession | None:
        """Last writer wins: overwrite the buffer with whatever arrived last."""
        with self._lock:
            live = self._rooms.get(session_code)
            if live is None:
                return None
            live.current_code = code
            if language:
                live.current_language = language
            live.last_activity = time.monotonic()
            return live

    def peers(self, session_code: str, connection_id: str) -> list[str]:
        with self._lock:
            live = self._rooms.get(session_code)
            if live is None:
                return []
            return [cid for cid in live.connections() if cid != connection_id]

    def evict(self, session_code: str, *, ended: bool = True) -> LiveSession | None:
        """Drop a room. ``ended`` tombstones its session id against late joins."""
        with self._lock:
            live = self._rooms.pop(session_code, None)
            if live is not None and ended:
                self._tombstone(live.persistent_session_id)
            return live

    def mark_ended(self, session_id: str) -> None:
        with self._lock:
            self._tombstone(session_id)

    def _tombstone(self, session_id: str) -> None:
        self._ended[session_id] = None
        self._ended.move_to_end(session_id)
        while len(self._ended) > self.max_tombstones:
            self._ended.popitem(last=False)

    def is_ended(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._ended

    def evict_if_idle(self, session_code: str, ttl: float) -> LiveSession | None:
        """Evict an empty room untouched for ``ttl`` seconds. Not a tombstone."""
        with self._lock:
            live = self._rooms.get(session_code)
            if live is None or not live.is_empty:
                return None
            if time.monotonic() - live.last_activity < ttl:
                return None
            return self._rooms.pop(session_code)
