from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable, Coroutine
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, TypeVar

from fastapi import WebSocket

from ..assist import AiAssistant
from ..assist.assistant import CodeReview, ErrorAnalysis
from ..lab.events import (
    CodeMirrored,
    CodeSuggestionResponse,
    DebugResponse,
    LabError,
    LabEvent,
    LabJoined,
    ParticipantDisconnected,
    ParticipantJoined,
    ParticipantLeft,
    SessionEnded,
)
from ..lab.models import LabSession
from ..lab.registry import LiveSession, Role, RoleConflict, SessionInvalid, SessionRegistry
from .protocol import event_to_dict
from .sessions import SessionNotFound, SessionStore

log = logging.getLogger("virtual_lab")
_SERVICE_NAME = "virtual-lab"
_T = TypeVar("_T")

try:
    _SERVICE_VERSION = pkg_version(_SERVICE_NAME)
except PackageNotFoundError:
    _SERVICE_VERSION = "dev"

INVALID_SESSION_MESSAGE = "Invalid or inactive session"
ROLE_TAKEN_MESSAGE = "Role slot already taken"
SUPERSEDED_MESSAGE = "Replaced by a newer connection"
NOT_JOINED_MESSAGE = "Join the session before sending code updates"


class LabBroker:
    """Routes lab traffic between connections, the registry and the store.

    One instance per process. Connections are addressed by an opaque id handed
    out by ``register``; the registry only ever sees those ids.
    """

    def __init__(
        self,
        store: SessionStore,
        assistant: AiAssistant,
        registry: SessionRegistry | None = None,
        send_timeout: float = 10.0,
        idle_ttl: float = 0.0,
    ) -> None:
        self.store = store
        self.assistant = assistant
        self.registry = registry or SessionRegistry()
        self.send_timeout = send_timeout
        self.idle_ttl = idle_ttl
        self._connections: dict[str, WebSocket] = {}
        self._background: set[asyncio.Task] = set()
        self._idle_cleanup_tasks: dict[str, asyncio.Task] = {}
        self._send_failures = 0

    # -- Plumbing ---------------------------------------------------------------

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {
            "metric": name,
            "ts": time.time(),
            "service": _SERVICE_NAME,
            "version": _SERVICE_VERSION,
            **fields,
        }
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for fire-and-forget work (audit writes, AI replies) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._idle_cleanup_tasks.values()):
            task.cancel()
        self._idle_cleanup_tasks.clear()
        await self.drain()

    def register(self, ws: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = ws
        return connection_id

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def stats(self) -> dict:
        return {
            "active_rooms": len(self.registry),
            "connections": len(self._connections),
            "bound_connections": self.registry.connection_count(),
            "background_tasks": len(self._background),
            "send_failures": self._send_failures,
            "ai_provider": self.assistant.provider_name,
        }

    async def send(self, connection_id: str, event: LabEvent) -> bool:
        ws = self._connections.get(connection_id)
        if ws is None:
            log.debug("send dropped (connection gone): %s", connection_id)
            return False
        data = event_to_dict(event)
        try:
            await asyncio.wait_for(ws.send_json(data), timeout=self.send_timeout)
        except Exception as exc:
            self._send_failures += 1
            log.warning("send failed connection=%s type=%s error=%s", connection_id, data.get("type"), exc)
            self._log_metric("ws_send_failure", connection_id=connection_id, event_type=data.get("type"))
            return False
        return True

    async def _multicast(self, connection_ids: list[str], event: LabEvent) -> int:
        """Best-effort, at-most-once delivery to each connection."""
        if not connection_ids:
            return 0
        results = await asyncio.gather(*[self.send(cid, event) for cid in connection_ids])
        return sum(1 for ok in results if ok)

    # -- Connection gateway -------------------------------------------------------

    async def join(
        self,
        connection_id: str,
        session_code: str,
        role: Role | str,
        participant_id: str | None = None,
    ) -> LiveSession | None:
        try:
            role = Role.parse(role)
        except ValueError as exc:
            await self.send(connection_id, LabError(message=str(exc)))
            return None

        session = await self._store_call(self.store.get_active_session, session_code)
        if session is None:
            await self.send(connection_id, LabError(message=INVALID_SESSION_MESSAGE))
            return None
        if not self.is_connected(connection_id):
            return None

        try:
            result = self.registry.join(session_code, session.id, role, connection_id)
        except SessionInvalid:
            await self.send(connection_id, LabError(message=INVALID_SESSION_MESSAGE))
            return None
        except RoleConflict:
            log.info("join refused: %s slot of %s is taken", role.value, session_code)
            await self.send(connection_id, LabError(message=ROLE_TAKEN_MESSAGE))
            return None

        self._cancel_idle_cleanup(session_code)
        live = result.live
        joined = LabJoined(
            session_code=session_code,
            current_code=live.current_code,
            language=live.current_language,
            role=role.value,
        )
        peers = self.registry.peers(session_code, connection_id)
        if result.superseded_connection_id:
            log.info("lab %s: %s slot reassigned to a newer connection", session_code, role.value)
            await self.send(result.superseded_connection_id, LabError(message=SUPERSEDED_MESSAGE))
        await self.send(connection_id, joined)
        await self._multicast(peers, ParticipantJoined(user_role=role.value))
        log.info("user %s joined lab %s as %s", participant_id, session_code, role.value)
        return live

    # -- Mirroring broadcaster ----------------------------------------------------

    async def update_code(
        self,
        connection_id: str,
        session_code: str,
        code: str,
        language: str | None = None,
        author_id: str | None = None,
    ) -> int:
        """Overwrite the room buffer and relay it to everyone but the sender."""
        live = self.registry.get(session_code)
        if live is None or live.role_of(connection_id) is None:
            await self.send(connection_id, LabError(message=NOT_JOINED_MESSAGE))
            return 0
        live = self.registry.update_code(session_code, code, language)
        if live is None:
            return 0
        mirrored = CodeMirrored(code=code, language=live.current_language)
        session_id = live.persistent_session_id
        peers = self.registry.peers(session_code, connection_id)
        delivered = await self._multicast(peers, mirrored)
        self._spawn(
            self._persist_snapshot(session_id, author_id, code, mirrored.language),
            name=f"snapshot-{session_code}",
        )
        return delivered

    async def _persist_snapshot(self, session_id: str, author_id: str | None, code: str, language: str) -> None:
        try:
            await self._store_call(self.store.save_code_snapshot, session_id, author_id, code, language)
        except Exception:
            log.exception("failed to save code snapshot for session %s", session_id)
            self._log_metric("code_snapshot_failed", session_id=session_id)

    # -- AI assist ----------------------------------------------------------------

    async def _resolve_session_id(self, session_code: str | None) -> str | None:
        if not session_code:
            return None
        live = self.registry.get(session_code)
        if live is not None:
            return live.persistent_session_id
        session = await self._store_call(self.store.get_active_session, session_code)
        return session.id if session else None

    async def _record_debug(
        self,
        session_id: str | None,
        author_id: str | None,
        error_message: str,
        code_snippet: str,
        analysis: ErrorAnalysis,
    ) -> None:
        if session_id is None:
            log.warning("debug request outside a known session not logged")
            return
        try:
            await self._store_call(self.store.increment_ai_interactions, session_id)
            await self._store_call(
                self.store.save_debug_log,
                session_id,
                author_id,
                error_message,
                code_snippet,
                analysis.to_dict(),
                analysis.fallback,
            )
        except Exception:
            log.exception("failed to record debug request for session %s", session_id)

    async def debug_request(
        self,
        connection_id: str,
        session_code: str | None,
        error_message: str = "",
        code_snippet: str = "",
        language: str | None = None,
        author_id: str | None = None,
    ) -> ErrorAnalysis | None:
        """Analyze an error for one requester; the answer is never broadcast."""
        session_id = await self._resolve_session_id(session_code)
        if not language:
            live = self.registry.get(session_code) if session_code else None
            language = live.current_language if live else self.registry.default_language
        try:
            analysis = await self.assistant.analyze_error(error_message, code_snippet, language)
        except Exception:
            log.exception("debug request failed for %s", session_code)
            await self.send(connection_id, DebugResponse(
                error="Failed to analyze error",
                cause="AI service unavailable",
                fix="Please try again later",
            ))
            return None
        await self.send(connection_id, DebugResponse(
            cause=analysis.cause,
            fix=analysis.fix,
            best_practices=analysis.best_practices,
        ))
        await self._record_debug(session_id, author_id, error_message, code_snippet, analysis)
        return analysis

    async def suggest_code(self, connection_id: str, description: str | None, language: str | None = None) -> None:
        if not description or not description.strip():
            await self.send(connection_id, CodeSuggestionResponse(error="A description is required"))
            return
        try:
            result = await self.assistant.suggest_code(description, language or self.registry.default_language)
        except Exception:
            log.exception("code suggestion failed")
            await self.send(connection_id, CodeSuggestionResponse(error="Failed to generate code suggestion"))
            return
        await self.send(connection_id, CodeSuggestionResponse(suggestion=result.suggestion))

    def spawn_debug_request(self, connection_id: str, **kwargs: Any) -> asyncio.Task:
        return self._spawn(self.debug_request(connection_id, **kwargs), name=f"debug-{connection_id}")

    def spawn_suggestion(self, connection_id: str, description: str | None, language: str | None) -> asyncio.Task:
        return self._spawn(self.suggest_code(connection_id, description, language), name=f"suggest-{connection_id}")

    async def review_code(
        self,
        student_code: str,
        mentor_code: str | None = None,
        session_code: str | None = None,
    ) -> CodeReview:
        review = await self.assistant.review_code(student_code, mentor_code)
        session_id = await self._resolve_session_id(session_code)
        if session_id is not None:
            try:
                await self._store_call(self.store.increment_ai_interactions, session_id)
            except Exception:
                log.exception("failed to count AI review for session %s", session_id)
        return review

    # -- Disconnection reconciler -------------------------------------------------

    async def leave(self, connection_id: str, session_code: str) -> None:
        role = self.registry.leave(session_code, connection_id)
        if role is None:
            return
        log.info("%s left lab %s", role.value, session_code)
        await self._multicast(self.registry.peers(session_code, connection_id), ParticipantLeft())
        self._maybe_schedule_idle_cleanup(session_code)

    async def disconnect(self, connection_id: str) -> None:
        """Forget the connection; rooms and their buffers are kept."""
        self._connections.pop(connection_id, None)
        for live in self.registry.disconnect(connection_id):
            code = live.session_code
            await self._multicast(self.registry.peers(code, connection_id), ParticipantDisconnected())
            self._maybe_schedule_idle_cleanup(code)

    def _cancel_idle_cleanup(self, session_code: str) -> None:
        task = self._idle_cleanup_tasks.pop(session_code, None)
        if task and not task.done():
            task.cancel()

    def _maybe_schedule_idle_cleanup(self, session_code: str) -> None:
        if self.idle_ttl <= 0:
            return
        if session_code in self._idle_cleanup_tasks:
            return
        live = self.registry.get(session_code)
        if live is None or not live.is_empty:
            return

        async def _cleanup_after_idle() -> None:
            try:
                await asyncio.sleep(self.idle_ttl)
                if self.registry.evict_if_idle(session_code, self.idle_ttl) is not None:
                    log.info("evicted idle lab room %s", session_code)
            finally:
                self._idle_cleanup_tasks.pop(session_code, None)

        self._idle_cleanup_tasks[session_code] = asyncio.create_task(
            _cleanup_after_idle(),
            name=f"idle-cleanup-{session_code}",
        )

    # -- Lifecycle ----------------------------------------------------------------

    async def start_session(
        self,
        mentor_id: str | int,
        student_id: str | int,
        project_ref: str | int | None = None,
    ) -> LabSession:
        session = await self._store_call(self.store.create_session, mentor_id, student_id, project_ref)
        log.info("lab session %s started (mentor=%s student=%s)", session.session_code, mentor_id, student_id)
        return session

    async def end_session(self, session_id: str, final_snapshot: str | None = None) -> LabSession:
        """Complete the durable record, then drop the room.

        Without an explicit snapshot the live buffer is stored. Raises
        ``SessionNotFound`` or ``SessionAlreadyEnded`` from the store.
        """
        session = await self._store_call(self.store.get_session, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if final_snapshot is None:
            live = self.registry.get(session.session_code)
            if live is not None and live.persistent_session_id == session.id:
                final_snapshot = live.current_code
        ended = await self._store_call(self.store.end_session, session_id, final_snapshot)
        self.registry.mark_ended(ended.id)
        self._cancel_idle_cleanup(ended.session_code)
        live = self.registry.evict(ended.session_code)
        if live is not None:
            await self._multicast(live.connections(), SessionEnded(session_code=ended.session_code))
        log.info("lab session %s ended", ended.session_code)
        return ended

    async def end_session_by_code(self, session_code: str, final_snapshot: str | None = None) -> LabSession:
        session = await self._store_call(self.store.get_session_by_code, session_code)
        if session is None:
            raise SessionNotFound(session_code)
        return await self.end_session(session.id, final_snapshot)
