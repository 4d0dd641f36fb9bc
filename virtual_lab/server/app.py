from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..assist import AiAssistant, create_assistant
from ..lab.events import Connected, LabError
from ..lab.registry import RoleCollisionPolicy, SessionRegistry
from .broker import LabBroker
from .protocol import validate_client_message
from .sessions import SessionAlreadyEnded, SessionCodeCollision, SessionNotFound, SessionStore
from .settings import DEFAULTS, SettingsStore, validate_setting

log = logging.getLogger("virtual_lab")

_API_KEY_ENV = "GEMINI_API_KEY"


def _user_id(msg: dict) -> str | None:
    value = msg.get("userId")
    return None if value is None else str(value)


def create_app(
    session_store: SessionStore | None = None,
    settings_store: SettingsStore | None = None,
    assistant: AiAssistant | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> FastAPI:
    store = session_store or SessionStore()
    settings = settings_store or SettingsStore(store.db_path)
    config = settings.get_effective(cli_overrides)
    assistant_injected = assistant is not None
    assistant = assistant or create_assistant(os.environ.get(_API_KEY_ENV), config)
    registry = SessionRegistry(
        policy=RoleCollisionPolicy(config["lab.role_collision"]),
        default_language=config["lab.default_language"],
    )
    broker = LabBroker(
        store=store,
        assistant=assistant,
        registry=registry,
        send_timeout=float(config["server.send_timeout"]),
        idle_ttl=float(config["lab.idle_ttl"]),
    )
    max_message_bytes = int(config["server.max_message_bytes"])

    def _apply_settings() -> None:
        """Push stored settings into the running broker. CLI overrides still win."""
        nonlocal max_message_bytes
        current = settings.get_effective(cli_overrides)
        registry.policy = RoleCollisionPolicy(current["lab.role_collision"])
        registry.default_language = current["lab.default_language"]
        broker.send_timeout = float(current["server.send_timeout"])
        broker.idle_ttl = float(current["lab.idle_ttl"])
        max_message_bytes = int(current["server.max_message_bytes"])
        if not assistant_injected:
            broker.assistant = create_assistant(os.environ.get(_API_KEY_ENV), current)
        log.info("settings applied: role policy=%s idle_ttl=%s", registry.policy.value, broker.idle_ttl)

    async def _store_call(fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Rooms are rebuilt lazily on first join; only report what the store holds."""
        active = await _store_call(store.list_active_sessions)
        log.info(
            "virtual lab ready: %d active sessions, ai provider=%s, role policy=%s",
            len(active), broker.assistant.provider_name, registry.policy.value,
        )
        yield
        await broker.shutdown()

    app = FastAPI(title="Virtual Lab", lifespan=lifespan)
    app.state.broker = broker

    @app.get("/health")
    async def health_check():
        active = await _store_call(store.list_active_sessions)
        return {"status": "healthy", "active_sessions": len(active), **broker.stats()}

    # --- Lab lifecycle ---

    @app.post("/api/lab/start", status_code=201)
    async def start_session(body: dict):
        mentor_id = body.get("mentor_id")
        student_id = body.get("student_id")
        if mentor_id is None or student_id is None:
            return JSONResponse(status_code=400, content={"detail": "mentor_id and student_id are required"})
        try:
            session = await broker.start_session(mentor_id, student_id, body.get("project_id"))
        except SessionCodeCollision as exc:
            log.error("start session failed: %s", exc)
            return JSONResponse(status_code=503, content={"detail": "Could not allocate a session code, retry"})
        return {
            "message": "Lab session started",
            "session_code": session.session_code,
            "session": session.to_dict(),
        }

    async def _end(ender, key: str, body: dict | None):
        body = body or {}
        snapshot = body.get("code_snapshot", body.get("codeSnapshot"))
        if snapshot is not None and not isinstance(snapshot, str):
            return JSONResponse(status_code=400, content={"detail": "code_snapshot must be a string"})
        try:
            session = await ender(key, snapshot)
        except SessionNotFound:
            return JSONResponse(status_code=404, content={"detail": "Session not found"})
        except SessionAlreadyEnded as exc:
            return JSONResponse(
                status_code=409,
                content={"detail": "Session already ended", "session": exc.session.to_dict()},
            )
        return {"message": "Lab session ended", "session": session.to_dict()}

    @app.get("/api/lab/sessions")
    async def list_sessions():
        sessions = await _store_call(store.list_active_sessions)
        results = []
        for session in sessions:
            live = registry.get(session.session_code)
            results.append({**session.to_dict(), "live": live.to_dict() if live else None})
        return {"sessions": results}

    @app.get("/api/lab/sessions/{session_code}")
    async def get_session(session_code: str):
        session = await _store_call(store.get_session_by_code, session_code)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Session not found"})
        live = registry.get(session_code)
        return {**session.to_dict(), "live": live.to_dict() if live else None}

    @app.patch("/api/lab/session/{session_code}/end")
    async def end_session_by_code(session_code: str, body: dict | None = None):
        return await _end(broker.end_session_by_code, session_code, body)

    @app.post("/api/lab/ai-debug")
    async def ai_debug(body: dict):
        student_code = body.get("studentCode")
        if not isinstance(student_code, str) or not student_code.strip():
            return JSONResponse(status_code=400, content={"detail": "Student code is required"})
        mentor_code = body.get("mentorCode")
        review = await broker.review_code(
            student_code,
            mentor_code if isinstance(mentor_code, str) else None,
            body.get("sessionCode"),
        )
        return {"success": True, "feedback": review.feedback, "fallback": review.fallback}

    @app.post("/api/lab/{session_id}/end")
    async def end_session(session_id: str, body: dict | None = None):
        return await _end(broker.end_session, session_id, body)

    @app.get("/api/lab/{session_id}/snapshots")
    async def list_snapshots(session_id: str, limit: int = 200):
        session = await _store_call(store.get_session, session_id)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Session not found"})
        snapshots = await _store_call(store.get_code_snapshots, session_id, limit)
        return [s.to_dict() for s in snapshots]

    @app.get("/api/lab/{session_id}/debug-logs")
    async def list_debug_logs(session_id: str, limit: int = 200):
        session = await _store_call(store.get_session, session_id)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Session not found"})
        logs = await _store_call(store.get_debug_logs, session_id, limit)
        return [entry.to_dict() for entry in logs]

    # --- Settings REST API (applied to the running broker on write) ---

    @app.get("/api/settings")
    def get_settings():
        return settings.get_all()

    @app.put("/api/settings")
    def update_settings(body: dict):
        for key, value in body.items():
            error = validate_setting(key, value)
            if error:
                return JSONResponse(status_code=400, content={"detail": error})
        settings.set_many(body)
        _apply_settings()
        return settings.get_all()

    @app.get("/api/settings/{key:path}")
    def get_setting(key: str):
        if key not in DEFAULTS:
            return JSONResponse(status_code=404, content={"detail": f"Unknown settings key: {key}"})
        return {"key": key, "value": settings.get(key)}

    @app.put("/api/settings/{key:path}")
    def update_setting(key: str, body: dict):
        if "value" not in body:
            return JSONResponse(status_code=400, content={"detail": "Missing 'value' in request body"})
        error = validate_setting(key, body["value"])
        if error:
            return JSONResponse(status_code=400, content={"detail": error})
        settings.set(key, body["value"])
        _apply_settings()
        return {"key": key, "value": body["value"]}

    @app.delete("/api/settings/{key:path}")
    def delete_setting(key: str):
        settings.delete(key)
        _apply_settings()
        return {"ok": True}

    # --- Real-time lab channel ---

    async def _dispatch(connection_id: str, msg: dict) -> None:
        match msg["type"]:
            case "join-lab":
                await broker.join(connection_id, msg["sessionCode"], msg["userRole"], _user_id(msg))
            case "code-update":
                await broker.update_code(
                    connection_id, msg["sessionCode"], msg["code"], msg.get("language"), _user_id(msg),
                )
            case "debug-request":
                broker.spawn_debug_request(
                    connection_id,
                    session_code=msg["sessionCode"],
                    error_message=msg.get("errorMessage") or "",
                    code_snippet=msg.get("codeSnippet") or "",
                    language=msg.get("language"),
                    author_id=_user_id(msg),
                )
            case "code-suggestion-request":
                broker.spawn_suggestion(connection_id, msg.get("description"), msg.get("language"))
            case "leave-lab":
                await broker.leave(connection_id, msg["sessionCode"])

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        connection_id = broker.register(ws)
        log.info("ws connected %s", connection_id)
        await broker.send(connection_id, Connected(connection_id=connection_id))

        try:
            while True:
                raw = await ws.receive_text()
                if len(raw.encode("utf-8")) > max_message_bytes:
                    await broker.send(connection_id, LabError(
                        message=f"Message too large (max {max_message_bytes} bytes)",
                    ))
                    continue

                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    await broker.send(connection_id, LabError(message="Invalid JSON"))
                    continue

                validation_error = validate_client_message(msg)
                if validation_error:
                    await broker.send(connection_id, LabError(message=validation_error))
                    continue

                try:
                    await _dispatch(connection_id, msg)
                except Exception:
                    log.exception("ws handler failed type=%s connection=%s", msg.get("type"), connection_id)
                    await broker.send(connection_id, LabError(message=f"Failed to handle {msg['type']}"))
        except WebSocketDisconnect:
            log.info("ws disconnected %s", connection_id)
        finally:
            await broker.disconnect(connection_id)

    return app
