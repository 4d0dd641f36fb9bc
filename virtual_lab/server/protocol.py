from __future__ import annotations

from ..lab.events import (
    CodeMirrored,
    CodeSuggestionResponse,
    Connected,
    DebugResponse,
    LabError,
    LabEvent,
    LabJoined,
    ParticipantDisconnected,
    ParticipantJoined,
    ParticipantLeft,
    SessionEnded,
)

# Client -> server frame types and the fields each one must carry.
CLIENT_MESSAGE_TYPES = frozenset({
    "join-lab", "code-update", "debug-request", "code-suggestion-request", "leave-lab",
})

REQUIRED_FIELDS: dict[str, list[str]] = {
    "join-lab": ["sessionCode", "userRole"],
    "code-update": ["sessionCode", "code"],
    "debug-request": ["sessionCode"],
    "code-suggestion-request": [],
    "leave-lab": ["sessionCode"],
}

_STRING_FIELDS = ("sessionCode", "userRole", "code", "language", "errorMessage", "codeSnippet", "description")


def validate_client_message(msg: object) -> str | None:
    """Validate a client frame shape. Returns error string or None."""
    if not isinstance(msg, dict):
        return "Message must be a JSON object"
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        return "Missing or invalid 'type' field"
    if msg_type not in CLIENT_MESSAGE_TYPES:
        return f"Unknown message type: {msg_type}"
    for name in REQUIRED_FIELDS[msg_type]:
        if name not in msg or msg[name] is None:
            return f"Missing required field '{name}' for {msg_type}"
    for name in _STRING_FIELDS:
        if name in msg and msg[name] is not None and not isinstance(msg[name], str):
            return f"Field '{name}' must be a string"
    return None


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def event_to_dict(event: LabEvent) -> dict:
    match event:
        case Connected(connection_id=cid):
            return {"type": "connected", "connectionId": cid}
        case LabJoined(session_code=code, current_code=current, language=lang, role=role):
            return {"type": "joined-lab", "sessionCode": code, "currentCode": current, "language": lang, "role": role}
        case CodeMirrored(code=code, language=lang):
            return {"type": "code-mirrored", "code": code, "language": lang}
        case ParticipantJoined(user_role=role):
            return {"type": "participant-joined", "userRole": role}
        case ParticipantLeft():
            return {"type": "participant-left"}
        case ParticipantDisconnected():
            return {"type": "participant-disconnected"}
        case DebugResponse(cause=cause, fix=fix, best_practices=practices, error=error):
            return {"type": "debug-response", **_compact(
                {"cause": cause, "fix": fix, "bestPractices": practices, "error": error}
            )}
        case CodeSuggestionResponse(suggestion=suggestion, error=error):
            return {"type": "code-suggestion-response", **_compact({"suggestion": suggestion, "error": error})}
        case SessionEnded(session_code=code):
            return {"type": "session-ended", "sessionCode": code}
        case LabError(message=message):
            return {"type": "error", "message": message}
        case _:
            return {"type": "unknown"}
