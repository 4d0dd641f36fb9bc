"""AI assist with a bounded provider call and a deterministic local fallback.

Nothing here raises to the caller: a missing provider, a timeout, an HTTP
failure or an unusable payload all end in a fallback result flagged with
``fallback=True``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass

from .prompts import build_debug_prompt, build_review_prompt, build_suggestion_prompt
from .providers import CompletionProvider, ExternalServiceUnavailable, MalformedProviderResponse

log = logging.getLogger("virtual_lab")

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_HASH_COMMENT_LANGUAGES = frozenset({"python", "ruby", "shell", "bash", "sh", "r", "perl", "yaml"})
_DASH_COMMENT_LANGUAGES = frozenset({"sql", "lua", "haskell"})


@dataclass
class ErrorAnalysis:
    cause: str
    fix: str
    best_practices: str
    fallback: bool = False

    def to_dict(self) -> dict:
        return {"cause": self.cause, "fix": self.fix, "bestPractices": self.best_practices}


@dataclass
class CodeSuggestion:
    suggestion: str
    fallback: bool = False


@dataclass
class CodeReview:
    feedback: str
    fallback: bool = False


def _line_count(code: str) -> int:
    return code.count("\n") + 1 if code else 0


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(_as_text(item) for item in value if item is not None).strip()
    return json.dumps(value)


def _comment_prefix(language: str) -> str:
    lang = (language or "").strip().lower()
    if lang in _HASH_COMMENT_LANGUAGES:
        return "#"
    if lang in _DASH_COMMENT_LANGUAGES:
        return "--"
    return "//"


def parse_error_analysis(text: str) -> ErrorAnalysis | None:
    """Read ``{cause, fix, bestPractices}`` out of provider text.

    Models often wrap the object in prose or a code fence, so the outermost
    braces are searched for. Without a usable object the raw text becomes the
    fix. Returns None for blank text.
    """
    if not text or not text.strip():
        return None
    match = _JSON_OBJECT_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except (json.JSONDecodeError, ValueError):
            data = None
        if isinstance(data, dict):
            cause = _as_text(data.get("cause"))
            fix = _as_text(data.get("fix"))
            practices = _as_text(data.get("bestPractices", data.get("best_practices")))
            if cause or fix:
                return ErrorAnalysis(
                    cause=cause or "Analysis completed",
                    fix=fix or "See the cause above",
                    best_practices=practices or "See detailed analysis above",
                )
    return ErrorAnalysis(
        cause="Analysis completed",
        fix=text.strip(),
        best_practices="See detailed analysis above",
    )


def fallback_error_analysis(error_message: str, code_snippet: str, language: str) -> ErrorAnalysis:
    lines = _line_count(code_snippet)
    chars = len(code_snippet)
    reported = error_message.strip() if error_message and error_message.strip() else "no error message given"
    return ErrorAnalysis(
        cause=f"AI debugger unavailable; local check only. Reported error: {reported}",
        fix=(
            f"Review the {lines} line(s) ({chars} characters) of {language or 'code'} around the reported error. "
            "Check syntax, spelling of names and missing imports, then run the code again."
        ),
        best_practices=(
            "Use a linter and follow the language's style guide. "
            "Reproduce the error with the smallest input you can and add a test for it."
        ),
        fallback=True,
    )


def fallback_suggestion(description: str, language: str) -> CodeSuggestion:
    c = _comment_prefix(language)
    return CodeSuggestion(
        suggestion=(
            f"{c} Unable to generate a {language or 'code'} suggestion at this time.\n"
            f"{c} Requested: {description.strip()}\n"
            f"{c} Start from small functions with clear inputs and outputs and test each one."
        ),
        fallback=True,
    )


def fallback_review(student_code: str) -> CodeReview:
    return CodeReview(
        feedback=(
            "Code Analysis Complete:\n\n"
            "Code Structure Analysis:\n"
            f"- Lines of code: {_line_count(student_code)}\n"
            f"- Character count: {len(student_code)}\n\n"
            "General Recommendations:\n"
            "1. Ensure proper error handling and edge case coverage\n"
            "2. Add comments for complex logic sections\n"
            "3. Follow consistent naming conventions\n"
            "4. Test your code with various input scenarios\n"
            "5. Compare your approach with your mentor's implementation\n\n"
            "Next Steps:\n"
            "- Review the code with your mentor in your next lab session\n"
            "- Ask questions about any unclear concepts\n\n"
            "Note: detailed AI analysis requires a configured provider key."
        ),
        fallback=True,
    )


class AiAssistant:
    def __init__(self, provider: CompletionProvider | None, timeout: float = 10.0) -> None:
        self.provider = provider
        self.timeout = timeout

    @property
    def provider_name(self) -> str | None:
        return self.provider.name if self.provider else None

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {"metric": name, "ts": time.time(), "provider": self.provider_name, **fields}
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))

    async def _complete(self, prompt: str, kind: str) -> str | None:
        """One bounded provider call. None means take the fallback."""
        if self.provider is None:
            self._log_metric("ai_fallback", kind=kind, reason="no_provider")
            return None
        start = time.monotonic()
        try:
            async with asyncio.timeout(self.timeout):
                return await self.provider.complete(prompt, timeout=self.timeout)
        except TimeoutError:
            reason = "timeout"
            log.warning("ai %s timed out after %.1fs", kind, self.timeout)
        except ExternalServiceUnavailable as exc:
            reason = "unavailable"
            log.warning("ai %s unavailable: %s", kind, exc)
        except MalformedProviderResponse as exc:
            reason = "malformed"
            log.warning("ai %s malformed response: %s", kind, exc)
        except Exception:
            reason = "error"
            log.exception("ai %s failed unexpectedly", kind)
        self._log_metric(
            "ai_fallback",
            kind=kind,
            reason=reason,
            latency_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return None

    async def analyze_error(self, error_message: str, code_snippet: str, language: str = "javascript") -> ErrorAnalysis:
        prompt = build_debug_prompt(error_message, code_snippet, language)
        text = await self._complete(prompt, "analyze_error")
        if text is not None:
            parsed = parse_error_analysis(text)
            if parsed is not None:
                return parsed
            self._log_metric("ai_fallback", kind="analyze_error", reason="empty")
        return fallback_error_analysis(error_message, code_snippet, language)

    async def suggest_code(self, description: str, language: str = "javascript") -> CodeSuggestion:
        prompt = build_suggestion_prompt(description, language)
        text = await self._complete(prompt, "suggest_code")
        if text is not None and text.strip():
            return CodeSuggestion(suggestion=text)
        return fallback_suggestion(description, language)

    async def review_code(self, student_code: str, mentor_code: str | None = None) -> CodeReview:
        prompt = build_review_prompt(student_code, mentor_code)
        text = await self._complete(prompt, "review_code")
        if text is not None and text.strip():
            return CodeReview(feedback=text)
        return fallback_review(student_code)
