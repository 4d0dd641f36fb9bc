from typing import Any

from .assistant import AiAssistant
from .providers import CompletionProvider, GeminiProvider

PROVIDER_CLASSES: dict[str, type[GeminiProvider]] = {
    "gemini": GeminiProvider,
}


def create_provider(api_key: str | None, settings: dict[str, Any]) -> CompletionProvider | None:
    """Build the configured provider, or None when no key is set."""
    if not api_key:
        return None
    provider_type = settings.get("ai.provider") or "gemini"
    cls = PROVIDER_CLASSES.get(provider_type)
    if cls is None:
        raise ValueError(f"Unknown AI provider: {provider_type}")
    return cls(
        api_key=api_key,
        model=settings.get("ai.model") or "gemini-pro",
        base_url=settings.get("ai.base_url") or "https://generativelanguage.googleapis.com/v1beta/models",
        temperature=float(settings.get("ai.temperature", 0.7)),
        max_output_tokens=int(settings.get("ai.max_output_tokens", 1024)),
    )


def create_assistant(api_key: str | None, settings: dict[str, Any]) -> AiAssistant:
    return AiAssistant(
        provider=create_provider(api_key, settings),
        timeout=float(settings.get("ai.timeout", 10)),
    )
