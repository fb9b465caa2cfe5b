"""Streaming delta types for the two backend wire shapes.

Local models (Ollama /api/chat) stream NDJSON objects with a boolean
``done`` flag and nanosecond durations. OpenAI-compatible providers stream
SSE ``data:`` lines with ``choices[0].delta`` and a ``finish_reason``.
Each shape has its own dataclass and parse function; consumers branch on
the type, never on which keys happen to be present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chatrelay.backends.base import ProviderError

COMPAT_TERMINAL_REASONS = frozenset({"stop", "normal"})


@dataclass
class LocalDelta:
    """One chunk from a local model stream."""

    content: str = ""
    reasoning: str = ""
    done: bool = False
    model: str = ""
    created_at: str = ""
    # Durations are reported in nanoseconds
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.done


@dataclass
class CompatDelta:
    """One chunk from an OpenAI-compatible stream."""

    content: str = ""
    reasoning: str = ""
    finish_reason: str | None = None
    created: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason in COMPAT_TERMINAL_REASONS


RawDelta = LocalDelta | CompatDelta


def parse_local_chunk(data: dict[str, Any]) -> LocalDelta:
    """Parse one NDJSON object from a local model stream.

    In-stream errors arrive as {"error": "..."} with HTTP 200.
    """
    if "error" in data:
        raise ProviderError(str(data["error"]))

    message = data.get("message") or {}
    return LocalDelta(
        content=message.get("content") or "",
        reasoning=message.get("thinking") or "",
        done=bool(data.get("done", False)),
        model=data.get("model", ""),
        created_at=str(data.get("created_at", "")),
        total_duration=data.get("total_duration") or 0,
        load_duration=data.get("load_duration") or 0,
        prompt_eval_count=data.get("prompt_eval_count") or 0,
        prompt_eval_duration=data.get("prompt_eval_duration") or 0,
        eval_count=data.get("eval_count") or 0,
        eval_duration=data.get("eval_duration") or 0,
    )


def parse_compat_chunk(data: dict[str, Any]) -> CompatDelta | None:
    """Parse one SSE payload from an OpenAI-compatible stream.

    Returns None for payloads that carry nothing (keepalives, empty
    choice lists without usage).
    """
    if "error" in data:
        error = data["error"]
        if isinstance(error, dict):
            raise ProviderError(error.get("message") or str(error))
        raise ProviderError(str(error))

    usage = data.get("usage") or {}
    choices = data.get("choices") or []
    if not choices:
        if not usage:
            return None
        return CompatDelta(
            created=data.get("created") or 0,
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
        )

    choice = choices[0]
    delta = choice.get("delta") or {}
    return CompatDelta(
        content=delta.get("content") or "",
        reasoning=delta.get("reasoning_content") or "",
        finish_reason=choice.get("finish_reason"),
        created=data.get("created") or 0,
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
        tool_calls=delta.get("tool_calls") or [],
    )
