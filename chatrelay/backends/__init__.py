"""Backend adapters -- one per provider wire protocol.

Public API:
    BackendAdapter        - open(messages, selector, options) -> DeltaStream
    LocalModelAdapter     - Ollama /api/chat NDJSON streaming
    OpenAICompatAdapter   - /chat/completions SSE streaming
    ToolAugmentedAdapter  - OpenAI-compatible tool loop over MCP servers

Errors:
    BackendError, BackendConnectionError, AuthError, ProviderError
"""

from chatrelay.backends.base import (
    AuthError,
    BackendAdapter,
    BackendConnectionError,
    BackendError,
    ChatOptions,
    DeltaStream,
    ProviderError,
)
from chatrelay.backends.compat import OpenAICompatAdapter
from chatrelay.backends.deltas import CompatDelta, LocalDelta, RawDelta
from chatrelay.backends.local import LocalModelAdapter
from chatrelay.backends.tools import TOOL_MARKER, ToolAugmentedAdapter

__all__ = [
    "AuthError",
    "BackendAdapter",
    "BackendConnectionError",
    "BackendError",
    "ChatOptions",
    "CompatDelta",
    "DeltaStream",
    "LocalDelta",
    "LocalModelAdapter",
    "OpenAICompatAdapter",
    "ProviderError",
    "RawDelta",
    "TOOL_MARKER",
    "ToolAugmentedAdapter",
]
