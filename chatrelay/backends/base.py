"""Backend adapter contract, error taxonomy and shared HTTP plumbing.

Adapters raise before the stream opens (connection refused, rejected
credentials, error status) so the caller can answer with an error string
instead of a stream. Once open, a DeltaStream yields parsed deltas and
exposes an abort handle.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from chatrelay.backends.deltas import RawDelta
    from chatrelay.chat.schemas import ModelSelector

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base class for failures talking to a model backend."""


class BackendConnectionError(BackendError):
    """Backend unreachable, timed out or dropped the connection."""


class AuthError(BackendConnectionError):
    """Backend rejected the credentials."""


class ProviderError(BackendError):
    """Backend answered with a structured error payload."""


@dataclass
class ChatOptions:
    """Per-turn options that influence request shaping."""

    tool_servers: list[str] = field(default_factory=list)
    on_side_output: Callable[[str], None] | None = None


class DeltaStream:
    """Async iterator over one backend response plus its abort handle."""

    def __init__(
        self,
        deltas: AsyncIterator[RawDelta],
        on_abort: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._deltas = deltas
        self._on_abort = on_abort
        self._closed = False

    def __aiter__(self) -> AsyncIterator[RawDelta]:
        return self._deltas

    async def abort(self) -> None:
        """Cancel the in-flight request. Failures are logged, never raised."""
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._deltas, "aclose", None)
            if aclose is not None:
                await aclose()
            if self._on_abort is not None:
                await self._on_abort()
        except Exception as e:
            logger.error("Abort error: %s", e)

    async def aclose(self) -> None:
        """Release the underlying response after normal completion."""
        await self.abort()


class BackendAdapter(ABC):
    """Opens a streaming completion against one provider family."""

    @abstractmethod
    async def open(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        options: ChatOptions,
    ) -> DeltaStream:
        """Send the request and return the delta stream once headers arrive."""


def _error_message(body: bytes, status_code: int) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict) and "error" in data:
        error = data["error"]
        if isinstance(error, dict):
            return error.get("message") or json.dumps(error)
        return str(error)
    text = body.decode("utf-8", errors="replace")[:500]
    return f"HTTP {status_code}: {text}"


async def open_stream(
    http: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """POST a streaming request and return the response once the status is OK.

    Raises AuthError on 401/403, ProviderError on other error statuses and
    BackendConnectionError on transport failures.
    """
    request = http.build_request("POST", url, json=payload, headers=headers)
    try:
        response = await http.send(request, stream=True)
    except httpx.TimeoutException as e:
        raise BackendConnectionError(f"request timed out: {e}") from e
    except httpx.HTTPError as e:
        raise BackendConnectionError(str(e) or type(e).__name__) from e

    if response.status_code != 200:
        body = await response.aread()
        await response.aclose()
        message = _error_message(body, response.status_code)
        if response.status_code in (401, 403):
            raise AuthError(message)
        raise ProviderError(message)
    return response
