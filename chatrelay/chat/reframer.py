"""Stream reframer -- turns backend deltas into the client-facing text stream.

One StreamReframer drives one turn: it reads RawDelta objects from a
DeltaStream, wraps reasoning text in ``<think>`` markers, polls the turn's
cancellation token, and writes each model fragment both to the
ResponseChannel and to the accumulated Turn. Side-channel output such as
tool calls reaches the client only. However the stream ends (terminal delta,
cancellation, backend exhaustion or a mid-stream error) the accumulated
turn is persisted and the channel is closed with its end sentinel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from chatrelay.backends.base import DeltaStream
from chatrelay.backends.deltas import CompatDelta, LocalDelta, RawDelta
from chatrelay.backends.tools import TOOL_MARKER
from chatrelay.chat.cancellation import CancellationToken
from chatrelay.chat.schemas import GenerationStat, Turn
from chatrelay.i18n import Translator

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
OPEN_MARKER = f"\n{THINK_OPEN}\n"
CLOSE_MARKER = f"\n{THINK_CLOSE}\n"

NS_PER_S = 1_000_000_000
NS_PER_MS = 1_000_000


class ResponseChannel:
    """Outgoing fragment queue for one turn; None is the end sentinel."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False

    def push(self, fragment: str) -> None:
        if self.closed:
            logger.debug("Dropping fragment pushed after close")
            return
        if fragment:
            self._queue.put_nowait(fragment)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[str]:
        while True:
            fragment = await self._queue.get()
            if fragment is None:
                return
            yield fragment


@dataclass
class StreamState:
    """Per-turn reframing state."""

    in_reasoning: bool = False
    reasoning_closed: bool = False
    pending: list[str] = field(default_factory=list)


@dataclass
class StreamTiming:
    """Wall-clock marks for providers that report no durations."""

    started: float = field(default_factory=time.time)
    first_delta: float | None = None

    def mark(self) -> None:
        if self.first_delta is None:
            self.first_delta = time.time()


def local_stat(delta: LocalDelta, model: str) -> GenerationStat:
    """Rescale local-provider nanosecond durations to seconds / milliseconds."""
    return GenerationStat(
        model=delta.model or model,
        created_at=delta.created_at,
        total_duration=delta.total_duration / NS_PER_S,
        load_duration=delta.load_duration / NS_PER_MS,
        prompt_eval_count=delta.prompt_eval_count,
        prompt_eval_duration=delta.prompt_eval_duration / NS_PER_MS,
        eval_count=delta.eval_count,
        eval_duration=delta.eval_duration / NS_PER_S,
    )


def compat_stat(delta: CompatDelta, model: str, timing: StreamTiming, now: float | None = None) -> GenerationStat:
    """Usage counts from the provider, durations from wall-clock marks.

    Time to first delta stands in for prompt evaluation, the rest of the
    stream for generation.
    """
    end = now if now is not None else time.time()
    first = timing.first_delta if timing.first_delta is not None else end
    return GenerationStat(
        model=model,
        created_at=str(delta.created or int(end)),
        total_duration=max(0.0, end - timing.started),
        load_duration=0,
        prompt_eval_count=delta.prompt_tokens,
        prompt_eval_duration=max(0.0, first - timing.started) * 1000,
        eval_count=delta.completion_tokens,
        eval_duration=max(0.0, end - first),
    )


def close_open_reasoning(content: str) -> str:
    """Append a closing marker if content holds an unterminated <think>."""
    if content.count(THINK_OPEN) > content.count(THINK_CLOSE):
        return content + CLOSE_MARKER
    return content


class StreamReframer:
    """Pumps one DeltaStream into a ResponseChannel and the reply Turn."""

    def __init__(
        self,
        channel: ResponseChannel,
        reply: Turn,
        token: CancellationToken,
        persist: Callable[[Turn], Awaitable[None]],
        translate: Translator,
        model: str,
        timing: StreamTiming | None = None,
    ) -> None:
        self.channel = channel
        self.reply = reply
        self.state = StreamState()
        self._token = token
        self._persist = persist
        self._t = translate
        self._model = model
        self._timing = timing or StreamTiming()
        self._finished = False

    def push_side(self, message: str) -> None:
        """Queue side-channel output for the client.

        Side output is never part of the transcript; tool output is recorded
        in tools_result instead.
        """
        if not message:
            return
        self.state.pending.append(message)
        if TOOL_MARKER in message:
            self.reply.tools_result.append(message)

    async def run(self, stream: DeltaStream) -> Turn:
        """Drive the stream to a terminal state and persist the turn."""
        try:
            async for delta in stream:
                self._timing.mark()
                self._flush_pending()
                if delta.is_terminal:
                    self._on_terminal(delta)
                    break
                if self._token.cancelled:
                    await self._on_cancel(stream)
                    break
                self._on_delta(delta)
            else:
                logger.warning(
                    "Backend stream for %s ended without a terminal delta",
                    self.reply.conversation_id,
                )
        except asyncio.CancelledError:
            await stream.abort()
            await self._finish()
            raise
        except Exception as e:
            logger.error("Backend stream for %s failed mid-stream: %s", self.reply.conversation_id, e)
            await stream.abort()

        await stream.aclose()
        await self._finish()
        return self.reply

    # ------------------------------------------------------------------
    # Delta handling
    # ------------------------------------------------------------------

    def _emit(self, fragment: str) -> None:
        if not fragment:
            return
        self.channel.push(fragment)
        self.reply.content += fragment

    def _flush_pending(self) -> None:
        while self.state.pending:
            self.channel.push(self.state.pending.pop(0))

    def _on_delta(self, delta: RawDelta) -> None:
        if delta.reasoning:
            if not self.state.in_reasoning:
                self.state.in_reasoning = True
                if THINK_OPEN not in delta.reasoning:
                    self._emit(OPEN_MARKER)
            self._emit(delta.reasoning)
            if THINK_CLOSE in delta.reasoning:
                self.state.reasoning_closed = True
            return

        if delta.content:
            self._leave_reasoning()
        self._emit(delta.content)

    def _leave_reasoning(self) -> None:
        if not self.state.in_reasoning:
            return
        self.state.in_reasoning = False
        if not self.state.reasoning_closed:
            self._emit(CLOSE_MARKER)
            self.state.reasoning_closed = True

    def _close_all_reasoning(self) -> None:
        """Close the reasoning sub-stream and any raw <think> streamed as content."""
        self._leave_reasoning()
        if close_open_reasoning(self.reply.content) != self.reply.content:
            self._emit(CLOSE_MARKER)

    def _on_terminal(self, delta: RawDelta) -> None:
        if delta.reasoning:
            self._on_delta(delta)
        self._leave_reasoning()
        self._emit(delta.content)
        if isinstance(delta, LocalDelta):
            self.reply.stat = local_stat(delta, self._model)
            self.reply.created_at = delta.created_at
        else:
            self.reply.stat = compat_stat(delta, self._model, self._timing)
            self.reply.created_at = self.reply.stat.created_at
            if delta.created:
                self.reply.create_time = delta.created
        self.reply.tokens = self.reply.stat.eval_count

    async def _on_cancel(self, stream: DeltaStream) -> None:
        logger.info("Generation stopped by user for %s", self.reply.conversation_id)
        self._close_all_reasoning()
        self._emit(self._t("generation_stopped"))
        await stream.abort()

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._flush_pending()
        self._close_all_reasoning()
        try:
            await self._persist(self.reply)
        except Exception as e:
            logger.error("Failed to persist turn %s: %s", self.reply.id, e)
        finally:
            self.channel.close()
