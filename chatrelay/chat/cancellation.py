"""Cooperative cancellation of in-flight turns.

A stop request never interrupts a turn directly: it flips the turn's
token, and the reframing loop checks the token between backend deltas.
All access happens on the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """Liveness flag for one turn of one conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._live = True

    @property
    def cancelled(self) -> bool:
        return not self._live

    def cancel(self) -> None:
        self._live = False


class CancellationRegistry:
    """Maps conversation id to the token of its active turn.

    One registry is created per app and passed to the orchestrator.
    Lifecycle: start() at turn start, stop() on a user request,
    finish() once the turn is persisted.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def start(self, conversation_id: str) -> CancellationToken:
        """Create a live token for a new turn.

        An overlapping turn on the same conversation replaces the registry
        entry; the older turn keeps its own token and is no longer reachable
        by stop().
        """
        previous = self._tokens.get(conversation_id)
        if previous is not None and not previous.cancelled:
            logger.debug("Turn superseded on conversation %s", conversation_id)
        token = CancellationToken(conversation_id)
        self._tokens[conversation_id] = token
        return token

    def stop(self, conversation_id: str) -> bool:
        """Request cancellation. Returns False if nothing is in flight."""
        token = self._tokens.get(conversation_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Stop requested for conversation %s", conversation_id)
        return True

    def finish(self, conversation_id: str, token: CancellationToken) -> None:
        """Drop the entry if it still belongs to the finishing turn."""
        if self._tokens.get(conversation_id) is token:
            del self._tokens[conversation_id]

    def __len__(self) -> int:
        return len(self._tokens)
