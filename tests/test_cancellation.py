"""Tests for CancellationRegistry token lifecycle."""

from chatrelay.chat.cancellation import CancellationRegistry


def test_start_gives_live_token():
    registry = CancellationRegistry()
    token = registry.start("c1")
    assert not token.cancelled
    assert len(registry) == 1


def test_stop_flips_token():
    registry = CancellationRegistry()
    token = registry.start("c1")
    assert registry.stop("c1") is True
    assert token.cancelled


def test_stop_without_turn():
    registry = CancellationRegistry()
    assert registry.stop("nope") is False


def test_finish_removes_entry():
    registry = CancellationRegistry()
    token = registry.start("c1")
    registry.finish("c1", token)
    assert len(registry) == 0
    assert registry.stop("c1") is False


def test_newer_turn_replaces_entry():
    registry = CancellationRegistry()
    first = registry.start("c1")
    second = registry.start("c1")

    # The older turn finishing must not drop the newer turn's entry
    registry.finish("c1", first)
    assert len(registry) == 1

    assert registry.stop("c1") is True
    assert second.cancelled
    assert not first.cancelled


def test_conversations_are_independent():
    registry = CancellationRegistry()
    a = registry.start("a")
    b = registry.start("b")
    registry.stop("a")
    assert a.cancelled
    assert not b.cancelled
