"""chatrelay - streaming chat turn orchestrator for local and OpenAI-compatible models."""

__version__ = "0.1.0"
