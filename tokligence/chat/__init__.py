"""Chat client for the gateway's OpenAI-compatible endpoints."""

from tokligence.chat.models import list_models
from tokligence.chat.session import ChatSession
from tokligence.chat.sse import SSEParser

__all__ = ["ChatSession", "SSEParser", "list_models"]
