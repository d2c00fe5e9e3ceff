"""Conversation history: chat messages mutated in place as a turn streams."""
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from .llm import ChatBackend
from .pipeline import StreamOrchestrator, Turn
from .protocol import StreamChunk

logger = logging.getLogger(__name__)

MAX_HISTORY = 20


@dataclass
class ChatMessage:
    role: str  # "user" | "system" | "assistant"
    content: str = ""
    pending: bool = False
    tool_name: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_backend(self) -> dict:
        return {"role": self.role, "content": self.content}


class Conversation:
    def __init__(
        self,
        orchestrator: StreamOrchestrator,
        backend: ChatBackend,
        conversation_id: str = "default",
        max_history: int = MAX_HISTORY,
    ):
        self.id = conversation_id
        self.orchestrator = orchestrator
        self.backend = backend
        self.max_history = max_history
        self.messages: List[ChatMessage] = []
        self.last_turn: Optional[Turn] = None

    def history(self) -> List[dict]:
        """Messages sent to the backend: settled messages with content, newest ``max_history``."""
        settled = [m.to_backend() for m in self.messages if not m.pending and m.content]
        return settled[-self.max_history:]

    async def send(self, text: str, backend: Optional[ChatBackend] = None) -> AsyncIterator[StreamChunk]:
        """Stream the assistant's reply to ``text``.

        The reply message is appended as pending and filled in as chunks
        arrive; it is removed again if the turn fails or produces no text.
        """
        self.messages.append(ChatMessage(role="user", content=text))
        history = self.history()
        reply = ChatMessage(role="assistant", pending=True)
        self.messages.append(reply)
        self.last_turn = Turn()

        try:
            async with aclosing(self.orchestrator.stream_turn(history, backend or self.backend, self.last_turn)) as stream:
                async for chunk in stream:
                    if chunk.tool_call_name:
                        reply.tool_name = chunk.tool_call_name
                        # tool summary after text forwarded ahead of the marker
                        if reply.content.strip():
                            reply.content = reply.content.rstrip() + "\n\n"
                    reply.content += chunk.message
                    reply.pending = False
                    yield chunk
        except Exception as e:
            logger.error(f"[{self.id}] Turn failed: {e}")
            self._remove(reply)
            raise
        finally:
            if reply.pending:
                self._remove(reply)
            self._trim()

    def reset(self):
        self.messages.clear()
        logger.info(f"[{self.id}] Conversation history cleared")

    def _remove(self, message: ChatMessage):
        if message in self.messages:
            self.messages.remove(message)

    def _trim(self):
        if len(self.messages) > self.max_history:
            self.messages[:] = self.messages[-self.max_history:]
