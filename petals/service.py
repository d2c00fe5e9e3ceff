"""Composition root: builds every shared component once and hands them out by reference."""
import asyncio
import logging
from typing import Dict, Optional

from .conversation import Conversation
from .database import create_engine, create_session_factory, init_db
from .llm import ChatBackend, build_backends
from .nlp import EmbeddingTable, ExemplarProvider, SentenceEncoderTable, ToolTriggerEvaluator, Vectorizer
from .nlp.embeddings import EmbeddingSource
from .pipeline import StreamOrchestrator
from .tools.builtin import default_tools
from .tools.executor import ToolDispatcher
from .tools.registry import Permission, ToolContext, ToolFilter, ToolLoader, ToolRegistry

logger = logging.getLogger(__name__)


def load_embeddings(settings) -> EmbeddingSource:
    """Word-vector file when EMBEDDINGS_PATH is set, otherwise the sentence encoder."""
    if settings.embeddings_path:
        return EmbeddingTable.load(settings.embeddings_path)
    return SentenceEncoderTable(settings.embedding_model)


class ChatService:
    def __init__(
        self,
        settings,
        embeddings: Optional[EmbeddingSource] = None,
        backends: Optional[Dict[str, ChatBackend]] = None,
        tool_loader: ToolLoader = default_tools,
        http_transport=None,
    ):
        self.settings = settings

        table = embeddings if embeddings is not None else load_embeddings(settings)
        self.evaluator = ToolTriggerEvaluator(Vectorizer(table), threshold=settings.tool_trigger_threshold)
        self.exemplars = ExemplarProvider(self.evaluator)

        self.engine = create_engine(settings.database_url)
        self.session_factory = create_session_factory(self.engine)

        self.registry = ToolRegistry(tool_loader)
        self.context = ToolContext(settings, self.session_factory, http_transport)
        self.dispatcher = ToolDispatcher(self.registry, self.context, timeout_s=settings.tool_timeout_s)
        self.tool_filter = ToolFilter(max_permission=Permission.parse(settings.max_tool_permission))
        self.orchestrator = StreamOrchestrator(self.registry, self.dispatcher, self.exemplars, self.tool_filter)

        self.backends = backends if backends is not None else build_backends(settings)
        self._conversations: Dict[str, Conversation] = {}

    async def start(self):
        await init_db(self.engine)
        await self.registry.ensure_initialized()
        loop = asyncio.get_running_loop()
        ready = await loop.run_in_executor(None, self.exemplars.warm)
        if ready:
            logger.info(f"Tool trigger ready: {ready}/{len(self.exemplars.tool_ids)} prototypes")
        else:
            logger.error("No tool prototype could be built from the embedding source; tool triggering is disabled")
        logger.info(f"Chat service ready: backends={sorted(self.backends)}, default={self.settings.default_backend}")

    async def close(self):
        await self.engine.dispose()

    def backend(self, name: Optional[str] = None) -> ChatBackend:
        name = name or self.settings.default_backend
        try:
            return self.backends[name]
        except KeyError:
            raise ValueError(f"Unknown backend: {name}") from None

    def conversation(self, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            conv = Conversation(
                self.orchestrator,
                self.backend(),
                conversation_id=conversation_id,
                max_history=self.settings.max_history,
            )
            self._conversations[conversation_id] = conv
        return conv

    def find_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def reset_conversation(self, conversation_id: str) -> bool:
        conv = self._conversations.pop(conversation_id, None)
        if conv is None:
            return False
        conv.reset()
        return True
