"""High level orchestration for note chat with streaming, memory and retrieval."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from note_core.errors import (
    ChatEngineError,
    ConcurrencyViolation,
    ConfigurationError,
    ContentError,
    MessageNotFound,
    NoUserMessageToReplay,
    PersistenceError,
    SessionNotFound,
)
from note_index.cache import VectorIndexCache
from note_index.embedding_client import Embedder, EmbeddingClient
from note_index.store import FileVectorStore, VectorIndexEntry, VectorStorePersistence
from .backends import BackendRegistry
from .chain_manager import ChainManager, SetChainOptions
from .chains import ChainType
from .commands import get_command, render_command
from .config import ChatConfig, GenerationParams
from .llm_client import ChatBackend
from .memory import MemoryWindow
from .messages import ConversationLog, Message, Sender
from .notes import (
    EMPTY_CHAT_CONTEXT,
    ChatContext,
    ContextNote,
    DirectoryNoteStore,
    NoteStore,
    convert_to_prompt,
    load_context_notes,
    notes_from_reference,
    notes_from_tags,
)
from .notifier import Notice, Notifier
from .prompts import PromptAssembler
from .replay import HistoryReplayController
from .runner import CancellationToken, ChainRunner, RunResult, UpdateCallback

logger = logging.getLogger(__name__)


class ChatSession:
    """One conversation: its log, memory, pipeline and in-flight turn.

    ``send_message`` and ``run_command`` queue behind the running turn;
    editing history while a turn is running is refused.
    """

    def __init__(
        self,
        session_id: str,
        config: ChatConfig,
        registry: BackendRegistry,
        index_cache: VectorIndexCache,
        embedder_factory: Callable[[], Embedder],
        *,
        notifier: Optional[Notifier] = None,
        note_store: Optional[NoteStore] = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self.registry = registry
        self.notifier = notifier or Notifier()
        self.note_store = note_store
        self.memory = MemoryWindow(config.memory_window_pairs)
        self.prompts = PromptAssembler(config.system_message)
        self.manager = ChainManager(
            registry,
            self.memory,
            self.prompts,
            index_cache,
            embedder_factory,
            default_chain_type=ChainType.parse(config.chain_type),
            query_expansion=config.index.query_expansion,
        )
        self.runner = ChainRunner(self.manager, self.notifier, default_params=config.generation_params())
        self.log = ConversationLog()
        self.context: ChatContext = EMPTY_CHAT_CONTEXT
        self.updated_at = time.time()
        self._turn_lock = asyncio.Lock()
        self._token: Optional[CancellationToken] = None

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    async def initialize(self) -> None:
        """Select the default model and build a fresh direct chat pipeline.

        A missing credential is reported, not raised, so the session is still
        usable once the user picks a configured model.
        """
        try:
            self.registry.switch(self.config.default_model_display_name)
            await self.manager.set_chain(ChainType.LLM_CHAIN, SetChainOptions(force_new_creation=True))
        except ConfigurationError as exc:
            self._report(exc, "Session %s started without a usable model", self.session_id)

    async def send_message(
        self, text: str, *, on_update: Optional[UpdateCallback] = None, debug: Optional[bool] = None
    ) -> RunResult:
        if not text or not text.strip():
            raise ContentError("Message is empty.")
        async with self._turn_lock:
            if self.context.is_empty:
                sent = self.log.add(Message(text=text, sender=Sender.USER))
            else:
                shown, sent = convert_to_prompt(self.context, text)
                self.log.add(shown)
                self.log.add(sent)
                self.context = EMPTY_CHAT_CONTEXT
            return await self._run_turn(sent, on_update=on_update, debug=debug)

    async def run_command(
        self,
        name: str,
        selected_text: str,
        subtype: Optional[str] = None,
        *,
        visible: bool = False,
        on_update: Optional[UpdateCallback] = None,
        debug: Optional[bool] = None,
    ) -> RunResult:
        """Run a one-shot editing command on ``selected_text`` without the system message."""
        try:
            command = get_command(name)
            prompt = render_command(name, selected_text, subtype)
        except ContentError as exc:
            self._report(exc, "Command %s rejected", name)
            raise
        params = self.config.generation_params().with_temperature(command.temperature)
        async with self._turn_lock:
            message = self.log.add(Message(text=prompt, sender=Sender.USER, visible=visible, in_chain=True))
            return await self._run_turn(
                message, on_update=on_update, debug=debug, params=params, ignore_system_message=True
            )

    async def switch_model(self, display_name: str) -> None:
        try:
            await self.manager.switch_model(display_name)
        except ChatEngineError as exc:
            self._report(exc, "Switching model to %s failed", display_name)
            raise
        self.updated_at = time.time()

    async def switch_strategy(
        self,
        chain_type: Union[str, ChainType],
        *,
        document_text: Optional[str] = None,
        force_new_creation: bool = False,
    ) -> None:
        try:
            chain_type = ChainType.parse(chain_type)
        except ValueError as exc:
            error = ContentError(str(exc))
            self._report(error, "Switching strategy failed")
            raise error from exc
        options = SetChainOptions(force_new_creation=force_new_creation, document_text=document_text)
        try:
            await self.manager.set_chain(chain_type, options)
        except ChatEngineError as exc:
            self._report(exc, "Switching strategy to %s failed", chain_type.value)
            raise
        self.updated_at = time.time()

    async def edit_message(
        self, message_id: str, new_text: str, *, on_update: Optional[UpdateCallback] = None
    ) -> Optional[RunResult]:
        if self.busy:
            error = ConcurrencyViolation(details={"message_id": message_id})
            self._report(error, "Edit refused while a response is being generated")
            raise error

        async def run_turn(message: Message) -> RunResult:
            return await self._run_turn(message, on_update=on_update)

        controller = HistoryReplayController(self.log, self.memory, run_turn)
        async with self._turn_lock:
            try:
                return await controller.edit_message(message_id, new_text)
            except (MessageNotFound, NoUserMessageToReplay) as exc:
                self._report(exc, "Editing message %s failed", message_id)
                raise

    async def rebuild_index_for_active_document(
        self, document_text: str, note_name: Optional[str] = None
    ) -> VectorIndexEntry:
        try:
            entry = await self.manager.rebuild_index(document_text)
        except ChatEngineError as exc:
            self._report(exc, "Rebuilding the note index failed")
            raise
        name = note_name or entry.content_hash[:8]
        self.log.add(
            Message(
                text=f'Indexing [[{name}]]...\n\n Please switch to "QA" in Mode Selection to ask questions about it.',
                sender=Sender.AI,
                in_chain=False,
            )
        )
        return entry

    def count_tokens_message(self, selected_text: str) -> Message:
        try:
            tokens = self.registry.count_tokens(selected_text)
        except ConfigurationError as exc:
            self._report(exc, "Token count unavailable")
            raise
        words = len(selected_text.split())
        return self.log.add(
            Message(
                text=f"The selected text contains {words} words and {tokens} tokens.",
                sender=Sender.AI,
                in_chain=False,
            )
        )

    def add_context_notes(self, notes: Iterable[ContextNote]) -> ChatContext:
        self.context = self.context.combine(ChatContext(tuple(notes)))
        logger.info("Session %s now carries %d context note(s)", self.session_id, len(self.context.notes))
        return self.context

    def select_context_notes(
        self,
        path: Optional[str] = None,
        tags: Sequence[str] = (),
        active_note: Optional[str] = None,
    ) -> ChatContext:
        """Attach notes picked by folder or ``[[link]]`` and by tags.

        With nothing matched, the active note is attached instead.
        """
        try:
            if self.note_store is None:
                raise ConfigurationError("No notes directory is configured.")
            paths = notes_from_reference(self.note_store, path) if path else []
            for match in notes_from_tags(self.note_store, tags):
                if match not in paths:
                    paths.append(match)
            if not paths:
                if not active_note or active_note not in self.note_store.markdown_paths():
                    raise ContentError("No active note found.", details={"active_note": active_note})
                self.notifier.notify("No valid Chat context provided. Defaulting to the active note.", level="info")
                paths = [active_note]
            selected = load_context_notes(self.note_store, paths)
        except ChatEngineError as exc:
            self._report(exc, "Selecting context notes failed")
            raise
        return self.add_context_notes(selected.notes)

    def stop(self) -> bool:
        """Stop the response being generated, if any."""
        if self._token is None:
            return False
        logger.info("User stopping generation for session %s", self.session_id)
        self._token.cancel()
        return True

    def new_conversation(self) -> None:
        self.stop()
        self.log.clear()
        self.memory.clear()
        self.context = EMPTY_CHAT_CONTEXT
        self.updated_at = time.time()

    def history(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "messages": [message.as_dict() for message in self.log.visible()],
            "memory_pairs": len(self.memory),
            "chain": self.manager.describe(),
            "busy": self.busy,
            "updated_at": self.updated_at,
        }

    def to_markdown(self) -> str:
        return self.log.to_markdown()

    def drain_notices(self) -> List[Notice]:
        return self.notifier.drain()

    async def _run_turn(
        self,
        message: Message,
        *,
        on_update: Optional[UpdateCallback] = None,
        debug: Optional[bool] = None,
        params: Optional[GenerationParams] = None,
        ignore_system_message: bool = False,
    ) -> RunResult:
        token = CancellationToken()
        self._token = token
        try:
            result = await self.runner.run(
                message,
                token=token,
                on_update=on_update,
                on_message=self.log.add,
                debug=self.config.debug if debug is None else debug,
                params=params,
                ignore_system_message=ignore_system_message,
            )
        except ChatEngineError as exc:
            self._report(exc, "Session %s could not run the chain", self.session_id)
            raise
        finally:
            self._token = None
        self.updated_at = time.time()
        return result

    def _report(self, exc: ChatEngineError, context: str, *args: object) -> None:
        logger.error(context + ": %s (details=%s)", *args, exc.user_message, exc.details)
        self.notifier.notify(exc.user_message)


class ChatService:
    """Session registry sharing one note index cache across conversations.

    Each session reports to its own notifier; the service notifier carries
    warnings about the shared index.
    """

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        store: Optional[VectorStorePersistence] = None,
        backends: Optional[Dict[str, ChatBackend]] = None,
        embedder_factory: Optional[Callable[[], Embedder]] = None,
        notifier: Optional[Notifier] = None,
        note_store: Optional[NoteStore] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.notifier = notifier or Notifier()
        if note_store is None and self.config.notes_dir:
            note_store = DirectoryNoteStore(self.config.notes_dir)
        self.note_store = note_store
        self.backends = dict(backends or {})
        self.embedder_factory = embedder_factory or self._default_embedder
        self.index_cache = VectorIndexCache(
            store or FileVectorStore(self.config.index.store_dir),
            config=self.config.index,
            on_persistence_error=self._on_persistence_error,
        )
        self.sessions: Dict[str, ChatSession] = {}

    async def open_session(self, session_id: str) -> ChatSession:
        session = self.sessions.get(session_id)
        if session is not None:
            return session
        if not session_id or not session_id.strip():
            raise ContentError("session_id is required")
        registry = BackendRegistry(self.config.providers, backends=self.backends)
        session = ChatSession(
            session_id,
            self.config,
            registry,
            self.index_cache,
            self.embedder_factory,
            note_store=self.note_store,
        )
        self.sessions[session_id] = session
        await session.initialize()
        logger.info("Opened chat session %s", session_id)
        return session

    def get_session(self, session_id: str) -> ChatSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No chat session found for id '{session_id}'", details={"session_id": session_id})
        return session

    def close_session(self, session_id: str) -> None:
        session = self.get_session(session_id)
        session.stop()
        del self.sessions[session_id]

    def list_sessions(self) -> List[Dict[str, object]]:
        """Return lightweight session metadata for UI selection."""
        payload = []
        for session in self.sessions.values():
            messages = session.log.visible()
            payload.append(
                {
                    "session_id": session.session_id,
                    "updated_at": session.updated_at,
                    "message_count": len(messages),
                    "last_message": messages[-1].text if messages else "",
                    "chain_type": session.manager.chain_type.value,
                    "busy": session.busy,
                }
            )
        return sorted(payload, key=lambda item: item.get("updated_at", 0), reverse=True)

    def _default_embedder(self) -> Embedder:
        return EmbeddingClient(self.config.embedding)

    def _on_persistence_error(self, exc: PersistenceError) -> None:
        self.notifier.notify(
            f"{exc.user_message} The index is kept in memory for this session only.", level="warning"
        )
