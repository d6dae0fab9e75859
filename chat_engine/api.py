"""FastAPI routes for the note chat engine."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from note_core.errors import ChatEngineError
from note_core.http import install_error_handlers
from note_core.utils import setup_logging
from .commands import command_names
from .config import ChatConfig, ProviderSettings
from .notes import ContextNote
from .runner import RunResult, UpdateCallback
from .service import ChatService, ChatSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("field must not be empty")
    return value


class SessionRequest(BaseModel):
    session_id: str = Field(..., description="Unique chat session identifier.")

    @validator("session_id")
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class MessageRequest(BaseModel):
    message: str = Field(..., description="User message to send to the model.")
    debug: Optional[bool] = Field(None, description="Log diagnostic details for this turn.")

    @validator("message")
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class CommandRequest(BaseModel):
    command: str = Field(..., description="Command name, e.g. summarizeSelection.")
    selected_text: str = Field(..., description="Text the command operates on.")
    subtype: Optional[str] = Field(None, description="Target language, tone or ad-hoc prompt.")
    visible: bool = False

    @validator("command", "selected_text")
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class ModelRequest(BaseModel):
    display_name: str

    @validator("display_name")
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class StrategyRequest(BaseModel):
    chain_type: str = Field(..., description="llm_chain or retrieval_qa.")
    document_text: Optional[str] = Field(None, description="Note content for retrieval QA.")
    force_new_creation: bool = False


class EditRequest(BaseModel):
    text: str

    @validator("text")
    def _not_empty(cls, value: str) -> str:
        return _require_text(value)


class RebuildIndexRequest(BaseModel):
    document_text: str
    note_name: Optional[str] = None


class TokensRequest(BaseModel):
    selected_text: str


class ContextNoteModel(BaseModel):
    path: str
    content: str
    tags: List[str] = Field(default_factory=list)


class ContextRequest(BaseModel):
    notes: List[ContextNoteModel]


class ContextSelectRequest(BaseModel):
    path: Optional[str] = Field(None, description="Folder path, note name or [[Note]] link.")
    tags: List[str] = Field(default_factory=list, description="Attach notes carrying any of these tags.")
    active_note: Optional[str] = Field(None, description="Note attached when nothing else matches.")


class TurnStream:
    """Bridge a running turn's update callback onto an HTTP body.

    The callback receives the accumulated reply; the body carries only the
    new suffix of each snapshot, in arrival order.
    """

    def __init__(self, run: Callable[[UpdateCallback], Awaitable[Optional[RunResult]]]) -> None:
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._task = asyncio.ensure_future(self._drive(run))

    async def _drive(self, run: Callable[[UpdateCallback], Awaitable[Optional[RunResult]]]) -> Optional[RunResult]:
        try:
            return await run(self._queue.put_nowait)
        finally:
            self._queue.put_nowait(None)

    async def first(self) -> Optional[str]:
        """Wait for the first snapshot; errors raised before it propagate."""
        text = await self._queue.get()
        if text is None:
            result = await self._task
            if result is not None and result.error is not None:
                raise result.error
        return text

    async def body(self, first: str, on_disconnect: Callable[[], object]) -> AsyncIterator[str]:
        sent = 0
        text: Optional[str] = first
        try:
            while text is not None:
                yield text[sent:]
                sent = len(text)
                text = await self._queue.get()
        finally:
            if not self._task.done():
                logger.info("Client went away mid-stream, stopping generation")
                on_disconnect()
            try:
                await self._task
            except ChatEngineError:
                # Already reported through the session notifier.
                pass


async def _stream_turn(
    session: ChatSession, run: Callable[[UpdateCallback], Awaitable[Optional[RunResult]]]
):
    stream = TurnStream(run)
    first = await stream.first()
    if first is None:
        return session.history()
    return StreamingResponse(stream.body(first, session.stop), media_type="text/plain")


def _service(request: Request) -> ChatService:
    return request.app.state.chat_service


@router.get("/commands")
async def commands() -> dict:
    return {"commands": command_names()}


@router.get("/notices")
async def notices(request: Request) -> dict:
    """Warnings about the shared note index."""
    return {"notices": [notice.as_dict() for notice in _service(request).notifier.drain()]}


@router.get("/sessions")
async def list_sessions(request: Request) -> list:
    return _service(request).list_sessions()


@router.post("/sessions")
async def open_session(payload: SessionRequest, request: Request) -> dict:
    session = await _service(request).open_session(payload.session_id)
    return session.history()


@router.delete("/{session_id}")
async def close_session(session_id: str, request: Request) -> dict:
    _service(request).close_session(session_id)
    return {"session_id": session_id, "closed": True}


@router.post("/{session_id}/messages")
async def send_message(session_id: str, payload: MessageRequest, request: Request):
    session = await _service(request).open_session(session_id)
    logger.info("Received chat message for session %s", session_id)
    return await _stream_turn(
        session, lambda on_update: session.send_message(payload.message, on_update=on_update, debug=payload.debug)
    )


@router.put("/{session_id}/messages/{message_id}")
async def edit_message(session_id: str, message_id: str, payload: EditRequest, request: Request):
    session = _service(request).get_session(session_id)
    return await _stream_turn(
        session, lambda on_update: session.edit_message(message_id, payload.text, on_update=on_update)
    )


@router.post("/{session_id}/commands")
async def run_command(session_id: str, payload: CommandRequest, request: Request):
    session = await _service(request).open_session(session_id)
    return await _stream_turn(
        session,
        lambda on_update: session.run_command(
            payload.command,
            payload.selected_text,
            payload.subtype,
            visible=payload.visible,
            on_update=on_update,
        ),
    )


@router.post("/{session_id}/stop")
async def stop(session_id: str, request: Request) -> dict:
    stopped = _service(request).get_session(session_id).stop()
    return {"session_id": session_id, "stopped": stopped}


@router.get("/{session_id}/models")
async def models(session_id: str, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    active = session.registry.active
    return {
        "models": session.registry.display_names,
        "active": active.display_name if active else None,
    }


@router.put("/{session_id}/model")
async def switch_model(session_id: str, payload: ModelRequest, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    await session.switch_model(payload.display_name)
    return session.manager.describe()


@router.put("/{session_id}/strategy")
async def switch_strategy(session_id: str, payload: StrategyRequest, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    await session.switch_strategy(
        payload.chain_type,
        document_text=payload.document_text,
        force_new_creation=payload.force_new_creation,
    )
    return session.manager.describe()


@router.post("/{session_id}/index/rebuild")
async def rebuild_index(session_id: str, payload: RebuildIndexRequest, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    entry = await session.rebuild_index_for_active_document(payload.document_text, payload.note_name)
    return {"content_hash": entry.content_hash, "chunks": len(entry.chunks), "chain": session.manager.describe()}


@router.post("/{session_id}/tokens")
async def count_tokens(session_id: str, payload: TokensRequest, request: Request) -> dict:
    message = _service(request).get_session(session_id).count_tokens_message(payload.selected_text)
    return message.as_dict()


@router.post("/{session_id}/context")
async def add_context(session_id: str, payload: ContextRequest, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    context = session.add_context_notes(
        ContextNote(path=note.path, content=note.content, tags=tuple(note.tags)) for note in payload.notes
    )
    return {"session_id": session_id, "notes": [note.path for note in context.notes]}


@router.post("/{session_id}/context/select")
async def select_context(session_id: str, payload: ContextSelectRequest, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    context = session.select_context_notes(payload.path, payload.tags, payload.active_note)
    return {"session_id": session_id, "notes": [note.path for note in context.notes]}


@router.get("/{session_id}/notices")
async def session_notices(session_id: str, request: Request) -> dict:
    notices = _service(request).get_session(session_id).drain_notices()
    return {"session_id": session_id, "notices": [notice.as_dict() for notice in notices]}


@router.post("/{session_id}/new")
async def new_conversation(session_id: str, request: Request) -> dict:
    session = _service(request).get_session(session_id)
    session.new_conversation()
    return session.history()


@router.get("/{session_id}/history")
async def history(session_id: str, request: Request) -> dict:
    return _service(request).get_session(session_id).history()


@router.get("/{session_id}/markdown", response_class=PlainTextResponse)
async def markdown(session_id: str, request: Request) -> str:
    return _service(request).get_session(session_id).to_markdown()


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    log_dir: Optional[str] = None,
    service: Optional[ChatService] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    app = FastAPI(title="Note Chat Engine", version="0.1.0")
    app.state.chat_service = service or ChatService(chat_config)
    install_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def add_provider_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--settings", help="JSON settings file (model, providers, embedding, index).")
    parser.add_argument("--model", help="Display name of the model selected at startup.")
    parser.add_argument("--openai_api_key", help="OpenAI API key.")
    parser.add_argument("--openai_base_url", help="OpenAI-compatible base URL.")
    parser.add_argument("--ollama_base_url", help="Ollama server URL.")
    parser.add_argument("--ollama_model", help="Ollama model name.")
    parser.add_argument("--lm_studio_base_url", help="LM Studio server URL.")
    parser.add_argument("--embedding_endpoint", help="Embeddings endpoint.")
    parser.add_argument("--embedding_model", help="Embedding model name.")
    parser.add_argument("--store_dir", help="Directory for persisted note indexes.")
    parser.add_argument("--notes_dir", help="Directory of markdown notes for context selection.")
    parser.add_argument("--request_timeout", type=int, help="Timeout for model calls (seconds).")
    parser.add_argument("--debug", action="store_true", help="Log diagnostic details for every turn.")


def config_from_args(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig.from_file(args.settings) if args.settings else ChatConfig()
    providers: ProviderSettings = config.providers
    for name in ("openai_api_key", "openai_base_url", "ollama_base_url", "ollama_model", "lm_studio_base_url"):
        value = getattr(args, name)
        if value:
            setattr(providers, name, value)
    if args.request_timeout:
        providers.request_timeout = args.request_timeout
        config.embedding.request_timeout = args.request_timeout
    if args.model:
        config.default_model_display_name = args.model
    if args.embedding_endpoint:
        config.embedding.endpoint = args.embedding_endpoint
    if args.embedding_model:
        config.embedding.model = args.embedding_model
    if not config.embedding.api_key and providers.openai_api_key:
        config.embedding.api_key = providers.openai_api_key
    if args.store_dir:
        config.index.store_dir = args.store_dir
    if args.notes_dir:
        config.notes_dir = args.notes_dir
    if args.debug:
        config.debug = True
    return config


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the note chat service with streaming responses.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8004, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    add_provider_arguments(parser)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(config_from_args(args), log_dir=args.log_dir)
    logger.info("Starting chat service on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
