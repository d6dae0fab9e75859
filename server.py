"""Unified FastAPI server exposing note chat and the note index."""

from __future__ import annotations

import argparse
import logging
from typing import Dict, Optional

from fastapi import FastAPI
import uvicorn

from chat_engine.api import add_provider_arguments, config_from_args
from chat_engine.api import router as chat_router
from chat_engine.config import ChatConfig
from chat_engine.service import ChatService
from note_core.http import install_error_handlers
from note_core.utils import setup_logging
from note_index.api import router as index_router

logger = logging.getLogger(__name__)


# ---------- FastAPI Factory ----------
def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    log_dir: Optional[str] = "./logs",
    service: Optional[ChatService] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    chat_service = service or ChatService(chat_config)

    app = FastAPI(title="Note Chat Server", version="0.1.0")
    app.state.chat_service = chat_service
    # The index routes share the chat sessions' cache so a note indexed over
    # /index is a cache hit for retrieval QA and vice versa.
    app.state.index_cache = chat_service.index_cache
    app.state.embedder_factory = chat_service.embedder_factory

    install_error_handlers(app)
    app.include_router(chat_router)
    app.include_router(index_router)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the note chat server with retrieval over notes.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    add_provider_arguments(parser)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(config_from_args(args), log_dir=args.log_dir)
    logger.info("Starting note chat server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
