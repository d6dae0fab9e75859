"""API entry point for building and querying per-note vector indexes.

Run this module to expose a lightweight HTTP endpoint that hashes and
embeds a note, persists the resulting FAISS-ready vectors under the note's
content hash, and answers similarity queries against a cached index with
scored matches plus a concatenated context string suitable for RAG prompts.
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Request
from pydantic import BaseModel, Field, validator
import uvicorn

from note_core.errors import ContentError
from note_core.http import install_error_handlers
from note_core.utils import setup_logging
from .cache import VectorIndexCache
from .config import EmbeddingConfig, IndexConfig
from .embedding_client import Embedder, EmbeddingClient
from .store import FileVectorStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/index", tags=["index"])


class BuildIndexRequest(BaseModel):
    document_text: str = Field(..., description="Full note content to index.")
    force: bool = Field(False, description="Re-embed even when the note is already cached.")

    @validator("document_text")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("document_text must not be empty")
        return value


class QueryIndexRequest(BaseModel):
    query: str = Field(..., description="User question or statement to embed and search.")
    content_hash: Optional[str] = Field(None, description="Hash of an already indexed note.")
    document_text: Optional[str] = Field(None, description="Note content; indexed on demand.")
    top_k: int = Field(4, gt=0, description="Number of nearest chunks to retrieve.")

    @validator("query")
    def validate_query(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be empty")
        return value


class QueryIndexResponse(BaseModel):
    content_hash: str
    results: List[Dict[str, Any]]
    context: str


def _cache(request: Request) -> VectorIndexCache:
    return request.app.state.index_cache


def _embedder(request: Request) -> Embedder:
    factory: Callable[[], Embedder] = request.app.state.embedder_factory
    return factory()


def describe_entry(entry) -> Dict[str, Any]:
    return {
        "content_hash": entry.content_hash,
        "chunks": len(entry.chunks),
        "dimension": entry.dimension,
        "created_at": entry.created_at,
    }


@router.get("")
async def list_indexes(request: Request) -> Dict[str, List[str]]:
    return {"content_hashes": await _cache(request).keys()}


@router.post("/build")
async def build_index(payload: BuildIndexRequest, request: Request) -> Dict[str, Any]:
    cache = _cache(request)
    embedder = _embedder(request)
    logger.info("Received index build request (force=%s)", payload.force)
    if payload.force:
        entry = await cache.force_rebuild(payload.document_text, embedder)
    else:
        entry = await cache.build(payload.document_text, embedder)
    return describe_entry(entry)


@router.post("/query", response_model=QueryIndexResponse)
async def query_index(payload: QueryIndexRequest, request: Request) -> QueryIndexResponse:
    cache = _cache(request)
    embedder = _embedder(request)
    if payload.document_text:
        entry = await cache.build(payload.document_text, embedder)
    elif payload.content_hash:
        entry = await cache.lookup(payload.content_hash)
        if entry is None:
            raise ContentError(
                f"No index found for content hash {payload.content_hash}. Build it first.",
                details={"content_hash": payload.content_hash},
            )
    else:
        raise ContentError("Either content_hash or document_text is required.")

    retriever = cache.rebuild_retriever(entry, embedder, top_k=payload.top_k)
    chunks = await retriever.aretrieve(payload.query)
    logger.info("Returning %d result(s) for index %s", len(chunks), entry.content_hash)
    return QueryIndexResponse(
        content_hash=entry.content_hash,
        results=[chunk.as_dict() for chunk in chunks],
        context="\n\n".join(chunk.text for chunk in chunks),
    )


@router.get("/{content_hash}")
async def get_index(content_hash: str, request: Request) -> Dict[str, Any]:
    entry = await _cache(request).lookup(content_hash)
    if entry is None:
        raise ContentError(f"No index found for content hash {content_hash}.", details={"content_hash": content_hash})
    return describe_entry(entry)


@router.delete("/{content_hash}")
async def delete_index(content_hash: str, request: Request) -> Dict[str, Any]:
    await _cache(request).remove(content_hash)
    return {"content_hash": content_hash, "deleted": True}


def create_app(
    index_config: Optional[IndexConfig] = None,
    embedding_config: Optional[EmbeddingConfig] = None,
    *,
    log_dir: Optional[str] = None,
    cache: Optional[VectorIndexCache] = None,
    embedder_factory: Optional[Callable[[], Embedder]] = None,
) -> FastAPI:
    """Create and return a FastAPI app bound to a note index cache."""
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    index_config = index_config or IndexConfig()
    embedding_config = embedding_config or EmbeddingConfig()

    def default_embedder() -> Embedder:
        return EmbeddingClient(embedding_config)

    app = FastAPI(title="Note Index", version="0.1.0")
    app.state.index_cache = cache or VectorIndexCache(FileVectorStore(index_config.store_dir), config=index_config)
    app.state.embedder_factory = embedder_factory or default_embedder
    install_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        logger.debug("Health check requested")
        return {"status": "ok"}

    return app


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve per-note vector indexes as a retrieval API.")
    parser.add_argument("--store_dir", default="./.note_index", help="Directory of persisted note indexes.")
    parser.add_argument(
        "--embedding_endpoint",
        default="https://api.openai.com/v1/embeddings",
        help="URL of the embedding service used for note and query encoding.",
    )
    parser.add_argument("--embedding_model", default="text-embedding-3-small", help="Embedding model name.")
    parser.add_argument("--embedding_api_key", help="API key for the embedding service.")
    parser.add_argument(
        "--embedding_batch_size",
        type=int,
        default=32,
        help="Batch size used when calling the embedding endpoint.",
    )
    parser.add_argument(
        "--embedding_model_kwargs",
        help="Optional JSON string of extra model kwargs passed to the embedding endpoint.",
    )
    parser.add_argument("--ttl_days", type=int, default=0, help="Discard cached indexes older than this (0 keeps them).")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind the HTTP server.")
    parser.add_argument("--port", type=int, default=8003, help="Port for the HTTP server.")
    parser.add_argument(
        "--log_dir",
        help="Optional log directory. Defaults to the index store directory when not set.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    log_dir = args.log_dir or args.store_dir

    model_kwargs: Dict[str, Any] = {}
    if args.embedding_model_kwargs:
        try:
            model_kwargs = json.loads(args.embedding_model_kwargs)
        except ValueError as exc:
            raise SystemExit(f"Failed to parse --embedding_model_kwargs: {exc}")

    embed_cfg = EmbeddingConfig(
        endpoint=args.embedding_endpoint,
        model=args.embedding_model,
        api_key=args.embedding_api_key,
        batch_size=args.embedding_batch_size,
        model_kwargs=model_kwargs,
    )
    index_cfg = IndexConfig(store_dir=args.store_dir, ttl_days=args.ttl_days)

    app = create_app(index_cfg, embed_cfg, log_dir=log_dir)

    logger.info("Starting Note Index API on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
