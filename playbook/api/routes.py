"""
API route aggregator: register endpoints; no logic, only delegate to handlers and services.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from playbook.api.handlers import (
    get_cache,
    get_checkpoints,
    get_query_service,
    get_sessions,
    handle_checkpoints,
    handle_query,
)
from playbook.core.errors import CheckpointError
from playbook.schemas.cache import CacheStats, CheckpointInfo
from playbook.schemas.query import QueryRequest, QueryResponse

logger = logging.getLogger(__name__)
router = APIRouter()


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "Playbook Q&A backend running"}


@router.get("/health", tags=["system"])
def health(cache=Depends(get_cache)):
    return {"ok": True, "cache_ready": cache.is_ready()}


# --- Query ---

@router.post(
    "/query",
    response_model=QueryResponse,
    tags=["query"],
    summary="Ask the playbook a question",
    description="Runs the staged pipeline and returns the answer with coverage analysis, references and recorded stage errors. 400 on invalid input.",
)
async def post_query(body: QueryRequest, service=Depends(get_query_service)) -> QueryResponse:
    logger.info("[api:post_query] IN  question=%r session_id=%s", body.question, body.session_id)
    response = await handle_query(service, body)
    logger.info("[api:post_query] OUT errors=%d answer_len=%d", len(response.errors), len(response.answer))
    return response


# --- Cache ---

@router.get("/cache/stats", response_model=CacheStats, tags=["cache"], summary="Document cache statistics")
def cache_stats(cache=Depends(get_cache)) -> CacheStats:
    return CacheStats(**cache.stats())


@router.post("/cache/warm", response_model=CacheStats, tags=["cache"], summary="Load or reload all documents")
async def warm_cache(cache=Depends(get_cache)) -> CacheStats:
    if not await cache.warm():
        raise HTTPException(status_code=503, detail="Document cache could not be loaded")
    return CacheStats(**cache.stats())


@router.post("/cache/invalidate/{document_id}", tags=["cache"], summary="Re-fetch one document")
async def invalidate_document(document_id: str, cache=Depends(get_cache)) -> dict:
    await cache.invalidate(document_id)
    entry = await cache.get_by_id(document_id) if cache.is_ready() else None
    return {"document_id": document_id, "cached": entry is not None}


@router.delete("/cache", tags=["cache"], summary="Drop all cached documents")
def clear_cache(cache=Depends(get_cache)) -> dict:
    cache.clear()
    return {"cleared": True}


# --- Sessions ---

@router.get("/sessions/{session_id}/history", tags=["sessions"], summary="Conversation history of a session")
def session_history(session_id: str, sessions=Depends(get_sessions)) -> dict:
    return {"session_id": session_id, "messages": sessions.get_history(session_id)}


@router.get(
    "/sessions/{session_id}/checkpoints",
    response_model=list[CheckpointInfo],
    tags=["sessions"],
    summary="Checkpoints recorded for a session, newest first",
)
async def session_checkpoints(session_id: str, checkpoints=Depends(get_checkpoints)) -> list[CheckpointInfo]:
    try:
        return await handle_checkpoints(checkpoints, session_id)
    except CheckpointError as e:
        logger.exception("Failed to read checkpoints")
        raise HTTPException(status_code=500, detail=str(e)) from e
