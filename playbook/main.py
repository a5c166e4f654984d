# Run from project root: uvicorn playbook.main:app --reload

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from playbook.agent.graph import WorkflowEngine
from playbook.agent.llm import CompletionService
from playbook.api.routes import router
from playbook.core.config import CHECKPOINT_DB_PATH, ENABLE_CHECKPOINTING, PLAYBOOK_DIR
from playbook.core.errors import ServiceUnavailableError
from playbook.core.session_store import SessionStore
from playbook.services.checkpoint_store import CheckpointStore, SQLiteCheckpointBackend
from playbook.services.document_cache import DocumentCache
from playbook.services.document_repository import DirectoryDocumentRepository
from playbook.services.query_service import QueryService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    repository = DirectoryDocumentRepository(PLAYBOOK_DIR)
    cache = DocumentCache(repository)
    llm = CompletionService()
    if not llm.configured:
        logger.warning("[main] no OPENAI_API_KEY or HF_API_KEY; model-backed stages will use fallbacks")
    backend = SQLiteCheckpointBackend(CHECKPOINT_DB_PATH) if ENABLE_CHECKPOINTING else None
    checkpoints = CheckpointStore(backend, enabled=ENABLE_CHECKPOINTING)
    sessions = SessionStore()
    engine = WorkflowEngine(llm, cache, checkpoints)

    app.state.document_cache = cache
    app.state.session_store = sessions
    app.state.checkpoint_store = checkpoints
    app.state.query_service = QueryService(engine, cache, sessions, checkpoints)

    await cache.warm()
    cache.start()
    logger.info("[main] Playbook Q&A ready documents=%d", cache.stats()["count"])
    try:
        yield
    finally:
        await cache.stop()
        await checkpoints.drain()


app = FastAPI(title="Playbook Q&A Backend", lifespan=lifespan)
app.include_router(router)


@app.exception_handler(ServiceUnavailableError)
async def service_unavailable_handler(request: Request, exc: ServiceUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": exc.message})
