"""
API handlers: pull services off app.state, call them, map results/errors to HTTP.

Responsibility: Bridge HTTP types and services. Marshalling and exception-to-HTTP mapping.
Lives in the API layer so services stay free of FastAPI/HTTP types.
"""

import logging

from fastapi import HTTPException, Request

from playbook.core.errors import RoutingError, ServiceUnavailableError
from playbook.schemas.cache import CheckpointInfo
from playbook.schemas.query import QueryRequest, QueryResponse

logger = logging.getLogger(__name__)


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ServiceUnavailableError(f"{name} is not initialized")
    return service


def get_query_service(request: Request):
    return _service(request, "query_service")


def get_cache(request: Request):
    return _service(request, "document_cache")


def get_sessions(request: Request):
    return _service(request, "session_store")


def get_checkpoints(request: Request):
    return _service(request, "checkpoint_store")


async def handle_query(service, body: QueryRequest) -> QueryResponse:
    """Run the pipeline; 400 on invalid input, 500 when the run itself aborts."""
    try:
        result = await service.process_query(body.question, body.context, body.session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except RoutingError as e:
        logger.exception("[api:handle_query] workflow aborted")
        raise HTTPException(status_code=500, detail=f"Workflow error: {e}") from e
    return QueryResponse(session_id=body.session_id, **result.model_dump())


async def handle_checkpoints(checkpoints, session_id: str) -> list[CheckpointInfo]:
    records = await checkpoints.history(session_id)
    out = []
    for record in records:
        state = record.state()
        out.append(
            CheckpointInfo(
                sequence=record.sequence,
                created_at=record.created_at,
                current_node=state.get("current_node") or "",
                completed_nodes=state.get("completed_nodes") or [],
            )
        )
    return out
