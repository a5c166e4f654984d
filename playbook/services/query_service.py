"""
Query service: entry point of the Q&A pipeline.

Responsibility: seed conversation context from the session log, resume from a
checkpoint when the previous run for the same question stopped part-way, run
the workflow, persist the exchange and shape the UnifiedResult. Called by the
API; no HTTP here.
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from playbook.agent.graph import WorkflowEngine
from playbook.agent.routing import Stage
from playbook.agent.state import Message, WorkflowState, create_initial_state, tokens_used
from playbook.core.config import CHECKPOINT_MAX_AGE_MINUTES, MAX_CONTEXT_MESSAGES
from playbook.core.errors import CheckpointError
from playbook.core.session_store import SessionStore
from playbook.schemas.query import UnifiedResult
from playbook.services.checkpoint_store import CheckpointStore
from playbook.services.document_cache import DocumentCache

logger = logging.getLogger(__name__)


class QueryService:
    def __init__(
        self,
        engine: WorkflowEngine,
        cache: DocumentCache,
        sessions: SessionStore,
        checkpoints: CheckpointStore | None = None,
        *,
        max_context_messages: int = MAX_CONTEXT_MESSAGES,
        max_checkpoint_age_minutes: int = CHECKPOINT_MAX_AGE_MINUTES,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.sessions = sessions
        self.checkpoints = checkpoints
        self.max_context_messages = max_context_messages
        self.max_checkpoint_age = timedelta(minutes=max_checkpoint_age_minutes)

    def cache_stats(self) -> dict:
        return self.cache.stats()

    def _context_from_history(self, session_id: str) -> list[Message]:
        history = self.sessions.get_history(session_id, limit=self.max_context_messages)
        return [Message(role=m["role"], content=m["content"]) for m in history]

    async def _resumable_state(self, query: str, session_id: str) -> WorkflowState | None:
        """
        State of the session's latest checkpoint when it is for the same query,
        the run had not finished and the checkpoint is not stale. Otherwise None.
        """
        if self.checkpoints is None or not self.checkpoints.enabled:
            return None
        try:
            record = await self.checkpoints.latest_record(session_id)
            if record is None:
                return None
            state = record.state()
        except CheckpointError as e:
            logger.warning("[query_service:resume] ignoring checkpoint for session_id=%s: %s", session_id[:16], e)
            return None
        if state.get("query") != query:
            return None
        if Stage.RESPONSE_SYNTHESIS.value in (state.get("completed_nodes") or []):
            return None
        age = datetime.now(timezone.utc) - record.created_at
        if age > self.max_checkpoint_age:
            logger.info("[query_service:resume] checkpoint is stale age=%s", age)
            return None
        state["metadata"] = state["metadata"].model_copy(update={"resumed": True})
        logger.info(
            "[query_service:resume] resuming session_id=%s sequence=%d at %s",
            session_id[:16], record.sequence, state.get("current_node"),
        )
        return state

    async def process_query(
        self,
        query: str,
        context: list[Message] | None = None,
        session_id: str | None = None,
    ) -> UnifiedResult:
        """Run the pipeline for one question and return the unified result."""
        if not query or not str(query).strip():
            raise ValueError("query is required")
        query = str(query).strip()
        start = time.perf_counter()
        logger.info("[query_service:process_query] IN  query=%r session_id=%s", query, session_id)

        state = await self._resumable_state(query, session_id) if session_id else None
        if state is None:
            if context is None and session_id:
                context = self._context_from_history(session_id)
            state = create_initial_state(query, context, session_id, self.max_context_messages)

        final = await self.engine.run(state)

        answer = final.get("answer") or ""
        if session_id:
            self.sessions.append_message(session_id, "user", query)
            self.sessions.append_message(session_id, "assistant", answer)
        result = UnifiedResult(
            answer=answer,
            coverage_analysis=final["coverage_analysis"],
            document_references=final.get("document_references") or [],
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
            tokens_used=tokens_used(final),
            errors=final.get("errors") or [],
            follow_up_suggestions=final.get("follow_up_suggestions") or [],
            completed_nodes=final.get("completed_nodes") or [],
            resumed=final["metadata"].resumed,
        )
        logger.info(
            "[query_service:process_query] OUT level=%s strategy=%s errors=%d tokens=%d in %.1fms",
            result.coverage_analysis.coverage_level, result.coverage_analysis.response_strategy,
            len(result.errors), result.tokens_used, result.processing_time_ms,
        )
        return result
