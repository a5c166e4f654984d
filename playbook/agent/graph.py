"""
LangGraph workflow: query analysis → document assessment → coverage evaluation
→ (fact checking | source validation | follow-up generation) → response synthesis.

Every stage node is wrapped the same way: a stage already in completed_nodes is
skipped; a stage exception is recorded in errors and replaced by the stage's
fallback output; the stage is marked complete and current_node is set to the
next scheduled stage. Only RoutingError aborts a run.

The entry point dispatches on current_node, so a state restored from a
checkpoint re-enters the graph where it stopped.
"""

import logging
import time
from dataclasses import replace

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from playbook.agent.routing import BRANCH_STAGES, Stage, branch_stage, entry_stage, next_stage
from playbook.agent.stages import FALLBACKS, HANDLERS, StageContext, StageFailed
from playbook.agent.state import StageError, WorkflowState
from playbook.core.config import CHECKPOINT_INTERVAL, CHECKPOINT_STAGES
from playbook.core.errors import CheckpointError, RoutingError, error_kind

logger = logging.getLogger(__name__)


def _make_node(stage: Stage):
    handler = HANDLERS[stage]
    fallback = FALLBACKS[stage]

    async def node(state: WorkflowState, config: RunnableConfig) -> dict:
        ctx: StageContext = config["configurable"]["ctx"]
        if stage.value in (state.get("completed_nodes") or []):
            logger.info("[graph:%s] already completed, skipping", stage.value)
            return {"current_node": next_stage(stage, state, ctx.high_threshold, ctx.medium_threshold)}

        start = time.perf_counter()
        ctx.calls = []
        logger.info("[graph:%s] IN  completed=%s", stage.value, state.get("completed_nodes"))
        try:
            update = await handler(state, ctx)
        except RoutingError:
            raise
        except Exception as e:
            cause = e.cause if isinstance(e, StageFailed) else e
            partial = e.partial if isinstance(e, StageFailed) else {}
            err = StageError(stage=stage.value, kind=error_kind(cause), message=str(cause) or type(cause).__name__)
            logger.warning("[graph:%s] stage failed kind=%s: %s", stage.value, err.kind, err.message)
            failed_state = {**state, **partial, "errors": [*(state.get("errors") or []), err]}
            update = {**partial, **await fallback(failed_state, ctx)}
            update["errors"] = [err]

        update["llm_calls"] = list(ctx.calls)
        update["completed_nodes"] = [stage.value]
        update["current_node"] = next_stage(stage, {**state, **update}, ctx.high_threshold, ctx.medium_threshold)
        logger.info(
            "[graph:%s] OUT next=%s in %.1fms", stage.value, update["current_node"], (time.perf_counter() - start) * 1000
        )
        return update

    node.__name__ = f"{stage.value}_node"
    return node


def build_graph():
    """Build and compile the workflow graph."""
    graph = StateGraph(WorkflowState)
    for stage in Stage:
        graph.add_node(stage.value, _make_node(stage))

    graph.set_conditional_entry_point(entry_stage, {s.value: s.value for s in Stage})
    graph.add_edge(Stage.QUERY_ANALYSIS.value, Stage.DOCUMENT_ASSESSMENT.value)
    graph.add_edge(Stage.DOCUMENT_ASSESSMENT.value, Stage.COVERAGE_EVALUATION.value)
    graph.add_conditional_edges(
        Stage.COVERAGE_EVALUATION.value, branch_stage, {s.value: s.value for s in BRANCH_STAGES}
    )
    for stage in BRANCH_STAGES:
        graph.add_edge(stage.value, Stage.RESPONSE_SYNTHESIS.value)
    graph.add_edge(Stage.RESPONSE_SYNTHESIS.value, END)
    return graph.compile()


class WorkflowEngine:
    """
    Runs the compiled graph for one request and schedules checkpoints as stages
    complete. Checkpoints are written after CHECKPOINT_STAGES, and additionally
    every CHECKPOINT_INTERVAL completed stages when that is non-zero.
    """

    def __init__(
        self,
        llm,
        cache,
        checkpoints=None,
        *,
        context: StageContext | None = None,
        checkpoint_stages: tuple[str, ...] = CHECKPOINT_STAGES,
        checkpoint_interval: int = CHECKPOINT_INTERVAL,
    ) -> None:
        self._context = context or StageContext(llm=llm, cache=cache)
        self.checkpoints = checkpoints
        self.checkpoint_stages = frozenset(checkpoint_stages)
        self.checkpoint_interval = checkpoint_interval
        self._graph = build_graph()

    def _should_checkpoint(self, stage: str, position: int) -> bool:
        if stage in self.checkpoint_stages:
            return True
        return self.checkpoint_interval > 0 and position % self.checkpoint_interval == 0

    async def run(self, state: WorkflowState) -> WorkflowState:
        """Run (or resume) the workflow from state["current_node"] to END and return the final state."""
        ctx = replace(self._context, calls=[])
        session_id = state.get("session_id")
        checkpointing = bool(self.checkpoints is not None and self.checkpoints.enabled and session_id)
        sequence = 0
        if checkpointing:
            try:
                sequence = await self.checkpoints.latest_sequence(session_id)
            except CheckpointError as e:
                logger.warning("[graph:run] checkpoints unavailable for this run: %s", e)
                checkpointing = False
        seen = len(state.get("completed_nodes") or [])
        scheduled = 0
        logger.info(
            "[graph:run] START query=%r session_id=%s entry=%s",
            state.get("query"), session_id, state.get("current_node"),
        )

        final = state
        async for values in self._graph.astream(state, config={"configurable": {"ctx": ctx}}, stream_mode="values"):
            final = values
            completed = values.get("completed_nodes") or []
            if checkpointing:
                for position in range(seen + 1, len(completed) + 1):
                    if self._should_checkpoint(completed[position - 1], position):
                        sequence += 1
                        self.checkpoints.schedule_save(session_id, values, sequence)
                        scheduled += 1
            seen = len(completed)

        logger.info(
            "[graph:run] END completed=%s errors=%d checkpoints=%d answer_len=%d",
            final.get("completed_nodes"), len(final.get("errors") or []), scheduled, len(final.get("answer") or ""),
        )
        return final
