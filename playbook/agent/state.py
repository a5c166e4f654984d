"""
Workflow state: the record threaded through the pipeline for one request.

WorkflowState is a LangGraph state dict. Append-only fields (confidence
history, completed stages, errors, LLM call log, parallel operations) carry a
list-concatenation reducer, so a stage returns only the entries it adds and
can never rewrite earlier ones. Everything else is replaced wholesale by the
stage that owns it.

StateSnapshot is the JSON form written to checkpoints.
"""

import operator
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field

from playbook.core.config import MAX_CONTEXT_MESSAGES

CoverageLevel = Literal["none", "partial", "full"]
ResponseStrategy = Literal["full_answer", "partial_answer", "escape_hatch"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class DocumentReference(BaseModel):
    id: str
    title: str
    confidence: float = Field(ge=0.0, le=1.0)
    sections: list[str] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list)
    applicability: str = ""


class CoverageAnalysis(BaseModel):
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    coverage_level: CoverageLevel = "none"
    response_strategy: ResponseStrategy = "escape_hatch"
    gaps: list[str] = Field(default_factory=list)
    query_intent: str = ""
    key_topics: list[str] = Field(default_factory=list)


class ConfidenceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    confidence: float
    note: str
    timestamp: datetime = Field(default_factory=utcnow)


class StageError(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    kind: Literal["upstream", "malformed_output", "timeout", "internal"]
    message: str


class LLMCall(BaseModel):
    stage: str
    model: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: float = 0.0
    success: bool = True
    error: str | None = None


class ParallelOperation(BaseModel):
    name: str
    duration_ms: float
    success: bool
    error: str | None = None


class FactCheckResult(BaseModel):
    document_id: str
    claim: str
    verified: bool
    confidence: float = Field(ge=0.0, le=1.0)
    notes: str = ""


class SourceValidationResult(BaseModel):
    primary_document_id: str
    cross_reference_ids: list[str] = Field(default_factory=list)
    consistency_score: float = Field(ge=0.0, le=1.0)
    conflicts: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class RunMetadata(BaseModel):
    workflow_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = Field(default_factory=utcnow)
    resumed: bool = False


class WorkflowState(TypedDict, total=False):
    query: str
    session_id: str | None
    conversation_context: list[Message]
    document_references: list[DocumentReference]
    coverage_analysis: CoverageAnalysis
    confidence_history: Annotated[list[ConfidenceEntry], operator.add]
    completed_nodes: Annotated[list[str], operator.add]
    current_node: str
    errors: Annotated[list[StageError], operator.add]
    metadata: RunMetadata
    llm_calls: Annotated[list[LLMCall], operator.add]
    parallel_operations: Annotated[list[ParallelOperation], operator.add]
    # Documents fetched alongside query analysis; never checkpointed
    preloaded_documents: list[Any] | None
    fact_check_results: list[FactCheckResult]
    source_validation: SourceValidationResult | None
    follow_up_suggestions: list[str]
    answer: str


def create_initial_state(
    query: str,
    context: list[Message] | None = None,
    session_id: str | None = None,
    max_context_messages: int = MAX_CONTEXT_MESSAGES,
) -> WorkflowState:
    """Fresh state positioned at the first stage. Context keeps only the most recent turns."""
    turns = list(context or [])
    if max_context_messages >= 0:
        turns = turns[-max_context_messages:] if max_context_messages else []
    return {
        "query": query,
        "session_id": session_id,
        "conversation_context": turns,
        "document_references": [],
        "coverage_analysis": CoverageAnalysis(),
        "confidence_history": [],
        "completed_nodes": [],
        "current_node": "query_analysis",
        "errors": [],
        "metadata": RunMetadata(),
        "llm_calls": [],
        "parallel_operations": [],
        "preloaded_documents": None,
        "fact_check_results": [],
        "source_validation": None,
        "follow_up_suggestions": [],
        "answer": "",
    }


def tokens_used(state: WorkflowState) -> int:
    return sum(c.tokens_in + c.tokens_out for c in state.get("llm_calls") or [])


class StateSnapshot(BaseModel):
    """Serializable view of WorkflowState (everything except pre-loaded documents)."""

    query: str
    session_id: str | None = None
    conversation_context: list[Message] = Field(default_factory=list)
    document_references: list[DocumentReference] = Field(default_factory=list)
    coverage_analysis: CoverageAnalysis = Field(default_factory=CoverageAnalysis)
    confidence_history: list[ConfidenceEntry] = Field(default_factory=list)
    completed_nodes: list[str] = Field(default_factory=list)
    current_node: str
    errors: list[StageError] = Field(default_factory=list)
    metadata: RunMetadata = Field(default_factory=RunMetadata)
    llm_calls: list[LLMCall] = Field(default_factory=list)
    parallel_operations: list[ParallelOperation] = Field(default_factory=list)
    fact_check_results: list[FactCheckResult] = Field(default_factory=list)
    source_validation: SourceValidationResult | None = None
    follow_up_suggestions: list[str] = Field(default_factory=list)
    answer: str = ""

    @classmethod
    def from_state(cls, state: WorkflowState) -> "StateSnapshot":
        data = {k: v for k, v in state.items() if k in cls.model_fields}
        return cls.model_validate(data)

    def to_state(self) -> WorkflowState:
        state: WorkflowState = {name: getattr(self, name) for name in type(self).model_fields}
        state["preloaded_documents"] = None
        return state


def snapshot_state(state: WorkflowState) -> str:
    return StateSnapshot.from_state(state).model_dump_json()


def restore_state(raw: str) -> WorkflowState:
    return StateSnapshot.model_validate_json(raw).to_state()
