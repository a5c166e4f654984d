"""Schemas for the query endpoint and the pipeline's unified result."""

from pydantic import BaseModel, Field

from playbook.agent.state import CoverageAnalysis, DocumentReference, Message, StageError


class QueryRequest(BaseModel):
    """Request body for POST /query. Prior turns come from the server-side session log unless given."""

    question: str = Field(..., min_length=1, description="User question about the playbook.")
    session_id: str = Field(..., min_length=1, description="Session ID; conversation history and checkpoints are keyed by it.")
    context: list[Message] | None = Field(
        None, description="Explicit prior turns. When omitted, the session's stored history is used."
    )


class UnifiedResult(BaseModel):
    """Outcome of one pipeline run."""

    answer: str = Field(..., description="Final answer text.")
    coverage_analysis: CoverageAnalysis
    document_references: list[DocumentReference] = Field(default_factory=list)
    processing_time_ms: float = Field(0.0, description="Wall-clock time of the run.")
    tokens_used: int = Field(0, description="Prompt plus completion tokens over all model calls.")
    errors: list[StageError] = Field(default_factory=list, description="Stage failures that were degraded to fallbacks.")
    follow_up_suggestions: list[str] = Field(default_factory=list)
    completed_nodes: list[str] = Field(default_factory=list, description="Stages in completion order.")
    resumed: bool = Field(False, description="True when the run continued from a checkpoint.")


class QueryResponse(UnifiedResult):
    """Response for POST /query."""

    session_id: str
