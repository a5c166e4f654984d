"""
Stage identifiers and the transition table.

QueryAnalysis -> DocumentAssessment -> CoverageEvaluation ->
{FactChecking | SourceValidation | FollowUpGeneration} -> ResponseSynthesis -> END
"""

import logging
from enum import Enum
from typing import Mapping

from langgraph.graph import END

from playbook.core.config import HIGH_CONFIDENCE_THRESHOLD, MEDIUM_CONFIDENCE_THRESHOLD
from playbook.core.errors import RoutingError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    QUERY_ANALYSIS = "query_analysis"
    DOCUMENT_ASSESSMENT = "document_assessment"
    COVERAGE_EVALUATION = "coverage_evaluation"
    FACT_CHECKING = "fact_checking"
    SOURCE_VALIDATION = "source_validation"
    FOLLOW_UP_GENERATION = "follow_up_generation"
    RESPONSE_SYNTHESIS = "response_synthesis"


BRANCH_STAGES = (Stage.FACT_CHECKING, Stage.SOURCE_VALIDATION, Stage.FOLLOW_UP_GENERATION)


def route_by_confidence(
    confidence: float,
    high: float = HIGH_CONFIDENCE_THRESHOLD,
    medium: float = MEDIUM_CONFIDENCE_THRESHOLD,
) -> Stage:
    """Three-way branch taken after coverage evaluation. Evaluated top to bottom."""
    if confidence >= high:
        return Stage.FACT_CHECKING
    if confidence >= medium:
        return Stage.SOURCE_VALIDATION
    return Stage.FOLLOW_UP_GENERATION


def coverage_level(
    confidence: float,
    high: float = HIGH_CONFIDENCE_THRESHOLD,
    medium: float = MEDIUM_CONFIDENCE_THRESHOLD,
) -> str:
    if confidence >= high:
        return "full"
    if confidence >= medium:
        return "partial"
    return "none"


def next_stage(
    stage: Stage | str,
    state: Mapping,
    high: float = HIGH_CONFIDENCE_THRESHOLD,
    medium: float = MEDIUM_CONFIDENCE_THRESHOLD,
) -> str:
    """
    Stage that runs after `stage` completes, or END after synthesis.
    Raises RoutingError for anything that is not a known stage.
    """
    try:
        stage = Stage(stage)
    except ValueError as e:
        raise RoutingError(f"Unknown stage {stage!r}") from e

    if stage is Stage.QUERY_ANALYSIS:
        return Stage.DOCUMENT_ASSESSMENT.value
    if stage is Stage.DOCUMENT_ASSESSMENT:
        return Stage.COVERAGE_EVALUATION.value
    if stage is Stage.COVERAGE_EVALUATION:
        coverage = state.get("coverage_analysis")
        confidence = coverage.overall_confidence if coverage is not None else 0.0
        branch = route_by_confidence(confidence, high, medium)
        logger.info("[routing:next_stage] confidence=%.2f -> %s", confidence, branch.value)
        return branch.value
    if stage in BRANCH_STAGES:
        return Stage.RESPONSE_SYNTHESIS.value
    if stage is Stage.RESPONSE_SYNTHESIS:
        return END
    raise RoutingError(f"No transition defined for stage {stage.value!r}")


def entry_stage(state: Mapping) -> str:
    """Stage a run (fresh or resumed) starts at: the state's current_node."""
    current = state.get("current_node") or Stage.QUERY_ANALYSIS.value
    try:
        return Stage(current).value
    except ValueError as e:
        raise RoutingError(f"Cannot enter workflow at {current!r}") from e


def branch_stage(state: Mapping) -> str:
    """Branch chosen at coverage evaluation, as recorded in current_node."""
    current = state.get("current_node")
    if current not in {s.value for s in BRANCH_STAGES}:
        raise RoutingError(f"Coverage evaluation scheduled {current!r}, expected a branch stage")
    return current
