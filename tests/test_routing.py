"""
Unit tests for stage routing: threshold branches and the transition table.
"""

import pytest
from langgraph.graph import END

from playbook.agent.routing import Stage, coverage_level, entry_stage, next_stage, route_by_confidence
from playbook.agent.state import CoverageAnalysis
from playbook.core.errors import RoutingError


class TestRouteByConfidence:
    """Three-way branch at coverage evaluation (high=0.8, medium=0.5)."""

    @pytest.mark.parametrize(
        "confidence, expected",
        [
            (1.0, Stage.FACT_CHECKING),
            (0.8, Stage.FACT_CHECKING),
            (0.7999, Stage.SOURCE_VALIDATION),
            (0.5, Stage.SOURCE_VALIDATION),
            (0.4999, Stage.FOLLOW_UP_GENERATION),
            (0.0, Stage.FOLLOW_UP_GENERATION),
        ],
    )
    def test_threshold_boundaries(self, confidence: float, expected: Stage) -> None:
        assert route_by_confidence(confidence, 0.8, 0.5) is expected

    def test_same_input_same_branch(self) -> None:
        assert {route_by_confidence(0.65) for _ in range(5)} == {Stage.SOURCE_VALIDATION}

    def test_custom_thresholds(self) -> None:
        assert route_by_confidence(0.75, high=0.7, medium=0.4) is Stage.FACT_CHECKING
        assert route_by_confidence(0.45, high=0.7, medium=0.4) is Stage.SOURCE_VALIDATION

    @pytest.mark.parametrize("confidence, level", [(0.8, "full"), (0.79, "partial"), (0.5, "partial"), (0.49, "none")])
    def test_coverage_level(self, confidence: float, level: str) -> None:
        assert coverage_level(confidence, 0.8, 0.5) == level


class TestNextStage:
    """Transition table covers every stage and rejects unknown ones."""

    def test_linear_prefix(self) -> None:
        assert next_stage(Stage.QUERY_ANALYSIS, {}) == "document_assessment"
        assert next_stage(Stage.DOCUMENT_ASSESSMENT, {}) == "coverage_evaluation"

    def test_coverage_evaluation_routes_on_state(self) -> None:
        state = {"coverage_analysis": CoverageAnalysis(overall_confidence=0.92)}
        assert next_stage(Stage.COVERAGE_EVALUATION, state, 0.8, 0.5) == "fact_checking"
        state = {"coverage_analysis": CoverageAnalysis(overall_confidence=0.3)}
        assert next_stage(Stage.COVERAGE_EVALUATION, state, 0.8, 0.5) == "follow_up_generation"

    @pytest.mark.parametrize("branch", [Stage.FACT_CHECKING, Stage.SOURCE_VALIDATION, Stage.FOLLOW_UP_GENERATION])
    def test_every_branch_converges_on_synthesis(self, branch: Stage) -> None:
        assert next_stage(branch, {}) == "response_synthesis"

    def test_synthesis_is_terminal(self) -> None:
        assert next_stage(Stage.RESPONSE_SYNTHESIS, {}) == END

    def test_every_stage_has_a_transition(self) -> None:
        state = {"coverage_analysis": CoverageAnalysis(overall_confidence=0.6)}
        for stage in Stage:
            assert next_stage(stage, state)

    def test_unknown_stage_raises(self) -> None:
        with pytest.raises(RoutingError):
            next_stage("answer_generation", {})

    def test_entry_stage_defaults_to_query_analysis(self) -> None:
        assert entry_stage({}) == "query_analysis"
        assert entry_stage({"current_node": "fact_checking"}) == "fact_checking"

    def test_entry_stage_rejects_unknown(self) -> None:
        with pytest.raises(RoutingError):
            entry_stage({"current_node": "bogus"})
