"""
Stage handlers: one async function per workflow stage.

Each handler takes the current state and a StageContext and returns the
fields it updates. Handlers raise on failure; the engine records the error and
applies the matching entry from FALLBACKS so the run always continues.

Model calls go through _with_retry: two attempts with the same prompt; an
upstream error or unparsable output on both raises the last error.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, Field, ValidationError

from playbook.agent.llm import CompletionOptions
from playbook.agent.parallel import run_in_parallel
from playbook.agent.routing import Stage, coverage_level
from playbook.agent.state import (
    ConfidenceEntry,
    CoverageAnalysis,
    DocumentReference,
    FactCheckResult,
    LLMCall,
    Message,
    ParallelOperation,
    SourceValidationResult,
    WorkflowState,
)
from playbook.core.config import (
    ENABLE_PARALLEL_PROCESSING,
    HIGH_CONFIDENCE_THRESHOLD,
    MAX_PARALLEL_OPERATIONS,
    MEDIUM_CONFIDENCE_THRESHOLD,
    PARALLEL_TIMEOUT_MS,
)
from playbook.core.errors import LLMError, MalformedOutputError
from playbook.services.text_processing import extract_keywords, keyword_overlap

logger = logging.getLogger(__name__)

T = TypeVar("T")

LLM_ATTEMPTS = 2
MAX_REFERENCES = 5
FALLBACK_CONFIDENCE_CAP = 0.5
MAX_GAPS = 5
MIN_FOLLOW_UPS, MAX_FOLLOW_UPS = 3, 5
EXCERPT_CHARS = 1500

ESCAPE_HATCH_TEMPLATE = (
    "The Playbook does not explicitly provide guidance for {topic}.\n\n"
    "This appears to be a gap in our Playbook. Please leave feedback so we can "
    "add appropriate guidance for this topic."
)
UNABLE_TO_ANSWER = (
    "I'm unable to answer this question right now. Please try again later, "
    "or rephrase your question."
)

SYSTEM_PROMPT = (
    "You are an experienced PMO consultant. You answer questions strictly from the "
    "organization's playbook of standard operating procedures."
)


@dataclass
class StageContext:
    """Collaborators and settings for one workflow run."""

    llm: Any
    cache: Any
    high_threshold: float = HIGH_CONFIDENCE_THRESHOLD
    medium_threshold: float = MEDIUM_CONFIDENCE_THRESHOLD
    parallel_enabled: bool = ENABLE_PARALLEL_PROCESSING
    parallel_timeout_ms: int = PARALLEL_TIMEOUT_MS
    max_parallel: int = MAX_PARALLEL_OPERATIONS
    # Model calls made by the stage currently running; collected by the engine
    calls: list[LLMCall] = field(default_factory=list)


class StageFailed(Exception):
    """Wraps a stage failure together with state the stage produced before failing."""

    def __init__(self, cause: BaseException, partial: dict[str, Any]) -> None:
        self.cause = cause
        self.partial = partial
        super().__init__(str(cause))


# --- model output shapes ---


class QueryAnalysisOutput(BaseModel):
    intent: str
    key_topics: list[str] = Field(default_factory=list)
    specificity: str = "medium"


class AssessedDocument(BaseModel):
    id: str
    confidence: float = Field(ge=0.0, le=1.0)
    sections: list[str] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list)
    applicability: str = ""


class AssessmentOutput(BaseModel):
    documents: list[AssessedDocument] = Field(default_factory=list)
    overall_confidence: float = Field(ge=0.0, le=1.0)
    gaps: list[str] = Field(default_factory=list)


class FactCheckOutput(BaseModel):
    checks: list[FactCheckResult] = Field(default_factory=list)


class SourceValidationOutput(BaseModel):
    consistency_score: float = Field(ge=0.0, le=1.0)
    conflicts: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class FollowUpOutput(BaseModel):
    questions: list[str] = Field(default_factory=list)


# --- model call helpers ---


def _extract_json(text: str) -> str:
    """Strip markdown fences and any prose around the outermost JSON object."""
    cleaned = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    return cleaned


def _parse_json(schema: type[BaseModel]) -> Callable[[str], Any]:
    def parse(text: str) -> Any:
        try:
            return schema.model_validate_json(_extract_json(text))
        except ValidationError as e:
            raise MalformedOutputError(
                f"{schema.__name__} did not match model output: {e.error_count()} error(s)", raw=text
            ) from e

    return parse


def _parse_text(text: str) -> str:
    out = (text or "").strip()
    if not out:
        raise MalformedOutputError("Empty completion", raw=text)
    return out


async def _call(ctx: StageContext, stage: Stage, prompt: str, options: CompletionOptions) -> str:
    try:
        result = await ctx.llm.complete(prompt, options)
    except LLMError as e:
        ctx.calls.append(LLMCall(stage=stage.value, success=False, error=str(e)))
        raise
    ctx.calls.append(
        LLMCall(
            stage=stage.value,
            model=result.model,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            latency_ms=result.latency_ms,
        )
    )
    return result.text


async def _with_retry(
    ctx: StageContext,
    stage: Stage,
    prompt: str,
    parse: Callable[[str], T],
    *,
    max_tokens: int = 512,
    json_mode: bool = True,
) -> T:
    options = CompletionOptions(
        tag=stage.value, max_tokens=max_tokens, json_mode=json_mode, system=SYSTEM_PROMPT
    )
    last_error: Exception | None = None
    for attempt in range(1, LLM_ATTEMPTS + 1):
        try:
            return parse(await _call(ctx, stage, prompt, options))
        except (LLMError, MalformedOutputError) as e:
            last_error = e
            logger.warning("[stages:%s] attempt %d/%d failed: %s", stage.value, attempt, LLM_ATTEMPTS, e)
    raise last_error


# --- shared helpers ---


def _format_context(messages: list[Message], max_messages: int = 6) -> str:
    """Format the last N conversation turns for inclusion in prompts."""
    if not messages:
        return ""
    lines = []
    for m in messages[-max_messages:]:
        content = (m.content or "").strip()
        if not content:
            continue
        label = "User" if m.role == "user" else "Assistant"
        lines.append(f"{label}: {content}")
    if not lines:
        return ""
    return "Recent conversation:\n" + "\n".join(lines) + "\n\n"


def _entry(stage: Stage, confidence: float, note: str) -> list[ConfidenceEntry]:
    return [ConfidenceEntry(stage=stage.value, confidence=round(confidence, 4), note=note)]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _coverage(state: WorkflowState) -> CoverageAnalysis:
    return state.get("coverage_analysis") or CoverageAnalysis()


async def _documents(state: WorkflowState, ctx: StageContext) -> list:
    preloaded = state.get("preloaded_documents")
    if preloaded is not None:
        return preloaded
    return await ctx.cache.get_all()


def query_confidence(query: str, topic_count: int, specificity: str) -> float:
    """Initial confidence from query shape: length, topic count, specificity, question words."""
    confidence = 0.3
    words = len(query.split())
    if words > 5:
        confidence += 0.1
    if words > 10:
        confidence += 0.1
    if topic_count > 1:
        confidence += 0.1
    if topic_count > 3:
        confidence += 0.1
    specificity = specificity.lower()
    if "high" in specificity:
        confidence += 0.2
    elif "medium" in specificity:
        confidence += 0.1
    if re.search(r"\b(how|what|why|when|where|which|who)\b", query, re.IGNORECASE):
        confidence += 0.1
    return min(confidence, 1.0)


# --- query analysis ---


async def analyze_query(state: WorkflowState, ctx: StageContext) -> dict:
    query = state["query"]
    logger.info("[stages:query_analysis] IN  query=%r parallel=%s", query, ctx.parallel_enabled)
    prompt = (
        f"{_format_context(state.get('conversation_context') or [])}"
        f'User question: "{query}"\n\n'
        "Identify what the user wants to find in the playbook. Respond with JSON: "
        '{"intent": str, "key_topics": [str], "specificity": "low"|"medium"|"high"}'
    )

    async def analysis() -> QueryAnalysisOutput:
        return await _with_retry(ctx, Stage.QUERY_ANALYSIS, prompt, _parse_json(QueryAnalysisOutput), max_tokens=300)

    update: dict[str, Any] = {}
    if ctx.parallel_enabled:
        results = await run_in_parallel(
            {"query_analysis": analysis, "document_preload": ctx.cache.get_all},
            timeout_ms=ctx.parallel_timeout_ms,
            max_concurrency=ctx.max_parallel,
        )
        update["parallel_operations"] = [
            ParallelOperation(
                name=r.name,
                duration_ms=round(r.duration_ms, 2),
                success=r.success,
                error=str(r.error) if r.error else None,
            )
            for r in results.values()
        ]
        preload = results["document_preload"]
        update["preloaded_documents"] = preload.value if preload.success else None
        outcome = results["query_analysis"]
        if not outcome.success:
            raise StageFailed(outcome.error, update)
        output = outcome.value
    else:
        output = await analysis()

    topics = [t.strip() for t in output.key_topics if t and t.strip()]
    confidence = query_confidence(query, len(topics), output.specificity)
    update["coverage_analysis"] = _coverage(state).model_copy(
        update={"query_intent": output.intent.strip() or query, "key_topics": topics}
    )
    update["confidence_history"] = _entry(
        Stage.QUERY_ANALYSIS, confidence, f"Query clarity (specificity={output.specificity}, topics={len(topics)})"
    )
    logger.info("[stages:query_analysis] OUT intent=%r topics=%s confidence=%.2f", output.intent, topics, confidence)
    return update


async def query_analysis_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    query = state["query"]
    topics = extract_keywords(query)[:5]
    confidence = query_confidence(query, len(topics), "low")
    return {
        "coverage_analysis": _coverage(state).model_copy(update={"query_intent": query, "key_topics": topics}),
        "confidence_history": _entry(Stage.QUERY_ANALYSIS, confidence, "Query analysis unavailable; keywords taken from the query"),
    }


# --- document assessment ---


async def assess_documents(state: WorkflowState, ctx: StageContext) -> dict:
    query = state["query"]
    coverage = _coverage(state)
    docs = await _documents(state, ctx)
    logger.info("[stages:document_assessment] IN  query=%r candidates=%d", query, len(docs))
    if not docs:
        return {
            "document_references": [],
            "coverage_analysis": coverage.model_copy(
                update={"overall_confidence": 0.0, "gaps": ["No playbook documents are available"]}
            ),
            "confidence_history": _entry(Stage.DOCUMENT_ASSESSMENT, 0.0, "No documents to assess"),
        }

    listing = "\n".join(f"- id={d.id} | title={d.title} | summary={d.summary}" for d in docs)
    prompt = (
        f'User question: "{query}"\nIntent: {coverage.query_intent}\n'
        f"Key topics: {', '.join(coverage.key_topics)}\n\nPlaybook documents:\n{listing}\n\n"
        "Rank the documents that answer the question. Respond with JSON: "
        '{"documents": [{"id": str, "confidence": 0-1, "sections": [str], "key_points": [str], '
        '"applicability": str}], "overall_confidence": 0-1, "gaps": [str]}'
    )
    output = await _with_retry(ctx, Stage.DOCUMENT_ASSESSMENT, prompt, _parse_json(AssessmentOutput), max_tokens=800)

    by_id = {d.id: d for d in docs}
    refs = [
        DocumentReference(
            id=a.id,
            title=by_id[a.id].title,
            confidence=a.confidence,
            sections=a.sections,
            key_points=a.key_points,
            applicability=a.applicability,
        )
        for a in output.documents
        if a.id in by_id
    ]
    dropped = len(output.documents) - len(refs)
    if dropped:
        logger.info("[stages:document_assessment] ignored %d unknown document ids", dropped)
    refs = sorted(refs, key=lambda r: r.confidence, reverse=True)[:MAX_REFERENCES]
    logger.info(
        "[stages:document_assessment] OUT references=%s overall=%.2f gaps=%d",
        [(r.id, r.confidence) for r in refs], output.overall_confidence, len(output.gaps),
    )
    return {
        "document_references": refs,
        "coverage_analysis": coverage.model_copy(
            update={"overall_confidence": output.overall_confidence, "gaps": output.gaps[:MAX_GAPS]}
        ),
        "confidence_history": _entry(
            Stage.DOCUMENT_ASSESSMENT, output.overall_confidence, f"Model assessed {len(refs)} relevant documents"
        ),
    }


def rank_by_keywords(query: str, topics: list[str], docs: list) -> list[DocumentReference]:
    """Keyword-overlap ranking with confidence capped at FALLBACK_CONFIDENCE_CAP."""
    probe = " ".join([query, *topics])
    refs = []
    for d in docs:
        overlap = keyword_overlap(probe, f"{d.title}\n{d.full_text}")
        if overlap <= 0:
            continue
        refs.append(
            DocumentReference(
                id=d.id,
                title=d.title,
                confidence=round(overlap * FALLBACK_CONFIDENCE_CAP, 4),
                applicability="Matched by keywords",
            )
        )
    return sorted(refs, key=lambda r: r.confidence, reverse=True)[:MAX_REFERENCES]


async def document_assessment_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    try:
        docs = await _documents(state, ctx)
    except Exception as e:
        logger.warning("[stages:document_assessment] fallback could not read documents: %s", e)
        docs = []
    refs = rank_by_keywords(state["query"], coverage.key_topics, docs)
    overall = refs[0].confidence if refs else 0.0
    return {
        "document_references": refs,
        "coverage_analysis": coverage.model_copy(
            update={
                "overall_confidence": overall,
                "gaps": ["Document assessment unavailable; documents matched by keywords only"],
            }
        ),
        "confidence_history": _entry(Stage.DOCUMENT_ASSESSMENT, overall, f"Keyword fallback matched {len(refs)} documents"),
    }


# --- coverage evaluation ---


def evaluate_confidence(confidence: float, refs: list[DocumentReference], gaps: list[str]) -> tuple[float, list[str]]:
    """Adjust the assessed confidence for document count, document confidence and gaps."""
    reasons = []
    if not refs:
        confidence = min(confidence, 0.2)
        reasons.append("No relevant documents found")
    elif len(refs) == 1:
        if refs[0].confidence < 0.6:
            confidence = min(confidence, 0.5)
            reasons.append("Single document with low confidence")
        else:
            reasons.append(f"Single high-confidence document ({refs[0].confidence:.2f})")
    else:
        avg = sum(r.confidence for r in refs) / len(refs)
        if avg > 0.7:
            confidence += 0.1
            reasons.append(f"Multiple high-confidence documents (avg {avg:.2f})")
        else:
            reasons.append(f"Multiple documents with moderate confidence (avg {avg:.2f})")

    if not gaps:
        confidence += 0.05
        reasons.append("No coverage gaps")
    elif len(gaps) > 3:
        confidence -= 0.1
        reasons.append(f"Multiple coverage gaps ({len(gaps)})")
    else:
        reasons.append(f"Some coverage gaps ({len(gaps)})")
    return _clamp(confidence), reasons


_STRATEGY = {"full": "full_answer", "partial": "partial_answer", "none": "escape_hatch"}


async def evaluate_coverage(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    refs = state.get("document_references") or []
    confidence, reasons = evaluate_confidence(coverage.overall_confidence, refs, coverage.gaps)
    level = coverage_level(confidence, ctx.high_threshold, ctx.medium_threshold)
    logger.info(
        "[stages:coverage_evaluation] OUT confidence %.2f -> %.2f level=%s",
        coverage.overall_confidence, confidence, level,
    )
    return {
        "coverage_analysis": coverage.model_copy(
            update={"overall_confidence": confidence, "coverage_level": level, "response_strategy": _STRATEGY[level]}
        ),
        "confidence_history": _entry(Stage.COVERAGE_EVALUATION, confidence, "; ".join(reasons)),
    }


async def coverage_evaluation_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    level = coverage_level(coverage.overall_confidence, ctx.high_threshold, ctx.medium_threshold)
    return {
        "coverage_analysis": coverage.model_copy(update={"coverage_level": level, "response_strategy": _STRATEGY[level]}),
        "confidence_history": _entry(Stage.COVERAGE_EVALUATION, coverage.overall_confidence, "Evaluation failed; assessed confidence kept"),
    }


# --- fact checking ---


async def _excerpt(ctx: StageContext, ref: DocumentReference) -> str:
    entry = await ctx.cache.get_by_id(ref.id)
    if entry is not None:
        return entry.full_text[:EXCERPT_CHARS]
    return "\n".join(ref.key_points)


async def check_facts(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    top = (state.get("document_references") or [])[:3]
    if not top:
        return {
            "fact_check_results": [],
            "confidence_history": _entry(Stage.FACT_CHECKING, coverage.overall_confidence, "No documents to fact-check"),
        }
    blocks = []
    for ref in top:
        blocks.append(f"[{ref.id}] {ref.title}\nKey points: {'; '.join(ref.key_points)}\n{await _excerpt(ctx, ref)}")
    prompt = (
        f'User question: "{state["query"]}"\n\n' + "\n\n".join(blocks) + "\n\n"
        "Verify each key point against its document text. Respond with JSON: "
        '{"checks": [{"document_id": str, "claim": str, "verified": bool, "confidence": 0-1, "notes": str}]}'
    )
    output = await _with_retry(ctx, Stage.FACT_CHECKING, prompt, _parse_json(FactCheckOutput), max_tokens=800)

    confidence = coverage.overall_confidence
    note = "No claims returned"
    if output.checks:
        avg = sum(c.confidence for c in output.checks) / len(output.checks)
        if avg < 0.7:
            confidence = max(confidence * 0.8, 0.4)
            note = f"Questionable facts (avg {avg:.2f})"
        elif avg > 0.9:
            confidence = min(confidence + 0.05, 1.0)
            note = f"Facts verified (avg {avg:.2f})"
        else:
            note = f"Facts mostly verified (avg {avg:.2f})"
    logger.info("[stages:fact_checking] OUT checks=%d confidence=%.2f", len(output.checks), confidence)
    return {
        "fact_check_results": output.checks,
        "coverage_analysis": coverage.model_copy(update={"overall_confidence": confidence}),
        "confidence_history": _entry(Stage.FACT_CHECKING, confidence, note),
    }


async def fact_checking_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    confidence = _coverage(state).overall_confidence
    return {
        "fact_check_results": [],
        "confidence_history": _entry(Stage.FACT_CHECKING, confidence, "Fact check unavailable"),
    }


# --- source validation ---


async def validate_sources(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    refs = state.get("document_references") or []
    if len(refs) < 2:
        result = SourceValidationResult(
            primary_document_id=refs[0].id if refs else "",
            consistency_score=1.0,
            recommendations=["Only one source available; no cross-reference performed"],
        )
        return {
            "source_validation": result,
            "confidence_history": _entry(Stage.SOURCE_VALIDATION, coverage.overall_confidence, "Single source, nothing to cross-reference"),
        }

    primary, others = refs[0], refs[1:4]
    blocks = []
    for ref in [primary, *others]:
        blocks.append(f"[{ref.id}] {ref.title}\n{await _excerpt(ctx, ref)}")
    prompt = (
        f'User question: "{state["query"]}"\nPrimary document: {primary.id}\n\n' + "\n\n".join(blocks) + "\n\n"
        "Cross-reference the primary document against the others. Respond with JSON: "
        '{"consistency_score": 0-1, "conflicts": [str], "recommendations": [str]}'
    )
    output = await _with_retry(ctx, Stage.SOURCE_VALIDATION, prompt, _parse_json(SourceValidationOutput), max_tokens=600)

    confidence = coverage.overall_confidence
    if output.consistency_score < 0.6:
        confidence = max(confidence * 0.7, 0.3)
    elif output.consistency_score > 0.8 and not output.conflicts:
        confidence = min(confidence + 0.1, 0.9)
    if output.conflicts:
        confidence = max(confidence * 0.85, 0.4)
    gaps = (coverage.gaps + [f"Conflict: {c}" for c in output.conflicts])[:MAX_GAPS]
    result = SourceValidationResult(
        primary_document_id=primary.id,
        cross_reference_ids=[r.id for r in others],
        consistency_score=output.consistency_score,
        conflicts=output.conflicts,
        recommendations=output.recommendations,
    )
    logger.info(
        "[stages:source_validation] OUT consistency=%.2f conflicts=%d confidence=%.2f",
        output.consistency_score, len(output.conflicts), confidence,
    )
    return {
        "source_validation": result,
        "coverage_analysis": coverage.model_copy(update={"overall_confidence": confidence, "gaps": gaps}),
        "confidence_history": _entry(
            Stage.SOURCE_VALIDATION, confidence, f"Consistency {output.consistency_score:.2f}, {len(output.conflicts)} conflicts"
        ),
    }


async def source_validation_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    return {
        "source_validation": None,
        "confidence_history": _entry(Stage.SOURCE_VALIDATION, _coverage(state).overall_confidence, "Source validation unavailable"),
    }


# --- follow-up generation ---


def fallback_questions(coverage: CoverageAnalysis) -> list[str]:
    questions = [f"Can you share more detail about {gap.rstrip('.').lower()}?" for gap in coverage.gaps[:2]]
    intent = coverage.query_intent.lower()
    if "process" in intent or "procedure" in intent:
        questions.append("What specific process stage or step are you most concerned about?")
    if any(w in intent for w in ("problem", "issue", "challenge")):
        questions.append("What have you already tried to address this issue?")
    if coverage.key_topics:
        questions.append(f"Which aspect of {coverage.key_topics[0]} matters most for your situation?")
    questions.append("What is the timeline or urgency level for this situation?")
    questions.append("Which stakeholders or team members are involved?")
    return questions[:MAX_FOLLOW_UPS]


async def generate_follow_ups(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    prompt = (
        f'User question: "{state["query"]}"\nIntent: {coverage.query_intent}\n'
        f"Coverage gaps: {'; '.join(coverage.gaps) or 'none recorded'}\n\n"
        f"Suggest {MIN_FOLLOW_UPS}-{MAX_FOLLOW_UPS} clarifying questions that would let the playbook answer "
        'better. Respond with JSON: {"questions": [str]}'
    )
    output = await _with_retry(ctx, Stage.FOLLOW_UP_GENERATION, prompt, _parse_json(FollowUpOutput), max_tokens=400)
    questions = [q.strip() for q in output.questions if q and q.strip()][:MAX_FOLLOW_UPS]
    if len(questions) < MIN_FOLLOW_UPS:
        for q in fallback_questions(coverage):
            if len(questions) >= MIN_FOLLOW_UPS:
                break
            if q not in questions:
                questions.append(q)
    logger.info("[stages:follow_up_generation] OUT questions=%d", len(questions))
    return {
        "follow_up_suggestions": questions,
        "confidence_history": _entry(
            Stage.FOLLOW_UP_GENERATION, coverage.overall_confidence, f"Generated {len(questions)} follow-up questions"
        ),
    }


async def follow_up_generation_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    return {
        "follow_up_suggestions": fallback_questions(coverage),
        "confidence_history": _entry(Stage.FOLLOW_UP_GENERATION, coverage.overall_confidence, "Fallback follow-up questions"),
    }


# --- response synthesis ---


def escape_hatch_answer(state: WorkflowState) -> str:
    topic = _coverage(state).query_intent or state["query"]
    return ESCAPE_HATCH_TEMPLATE.format(topic=topic)


def _finish(answer: str, state: WorkflowState) -> str:
    suggestions = state.get("follow_up_suggestions") or []
    if suggestions:
        answer += "\n\nTo help me give a more specific answer:\n" + "\n".join(f"- {q}" for q in suggestions)
    return answer


async def synthesize_response(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    refs = state.get("document_references") or []
    logger.info(
        "[stages:response_synthesis] IN  strategy=%s references=%d", coverage.response_strategy, len(refs)
    )
    if coverage.response_strategy == "escape_hatch" or not refs:
        return {
            "answer": _finish(escape_hatch_answer(state), state),
            "confidence_history": _entry(Stage.RESPONSE_SYNTHESIS, coverage.overall_confidence, "Escape hatch: insufficient coverage"),
        }

    blocks = []
    for ref in refs:
        blocks.append(
            f"[{ref.id}] {ref.title} (confidence {ref.confidence:.0%})\n"
            f"Key points: {'; '.join(ref.key_points)}\n{await _excerpt(ctx, ref)}"
        )
    validation = state.get("source_validation")
    notes = ""
    if validation and validation.conflicts:
        notes = "Known conflicts between sources: " + "; ".join(validation.conflicts) + "\n\n"
    prompt = (
        f"{_format_context(state.get('conversation_context') or [])}"
        f'User question: "{state["query"]}"\n\nPlaybook documents:\n' + "\n\n".join(blocks) + "\n\n"
        f"{notes}Answer the question using only these documents. Cite document titles."
        + (" Say clearly which parts the playbook does not cover." if coverage.response_strategy == "partial_answer" else "")
    )
    answer = await _with_retry(
        ctx, Stage.RESPONSE_SYNTHESIS, prompt, _parse_text, max_tokens=1200, json_mode=False
    )
    if coverage.response_strategy == "partial_answer" and coverage.gaps:
        answer += "\n\nNote: the Playbook only partially covers this question. Gaps: " + "; ".join(coverage.gaps)
    logger.info("[stages:response_synthesis] OUT answer_len=%d", len(answer))
    return {
        "answer": _finish(answer, state),
        "confidence_history": _entry(Stage.RESPONSE_SYNTHESIS, coverage.overall_confidence, f"Answer from {len(refs)} documents"),
    }


def _all_stages_failed(state: WorkflowState) -> bool:
    failed = {e.stage for e in state.get("errors") or []}
    executed = set(state.get("completed_nodes") or []) | {Stage.RESPONSE_SYNTHESIS.value}
    return executed <= failed


async def response_synthesis_fallback(state: WorkflowState, ctx: StageContext) -> dict:
    coverage = _coverage(state)
    refs = state.get("document_references") or []
    if _all_stages_failed(state):
        answer = UNABLE_TO_ANSWER
    elif refs:
        lines = ["The following Playbook documents look relevant to your question:"]
        for ref in refs:
            points = "; ".join(ref.key_points)
            lines.append(f"- {ref.title}" + (f": {points}" if points else ""))
        answer = _finish("\n".join(lines), state)
    else:
        answer = _finish(escape_hatch_answer(state), state)
    return {
        "answer": answer,
        "confidence_history": _entry(Stage.RESPONSE_SYNTHESIS, coverage.overall_confidence, "Synthesis unavailable; deterministic answer"),
    }


Handler = Callable[[WorkflowState, StageContext], Awaitable[dict]]

HANDLERS: dict[Stage, Handler] = {
    Stage.QUERY_ANALYSIS: analyze_query,
    Stage.DOCUMENT_ASSESSMENT: assess_documents,
    Stage.COVERAGE_EVALUATION: evaluate_coverage,
    Stage.FACT_CHECKING: check_facts,
    Stage.SOURCE_VALIDATION: validate_sources,
    Stage.FOLLOW_UP_GENERATION: generate_follow_ups,
    Stage.RESPONSE_SYNTHESIS: synthesize_response,
}

FALLBACKS: dict[Stage, Handler] = {
    Stage.QUERY_ANALYSIS: query_analysis_fallback,
    Stage.DOCUMENT_ASSESSMENT: document_assessment_fallback,
    Stage.COVERAGE_EVALUATION: coverage_evaluation_fallback,
    Stage.FACT_CHECKING: fact_checking_fallback,
    Stage.SOURCE_VALIDATION: source_validation_fallback,
    Stage.FOLLOW_UP_GENERATION: follow_up_generation_fallback,
    Stage.RESPONSE_SYNTHESIS: response_synthesis_fallback,
}
