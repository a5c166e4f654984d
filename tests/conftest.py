"""
Shared fakes: an in-memory playbook, a scripted completion service and
factories for the pipeline pieces. No network, no filesystem.
"""

import json
from datetime import datetime, timezone

import pytest

from playbook.agent.graph import WorkflowEngine
from playbook.agent.llm import CompletionResult
from playbook.agent.stages import StageContext
from playbook.core.errors import LLMError
from playbook.core.session_store import SessionStore
from playbook.services.checkpoint_store import CheckpointStore, InMemoryCheckpointBackend
from playbook.services.document_cache import DocumentCache
from playbook.services.document_repository import Document, InMemoryDocumentRepository
from playbook.services.query_service import QueryService

CLOSURE_TEXT = (
    "# Project Closure Procedure\n"
    "Use this procedure to close a project once all deliverables are accepted.\n"
    "Obtain written sign-off from the sponsor. Close vendor contracts and release budget.\n"
    "Hand over documentation to operations and hold a lessons learned retrospective."
)

QUESTION = "How do I close a project?"


def make_document(doc_id: str, title: str, content: str, active: bool = True) -> Document:
    return Document(
        id=doc_id,
        title=title,
        content=content,
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        is_active=active,
    )


CANNED = {
    "query_analysis": json.dumps(
        {"intent": "steps to close a project", "key_topics": ["project closure", "sign-off"], "specificity": "high"}
    ),
    "document_assessment": json.dumps(
        {
            "documents": [
                {
                    "id": "project-closure",
                    "confidence": 0.92,
                    "sections": ["Confirm acceptance"],
                    "key_points": ["Obtain written sign-off from the sponsor"],
                    "applicability": "Directly describes project closure",
                }
            ],
            "overall_confidence": 0.92,
            "gaps": [],
        }
    ),
    "fact_checking": json.dumps(
        {
            "checks": [
                {
                    "document_id": "project-closure",
                    "claim": "Obtain written sign-off from the sponsor",
                    "verified": True,
                    "confidence": 0.95,
                    "notes": "",
                }
            ]
        }
    ),
    "source_validation": json.dumps({"consistency_score": 0.9, "conflicts": [], "recommendations": []}),
    "follow_up_generation": json.dumps(
        {"questions": ["Which project phase are you in?", "Is there a vendor contract?", "Who is the sponsor?"]}
    ),
    "response_synthesis": "To close a project, obtain sponsor sign-off, close contracts and hand over to operations.",
}


class FakeLLM:
    """Scripted completion service. Responses are keyed by the calling stage (options.tag)."""

    def __init__(self, responses: dict[str, str] | None = None, fail_tags: tuple[str, ...] = ()) -> None:
        self.responses = dict(CANNED if responses is None else responses)
        self.fail_tags = set(fail_tags)
        self.calls: list[str] = []

    async def complete(self, prompt, options=None) -> CompletionResult:
        tag = options.tag if options else ""
        self.calls.append(tag)
        if tag in self.fail_tags:
            raise LLMError(f"simulated failure in {tag}")
        text = self.responses.get(tag)
        if text is None:
            raise LLMError(f"no scripted response for {tag}")
        if isinstance(text, list):
            text = text.pop(0) if len(text) > 1 else text[0]
        return CompletionResult(text=text, model="fake-model", tokens_in=10, tokens_out=5, latency_ms=1.0)


@pytest.fixture
def repository() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository([make_document("project-closure", "Project Closure Procedure", CLOSURE_TEXT)])


@pytest.fixture
def cache(repository: InMemoryDocumentRepository) -> DocumentCache:
    return DocumentCache(repository, enabled=True, ttl_minutes=60, auto_refresh=False)


@pytest.fixture
def checkpoints() -> CheckpointStore:
    return CheckpointStore(InMemoryCheckpointBackend(), enabled=True)


def build_service(llm: FakeLLM, cache: DocumentCache, checkpoints: CheckpointStore | None = None, **context) -> QueryService:
    ctx = StageContext(llm=llm, cache=cache, **context)
    engine = WorkflowEngine(llm, cache, checkpoints, context=ctx)
    return QueryService(engine, cache, SessionStore(), checkpoints)
