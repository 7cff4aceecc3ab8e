import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from reasoner.evaluator import Evaluator
from reasoner.llm import ProviderCompletion
from reasoner.repository import SNIPPET_CHARS, ordinal_key, rank_matches, search_terms
from reasoner.schemas import NodeDetail, NodeScope, NodeSummary, QualityMetrics

Scripted = Union[str, Dict[str, Any], Exception, Callable[[str], Any], None]

NOT_JSON = "I think we should look around a bit more."
USAGE = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=True)


class FakeProvider:
    """Scripted stand-in for ProviderClient.

    Planner and synthesis calls draw from separate queues. Each item may be
    a dict (sent as JSON), a raw string, an exception to raise, or a
    callable taking the user prompt. An exhausted queue answers with text
    that is not JSON.
    """

    def __init__(
        self,
        plans: Optional[Sequence[Scripted]] = None,
        answers: Optional[Sequence[Scripted]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.plans: List[Scripted] = list(plans or [])
        self.answers: List[Scripted] = list(answers or [])
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def plan_calls(self) -> int:
        return sum(1 for call in self.calls if call["kind"] == "plan")

    @property
    def synthesis_calls(self) -> int:
        return sum(1 for call in self.calls if call["kind"] == "synthesis")

    async def complete(self, prompt: Dict[str, Any]) -> ProviderCompletion:
        messages = prompt.get("messages") or []
        system_text = _message_text(messages[0]) if messages else ""
        user_text = _message_text(messages[-1]) if messages else ""
        kind = "plan" if "You are the Planner" in system_text else "synthesis"
        self.calls.append({"kind": kind, "system": system_text, "user": user_text, "prompt": prompt})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        queue = self.plans if kind == "plan" else self.answers
        item: Scripted = queue.pop(0) if queue else None
        if callable(item) and not isinstance(item, Exception):
            item = item(user_text)
        if isinstance(item, Exception):
            raise item
        if item is None:
            content = NOT_JSON
        elif isinstance(item, str):
            content = item
        else:
            content = json.dumps(item)
        return ProviderCompletion(text=content, usage=dict(USAGE), model="test-model")

    async def close(self) -> None:
        self.closed = True


class FakeNodeRepository:
    """In-memory node tree with the same ranking as the SQLite repository."""

    def __init__(self, delay_seconds: float = 0.0, fail_with: Optional[Exception] = None) -> None:
        self.documents: Dict[str, str] = {}
        self.nodes: Dict[str, NodeDetail] = {}
        self.delay_seconds = delay_seconds
        self.fail_with = fail_with
        self.calls: List[str] = []

    def add_document(self, project_id: str, document_id: str, nodes: Sequence[Dict[str, Any]]) -> None:
        self.documents[document_id] = project_id
        for node in nodes:
            detail = NodeDetail(document_id=document_id, **node)
            self.nodes[detail.id] = detail

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with

    def _in_scope(self, scope: NodeScope) -> List[NodeDetail]:
        return [
            node
            for node in self.nodes.values()
            if self.documents.get(node.document_id) == scope.project_id
            and (not scope.document_ids or node.document_id in scope.document_ids)
        ]

    async def search(self, scope: NodeScope, text: str, limit: int = 8) -> List[NodeSummary]:
        await self._enter("search")
        return rank_matches(self._in_scope(scope), search_terms(text), limit)

    async def get_node(self, node_id: str) -> Optional[NodeDetail]:
        await self._enter("get_node")
        return self.nodes.get(node_id)

    async def get_neighbors(self, node_id: str, direction: str) -> List[NodeSummary]:
        await self._enter("get_neighbors")
        node = self.nodes.get(node_id)
        if node is None:
            return []
        if direction == "parent":
            parent = self.nodes.get(node.parent_id or "")
            return [parent.summary(SNIPPET_CHARS)] if parent else []
        if direction == "children":
            found = [item for item in self.nodes.values() if item.parent_id == node_id]
        else:
            found = [
                item
                for item in self.nodes.values()
                if item.parent_id == node.parent_id and item.document_id == node.document_id and item.id != node_id
            ]
        found.sort(key=lambda item: (ordinal_key(item.ordinal_path), item.id))
        return [item.summary(SNIPPET_CHARS) for item in found]

    async def list_roots(self, scope: NodeScope, limit: int = 8) -> List[NodeSummary]:
        await self._enter("list_roots")
        roots = [node for node in self._in_scope(scope) if node.parent_id is None or node.node_type == "section"]
        roots.sort(key=lambda item: (ordinal_key(item.ordinal_path), item.id))
        return [item.summary(SNIPPET_CHARS) for item in roots[:limit]]


ANNUAL_REPORT_NODES = [
    {"id": "d1-root", "node_type": "document", "title": "Annual Report 2023", "text": "", "ordinal_path": ""},
    {
        "id": "d1-s1",
        "parent_id": "d1-root",
        "node_type": "section",
        "title": "Financial Results",
        "text": "Summary of the financial year.",
        "ordinal_path": "1",
    },
    {
        "id": "n-rev",
        "parent_id": "d1-s1",
        "node_type": "paragraph",
        "text": "Revenue grew 15% year-over-year, driven by subscriptions.",
        "ordinal_path": "1.1",
    },
    {
        "id": "n-cost",
        "parent_id": "d1-s1",
        "node_type": "paragraph",
        "text": "Operating costs stayed flat at 40 million.",
        "ordinal_path": "1.2",
    },
    {
        "id": "d1-s2",
        "parent_id": "d1-root",
        "node_type": "section",
        "title": "Outlook",
        "text": "Management expects steady demand next year.",
        "ordinal_path": "2",
    },
]


def annual_report_repository(**kwargs) -> FakeNodeRepository:
    repository = FakeNodeRepository(**kwargs)
    repository.add_document("p1", "d1", ANNUAL_REPORT_NODES)
    return repository


def plan(kind: str, **params) -> Dict[str, Any]:
    return {
        "kind": kind,
        "objective": f"{kind} step",
        "reasoning": "scripted",
        "params": params,
        "stop": False,
    }


def answer(text: str, citations: Sequence[str], confidence: float = 0.8) -> Dict[str, Any]:
    return {"answer_markdown": text, "citations": list(citations), "confidence": confidence}


class ScriptedEvaluator(Evaluator):
    """Evaluator that returns preset composite scores in order."""

    def __init__(self, settings, scores: Sequence[float]) -> None:
        super().__init__(settings)
        self.scores = list(scores)
        self.seen: List[List[str]] = []

    def evaluate(self, query, answer_markdown, citations, evidence) -> QualityMetrics:
        self.seen.append(list(citations))
        composite = self.scores.pop(0) if self.scores else 0.0
        return QualityMetrics(
            query_alignment=composite,
            citation_coverage=composite,
            cross_document_coverage=1.0,
            grounding_failure=False,
            composite=composite,
            missing_terms=[] if composite >= 0.6 else ["growth"],
        )
