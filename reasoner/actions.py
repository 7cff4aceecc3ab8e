import asyncio
import logging
from typing import Any, List

from .config import AppSettings
from .errors import RetrievalEmpty, RunCancelled
from .schemas import (
    ExpandNeighborsStep,
    InspectStep,
    NodeScope,
    NodeSummary,
    Observation,
    PlannedStep,
    SearchStep,
)
from .state import RunState, guarded
from .terms import salient_terms

logger = logging.getLogger(__name__)

INSPECT_CHARS = 1200
LISTED_HITS = 6


def _describe(summary: NodeSummary) -> str:
    title = summary.title or summary.snippet[:60]
    return f"[{summary.id}] {summary.node_type} '{title}' (path {summary.ordinal_path or '-'})"


def search_confidence(hits: int) -> float:
    if hits <= 0:
        return 0.1
    return round(0.35 + min(0.05 * hits, 0.25), 4)


class RetrievalActionExecutor:
    """Runs one planned step against the node repository.

    Repository failures and timeouts come back as a failed Observation;
    only cancellation propagates.
    """

    def __init__(self, repository: Any, settings: AppSettings):
        self.repository = repository
        self.settings = settings

    async def _repo(self, state: RunState, aw):
        return await guarded(state.stop_event, aw, self.settings.repository_timeout_s)

    async def has_scope(self, state: RunState) -> bool:
        try:
            roots = await self._repo(state, self.repository.list_roots(state.scope, limit=1))
        except RunCancelled:
            raise
        except asyncio.TimeoutError:
            raise RetrievalEmpty(
                f"Document scope check timed out after {self.settings.repository_timeout_s:g}s.", retryable=True
            )
        except Exception as exc:
            raise RetrievalEmpty(f"Document scope check failed: {exc}", retryable=True) from exc
        return bool(roots)

    async def execute(self, step: PlannedStep, state: RunState) -> Observation:
        try:
            if isinstance(step, SearchStep):
                return await self._search(step, state)
            if isinstance(step, InspectStep):
                return await self._inspect(step, state)
            if isinstance(step, ExpandNeighborsStep):
                return await self._expand(step, state)
            if step.kind == "self_check":
                return self.self_check(state)
        except RunCancelled:
            raise
        except asyncio.TimeoutError:
            logger.warning("run %s %s timed out", state.run_id, step.kind)
            return Observation(
                text=f"Repository call timed out after {self.settings.repository_timeout_s:g}s.",
                confidence=0.0,
                ok=False,
            )
        except Exception as exc:
            logger.warning("run %s %s failed: %s", state.run_id, step.kind, exc)
            return Observation(text=f"Repository error: {exc}", confidence=0.0, ok=False)
        raise ValueError(f"{step.kind} steps are handled by the coordinator")

    def _search_scope(self, step: SearchStep, state: RunState) -> NodeScope:
        scope = state.scope
        if scope.document_ids or not step.params.scope:
            return scope
        return NodeScope(project_id=scope.project_id, document_ids=list(step.params.scope))

    async def _search(self, step: SearchStep, state: RunState) -> Observation:
        state.search_attempts += 1
        query = step.params.query
        hits: List[NodeSummary] = await self._repo(
            state, self.repository.search(self._search_scope(step, state), query, self.settings.search_limit)
        )
        if hits:
            listed = "; ".join(_describe(hit) for hit in hits[:LISTED_HITS])
            return Observation(
                text=f"Found {len(hits)} node(s) for '{query}': {listed}",
                node_refs=[hit.id for hit in hits],
                nodes=[hit.as_detail() for hit in hits],
                confidence=search_confidence(len(hits)),
            )
        roots: List[NodeSummary] = await self._repo(
            state, self.repository.list_roots(state.scope, limit=self.settings.search_limit)
        )
        if not roots:
            return Observation(text=f"No matches for '{query}'.", confidence=search_confidence(0))
        # Roots are leads for inspect, not evidence.
        listed = "; ".join(_describe(root) for root in roots[:LISTED_HITS])
        return Observation(
            text=f"No matches for '{query}'; top-level nodes in scope: {listed}",
            node_refs=[root.id for root in roots],
            confidence=0.2,
        )

    async def _inspect(self, step: InspectStep, state: RunState) -> Observation:
        node_id = step.params.node_id
        node = await self._repo(state, self.repository.get_node(node_id))
        if node is None:
            return Observation(text=f"Node {node_id} not found.", confidence=0.1, ok=False)
        text = node.text
        if len(text) > INSPECT_CHARS:
            text = text[: INSPECT_CHARS - 3] + "..."
        title = node.title or "untitled"
        return Observation(
            text=f"Inspected {node.node_type} '{title}' (path {node.ordinal_path or '-'}): {text}",
            node_refs=[node.id],
            nodes=[node],
            confidence=0.6,
        )

    async def _expand(self, step: ExpandNeighborsStep, state: RunState) -> Observation:
        node_id = step.params.node_id
        direction = step.params.direction
        neighbors: List[NodeSummary] = await self._repo(
            state, self.repository.get_neighbors(node_id, direction)
        )
        if not neighbors:
            return Observation(text=f"No {direction} found for node {node_id}.", confidence=0.15)
        listed = "; ".join(_describe(item) for item in neighbors[:LISTED_HITS])
        return Observation(
            text=f"{len(neighbors)} {direction} of {node_id}: {listed}",
            node_refs=[item.id for item in neighbors],
            nodes=[item.as_detail() for item in neighbors],
            confidence=0.5,
        )

    def self_check(self, state: RunState) -> Observation:
        terms = salient_terms(state.query)
        corpus = " ".join(f"{node.title or ''} {node.text}" for node in state.evidence.values()).lower()
        covered = [term for term in terms if term in corpus]
        missing = [term for term in terms if term not in corpus]
        coverage = len(covered) / len(terms) if terms else 0.0
        text = f"Evidence from {len(state.evidence)} node(s) covers {len(covered)}/{len(terms)} query terms."
        if missing:
            text += " Missing: " + ", ".join(missing) + "."
        return Observation(text=text, confidence=round(0.9 * coverage, 4))
