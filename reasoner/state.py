import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

from .errors import RunCancelled
from .schemas import NodeDetail, NodeScope, QualityMetrics

T = TypeVar("T")


async def guarded(stop_event: Optional[asyncio.Event], aw: Awaitable[T], timeout: Optional[float]) -> T:
    """Await ``aw`` unless the run is cancelled or the timeout expires first.

    The losing operation is cancelled and its eventual result discarded.
    Raises RunCancelled or asyncio.TimeoutError.
    """
    if stop_event is not None and stop_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise RunCancelled("Run cancelled.")
    task = asyncio.ensure_future(aw)
    if stop_event is None:
        return await asyncio.wait_for(task, timeout)
    stop_waiter = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stop_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        stop_waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    if stop_event.is_set():
        raise RunCancelled("Run cancelled.")
    raise asyncio.TimeoutError()


@dataclass
class RunState:
    run_id: str
    project_id: str
    query: str
    max_steps: int
    max_revisions: int
    focus_document_id: Optional[str] = None
    stop_event: Optional[asyncio.Event] = None
    phase: str = "planning"
    steps: List[Dict[str, Any]] = field(default_factory=list)
    evidence: Dict[str, NodeDetail] = field(default_factory=dict)
    last_confidence: float = 0.0
    revision_count: int = 0
    retrieval_since_revision: int = 0
    search_attempts: int = 0
    gaps: List[str] = field(default_factory=list)
    quality: Optional[QualityMetrics] = None
    token_usage: Dict[str, int] = field(
        default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    )
    cost_usd: float = 0.0
    planner_trace: List[Dict[str, Any]] = field(default_factory=list)
    provider_calls: int = 0
    provider_successes: int = 0
    started: float = field(default_factory=time.monotonic)

    @property
    def scope(self) -> NodeScope:
        documents = [self.focus_document_id] if self.focus_document_id else []
        return NodeScope(project_id=self.project_id, document_ids=documents)

    @property
    def steps_used(self) -> int:
        return len(self.steps)

    @property
    def call_budget(self) -> int:
        return self.max_steps + self.max_revisions

    def can_call_provider(self, reserve: int = 0) -> bool:
        return self.provider_calls + 1 + reserve <= self.call_budget

    def can_revise(self) -> bool:
        return (
            self.revision_count < self.max_revisions
            and self.max_steps - self.steps_used >= 2
            and self.can_call_provider()
        )

    def cancelled(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def add_evidence(self, nodes: Iterable[NodeDetail]) -> None:
        for node in nodes:
            existing = self.evidence.get(node.id)
            if existing is not None and len(existing.text) >= len(node.text):
                continue
            self.evidence[node.id] = node

    def record_usage(self, usage: Dict[str, int], input_cost: float, output_cost: float) -> None:
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        self.token_usage["prompt_tokens"] += prompt_tokens
        self.token_usage["completion_tokens"] += completion_tokens
        self.token_usage["total_tokens"] += int(usage.get("total_tokens") or prompt_tokens + completion_tokens)
        self.cost_usd += prompt_tokens * input_cost + completion_tokens * output_cost

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def history(self, window: int) -> List[Dict[str, Any]]:
        if window <= 0:
            return []
        return self.steps[-window:]
