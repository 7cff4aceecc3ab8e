import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from .actions import RetrievalActionExecutor
from .config import MIN_STEPS, AppSettings
from .db import Database
from .errors import (
    PROVIDER_ERROR,
    RUN_ERROR_CODES,
    InvalidInput,
    ProviderError,
    QualityRejected,
    ReasonerError,
    RetrievalEmpty,
    RunCancelled,
    RunNotFound,
)
from .evaluator import Evaluator, revision_gaps
from .planner import Planner
from .query_scope import requires_project_scope
from .schemas import (
    CLOSING_KINDS,
    RETRIEVAL_KINDS,
    CandidateAnswer,
    CompleteEvent,
    ErrorEvent,
    FinishStep,
    Observation,
    PlannedStep,
    QualityMetrics,
    StepEvent,
)
from .state import RunState

logger = logging.getLogger(__name__)

STEP_EVENT = "reasoning/step"
COMPLETE_EVENT = "reasoning/complete"
ERROR_EVENT = "reasoning/error"


def new_run_id() -> str:
    return uuid.uuid4().hex


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("runId", run_id)
        stored = await self.db.add_event(run_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(run_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


class RunCoordinator:
    """Owns the phase state machine of every run and the tasks executing them.

    Phases: planning -> retrieval -> synthesis -> validation -> completed | failed,
    with at most ``max_revisions`` validation -> retrieval loops. Each run is
    one asyncio task; state is never shared between runs.
    """

    def __init__(
        self,
        db: Database,
        bus: EventBus,
        provider: Any,
        repository: Any,
        settings: AppSettings,
        *,
        evaluator: Optional[Evaluator] = None,
    ):
        self.db = db
        self.bus = bus
        self.settings = settings
        self.planner = Planner(provider, settings)
        self.executor = RetrievalActionExecutor(repository, settings)
        self.evaluator = evaluator or Evaluator(settings)
        self.tasks: Dict[str, asyncio.Task] = {}
        self.stop_events: Dict[str, asyncio.Event] = {}

    # Inbound commands

    async def run_query(
        self,
        project_id: str,
        query: str,
        max_steps: Optional[int] = None,
        focus_document_id: Optional[str] = None,
    ) -> Dict[str, str]:
        query = (query or "").strip()
        project_id = (project_id or "").strip()
        if not query:
            raise InvalidInput("Query is required.")
        if not project_id:
            raise InvalidInput("Project scope is required.")
        if focus_document_id and requires_project_scope(query):
            logger.info("query spans several documents; ignoring focus document %s", focus_document_id)
            focus_document_id = None
        steps = max(MIN_STEPS, int(max_steps or self.settings.max_steps))

        run_id = new_run_id()
        await self.db.insert_run(
            run_id, project_id, query, document_id=focus_document_id, max_steps=steps
        )
        stop_event = asyncio.Event()
        self.stop_events[run_id] = stop_event
        state = RunState(
            run_id=run_id,
            project_id=project_id,
            query=query,
            max_steps=steps,
            max_revisions=self.settings.max_revisions,
            focus_document_id=focus_document_id,
            stop_event=stop_event,
        )
        self.tasks[run_id] = asyncio.create_task(self._run_and_cleanup(state))
        logger.info("run %s started (project=%s, max_steps=%d)", run_id, project_id, steps)
        return {"run_id": run_id, "status": "running"}

    async def get_run(self, run_id: str) -> Dict[str, Any]:
        snapshot = await self.db.snapshot(run_id)
        if snapshot is None:
            raise RunNotFound(f"Run {run_id} not found.")
        return snapshot

    async def cancel(self, run_id: str) -> Dict[str, str]:
        stop_event = self.stop_events.get(run_id)
        if stop_event is not None:
            stop_event.set()
            return {"run_id": run_id, "status": "cancelling"}
        run = await self.db.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found.")
        return {"run_id": run_id, "status": run["status"]}

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> None:
        task = self.tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)

    async def shutdown(self) -> None:
        for stop_event in list(self.stop_events.values()):
            stop_event.set()
        tasks = list(self.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def apply_settings(self, settings: AppSettings) -> None:
        """Swap in new settings; runs already in flight keep their budgets."""
        self.settings = settings
        self.planner.settings = settings
        self.executor.settings = settings
        self.evaluator.settings = settings

    # Run task

    async def _run_and_cleanup(self, state: RunState) -> None:
        try:
            await self.execute(state)
        except ReasonerError as exc:
            await self._fail(state, exc)
        except asyncio.CancelledError:
            await self._fail(state, RunCancelled("Run task was cancelled."))
            raise
        except Exception as exc:
            logger.exception("run %s crashed", state.run_id)
            await self._fail(state, ReasonerError(f"Internal error: {exc}", retryable=False))
        finally:
            self.tasks.pop(state.run_id, None)
            self.stop_events.pop(state.run_id, None)

    async def execute(self, state: RunState) -> None:
        if not await self.executor.has_scope(state):
            raise RetrievalEmpty("No documents found in the requested scope.")
        threshold = self.evaluator.threshold_for(state.query, state.focus_document_id)
        while True:
            closing = await self._retrieve(state)
            if not state.evidence:
                raise self._no_evidence_error(state)
            candidate = await self._synthesize(state, closing)
            await self._set_phase(state, "validation")
            metrics = self.evaluator.evaluate(
                state.query, candidate.answer_markdown, candidate.citations, state.evidence
            )
            state.quality = metrics
            logger.info(
                "run %s validation composite=%.3f threshold=%.2f grounding_failure=%s",
                state.run_id,
                metrics.composite,
                threshold,
                metrics.grounding_failure,
            )
            if self.evaluator.accepts(metrics, threshold):
                await self._complete(state, candidate, metrics)
                return
            if not state.can_revise():
                await self._reject(state, candidate, metrics, threshold)
                return
            state.revision_count += 1
            state.retrieval_since_revision = 0
            state.gaps = revision_gaps(metrics)
            await self._set_phase(state, "retrieval")
            await self._save_progress(state)

    def _no_evidence_error(self, state: RunState) -> ReasonerError:
        if state.provider_calls and not state.provider_successes:
            return ProviderError("Model provider failed on every call and no evidence was collected.")
        return RetrievalEmpty("Search returned no evidence for this query.")

    async def _retrieve(self, state: RunState) -> PlannedStep:
        """Run planner-driven steps until a closing step or the reserved last slot."""
        while state.steps_used < state.max_steps - 1:
            if state.cancelled():
                raise RunCancelled("Run cancelled.")
            started = time.monotonic()
            planned = await self.planner.next_step(state, state.history(self.settings.observation_window))
            if planned.kind in CLOSING_KINDS:
                return planned
            if state.phase != "retrieval":
                await self._set_phase(state, "retrieval")
            observation = await self.executor.execute(planned, state)
            state.add_evidence(observation.nodes)
            state.last_confidence = observation.confidence
            if planned.kind in RETRIEVAL_KINDS:
                state.retrieval_since_revision += 1
            await self._record_step(state, planned, observation, started)
            if planned.stop and state.evidence:
                return self._coordinator_closing(state, "planner_stop")
        return self._coordinator_closing(state, "step_budget")

    def _coordinator_closing(self, state: RunState, reason: str) -> PlannedStep:
        closing = FinishStep(
            kind="finish",
            objective="Answer from the collected evidence.",
            reasoning="Planner asked to stop." if reason == "planner_stop" else "Step budget reached.",
        )
        state.planner_trace.append(
            {
                "step": state.steps_used,
                "objective": closing.objective,
                "decision": closing.kind,
                "source": "coordinator",
                "reason": reason,
            }
        )
        return closing

    async def _synthesize(self, state: RunState, closing: PlannedStep) -> CandidateAnswer:
        started = time.monotonic()
        await self._set_phase(state, "synthesis")
        candidate = await self.planner.synthesize(state, state.steps)
        summary = f"Drafted an answer citing {len(candidate.citations)} node(s)."
        if candidate.fallback:
            summary = "Could not draft a usable answer; using the insufficient-evidence answer."
        observation = Observation(
            text=summary,
            node_refs=list(candidate.citations),
            confidence=candidate.confidence,
            ok=not candidate.fallback,
        )
        await self._record_step(state, closing, observation, started)
        return candidate

    # Persistence and events

    async def _set_phase(self, state: RunState, phase: str) -> None:
        logger.info("run %s phase %s -> %s", state.run_id, state.phase, phase)
        state.phase = phase
        await self.db.update_run_phase(state.run_id, phase)

    async def _save_progress(self, state: RunState) -> None:
        await self.db.update_run_progress(
            state.run_id,
            token_usage=state.token_usage,
            cost_usd=state.cost_usd,
            planner_trace=state.planner_trace,
            revision_count=state.revision_count,
            quality=state.quality.model_dump() if state.quality else None,
        )

    async def _record_step(
        self,
        state: RunState,
        planned: PlannedStep,
        observation: Observation,
        started: float,
    ) -> None:
        decision = state.planner_trace[-1] if state.planner_trace else {}
        action = {
            "kind": planned.kind,
            "params": planned.params.model_dump(),
            "source": decision.get("source", "model"),
        }
        if decision.get("reason"):
            action["reason"] = decision["reason"]
        latency_ms = int((time.monotonic() - started) * 1000)
        step = await self.db.add_step(
            state.run_id,
            step_kind=planned.kind,
            objective=planned.objective,
            reasoning=planned.reasoning,
            action=action,
            observation=observation.text,
            node_refs=observation.node_refs,
            confidence=observation.confidence,
            latency_ms=latency_ms,
            status="ok" if observation.ok else "failed",
        )
        state.steps.append(step)
        await self._save_progress(state)
        event = StepEvent(
            run_id=state.run_id,
            step_index=step["idx"],
            step_kind=planned.kind,
            objective=planned.objective,
            reasoning=planned.reasoning,
            action=action,
            observation=observation.text,
            node_refs=observation.node_refs,
            confidence=observation.confidence,
            latency_ms=latency_ms,
        )
        await self._publish(state.run_id, STEP_EVENT, event.model_dump(by_alias=True))

    async def _publish(self, run_id: str, event_type: str, payload: dict) -> None:
        try:
            await self.bus.emit(run_id, event_type, payload)
        except Exception:
            logger.warning("run %s could not publish %s", run_id, event_type, exc_info=True)

    async def _finish(
        self,
        state: RunState,
        *,
        phase: str,
        status: str,
        error: Optional[dict] = None,
        answer: Optional[dict] = None,
    ):
        return await self.db.finish_run(
            state.run_id,
            phase=phase,
            status=status,
            total_latency_ms=state.elapsed_ms(),
            token_usage=state.token_usage,
            cost_usd=state.cost_usd,
            planner_trace=state.planner_trace,
            revision_count=state.revision_count,
            quality=state.quality.model_dump() if state.quality else None,
            error=error,
            answer=answer,
        )

    async def _complete(self, state: RunState, candidate: CandidateAnswer, metrics: QualityMetrics) -> None:
        confidence = min(max(candidate.confidence, metrics.composite), 1.0)
        updated, stored = await self._finish(
            state,
            phase="completed",
            status="completed",
            answer={
                "answer_markdown": candidate.answer_markdown,
                "citations": candidate.citations,
                "confidence": round(confidence, 4),
                "grounded": not metrics.grounding_failure,
                "quality": metrics.model_dump(),
            },
        )
        if not updated or stored is None:
            return
        state.phase = "completed"
        logger.info("run %s completed with %d citation(s)", state.run_id, len(candidate.citations))
        event = CompleteEvent(
            run_id=state.run_id,
            answer_id=stored["id"],
            final_confidence=stored["confidence"],
            quality_score=metrics.composite,
            total_latency_ms=state.elapsed_ms(),
            token_usage=state.token_usage,
            cost_usd=round(state.cost_usd, 6),
        )
        await self._publish(state.run_id, COMPLETE_EVENT, event.model_dump(by_alias=True))

    async def _reject(
        self,
        state: RunState,
        candidate: CandidateAnswer,
        metrics: QualityMetrics,
        threshold: float,
    ) -> None:
        confidence = min(candidate.confidence, 0.45, max(metrics.composite, 0.25))
        error = QualityRejected(
            f"Answer scored {metrics.composite:.2f}, below the {threshold:.2f} quality gate."
        ).to_payload()
        updated, _ = await self._finish(
            state,
            phase="completed",
            status="failed",
            error=error,
            answer={
                "answer_markdown": candidate.answer_markdown,
                "citations": candidate.citations,
                "confidence": round(confidence, 4),
                "grounded": False,
                "quality": metrics.model_dump(),
            },
        )
        if not updated:
            return
        state.phase = "completed"
        logger.info("run %s rejected by quality gate (%.3f)", state.run_id, metrics.composite)
        event = ErrorEvent(run_id=state.run_id, **error)
        await self._publish(state.run_id, ERROR_EVENT, event.model_dump(by_alias=True))

    async def _fail(self, state: RunState, exc: ReasonerError) -> None:
        error = exc.to_payload()
        if error["code"] not in RUN_ERROR_CODES:
            error["code"] = PROVIDER_ERROR
        updated, _ = await self._finish(state, phase="failed", status="failed", error=error)
        if not updated:
            return
        logger.info("run %s failed in phase %s: %s (%s)", state.run_id, state.phase, error["code"], exc.message)
        state.phase = "failed"
        event = ErrorEvent(run_id=state.run_id, **error)
        await self._publish(state.run_id, ERROR_EVENT, event.model_dump(by_alias=True))
