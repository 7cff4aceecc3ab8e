import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .config import AppSettings
from .errors import ProviderError
from .llm import ProviderCompletion
from .prompts import (
    INSUFFICIENT_EVIDENCE_ANSWER,
    PLANNER_SYSTEM,
    PLANNER_USER_TEMPLATE,
    REVISION_GAPS_TEMPLATE,
    SYNTHESIS_SYSTEM,
    SYNTHESIS_USER_TEMPLATE,
)
from .schemas import (
    PLANNED_STEP_ADAPTER,
    CandidateAnswer,
    FinishStep,
    PlannedStep,
    SearchParams,
    SearchStep,
    SelfCheckStep,
)
from .state import RunState, guarded
from .terms import salient_terms

logger = logging.getLogger(__name__)

STEP_KINDS = {"search", "inspect", "expand_neighbors", "synthesize", "self_check", "finish"}
NEEDS_EVIDENCE = {"synthesize", "self_check", "finish"}
KIND_KEYS = ("kind", "step_type", "stepType", "type", "action")
PARAM_KEYS = {"nodeId": "node_id", "id": "node_id", "node": "node_id", "q": "query", "text": "query"}
EXCERPT_CHARS = 500
OBSERVATION_CHARS = 400

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    text = (raw or "").strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    if not text or text[0] != "{":
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def normalize_plan_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    kind = None
    for key in KIND_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            kind = value.strip().lower().replace("-", "_").replace(" ", "_")
            break
    params = data.get("params")
    if params is None:
        params = data.get("parameters")
    if not isinstance(params, dict):
        params = {}
    normalized_params = {PARAM_KEYS.get(key, key): value for key, value in params.items()}
    return {
        "kind": kind,
        "objective": str(data.get("objective") or ""),
        "reasoning": str(data.get("reasoning") or ""),
        "params": normalized_params,
        "stop": bool(data.get("stop", False)),
    }


def parse_planned_step(raw: str) -> Tuple[Optional[PlannedStep], str]:
    """Validate untrusted provider text into a PlannedStep, or return a rejection reason."""
    data = extract_json_object(raw)
    if data is None:
        return None, "malformed_json"
    normalized = normalize_plan_payload(data)
    if normalized["kind"] not in STEP_KINDS:
        return None, "unknown_kind"
    try:
        return PLANNED_STEP_ADAPTER.validate_python(normalized), ""
    except ValidationError:
        return None, "invalid_params"


def dedupe(values: Sequence[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def parse_candidate_answer(raw: str, evidence_ids: Sequence[str]) -> Optional[CandidateAnswer]:
    data = extract_json_object(raw)
    if data is None:
        return None
    answer = data.get("answer_markdown") or data.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        return None
    citations = data.get("citations") or []
    if not isinstance(citations, list):
        return None
    known = set(evidence_ids)
    cited = [str(item).strip() for item in citations if isinstance(item, (str, int))]
    cited = [item for item in dedupe(cited) if item in known]
    if not cited:
        # Accept inline [node-id] markers when the list itself is empty or unusable.
        cited = [node_id for node_id in evidence_ids if f"[{node_id}]" in answer or f"citation:{node_id}" in answer]
    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return CandidateAnswer(
        answer_markdown=answer.strip(),
        citations=cited,
        confidence=min(max(confidence, 0.0), 1.0),
    )


def insufficient_evidence_answer() -> CandidateAnswer:
    return CandidateAnswer(answer_markdown=INSUFFICIENT_EVIDENCE_ANSWER, citations=[], confidence=0.0, fallback=True)


def _format_gaps(gaps: Sequence[str]) -> str:
    if not gaps:
        return ""
    return REVISION_GAPS_TEMPLATE.format(gaps="\n".join(f"- {gap}" for gap in gaps))


def _format_observations(history: Sequence[Dict[str, Any]]) -> str:
    if not history:
        return "(none yet)"
    lines = []
    for step in history:
        observation = step.get("observation") or ""
        if len(observation) > OBSERVATION_CHARS:
            observation = observation[: OBSERVATION_CHARS - 3] + "..."
        refs = ", ".join(step.get("node_refs") or [])
        lines.append(f"#{step.get('idx')} {step.get('step_kind')}: {observation}" + (f" [nodes: {refs}]" if refs else ""))
    return "\n".join(lines)


class Planner:
    """Chooses the next step of a run and writes the candidate answer."""

    def __init__(self, provider: Any, settings: AppSettings):
        self.provider = provider
        self.settings = settings

    def build_plan_prompt(self, state: RunState, history: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        user = PLANNER_USER_TEMPLATE.format(
            query=state.query,
            phase=state.phase,
            steps_used=state.steps_used,
            max_steps=state.max_steps,
            evidence_count=len(state.evidence),
            gaps=_format_gaps(state.gaps),
            observations=_format_observations(history),
        )
        return {
            "messages": [
                {"role": "system", "content": PLANNER_SYSTEM},
                {"role": "user", "content": user},
            ],
            "temperature": self.settings.provider_temperature,
            "max_tokens": 400,
            "response_format": {"type": "json_object"},
        }

    def build_synthesis_prompt(self, state: RunState) -> Dict[str, Any]:
        lines = []
        for index, node in enumerate(state.evidence.values(), start=1):
            lines.append(
                f"{index}. [citation:{node.id}] document={node.document_id} path={node.ordinal_path} "
                f"type={node.node_type} title={node.title or ''} excerpt={node.text[:EXCERPT_CHARS]}"
            )
        user = SYNTHESIS_USER_TEMPLATE.format(
            query=state.query,
            gaps=_format_gaps(state.gaps),
            evidence="\n".join(lines),
        )
        return {
            "messages": [
                {"role": "system", "content": SYNTHESIS_SYSTEM},
                {"role": "user", "content": user},
            ],
            "temperature": self.settings.provider_temperature,
            "max_tokens": self.settings.provider_max_tokens,
            "response_format": {"type": "json_object"},
        }

    async def _call(self, state: RunState, prompt: Dict[str, Any], timeout: float) -> ProviderCompletion:
        state.provider_calls += 1
        completion = await guarded(state.stop_event, self.provider.complete(prompt), timeout)
        state.provider_successes += 1
        state.record_usage(
            completion.usage,
            self.settings.input_cost_per_token,
            self.settings.output_cost_per_token,
        )
        return completion

    def _trace(self, state: RunState, step: PlannedStep, source: str, reason: str = "") -> None:
        state.planner_trace.append(
            {
                "step": state.steps_used,
                "objective": step.objective,
                "decision": step.kind,
                "source": source,
                "reason": reason,
            }
        )

    def validate(self, step: PlannedStep, state: RunState) -> str:
        if step.kind in NEEDS_EVIDENCE and not state.evidence:
            return f"{step.kind}_without_evidence"
        return ""

    def fallback(self, state: RunState, reason: str) -> PlannedStep:
        """Deterministic next step; always valid for the current state."""
        needs_search = not state.evidence or (state.revision_count > 0 and state.retrieval_since_revision == 0)
        if needs_search:
            step: PlannedStep = SearchStep(
                kind="search",
                objective="Locate nodes that mention the question's key terms.",
                reasoning=f"Fallback after {reason}.",
                params=SearchParams(query=self._fallback_query(state)),
            )
        elif state.steps and state.steps[-1]["step_kind"] != "self_check" and (
            state.last_confidence < self.settings.confidence_threshold
        ):
            step = SelfCheckStep(
                kind="self_check",
                objective="Check whether the gathered evidence covers the question.",
                reasoning=f"Fallback after {reason}; evidence confidence is low.",
            )
        else:
            step = FinishStep(
                kind="finish",
                objective="Answer from the gathered evidence.",
                reasoning=f"Fallback after {reason}.",
            )
        self._trace(state, step, "fallback", reason)
        return step

    def _fallback_query(self, state: RunState) -> str:
        terms = salient_terms(state.query)
        if state.revision_count > 0 and state.quality is not None and state.quality.missing_terms:
            return " ".join(dedupe(state.quality.missing_terms + terms))
        attempt = state.search_attempts
        if attempt == 0 or not terms:
            return state.query
        if attempt == 1:
            return " ".join(terms)
        return terms[(attempt - 2) % len(terms)]

    async def next_step(self, state: RunState, history: Sequence[Dict[str, Any]]) -> PlannedStep:
        # Keep one provider call in reserve for the synthesis that ends the phase.
        if not state.can_call_provider(reserve=1):
            return self.fallback(state, "call_budget")
        prompt = self.build_plan_prompt(state, history)
        try:
            completion = await self._call(state, prompt, self.settings.planner_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("run %s planner call timed out", state.run_id)
            return self.fallback(state, "provider_timeout")
        except ProviderError as exc:
            logger.warning("run %s planner call failed: %s", state.run_id, exc)
            return self.fallback(state, "provider_error")
        step, reason = parse_planned_step(completion.text)
        if step is None:
            logger.info("run %s planner output rejected: %s", state.run_id, reason)
            return self.fallback(state, reason)
        reason = self.validate(step, state)
        if reason:
            logger.info("run %s planner step rejected: %s", state.run_id, reason)
            return self.fallback(state, reason)
        self._trace(state, step, "model")
        return step

    async def synthesize(self, state: RunState, steps: Sequence[Dict[str, Any]]) -> CandidateAnswer:
        if not state.evidence or not state.can_call_provider():
            return insufficient_evidence_answer()
        prompt = self.build_synthesis_prompt(state)
        try:
            completion = await self._call(state, prompt, self.settings.synthesis_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("run %s synthesis timed out after %d steps", state.run_id, len(steps))
            return insufficient_evidence_answer()
        except ProviderError as exc:
            logger.warning("run %s synthesis failed: %s", state.run_id, exc)
            return insufficient_evidence_answer()
        candidate = parse_candidate_answer(completion.text, list(state.evidence.keys()))
        if candidate is None:
            logger.info("run %s synthesis output malformed", state.run_id)
            return insufficient_evidence_answer()
        return candidate
