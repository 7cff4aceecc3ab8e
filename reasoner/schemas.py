from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel


RunPhase = Literal["planning", "retrieval", "synthesis", "validation", "completed", "failed"]
RunStatus = Literal["running", "completed", "failed"]
StepKind = Literal["search", "inspect", "expand_neighbors", "synthesize", "self_check", "finish"]
Direction = Literal["parent", "children", "siblings"]
ErrorCode = Literal["provider_error", "retrieval_empty", "quality_rejected", "cancelled"]

TERMINAL_PHASES = {"completed", "failed"}
RETRIEVAL_KINDS = {"search", "inspect", "expand_neighbors"}
CLOSING_KINDS = {"synthesize", "finish"}


class CamelModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class NodeScope(BaseModel):
    project_id: str
    document_ids: List[str] = Field(default_factory=list)


class NodeSummary(BaseModel):
    id: str
    document_id: str
    parent_id: Optional[str] = None
    node_type: str = "unknown"
    title: Optional[str] = None
    snippet: str = ""
    ordinal_path: str = ""

    def as_detail(self) -> "NodeDetail":
        return NodeDetail(
            id=self.id,
            document_id=self.document_id,
            parent_id=self.parent_id,
            node_type=self.node_type,
            title=self.title,
            text=self.snippet,
            ordinal_path=self.ordinal_path,
        )


class NodeDetail(BaseModel):
    id: str
    document_id: str
    parent_id: Optional[str] = None
    node_type: str = "unknown"
    title: Optional[str] = None
    text: str = ""
    ordinal_path: str = ""
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def summary(self, snippet_chars: int = 240) -> NodeSummary:
        return NodeSummary(
            id=self.id,
            document_id=self.document_id,
            parent_id=self.parent_id,
            node_type=self.node_type,
            title=self.title,
            snippet=self.text[:snippet_chars],
            ordinal_path=self.ordinal_path,
        )


class SearchParams(BaseModel):
    query: str = Field(min_length=1)
    scope: List[str] = Field(default_factory=list)


class NodeParams(BaseModel):
    node_id: str = Field(min_length=1)


class NeighborParams(BaseModel):
    node_id: str = Field(min_length=1)
    direction: Direction = "children"


class NoParams(BaseModel):
    model_config = {"extra": "allow"}


class _PlannedStepBase(BaseModel):
    objective: str = ""
    reasoning: str = ""
    stop: bool = False


class SearchStep(_PlannedStepBase):
    kind: Literal["search"]
    params: SearchParams


class InspectStep(_PlannedStepBase):
    kind: Literal["inspect"]
    params: NodeParams


class ExpandNeighborsStep(_PlannedStepBase):
    kind: Literal["expand_neighbors"]
    params: NeighborParams


class SynthesizeStep(_PlannedStepBase):
    kind: Literal["synthesize"]
    params: NoParams = Field(default_factory=NoParams)


class SelfCheckStep(_PlannedStepBase):
    kind: Literal["self_check"]
    params: NoParams = Field(default_factory=NoParams)


class FinishStep(_PlannedStepBase):
    kind: Literal["finish"]
    params: NoParams = Field(default_factory=NoParams)


PlannedStep = Annotated[
    Union[SearchStep, InspectStep, ExpandNeighborsStep, SynthesizeStep, SelfCheckStep, FinishStep],
    Field(discriminator="kind"),
]
PLANNED_STEP_ADAPTER: TypeAdapter = TypeAdapter(PlannedStep)


class Observation(BaseModel):
    """Result of executing one planned step, before it is persisted."""

    text: str
    node_refs: List[str] = Field(default_factory=list)
    nodes: List[NodeDetail] = Field(default_factory=list)
    confidence: float = 0.0
    ok: bool = True


class QualityMetrics(BaseModel):
    query_alignment: float = 0.0
    citation_coverage: float = 0.0
    cross_document_coverage: float = 1.0
    grounding_failure: bool = True
    composite: float = 0.0
    missing_terms: List[str] = Field(default_factory=list)
    unsupported_claims: List[str] = Field(default_factory=list)


class CandidateAnswer(BaseModel):
    answer_markdown: str
    citations: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    fallback: bool = False


class RunQueryRequest(CamelModel):
    project_id: str
    query: str
    max_steps: Optional[int] = Field(default=None, ge=1, le=50)
    focus_document_id: Optional[str] = None


class StepEvent(CamelModel):
    run_id: str
    step_index: int
    step_kind: StepKind
    objective: str
    reasoning: str
    action: Dict[str, Any]
    observation: str
    node_refs: List[str]
    confidence: float
    latency_ms: int


class CompleteEvent(CamelModel):
    run_id: str
    answer_id: str
    final_confidence: float
    quality_score: float
    total_latency_ms: int
    token_usage: Dict[str, int]
    cost_usd: float


class ErrorEvent(CamelModel):
    run_id: str
    code: ErrorCode
    message: str
    retryable: bool = False
