import re
from typing import Dict, Iterable, List, Optional, Sequence

from .config import AppSettings
from .query_scope import requires_project_scope
from .schemas import NodeDetail, QualityMetrics
from .terms import salient_terms

_CITATION_MARK_RE = re.compile(r"\[(?:citation:)?[\w\-:.]+\]")
_MARKDOWN_RE = re.compile(r"[*_#>`|]")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_LIST_MARKER_RE = re.compile(r"^(?:[-+]|\d+[.)])\s+")
MAX_REPORTED_CLAIMS = 5


def split_claims(answer_markdown: str) -> List[str]:
    text = _CITATION_MARK_RE.sub(" ", answer_markdown)
    text = _MARKDOWN_RE.sub(" ", text)
    claims = []
    for line in text.splitlines():
        line = _LIST_MARKER_RE.sub("", line.strip())
        for piece in _SENTENCE_RE.split(line):
            cleaned = " ".join(piece.split())
            if cleaned:
                claims.append(cleaned)
    return claims


def _claim_supported(terms: Sequence[str], sources: Iterable[str], ratio: float) -> bool:
    needed = max(1, int(round(len(terms) * ratio + 1e-9)))
    for source in sources:
        hits = sum(1 for term in terms if term in source)
        if hits >= needed:
            return True
    return False


def evaluate(
    query: str,
    answer_markdown: str,
    citations: Sequence[str],
    evidence: Dict[str, NodeDetail],
    *,
    alignment_weight: float = 0.4,
    citation_weight: float = 0.4,
    cross_document_weight: float = 0.2,
    claim_support_ratio: float = 0.5,
) -> QualityMetrics:
    """Score an answer against the query and the evidence observed in its run."""
    answer_lower = answer_markdown.lower()

    query_terms = salient_terms(query)
    matched = [term for term in query_terms if term in answer_lower]
    missing = [term for term in query_terms if term not in answer_lower]
    alignment = len(matched) / len(query_terms) if query_terms else 0.0

    valid = [node_id for node_id in citations if node_id in evidence]
    grounding_failure = not citations or not valid

    sources = [
        f"{evidence[node_id].title or ''} {evidence[node_id].text}".lower() for node_id in valid
    ]
    supported = 0
    counted = 0
    unsupported: List[str] = []
    for claim in split_claims(answer_markdown):
        terms = salient_terms(claim)
        if not terms:
            continue
        counted += 1
        if _claim_supported(terms, sources, claim_support_ratio):
            supported += 1
        elif len(unsupported) < MAX_REPORTED_CLAIMS:
            unsupported.append(claim[:160])
    citation_coverage = supported / counted if counted else 0.0

    documents = {node.document_id for node in evidence.values()}
    if len(documents) >= 2:
        cited_documents = {evidence[node_id].document_id for node_id in valid}
        cross_document = len(cited_documents & documents) / len(documents)
    else:
        cross_document = 1.0

    weight_total = alignment_weight + citation_weight + cross_document_weight
    if grounding_failure or weight_total <= 0:
        composite = 0.0
    else:
        composite = (
            alignment * alignment_weight
            + citation_coverage * citation_weight
            + cross_document * cross_document_weight
        ) / weight_total

    return QualityMetrics(
        query_alignment=round(alignment, 4),
        citation_coverage=round(citation_coverage, 4),
        cross_document_coverage=round(cross_document, 4),
        grounding_failure=grounding_failure,
        composite=round(composite, 4),
        missing_terms=missing,
        unsupported_claims=unsupported,
    )


def revision_gaps(metrics: QualityMetrics) -> List[str]:
    gaps: List[str] = []
    if metrics.grounding_failure:
        gaps.append("The answer cited no observed evidence node; cite the node ids you rely on.")
    if metrics.missing_terms:
        gaps.append("Not addressed: " + ", ".join(metrics.missing_terms))
    for claim in metrics.unsupported_claims:
        gaps.append(f"Unsupported claim: {claim}")
    if metrics.cross_document_coverage < 1.0:
        gaps.append("Cover every document in scope, not only one of them.")
    return gaps


class Evaluator:
    """Deterministic quality gate configured from settings."""

    def __init__(self, settings: AppSettings):
        self.settings = settings

    def evaluate(
        self,
        query: str,
        answer_markdown: str,
        citations: Sequence[str],
        evidence: Dict[str, NodeDetail],
    ) -> QualityMetrics:
        return evaluate(
            query,
            answer_markdown,
            citations,
            evidence,
            alignment_weight=self.settings.alignment_weight,
            citation_weight=self.settings.citation_weight,
            cross_document_weight=self.settings.cross_document_weight,
            claim_support_ratio=self.settings.claim_support_ratio,
        )

    def threshold_for(self, query: str, focus_document_id: Optional[str] = None) -> float:
        if focus_document_id is None and requires_project_scope(query):
            return self.settings.relation_acceptance_threshold
        return self.settings.acceptance_threshold

    def accepts(self, metrics: QualityMetrics, threshold: float) -> bool:
        return not metrics.grounding_failure and metrics.composite >= threshold
