import asyncio

import pytest

from reasoner.actions import RetrievalActionExecutor, search_confidence
from reasoner.errors import RetrievalEmpty, RunCancelled
from reasoner.schemas import (
    ExpandNeighborsStep,
    FinishStep,
    InspectStep,
    NeighborParams,
    NodeDetail,
    NodeParams,
    SearchParams,
    SearchStep,
    SelfCheckStep,
)
from reasoner.state import RunState
from tests.conftest import make_settings
from tests.fakes import FakeNodeRepository, annual_report_repository


def _state(project_id: str = "p1", **kwargs) -> RunState:
    return RunState(
        run_id="run-1",
        project_id=project_id,
        query="What was the revenue growth?",
        max_steps=6,
        max_revisions=1,
        **kwargs,
    )


def _search(query: str) -> SearchStep:
    return SearchStep(kind="search", objective="find", params=SearchParams(query=query))


@pytest.mark.asyncio
async def test_search_orders_ties_by_ordinal_path_then_id(tmp_path):
    repository = FakeNodeRepository()
    repository.add_document(
        "p1",
        "d1",
        [
            {"id": "a", "node_type": "paragraph", "text": "alpha", "ordinal_path": "10"},
            {"id": "d", "node_type": "paragraph", "text": "alpha", "ordinal_path": "2"},
            {"id": "b", "node_type": "paragraph", "text": "alpha", "ordinal_path": "2"},
            {"id": "c", "node_type": "paragraph", "text": "alpha beta", "ordinal_path": "3"},
        ],
    )
    executor = RetrievalActionExecutor(repository, make_settings(tmp_path))
    state = _state()
    observation = await executor.execute(_search("alpha beta"), state)
    assert observation.ok is True
    assert observation.node_refs == ["c", "b", "d", "a"]
    assert observation.confidence == search_confidence(4)
    assert state.search_attempts == 1


@pytest.mark.asyncio
async def test_search_without_hits_lists_scope_roots(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    observation = await executor.execute(_search("zebra"), _state())
    assert observation.node_refs == ["d1-root", "d1-s1", "d1-s2"]
    assert observation.confidence == 0.2
    assert "No matches for 'zebra'" in observation.text
    assert observation.nodes == []


@pytest.mark.asyncio
async def test_inspect_returns_full_node(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    step = InspectStep(kind="inspect", params=NodeParams(node_id="n-rev"))
    observation = await executor.execute(step, _state())
    assert observation.node_refs == ["n-rev"]
    assert observation.nodes[0].text.startswith("Revenue grew 15%")
    assert observation.confidence == 0.6


@pytest.mark.asyncio
async def test_inspect_unknown_node_is_a_failed_observation(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    step = InspectStep(kind="inspect", params=NodeParams(node_id="missing"))
    observation = await executor.execute(step, _state())
    assert observation.ok is False
    assert observation.confidence == 0.1
    assert observation.nodes == []


@pytest.mark.asyncio
async def test_expand_children_in_document_order(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    step = ExpandNeighborsStep(
        kind="expand_neighbors", params=NeighborParams(node_id="d1-s1", direction="children")
    )
    observation = await executor.execute(step, _state())
    assert observation.node_refs == ["n-rev", "n-cost"]
    assert observation.confidence == 0.5


@pytest.mark.asyncio
async def test_repository_error_becomes_failed_observation(tmp_path):
    repository = FakeNodeRepository(fail_with=RuntimeError("disk gone"))
    executor = RetrievalActionExecutor(repository, make_settings(tmp_path))
    observation = await executor.execute(_search("revenue"), _state())
    assert observation.ok is False
    assert observation.confidence == 0.0
    assert "disk gone" in observation.text


@pytest.mark.asyncio
async def test_repository_timeout_becomes_failed_observation(tmp_path):
    repository = annual_report_repository(delay_seconds=0.5)
    executor = RetrievalActionExecutor(repository, make_settings(tmp_path, repository_timeout_s=0.05))
    observation = await asyncio.wait_for(executor.execute(_search("revenue"), _state()), timeout=2)
    assert observation.ok is False
    assert "timed out" in observation.text


@pytest.mark.asyncio
async def test_cancelled_run_propagates(tmp_path):
    stop_event = asyncio.Event()
    stop_event.set()
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    with pytest.raises(RunCancelled):
        await executor.execute(_search("revenue"), _state(stop_event=stop_event))


@pytest.mark.asyncio
async def test_self_check_reports_missing_terms(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    state = _state()
    state.add_evidence([NodeDetail(id="n-rev", document_id="d1", text="Revenue grew 15% year-over-year.")])
    observation = await executor.execute(SelfCheckStep(kind="self_check"), state)
    assert observation.confidence == 0.45
    assert "Missing: growth." in observation.text


@pytest.mark.asyncio
async def test_closing_steps_are_not_executed_here(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    with pytest.raises(ValueError):
        await executor.execute(FinishStep(kind="finish"), _state())


@pytest.mark.asyncio
async def test_has_scope_is_false_for_empty_project(tmp_path):
    executor = RetrievalActionExecutor(annual_report_repository(), make_settings(tmp_path))
    assert await executor.has_scope(_state()) is True
    assert await executor.has_scope(_state(project_id="empty")) is False


@pytest.mark.asyncio
async def test_has_scope_timeout_is_a_retryable_retrieval_error(tmp_path):
    repository = annual_report_repository(delay_seconds=0.5)
    executor = RetrievalActionExecutor(repository, make_settings(tmp_path, repository_timeout_s=0.05))
    with pytest.raises(RetrievalEmpty) as excinfo:
        await asyncio.wait_for(executor.has_scope(_state()), timeout=2)
    assert excinfo.value.retryable is True
    assert "timed out" in excinfo.value.message
