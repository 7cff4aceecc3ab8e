from pathlib import Path

import pytest

from reasoner.repository import SqliteNodeRepository, ordinal_key, search_terms
from reasoner.schemas import NodeScope


def _node(node_id, parent_id, node_type, ordinal_path, text="", title=None):
    return {
        "id": node_id,
        "parent_id": parent_id,
        "node_type": node_type,
        "ordinal_path": ordinal_path,
        "text": text,
        "title": title,
    }


async def _repository(tmp_path: Path) -> SqliteNodeRepository:
    repo = SqliteNodeRepository(str(tmp_path / "nodes.db"))
    await repo.init()
    await repo.load_document(
        "p1",
        {"id": "d1", "name": "annual-report.pdf", "mime": "application/pdf", "pages": 12},
        [
            _node("d1-root", None, "document", "", title="Annual Report"),
            _node("d1-s1", "d1-root", "section", "1", "Revenue overview.", title="Revenue"),
            _node("d1-p1", "d1-s1", "paragraph", "1.1", "Revenue grew 15%."),
            _node("d1-p2", "d1-s1", "paragraph", "1.2", "Revenue in Europe was flat."),
            _node("d1-p3", "d1-s1", "paragraph", "1.10", "Costs were flat."),
        ],
    )
    await repo.load_document(
        "p1",
        {"id": "d2", "name": "q2-update.pdf"},
        [
            _node("d2-root", None, "document", "", title="Quarterly Update"),
            _node("d2-p1", "d2-root", "paragraph", "1", "Revenue reached 12 million."),
            _node("d2-p2", "d2-root", "paragraph", "2", "Revenue guidance raised."),
            _node("d2-p3", "d2-root", "paragraph", "3", "Revenue mix shifted."),
        ],
    )
    await repo.load_document(
        "p2",
        {"id": "d3", "name": "other.pdf"},
        [_node("d3-root", None, "document", "", title="Other project revenue")],
    )
    return repo


def test_ordinal_key_compares_numerically():
    assert ordinal_key("1.10") > ordinal_key("1.2")
    assert ordinal_key("") == (0,)
    assert search_terms("Revenue, revenue & Q4!") == ["revenue", "q4"]


@pytest.mark.asyncio
async def test_search_ranks_title_hits_then_ordinal_path(tmp_path: Path):
    repo = await _repository(tmp_path)
    hits = await repo.search(NodeScope(project_id="p1"), "revenue", limit=8)
    assert [hit.id for hit in hits] == ["d1-s1", "d2-p1", "d1-p1", "d1-p2", "d2-p2", "d2-p3"]
    assert hits[0].title == "Revenue"
    assert hits[2].snippet == "Revenue grew 15%."


@pytest.mark.asyncio
async def test_search_spreads_results_across_documents(tmp_path: Path):
    repo = await _repository(tmp_path)
    hits = await repo.search(NodeScope(project_id="p1"), "revenue", limit=4)
    assert [hit.id for hit in hits] == ["d1-s1", "d2-p1", "d1-p1", "d2-p2"]


@pytest.mark.asyncio
async def test_search_respects_document_and_project_scope(tmp_path: Path):
    repo = await _repository(tmp_path)
    focused = await repo.search(NodeScope(project_id="p1", document_ids=["d1"]), "revenue", limit=8)
    assert [hit.id for hit in focused] == ["d1-s1", "d1-p1", "d1-p2"]
    other = await repo.search(NodeScope(project_id="p2"), "revenue", limit=8)
    assert [hit.id for hit in other] == ["d3-root"]
    assert await repo.search(NodeScope(project_id="p1"), "?!", limit=8) == []


@pytest.mark.asyncio
async def test_get_node_and_neighbors(tmp_path: Path):
    repo = await _repository(tmp_path)
    node = await repo.get_node("d1-p1")
    assert node is not None
    assert node.document_id == "d1"
    assert node.parent_id == "d1-s1"
    assert await repo.get_node("missing") is None

    children = await repo.get_neighbors("d1-s1", "children")
    assert [item.id for item in children] == ["d1-p1", "d1-p2", "d1-p3"]
    siblings = await repo.get_neighbors("d1-p2", "siblings")
    assert [item.id for item in siblings] == ["d1-p1", "d1-p3"]
    parent = await repo.get_neighbors("d1-p1", "parent")
    assert [item.id for item in parent] == ["d1-s1"]
    assert await repo.get_neighbors("d1-root", "parent") == []
    assert await repo.get_neighbors("missing", "children") == []


@pytest.mark.asyncio
async def test_list_roots_for_project_and_empty_scope(tmp_path: Path):
    repo = await _repository(tmp_path)
    roots = await repo.list_roots(NodeScope(project_id="p1"))
    assert [item.id for item in roots] == ["d1-root", "d2-root", "d1-s1"]
    assert await repo.list_roots(NodeScope(project_id="nothing-here")) == []
    limited = await repo.list_roots(NodeScope(project_id="p1", document_ids=["d2"]), limit=1)
    assert [item.id for item in limited] == ["d2-root"]


@pytest.mark.asyncio
async def test_question_filler_words_do_not_match(tmp_path: Path):
    repo = await _repository(tmp_path)
    assert search_terms("What is the dividend policy?") == ["dividend", "policy"]
    assert await repo.search(NodeScope(project_id="p1"), "What is the dividend policy?", limit=8) == []
    hits = await repo.search(NodeScope(project_id="p1"), "What was the revenue in Europe?", limit=8)
    assert [hit.id for hit in hits][:2] == ["d1-s1", "d1-p2"]
