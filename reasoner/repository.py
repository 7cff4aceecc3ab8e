import json
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import aiosqlite

from .schemas import NodeDetail, NodeScope, NodeSummary
from .terms import salient_terms

SNIPPET_CHARS = 240
ROOT_TYPES = ("document", "section")


class NodeRepository(Protocol):
    """Read-only query surface over the parsed document tree.

    Implementations must be safe to call concurrently and return empty
    results (or None) for missing data instead of raising.
    """

    async def search(self, scope: NodeScope, text: str, limit: int = 8) -> List[NodeSummary]:
        ...

    async def get_node(self, node_id: str) -> Optional[NodeDetail]:
        ...

    async def get_neighbors(self, node_id: str, direction: str) -> List[NodeSummary]:
        ...

    async def list_roots(self, scope: NodeScope, limit: int = 8) -> List[NodeSummary]:
        ...


def ordinal_key(path: str) -> Tuple[int, ...]:
    parts: List[int] = []
    for piece in (path or "").split("."):
        piece = piece.strip()
        parts.append(int(piece) if piece.isdigit() else 0)
    return tuple(parts)


def search_terms(text: str) -> List[str]:
    """Query words worth matching; stopwords and short filler words never count."""
    return salient_terms(text)


def rank_matches(
    candidates: Iterable[NodeDetail],
    terms: Sequence[str],
    limit: int,
    per_document_cap: Optional[int] = None,
) -> List[NodeSummary]:
    """Order candidates by term hits, then ordinal path, then id."""
    scored: List[Tuple[int, Tuple[int, ...], str, NodeDetail]] = []
    for node in candidates:
        title = (node.title or "").lower()
        body = node.text.lower()
        score = 0
        for term in terms:
            if term in title:
                score += 2
            if term in body:
                score += 1
        if score > 0:
            scored.append((-score, ordinal_key(node.ordinal_path), node.id, node))
    scored.sort(key=lambda item: (item[0], item[1], item[2]))
    results: List[NodeSummary] = []
    per_doc: Dict[str, int] = {}
    for _, _, _, node in scored:
        if per_document_cap is not None:
            used = per_doc.get(node.document_id, 0)
            if used >= per_document_cap:
                continue
            per_doc[node.document_id] = used + 1
        results.append(node.summary(SNIPPET_CHARS))
        if len(results) >= limit:
            break
    return results


class SqliteNodeRepository:
    """NodeRepository backed by the ``documents`` and ``doc_nodes`` tables."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS documents(
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    name TEXT,
                    mime TEXT,
                    pages INTEGER,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS doc_nodes(
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    parent_id TEXT,
                    node_type TEXT NOT NULL,
                    title TEXT,
                    text TEXT,
                    page_start INTEGER,
                    page_end INTEGER,
                    metadata_json TEXT,
                    ordinal_path TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_doc_nodes_document ON doc_nodes(document_id);
                CREATE INDEX IF NOT EXISTS idx_doc_nodes_parent ON doc_nodes(parent_id);
                CREATE INDEX IF NOT EXISTS idx_documents_project ON documents(project_id);
                """
            )
            await db.commit()

    async def _fetch(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    @staticmethod
    def _row_to_detail(row: aiosqlite.Row) -> NodeDetail:
        metadata: Dict[str, Any] = {}
        if row["metadata_json"]:
            try:
                metadata = json.loads(row["metadata_json"])
            except ValueError:
                metadata = {}
        return NodeDetail(
            id=row["id"],
            document_id=row["document_id"],
            parent_id=row["parent_id"],
            node_type=row["node_type"] or "unknown",
            title=row["title"],
            text=row["text"] or "",
            ordinal_path=row["ordinal_path"] or "",
            page_start=row["page_start"],
            page_end=row["page_end"],
            metadata=metadata,
        )

    def _scope_clause(self, scope: NodeScope) -> Tuple[str, Tuple[Any, ...]]:
        if scope.document_ids:
            marks = ",".join("?" for _ in scope.document_ids)
            return (
                f"n.document_id IN ({marks}) AND d.project_id=?",
                tuple(scope.document_ids) + (scope.project_id,),
            )
        return "d.project_id=?", (scope.project_id,)

    async def search(self, scope: NodeScope, text: str, limit: int = 8) -> List[NodeSummary]:
        terms = search_terms(text)
        if not terms:
            return []
        where, params = self._scope_clause(scope)
        likes = " OR ".join("LOWER(COALESCE(n.title,'') || ' ' || COALESCE(n.text,'')) LIKE ?" for _ in terms)
        rows = await self._fetch(
            "SELECT n.* FROM doc_nodes n JOIN documents d ON d.id = n.document_id "
            f"WHERE {where} AND ({likes})",
            params + tuple(f"%{term}%" for term in terms),
        )
        candidates = [self._row_to_detail(row) for row in rows]
        cap = None if len(scope.document_ids) == 1 else max(limit // 2, 2)
        return rank_matches(candidates, terms, limit, per_document_cap=cap)

    async def get_node(self, node_id: str) -> Optional[NodeDetail]:
        rows = await self._fetch("SELECT * FROM doc_nodes WHERE id=?", (node_id,))
        if not rows:
            return None
        return self._row_to_detail(rows[0])

    async def get_neighbors(self, node_id: str, direction: str) -> List[NodeSummary]:
        node = await self.get_node(node_id)
        if node is None:
            return []
        if direction == "parent":
            if not node.parent_id:
                return []
            parent = await self.get_node(node.parent_id)
            return [parent.summary(SNIPPET_CHARS)] if parent else []
        if direction == "children":
            rows = await self._fetch("SELECT * FROM doc_nodes WHERE parent_id=?", (node_id,))
        elif direction == "siblings":
            if node.parent_id:
                rows = await self._fetch(
                    "SELECT * FROM doc_nodes WHERE parent_id=? AND id<>?", (node.parent_id, node_id)
                )
            else:
                rows = await self._fetch(
                    "SELECT * FROM doc_nodes WHERE document_id=? AND parent_id IS NULL AND id<>?",
                    (node.document_id, node_id),
                )
        else:
            return []
        nodes = [self._row_to_detail(row) for row in rows]
        nodes.sort(key=lambda item: (ordinal_key(item.ordinal_path), item.id))
        return [item.summary(SNIPPET_CHARS) for item in nodes]

    async def list_roots(self, scope: NodeScope, limit: int = 8) -> List[NodeSummary]:
        where, params = self._scope_clause(scope)
        rows = await self._fetch(
            "SELECT n.* FROM doc_nodes n JOIN documents d ON d.id = n.document_id "
            f"WHERE {where} AND (n.parent_id IS NULL OR n.node_type IN (?, ?))",
            params + ROOT_TYPES,
        )
        nodes = [self._row_to_detail(row) for row in rows]
        nodes.sort(key=lambda item: (ordinal_key(item.ordinal_path), item.id))
        return [item.summary(SNIPPET_CHARS) for item in nodes[:limit]]

    async def load_document(
        self,
        project_id: str,
        document: Dict[str, Any],
        nodes: Sequence[Dict[str, Any]],
    ) -> None:
        """Store an already-parsed document tree."""
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO documents(id, project_id, name, mime, pages, created_at) VALUES (?,?,?,?,?,?)",
                (
                    document["id"],
                    project_id,
                    document.get("name"),
                    document.get("mime"),
                    document.get("pages"),
                    document.get("created_at"),
                ),
            )
            for node in nodes:
                await db.execute(
                    "INSERT OR REPLACE INTO doc_nodes(id, document_id, parent_id, node_type, title, text, "
                    "page_start, page_end, metadata_json, ordinal_path) VALUES (?,?,?,?,?,?,?,?,?,?)",
                    (
                        node["id"],
                        document["id"],
                        node.get("parent_id"),
                        node.get("node_type", "paragraph"),
                        node.get("title"),
                        node.get("text", ""),
                        node.get("page_start"),
                        node.get("page_end"),
                        json.dumps(node.get("metadata") or {}),
                        node.get("ordinal_path", ""),
                    ),
                )
            await db.commit()
