import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


class Database:
    """Run, step, answer and event storage.

    Every write goes through a single lock so that concurrent runs never
    interleave a read-modify-write (step indices, event sequence numbers).
    """

    def __init__(self, path: str):
        self.path = path
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS runs(
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    document_id TEXT,
                    query TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    status TEXT NOT NULL,
                    max_steps INTEGER,
                    started_at TEXT,
                    ended_at TEXT,
                    total_latency_ms INTEGER,
                    token_usage_json TEXT,
                    cost_usd REAL
                );
                CREATE TABLE IF NOT EXISTS steps(
                    run_id TEXT NOT NULL,
                    idx INTEGER NOT NULL,
                    step_kind TEXT NOT NULL,
                    objective TEXT,
                    reasoning TEXT,
                    action_json TEXT,
                    observation TEXT,
                    node_refs_json TEXT,
                    confidence REAL,
                    latency_ms INTEGER,
                    status TEXT,
                    created_at TEXT,
                    PRIMARY KEY(run_id, idx)
                );
                CREATE TABLE IF NOT EXISTS answers(
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL UNIQUE,
                    answer_markdown TEXT,
                    citations_json TEXT,
                    confidence REAL,
                    grounded INTEGER,
                    quality_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_run_seq ON events(run_id, seq);
                CREATE INDEX IF NOT EXISTS idx_runs_project ON runs(project_id, started_at);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            # Columns added after the first schema revision.
            await ensure_column("runs", "error_code", "TEXT")
            await ensure_column("runs", "error_message", "TEXT")
            await ensure_column("runs", "retryable", "INTEGER DEFAULT 0")
            await ensure_column("runs", "revision_count", "INTEGER DEFAULT 0")
            await ensure_column("runs", "quality_json", "TEXT")
            await ensure_column("runs", "planner_trace_json", "TEXT")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with self._write_lock:
            async with aiosqlite.connect(self.path) as db:
                await db.execute(query, params)
                await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def insert_run(
        self,
        run_id: str,
        project_id: str,
        query: str,
        *,
        document_id: Optional[str] = None,
        max_steps: Optional[int] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO runs(id, project_id, document_id, query, phase, status, max_steps, started_at, "
            "token_usage_json, cost_usd, revision_count) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (
                run_id,
                project_id,
                document_id,
                query,
                "planning",
                "running",
                max_steps,
                utc_now(),
                json.dumps({}),
                0.0,
                0,
            ),
        )

    async def update_run_phase(self, run_id: str, phase: str) -> None:
        await self.execute(
            "UPDATE runs SET phase=? WHERE id=? AND status='running'",
            (phase, run_id),
        )

    async def update_run_progress(
        self,
        run_id: str,
        *,
        token_usage: Dict[str, int],
        cost_usd: float,
        planner_trace: List[dict],
        revision_count: int,
        quality: Optional[dict] = None,
    ) -> None:
        await self.execute(
            "UPDATE runs SET token_usage_json=?, cost_usd=?, planner_trace_json=?, revision_count=?, "
            "quality_json=COALESCE(?, quality_json) WHERE id=? AND status='running'",
            (
                json.dumps(token_usage),
                cost_usd,
                json.dumps(planner_trace),
                revision_count,
                json.dumps(quality) if quality is not None else None,
                run_id,
            ),
        )

    async def add_step(
        self,
        run_id: str,
        *,
        step_kind: str,
        objective: str,
        reasoning: str,
        action: dict,
        observation: str,
        node_refs: List[str],
        confidence: float,
        latency_ms: int,
        status: str = "ok",
    ) -> dict:
        created_at = utc_now()
        async with self._write_lock:
            async with aiosqlite.connect(self.path) as db:
                cursor = await db.execute(
                    "SELECT COALESCE(MAX(idx), -1) + 1 FROM steps WHERE run_id=?", (run_id,)
                )
                row = await cursor.fetchone()
                await cursor.close()
                idx = int(row[0]) if row else 0
                await db.execute(
                    "INSERT INTO steps(run_id, idx, step_kind, objective, reasoning, action_json, observation, "
                    "node_refs_json, confidence, latency_ms, status, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        run_id,
                        idx,
                        step_kind,
                        objective,
                        reasoning,
                        json.dumps(action),
                        observation,
                        json.dumps(node_refs),
                        confidence,
                        latency_ms,
                        status,
                        created_at,
                    ),
                )
                await db.commit()
        return {
            "run_id": run_id,
            "idx": idx,
            "step_kind": step_kind,
            "objective": objective,
            "reasoning": reasoning,
            "action": action,
            "observation": observation,
            "node_refs": list(node_refs),
            "confidence": confidence,
            "latency_ms": latency_ms,
            "status": status,
            "created_at": created_at,
        }

    async def finish_run(
        self,
        run_id: str,
        *,
        phase: str,
        status: str,
        total_latency_ms: int,
        token_usage: Dict[str, int],
        cost_usd: float,
        planner_trace: List[dict],
        revision_count: int,
        quality: Optional[dict] = None,
        error: Optional[dict] = None,
        answer: Optional[dict] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Write the terminal run row and the optional answer in one transaction.

        Returns (updated, stored_answer). A run that already left the running
        status is left untouched and reports updated=False.
        """
        ended_at = utc_now()
        stored_answer: Optional[dict] = None
        async with self._write_lock:
            async with aiosqlite.connect(self.path) as db:
                cursor = await db.execute(
                    "UPDATE runs SET phase=?, status=?, ended_at=?, total_latency_ms=?, token_usage_json=?, "
                    "cost_usd=?, planner_trace_json=?, revision_count=?, quality_json=?, error_code=?, "
                    "error_message=?, retryable=? WHERE id=? AND status='running'",
                    (
                        phase,
                        status,
                        ended_at,
                        total_latency_ms,
                        json.dumps(token_usage),
                        cost_usd,
                        json.dumps(planner_trace),
                        revision_count,
                        json.dumps(quality) if quality is not None else None,
                        (error or {}).get("code"),
                        (error or {}).get("message"),
                        1 if (error or {}).get("retryable") else 0,
                        run_id,
                    ),
                )
                updated = cursor.rowcount
                await cursor.close()
                if updated and answer is not None:
                    stored_answer = {
                        "id": uuid.uuid4().hex,
                        "run_id": run_id,
                        "answer_markdown": answer["answer_markdown"],
                        "citations": list(answer.get("citations") or []),
                        "confidence": float(answer.get("confidence") or 0.0),
                        "grounded": bool(answer.get("grounded")),
                        "quality": answer.get("quality"),
                        "created_at": ended_at,
                    }
                    await db.execute(
                        "INSERT INTO answers(id, run_id, answer_markdown, citations_json, confidence, grounded, "
                        "quality_json, created_at) VALUES (?,?,?,?,?,?,?,?)",
                        (
                            stored_answer["id"],
                            run_id,
                            stored_answer["answer_markdown"],
                            json.dumps(stored_answer["citations"]),
                            stored_answer["confidence"],
                            1 if stored_answer["grounded"] else 0,
                            json.dumps(stored_answer["quality"]) if stored_answer["quality"] is not None else None,
                            ended_at,
                        ),
                    )
                await db.commit()
        return bool(updated), stored_answer

    async def get_run(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, project_id, document_id, query, phase, status, max_steps, started_at, ended_at, "
            "total_latency_ms, token_usage_json, cost_usd, error_code, error_message, retryable, revision_count, "
            "quality_json, planner_trace_json FROM runs WHERE id=?",
            (run_id,),
        )
        if not row:
            return None
        error = None
        if row["error_code"]:
            error = {
                "code": row["error_code"],
                "message": row["error_message"] or "",
                "retryable": bool(row["retryable"]),
            }
        return {
            "id": row["id"],
            "project_id": row["project_id"],
            "document_id": row["document_id"],
            "query": row["query"],
            "phase": row["phase"],
            "status": row["status"],
            "max_steps": row["max_steps"],
            "started_at": row["started_at"],
            "ended_at": row["ended_at"],
            "total_latency_ms": row["total_latency_ms"],
            "token_usage": _loads(row["token_usage_json"], {}),
            "cost_usd": row["cost_usd"] or 0.0,
            "error": error,
            "revision_count": row["revision_count"] or 0,
            "quality": _loads(row["quality_json"], None),
            "planner_trace": _loads(row["planner_trace_json"], []),
        }

    async def list_steps(self, run_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT run_id, idx, step_kind, objective, reasoning, action_json, observation, node_refs_json, "
            "confidence, latency_ms, status, created_at FROM steps WHERE run_id=? ORDER BY idx ASC",
            (run_id,),
        )
        return [
            {
                "run_id": row["run_id"],
                "idx": row["idx"],
                "step_kind": row["step_kind"],
                "objective": row["objective"] or "",
                "reasoning": row["reasoning"] or "",
                "action": _loads(row["action_json"], {}),
                "observation": row["observation"] or "",
                "node_refs": _loads(row["node_refs_json"], []),
                "confidence": row["confidence"] or 0.0,
                "latency_ms": row["latency_ms"] or 0,
                "status": row["status"] or "ok",
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def get_answer(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, run_id, answer_markdown, citations_json, confidence, grounded, quality_json, created_at "
            "FROM answers WHERE run_id=?",
            (run_id,),
        )
        if not row:
            return None
        return {
            "id": row["id"],
            "run_id": row["run_id"],
            "answer_markdown": row["answer_markdown"] or "",
            "citations": _loads(row["citations_json"], []),
            "confidence": row["confidence"] or 0.0,
            "grounded": bool(row["grounded"]),
            "quality": _loads(row["quality_json"], None),
            "created_at": row["created_at"],
        }

    async def snapshot(self, run_id: str) -> Optional[dict]:
        run = await self.get_run(run_id)
        if not run:
            return None
        steps = await self.list_steps(run_id)
        answer = await self.get_answer(run_id)
        return {"run": run, "steps": steps, "answer": answer}

    async def list_runs(self, project_id: Optional[str] = None, limit: int = 50) -> List[dict]:
        if project_id:
            rows = await self.fetchall(
                "SELECT id, project_id, query, phase, status, started_at, ended_at FROM runs "
                "WHERE project_id=? ORDER BY started_at DESC LIMIT ?",
                (project_id, limit),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, project_id, query, phase, status, started_at, ended_at FROM runs "
                "ORDER BY started_at DESC LIMIT ?",
                (limit,),
            )
        return [dict(row) for row in rows]

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        async with self._write_lock:
            async with aiosqlite.connect(self.path) as db:
                cursor = await db.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM events WHERE run_id=?", (run_id,)
                )
                row = await cursor.fetchone()
                await cursor.close()
                seq = int(row[0]) if row else 1
                await db.execute(
                    "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                    (run_id, seq, event_type, json.dumps(payload), created_at),
                )
                await db.commit()
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def fail_orphaned_runs(self) -> int:
        """Mark runs left running by a previous process as failed."""
        async with self._write_lock:
            async with aiosqlite.connect(self.path) as db:
                cursor = await db.execute(
                    "UPDATE runs SET phase='failed', status='failed', ended_at=?, error_code='cancelled', "
                    "error_message='Run interrupted by restart.', retryable=0 WHERE status='running'",
                    (utc_now(),),
                )
                count = cursor.rowcount
                await cursor.close()
                await db.commit()
        return count
