"""SQLite implementation of the step record store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import PersistenceError
from .models import StepRecord, WorkflowRecord, merge_step_record, merge_workflow_record
from .store import StepRecordStore

_STEP_COLUMNS = (
    "step_index, session_id, log_handle_id, queue_cursor, chained_prompts, "
    "completed_chains, started_at, completed_at"
)


class SQLiteStepRecordStore(StepRecordStore):
    """Persist step records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                step_index INTEGER PRIMARY KEY,
                session_id TEXT,
                log_handle_id TEXT,
                queue_cursor INTEGER NOT NULL DEFAULT 0,
                chained_prompts TEXT,
                completed_chains TEXT,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"SQLite write failed: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"SQLite read failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"SQLite read failed: {exc}") from exc

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            step_index=row["step_index"],
            session_id=row["session_id"],
            log_handle_id=row["log_handle_id"],
            queue_cursor=row["queue_cursor"],
            chained_prompts=json.loads(row["chained_prompts"]) if row["chained_prompts"] else [],
            completed_chains=json.loads(row["completed_chains"]) if row["completed_chains"] else [],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        )

    def _read_step(self, step_index: int) -> StepRecord | None:
        row = self._fetchone(
            f"SELECT {_STEP_COLUMNS} FROM step_records WHERE step_index = ?",
            step_index,
        )
        return self._row_to_record(row) if row else None

    def _write_step(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        record = merge_step_record(self._read_step(step_index), step_index, patch)
        self._execute(
            f"""
            INSERT OR REPLACE INTO step_records ({_STEP_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.step_index,
            record.session_id,
            record.log_handle_id,
            record.queue_cursor,
            json.dumps([p.model_dump() for p in record.chained_prompts]),
            json.dumps(record.completed_chains),
            record.started_at.isoformat() if record.started_at else None,
            record.completed_at.isoformat() if record.completed_at else None,
        )
        self._touch_workflow()
        return record

    def _read_workflow(self) -> WorkflowRecord:
        row = self._fetchone("SELECT data FROM workflow_state WHERE id = 1")
        if not row:
            return WorkflowRecord()
        return WorkflowRecord.model_validate_json(row["data"])

    def _store_workflow(self, workflow: WorkflowRecord) -> None:
        self._execute(
            "INSERT OR REPLACE INTO workflow_state (id, data) VALUES (1, ?)",
            workflow.model_dump_json(),
        )

    def _write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        workflow = merge_workflow_record(
            self._read_workflow(),
            {**patch, "last_updated": datetime.now(timezone.utc)},
        )
        self._store_workflow(workflow)
        return workflow

    def _touch_workflow(self) -> None:
        workflow = self._read_workflow()
        workflow.last_updated = datetime.now(timezone.utc)
        self._store_workflow(workflow)

    def _clear(self) -> None:
        self._execute("DELETE FROM step_records")
        self._execute("DELETE FROM workflow_state")

    # ------------------------------------------------------------------
    # Store API
    async def read(self, step_index: int) -> StepRecord | None:
        return await asyncio.to_thread(self._read_step, step_index)

    async def write(self, step_index: int, patch: dict[str, Any]) -> StepRecord:
        async with self._lock:
            return await asyncio.to_thread(self._write_step, step_index, patch)

    async def list_records(self) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_records ORDER BY step_index",
        )
        return [self._row_to_record(row) for row in rows]

    async def read_workflow(self) -> WorkflowRecord:
        return await asyncio.to_thread(self._read_workflow)

    async def write_workflow(self, patch: dict[str, Any]) -> WorkflowRecord:
        async with self._lock:
            return await asyncio.to_thread(self._write_workflow, patch)

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._clear)

    def close(self) -> None:
        self._conn.close()
