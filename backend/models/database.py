"""SQLite-based workflow persistence using aiosqlite.

This module provides the WorkflowStore class, the durable record of every
workflow and its per-role steps. It is the source of truth after a restart;
the engine's in-memory state only exists while a workflow runs.

Tables:
    workflows: One row per workflow (task, status, stage, timestamps).
    agent_steps: One row per (workflow, role), created with the workflow.

Usage:
    >>> from models.database import WorkflowStore
    >>> store = WorkflowStore("./data/dashboard.db")
    >>> await store.init()
    >>> await store.create_workflow(
    ...     workflow_id="7b0f0d5e-...",
    ...     title="Add dark mode",
    ...     user_prompt="Add dark mode",
    ...     project_path="/srv/app",
    ... )
"""

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from enum import StrEnum
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from agents.roles import AGENT_ORDER, AgentRole
from models.schemas import (
    TERMINAL_WORKFLOW_STATUSES,
    StepStatus,
    WorkflowStatus,
)

logger = structlog.get_logger(__name__)

STEP_UPDATE_FIELDS = frozenset(
    {
        "status",
        "prompt",
        "output",
        "error",
        "retry_count",
        "duration_ms",
        "tokens_in",
        "tokens_out",
        "started_at",
        "completed_at",
    }
)

ORPHANED_STEP_ERROR = "Interrupted by server restart"

_ACTIVE_STATUSES = (
    WorkflowStatus.PENDING.value,
    WorkflowStatus.RUNNING.value,
    WorkflowStatus.PAUSED.value,
)

_ROLE_ORDER_SQL = "CASE role {} END".format(
    " ".join(f"WHEN '{role.value}' THEN {index}" for index, role in enumerate(AGENT_ORDER))
)

_DELETE_CHUNK_SIZE = 500


def _to_db_value(value: Any) -> Any:
    if isinstance(value, StrEnum):
        return value.value
    return value


def _workflow_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    workflow = dict(row)
    raw_plan = workflow.get("execution_plan")
    if raw_plan:
        try:
            workflow["execution_plan"] = json.loads(raw_plan)
        except json.JSONDecodeError:
            workflow["execution_plan"] = []
    else:
        workflow["execution_plan"] = []
    return workflow


def _build_filters(status: str | None, q: str | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(_to_db_value(status))
    if q:
        escaped = q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        clauses.append("(title LIKE ? ESCAPE '\\' OR user_prompt LIKE ? ESCAPE '\\')")
        params.extend([f"%{escaped}%", f"%{escaped}%"])
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class WorkflowStore:
    """Async SQLite store for workflows and their steps.

    Reads log failures and return an empty result so the API keeps
    answering. Writes log failures and re-raise; callers that must not be
    interrupted by persistence (the engine during a run) catch them.

    Writes are serialized through an asyncio.Lock so concurrent coroutines
    in this process never contend for the SQLite write lock.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the workflow store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS workflows (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        user_prompt TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        current_stage_index INTEGER NOT NULL DEFAULT 0,
                        project_path TEXT NOT NULL,
                        execution_plan TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS agent_steps (
                        id TEXT PRIMARY KEY,
                        workflow_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        prompt TEXT,
                        output TEXT,
                        error TEXT,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        duration_ms INTEGER,
                        tokens_in INTEGER,
                        tokens_out INTEGER,
                        started_at REAL,
                        completed_at REAL,
                        FOREIGN KEY (workflow_id) REFERENCES workflows(id) ON DELETE CASCADE
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_agent_steps_workflow_id
                    ON agent_steps(workflow_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_workflows_created_at
                    ON workflows(created_at DESC)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_workflows_status
                    ON workflows(status)
                """)
                await db.commit()
            logger.info("workflow_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "workflow_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------

    async def create_workflow(
        self,
        workflow_id: str,
        title: str,
        user_prompt: str,
        project_path: str,
        execution_plan: Iterable[AgentRole] | None = None,
    ) -> dict[str, Any]:
        """Insert a workflow and one step per role in a single transaction.

        Roles in the execution plan get a ``pending`` step, the others a
        ``skipped`` one. A None plan means every role runs.

        Returns:
            The stored workflow as a dict.
        """
        plan = list(AGENT_ORDER) if execution_plan is None else list(execution_plan)
        now = time.time()

        try:
            async with self._write_lock, self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO workflows
                        (id, title, user_prompt, status, current_stage_index,
                         project_path, execution_plan, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
                    """,
                    (
                        workflow_id,
                        title,
                        user_prompt,
                        WorkflowStatus.PENDING.value,
                        project_path,
                        json.dumps([role.value for role in plan]),
                        now,
                        now,
                    ),
                )
                await db.executemany(
                    """
                    INSERT INTO agent_steps (id, workflow_id, role, status)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (
                            str(uuid.uuid4()),
                            workflow_id,
                            role.value,
                            (StepStatus.PENDING if role in plan else StepStatus.SKIPPED).value,
                        )
                        for role in AGENT_ORDER
                    ],
                )
                await db.commit()
        except Exception as e:
            logger.error("workflow_create_failed", workflow_id=workflow_id, error=str(e))
            raise

        logger.debug("workflow_saved", workflow_id=workflow_id, plan=[r.value for r in plan])
        return {
            "id": workflow_id,
            "title": title,
            "user_prompt": user_prompt,
            "status": WorkflowStatus.PENDING.value,
            "current_stage_index": 0,
            "project_path": project_path,
            "execution_plan": [role.value for role in plan],
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
        }

    async def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        """Retrieve a single workflow, or None if it does not exist."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT * FROM workflows WHERE id = ?",
                    (workflow_id,),
                )
                row = await cursor.fetchone()
                return _workflow_from_row(row) if row is not None else None
        except Exception as e:
            logger.error("workflow_get_failed", workflow_id=workflow_id, error=str(e))
            return None

    async def list_workflows(
        self,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        q: str | None = None,
    ) -> list[dict[str, Any]]:
        """List workflows newest first, optionally filtered.

        Args:
            limit: Maximum number of workflows to return.
            offset: Number of workflows to skip.
            status: Only return workflows with this status.
            q: Case-insensitive substring matched against title and task.
        """
        where, params = _build_filters(status, q)
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM workflows
                    {where}
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ? OFFSET ?
                    """,
                    (*params, limit, offset),
                )
                rows = await cursor.fetchall()
                return [_workflow_from_row(row) for row in rows]
        except Exception as e:
            logger.error("workflow_list_failed", error=str(e))
            return []

    async def count_workflows(self, status: str | None = None, q: str | None = None) -> int:
        """Count workflows matching the same filters as list_workflows."""
        where, params = _build_filters(status, q)
        try:
            async with self._connect() as db:
                cursor = await db.execute(f"SELECT COUNT(*) FROM workflows {where}", params)
                row = await cursor.fetchone()
                return int(row[0]) if row else 0
        except Exception as e:
            logger.error("workflow_count_failed", error=str(e))
            return 0

    async def update_workflow_status(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        current_stage_index: int | None = None,
    ) -> None:
        """Update status and optionally the current stage of a workflow.

        Always bumps ``updated_at``. ``completed_at`` is stamped the first
        time the workflow reaches a terminal status and never cleared.
        """
        now = time.time()
        is_terminal = WorkflowStatus(status) in TERMINAL_WORKFLOW_STATUSES
        try:
            async with self._write_lock, self._connect() as db:
                await db.execute(
                    """
                    UPDATE workflows
                    SET status = ?,
                        current_stage_index = COALESCE(?, current_stage_index),
                        updated_at = ?,
                        completed_at = CASE
                            WHEN ? THEN COALESCE(completed_at, ?)
                            ELSE completed_at
                        END
                    WHERE id = ?
                    """,
                    (
                        _to_db_value(status),
                        current_stage_index,
                        now,
                        1 if is_terminal else 0,
                        now,
                        workflow_id,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "workflow_status_update_failed",
                workflow_id=workflow_id,
                status=str(status),
                error=str(e),
            )
            raise

        logger.debug(
            "workflow_status_updated",
            workflow_id=workflow_id,
            status=str(status),
            current_stage_index=current_stage_index,
        )

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    async def update_step_status(self, step_id: str, updates: Mapping[str, Any]) -> None:
        """Apply a sparse update to a step.

        Args:
            step_id: The step to update.
            updates: Column/value pairs; only the listed columns change.

        Raises:
            ValueError: If ``updates`` names a column that cannot be updated.
        """
        unknown = set(updates) - STEP_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown step fields: {', '.join(sorted(unknown))}")
        if not updates:
            return

        columns = sorted(updates)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = [_to_db_value(updates[column]) for column in columns]
        try:
            async with self._write_lock, self._connect() as db:
                await db.execute(
                    f"UPDATE agent_steps SET {assignments} WHERE id = ?",
                    (*values, step_id),
                )
                await db.commit()
        except Exception as e:
            logger.error("step_update_failed", step_id=step_id, error=str(e))
            raise

    async def get_steps_for_workflow(self, workflow_id: str) -> list[dict[str, Any]]:
        """Return a workflow's steps in pipeline role order."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM agent_steps
                    WHERE workflow_id = ?
                    ORDER BY {_ROLE_ORDER_SQL}
                    """,
                    (workflow_id,),
                )
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
        except Exception as e:
            logger.error("steps_get_failed", workflow_id=workflow_id, error=str(e))
            return []

    # -----------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------

    async def cleanup_workflows(self, keep_days: int, keep_latest: int) -> dict[str, Any]:
        """Delete old terminal workflows and their steps.

        A terminal workflow survives if it is among the ``keep_latest``
        newest workflows or was created within the last ``keep_days`` days.
        Either criterion is ignored when it is 0. Workflows that have not
        finished are never deleted.

        Returns:
            Deletion counts plus the ids of the deleted workflows.

        Raises:
            ValueError: If both retention criteria are 0.
        """
        if keep_days <= 0 and keep_latest <= 0:
            raise ValueError("keep_days and keep_latest cannot both be 0")

        cutoff = time.time() - keep_days * 86400
        terminal = {status.value for status in TERMINAL_WORKFLOW_STATUSES}

        async with self._write_lock, self._connect() as db:
            cursor = await db.execute(
                "SELECT id, status, created_at FROM workflows ORDER BY created_at DESC, rowid DESC"
            )
            rows = await cursor.fetchall()

            to_delete: list[str] = []
            for position, row in enumerate(rows):
                if row["status"] not in terminal:
                    continue
                if keep_latest > 0 and position < keep_latest:
                    continue
                if keep_days > 0 and row["created_at"] >= cutoff:
                    continue
                to_delete.append(row["id"])

            deleted_steps = 0
            deleted_workflows = 0
            for start in range(0, len(to_delete), _DELETE_CHUNK_SIZE):
                chunk = to_delete[start : start + _DELETE_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = await db.execute(
                    f"DELETE FROM agent_steps WHERE workflow_id IN ({placeholders})",
                    chunk,
                )
                deleted_steps += max(cursor.rowcount, 0)
                cursor = await db.execute(
                    f"DELETE FROM workflows WHERE id IN ({placeholders})",
                    chunk,
                )
                deleted_workflows += max(cursor.rowcount, 0)
            await db.commit()

        logger.info(
            "workflows_cleaned_up",
            keep_days=keep_days,
            keep_latest=keep_latest,
            deleted_workflows=deleted_workflows,
            deleted_steps=deleted_steps,
        )
        return {
            "deleted_workflows": deleted_workflows,
            "deleted_steps": deleted_steps,
            "deleted_ids": to_delete,
        }

    async def get_workflow_metrics(self) -> dict[str, Any]:
        """Aggregate workflow outcomes and per-role step statistics."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) AS count FROM workflows GROUP BY status"
            )
            by_status = {row["status"]: int(row["count"]) for row in await cursor.fetchall()}

            cursor = await db.execute(
                """
                SELECT
                    role,
                    COUNT(*) AS runs,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                    AVG(CASE WHEN status = 'completed' THEN duration_ms END) AS avg_duration_ms,
                    COALESCE(SUM(tokens_in), 0) AS tokens_in,
                    COALESCE(SUM(tokens_out), 0) AS tokens_out
                FROM agent_steps
                WHERE status IN ('running', 'completed', 'failed')
                GROUP BY role
                """
            )
            role_rows = await cursor.fetchall()

        roles = {
            row["role"]: {
                "runs": int(row["runs"]),
                "completed": int(row["completed"] or 0),
                "failed": int(row["failed"] or 0),
                "avg_duration_ms": (
                    float(row["avg_duration_ms"]) if row["avg_duration_ms"] is not None else None
                ),
                "tokens_in": int(row["tokens_in"]),
                "tokens_out": int(row["tokens_out"]),
            }
            for row in role_rows
        }

        finished = sum(by_status.get(status.value, 0) for status in TERMINAL_WORKFLOW_STATUSES)
        completed = by_status.get(WorkflowStatus.COMPLETED.value, 0)
        return {
            "total_workflows": sum(by_status.values()),
            "by_status": by_status,
            "success_rate": completed / finished if finished else None,
            "roles": roles,
        }

    async def mark_orphaned_workflows(self) -> int:
        """Fail workflows that a previous process left unfinished.

        In-flight runs cannot be resumed after a restart, so every workflow
        still pending, running or paused is marked failed, along with its
        running steps.

        Returns:
            Number of workflows marked failed.
        """
        now = time.time()
        placeholders = ", ".join("?" for _ in _ACTIVE_STATUSES)
        async with self._write_lock, self._connect() as db:
            await db.execute(
                f"""
                UPDATE agent_steps
                SET status = ?, error = COALESCE(error, ?), completed_at = ?
                WHERE status = ?
                  AND workflow_id IN (
                      SELECT id FROM workflows WHERE status IN ({placeholders})
                  )
                """,
                (
                    StepStatus.FAILED.value,
                    ORPHANED_STEP_ERROR,
                    now,
                    StepStatus.RUNNING.value,
                    *_ACTIVE_STATUSES,
                ),
            )
            cursor = await db.execute(
                f"""
                UPDATE workflows
                SET status = ?, updated_at = ?, completed_at = COALESCE(completed_at, ?)
                WHERE status IN ({placeholders})
                """,
                (WorkflowStatus.FAILED.value, now, now, *_ACTIVE_STATUSES),
            )
            recovered = max(cursor.rowcount, 0)
            await db.commit()

        if recovered:
            logger.warning("orphaned_workflows_failed", count=recovered)
        return recovered
