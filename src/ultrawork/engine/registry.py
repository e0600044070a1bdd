"""Work Order Registry - Tracks dispatched work orders and archives finished tasks."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ultrawork.delegation.models import Task, WorkOrder, WorkOrderState
from ultrawork.storage.database import Database

TERMINAL_ORDER_STATES = (
    WorkOrderState.COMPLETED.value,
    WorkOrderState.FAILED.value,
    WorkOrderState.ABANDONED.value,
)


@dataclass
class WorkOrderRecord:
    """Persisted progress of one work order."""

    order_id: str
    task_id: str
    objective: str
    model: str
    state: str
    created_at: float
    capability: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class WorkOrderRegistry:
    """
    Persists work-order progress with database backing.

    Transitions are PENDING -> IN_PROGRESS -> COMPLETED | FAILED. An order
    marked ABANDONED keeps that state; late results are discarded.
    """

    # seconds - auto-cleanup after this
    STALE_CLEANUP = 600

    def __init__(self, data_dir: Path | None = None, db: Database | None = None) -> None:
        self.db = db or Database(data_dir)
        self.db.ensure_tables()

    def register(self, order: WorkOrder) -> str:
        """Register a new work order as PENDING."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO work_orders (
                    order_id, task_id, objective, model, capability, state, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.id,
                    order.task_id,
                    order.objective,
                    order.model,
                    order.capability,
                    WorkOrderState.PENDING.value,
                    time.time(),
                ),
            )
        return order.id

    def start(self, order_id: str) -> None:
        """Mark order as in progress."""
        self.db.execute_update(
            "UPDATE work_orders SET state = ?, started_at = ? WHERE order_id = ? AND state = ?",
            (WorkOrderState.IN_PROGRESS.value, time.time(), order_id, WorkOrderState.PENDING.value),
        )

    def complete(self, order_id: str, result: dict[str, Any] | None = None) -> bool:
        """Mark order as completed. Returns False if the order was abandoned."""
        result_json = json.dumps(result, default=str) if result else None
        updated = self.db.execute_update(
            """
            UPDATE work_orders
            SET state = ?, completed_at = ?, result = ?
            WHERE order_id = ? AND state != ?
            """,
            (
                WorkOrderState.COMPLETED.value,
                time.time(),
                result_json,
                order_id,
                WorkOrderState.ABANDONED.value,
            ),
        )
        return updated > 0

    def fail(self, order_id: str, error: str) -> bool:
        """Mark order as failed. Returns False if the order was abandoned."""
        updated = self.db.execute_update(
            """
            UPDATE work_orders
            SET state = ?, completed_at = ?, error = ?
            WHERE order_id = ? AND state != ?
            """,
            (
                WorkOrderState.FAILED.value,
                time.time(),
                error,
                order_id,
                WorkOrderState.ABANDONED.value,
            ),
        )
        return updated > 0

    def abandon(self, order_id: str) -> bool:
        """Mark an in-flight order as abandoned. Finished orders are left alone."""
        updated = self.db.execute_update(
            """
            UPDATE work_orders
            SET state = ?, completed_at = ?
            WHERE order_id = ? AND state IN (?, ?)
            """,
            (
                WorkOrderState.ABANDONED.value,
                time.time(),
                order_id,
                WorkOrderState.PENDING.value,
                WorkOrderState.IN_PROGRESS.value,
            ),
        )
        return updated > 0

    def get(self, order_id: str) -> WorkOrderRecord | None:
        rows = self.db.execute("SELECT * FROM work_orders WHERE order_id = ?", (order_id,))
        if rows:
            return self._row_to_record(rows[0])
        return None

    def get_task_orders(self, task_id: str) -> list[WorkOrderRecord]:
        """Get all work orders for a task, oldest first."""
        rows = self.db.execute(
            "SELECT * FROM work_orders WHERE task_id = ? ORDER BY created_at", (task_id,)
        )
        return [self._row_to_record(row) for row in rows]

    def get_active(self) -> list[WorkOrderRecord]:
        """Get all pending or in-progress orders."""
        rows = self.db.execute(
            "SELECT * FROM work_orders WHERE state IN (?, ?)",
            (WorkOrderState.PENDING.value, WorkOrderState.IN_PROGRESS.value),
        )
        return [self._row_to_record(row) for row in rows]

    def cleanup_completed(self, older_than_seconds: int | None = None) -> int:
        """Remove finished orders older than the cutoff."""
        if older_than_seconds is None:
            older_than_seconds = self.STALE_CLEANUP
        cutoff = time.time() - older_than_seconds
        return self.db.execute_update(
            """
            DELETE FROM work_orders
            WHERE state IN (?, ?, ?)
            AND completed_at IS NOT NULL
            AND completed_at < ?
            """,
            (*TERMINAL_ORDER_STATES, cutoff),
        )

    def _row_to_record(self, row: Any) -> WorkOrderRecord:
        return WorkOrderRecord(
            order_id=row["order_id"],
            task_id=row["task_id"],
            objective=row["objective"],
            model=row["model"],
            capability=row["capability"],
            state=row["state"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
        )

    def get_stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        rows = self.db.execute("SELECT state, model FROM work_orders")

        by_state: dict[str, int] = {}
        by_model: dict[str, int] = {}
        for row in rows:
            by_state[row["state"]] = by_state.get(row["state"], 0) + 1
            by_model[row["model"]] = by_model.get(row["model"], 0) + 1

        return {
            "total_orders": len(rows),
            "by_state": by_state,
            "by_model": by_model,
            "active_count": by_state.get(WorkOrderState.PENDING.value, 0)
            + by_state.get(WorkOrderState.IN_PROGRESS.value, 0),
        }


class TaskArchive:
    """Stores finished tasks until the retention window passes."""

    def __init__(self, data_dir: Path | None = None, db: Database | None = None) -> None:
        self.db = db or Database(data_dir)
        self.db.ensure_tables()

    def archive(self, task: Task) -> None:
        """Persist a task in a terminal status."""
        if not task.status.terminal:
            raise ValueError(f"Task {task.id} is {task.status}; only finished tasks are archived")
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO tasks (
                    task_id, request, request_key, intent, category, status, reason,
                    summary, attempts, started_at, finished_at, failure_log,
                    escalations, consensus
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.request.text,
                    task.request.key,
                    task.intent.value if task.intent else None,
                    task.category.value if task.category else None,
                    task.status.value,
                    task.reason,
                    task.summary,
                    task.attempt,
                    task.started_at,
                    time.time(),
                    json.dumps(task.failure_log, default=str),
                    json.dumps(task.escalations, default=str),
                    json.dumps(task.consensus, default=str),
                ),
            )

    def document(self, task_id: str, attempt: int, documentation: dict[str, Any]) -> int:
        """Persist escalation documentation for a task that is still running."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO escalations (task_id, attempt, documentation, recorded_at)
                VALUES (?, ?, ?, ?)
                """,
                (task_id, attempt, json.dumps(documentation, default=str), time.time()),
            )
            return cursor.lastrowid or 0

    def get(self, task_id: str) -> dict[str, Any] | None:
        rows = self.db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        if not rows:
            return None
        record = self._row_to_dict(rows[0])
        docs = self.db.execute(
            "SELECT attempt, documentation FROM escalations WHERE task_id = ? ORDER BY id",
            (task_id,),
        )
        record["documentation"] = [
            {"attempt": d["attempt"], **json.loads(d["documentation"])} for d in docs
        ]
        return record

    def list(self, limit: int = 20, status: str | None = None) -> list[dict[str, Any]]:
        """Most recently finished tasks first."""
        if status:
            rows = self.db.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY finished_at DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM tasks ORDER BY finished_at DESC LIMIT ?", (limit,)
            )
        return [self._row_to_dict(row) for row in rows]

    def purge(self, older_than_seconds: float) -> int:
        """Delete tasks (and their documentation) finished before the cutoff."""
        cutoff = time.time() - older_than_seconds
        with self.db.connect() as conn:
            conn.execute(
                """
                DELETE FROM escalations
                WHERE task_id IN (SELECT task_id FROM tasks WHERE finished_at < ?)
                """,
                (cutoff,),
            )
            conn.execute(
                """
                DELETE FROM work_orders
                WHERE task_id IN (SELECT task_id FROM tasks WHERE finished_at < ?)
                """,
                (cutoff,),
            )
            cursor = conn.execute("DELETE FROM tasks WHERE finished_at < ?", (cutoff,))
            return cursor.rowcount

    @staticmethod
    def _row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "task_id": row["task_id"],
            "request": row["request"],
            "request_key": row["request_key"],
            "intent": row["intent"],
            "category": row["category"],
            "status": row["status"],
            "reason": row["reason"],
            "summary": row["summary"],
            "attempts": row["attempts"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
            "duration": row["finished_at"] - row["started_at"],
            "failure_log": json.loads(row["failure_log"] or "[]"),
            "escalations": json.loads(row["escalations"] or "[]"),
            "consensus": json.loads(row["consensus"] or "[]"),
        }
