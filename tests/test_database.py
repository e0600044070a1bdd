"""Tests for the SQLite storage layer, work-order registry and task archive."""

from pathlib import Path

import pytest

from ultrawork.delegation.models import Intent, Request, Task, WorkOrder, WorkOrderState
from ultrawork.engine.registry import TaskArchive, WorkOrderRegistry
from ultrawork.storage.database import Database


def _order(order_id: str = "wo-1", task_id: str = "task-1", model: str = "sonnet") -> WorkOrder:
    return WorkOrder(
        id=order_id,
        task_id=task_id,
        objective="Update the timeout",
        expected_outcome="Timeout updated",
        required_actions=("Keep the change small",),
        prohibited_actions=("Do not touch tests",),
        context={},
        model=model,
    )


def _finished_task(text: str = "Update the timeout in src/config.py") -> Task:
    task = Task(request=Request(text=text), intent=Intent.EXPLICIT)
    task.attempt = 1
    task.complete("timeout raised to 30s")
    return task


def test_ensure_tables(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "ulw")
    db.ensure_tables()
    assert db.db_path.exists()
    assert (tmp_path / "ulw" / "logs").is_dir()


def test_wal_mode(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "ulw")
    db.ensure_tables()
    with db.connect() as conn:
        result = conn.execute("PRAGMA journal_mode").fetchone()
        assert result[0] == "wal"


def test_schema_version(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "ulw")
    db.ensure_tables()
    db.ensure_tables()
    rows = db.execute("SELECT version FROM schema_version")
    assert len(rows) == 1
    assert rows[0]["version"] == 1


def test_execute_update_rowcount(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "ulw")
    db.ensure_tables()
    db.execute_update(
        "INSERT INTO escalations (task_id, attempt, documentation, recorded_at) VALUES (?, ?, ?, ?)",
        ("task-1", 3, "{}", 0.0),
    )
    assert db.execute_update("DELETE FROM escalations WHERE task_id = ?", ("task-1",)) == 1


def test_rollback_on_error(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "ulw")
    db.ensure_tables()
    with pytest.raises(RuntimeError):
        with db.connect() as conn:
            conn.execute(
                "INSERT INTO escalations (task_id, attempt, documentation, recorded_at) VALUES (?, ?, ?, ?)",
                ("task-1", 1, "{}", 0.0),
            )
            raise RuntimeError("boom")
    assert db.execute("SELECT * FROM escalations") == []


# --- Work-order registry ---


def test_order_lifecycle(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order())

    record = registry.get("wo-1")
    assert record is not None
    assert record.state == WorkOrderState.PENDING.value

    registry.start("wo-1")
    record = registry.get("wo-1")
    assert record.state == WorkOrderState.IN_PROGRESS.value
    assert record.started_at is not None

    assert registry.complete("wo-1", {"summary": "done"})
    record = registry.get("wo-1")
    assert record.state == WorkOrderState.COMPLETED.value
    assert record.result == {"summary": "done"}


def test_failed_order(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order())
    registry.start("wo-1")
    assert registry.fail("wo-1", "exit code 2")
    record = registry.get("wo-1")
    assert record.state == WorkOrderState.FAILED.value
    assert record.error == "exit code 2"


def test_abandoned_order_ignores_late_results(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order())
    registry.start("wo-1")

    assert registry.abandon("wo-1")
    assert not registry.complete("wo-1", {"summary": "too late"})
    assert not registry.fail("wo-1", "too late")
    assert registry.get("wo-1").state == WorkOrderState.ABANDONED.value


def test_abandon_leaves_finished_orders(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order())
    registry.complete("wo-1")
    assert not registry.abandon("wo-1")
    assert registry.get("wo-1").state == WorkOrderState.COMPLETED.value


def test_task_orders_and_active(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order("wo-1"))
    registry.register(_order("wo-2"))
    registry.register(_order("wo-3", task_id="task-2"))
    registry.complete("wo-1")

    assert [r.order_id for r in registry.get_task_orders("task-1")] == ["wo-1", "wo-2"]
    assert {r.order_id for r in registry.get_active()} == {"wo-2", "wo-3"}


def test_registry_stats(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order("wo-1", model="opus"))
    registry.register(_order("wo-2"))
    registry.start("wo-2")

    stats = registry.get_stats()
    assert stats["total_orders"] == 2
    assert stats["by_model"] == {"opus": 1, "sonnet": 1}
    assert stats["active_count"] == 2


def test_cleanup_completed(tmp_path: Path) -> None:
    registry = WorkOrderRegistry(tmp_path)
    registry.register(_order("wo-1"))
    registry.register(_order("wo-2"))
    registry.complete("wo-1")

    assert registry.cleanup_completed(older_than_seconds=-1) == 1
    assert registry.get("wo-1") is None
    assert registry.get("wo-2") is not None


# --- Task archive ---


def test_archive_requires_terminal_task(tmp_path: Path) -> None:
    archive = TaskArchive(tmp_path)
    with pytest.raises(ValueError):
        archive.archive(Task(request=Request(text="Add tests")))


def test_archive_roundtrip(tmp_path: Path) -> None:
    archive = TaskArchive(tmp_path)
    task = _finished_task()
    archive.archive(task)

    record = archive.get(task.id)
    assert record is not None
    assert record["status"] == "completed"
    assert record["intent"] == "explicit"
    assert record["summary"] == "timeout raised to 30s"
    assert record["request_key"] == task.request.key
    assert record["documentation"] == []


def test_archive_documentation(tmp_path: Path) -> None:
    archive = TaskArchive(tmp_path)
    task = Task(request=Request(text="Add tests"), intent=Intent.OPEN_ENDED)
    task.attempt = 3
    archive.document(task.id, 3, {"reason": "3 consecutive failed cycles", "work_orders": []})
    task.fail("repeated failure escalation")
    archive.archive(task)

    docs = archive.get(task.id)["documentation"]
    assert docs == [{"attempt": 3, "reason": "3 consecutive failed cycles", "work_orders": []}]


def test_archive_list_and_filter(tmp_path: Path) -> None:
    archive = TaskArchive(tmp_path)
    done = _finished_task()
    failed = Task(request=Request(text="Add tests"))
    failed.fail("clarification cancelled")
    archive.archive(done)
    archive.archive(failed)

    assert len(archive.list()) == 2
    assert [r["task_id"] for r in archive.list(status="failed")] == [failed.id]
    assert len(archive.list(limit=1)) == 1


def test_archive_purge(tmp_path: Path) -> None:
    db = Database(tmp_path)
    archive = TaskArchive(db=db)
    registry = WorkOrderRegistry(db=db)
    task = _finished_task()
    registry.register(_order(task_id=task.id))
    archive.archive(task)
    archive.document(task.id, 1, {"reason": "x"})

    assert archive.purge(older_than_seconds=3600) == 0
    assert archive.purge(older_than_seconds=-1) == 1
    assert archive.get(task.id) is None
    assert registry.get_task_orders(task.id) == []
    assert db.execute("SELECT * FROM escalations") == []
