from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from fleet_mcp.errors import StoreError
from fleet_mcp.storage import InstanceRecord, InstanceStore


def _record(title: str, *, status: str = "running", worktree_path: str | None = "/wt/x") -> InstanceRecord:
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return InstanceRecord(
        title=title,
        program="claude",
        status=status,
        repo_path="/repo",
        branch=f"alice/{title}",
        worktree_path=worktree_path,
        base_commit_sha="abc123",
        created_at=now,
        updated_at=now,
    )


def test_load_missing_or_empty_file(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "instances.json")
    assert asyncio.run(store.load()) == []

    store.path.write_text("  \n", encoding="utf-8")
    assert asyncio.run(store.load()) == []


def test_save_and_load_preserve_order(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "state" / "instances.json")
    records = [_record("beta"), _record("alpha", status="paused", worktree_path=None)]

    asyncio.run(store.save(records))
    loaded = asyncio.run(store.load())

    assert [record.title for record in loaded] == ["beta", "alpha"]
    assert loaded[1].paused
    assert json.loads(store.path.read_text(encoding="utf-8"))[0]["branch"] == "alice/beta"
    assert list(store.path.parent.glob("*.tmp")) == []


def test_delete_removes_only_named_record(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "instances.json")
    asyncio.run(store.save([_record("one"), _record("two")]))

    assert asyncio.run(store.delete("one"))
    assert not asyncio.run(store.delete("one"))
    assert [record.title for record in asyncio.run(store.load())] == ["two"]


def test_duplicate_titles_are_rejected(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "instances.json")

    with pytest.raises(StoreError):
        asyncio.run(store.save([_record("same"), _record("same")]))
    assert not store.path.exists()


def test_corrupt_snapshot_raises_store_error(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "instances.json")
    store.path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreError):
        asyncio.run(store.load())


def test_concurrent_saves_leave_a_valid_snapshot(tmp_path: Path) -> None:
    store = InstanceStore(tmp_path / "instances.json")

    async def scenario() -> None:
        await asyncio.gather(
            *(store.save([_record(f"task-{index}")]) for index in range(10))
        )

    asyncio.run(scenario())

    loaded = asyncio.run(store.load())
    assert len(loaded) == 1
    assert loaded[0].title.startswith("task-")


def test_record_validates_status_and_worktree_path() -> None:
    assert _record("x", status=" Ready ").status == "ready"
    with pytest.raises(ValidationError):
        _record("x", status="sleeping")
    with pytest.raises(ValidationError):
        _record("x", status="paused", worktree_path="/wt/x")
    with pytest.raises(ValidationError):
        _record("x", status="running", worktree_path=None)
    with pytest.raises(ValidationError):
        _record("   ")
