from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from fleet_mcp.config import FleetSettings
from fleet_mcp.errors import ResourceCreationError
from fleet_mcp.git import DiffStats, Worktree
from fleet_mcp.tmux import Session, session_name_for


class StubWorktrees:
    """In-memory stand-in for WorktreeController that still creates real directories."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.branches: set[str] = set()
        self.checked_out_elsewhere: set[str] = set()
        self.dirty: set[str] = set()
        self.commits: list[tuple[str, str]] = []
        self.pushed: list[str] = []
        self.removed: list[tuple[str, bool]] = []
        self.diff = DiffStats()
        self.fail_create: Exception | None = None
        self.fail_remove: Exception | None = None
        self.fail_commit: Exception | None = None
        self._counter = 0

    def allocate_path(self, branch: str) -> Path:
        self._counter += 1
        return self.root / f"{branch.replace('/', '_')}_{self._counter}"

    async def create(self, repo_path: Path, branch: str) -> Worktree:
        if self.fail_create is not None:
            raise self.fail_create
        if branch in self.branches:
            raise ResourceCreationError(f"branch '{branch}' already exists")
        path = self.allocate_path(branch)
        path.mkdir(parents=True)
        self.branches.add(branch)
        return Worktree(repo_path=Path(repo_path), path=path, branch=branch, base_commit_sha="base123")

    async def remove(self, wt: Worktree, *, keep_branch: bool) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        if wt.path.exists():
            shutil.rmtree(wt.path)
        if not keep_branch:
            self.branches.discard(wt.branch)
        self.removed.append((wt.branch, keep_branch))

    async def recreate(self, wt: Worktree) -> None:
        if wt.branch not in self.branches:
            raise ResourceCreationError(f"branch '{wt.branch}' no longer exists")
        wt.path.mkdir(parents=True)

    async def is_branch_checked_out_elsewhere(self, wt: Worktree) -> bool:
        return wt.branch in self.checked_out_elsewhere

    async def is_dirty(self, wt: Worktree) -> bool:
        return wt.branch in self.dirty

    async def commit_changes(self, wt: Worktree, message: str, *, include_untracked: bool = True) -> bool:
        if self.fail_commit is not None:
            raise self.fail_commit
        if wt.branch not in self.dirty:
            return False
        self.dirty.discard(wt.branch)
        self.commits.append((wt.branch, message))
        return True

    async def push_changes(self, wt: Worktree, message: str, *, include_untracked: bool = True) -> bool:
        committed = await self.commit_changes(wt, message, include_untracked=include_untracked)
        self.pushed.append(wt.branch)
        return committed

    async def diff_stats(self, wt: Worktree) -> DiffStats:
        return self.diff


class StubSessions:
    """In-memory stand-in for SessionController."""

    def __init__(self) -> None:
        self.alive: set[str] = set()
        self.panes: dict[str, str] = {}
        self.sent: list[tuple[str, str]] = []
        self.started: list[str] = []
        self.fail_start: Exception | None = None
        self.fail_kill: Exception | None = None
        self.exit_immediately = False
        self.start_gate: asyncio.Event | None = None
        self.hang: set[str] = set()

    def name_for(self, title: str) -> str:
        return session_name_for(title, "fleet_")

    async def start(self, name: str, program: str, cwd: Path) -> Session:
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start is not None:
            raise self.fail_start
        if name in self.alive:
            raise ResourceCreationError(f"tmux session '{name}' already exists")
        if not self.exit_immediately:
            self.alive.add(name)
        self.started.append(name)
        return Session(name=name, program=program, cwd=Path(cwd))

    async def attach_existing(self, name: str, program: str, cwd: Path) -> Session | None:
        if name not in self.alive:
            return None
        return Session(name=name, program=program, cwd=Path(cwd))

    async def kill(self, session: Session) -> None:
        if self.fail_kill is not None:
            raise self.fail_kill
        self.alive.discard(session.name)

    async def is_alive(self, session: Session) -> bool:
        return session.name in self.alive

    async def capture_pane(self, session: Session) -> str:
        if session.name in self.hang:
            await asyncio.Event().wait()
        return self.panes.get(session.name, "")

    async def send_keys(self, session: Session, text: str) -> None:
        self.sent.append((session.name, text))

    async def tap_enter(self, session: Session) -> None:
        self.sent.append((session.name, "<Enter>"))

    async def resize(self, session: Session, cols: int, rows: int) -> None:
        session.width = cols
        session.height = rows


@pytest.fixture
def worktrees(tmp_path: Path) -> StubWorktrees:
    return StubWorktrees(tmp_path / "worktrees")


@pytest.fixture
def sessions() -> StubSessions:
    return StubSessions()


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FleetSettings:
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.setenv("FLEET_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("FLEET_REPO_PATH", str(repo))
    monkeypatch.setenv("FLEET_BRANCH_PREFIX", "alice")
    monkeypatch.setenv("FLEET_POLL_INTERVAL", "0.2")
    monkeypatch.setenv("FLEET_PROFILE_PATHS", str(tmp_path / "profiles"))
    for name in ("FLEET_PROGRAM", "FLEET_AUTO_YES", "FLEET_INSTANCE_LIMIT", "FLEET_SESSION_PREFIX"):
        monkeypatch.delenv(name, raising=False)
    return FleetSettings()
