"""Git worktree lifecycle for Fleet instances."""

from __future__ import annotations

import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from ..errors import CommandError, InvalidTransitionError, ResourceCreationError
from ..process import CommandRunner
from .diff import DiffStats, parse_diff

logger = logging.getLogger(__name__)

_INVALID_BRANCH_CHARS = re.compile(r"[^a-z0-9\-_/.]+")
_REPEATED_DASHES = re.compile(r"-{2,}")


def sanitize_branch_component(value: str) -> str:
    """Turn a free-form title into something git accepts as a ref component."""

    cleaned = value.strip().lower().replace(" ", "-")
    cleaned = _INVALID_BRANCH_CHARS.sub("", cleaned)
    cleaned = _REPEATED_DASHES.sub("-", cleaned)
    cleaned = cleaned.replace("..", ".")
    return cleaned.strip("-/.")


def branch_name_for(title: str, prefix: str) -> str:
    component = sanitize_branch_component(title)
    if not component:
        raise ValueError(f"Title '{title}' does not yield a usable branch name")
    return f"{prefix}{component}"


@dataclass(slots=True)
class Worktree:
    """A branch-bound working directory derived from a base repository."""

    repo_path: Path
    path: Path
    branch: str
    base_commit_sha: str

    @property
    def exists(self) -> bool:
        return self.path.is_dir()


@dataclass(slots=True)
class _WorktreeEntry:
    path: Path
    branch: str | None
    prunable: bool


def _parse_worktree_list(output: str) -> list[_WorktreeEntry]:
    entries: list[_WorktreeEntry] = []
    for block in output.strip().split("\n\n"):
        path: Path | None = None
        branch: str | None = None
        prunable = False
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = Path(line[len("worktree "):])
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
            elif line.startswith("prunable"):
                prunable = True
        if path is not None:
            entries.append(_WorktreeEntry(path=path, branch=branch, prunable=prunable))
    return entries


class WorktreeController:
    """Create, remove and inspect git worktrees under a manager-owned root."""

    def __init__(
        self,
        worktree_root: Path,
        *,
        remote: str = "origin",
        runner: CommandRunner | None = None,
    ) -> None:
        self._root = Path(worktree_root)
        self._remote = remote
        self._git = runner or CommandRunner("git")

    @property
    def root(self) -> Path:
        return self._root

    def allocate_path(self, branch: str) -> Path:
        """Return a fresh, unused directory path for ``branch``."""

        stem = branch.replace("/", "_")
        return self._root / f"{stem}_{time.time_ns():x}"

    async def repo_root(self, path: Path) -> Path:
        try:
            top = await self._git.output("rev-parse", "--show-toplevel", cwd=path)
        except CommandError as exc:
            raise ResourceCreationError(f"{path} is not inside a git repository") from exc
        return Path(top)

    async def head_commit(self, repo_path: Path) -> str:
        try:
            return await self._git.output("rev-parse", "HEAD", cwd=repo_path)
        except CommandError as exc:
            raise ResourceCreationError(
                f"repository {repo_path} has no commits; create an initial commit first"
            ) from exc

    async def branch_exists(self, wt: Worktree) -> bool:
        return await self._branch_exists(wt.repo_path, wt.branch)

    async def _branch_exists(self, repo_path: Path, branch: str) -> bool:
        result = await self._git.run(
            "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo_path, check=False
        )
        return result.ok

    async def prune(self, repo_path: Path) -> None:
        await self._git.run("worktree", "prune", cwd=repo_path)

    async def create(self, repo_path: Path, branch: str) -> Worktree:
        """Create ``branch`` from HEAD and check it out in a new directory.

        Either both the branch and the directory exist afterwards, or neither does.
        """

        repo_root = await self.repo_root(repo_path)
        base_sha = await self.head_commit(repo_root)
        if await self._branch_exists(repo_root, branch):
            raise ResourceCreationError(f"branch '{branch}' already exists in {repo_root}")

        path = self.allocate_path(branch)
        self._root.mkdir(parents=True, exist_ok=True)
        await self.prune(repo_root)
        worktree = Worktree(repo_path=repo_root, path=path, branch=branch, base_commit_sha=base_sha)
        try:
            await self._git.run("worktree", "add", "-b", branch, str(path), base_sha, cwd=repo_root)
        except BaseException as exc:
            # also on cancellation: git may have created the branch before it was killed
            await self._rollback_create(worktree)
            if isinstance(exc, CommandError):
                raise ResourceCreationError(f"failed to create worktree for '{branch}': {exc}") from exc
            raise

        logger.info(
            "Created worktree",
            extra={"branch": branch, "path": str(path), "base_commit": base_sha},
        )
        return worktree

    async def _rollback_create(self, wt: Worktree) -> None:
        if wt.exists:
            shutil.rmtree(wt.path, ignore_errors=True)
        try:
            # an interrupted add leaves its entry locked, and prune skips locked entries
            await self._git.run("worktree", "unlock", str(wt.path), cwd=wt.repo_path, check=False)
            await self.prune(wt.repo_path)
            if await self.branch_exists(wt):
                await self._git.run("branch", "-D", wt.branch, cwd=wt.repo_path)
        except CommandError as exc:
            logger.error(
                "Rollback of partial worktree failed",
                extra={"branch": wt.branch, "path": str(wt.path), "error": str(exc)},
            )

    async def remove(self, wt: Worktree, *, keep_branch: bool) -> None:
        """Remove the worktree directory, and the branch unless ``keep_branch``."""

        if wt.exists:
            result = await self._git.run(
                "worktree", "remove", "--force", str(wt.path), cwd=wt.repo_path, check=False
            )
            if not result.ok:
                logger.warning(
                    "git worktree remove failed, deleting directory",
                    extra={"path": str(wt.path), "stderr": result.stderr.strip()},
                )
                shutil.rmtree(wt.path)
        await self.prune(wt.repo_path)
        if not keep_branch and await self.branch_exists(wt):
            await self._git.run("branch", "-D", wt.branch, cwd=wt.repo_path)
        logger.info(
            "Removed worktree",
            extra={"branch": wt.branch, "path": str(wt.path), "keep_branch": keep_branch},
        )

    async def recreate(self, wt: Worktree) -> None:
        """Check the existing branch out again at ``wt.path``."""

        if not await self.branch_exists(wt):
            raise ResourceCreationError(f"branch '{wt.branch}' no longer exists")
        if wt.exists:
            raise ResourceCreationError(f"worktree path {wt.path} already exists")
        self._root.mkdir(parents=True, exist_ok=True)
        await self.prune(wt.repo_path)
        try:
            await self._git.run("worktree", "add", str(wt.path), wt.branch, cwd=wt.repo_path)
        except CommandError as exc:
            if wt.exists:
                shutil.rmtree(wt.path, ignore_errors=True)
            raise ResourceCreationError(f"failed to recreate worktree for '{wt.branch}': {exc}") from exc
        logger.info("Recreated worktree", extra={"branch": wt.branch, "path": str(wt.path)})

    async def is_branch_checked_out_elsewhere(self, wt: Worktree) -> bool:
        """Whether any worktree other than ``wt`` (including the main one) has the branch."""

        output = await self._git.output("worktree", "list", "--porcelain", cwd=wt.repo_path)
        own_path = wt.path.resolve()
        for entry in _parse_worktree_list(output):
            if entry.branch != wt.branch or entry.prunable:
                continue
            if entry.path.resolve() == own_path and wt.exists:
                continue
            return True
        return False

    def _require_directory(self, wt: Worktree) -> None:
        if not wt.exists:
            raise InvalidTransitionError(
                f"worktree for '{wt.branch}' is not checked out; resume the instance first"
            )

    async def is_dirty(self, wt: Worktree) -> bool:
        self._require_directory(wt)
        status = await self._git.output("status", "--porcelain", cwd=wt.path)
        return bool(status)

    async def _stage(self, wt: Worktree, *, include_untracked: bool) -> bool:
        await self._git.run("add", "-A" if include_untracked else "-u", cwd=wt.path)
        staged = await self._git.run("diff", "--cached", "--quiet", cwd=wt.path, check=False)
        if staged.returncode not in (0, 1):
            raise CommandError(staged.describe(), result=staged)
        return staged.returncode == 1

    async def commit_changes(self, wt: Worktree, message: str, *, include_untracked: bool = True) -> bool:
        """Commit pending changes; return whether a commit was created."""

        self._require_directory(wt)
        if not await self._stage(wt, include_untracked=include_untracked):
            return False
        await self._git.run("commit", "--no-verify", "-m", message, cwd=wt.path)
        logger.info("Committed worktree changes", extra={"branch": wt.branch})
        return True

    async def push_changes(self, wt: Worktree, message: str, *, include_untracked: bool = True) -> bool:
        """Commit anything pending and push the branch to the configured remote.

        Returns whether a new commit was created. Pushing with nothing new succeeds.
        """

        committed = await self.commit_changes(wt, message, include_untracked=include_untracked)
        await self._git.run("push", "-u", self._remote, wt.branch, cwd=wt.path)
        logger.info(
            "Pushed branch",
            extra={"branch": wt.branch, "remote": self._remote, "committed": committed},
        )
        return committed

    async def diff_stats(self, wt: Worktree) -> DiffStats:
        """Diff of the worktree (untracked files included) against its base commit."""

        if not wt.exists:
            return DiffStats()
        await self._git.run("add", "-N", ".", cwd=wt.path)
        result = await self._git.run("--no-pager", "diff", wt.base_commit_sha, cwd=wt.path)
        return parse_diff(result.stdout)


__all__ = [
    "Worktree",
    "WorktreeController",
    "branch_name_for",
    "sanitize_branch_component",
]
