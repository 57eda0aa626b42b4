"""Instance: one agent session plus its worktree and metadata."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Awaitable, Callable, Union

from ..errors import (
    FleetError,
    GuardViolationError,
    InstanceValidationError,
    InvalidTransitionError,
    ResourceCreationError,
    TeardownError,
)
from ..git import DiffStats, Worktree, WorktreeController, branch_name_for
from ..storage import InstanceRecord
from ..tmux import Activity, Session, SessionController, StatusMonitor
from .progress import StartStage

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 32

ProgressCallback = Callable[[StartStage], Awaitable[None]]


class InstanceStatus(str, enum.Enum):
    LOADING = "loading"
    RUNNING = "running"
    READY = "ready"
    PAUSED = "paused"
    DELETING = "deleting"


@dataclass(frozen=True, slots=True)
class PendingPhase:
    """Not started yet: no worktree, no session."""


@dataclass(slots=True)
class LivePhase:
    worktree: Worktree
    session: Session
    activity: InstanceStatus = InstanceStatus.LOADING


@dataclass(frozen=True, slots=True)
class PausedPhase:
    """Branch retained, directory and session gone."""

    worktree: Worktree


@dataclass(frozen=True, slots=True)
class DeletingPhase:
    previous: Union["PendingPhase", "LivePhase", "PausedPhase"]


Phase = Union[PendingPhase, LivePhase, PausedPhase, DeletingPhase]


def validate_title(title: str) -> str:
    normalized = title.strip()
    if not normalized:
        raise InstanceValidationError("Instance title must not be empty")
    if len(normalized) > MAX_TITLE_LENGTH:
        raise InstanceValidationError(
            f"Instance title must be at most {MAX_TITLE_LENGTH} characters"
        )
    try:
        branch_name_for(normalized, "")
    except ValueError as exc:
        raise InstanceValidationError(str(exc)) from exc
    return normalized


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Instance:
    """Aggregate of a git worktree, a tmux session and persisted metadata.

    The phase is a tagged variant, so a paused instance holds no session handle and
    a pending one holds neither worktree nor session. Callers run one lifecycle
    operation at a time per instance by holding :attr:`lock`.
    """

    def __init__(
        self,
        *,
        title: str,
        program: str,
        repo_path: Path,
        worktrees: WorktreeController,
        sessions: SessionController,
        branch_prefix: str = "",
        auto_accept_prompts: bool = False,
        created_at: datetime | None = None,
    ) -> None:
        if not program.strip():
            raise InstanceValidationError("Program command must not be empty")
        self._title = validate_title(title)
        self.program = program
        self.repo_path = Path(repo_path)
        self.auto_accept_prompts = auto_accept_prompts
        self.created_at = created_at or _now()
        self.updated_at = self.created_at
        self.diff_stats = DiffStats()
        self._branch_prefix = branch_prefix
        self._worktrees = worktrees
        self._sessions = sessions
        self._monitor = StatusMonitor(sessions, program)
        self._phase: Phase = PendingPhase()
        self._needs_restore = False
        self._stored_status = InstanceStatus.PAUSED
        self.lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Instance(title={self._title!r}, status={self.status.value!r})"

    # -- State -------------------------------------------------------------

    @property
    def title(self) -> str:
        return self._title

    @title.setter
    def title(self, value: str) -> None:
        if not isinstance(self._phase, PendingPhase):
            raise InvalidTransitionError("Title can only be changed before the instance starts")
        self._title = validate_title(value)

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def status(self) -> InstanceStatus:
        phase = self._phase
        if isinstance(phase, PendingPhase):
            return InstanceStatus.LOADING
        if isinstance(phase, LivePhase):
            return phase.activity
        if isinstance(phase, PausedPhase):
            return InstanceStatus.PAUSED
        return InstanceStatus.DELETING

    @property
    def started(self) -> bool:
        return isinstance(self._phase, (LivePhase, PausedPhase))

    @property
    def paused(self) -> bool:
        return isinstance(self._phase, PausedPhase)

    @property
    def live(self) -> bool:
        return isinstance(self._phase, LivePhase)

    @property
    def worktree(self) -> Worktree | None:
        phase = self._phase
        if isinstance(phase, DeletingPhase):
            phase = phase.previous
        if isinstance(phase, (LivePhase, PausedPhase)):
            return phase.worktree
        return None

    @property
    def session(self) -> Session | None:
        return self._phase.session if isinstance(self._phase, LivePhase) else None

    @property
    def branch(self) -> str | None:
        worktree = self.worktree
        return worktree.branch if worktree is not None else None

    @property
    def needs_restore(self) -> bool:
        return self._needs_restore

    def _require_live(self, action: str) -> LivePhase:
        if not isinstance(self._phase, LivePhase):
            raise InvalidTransitionError(
                f"Cannot {action} instance '{self._title}' while it is {self.status.value}"
            )
        return self._phase

    def _touch(self) -> None:
        self.updated_at = _now()

    def set_activity(self, activity: InstanceStatus) -> None:
        if activity not in (InstanceStatus.LOADING, InstanceStatus.RUNNING, InstanceStatus.READY):
            raise ValueError(f"{activity.value} is not an activity status")
        self._require_live("update").activity = activity

    def mark_deleting(self) -> None:
        if isinstance(self._phase, DeletingPhase):
            raise InvalidTransitionError(f"Instance '{self._title}' is already being deleted")
        self._phase = DeletingPhase(previous=self._phase)

    def unmark_deleting(self) -> None:
        if isinstance(self._phase, DeletingPhase):
            self._phase = self._phase.previous

    # -- Lifecycle ---------------------------------------------------------

    async def start(
        self,
        report: ProgressCallback | None = None,
        *,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        """Create the worktree and session, reporting each stage through ``report``.

        On any failure, including cancellation, whatever was created is torn down and
        the instance stays pending.
        """

        if not isinstance(self._phase, PendingPhase):
            raise InvalidTransitionError(f"Instance '{self._title}' has already been started")

        async def emit(stage: StartStage) -> None:
            if shutdown is not None and shutdown.is_set():
                raise ResourceCreationError("shutdown requested during instance start")
            if report is not None:
                await report(stage)

        worktree: Worktree | None = None
        session: Session | None = None
        try:
            await emit(StartStage.INITIALIZING)
            branch = branch_name_for(self._title, self._branch_prefix)
            session_name = self._sessions.name_for(self._title)

            await emit(StartStage.CREATING_WORKSPACE)
            worktree = await self._worktrees.create(self.repo_path, branch)

            await emit(StartStage.STARTING_SESSION)
            session = await self._sessions.start(session_name, self.program, worktree.path)

            await emit(StartStage.WAITING_FOR_AGENT_READY)
            if not await self._sessions.is_alive(session):
                raise ResourceCreationError(f"agent session '{session_name}' exited during startup")
        except BaseException as exc:
            await self._rollback_start(worktree, session)
            if isinstance(exc, FleetError) and not isinstance(exc, ResourceCreationError):
                raise ResourceCreationError(str(exc)) from exc
            raise

        self._monitor.reset()
        self._phase = LivePhase(worktree=worktree, session=session)
        self._touch()
        logger.info(
            "Started instance",
            extra={"title": self._title, "branch": worktree.branch, "session": session.name},
        )

    async def _rollback_start(self, worktree: Worktree | None, session: Session | None) -> None:
        if session is not None:
            try:
                await self._sessions.kill(session)
            except (FleetError, OSError) as exc:
                logger.error(
                    "Could not kill session during rollback",
                    extra={"title": self._title, "session": session.name, "error": str(exc)},
                )
        if worktree is not None:
            try:
                await self._worktrees.remove(worktree, keep_branch=False)
            except (FleetError, OSError) as exc:
                logger.error(
                    "Could not remove worktree during rollback",
                    extra={"title": self._title, "path": str(worktree.path), "error": str(exc)},
                )

    async def pause(self) -> None:
        """Commit pending work, stop the session and drop the directory; keep the branch."""

        phase = self._require_live("pause")
        worktree, session = phase.worktree, phase.session

        if worktree.exists and await self._worktrees.is_dirty(worktree):
            await self._worktrees.commit_changes(worktree, self._pause_message())

        await self._sessions.kill(session)
        try:
            await self._worktrees.remove(worktree, keep_branch=True)
        except (FleetError, OSError) as exc:
            await self._restore_session_after_failed_pause(phase)
            raise TeardownError(
                f"Could not remove worktree of '{self._title}': {exc}", causes=[exc]
            ) from exc

        self._monitor.reset()
        self._phase = PausedPhase(worktree=worktree)
        self._touch()
        logger.info("Paused instance", extra={"title": self._title, "branch": worktree.branch})

    def _pause_message(self) -> str:
        return f"[fleet] update from '{self._title}' on {format_datetime(_now())} (paused)"

    async def _restore_session_after_failed_pause(self, phase: LivePhase) -> None:
        if not phase.worktree.exists:
            return
        try:
            phase.session = await self._sessions.start(
                phase.session.name, self.program, phase.worktree.path
            )
        except (FleetError, OSError) as exc:
            logger.error(
                "Could not restart session after failed pause",
                extra={"title": self._title, "error": str(exc)},
            )

    async def resume(self) -> None:
        """Check the branch out again and bring the session back."""

        if not isinstance(self._phase, PausedPhase):
            raise InvalidTransitionError(
                f"Cannot resume instance '{self._title}' while it is {self.status.value}"
            )
        if self._needs_restore:
            # its directory survived a failed reload; retry bringing that one back
            await self.restore()
            self._touch()
            return
        paused = self._phase.worktree
        if await self._worktrees.is_branch_checked_out_elsewhere(paused):
            raise GuardViolationError(
                f"Branch '{paused.branch}' is checked out elsewhere; switch away from it before resuming"
            )

        worktree = replace(paused, path=self._worktrees.allocate_path(paused.branch))
        await self._worktrees.recreate(worktree)
        try:
            session = await self._open_session(worktree)
        except BaseException:
            try:
                await self._worktrees.remove(worktree, keep_branch=True)
            except (FleetError, OSError) as exc:
                logger.error(
                    "Could not remove worktree after failed resume",
                    extra={"title": self._title, "error": str(exc)},
                )
            raise

        self._monitor.reset()
        self._phase = LivePhase(worktree=worktree, session=session)
        self._needs_restore = False
        self._touch()
        logger.info("Resumed instance", extra={"title": self._title, "path": str(worktree.path)})

    async def _open_session(self, worktree: Worktree) -> Session:
        name = self._sessions.name_for(self._title)
        existing = await self._sessions.attach_existing(name, self.program, worktree.path)
        if existing is not None:
            return existing
        return await self._sessions.start(name, self.program, worktree.path)

    async def restore(self) -> None:
        """Bring a reloaded, previously live instance back: re-attach or recreate.

        If that fails the instance falls back to paused so it can be resumed later.
        """

        if not (self._needs_restore and isinstance(self._phase, PausedPhase)):
            return
        worktree = self._phase.worktree
        try:
            if not worktree.exists:
                await self._worktrees.recreate(worktree)
            session = await self._open_session(worktree)
        except (FleetError, OSError) as exc:
            logger.warning(
                "Could not restore instance, leaving it paused",
                extra={"title": self._title, "error": str(exc)},
            )
            if worktree.exists:
                await self._park_unrestorable(worktree)
            self._needs_restore = False
            raise ResourceCreationError(f"Could not restore '{self._title}': {exc}") from exc

        self._monitor.reset()
        self._phase = LivePhase(worktree=worktree, session=session)
        self._needs_restore = False
        logger.info("Restored instance", extra={"title": self._title, "session": session.name})

    async def _park_unrestorable(self, worktree: Worktree) -> None:
        """Commit pending work and drop the directory, as pause does.

        When either step fails the directory is kept and the instance still needs a
        restore, so its record stays live for a later attempt.
        """

        try:
            if await self._worktrees.is_dirty(worktree):
                await self._worktrees.commit_changes(worktree, self._pause_message())
            await self._worktrees.remove(worktree, keep_branch=True)
        except (FleetError, OSError) as exc:
            logger.error(
                "Keeping worktree of unrestorable instance",
                extra={"title": self._title, "path": str(worktree.path), "error": str(exc)},
            )
            raise ResourceCreationError(
                f"Could not restore '{self._title}'; worktree kept at {worktree.path}: {exc}"
            ) from exc

    async def kill(self) -> None:
        """Best-effort teardown of session, directory and branch."""

        phase = self._phase
        if isinstance(phase, DeletingPhase):
            phase = phase.previous
        errors: list[BaseException] = []
        if isinstance(phase, LivePhase):
            try:
                await self._sessions.kill(phase.session)
            except (FleetError, OSError) as exc:
                errors.append(exc)
        if isinstance(phase, (LivePhase, PausedPhase)):
            try:
                await self._worktrees.remove(phase.worktree, keep_branch=False)
            except (FleetError, OSError) as exc:
                errors.append(exc)
        if errors:
            details = "; ".join(str(error) for error in errors)
            raise TeardownError(f"Cleanup of '{self._title}' incomplete: {details}", causes=errors)
        logger.info("Killed instance", extra={"title": self._title})

    async def is_branch_checked_out_elsewhere(self) -> bool:
        worktree = self.worktree
        if worktree is None:
            return False
        return await self._worktrees.is_branch_checked_out_elsewhere(worktree)

    # -- Monitoring --------------------------------------------------------

    async def session_alive(self) -> bool:
        session = self.session
        if session is None:
            return False
        return await self._sessions.is_alive(session)

    async def refresh_status(self) -> InstanceStatus:
        """Poll the pane once and update the activity flag.

        A session that vanished is reported as not alive and leaves the status as is.
        """

        phase = self._require_live("refresh")
        if not await self._sessions.is_alive(phase.session):
            logger.warning("Session is not alive", extra={"title": self._title, "session": phase.session.name})
            return phase.activity
        activity = await self._monitor.refresh(phase.session, auto_accept=self.auto_accept_prompts)
        if activity is Activity.RUNNING:
            phase.activity = InstanceStatus.RUNNING
        elif activity is Activity.READY:
            phase.activity = InstanceStatus.READY
        return phase.activity

    async def update_diff_stats(self) -> DiffStats:
        worktree = self.worktree
        if worktree is None or not worktree.exists:
            self.diff_stats = DiffStats()
        else:
            self.diff_stats = await self._worktrees.diff_stats(worktree)
        return self.diff_stats

    def has_recent_output(self, within: float = 1.0) -> bool:
        return self.live and self._monitor.has_recent_output(within)

    async def preview(self) -> str:
        session = self.session
        if session is None or not await self._sessions.is_alive(session):
            return ""
        return await self._sessions.capture_pane(session)

    async def wait_for_input_ready(self, timeout: float, *, interval: float = 0.1) -> bool:
        """Wait until the pane shows a settled, non-empty screen.

        Returns ``False`` on timeout; callers may still try to send input.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        previous: str | None = None
        while True:
            session = self.session
            if session is not None and await self._sessions.is_alive(session):
                content = await self._sessions.capture_pane(session)
                if content.strip() and content == previous:
                    return True
                previous = content
            if loop.time() >= deadline:
                logger.debug("Input readiness wait timed out", extra={"title": self._title, "timeout": timeout})
                return False
            await asyncio.sleep(interval)

    async def send_prompt(self, text: str) -> None:
        phase = self._require_live("send a prompt to")
        if not await self._sessions.is_alive(phase.session):
            raise InvalidTransitionError(f"Session of '{self._title}' is not running")
        await self._sessions.send_keys(phase.session, text)
        # give the agent's input widget a moment before submitting
        await asyncio.sleep(0.1)
        await self._sessions.tap_enter(phase.session)

    async def push_changes(self, message: str, *, include_untracked: bool = True) -> bool:
        worktree = self._require_live("push changes of").worktree
        return await self._worktrees.push_changes(worktree, message, include_untracked=include_untracked)

    # -- Persistence -------------------------------------------------------

    @property
    def persistable(self) -> bool:
        return isinstance(self._phase, (LivePhase, PausedPhase))

    def to_record(self) -> InstanceRecord:
        phase = self._phase
        if not isinstance(phase, (LivePhase, PausedPhase)):
            raise InvalidTransitionError(f"Instance '{self._title}' has nothing to persist yet")
        worktree = phase.worktree
        # a reloaded instance awaiting restore keeps the record it was loaded from
        restoring = self._needs_restore and isinstance(phase, PausedPhase)
        status = self._stored_status if restoring else self.status
        return InstanceRecord(
            title=self._title,
            program=self.program,
            status=status.value,
            repo_path=str(worktree.repo_path),
            branch=worktree.branch,
            worktree_path=None if status is InstanceStatus.PAUSED else str(worktree.path),
            base_commit_sha=worktree.base_commit_sha,
            auto_accept_prompts=self.auto_accept_prompts,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_record(
        cls,
        record: InstanceRecord,
        *,
        worktrees: WorktreeController,
        sessions: SessionController,
        branch_prefix: str = "",
    ) -> "Instance":
        """Rebuild an instance; live ones come back paused until :meth:`restore`."""

        instance = cls(
            title=record.title,
            program=record.program,
            repo_path=Path(record.repo_path),
            worktrees=worktrees,
            sessions=sessions,
            branch_prefix=branch_prefix,
            auto_accept_prompts=record.auto_accept_prompts,
            created_at=record.created_at,
        )
        instance.updated_at = record.updated_at
        path = (
            Path(record.worktree_path)
            if record.worktree_path
            else worktrees.allocate_path(record.branch)
        )
        instance._phase = PausedPhase(
            worktree=Worktree(
                repo_path=Path(record.repo_path),
                path=path,
                branch=record.branch,
                base_commit_sha=record.base_commit_sha,
            )
        )
        instance._needs_restore = not record.paused
        instance._stored_status = InstanceStatus(record.status)
        return instance

    def summary(self) -> dict[str, object]:
        worktree = self.worktree
        return {
            "title": self._title,
            "program": self.program,
            "status": self.status.value,
            "branch": self.branch,
            "worktree_path": str(worktree.path) if worktree is not None and self.live else None,
            "session": self.session.name if self.session is not None else None,
            "auto_accept_prompts": self.auto_accept_prompts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "diff": self.diff_stats.as_dict(),
        }


__all__ = [
    "DeletingPhase",
    "Instance",
    "InstanceStatus",
    "LivePhase",
    "MAX_TITLE_LENGTH",
    "PausedPhase",
    "PendingPhase",
    "Phase",
    "validate_title",
]
