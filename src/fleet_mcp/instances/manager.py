"""Orchestrates the lifecycle of all instances owned by one Fleet process."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path

from ..config import FleetSettings
from ..errors import (
    FleetError,
    GuardViolationError,
    InstanceValidationError,
    InvalidTransitionError,
    StoreError,
)
from ..git import DiffStats, WorktreeController
from ..storage import InstanceStore
from ..tmux import SessionController
from .instance import Instance, InstanceStatus, validate_title
from .progress import ProgressStream, StartStage

logger = logging.getLogger(__name__)

_SWEEPABLE = (InstanceStatus.LOADING, InstanceStatus.RUNNING, InstanceStatus.READY)


class InstanceManager:
    """Owns the ordered instance list and every lifecycle operation on it."""

    def __init__(
        self,
        settings: FleetSettings,
        *,
        worktrees: WorktreeController | None = None,
        sessions: SessionController | None = None,
        store: InstanceStore | None = None,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self._settings = settings
        self._worktrees = worktrees or WorktreeController(
            settings.worktree_root, remote=settings.git_remote
        )
        self._sessions = sessions or SessionController(prefix=settings.session_prefix)
        self._store = store or InstanceStore(settings.state_path)
        self._shutdown = shutdown or asyncio.Event()
        self._instances: list[Instance] = []
        self._start_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def settings(self) -> FleetSettings:
        return self._settings

    @property
    def store(self) -> InstanceStore:
        return self._store

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    @property
    def instances(self) -> list[Instance]:
        """Snapshot of the instance list in creation order."""

        return list(self._instances)

    def get(self, title: str) -> Instance:
        for instance in self._instances:
            if instance.title == title:
                return instance
        raise InstanceValidationError(f"No instance named '{title}'")

    # -- Persistence -------------------------------------------------------

    async def load(self) -> list[Instance]:
        """Rebuild instances from the store and re-attach to their sessions."""

        records = await self._store.load()
        for record in records:
            if any(existing.title == record.title for existing in self._instances):
                logger.warning("Skipping duplicate stored instance", extra={"title": record.title})
                continue
            instance = Instance.from_record(
                record,
                worktrees=self._worktrees,
                sessions=self._sessions,
                branch_prefix=self._settings.branch_prefix,
            )
            if self._settings.auto_accept_prompts:
                instance.auto_accept_prompts = True
            self._instances.append(instance)

        for instance in self._instances:
            if not instance.needs_restore:
                continue
            async with instance.lock:
                try:
                    await instance.restore()
                except FleetError as exc:
                    logger.warning(
                        "Instance restored as paused",
                        extra={"title": instance.title, "error": str(exc)},
                    )

        await self.save()
        logger.info("Loaded instances", extra={"count": len(self._instances)})
        return self.instances

    async def save(self) -> None:
        """Persist every started instance that is not being deleted."""

        records = [instance.to_record() for instance in self._instances if instance.persistable]
        await self._store.save(records)

    # -- Creation ----------------------------------------------------------

    def new_instance(
        self,
        title: str,
        *,
        program: str | None = None,
        repo_path: Path | None = None,
        auto_accept_prompts: bool | None = None,
    ) -> Instance:
        """Register a pending instance after validating its title and the global limit."""

        title = validate_title(title)
        if len(self._instances) >= self._settings.instance_limit:
            raise InstanceValidationError(
                f"You can't create more than {self._settings.instance_limit} instances"
            )
        if any(existing.title == title for existing in self._instances):
            raise InstanceValidationError(f"An instance named '{title}' already exists")

        instance = Instance(
            title=title,
            program=program or self._settings.default_program,
            repo_path=repo_path or self._settings.repo_path,
            worktrees=self._worktrees,
            sessions=self._sessions,
            branch_prefix=self._settings.branch_prefix,
            auto_accept_prompts=(
                self._settings.auto_accept_prompts
                if auto_accept_prompts is None
                else auto_accept_prompts
            ),
        )
        self._instances.append(instance)
        return instance

    def start(self, instance: Instance) -> ProgressStream:
        """Start ``instance`` in the background and return its progress stream."""

        if instance not in self._instances:
            raise InstanceValidationError(f"Instance '{instance.title}' is not managed here")
        if instance.started or instance.title in self._start_tasks:
            raise InvalidTransitionError(f"Instance '{instance.title}' has already been started")
        if self._shutdown.is_set():
            raise InvalidTransitionError("Fleet is shutting down")

        stream = ProgressStream()
        task = asyncio.create_task(
            self._run_start(instance, stream), name=f"fleet-start-{instance.title}"
        )
        self._start_tasks[instance.title] = task
        task.add_done_callback(lambda _task, title=instance.title: self._start_tasks.pop(title, None))
        return stream

    async def create_instance(
        self,
        title: str,
        *,
        program: str | None = None,
        repo_path: Path | None = None,
        auto_accept_prompts: bool | None = None,
    ) -> tuple[Instance, ProgressStream]:
        instance = self.new_instance(
            title, program=program, repo_path=repo_path, auto_accept_prompts=auto_accept_prompts
        )
        try:
            stream = self.start(instance)
        except FleetError:
            self._instances.remove(instance)
            raise
        return instance, stream

    async def _run_start(self, instance: Instance, stream: ProgressStream) -> None:
        try:
            await self._start_and_report(instance, stream)
        finally:
            stream.close()

    async def _start_and_report(self, instance: Instance, stream: ProgressStream) -> None:
        try:
            async with instance.lock:
                await instance.start(stream.publish, shutdown=self._shutdown)
                await self.save()
        except asyncio.CancelledError:
            await self._discard_failed_start(instance)
            stream.fail_nowait(FleetError("instance start cancelled"))
            raise
        except Exception as exc:
            logger.error(
                "Instance start failed",
                extra={"title": instance.title, "error": str(exc)},
            )
            await self._discard_failed_start(instance)
            try:
                await stream.publish(StartStage.FAILED, error=exc)
            except asyncio.CancelledError:
                stream.fail_nowait(exc)
                raise
            return

        logger.info("Instance ready", extra={"title": instance.title, "branch": instance.branch})
        try:
            await stream.publish(StartStage.COMPLETE)
        except asyncio.CancelledError:
            # live and saved already; only the delivery was interrupted
            stream.finish_nowait(StartStage.COMPLETE)
            raise

    async def _discard_failed_start(self, instance: Instance) -> None:
        if instance.started:
            # the snapshot write failed after resources came up
            try:
                await instance.kill()
            except FleetError as exc:
                logger.error(
                    "Cleanup after failed start incomplete",
                    extra={"title": instance.title, "error": str(exc)},
                )
        if instance in self._instances:
            self._instances.remove(instance)

    # -- Lifecycle ---------------------------------------------------------

    async def pause(self, instance: Instance) -> None:
        async with instance.lock:
            await instance.pause()
            await self.save()

    async def resume(self, instance: Instance) -> None:
        async with instance.lock:
            await instance.resume()
            await self.save()

    async def delete(self, instance: Instance) -> None:
        """Delete ``instance``: guard, drop its metadata, then tear resources down.

        Once the metadata is gone the instance is deleted even if teardown fails; the
        resulting ``TeardownError`` is raised after the instance has been removed.
        """

        if instance.status is InstanceStatus.DELETING:
            raise InvalidTransitionError(f"Instance '{instance.title}' is already being deleted")

        task = self._start_tasks.get(instance.title)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            # a start cancelled before going live has already discarded the instance
            if instance not in self._instances:
                return

        async with instance.lock:
            instance.mark_deleting()
            try:
                if await instance.is_branch_checked_out_elsewhere():
                    raise GuardViolationError(
                        f"Instance '{instance.title}' is currently checked out (branch '{instance.branch}')"
                    )
                await self._store.delete(instance.title)
            except Exception:
                instance.unmark_deleting()
                raise

            if instance in self._instances:
                self._instances.remove(instance)
            logger.info("Deleted instance metadata", extra={"title": instance.title})
            await instance.kill()

    # -- Agent interaction -------------------------------------------------

    async def send_prompt(self, instance: Instance, prompt: str) -> None:
        async with instance.lock:
            await instance.send_prompt(prompt)

    async def push_changes(
        self,
        instance: Instance,
        message: str | None = None,
        *,
        include_untracked: bool = True,
    ) -> bool:
        if message is None:
            message = (
                f"[fleet] update from '{instance.title}' on "
                f"{format_datetime(datetime.now(timezone.utc))}"
            )
        async with instance.lock:
            return await instance.push_changes(message, include_untracked=include_untracked)

    async def diff_stats(self, instance: Instance, *, refresh: bool = False) -> DiffStats:
        if refresh and instance.live:
            async with instance.lock:
                return await instance.update_diff_stats()
        return instance.diff_stats

    # -- Monitoring --------------------------------------------------------

    async def sweep(self) -> None:
        """Refresh status and diff stats of every live instance once."""

        targets = [
            instance
            for instance in self._instances
            if instance.live and instance.status in _SWEEPABLE
        ]
        if targets:
            await asyncio.gather(*(self._refresh(instance) for instance in targets))

    async def _refresh(self, instance: Instance) -> None:
        # busy with a lifecycle operation; pick it up on the next tick
        if instance.lock.locked():
            return
        interval = self._settings.poll_interval
        async with instance.lock:
            if not instance.live:
                return
            try:
                await asyncio.wait_for(instance.refresh_status(), timeout=interval)
                await asyncio.wait_for(instance.update_diff_stats(), timeout=interval)
            except asyncio.TimeoutError:
                logger.warning("Instance refresh timed out", extra={"title": instance.title})
            except (FleetError, OSError) as exc:
                logger.warning(
                    "Instance refresh failed",
                    extra={"title": instance.title, "error": str(exc)},
                )

    async def run_sweeper(self) -> None:
        """Sweep at a fixed cadence until shutdown is requested."""

        loop = asyncio.get_running_loop()
        interval = self._settings.poll_interval
        while not self._shutdown.is_set():
            started = loop.time()
            await self.sweep()
            remaining = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    async def close(self) -> None:
        """Signal shutdown, cancel in-flight starts and write a final snapshot."""

        self._shutdown.set()
        tasks = [task for task in self._start_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.save()
        except StoreError as exc:
            logger.error("Could not save instances on shutdown", extra={"error": str(exc)})


__all__ = ["InstanceManager"]
