"""Incremental progress reporting for asynchronous instance start."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import AsyncIterator, Callable


class StartStage(str, enum.Enum):
    INITIALIZING = "initializing"
    CREATING_WORKSPACE = "creating_workspace"
    STARTING_SESSION = "starting_session"
    WAITING_FOR_AGENT_READY = "waiting_for_agent_ready"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (StartStage.COMPLETE, StartStage.FAILED)


STAGE_MESSAGES: dict[StartStage, str] = {
    StartStage.INITIALIZING: "Initializing...",
    StartStage.CREATING_WORKSPACE: "Creating git worktree...",
    StartStage.STARTING_SESSION: "Starting tmux session...",
    StartStage.WAITING_FOR_AGENT_READY: "Waiting for agent to be ready...",
    StartStage.COMPLETE: "Ready",
    StartStage.FAILED: "Failed",
}


@dataclass(frozen=True, slots=True)
class InitProgress:
    stage: StartStage
    message: str
    error: BaseException | None = None

    @property
    def terminal(self) -> bool:
        return self.stage.terminal


_END = object()


def _progress(stage: StartStage, error: BaseException | None) -> InitProgress:
    message = STAGE_MESSAGES[stage]
    if error is not None:
        message = f"{message}: {error}"
    return InitProgress(stage=stage, message=message, error=error)


class ProgressStream:
    """Single-producer, single-consumer stream of start progress.

    Holds at most one undelivered message, so the producer waits for the consumer
    instead of buffering. The stream ends with exactly one terminal message; reading
    past the end (or a producer that closed early) yields ``None``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=1)
        self._finished = False
        self._closed = False

    @property
    def finished(self) -> bool:
        """Whether a terminal message has been handed to the queue."""

        return self._finished

    async def publish(self, stage: StartStage, *, error: BaseException | None = None) -> None:
        if self._finished:
            raise RuntimeError("progress stream already finished")
        await self._queue.put(_progress(stage, error))
        # set only once queued, so finish_nowait can still deliver an interrupted terminal put
        if stage.terminal:
            self._finished = True

    def finish_nowait(self, stage: StartStage, *, error: BaseException | None = None) -> None:
        """Emit terminal ``stage`` without waiting, dropping an undelivered intermediate message."""

        if not stage.terminal:
            raise ValueError(f"{stage.value} is not a terminal stage")
        if self._finished:
            return
        self._finished = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_progress(stage, error))

    def fail_nowait(self, error: BaseException) -> None:
        self.finish_nowait(StartStage.FAILED, error=error)

    def close(self) -> None:
        """End the stream; readers see end of stream once queued messages are drained."""

        if self._closed or self._finished:
            return
        self._closed = True
        if not self._queue.full():
            self._queue.put_nowait(_END)

    async def receive(self) -> InitProgress | None:
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _END:
            return None
        if not isinstance(item, InitProgress):
            raise TypeError(f"unexpected progress item {item!r}")
        return item

    def __aiter__(self) -> AsyncIterator[InitProgress]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[InitProgress]:
        while True:
            update = await self.receive()
            if update is None:
                return
            yield update
            if update.terminal:
                return

    async def wait_finished(
        self, on_progress: Callable[[InitProgress], None] | None = None
    ) -> InitProgress:
        """Consume until the terminal message; a closed stream counts as ``complete``."""

        async for update in self:
            if on_progress is not None:
                on_progress(update)
            if update.terminal:
                return update
        return InitProgress(stage=StartStage.COMPLETE, message=STAGE_MESSAGES[StartStage.COMPLETE])


__all__ = ["InitProgress", "ProgressStream", "STAGE_MESSAGES", "StartStage"]
