"""Infer agent activity by hashing rendered pane output."""

from __future__ import annotations

import enum
import hashlib
import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Callable

from .session import Session, SessionController

# One-time confirmation screens some agent CLIs block on before doing any work.
_PROMPT_MARKERS: dict[str, str] = {
    "claude": "Do you trust the files in this folder?",
    "aider": "(Y)es/(N)o/(D)on't ask again",
    "gemini": "Yes, allow once",
}


def prompt_marker_for(program: str) -> str | None:
    """Return the confirmation text to look for in ``program``'s output, if any."""

    words = program.split()
    if not words:
        return None
    executable = PurePath(words[0]).name.lower()
    for name, marker in _PROMPT_MARKERS.items():
        if name in executable:
            return marker
    return None


class Activity(str, enum.Enum):
    RUNNING = "running"
    READY = "ready"
    AWAITING_INPUT = "awaiting_input"


@dataclass(slots=True)
class ActivityReading:
    updated: bool
    has_prompt: bool


class StatusMonitor:
    """Tracks one session's pane hash between polls."""

    def __init__(
        self,
        sessions: SessionController,
        program: str,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._sessions = sessions
        self._marker = prompt_marker_for(program)
        self._clock = clock or time.monotonic
        self._last_digest: bytes | None = None
        self._last_change: float | None = None

    def reset(self) -> None:
        self._last_digest = None
        self._last_change = None

    async def poll(self, session: Session) -> ActivityReading:
        content = await self._sessions.capture_pane(session)
        digest = hashlib.sha256(content.encode("utf-8")).digest()
        updated = digest != self._last_digest
        self._last_digest = digest
        if updated:
            self._last_change = self._clock()
        has_prompt = self._marker is not None and self._marker in content
        return ActivityReading(updated=updated, has_prompt=has_prompt)

    async def refresh(self, session: Session, *, auto_accept: bool) -> Activity:
        """Poll once and classify; accept a pending confirmation when allowed."""

        reading = await self.poll(session)
        if reading.updated:
            return Activity.RUNNING
        if reading.has_prompt and auto_accept:
            await self._sessions.tap_enter(session)
            return Activity.AWAITING_INPUT
        return Activity.READY

    def has_recent_output(self, within: float) -> bool:
        if self._last_change is None:
            return False
        return self._clock() - self._last_change <= within


__all__ = ["Activity", "ActivityReading", "StatusMonitor", "prompt_marker_for"]
