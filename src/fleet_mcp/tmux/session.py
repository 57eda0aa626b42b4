"""tmux sessions hosting agent programs."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from ..errors import CommandError, ResourceCreationError
from ..process import CommandRunner

logger = logging.getLogger(__name__)

_UNSAFE_SESSION_CHARS = re.compile(r"[\s.:]+")


def session_name_for(title: str, prefix: str) -> str:
    """Deterministic tmux session name for an instance title."""

    return prefix + _UNSAFE_SESSION_CHARS.sub("_", title.strip())


@dataclass(slots=True)
class Session:
    """Handle to a tmux session; liveness is always re-queried from tmux."""

    name: str
    program: str
    cwd: Path
    width: int | None = None
    height: int | None = None


class SessionController:
    """Thin async wrapper over the tmux command-line client."""

    def __init__(
        self,
        *,
        prefix: str = "fleet_",
        runner: CommandRunner | None = None,
        startup_timeout: float = 2.0,
    ) -> None:
        self._prefix = prefix
        self._tmux = runner or CommandRunner("tmux")
        self._startup_timeout = startup_timeout

    @property
    def prefix(self) -> str:
        return self._prefix

    def name_for(self, title: str) -> str:
        return session_name_for(title, self._prefix)

    async def _has_session(self, name: str) -> bool:
        try:
            result = await self._tmux.run("has-session", f"-t={name}", check=False)
        except OSError:
            return False
        return result.ok

    async def start(self, name: str, program: str, cwd: Path) -> Session:
        """Launch ``program`` in a new detached session rooted at ``cwd``."""

        if await self._has_session(name):
            raise ResourceCreationError(f"tmux session '{name}' already exists")

        # remain-on-exit is chained into the same client call so a program that exits
        # immediately still leaves an inspectable pane behind.
        try:
            await self._tmux.run(
                "new-session", "-d", "-s", name, "-c", str(cwd), program,
                ";", "set-option", "-t", name, "remain-on-exit", "on",
            )
        except CommandError as exc:
            raise ResourceCreationError(f"failed to start tmux session '{name}': {exc}") from exc
        except BaseException:
            # cancelled mid-call; tmux may already have created the session
            await self._kill_quietly(name)
            raise

        session = Session(name=name, program=program, cwd=Path(cwd))
        try:
            await self._wait_for_session(name)
        except BaseException:
            await self._kill_quietly(name)
            raise
        logger.info("Started tmux session", extra={"session": name, "program": program, "cwd": str(cwd)})
        return session

    async def _wait_for_session(self, name: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._startup_timeout
        delay = 0.01
        while not await self._has_session(name):
            if loop.time() >= deadline:
                raise ResourceCreationError(f"tmux session '{name}' did not come up")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.25)

    async def _kill_quietly(self, name: str) -> None:
        try:
            await self._tmux.run("kill-session", f"-t={name}", check=False)
        except OSError as exc:
            logger.warning("Could not kill session", extra={"session": name, "error": str(exc)})

    async def attach_existing(self, name: str, program: str, cwd: Path) -> Session | None:
        """Return a handle to an already running session, or ``None``."""

        if not await self._has_session(name):
            return None
        return Session(name=name, program=program, cwd=Path(cwd))

    async def kill(self, session: Session) -> None:
        """Kill the session; a session that is already gone counts as killed."""

        if not await self._has_session(session.name):
            return
        await self._tmux.run("kill-session", f"-t={session.name}")
        logger.info("Killed tmux session", extra={"session": session.name})

    async def is_alive(self, session: Session) -> bool:
        return await self._has_session(session.name)

    async def capture_pane(self, session: Session) -> str:
        result = await self._tmux.run("capture-pane", "-p", "-e", "-J", "-t", session.name)
        return result.stdout

    async def send_keys(self, session: Session, text: str) -> None:
        """Type ``text`` literally into the pane."""

        await self._tmux.run("send-keys", "-t", session.name, "-l", text)

    async def tap_enter(self, session: Session) -> None:
        await self._tmux.run("send-keys", "-t", session.name, "Enter")

    async def resize(self, session: Session, cols: int, rows: int) -> None:
        if cols < 1 or rows < 1:
            raise ValueError("cols and rows must be positive")
        await self._tmux.run("resize-window", "-t", session.name, "-x", str(cols), "-y", str(rows))
        session.width = cols
        session.height = rows

    async def list_sessions(self) -> list[str]:
        """Names of live sessions in this controller's namespace."""

        result = await self._tmux.run("list-sessions", "-F", "#{session_name}", check=False)
        if not result.ok:
            # no server running
            return []
        return [
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip().startswith(self._prefix)
        ]


__all__ = ["Session", "SessionController", "session_name_for"]
