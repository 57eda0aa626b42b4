"""Async runner for the external command-line tools Fleet drives (git, tmux)."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from ..errors import CommandError, ToolNotFoundError
from .utils import sanitize_environment


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a single tool invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
        return f"`{' '.join(self.args)}` failed: {detail}"


class CommandRunner:
    """Execute one command-line tool asynchronously."""

    def __init__(self, name: str, executable: Path | None = None) -> None:
        self._name = name
        self._executable_path = self._resolve_executable(name, executable)

    @staticmethod
    def _resolve_executable(name: str, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ToolNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise ToolNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def name(self) -> str:
        return self._name

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: Path | str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run the tool with ``args``; raise ``CommandError`` on non-zero exit when ``check``."""

        result = await self._invoke(*args, cwd=cwd)
        if check and not result.ok:
            raise CommandError(result.describe(), result=result)
        return result

    async def output(self, *args: str, cwd: Path | str | None = None) -> str:
        """Run the tool and return stripped stdout."""

        result = await self.run(*args, cwd=cwd)
        return result.stdout.strip()

    async def _invoke(self, *args: str, cwd: Path | str | None = None) -> CommandResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=sanitize_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except BaseException:
            # a cancelled caller must not leave the tool running behind its back
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeCommandRunner(CommandRunner):
    """Test double that records invocations and replays canned results.

    ``handler`` receives the argument tuple and returns a result (or ``None`` for a
    successful empty result). Without a handler, queued ``responses`` are popped in
    order.
    """

    def __init__(  # type: ignore[override]
        self,
        name: str = "fake",
        responses: Iterable[CommandResult] | None = None,
        handler: Callable[[tuple[str, ...]], CommandResult | None] | None = None,
    ) -> None:
        self._name = name
        self._responses = list(responses or [])
        self._handler = handler
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path(f"/tmp/fake-{name}")

    async def _invoke(self, *args: str, cwd: Path | str | None = None) -> CommandResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._handler is not None:
            result = self._handler(tuple(args))
            if result is not None:
                return result
        elif self._responses:
            return self._responses.pop(0)
        return CommandResult(args=(self._name, *args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


def canned_result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    """Shorthand for building canned results in handlers."""

    return CommandResult(args=(), returncode=returncode, stdout=stdout, stderr=stderr)
