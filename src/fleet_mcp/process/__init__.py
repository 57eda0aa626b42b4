"""Subprocess orchestration utilities."""

from .runner import CommandResult, CommandRunner, FakeCommandRunner, canned_result

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "canned_result",
]
