"""Exception hierarchy shared by the Fleet lifecycle components."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .process.runner import CommandResult


class FleetError(RuntimeError):
    """Base class for Fleet errors."""


class ToolNotFoundError(FleetError):
    """Raised when a required executable (git, tmux) cannot be located."""


class CommandError(FleetError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, message: str, *, result: "CommandResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class InstanceValidationError(FleetError):
    """Raised for bad input (title, limits) before any resource is touched."""


class InvalidTransitionError(FleetError):
    """Raised when a lifecycle operation is not allowed in the current phase."""


class ResourceCreationError(FleetError):
    """Raised when a worktree or session cannot be created during start or resume."""


class GuardViolationError(FleetError):
    """Raised when the instance branch is checked out in another worktree."""


class TeardownError(FleetError):
    """Raised when best-effort cleanup of a session or worktree fails."""

    def __init__(self, message: str, *, causes: list[BaseException] | None = None) -> None:
        super().__init__(message)
        self.causes = list(causes or [])


class StoreError(FleetError):
    """Raised when the instance snapshot cannot be read or written."""


__all__ = [
    "CommandError",
    "FleetError",
    "GuardViolationError",
    "InstanceValidationError",
    "InvalidTransitionError",
    "ResourceCreationError",
    "StoreError",
    "TeardownError",
    "ToolNotFoundError",
]
