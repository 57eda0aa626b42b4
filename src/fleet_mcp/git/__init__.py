"""Git worktree management."""

from .diff import DiffStats, parse_diff
from .worktree import Worktree, WorktreeController, branch_name_for, sanitize_branch_component

__all__ = [
    "DiffStats",
    "Worktree",
    "WorktreeController",
    "branch_name_for",
    "parse_diff",
    "sanitize_branch_component",
]
