"""Diff statistics for an instance worktree."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class DiffStats:
    """Line counts of a worktree's changes relative to its base commit."""

    added: int = 0
    removed: int = 0
    content: str = ""

    @property
    def is_empty(self) -> bool:
        return self.added == 0 and self.removed == 0 and not self.content

    def as_dict(self, *, include_content: bool = False) -> dict[str, object]:
        payload: dict[str, object] = {"added": self.added, "removed": self.removed}
        if include_content:
            payload["content"] = self.content
        return payload


def parse_diff(content: str) -> DiffStats:
    """Count added and removed lines in unified diff output."""

    added = removed = 0
    for line in content.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return DiffStats(added=added, removed=removed, content=content)


__all__ = ["DiffStats", "parse_diff"]
