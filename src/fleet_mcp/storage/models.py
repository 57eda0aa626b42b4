"""Data models for the persisted instance snapshot."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

KNOWN_STATUSES = frozenset({"loading", "running", "ready", "paused", "deleting"})


class InstanceRecord(BaseModel):
    """Metadata for one instance; carries no live handles."""

    title: str = Field(..., description="Unique instance title.")
    program: str = Field(..., description="Command line of the agent program.")
    status: str = Field(..., description="Status at the time of the save.")
    repo_path: str = Field(..., description="Root of the repository the worktree derives from.")
    branch: str = Field(..., description="Dedicated branch of the instance.")
    worktree_path: str | None = Field(
        default=None,
        description="Checked out directory; null while paused.",
    )
    base_commit_sha: str = Field(..., description="Commit the branch was created from.")
    auto_accept_prompts: bool = False
    created_at: datetime
    updated_at: datetime

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Instance title must not be empty")
        return normalized

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in KNOWN_STATUSES:
            raise ValueError(f"Unknown instance status '{value}'")
        return normalized

    @model_validator(mode="after")
    def _check_worktree_path(self) -> "InstanceRecord":
        if self.status == "paused" and self.worktree_path is not None:
            raise ValueError("Paused instances must not record a worktree path")
        if self.status != "paused" and not self.worktree_path:
            raise ValueError(f"Instance '{self.title}' is not paused but has no worktree path")
        return self

    @property
    def paused(self) -> bool:
        return self.status == "paused"


__all__ = ["InstanceRecord", "KNOWN_STATUSES"]
