"""Profile models for named agent programs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ProgramProfile(BaseModel):
    """A named preset describing which agent program an instance runs."""

    id: str = Field(..., description="Unique identifier for the profile.")
    program: str = Field(..., description="Command line launched inside the tmux session.")
    description: str = Field(default="", description="Human-friendly summary of the preset.")
    auto_accept_prompts: bool | None = Field(
        default=None,
        description="Override for accepting trust prompts automatically; unset inherits the global setting.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata, e.g. tags for filtering.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Program profile id must not be empty")
        return normalized

    @field_validator("program")
    @classmethod
    def _validate_program(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Program profile command must not be empty")
        return normalized


__all__ = ["ProgramProfile"]
