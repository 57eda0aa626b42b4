"""Loading of program presets from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from ..errors import FleetError
from .models import ProgramProfile


class ProfileLoadError(FleetError):
    """Raised when profile files cannot be parsed or a profile id is unknown."""


class ProfileLoader:
    """Reads program presets from every ``*.yml``/``*.yaml`` file in the search paths.

    A file holds one preset mapping or a list of them. Ids must be unique within one
    search path; a later search path replaces presets of an earlier one, so a user
    directory can override the bundled ``profiles/agents.yaml``.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, ProgramProfile]:
        """Return presets by id; problems from every file are reported together."""

        profiles: dict[str, ProgramProfile] = {}
        errors: list[str] = []
        for base in self._search_paths:
            seen: dict[str, Path] = {}
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                for entry in self._entries(path, errors):
                    try:
                        profile = ProgramProfile.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Profile validation error in {path}: {exc}")
                        continue
                    if profile.id in seen:
                        errors.append(
                            f"Profile '{profile.id}' in {path} is already defined in {seen[profile.id]}"
                        )
                        continue
                    seen[profile.id] = path
                    profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))
        return profiles

    @staticmethod
    def _entries(path: Path, errors: list[str]) -> list[Any]:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - library type
            errors.append(f"Failed to parse YAML in {path}: {exc}")
            return []
        if document is None:
            return []
        return document if isinstance(document, list) else [document]

    def get(self, profile_id: str) -> ProgramProfile:
        profiles = self.load_all()
        try:
            return profiles[profile_id]
        except KeyError as exc:
            available = ", ".join(sorted(profiles)) or "none"
            raise ProfileLoadError(
                f"Unknown profile '{profile_id}' (available: {available})"
            ) from exc


__all__ = ["ProfileLoadError", "ProfileLoader"]
