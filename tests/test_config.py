from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from fleet_mcp.config import FleetSettings, get_settings


def test_settings_from_environment(settings: FleetSettings, tmp_path: Path) -> None:
    assert settings.default_program == "claude"
    assert settings.branch_prefix == "alice/"
    assert settings.session_prefix == "fleet_"
    assert settings.instance_limit == 10
    assert settings.poll_interval == pytest.approx(0.2)
    assert settings.state_path == tmp_path / "home" / "instances.json"
    assert settings.worktree_root == tmp_path / "home" / "worktrees"
    assert settings.profile_paths == (tmp_path / "profiles",)


def test_profile_paths_split_on_pathsep(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_PROFILE_PATHS", os.pathsep.join(["/a", "/b"]))

    assert FleetSettings().profile_paths == (Path("/a"), Path("/b"))


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FLEET_POLL_INTERVAL", "1.5"),
        ("FLEET_INSTANCE_LIMIT", "0"),
        ("FLEET_SESSION_PREFIX", "fleet.x"),
        ("FLEET_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_settings_are_rejected(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        FleetSettings()


def test_flags_and_log_level_are_normalized(monkeypatch) -> None:
    monkeypatch.setenv("FLEET_AUTO_YES", "true")
    monkeypatch.setenv("FLEET_LOG_LEVEL", "debug")
    monkeypatch.setenv("FLEET_BRANCH_PREFIX", "bob/")

    settings = FleetSettings()

    assert settings.auto_accept_prompts is True
    assert settings.log_level == "DEBUG"
    assert settings.branch_prefix == "bob/"


def test_get_settings_resolves_paths(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLEET_HOME", str(tmp_path / "home" / ".." / "state"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.home == (tmp_path / "state").resolve()
