from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fleet_mcp.errors import CommandError, ResourceCreationError
from fleet_mcp.process import CommandResult, FakeCommandRunner, canned_result
from fleet_mcp.tmux import Activity, Session, SessionController, StatusMonitor, prompt_marker_for, session_name_for


class FakeTmux:
    """Minimal in-memory tmux server behind a FakeCommandRunner."""

    def __init__(self, *, fail_new_session: bool = False) -> None:
        self.sessions: set[str] = set()
        self.panes: dict[str, str] = {}
        self.fail_new_session = fail_new_session
        self.runner = FakeCommandRunner("tmux", handler=self.handle)

    def handle(self, args: tuple[str, ...]) -> CommandResult | None:
        command = args[0]
        if command == "has-session":
            name = args[1].removeprefix("-t=")
            return canned_result(0 if name in self.sessions else 1)
        if command == "new-session":
            if self.fail_new_session:
                return canned_result(1, stderr="server exited unexpectedly")
            self.sessions.add(args[args.index("-s") + 1])
            return None
        if command == "kill-session":
            self.sessions.discard(args[1].removeprefix("-t="))
            return None
        if command == "capture-pane":
            return canned_result(stdout=self.panes.get(args[-1], ""))
        if command == "list-sessions":
            if not self.sessions:
                return canned_result(1, stderr="no server running")
            return canned_result(stdout="\n".join(sorted(self.sessions)) + "\n")
        return None


def test_session_name_replaces_unsafe_characters() -> None:
    assert session_name_for("fix bug.v2:now", "fleet_") == "fleet_fix_bug_v2_now"


def test_start_chains_remain_on_exit(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)

    session = asyncio.run(controller.start("fleet_fix", "claude", tmp_path))

    assert session.name == "fleet_fix"
    new_session = next(call for call in tmux.runner.invocations if call[0] == "new-session")
    assert new_session[:7] == ("new-session", "-d", "-s", "fleet_fix", "-c", str(tmp_path), "claude")
    assert new_session[7:] == (";", "set-option", "-t", "fleet_fix", "remain-on-exit", "on")


def test_start_refuses_existing_session(tmp_path: Path) -> None:
    tmux = FakeTmux()
    tmux.sessions.add("fleet_fix")
    controller = SessionController(runner=tmux.runner)

    with pytest.raises(ResourceCreationError):
        asyncio.run(controller.start("fleet_fix", "claude", tmp_path))


def test_start_failure_raises_resource_error(tmp_path: Path) -> None:
    tmux = FakeTmux(fail_new_session=True)
    controller = SessionController(runner=tmux.runner)

    with pytest.raises(ResourceCreationError):
        asyncio.run(controller.start("fleet_fix", "claude", tmp_path))


def test_start_times_out_and_cleans_up(tmp_path: Path) -> None:
    def handler(args: tuple[str, ...]) -> CommandResult | None:
        if args[0] == "has-session":
            return canned_result(1)
        return None

    runner = FakeCommandRunner("tmux", handler=handler)
    controller = SessionController(runner=runner, startup_timeout=0.05)

    with pytest.raises(ResourceCreationError, match="did not come up"):
        asyncio.run(controller.start("fleet_slow", "claude", tmp_path))

    assert ("kill-session", "-t=fleet_slow") in runner.invocations


def test_kill_is_noop_for_missing_session(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_gone", program="claude", cwd=tmp_path)

    asyncio.run(controller.kill(session))

    assert all(call[0] != "kill-session" for call in tmux.runner.invocations)


def test_attach_existing_only_for_live_sessions(tmp_path: Path) -> None:
    tmux = FakeTmux()
    tmux.sessions.add("fleet_live")
    controller = SessionController(runner=tmux.runner)

    assert asyncio.run(controller.attach_existing("fleet_live", "claude", tmp_path)) is not None
    assert asyncio.run(controller.attach_existing("fleet_dead", "claude", tmp_path)) is None


def test_send_keys_is_literal_and_enter_separate(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="claude", cwd=tmp_path)

    asyncio.run(controller.send_keys(session, "Enter the fix"))
    asyncio.run(controller.tap_enter(session))

    assert tmux.runner.invocations == [
        ("send-keys", "-t", "fleet_fix", "-l", "Enter the fix"),
        ("send-keys", "-t", "fleet_fix", "Enter"),
    ]


def test_resize_validates_dimensions(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="claude", cwd=tmp_path)

    asyncio.run(controller.resize(session, 120, 40))
    with pytest.raises(ValueError):
        asyncio.run(controller.resize(session, 0, 40))

    assert (session.width, session.height) == (120, 40)


def test_list_sessions_filters_prefix() -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)

    assert asyncio.run(controller.list_sessions()) == []

    tmux.sessions.update({"fleet_a", "fleet_b", "personal"})
    assert asyncio.run(controller.list_sessions()) == ["fleet_a", "fleet_b"]


def test_capture_pane_propagates_errors(tmp_path: Path) -> None:
    runner = FakeCommandRunner("tmux", [canned_result(1, stderr="can't find pane")])
    controller = SessionController(runner=runner)

    with pytest.raises(CommandError):
        asyncio.run(controller.capture_pane(Session(name="fleet_x", program="claude", cwd=tmp_path)))


def test_prompt_marker_matches_executable_name() -> None:
    assert prompt_marker_for("/usr/local/bin/claude --verbose") == "Do you trust the files in this folder?"
    assert prompt_marker_for("aider --model sonnet") is not None
    assert prompt_marker_for("echo hi") is None
    assert prompt_marker_for("") is None


def test_monitor_classifies_activity(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="claude", cwd=tmp_path)
    monitor = StatusMonitor(controller, "claude")

    async def scenario() -> list[Activity]:
        tmux.panes["fleet_fix"] = "thinking..."
        first = await monitor.refresh(session, auto_accept=False)
        unchanged = await monitor.refresh(session, auto_accept=False)
        tmux.panes["fleet_fix"] = "thinking... done"
        changed = await monitor.refresh(session, auto_accept=False)
        return [first, unchanged, changed]

    assert asyncio.run(scenario()) == [Activity.RUNNING, Activity.READY, Activity.RUNNING]


def test_monitor_auto_accepts_only_unchanged_prompt(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="claude", cwd=tmp_path)
    monitor = StatusMonitor(controller, "claude")
    tmux.panes["fleet_fix"] = "Do you trust the files in this folder?\n> Yes"

    async def scenario() -> list[Activity]:
        return [
            await monitor.refresh(session, auto_accept=True),
            await monitor.refresh(session, auto_accept=True),
        ]

    assert asyncio.run(scenario()) == [Activity.RUNNING, Activity.AWAITING_INPUT]
    assert tmux.runner.invocations.count(("send-keys", "-t", "fleet_fix", "Enter")) == 1


def test_monitor_leaves_prompt_alone_without_auto_accept(tmp_path: Path) -> None:
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="claude", cwd=tmp_path)
    monitor = StatusMonitor(controller, "claude")
    tmux.panes["fleet_fix"] = "Do you trust the files in this folder?"

    asyncio.run(monitor.refresh(session, auto_accept=False))
    activity = asyncio.run(monitor.refresh(session, auto_accept=False))

    assert activity is Activity.READY
    assert all(call[0] != "send-keys" for call in tmux.runner.invocations)


def test_monitor_recent_output_uses_clock(tmp_path: Path) -> None:
    now = [100.0]
    tmux = FakeTmux()
    controller = SessionController(runner=tmux.runner)
    session = Session(name="fleet_fix", program="echo hi", cwd=tmp_path)
    monitor = StatusMonitor(controller, "echo hi", clock=lambda: now[0])

    assert not monitor.has_recent_output(1.0)
    tmux.panes["fleet_fix"] = "hi"
    asyncio.run(monitor.poll(session))
    now[0] = 100.5
    assert monitor.has_recent_output(1.0)
    now[0] = 102.0
    assert not monitor.has_recent_output(1.0)


class StallingTmuxRunner(FakeCommandRunner):
    """Creates the session, then never returns from ``new-session``."""

    async def _invoke(self, *args: str, cwd: Path | str | None = None) -> CommandResult:  # type: ignore[override]
        result = await super()._invoke(*args, cwd=cwd)
        if args[0] == "new-session":
            await asyncio.Event().wait()
        return result


def test_cancelled_start_kills_half_created_session(tmp_path: Path) -> None:
    tmux = FakeTmux()
    runner = StallingTmuxRunner("tmux", handler=tmux.handle)
    controller = SessionController(runner=runner)

    async def scenario() -> None:
        task = asyncio.create_task(controller.start("fleet_fix", "claude", tmp_path))
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(scenario())

    assert "fleet_fix" not in tmux.sessions
    assert runner.invocations[-1] == ("kill-session", "-t=fleet_fix")
