"""Tool registration for Fleet MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..config import FleetSettings
from ..instances import InitProgress, Instance, InstanceManager, StartStage
from ..profiles import ProfileLoader

if TYPE_CHECKING:
    from fastmcp import Context, FastMCP


@dataclass(slots=True)
class ToolHandles:
    create_instance: Any
    list_instances: Any
    instance_status: Any
    preview_instance: Any
    send_prompt: Any
    pause_instance: Any
    resume_instance: Any
    delete_instance: Any
    push_changes: Any
    list_profiles: Any


def register_tools(
    server: FastMCP,
    *,
    profiles: ProfileLoader,
    settings: FleetSettings,
    manager: InstanceManager | None,
) -> ToolHandles:
    """Register Fleet's MCP tools on the server."""

    def _require_manager() -> InstanceManager:
        if manager is None:
            raise RuntimeError("Instance manager is unavailable; install git and tmux to manage instances")
        return manager

    def _lookup(title: str) -> tuple[InstanceManager, Instance]:
        active = _require_manager()
        return active, active.get(title)

    async def _create_instance(
        title: str,
        *,
        program: str | None = None,
        profile_id: str | None = None,
        prompt: str | None = None,
        auto_accept_prompts: bool | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create an instance, wait for its start to finish and optionally send a first prompt."""

        active = _require_manager()
        if program and profile_id:
            raise ValueError("Pass either program or profile_id, not both")
        if profile_id:
            profile = profiles.get(profile_id)
            program = profile.program
            if auto_accept_prompts is None:
                auto_accept_prompts = profile.auto_accept_prompts

        instance, stream = await active.create_instance(
            title, program=program, auto_accept_prompts=auto_accept_prompts
        )

        progress: list[str] = []

        def _record(update: InitProgress) -> None:
            progress.append(update.message)
            _emit_log(
                context,
                "debug",
                "Instance start progress",
                extra={"title": instance.title, "stage": update.stage.value},
            )

        final = await stream.wait_finished(_record)
        if final.stage is StartStage.FAILED:
            _emit_log(
                context,
                "error",
                "Instance start failed",
                extra={"title": instance.title, "error": str(final.error)},
            )
            return {
                "title": instance.title,
                "status": "failed",
                "progress": progress,
                "error": str(final.error),
            }

        response: dict[str, Any] = {
            **instance.summary(),
            "progress": progress,
        }
        if prompt:
            # readiness is advisory: send regardless once the wait is over
            response["input_ready"] = await instance.wait_for_input_ready(settings.ready_timeout)
            await active.send_prompt(instance, prompt)
            response["prompt_sent"] = True

        _emit_log(
            context,
            "info",
            "Created instance",
            extra={"title": instance.title, "branch": instance.branch, "program": instance.program},
        )
        return response

    def _list_instances(context: Context | None = None) -> list[dict[str, Any]]:
        """List managed instances in creation order."""

        active = _require_manager()
        catalog = [instance.summary() for instance in active.instances]
        _emit_log(context, "debug", "Listing instances", extra={"count": len(catalog)})
        return catalog

    async def _instance_status(
        title: str,
        *,
        refresh_diff: bool = False,
        include_diff: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report status, diff stats and recent activity of one instance."""

        active, instance = _lookup(title)
        stats = await active.diff_stats(instance, refresh=refresh_diff)
        payload = instance.summary()
        payload["diff"] = stats.as_dict(include_content=include_diff)
        payload["has_recent_output"] = instance.has_recent_output(settings.poll_interval * 2)
        payload["session_alive"] = await instance.session_alive()
        _emit_log(context, "debug", "Instance status", extra={"title": title, "status": payload["status"]})
        return payload

    async def _preview_instance(title: str, context: Context | None = None) -> dict[str, Any]:
        """Return the current pane content of an instance's session."""

        _, instance = _lookup(title)
        content = await instance.preview()
        return {"title": title, "status": instance.status.value, "content": content}

    async def _send_prompt(title: str, prompt: str, context: Context | None = None) -> dict[str, Any]:
        """Type a prompt into a running instance and submit it."""

        active, instance = _lookup(title)
        await active.send_prompt(instance, prompt)
        _emit_log(context, "info", "Sent prompt", extra={"title": title, "length": len(prompt)})
        return {"title": title, "sent": True}

    async def _pause_instance(title: str, context: Context | None = None) -> dict[str, Any]:
        """Pause an instance: commit its work, stop the session, keep only the branch."""

        active, instance = _lookup(title)
        await active.pause(instance)
        _emit_log(context, "info", "Paused instance", extra={"title": title})
        return instance.summary()

    async def _resume_instance(title: str, context: Context | None = None) -> dict[str, Any]:
        """Resume a paused instance on its existing branch."""

        active, instance = _lookup(title)
        await active.resume(instance)
        _emit_log(context, "info", "Resumed instance", extra={"title": title})
        return instance.summary()

    async def _delete_instance(title: str, context: Context | None = None) -> dict[str, Any]:
        """Delete an instance together with its session, worktree and branch."""

        active, instance = _lookup(title)
        await active.delete(instance)
        _emit_log(context, "warning", "Deleted instance", extra={"title": title})
        return {"title": title, "deleted": True}

    async def _push_changes(
        title: str,
        *,
        message: str | None = None,
        include_untracked: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Commit pending changes of an instance and push its branch."""

        active, instance = _lookup(title)
        committed = await active.push_changes(instance, message, include_untracked=include_untracked)
        _emit_log(
            context,
            "info",
            "Pushed changes",
            extra={"title": title, "branch": instance.branch, "committed": committed},
        )
        return {"title": title, "branch": instance.branch, "committed": committed, "pushed": True}

    def _list_profiles(context: Context | None = None) -> list[dict[str, Any]]:
        """List available program profiles."""

        profile_map = profiles.load_all()
        catalog = [
            {
                "id": profile.id,
                "program": profile.program,
                "description": profile.description,
                "auto_accept_prompts": profile.auto_accept_prompts,
                "tags": profile.metadata.get("tags", []),
            }
            for profile in profile_map.values()
        ]
        _emit_log(context, "debug", "Listing program profiles", extra={"count": len(catalog)})
        return catalog

    tool_create = server.tool(
        name="create_instance",
        description=(
            "Create a coding-agent instance in its own git worktree and tmux session. "
            "Provide a title and either a program command or a profile id; an optional "
            "prompt is typed into the agent once it is ready. Returns start progress."
        ),
    )(_create_instance)

    tool_list = server.tool(
        name="list_instances",
        description="List managed instances with status, branch and diff stats.",
    )(_list_instances)

    tool_status = server.tool(
        name="instance_status",
        description="Show status, diff stats and recent activity of one instance.",
    )(_instance_status)

    tool_preview = server.tool(
        name="preview_instance",
        description="Capture the current terminal output of an instance.",
    )(_preview_instance)

    tool_prompt = server.tool(
        name="send_prompt",
        description="Send a prompt to a running instance's agent.",
    )(_send_prompt)

    tool_pause = server.tool(
        name="pause_instance",
        description="Pause an instance, committing its work and freeing the worktree directory.",
    )(_pause_instance)

    tool_resume = server.tool(
        name="resume_instance",
        description="Resume a paused instance on its branch.",
    )(_resume_instance)

    tool_delete = server.tool(
        name="delete_instance",
        description="Delete an instance along with its session, worktree and branch.",
        annotations={"destructiveHint": True},
    )(_delete_instance)

    tool_push = server.tool(
        name="push_changes",
        description="Commit an instance's changes and push its branch to the configured remote.",
    )(_push_changes)

    tool_profiles = server.tool(
        name="list_profiles",
        description="List program profiles usable with create_instance.",
    )(_list_profiles)

    return ToolHandles(
        create_instance=tool_create,
        list_instances=tool_list,
        instance_status=tool_status,
        preview_instance=tool_preview,
        send_prompt=tool_prompt,
        pause_instance=tool_pause,
        resume_instance=tool_resume,
        delete_instance=tool_delete,
        push_changes=tool_push,
        list_profiles=tool_profiles,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
