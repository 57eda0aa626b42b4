"""FastMCP server bootstrap for Fleet."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import FleetSettings, get_settings
from .errors import ToolNotFoundError
from .instances import InstanceManager
from .profiles import ProfileLoadError, ProfileLoader
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Fleet server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[FleetSettings] = None,
    manager: InstanceManager | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools, status resource and lifespan."""

    settings = settings or get_settings()

    profile_loader = ProfileLoader(settings.profile_paths)

    runtime_metadata: dict[str, Any] = {
        "available": False,
        "error": None,
        "state_path": str(settings.state_path),
        "worktree_root": str(settings.worktree_root),
    }

    if manager is None:
        try:
            manager = InstanceManager(settings)
            runtime_metadata["available"] = True
        except ToolNotFoundError as exc:
            runtime_metadata["error"] = str(exc)
            manager = None
    else:
        runtime_metadata["available"] = True

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        if manager is None:
            yield
            return

        await manager.load()
        sweeper = asyncio.create_task(manager.run_sweeper(), name="fleet-sweeper")
        try:
            yield
        finally:
            await manager.close()
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

    server = FastMCP(
        name="Fleet MCP",
        version=__version__,
        instructions=(
            "Fleet runs coding agents side by side, each in its own git worktree and "
            "tmux session. Use the provided tools to create, observe, pause, resume, "
            "push and delete instances."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        profiles=profile_loader,
        settings=settings,
        manager=manager,
    )

    @server.resource(
        "resource://fleet/status",
        name="fleet_status",
        title="Fleet MCP Status",
        description="Provides the current runtime status for the Fleet MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            profiles = profile_loader.load_all()
            profile_ids = sorted(profiles.keys())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        instances = manager.instances if manager is not None else []
        status_counts: dict[str, int] = {}
        for instance in instances:
            status = instance.status.value
            status_counts[status] = status_counts.get(status, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profiles": {
                "count": len(profile_ids),
                "ids": profile_ids,
                "error": profile_error,
            },
            "runtime": runtime_metadata,
            "instances": {
                "count": len(instances),
                "limit": settings.instance_limit,
                "status_counts": status_counts,
                "titles": [instance.title for instance in instances],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "profile_loader", profile_loader)
    setattr(server, "instance_manager", manager)
    setattr(server, "runtime_metadata", runtime_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Fleet MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Fleet MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "runtime_available": getattr(server, "runtime_metadata", {}).get("available"),
            "state_path": str(settings.state_path),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
