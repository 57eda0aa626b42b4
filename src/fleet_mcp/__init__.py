"""Fleet MCP: run several coding agents side by side in isolated worktrees."""

__version__ = "0.1.0"

__all__ = ["__version__"]
