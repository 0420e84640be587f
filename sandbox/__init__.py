"""Sandbox – session-scoped working directories and time-boxed shell execution."""

from sandbox.executor import (
    ShellResult,
    ShellTimeout,
    cleanup_sandbox,
    get_sandbox_dir,
    run_shell,
    sandbox_root,
)

__all__ = [
    "ShellResult",
    "ShellTimeout",
    "cleanup_sandbox",
    "get_sandbox_dir",
    "run_shell",
    "sandbox_root",
]
