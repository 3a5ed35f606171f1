"""Tools available to the agent and to workflow tool nodes."""

from .workspace_tools import (
    read_file,
    write_file,
    edit_file,
    list_files,
    search_files,
    register_workspace_tools,
)
from .command_tools import (
    run_command,
    git_status,
    git_diff,
    git_log,
    git_branch,
    run_tests,
    register_command_tools,
)

__all__ = [
    "read_file",
    "write_file",
    "edit_file",
    "list_files",
    "search_files",
    "register_workspace_tools",
    "run_command",
    "git_status",
    "git_diff",
    "git_log",
    "git_branch",
    "run_tests",
    "register_command_tools",
]
