"""Command, git and test tools, run as subprocesses inside the workspace directory.

Commands are split with ``shlex`` and run without a shell, so pipes and
redirects are plain arguments. Only programs in ``ALLOWED_COMMANDS`` may run.
"""

import json
import re
import shlex
import subprocess
import sys
from typing import Any, Dict, List, Optional

from ..core.exceptions import ToolExecutionError
from ..core.logging import get_logger
from ..core.tool_registry import ToolContext, ToolRegistry
from .workspace_tools import resolve_path, workspace_dir

logger = get_logger(__name__)

ALLOWED_COMMANDS = {"git", "ls", "cat", "pwd", "echo", "python", "python3", "pytest", "node", "npm", "yarn"}
COMMAND_TIMEOUT = 30.0
PACKAGE_MANAGER_TIMEOUT = 120.0
GIT_TIMEOUT = 10.0
TEST_TIMEOUT = 60.0
MAX_OUTPUT_CHARS = 20000


def _clip(output: str) -> str:
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    return output[:MAX_OUTPUT_CHARS] + f"\n... [{len(output) - MAX_OUTPUT_CHARS} characters truncated]"


def run_in_workspace(
    argv: List[str],
    context: ToolContext,
    timeout: float,
    tool: str,
) -> subprocess.CompletedProcess:
    """Run ``argv`` with the workspace as working directory.

    Raises:
        ToolExecutionError: If the program is missing or exceeds ``timeout``
    """
    cwd = workspace_dir(context)
    logger.debug(f"{tool}: running {argv} in {cwd}")
    try:
        return subprocess.run(
            argv,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ToolExecutionError(f"Program not found: {argv[0]}", tool_name=tool)
    except subprocess.TimeoutExpired:
        raise ToolExecutionError(f"Command timed out after {timeout:g}s: {' '.join(argv)}", tool_name=tool)


def _checked(completed: subprocess.CompletedProcess, tool: str) -> str:
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()
        raise ToolExecutionError(
            f"{tool} exited with status {completed.returncode}: {_clip(detail)}",
            tool_name=tool,
            exit_code=completed.returncode,
        )
    return completed.stdout


def run_command(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    command = args.get("command")
    if not command or not isinstance(command, str):
        raise ToolExecutionError("Missing required argument 'command'", tool_name="run_command")
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise ToolExecutionError(f"Cannot parse command: {e}", tool_name="run_command")
    if not argv:
        raise ToolExecutionError("Empty command", tool_name="run_command")

    program = argv[0]
    if program not in ALLOWED_COMMANDS:
        raise ToolExecutionError(
            f"Command '{program}' is not allowed. Allowed commands: {', '.join(sorted(ALLOWED_COMMANDS))}",
            tool_name="run_command",
        )

    timeout = PACKAGE_MANAGER_TIMEOUT if program in ("npm", "yarn") else COMMAND_TIMEOUT
    stdout = _checked(run_in_workspace(argv, context, timeout, "run_command"), "run_command")
    return {"command": command, "stdout": _clip(stdout)}


def git_status(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    output = _checked(run_in_workspace(["git", "status", "--short"], context, GIT_TIMEOUT, "git_status"), "git_status")
    return {"status": output, "has_changes": bool(output.strip())}


def git_diff(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    argv = ["git", "diff"]
    file_path = args.get("file_path")
    if file_path:
        # reject paths outside the workspace before git sees them
        resolve_path(context, file_path)
        argv += ["--", file_path]
    output = _checked(run_in_workspace(argv, context, GIT_TIMEOUT, "git_diff"), "git_diff")
    return {"diff": _clip(output), "file": file_path}


def git_log(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    try:
        count = max(1, min(int(args.get("count") or 10), 100))
    except (TypeError, ValueError):
        raise ToolExecutionError("'count' must be an integer", tool_name="git_log")
    argv = ["git", "log", f"-{count}", "--oneline"]
    output = _checked(run_in_workspace(argv, context, GIT_TIMEOUT, "git_log"), "git_log")
    return {"log": output, "count": count}


def git_branch(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    output = _checked(run_in_workspace(["git", "branch"], context, GIT_TIMEOUT, "git_branch"), "git_branch")
    branches = [line[2:].strip() for line in output.splitlines() if line.strip()]
    current = next((line[2:].strip() for line in output.splitlines() if line.startswith("*")), None)
    return {"branches": branches, "current": current}


def _test_command(context: ToolContext, pattern: Optional[str]) -> List[str]:
    """npm when the workspace has a package.json test script, pytest otherwise."""
    package_json = workspace_dir(context) / "package.json"
    if package_json.is_file():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
        except (OSError, ValueError):
            scripts = {}
        if "test" in scripts or "test:unit" in scripts:
            argv = ["npm", "test"] if "test" in scripts else ["npm", "run", "test:unit"]
            return argv + (["--", pattern] if pattern else [])

    argv = [sys.executable, "-m", "pytest", "-q"]
    return argv + (["-k", pattern] if pattern else [])


def run_tests(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """Run the workspace's test suite; a failing suite is reported as data, not as an error."""
    argv = _test_command(context, args.get("pattern"))
    completed = run_in_workspace(argv, context, TEST_TIMEOUT, "run_tests")
    output = completed.stdout + completed.stderr

    passed = re.search(r"(\d+) passed", output)
    failed = re.search(r"(\d+) failed", output)
    return {
        "command": " ".join(argv),
        "passed": completed.returncode == 0,
        "exit_code": completed.returncode,
        "summary": f"{passed.group(1) if passed else 'unknown'} passed, {failed.group(1) if failed else 0} failed",
        "output": _clip(output),
    }


COMMAND_TOOLS = [
    (
        "run_command", run_command,
        "Run a command in the workspace (git, ls, cat, echo, python, pytest, node, npm, yarn). No shell.",
        {
            "type": "object",
            "properties": {"command": {"type": "string", "description": "Command line to run"}},
            "required": ["command"],
        },
    ),
    ("git_status", git_status, "Show git status for the workspace.", {"type": "object", "properties": {}}),
    (
        "git_diff", git_diff,
        "Show the git diff of the workspace, or of one file.",
        {"type": "object", "properties": {"file_path": {"type": "string"}}},
    ),
    (
        "git_log", git_log,
        "Show recent commits, one line each.",
        {"type": "object", "properties": {"count": {"type": "integer", "description": "Commits to show, default 10"}}},
    ),
    ("git_branch", git_branch, "List git branches and the current branch.", {"type": "object", "properties": {}}),
    (
        "run_tests", run_tests,
        "Run the workspace test suite (npm test when package.json defines it, pytest otherwise).",
        {"type": "object", "properties": {"pattern": {"type": "string", "description": "Test name filter"}}},
    ),
]


def register_command_tools(registry: ToolRegistry) -> None:
    """Register the command, git and test tools on ``registry``."""
    for name, function, description, schema in COMMAND_TOOLS:
        registry.register_tool(name, function, description, input_schema=schema, replace=True)
