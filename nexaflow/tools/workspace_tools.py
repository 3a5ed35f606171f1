"""File tools available to the agent, scoped to one workspace directory."""

import os
from pathlib import Path
from typing import Any, Dict

from ..core.exceptions import ToolExecutionError
from ..core.logging import get_logger
from ..core.tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)

SEARCHABLE_SUFFIXES = {
    ".py", ".ts", ".tsx", ".js", ".jsx", ".json", ".md", ".css", ".html",
    ".txt", ".yaml", ".yml", ".toml", ".cfg", ".ini",
}
SKIPPED_DIRECTORIES = {"node_modules", "__pycache__", ".git", ".venv", "venv"}
MAX_SEARCH_MATCHES = 500


def workspace_dir(context: ToolContext) -> Path:
    """Directory for the context's workspace, created on first use."""
    base = Path(context.workspace_root).resolve()
    root = (base / context.workspace_id).resolve()
    if base not in root.parents:
        raise ToolExecutionError(f"Invalid workspace id: {context.workspace_id}")
    root.mkdir(parents=True, exist_ok=True)
    return root


def resolve_path(context: ToolContext, relative_path: str) -> Path:
    """Resolve ``relative_path`` inside the workspace, rejecting anything that escapes it."""
    root = workspace_dir(context)
    full_path = (root / (relative_path or ".")).resolve()
    if full_path != root and root not in full_path.parents:
        raise ToolExecutionError("Access denied: path outside workspace directory")
    return full_path


def _require(args: Dict[str, Any], key: str, tool: str) -> Any:
    value = args.get(key)
    if value is None:
        raise ToolExecutionError(f"Missing required argument '{key}'", tool_name=tool)
    return value


def read_file(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    path = _require(args, "path", "read_file")
    full_path = resolve_path(context, path)
    if not full_path.is_file():
        raise ToolExecutionError(f"File not found: {path}", tool_name="read_file")
    content = full_path.read_text(encoding="utf-8")
    return {"path": path, "content": content, "size": len(content)}


def write_file(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    path = _require(args, "path", "write_file")
    content = _require(args, "content", "write_file")
    full_path = resolve_path(context, path)
    created = not full_path.exists()
    full_path.parent.mkdir(parents=True, exist_ok=True)
    full_path.write_text(content, encoding="utf-8")
    logger.debug(f"Wrote {len(content)} chars to {path} in workspace {context.workspace_id}")
    return {"path": path, "size": len(content), "created": created}


def edit_file(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """Replace the first occurrence of ``search`` with ``replace``."""
    path = _require(args, "path", "edit_file")
    search = _require(args, "search", "edit_file")
    replace = args.get("replace", "")
    full_path = resolve_path(context, path)
    if not full_path.is_file():
        raise ToolExecutionError(f"File not found: {path}", tool_name="edit_file")

    content = full_path.read_text(encoding="utf-8")
    if search not in content:
        raise ToolExecutionError("Search text not found in file", tool_name="edit_file")

    new_content = content.replace(search, replace, 1)
    full_path.write_text(new_content, encoding="utf-8")
    return {"path": path, "replaced": True, "changes": len(new_content) - len(content)}


def list_files(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    path = args.get("path") or "."
    full_path = resolve_path(context, path)
    if not full_path.is_dir():
        raise ToolExecutionError(f"Directory not found: {path}", tool_name="list_files")

    files = [
        {
            "name": item.name,
            "type": "directory" if item.is_dir() else "file",
            "path": os.path.join(path, item.name) if path != "." else item.name,
        }
        for item in sorted(full_path.iterdir(), key=lambda p: p.name)
    ]
    return {"path": path, "files": files, "count": len(files)}


def search_files(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
    """Case-insensitive substring search across text files in the workspace."""
    query = _require(args, "query", "search_files")
    path = args.get("path") or "."
    base = resolve_path(context, path)
    if not base.is_dir():
        raise ToolExecutionError(f"Directory not found: {path}", tool_name="search_files")

    needle = query.lower()
    matches = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIPPED_DIRECTORIES
        )
        for filename in sorted(filenames):
            file_path = Path(dirpath) / filename
            if file_path.suffix.lower() not in SEARCHABLE_SUFFIXES:
                continue
            try:
                lines = file_path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for index, line in enumerate(lines, start=1):
                if needle in line.lower():
                    matches.append({
                        "file": str(file_path.relative_to(base)),
                        "line": index,
                        "content": line.strip(),
                    })
                    if len(matches) >= MAX_SEARCH_MATCHES:
                        return {"query": query, "matches": matches, "count": len(matches), "truncated": True}

    return {"query": query, "matches": matches, "count": len(matches)}


WORKSPACE_TOOLS = [
    (
        "read_file", read_file,
        "Read the contents of a file in the workspace.",
        {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Path relative to the workspace"}},
            "required": ["path"],
        },
    ),
    (
        "write_file", write_file,
        "Create or overwrite a file in the workspace.",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace"},
                "content": {"type": "string", "description": "Full file contents"},
            },
            "required": ["path", "content"],
        },
    ),
    (
        "edit_file", edit_file,
        "Replace the first occurrence of a text fragment in a file.",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "search": {"type": "string", "description": "Exact text to find"},
                "replace": {"type": "string", "description": "Replacement text"},
            },
            "required": ["path", "search", "replace"],
        },
    ),
    (
        "list_files", list_files,
        "List files and directories at a path in the workspace.",
        {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory, defaults to the workspace root"}},
        },
    ),
    (
        "search_files", search_files,
        "Search text files in the workspace for a case-insensitive substring.",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "path": {"type": "string", "description": "Directory to search, defaults to the workspace root"},
            },
            "required": ["query"],
        },
    ),
]


def register_workspace_tools(registry: ToolRegistry) -> None:
    """Register the workspace file tools on ``registry``."""
    for name, function, description, schema in WORKSPACE_TOOLS:
        registry.register_tool(name, function, description, input_schema=schema, replace=True)
