"""Chat-facing rendering of tool calls and their results."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from convoy.events import ToolInvocation, ToolOutcome

TOOL_RESULT_PREVIEW_CHARS = 1500
WRITE_PREVIEW_CHARS = 100
VALUE_PREVIEW_CHARS = 50

_EMOJI = {
    "read": "📖",
    "write": "✏️",
    "edit": "📝",
    "bash": "💻",
    "search": "🔍",
    "git": "📦",
    "filesystem": "📁",
    "http": "🌐",
    "browser": "🌐",
}
_GIT_HINTS = {
    "diff": "Showing changes...",
    "status": "Checking repository status...",
    "commit": "Creating commit...",
}


def tool_emoji(name: str | None) -> str:
    return _EMOJI.get((name or "").lower(), "🔧")


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return f'"{_clip(value, VALUE_PREVIEW_CHARS)}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list | tuple):
        return f"[{len(value)} items]"
    if isinstance(value, Mapping):
        return "{...}"
    return str(value)


def _git_command(command: str) -> list[str]:
    parts = command.split()
    sub = parts[1] if len(parts) > 1 else "status"
    lines = [f"📦 Git: `{sub}`"]
    if sub in _GIT_HINTS:
        lines.append(_GIT_HINTS[sub])
    elif sub == "log":
        count = next((part for part in parts if part.isdigit()), "recent")
        lines.append(f"Showing {count} commits...")
    elif sub in ("push", "pull"):
        branch = parts[2] if len(parts) > 2 else "branch"
        lines.append(f"Syncing {branch}...")
    return lines


def _bash(data: Mapping[str, Any]) -> list[str]:
    command = str(data.get("command") or "")
    lines = _git_command(command) if command.startswith("git ") else [f"Command: `{command}`"]
    if data.get("cwd"):
        lines.append(f"Dir: `{data['cwd']}`")
    return lines


def _read(data: Mapping[str, Any]) -> list[str]:
    lines = [f"📖 File: `{data.get('file_path') or ''}`"]
    if "offset" in data or "limit" in data:
        offset = int(data.get("offset") or 0)
        limit = int(data.get("limit") or 0)
        lines.append(f"Lines: {offset + 1}-{offset + limit}")
    return lines


def _write(data: Mapping[str, Any]) -> list[str]:
    path = str(data.get("file_path") or "")
    lines = [f"✏️ File: `{path}`"]
    content = data.get("content")
    if isinstance(content, str) and content:
        lines.append(f"Size: {len(content)} bytes, {content.count(chr(10)) + 1} lines")
        if "." in path:
            lines.append(f"Type: `{path.rsplit('.', 1)[-1]}`")
        lines.append(f"```\n{_clip(content, WRITE_PREVIEW_CHARS)}\n```")
    return lines


def _edit(data: Mapping[str, Any]) -> list[str]:
    lines = [f"📝 File: `{data.get('file_path') or ''}`"]
    patches = data.get("patches")
    if isinstance(patches, list):
        lines.append(f"Edits: {len(patches)} change(s)")
    elif isinstance(patches, str):
        lines.append(f"Edits: {patches.count('@@')} change(s)")
    return lines


def _search(data: Mapping[str, Any]) -> list[str]:
    lines = [f"🔍 Query: `{data.get('query') or ''}`"]
    if data.get("path"):
        lines.append(f"Path: `{data['path']}`")
    options = [
        label
        for key, label in (("ignore_case", "case-insensitive"), ("match_case", "case-sensitive"), ("regex", "regex"))
        if data.get(key)
    ]
    if options:
        lines.append(f"Options: {', '.join(options)}")
    return lines


def _git(data: Mapping[str, Any]) -> list[str]:
    command = str(data.get("command") or "")
    lines = [f"📦 Git: `{command}`"]
    if command == "log":
        lines.append(f"Showing {data.get('n') or 10} recent commits...")
    elif command == "status":
        lines.append("Checking working tree status...")
    elif command == "diff":
        lines.append("Showing changes...")
    return lines


def _generic(data: Mapping[str, Any]) -> list[str]:
    lines = ["Input:"]
    lines.extend(f"  `{key}`: {_format_value(value)}" for key, value in data.items() if key != "session_id")
    return lines


_FORMATTERS: dict[str, Callable[[Mapping[str, Any]], list[str]]] = {
    "bash": _bash,
    "read": _read,
    "write": _write,
    "edit": _edit,
    "search": _search,
    "git": _git,
}


def format_tool_use(invocation: ToolInvocation) -> str:
    """Describe a tool call with a per-tool summary of its input."""
    formatter = _FORMATTERS.get(invocation.name.lower(), _generic)
    body = "\n".join(formatter(invocation.input))
    return f"{tool_emoji(invocation.name)} **Using: {invocation.name}**\n\n{body}"


def format_tool_result(outcome: ToolOutcome, tool_name: str | None = None) -> str:
    """Render tool output as a code block, cut at TOOL_RESULT_PREVIEW_CHARS."""
    content = outcome.content
    if len(content) > TOOL_RESULT_PREVIEW_CHARS:
        hidden = len(content) - TOOL_RESULT_PREVIEW_CHARS
        content = f"{content[:TOOL_RESULT_PREVIEW_CHARS]}\n\n... ({hidden} more characters)"
    text = f"{tool_emoji(tool_name)} **Result: {tool_name or 'Tool'}**\n\n```\n{content}\n```"
    if outcome.is_error:
        text = f"❌ **Error in {tool_name or 'tool'}**\n\n{text}"
    return text
