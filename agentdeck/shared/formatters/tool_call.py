"""Per-tool detail extraction for reconciled tool calls.

Each agent tool reports its arguments in its own shape. A small registry
maps canonical tool names to extractor functions that copy the fields the
conversation view cares about (shell command, question and choices, file
path and diff, patch file list) onto a ``ToolCall``.

Adding a new tool requires only a single decorated function:

    @tool_details("my_tool")
    def _my_tool(call, args):
        call.summary = ...
"""

from __future__ import annotations

import re
from typing import Any, Callable

from agentdeck.shared.models.message import ToolCall
from agentdeck.shared.normalize import coerce_mapping, coerce_text

DetailExtractor = Callable[[ToolCall, dict[str, Any]], None]

_EXTRACTORS: dict[str, DetailExtractor] = {}
_TOOL_NAME_ALIASES: dict[str, str] = {
    "bash": "bash",
    "shell": "bash",
    "run_bash": "bash",
    "run_shell_command": "bash",
    "powershell": "bash",
    "ask_user": "ask_user",
    "askuserquestion": "ask_user",
    "request_user_input": "ask_user",
    "edit": "edit",
    "edit_file": "edit",
    "str_replace": "edit",
    "str_replace_editor": "edit",
    "create": "create",
    "write": "create",
    "write_file": "create",
    "apply_patch": "apply_patch",
}

_PATCH_FILE_RE = re.compile(
    r"^\*\*\* (?:Add|Update|Delete) File: (.+)$|^\+\+\+ (?:b/)?(.+)$",
    re.MULTILINE,
)


def tool_details(name: str):
    """Decorator to register a detail extractor for a canonical tool name."""

    def decorator(fn: DetailExtractor) -> DetailExtractor:
        _EXTRACTORS[name] = fn
        return fn

    return decorator


def normalize_tool_name(name: str) -> str:
    """Strip an MCP server prefix and map aliases to canonical names."""
    if name.startswith("mcp__") and name.count("__") >= 2:
        name = name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(name.lower(), name.lower())


def apply_tool_details(call: ToolCall, arguments: Any) -> ToolCall:
    """Fill role-specific fields on *call* from its raw arguments."""
    args = coerce_mapping(arguments)
    extractor = _EXTRACTORS.get(normalize_tool_name(call.name))
    if extractor is not None:
        extractor(call, args)
    return call


def synthesize_diff(old_text: str, new_text: str) -> str:
    """Render a replacement as removed lines followed by added lines."""
    lines = [f"-{line}" for line in old_text.splitlines()]
    lines.extend(f"+{line}" for line in new_text.splitlines())
    return "\n".join(lines)


def patch_files(patch_text: str) -> list[str]:
    """Extract the file paths touched by a patch, in order, without repeats."""
    files: list[str] = []
    for match in _PATCH_FILE_RE.finditer(patch_text):
        path = (match.group(1) or match.group(2) or "").strip()
        if path and path != "/dev/null" and path not in files:
            files.append(path)
    return files


def _first_str(args: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


# -- Extractors --


@tool_details("bash")
def _bash_details(call: ToolCall, args: dict[str, Any]) -> None:
    call.command = _first_str(args, "command", "cmd", "script", "_raw")


@tool_details("ask_user")
def _ask_user_details(call: ToolCall, args: dict[str, Any]) -> None:
    question = _first_str(args, "question", "prompt", "message")
    choices = args.get("choices") or args.get("options") or []
    # AskUserQuestion nests its questions in a list.
    questions = args.get("questions")
    if not question and isinstance(questions, list) and questions:
        first = questions[0] if isinstance(questions[0], dict) else {}
        question = _first_str(first, "question", "header")
        choices = first.get("options") or []
    call.question = question
    call.choices = [
        _first_str(choice, "label", "text") if isinstance(choice, dict) else coerce_text(choice)
        for choice in choices
        if choice
    ] if isinstance(choices, list) else []


@tool_details("edit")
def _edit_details(call: ToolCall, args: dict[str, Any]) -> None:
    call.file_path = _first_str(args, "path", "file_path", "filePath")
    old_text = _first_str(args, "old_str", "old_string", "oldString")
    new_text = _first_str(args, "new_str", "new_string", "newString")
    if old_text or new_text:
        call.patch = synthesize_diff(old_text, new_text)


@tool_details("create")
def _create_details(call: ToolCall, args: dict[str, Any]) -> None:
    call.file_path = _first_str(args, "path", "file_path", "filePath")
    content = _first_str(args, "file_text", "content", "text")
    if content:
        call.patch = synthesize_diff("", content)


@tool_details("apply_patch")
def _apply_patch_details(call: ToolCall, args: dict[str, Any]) -> None:
    call.patch = _first_str(args, "patch", "input", "_raw")
    call.files = patch_files(call.patch)
    if call.files:
        call.file_path = call.files[0]
