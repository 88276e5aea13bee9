"""Normalization of backend tool calls into the canonical tool shape.

The canonical shape is the one the Claude SDK produces natively
(``Bash {command}``, ``Read {file_path}``, ``Edit {file_path,
old_string, new_string}`` ...), so every engine's tool entries render
the same way. ACP and Codex describe tools differently and are mapped
here; Claude needs no mapping beyond result-error formatting.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from agentdeck.shared.models.permission import (
    OptionKind,
    PermissionOption,
    PermissionPolicy,
)

_URL_RE = re.compile(r"https?://\S+")

# ── ACP ───────────────────────────────────────────────────────

ACP_KIND_TOOL_NAMES = {
    "read": "Read",
    "edit": "Edit",
    "delete": "Write",
    "execute": "Bash",
    # ACP search runs shell commands (rg, find, ...)
    "search": "Bash",
    "think": "Think",
    "fetch": "WebFetch",
}


def derive_tool_name(title: str, kind: str | None = None) -> str:
    if kind:
        return ACP_KIND_TOOL_NAMES.get(kind, title)
    return title


def extract_shell_command(command: Any) -> str | None:
    """``["/bin/zsh", "-lc", "cat f.ts"]`` → ``"cat f.ts"``."""
    if isinstance(command, str):
        return command
    if isinstance(command, list) and command and isinstance(command[-1], str):
        return command[-1]
    return None


def _resolve_relative(path: str, cwd: Any) -> str:
    if path.startswith("/") or not isinstance(cwd, str) or not cwd:
        return path
    return f"{cwd.rstrip('/')}/{path}"


def _first_location(locations: list[dict] | None) -> str | None:
    if locations and isinstance(locations[0], dict):
        path = locations[0].get("path")
        if isinstance(path, str) and path:
            return path
    return None


def normalize_tool_input(
    raw_input: Any,
    kind: str | None = None,
    locations: list[dict] | None = None,
) -> dict[str, Any]:
    """Reshape an ACP ``rawInput`` into the canonical tool input."""
    raw = raw_input if isinstance(raw_input, dict) else {}

    # Already canonical; empty strings alongside a shell command do not count.
    for key in ("file_path", "pattern", "command"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return raw

    if not kind:
        return raw

    parsed = raw.get("parsed_cmd")
    first_parsed = parsed[0] if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict) else {}
    shell_command = extract_shell_command(raw.get("command"))
    command_or_raw = {"command": shell_command} if shell_command else raw

    def _file_path() -> str | None:
        path = _first_location(locations)
        if path:
            return path
        parsed_path = first_parsed.get("path")
        if isinstance(parsed_path, str) and parsed_path:
            return _resolve_relative(parsed_path, raw.get("cwd"))
        return None

    if kind == "read":
        path = _file_path()
        return {"file_path": path} if path else command_or_raw

    if kind in ("execute", "search"):
        return command_or_raw

    if kind == "edit":
        result: dict[str, Any] = {}
        path = _file_path()
        if path:
            result["file_path"] = path
        for key in ("old_string", "new_string"):
            if isinstance(raw.get(key), str):
                result[key] = raw[key]
        return result or command_or_raw

    if kind == "delete":
        path = _first_location(locations)
        if path:
            return {"file_path": path, "content": "(deleted)"}
        return command_or_raw

    if kind == "fetch":
        if isinstance(raw.get("url"), str):
            return {"url": raw["url"]}
        if shell_command:
            match = _URL_RE.search(shell_command)
            if match:
                return {"url": match.group(0)}
        return raw

    return raw


def normalize_tool_result(
    raw_output: Any,
    content: list[Any] | None = None,
) -> dict[str, Any] | None:
    """Merge an ACP ``rawOutput`` and any diff content into one result dict."""
    if not raw_output and not content:
        return None
    result: dict[str, Any] = {}
    if isinstance(raw_output, dict):
        result.update(raw_output)
    elif isinstance(raw_output, str) and raw_output:
        result["content"] = raw_output
    for item in content or []:
        if isinstance(item, dict) and item.get("type") == "diff":
            result["filePath"] = item.get("path")
            result["oldString"] = item.get("oldText")
            result["newString"] = item.get("newText")
    return result or None


def acp_plan_to_todos(entries: list[Any]) -> list[dict[str, str]]:
    todos = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        todos.append({
            "content": str(entry.get("content", "")),
            "status": normalize_todo_status(str(entry.get("status", ""))),
        })
    return todos


# ── Permission options ────────────────────────────────────────


def pick_auto_option(
    options: list[PermissionOption],
    policy: PermissionPolicy,
) -> PermissionOption | None:
    """Option an auto-response policy would choose, or None to ask the user."""
    def first(kind: OptionKind) -> PermissionOption | None:
        return next((o for o in options if o.kind == kind), None)

    if policy == PermissionPolicy.ALLOW_EVERYTHING:
        return first(OptionKind.ALLOW_ALWAYS) or first(OptionKind.ALLOW_ONCE)
    if policy == PermissionPolicy.AUTO_ACCEPT_ONCE:
        return first(OptionKind.ALLOW_ONCE)
    return None


def parse_option_kind(value: Any) -> OptionKind:
    try:
        return OptionKind(value)
    except ValueError:
        return OptionKind.REJECT_ONCE


# ── Codex ─────────────────────────────────────────────────────

CODEX_APPROVAL_POLICIES = {
    "default": "on-request",
    "acceptEdits": "untrusted",
    "bypassPermissions": "never",
}


def permission_mode_to_codex_policy(mode: str | None) -> str | None:
    return CODEX_APPROVAL_POLICIES.get(mode or "")


def normalize_todo_status(status: str) -> str:
    normalized = status.strip().lower()
    if normalized == "completed":
        return "completed"
    if normalized in ("inprogress", "in_progress", "in-progress"):
        return "in_progress"
    return "pending"


def codex_plan_to_todos(steps: list[Any]) -> list[dict[str, str]]:
    return [
        {
            "content": str(step.get("step", "")),
            "status": normalize_todo_status(str(step.get("status", ""))),
        }
        for step in steps or []
        if isinstance(step, dict)
    ]


@dataclass
class ParsedDiff:
    old_string: str
    new_string: str


_DIFF_META_PREFIXES = ("diff --git ", "index ", "--- ", "+++ ", "*** ")


def _unescape_diff(text: str) -> str:
    # Some payloads carry escaped newlines in a JSON-ish string.
    if "\n" not in text and "\\n" in text:
        return text.replace("\\n", "\n")
    return text


def _content_field(text: str) -> str | None:
    stripped = text.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return None
    content = parsed.get("content") if isinstance(parsed, dict) else None
    return content if isinstance(content, str) else None


def parse_unified_diff(diff_text: str) -> ParsedDiff | None:
    """Recover old/new text from a unified diff; None when it has no changes."""
    if not diff_text:
        return None
    text = _content_field(diff_text) or diff_text
    text = _unescape_diff(text)

    old_lines: list[str] = []
    new_lines: list[str] = []
    saw_change = False
    saw_hunk = False
    for line in text.replace("\r\n", "\n").split("\n"):
        if line.startswith("@@"):
            # Keep separate hunks from running together.
            if saw_hunk and (old_lines or new_lines):
                old_lines.append("")
                new_lines.append("")
            saw_hunk = True
            continue
        if line.startswith(_DIFF_META_PREFIXES) or line == "\\ No newline at end of file":
            continue
        if line.startswith("+"):
            new_lines.append(line[1:])
            saw_change = True
        elif line.startswith("-"):
            old_lines.append(line[1:])
            saw_change = True
        elif line.startswith(" "):
            old_lines.append(line[1:])
            new_lines.append(line[1:])

    if not saw_change:
        return None
    return ParsedDiff("\n".join(old_lines), "\n".join(new_lines))


def _change_kind(change: dict[str, Any]) -> str | None:
    raw = change.get("kind")
    if isinstance(raw, dict):
        raw = raw.get("type")
    if not isinstance(raw, str):
        return None
    if raw in ("add", "create"):
        return "add"
    if raw in ("delete", "remove"):
        return "delete"
    if raw in ("update", "modify", "modified"):
        return "update"
    return None


def codex_item_tool_name(item: dict[str, Any]) -> str | None:
    """Canonical tool name for a Codex thread item; None for non-tool items."""
    item_type = item.get("type")
    if item_type == "commandExecution":
        return "Bash"
    if item_type == "fileChange":
        kinds = [
            k for k in (_change_kind(c) for c in item.get("changes") or [] if isinstance(c, dict))
            if k is not None
        ]
        return "Write" if kinds and all(k == "add" for k in kinds) else "Edit"
    if item_type == "mcpToolCall":
        return f"mcp__{item.get('server')}__{item.get('tool')}"
    if item_type == "webSearch":
        return "WebSearch"
    if item_type == "imageView":
        return "Read"
    return None


def codex_item_tool_input(item: dict[str, Any]) -> dict[str, Any]:
    item_type = item.get("type")
    if item_type == "commandExecution":
        result: dict[str, Any] = {"command": item.get("command") or ""}
        if item.get("cwd"):
            result["description"] = f"cwd: {item['cwd']}"
        return result
    if item_type == "fileChange":
        changes = [c for c in item.get("changes") or [] if isinstance(c, dict)]
        first = changes[0] if changes else {}
        diff = first.get("diff") if isinstance(first.get("diff"), str) else ""
        kind = _change_kind(first) if first else None
        parsed = parse_unified_diff(diff) if diff else None
        result = {"file_path": first.get("path") or ""}
        if parsed:
            if kind == "add":
                result["content"] = parsed.new_string
            else:
                result["old_string"] = parsed.old_string
                result["new_string"] = parsed.new_string
        elif diff:
            # Not a unified diff: the raw file content.
            if kind == "add":
                result["content"] = diff
            elif kind == "delete":
                result["old_string"] = diff
                result["new_string"] = ""
        if len(changes) > 1:
            result["description"] = f"{len(changes)} files"
        return result
    if item_type == "mcpToolCall":
        arguments = item.get("arguments")
        return dict(arguments) if isinstance(arguments, dict) else {}
    if item_type == "webSearch":
        return {"query": item.get("query") or ""}
    if item_type == "imageView":
        return {"file_path": item.get("path") or ""}
    return {}


def codex_item_tool_result(item: dict[str, Any]) -> dict[str, Any] | None:
    item_type = item.get("type")
    if item_type == "commandExecution":
        lines = []
        if item.get("aggregatedOutput"):
            lines.append(item["aggregatedOutput"])
        exit_code = item.get("exitCode")
        duration = item.get("durationMs")
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if duration is not None:
            lines.append(f"Duration: {duration}ms")
        if not lines:
            return None
        result: dict[str, Any] = {"type": "text", "stdout": "\n".join(lines)}
        if exit_code is not None:
            result["exitCode"] = exit_code
        if duration is not None:
            result["durationMs"] = duration
        return result

    if item_type == "fileChange":
        parsed_changes = []
        for change in item.get("changes") or []:
            if not isinstance(change, dict):
                continue
            diff = change.get("diff") if isinstance(change.get("diff"), str) else ""
            parsed_changes.append({
                "filePath": change.get("path") if isinstance(change.get("path"), str) else "",
                "kind": _change_kind(change),
                "diff": diff,
                "parsed": parse_unified_diff(diff) if diff else None,
            })
        summary = "\n\n".join(
            c["diff"] or f"{c['kind'] or 'modified'}: {c['filePath']}"
            for c in parsed_changes
        )
        if not summary:
            return None
        result = {"content": summary}
        first_path = next((c["filePath"] for c in parsed_changes if c["filePath"]), "")
        if first_path:
            result["filePath"] = first_path
        patches = []
        for c in parsed_changes:
            parsed = c["parsed"]
            patches.append({
                "filePath": c["filePath"],
                "kind": c["kind"],
                "diff": c["diff"],
                "oldString": parsed.old_string if parsed else (c["diff"] if c["kind"] == "delete" else None),
                "newString": parsed.new_string if parsed else (c["diff"] if c["kind"] == "add" else None),
            })
        result["structuredPatch"] = patches
        first_parsed = next((c for c in parsed_changes if c["parsed"]), None)
        first_with_diff = first_parsed or next((c for c in parsed_changes if c["diff"]), None)
        if first_parsed:
            result["oldString"] = first_parsed["parsed"].old_string
            result["newString"] = first_parsed["parsed"].new_string
        elif first_with_diff:
            if first_with_diff["kind"] == "delete":
                result["oldString"], result["newString"] = first_with_diff["diff"], ""
            elif first_with_diff["kind"] == "add":
                result["oldString"], result["newString"] = "", first_with_diff["diff"]
        return result

    if item_type == "mcpToolCall":
        if item.get("error"):
            return {"content": f"Error: {json.dumps(item['error'])}"}
        value = item.get("result")
        if value:
            return {"content": value if isinstance(value, str) else json.dumps(value)}
        return None

    return None


def codex_item_failed(item: dict[str, Any]) -> bool:
    status = item.get("status")
    if item.get("type") in ("commandExecution", "fileChange"):
        return status in ("failed", "declined")
    if item.get("type") == "mcpToolCall":
        return status == "failed"
    return False


# ── Claude ────────────────────────────────────────────────────

_RESULT_ERROR_TEXT = {
    "error_max_turns": (
        "Session reached the maximum number of turns. "
        "Start a new session to continue."
    ),
    "error_max_budget_usd": "Session exceeded the cost budget limit.",
    "error_max_structured_output_retries": (
        "Structured output failed after maximum retries."
    ),
}


def format_result_error(subtype: str | None, detail: str | None = None) -> str:
    """User-facing text for a failed Claude result message."""
    if subtype in _RESULT_ERROR_TEXT:
        return _RESULT_ERROR_TEXT[subtype]
    if subtype == "error_during_execution":
        return detail or "An error occurred during execution."
    return detail or "An unexpected error occurred."
