from __future__ import annotations

from agentdeck.engine.adapters.tool_mapping import (
    acp_plan_to_todos,
    codex_item_failed,
    codex_item_tool_input,
    codex_item_tool_name,
    codex_item_tool_result,
    codex_plan_to_todos,
    derive_tool_name,
    format_result_error,
    normalize_tool_input,
    normalize_tool_result,
    parse_option_kind,
    parse_unified_diff,
    permission_mode_to_codex_policy,
)
from agentdeck.shared.models.permission import OptionKind

_DIFF = (
    "--- a/app.py\n"
    "+++ b/app.py\n"
    "@@ -1,3 +1,3 @@\n"
    " import os\n"
    "-print('old')\n"
    "+print('new')\n"
    " x = 1\n"
)


# ── ACP ───────────────────────────────────────────────────────


def test_acp_kind_maps_to_canonical_tool_name() -> None:
    assert derive_tool_name("Read file", "read") == "Read"
    assert derive_tool_name("rg foo", "search") == "Bash"
    assert derive_tool_name("Custom thing", "other") == "Custom thing"
    assert derive_tool_name("Untyped") == "Untyped"


def test_acp_execute_input_unwraps_shell_invocation() -> None:
    raw = {"command": ["/bin/zsh", "-lc", "cat f.ts"], "cwd": "/repo"}

    assert normalize_tool_input(raw, "execute") == {"command": "cat f.ts"}


def test_acp_read_input_prefers_locations_then_parsed_cmd() -> None:
    raw = {
        "command": ["/bin/zsh", "-lc", "cat src/a.py"],
        "cwd": "/repo",
        "parsed_cmd": [{"type": "read", "path": "src/a.py"}],
    }

    assert normalize_tool_input(raw, "read", [{"path": "/abs/b.py"}]) == {"file_path": "/abs/b.py"}
    assert normalize_tool_input(raw, "read") == {"file_path": "/repo/src/a.py"}


def test_acp_already_canonical_input_is_untouched() -> None:
    raw = {"file_path": "/x.py", "old_string": "a", "new_string": "b"}

    assert normalize_tool_input(raw, "edit") is raw


def test_acp_fetch_input_extracts_url_from_command() -> None:
    raw = {"command": ["/bin/sh", "-c", "curl -s https://example.com/api"]}

    assert normalize_tool_input(raw, "fetch") == {"url": "https://example.com/api"}


def test_acp_result_merges_raw_output_and_diff_content() -> None:
    result = normalize_tool_result(
        {"exit_code": 0},
        [{"type": "diff", "path": "/a.py", "oldText": "x", "newText": "y"}],
    )

    assert result == {
        "exit_code": 0, "filePath": "/a.py", "oldString": "x", "newString": "y",
    }
    assert normalize_tool_result("plain text") == {"content": "plain text"}
    assert normalize_tool_result(None, []) is None


def test_plans_become_todos_with_normalized_status() -> None:
    assert acp_plan_to_todos([{"content": "Write tests", "status": "in_progress"}]) == [
        {"content": "Write tests", "status": "in_progress"},
    ]
    assert codex_plan_to_todos([
        {"step": "Read code", "status": "completed"},
        {"step": "Fix bug", "status": "inProgress"},
        {"step": "Ship", "status": "pending"},
    ]) == [
        {"content": "Read code", "status": "completed"},
        {"content": "Fix bug", "status": "in_progress"},
        {"content": "Ship", "status": "pending"},
    ]


def test_unknown_option_kind_is_treated_as_rejection() -> None:
    assert parse_option_kind("allow_always") == OptionKind.ALLOW_ALWAYS
    assert parse_option_kind("something_new") == OptionKind.REJECT_ONCE


# ── Codex ─────────────────────────────────────────────────────


def test_permission_mode_maps_to_codex_approval_policy() -> None:
    assert permission_mode_to_codex_policy("default") == "on-request"
    assert permission_mode_to_codex_policy("bypassPermissions") == "never"
    assert permission_mode_to_codex_policy("plan") is None


def test_parse_unified_diff_recovers_old_and_new_text() -> None:
    parsed = parse_unified_diff(_DIFF)

    assert parsed.old_string == "import os\nprint('old')\nx = 1"
    assert parsed.new_string == "import os\nprint('new')\nx = 1"


def test_parse_unified_diff_handles_escaped_newlines_and_json_wrapper() -> None:
    escaped = '{"content": "@@ -1 +1 @@\\n-a\\n+b"}'

    parsed = parse_unified_diff(escaped)

    assert parsed.old_string == "a"
    assert parsed.new_string == "b"
    assert parse_unified_diff(" context only") is None


def test_command_execution_item_maps_to_bash() -> None:
    item = {
        "type": "commandExecution", "id": "c1", "command": "pytest -q",
        "cwd": "/repo", "aggregatedOutput": "3 passed", "exitCode": 0,
        "durationMs": 812, "status": "completed",
    }

    assert codex_item_tool_name(item) == "Bash"
    assert codex_item_tool_input(item) == {"command": "pytest -q", "description": "cwd: /repo"}
    result = codex_item_tool_result(item)
    assert result["stdout"] == "3 passed\nExit code: 0\nDuration: 812ms"
    assert result["exitCode"] == 0
    assert codex_item_failed(item) is False
    assert codex_item_failed({**item, "status": "declined"}) is True


def test_file_change_item_maps_to_edit_or_write() -> None:
    edit = {
        "type": "fileChange", "id": "f1",
        "changes": [{"path": "/repo/app.py", "kind": {"type": "update"}, "diff": _DIFF}],
    }
    create = {
        "type": "fileChange", "id": "f2",
        "changes": [{"path": "/repo/new.py", "kind": "add", "diff": "print('hi')\n"}],
    }

    assert codex_item_tool_name(edit) == "Edit"
    assert codex_item_tool_input(edit)["old_string"].startswith("import os")
    assert codex_item_tool_name(create) == "Write"
    assert codex_item_tool_input(create) == {"file_path": "/repo/new.py", "content": "print('hi')\n"}

    result = codex_item_tool_result(edit)
    assert result["filePath"] == "/repo/app.py"
    assert result["newString"] == "import os\nprint('new')\nx = 1"
    assert result["structuredPatch"][0]["kind"] == "update"


def test_mcp_and_search_items() -> None:
    mcp = {
        "type": "mcpToolCall", "server": "docs", "tool": "lookup",
        "arguments": {"q": "asyncio"}, "result": {"hits": 2}, "status": "completed",
    }

    assert codex_item_tool_name(mcp) == "mcp__docs__lookup"
    assert codex_item_tool_input(mcp) == {"q": "asyncio"}
    assert codex_item_tool_result(mcp) == {"content": '{"hits": 2}'}
    assert codex_item_tool_name({"type": "webSearch", "query": "x"}) == "WebSearch"
    assert codex_item_tool_name({"type": "somethingNew"}) is None


# ── Claude ────────────────────────────────────────────────────


def test_result_error_text() -> None:
    assert "maximum number of turns" in format_result_error("error_max_turns")
    assert format_result_error("error_during_execution", "disk full") == "disk full"
    assert format_result_error(None) == "An unexpected error occurred."
