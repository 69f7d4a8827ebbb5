from __future__ import annotations

from bandry.engine.models import PlannerAnswer, PlannerToolAction
from bandry.engine.planner_parser import (
    extract_json_array,
    extract_json_object,
    load_json_object,
    looks_like_json_action,
    scan_balanced,
    try_parse_planner_action,
)


def test_scan_balanced_ignores_braces_inside_strings():
    text = 'prefix {"a": "x}y", "b": "quote \\" }"} suffix {"c": 1}'
    assert scan_balanced(text) == '{"a": "x}y", "b": "quote \\" }"}'


def test_scan_balanced_returns_none_for_unterminated_object():
    assert scan_balanced('{"action": "tool", "tool": ') is None
    assert scan_balanced("no braces here") is None


def test_extract_prefers_fenced_json():
    text = 'Thinking {not json}\n```json\n{"action": "answer", "answer": "ok"}\n```'
    assert extract_json_object(text) == '{"action": "answer", "answer": "ok"}'


def test_extract_json_array_from_prose():
    text = 'Here you go: [{"label": "A", "value": "[x]"}] thanks'
    assert extract_json_array(text) == '[{"label": "A", "value": "[x]"}]'


def test_load_json_object_rejects_non_objects_and_bad_json():
    assert load_json_object("[1, 2]") is None
    assert load_json_object("{'single': 'quotes'}") is None
    assert load_json_object('{"ok": true}') == {"ok": True}


def test_parse_answer_action():
    action = try_parse_planner_action('{"action": "answer", "answer": "  Hello  "}')
    assert action == PlannerAnswer(answer="Hello")


def test_parse_tool_action_embedded_in_prose():
    raw = (
        "I will list the workspace first.\n"
        '{"action": "tool", "tool": "list_dir", "input": {"path": "/mnt/workspace"}, '
        '"reason": "see files"}'
    )
    action = try_parse_planner_action(raw)
    assert isinstance(action, PlannerToolAction)
    assert action.tool == "list_dir"
    assert action.input == {"path": "/mnt/workspace"}
    assert action.reason == "see files"


def test_parse_tool_action_defaults_missing_input():
    action = try_parse_planner_action('{"action": "tool", "tool": "list_dir", "input": "oops"}')
    assert action == PlannerToolAction(tool="list_dir", input={})


def test_parse_rejects_incomplete_actions():
    assert try_parse_planner_action('{"action": "answer", "answer": "  "}') is None
    assert try_parse_planner_action('{"action": "tool", "tool": ""}') is None
    assert try_parse_planner_action('{"action": "dance"}') is None
    assert try_parse_planner_action("plain text") is None


def test_tool_action_signature_is_order_independent():
    a = PlannerToolAction(tool="exec", input={"command": "ls", "args": ["-la"]})
    b = PlannerToolAction(tool="exec", input={"args": ["-la"], "command": "ls"})
    assert a.signature == b.signature
    assert a.signature != PlannerToolAction(tool="exec", input={"command": "pwd"}).signature


def test_looks_like_json_action():
    assert looks_like_json_action('{"action": "tool"')
    assert looks_like_json_action("```json\n{")
    assert looks_like_json_action('The "tool" field was list_dir')
    assert not looks_like_json_action("Here is a normal answer.")
    assert not looks_like_json_action("   ")
