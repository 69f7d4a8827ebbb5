from __future__ import annotations

import datetime as dt

import pytest

from bandry.engine.models import ChatMode
from bandry.engine.persist_policy import (
    MAX_PERSIST_BYTES,
    default_persist_path,
    detect_persist_requirement,
    extract_requested_path,
    extract_written_path,
    is_file_exists_observation,
    resolve_persist_write_path,
    validate_persist_content,
)
from bandry.engine.prompts import build_planner_system_prompt

ROOT = "/mnt/workspace"


@pytest.mark.parametrize("message,required,markdown", [
    ("请生成一个 md 简报并保存", True, True),
    ("Draft a markdown summary of the repo", True, True),
    ("save to notes.txt please", True, False),
    ("你好，解释一下什么是多因子模型", False, False),
    ("请读取 output/report.md 并帮我总结要点", False, True),
    ("review the README.md and create nothing", False, True),
])
def test_detect_persist_requirement(message, required, markdown):
    result = detect_persist_requirement(message)
    assert result.required is required
    assert result.markdown_preferred is markdown


@pytest.mark.parametrize("message,expected", [
    ("请保存到 output/market-report.md", "output/market-report.md"),
    ("save to `output/notes.markdown` now", "output/notes.md"),
    ("put it in data.csv", "data.csv"),
    ("save to https://example.com/a.md", None),
    ("just chat", None),
    ("   ", None),
])
def test_extract_requested_path(message, expected):
    assert extract_requested_path(message) == expected


def test_default_persist_path_names_by_document_kind():
    now = dt.datetime(2026, 2, 27, 8, 0, 0)
    assert default_persist_path("生成简报", now) == "output/brief-20260227-080000.md"
    assert default_persist_path("weekly report", now) == "output/report-20260227-080000.md"
    assert default_persist_path("anything else", now) == "output/document-20260227-080000.md"


@pytest.mark.parametrize("requested", ["output/report.md", "/mnt/workspace/output/report.md", "./output/report.md"])
def test_resolve_accepts_paths_under_output(requested):
    result = resolve_persist_write_path(requested, "output/default.md", ROOT)
    assert result.ok
    assert result.path == "/mnt/workspace/output/report.md"
    assert result.explicit


def test_resolve_falls_back_to_default_path():
    result = resolve_persist_write_path(None, "output/default.md", ROOT + "/")
    assert result.ok
    assert result.path == "/mnt/workspace/output/default.md"
    assert not result.explicit


@pytest.mark.parametrize("requested,code", [
    ("/mnt/workspace/README.md", "PATH_NOT_ALLOWED"),
    ("output/../../secret.md", "PATH_NOT_ALLOWED"),
    ("output/tool.py", "EXTENSION_NOT_ALLOWED"),
    ("output/bad\x01name.md", "INVALID_PATH"),
])
def test_resolve_rejects_paths_outside_policy(requested, code):
    result = resolve_persist_write_path(requested, "output/default.md", ROOT)
    assert not result.ok
    assert result.code == code
    assert result.path == ""


def test_validate_persist_content_limits_bytes():
    assert validate_persist_content("short") is None
    # three bytes per character in utf-8
    assert validate_persist_content("简" * (MAX_PERSIST_BYTES // 3 + 1)) is not None


def test_file_exists_and_written_path_detection():
    assert is_file_exists_observation("FILE_EXISTS: Target file already exists: /x")
    assert is_file_exists_observation("target file already exists")
    assert not is_file_exists_observation("Path does not exist: /x")
    assert extract_written_path("File written: path=/mnt/workspace/output/a.md (3 bytes)") == (
        "/mnt/workspace/output/a.md"
    )
    assert extract_written_path("nothing here") is None


def test_planner_prompt_carries_persist_requirement(app_config):
    prompt = build_planner_system_prompt(
        app_config, ChatMode.DEFAULT, "生成 md 并保存",
        persist_required=True,
        persist_path_hint="/mnt/workspace/output/report.md",
    )
    assert "<persist_requirement>" in prompt
    assert "MUST call write_file" in prompt
    assert "/mnt/workspace/output/report.md" in prompt

    assert "<persist_requirement>" not in build_planner_system_prompt(app_config)
