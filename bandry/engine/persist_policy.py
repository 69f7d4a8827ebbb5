"""Persist-to-file policy for chat requests.

Some requests ("write a report and save it to output/q3.md") are only
satisfied once a file exists. detect_persist_requirement recognises
them; the agent then keeps planning until write_file succeeds and, if
the planner never gets there, writes the final reply itself to a
default path under ``{virtual_root}/output``.
"""
from __future__ import annotations

import datetime as _dt
import posixpath
import re
from dataclasses import dataclass

ALLOWED_WRITE_EXTENSIONS = frozenset({".md", ".txt", ".json", ".yaml", ".yml", ".csv"})
MAX_PERSIST_BYTES = 1024 * 1024

PERSIST_ANSWER_DEFERRED = "PERSIST_REQUIRED: Answer deferred until write_file succeeds."
PERSIST_WRITE_MISSING = "PERSIST_REQUIRED: Must call write_file successfully before final answer."

_MARKDOWN_TOKEN = re.compile(r"(?:^|[^a-z0-9])md(?:[^a-z0-9]|$)|markdown|\.md\b", re.I)
_PERSIST_TOKEN = re.compile(r"保存|写入|写到|落盘|导出|输出到|to file|save to|write to|write file", re.I)
_DOC_TOKEN = re.compile(r"简报|报告|文档|report|brief|summary|document", re.I)
_FILE_TOKEN = re.compile(r"文件|file|路径|path|\.md\b|\.txt\b|\.json\b|\.ya?ml\b|\.csv\b", re.I)
_CREATE_TOKEN = re.compile(
    r"生成|产出|撰写|写一份|写个|写出|整理|create|draft|generate|produce|prepare", re.I,
)
_READ_TOKEN = re.compile(r"读取|查看|打开|浏览|看下|看看|review|read|open|inspect|look at", re.I)
_PATH_TOKEN = re.compile(r"([A-Za-z0-9_./-]+\.(?:md|markdown|txt|json|yaml|yml|csv))", re.I)
_KEYWORD_PATH = re.compile(
    r"(?:保存到|写入到|写到|落盘到|导出到|输出到|save to|write to)\s*"
    r"[`\"']?([A-Za-z0-9_./-]+\.[A-Za-z0-9]+)[`\"']?",
    re.I,
)
_URL = re.compile(r"\S+://\S*")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_WRITTEN_PATH = re.compile(r"path=([^\s,]+)", re.I)


@dataclass(frozen=True)
class PersistRequirement:
    required: bool
    markdown_preferred: bool


@dataclass(frozen=True)
class PersistPathResolution:
    """Outcome of resolve_persist_write_path.

    ``path`` is the absolute virtual path when ``ok``; otherwise
    ``code`` is INVALID_PATH, PATH_NOT_ALLOWED or EXTENSION_NOT_ALLOWED.
    """
    ok: bool
    explicit: bool
    path: str = ""
    code: str = ""
    message: str = ""


def _normalize_ext_alias(path: str) -> str:
    return re.sub(r"\.markdown$", ".md", path, flags=re.I)


def detect_persist_requirement(message: str) -> PersistRequirement:
    """Decide whether *message* asks for its result to be written to a file."""
    text = message.strip()
    markdown_preferred = bool(_MARKDOWN_TOKEN.search(text))
    explicit_persist = bool(_PERSIST_TOKEN.search(text))
    creation_intent = bool(_CREATE_TOKEN.search(text))

    explicit_request = explicit_persist and (
        bool(_PATH_TOKEN.search(text))
        or bool(_FILE_TOKEN.search(text))
        or bool(_DOC_TOKEN.search(text))
        or markdown_preferred
        or creation_intent
    )
    markdown_generation = (
        markdown_preferred and creation_intent and not _READ_TOKEN.search(text)
    )
    return PersistRequirement(
        required=explicit_request or markdown_generation,
        markdown_preferred=markdown_preferred,
    )


def extract_requested_path(message: str) -> str | None:
    """The file path named in *message*, if any. URLs are not paths."""
    text = _URL.sub(" ", message.strip())
    match = _KEYWORD_PATH.search(text) or _PATH_TOKEN.search(text)
    if match is None:
        return None
    return _normalize_ext_alias(match.group(1).strip())


def default_persist_path(message: str, now: _dt.datetime | None = None) -> str:
    """``output/<brief|report|document>-YYYYMMDD-HHMMSS.md`` relative to the root."""
    if re.search(r"简报|brief", message, re.I):
        base_name = "brief"
    elif re.search(r"报告|report", message, re.I):
        base_name = "report"
    else:
        base_name = "document"
    stamp = (now or _dt.datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"output/{base_name}-{stamp}.md"


def resolve_persist_write_path(
    requested_path: str | None,
    default_path: str,
    virtual_root: str,
) -> PersistPathResolution:
    """Resolve the persist target; it must be a text file under ``<root>/output``."""
    explicit = bool(requested_path and requested_path.strip())
    source = (requested_path.strip() if explicit else default_path.strip())
    source = _normalize_ext_alias(source.replace("\\", "/"))

    if not source or _CONTROL_CHARS.search(source):
        return PersistPathResolution(
            ok=False, explicit=explicit, code="INVALID_PATH",
            message="Path is empty or contains invalid control characters.",
        )

    root = virtual_root.rstrip("/")
    output_root = f"{root}/output"
    if source.startswith("/"):
        absolute = posixpath.normpath(source)
    else:
        relative = re.sub(r"^\./+", "", source)
        absolute = posixpath.normpath(f"{root}/{relative}")

    if absolute != output_root and not absolute.startswith(output_root + "/"):
        return PersistPathResolution(
            ok=False, explicit=explicit, code="PATH_NOT_ALLOWED",
            message=f"Write path must be under {output_root}.",
        )

    extension = posixpath.splitext(absolute)[1].lower()
    if extension not in ALLOWED_WRITE_EXTENSIONS:
        return PersistPathResolution(
            ok=False, explicit=explicit, code="EXTENSION_NOT_ALLOWED",
            message=f"Extension {extension or '(none)'} is not allowed for write_file.",
        )
    return PersistPathResolution(ok=True, explicit=explicit, path=absolute)


def validate_persist_content(content: str) -> str | None:
    """Return an error message when *content* is too large to persist."""
    if len(content.encode("utf-8")) > MAX_PERSIST_BYTES:
        return f"Content exceeds size limit ({MAX_PERSIST_BYTES} bytes)."
    return None


def is_file_exists_observation(output: str) -> bool:
    normalized = output.lower()
    return "file_exists" in normalized or "target file already exists" in normalized


def extract_written_path(output: str) -> str | None:
    match = _WRITTEN_PATH.search(output)
    return match.group(1) if match else None
