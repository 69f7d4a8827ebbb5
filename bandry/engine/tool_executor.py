"""Execution of one parsed planner tool action.

execute_planner_tool never raises: validation problems, sandbox
violations, network errors and unknown tools all come back as
ToolObservation(ok=False) so the planner loop can decide what to do.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from .delegation import DelegatedTask, SubTaskResult, validate_delegation_tasks
from .models import AbortSignal, PlannerToolAction, TodoItem, ToolObservation
from .sandbox import ExecResult, ListDirResult, SandboxService
from .yaml_config import AppConfig

logger = logging.getLogger(__name__)

MAX_OBSERVATION_CHARS = 8_000
MAX_LIST_ENTRIES = 80
TODO_STATUSES = ("pending", "in_progress", "completed")

# Runs validated sub-tasks; fan-out and scheduling belong to the runner.
DelegateRunner = Callable[
    [list[DelegatedTask], str, AbortSignal | None],
    Awaitable[list[SubTaskResult]],
]


def truncate(text: str, limit: int = MAX_OBSERVATION_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n...[truncated {len(text) - limit} chars]"


def _normalize_spaces(text: str) -> str:
    return " ".join(text.split())


def format_list_dir(result: ListDirResult) -> str:
    lines = [
        f"{entry.type}\t{entry.name}"
        for entry in result.entries[:MAX_LIST_ENTRIES]
    ]
    return truncate("\n".join(lines) or "(empty directory)")


def format_exec(result: ExecResult) -> str:
    output = "\n".join(part for part in (result.stdout, result.stderr) if part)
    return truncate(output or f"(exit={result.exit_code})")


def apply_todo_updates(
    current: list[TodoItem] | None, raw_todos: Any,
) -> list[TodoItem]:
    """Merge raw todo dicts into *current*: known ids update, new ids append."""
    merged: dict[str, TodoItem] = {item.id: item for item in current or []}
    if not isinstance(raw_todos, list):
        return list(merged.values())
    for index, raw in enumerate(raw_todos):
        if not isinstance(raw, dict):
            continue
        content = raw.get("content") or raw.get("subject")
        if not isinstance(content, str) or not content.strip():
            continue
        todo_id = str(raw.get("id") or index + 1)
        status = raw.get("status", "pending")
        if status not in TODO_STATUSES:
            status = "pending"
        merged[todo_id] = TodoItem(id=todo_id, content=content.strip(), status=status)
    return list(merged.values())


def _str_field(tool_input: dict[str, Any], name: str) -> str:
    value = tool_input.get(name)
    return value.strip() if isinstance(value, str) else ""


def _missing(tool: str, tool_input: dict[str, Any], field_name: str) -> ToolObservation:
    return ToolObservation(
        tool=tool,
        input=tool_input,
        ok=False,
        output=f"Missing required field: input.{field_name}",
    )


async def _web_fetch(config: AppConfig, url: str) -> str:
    timeout = aiohttp.ClientTimeout(total=config.tools.web_fetch_timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(url) as response:
            text = await response.text(errors="replace")
            if response.status >= 400:
                raise RuntimeError(f"HTTP {response.status} fetching {url}")
    return truncate(text)


async def _web_search(config: AppConfig, query: str) -> str:
    tools = config.tools
    api_key = tools.web_search_api_key.strip()
    if not api_key:
        raise RuntimeError("web_search api key is missing")
    endpoint = f"{tools.web_search_base_url.rstrip('/')}/search"
    payload = {
        "api_key": api_key,
        "query": query,
        "max_results": tools.web_search_max_results,
    }
    timeout = aiohttp.ClientTimeout(total=tools.web_search_timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(endpoint, json=payload) as response:
            if response.status >= 400:
                text = await response.text(errors="replace")
                raise RuntimeError(
                    f"web_search request failed ({response.status}): "
                    f"{text or response.reason}"
                )
            data = await response.json(content_type=None)

    results = (data or {}).get("results") or []
    if not results:
        return "No web_search results."
    blocks = []
    for index, item in enumerate(results[:tools.web_search_max_results], 1):
        title = (item.get("title") or "").strip() or "Untitled"
        score = item.get("score")
        score_part = f" score={score:.3f}" if isinstance(score, (int, float)) else ""
        snippet = _normalize_spaces(item.get("content") or "")[:320]
        blocks.append(f"{index}. {title}{score_part}\n{(item.get('url') or '').strip()}\n{snippet}")
    return truncate("\n\n".join(blocks))


async def _github_search(config: AppConfig, query: str) -> str:
    tools = config.tools
    headers = {"Accept": "application/vnd.github+json"}
    if tools.github_token.strip():
        headers["Authorization"] = f"Bearer {tools.github_token.strip()}"
    params = {"q": query, "per_page": str(tools.github_search_max_results)}
    timeout = aiohttp.ClientTimeout(total=tools.web_search_timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
        async with session.get(
            f"{tools.github_api_base_url.rstrip('/')}/search/repositories",
            params=params,
        ) as response:
            if response.status >= 400:
                text = await response.text(errors="replace")
                raise RuntimeError(f"github_search request failed ({response.status}): {text}")
            data = await response.json(content_type=None)

    items = (data or {}).get("items") or []
    if not items:
        return "No github_search results."
    lines = []
    for index, item in enumerate(items[:tools.github_search_max_results], 1):
        description = _normalize_spaces(item.get("description") or "")[:200]
        lines.append(
            f"{index}. {item.get('full_name', '?')} stars={item.get('stargazers_count', 0)}"
            f"\n{item.get('html_url', '')}\n{description}"
        )
    return truncate("\n\n".join(lines))


def _format_delegation(results: list[SubTaskResult], virtual_root: str) -> tuple[bool, str]:
    succeeded = sum(1 for r in results if r.success)
    lines = [f"Delegation finished: {succeeded}/{len(results)} succeeded."]
    for result in results:
        line = f"{result.sub_task_id}: {'success' if result.success else 'failed'}"
        if result.error:
            line += f" | error={result.error}"
        lines.append(line)

    root = virtual_root.rstrip("/")
    artifacts: list[str] = []
    for result in results:
        for artifact in result.artifacts:
            if not artifact.startswith(root + "/"):
                artifact = f"{root}/{artifact.lstrip('/')}"
            if artifact not in artifacts:
                artifacts.append(artifact)
    if artifacts:
        lines.append(f"Artifacts: {', '.join(artifacts)}")

    failures = [
        f"{r.sub_task_id}: {r.error or 'unknown error'}"
        for r in results if not r.success
    ]
    if failures:
        lines.append(f"Failures: {'; '.join(failures)}")
    return succeeded == len(results), "\n".join(lines)


async def _dispatch(
    action: PlannerToolAction,
    config: AppConfig,
    sandbox: SandboxService,
    workspace_path: str,
    delegate: DelegateRunner | None,
    abort_signal: AbortSignal | None,
) -> ToolObservation:
    tool = action.tool
    tool_input = action.input or {}
    virtual_root = config.sandbox.virtual_root

    if tool == "list_dir":
        path = _str_field(tool_input, "path") or virtual_root
        result = await sandbox.list_dir(path, workspace_path=workspace_path)
        return ToolObservation(tool, {"path": path}, True, format_list_dir(result))

    if tool == "read_file":
        path = _str_field(tool_input, "path")
        if not path:
            return _missing(tool, {}, "path")
        result = await sandbox.read_file(path, workspace_path=workspace_path)
        return ToolObservation(tool, {"path": path}, True, truncate(result.content))

    if tool == "write_file":
        path = _str_field(tool_input, "path")
        if not path:
            return _missing(tool, {}, "path")
        content = tool_input.get("content")
        if content is None:
            return _missing(tool, {"path": path}, "content")
        written = await sandbox.write_file(
            path,
            str(content),
            workspace_path=workspace_path,
            overwrite=bool(tool_input.get("overwrite", True)),
        )
        return ToolObservation(
            tool, {"path": path}, True,
            f"File written: path={written.path} ({written.bytes_written} bytes)",
        )

    if tool == "exec":
        command = _str_field(tool_input, "command")
        if not command:
            return _missing(tool, tool_input, "command")
        raw_args = tool_input.get("args")
        args = [a for a in raw_args if isinstance(a, str)] if isinstance(raw_args, list) else []
        cwd = _str_field(tool_input, "cwd") or None
        timeout = tool_input.get("timeout_seconds")
        result = await sandbox.exec(
            command,
            args,
            cwd=cwd,
            timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
            workspace_path=workspace_path,
            abort_signal=abort_signal,
        )
        exec_input = {"command": command, "args": args}
        if cwd:
            exec_input["cwd"] = cwd
        return ToolObservation(tool, exec_input, result.exit_code == 0, format_exec(result))

    if tool == "web_fetch":
        if not config.tools.web_fetch_enabled:
            return ToolObservation(tool, tool_input, False, "Tool is disabled: web_fetch")
        url = _str_field(tool_input, "url")
        if not url:
            return _missing(tool, tool_input, "url")
        return ToolObservation(tool, {"url": url}, True, await _web_fetch(config, url))

    if tool in ("web_search", "github_search"):
        enabled = (
            config.tools.web_search_enabled if tool == "web_search"
            else config.tools.github_search_enabled
        )
        if not enabled:
            return ToolObservation(tool, tool_input, False, f"Tool is disabled: {tool}")
        query = _str_field(tool_input, "query")
        if not query:
            return _missing(tool, tool_input, "query")
        search = _web_search if tool == "web_search" else _github_search
        return ToolObservation(tool, {"query": query}, True, await search(config, query))

    if tool == "write_todos":
        raw_todos = tool_input.get("todos")
        if not isinstance(raw_todos, list):
            return ToolObservation(
                tool, tool_input, False, "Invalid input: todos array is required",
            )
        todos = apply_todo_updates(None, raw_todos)
        counts = {status: sum(1 for t in todos if t.status == status) for status in TODO_STATUSES}
        return ToolObservation(
            tool, {"todo_count": len(todos)}, True,
            f"Updated {len(todos)} todos. Status: {counts['pending']} pending, "
            f"{counts['in_progress']} in_progress, {counts['completed']} completed.",
        )

    if tool == "ask_clarification":
        question = _str_field(tool_input, "question")
        return ToolObservation(
            tool, tool_input, False,
            f"Clarification required: {question}" if question else "Clarification required",
        )

    if tool == "delegate_sub_tasks":
        tasks = validate_delegation_tasks(tool_input.get("tasks"))
        task_input = {"tasks": [t.to_dict() for t in tasks]}
        if delegate is None:
            return ToolObservation(
                tool, task_input, False, "Delegation is not available in this runtime",
            )
        logger.info("Delegating %d sub-tasks", len(tasks))
        results = await delegate(tasks, workspace_path, abort_signal)
        ok, output = _format_delegation(results, virtual_root)
        return ToolObservation(tool, task_input, ok, output)

    return ToolObservation(tool, tool_input, False, f"Unknown tool: {tool}")


async def execute_planner_tool(
    action: PlannerToolAction,
    config: AppConfig,
    sandbox: SandboxService,
    workspace_path: str,
    *,
    delegate: DelegateRunner | None = None,
    abort_signal: AbortSignal | None = None,
) -> ToolObservation:
    """Execute *action* against the sandbox rooted at *workspace_path*."""
    try:
        return await _dispatch(
            action, config, sandbox, workspace_path, delegate, abort_signal,
        )
    except Exception as exc:
        logger.debug("Tool %s failed: %s", action.tool, exc)
        message = str(exc) or exc.__class__.__name__
        code = getattr(exc, "code", None)
        if isinstance(code, str) and code.lower() not in message.lower():
            message = f"{code}: {message}"
        return ToolObservation(
            tool=action.tool,
            input=action.input or {},
            ok=False,
            output=_normalize_spaces(message),
        )
