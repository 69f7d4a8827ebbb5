from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from bandry.engine.delegation import SubTaskResult
from bandry.engine.errors import SandboxError
from bandry.engine.models import PlannerToolAction, TodoItem
from bandry.engine.sandbox import SandboxService
from bandry.engine.tool_executor import apply_todo_updates, execute_planner_tool, truncate


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "task_x"
    (root / "src").mkdir(parents=True)
    (root / "README.md").write_text("# hello\n", encoding="utf-8")
    (root / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    return root


# ── SandboxService ──


def test_virtual_paths_map_into_workspace(sandbox, workspace):
    virtual, real = sandbox.resolve("/mnt/workspace/src/main.py", str(workspace))
    assert virtual == "/mnt/workspace/src/main.py"
    assert real == (workspace / "src" / "main.py").resolve()

    virtual, _ = sandbox.resolve("src", str(workspace))
    assert virtual == "/mnt/workspace/src"


@pytest.mark.parametrize("path", ["/etc/passwd", "/mnt/workspace/../../etc", "../outside", "  "])
def test_paths_outside_virtual_root_are_rejected(sandbox, workspace, path):
    with pytest.raises(SandboxError) as exc_info:
        sandbox.resolve(path, str(workspace))
    assert exc_info.value.code == "INVALID_PATH"


def test_missing_path_raises_path_not_found(sandbox, workspace):
    with pytest.raises(SandboxError) as exc_info:
        sandbox.resolve("/mnt/workspace/nope.txt", str(workspace))
    assert exc_info.value.code == "PATH_NOT_FOUND"
    assert "Path does not exist" in str(exc_info.value)


def test_no_workspace_bound_is_an_error(sandbox):
    with pytest.raises(SandboxError) as exc_info:
        sandbox.resolve("/mnt/workspace")
    assert exc_info.value.code == "NO_WORKSPACE"


def test_ambient_binding_and_scoped_release(sandbox, workspace):
    with sandbox.bind_workspace("task-a", str(workspace)):
        _, real = sandbox.resolve("/mnt/workspace/README.md")
        assert real == (workspace / "README.md").resolve()
        assert sandbox.clear_workspace_context("task-b") is False
    assert sandbox.get_workspace_context() is None


@pytest.mark.asyncio
async def test_list_read_write(sandbox, workspace):
    listing = await sandbox.list_dir("/mnt/workspace", str(workspace))
    assert [(e.name, e.type) for e in listing.entries] == [("README.md", "file"), ("src", "directory")]

    read = await sandbox.read_file("/mnt/workspace/README.md", str(workspace))
    assert read.content == "# hello\n"

    written = await sandbox.write_file("/mnt/workspace/out/notes.md", "héllo", str(workspace))
    assert written.bytes_written == len("héllo".encode("utf-8"))
    assert (workspace / "out" / "notes.md").read_text(encoding="utf-8") == "héllo"

    with pytest.raises(SandboxError) as exc_info:
        await sandbox.write_file("/mnt/workspace/README.md", "x", str(workspace), overwrite=False)
    assert exc_info.value.code == "FILE_EXISTS"


@pytest.mark.asyncio
async def test_exec_allowed_command_runs_without_shell(sandbox, workspace):
    result = await sandbox.exec("ls", ["/mnt/workspace/src"], workspace_path=str(workspace))
    assert result.exit_code == 0
    assert "main.py" in result.stdout


@pytest.mark.asyncio
@pytest.mark.parametrize("command,args,code", [
    ("rm", ["-rf", "x"], "COMMAND_NOT_ALLOWED"),
    ("/bin/ls", [], "COMMAND_NOT_ALLOWED"),
    ("ls", ["a; rm -rf /"], "UNSAFE_ARGUMENT"),
    ("cat", ["/etc/passwd"], "INVALID_PATH"),
])
async def test_exec_rejections(sandbox, workspace, command, args, code):
    with pytest.raises(SandboxError) as exc_info:
        await sandbox.exec(command, args, workspace_path=str(workspace))
    assert exc_info.value.code == code


@pytest.mark.asyncio
async def test_exec_timeout_and_abort(app_config, workspace):
    app_config.sandbox.allowed_commands = ["sleep"]
    app_config.sandbox.exec_timeout_seconds = 0.3
    sandbox = SandboxService(app_config)

    with pytest.raises(SandboxError) as exc_info:
        await sandbox.exec("sleep", ["5"], workspace_path=str(workspace))
    assert exc_info.value.code == "TIMEOUT"

    app_config.sandbox.exec_timeout_seconds = 5
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)
    with pytest.raises(SandboxError) as exc_info:
        await sandbox.exec("sleep", ["5"], workspace_path=str(workspace), abort_signal=abort)
    assert exc_info.value.code == "ABORTED"


# ── execute_planner_tool ──


async def _run(action, app_config, sandbox, workspace, **kwargs):
    return await execute_planner_tool(action, app_config, sandbox, str(workspace), **kwargs)


@pytest.mark.asyncio
async def test_list_dir_observation(app_config, sandbox, workspace):
    obs = await _run(PlannerToolAction("list_dir", {}), app_config, sandbox, workspace)
    assert obs.ok
    assert obs.input == {"path": "/mnt/workspace"}
    assert obs.output == "file\tREADME.md\ndirectory\tsrc"


@pytest.mark.asyncio
async def test_write_file_observation(app_config, sandbox, workspace):
    obs = await _run(
        PlannerToolAction("write_file", {"path": "/mnt/workspace/a.txt", "content": "abc"}),
        app_config, sandbox, workspace,
    )
    assert obs.ok
    assert obs.output == "File written: path=/mnt/workspace/a.txt (3 bytes)"


@pytest.mark.asyncio
async def test_failures_become_observations(app_config, sandbox, workspace):
    missing = await _run(
        PlannerToolAction("read_file", {"path": "/mnt/workspace/ghost.md"}),
        app_config, sandbox, workspace,
    )
    assert not missing.ok
    assert missing.output.startswith("PATH_NOT_FOUND: Path does not exist")

    escaped = await _run(
        PlannerToolAction("read_file", {"path": "/etc/shadow"}), app_config, sandbox, workspace,
    )
    assert escaped.output.startswith("INVALID_PATH: ")

    no_path = await _run(PlannerToolAction("read_file", {}), app_config, sandbox, workspace)
    assert no_path.output == "Missing required field: input.path"

    unknown = await _run(PlannerToolAction("teleport", {}), app_config, sandbox, workspace)
    assert unknown.output == "Unknown tool: teleport"

    web = await _run(PlannerToolAction("web_fetch", {"url": "https://x"}), app_config, sandbox, workspace)
    assert web.output == "Tool is disabled: web_fetch"


@pytest.mark.asyncio
async def test_write_todos_and_clarification_observations(app_config, sandbox, workspace):
    todos = await _run(
        PlannerToolAction("write_todos", {"todos": [
            {"id": "1", "content": "a", "status": "completed"},
            {"id": "2", "subject": "b"},
        ]}),
        app_config, sandbox, workspace,
    )
    assert todos.ok
    assert "1 pending, 0 in_progress, 1 completed" in todos.output

    clarify = await _run(
        PlannerToolAction("ask_clarification", {"question": "Which one?"}),
        app_config, sandbox, workspace,
    )
    assert not clarify.ok
    assert clarify.output == "Clarification required: Which one?"


@pytest.mark.asyncio
async def test_delegation_through_runner(app_config, sandbox, workspace):
    calls = []

    async def delegate(tasks, workspace_path, abort_signal):
        calls.append((tasks, workspace_path))
        return [
            SubTaskResult("r1", True, "ok", artifacts=["output/report.md"]),
            SubTaskResult("w1", False, error="disk full"),
        ]

    action = PlannerToolAction("delegate_sub_tasks", {"tasks": [
        {"subTaskId": "r1", "agentRole": "researcher", "prompt": "look"},
        {"sub_task_id": "w1", "agent_role": "writer", "prompt": "write", "dependencies": ["r1"]},
    ]})
    obs = await _run(action, app_config, sandbox, workspace, delegate=delegate)

    assert calls[0][1] == str(workspace)
    assert not obs.ok
    assert obs.output.splitlines()[0] == "Delegation finished: 1/2 succeeded."
    assert "Artifacts: /mnt/workspace/output/report.md" in obs.output
    assert "Failures: w1: disk full" in obs.output


@pytest.mark.asyncio
async def test_delegation_validation_and_missing_runner(app_config, sandbox, workspace):
    bad = await _run(
        PlannerToolAction("delegate_sub_tasks", {"tasks": [
            {"sub_task_id": "a", "agent_role": "writer", "prompt": "x", "dependencies": ["b"]},
        ]}),
        app_config, sandbox, workspace,
    )
    assert bad.output == "Invalid dependency: b not found for task a"

    no_runner = await _run(
        PlannerToolAction("delegate_sub_tasks", {"tasks": [
            {"sub_task_id": "a", "agent_role": "writer", "prompt": "x"},
        ]}),
        app_config, sandbox, workspace,
    )
    assert no_runner.output == "Delegation is not available in this runtime"


def test_apply_todo_updates_merges_by_id():
    current = [TodoItem("1", "old", "pending"), TodoItem("2", "keep", "in_progress")]
    merged = apply_todo_updates(current, [
        {"id": "1", "content": "new", "status": "completed"},
        {"id": "3", "content": "added", "status": "bogus"},
        {"id": "4"},
    ])
    assert merged == [
        TodoItem("1", "new", "completed"),
        TodoItem("2", "keep", "in_progress"),
        TodoItem("3", "added", "pending"),
    ]


def test_truncate_marks_dropped_characters():
    assert truncate("abc", 5) == "abc"
    assert truncate("abcdefgh", 3) == "abc\n...[truncated 5 chars]"


@pytest_asyncio.fixture
async def web_server():
    from aiohttp import web
    from aiohttp.test_utils import TestServer

    async def page(request):
        return web.Response(text="hello from the web")

    async def missing(request):
        return web.Response(status=404, text="nope")

    app = web.Application()
    app.router.add_get("/page", page)
    app.router.add_get("/missing", missing)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.mark.asyncio
async def test_web_fetch_returns_body_and_reports_http_errors(app_config, sandbox, workspace, web_server):
    app_config.tools.web_fetch_enabled = True

    url = str(web_server.make_url("/page"))
    ok = await _run(PlannerToolAction("web_fetch", {"url": url}), app_config, sandbox, workspace)
    assert ok.ok
    assert ok.output == "hello from the web"

    url = str(web_server.make_url("/missing"))
    failed = await _run(PlannerToolAction("web_fetch", {"url": url}), app_config, sandbox, workspace)
    assert not failed.ok
    assert failed.output.startswith("HTTP 404 fetching")


@pytest_asyncio.fixture
async def search_server():
    from aiohttp import web
    from aiohttp.test_utils import TestServer

    received: dict = {}

    async def search(request):
        body = await request.json()
        received["web"] = body
        if body["query"] == "boom":
            return web.Response(status=500, text="upstream down")
        if body["query"] == "nothing":
            return web.json_response({"results": []})
        return web.json_response({"results": [
            {"title": "Bandry docs", "url": "https://docs.test/bandry",
             "content": "Planner   loop\nand tools", "score": 0.91234},
            {"url": "https://docs.test/other", "content": "x" * 400},
            {"title": "dropped", "url": "https://docs.test/3", "content": "over the limit"},
        ]})

    async def repositories(request):
        received["github"] = dict(request.query)
        received["github_auth"] = request.headers.get("Authorization")
        return web.json_response({"items": [
            {"full_name": "acme/bandry", "stargazers_count": 42,
             "html_url": "https://github.test/acme/bandry", "description": "Desktop  agent"},
        ]})

    app = web.Application()
    app.router.add_post("/search", search)
    app.router.add_get("/search/repositories", repositories)
    server = TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


def _enable_search(app_config, server) -> None:
    base = str(server.make_url("/")).rstrip("/")
    tools = app_config.tools
    tools.web_search_enabled = True
    tools.web_search_base_url = base + "/"
    tools.web_search_api_key = "tvly-test"
    tools.web_search_max_results = 2
    tools.github_search_enabled = True
    tools.github_api_base_url = base
    tools.github_token = "ghp-test"


@pytest.mark.asyncio
async def test_web_search_formats_ranked_results(app_config, sandbox, workspace, search_server):
    _enable_search(app_config, search_server)

    result = await _run(PlannerToolAction("web_search", {"query": " bandry "}), app_config, sandbox, workspace)

    assert result.ok
    assert result.input == {"query": "bandry"}
    assert search_server.received["web"] == {
        "api_key": "tvly-test", "query": "bandry", "max_results": 2,
    }
    first, second = result.output.split("\n\n")
    assert first == "1. Bandry docs score=0.912\nhttps://docs.test/bandry\nPlanner loop and tools"
    assert second.startswith("2. Untitled\nhttps://docs.test/other\n")
    assert second.endswith("x" * 320)


@pytest.mark.asyncio
async def test_web_search_empty_and_failed_responses(app_config, sandbox, workspace, search_server):
    _enable_search(app_config, search_server)

    empty = await _run(PlannerToolAction("web_search", {"query": "nothing"}), app_config, sandbox, workspace)
    assert empty.ok
    assert empty.output == "No web_search results."

    failed = await _run(PlannerToolAction("web_search", {"query": "boom"}), app_config, sandbox, workspace)
    assert not failed.ok
    assert failed.output == "web_search request failed (500): upstream down"


@pytest.mark.asyncio
async def test_search_tools_validate_config_and_input(app_config, sandbox, workspace):
    disabled = await _run(PlannerToolAction("web_search", {"query": "q"}), app_config, sandbox, workspace)
    assert disabled.output == "Tool is disabled: web_search"

    app_config.tools.web_search_enabled = True
    no_query = await _run(PlannerToolAction("web_search", {}), app_config, sandbox, workspace)
    assert no_query.output == "Missing required field: input.query"

    no_key = await _run(PlannerToolAction("web_search", {"query": "q"}), app_config, sandbox, workspace)
    assert not no_key.ok
    assert no_key.output == "web_search api key is missing"

    github = await _run(PlannerToolAction("github_search", {"query": "q"}), app_config, sandbox, workspace)
    assert github.output == "Tool is disabled: github_search"


@pytest.mark.asyncio
async def test_github_search_lists_repositories(app_config, sandbox, workspace, search_server):
    _enable_search(app_config, search_server)

    result = await _run(PlannerToolAction("github_search", {"query": "agent"}), app_config, sandbox, workspace)

    assert result.ok
    assert result.output == "1. acme/bandry stars=42\nhttps://github.test/acme/bandry\nDesktop agent"
    assert search_server.received["github"] == {"q": "agent", "per_page": "5"}
    assert search_server.received["github_auth"] == "Bearer ghp-test"
