"""Prompt text for the planner, synthesizer and clarification calls."""
from __future__ import annotations

import datetime as _dt
import re
from typing import TYPE_CHECKING

from .models import ChatMode, TodoItem

if TYPE_CHECKING:
    from .yaml_config import AppConfig

_CJK_RE = re.compile(r"[一-鿿]")

BASE_TOOLS = ("list_dir", "read_file", "write_file", "exec", "ask_clarification")

TOOL_DESCRIPTIONS: dict[str, str] = {
    "list_dir": 'List a workspace directory. input: {"path": "<virtual path>"}',
    "read_file": 'Read a workspace file. input: {"path": "<virtual path>"}',
    "write_file": (
        'Create or replace a workspace file. '
        'input: {"path": "...", "content": "...", "overwrite": true}'
    ),
    "exec": (
        'Run an allowed command (no shell). '
        'input: {"command": "git", "args": ["status"], "cwd": "<virtual path>"}'
    ),
    "ask_clarification": (
        'Ask the user one question when the request is ambiguous. '
        'input: {"question": "..."}'
    ),
    "web_fetch": 'Fetch a URL and return its text. input: {"url": "https://..."}',
    "web_search": 'Search the web for current information. input: {"query": "..."}',
    "github_search": 'Search GitHub repositories. input: {"query": "..."}',
    "write_todos": (
        'Replace the task list. '
        'input: {"todos": [{"id": "1", "content": "...", "status": "pending"}]}'
    ),
    "delegate_sub_tasks": (
        'Fan work out to sub-agents. input: {"tasks": [{"sub_task_id": "sub_1", '
        '"agent_role": "researcher|bash_operator|writer", "prompt": "...", '
        '"dependencies": [], "write_path": "staging/notes.md"}]}'
    ),
}

_MODE_GUIDANCE: dict[ChatMode, str] = {
    ChatMode.DEFAULT: (
        "Prefer the fewest tool calls that answer the request. "
        "Answer directly when no tool is needed."
    ),
    ChatMode.THINKING: (
        "Think through the problem before each step. Verify assumptions "
        "with read-only tools before changing anything."
    ),
    ChatMode.SUBAGENTS: (
        "You are a task orchestrator. Keep the task list current with "
        "write_todos, execute one item at a time and mark progress as you go."
    ),
}

PLANNER_PROMPT = """You are Bandry desktop coding assistant, planning one step at a time.

{mode_guidance}

Date: {current_date}
Workspace virtual root: {virtual_root}
Allowed commands for exec: {allowed_commands}
Maximum sub-tasks per delegation: {max_sub_tasks}

Available tools:
{tool_lines}
{todo_section}{persist_section}
Reply with exactly one JSON object and nothing else:
{{"action": "tool", "tool": "<name>", "input": {{...}}, "reason": "<short>"}}
or
{{"action": "answer", "answer": "<draft answer>"}}

Rules:
- One tool per step. Read the observations before choosing the next step.
- Never call the same tool with the same input twice.
- Only use paths under {virtual_root}.
- Ask for clarification instead of guessing when critical information is missing.
- {language_hint}"""

FINAL_PROMPT = "\n".join([
    "You are Bandry desktop coding assistant.",
    "Provide concise, practical, actionable response.",
    "When using tool observations, cite key findings first, then recommendation.",
    "If tool output contains errors, explain likely fix.",
    "Never claim you fetched external data unless web_fetch or web_search observations are present.",
    "Do not echo raw planner action JSON. Convert observations into readable "
    "Markdown with concise structure.",
])

CLARIFICATION_OPTIONS_PROMPT = (
    "Generate exactly 3 clarification reply options for desktop chat UI. "
    "Return JSON array only. Each item must include label and value. "
    "Keep label <= 12 Chinese characters. "
    "Option 1 must be the recommended default."
)


def detect_language(text: str) -> str:
    """Return "zh", "en" or "auto" from the share of CJK characters."""
    total = len(re.sub(r"\s", "", text or ""))
    if total == 0:
        return "auto"
    ratio = len(_CJK_RE.findall(text)) / total
    if ratio > 0.3:
        return "zh"
    if ratio < 0.1:
        return "en"
    return "auto"


def language_hint(language: str) -> str:
    if language == "zh":
        return "Respond in Chinese (中文) to match the user's input language."
    if language == "en":
        return "Respond in English to match the user's input language."
    return "Respond in the same language as the user's input."


def enabled_tools(config: AppConfig, mode: ChatMode) -> list[str]:
    """Tool names advertised to the planner for *mode*."""
    tools = list(BASE_TOOLS)
    if mode == ChatMode.SUBAGENTS:
        tools.append("write_todos")
    else:
        tools.append("delegate_sub_tasks")
    if config.tools.github_search_enabled:
        tools.append("github_search")
    if config.tools.web_search_enabled:
        tools.append("web_search")
    if config.tools.web_fetch_enabled:
        tools.append("web_fetch")
    return tools


PERSIST_SECTION = """
<persist_requirement>
The user asked for the result to be saved to a file. You MUST call write_file
successfully before answering. Target path: {path}
Do not overwrite existing files; ask for a new path under {output_root} instead.
</persist_requirement>
"""


def _todo_section(todos: list[TodoItem] | None) -> str:
    if not todos:
        return ""
    lines = [f"- [{item.status}] {item.id}: {item.content}" for item in todos]
    return "\nCurrent task list:\n" + "\n".join(lines) + "\n"


def build_planner_system_prompt(
    config: AppConfig,
    mode: ChatMode = ChatMode.DEFAULT,
    user_message: str = "",
    todos: list[TodoItem] | None = None,
    *,
    persist_required: bool = False,
    persist_path_hint: str = "",
) -> str:
    tools = enabled_tools(config, mode)
    persist_section = ""
    if persist_required:
        persist_section = PERSIST_SECTION.format(
            path=persist_path_hint or "(choose a path under output/)",
            output_root=f"{config.sandbox.virtual_root.rstrip('/')}/output/",
        )
    return PLANNER_PROMPT.format(
        mode_guidance=_MODE_GUIDANCE[mode],
        current_date=_dt.date.today().isoformat(),
        virtual_root=config.sandbox.virtual_root,
        allowed_commands=", ".join(config.sandbox.allowed_commands) or "(none)",
        max_sub_tasks=config.engine.max_subagents,
        tool_lines="\n".join(f"- {name}: {TOOL_DESCRIPTIONS[name]}" for name in tools),
        todo_section=_todo_section(todos),
        persist_section=persist_section,
        language_hint=language_hint(detect_language(user_message)),
    )


def build_final_system_prompt() -> str:
    return FINAL_PROMPT


def build_clarification_options_prompt() -> str:
    return CLARIFICATION_OPTIONS_PROMPT
