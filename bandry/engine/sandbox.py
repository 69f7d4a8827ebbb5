"""Sandboxed filesystem and command execution.

Tools see a virtual filesystem rooted at ``sandbox.virtual_root``
(``/mnt/workspace`` by default). Every virtual path is mapped onto a
real directory: the workspace passed explicitly by the caller, else
the ambient workspace binding, else ``sandbox.root_dir``. Paths that
escape the root are rejected before any I/O.

Commands run without a shell via asyncio.create_subprocess_exec and
must appear in ``sandbox.allowed_commands``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import posixpath
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .errors import SandboxError
from .models import AbortSignal
from .yaml_config import AppConfig

logger = logging.getLogger(__name__)

# Commands whose positional arguments are workspace paths.
_PATH_ARG_COMMANDS = frozenset({"ls", "cat", "head", "tail", "wc"})
_UNSAFE_TOKENS = ("&&", "||", "|", ";", "`", "$(")


@dataclass(frozen=True)
class WorkspaceBinding:
    task_id: str
    workspace_path: str


@dataclass(frozen=True)
class DirEntry:
    name: str
    virtual_path: str
    type: str


@dataclass(frozen=True)
class ListDirResult:
    path: str
    entries: list[DirEntry] = field(default_factory=list)


@dataclass(frozen=True)
class ReadFileResult:
    path: str
    content: str


@dataclass(frozen=True)
class WriteFileResult:
    path: str
    bytes_written: int


@dataclass(frozen=True)
class ExecResult:
    command: str
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    output_truncated: bool = False


def _entry_type(path: Path) -> str:
    if path.is_dir():
        return "directory"
    if path.is_file():
        return "file"
    return "other"


def _is_inside(target: Path, root: Path) -> bool:
    try:
        target.relative_to(root)
    except ValueError:
        return False
    return True


class SandboxService:
    """Virtual-root file and command access shared by all requests."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._allowed_commands = {
            c.lower() for c in config.sandbox.allowed_commands
        }
        self._binding: WorkspaceBinding | None = None

    @property
    def virtual_root(self) -> str:
        return self._config.sandbox.virtual_root.rstrip("/") or "/"

    # ── Ambient workspace binding ──

    def set_workspace_context(self, task_id: str, workspace_path: str) -> None:
        if self._binding and self._binding.task_id != task_id:
            logger.warning(
                "Workspace binding for task %s replaced by task %s",
                self._binding.task_id[:8], task_id[:8],
            )
        self._binding = WorkspaceBinding(task_id, workspace_path)
        logger.debug("Workspace bound task=%s path=%s", task_id[:8], workspace_path)

    def clear_workspace_context(self, task_id: str | None = None) -> bool:
        """Clear the binding; with *task_id*, only if that task owns it."""
        if self._binding is None:
            return False
        if task_id is not None and self._binding.task_id != task_id:
            return False
        logger.debug("Workspace unbound task=%s", self._binding.task_id[:8])
        self._binding = None
        return True

    def get_workspace_context(self) -> WorkspaceBinding | None:
        return self._binding

    @contextlib.contextmanager
    def bind_workspace(self, task_id: str, workspace_path: str) -> Iterator[None]:
        """Bind for the duration of the block, releasing on every exit path."""
        self.set_workspace_context(task_id, workspace_path)
        try:
            yield
        finally:
            self.clear_workspace_context(task_id)

    # ── Path resolution ──

    def _real_root(self, workspace_path: str | None) -> Path:
        root = workspace_path
        if not root and self._binding is not None:
            root = self._binding.workspace_path
        if not root:
            root = self._config.sandbox.root_dir
        if not root:
            raise SandboxError("NO_WORKSPACE", "No workspace is bound to the sandbox")
        return Path(root).expanduser().resolve()

    def normalize_virtual_path(self, path: str) -> str:
        if not isinstance(path, str) or not path.strip():
            raise SandboxError("INVALID_PATH", "Path cannot be empty")
        source = path.strip().replace("\\", "/")
        if not source.startswith("/"):
            source = posixpath.join(self.virtual_root, source)
        virtual = posixpath.normpath(source)
        root = self.virtual_root
        if virtual != root and not virtual.startswith(root.rstrip("/") + "/"):
            raise SandboxError(
                "INVALID_PATH",
                f"Path escapes virtual root {root}: {path}",
            )
        return virtual

    def resolve(
        self,
        path: str,
        workspace_path: str | None = None,
        must_exist: bool = True,
    ) -> tuple[str, Path]:
        """Map a virtual path to (normalized virtual path, real path)."""
        virtual = self.normalize_virtual_path(path)
        root = self._real_root(workspace_path)
        relative = posixpath.relpath(virtual, self.virtual_root)
        real = root if relative == "." else (root / relative)
        real = real.resolve()
        if not _is_inside(real, root):
            raise SandboxError("INVALID_PATH", f"Path is outside the workspace: {path}")
        if must_exist and not real.exists():
            raise SandboxError("PATH_NOT_FOUND", f"Path does not exist: {virtual}")
        return virtual, real

    # ── Operations ──

    async def list_dir(
        self, path: str, workspace_path: str | None = None,
    ) -> ListDirResult:
        virtual, real = self.resolve(path, workspace_path)
        if not real.is_dir():
            raise SandboxError("NOT_A_DIRECTORY", f"Not a directory: {virtual}")
        entries = [
            DirEntry(
                name=child.name,
                virtual_path=posixpath.join(virtual, child.name),
                type=_entry_type(child),
            )
            for child in sorted(real.iterdir(), key=lambda p: p.name)
        ]
        return ListDirResult(path=virtual, entries=entries)

    async def read_file(
        self, path: str, workspace_path: str | None = None,
    ) -> ReadFileResult:
        virtual, real = self.resolve(path, workspace_path)
        if not real.is_file():
            raise SandboxError("NOT_A_FILE", f"Not a file: {virtual}")
        content = real.read_text(encoding="utf-8", errors="replace")
        return ReadFileResult(path=virtual, content=content)

    async def write_file(
        self,
        path: str,
        content: str,
        workspace_path: str | None = None,
        overwrite: bool = True,
    ) -> WriteFileResult:
        virtual, real = self.resolve(path, workspace_path, must_exist=False)
        if real.is_dir():
            raise SandboxError("NOT_A_FILE", f"Path is a directory: {virtual}")
        if real.exists() and not overwrite:
            raise SandboxError("FILE_EXISTS", f"Target file already exists: {virtual}")
        real.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        real.write_bytes(data)
        logger.debug("write_file %s (%d bytes)", virtual, len(data))
        return WriteFileResult(path=virtual, bytes_written=len(data))

    def _resolve_command(
        self,
        command: str,
        args: list[str],
        workspace_path: str | None,
    ) -> tuple[str, list[str]]:
        name = (command or "").strip()
        if not name or any(ch.isspace() for ch in name):
            raise SandboxError(
                "COMMAND_NOT_ALLOWED", "Command must be a single executable name",
            )
        if "/" in name or "\\" in name:
            raise SandboxError(
                "COMMAND_NOT_ALLOWED", "Executable paths are not allowed",
            )
        name = name.lower()
        if name not in self._allowed_commands:
            raise SandboxError(
                "COMMAND_NOT_ALLOWED", f"Command is not in allowlist: {name}",
            )

        resolved: list[str] = []
        for arg in args:
            if not isinstance(arg, str):
                raise SandboxError("UNSAFE_ARGUMENT", "All command arguments must be strings")
            if any(token in arg for token in _UNSAFE_TOKENS):
                raise SandboxError(
                    "UNSAFE_ARGUMENT", f"Argument contains blocked shell tokens: {arg}",
                )
            if name in _PATH_ARG_COMMANDS and arg and not arg.startswith("-"):
                _, real = self.resolve(arg, workspace_path)
                resolved.append(str(real))
            else:
                resolved.append(arg)
        return name, resolved

    async def exec(
        self,
        command: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        workspace_path: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ExecResult:
        name, resolved_args = self._resolve_command(command, list(args or []), workspace_path)
        _, real_cwd = self.resolve(cwd or self.virtual_root, workspace_path)

        limit = self._config.sandbox.exec_timeout_seconds
        timeout = min(limit, max(0.25, timeout)) if timeout else limit
        max_chars = self._config.sandbox.max_output_chars

        started = time.monotonic()
        try:
            # Array-based exec, no shell
            proc = await asyncio.create_subprocess_exec(
                name, *resolved_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(real_cwd),
                env={"PATH": os.environ.get("PATH", "")},
            )
        except FileNotFoundError:
            raise SandboxError("COMMAND_NOT_FOUND", f"Command not found: {name}") from None

        communicate = asyncio.ensure_future(proc.communicate())
        waiters: set[asyncio.Future] = {communicate}
        abort_wait = None
        if abort_signal is not None:
            abort_wait = asyncio.ensure_future(abort_signal.wait())
            waiters.add(abort_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_wait is not None:
                abort_wait.cancel()

        if communicate not in done:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await communicate
            if abort_signal is not None and abort_signal.is_set():
                raise SandboxError("ABORTED", f"Command aborted: {name}")
            raise SandboxError(
                "TIMEOUT", f"Command exceeded timeout ({timeout:.1f}s): {name}",
            )

        stdout_b, stderr_b = communicate.result()
        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        truncated = len(stdout) + len(stderr) > max_chars
        if truncated:
            stdout = stdout[:max_chars]
            stderr = stderr[:max(0, max_chars - len(stdout))]

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "exec %s args=%d rc=%s %dms", name, len(resolved_args),
            proc.returncode, duration_ms,
        )
        return ExecResult(
            command=name,
            args=resolved_args,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            output_truncated=truncated,
        )
