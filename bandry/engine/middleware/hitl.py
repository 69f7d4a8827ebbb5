"""Risk-gated human approval of pending tool calls.

After each model call, pending tool calls are classified against three
tables: destructive command patterns, risky tool names, and paths that
leave the sandbox. Medium and high risk calls emit an approval request
correlated by task id and suspend until a matching response arrives
or the timeout elapses. Timeouts resolve to rejection. A rejection
clears the pending tool calls so nothing executes.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from ..config import fire_update
from ..errors import CancellationError
from ..models import (
    HITLApprovalRequest,
    HITLApprovalResponse,
    MiddlewareContext,
    RiskAssessment,
    RiskLevel,
    ToolCall,
    UpdateStage,
)
from ..yaml_config import DEFAULT_VIRTUAL_ROOT
from .base import Middleware

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_TIMEOUT = 300.0

# Receives each approval request; may be sync or async.
ApprovalEmitter = Callable[[HITLApprovalRequest], Awaitable[None] | None]

HIGH_RISK_COMMANDS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\brm\s+-[a-z]*r[a-z]*f|\brm\s+-[a-z]*f[a-z]*r",
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+push\s+(?:.*\s)?(?:--force|-f)\b",
    r"\bgit\s+clean\s+-[a-z]*f[a-z]*d|\bgit\s+clean\s+-[a-z]*d[a-z]*f",
    r"\bdd\s+(?:if|of)=",
    r"\bmkfs(?:\.|\s)",
    r"\bformat\s+[a-z]:",
    r"\bdel\s+/[sf]\b",
    r"\brmdir\s+/s\b",
    r"\bsudo\b",
    r"\bfdisk\b",
    r"\bshutdown\b|\breboot\b|\bpoweroff\b",
    r"\bkill\s+-9\b|\bkillall\b",
    r"\bdocker\s+(?:volume\s+(?:rm|prune)|system\s+prune)\b",
    r"(?:curl|wget)[^|]*\|\s*(?:sh|bash)\b",
    r":\(\)\s*\{",
))

MEDIUM_RISK_COMMANDS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\bgit\s+push\b",
    r"\bnpm\s+publish\b",
    r"\bcurl\b",
    r"\bwget\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bchgrp\b",
))

HIGH_RISK_TOOLS = frozenset({"execute_bash", "write_to_file", "delete_file", "remove_file"})
MEDIUM_RISK_TOOLS = frozenset({"write_file", "network_request", "install_package"})

COMMAND_TOOLS = frozenset({"exec", "execute_bash", "bash", "shell"})
PATH_TOOLS = frozenset({"write_file", "write_to_file", "delete_file", "remove_file"})


def _path_patterns(virtual_root: str) -> tuple[re.Pattern[str], ...]:
    root = re.escape(virtual_root.strip("/"))
    return (
        re.compile(rf"^/(?!{root}(?:/|$))", re.IGNORECASE),
        re.compile(r"(?:^|/)\.\.(?:/|$)"),
        re.compile(r"^~"),
        re.compile(r"^/(?:etc|usr|var)(?:/|$)", re.IGNORECASE),
    )


def _command_text(args: dict[str, Any]) -> str:
    command = args.get("command") or args.get("cmd") or args.get("script") or ""
    if not isinstance(command, str):
        return ""
    extra = args.get("args")
    if isinstance(extra, list):
        command = " ".join([command, *(str(a) for a in extra)])
    return command.strip()


def assess_risk(
    tool_calls: list[ToolCall],
    virtual_root: str = DEFAULT_VIRTUAL_ROOT,
) -> RiskAssessment:
    """Classify *tool_calls*; the highest finding decides the level."""
    level = RiskLevel.LOW
    reason = ""
    operations: list[str] = []
    path_patterns = _path_patterns(virtual_root)

    def record(found: RiskLevel, operation: str, why: str = "") -> None:
        nonlocal level, reason
        operations.append(operation)
        if found.rank > level.rank:
            level = found
            reason = why
        elif found is level and why and not reason:
            reason = why

    for call in tool_calls:
        name = call.name
        args = call.arguments or {}

        if name in HIGH_RISK_TOOLS:
            record(RiskLevel.HIGH, name)
        elif name in MEDIUM_RISK_TOOLS:
            record(RiskLevel.MEDIUM, name)

        if name in COMMAND_TOOLS:
            command = _command_text(args)
            if command:
                if any(p.search(command) for p in HIGH_RISK_COMMANDS):
                    record(RiskLevel.HIGH, command, f"Destructive command detected: {command}")
                elif any(p.search(command) for p in MEDIUM_RISK_COMMANDS):
                    record(RiskLevel.MEDIUM, command, f"Potentially risky command: {command}")

        if name in PATH_TOOLS:
            path = args.get("path")
            if isinstance(path, str) and any(p.search(path.strip()) for p in path_patterns):
                record(RiskLevel.HIGH, f"write: {path}", f"File write outside workspace: {path}")

    if level is not RiskLevel.LOW and not reason:
        reason = f"{level.value} risk operations detected"
    return RiskAssessment(level=level, reason=reason, operations=operations)


class HITLMiddleware(Middleware):
    """Suspends risky tool calls until a human approves them."""

    name = "hitl"

    def __init__(
        self,
        emit: ApprovalEmitter | None = None,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT,
        virtual_root: str = DEFAULT_VIRTUAL_ROOT,
    ) -> None:
        self._emit = emit
        self._timeout = timeout_seconds
        self._virtual_root = virtual_root
        self._pending: dict[str, asyncio.Future[HITLApprovalResponse]] = {}

    def assess_risk(self, tool_calls: list[ToolCall]) -> RiskAssessment:
        return assess_risk(tool_calls, self._virtual_root)

    async def after_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        response = ctx.llm_response
        if response is None or not response.tool_calls:
            return ctx

        assessment = self.assess_risk(response.tool_calls)
        if assessment.level is RiskLevel.LOW:
            return ctx

        decision = await self.request_approval(ctx, assessment)
        if not decision.approved:
            logger.info(
                "Tool calls rejected task=%s risk=%s reason=%s",
                ctx.task_id[:8], assessment.level.value, decision.reason,
            )
            return ctx.evolve(
                llm_response=replace(response, tool_calls=[]),
            ).with_metadata(
                hitl_rejected=True,
                hitl_reason=assessment.reason,
                hitl_decision_reason=decision.reason or "Rejected",
            )

        logger.info(
            "Tool calls approved task=%s risk=%s",
            ctx.task_id[:8], assessment.level.value,
        )
        return ctx.with_metadata(hitl_approved=True, hitl_risk=assessment.level.value)

    async def request_approval(
        self, ctx: MiddlewareContext, assessment: RiskAssessment,
    ) -> HITLApprovalResponse:
        """Emit an approval request and wait for the matching response."""
        task_id = ctx.task_id
        tool_calls = ctx.llm_response.tool_calls if ctx.llm_response else None
        request = HITLApprovalRequest(
            task_id=task_id,
            operation=", ".join(assessment.operations),
            risk=assessment.level,
            details=assessment.reason,
            tool_calls=[
                {"name": call.name, "args": call.arguments}
                for call in tool_calls or []
            ],
        )

        loop = asyncio.get_running_loop()
        future: asyncio.Future[HITLApprovalResponse] = loop.create_future()
        previous = self._pending.get(task_id)
        if previous is not None and not previous.done():
            previous.set_result(HITLApprovalResponse(
                task_id, False, "Superseded by a newer approval request",
            ))
        self._pending[task_id] = future

        runtime = ctx.runtime
        abort_signal = runtime.abort_signal if runtime else None
        abort_wait: asyncio.Future | None = None
        delivery: asyncio.Future[bool] | None = None
        try:
            if runtime is not None:
                fire_update(
                    runtime.on_update, UpdateStage.TOOL.value,
                    f"approval required ({assessment.level.value}): {assessment.reason}",
                    {"approval": request.to_event()},
                )
            logger.info(
                "Approval requested task=%s risk=%s operation=%s",
                task_id[:8], assessment.level.value,
                request.operation[:200],
            )

            # The emitter may itself wait on a human; it shares the deadline.
            waiters: set[asyncio.Future] = {future}
            if self._emit is not None:
                delivery = asyncio.ensure_future(self._deliver(request))
                waiters.add(delivery)
            if abort_signal is not None:
                abort_wait = asyncio.ensure_future(abort_signal.wait())
                waiters.add(abort_wait)

            deadline = loop.time() + self._timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
                )
                if future in done:
                    return future.result()
                if abort_signal is not None and abort_signal.is_set():
                    raise CancellationError("awaiting approval")
                if delivery is not None and delivery in done:
                    waiters.discard(delivery)
                    if not delivery.result():
                        return HITLApprovalResponse(task_id, False, "Approval channel failed")
                    continue
                if not done:
                    break

            logger.warning(
                "Approval timed out task=%s after %.0fs, rejecting",
                task_id[:8], self._timeout,
            )
            return HITLApprovalResponse(task_id, False, "Timeout")
        finally:
            if abort_wait is not None:
                abort_wait.cancel()
            if delivery is not None and not delivery.done():
                delivery.cancel()
                await asyncio.gather(delivery, return_exceptions=True)
            if not future.done():
                future.cancel()
            if self._pending.get(task_id) is future:
                del self._pending[task_id]

    async def _deliver(self, request: HITLApprovalRequest) -> bool:
        if self._emit is None:
            return True
        try:
            result = self._emit(request)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Approval request delivery failed task=%s", request.task_id[:8])
            return False
        return True

    def submit_approval(self, response: HITLApprovalResponse) -> bool:
        """Resolve the pending wait for ``response.task_id``.

        Returns False when no wait is pending for that task.
        """
        future = self._pending.get(response.task_id)
        if future is None or future.done():
            logger.warning(
                "Approval response ignored task=%s (missing or already resolved)",
                response.task_id[:8],
            )
            return False
        future.set_result(response)
        logger.info(
            "Approval response accepted task=%s approved=%s",
            response.task_id[:8], response.approved,
        )
        return True

    def get_pending_approvals(self) -> list[str]:
        return list(self._pending)
