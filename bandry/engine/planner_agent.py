"""Tool-planning chat agent.

One send() call runs a bounded planner loop followed by a streamed
synthesis call:

    before_agent
    repeat up to max_tool_steps:
        before_model -> planner model -> after_model
        parse action: answer | clarification | tool
        tool -> wrap_tool_call chain -> executor -> observation
    before_model -> synthesizer stream -> after_model
    write_file fallback when the request asked for a saved file
    after_agent

Middleware release hooks run on every exit path. Fatal problems
(routing, model failures, middleware failures, cancellation) are raised;
tool failures are observations the loop reasons about.

Requests that ask for a saved file ("generate an md brief and save it")
keep planning until write_file succeeds; answers before that point are
turned into PERSIST_REQUIRED observations.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from .config import DeltaCallback, UpdateCallback, fire_update
from .conversation_store import ConversationStore
from .errors import (
    CancellationError,
    EmptyMessageError,
    ModelCallError,
    OrchestrationError,
    RoutingError,
    raise_if_aborted,
)
from .middleware import (
    HITLMiddleware,
    MiddlewareLoaderOptions,
    MiddlewarePipeline,
    TodoListMiddleware,
    create_middleware_pipeline,
)
from .middleware.hitl import ApprovalEmitter
from .model_routing import (
    PLANNER_ROLE,
    SYNTHESIZER_ROLE,
    RuntimeTarget,
    require_api_key,
    resolve_runtime_target,
)
from .models import (
    AbortSignal,
    ChatMode,
    ChatSendInput,
    ChatSendResult,
    ClarificationOption,
    HITLApprovalResponse,
    LlmMessage,
    LlmResponse,
    MiddlewareContext,
    PlannerAnswer,
    PlannerToolAction,
    RuntimeHandle,
    ToolCall,
    ToolObservation,
    ToolSpec,
    UpdateStage,
)
from .persist_policy import (
    PERSIST_ANSWER_DEFERRED,
    PERSIST_WRITE_MISSING,
    default_persist_path,
    detect_persist_requirement,
    extract_requested_path,
    extract_written_path,
    is_file_exists_observation,
    resolve_persist_write_path,
    validate_persist_content,
)
from .planner_parser import extract_json_array, looks_like_json_action, try_parse_planner_action
from .prompts import (
    TOOL_DESCRIPTIONS,
    build_clarification_options_prompt,
    build_final_system_prompt,
    build_planner_system_prompt,
    enabled_tools,
)
from .providers.base import GenerateTextRequest, GenerateTextResult, ModelsFactory
from .sandbox import SandboxService
from .tool_executor import DelegateRunner, apply_todo_updates, execute_planner_tool, truncate
from .yaml_config import AppConfig

logger = logging.getLogger(__name__)

PLANNER_TEMPERATURE = 0.0
SYNTHESIS_TEMPERATURE = 0.2
CLARIFICATION_OPTIONS_MAX_TOKENS = 220
TOOL_EVENT_PREVIEW_CHARS = 240

CLARIFICATION_TOOL = "ask_clarification"
DELEGATE_TOOL = "delegate_sub_tasks"
TODOS_TOOL = "write_todos"
WRITE_FILE_TOOL = "write_file"

DEFAULT_CLARIFICATION_QUESTION = "请补充更多上下文，以便继续执行。"

# Failure output that no further planning can recover from.
UNRECOVERABLE_FAILURE_MARKERS = ("path does not exist", "invalid_path")

_HISTORY_ROLES = frozenset({"user", "assistant"})


def fallback_clarification_options(question: str) -> list[ClarificationOption]:
    """The fixed three options used when option generation fails."""
    return [
        ClarificationOption(
            label="按默认假设继续",
            value=f"请按合理默认假设继续执行。澄清问题：{question}",
            recommended=True,
        ),
        ClarificationOption(
            label="先确认范围",
            value=f"请先明确范围和边界后再继续。澄清问题：{question}",
        ),
        ClarificationOption(
            label="最小可行输出",
            value=f"请先给我最小可行结果，再迭代。澄清问题：{question}",
        ),
    ]


def parse_clarification_options(text: str) -> list[ClarificationOption] | None:
    """Parse a JSON array of {label, value}; None unless exactly 3 usable items."""
    candidate = extract_json_array(text)
    if candidate is None:
        return None
    try:
        items = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(items, list):
        return None

    usable = [
        item for item in items
        if isinstance(item, dict)
        and isinstance(item.get("label"), str) and item["label"].strip()
        and isinstance(item.get("value"), str) and item["value"].strip()
    ][:3]
    if len(usable) != 3:
        return None
    return [
        ClarificationOption(
            label=item["label"].strip(),
            value=item["value"].strip(),
            recommended=index == 0,
        )
        for index, item in enumerate(usable)
    ]


def normalize_history(history: list[dict[str, Any]] | None) -> list[LlmMessage]:
    """Keep user/assistant turns with non-empty content."""
    messages: list[LlmMessage] = []
    for entry in history or []:
        if not isinstance(entry, dict):
            continue
        role = entry.get("role")
        content = entry.get("content")
        if role not in _HISTORY_ROLES or not isinstance(content, str) or not content.strip():
            continue
        messages.append(LlmMessage(role, content))
    return messages


def should_stop_after_failure(observations: list[ToolObservation]) -> bool:
    """Stop planning when every tool failed or the last failure is unrecoverable."""
    if not observations:
        return False
    if all(not o.ok for o in observations):
        return True
    output = observations[-1].output.lower()
    return any(marker in output for marker in UNRECOVERABLE_FAILURE_MARKERS)


def _observation_json(observation: ToolObservation) -> str:
    return json.dumps(observation.to_dict(), ensure_ascii=False)


@dataclass
class _PersistState:
    """Whether this send must end with a written file, and where."""
    required: bool = False
    requested_path: str | None = None
    default_path: str = ""
    path_hint: str = ""
    invalid_reason: str = ""
    done: bool = False
    persisted_path: str | None = None

    @property
    def pending(self) -> bool:
        return self.required and not self.done

    @classmethod
    def for_message(cls, message: str, virtual_root: str) -> _PersistState:
        default_path = default_persist_path(message)
        if not detect_persist_requirement(message).required:
            return cls(default_path=default_path)
        requested = extract_requested_path(message)
        resolution = resolve_persist_write_path(requested, default_path, virtual_root)
        return cls(
            required=True,
            requested_path=requested,
            default_path=default_path,
            path_hint=resolution.path if resolution.ok else "",
            invalid_reason="" if resolution.ok else f"{resolution.code}: {resolution.message}",
        )


@dataclass
class _Turn:
    """Per-send bookkeeping shared by the loop helpers."""
    message: str
    history: list[LlmMessage]
    planner: RuntimeTarget
    synthesizer: RuntimeTarget
    on_update: UpdateCallback | None
    abort_signal: AbortSignal | None
    persist: _PersistState
    latency_ms: int = 0
    planner_calls: int = 0


class ToolPlanningChatAgent:
    """Drives planner, tools and synthesizer through the middleware pipeline."""

    def __init__(
        self,
        config: AppConfig,
        models_factory: ModelsFactory,
        sandbox: SandboxService,
        conversation_store: ConversationStore | None = None,
        delegate: DelegateRunner | None = None,
        approval_emitter: ApprovalEmitter | None = None,
    ) -> None:
        self.config = config
        self.models_factory = models_factory
        self.sandbox = sandbox
        self.conversation_store = conversation_store
        self.delegate = delegate

        # Shared across requests: todos and pending approvals outlive one send().
        self.todo_list = TodoListMiddleware()
        self.hitl: HITLMiddleware | None = None
        if config.engine.hitl_enabled or approval_emitter is not None:
            self.hitl = HITLMiddleware(
                emit=approval_emitter,
                timeout_seconds=config.engine.hitl_timeout_seconds,
                virtual_root=config.sandbox.virtual_root,
            )
        self._pipelines: dict[ChatMode, MiddlewarePipeline] = {}

    def pipeline_for(self, mode: ChatMode) -> MiddlewarePipeline:
        pipeline = self._pipelines.get(mode)
        if pipeline is None:
            pipeline = create_middleware_pipeline(MiddlewareLoaderOptions(
                config=self.config,
                sandbox=self.sandbox,
                mode=mode,
                todo_list=self.todo_list,
                hitl=self.hitl,
            ))
            self._pipelines[mode] = pipeline
        return pipeline

    # ── HITL channel ──

    def submit_approval(self, response: HITLApprovalResponse) -> bool:
        if self.hitl is None:
            logger.warning("Approval submitted but the risk gate is disabled")
            return False
        return self.hitl.submit_approval(response)

    def get_pending_approvals(self) -> list[str]:
        return self.hitl.get_pending_approvals() if self.hitl else []

    # ── Entry point ──

    async def send(
        self,
        input: ChatSendInput,
        on_update: UpdateCallback | None = None,
        on_delta: DeltaCallback | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ChatSendResult:
        """Answer one user message.

        Raises:
            EmptyMessageError: blank message, before any model call.
            RoutingError: planner or synthesizer binding unusable.
            ModelCallError: a model call failed.
            MiddlewareError: a middleware hook failed.
            CancellationError: abort_signal was set.
        """
        message = (input.message or "").strip()
        if not message:
            raise EmptyMessageError()
        raise_if_aborted(abort_signal, "before start")

        turn = _Turn(
            message=message,
            history=normalize_history(input.history),
            planner=self._resolve(PLANNER_ROLE, on_update),
            synthesizer=self._resolve(SYNTHESIZER_ROLE, on_update),
            on_update=on_update,
            abort_signal=abort_signal,
            persist=_PersistState.for_message(message, self.config.sandbox.virtual_root),
        )

        mode = ChatMode(input.mode)
        ctx_fields: dict[str, Any] = {}
        if input.request_id:
            ctx_fields["task_id"] = input.request_id
        ctx = MiddlewareContext(
            conversation_id=input.conversation_id,
            messages=[*turn.history, LlmMessage("user", message)],
            tools=[
                ToolSpec(name, TOOL_DESCRIPTIONS[name])
                for name in enabled_tools(self.config, mode)
            ],
            chat_mode=mode,
            runtime=RuntimeHandle(
                config=self.config,
                models_factory=self.models_factory,
                sandbox=self.sandbox,
                conversation_store=self.conversation_store,
                on_update=on_update,
                abort_signal=abort_signal,
            ),
            **ctx_fields,
        )
        logger.info(
            "Chat send task=%s mode=%s conversation=%s planner=%s synthesizer=%s",
            ctx.task_id[:8], mode.value, (input.conversation_id or "-")[:8],
            turn.planner.describe(), turn.synthesizer.describe(),
        )

        pipeline = self.pipeline_for(mode)
        latest = ctx
        try:
            latest = ctx = await pipeline.run_before_agent(ctx)
            raise_if_aborted(abort_signal, "after before_agent")

            draft, observations = "", []
            clarification = self._persist_path_clarification(turn)
            if clarification is None:
                ctx, draft, observations, clarification = await self._plan(pipeline, ctx, turn)
                latest = ctx

            if clarification is not None:
                reply = clarification
                provider, model = turn.planner.provider, turn.planner.model
                ctx = ctx.evolve(final_response=reply)
            else:
                ctx, result = await self._synthesize(
                    pipeline, ctx, turn, draft, observations, on_delta,
                )
                latest = ctx
                reply = ctx.final_response or ""
                provider, model = result.provider, result.model
                if turn.persist.required:
                    reply = await self._finish_persist(ctx, turn, reply)
                    latest = ctx = ctx.evolve(final_response=reply)

            raise_if_aborted(abort_signal, "before after_agent")
            latest = ctx = await pipeline.run_after_agent(ctx)
            turn.latency_ms += ctx.metadata.get("middleware_latency_ms", 0)
        finally:
            await pipeline.release(latest)

        fire_update(on_update, UpdateStage.FINAL.value, "reply ready")
        logger.info(
            "Chat send done task=%s planner_calls=%d observations=%d latency=%dms",
            ctx.task_id[:8], turn.planner_calls, len(observations), turn.latency_ms,
        )
        return ChatSendResult(
            reply=reply,
            provider=provider,
            model=model,
            latency_ms=turn.latency_ms,
            workspace_path=ctx.workspace_path or None,
        )

    # ── Planner loop ──

    async def _plan(
        self,
        pipeline: MiddlewarePipeline,
        ctx: MiddlewareContext,
        turn: _Turn,
    ) -> tuple[MiddlewareContext, str, list[ToolObservation], str | None]:
        """Run the planner loop.

        Returns (ctx, draft answer, observations, clarification reply).
        """
        max_steps = max(1, self.config.engine.max_tool_steps)
        observations: list[ToolObservation] = []
        attempted: set[str] = set()
        draft = ""

        for step in range(1, max_steps + 1):
            raise_if_aborted(turn.abort_signal, f"planner step {step}")
            fire_update(
                turn.on_update, UpdateStage.PLANNING.value,
                f"planner step {step}/{max_steps}",
            )

            ctx = ctx.evolve(messages=self._planner_messages(ctx, turn, observations))
            ctx, _ = await self._call_model(pipeline, ctx, turn, turn.planner, planner=True)
            turn.planner_calls += 1
            raise_if_aborted(turn.abort_signal, f"after planner step {step}")
            raw = ctx.llm_response.content if ctx.llm_response else ""

            action = try_parse_planner_action(raw)
            if action is None:
                if not looks_like_json_action(raw):
                    draft = raw.strip()
                if turn.persist.pending:
                    observations.append(self._persist_reminder(turn, PERSIST_WRITE_MISSING))
                    continue
                logger.debug("Planner output not actionable task=%s step=%d", ctx.task_id[:8], step)
                break

            if isinstance(action, PlannerAnswer):
                draft = action.answer
                if turn.persist.pending:
                    observations.append(self._persist_reminder(turn, PERSIST_ANSWER_DEFERRED))
                    continue
                break

            if action.tool == CLARIFICATION_TOOL:
                reply = await self._clarify(action, turn)
                return ctx, draft, observations, reply

            if turn.persist.required and action.tool == WRITE_FILE_TOOL:
                action = self._with_persist_defaults(action, turn)

            if action.signature in attempted:
                logger.info(
                    "Repeated tool call %s task=%s, ending planner loop",
                    action.tool, ctx.task_id[:8],
                )
                break
            attempted.add(action.signature)

            if ctx.llm_response is not None and not ctx.llm_response.tool_calls:
                reason = ctx.metadata.get("hitl_decision_reason") or "Rejected"
                observation = ToolObservation(
                    action.tool, action.input, False,
                    f"Tool call rejected by approval gate: {reason}",
                )
            else:
                observation = await pipeline.execute_tool_call(ctx, action, self._execute_tool)
            raise_if_aborted(turn.abort_signal, f"after {action.tool}")

            observations.append(observation)
            if action.tool == TODOS_TOOL and observation.ok:
                ctx = ctx.evolve(todos=apply_todo_updates(ctx.todos, action.input.get("todos")))
            fire_update(
                turn.on_update, UpdateStage.TOOL.value,
                f"{observation.tool} -> {'success' if observation.ok else 'failed'}: "
                f"{truncate(observation.output, TOOL_EVENT_PREVIEW_CHARS)}",
            )

            if action.tool == WRITE_FILE_TOOL and observation.ok:
                turn.persist.done = True
                turn.persist.persisted_path = (
                    extract_written_path(observation.output) or action.input.get("path")
                )
            if (
                turn.persist.required
                and action.tool == WRITE_FILE_TOOL
                and not observation.ok
                and turn.persist.requested_path
                and is_file_exists_observation(observation.output)
            ):
                conflict = action.input.get("path") or turn.persist.path_hint
                question = f"目标文件已存在：{conflict}。当前策略不允许覆盖，请提供新的 output 路径。"
                reply = await self._clarify(
                    PlannerToolAction(CLARIFICATION_TOOL, {"question": question}), turn,
                )
                return ctx, draft, observations, reply

            if not observation.ok and should_stop_after_failure(observations):
                logger.info(
                    "Stopping planner after failed %s task=%s",
                    observation.tool, ctx.task_id[:8],
                )
                break
            if observation.ok and action.tool == DELEGATE_TOOL:
                break
        else:
            logger.info("Planner reached max steps (%d) task=%s", max_steps, ctx.task_id[:8])

        return ctx, draft, observations, None

    def _planner_messages(
        self,
        ctx: MiddlewareContext,
        turn: _Turn,
        observations: list[ToolObservation],
    ) -> list[LlmMessage]:
        system = build_planner_system_prompt(
            self.config, ctx.chat_mode, turn.message, ctx.todos,
            persist_required=turn.persist.required,
            persist_path_hint=turn.persist.path_hint,
        )
        return [
            LlmMessage("system", system),
            *turn.history,
            LlmMessage("user", turn.message),
            *(
                LlmMessage("system", f"Tool observation #{i}: {_observation_json(o)}")
                for i, o in enumerate(observations, 1)
            ),
        ]

    async def _execute_tool(
        self, ctx: MiddlewareContext, action: PlannerToolAction,
    ) -> ToolObservation:
        abort_signal = ctx.runtime.abort_signal if ctx.runtime else None
        return await execute_planner_tool(
            action,
            self.config,
            self.sandbox,
            ctx.workspace_path,
            delegate=self.delegate,
            abort_signal=abort_signal,
        )

    # ── Clarification ──

    async def _clarify(self, action: PlannerToolAction, turn: _Turn) -> str:
        question = action.input.get("question")
        if not isinstance(question, str) or not question.strip():
            question = DEFAULT_CLARIFICATION_QUESTION
        question = question.strip()

        options = await self._clarification_options(turn, question)
        fire_update(
            turn.on_update, UpdateStage.CLARIFICATION.value, question,
            {"clarification": {
                "question": question,
                "options": [option.to_dict() for option in options],
            }},
        )
        return f"需要进一步确认：{question}"

    async def _clarification_options(
        self, turn: _Turn, question: str,
    ) -> list[ClarificationOption]:
        target = turn.planner
        try:
            result = await self.models_factory.generate_text(GenerateTextRequest(
                runtime_config=target.runtime_config,
                model=target.model,
                messages=[
                    LlmMessage("system", build_clarification_options_prompt()),
                    LlmMessage(
                        "user",
                        f"User request: {turn.message}\nClarification question: {question}",
                    ),
                ],
                temperature=0,
                max_tokens=CLARIFICATION_OPTIONS_MAX_TOKENS,
                abort_signal=turn.abort_signal,
            ))
        except CancellationError:
            raise
        except Exception:
            raise_if_aborted(turn.abort_signal, "clarification options")
            logger.warning("Clarification options call failed, using fallback", exc_info=True)
            return fallback_clarification_options(question)

        turn.latency_ms += result.latency_ms
        options = parse_clarification_options(result.text)
        if options is None:
            logger.debug("Clarification options unusable, using fallback")
            return fallback_clarification_options(question)
        return options

    # ── Persist to file ──

    def _persist_path_clarification(self, turn: _Turn) -> str | None:
        """Ask for a new path when the user named one the policy refuses."""
        persist = turn.persist
        if not persist.required or not persist.invalid_reason or not persist.requested_path:
            return None
        output_root = f"{self.config.sandbox.virtual_root.rstrip('/')}/output/"
        question = (
            f'检测到你指定了文件路径 "{persist.requested_path}"，但当前仅允许写入 '
            f"{output_root} 且仅支持文本扩展名（.md/.txt/.json/.yaml/.yml/.csv）。"
            "请提供新的输出路径。"
        )
        options = [
            ClarificationOption(
                label="用默认路径",
                value=f"请保存到 {persist.default_path}",
                recommended=True,
            ),
            ClarificationOption(label="指定 output 路径", value=f"请使用 {output_root} 下的新路径保存"),
            ClarificationOption(label="先仅聊天输出", value="先给出内容草稿，稍后我再指定保存路径"),
        ]
        logger.info("Persist path rejected (%s): %s", persist.invalid_reason, persist.requested_path)
        fire_update(
            turn.on_update, UpdateStage.CLARIFICATION.value, question,
            {"clarification": {
                "question": question,
                "options": [option.to_dict() for option in options],
            }},
        )
        return f"需要进一步确认：{question}"

    def _persist_reminder(self, turn: _Turn, output: str) -> ToolObservation:
        fire_update(turn.on_update, UpdateStage.PLANNING.value, "reply must be saved first, planning write_file")
        return ToolObservation(
            WRITE_FILE_TOOL,
            {"path": turn.persist.path_hint or turn.persist.default_path},
            False,
            output,
        )

    @staticmethod
    def _with_persist_defaults(action: PlannerToolAction, turn: _Turn) -> PlannerToolAction:
        tool_input = dict(action.input)
        path = tool_input.get("path")
        if not isinstance(path, str) or not path.strip():
            tool_input["path"] = turn.persist.path_hint or turn.persist.default_path
        tool_input.setdefault("overwrite", False)
        return PlannerToolAction(action.tool, tool_input, action.reason)

    async def _finish_persist(self, ctx: MiddlewareContext, turn: _Turn, reply: str) -> str:
        """Write *reply* to the default path if the planner never saved it."""
        persist = turn.persist
        if not persist.done:
            raise_if_aborted(turn.abort_signal, "before persist fallback")
            fire_update(turn.on_update, UpdateStage.TOOL.value, "write_file fallback for unsaved reply")
            resolution = resolve_persist_write_path(
                None, default_persist_path(turn.message), self.config.sandbox.virtual_root,
            )
            problem = resolution.message if not resolution.ok else validate_persist_content(reply)
            if problem is None:
                try:
                    written = await self.sandbox.write_file(
                        resolution.path, reply,
                        workspace_path=ctx.workspace_path or None,
                        overwrite=False,
                    )
                except (OrchestrationError, OSError) as exc:
                    problem = str(exc)
            if problem is not None:
                error = OrchestrationError(f"PERSIST_FALLBACK_FAILED: {problem}")
                logger.error("Persist fallback failed task=%s: %s", ctx.task_id[:8], problem)
                fire_update(turn.on_update, UpdateStage.ERROR.value, str(error))
                raise error
            persist.done = True
            persist.persisted_path = written.path
            logger.info("Persisted reply task=%s path=%s", ctx.task_id[:8], written.path)
        if not persist.persisted_path:
            return reply
        return f"{reply}\n\n已保存到文件：{persist.persisted_path}"

    # ── Synthesis ──

    async def _synthesize(
        self,
        pipeline: MiddlewarePipeline,
        ctx: MiddlewareContext,
        turn: _Turn,
        draft: str,
        observations: list[ToolObservation],
        on_delta: DeltaCallback | None,
    ) -> tuple[MiddlewareContext, GenerateTextResult]:
        raise_if_aborted(turn.abort_signal, "before synthesis")
        fire_update(
            turn.on_update, UpdateStage.MODEL.value,
            f"synthesizing answer with {turn.synthesizer.provider}/{turn.synthesizer.model}",
        )

        context_parts = [
            f"Observation #{i}: {_observation_json(o)}"
            for i, o in enumerate(observations, 1)
        ]
        if draft:
            context_parts.append(f"Planner draft answer (for reference only): {draft}")
        messages = [
            LlmMessage("system", build_final_system_prompt()),
            *turn.history,
            LlmMessage("user", turn.message),
        ]
        if context_parts:
            messages.append(LlmMessage("system", "\n\n".join(context_parts)))

        ctx, result = await self._call_model(
            pipeline, ctx.evolve(messages=messages), turn, turn.synthesizer,
            stream=True, on_delta=on_delta,
        )
        content = ctx.llm_response.content if ctx.llm_response else ""
        reply = content.strip() or draft
        return ctx.evolve(final_response=reply), result

    # ── Model calls ──

    async def _call_model(
        self,
        pipeline: MiddlewarePipeline,
        ctx: MiddlewareContext,
        turn: _Turn,
        target: RuntimeTarget,
        *,
        planner: bool = False,
        stream: bool = False,
        on_delta: DeltaCallback | None = None,
    ) -> tuple[MiddlewareContext, GenerateTextResult]:
        """before_model -> one model call -> after_model.

        Streaming calls forward deltas to *on_delta* when one is given.
        """
        results: list[GenerateTextResult] = []
        default_temperature = PLANNER_TEMPERATURE if planner else SYNTHESIS_TEMPERATURE

        async def executor(current: MiddlewareContext) -> MiddlewareContext:
            raise_if_aborted(turn.abort_signal, f"{target.role} call")
            request = GenerateTextRequest(
                runtime_config=target.runtime_config,
                model=target.model,
                messages=current.messages,
                temperature=(
                    target.temperature if target.temperature is not None
                    else default_temperature
                ),
                max_tokens=target.max_tokens,
                abort_signal=turn.abort_signal,
            )
            try:
                if stream:
                    result = await self.models_factory.generate_text_stream(
                        request, _safe_delta(on_delta),
                    )
                else:
                    result = await self.models_factory.generate_text(request)
            except CancellationError:
                raise
            except Exception as exc:
                raise_if_aborted(turn.abort_signal, f"{target.role} call")
                error = ModelCallError(
                    target.role, target.profile_id, target.provider, target.model,
                    str(exc) or exc.__class__.__name__,
                )
                logger.error("Model call failed task=%s: %s", current.task_id[:8], error)
                fire_update(turn.on_update, UpdateStage.ERROR.value, str(error))
                raise error from exc

            turn.latency_ms += result.latency_ms
            results.append(result)
            return current.evolve(llm_response=LlmResponse(
                content=result.text,
                tool_calls=_mirror_tool_calls(result.text) if planner else None,
            ))

        ctx = await pipeline.execute_model(ctx, executor)
        return ctx, results[-1]

    def _resolve(self, role: str, on_update: UpdateCallback | None) -> RuntimeTarget:
        try:
            target = resolve_runtime_target(self.config, role)
            require_api_key(target)
        except RoutingError as exc:
            logger.error("Routing failed: %s", exc)
            fire_update(on_update, UpdateStage.ERROR.value, str(exc))
            raise
        return target


def _mirror_tool_calls(text: str) -> list[ToolCall]:
    """Expose a planner tool action as tool calls for after_model policies."""
    action = try_parse_planner_action(text)
    if isinstance(action, PlannerToolAction):
        return [ToolCall(action.tool, dict(action.input))]
    return []


def _safe_delta(on_delta: DeltaCallback | None) -> DeltaCallback:
    def forward(delta: str) -> None:
        if on_delta is None:
            return
        try:
            on_delta(delta)
        except Exception:
            logger.debug("Delta callback failed", exc_info=True)
    return forward
