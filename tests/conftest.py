from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from bandry.engine.config import EngineConfig
from bandry.engine.models import LlmMessage, MiddlewareContext, RuntimeHandle
from bandry.engine.providers.base import GenerateTextRequest, GenerateTextResult, ModelsFactory
from bandry.engine.sandbox import SandboxService
from bandry.engine.yaml_config import AppConfig, ModelProfile, ProviderConfig

PLANNER_MODEL = "planner-model"
SYNTH_MODEL = "synth-model"


class _FakeModelsFactory(ModelsFactory):
    """Scripted model calls, keyed by model name.

    Each script entry is a response text, an exception to raise, or a
    callable taking the request and returning one of those.
    """

    def __init__(self, latency_ms: int = 5) -> None:
        self.scripts: dict[str, list] = {}
        self.stream_scripts: dict[str, list] = {}
        self.requests: list[GenerateTextRequest] = []
        self.stream_requests: list[GenerateTextRequest] = []
        self.latency_ms = latency_ms
        self.shutdown_called = False

    def script(self, model: str, *entries) -> _FakeModelsFactory:
        self.scripts.setdefault(model, []).extend(entries)
        return self

    def script_stream(self, model: str, *entries) -> _FakeModelsFactory:
        self.stream_scripts.setdefault(model, []).extend(entries)
        return self

    def calls_for(self, model: str) -> list[GenerateTextRequest]:
        return [r for r in self.requests if r.model == model]

    @staticmethod
    def _next(queue: list, request: GenerateTextRequest) -> str:
        if not queue:
            raise AssertionError(f"unexpected model call: {request.model}")
        entry = queue.pop(0)
        if callable(entry) and not isinstance(entry, Exception):
            entry = entry(request)
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def generate_text(self, request: GenerateTextRequest) -> GenerateTextResult:
        self.requests.append(request)
        text = self._next(self.scripts.get(request.model, []), request)
        return GenerateTextResult(
            provider=request.provider, model=request.model,
            text=text, latency_ms=self.latency_ms,
        )

    async def generate_text_stream(self, request, on_delta) -> GenerateTextResult:
        self.stream_requests.append(request)
        text = self._next(self.stream_scripts.get(request.model, []), request)
        middle = len(text) // 2
        for chunk in (text[:middle], text[middle:]):
            if chunk:
                on_delta(chunk)
        return GenerateTextResult(
            provider=request.provider, model=request.model,
            text=text, latency_ms=self.latency_ms,
        )

    async def shutdown(self) -> None:
        self.shutdown_called = True


def make_app_config(tmp_path: Path, **engine_overrides) -> AppConfig:
    engine = EngineConfig(
        workspaces_dir=str(tmp_path / "workspaces"),
        **engine_overrides,
    )
    return AppConfig(
        engine=engine,
        providers={"fake": ProviderConfig(api_key="sk-test")},
        model_profiles=[
            ModelProfile(id="planner-profile", provider="fake", model=PLANNER_MODEL),
            ModelProfile(id="synth-profile", provider="fake", model=SYNTH_MODEL),
        ],
        routing={"planner": "planner-profile", "synthesizer": "synth-profile"},
    )


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return make_app_config(tmp_path)


@pytest.fixture
def models_factory() -> _FakeModelsFactory:
    return _FakeModelsFactory()


@pytest.fixture
def sandbox(app_config) -> SandboxService:
    return SandboxService(app_config)


@pytest.fixture
def make_ctx(app_config, models_factory) -> Callable[..., MiddlewareContext]:
    def _make(**fields) -> MiddlewareContext:
        runtime_fields = {
            key: fields.pop(key)
            for key in ("on_update", "abort_signal", "conversation_store", "sandbox")
            if key in fields
        }
        fields.setdefault("messages", [LlmMessage("user", "hello")])
        return MiddlewareContext(
            runtime=RuntimeHandle(
                config=app_config,
                models_factory=models_factory,
                **runtime_fields,
            ),
            **fields,
        )
    return _make
