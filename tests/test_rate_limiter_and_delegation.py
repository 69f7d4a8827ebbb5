from __future__ import annotations

import asyncio

import pytest

from bandry.engine.delegation import validate_delegation_tasks
from bandry.engine.errors import DelegationValidationError
from bandry.engine.model_routing import RuntimeConfig
from bandry.engine.models import LlmMessage
from bandry.engine.providers.base import GenerateTextRequest
from bandry.engine.providers.rate_limiter import RateLimitedModelsFactory, RateLimiter


class _ManualClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_rate_limiter_spaces_admissions(monkeypatch):
    clock = _ManualClock()
    sleeps: list[float] = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.now += seconds

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    limiter = RateLimiter(rate_per_second=4, clock=clock)

    await limiter.wait_turn()
    await limiter.wait_turn()
    await limiter.wait_turn()

    assert limiter.interval_seconds == 0.25
    assert sleeps == [pytest.approx(0.25), pytest.approx(0.25)]


@pytest.mark.asyncio
async def test_disabled_limiter_never_waits():
    limiter = RateLimiter(0)
    await asyncio.wait_for(limiter.wait_turn(), timeout=0.1)
    assert limiter.interval_seconds == 0.0


@pytest.mark.asyncio
async def test_rate_limited_factory_delegates_per_provider(app_config, models_factory):
    app_config.providers["fake"].requests_per_second = 1000
    factory = RateLimitedModelsFactory.from_config(models_factory, app_config)
    models_factory.script("m", "one")
    models_factory.script_stream("m", "two")
    request = GenerateTextRequest(RuntimeConfig("fake"), "m", [LlmMessage("user", "hi")])

    assert (await factory.generate_text(request)).text == "one"
    chunks: list[str] = []
    assert (await factory.generate_text_stream(request, chunks.append)).text == "two"
    assert "".join(chunks) == "two"

    assert factory.limiter_for("fake") is factory.limiter_for("fake")
    assert factory.limiter_for("fake").interval_seconds == pytest.approx(0.001)
    assert factory.limiter_for("other").interval_seconds == 0.0

    await factory.shutdown()
    assert models_factory.shutdown_called


def _task(task_id, role="researcher", deps=None, **extra):
    return {"sub_task_id": task_id, "agent_role": role, "prompt": f"do {task_id}",
            "dependencies": deps or [], **extra}


def test_valid_dag_is_accepted():
    tasks = validate_delegation_tasks([
        _task("a"),
        _task("b", "bash_operator", ["a"]),
        _task("c", "writer", ["a", "b"], write_path="output/c.md"),
    ])
    assert [t.sub_task_id for t in tasks] == ["a", "b", "c"]
    assert tasks[2].to_dict()["write_path"] == "output/c.md"


@pytest.mark.parametrize("raw,message", [
    ([], "tasks must be a non-empty list"),
    (None, "tasks must be a non-empty list"),
    ([_task("a"), _task("a")], "Duplicate sub_task_id: a"),
    ([_task("a", deps=["zzz"])], "Invalid dependency: zzz not found for task a"),
    ([_task("a", deps=["b"]), _task("b", deps=["a"])], "Circular dependency detected at task a"),
])
def test_invalid_delegations(raw, message):
    with pytest.raises(DelegationValidationError) as exc_info:
        validate_delegation_tasks(raw)
    assert str(exc_info.value) == message


def test_invalid_role_and_prompt():
    with pytest.raises(DelegationValidationError, match="agent_role"):
        validate_delegation_tasks([_task("a", role="pilot")])
    with pytest.raises(DelegationValidationError, match="prompt is required"):
        validate_delegation_tasks([{"sub_task_id": "a", "agent_role": "writer", "prompt": " "}])
