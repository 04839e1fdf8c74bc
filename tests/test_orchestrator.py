import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from phase_agent.llm import CompletionError
from phase_agent.models import Plan, Tool
from phase_agent.orchestrator import (
    SKIP_REASON,
    AgentModeDisabledError,
    Orchestrator,
    parse_plan,
)
from phase_agent.registry import ToolRegistry
from phase_agent.state import AgentBusyError, ProgressState

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _plan_json(*tools: str) -> str:
    return json.dumps(
        {
            "steps": [
                {
                    "step_number": i,
                    "description": f"step {i}",
                    "tool": tool,
                    "parameters": {"n": i},
                    "expected_outcome": "done",
                }
                for i, tool in enumerate(tools, start=1)
            ],
            "fallback_plan": "answer directly",
            "success_criteria": "answered",
        }
    )


def _registry(**executors) -> ToolRegistry:
    registry = ToolRegistry()
    for name, executor in executors.items():
        registry.register(Tool(name=name, description=f"{name} tool", executor=executor))
    return registry


def _orchestrator(responses, registry=None, state=None) -> tuple[Orchestrator, MagicMock]:
    client = MagicMock()
    client.complete = AsyncMock(side_effect=responses)
    orchestrator = Orchestrator(client, registry or ToolRegistry(), state, pacing=False)
    orchestrator.set_agent_mode(True)
    return orchestrator, client


# ---------------------------------------------------------------------------
# Plan parsing
# ---------------------------------------------------------------------------


def test_parse_plan_without_braces_uses_default():
    plan = parse_plan("I think we should just answer the question.")
    assert plan == Plan.default()
    assert plan.steps[0].tool == "none"
    assert plan.success_criteria == "User question is addressed"


def test_parse_plan_valid_json_with_preamble():
    plan = parse_plan("Sure, here is the plan:\n" + _plan_json("web_search") + "\nGood luck!")
    assert len(plan.steps) == 1
    assert plan.steps[0].tool == "web_search"
    assert plan.steps[0].parameters == {"n": 1}
    assert plan.fallback_plan == "answer directly"


def test_parse_plan_fenced_block():
    response = "Plan:\n```json\n" + _plan_json("screenshot", "none") + "\n```"
    plan = parse_plan(response)
    assert [s.tool for s in plan.steps] == ["screenshot", "none"]


def test_parse_plan_skips_non_json_braces():
    response = "Consider {this aside} first. " + _plan_json("page_analyzer")
    plan = parse_plan(response)
    assert plan.steps[0].tool == "page_analyzer"


def test_parse_plan_malformed_json_uses_default():
    assert parse_plan("{ broken json, steps: [ }") == Plan.default()


def test_parse_plan_schema_violation_uses_default():
    assert parse_plan('{"steps": "not a list"}') == Plan.default()
    assert parse_plan('{"fallback_plan": "no steps key"}') == Plan.default()


def test_parse_plan_tolerates_null_tool_and_parameters():
    response = json.dumps(
        {
            "steps": [
                {"step_number": 1, "tool": "none", "parameters": None},
                {"step_number": 2, "tool": "web_search", "parameters": {"query": "x"}},
                {"step_number": 3, "tool": None},
            ]
        }
    )
    plan = parse_plan(response)
    assert [s.tool for s in plan.steps] == ["none", "web_search", "none"]
    assert plan.steps[0].parameters == {}
    assert plan.steps[1].parameters == {"query": "x"}


# ---------------------------------------------------------------------------
# Execute phase
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_execute_unknown_tool_is_skipped_not_error():
    orchestrator, _ = _orchestrator([])
    result = await orchestrator.execute(Plan.model_validate(json.loads(_plan_json("ghost", "none"))))

    assert [r.status for r in result.values()] == ["skipped", "skipped"]
    assert result["step_1"].reason == SKIP_REASON


@pytest.mark.asyncio
async def test_execute_failing_step_does_not_block_later_steps():
    ok = AsyncMock(return_value={"success": True})
    boom = AsyncMock(side_effect=RuntimeError("tool exploded"))
    orchestrator, _ = _orchestrator([], registry=_registry(alpha=ok, boom=boom))

    plan = Plan.model_validate(json.loads(_plan_json("alpha", "boom", "alpha")))
    result = await orchestrator.execute(plan)

    assert list(result) == ["step_1", "step_2", "step_3"]
    assert [r.status for r in result.values()] == ["success", "error", "success"]
    assert result["step_2"].error == "tool exploded"
    assert result["step_3"].parameters == {"n": 3}
    assert ok.await_count == 2


@pytest.mark.asyncio
async def test_execute_applies_parameter_defaults():
    from phase_agent.models import ToolParameter

    executor = AsyncMock(return_value={"success": True})
    registry = ToolRegistry()
    registry.register(
        Tool(
            name="search",
            description="search",
            parameters={
                "query": ToolParameter(type="string", description="q"),
                "limit": ToolParameter(type="integer", description="l", default=5),
            },
            executor=executor,
        )
    )
    orchestrator, _ = _orchestrator([], registry=registry)
    plan = Plan.model_validate({"steps": [{"step_number": 1, "tool": "search", "parameters": {"query": "x"}}]})

    await orchestrator.execute(plan)
    executor.assert_awaited_once_with({"limit": 5, "query": "x"})


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_process_happy_path():
    ok = AsyncMock(return_value={"success": True, "value": 42})
    orchestrator, client = _orchestrator(
        ["thoughts", _plan_json("alpha"), "final answer"],
        registry=_registry(alpha=ok),
    )

    reply = await orchestrator.process("what is the answer?", "test-model")

    assert reply.text == "final answer"
    assert reply.trace.phase_completed == ["Thinking", "Planning", "Executing", "Responding"]
    assert reply.trace.error_recovered is False
    assert reply.trace.results["thinking"] == "thoughts"
    assert reply.trace.results["execution"]["step_1"]["status"] == "success"
    assert reply.trace.steps[0] == "🤔 Starting analysis of user request"
    assert reply.trace.steps[-1] == "✅ Response ready"
    assert client.complete.await_count == 3

    # Every completion uses the requested model and the response prompt carries the results.
    assert all(call.args[1] == "test-model" for call in client.complete.await_args_list)
    assert '"value": 42' in client.complete.await_args_list[2].args[0]

    task = orchestrator.state.tasks[-1]
    assert task.status == "completed"
    assert set(task.result) == {"thinking", "planning", "execution", "response"}
    assert task.steps == reply.trace.steps

    snap = orchestrator.state.snapshot()
    assert snap.is_processing is False
    assert snap.current_phase == ""


@pytest.mark.asyncio
async def test_process_unparseable_plan_runs_default_plan():
    orchestrator, client = _orchestrator(["thoughts", "no json here", "answer"])
    reply = await orchestrator.process("hi", "m")

    assert reply.text == "answer"
    assert reply.trace.results["planning"]["steps"][0]["tool"] == "none"
    assert reply.trace.results["execution"]["step_1"]["status"] == "skipped"


@pytest.mark.asyncio
async def test_think_failure_triggers_exactly_one_fallback_call():
    orchestrator, client = _orchestrator(
        [CompletionError("API call failed: 503"), "simpler answer"],
    )
    reply = await orchestrator.process("hello", "m")

    assert client.complete.await_count == 2
    assert "Agent Recovery Mode" in reply.text
    assert "simpler answer" in reply.text
    assert reply.trace.phase_completed == ["Error Recovery"]
    assert reply.trace.error_recovered is True
    assert "API call failed: 503" in client.complete.await_args_list[1].args[0]

    task = orchestrator.state.tasks[-1]
    assert task.status == "failed"
    assert task.error == "API call failed: 503"


@pytest.mark.asyncio
async def test_double_failure_returns_both_errors():
    orchestrator, client = _orchestrator(
        [CompletionError("primary down"), CompletionError("fallback down")],
    )
    reply = await orchestrator.process("hello", "m")

    assert client.complete.await_count == 2
    assert reply.trace is None
    assert "Original error: primary down" in reply.text
    assert "Recovery error: fallback down" in reply.text
    assert orchestrator.state.is_processing is False
    assert orchestrator.state.steps[-1] == "❌ Recovery failed: fallback down"


@pytest.mark.asyncio
async def test_respond_failure_keeps_earlier_phase_results():
    orchestrator, client = _orchestrator(
        ["thoughts", _plan_json("none"), CompletionError("respond failed"), "recovered"],
    )
    reply = await orchestrator.process("hello", "m")

    assert reply.trace.error_recovered is True
    assert set(reply.trace.results) == {"thinking", "planning", "execution"}
    assert orchestrator.state.tasks[-1].status == "failed"


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_process_requires_agent_mode():
    orchestrator, client = _orchestrator(["unused"])
    orchestrator.set_agent_mode(False)

    with pytest.raises(AgentModeDisabledError):
        await orchestrator.process("hi", "m")
    client.complete.assert_not_awaited()
    assert orchestrator.state.tasks == ()


@pytest.mark.asyncio
async def test_concurrent_request_is_rejected():
    gate = asyncio.Event()

    async def slow(prompt, model):
        await gate.wait()
        return "text"

    orchestrator, client = _orchestrator([])
    client.complete = AsyncMock(side_effect=slow)

    first = asyncio.create_task(orchestrator.process("first", "m"))
    await asyncio.sleep(0)
    assert orchestrator.state.is_processing is True

    with pytest.raises(AgentBusyError):
        await orchestrator.process("second", "m")

    gate.set()
    reply = await first
    assert reply.text == "text"
    assert len(orchestrator.state.tasks) == 1


@pytest.mark.asyncio
async def test_new_request_clears_step_log():
    state = ProgressState()
    orchestrator, _ = _orchestrator(["a", "b", "c", "d", "e", "f"], state=state)

    await orchestrator.process("one", "m")
    first_len = len(state.steps)
    await orchestrator.process("two", "m")

    assert len(state.steps) == first_len
    assert len(state.tasks) == 2


def test_toggle_agent_mode():
    orchestrator, _ = _orchestrator([])
    assert orchestrator.agent_mode is True
    orchestrator.toggle_agent_mode()
    assert orchestrator.agent_mode is False


@pytest.mark.asyncio
async def test_failing_observer_does_not_change_reply():
    state = ProgressState()

    def broken(snap):
        raise RuntimeError("render failed")

    state.subscribe(broken)
    orchestrator, _ = _orchestrator(["thoughts", _plan_json("none"), "answer"], state=state)

    reply = await orchestrator.process("hi", "m")

    assert reply.text == "answer"
    assert reply.trace.error_recovered is False
    assert orchestrator.state.is_processing is False
