# orchestrator.py
# Four-phase agent orchestrator.
#
# The Orchestrator owns all control flow. The completion endpoint is a
# passive text oracle and tools are plain executors looked up by name.
#
# Control flow:
#   Think → Plan (schema-validated, default plan on failure)
#   → Execute (sequential, per-step error isolation)
#   → Respond → AgentReply
#   any uncaught failure → one recovery completion → apology on double failure
#
# Progress is published through ProgressState; presentation subscribes to it.

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from phase_agent.config import settings
from phase_agent.llm import CompletionClient
from phase_agent.models import (
    NO_TOOL,
    AgentReply,
    AgentTrace,
    ExecutionResult,
    Plan,
    StepResult,
    Task,
)
from phase_agent.registry import ToolRegistry
from phase_agent.state import ProgressState

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

PHASES = ["Thinking", "Planning", "Executing", "Responding"]
RECOVERY_PHASE = "Error Recovery"
SKIP_REASON = "No tool required or tool not available"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AgentModeDisabledError(Exception):
    """Raised when a request is processed while agent mode is switched off."""


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

THINKING_PROMPT = """\
You are an advanced AI agent in thinking phase. Analyze this user request and think about:

1. What exactly is the user asking for?
2. What information or actions might be needed?
3. What tools might be useful?
4. What are potential challenges or edge cases?
5. How should I approach this systematically?

Available tools: {tool_names}

User request: "{message}"

Please provide your analysis and thoughts:
"""

PLANNING_PROMPT = """\
Based on the thinking phase, create a detailed execution plan for this request.

User request: "{message}"

Thinking phase result: "{thinking}"

Available tools and their descriptions:
{tool_catalog}

Create a step-by-step plan in JSON format with this structure:
{{
  "steps": [
    {{
      "step_number": 1,
      "description": "Step description",
      "tool": "tool_name",
      "parameters": {{"param1": "value1"}},
      "expected_outcome": "What this step should achieve"
    }}
  ],
  "fallback_plan": "What to do if tools fail",
  "success_criteria": "How to determine if the task is complete"
}}

Use "none" as the tool when a step needs no tool.

Plan:
"""

RESPONSE_PROMPT = """\
You are an AI agent compiling the final response. Based on all the work done, \
provide a comprehensive and helpful response to the user.

Original user request: "{message}"

Thinking phase: "{thinking}"

Planning phase: {plan}

Execution results: {execution}

Now provide a final, comprehensive response to the user that:
1. Directly addresses their request
2. Incorporates any successful tool results
3. Explains any limitations or issues encountered
4. Provides actionable next steps if appropriate

Be natural, helpful, and concise. Don't mention the internal phases unless relevant.

Final response:
"""

RECOVERY_PROMPT = """\
I encountered an error while processing your request as an AI agent, but I'm \
attempting to recover and provide a helpful response.

Original request: "{message}"
Error encountered: {error}

Despite the error, let me try to help you with your request using a simpler approach:
"""

RECOVERED_TEMPLATE = """\
🔄 **Agent Recovery Mode**

I encountered an error during advanced processing, but I've successfully recovered and can still help you:

{response}

*Note: This response was generated using fallback processing due to an error in the advanced agent workflow.*"""

APOLOGY_TEMPLATE = """\
I apologize, but I encountered multiple errors while trying to process your request:

Original error: {error}
Recovery error: {recovery_error}

Please try rephrasing your request or ask for help in a different way."""


# ---------------------------------------------------------------------------
# Plan parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def _json_candidates(response: str) -> list[Any]:
    """Every JSON object we can decode from a model response, best guess first."""
    found: list[Any] = []
    decoder = json.JSONDecoder()

    for match in _FENCE_RE.finditer(response):
        try:
            found.append(json.loads(match.group(1)))
        except json.JSONDecodeError:
            continue

    start = response.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(response, start)
        except json.JSONDecodeError:
            start = response.find("{", start + 1)
            continue
        found.append(obj)
        break

    return found


def parse_plan(response: str) -> Plan:
    """
    Validate the planning response against the Plan schema.

    Never raises: anything that does not validate yields Plan.default().
    """
    for candidate in _json_candidates(response):
        try:
            return Plan.model_validate(candidate)
        except ValidationError as exc:
            logger.info("Plan candidate rejected: %s", exc.error_count())
    logger.warning("No valid plan in planning response; using default plan")
    return Plan.default()


def _dump_execution(execution: ExecutionResult) -> dict[str, Any]:
    return {key: result.model_dump(exclude_none=True) for key, result in execution.items()}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Runs one user request through Think → Plan → Execute → Respond.

    Example:
        orchestrator = Orchestrator(client, registry, ProgressState())
        orchestrator.set_agent_mode(True)
        reply = await orchestrator.process("Compare laptops on flipkart", "gpt-4o-mini")
    """

    def __init__(
        self,
        client: CompletionClient,
        registry: ToolRegistry,
        state: ProgressState | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        pacing: bool = settings.pacing_enabled,
    ) -> None:
        self._client = client
        self._registry = registry
        self.state = state or ProgressState()
        self._sleep = sleep
        self._pacing = pacing

    # ------------------------------------------------------------------
    # Agent mode
    # ------------------------------------------------------------------

    @property
    def agent_mode(self) -> bool:
        return self.state.agent_mode

    def toggle_agent_mode(self) -> None:
        self.state.toggle_agent_mode()

    def set_agent_mode(self, enabled: bool) -> None:
        self.state.set_agent_mode(enabled)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _pause(self, seconds: float) -> None:
        if self._pacing:
            await self._sleep(seconds)

    def _commit(self, task: Task, status: str, **changes: Any) -> Task:
        updated = task.advance(status, **changes)
        self.state.replace_task(updated)
        return updated

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def think(self, message: str, model: str) -> str:
        prompt = THINKING_PROMPT.format(
            tool_names=", ".join(self._registry.names()),
            message=message,
        )
        return await self._client.complete(prompt, model)

    async def plan(self, message: str, thinking: str, model: str) -> Plan:
        prompt = PLANNING_PROMPT.format(
            message=message,
            thinking=thinking,
            tool_catalog=self._registry.describe(),
        )
        response = await self._client.complete(prompt, model)
        return parse_plan(response)

    async def execute(self, plan: Plan) -> ExecutionResult:
        """
        Run plan steps in order.

        Unknown tools are skipped; a failing tool is recorded and the loop
        moves on to the next step.
        """
        results: ExecutionResult = {}

        for index, step in enumerate(plan.steps, start=1):
            key = f"step_{index}"
            tool = None if step.tool == NO_TOOL else self._registry.lookup(step.tool)

            if tool is None:
                logger.debug("Skipping step %d (tool=%r)", index, step.tool)
                results[key] = StepResult(status="skipped", reason=SKIP_REASON)
                continue

            self.state.update(step=f"Executing {tool.description}", entry=f"🔧 Using {tool.name} tool...")
            try:
                output = await tool.run(dict(step.parameters))
            except Exception as exc:
                logger.warning("Tool %s failed at step %d: %s", tool.name, index, exc)
                self.state.update(entry=f"❌ {tool.name} failed: {exc}")
                results[key] = StepResult(status="error", tool=tool.name, error=str(exc))
                continue

            self.state.update(entry=f"✅ {tool.name} completed successfully")
            results[key] = StepResult(
                status="success",
                tool=tool.name,
                parameters=dict(step.parameters),
                result=output,
            )

        return results

    async def respond(
        self,
        message: str,
        thinking: str,
        plan: Plan,
        execution: ExecutionResult,
        model: str,
    ) -> str:
        prompt = RESPONSE_PROMPT.format(
            message=message,
            thinking=thinking,
            plan=json.dumps(plan.model_dump()),
            execution=json.dumps(_dump_execution(execution), default=str),
        )
        return await self._client.complete(prompt, model)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, message: str, model: str) -> AgentReply:
        """
        Full pipeline entry point.

        Raises AgentModeDisabledError or AgentBusyError before any work is
        done. Otherwise always returns a reply: the compiled answer, a
        recovered answer, or an apology carrying both error strings.
        """
        if not self.state.agent_mode:
            raise AgentModeDisabledError("Agent mode is not enabled")

        self.state.begin_request()
        task = Task(description=message)
        self.state.add_task(task)

        try:
            return await self._run(task, message, model)
        finally:
            self.state.end_request()

    async def _run(self, task: Task, message: str, model: str) -> AgentReply:
        state = self.state
        try:
            task = self._commit(task, "thinking")

            # ── Thinking ─────────────────────────────────────────────
            state.enter_phase(
                "Thinking",
                "Analyzing user request and identifying required tools...",
                "🤔 Starting analysis of user request",
            )
            await self._pause(0.5)
            state.update(step="Evaluating complexity and required tools...", entry="🔍 Evaluating request complexity")
            thinking = await self.think(message, model)
            state.record("thinking", thinking, entry="✅ Completed thinking phase")
            task = self._commit(task, "planning", result={"thinking": thinking})

            # ── Planning ─────────────────────────────────────────────
            state.enter_phase("Planning", "Creating detailed execution plan with tools...", "📋 Creating execution plan")
            await self._pause(0.3)
            state.update(step="Selecting optimal tools and approach...", entry="⚡ Selecting optimal tools")
            plan = await self.plan(message, thinking, model)
            state.record("planning", plan.model_dump(), entry="✅ Execution plan created")
            task = self._commit(task, "executing", result={**task.result, "planning": plan.model_dump()})

            # ── Executing ────────────────────────────────────────────
            state.enter_phase("Executing", "Running tools and gathering results...", "⚙️ Executing planned steps")
            await self._pause(0.2)
            state.update(step="Initializing tool execution...", entry="🔧 Initializing tools")
            execution = await self.execute(plan)
            execution_dump = _dump_execution(execution)
            state.record("execution", execution_dump, entry="✅ Tool execution completed")
            task = task.model_copy(update={"result": {**task.result, "execution": execution_dump}})
            state.replace_task(task)

            # ── Responding ───────────────────────────────────────────
            state.enter_phase("Responding", "Compiling comprehensive response...", "📝 Compiling final response")
            await self._pause(0.3)
            state.update(step="Analyzing results and formatting response...", entry="📊 Analyzing results")
            await self._pause(0.2)
            state.update(step="Finalizing comprehensive response...", entry="📄 Finalizing response")
            answer = await self.respond(message, thinking, plan, execution, model)
            state.update(entry="✅ Response ready")

            self._commit(
                task,
                "completed",
                result={**task.result, "response": answer},
                steps=state.steps,
            )
            return AgentReply(
                text=answer,
                trace=AgentTrace(
                    steps=state.steps,
                    results=state.results,
                    phase_completed=list(PHASES),
                ),
            )
        except Exception as exc:
            return await self._fallback(task, message, model, exc)

    async def _fallback(self, task: Task, message: str, model: str, exc: Exception) -> AgentReply:
        """Exactly one recovery completion. Never retried."""
        error = str(exc)
        logger.error("Agent run failed, attempting recovery: %s", error)
        state = self.state

        state.update(entry=f"❌ Error occurred: {error}")
        state.update(step="Attempting error recovery...", entry="🔄 Attempting to recover from error")
        if task.status not in ("completed", "failed"):
            self._commit(task, "failed", error=error, steps=state.steps)

        await self._pause(0.5)
        state.update(step="Analyzing error and finding alternative approach...", entry="🔍 Analyzing error cause")
        await self._pause(0.3)
        state.update(step="Implementing fallback strategy...", entry="⚡ Implementing fallback")

        try:
            response = await self._client.complete(
                RECOVERY_PROMPT.format(message=message, error=error), model
            )
        except Exception as recovery_exc:
            logger.error("Recovery completion failed: %s", recovery_exc)
            state.update(entry=f"❌ Recovery failed: {recovery_exc}")
            return AgentReply(text=APOLOGY_TEMPLATE.format(error=error, recovery_error=recovery_exc))

        state.update(entry="✅ Recovery successful")
        return AgentReply(
            text=RECOVERED_TEMPLATE.format(response=response),
            trace=AgentTrace(
                steps=state.steps,
                results=state.results,
                phase_completed=[RECOVERY_PHASE],
                error_recovered=True,
            ),
        )
