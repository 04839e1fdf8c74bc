# run.py
# Entry point. Config and wiring only. No logic lives here.
#
#   phase-agent "Find laptops under 30k on flipkart.com"
#   phase-agent --model gpt-4o              # interactive loop

import argparse
import asyncio
import logging

import httpx
from rich.logging import RichHandler
from rich.prompt import Prompt

from phase_agent import display
from phase_agent.config import settings
from phase_agent.llm import CompletionClient
from phase_agent.orchestrator import Orchestrator
from phase_agent.state import ProgressState
from phase_agent.tools import WebTools, build_registry

EXIT_WORDS = {"exit", "quit", ":q"}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True)],
    )


async def _serve(prompts: list[str], model: str) -> None:
    async with httpx.AsyncClient(follow_redirects=True) as http:
        registry = build_registry(WebTools(http))
        client = CompletionClient(settings.api_base_url, settings.api_key)
        state = ProgressState()
        state.subscribe(display.ConsoleObserver())

        orchestrator = Orchestrator(client, registry, state)
        orchestrator.set_agent_mode(True)

        display.banner(model)
        display.tool_catalog(registry)

        try:
            if prompts:
                for prompt in prompts:
                    display.prompt_received(prompt)
                    display.final_result(await orchestrator.process(prompt, model))
                return

            while True:
                prompt = Prompt.ask("[bold cyan]you[/bold cyan]").strip()
                if not prompt:
                    continue
                if prompt.lower() in EXIT_WORDS:
                    break
                display.prompt_received(prompt)
                display.final_result(await orchestrator.process(prompt, model))
        finally:
            await client.aclose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="phase-agent", description="Four-phase tool-using agent.")
    parser.add_argument("prompts", nargs="*", help="Requests to run. Omit for an interactive session.")
    parser.add_argument("--model", default=settings.default_model, help="Completion model identifier.")
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    try:
        asyncio.run(_serve(args.prompts, args.model))
    except KeyboardInterrupt:
        display.error("Interrupted.")


if __name__ == "__main__":
    main()
