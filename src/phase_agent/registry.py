# registry.py
# Tool registry. Populated once at startup, read-only afterwards, so no
# locking is needed.

from phase_agent.models import Tool


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        # Last write wins on a name collision.
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def describe(self) -> str:
        """One line per tool, for prompt construction."""
        return "\n".join(f"- {tool.name}: {tool.description}" for tool in self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
