# state.py
# Observable progress and task state.
#
# One ProgressState is shared by the orchestrator (the only writer) and any
# number of observers. Every mutation notifies observers with a fresh,
# immutable ProgressSnapshot. There is no lock: the orchestrator admits a
# single active run, which keeps writes ordered.

import copy
import logging
from typing import Any, Callable

from phase_agent.models import ProgressSnapshot, Task

logger = logging.getLogger(__name__)

Observer = Callable[[ProgressSnapshot], None]


class AgentBusyError(Exception):
    """Raised when a request arrives while another run is still active."""


class ProgressState:
    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._agent_mode = False
        self._processing = False
        self._phase = ""
        self._step = ""
        self._log: list[str] = []
        self._results: dict[str, Any] = {}
        self._tasks: list[Task] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def agent_mode(self) -> bool:
        return self._agent_mode

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    @property
    def steps(self) -> list[str]:
        return list(self._log)

    @property
    def results(self) -> dict[str, Any]:
        return copy.deepcopy(self._results)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            agent_mode=self._agent_mode,
            is_processing=self._processing,
            current_phase=self._phase,
            current_step=self._step,
            steps=tuple(self._log),
            results=copy.deepcopy(self._results),
            tasks=tuple(self._tasks),
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that removes it again."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        snap = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snap)
            except Exception:
                logger.exception("Progress observer %r failed", observer)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def set_agent_mode(self, enabled: bool) -> None:
        if self._agent_mode != enabled:
            self._agent_mode = enabled
            self._notify()

    def toggle_agent_mode(self) -> None:
        self._agent_mode = not self._agent_mode
        self._notify()

    def begin_request(self) -> None:
        """Claim the single run slot and clear the per-request log and results."""
        if self._processing:
            raise AgentBusyError("Agent is busy with another request.")
        self._processing = True
        self._log.clear()
        self._results.clear()
        self._notify()

    def end_request(self) -> None:
        self._processing = False
        self._phase = ""
        self._step = ""
        self._notify()

    def enter_phase(self, phase: str, step: str, entry: str) -> None:
        self._phase = phase
        self._step = step
        self._log.append(entry)
        self._notify()

    def update(self, step: str | None = None, entry: str | None = None) -> None:
        """Change the current step description and/or append a log entry."""
        if step is not None:
            self._step = step
        if entry is not None:
            self._log.append(entry)
        self._notify()

    def record(self, phase_key: str, output: Any, entry: str | None = None) -> None:
        self._results[phase_key] = output
        if entry is not None:
            self._log.append(entry)
        self._notify()

    def add_task(self, task: Task) -> None:
        self._tasks.append(task)
        self._notify()

    def replace_task(self, task: Task) -> None:
        for index, existing in enumerate(self._tasks):
            if existing.id == task.id:
                self._tasks[index] = task
                self._notify()
                return
        logger.warning("Task %s is not in the task list; update dropped", task.id)
