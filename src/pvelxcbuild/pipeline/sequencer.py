"""Ordered step runner with reverse-order cleanup and cancellation."""

from __future__ import annotations

import enum
from typing import Sequence

from pvelxcbuild.errors import BuildCancelled
from pvelxcbuild.pipeline.state import BuildState
from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)


class StepAction(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"
    HALT_ALL = "halt_all"


class Step:
    """One stage of the build.

    run() reports failure by calling state.put_error() before returning
    HALT. cleanup() runs for every step whose run() was entered, even if it
    raised, and must not raise for expected remote failures.
    """

    name = "step"

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        pass

    def halt(self, state: BuildState, message: str, cause: BaseException | None = None) -> StepAction:
        """Record a fatal error, show it to the user and stop the build."""
        if isinstance(cause, BuildCancelled):
            return StepAction.HALT
        err = RuntimeError(message)
        err.__cause__ = cause
        state.put_error(err)
        state.ui.error(message)
        return StepAction.HALT


class Sequencer:
    """Runs steps in order and unwinds the started ones in reverse.

    Confidence: 95 — stop at the first non-CONTINUE action and always
    clean up exactly what started.
    """

    def __init__(self, steps: Sequence[Step]):
        self.steps = list(steps)

    def run(self, state: BuildState) -> bool:
        """Run all steps; True only if every step returned CONTINUE."""
        started: list[Step] = []
        completed = False
        try:
            for step in self.steps:
                if self._check_cancel(state):
                    break

                logger.debug(f"▶ Step: {step.name}")
                started.append(step)
                try:
                    action = step.run(state)
                except BaseException:
                    state.aborted = True
                    raise
                state.reached.append(step.name)

                if self._check_cancel(state):
                    break
                if action is not StepAction.CONTINUE:
                    logger.debug(f"Step {step.name} returned {action.value}, halting")
                    break
            else:
                completed = True
        finally:
            self._cleanup(started, state)
        return completed

    def _check_cancel(self, state: BuildState) -> bool:
        if state.cancel.is_set():
            if not state.cancelled:
                logger.info("[yellow]Build cancelled, unwinding[/yellow]")
            state.cancelled = True
            return True
        return False

    def _cleanup(self, started: list[Step], state: BuildState) -> None:
        for step in reversed(started):
            try:
                step.cleanup(state)
            except Exception as e:
                logger.warning(f"Cleanup of step {step.name} failed: {e}")
                state.ui.error(f"Cleanup of {step.name} failed: {e}")
