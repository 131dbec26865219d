from __future__ import annotations
import logging
import time
from typing import Any, Callable, List, Optional

from models import (
    BreakStep,
    FlowStep,
    InfoStep,
    RunState,
    ScenarioStep,
    Section,
    SurveyGroupStep,
    SurveyQuestionStep,
)
from rounds import RoundTimer

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


def is_timed(step: Optional[FlowStep]) -> bool:
    # Only steps that collect a response are timed.
    return isinstance(step, (ScenarioStep, SurveyQuestionStep))


class FlowNavigator:
    """
    Walks a compiled flow one step at a time.
    - Records how long the participant spent on each scenario / survey question.
    - Stops the round timer whenever a scenario step is left.
    Entering a scenario needs its config from the store, so that part is left to the caller.
    """
    def __init__(self, timer: Optional[RoundTimer] = None, clock: Optional[Callable[[], int]] = None):
        self.timer = timer or RoundTimer()
        self.clock = clock or _now_ms

    # ---------- Walking ----------
    def start(self, run: RunState, flow: List[FlowStep]) -> RunState:
        run.current_step_index = 0
        if not flow:
            run.current_section = Section.COMPLETED
            run.step_started_at_ms = None
            return run
        self._enter(run, flow[0])
        return run

    def advance(self, run: RunState, flow: List[FlowStep]) -> RunState:
        if run.current_section == Section.COMPLETED:
            return run
        step = self.current_step(run, flow)

        if is_timed(step) and run.step_started_at_ms is not None:
            run.response_times_ms[step.ref_id] = self.clock() - run.step_started_at_ms
        if isinstance(step, ScenarioStep):
            self.timer.leave_scenario(run)

        if run.current_step_index >= len(flow) - 1:
            run.current_section = Section.COMPLETED
            run.step_started_at_ms = None
            logger.info("Flow completed after %d steps", len(flow))
            return run

        run.current_step_index += 1
        self._enter(run, flow[run.current_step_index])
        return run

    def finish(self, run: RunState) -> RunState:
        """Stop everything when the run ends early (abandoned)."""
        self.timer.leave_scenario(run)
        run.step_started_at_ms = None
        return run

    def record_response(self, run: RunState, step_id: str, value: Any) -> RunState:
        run.responses[step_id] = value
        if run.step_started_at_ms is None:
            run.step_started_at_ms = self.clock()
        return run

    # ---------- Queries ----------
    @staticmethod
    def current_step(run: RunState, flow: List[FlowStep]) -> Optional[FlowStep]:
        if run.current_section == Section.COMPLETED:
            return None
        if 0 <= run.current_step_index < len(flow):
            return flow[run.current_step_index]
        return None

    def is_navigation_blocked(self, run: RunState, flow: List[FlowStep]) -> bool:
        step = self.current_step(run, flow)
        if step is None:
            return False
        if isinstance(step, ScenarioStep):
            return not run.rounds_completed or not self._answered(run, step)
        if isinstance(step, SurveyQuestionStep):
            return not self._answered(run, step)
        if isinstance(step, (InfoStep, BreakStep, SurveyGroupStep)):
            return False
        raise TypeError(f"Unknown flow step type: {type(step).__name__}")

    @staticmethod
    def progress(run: RunState, flow: List[FlowStep]) -> float:
        if run.current_section == Section.COMPLETED:
            return 100.0
        if not flow:
            return 0.0
        return 100.0 * run.current_step_index / len(flow)

    # ---------- helpers ----------
    def _enter(self, run: RunState, step: FlowStep) -> None:
        run.current_section = step.section
        run.step_started_at_ms = self.clock() if is_timed(step) else None

    @staticmethod
    def _answered(run: RunState, step: FlowStep) -> bool:
        return run.responses.get(step.ref_id) is not None
