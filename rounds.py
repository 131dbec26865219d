from __future__ import annotations
import logging
from typing import Callable, Iterable, Optional

from errors import OutOfRangeRound
from models import (
    PortfolioValuation,
    RoundPriceTable,
    RunState,
    ScenarioConfig,
    ScenarioSession,
    TimerState,
    WalletAsset,
)
from pricing import valuate

logger = logging.getLogger(__name__)


class RoundTimer:
    """
    State machine for the rounds of the scenario step on screen.

        Idle -> Running -> (round complete -> Running)* -> AllRoundsComplete

    Driven by discrete events: enter_scenario, tick, leave_scenario, plus
    begin_load / apply_market_data for the scenario's wallet and price data.
    All state lives on the RunState passed in; the timer itself only holds
    the optional listeners, so one instance can serve any number of runs.
    """
    def __init__(
        self,
        on_round_complete: Optional[Callable[[int, int], None]] = None,
        on_all_rounds_complete: Optional[Callable[[], None]] = None,
    ):
        self.on_round_complete = on_round_complete
        self.on_all_rounds_complete = on_all_rounds_complete

    @staticmethod
    def state(run: RunState) -> TimerState:
        if run.scenario is None:
            return TimerState.IDLE
        if run.rounds_completed:
            return TimerState.ALL_ROUNDS_COMPLETE
        if run.timer_active:
            return TimerState.RUNNING
        return TimerState.IDLE

    # ---------- Events ----------
    def enter_scenario(self, run: RunState, config: ScenarioConfig) -> RunState:
        # InvalidConfig propagates: the step must not start
        config.validate()
        run.scenario = ScenarioSession(config=config)
        run.current_round = 1
        run.round_elapsed_seconds = 0
        run.rounds_completed = False
        run.timer_active = True
        logger.info(
            "Scenario %s started: %d rounds of %ds",
            config.id, config.total_rounds, config.round_duration_seconds,
        )
        return run

    def tick(self, run: RunState) -> RunState:
        if not run.timer_active or run.scenario is None:
            return run
        config = run.scenario.config
        self._check_round(run)

        run.round_elapsed_seconds += 1
        if run.round_elapsed_seconds < config.round_duration_seconds:
            return run

        if run.current_round < config.total_rounds:
            prev = run.current_round
            run.current_round += 1
            run.round_elapsed_seconds = 0
            logger.debug("Scenario %s: round %d -> %d", config.id, prev, run.current_round)
            self.refresh(run, round_advanced=True)
            if self.on_round_complete:
                self.on_round_complete(prev, run.current_round)
        else:
            run.rounds_completed = True
            run.timer_active = False
            logger.info("Scenario %s: all %d rounds complete", config.id, config.total_rounds)
            self.refresh(run)
            if self.on_all_rounds_complete:
                self.on_all_rounds_complete()
        return run

    def leave_scenario(self, run: RunState) -> RunState:
        # Dropping the session also orphans any load still in flight.
        run.timer_active = False
        run.scenario = None
        return run

    # ---------- Market data ----------
    def begin_load(self, run: RunState) -> int:
        """Clear the scenario's market data and return the generation the next load must carry."""
        session = self._require_session(run)
        session.generation += 1
        session.assets = []
        session.prices = {}
        session.data_errors = []
        session.valuation = PortfolioValuation()
        session.previous_valuation = None
        return session.generation

    def apply_market_data(
        self,
        run: RunState,
        generation: int,
        assets: Iterable[WalletAsset],
        prices: RoundPriceTable,
        errors: Iterable[str] = (),
    ) -> bool:
        """Install a finished load. Results from a superseded load are dropped (latest request wins)."""
        session = run.scenario
        if session is None or generation != session.generation:
            logger.debug("Dropping stale market data (generation %s)", generation)
            return False
        session.assets = list(assets)
        session.prices = prices
        session.data_errors = list(errors)
        self.refresh(run)
        return True

    def refresh(self, run: RunState, round_advanced: bool = False) -> PortfolioValuation:
        session = self._require_session(run)
        self._check_round(run)
        if round_advanced:
            session.previous_valuation = session.valuation
        session.valuation = valuate(session.assets, session.prices, run.current_round)
        return session.valuation

    # ---------- Queries ----------
    @staticmethod
    def round_progress(run: RunState) -> float:
        """Percent of the current round elapsed, capped at 100."""
        if run.scenario is None:
            return 0.0
        duration = run.scenario.config.round_duration_seconds
        return min(run.round_elapsed_seconds / duration * 100.0, 100.0)

    @staticmethod
    def remaining_seconds(run: RunState) -> int:
        if run.scenario is None:
            return 0
        return max(0, run.scenario.config.round_duration_seconds - run.round_elapsed_seconds)

    # ---------- helpers ----------
    @staticmethod
    def _require_session(run: RunState) -> ScenarioSession:
        if run.scenario is None:
            raise ValueError("No scenario is active for this run")
        return run.scenario

    @staticmethod
    def _check_round(run: RunState) -> None:
        total = run.scenario.config.total_rounds
        if not 1 <= run.current_round <= total:
            raise OutOfRangeRound(f"Round {run.current_round} outside [1, {total}]")
