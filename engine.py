from __future__ import annotations
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from errors import DataUnavailable, InvalidConfig, NavigationBlocked
from flow import compile_content
from models import (
    ExperimentRun,
    PortfolioValuation,
    RoundPriceTable,
    ScenarioConfig,
    ScenarioStep,
    Section,
    WalletAsset,
)
from navigator import FlowNavigator
from pricing import merge_price_tables, organize_prices_by_round
from record_store import RecordStore
from rounds import RoundTimer

logger = logging.getLogger(__name__)


class ExperimentRunner:
    """
    Runs participant sessions of an experiment against a record store.
    - start_run: compile the experiment's content into a flow and enter its first step.
    - tick / record_response / advance: the participant's timeline, one event at a time.
    - submit: hand responses and timings to the store once the flow is completed.
    Wallet / price failures never stop a run: the scenario shows fallback values and
    the problem goes to the operator log.

    Events for one run are serialized on a per-run lock. Runs left idle longer than
    `idle_timeout_seconds` are evicted on the next start_run (None keeps them until
    submit / abandon).
    """
    def __init__(
        self,
        store: RecordStore,
        timer: Optional[RoundTimer] = None,
        navigator: Optional[FlowNavigator] = None,
        clock: Optional[Callable[[], int]] = None,
        idle_timeout_seconds: Optional[float] = 3600,
    ):
        self.store = store
        self.timer = timer or RoundTimer()
        self.navigator = navigator or FlowNavigator(timer=self.timer, clock=clock)
        self.clock = self.navigator.clock
        self.idle_timeout_seconds = idle_timeout_seconds
        self._runs: Dict[str, ExperimentRun] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._last_seen_ms: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    # ---------- Run lifecycle ----------
    def start_run(self, experiment_id: str) -> ExperimentRun:
        if self.idle_timeout_seconds is not None:
            self.evict_idle(self.idle_timeout_seconds)

        content = self.store.get_flow_content(experiment_id)
        flow = compile_content(content)
        run = ExperimentRun(run_id=str(uuid.uuid4()), experiment_id=experiment_id, flow=flow)

        first = flow[0] if flow else None
        config = self._scenario_config(first) if isinstance(first, ScenarioStep) else None
        self.navigator.start(run.state, flow)
        if config is not None:
            self._start_scenario(run, config)

        with self._registry_lock:
            self._runs[run.run_id] = run
            self._locks[run.run_id] = threading.Lock()
            self._last_seen_ms[run.run_id] = self.clock()
        logger.info("Run %s started for experiment %s (%d steps)", run.run_id, experiment_id, len(flow))
        return run

    def get_run(self, run_id: str) -> Optional[ExperimentRun]:
        return self._runs.get(run_id)

    def submit(self, run_id: str) -> ExperimentRun:
        with self._locked(run_id) as run:
            if run.state.current_section != Section.COMPLETED:
                raise ValueError("Run is not completed yet.")
            self.store.save_run_results(run)
            self._forget(run_id)
        logger.info("Run %s submitted (%d responses)", run_id, len(run.state.responses))
        return run

    def abandon(self, run_id: str) -> ExperimentRun:
        with self._locked(run_id) as run:
            self.navigator.finish(run.state)
            self._forget(run_id)
        logger.info("Run %s abandoned at step %d", run_id, run.state.current_step_index)
        return run

    def evict_idle(self, max_idle_seconds: float) -> List[str]:
        """Abandon runs with no event for longer than max_idle_seconds. Busy runs are skipped."""
        cutoff = self.clock() - int(max_idle_seconds * 1000)
        with self._registry_lock:
            stale = [rid for rid, seen in self._last_seen_ms.items() if seen < cutoff]
        evicted = []
        for run_id in stale:
            lock = self._locks.get(run_id)
            if lock is None or not lock.acquire(blocking=False):
                continue
            try:
                run = self._runs.get(run_id)
                if run is None or self._last_seen_ms.get(run_id, cutoff) >= cutoff:
                    continue
                self.navigator.finish(run.state)
                self._forget(run_id)
                evicted.append(run_id)
            finally:
                lock.release()
        if evicted:
            logger.info("Evicted %d idle run(s)", len(evicted))
        return evicted

    # ---------- Participant events ----------
    def tick(self, run_id: str, count: int = 1) -> ExperimentRun:
        if count < 0:
            raise ValueError("count must be >= 0")
        with self._locked(run_id) as run:
            for _ in range(count):
                if not run.state.timer_active:
                    break
                self.timer.tick(run.state)
        return run

    def record_response(self, run_id: str, step_id: str, value: Any) -> ExperimentRun:
        with self._locked(run_id) as run:
            if run.state.current_section == Section.COMPLETED:
                raise ValueError("Run already completed.")
            if step_id not in {s.ref_id for s in run.flow}:
                raise ValueError(f"Unknown step id: {step_id}")
            self.navigator.record_response(run.state, step_id, value)
        return run

    def advance(self, run_id: str) -> ExperimentRun:
        with self._locked(run_id) as run:
            st = run.state
            if st.current_section == Section.COMPLETED:
                return run
            if self.navigator.is_navigation_blocked(st, run.flow):
                raise NavigationBlocked("Current step is not complete yet.")

            nxt_index = st.current_step_index + 1
            nxt = run.flow[nxt_index] if nxt_index < len(run.flow) else None
            # Resolve the next scenario before moving so a bad config leaves the run where it was.
            config = self._scenario_config(nxt) if isinstance(nxt, ScenarioStep) else None

            self.navigator.advance(st, run.flow)
            if config is not None:
                self._start_scenario(run, config)
        return run

    # ---------- Queries ----------
    def is_navigation_blocked(self, run_id: str) -> bool:
        run = self._require_run(run_id)
        return self.navigator.is_navigation_blocked(run.state, run.flow)

    def progress(self, run_id: str) -> float:
        run = self._require_run(run_id)
        return self.navigator.progress(run.state, run.flow)

    def valuation(self, run_id: str) -> Optional[PortfolioValuation]:
        run = self._require_run(run_id)
        return run.state.scenario.valuation if run.state.scenario else None

    # ---------- Scenario data ----------
    def _scenario_config(self, step: ScenarioStep) -> ScenarioConfig:
        try:
            config = self.store.get_scenario_config(step.ref_id)
        except KeyError as e:
            logger.error("Scenario %s cannot start: %s", step.ref_id, e)
            raise InvalidConfig(f"Scenario {step.ref_id} not found") from e
        try:
            config.validate()
        except InvalidConfig as e:
            logger.error("Scenario %s cannot start: %s", step.ref_id, e)
            raise
        return config

    def _start_scenario(self, run: ExperimentRun, config: ScenarioConfig) -> None:
        self.timer.enter_scenario(run.state, config)
        self.load_market_data(run)

    def load_market_data(self, run: ExperimentRun) -> bool:
        """
        (Re)load wallet and prices for the run's active scenario and refresh its valuation.
        Returns False when the result was superseded by a newer load.
        """
        st = run.state
        generation = self.timer.begin_load(st)
        config = st.scenario.config
        errors: List[str] = []

        assets = self._fetch_assets(config, errors)
        prices = self._fetch_prices(config, errors)
        return self.timer.apply_market_data(st, generation, assets, prices, errors)

    def _fetch_assets(self, config: ScenarioConfig, errors: List[str]) -> List[WalletAsset]:
        wallet_id = config.wallet_ref
        try:
            if not wallet_id and config.template_id:
                wallet_id = self.store.get_template_wallet(config.template_id)
            if not wallet_id:
                raise DataUnavailable("wallet", config.id, "scenario has no wallet")
            assets = self.store.get_wallet_assets(wallet_id)
            if not assets:
                raise DataUnavailable("wallet assets", wallet_id, "wallet is empty")
            return assets
        except (RuntimeError, ValueError) as e:
            self._report(config, errors, e)
            return []

    def _fetch_prices(self, config: ScenarioConfig, errors: List[str]) -> RoundPriceTable:
        # scenario prices first, template prices merged over them
        sources = [config.id]
        if config.template_id and config.template_id != config.id:
            sources.append(config.template_id)

        tables: List[RoundPriceTable] = []
        failures = len(errors)
        for source_id in sources:
            try:
                tables.append(organize_prices_by_round(self.store.get_round_prices(source_id)))
            except (RuntimeError, ValueError) as e:
                self._report(config, errors, e)

        prices = merge_price_tables(*tables)
        if not prices and len(errors) == failures:
            self._report(config, errors, DataUnavailable("round prices", config.id, "no price records"))
        return prices

    @staticmethod
    def _report(config: ScenarioConfig, errors: List[str], exc: Exception) -> None:
        logger.warning("Scenario %s: %s (continuing with fallback values)", config.id, exc)
        errors.append(str(exc))

    # ---------- helpers ----------
    def _require_run(self, run_id: str) -> ExperimentRun:
        run = self._runs.get(run_id)
        if not run:
            raise KeyError("Unknown run_id")
        return run

    @contextmanager
    def _locked(self, run_id: str) -> Iterator[ExperimentRun]:
        with self._registry_lock:
            lock = self._locks.get(run_id)
        if lock is None:
            raise KeyError("Unknown run_id")
        with lock:
            # the run may have been submitted or evicted while we waited
            run = self._require_run(run_id)
            self._last_seen_ms[run_id] = self.clock()
            yield run

    def _forget(self, run_id: str) -> None:
        with self._registry_lock:
            self._runs.pop(run_id, None)
            self._locks.pop(run_id, None)
            self._last_seen_ms.pop(run_id, None)
