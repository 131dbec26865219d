from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from engine import ExperimentRunner
from errors import NavigationBlocked
from models import ExperimentRun, FlowStep, PortfolioValuation
from pricing import calculate_change
from record_store import InMemoryRecordStore, RestRecordStore, seed_demo

logger = logging.getLogger(__name__)


# ---------- Pydantic IO models ----------
class TickIn(BaseModel):
    count: int = Field(1, ge=0, le=3600, examples=[1])


class ResponseIn(BaseModel):
    step_id: str = Field(..., examples=["demo-q1"])
    value: Any


class StepOut(BaseModel):
    id: str
    kind: str
    ref_id: str
    title: str
    order_key: float
    content: Optional[str] = None
    description: Optional[str] = None
    question_type: Optional[str] = None
    options: Optional[List[str]] = None
    is_demographic: Optional[bool] = None


class AssetValueOut(BaseModel):
    asset_code: str
    name: str
    amount: float
    price: float
    value: float
    stable_value: float
    source: str


class ChangeOut(BaseModel):
    amount: float
    percentage: float
    direction: str
    formatted: str


class ValuationOut(BaseModel):
    assets: List[AssetValueOut]
    total_value: float
    total_stable_value: float
    # change of total value since the previous round
    change: Optional[ChangeOut] = None


class RunOut(BaseModel):
    run_id: str
    experiment_id: str
    current_step_index: int
    current_section: str
    total_steps: int
    step: Optional[StepOut] = None
    current_round: Optional[int] = None
    total_rounds: Optional[int] = None
    round_elapsed_seconds: Optional[int] = None
    round_duration_seconds: Optional[int] = None
    round_progress: Optional[float] = None
    round_remaining_seconds: Optional[int] = None
    timer_active: bool
    rounds_completed: bool
    navigation_blocked: bool
    progress: float
    responses: Dict[str, Any]
    valuation: Optional[ValuationOut] = None
    data_errors: List[str] = []


# ---------- Converters ----------
def _to_step_out(step: FlowStep) -> StepOut:
    return StepOut(
        id=step.id,
        kind=step.kind.value,
        ref_id=step.ref_id,
        title=step.title,
        order_key=step.order_key,
        content=getattr(step, "content", None),
        description=getattr(step, "description", None),
        question_type=getattr(step, "question_type", None),
        options=getattr(step, "options", None),
        is_demographic=getattr(step, "is_demographic", None),
    )


def _to_valuation_out(v: PortfolioValuation, previous: Optional[PortfolioValuation]) -> ValuationOut:
    change = None
    if previous is not None:
        c = calculate_change(v.total_value, previous.total_value)
        change = ChangeOut(amount=c.amount, percentage=c.percentage, direction=c.direction, formatted=c.formatted)
    return ValuationOut(
        assets=[
            AssetValueOut(
                asset_code=a.asset.asset_code,
                name=a.asset.name,
                amount=a.asset.amount,
                price=a.price,
                value=a.value,
                stable_value=a.stable_value,
                source=a.source.value,
            )
            for a in v.per_asset
        ],
        total_value=v.total_value,
        total_stable_value=v.total_stable_value,
        change=change,
    )


def _to_run_out(runner: ExperimentRunner, run: ExperimentRun) -> RunOut:
    st = run.state
    step = runner.navigator.current_step(st, run.flow)
    out = RunOut(
        run_id=run.run_id,
        experiment_id=run.experiment_id,
        current_step_index=st.current_step_index,
        current_section=st.current_section.value,
        total_steps=len(run.flow),
        step=_to_step_out(step) if step else None,
        timer_active=st.timer_active,
        rounds_completed=st.rounds_completed,
        navigation_blocked=runner.navigator.is_navigation_blocked(st, run.flow),
        progress=runner.navigator.progress(st, run.flow),
        responses=dict(st.responses),
    )
    if st.scenario is not None:
        cfg = st.scenario.config
        out.current_round = st.current_round
        out.total_rounds = cfg.total_rounds
        out.round_elapsed_seconds = st.round_elapsed_seconds
        out.round_duration_seconds = cfg.round_duration_seconds
        out.round_progress = runner.timer.round_progress(st)
        out.round_remaining_seconds = runner.timer.remaining_seconds(st)
        out.valuation = _to_valuation_out(st.scenario.valuation, st.scenario.previous_valuation)
        out.data_errors = list(st.scenario.data_errors)
    return out


# ---------- App ----------
def default_runner() -> ExperimentRunner:
    if os.getenv("RECORD_STORE_URL"):
        return ExperimentRunner(store=RestRecordStore())
    logger.info("RECORD_STORE_URL not set; serving the in-memory demo experiment")
    store = InMemoryRecordStore()
    seed_demo(store)
    return ExperimentRunner(store=store)


def create_app(runner: Optional[ExperimentRunner] = None) -> FastAPI:
    runner = runner or default_runner()
    app = FastAPI(title="Experiment Runner API", version="1.0.0")
    app.state.runner = runner

    def _require(run_id: str) -> ExperimentRun:
        run = runner.get_run(run_id)
        if not run:
            raise HTTPException(404, "Run not found")
        return run

    def _call(fn, *args):
        try:
            return fn(*args)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e).strip("'"))
        except NavigationBlocked as e:
            raise HTTPException(status_code=409, detail=str(e))
        except RuntimeError as e:
            # record store failure (bad gateway)
            raise HTTPException(status_code=502, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/v1/experiments/{experiment_id}/runs", response_model=RunOut)
    def start_run(experiment_id: str):
        run = _call(runner.start_run, experiment_id)
        return _to_run_out(runner, run)

    @app.get("/v1/runs/{run_id}", response_model=RunOut)
    def get_run(run_id: str):
        return _to_run_out(runner, _require(run_id))

    @app.get("/v1/runs/{run_id}/flow", response_model=List[StepOut])
    def get_flow(run_id: str):
        return [_to_step_out(s) for s in _require(run_id).flow]

    @app.post("/v1/runs/{run_id}/tick", response_model=RunOut)
    def tick(run_id: str, payload: TickIn):
        _require(run_id)
        return _to_run_out(runner, _call(runner.tick, run_id, payload.count))

    @app.post("/v1/runs/{run_id}/responses", response_model=RunOut)
    def record_response(run_id: str, payload: ResponseIn):
        _require(run_id)
        return _to_run_out(runner, _call(runner.record_response, run_id, payload.step_id, payload.value))

    @app.post("/v1/runs/{run_id}/advance", response_model=RunOut)
    def advance(run_id: str):
        _require(run_id)
        return _to_run_out(runner, _call(runner.advance, run_id))

    @app.get("/v1/runs/{run_id}/valuation", response_model=ValuationOut)
    def valuation(run_id: str):
        run = _require(run_id)
        if run.state.scenario is None:
            raise HTTPException(404, "No scenario is active for this run")
        return _to_valuation_out(run.state.scenario.valuation, run.state.scenario.previous_valuation)

    @app.post("/v1/runs/{run_id}/submit", response_model=RunOut)
    def submit(run_id: str):
        _require(run_id)
        return _to_run_out(runner, _call(runner.submit, run_id))

    @app.delete("/v1/runs/{run_id}", response_model=RunOut)
    def abandon(run_id: str):
        _require(run_id)
        return _to_run_out(runner, _call(runner.abandon, run_id))

    return app


app = create_app()
