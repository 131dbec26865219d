from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from models import (
    BreakScreen,
    ExperimentRun,
    FlowContent,
    InfoScreen,
    PriceRecord,
    ScenarioConfig,
    ScenarioRecord,
    ScenarioStep,
    SurveyQuestion,
    SurveyQuestionStep,
    WalletAsset,
)

load_dotenv()

logger = logging.getLogger(__name__)


class RecordStore:
    """Keyed reads/writes the experiment runner needs from storage."""

    def get_scenario_config(self, scenario_id: str) -> ScenarioConfig:
        raise NotImplementedError

    def get_template_wallet(self, template_id: str) -> Optional[str]:
        raise NotImplementedError

    def get_wallet_assets(self, wallet_id: str) -> List[WalletAsset]:
        raise NotImplementedError

    def get_round_prices(self, scenario_or_template_id: str) -> List[PriceRecord]:
        raise NotImplementedError

    def get_flow_content(self, experiment_id: str) -> FlowContent:
        raise NotImplementedError

    def save_run_results(self, run: ExperimentRun) -> None:
        raise NotImplementedError


def split_responses(run: ExperimentRun) -> tuple[list[dict], list[dict]]:
    """Scenario rows and survey rows for a finished run, in flow order."""
    st = run.state
    scenario_rows, survey_rows = [], []
    for step in run.flow:
        if step.ref_id not in st.responses:
            continue
        row = {
            "experiment_id": run.experiment_id,
            "participant_code": run.run_id,
            "response": st.responses[step.ref_id],
            "response_time_ms": st.response_times_ms.get(step.ref_id),
        }
        if isinstance(step, ScenarioStep):
            scenario_rows.append({"scenario_id": step.ref_id, **row})
        elif isinstance(step, SurveyQuestionStep):
            survey_rows.append({"question_id": step.ref_id, **row})
    return scenario_rows, survey_rows


# ---------- REST (PostgREST / Supabase) ----------
class RestRecordStore(RecordStore):
    """
    Record store backed by a PostgREST endpoint (e.g. a Supabase project's /rest/v1).
    Transport and HTTP errors surface as RuntimeError.
    """
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or os.getenv("RECORD_STORE_URL") or "").rstrip("/")
        if not self.base_url:
            raise RuntimeError("Missing RECORD_STORE_URL")
        self.api_key = api_key or os.getenv("RECORD_STORE_KEY")
        self.timeout = timeout if timeout is not None else float(os.getenv("RECORD_STORE_TIMEOUT", "30"))
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["apikey"] = self.api_key
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    def _select(self, table: str, **params: str) -> List[Dict[str, Any]]:
        params.setdefault("select", "*")
        url = f"{self.base_url}/{table}"
        try:
            resp = self.session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Record store request to %s failed: %s", table, e)
            raise RuntimeError(f"Record store unreachable ({table}): {e}") from e
        if resp.status_code != 200:
            logger.error("Record store error %s on %s: %s", resp.status_code, table, resp.text)
            raise RuntimeError(f"Record store error {resp.status_code} on {table}: {resp.text}")
        return resp.json()

    def _insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        headers = {**self._headers(), "Prefer": "return=minimal"}
        try:
            resp = self.session.post(f"{self.base_url}/{table}", json=rows, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Record store insert into %s failed: %s", table, e)
            raise RuntimeError(f"Record store unreachable ({table}): {e}") from e
        if resp.status_code not in (200, 201, 204):
            logger.error("Record store error %s on insert into %s: %s", resp.status_code, table, resp.text)
            raise RuntimeError(f"Record store error {resp.status_code} on {table}: {resp.text}")

    # ---------- Reads ----------
    def get_scenario_config(self, scenario_id: str) -> ScenarioConfig:
        rows = self._select("scenarios", id=f"eq.{scenario_id}")
        if not rows:
            raise KeyError(f"Scenario {scenario_id} not found")
        r = rows[0]
        return ScenarioConfig(
            id=str(r["id"]),
            title=r.get("title") or "",
            description=r.get("description") or "",
            wallet_ref=str(r["wallet_id"]) if r.get("wallet_id") else None,
            round_duration_seconds=int(r["round_duration"]) if r.get("round_duration") is not None else 60,
            total_rounds=int(r["rounds"]) if r.get("rounds") is not None else 3,
            template_id=str(r["scenario_template_id"]) if r.get("scenario_template_id") else None,
        )

    def get_template_wallet(self, template_id: str) -> Optional[str]:
        rows = self._select("scenario_templates", id=f"eq.{template_id}", select="wallet_id")
        if rows and rows[0].get("wallet_id"):
            return str(rows[0]["wallet_id"])
        return None

    def get_wallet_assets(self, wallet_id: str) -> List[WalletAsset]:
        rows = self._select("assets", wallet_id=f"eq.{wallet_id}", order="asset_code")
        return [
            WalletAsset(
                asset_code=r["asset_code"],
                name=r.get("name") or r["asset_code"],
                spot_price=float(r.get("price_spot") or 0),
                amount=float(r.get("amount") or 0),
            )
            for r in rows
        ]

    def get_round_prices(self, scenario_or_template_id: str) -> List[PriceRecord]:
        rows = self._select(
            "scenario_asset_prices",
            scenario_id=f"eq.{scenario_or_template_id}",
            order="asset_code,round_number",
        )
        return [
            PriceRecord(asset_code=r["asset_code"], round_number=int(r["round_number"]), price=float(r["price"]))
            for r in rows
        ]

    def get_flow_content(self, experiment_id: str) -> FlowContent:
        exp = self._select("experiments", id=f"eq.{experiment_id}", select="id")
        if not exp:
            raise KeyError(f"Experiment {experiment_id} not found")
        by_exp = {"experiment_id": f"eq.{experiment_id}", "order": "order_index"}
        return FlowContent(
            info_screens=[
                InfoScreen(id=str(r["id"]), title=r.get("title") or "", content=r.get("content") or "",
                           order_index=r.get("order_index") or 0)
                for r in self._select("experiment_intro_screens", **by_exp)
            ],
            scenarios=[
                ScenarioRecord(id=str(r.get("scenario_id") or r["id"]), title=r.get("title") or "",
                               order_index=r.get("order_index") or 0, description=r.get("description") or "")
                for r in self._select("experiment_scenarios", **by_exp)
            ],
            break_screens=[
                BreakScreen(id=str(r["id"]), title=r.get("title") or "", content=r.get("content") or "",
                            order_index=r.get("order_index") or 0)
                for r in self._select("experiment_break_screens", **by_exp)
            ],
            survey_questions=[
                SurveyQuestion(id=str(r["id"]), question=r.get("question") or "",
                               order_index=r.get("order_index") or 0, question_type=r.get("type") or "text",
                               options=r.get("options"), is_demographic=bool(r.get("is_demographic")))
                for r in self._select("experiment_survey_questions", **by_exp)
            ],
        )

    # ---------- Writes ----------
    def save_run_results(self, run: ExperimentRun) -> None:
        scenario_rows, survey_rows = split_responses(run)
        self._insert("experiment_participants", [{
            "experiment_id": run.experiment_id,
            "participant_code": run.run_id,
            "status": "completed",
        }])
        self._insert("experiment_scenario_responses", scenario_rows)
        self._insert("experiment_survey_responses", survey_rows)


# ---------- In-memory ----------
class InMemoryRecordStore(RecordStore):
    """Dict-backed store for tests, demos and running without a database."""

    def __init__(self):
        self.scenarios: Dict[str, ScenarioConfig] = {}
        self.template_wallets: Dict[str, str] = {}
        self.wallets: Dict[str, List[WalletAsset]] = {}
        self.prices: Dict[str, List[PriceRecord]] = {}
        self.contents: Dict[str, FlowContent] = {}
        self.saved: List[Dict[str, Any]] = []

    def get_scenario_config(self, scenario_id: str) -> ScenarioConfig:
        if scenario_id not in self.scenarios:
            raise KeyError(f"Scenario {scenario_id} not found")
        return self.scenarios[scenario_id]

    def get_template_wallet(self, template_id: str) -> Optional[str]:
        return self.template_wallets.get(template_id)

    def get_wallet_assets(self, wallet_id: str) -> List[WalletAsset]:
        return list(self.wallets.get(wallet_id, []))

    def get_round_prices(self, scenario_or_template_id: str) -> List[PriceRecord]:
        return list(self.prices.get(scenario_or_template_id, []))

    def get_flow_content(self, experiment_id: str) -> FlowContent:
        if experiment_id not in self.contents:
            raise KeyError(f"Experiment {experiment_id} not found")
        return self.contents[experiment_id]

    def save_run_results(self, run: ExperimentRun) -> None:
        scenario_rows, survey_rows = split_responses(run)
        self.saved.append({
            "run_id": run.run_id,
            "experiment_id": run.experiment_id,
            "responses": dict(run.state.responses),
            "response_times_ms": dict(run.state.response_times_ms),
            "scenario_rows": scenario_rows,
            "survey_rows": survey_rows,
        })


DEMO_EXPERIMENT_ID = "demo"

_DEMO_QUESTIONS = [
    ("What is your age?", "number", None),
    ("What is your gender?", "multiple_choice", ["Male", "Female", "Non-binary", "Prefer not to say"]),
    ("What is your highest level of education?", "multiple_choice",
     ["High School", "Bachelor's Degree", "Master's Degree", "Doctorate", "Other"]),
    ("How experienced are you with investing?", "multiple_choice",
     ["No experience", "Beginner", "Intermediate", "Advanced", "Expert"]),
    ("How experienced are you with cryptocurrency?", "multiple_choice",
     ["No experience", "Beginner", "Intermediate", "Advanced", "Expert"]),
]


def seed_demo(store: InMemoryRecordStore, round_duration_seconds: int = 60) -> str:
    """Load the demo experiment into an in-memory store and return its id."""
    store.wallets["demo-wallet"] = [
        WalletAsset(asset_code="BTC", name="Bitcoin", spot_price=50000.0, amount=0.5),
        WalletAsset(asset_code="ETH", name="Ethereum", spot_price=3000.0, amount=4.0),
        WalletAsset(asset_code="USDT", name="Tether", spot_price=1.0, amount=1000.0),
    ]
    store.template_wallets["demo-template"] = "demo-wallet"
    store.scenarios["demo-investment"] = ScenarioConfig(
        id="demo-investment", title="Investment Decision",
        description="Choose how to allocate your investment funds.",
        wallet_ref="demo-wallet", round_duration_seconds=round_duration_seconds, total_rounds=3,
    )
    store.scenarios["demo-crypto"] = ScenarioConfig(
        id="demo-crypto", title="Cryptocurrency Trade",
        description="Make a decision about your cryptocurrency holdings.",
        round_duration_seconds=round_duration_seconds, total_rounds=3, template_id="demo-template",
    )
    store.prices["demo-investment"] = [
        PriceRecord("BTC", 1, 50000.0), PriceRecord("BTC", 2, 52500.0), PriceRecord("BTC", 3, 48000.0),
        PriceRecord("ETH", 1, 3000.0), PriceRecord("ETH", 2, 3150.0), PriceRecord("ETH", 3, 2900.0),
    ]
    # template supplies rounds 1-2; the scenario's own record for round 3 fills the gap
    store.prices["demo-template"] = [
        PriceRecord("BTC", 1, 50000.0), PriceRecord("BTC", 2, 45000.0),
        PriceRecord("ETH", 1, 3000.0), PriceRecord("ETH", 2, 3300.0),
    ]
    store.prices["demo-crypto"] = [PriceRecord("BTC", 3, 47000.0), PriceRecord("ETH", 3, 3400.0)]

    questions = [
        SurveyQuestion(id=f"demo-q{i}", question=q, order_index=7, question_type=t, options=opts, is_demographic=True)
        for i, (q, t, opts) in enumerate(_DEMO_QUESTIONS, start=1)
    ]
    questions += [
        SurveyQuestion(id="demo-c1", question="How confident were you in your decisions?", order_index=8,
                       question_type="multiple_choice", options=["Not at all", "Somewhat", "Very"]),
        SurveyQuestion(id="demo-c2", question="Any other comments?", order_index=8),
    ]
    store.contents[DEMO_EXPERIMENT_ID] = FlowContent(
        info_screens=[
            InfoScreen(id="demo-welcome", title="Welcome", order_index=0,
                       content="Thank you for taking part in this study."),
            InfoScreen(id="demo-instructions", title="Instructions", order_index=1,
                       content="You will see a portfolio whose value changes each round. Watch it and decide."),
        ],
        scenarios=[
            ScenarioRecord(id="demo-investment", title="Investment Decision", order_index=2),
            ScenarioRecord(id="demo-crypto", title="Cryptocurrency Trade", order_index=4),
        ],
        break_screens=[
            BreakScreen(id="demo-break", title="Short Break", order_index=3,
                        content="Take a moment before the next scenario."),
        ],
        survey_questions=questions,
    )
    return DEMO_EXPERIMENT_ID
