import pytest
import requests

from errors import InvalidConfig
from models import ExperimentRun, RunState, ScenarioStep, SurveyQuestionStep
from record_store import InMemoryRecordStore, RestRecordStore, split_responses


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class FakeSession:
    """Answers GETs from a table -> rows map and records POSTs."""
    def __init__(self, tables=None, status_code=200):
        self.tables = tables or {}
        self.status_code = status_code
        self.gets = []
        self.posts = []

    def get(self, url, params=None, headers=None, timeout=None):
        table = url.rsplit("/", 1)[-1]
        self.gets.append((table, params, headers))
        return FakeResponse(self.status_code, self.tables.get(table, []), text="boom")

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append((url.rsplit("/", 1)[-1], json, headers))
        return FakeResponse(201)


def _store(session):
    return RestRecordStore(base_url="https://db.example/rest/v1/", api_key="k", timeout=5, session=session)


def test_requires_base_url(monkeypatch):
    monkeypatch.delenv("RECORD_STORE_URL", raising=False)
    with pytest.raises(RuntimeError):
        RestRecordStore()


def test_scenario_config_mapping():
    session = FakeSession({"scenarios": [{
        "id": 7, "title": "Trade", "description": None, "wallet_id": 3,
        "round_duration": 30, "rounds": 4, "scenario_template_id": None,
    }]})
    cfg = _store(session).get_scenario_config("7")
    assert (cfg.id, cfg.wallet_ref, cfg.round_duration_seconds, cfg.total_rounds) == ("7", "3", 30, 4)
    assert cfg.template_id is None

    table, params, headers = session.gets[0]
    assert params["id"] == "eq.7"
    assert headers["apikey"] == "k"
    assert headers["Authorization"] == "Bearer k"


def test_zero_round_config_is_kept_for_validation():
    session = FakeSession({"scenarios": [{"id": 1, "title": "T", "round_duration": 0, "rounds": 0}]})
    cfg = _store(session).get_scenario_config("1")
    assert (cfg.round_duration_seconds, cfg.total_rounds) == (0, 0)
    with pytest.raises(InvalidConfig):
        cfg.validate()


def test_absent_round_config_uses_defaults():
    session = FakeSession({"scenarios": [{"id": 1, "title": "T", "round_duration": None}]})
    cfg = _store(session).get_scenario_config("1")
    assert (cfg.round_duration_seconds, cfg.total_rounds) == (60, 3)


def test_missing_scenario_is_key_error():
    with pytest.raises(KeyError):
        _store(FakeSession()).get_scenario_config("1")


def test_wallet_assets_and_prices():
    session = FakeSession({
        "assets": [{"asset_code": "BTC", "name": "Bitcoin", "price_spot": "50000", "amount": "0.5"}],
        "scenario_asset_prices": [{"asset_code": "BTC", "round_number": 2, "price": "51000.5"}],
    })
    store = _store(session)
    [btc] = store.get_wallet_assets("w")
    assert (btc.asset_code, btc.spot_price, btc.amount) == ("BTC", 50000.0, 0.5)
    [rec] = store.get_round_prices("s")
    assert (rec.round_number, rec.price) == (2, 51000.5)


def test_flow_content_mapping():
    session = FakeSession({
        "experiments": [{"id": "e"}],
        "experiment_intro_screens": [{"id": 1, "title": "Hi", "content": "c", "order_index": 0}],
        "experiment_scenarios": [{"id": 9, "scenario_id": 4, "title": "T", "order_index": 1}],
        "experiment_survey_questions": [
            {"id": 5, "question": "Age?", "type": "number", "order_index": 2, "is_demographic": True},
        ],
    })
    content = _store(session).get_flow_content("e")
    assert content.scenarios[0].id == "4"
    assert content.survey_questions[0].question_type == "number"
    assert content.survey_questions[0].is_demographic is True
    assert content.break_screens == []


def test_http_error_surfaces_as_runtime_error():
    with pytest.raises(RuntimeError):
        _store(FakeSession(status_code=500)).get_wallet_assets("w")


def test_transport_error_surfaces_as_runtime_error():
    class Down(FakeSession):
        def get(self, *a, **kw):
            raise requests.ConnectionError("refused")

    with pytest.raises(RuntimeError):
        _store(Down()).get_round_prices("s")


def _finished_run():
    flow = [
        ScenarioStep(id="scenario-s1", order_key=0, title="T", ref_id="s1"),
        SurveyQuestionStep(id="question-q1", order_key=1, title="Age?", ref_id="q1"),
    ]
    state = RunState(responses={"s1": "buy", "q1": 30}, response_times_ms={"s1": 1500, "q1": 800})
    return ExperimentRun(run_id="r1", experiment_id="e", flow=flow, state=state)


def test_split_responses():
    scenario_rows, survey_rows = split_responses(_finished_run())
    assert scenario_rows == [{"scenario_id": "s1", "experiment_id": "e", "participant_code": "r1",
                              "response": "buy", "response_time_ms": 1500}]
    assert survey_rows[0]["question_id"] == "q1"
    assert survey_rows[0]["response_time_ms"] == 800


def test_rest_save_run_results():
    session = FakeSession()
    _store(session).save_run_results(_finished_run())
    assert [p[0] for p in session.posts] == [
        "experiment_participants", "experiment_scenario_responses", "experiment_survey_responses",
    ]
    assert session.posts[0][2]["Prefer"] == "return=minimal"


def test_in_memory_save():
    store = InMemoryRecordStore()
    store.save_run_results(_finished_run())
    assert store.saved[0]["response_times_ms"] == {"s1": 1500, "q1": 800}
