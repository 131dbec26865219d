import pytest

from flow import compile_content, compile_flow
from models import (
    BreakScreen,
    FlowContent,
    InfoScreen,
    ScenarioRecord,
    StepKind,
    SurveyGroupStep,
    SurveyQuestion,
    SurveyQuestionStep,
)


def _content():
    return FlowContent(
        info_screens=[
            InfoScreen(id="i1", title="Welcome", order_index=0),
            InfoScreen(id="i2", title="Instructions", order_index=1),
        ],
        scenarios=[ScenarioRecord(id="s1", title="Trade", order_index=2)],
        break_screens=[BreakScreen(id="b1", title="Break", order_index=3)],
        survey_questions=[
            SurveyQuestion(id="d1", question="Age?", order_index=4, is_demographic=True),
            SurveyQuestion(id="d2", question="Gender?", order_index=4, is_demographic=True),
            SurveyQuestion(id="d3", question="Education?", order_index=4, is_demographic=True),
            SurveyQuestion(id="c1", question="Confidence?", order_index=5),
            SurveyQuestion(id="c2", question="Comments?", order_index=5),
        ],
    )


def test_compile_orders_all_kinds():
    flow = compile_content(_content())
    assert [s.id for s in flow] == [
        "info-i1", "info-i2", "scenario-s1", "break-b1",
        "survey-demographic", "question-d1", "question-d2", "question-d3",
        "survey-custom", "question-c1", "question-c2",
    ]


def test_one_group_header_per_partition_followed_by_its_questions():
    flow = compile_content(_content())
    groups = [s for s in flow if isinstance(s, SurveyGroupStep)]
    assert [g.ref_id for g in groups] == ["demographic", "custom"]

    for g in groups:
        start = flow.index(g) + 1
        following = flow[start:start + len(g.question_ids)]
        assert all(isinstance(q, SurveyQuestionStep) and q.group_id == g.id for q in following)
        assert [q.ref_id for q in following] == g.question_ids


def test_question_order_keys_use_fractional_offset():
    flow = compile_content(_content())
    keys = {s.ref_id: s.order_key for s in flow if s.kind == StepKind.SURVEY_QUESTION}
    assert keys["d1"] == 4.0
    assert keys["d2"] == pytest.approx(4.1)
    assert keys["d3"] == 4.0 + 0.1 * 2
    assert keys["c2"] == pytest.approx(5.1)


def test_empty_partition_has_no_header():
    flow = compile_flow(
        [InfoScreen(id="i1", title="Hi", order_index=0)],
        [],
        [],
        [SurveyQuestion(id="c1", question="Why?", order_index=1)],
    )
    assert [s.id for s in flow] == ["info-i1", "survey-custom", "question-c1"]
    assert compile_flow([], [], [], []) == []


def test_compile_is_stable():
    assert compile_content(_content()) == compile_content(_content())


def test_out_of_order_input_is_sorted():
    flow = compile_flow(
        [InfoScreen(id="late", title="Late", order_index=9), InfoScreen(id="early", title="Early", order_index=0)],
        [ScenarioRecord(id="s", title="S", order_index=5)],
        [],
        [],
    )
    assert [s.ref_id for s in flow] == ["early", "s", "late"]
