from __future__ import annotations
from typing import List, Sequence

from models import (
    BreakScreen,
    BreakStep,
    FlowContent,
    FlowStep,
    InfoScreen,
    InfoStep,
    ScenarioRecord,
    ScenarioStep,
    SurveyGroupStep,
    SurveyQuestion,
    SurveyQuestionStep,
)

# Offset between consecutive questions of a survey group.
QUESTION_KEY_STEP = 0.1

_GROUPS = (
    # (group key, is_demographic, header title)
    ("demographic", True, "Demographic Survey"),
    ("custom", False, "Custom Survey"),
)


def _survey_steps(questions: Sequence[SurveyQuestion]) -> List[FlowStep]:
    ordered = sorted(questions, key=lambda q: q.order_index)
    steps: List[FlowStep] = []
    for group_key, demographic, title in _GROUPS:
        members = [q for q in ordered if bool(q.is_demographic) == demographic]
        if not members:
            continue
        group_id = f"survey-{group_key}"
        steps.append(SurveyGroupStep(
            id=group_id,
            order_key=float(members[0].order_index),
            title=title,
            ref_id=group_key,
            is_demographic=demographic,
            question_ids=[q.id for q in members],
        ))
        for pos, q in enumerate(members):
            steps.append(SurveyQuestionStep(
                id=f"question-{q.id}",
                order_key=float(q.order_index) + QUESTION_KEY_STEP * pos,
                title=q.question,
                ref_id=q.id,
                question_type=q.question_type,
                options=q.options,
                is_demographic=demographic,
                group_id=group_id,
            ))
    return steps


def compile_flow(
    info_screens: Sequence[InfoScreen],
    scenarios: Sequence[ScenarioRecord],
    break_screens: Sequence[BreakScreen],
    survey_questions: Sequence[SurveyQuestion],
) -> List[FlowStep]:
    """
    Merge the four content kinds into one ordered step sequence.

    Every record's order_index becomes its order_key. Survey questions are split
    into a demographic and a custom group; each non-empty group gets a header step
    keyed at its first question, and its questions follow at
    order_index + 0.1 * position. The final sort is stable, so equal keys keep
    emission order (info, scenarios, breaks, surveys; header before its questions).
    """
    steps: List[FlowStep] = []
    steps += [
        InfoStep(id=f"info-{s.id}", order_key=float(s.order_index), title=s.title, ref_id=s.id, content=s.content)
        for s in info_screens
    ]
    steps += [
        ScenarioStep(id=f"scenario-{s.id}", order_key=float(s.order_index), title=s.title, ref_id=s.id,
                     description=s.description)
        for s in scenarios
    ]
    steps += [
        BreakStep(id=f"break-{s.id}", order_key=float(s.order_index), title=s.title, ref_id=s.id, content=s.content)
        for s in break_screens
    ]
    steps += _survey_steps(survey_questions)
    return sorted(steps, key=lambda s: s.order_key)


def compile_content(content: FlowContent) -> List[FlowStep]:
    return compile_flow(content.info_screens, content.scenarios, content.break_screens, content.survey_questions)
