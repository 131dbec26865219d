from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from errors import InvalidConfig

# round number -> asset code -> price
RoundPriceTable = Dict[int, Dict[str, float]]


class Section(str, Enum):
    INTRO = "intro"
    SCENARIO = "scenario"
    BREAK = "break"
    SURVEY = "survey"
    COMPLETED = "completed"


class StepKind(str, Enum):
    INFO = "info"
    SCENARIO = "scenario"
    BREAK = "break"
    SURVEY_GROUP = "survey_group"
    SURVEY_QUESTION = "survey_question"


class PriceSource(str, Enum):
    CURRENT_ROUND = "current_round"
    NEAREST_ROUND = "nearest_round"
    SPOT = "spot"
    DEFAULT = "default"


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ALL_ROUNDS_COMPLETE = "all_rounds_complete"


# ---------- Store records ----------
@dataclass
class WalletAsset:
    asset_code: str
    name: str
    spot_price: float
    amount: float

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Asset {self.asset_code}: amount must be >= 0, got {self.amount}")


@dataclass
class PriceRecord:
    asset_code: str
    round_number: int
    price: float


@dataclass
class ScenarioConfig:
    id: str
    title: str
    description: str = ""
    wallet_ref: Optional[str] = None
    round_duration_seconds: int = 60
    total_rounds: int = 3
    # Scenarios created from a template inherit its wallet and price records.
    template_id: Optional[str] = None

    def validate(self) -> None:
        if self.round_duration_seconds <= 0:
            raise InvalidConfig(
                f"Scenario {self.id}: round duration must be > 0 seconds, got {self.round_duration_seconds}"
            )
        if self.total_rounds < 1:
            raise InvalidConfig(f"Scenario {self.id}: needs at least one round, got {self.total_rounds}")


@dataclass
class InfoScreen:
    id: str
    title: str
    content: str = ""
    order_index: float = 0


@dataclass
class BreakScreen:
    id: str
    title: str
    content: str = ""
    order_index: float = 0


@dataclass
class ScenarioRecord:
    # id is the ScenarioConfig id the step runs
    id: str
    title: str
    order_index: float = 0
    description: str = ""


@dataclass
class SurveyQuestion:
    id: str
    question: str
    order_index: float = 0
    question_type: str = "text"
    options: Optional[List[str]] = None
    is_demographic: bool = False


@dataclass
class FlowContent:
    info_screens: List[InfoScreen] = field(default_factory=list)
    scenarios: List[ScenarioRecord] = field(default_factory=list)
    break_screens: List[BreakScreen] = field(default_factory=list)
    survey_questions: List[SurveyQuestion] = field(default_factory=list)


# ---------- Flow steps ----------
@dataclass
class FlowStep:
    id: str
    order_key: float
    title: str
    # id of the underlying record; responses and timings are keyed by it
    ref_id: str

    kind: ClassVar[StepKind]
    section: ClassVar[Section]


@dataclass
class InfoStep(FlowStep):
    content: str = ""

    kind: ClassVar[StepKind] = StepKind.INFO
    section: ClassVar[Section] = Section.INTRO


@dataclass
class ScenarioStep(FlowStep):
    description: str = ""

    kind: ClassVar[StepKind] = StepKind.SCENARIO
    section: ClassVar[Section] = Section.SCENARIO


@dataclass
class BreakStep(FlowStep):
    content: str = ""

    kind: ClassVar[StepKind] = StepKind.BREAK
    section: ClassVar[Section] = Section.BREAK


@dataclass
class SurveyGroupStep(FlowStep):
    is_demographic: bool = False
    question_ids: List[str] = field(default_factory=list)

    kind: ClassVar[StepKind] = StepKind.SURVEY_GROUP
    section: ClassVar[Section] = Section.SURVEY


@dataclass
class SurveyQuestionStep(FlowStep):
    question_type: str = "text"
    options: Optional[List[str]] = None
    is_demographic: bool = False
    group_id: str = ""

    kind: ClassVar[StepKind] = StepKind.SURVEY_QUESTION
    section: ClassVar[Section] = Section.SURVEY


# ---------- Valuation ----------
@dataclass
class AssetValuation:
    asset: WalletAsset
    price: float
    value: float
    stable_value: float
    source: PriceSource


@dataclass
class PortfolioValuation:
    per_asset: List[AssetValuation] = field(default_factory=list)
    total_value: float = 0.0
    total_stable_value: float = 0.0


@dataclass
class PriceChange:
    amount: float
    percentage: float
    direction: str  # "up", "down" or "none"
    formatted: str = ""


# ---------- Run state ----------
@dataclass
class ScenarioSession:
    """Market data and valuation for the scenario step currently on screen."""
    config: ScenarioConfig
    assets: List[WalletAsset] = field(default_factory=list)
    prices: RoundPriceTable = field(default_factory=dict)
    valuation: PortfolioValuation = field(default_factory=PortfolioValuation)
    previous_valuation: Optional[PortfolioValuation] = None
    # bumped on every load; results carrying an older generation are dropped
    generation: int = 0
    data_errors: List[str] = field(default_factory=list)


@dataclass
class RunState:
    current_step_index: int = 0
    current_section: Section = Section.INTRO
    current_round: int = 1
    round_elapsed_seconds: int = 0
    timer_active: bool = False
    rounds_completed: bool = False
    responses: Dict[str, Any] = field(default_factory=dict)
    response_times_ms: Dict[str, int] = field(default_factory=dict)
    step_started_at_ms: Optional[int] = None
    scenario: Optional[ScenarioSession] = None


@dataclass
class ExperimentRun:
    run_id: str
    experiment_id: str
    flow: List[FlowStep]
    state: RunState = field(default_factory=RunState)
