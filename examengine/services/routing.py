"""
Stage router.

Every ``stage_size`` answers the trailing block is scored, aggregated and
routed to PROMOTE, HOLD or DEMOTE, which moves the session's band by one step.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from examengine.services.rating import clamp
from examengine.services.timing import DEFAULT_TIME_WEIGHTS

MIN_BAND = 1
MAX_BAND = 5
FAST_PACE = 0.8
ON_TIME_PACE = 1.2

class Routing(str, Enum):
    PROMOTE = "PROMOTE"
    HOLD = "HOLD"
    DEMOTE = "DEMOTE"

# ========== Configuration ==========

class PromoteRule(BaseModel):
    min_stage_score: float = 9.0
    min_accuracy: float = 0.75

class HoldRule(BaseModel):
    stage_score_range: Tuple[float, float] = (7.0, 9.0)  # [low, high)
    min_accuracy: Optional[float] = 0.8
    min_avg_pace: Optional[float] = 1.0

class DemoteRule(BaseModel):
    max_stage_score: float = 7.0
    max_accuracy: Optional[float] = 0.6

class RoutingRules(BaseModel):
    promote: PromoteRule = Field(default_factory=PromoteRule)
    hold: HoldRule = Field(default_factory=HoldRule)
    demote: DemoteRule = Field(default_factory=DemoteRule)
    guard_max_wrong_fast: int = 2

class AdaptiveConfig(BaseModel):
    """Adaptive policy frozen into a session at creation."""
    stage_size: int = Field(default=10, ge=1)
    difficulty_factors: Dict[int, float] = Field(default_factory=lambda: {1: 0.8, 2: 0.9, 3: 1.0, 4: 1.1, 5: 1.2})
    time_weights: Dict[int, float] = Field(default_factory=lambda: dict(DEFAULT_TIME_WEIGHTS))
    routing: RoutingRules = Field(default_factory=RoutingRules)

# ========== Scoring & aggregation ==========

@dataclass
class StageItem:
    correct: bool
    pace_ratio: float
    score: float

@dataclass
class StageAggregate:
    items: int
    correct: int
    accuracy: float
    stage_score: float
    avg_pace_ratio: float
    wrong_fast: int

    def as_log(self) -> dict:
        return {
            "accuracy": round(self.accuracy, 3),
            "avgPace": round(self.avg_pace_ratio, 3),
            "stageScore": round(self.stage_score, 3),
            "wrongFast": self.wrong_fast,
        }

def time_bonus(pace: float) -> float:
    if pace <= FAST_PACE: return 0.2
    if pace <= ON_TIME_PACE: return 0.1
    return 0.0

def guess_penalty(correct: bool, pace: float) -> float:
    return -0.2 if (not correct and pace <= FAST_PACE) else 0.0

def score_item(band: int, correct: bool, pace: float, difficulty_factors: Dict[int, float]) -> float:
    """Per-item score in [-0.2, 1.5]."""
    factor = difficulty_factors.get(band, 1.0)
    raw = factor * ((1.0 if correct else 0.0) + time_bonus(pace)) + guess_penalty(correct, pace)
    return clamp(raw, -0.2, 1.5)

def build_stage_item(band: int, correct: bool, pace: float, config: AdaptiveConfig) -> StageItem:
    return StageItem(correct=correct, pace_ratio=pace, score=score_item(band, correct, pace, config.difficulty_factors))

def aggregate(items: Sequence[StageItem]) -> StageAggregate:
    n = max(1, len(items))
    correct = sum(1 for it in items if it.correct)
    return StageAggregate(
        items=len(items),
        correct=correct,
        accuracy=correct / n,
        stage_score=sum(it.score for it in items),
        avg_pace_ratio=sum(it.pace_ratio for it in items) / n,
        wrong_fast=sum(1 for it in items if not it.correct and it.pace_ratio <= FAST_PACE),
    )

# ========== Routing ==========

def route(agg: StageAggregate, config: AdaptiveConfig) -> Routing:
    rules = config.routing

    # too many fast wrong answers blocks promotion for this stage
    can_promote = agg.wrong_fast <= rules.guard_max_wrong_fast
    if can_promote and agg.stage_score >= rules.promote.min_stage_score and agg.accuracy >= rules.promote.min_accuracy:
        return Routing.PROMOTE

    low, high = rules.hold.stage_score_range
    hold_by_range = low <= agg.stage_score < high
    hold_by_alt = (
        rules.hold.min_accuracy is not None and rules.hold.min_avg_pace is not None
        and agg.accuracy >= rules.hold.min_accuracy and agg.avg_pace_ratio > rules.hold.min_avg_pace
    )
    if hold_by_range or hold_by_alt:
        return Routing.HOLD

    demote_by_score = agg.stage_score < rules.demote.max_stage_score
    demote_by_acc = rules.demote.max_accuracy is not None and agg.accuracy < rules.demote.max_accuracy
    if demote_by_score or demote_by_acc:
        return Routing.DEMOTE
    return Routing.HOLD

def next_band(current: int, decision: Routing) -> int:
    step = {Routing.PROMOTE: 1, Routing.DEMOTE: -1}.get(decision, 0)
    return int(clamp(current + step, MIN_BAND, MAX_BAND))

def route_block(items: List[StageItem], current: int, config: AdaptiveConfig) -> Tuple[StageAggregate, Routing, int]:
    agg = aggregate(items)
    decision = route(agg, config)
    return agg, decision, next_band(current, decision)
