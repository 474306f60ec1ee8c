"""
Paired logistic rating model for candidates and items.

Both parties carry a comparable rating on the same scale. After every graded
answer the candidate moves toward the observed outcome and the item moves the
opposite way by a smaller step.
"""
import math
from dataclasses import dataclass
from typing import Sequence

from examengine.core.config import RATING_BAND_CUTOFFS, K_CANDIDATE, K_ITEM

SCALE = 400.0 / math.log(10.0)
MAX_DELTA = 24

@dataclass
class RatingUpdate:
    """Result of one paired update."""
    candidate_before: int
    item_before: int
    candidate_after: int
    item_after: int
    expected: float
    actual: float
    candidate_delta: int
    item_delta: int

def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))

def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))

def expected_win_probability(candidate_rating: float, item_rating: float) -> float:
    """Probability that the candidate answers the item correctly."""
    z = (candidate_rating - item_rating) / SCALE
    try:
        return 1.0 / (1.0 + math.exp(-z))
    except OverflowError:
        return 0.0 if z < 0 else 1.0

def actual_score(correct: bool, pace_ratio: float) -> float:
    """Outcome in [0, 1] with a pace bonus for quick correct answers and a guess penalty for quick wrong ones."""
    score = 1.0 if correct else 0.0
    if correct and pace_ratio <= 0.8:
        score += 0.10
    elif correct and pace_ratio <= 1.2:
        score += 0.05
    elif not correct and pace_ratio <= 0.8:
        score -= 0.10
    return clamp(score, 0.0, 1.0)

def update_pair(candidate_rating: int, item_rating: int, correct: bool, pace_ratio: float,
                k_candidate: float = K_CANDIDATE, k_item: float = K_ITEM) -> RatingUpdate:
    p = expected_win_probability(candidate_rating, item_rating)
    a = actual_score(correct, pace_ratio)
    d_candidate = round_half_up(clamp(k_candidate * (a - p), -MAX_DELTA, MAX_DELTA))
    d_item = round_half_up(clamp(k_item * (p - a), -MAX_DELTA, MAX_DELTA))
    return RatingUpdate(
        candidate_before=candidate_rating,
        item_before=item_rating,
        candidate_after=candidate_rating + d_candidate,
        item_after=item_rating + d_item,
        expected=p,
        actual=a,
        candidate_delta=d_candidate,
        item_delta=d_item,
    )

def band_for_rating(rating: float, cutoffs: Sequence[int] = RATING_BAND_CUTOFFS) -> int:
    """Map a candidate rating onto the starting band 1..5."""
    for band, upper in enumerate(cutoffs, start=1):
        if rating < upper:
            return band
    return min(5, len(cutoffs) + 1)
