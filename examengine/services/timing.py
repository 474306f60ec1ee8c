"""Budget-adaptive time model: expected time per item and pace ratio."""
import math
from typing import Mapping, Optional

DEFAULT_TIME_WEIGHTS = {1: 1.2, 2: 1.1, 3: 1.0, 4: 0.9, 5: 0.8}

def expected_ms(remaining_time_sec: float, remaining_items: int, band: int,
                time_weights: Mapping[int, float] = DEFAULT_TIME_WEIGHTS) -> int:
    """Expected milliseconds for the next item.

    The remaining budget is spread evenly over the remaining items and scaled by
    the band's weight, so easy bands get more time and hard bands less.
    """
    base_per_item_ms = max(0.0, remaining_time_sec) * 1000.0 / max(1, remaining_items)
    return int(math.floor(base_per_item_ms * time_weights.get(band, 1.0) + 0.5))

def pace_ratio(actual_ms: float, expected: float) -> float:
    return max(0.0, actual_ms) / max(1.0, expected)

def budget_for_expectation(remaining_time_sec: Optional[int], remaining_items: int, default_item_time_sec: int) -> int:
    # Unlimited sessions still get a per-item expectation so pace is meaningful.
    if remaining_time_sec is None:
        return default_item_time_sec * max(1, remaining_items)
    return remaining_time_sec
