"""
Segment Planner — duration + segment unit → ordered segment lengths + cost.

Durations that are not an exact multiple of the unit round the segment
count up; every segment is full length, so the produced video can be
longer than requested (``SegmentPlan.total_duration``).
"""

import math
import os

from .errors import InvalidPlan
from .models import SegmentPlan

# ── Config ───────────────────────────────────────────────────────────────────

MIN_DURATION_SECONDS = int(os.getenv("MIN_DURATION_SECONDS", "6"))
MAX_DURATION_SECONDS = int(os.getenv("MAX_DURATION_SECONDS", "240"))

# Segment unit (seconds) → credits per segment
SEGMENT_PRICES = {
    6: 1,
    10: 2,
}


def segment_price(segment_duration: int) -> int:
    try:
        return SEGMENT_PRICES[segment_duration]
    except KeyError:
        raise InvalidPlan(
            f"Segment length must be one of {sorted(SEGMENT_PRICES)} seconds, got {segment_duration}"
        ) from None


def plan_segments(
    duration: int,
    segment_duration: int,
    min_duration: int = MIN_DURATION_SECONDS,
    max_duration: int = MAX_DURATION_SECONDS,
) -> SegmentPlan:
    """
    Split a requested duration into fixed-length segments.

    Args:
        duration:         Total requested duration in seconds.
        segment_duration: Segment unit, one of SEGMENT_PRICES.

    Returns:
        SegmentPlan with ``ceil(duration / unit)`` segments of ``unit`` seconds.
        A duration at or below the unit yields a single one-shot segment.
    """
    price = segment_price(segment_duration)

    if duration < min_duration or duration > max_duration:
        raise InvalidPlan(
            f"Duration must be between {min_duration} and {max_duration} seconds, got {duration}"
        )

    count = 1 if duration <= segment_duration else math.ceil(duration / segment_duration)

    return SegmentPlan(
        requested_duration=duration,
        segment_duration=segment_duration,
        segments=[segment_duration] * count,
        credit_cost=price * count,
    )


def snap_duration(
    duration: int,
    segment_duration: int,
    min_duration: int = MIN_DURATION_SECONDS,
    max_duration: int = MAX_DURATION_SECONDS,
) -> int:
    """
    Re-snap a duration to the nearest multiple of a (new) segment unit,
    clamped to the valid range. Used when the user switches units after
    picking a duration.
    """
    segment_price(segment_duration)

    lowest = segment_duration * max(1, math.ceil(min_duration / segment_duration))
    highest = segment_duration * (max_duration // segment_duration)
    if highest < lowest:
        raise InvalidPlan(
            f"No multiple of {segment_duration}s fits between {min_duration} and {max_duration} seconds"
        )

    # Half-up: 15s on a 6s unit snaps to 18
    snapped = segment_duration * math.floor(duration / segment_duration + 0.5)
    return min(max(snapped, lowest), highest)
