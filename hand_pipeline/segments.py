"""
Segment planning.

Cuts a video (or a set of requested time ranges) into analysis segments no
longer than the duration cap. The Analysis Service processes each segment
independently, so the cap bounds the runtime of a single remote task.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .errors import ValidationError
from .models import Segment

DEFAULT_DURATION_CAP_SEC = 30 * 60
MIN_TOTAL_DURATION_SEC = 60
MAX_TOTAL_DURATION_SEC = 24 * 3600

RangeLike = Union[Segment, Tuple[float, float], dict]


@dataclass
class PlanInput:
    """Either a total video duration or explicit ranges to analyze"""
    total_duration_seconds: Optional[float] = None
    ranges: Optional[List[Segment]] = None

    @classmethod
    def for_duration(cls, total_duration_seconds: float) -> "PlanInput":
        return cls(total_duration_seconds=total_duration_seconds)

    @classmethod
    def for_ranges(cls, ranges: Sequence[RangeLike]) -> "PlanInput":
        return cls(ranges=[_coerce_range(r) for r in ranges])


def _coerce_range(value: RangeLike) -> Segment:
    if isinstance(value, Segment):
        return value
    try:
        if isinstance(value, dict):
            return Segment(start=float(value["start"]), end=float(value["end"]))
        start, end = value
        return Segment(start=float(start), end=float(end))
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"Invalid range: {value!r}")


def _walk(start: float, end: float, duration_cap: float) -> List[Segment]:
    segments = []
    cursor = start
    while cursor < end:
        segment_end = min(cursor + duration_cap, end)
        segments.append(Segment(start=cursor, end=segment_end))
        cursor = segment_end
    return segments


def plan(plan_input: PlanInput, duration_cap: float = DEFAULT_DURATION_CAP_SEC) -> List[Segment]:
    """
    Produce ordered analysis segments for a plan input.

    Args:
        plan_input: total duration or explicit ranges (exactly one)
        duration_cap: maximum length of a single segment in seconds

    Returns:
        Contiguous segments covering the input, each at most duration_cap long

    Raises:
        ValidationError: on out-of-bounds durations or malformed ranges
    """
    if duration_cap is None or duration_cap <= 0:
        raise ValidationError(f"Segment duration cap must be positive, got {duration_cap}")

    has_duration = plan_input.total_duration_seconds is not None
    has_ranges = plan_input.ranges is not None

    if has_duration == has_ranges:
        raise ValidationError("Either total_duration_seconds or ranges is required (not both)")

    if has_duration:
        total = plan_input.total_duration_seconds
        if not math.isfinite(total):
            raise ValidationError(f"Invalid video duration: {total}")
        if total < MIN_TOTAL_DURATION_SEC:
            raise ValidationError("Video is too short (minimum 1 minute)")
        if total > MAX_TOTAL_DURATION_SEC:
            raise ValidationError("Video is too long (maximum 24 hours)")
        return _walk(0, total, duration_cap)

    if not plan_input.ranges:
        raise ValidationError("At least one range is required")

    segments: List[Segment] = []
    for i, rng in enumerate(plan_input.ranges):
        if not (math.isfinite(rng.start) and math.isfinite(rng.end)):
            raise ValidationError(f"Range {i} is not finite: [{rng.start}, {rng.end}]")
        if rng.start < 0:
            raise ValidationError(f"Range {i} starts before 0: {rng.start}")
        if rng.end <= rng.start:
            raise ValidationError(f"Range {i} is empty or inverted: [{rng.start}, {rng.end}]")

        if rng.duration <= duration_cap:
            segments.append(rng)
        else:
            segments.extend(_walk(rng.start, rng.end, duration_cap))

    return segments
