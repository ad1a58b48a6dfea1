"""Tests for segment planning."""

import pytest

from hand_pipeline.errors import ValidationError
from hand_pipeline.models import Segment
from hand_pipeline.segments import PlanInput, plan


def spans(segments):
    return [(s.start, s.end) for s in segments]


class TestPlanDuration:
    """Planning from a total video duration"""

    def test_long_video_split_at_cap(self):
        segments = plan(PlanInput.for_duration(4000), duration_cap=1800)
        assert spans(segments) == [(0, 1800), (1800, 3600), (3600, 4000)]

    def test_duration_equal_to_cap_is_one_segment(self):
        assert spans(plan(PlanInput.for_duration(1800))) == [(0, 1800)]

    @pytest.mark.parametrize("total", [60, 61.5, 1799, 1801, 3600, 7200.25, 86400])
    def test_segments_cover_video_without_gaps(self, total):
        segments = plan(PlanInput.for_duration(total), duration_cap=1800)
        assert segments[0].start == 0
        assert segments[-1].end == total
        for previous, current in zip(segments, segments[1:]):
            assert previous.end == current.start
        assert all(0 < s.duration <= 1800 for s in segments)

    def test_too_short(self):
        with pytest.raises(ValidationError, match="too short"):
            plan(PlanInput.for_duration(59))

    def test_too_long(self):
        with pytest.raises(ValidationError, match="too long"):
            plan(PlanInput.for_duration(86401))

    def test_not_finite(self):
        with pytest.raises(ValidationError):
            plan(PlanInput.for_duration(float("nan")))


class TestPlanRanges:
    """Planning from explicit ranges"""

    def test_short_ranges_pass_through(self):
        segments = plan(PlanInput.for_ranges([(0, 600), (1200, 1500)]), duration_cap=1800)
        assert segments == [Segment(0, 600), Segment(1200, 1500)]

    def test_long_range_is_walked(self):
        segments = plan(PlanInput.for_ranges([(100, 4000)]), duration_cap=1800)
        assert spans(segments) == [(100, 1900), (1900, 3700), (3700, 4000)]

    def test_ranges_accept_dicts(self):
        segments = plan(PlanInput.for_ranges([{"start": 5, "end": 65}]))
        assert spans(segments) == [(5, 65)]

    @pytest.mark.parametrize("bad", [(10, 10), (20, 10), (-1, 10)])
    def test_invalid_range_rejected(self, bad):
        with pytest.raises(ValidationError):
            plan(PlanInput.for_ranges([(0, 30), bad]))

    def test_malformed_range_rejected(self):
        with pytest.raises(ValidationError, match="Invalid range"):
            PlanInput.for_ranges([{"begin": 0}])

    def test_empty_ranges_rejected(self):
        with pytest.raises(ValidationError):
            plan(PlanInput.for_ranges([]))


class TestPlanInputValidation:
    def test_requires_exactly_one_input(self):
        with pytest.raises(ValidationError):
            plan(PlanInput())
        with pytest.raises(ValidationError):
            plan(PlanInput(total_duration_seconds=600, ranges=[Segment(0, 10)]))

    @pytest.mark.parametrize("cap", [0, -30])
    def test_cap_must_be_positive(self, cap):
        with pytest.raises(ValidationError):
            plan(PlanInput.for_duration(600), duration_cap=cap)
