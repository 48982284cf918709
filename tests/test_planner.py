"""
Segment planner: segment count, cost and duration snapping.
"""
import pytest

from clipchain.pipeline.errors import InvalidPlan
from clipchain.pipeline.planner import plan_segments, snap_duration


class TestPlanSegments:

    def test_exact_multiple(self):
        plan = plan_segments(18, 6)
        assert plan.segments == [6, 6, 6]
        assert plan.credit_cost == 3
        assert plan.is_multi_segment

    def test_single_segment_is_one_shot(self):
        plan = plan_segments(6, 6)
        assert plan.total_segments == 1
        assert plan.credit_cost == 1
        assert not plan.is_multi_segment

    def test_ten_second_unit_costs_two_per_segment(self):
        plan = plan_segments(30, 10)
        assert plan.segments == [10, 10, 10]
        assert plan.credit_cost == 6

    def test_remainder_rounds_up_with_full_segments(self):
        plan = plan_segments(15, 6)
        assert plan.segments == [6, 6, 6]
        assert plan.total_duration == 18
        assert plan.requested_duration == 15

    def test_duration_below_unit_yields_one_segment(self):
        plan = plan_segments(8, 10)
        assert plan.segments == [10]
        assert plan.credit_cost == 2

    @pytest.mark.parametrize("duration", [0, 5, 241, -6])
    def test_out_of_range_duration_rejected(self, duration):
        with pytest.raises(InvalidPlan):
            plan_segments(duration, 6)

    def test_unknown_unit_rejected(self):
        with pytest.raises(InvalidPlan) as exc:
            plan_segments(24, 8)
        assert exc.value.status_code == 400

    def test_bounds_are_configurable(self):
        plan = plan_segments(60, 10, min_duration=10, max_duration=60)
        assert plan.total_segments == 6
        with pytest.raises(InvalidPlan):
            plan_segments(70, 10, min_duration=10, max_duration=60)


class TestSnapDuration:

    def test_half_up(self):
        assert snap_duration(15, 6) == 18
        assert snap_duration(14, 6) == 12

    def test_switching_unit(self):
        assert snap_duration(18, 10) == 20
        assert snap_duration(24, 10) == 20

    def test_clamped_to_range(self):
        assert snap_duration(1, 10) == 10
        assert snap_duration(500, 6) == 240
        assert snap_duration(500, 10) == 240

    def test_unknown_unit(self):
        with pytest.raises(InvalidPlan):
            snap_duration(12, 7)
