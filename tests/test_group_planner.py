"""Unit tests for the table size planner."""
import pytest

from app.services.group_planner import (
    SizeConstants,
    _repair_planned_sizes,
    plan_group_sizes,
)


class TestSizeConstants:
    """Validation of the four seat limits."""

    def test_defaults(self):
        c = SizeConstants()
        assert (c.min_group_size, c.standard_max_group_size, c.absolute_max_group_size) == (4, 6, 7)
        assert c.target_group_size == 5.5

    def test_rejects_min_above_standard_max(self):
        with pytest.raises(ValueError):
            SizeConstants(min_group_size=7, standard_max_group_size=6, absolute_max_group_size=7, target_group_size=6)

    def test_rejects_standard_above_absolute(self):
        with pytest.raises(ValueError):
            SizeConstants(standard_max_group_size=8, absolute_max_group_size=7)

    def test_rejects_target_outside_range(self):
        with pytest.raises(ValueError):
            SizeConstants(target_group_size=6.5)
        with pytest.raises(ValueError):
            SizeConstants(target_group_size=3.5)

    def test_extended_and_bounds(self):
        c = SizeConstants()
        assert c.is_extended(7)
        assert not c.is_extended(6)
        assert c.is_within_bounds(4) and c.is_within_bounds(7)
        assert not c.is_within_bounds(3) and not c.is_within_bounds(8)


class TestPlanGroupSizes:
    """Planner arithmetic with the default 4 / 6 / 7 / 5.5 constants."""

    def test_empty_pool(self):
        assert plan_group_sizes(0) == []

    def test_negative_pool_rejected(self):
        with pytest.raises(ValueError):
            plan_group_sizes(-1)

    @pytest.mark.parametrize("n", [1, 2, 3])
    def test_below_minimum_is_single_table(self, n):
        assert plan_group_sizes(n) == [n]

    @pytest.mark.parametrize("n", [4, 5, 6])
    def test_single_table_when_pool_fits(self, n):
        assert plan_group_sizes(n) == [n]

    def test_seven_stays_one_extended_table(self):
        """Two tables of 3.5 would be too sparse, so 7 stays together."""
        assert plan_group_sizes(7) == [7]

    def test_eight_splits_evenly(self):
        assert plan_group_sizes(8) == [4, 4]

    def test_nine(self):
        assert plan_group_sizes(9) == [4, 5]

    def test_twelve_uses_three_tables(self):
        """ceil(12 / 5.5) = 3, giving three minimum-size tables."""
        assert plan_group_sizes(12) == [4, 4, 4]

    def test_thirteen(self):
        assert plan_group_sizes(13) == [4, 4, 5]

    def test_sixty(self):
        sizes = plan_group_sizes(60)
        assert len(sizes) == 11
        assert sizes.count(5) == 6 and sizes.count(6) == 5

    @pytest.mark.parametrize("n", list(range(4, 121)))
    def test_sizes_sum_and_bounds(self, n, constants):
        sizes = plan_group_sizes(n, constants)
        assert sum(sizes) == n
        assert all(constants.min_group_size <= s <= constants.absolute_max_group_size for s in sizes)
        assert max(sizes) - min(sizes) <= 1

    def test_custom_constants(self):
        c = SizeConstants(min_group_size=2, standard_max_group_size=3, absolute_max_group_size=4, target_group_size=3)
        sizes = plan_group_sizes(10, c)
        assert sum(sizes) == 10
        assert all(2 <= s <= 4 for s in sizes)


class TestPlannerRepair:
    """Dissolving undersized tables in a raw plan."""

    def test_small_table_dealt_round_robin(self, constants):
        assert _repair_planned_sizes([5, 2, 5], constants) == [6, 6]

    def test_valid_plan_untouched(self, constants):
        assert _repair_planned_sizes([5, 4, 6], constants) == [4, 5, 6]

    def test_single_table_never_dissolved(self, constants):
        assert _repair_planned_sizes([2], constants) == [2]

    def test_infeasible_constants_terminate(self):
        """With every table capped at 4, six diners cannot all be seated legally."""
        c = SizeConstants(min_group_size=4, standard_max_group_size=4, absolute_max_group_size=4, target_group_size=4)
        sizes = plan_group_sizes(6, c)
        assert sum(sizes) == 6
