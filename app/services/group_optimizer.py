"""
Tablemate — Swap-based local search over dining tables.

Improves a partition by exchanging one diner between two tables whenever the
exchange strictly raises the pair's combined average compatibility.  Swaps
never change table sizes, so the optimizer preserves the planned size
distribution and only reshuffles who sits where.

The scan is first-improvement: the first admissible improving swap found is
applied immediately and the scan continues on the updated tables.  Passes
repeat until one pass applies no swap or the iteration cap is reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from app.services.compatibility_service import CompatibilityMatrix
from app.services.group_planner import SizeConstants

logger = structlog.get_logger("tablemate.group_optimizer")

# Absolute tolerance when comparing compatibility sums
IMPROVEMENT_EPSILON = 1e-9


@dataclass
class DiningGroup:
    """One table: its members and their cached mean pairwise compatibility."""

    members: list[Any] = field(default_factory=list)
    average_compatibility: float = 0.0

    @property
    def size(self) -> int:
        return len(self.members)

    def refresh(self, matrix: CompatibilityMatrix) -> None:
        self.average_compatibility = matrix.group_average(self.members)

    def is_extended(self, constants: SizeConstants) -> bool:
        return self.size > constants.standard_max_group_size

    def is_minimum_size(self, constants: SizeConstants) -> bool:
        return self.size == constants.min_group_size


@dataclass
class OptimizationResult:
    groups: list[DiningGroup]
    iterations: int = 0
    swaps: int = 0
    converged: bool = False


def total_compatibility(groups: list[DiningGroup]) -> float:
    """Sum of the cached per-table averages."""
    return sum(group.average_compatibility for group in groups)


class LocalSearchOptimizer:
    """
    First-improvement swap search.

    Parameters
    ----------
    matrix:
        Pairwise scores for every diner in the partition.
    constants:
        Seat limits used by the admissibility rules.
    max_iterations:
        Upper bound on full passes over all table pairs.
    extended_improvement_threshold:
        Minimum relative gain of the combined compatibility required for a
        swap that involves a table above the standard maximum.
    """

    def __init__(
        self,
        matrix: CompatibilityMatrix,
        constants: Optional[SizeConstants] = None,
        max_iterations: int = 100,
        extended_improvement_threshold: float = 0.20,
    ) -> None:
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {max_iterations}")
        self.matrix = matrix
        self.constants = constants or SizeConstants()
        self.max_iterations = max_iterations
        self.extended_improvement_threshold = extended_improvement_threshold

    # ------------------------------------------------------------------ #
    #  Public API                                                         #
    # ------------------------------------------------------------------ #

    def optimize(self, groups: list[DiningGroup]) -> OptimizationResult:
        """Run passes in place on ``groups`` until a fixed point or the cap."""
        for group in groups:
            group.refresh(self.matrix)

        result = OptimizationResult(groups=groups)
        if len(groups) < 2:
            result.converged = True
            return result

        start_total = total_compatibility(groups)
        log = logger.bind(group_count=len(groups), max_iterations=self.max_iterations)
        log.debug("local_search_start", total_compatibility=round(start_total, 3))

        while result.iterations < self.max_iterations:
            result.iterations += 1
            pass_swaps = self._run_pass(groups)
            result.swaps += pass_swaps
            if pass_swaps == 0:
                result.converged = True
                break

        log.info(
            "local_search_complete",
            iterations=result.iterations,
            swaps=result.swaps,
            converged=result.converged,
            start_total=round(start_total, 3),
            end_total=round(total_compatibility(groups), 3),
        )
        return result

    # ------------------------------------------------------------------ #
    #  Internals                                                          #
    # ------------------------------------------------------------------ #

    def _run_pass(self, groups: list[DiningGroup]) -> int:
        swaps = 0
        for i in range(len(groups)):
            for j in range(i + 1, len(groups)):
                group_a, group_b = groups[i], groups[j]
                if abs(group_a.size - group_b.size) > 1:
                    continue
                if not self._sizes_admissible(group_a.size, group_b.size, len(groups)):
                    continue
                swaps += self._scan_pair(group_a, group_b)
        return swaps

    def _sizes_admissible(self, size_a: int, size_b: int, group_count: int) -> bool:
        """Both tables within bounds; the minimum is waived for a lone table."""
        limit = self.constants.absolute_max_group_size
        if size_a > limit or size_b > limit:
            return False
        if group_count > 1 and min(size_a, size_b) < self.constants.min_group_size:
            return False
        return True

    def _scan_pair(self, group_a: DiningGroup, group_b: DiningGroup) -> int:
        """Try every (a, b) exchange between two tables; return swaps applied."""
        matrix = self.matrix
        n_a, n_b = group_a.size, group_b.size
        pairs_a = n_a * (n_a - 1) / 2
        pairs_b = n_b * (n_b - 1) / 2
        requires_large_gain = (
            n_a > self.constants.standard_max_group_size
            or n_b > self.constants.standard_max_group_size
        )

        total_a = matrix.pair_total(group_a.members)
        total_b = matrix.pair_total(group_b.members)
        swaps = 0

        for pos_a in range(n_a):
            for pos_b in range(n_b):
                user_a = group_a.members[pos_a]
                user_b = group_b.members[pos_b]
                cross = matrix.score(user_a, user_b)

                new_total_a = (
                    total_a
                    - matrix.affinity(user_a, group_a.members)
                    + matrix.affinity(user_b, group_a.members)
                    - cross
                )
                new_total_b = (
                    total_b
                    - matrix.affinity(user_b, group_b.members)
                    + matrix.affinity(user_a, group_b.members)
                    - cross
                )
                new_avg_a = new_total_a / pairs_a if pairs_a else 0.0
                new_avg_b = new_total_b / pairs_b if pairs_b else 0.0

                current = group_a.average_compatibility + group_b.average_compatibility
                proposed = new_avg_a + new_avg_b

                if proposed <= current + IMPROVEMENT_EPSILON:
                    continue
                if requires_large_gain and not self._meets_threshold(current, proposed):
                    continue

                group_a.members[pos_a] = user_b
                group_b.members[pos_b] = user_a
                # Exact recomputation keeps rounding drift out of later comparisons
                total_a = matrix.pair_total(group_a.members)
                total_b = matrix.pair_total(group_b.members)
                group_a.average_compatibility = total_a / pairs_a if pairs_a else 0.0
                group_b.average_compatibility = total_b / pairs_b if pairs_b else 0.0
                swaps += 1

        return swaps

    def _meets_threshold(self, current: float, proposed: float) -> bool:
        if current <= 0.0:
            return proposed > IMPROVEMENT_EPSILON
        return (proposed - current) / current >= self.extended_improvement_threshold
