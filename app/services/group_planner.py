"""
Tablemate — Table size planning.

Decides how many dining tables to open for a candidate pool and how many
seats each one gets, before anyone is assigned:

  1. num_groups = ceil(N / TARGET)
  2. Too crowded (N / num_groups > STANDARD_MAX + 0.5)
       -> num_groups = ceil(N / STANDARD_MAX)
  3. Too sparse (num_groups > 1 and N / num_groups < MIN)
       -> num_groups = max(ceil(N / ABSOLUTE_MAX), floor(N / MIN))
  4. Balanced split: sizes differ by at most one seat.
  5. Repair: dissolve any table below MIN and deal its seats round-robin
     into tables that still have room under ABSOLUTE_MAX.

Steps 2 and 3 are heuristics; step 5 is what actually guarantees a
feasible distribution.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import structlog

logger = structlog.get_logger("tablemate.group_planner")


@dataclass(frozen=True)
class SizeConstants:
    """Seat limits for one formation run (host seat excluded)."""

    min_group_size: int = 4
    standard_max_group_size: int = 6
    absolute_max_group_size: int = 7
    target_group_size: float = 5.5

    def __post_init__(self) -> None:
        if self.min_group_size < 1:
            raise ValueError(f"min_group_size must be >= 1, got {self.min_group_size}")
        if not (
            self.min_group_size
            <= self.standard_max_group_size
            <= self.absolute_max_group_size
        ):
            raise ValueError(
                "Expected min <= standard_max <= absolute_max, got "
                f"{self.min_group_size}/{self.standard_max_group_size}/"
                f"{self.absolute_max_group_size}"
            )
        if not (
            self.min_group_size
            <= self.target_group_size
            <= self.standard_max_group_size
        ):
            raise ValueError(
                f"target_group_size {self.target_group_size} must lie in "
                f"[{self.min_group_size}, {self.standard_max_group_size}]"
            )

    def is_extended(self, size: int) -> bool:
        """True for tables above the standard maximum (the rare 7-seat case)."""
        return self.standard_max_group_size < size <= self.absolute_max_group_size

    def is_within_bounds(self, size: int) -> bool:
        return self.min_group_size <= size <= self.absolute_max_group_size


def plan_group_sizes(total_users: int, constants: SizeConstants | None = None) -> list[int]:
    """Return the seat count of every table to open for ``total_users``.

    Parameters
    ----------
    total_users:
        Size of the candidate pool (N >= 0).
    constants:
        Seat limits; defaults to 4 / 6 / 7 with a 5.5 target.

    Returns
    -------
    list[int]
        Sizes summing to ``total_users``, each within
        [min_group_size, absolute_max_group_size].  A pool smaller than
        ``min_group_size`` yields a single table ``[N]``; an empty pool
        yields ``[]``.
    """
    constants = constants or SizeConstants()

    if total_users < 0:
        raise ValueError(f"total_users must be >= 0, got {total_users}")
    if total_users == 0:
        return []
    if total_users < constants.min_group_size:
        logger.info(
            "group_plan_single_small_table",
            total_users=total_users,
            min_group_size=constants.min_group_size,
        )
        return [total_users]

    num_groups = math.ceil(total_users / constants.target_group_size)

    if total_users / num_groups > constants.standard_max_group_size + 0.5:
        num_groups = math.ceil(total_users / constants.standard_max_group_size)

    if num_groups > 1 and total_users / num_groups < constants.min_group_size:
        num_groups = max(
            math.ceil(total_users / constants.absolute_max_group_size),
            total_users // constants.min_group_size,
        )

    base_size, remainder = divmod(total_users, num_groups)
    sizes = [base_size + 1 if i < remainder else base_size for i in range(num_groups)]

    sizes = _repair_planned_sizes(sizes, constants)

    logger.debug(
        "group_plan_computed",
        total_users=total_users,
        group_count=len(sizes),
        sizes=sizes,
    )
    return sizes


def _repair_planned_sizes(sizes: list[int], constants: SizeConstants) -> list[int]:
    """Dissolve undersized tables and deal their seats round-robin."""
    sizes = sorted(sizes)

    while len(sizes) > 1 and sizes[0] < constants.min_group_size:
        seats = sizes.pop(0)
        existing = len(sizes)
        placed = 0
        cursor = 0

        for _ in range(seats):
            target = _next_table_with_room(sizes, cursor, constants.absolute_max_group_size)
            if target is None:
                sizes.append(1)
                cursor = 0
                continue
            sizes[target] += 1
            if target < existing:
                placed += 1
            cursor = (target + 1) % len(sizes)

        sizes.sort()

        if seats and not placed:
            # Every other table is already full; further rounds would
            # rebuild the same undersized table forever.
            logger.warning(
                "group_plan_repair_infeasible",
                sizes=sizes,
                min_group_size=constants.min_group_size,
                absolute_max_group_size=constants.absolute_max_group_size,
            )
            break

    return sizes


def _next_table_with_room(sizes: list[int], start: int, limit: int) -> int | None:
    count = len(sizes)
    for offset in range(count):
        index = (start + offset) % count
        if sizes[index] < limit:
            return index
    return None
