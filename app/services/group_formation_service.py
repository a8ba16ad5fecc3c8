"""
Tablemate — Dining group formation pipeline.

Turns a pool of candidate diners into tables:

  candidates -> resolve users -> compatibility matrix -> size plan
             -> random initial assembly -> size repair
             -> swap local search (optional) -> size repair
             -> partition invariant check

The result is a ``FormationResult``; turning it into persisted meetups is
``MeetupService``'s job.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import structlog

from app.config import get_settings
from app.services.compatibility_service import (
    CompatibilityMatrix,
    CompatibilityProvider,
    build_compatibility_matrix,
)
from app.services.group_optimizer import (
    DiningGroup,
    LocalSearchOptimizer,
    total_compatibility,
)
from app.services.group_planner import SizeConstants, plan_group_sizes

logger = structlog.get_logger("tablemate.group_formation_service")


class PartitionInvariantError(RuntimeError):
    """Raised when a finished partition loses a diner or breaks a size bound."""


class UserStore(Protocol):
    async def get_user(self, user_id: Any) -> Any | None:
        ...


# ──────────────────────────────────────────────────────────────────────────────
# Result
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class FormationResult:
    groups: list[DiningGroup] = field(default_factory=list)
    dropped_user_ids: list[Any] = field(default_factory=list)
    iterations: int = 0
    swaps: int = 0
    converged: bool = True
    optimized: bool = False

    @property
    def total_users(self) -> int:
        return sum(group.size for group in self.groups)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def average_group_size(self) -> float:
        if not self.groups:
            return 0.0
        return self.total_users / self.group_count

    @property
    def total_compatibility(self) -> float:
        return total_compatibility(self.groups)

    def size_distribution(self) -> list[int]:
        return sorted(group.size for group in self.groups)


# ──────────────────────────────────────────────────────────────────────────────
# Pipeline stages
# ──────────────────────────────────────────────────────────────────────────────

def assemble_initial_groups(
    user_ids: Sequence[Any],
    sizes: Sequence[int],
    matrix: CompatibilityMatrix,
    rng: Optional[random.Random] = None,
) -> list[DiningGroup]:
    """Shuffle the candidates and slice them into tables of the planned sizes.

    Raises
    ------
    ValueError
        If ``sizes`` does not sum to ``len(user_ids)``.
    """
    if sum(sizes) != len(user_ids):
        raise ValueError(
            f"Planned sizes {list(sizes)} sum to {sum(sizes)}, "
            f"expected {len(user_ids)} candidates"
        )

    shuffled = list(user_ids)
    (rng or random.Random()).shuffle(shuffled)

    groups: list[DiningGroup] = []
    offset = 0
    for size in sizes:
        members = shuffled[offset:offset + size]
        offset += size
        groups.append(
            DiningGroup(members=members, average_compatibility=matrix.group_average(members))
        )
    return groups


def repair_group_sizes(
    groups: list[DiningGroup],
    matrix: CompatibilityMatrix,
    constants: Optional[SizeConstants] = None,
) -> list[DiningGroup]:
    """Dissolve undersized tables and re-seat their members.

    Each displaced diner goes to the smallest table below the standard
    maximum, else the smallest table below the absolute maximum, else a new
    table of their own.  Returns the repaired list sorted by size.
    """
    constants = constants or SizeConstants()
    groups = sorted(groups, key=lambda g: g.size)
    touched: set[int] = set()

    while len(groups) > 1 and groups[0].size < constants.min_group_size:
        dissolved = groups.pop(0)
        existing = {id(group) for group in groups}
        placed = 0

        for member in dissolved.members:
            groups.sort(key=lambda g: g.size)
            target = next(
                (g for g in groups if g.size < constants.standard_max_group_size), None
            )
            if target is None:
                target = next(
                    (g for g in groups if g.size < constants.absolute_max_group_size), None
                )
            if target is None:
                target = DiningGroup(members=[])
                groups.append(target)

            target.members.append(member)
            touched.add(id(target))
            if id(target) in existing:
                placed += 1

        groups.sort(key=lambda g: g.size)

        if dissolved.members and not placed:
            logger.warning(
                "group_repair_infeasible",
                sizes=[g.size for g in groups],
                min_group_size=constants.min_group_size,
                absolute_max_group_size=constants.absolute_max_group_size,
            )
            break

    for group in groups:
        if id(group) in touched:
            group.refresh(matrix)
    return groups


def validate_partition(
    groups: Sequence[DiningGroup],
    user_ids: Sequence[Any],
    constants: SizeConstants,
) -> list[str]:
    """Return a list of human-readable invariant violations (empty when valid)."""
    problems: list[str] = []

    seen: dict[Any, int] = {}
    for group in groups:
        for member in group.members:
            seen[member] = seen.get(member, 0) + 1

    duplicated = sorted((str(uid) for uid, count in seen.items() if count > 1))
    if duplicated:
        problems.append(f"users seated more than once: {', '.join(duplicated)}")

    expected = set(user_ids)
    missing = expected - seen.keys()
    if missing:
        problems.append(f"users not seated: {', '.join(sorted(map(str, missing)))}")
    unexpected = seen.keys() - expected
    if unexpected:
        problems.append(f"unknown users seated: {', '.join(sorted(map(str, unexpected)))}")

    if len(groups) > 1:
        for index, group in enumerate(groups):
            if not constants.is_within_bounds(group.size):
                problems.append(
                    f"group {index} has {group.size} members, outside "
                    f"[{constants.min_group_size}, {constants.absolute_max_group_size}]"
                )
    return problems


# ──────────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────────

class GroupFormationService:
    """Forms dining tables for one batch of candidates.

    Dependencies are injected at construction; anything left as ``None`` is
    read from settings so the service can run from the API, the CLI, or a
    test with a hand-built provider.
    """

    def __init__(
        self,
        provider: CompatibilityProvider,
        user_store: UserStore | None = None,
        constants: SizeConstants | None = None,
        optimize: bool | None = None,
        max_iterations: int | None = None,
        extended_improvement_threshold: float | None = None,
        concurrency: int | None = None,
        strict_invariants: bool | None = None,
        seed: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.user_store = user_store
        self.constants = constants or settings.size_constants
        self.optimize = settings.OPTIMIZE_GROUPS if optimize is None else optimize
        self.max_iterations = (
            settings.MAX_OPTIMIZATION_ITERATIONS if max_iterations is None else max_iterations
        )
        self.extended_improvement_threshold = (
            settings.EXTENDED_GROUP_IMPROVEMENT_THRESHOLD
            if extended_improvement_threshold is None
            else extended_improvement_threshold
        )
        self.concurrency = (
            settings.COMPATIBILITY_CONCURRENCY if concurrency is None else concurrency
        )
        self.strict_invariants = (
            settings.strict_invariants if strict_invariants is None else strict_invariants
        )
        self.rng = rng or random.Random(seed)

    # ── Public API ────────────────────────────────────────────────────────

    async def form_groups(self, candidate_ids: Sequence[Any]) -> FormationResult:
        """Partition ``candidate_ids`` into dining tables.

        Parameters
        ----------
        candidate_ids:
            Users who want to dine.  Duplicates are collapsed; ids the user
            store cannot resolve are dropped and reported.

        Returns
        -------
        FormationResult
            Empty when no candidate resolves.  A pool smaller than the
            minimum table size comes back as a single table.

        Raises
        ------
        PartitionInvariantError
            When strict invariants are enabled and the final partition is
            invalid.
        """
        unique_ids = list(dict.fromkeys(candidate_ids))
        log = logger.bind(candidates=len(unique_ids), optimize=self.optimize)
        log.info("group_formation_start")

        user_ids, dropped = await self._resolve_users(unique_ids)
        result = FormationResult(dropped_user_ids=dropped, optimized=self.optimize)

        if not user_ids:
            log.info("group_formation_empty", dropped=len(dropped))
            return result

        matrix = await build_compatibility_matrix(user_ids, self.provider, self.concurrency)

        sizes = plan_group_sizes(len(user_ids), self.constants)
        groups = assemble_initial_groups(user_ids, sizes, matrix, self.rng)
        groups = repair_group_sizes(groups, matrix, self.constants)

        if self.optimize:
            optimizer = LocalSearchOptimizer(
                matrix,
                constants=self.constants,
                max_iterations=self.max_iterations,
                extended_improvement_threshold=self.extended_improvement_threshold,
            )
            outcome = optimizer.optimize(groups)
            result.iterations = outcome.iterations
            result.swaps = outcome.swaps
            result.converged = outcome.converged

        groups = repair_group_sizes(groups, matrix, self.constants)
        result.groups = self._check_partition(groups, user_ids, matrix)

        log.info(
            "group_formation_complete",
            total_users=result.total_users,
            group_count=result.group_count,
            sizes=result.size_distribution(),
            dropped=len(dropped),
            swaps=result.swaps,
            total_compatibility=round(result.total_compatibility, 3),
        )
        return result

    # ── Internals ─────────────────────────────────────────────────────────

    async def _resolve_users(self, unique_ids: list[Any]) -> tuple[list[Any], list[Any]]:
        if self.user_store is None:
            return unique_ids, []

        resolved: list[Any] = []
        dropped: list[Any] = []
        # Sequential: SQL-backed stores share one session
        for user_id in unique_ids:
            try:
                user = await self.user_store.get_user(user_id)
            except Exception as exc:
                logger.warning("user_lookup_failed", user_id=user_id, error=str(exc))
                user = None
            if user is None:
                logger.warning("user_dropped", user_id=user_id)
                dropped.append(user_id)
            else:
                resolved.append(user_id)
        return resolved, dropped

    def _check_partition(
        self,
        groups: list[DiningGroup],
        user_ids: list[Any],
        matrix: CompatibilityMatrix,
    ) -> list[DiningGroup]:
        problems = validate_partition(groups, user_ids, self.constants)
        if not problems:
            return groups

        if self.strict_invariants:
            raise PartitionInvariantError("; ".join(problems))

        logger.error("partition_invariant_violated", problems=problems)
        groups = repair_group_sizes(groups, matrix, self.constants)
        remaining = validate_partition(groups, user_ids, self.constants)
        if remaining:
            logger.error("partition_invariant_unrepaired", problems=remaining)
        return groups
