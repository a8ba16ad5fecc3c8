"""Unit tests for the formation pipeline and its assembly / repair stages."""
import random

import pytest

from app.services.compatibility_service import CompatibilityMatrix
from app.services.group_formation_service import (
    FormationResult,
    GroupFormationService,
    PartitionInvariantError,
    assemble_initial_groups,
    repair_group_sizes,
    validate_partition,
)
from app.services.group_optimizer import DiningGroup
from tests.conftest import DictCompatibilityProvider, InMemoryUserStore


def _service(provider, **kwargs):
    kwargs.setdefault("strict_invariants", True)
    kwargs.setdefault("seed", 42)
    return GroupFormationService(provider, **kwargs)


class TestAssembleInitialGroups:
    """Shuffle-and-slice assembly."""

    def test_slices_into_planned_sizes(self, rng):
        ids = list(range(1, 10))
        matrix = CompatibilityMatrix.from_scores(ids, default=50.0)
        groups = assemble_initial_groups(ids, [5, 4], matrix, rng)
        assert [g.size for g in groups] == [5, 4]
        assert sorted(m for g in groups for m in g.members) == ids
        assert all(g.average_compatibility == pytest.approx(50.0) for g in groups)

    def test_seeded_shuffle_is_reproducible(self):
        ids = list(range(1, 13))
        matrix = CompatibilityMatrix(ids)
        first = assemble_initial_groups(ids, [4, 4, 4], matrix, random.Random(9))
        second = assemble_initial_groups(ids, [4, 4, 4], matrix, random.Random(9))
        assert [g.members for g in first] == [g.members for g in second]

    def test_does_not_mutate_input(self, rng):
        ids = list(range(1, 9))
        assemble_initial_groups(ids, [4, 4], CompatibilityMatrix(ids), rng)
        assert ids == list(range(1, 9))

    def test_size_mismatch_rejected(self, rng):
        ids = [1, 2, 3, 4, 5]
        with pytest.raises(ValueError):
            assemble_initial_groups(ids, [4, 4], CompatibilityMatrix(ids), rng)


class TestRepairGroupSizes:
    """Re-seating members of undersized tables."""

    def test_prefers_tables_below_standard_max(self, constants):
        ids = list(range(1, 14))
        matrix = CompatibilityMatrix.from_scores(ids, default=50.0)
        groups = [
            DiningGroup(members=[1, 2, 3]),
            DiningGroup(members=[4, 5, 6, 7, 8]),
            DiningGroup(members=[9, 10, 11, 12, 13]),
        ]
        repaired = repair_group_sizes(groups, matrix, constants)
        assert sorted(g.size for g in repaired) == [6, 7]
        assert sorted(m for g in repaired for m in g.members) == ids
        assert all(g.average_compatibility == pytest.approx(50.0) for g in repaired)

    def test_valid_partition_untouched(self, constants):
        ids = list(range(1, 10))
        matrix = CompatibilityMatrix(ids)
        groups = [DiningGroup(members=[1, 2, 3, 4]), DiningGroup(members=[5, 6, 7, 8, 9])]
        repaired = repair_group_sizes(groups, matrix, constants)
        assert [g.members for g in repaired] == [[1, 2, 3, 4], [5, 6, 7, 8, 9]]

    def test_single_small_group_kept(self, constants):
        matrix = CompatibilityMatrix([1, 2])
        repaired = repair_group_sizes([DiningGroup(members=[1, 2])], matrix, constants)
        assert [g.members for g in repaired] == [[1, 2]]

    def test_full_tables_terminate(self, constants):
        """No table has room: the loop stops instead of rebuilding the same table."""
        ids = list(range(1, 9))
        matrix = CompatibilityMatrix(ids)
        groups = [DiningGroup(members=[1]), DiningGroup(members=list(range(2, 9)))]
        repaired = repair_group_sizes(groups, matrix, constants)
        assert sorted(m for g in repaired for m in g.members) == ids


class TestValidatePartition:
    """Invariant checks on a finished partition."""

    def test_valid(self, constants):
        groups = [DiningGroup(members=[1, 2, 3, 4]), DiningGroup(members=[5, 6, 7, 8])]
        assert validate_partition(groups, range(1, 9), constants) == []

    def test_missing_and_duplicate(self, constants):
        groups = [DiningGroup(members=[1, 2, 3, 4]), DiningGroup(members=[4, 5, 6, 7])]
        problems = validate_partition(groups, range(1, 9), constants)
        assert any("more than once" in p for p in problems)
        assert any("not seated" in p for p in problems)

    def test_size_bounds(self, constants):
        groups = [DiningGroup(members=[1, 2, 3]), DiningGroup(members=[4, 5, 6, 7, 8])]
        problems = validate_partition(groups, range(1, 9), constants)
        assert any("outside" in p for p in problems)

    def test_single_group_exempt_from_size(self, constants):
        assert validate_partition([DiningGroup(members=[1, 2])], [1, 2], constants) == []


class TestFormationResult:
    """Summary properties."""

    def test_summary(self):
        result = FormationResult(groups=[
            DiningGroup(members=[1, 2, 3, 4], average_compatibility=60.0),
            DiningGroup(members=[5, 6, 7, 8, 9], average_compatibility=40.0),
        ])
        assert result.total_users == 9
        assert result.group_count == 2
        assert result.average_group_size == pytest.approx(4.5)
        assert result.total_compatibility == pytest.approx(100.0)
        assert result.size_distribution() == [4, 5]

    def test_empty(self):
        result = FormationResult()
        assert result.average_group_size == 0.0
        assert result.group_count == 0


class TestGroupFormationService:
    """End-to-end pipeline with in-memory collaborators."""

    @pytest.mark.asyncio
    async def test_empty_candidates(self, uniform_provider):
        result = await _service(uniform_provider).form_groups([])
        assert result.groups == []
        assert result.total_users == 0
        assert uniform_provider.calls == []

    @pytest.mark.asyncio
    async def test_below_minimum_forms_one_group(self, uniform_provider):
        result = await _service(uniform_provider).form_groups([1, 2, 3])
        assert len(result.groups) == 1
        assert sorted(result.groups[0].members) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_single_candidate(self, uniform_provider):
        result = await _service(uniform_provider).form_groups([7])
        assert [g.members for g in result.groups] == [[7]]
        assert result.groups[0].average_compatibility == 0.0

    @pytest.mark.asyncio
    async def test_uniform_twelve(self, uniform_provider):
        result = await _service(uniform_provider).form_groups(list(range(1, 13)))
        assert result.size_distribution() == [4, 4, 4]
        assert all(g.average_compatibility == pytest.approx(50.0) for g in result.groups)
        assert result.swaps == 0

    @pytest.mark.asyncio
    async def test_duplicates_collapsed(self, uniform_provider):
        result = await _service(uniform_provider).form_groups([1, 2, 2, 3, 4, 4, 5])
        assert sorted(m for g in result.groups for m in g.members) == [1, 2, 3, 4, 5]
        assert len(uniform_provider.calls) == 10

    @pytest.mark.asyncio
    async def test_unresolved_users_dropped(self, uniform_provider):
        store = InMemoryUserStore(known_ids=range(1, 9), failing_ids=[8])
        result = await _service(uniform_provider, user_store=store).form_groups(
            list(range(1, 11))
        )
        assert sorted(result.dropped_user_ids) == [8, 9, 10]
        assert sorted(m for g in result.groups for m in g.members) == list(range(1, 8))

    @pytest.mark.asyncio
    async def test_all_unresolved_is_empty(self, uniform_provider):
        store = InMemoryUserStore(known_ids=[])
        result = await _service(uniform_provider, user_store=store).form_groups([1, 2])
        assert result.groups == []
        assert result.dropped_user_ids == [1, 2]

    @pytest.mark.asyncio
    async def test_failed_pairs_do_not_abort(self):
        provider = DictCompatibilityProvider(default=80.0, failing_pairs=[(1, 2), (3, 4)])
        result = await _service(provider).form_groups(list(range(1, 10)))
        assert result.total_users == 9

    @pytest.mark.asyncio
    async def test_clusters_found(self):
        scores = {}
        for a in range(1, 9):
            for b in range(a + 1, 9):
                scores[(a, b)] = 90.0 if (a <= 4) == (b <= 4) else 10.0
        provider = DictCompatibilityProvider(scores=scores)
        result = await _service(provider).form_groups(list(range(1, 9)))
        assert {frozenset(g.members) for g in result.groups} == {
            frozenset({1, 2, 3, 4}),
            frozenset({5, 6, 7, 8}),
        }
        assert result.optimized

    @pytest.mark.asyncio
    async def test_simplified_mode_skips_search(self, random_scores):
        ids = list(range(1, 18))
        provider = DictCompatibilityProvider(scores=random_scores(ids, 5))
        result = await _service(provider, optimize=False).form_groups(ids)
        assert result.swaps == 0
        assert result.iterations == 0
        assert not result.optimized
        assert result.size_distribution() == [4, 4, 4, 5]

    @pytest.mark.asyncio
    async def test_same_seed_same_partition(self, random_scores):
        ids = list(range(1, 24))
        scores = random_scores(ids, 11)
        first = await _service(DictCompatibilityProvider(scores=scores), seed=3).form_groups(ids)
        second = await _service(DictCompatibilityProvider(scores=scores), seed=3).form_groups(ids)
        assert [g.members for g in first.groups] == [g.members for g in second.groups]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("n", [4, 5, 8, 9, 13, 17, 19, 23, 31, 37, 45, 60])
    async def test_partition_invariants(self, n, random_scores, constants):
        ids = list(range(1, n + 1))
        provider = DictCompatibilityProvider(scores=random_scores(ids, n))
        result = await _service(provider).form_groups(ids)
        assert sorted(m for g in result.groups for m in g.members) == ids
        assert all(constants.is_within_bounds(g.size) for g in result.groups)

    def test_strict_invariants_raise(self, uniform_provider):
        ids = list(range(1, 8))
        matrix = CompatibilityMatrix.from_scores(ids, default=50.0)
        groups = [DiningGroup(members=[1, 2]), DiningGroup(members=[3, 4, 5, 6, 7])]
        service = _service(uniform_provider, strict_invariants=True)
        with pytest.raises(PartitionInvariantError):
            service._check_partition(groups, ids, matrix)

    def test_lenient_invariants_repair(self, uniform_provider, constants):
        ids = list(range(1, 8))
        matrix = CompatibilityMatrix.from_scores(ids, default=50.0)
        groups = [DiningGroup(members=[1, 2]), DiningGroup(members=[3, 4, 5, 6, 7])]
        service = _service(uniform_provider, strict_invariants=False)
        repaired = service._check_partition(groups, ids, matrix)
        assert validate_partition(repaired, ids, constants) == []
        assert [g.size for g in repaired] == [7]
