"""
Tablemate — Pairwise compatibility model.

Materialises every pairwise compatibility score for one candidate pool into a
``CompatibilityMatrix`` that the planner, optimizer and repair passes read
from in O(1):

  CompatibilityProvider        async score(a, b) -> [0, 100], symmetric
  CachedCompatibilityProvider  memoising decorator, optional persisted store
  PreferenceCompatibilityService  default scorer built on questionnaire answers
  SeededRandomCompatibilityProvider  synthetic scores for simulations
  build_compatibility_matrix   one provider call per unordered pair

A provider failure for a pair never aborts the batch: the pair is scored 0
and the failure is logged.
"""

from __future__ import annotations

import asyncio
import itertools
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Hashable, Iterable, Protocol, Sequence

import numpy as np
import structlog

logger = structlog.get_logger("tablemate.compatibility_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

MIN_SCORE = 0.0
MAX_SCORE = 100.0
NEUTRAL_SCORE = 50

# Questionnaire sections and their weight in the preference score
PREFERENCE_WEIGHTS: dict[str, float] = {
    "social_preferences": 0.30,
    "interests": 0.30,
    "dining_preferences": 0.25,
    "atmosphere_preferences": 0.15,
}

UserId = Hashable
PairKey = tuple[Any, Any]


def pair_key(user_a: UserId, user_b: UserId) -> PairKey:
    """Canonical key for the unordered pair {user_a, user_b}."""
    try:
        ordered = user_a <= user_b
    except TypeError:
        ordered = repr(user_a) <= repr(user_b)
    return (user_a, user_b) if ordered else (user_b, user_a)


# ──────────────────────────────────────────────────────────────────────────────
# Provider interface
# ──────────────────────────────────────────────────────────────────────────────

class CompatibilityProvider(ABC):
    """Source of pairwise compatibility scores.

    ``score`` must be symmetric and deterministic for a given pair within one
    run, and raise on failure.  ``warm`` and ``flush`` bracket a batch so
    implementations can prefetch data and write caches back in bulk.
    """

    @abstractmethod
    async def score(self, user_a: UserId, user_b: UserId) -> float:
        ...

    async def warm(self, user_ids: Sequence[UserId]) -> None:
        return None

    async def flush(self) -> None:
        return None


class ScoreStore(Protocol):
    async def load_scores(self, user_ids: Sequence[UserId]) -> dict[PairKey, float]:
        ...

    async def save_scores(self, scores: dict[PairKey, float]) -> None:
        ...


class CachedCompatibilityProvider(CompatibilityProvider):
    """Memoising decorator around another provider.

    Without a ``store`` this is a plain in-memory memo.  With one, ``warm``
    preloads the persisted scores of the candidate pool and ``flush`` writes
    back every score computed since, so scores are reused across runs.
    """

    def __init__(
        self,
        inner: CompatibilityProvider,
        store: ScoreStore | None = None,
    ) -> None:
        self.inner = inner
        self.store = store
        self._memo: dict[PairKey, float] = {}
        self._pending: dict[PairKey, float] = {}

    async def warm(self, user_ids: Sequence[UserId]) -> None:
        await self.inner.warm(user_ids)
        if self.store is None:
            return
        persisted = await self.store.load_scores(user_ids)
        for (a, b), value in persisted.items():
            self._memo[pair_key(a, b)] = float(value)
        logger.info("compatibility_cache_warmed", cached_pairs=len(persisted))

    async def score(self, user_a: UserId, user_b: UserId) -> float:
        key = pair_key(user_a, user_b)
        if key in self._memo:
            return self._memo[key]
        value = float(await self.inner.score(user_a, user_b))
        self._memo[key] = value
        self._pending[key] = value
        return value

    async def flush(self) -> None:
        await self.inner.flush()
        if self.store is None or not self._pending:
            self._pending.clear()
            return
        pending = dict(self._pending)
        await self.store.save_scores(pending)
        self._pending.clear()
        logger.info("compatibility_cache_flushed", new_pairs=len(pending))

    @property
    def cached_pairs(self) -> int:
        return len(self._memo)


class PreferenceCompatibilityService(CompatibilityProvider):
    """Score two diners by how much their questionnaire answers overlap.

    For each section (social, interests, dining, atmosphere) both users'
    answers are flattened to ``key:value`` tokens and compared with the
    Jaccard index; the section scores are averaged with
    ``PREFERENCE_WEIGHTS`` over the sections both users answered.  Users
    without any preference data score ``NEUTRAL_SCORE`` with everyone.
    """

    def __init__(
        self,
        preferences_loader: Callable[[Sequence[UserId]], Awaitable[dict[UserId, dict]]],
    ) -> None:
        self._load = preferences_loader
        self._preferences: dict[UserId, dict] = {}
        # Loaders may share one session, so loads never overlap
        self._load_lock = asyncio.Lock()

    async def warm(self, user_ids: Sequence[UserId]) -> None:
        async with self._load_lock:
            missing = [uid for uid in dict.fromkeys(user_ids) if uid not in self._preferences]
            if not missing:
                return
            loaded = await self._load(missing)
            self._preferences.update(loaded)
            # Users without preferences are remembered as empty
            for uid in missing:
                self._preferences.setdefault(uid, {})
        logger.debug("preferences_loaded", requested=len(missing), found=len(loaded))

    async def score(self, user_a: UserId, user_b: UserId) -> float:
        if user_a not in self._preferences or user_b not in self._preferences:
            await self.warm([user_a, user_b])
        return float(
            self.score_preferences(
                self._preferences.get(user_a), self._preferences.get(user_b)
            )
        )

    @staticmethod
    def score_preferences(prefs_a: dict | None, prefs_b: dict | None) -> int:
        if not prefs_a or not prefs_b:
            return NEUTRAL_SCORE

        weighted = 0.0
        total_weight = 0.0
        for section, weight in PREFERENCE_WEIGHTS.items():
            tokens_a = _flatten_answers(prefs_a.get(section))
            tokens_b = _flatten_answers(prefs_b.get(section))
            if not tokens_a or not tokens_b:
                continue
            jaccard = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
            weighted += weight * jaccard
            total_weight += weight

        if total_weight == 0.0:
            return NEUTRAL_SCORE
        return int(round(MAX_SCORE * weighted / total_weight))


class SeededRandomCompatibilityProvider(CompatibilityProvider):
    """Synthetic scores for simulations: uniform in [low, high], fixed per pair.

    The score depends only on ``seed`` and the unordered pair, so reruns and
    reversed lookups agree.
    """

    def __init__(self, seed: int = 0, low: int = 60, high: int = 100) -> None:
        if not MIN_SCORE <= low <= high <= MAX_SCORE:
            raise ValueError(f"Expected 0 <= low <= high <= 100, got {low}/{high}")
        self.seed = seed
        self.low = low
        self.high = high

    async def score(self, user_a: UserId, user_b: UserId) -> float:
        first, second = pair_key(user_a, user_b)
        rng = random.Random(f"{self.seed}:{first}:{second}")
        return float(rng.randint(self.low, self.high))


def _flatten_answers(answers: Any) -> set[str]:
    if not isinstance(answers, dict):
        return set()
    tokens: set[str] = set()
    for key, value in answers.items():
        values = value if isinstance(value, (list, tuple, set)) else [value]
        for item in values:
            if item is None or item == "":
                continue
            tokens.add(f"{key}:{str(item).strip().lower()}")
    return tokens


# ──────────────────────────────────────────────────────────────────────────────
# Matrix
# ──────────────────────────────────────────────────────────────────────────────

class CompatibilityMatrix:
    """Dense symmetric score table for one candidate pool.

    The diagonal is zero, so row sums over a member list never include a
    user's score with themselves.
    """

    def __init__(self, user_ids: Sequence[UserId]) -> None:
        self.user_ids: list[UserId] = list(user_ids)
        self._index: dict[UserId, int] = {uid: i for i, uid in enumerate(self.user_ids)}
        if len(self._index) != len(self.user_ids):
            raise ValueError("CompatibilityMatrix requires distinct user ids")
        n = len(self.user_ids)
        self._scores = np.zeros((n, n), dtype=np.float64)

    @classmethod
    def from_scores(
        cls,
        user_ids: Sequence[UserId],
        scores: dict[PairKey, float] | None = None,
        default: float = 0.0,
    ) -> "CompatibilityMatrix":
        """Build a matrix directly from a pair -> score mapping.

        Pairs absent from ``scores`` get ``default``.
        """
        matrix = cls(user_ids)
        if default:
            matrix._scores.fill(float(default))
            np.fill_diagonal(matrix._scores, 0.0)
        for (a, b), value in (scores or {}).items():
            matrix.set_score(a, b, value)
        return matrix

    def __len__(self) -> int:
        return len(self.user_ids)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._index

    def set_score(self, user_a: UserId, user_b: UserId, value: float) -> None:
        if user_a == user_b:
            raise ValueError("Self-compatibility is undefined")
        i, j = self._index[user_a], self._index[user_b]
        self._scores[i, j] = value
        self._scores[j, i] = value

    def score(self, user_a: UserId, user_b: UserId) -> float:
        return float(self._scores[self._index[user_a], self._index[user_b]])

    def affinity(self, user_id: UserId, members: Iterable[UserId]) -> float:
        """Sum of ``user_id``'s scores with every other user in ``members``."""
        row = self._scores[self._index[user_id]]
        return float(sum(row[self._index[m]] for m in members if m != user_id))

    def pair_total(self, members: Sequence[UserId]) -> float:
        """Sum of all pairwise scores within ``members``."""
        if len(members) < 2:
            return 0.0
        idx = [self._index[m] for m in members]
        return float(self._scores[np.ix_(idx, idx)].sum() / 2.0)

    def group_average(self, members: Sequence[UserId]) -> float:
        """Mean of the ``n * (n - 1) / 2`` pairwise scores; 0 when n <= 1."""
        n = len(members)
        if n <= 1:
            return 0.0
        return self.pair_total(members) / (n * (n - 1) / 2)


async def build_compatibility_matrix(
    user_ids: Sequence[UserId],
    provider: CompatibilityProvider,
    concurrency: int = 16,
) -> CompatibilityMatrix:
    """Score every unordered pair of ``user_ids`` exactly once.

    Parameters
    ----------
    user_ids:
        Distinct candidate ids.
    provider:
        Score source.  ``warm`` is awaited before and ``flush`` after the
        pairwise calls; failures in either are logged and ignored.
    concurrency:
        Maximum number of provider calls in flight.

    Returns
    -------
    CompatibilityMatrix
        Scores clamped to [0, 100]; failed pairs hold 0.
    """
    matrix = CompatibilityMatrix(user_ids)
    pairs = list(itertools.combinations(matrix.user_ids, 2))
    log = logger.bind(user_count=len(matrix), pair_count=len(pairs))
    log.info("compatibility_matrix_build_start")

    if not pairs:
        return matrix

    try:
        await provider.warm(matrix.user_ids)
    except Exception:
        log.warning("compatibility_warm_failed", exc_info=True)

    semaphore = asyncio.Semaphore(max(1, concurrency))
    failures = 0

    async def _score_pair(user_a: UserId, user_b: UserId) -> None:
        nonlocal failures
        async with semaphore:
            try:
                value = float(await provider.score(user_a, user_b))
            except Exception as exc:
                failures += 1
                log.warning(
                    "compatibility_score_failed",
                    user_a=user_a,
                    user_b=user_b,
                    error=str(exc),
                )
                value = MIN_SCORE
        if not MIN_SCORE <= value <= MAX_SCORE or np.isnan(value):
            log.warning(
                "compatibility_score_out_of_range",
                user_a=user_a,
                user_b=user_b,
                score=value,
            )
            value = MIN_SCORE if np.isnan(value) else min(MAX_SCORE, max(MIN_SCORE, value))
        matrix.set_score(user_a, user_b, value)

    await asyncio.gather(*(_score_pair(a, b) for a, b in pairs))

    try:
        await provider.flush()
    except Exception:
        log.warning("compatibility_flush_failed", exc_info=True)

    log.info("compatibility_matrix_build_complete", failed_pairs=failures)
    return matrix
