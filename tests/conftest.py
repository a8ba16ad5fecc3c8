"""Shared pytest fixtures for Tablemate tests."""
import itertools
import random
from contextlib import asynccontextmanager

import pytest

from app.services.compatibility_service import CompatibilityMatrix, CompatibilityProvider
from app.services.group_planner import SizeConstants


class DictCompatibilityProvider(CompatibilityProvider):
    """Scores from a plain dict; unknown pairs get ``default``.

    ``failing_pairs`` raise instead of scoring, and every call is recorded.
    """

    def __init__(self, scores=None, default=50.0, failing_pairs=()):
        self.scores = {frozenset(k): v for k, v in (scores or {}).items()}
        self.default = default
        self.failing_pairs = {frozenset(p) for p in failing_pairs}
        self.calls = []

    async def score(self, user_a, user_b):
        self.calls.append((user_a, user_b))
        key = frozenset((user_a, user_b))
        if key in self.failing_pairs:
            raise RuntimeError(f"scoring failed for {user_a}/{user_b}")
        return self.scores.get(key, self.default)


class InMemoryUserStore:
    def __init__(self, known_ids, failing_ids=()):
        self.known_ids = set(known_ids)
        self.failing_ids = set(failing_ids)
        self.lookups = []

    async def get_user(self, user_id):
        self.lookups.append(user_id)
        if user_id in self.failing_ids:
            raise ConnectionError("user store unavailable")
        return {"id": user_id} if user_id in self.known_ids else None


class RecordingMeetupStore:
    """Meetup store that hands out sequential ids and records every call.

    ``batch`` discards whatever a failed batch recorded, like a rolled back
    SAVEPOINT.
    """

    def __init__(self, fail_create_for_creator=None, transient_failures=0, fail_participant=None):
        self.sessions = []
        self.participants = []
        self.fail_create_for_creator = fail_create_for_creator
        self.transient_failures = transient_failures
        self.fail_participant = fail_participant
        self.create_calls = 0
        self.rolled_back = 0
        self._next_id = 100

    @asynccontextmanager
    async def batch(self):
        sessions, participants = len(self.sessions), len(self.participants)
        try:
            yield
        except Exception:
            del self.sessions[sessions:]
            del self.participants[participants:]
            self.rolled_back += 1
            raise

    async def create_session(
        self, title, date, restaurant_id, start_time, end_time, max_participants, creator_user_id
    ):
        self.create_calls += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise ConnectionError("connection reset")
        if creator_user_id == self.fail_create_for_creator:
            raise ValueError("restaurant is fully booked")
        self._next_id += 1
        self.sessions.append({
            "id": self._next_id,
            "title": title,
            "date": date,
            "restaurant_id": restaurant_id,
            "start_time": start_time,
            "end_time": end_time,
            "max_participants": max_participants,
            "created_by": creator_user_id,
        })
        return self._next_id

    async def add_participant(self, session_id, user_id, status):
        if user_id == self.fail_participant:
            raise ValueError("user is banned from this venue")
        self.participants.append((session_id, user_id, status))


@pytest.fixture
def constants():
    return SizeConstants()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def uniform_provider():
    """Every pair scores 50."""
    return DictCompatibilityProvider(default=50.0)


@pytest.fixture
def random_scores():
    """Factory for reproducible pseudo-random score tables in [0, 100]."""
    def _build(user_ids, seed=0):
        gen = random.Random(seed)
        return {
            (a, b): float(gen.randint(0, 100))
            for a, b in itertools.combinations(user_ids, 2)
        }
    return _build


@pytest.fixture
def clustered_matrix():
    """Two natural cliques of four: {1,2,3,4} and {5,6,7,8}.

    Within a clique pairs score 90, across cliques 10.
    """
    ids = list(range(1, 9))
    scores = {}
    for a, b in itertools.combinations(ids, 2):
        same = (a <= 4) == (b <= 4)
        scores[(a, b)] = 90.0 if same else 10.0
    return CompatibilityMatrix.from_scores(ids, scores)
