"""
Tablemate — SQL-backed stores for the formation pipeline.

Thin adapters over one ``AsyncSession`` that satisfy the store protocols
the pure pipeline depends on:

  DatabaseUserStore    get_user, load_preferences
  DatabaseScoreStore   load_scores, save_scores (``match_scores`` cache)
  DatabaseMeetupStore  batch, create_session, add_participant

None of them commit; the caller (``get_db`` or the CLI) owns the
transaction.  All calls are sequential because a session must never be
used concurrently.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Sequence

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.match import MatchScore
from app.models.meetup import Meetup, MeetupParticipant
from app.models.user import User, UserPreferences

logger = structlog.get_logger("tablemate.storage_service")


class DatabaseUserStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user(self, user_id: int) -> User | None:
        """Return the active user with ``user_id`` or None."""
        user = await self.session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return user

    async def load_preferences(self, user_ids: Sequence[int]) -> dict[int, dict]:
        """Bulk-load questionnaire answers keyed by user id.

        Users without a preferences row are absent from the mapping.
        """
        if not user_ids:
            return {}
        result = await self.session.execute(
            select(UserPreferences).where(UserPreferences.user_id.in_(list(user_ids)))
        )
        return {row.user_id: row.as_dict() for row in result.scalars().all()}


class DatabaseScoreStore:
    """Persisted pairwise scores, one row per ``user1_id < user2_id`` pair."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def load_scores(self, user_ids: Sequence[int]) -> dict[tuple[int, int], float]:
        ids = list(user_ids)
        if len(ids) < 2:
            return {}
        result = await self.session.execute(
            select(MatchScore).where(
                and_(MatchScore.user1_id.in_(ids), MatchScore.user2_id.in_(ids))
            )
        )
        return {
            (row.user1_id, row.user2_id): float(row.compatibility_score)
            for row in result.scalars().all()
        }

    async def save_scores(self, scores: dict[tuple[int, int], float]) -> None:
        if not scores:
            return
        rows = [
            {
                "user1_id": min(a, b),
                "user2_id": max(a, b),
                "compatibility_score": float(value),
            }
            for (a, b), value in scores.items()
            if a != b
        ]
        stmt = pg_insert(MatchScore).values(rows)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_match_score_pair",
            set_={
                "compatibility_score": stmt.excluded.compatibility_score,
                "calculated_at": func.now(),
            },
        )
        await self.session.execute(stmt)
        logger.debug("match_scores_saved", count=len(rows))


class DatabaseMeetupStore:
    """Creates meetups and their confirmed participants.

    ``batch`` opens a SAVEPOINT around one meetup and all its participants,
    so a batch that fails is rolled back whole while meetups already created
    in the same transaction survive.  Each write also runs in its own nested
    SAVEPOINT so a single failed attempt can be retried.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        async with self.session.begin_nested():
            yield

    async def create_session(
        self,
        title: str,
        date: datetime,
        restaurant_id: int,
        start_time: str,
        end_time: str,
        max_participants: int,
        creator_user_id: int,
    ) -> int:
        async with self.session.begin_nested():
            meetup = Meetup(
                title=title,
                date=date,
                restaurant_id=restaurant_id,
                start_time=start_time,
                end_time=end_time,
                max_participants=max_participants,
                status="scheduled",
                created_by=creator_user_id,
            )
            self.session.add(meetup)
            await self.session.flush()
        return meetup.id

    async def add_participant(self, session_id: int, user_id: int, status: str) -> None:
        async with self.session.begin_nested():
            self.session.add(
                MeetupParticipant(meetup_id=session_id, user_id=user_id, status=status)
            )
            await self.session.flush()
