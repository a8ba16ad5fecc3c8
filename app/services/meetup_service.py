"""
Tablemate — Meetup materialisation.

Persists a finished partition as reservable meetups: one meetup per table
(tables larger than the absolute maximum are split into consecutive
batches), each member added as a confirmed participant.

Store calls are retried on transient errors.  Each batch is written inside
``MeetupStore.batch()``, so a batch that still fails leaves nothing behind; it
is recorded and the remaining tables are materialised regardless.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date as date_type
from datetime import datetime
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
)

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.services.group_optimizer import DiningGroup
from app.services.group_planner import SizeConstants

logger = structlog.get_logger("tablemate.meetup_service")

T = TypeVar("T")

EXTENDED_TITLE_SUFFIX = " (Extended Group)"
PARTICIPANT_STATUS = "confirmed"


def _is_transient_store_error(exc: BaseException) -> bool:
    """Return True for errors worth retrying: dropped connections and timeouts."""
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class MeetupStore(Protocol):
    async def create_session(
        self,
        title: str,
        date: datetime,
        restaurant_id: int,
        start_time: str,
        end_time: str,
        max_participants: int,
        creator_user_id: Any,
    ) -> int:
        ...

    async def add_participant(self, session_id: int, user_id: Any, status: str) -> None:
        ...

    def batch(self) -> AsyncContextManager[None]:
        ...


@dataclass
class CreatedMeetup:
    meetup_id: int
    user_ids: list[Any]
    is_extended: bool
    title: str


@dataclass
class MaterializationFailure:
    group_index: int
    user_ids: list[Any]
    error: str


@dataclass
class MaterializationResult:
    meetups: list[CreatedMeetup] = field(default_factory=list)
    failures: list[MaterializationFailure] = field(default_factory=list)

    @property
    def meetup_ids(self) -> list[int]:
        return [m.meetup_id for m in self.meetups]

    @property
    def succeeded(self) -> bool:
        return not self.failures


def meetup_title(when: date_type, extended: bool = False) -> str:
    """``"Dining Experience at MM/DD/YYYY"``, marked when the table is extended."""
    title = f"Dining Experience at {when.strftime('%m/%d/%Y')}"
    return title + EXTENDED_TITLE_SUFFIX if extended else title


def split_into_batches(members: Sequence[Any], limit: int) -> list[list[Any]]:
    """Consecutive slices of at most ``limit`` members."""
    if limit < 1:
        raise ValueError(f"Batch limit must be >= 1, got {limit}")
    return [list(members[i:i + limit]) for i in range(0, len(members), limit)]


class MeetupService:
    """Turns dining groups into persisted meetups through a ``MeetupStore``."""

    def __init__(
        self,
        store: MeetupStore,
        constants: SizeConstants | None = None,
        retry_attempts: int | None = None,
        retry_wait_max: float = 8.0,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.constants = constants or settings.size_constants
        self.retry_attempts = (
            settings.MATERIALIZATION_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        )
        self.retry_wait_max = retry_wait_max

    # ── Public API ────────────────────────────────────────────────────────

    async def materialize(
        self,
        groups: Sequence[DiningGroup],
        restaurant_id: int,
        date: datetime,
        start_time: str,
        end_time: str,
    ) -> MaterializationResult:
        """Create one meetup per table batch and seat every member.

        Parameters
        ----------
        groups:
            Finished partition, typically ``FormationResult.groups``.
        restaurant_id:
            Venue shared by every meetup in this run.
        date, start_time, end_time:
            When the meetups take place; times are ``HH:MM`` strings.

        Returns
        -------
        MaterializationResult
            Created meetups and per-batch failures.  Failures never abort
            the remaining batches.
        """
        result = MaterializationResult()
        log = logger.bind(restaurant_id=restaurant_id, group_count=len(groups))
        log.info("materialization_start")

        limit = self.constants.absolute_max_group_size
        for index, group in enumerate(groups):
            if not group.members:
                continue
            for batch in split_into_batches(group.members, limit):
                await self._materialize_batch(
                    result, index, batch, restaurant_id, date, start_time, end_time
                )

        log.info(
            "materialization_complete",
            meetups_created=len(result.meetups),
            failures=len(result.failures),
        )
        return result

    # ── Internals ─────────────────────────────────────────────────────────

    async def _materialize_batch(
        self,
        result: MaterializationResult,
        group_index: int,
        batch: list[Any],
        restaurant_id: int,
        date: datetime,
        start_time: str,
        end_time: str,
    ) -> None:
        extended = len(batch) > self.constants.standard_max_group_size
        title = meetup_title(date, extended)
        max_participants = (
            self.constants.absolute_max_group_size
            if extended
            else self.constants.standard_max_group_size
        )

        meetup_id: Optional[int] = None
        try:
            async with self.store.batch():
                meetup_id = await self._with_retry(
                    lambda: self.store.create_session(
                        title,
                        date,
                        restaurant_id,
                        start_time,
                        end_time,
                        max_participants,
                        batch[0],
                    )
                )
                for user_id in batch:
                    await self._with_retry(
                        lambda uid=user_id: self.store.add_participant(
                            meetup_id, uid, PARTICIPANT_STATUS
                        )
                    )
        except Exception as exc:
            logger.error(
                "meetup_materialization_failed",
                group_index=group_index,
                rolled_back_meetup_id=meetup_id,
                user_ids=batch,
                error=str(exc),
            )
            result.failures.append(
                MaterializationFailure(
                    group_index=group_index,
                    user_ids=list(batch),
                    error=str(exc),
                )
            )
            return

        result.meetups.append(
            CreatedMeetup(
                meetup_id=meetup_id,
                user_ids=list(batch),
                is_extended=extended,
                title=title,
            )
        )
        logger.debug("meetup_created", meetup_id=meetup_id, size=len(batch), extended=extended)

    async def _with_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient_store_error),
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=0.5, min=0, max=self.retry_wait_max),
                reraise=True,
            ):
                with attempt:
                    return await call()
        except RetryError as retry_err:
            raise retry_err.last_attempt.exception() from retry_err
