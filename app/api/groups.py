"""
Tablemate — Group Formation API

Endpoints that run the formation pipeline over a batch of candidate diners
and, optionally, persist the resulting tables as meetups.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.schemas.group import (
    DiningGroupResponse,
    GroupFormRequest,
    GroupFormResponse,
    MeetupFailureResponse,
    MeetupFormRequest,
    MeetupFormResponse,
)
from app.services.compatibility_service import (
    CachedCompatibilityProvider,
    PreferenceCompatibilityService,
)
from app.services.group_formation_service import (
    FormationResult,
    GroupFormationService,
    PartitionInvariantError,
)
from app.services.meetup_service import MeetupService
from app.services.storage_service import (
    DatabaseMeetupStore,
    DatabaseScoreStore,
    DatabaseUserStore,
)

logger = structlog.get_logger("tablemate.api.groups")

router = APIRouter()

FormationFactory = Callable[[Optional[int], Optional[bool]], GroupFormationService]


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_formation_factory(db: AsyncSession = Depends(get_db)) -> FormationFactory:
    """Build formation services bound to the request's session.

    Returned as a factory because ``seed`` and ``optimize`` come from the
    request body.
    """
    settings = get_settings()
    user_store = DatabaseUserStore(db)
    score_store = DatabaseScoreStore(db) if settings.PERSIST_COMPATIBILITY_SCORES else None

    def _factory(seed: Optional[int], optimize: Optional[bool]) -> GroupFormationService:
        provider = CachedCompatibilityProvider(
            PreferenceCompatibilityService(user_store.load_preferences),
            store=score_store,
        )
        return GroupFormationService(
            provider,
            user_store=user_store,
            optimize=optimize,
            seed=seed,
        )

    return _factory


def get_meetup_service(db: AsyncSession = Depends(get_db)) -> MeetupService:
    return MeetupService(DatabaseMeetupStore(db))


# ── Helpers ──────────────────────────────────────────────────────────────────

def _summarise(result: FormationResult) -> dict:
    constants = get_settings().size_constants
    return {
        "total_users": result.total_users,
        "group_count": result.group_count,
        "average_group_size": round(result.average_group_size, 3),
        "dropped_user_ids": list(result.dropped_user_ids),
        "iterations": result.iterations,
        "swaps": result.swaps,
        "converged": result.converged,
        "optimized": result.optimized,
        "groups": [
            DiningGroupResponse(
                user_ids=list(group.members),
                user_count=group.size,
                average_compatibility=round(group.average_compatibility, 3),
                is_extended_group=group.is_extended(constants),
                is_minimum_size_group=group.is_minimum_size(constants),
            )
            for group in result.groups
        ],
    }


async def _run_formation(
    factory: FormationFactory,
    user_ids: list[int],
    seed: Optional[int],
    optimize: Optional[bool],
) -> FormationResult:
    service = factory(seed, optimize)
    try:
        return await service.form_groups(user_ids)
    except PartitionInvariantError as exc:
        logger.error("group_formation_invariant_error", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Group formation produced an invalid partition: {exc}",
        ) from exc


# ──────────────────────────────────────────────────────────────────────────────
# POST /form: form dining groups
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/form",
    response_model=GroupFormResponse,
    summary="Partition candidate diners into tables",
)
async def form_groups(
    body: GroupFormRequest,
    factory: FormationFactory = Depends(get_formation_factory),
) -> GroupFormResponse:
    """Run the formation pipeline without persisting anything but scores."""
    result = await _run_formation(factory, body.user_ids, body.seed, body.optimize)
    return GroupFormResponse(**_summarise(result))


# ──────────────────────────────────────────────────────────────────────────────
# POST /meetups: form groups and create meetups
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/meetups",
    response_model=MeetupFormResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Form dining groups and create a meetup for each table",
)
async def form_meetups(
    body: MeetupFormRequest,
    factory: FormationFactory = Depends(get_formation_factory),
    meetup_service: MeetupService = Depends(get_meetup_service),
) -> MeetupFormResponse:
    """Form groups, then materialise them.

    Per-table failures are returned in ``failures``; tables that were
    created are kept.
    """
    result = await _run_formation(factory, body.user_ids, body.seed, body.optimize)

    materialized = await meetup_service.materialize(
        result.groups,
        restaurant_id=body.restaurant_id,
        date=body.date,
        start_time=body.start_time,
        end_time=body.end_time,
    )

    logger.info(
        "meetups_formed",
        restaurant_id=body.restaurant_id,
        meetups_created=len(materialized.meetups),
        failures=len(materialized.failures),
    )

    return MeetupFormResponse(
        **_summarise(result),
        meetup_ids=materialized.meetup_ids,
        failures=[
            MeetupFailureResponse(
                group_index=f.group_index,
                user_ids=list(f.user_ids),
                error=f.error,
            )
            for f in materialized.failures
        ],
    )
