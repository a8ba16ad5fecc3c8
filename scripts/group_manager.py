#!/usr/bin/env python3
"""
Tablemate — Group Manager: formation and simulation CLI

Provides two subcommands:

  form      Form dining groups for users in the database, optionally
            creating a meetup per table.
  simulate  Run the pipeline over synthetic candidate pools and report
            the resulting size distribution.

Usage examples
--------------
  # Form groups for five users and print the summary
  python scripts/group_manager.py form --user-ids 1 2 3 4 5

  # Form groups for every active user and create meetups
  python scripts/group_manager.py form --all-active --materialize \\
      --restaurant-id 3 --date 2026-11-20 --start-time 19:00 --end-time 21:00

  # Simulate the standard pool sizes without local search
  python scripts/group_manager.py simulate --no-optimize
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime

# Ensure the project root is importable
sys.path.insert(0, ".")

from sqlalchemy import select

from app.config import get_settings
from app.database import get_session_factory
from app.models.user import User
from app.services.compatibility_service import (
    CachedCompatibilityProvider,
    PreferenceCompatibilityService,
    SeededRandomCompatibilityProvider,
)
from app.services.group_formation_service import FormationResult, GroupFormationService
from app.services.meetup_service import MeetupService
from app.services.storage_service import (
    DatabaseMeetupStore,
    DatabaseScoreStore,
    DatabaseUserStore,
)
from app.utils.log_config import configure_logging

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

# Pool sizes that exercise every planner branch (small, exact, remainder)
DEFAULT_SCENARIOS = [4, 5, 8, 9, 13, 17, 19, 23, 31, 37, 45, 60]


def _summary(result: FormationResult) -> dict:
    constants = get_settings().size_constants
    return {
        "total_users": result.total_users,
        "group_count": result.group_count,
        "average_group_size": round(result.average_group_size, 2),
        "dropped_user_ids": result.dropped_user_ids,
        "iterations": result.iterations,
        "swaps": result.swaps,
        "converged": result.converged,
        "groups": [
            {
                "user_ids": group.members,
                "user_count": group.size,
                "average_compatibility": round(group.average_compatibility, 2),
                "is_extended_group": group.is_extended(constants),
                "is_minimum_size_group": group.is_minimum_size(constants),
            }
            for group in result.groups
        ],
    }


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: form
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_form(args: argparse.Namespace) -> None:
    """Form groups from database users and optionally create meetups."""
    settings = get_settings()

    async with get_session_factory()() as session:
        if args.all_active:
            rows = await session.execute(select(User.id).where(User.is_active.is_(True)))
            user_ids = list(rows.scalars().all())
        else:
            user_ids = args.user_ids or []

        user_store = DatabaseUserStore(session)
        score_store = DatabaseScoreStore(session) if settings.PERSIST_COMPATIBILITY_SCORES else None
        provider = CachedCompatibilityProvider(
            PreferenceCompatibilityService(user_store.load_preferences),
            store=score_store,
        )
        service = GroupFormationService(
            provider,
            user_store=user_store,
            optimize=not args.no_optimize,
            seed=args.seed,
        )
        result = await service.form_groups(user_ids)
        summary = _summary(result)

        if args.materialize:
            meetup_service = MeetupService(DatabaseMeetupStore(session))
            materialized = await meetup_service.materialize(
                result.groups,
                restaurant_id=args.restaurant_id,
                date=datetime.fromisoformat(args.date),
                start_time=args.start_time,
                end_time=args.end_time,
            )
            summary["meetup_ids"] = materialized.meetup_ids
            summary["failures"] = [
                {
                    "group_index": f.group_index,
                    "user_ids": f.user_ids,
                    "error": f.error,
                }
                for f in materialized.failures
            ]

        await session.commit()

    if args.json:
        print(json.dumps(summary, indent=2, default=str))
        return

    print(f"\n{'=' * 60}")
    print(f"  Group Formation")
    print(f"{'=' * 60}")
    print(f"  Users seated:      {summary['total_users']}")
    print(f"  Tables:            {summary['group_count']}")
    print(f"  Avg table size:    {summary['average_group_size']}")
    print(f"  Dropped ids:       {summary['dropped_user_ids'] or '-'}")
    print(f"  Swaps / passes:    {summary['swaps']} / {summary['iterations']}")
    for index, group in enumerate(summary["groups"]):
        flag = " (extended)" if group["is_extended_group"] else ""
        print(
            f"    #{index:<3} size={group['user_count']}{flag:<11} "
            f"compat={group['average_compatibility']:>6}  users={group['user_ids']}"
        )
    if args.materialize:
        print(f"\n  Meetups created:   {summary['meetup_ids']}")
        for failure in summary["failures"]:
            print(f"  FAILED group {failure['group_index']}: {failure['error']}")
    print(f"{'=' * 60}\n")


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: simulate
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_simulate(args: argparse.Namespace) -> None:
    """Run synthetic pools through the pipeline and report size outcomes."""
    constants = get_settings().size_constants
    scenarios = args.sizes or DEFAULT_SCENARIOS
    rows: list[dict] = []

    for total in scenarios:
        service = GroupFormationService(
            SeededRandomCompatibilityProvider(seed=args.seed),
            constants=constants,
            optimize=not args.no_optimize,
            seed=args.seed,
        )
        result = await service.form_groups(list(range(1, total + 1)))
        sizes = result.size_distribution()
        rows.append({
            "total_users": total,
            "group_count": result.group_count,
            "sizes": sizes,
            "standard": sum(
                1 for s in sizes
                if constants.min_group_size <= s <= constants.standard_max_group_size
            ),
            "extended": sum(1 for s in sizes if constants.is_extended(s)),
            "minimum": sum(1 for s in sizes if s == constants.min_group_size),
            "undersized": sum(1 for s in sizes if s < constants.min_group_size),
            "average_compatibility": round(
                result.total_compatibility / result.group_count, 2
            ) if result.group_count else 0.0,
            "swaps": result.swaps,
        })

    if args.json:
        print(json.dumps(rows, indent=2))
        return

    print(f"\n{'=' * 78}")
    print(f"  Formation Simulation  (seed={args.seed}, optimize={not args.no_optimize})")
    print(f"{'=' * 78}")
    print(f"  {'N':>4} {'tables':>6} {'std':>4} {'ext':>4} {'min':>4} {'small':>5} "
          f"{'compat':>7} {'swaps':>5}  sizes")
    print("  " + "-" * 74)
    for row in rows:
        print(
            f"  {row['total_users']:>4} {row['group_count']:>6} {row['standard']:>4} "
            f"{row['extended']:>4} {row['minimum']:>4} {row['undersized']:>5} "
            f"{row['average_compatibility']:>7} {row['swaps']:>5}  {row['sizes']}"
        )
    print(f"{'=' * 78}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry-point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Tablemate Group Manager: form dining groups and simulate pools.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="structlog filtering level (default: WARNING).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── form ──────────────────────────────────────────────────────────
    form_parser = subparsers.add_parser(
        "form",
        help="Form dining groups for users in the database.",
    )
    source = form_parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--user-ids",
        type=int,
        nargs="+",
        help="Candidate user ids.",
    )
    source.add_argument(
        "--all-active",
        action="store_true",
        default=False,
        help="Use every active user as a candidate.",
    )
    form_parser.add_argument("--seed", type=int, default=None, help="Shuffle seed.")
    form_parser.add_argument(
        "--no-optimize",
        action="store_true",
        default=False,
        help="Skip the swap local search.",
    )
    form_parser.add_argument(
        "--materialize",
        action="store_true",
        default=False,
        help="Create a meetup for each table.",
    )
    form_parser.add_argument("--restaurant-id", type=int, help="Venue for the meetups.")
    form_parser.add_argument("--date", type=str, help="Meetup date, ISO format.")
    form_parser.add_argument("--start-time", type=str, default="19:00", help="HH:MM")
    form_parser.add_argument("--end-time", type=str, default="21:00", help="HH:MM")
    form_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Output raw JSON instead of a table.",
    )

    # ── simulate ──────────────────────────────────────────────────────
    simulate_parser = subparsers.add_parser(
        "simulate",
        help="Run synthetic candidate pools through the pipeline.",
    )
    simulate_parser.add_argument(
        "--sizes",
        type=int,
        nargs="+",
        default=None,
        help=f"Pool sizes to simulate (default: {DEFAULT_SCENARIOS}).",
    )
    simulate_parser.add_argument("--seed", type=int, default=7, help="Score and shuffle seed.")
    simulate_parser.add_argument(
        "--no-optimize",
        action="store_true",
        default=False,
        help="Skip the swap local search.",
    )
    simulate_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Output raw JSON instead of a table.",
    )

    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "form":
        if args.materialize and (args.restaurant_id is None or args.date is None):
            parser.error("--materialize requires --restaurant-id and --date")
        asyncio.run(cmd_form(args))
    elif args.command == "simulate":
        asyncio.run(cmd_simulate(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
