"""
Grandfather-father-son tier decision.

Every run produces an artifact in exactly one retention tier:
- MONTHLY on the first calendar day of the month
- WEEKLY on the configured weekly anchor day
- DAILY otherwise

When a day is both the 1st and the anchor day, MONTHLY wins by default
(Schedule.monthly_wins); set it to False to let WEEKLY win instead.
"""

from datetime import datetime
from typing import FrozenSet, Optional

from gfskeeper.models import Tier, Kind


WEEKDAYS = {
    'monday': 0, 'mon': 0,
    'tuesday': 1, 'tue': 1,
    'wednesday': 2, 'wed': 2,
    'thursday': 3, 'thu': 3,
    'friday': 4, 'fri': 4,
    'saturday': 5, 'sat': 5,
    'sunday': 6, 'sun': 6,
}


class Schedule:
    """
    Tier schedule for a job.

    Args:
        weekly_anchor: Weekday of the WEEKLY tier (Monday = 0 ... Sunday = 6)
        monthly_wins: Whether MONTHLY beats WEEKLY when both apply
        full_tiers: Tiers that always produce a FULL artifact
    """

    def __init__(self, weekly_anchor: int = 6, monthly_wins: bool = True,
                 full_tiers: Optional[FrozenSet[Tier]] = None):
        self.weekly_anchor = weekly_anchor
        self.monthly_wins = monthly_wins
        self.full_tiers = frozenset(full_tiers or ())

    def __repr__(self):
        return (
            f'<Schedule anchor={self.weekly_anchor} monthly_wins={self.monthly_wins} '
            f'full_tiers={sorted(t.value for t in self.full_tiers)}>'
        )


def parse_weekday(value) -> int:
    """
    Parse a weekday name ('sunday', 'sun') or number (0-6, Monday = 0).

    Raises:
        ValueError: If the value is not a recognizable weekday
    """
    if isinstance(value, int) and not isinstance(value, bool):
        day = value
    else:
        raw = str(value).strip().lower()
        if raw in WEEKDAYS:
            return WEEKDAYS[raw]
        try:
            day = int(raw)
        except ValueError:
            raise ValueError(f"Invalid weekday: {value!r}")

    if not 0 <= day <= 6:
        raise ValueError(f"Weekday out of range (0-6): {value!r}")
    return day


def decide_tier(now: datetime, schedule: Schedule) -> Tier:
    """
    Decide which retention tier a run at `now` belongs to.

    Args:
        now: Run timestamp (UTC)
        schedule: Tier schedule

    Returns:
        Tier for the artifact produced by this run
    """
    is_monthly = now.day == 1
    is_weekly = now.weekday() == schedule.weekly_anchor

    if is_monthly and is_weekly:
        return Tier.MONTHLY if schedule.monthly_wins else Tier.WEEKLY
    if is_monthly:
        return Tier.MONTHLY
    if is_weekly:
        return Tier.WEEKLY
    return Tier.DAILY


def decide_kind(has_verified_base: bool, tier: Tier, schedule: Schedule,
                incremental: bool = True) -> Kind:
    """
    Decide whether the run produces a FULL or INCREMENTAL artifact.

    FULL when there is nothing verified to build on, when the job disables
    incrementals, or when the tier is configured to always start a new chain.
    """
    if not has_verified_base or not incremental:
        return Kind.FULL
    if tier in schedule.full_tiers:
        return Kind.FULL
    return Kind.INCREMENTAL
