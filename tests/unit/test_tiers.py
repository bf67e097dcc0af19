"""
Unit tests for tier and kind decisions (gfskeeper/backup/tiers.py).
"""

from datetime import datetime

import pytest

from gfskeeper.backup.tiers import Schedule, decide_tier, decide_kind, parse_weekday
from gfskeeper.models import Tier, Kind


class TestParseWeekday:
    """Test weekday parsing."""

    @pytest.mark.parametrize('value,expected', [
        ('sunday', 6), ('Sunday', 6), ('sun', 6), ('monday', 0), (' fri ', 4),
        ('0', 0), ('6', 6), (3, 3),
    ])
    def test_valid_values(self, value, expected):
        """Names, abbreviations and numbers are accepted."""
        assert parse_weekday(value) == expected

    @pytest.mark.parametrize('value', ['funday', '7', -1, 9, ''])
    def test_invalid_values(self, value):
        """Unknown names and out-of-range numbers are rejected."""
        with pytest.raises(ValueError):
            parse_weekday(value)


class TestDecideTier:
    """Test grandfather-father-son tier selection."""

    def test_first_of_month_is_monthly(self):
        """2024-01-01 is a Monday: only the monthly condition holds."""
        assert decide_tier(datetime(2024, 1, 1, 2, 0), Schedule()) == Tier.MONTHLY

    def test_anchor_day_is_weekly(self):
        """2024-01-07 is a Sunday (default anchor)."""
        assert decide_tier(datetime(2024, 1, 7, 2, 0), Schedule()) == Tier.WEEKLY

    def test_other_days_are_daily(self):
        """2024-01-02 is a Tuesday."""
        assert decide_tier(datetime(2024, 1, 2, 2, 0), Schedule()) == Tier.DAILY

    def test_monthly_wins_when_first_is_anchor(self):
        """2023-10-01 is both the 1st and a Sunday: MONTHLY by default."""
        assert decide_tier(datetime(2023, 10, 1, 2, 0), Schedule()) == Tier.MONTHLY

    def test_weekly_wins_when_configured(self):
        """Tie-break can be flipped to WEEKLY."""
        schedule = Schedule(monthly_wins=False)
        assert decide_tier(datetime(2023, 10, 1, 2, 0), schedule) == Tier.WEEKLY

    def test_custom_anchor(self):
        """A Monday anchor makes Mondays weekly and Sundays daily."""
        schedule = Schedule(weekly_anchor=0)
        assert decide_tier(datetime(2024, 1, 8), schedule) == Tier.WEEKLY
        assert decide_tier(datetime(2024, 1, 7), schedule) == Tier.DAILY

    def test_exactly_one_tier_for_every_day_of_a_year(self):
        """Every day maps to exactly one tier; months start MONTHLY."""
        schedule = Schedule()
        day = datetime(2024, 1, 1)
        counts = {Tier.DAILY: 0, Tier.WEEKLY: 0, Tier.MONTHLY: 0}
        for offset in range(366):
            current = datetime.fromordinal(day.toordinal() + offset)
            tier = decide_tier(current, schedule)
            counts[tier] += 1
            if current.day == 1:
                assert tier == Tier.MONTHLY
        assert counts[Tier.MONTHLY] == 12
        assert sum(counts.values()) == 366


class TestDecideKind:
    """Test FULL / INCREMENTAL selection."""

    def test_full_without_verified_base(self):
        """Nothing verified to build on: FULL."""
        assert decide_kind(False, Tier.DAILY, Schedule()) == Kind.FULL

    def test_incremental_with_verified_base(self):
        """A verified base allows an incremental."""
        assert decide_kind(True, Tier.DAILY, Schedule()) == Kind.INCREMENTAL

    def test_full_when_job_disables_incrementals(self):
        """incremental=False always produces FULL."""
        assert decide_kind(True, Tier.DAILY, Schedule(), incremental=False) == Kind.FULL

    def test_full_backup_tiers(self):
        """Tiers listed in full_tiers always start a new chain."""
        schedule = Schedule(full_tiers=frozenset({Tier.MONTHLY}))
        assert decide_kind(True, Tier.MONTHLY, schedule) == Kind.FULL
        assert decide_kind(True, Tier.WEEKLY, schedule) == Kind.INCREMENTAL
