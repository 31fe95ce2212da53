import pytest
from datetime import date, datetime, timezone

from ledger.service import LedgerService, UserNotFoundError
from ledger.streak import next_streak


DAY1 = date(2024, 3, 1)
DAY2 = date(2024, 3, 2)
DAY3 = date(2024, 3, 3)


class TestNextStreak:
    """Tests for the pure streak rule."""

    def test_first_activity_starts_at_one(self):
        """No prior date starts a streak of one."""
        assert next_streak(0, None, DAY1) == (1, DAY1)

    def test_same_day_is_unchanged(self):
        """Repeat activity on the same day changes nothing."""
        assert next_streak(4, DAY2, DAY2) == (4, DAY2)

    def test_next_day_extends(self):
        """Activity on the following day adds one."""
        assert next_streak(4, DAY1, DAY2) == (5, DAY2)

    @pytest.mark.parametrize("today", [date(2024, 3, 3), date(2024, 3, 20), date(2025, 3, 2)])
    def test_gap_resets(self, today):
        """A missed day restarts the streak."""
        assert next_streak(9, DAY1, today) == (1, today)

    def test_month_and_year_boundaries_count_as_consecutive(self):
        """Calendar boundaries still count as the next day."""
        assert next_streak(2, date(2024, 2, 29), date(2024, 3, 1)) == (3, date(2024, 3, 1))
        assert next_streak(2, date(2023, 12, 31), date(2024, 1, 1)) == (3, date(2024, 1, 1))


class TestUpdateStreak:
    """Streak stored on the user, driven by an injected date."""

    def setup_method(self):
        self.service = LedgerService(clock=lambda: datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.user = self.service.connect_wallet("S" * 58)

    def test_consecutive_days_count_up(self):
        """Three days in a row reach three."""
        results = [self.service.update_streak(self.user.id, d) for d in (DAY1, DAY2, DAY3)]

        assert results == [1, 2, 3]
        user = self.service.get_user(self.user.id)
        assert user.streak_count == 3
        assert user.last_streak_date == DAY3

    def test_same_day_twice_is_stable(self):
        """A second update on the same day returns the same count."""
        first = self.service.update_streak(self.user.id, DAY1)
        second = self.service.update_streak(self.user.id, DAY1)

        assert first == second == 1

    def test_gap_of_two_days_resets(self):
        """Skipping a day resets to one on the new date."""
        self.service.update_streak(self.user.id, DAY1)
        self.service.update_streak(self.user.id, DAY2)

        assert self.service.update_streak(self.user.id, date(2024, 3, 4)) == 1
        assert self.service.get_user(self.user.id).last_streak_date == date(2024, 3, 4)

    def test_defaults_to_clock_date(self):
        """Without a date the service clock decides the day."""
        assert self.service.update_streak(self.user.id) == 1
        assert self.service.get_user(self.user.id).last_streak_date == DAY1

    def test_unknown_user(self):
        """Updating an unknown user fails."""
        with pytest.raises(UserNotFoundError):
            self.service.update_streak(999, DAY1)
