"""
Tests for company activities

Tests cover:
1. Registration toggle, closed and full activities
2. Last-seat race between two sessions
3. One ballot per user and activity
4. Local calendar months
"""

from datetime import datetime

import pytest
from sqlalchemy import select, func

from engage import activities
from engage.activities import (
    calendar,
    cast_vote,
    is_registered,
    month_bounds,
    participants,
    to_utc,
    toggle_registration,
    voted_option,
)
from engage.errors import (
    ActivityClosed,
    ActivityFull,
    ActivityNotFound,
    AlreadyVoted,
    VoteOptionNotFound,
)
from engage.models import Activity, ActivityRegistration, UserVote, VoteOption
from engage.tests.factories import NOW, add_activity, add_user, option_ids


class TestRegistration:
    """Signing up is a toggle."""

    def test_register_then_cancel(self, db):
        user = add_user(db)
        activity = add_activity(db, user)

        assert toggle_registration(db, user, activity, NOW) is True
        assert is_registered(db, user, activity)
        assert participants(db, activity) == 1

        assert toggle_registration(db, user, activity, NOW) is False
        assert not is_registered(db, user, activity)
        assert participants(db, activity) == 0

    def test_ended_activity_rejects_new_sign_ups(self, db):
        user = add_user(db)
        activity = add_activity(db, user, status="ended")

        with pytest.raises(ActivityClosed):
            toggle_registration(db, user, activity, NOW)

    def test_sign_up_can_be_cancelled_after_the_end(self, db):
        user = add_user(db)
        activity = add_activity(db, user)
        toggle_registration(db, user, activity, NOW)
        db.get(Activity, activity).status = "ended"
        db.commit()

        assert toggle_registration(db, user, activity, NOW) is False
        assert db.scalar(select(func.count()).select_from(ActivityRegistration)) == 0

    def test_full_activity_rejects(self, db):
        alice = add_user(db, name="Alice")
        bob = add_user(db, name="Bob")
        activity = add_activity(db, alice, max_participants=1)
        toggle_registration(db, alice, activity, NOW)

        with pytest.raises(ActivityFull):
            toggle_registration(db, bob, activity, NOW)

        assert participants(db, activity) == 1
        assert not is_registered(db, bob, activity)

    def test_missing_activity(self, db):
        user = add_user(db)
        with pytest.raises(ActivityNotFound):
            toggle_registration(db, user, 999, NOW)


class TestLastSeatRace:
    """Capacity is re-checked inside the writing transaction."""

    def test_last_seat_goes_to_one_user(self, db, session_factory, monkeypatch):
        alice = add_user(db, name="Alice")
        bob = add_user(db, name="Bob")
        activity = add_activity(db, alice, max_participants=1)
        other = session_factory()
        original = activities._get_activity
        raced = []

        def load_then_race(session, activity_id):
            result = original(session, activity_id)
            if not raced:
                raced.append(True)
                assert activities.toggle_registration(other, bob, activity_id, NOW)
            return result

        monkeypatch.setattr(activities, "_get_activity", load_then_race)

        with pytest.raises(ActivityFull):
            toggle_registration(db, alice, activity, NOW)
        other.close()

        assert participants(db, activity) == 1
        assert is_registered(db, bob, activity)
        assert not is_registered(db, alice, activity)


class TestVoting:
    """One ballot per user and activity."""

    def test_vote_counts_once(self, db):
        user = add_user(db)
        activity = add_activity(db, user, options=["Lake", "Hills"])
        lake, hills = option_ids(db, activity)

        option = cast_vote(db, user, activity, hills, NOW)

        assert option.count == 1
        assert voted_option(db, user, activity) == hills
        with pytest.raises(AlreadyVoted):
            cast_vote(db, user, activity, lake, NOW)
        assert db.get(VoteOption, lake).count == 0
        assert db.get(VoteOption, hills).count == 1

    def test_option_must_belong_to_the_activity(self, db):
        user = add_user(db)
        first = add_activity(db, user, options=["Lake"])
        second = add_activity(db, user, title="Quiz night", options=["Trivia"])
        (trivia,) = option_ids(db, second)

        with pytest.raises(VoteOptionNotFound):
            cast_vote(db, user, first, trivia, NOW)

    def test_activity_without_poll(self, db):
        user = add_user(db)
        activity = add_activity(db, user)

        with pytest.raises(ActivityNotFound):
            cast_vote(db, user, activity, 1, NOW)

    def test_racing_ballots_count_once(self, db, session_factory, monkeypatch):
        user = add_user(db)
        activity = add_activity(db, user, options=["Lake", "Hills"])
        lake, hills = option_ids(db, activity)
        other = session_factory()
        original = activities.voted_option
        raced = []

        def check_then_race(session, user_id, activity_id):
            result = original(session, user_id, activity_id)
            if not raced:
                raced.append(True)
                activities.cast_vote(other, user_id, activity_id, lake, NOW)
            return result

        monkeypatch.setattr(activities, "voted_option", check_then_race)

        with pytest.raises(AlreadyVoted):
            cast_vote(db, user, activity, hills, NOW)
        other.close()

        assert db.scalar(select(func.count()).select_from(UserVote)) == 1
        assert db.get(VoteOption, lake).count == 1
        assert db.get(VoteOption, hills).count == 0


class TestCalendar:
    """Months and days are local."""

    def test_month_bounds_wrap_the_year(self):
        assert month_bounds(2024, 12) == (
            datetime(2024, 11, 30, 16, 0),
            datetime(2024, 12, 31, 16, 0),
        )

    def test_naive_input_is_local_time(self):
        assert to_utc(datetime(2024, 5, 7, 1, 0)) == datetime(2024, 5, 6, 17, 0)

    def test_activities_grouped_by_local_day(self, db):
        user = add_user(db)
        add_activity(db, user, title="Breakfast talk", starts_at=datetime(2024, 5, 6, 17, 0))
        add_activity(db, user, title="Lunch talk", starts_at=NOW)
        add_activity(db, user, title="June fair", starts_at=datetime(2024, 6, 10, 4, 0))

        days = calendar(db, 2024, 5)

        assert sorted(days) == ["2024-05-06", "2024-05-07"]
        assert [a.title for a in days["2024-05-07"]] == ["Breakfast talk"]
