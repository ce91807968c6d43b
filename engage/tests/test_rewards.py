"""
Tests for reward issuance

Tests cover:
1. Daily check-in and the local calendar window
2. Concurrent claims of the same window
3. Task, comment and publish rewards
4. One-shot course completion
5. Atomicity when storage fails
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from engage import rewards, settings
from engage.errors import (
    AccountNotFound,
    TaskNotFound,
    CourseNotFound,
    StorageFailure,
)
from engage.ledger import get_balance, ledger_sum
from engage.models import (
    Comment,
    DailyTask,
    Notification,
    PointsLedger,
    TaskCompletion,
    CREDIT,
)
from engage.rewards import (
    CHECKIN,
    FIRST_COMMENT,
    ARTICLE_PUBLISH,
    check_eligibility,
    checkin,
    complete_task,
    course_action,
    reward_comment,
    reward_publish,
    record_course_progress,
    task_action,
    window_day,
    window_start,
)
from engage.tests.factories import (
    NOW,
    TOMORROW,
    add_article,
    add_course,
    add_user,
    task_id,
)


def count(db, model, **filters):
    return db.scalar(select(func.count()).select_from(model).filter_by(**filters))


class TestDayWindow:
    """The reward day is the calendar day in the configured timezone."""

    def test_window_day_uses_local_calendar(self):
        """16:00 UTC is already the next day in Shanghai."""
        assert window_day(datetime(2024, 5, 6, 15, 59)).day == 6
        assert window_day(datetime(2024, 5, 6, 16, 0)).day == 7

    def test_window_start_is_local_midnight_in_utc(self):
        assert window_start(NOW) == datetime(2024, 5, 5, 16, 0)


class TestCheckin:
    """Daily check-in grants once per day."""

    def test_first_checkin_grants(self, db):
        user = add_user(db)

        outcome = checkin(db, user, NOW)

        assert outcome.granted
        assert outcome.amount == 10
        assert outcome.balance == 10
        entry = db.scalar(select(PointsLedger).where(PointsLedger.user_id == user))
        assert entry.direction == CREDIT
        assert entry.ref_type == CHECKIN

    def test_second_checkin_same_day_is_not_granted(self, db):
        user = add_user(db)
        checkin(db, user, NOW)

        outcome = checkin(db, user, NOW + timedelta(hours=3))

        assert not outcome.granted
        assert outcome.amount == 0
        assert outcome.balance == 10
        assert count(db, PointsLedger, user_id=user) == 1

    def test_checkin_next_day_grants_again(self, db):
        user = add_user(db)
        checkin(db, user, NOW)

        outcome = checkin(db, user, TOMORROW)

        assert outcome.granted
        assert get_balance(db, user) == 20

    def test_local_midnight_opens_a_new_window(self, db):
        """23:59 and 00:01 local time are different days."""
        user = add_user(db)

        assert checkin(db, user, datetime(2024, 5, 6, 15, 59)).granted
        assert checkin(db, user, datetime(2024, 5, 6, 16, 1)).granted

    def test_checkin_reward_follows_task_catalog(self, db):
        user = add_user(db)
        task = db.get(DailyTask, task_id(db, "checkin"))
        task.reward = 15
        db.commit()

        assert checkin(db, user, NOW).amount == 15

    def test_checkin_tagged_entry_closes_the_window(self, db):
        """An earlier check-in credit without a completion record still counts."""
        user = add_user(db)
        db.add(
            PointsLedger(
                user_id=user,
                direction=CREDIT,
                amount=10,
                reason="Daily check-in reward",
                ref_type=CHECKIN,
                ts=NOW - timedelta(hours=1),
            )
        )
        db.commit()

        assert not check_eligibility(db, user, CHECKIN, NOW)
        assert not checkin(db, user, NOW).granted

    def test_unknown_user_raises(self, db):
        with pytest.raises(AccountNotFound):
            checkin(db, 999, NOW)


class TestConcurrentClaims:
    """Two sessions claiming the same window grant exactly once."""

    def test_racing_checkins_grant_once(self, db, session_factory, monkeypatch):
        user = add_user(db)
        other = session_factory()
        original = rewards.check_eligibility
        raced = []

        def eligibility_then_race(session, *args, **kwargs):
            result = original(session, *args, **kwargs)
            if not raced:
                raced.append(True)
                # the competing request commits after our guard passed
                assert rewards.checkin(other, user, NOW).granted
            return result

        monkeypatch.setattr(rewards, "check_eligibility", eligibility_then_race)

        outcome = checkin(db, user, NOW)
        other.close()

        assert not outcome.granted
        assert outcome.balance == 10
        assert count(db, PointsLedger, user_id=user) == 1
        assert count(db, TaskCompletion, user_id=user) == 1
        assert ledger_sum(db, user) == get_balance(db, user)

    def test_racing_task_completions_grant_once(self, db, session_factory, monkeypatch):
        user = add_user(db)
        read = task_id(db, "read")
        other = session_factory()
        original = rewards.check_eligibility
        raced = []

        def eligibility_then_race(session, *args, **kwargs):
            result = original(session, *args, **kwargs)
            if not raced:
                raced.append(True)
                rewards.complete_task(other, user, read, NOW)
            return result

        monkeypatch.setattr(rewards, "check_eligibility", eligibility_then_race)

        outcome = complete_task(db, user, read, NOW)
        other.close()

        assert not outcome.granted
        assert get_balance(db, user) == 5
        assert count(db, PointsLedger, user_id=user) == 1


class TestDailyTasks:
    """Completing catalog tasks."""

    def test_task_grants_its_reward_once_per_day(self, db):
        user = add_user(db)
        read = task_id(db, "read")

        first = complete_task(db, user, read, NOW)
        second = complete_task(db, user, read, NOW + timedelta(minutes=5))

        assert first.granted and first.amount == 5
        assert not second.granted
        assert get_balance(db, user) == 5

    def test_tasks_are_independent(self, db):
        user = add_user(db)

        complete_task(db, user, task_id(db, "read"), NOW)
        outcome = complete_task(db, user, task_id(db, "download"), NOW)

        assert outcome.granted
        assert get_balance(db, user) == 10

    def test_checkin_task_shares_the_checkin_window(self, db):
        """Completing the check-in task after checking in pays nothing."""
        user = add_user(db)
        checkin(db, user, NOW)

        outcome = complete_task(db, user, task_id(db, "checkin"), NOW)

        assert not outcome.granted
        assert count(db, TaskCompletion, user_id=user) == 1
        assert not check_eligibility(db, user, task_action(task_id(db, "checkin")), NOW)

    def test_missing_task_raises(self, db):
        user = add_user(db)
        with pytest.raises(TaskNotFound):
            complete_task(db, user, 999, NOW)

    def test_inactive_task_raises(self, db):
        user = add_user(db)
        read = task_id(db, "read")
        db.get(DailyTask, read).is_active = False
        db.commit()

        with pytest.raises(TaskNotFound):
            complete_task(db, user, read, NOW)
        assert check_eligibility(db, user, task_action(read), NOW).missing == "task"


class TestCommentAndPublish:
    """Engagement rewards outside the task catalog."""

    def test_first_comment_of_day_grants(self, db):
        user = add_user(db)
        article = add_article(db, add_user(db, name="Bob"))
        comment = Comment(article_id=article, author_id=user, content="Nice", created_at=NOW)
        db.add(comment)
        db.commit()

        outcome = reward_comment(db, user, comment.id, NOW)

        assert outcome.granted
        assert outcome.amount == settings.FIRST_COMMENT_REWARD

    def test_later_comments_same_day_are_not_granted(self, db):
        user = add_user(db)
        reward_comment(db, user, 1, NOW)

        outcome = reward_comment(db, user, 2, NOW + timedelta(hours=1))

        assert not outcome.granted
        assert get_balance(db, user) == 5

    def test_earlier_comment_today_blocks_the_reward(self, db):
        user = add_user(db)
        article = add_article(db, user)
        db.add(
            Comment(
                article_id=article,
                author_id=user,
                content="Morning",
                created_at=NOW - timedelta(hours=2),
            )
        )
        db.commit()

        assert not check_eligibility(db, user, FIRST_COMMENT, NOW)

    def test_comment_reward_resets_next_day(self, db):
        user = add_user(db)
        reward_comment(db, user, 1, NOW)

        assert reward_comment(db, user, 2, TOMORROW).granted

    def test_publish_is_uncapped(self, db):
        user = add_user(db)

        reward_publish(db, user, 1, "First", NOW)
        outcome = reward_publish(db, user, 2, "Second", NOW)

        assert outcome.granted
        assert get_balance(db, user) == 2 * settings.ARTICLE_PUBLISH_REWARD
        assert check_eligibility(db, user, ARTICLE_PUBLISH, NOW)


class TestCourseCompletion:
    """Reaching 100% pays once per course, ever."""

    def test_progress_below_100_pays_nothing(self, db):
        user = add_user(db)
        course = add_course(db)

        row, outcome = record_course_progress(db, user, course, 40, NOW)

        assert row.progress == 40
        assert row.completed_at is None
        assert not outcome.granted

    def test_completion_pays_exactly_once(self, db):
        user = add_user(db)
        course = add_course(db)

        outcomes = [
            record_course_progress(db, user, course, p, NOW + timedelta(minutes=i))[1]
            for i, p in enumerate([50, 100, 100, 60, 100])
        ]

        assert [o.granted for o in outcomes] == [False, True, False, False, False]
        assert get_balance(db, user) == settings.COURSE_COMPLETE_REWARD
        assert count(db, PointsLedger, user_id=user, ref_type="course") == 1
        assert not check_eligibility(db, user, course_action(course), NOW)

    def test_first_submission_at_100_pays(self, db):
        user = add_user(db)
        course = add_course(db)

        row, outcome = record_course_progress(db, user, course, 100, NOW)

        assert outcome.granted
        assert row.completed_at == NOW

    def test_progress_is_clamped(self, db):
        user = add_user(db)
        course = add_course(db)

        row, outcome = record_course_progress(db, user, course, 140, NOW)

        assert row.progress == 100
        assert outcome.granted

    def test_missing_course_raises(self, db):
        user = add_user(db)
        with pytest.raises(CourseNotFound):
            record_course_progress(db, user, 999, 100, NOW)
        assert check_eligibility(db, user, course_action(999), NOW).missing == "course"

    def test_course_action_cannot_be_issued_directly(self, db):
        user = add_user(db)
        course = add_course(db)
        with pytest.raises(ValueError):
            rewards.issue_reward(db, user, course_action(course), 50, "Completed", now=NOW)


class TestEligibility:
    """The read-only guard."""

    def test_missing_account_is_reported(self, db):
        result = check_eligibility(db, 999, CHECKIN, NOW)

        assert not result
        assert result.missing == "account"

    def test_fresh_user_is_eligible(self, db):
        user = add_user(db)
        assert check_eligibility(db, user, CHECKIN, NOW)

    def test_guard_does_not_write(self, db):
        user = add_user(db)
        check_eligibility(db, user, CHECKIN, NOW)

        assert count(db, TaskCompletion) == 0
        assert count(db, PointsLedger) == 0

    @pytest.mark.parametrize("action", ["bogus", "task:abc", "course-complete:"])
    def test_malformed_actions_raise(self, db, action):
        user = add_user(db)
        with pytest.raises(ValueError):
            check_eligibility(db, user, action, NOW)


class TestAtomicity:
    """A failed write leaves no partial state behind."""

    def test_storage_failure_rolls_back_completion(self, db, monkeypatch):
        user = add_user(db)

        def broken_write(*args, **kwargs):
            raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

        monkeypatch.setattr(rewards, "write_entry", broken_write)

        with pytest.raises(StorageFailure):
            checkin(db, user, NOW)

        assert count(db, TaskCompletion, user_id=user) == 0
        assert count(db, PointsLedger, user_id=user) == 0
        assert get_balance(db, user) == 0

    def test_retry_after_failure_succeeds(self, db, monkeypatch):
        user = add_user(db)

        def locked(*args, **kwargs):
            raise OperationalError("UPDATE users", {}, Exception("database is locked"))

        monkeypatch.setattr(rewards, "write_entry", locked)
        with pytest.raises(StorageFailure):
            checkin(db, user, NOW)
        monkeypatch.undo()

        assert checkin(db, user, NOW).granted
        assert get_balance(db, user) == 10


class TestLevelUp:
    """Crossing a level boundary sends a notification."""

    def test_level_up_notifies(self, db, monkeypatch):
        monkeypatch.setattr(settings, "LEVEL_STEP", 10)
        user = add_user(db)

        checkin(db, user, NOW)

        note = db.scalar(select(Notification).where(Notification.user_id == user))
        assert note is not None
        assert note.type == "level_up"
        assert "level 2" in note.title

    def test_no_notification_within_level(self, db):
        user = add_user(db)
        checkin(db, user, NOW)

        assert count(db, Notification, user_id=user) == 0
