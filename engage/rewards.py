"""Reward issuance with at-most-once semantics per eligibility window.

Actions are identified by a discriminator string:

* ``checkin`` -- once per calendar day
* ``task:<id>`` -- once per calendar day and task
* ``first-comment-of-day`` -- once per calendar day
* ``course-complete:<id>`` -- once ever per course
* ``article-publish`` -- uncapped

The calendar day is taken in ``settings.APP_TIMEZONE``. ``check_eligibility``
is only a fast path: two requests can both pass it before either commits.
The unique key on ``task_completions`` (and, for courses, a conditional
UPDATE on ``course_progress``) decides who wins, and the loser gets
``granted=False`` with nothing written.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import settings
from .db import atomic
from .errors import AccountNotFound, TaskNotFound, CourseNotFound, StorageFailure
from .ledger import get_balance, level_for, write_entry
from .models import (
    User,
    DailyTask,
    TaskCompletion,
    PointsLedger,
    Comment,
    Course,
    CourseProgress,
    CREDIT,
    utcnow,
)
from .notifications import notify_level_up

log = logging.getLogger("engage.rewards")

CHECKIN = "checkin"
FIRST_COMMENT = "first-comment-of-day"
ARTICLE_PUBLISH = "article-publish"
TASK_PREFIX = "task:"
COURSE_PREFIX = "course-complete:"

CHECKIN_KIND = "checkin"


def task_action(task_id: int) -> str:
    return f"{TASK_PREFIX}{task_id}"


def course_action(course_id: int) -> str:
    return f"{COURSE_PREFIX}{course_id}"


def _ref_id(action: str, prefix: str) -> int:
    try:
        return int(action[len(prefix):])
    except ValueError:
        raise ValueError(f"Malformed reward action {action!r}") from None


def is_windowed(action: str) -> bool:
    return action in (CHECKIN, FIRST_COMMENT) or action.startswith(TASK_PREFIX)


# --- Day window ---


def window_day(now: datetime) -> date:
    """Local calendar day of a naive-UTC instant."""
    tz = ZoneInfo(settings.APP_TIMEZONE)
    return now.replace(tzinfo=timezone.utc).astimezone(tz).date()


def window_start(now: datetime) -> datetime:
    """Local midnight of ``now``'s day, as naive UTC."""
    tz = ZoneInfo(settings.APP_TIMEZONE)
    midnight = datetime.combine(window_day(now), time.min, tzinfo=tz)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


# --- Eligibility guard ---


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    missing: str | None = None  # "account" / "task" / "course"

    def __bool__(self) -> bool:
        return self.eligible


INELIGIBLE = Eligibility(False)
ELIGIBLE = Eligibility(True)


def checkin_task(db: Session) -> DailyTask | None:
    return db.scalar(
        select(DailyTask)
        .where(DailyTask.kind == CHECKIN_KIND, DailyTask.is_active)
        .order_by(DailyTask.id)
        .limit(1)
    )


def _claimed(db: Session, user_id: int, action: str, day: date) -> bool:
    return (
        db.scalar(
            select(TaskCompletion.id).where(
                TaskCompletion.user_id == user_id,
                TaskCompletion.action == action,
                TaskCompletion.completed_on == day,
            )
        )
        is not None
    )


def check_eligibility(
    db: Session, user_id: int, action: str, now: datetime | None = None
) -> Eligibility:
    """Has ``user_id`` not yet claimed ``action`` in the window containing ``now``?

    Read only. Dangling references come back ineligible with ``missing`` set.
    """
    now = now or utcnow()
    if db.get(User, user_id) is None:
        return Eligibility(False, missing="account")

    if action == ARTICLE_PUBLISH:
        return ELIGIBLE

    if action.startswith(COURSE_PREFIX):
        course_id = _ref_id(action, COURSE_PREFIX)
        if db.get(Course, course_id) is None:
            return Eligibility(False, missing="course")
        completed_at = db.scalar(
            select(CourseProgress.completed_at).where(
                CourseProgress.user_id == user_id,
                CourseProgress.course_id == course_id,
            )
        )
        return INELIGIBLE if completed_at is not None else ELIGIBLE

    day = window_day(now)
    if action.startswith(TASK_PREFIX):
        task = db.get(DailyTask, _ref_id(action, TASK_PREFIX))
        if task is None or not task.is_active:
            return Eligibility(False, missing="task")
        if task.kind == CHECKIN_KIND:
            action = CHECKIN
        else:
            return INELIGIBLE if _claimed(db, user_id, action, day) else ELIGIBLE

    if action == CHECKIN:
        if _claimed(db, user_id, CHECKIN, day):
            return INELIGIBLE
        tagged = db.scalar(
            select(PointsLedger.id)
            .where(
                PointsLedger.user_id == user_id,
                PointsLedger.ref_type == CHECKIN,
                PointsLedger.ts >= window_start(now),
            )
            .limit(1)
        )
        return INELIGIBLE if tagged is not None else ELIGIBLE

    if action == FIRST_COMMENT:
        if _claimed(db, user_id, FIRST_COMMENT, day):
            return INELIGIBLE
        earlier = db.scalar(
            select(Comment.id)
            .where(
                Comment.author_id == user_id,
                Comment.created_at >= window_start(now),
                Comment.created_at < now,
            )
            .limit(1)
        )
        return INELIGIBLE if earlier is not None else ELIGIBLE

    raise ValueError(f"Unknown reward action {action!r}")


def _raise_missing(eligibility: Eligibility, user_id: int, action: str) -> None:
    if eligibility.missing == "account":
        raise AccountNotFound(f"User {user_id} not found")
    if eligibility.missing == "task":
        raise TaskNotFound(f"Task for {action} not found")
    if eligibility.missing == "course":
        raise CourseNotFound(f"Course for {action} not found")


# --- Issuer ---


@dataclass(frozen=True)
class RewardOutcome:
    granted: bool
    amount: int
    balance: int


def issue_reward(
    db: Session,
    user_id: int,
    action: str,
    amount: int,
    reason: str,
    ref_type: str | None = None,
    ref_id: int | None = None,
    now: datetime | None = None,
) -> RewardOutcome:
    """Grant ``amount`` points for ``action`` unless already claimed.

    Ledger entry, balance increment and (for windowed actions) the completion
    record commit together or not at all. Losing a race on the completion
    record is reported as ``granted=False``, never raised.
    """
    if amount <= 0:
        raise ValueError("Reward amount must be positive")
    now = now or utcnow()

    eligibility = check_eligibility(db, user_id, action, now)
    _raise_missing(eligibility, user_id, action)
    if action.startswith(COURSE_PREFIX):
        raise ValueError("Course rewards are issued by record_course_progress")
    if not eligibility:
        log.info("reward %s already claimed by user %s", action, user_id)
        return RewardOutcome(False, 0, get_balance(db, user_id))

    action, task_id = _normalize(db, action)
    day = window_day(now)
    try:
        with atomic(db):
            if is_windowed(action):
                db.add(
                    TaskCompletion(
                        user_id=user_id,
                        action=action,
                        task_id=task_id,
                        completed_on=day,
                        completed_at=now,
                    )
                )
            write_entry(db, user_id, CREDIT, amount, reason, ref_type, ref_id, now)
    except IntegrityError as exc:
        if is_windowed(action) and _claimed(db, user_id, action, day):
            log.info("reward %s for user %s lost a concurrent claim", action, user_id)
            return RewardOutcome(False, 0, get_balance(db, user_id))
        log.exception("reward %s for user %s violated a constraint", action, user_id)
        raise StorageFailure(str(exc)) from exc
    except SQLAlchemyError as exc:
        log.exception("reward %s for user %s could not be stored", action, user_id)
        raise StorageFailure(str(exc)) from exc

    balance = get_balance(db, user_id)
    log.info("granted %s points to user %s for %s", amount, user_id, action)
    _after_credit(db, user_id, balance - amount, balance)
    return RewardOutcome(True, amount, balance)


def _normalize(db: Session, action: str) -> tuple[str, int | None]:
    """Map a check-in task onto the check-in action and resolve the task id."""
    if action == CHECKIN:
        task = checkin_task(db)
        return CHECKIN, task.id if task else None
    if action.startswith(TASK_PREFIX):
        task_id = _ref_id(action, TASK_PREFIX)
        task = db.get(DailyTask, task_id)
        if task is not None and task.kind == CHECKIN_KIND:
            return CHECKIN, task_id
        return action, task_id
    return action, None


def _after_credit(db: Session, user_id: int, before: int, after: int) -> None:
    old, new = level_for(before), level_for(after)
    if new > old:
        notify_level_up(db, user_id, new)


# --- Action helpers used by the HTTP layer ---


def checkin(db: Session, user_id: int, now: datetime | None = None) -> RewardOutcome:
    task = checkin_task(db)
    amount = task.reward if task else settings.CHECKIN_REWARD
    return issue_reward(
        db, user_id, CHECKIN, amount, "Daily check-in reward", ref_type=CHECKIN, now=now
    )


def complete_task(
    db: Session, user_id: int, task_id: int, now: datetime | None = None
) -> RewardOutcome:
    task = db.get(DailyTask, task_id)
    if task is None or not task.is_active:
        raise TaskNotFound(f"Task {task_id} not found")
    if task.kind == CHECKIN_KIND:
        return checkin(db, user_id, now)
    return issue_reward(
        db,
        user_id,
        task_action(task_id),
        task.reward,
        f"Complete task: {task.title}",
        ref_type="task",
        ref_id=task_id,
        now=now,
    )


def reward_comment(
    db: Session, user_id: int, comment_id: int, now: datetime | None = None
) -> RewardOutcome:
    return issue_reward(
        db,
        user_id,
        FIRST_COMMENT,
        settings.FIRST_COMMENT_REWARD,
        "First comment of the day",
        ref_type="comment",
        ref_id=comment_id,
        now=now,
    )


def reward_publish(
    db: Session, user_id: int, article_id: int, title: str, now: datetime | None = None
) -> RewardOutcome:
    return issue_reward(
        db,
        user_id,
        ARTICLE_PUBLISH,
        settings.ARTICLE_PUBLISH_REWARD,
        f"Published article: {title}",
        ref_type="article",
        ref_id=article_id,
        now=now,
    )


def record_course_progress(
    db: Session,
    user_id: int,
    course_id: int,
    progress: int,
    now: datetime | None = None,
    _retry: bool = True,
) -> tuple[CourseProgress, RewardOutcome]:
    """Store study progress; the first time it reaches 100 awards the course reward.

    ``completed_at`` is stamped once, by a conditional UPDATE in the same
    transaction as the credit, so re-submitting 100 (or racing) never pays twice.
    """
    now = now or utcnow()
    progress = max(0, min(progress, 100))
    course = db.get(Course, course_id)
    if course is None:
        raise CourseNotFound(f"Course {course_id} not found")
    if db.get(User, user_id) is None:
        raise AccountNotFound(f"User {user_id} not found")

    amount = settings.COURSE_COMPLETE_REWARD
    title = course.title
    completing = progress >= 100
    try:
        with atomic(db):
            row = db.scalar(
                select(CourseProgress).where(
                    CourseProgress.user_id == user_id,
                    CourseProgress.course_id == course_id,
                )
            )
            if row is None:
                row = CourseProgress(
                    user_id=user_id,
                    course_id=course_id,
                    progress=progress,
                    last_studied_at=now,
                    completed_at=now if completing else None,
                )
                db.add(row)
                db.flush()
                transitioned = completing
            else:
                transitioned = False
                if completing:
                    stamped = db.execute(
                        update(CourseProgress)
                        .where(
                            CourseProgress.id == row.id,
                            CourseProgress.completed_at.is_(None),
                        )
                        .values(completed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    transitioned = stamped.rowcount == 1
                row.progress = progress
                row.last_studied_at = now
            if transitioned:
                write_entry(
                    db,
                    user_id,
                    CREDIT,
                    amount,
                    f"Completed course: {title}",
                    ref_type="course",
                    ref_id=course_id,
                    now=now,
                )
    except IntegrityError as exc:
        # a concurrent first submission created the row; apply ours on top of it
        if not _retry or _progress_row(db, user_id, course_id) is None:
            log.exception("course progress for user %s violated a constraint", user_id)
            raise StorageFailure(str(exc)) from exc
        return record_course_progress(
            db, user_id, course_id, progress, now, _retry=False
        )
    except SQLAlchemyError as exc:
        log.exception("course progress for user %s could not be stored", user_id)
        raise StorageFailure(str(exc)) from exc

    balance = get_balance(db, user_id)
    if transitioned:
        log.info("user %s completed course %s, granted %s", user_id, course_id, amount)
        _after_credit(db, user_id, balance - amount, balance)
        outcome = RewardOutcome(True, amount, balance)
    else:
        outcome = RewardOutcome(False, 0, balance)
    row = _progress_row(db, user_id, course_id)
    return row, outcome


def _progress_row(db: Session, user_id: int, course_id: int) -> CourseProgress | None:
    return db.scalar(
        select(CourseProgress).where(
            CourseProgress.user_id == user_id, CourseProgress.course_id == course_id
        )
    )
