"""Company activities: sign-up and polls.

Registration is a toggle. Capacity is re-counted after the insert inside the
same transaction, so the last seat cannot be handed out twice. Each user has
one ballot per activity, enforced by the ``uq_vote_per_user`` key.
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import settings
from .db import atomic
from .errors import (
    ActivityNotFound,
    ActivityClosed,
    ActivityFull,
    AlreadyVoted,
    VoteOptionNotFound,
    StorageFailure,
)
from .models import (
    Activity,
    ActivityRegistration,
    VoteOption,
    UserVote,
    ENDED,
    utcnow,
)

log = logging.getLogger("engage.activities")


def to_utc(value: datetime) -> datetime:
    """Naive UTC for storage; naive input is taken as local time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(settings.APP_TIMEZONE))
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """[start, end) of a local calendar month, as naive UTC."""
    start = datetime(year, month, 1)
    end = datetime(year + month // 12, month % 12 + 1, 1)
    return to_utc(start), to_utc(end)


def local_day(value: datetime) -> str:
    tz = ZoneInfo(settings.APP_TIMEZONE)
    return value.replace(tzinfo=timezone.utc).astimezone(tz).date().isoformat()


def participants(db: Session, activity_id: int) -> int:
    return (
        db.scalar(
            select(func.count())
            .select_from(ActivityRegistration)
            .where(ActivityRegistration.activity_id == activity_id)
        )
        or 0
    )


def is_registered(db: Session, user_id: int, activity_id: int) -> bool:
    return _registration(db, user_id, activity_id) is not None


def voted_option(db: Session, user_id: int, activity_id: int) -> int | None:
    return db.scalar(
        select(UserVote.option_id).where(
            UserVote.activity_id == activity_id, UserVote.user_id == user_id
        )
    )


def calendar(db: Session, year: int, month: int) -> dict[str, list[Activity]]:
    start, end = month_bounds(year, month)
    days: dict[str, list[Activity]] = {}
    for a in db.scalars(
        select(Activity)
        .where(Activity.starts_at >= start, Activity.starts_at < end)
        .order_by(Activity.starts_at, Activity.id)
    ):
        days.setdefault(local_day(a.starts_at), []).append(a)
    return days


def _registration(
    db: Session, user_id: int, activity_id: int
) -> ActivityRegistration | None:
    return db.scalar(
        select(ActivityRegistration).where(
            ActivityRegistration.activity_id == activity_id,
            ActivityRegistration.user_id == user_id,
        )
    )


def _get_activity(db: Session, activity_id: int) -> Activity:
    activity = db.get(Activity, activity_id)
    if activity is None:
        raise ActivityNotFound(f"Activity {activity_id} not found")
    return activity


def toggle_registration(
    db: Session, user_id: int, activity_id: int, now: datetime | None = None
) -> bool:
    """Sign up, or cancel an existing sign-up. Returns the new state."""
    now = now or utcnow()
    activity = _get_activity(db, activity_id)
    existing = _registration(db, user_id, activity_id)
    if existing is None and activity.status == ENDED:
        raise ActivityClosed(f"{activity.title} has ended")
    limit = activity.max_participants

    try:
        with atomic(db):
            if existing is not None:
                db.delete(existing)
            else:
                db.add(
                    ActivityRegistration(
                        activity_id=activity_id, user_id=user_id, created_at=now
                    )
                )
                db.flush()
                if limit and participants(db, activity_id) > limit:
                    raise ActivityFull(f"{activity.title} is full")
    except ActivityFull:
        log.info("registration of user %s for %s rejected: full", user_id, activity_id)
        raise
    except IntegrityError as exc:
        if _registration(db, user_id, activity_id) is None:
            log.exception("registration for activity %s violated a constraint", activity_id)
            raise StorageFailure(str(exc)) from exc
        # a concurrent request signed up first; report that state
        return True
    except SQLAlchemyError as exc:
        log.exception("registration for activity %s could not be stored", activity_id)
        raise StorageFailure(str(exc)) from exc

    registered = existing is None
    log.info(
        "user %s %s activity %s",
        user_id,
        "registered for" if registered else "cancelled",
        activity_id,
    )
    return registered


def cast_vote(
    db: Session, user_id: int, activity_id: int, option_id: int, now: datetime | None = None
) -> VoteOption:
    now = now or utcnow()
    activity = _get_activity(db, activity_id)
    if not activity.options:
        raise ActivityNotFound(f"Activity {activity_id} has no poll")
    if not any(o.id == option_id for o in activity.options):
        raise VoteOptionNotFound(f"Option {option_id} not found")
    if voted_option(db, user_id, activity_id) is not None:
        raise AlreadyVoted("You have already voted")

    try:
        with atomic(db):
            db.add(
                UserVote(
                    activity_id=activity_id,
                    user_id=user_id,
                    option_id=option_id,
                    created_at=now,
                )
            )
            db.flush()
            db.execute(
                update(VoteOption)
                .where(VoteOption.id == option_id)
                .values(count=VoteOption.count + 1)
                .execution_options(synchronize_session=False)
            )
    except IntegrityError as exc:
        if voted_option(db, user_id, activity_id) is not None:
            raise AlreadyVoted("You have already voted") from None
        log.exception("vote on activity %s violated a constraint", activity_id)
        raise StorageFailure(str(exc)) from exc
    except SQLAlchemyError as exc:
        log.exception("vote on activity %s could not be stored", activity_id)
        raise StorageFailure(str(exc)) from exc

    log.info("user %s voted %s on activity %s", user_id, option_id, activity_id)
    return db.get(VoteOption, option_id)
