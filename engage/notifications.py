from __future__ import annotations
import logging
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import Notification

log = logging.getLogger("engage.notifications")


def notify(
    db: Session,
    user_id: int,
    type: str,
    title: str,
    content: str = "",
    link: str | None = None,
) -> Notification:
    """Queue an in-app notification on the caller's transaction."""
    n = Notification(
        user_id=user_id, type=type, title=title, content=content[:500], link=link
    )
    db.add(n)
    return n


def notify_level_up(db: Session, user_id: int, level: int) -> None:
    # best effort: the reward is already committed, a lost notice is acceptable
    try:
        notify(
            db,
            user_id,
            "level_up",
            f"You reached level {level}",
            f"Your points balance moved you up to level {level}.",
            link="/profile",
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.warning("level-up notification for user %s was not stored", user_id)


def list_for(
    db: Session, user_id: int, page: int, limit: int, unread_only: bool = False
) -> tuple[list[Notification], int, int]:
    where = [Notification.user_id == user_id]
    if unread_only:
        where.append(Notification.is_read.is_(False))
    items = db.scalars(
        select(Notification)
        .where(*where)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((max(page, 1) - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Notification).where(*where))
    unread = db.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    )
    return list(items), total or 0, unread or 0


def mark_all_read(db: Session, user_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount
