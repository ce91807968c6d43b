"""Balances, ledger history and the leaderboard.

``write_entry`` is the only balance writer. Callers (``rewards``, ``spend``)
run it inside their own transaction so a balance change and its ledger
entry commit together.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from . import settings
from .errors import AccountNotFound, InsufficientBalance
from .models import User, PointsLedger, CREDIT, DEBIT

MEDALS = ("gold", "silver", "bronze")


@dataclass(frozen=True)
class LedgerPage:
    entries: list[PointsLedger]
    total_count: int


@dataclass(frozen=True)
class LeaderboardRow:
    user_id: int
    name: str
    department: str
    points: int
    rank: int

    @property
    def medal(self) -> str:
        return MEDALS[self.rank - 1] if self.rank <= len(MEDALS) else "none"


def level_for(points: int) -> int:
    return points // settings.LEVEL_STEP + 1


def get_balance(db: Session, user_id: int) -> int:
    points = db.scalar(select(User.points).where(User.id == user_id))
    if points is None:
        raise AccountNotFound(f"User {user_id} not found")
    return points


def get_ledger(
    db: Session, user_id: int, page: int = 1, page_size: int = 20
) -> LedgerPage:
    """Newest first; entries written in the same instant keep insertion order."""
    if db.get(User, user_id) is None:
        raise AccountNotFound(f"User {user_id} not found")
    page = max(page, 1)
    where = PointsLedger.user_id == user_id
    entries = db.scalars(
        select(PointsLedger)
        .where(where)
        .order_by(PointsLedger.ts.desc(), PointsLedger.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    total = db.scalar(select(func.count()).select_from(PointsLedger).where(where))
    return LedgerPage(entries=list(entries), total_count=total or 0)


def ledger_sum(db: Session, user_id: int) -> int:
    """Balance as implied by the ledger alone."""
    credits = db.scalar(
        select(func.coalesce(func.sum(PointsLedger.amount), 0)).where(
            PointsLedger.user_id == user_id, PointsLedger.direction == CREDIT
        )
    )
    debits = db.scalar(
        select(func.coalesce(func.sum(PointsLedger.amount), 0)).where(
            PointsLedger.user_id == user_id, PointsLedger.direction == DEBIT
        )
    )
    return int(credits) - int(debits)


def get_leaderboard(db: Session, limit: int = 10) -> list[LeaderboardRow]:
    # ties: the account created first ranks higher, then the lower id
    users = db.scalars(
        select(User)
        .order_by(User.points.desc(), User.created_at.asc(), User.id.asc())
        .limit(limit)
    ).all()
    return [
        LeaderboardRow(
            user_id=u.id,
            name=u.name,
            department=u.department,
            points=u.points,
            rank=i + 1,
        )
        for i, u in enumerate(users)
    ]


def write_entry(
    db: Session,
    user_id: int,
    direction: str,
    amount: int,
    reason: str,
    ref_type: str | None = None,
    ref_id: int | None = None,
    now: datetime | None = None,
) -> PointsLedger:
    """Append one entry and move the balance by the same amount.

    Must run inside the caller's transaction; nothing is committed here.
    The balance moves by a relative UPDATE so concurrent writers never
    overwrite each other. A debit only matches while the balance covers it;
    otherwise ``InsufficientBalance`` is raised with the fresh balance and
    the caller's transaction must be rolled back.
    """
    if amount <= 0:
        raise ValueError("Ledger amounts are positive; direction carries the sign")
    stmt = update(User).where(User.id == user_id)
    if direction == CREDIT:
        stmt = stmt.values(points=User.points + amount)
    else:
        stmt = stmt.where(User.points >= amount).values(points=User.points - amount)
    moved = db.execute(stmt.execution_options(synchronize_session=False))
    if moved.rowcount != 1:
        balance = db.scalar(select(User.points).where(User.id == user_id))
        if balance is None:
            raise AccountNotFound(f"User {user_id} not found")
        raise InsufficientBalance(balance, amount)

    entry = PointsLedger(
        user_id=user_id,
        direction=direction,
        amount=amount,
        reason=reason[:200],
        ref_type=ref_type,
        ref_id=ref_id,
    )
    if now is not None:
        entry.ts = now
    db.add(entry)
    db.flush()
    return entry
