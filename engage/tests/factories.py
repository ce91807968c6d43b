from datetime import datetime, timedelta

from sqlalchemy import select

from engage.models import (
    User,
    DailyTask,
    Product,
    Course,
    Article,
    Activity,
    VoteOption,
)
from engage.security import issue_session

# 12:00 in Asia/Shanghai
NOW = datetime(2024, 5, 6, 4, 0, 0)
TOMORROW = NOW + timedelta(days=1)


def add_user(db, name="Alice", role="user", created_at=None, email=None):
    user = User(
        name=name,
        email=email or f"{name.lower()}@example.com",
        hash_pw="x",
        role=role,
        points=0,
    )
    if created_at is not None:
        user.created_at = created_at
    db.add(user)
    db.commit()
    return user.id


def add_product(db, name="Mug", price=30, stock=5, category="Office", status="active"):
    product = Product(
        name=name, price=price, stock=stock, category=category, status=status
    )
    db.add(product)
    db.commit()
    return product.id


def add_course(db, title="Supply chain basics"):
    course = Course(title=title, instructor="Prof. Li", duration="4h 30m")
    db.add(course)
    db.commit()
    return course.id


def add_article(db, author_id, title="Quarterly review"):
    article = Article(
        author_id=author_id, title=title, status="published", published_at=NOW
    )
    db.add(article)
    db.commit()
    return article.id


def task_id(db, kind):
    return db.scalar(select(DailyTask.id).where(DailyTask.kind == kind))


def auth(user_id, role="user"):
    token = issue_session(user_id, f"user{user_id}@example.com", role)
    return {"Authorization": f"Bearer {token}"}


def add_activity(
    db,
    created_by,
    title="Spring hike",
    starts_at=NOW,
    max_participants=None,
    status="upcoming",
    options=(),
):
    activity = Activity(
        title=title,
        starts_at=starts_at,
        max_participants=max_participants,
        status=status,
        vote_title="Where to?" if options else None,
        created_by=created_by,
        options=[VoteOption(label=label) for label in options],
    )
    db.add(activity)
    db.commit()
    return activity.id


def option_ids(db, activity_id):
    return list(
        db.scalars(
            select(VoteOption.id)
            .where(VoteOption.activity_id == activity_id)
            .order_by(VoteOption.id)
        )
    )
