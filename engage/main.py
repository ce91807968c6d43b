# Annotations stay evaluated here: FastAPI resolves the rate-limited login's
# parameter types through the slowapi wrapper's globals.
import logging
import time
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.responses import Response
from typing import Awaitable, Callable, Dict, List, Optional

from . import settings
from .db import engine, Base, SessionLocal, atomic
from .deps import SessionData, get_db, get_current_user, get_optional_user, require_admin
from .errors import (
    NotFoundError,
    SpendRejected,
    ActivityRejected,
    StorageFailure,
    InsufficientBalance,
)
from .ledger import get_balance, get_ledger, get_leaderboard, level_for
from .models import (
    User,
    DailyTask,
    TaskCompletion,
    Article,
    Comment,
    Course,
    CourseProgress,
    Product,
    Notification,
    ArticleLike,
    Activity,
    ActivityRegistration,
    UserVote,
    VoteOption,
    ADMIN_ROLES,
    ACTIVE,
    PUBLISHED,
    utcnow,
)
from .notifications import notify, list_for, mark_all_read
from .rewards import (
    RewardOutcome,
    checkin,
    complete_task,
    reward_comment,
    reward_publish,
    record_course_progress,
    window_day,
)
from .schemas import (
    UserCreate,
    UserUpdate,
    LoginIn,
    UserOut,
    LoginOut,
    LedgerEntryOut,
    LedgerPageOut,
    LeaderboardOut,
    RewardOut,
    TaskCreate,
    TaskUpdate,
    TaskOut,
    ArticleCreate,
    ArticleUpdate,
    ArticleOut,
    LikeOut,
    ArticleCreated,
    ArticlePage,
    CommentCreate,
    CommentOut,
    CommentCreated,
    ActivityCreate,
    ActivityUpdate,
    ActivityOut,
    ActivityDetail,
    ActivityPage,
    CalendarEntry,
    RegistrationOut,
    VoteIn,
    VoteOptionOut,
    CourseOut,
    CoursePage,
    ProgressIn,
    ProgressOut,
    ProgressUpdated,
    ProductCreate,
    ProductUpdate,
    ProductOut,
    ProductPage,
    CategoryOut,
    OrderCreate,
    OrderOut,
    OrderPage,
    NotificationOut,
    NotificationPage,
    Pagination,
)
from .security import (
    hash_password,
    verify_password,
    issue_session,
    SESSION_SECURE,
    SESSION_MAX_AGE,
)
from .spend import authorize_spend, list_orders
from .activities import (
    to_utc,
    month_bounds,
    participants,
    is_registered,
    voted_option,
    calendar,
    toggle_registration,
    cast_vote,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("engage.http")

# --- DB init ---
Base.metadata.create_all(bind=engine)

# Bootstrap default admin and the daily task catalog
with SessionLocal() as db:
    if not db.scalar(select(User).where(User.role.in_(ADMIN_ROLES)).limit(1)):
        db.add(
            User(
                name="Admin",
                email=settings.ADMIN_EMAIL,
                hash_pw=hash_password(settings.ADMIN_PASSWORD),
                role="super_admin",
            )
        )
    if not db.scalar(select(DailyTask).limit(1)):
        for title, kind, reward in settings.DEFAULT_DAILY_TASKS:
            db.add(DailyTask(title=title, kind=kind, reward=reward))
    db.commit()

# --- App init ---
app = FastAPI(title="Engage", description="Employee engagement points platform")

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    start = time.perf_counter()
    response = await call_next(request)
    log.info(
        "%s %s -> %s (%d ms)",
        request.method,
        request.url.path,
        response.status_code,
        int((time.perf_counter() - start) * 1000),
    )
    return response


# --- Error translation ---
@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SpendRejected)
async def spend_rejected(request: Request, exc: SpendRejected) -> JSONResponse:
    content: Dict[str, object] = {"detail": str(exc), "code": type(exc).__name__}
    if isinstance(exc, InsufficientBalance):
        content.update(balance=exc.balance, price=exc.price)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(ActivityRejected)
async def activity_rejected(request: Request, exc: ActivityRejected) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"detail": str(exc), "code": type(exc).__name__}
    )


@app.exception_handler(StorageFailure)
async def storage_failure(request: Request, exc: StorageFailure) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# --- Helpers ---


def user_out(user: User) -> UserOut:
    out = UserOut.model_validate(user)
    out.level = level_for(user.points)
    return out


def reward_out(outcome: RewardOutcome, done: str, already: str) -> RewardOut:
    return RewardOut(
        status="ok" if outcome.granted else "already_done",
        granted=outcome.granted,
        reward=outcome.amount,
        balance=outcome.balance,
        message=done.format(reward=outcome.amount) if outcome.granted else already,
    )


def reward_failed(db: Session, user_id: int, message: str) -> RewardOut:
    return RewardOut(
        status="failed",
        granted=False,
        reward=0,
        balance=get_balance(db, user_id),
        message=f"{message}; the reward could not be recorded",
    )


def is_admin(user: SessionData) -> bool:
    return user["role"] in ADMIN_ROLES


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "timestamp": utcnow().isoformat() + "Z"}


# --- Auth ---
@app.post("/auth/register", response_model=UserOut, status_code=201)
def register(body: UserCreate, db: Session = Depends(get_db)) -> UserOut:
    user = User(
        name=body.name.strip(),
        email=body.email,
        hash_pw=hash_password(body.password),
        employee_id=body.employee_id,
        department=body.department.strip(),
        points=0,
    )
    try:
        with atomic(db):
            db.add(user)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Email or employee id already in use")
    return user_out(user)


@app.post("/auth/login", response_model=LoginOut)
@limiter.limit("20/minute")
def login(request: Request, body: LoginIn, db: Session = Depends(get_db)) -> Response:
    user = db.scalar(select(User).where(User.email == body.email))
    if not user or not verify_password(body.password, user.hash_pw):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = issue_session(user.id, user.email, user.role)
    payload = LoginOut(token=token, user=user_out(user))
    resp = JSONResponse(content=payload.model_dump(mode="json"))
    resp.set_cookie(
        key="session",
        value=token,
        httponly=True,
        secure=SESSION_SECURE,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
        path="/",
    )
    return resp


@app.post("/auth/logout")
def logout() -> Response:
    resp = JSONResponse(content={"status": "ok"})
    resp.delete_cookie("session", path="/")
    return resp


@app.get("/auth/me", response_model=UserOut)
def me(
    user: SessionData = Depends(get_current_user), db: Session = Depends(get_db)
) -> UserOut:
    row = db.get(User, user["user_id"])
    if row is None:
        raise HTTPException(status_code=401, detail="User no longer exists")
    return user_out(row)


# --- Users, check-in, points ---
@app.post("/users/checkin", response_model=RewardOut)
def daily_checkin(
    user: SessionData = Depends(get_current_user), db: Session = Depends(get_db)
) -> RewardOut:
    outcome = checkin(db, user["user_id"])
    return reward_out(
        outcome, "Checked in, +{reward} points", "Already signed in today"
    )


@app.get("/users/leaderboard/top", response_model=List[LeaderboardOut])
def leaderboard(limit: int = 10, db: Session = Depends(get_db)) -> List[LeaderboardOut]:
    limit = max(1, min(limit, 100))
    return [
        LeaderboardOut(
            user_id=row.user_id,
            name=row.name,
            department=row.department,
            points=row.points,
            rank=row.rank,
            medal=row.medal,
        )
        for row in get_leaderboard(db, limit)
    ]


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, db: Session = Depends(get_db)) -> UserOut:
    row = db.get(User, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user_out(row)


@app.put("/users/{user_id}", response_model=UserOut)
def edit_user(
    user_id: int,
    body: UserUpdate,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserOut:
    if user["user_id"] != user_id and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed to edit this user")
    row = db.get(User, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found")
    with atomic(db):
        for field, value in body.model_dump(exclude_none=True).items():
            setattr(row, field, value.strip())
    return user_out(row)


@app.get("/users/{user_id}/points", response_model=LedgerPageOut)
def points_history(
    user_id: int,
    page: int = 1,
    limit: int = 20,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> LedgerPageOut:
    if user["user_id"] != user_id and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed to view these points")
    page, limit = max(page, 1), max(1, min(limit, 100))
    ledger = get_ledger(db, user_id, page, limit)
    return LedgerPageOut(
        entries=[LedgerEntryOut.model_validate(e) for e in ledger.entries],
        balance=get_balance(db, user_id),
        pagination=Pagination.of(page, limit, ledger.total_count),
    )


# --- Daily tasks ---
@app.get("/tasks", response_model=List[TaskOut])
def list_tasks(
    user: SessionData = Depends(get_current_user), db: Session = Depends(get_db)
) -> List[TaskOut]:
    tasks = db.scalars(
        select(DailyTask).where(DailyTask.is_active).order_by(DailyTask.id)
    ).all()
    done = db.scalars(
        select(TaskCompletion.task_id).where(
            TaskCompletion.user_id == user["user_id"],
            TaskCompletion.completed_on == window_day(utcnow()),
        )
    ).all()
    completed_ids = {t for t in done if t is not None}
    out = []
    for t in tasks:
        item = TaskOut.model_validate(t)
        item.is_completed = t.id in completed_ids
        out.append(item)
    return out


@app.post("/tasks", response_model=TaskOut, status_code=201)
def create_task(
    body: TaskCreate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TaskOut:
    task = DailyTask(**body.model_dump())
    with atomic(db):
        db.add(task)
    return TaskOut.model_validate(task)


@app.patch("/tasks/{task_id}", response_model=TaskOut)
def edit_task(
    task_id: int,
    body: TaskUpdate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TaskOut:
    task = db.get(DailyTask, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    with atomic(db):
        for field, value in body.model_dump(exclude_none=True).items():
            setattr(task, field, value)
    return TaskOut.model_validate(task)


@app.post("/tasks/{task_id}/complete", response_model=RewardOut)
def finish_task(
    task_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RewardOut:
    outcome = complete_task(db, user["user_id"], task_id)
    return reward_out(
        outcome, "Task completed, +{reward} points", "Task already completed today"
    )


# --- Articles & comments ---
def article_out(db: Session, article: Article, user: Optional[SessionData]) -> ArticleOut:
    out = ArticleOut.model_validate(article)
    if user is not None:
        out.is_liked = (
            db.scalar(
                select(ArticleLike.id).where(
                    ArticleLike.article_id == article.id,
                    ArticleLike.user_id == user["user_id"],
                )
            )
            is not None
        )
    return out


def _own_article(db: Session, article_id: int, user: SessionData) -> Article:
    article = db.get(Article, article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")
    if article.author_id != user["user_id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed to change this article")
    return article


@app.get("/articles", response_model=ArticlePage)
def list_articles(
    category: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    db: Session = Depends(get_db),
) -> ArticlePage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    where = [Article.status == PUBLISHED]
    if category:
        where.append(Article.category == category)
    rows = db.scalars(
        select(Article)
        .where(*where)
        .order_by(Article.published_at.desc(), Article.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Article).where(*where)) or 0
    return ArticlePage(
        articles=[ArticleOut.model_validate(a) for a in rows],
        pagination=Pagination.of(page, limit, total),
    )


@app.get("/articles/hot", response_model=List[ArticleOut])
def hot_articles(limit: int = 5, db: Session = Depends(get_db)) -> List[ArticleOut]:
    rows = db.scalars(
        select(Article)
        .where(Article.status == PUBLISHED)
        .order_by(Article.views.desc(), Article.id.desc())
        .limit(max(1, min(limit, 50)))
    ).all()
    return [ArticleOut.model_validate(a) for a in rows]


@app.get("/articles/categories", response_model=List[CategoryOut])
def article_categories(db: Session = Depends(get_db)) -> List[CategoryOut]:
    rows = db.execute(
        select(Article.category, func.count(Article.id))
        .where(Article.status == PUBLISHED, Article.category.is_not(None))
        .group_by(Article.category)
        .order_by(Article.category)
    ).all()
    return [CategoryOut(name=name, count=count) for name, count in rows]


@app.get("/articles/{article_id}", response_model=ArticleOut)
def get_article(
    article_id: int,
    user: Optional[SessionData] = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> ArticleOut:
    article = db.get(Article, article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")
    with atomic(db):
        db.execute(
            update(Article)
            .where(Article.id == article_id)
            .values(views=Article.views + 1)
            .execution_options(synchronize_session=False)
        )
    return article_out(db, article, user)


@app.post("/articles", response_model=ArticleCreated, status_code=201)
def create_article(
    body: ArticleCreate,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ArticleCreated:
    now = utcnow()
    article = Article(
        author_id=user["user_id"],
        title=body.title.strip(),
        summary=body.summary,
        content=body.content,
        category=body.category,
        status=body.status,
        published_at=now if body.status == PUBLISHED else None,
        created_at=now,
    )
    with atomic(db):
        db.add(article)
    if article.status != PUBLISHED:
        reward = reward_out(
            RewardOutcome(False, 0, get_balance(db, user["user_id"])), "", "Draft saved"
        )
    else:
        try:
            outcome = reward_publish(db, user["user_id"], article.id, article.title, now)
        except StorageFailure:
            # the article is stored; answer with it and without the reward
            reward = reward_failed(db, user["user_id"], "Article published")
        else:
            reward = reward_out(
                outcome, "Article published, +{reward} points", "Article published"
            )
    return ArticleCreated(article=ArticleOut.model_validate(article), reward=reward)


@app.put("/articles/{article_id}", response_model=ArticleOut)
def edit_article(
    article_id: int,
    body: ArticleUpdate,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ArticleOut:
    article = _own_article(db, article_id, user)
    changes = body.model_dump(exclude_none=True)
    with atomic(db):
        for field, value in changes.items():
            setattr(article, field, value)
        if changes.get("status") == PUBLISHED and article.published_at is None:
            article.published_at = utcnow()
    return article_out(db, article, user)


@app.delete("/articles/{article_id}")
def delete_article(
    article_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, str]:
    article = _own_article(db, article_id, user)
    with atomic(db):
        db.execute(delete(ArticleLike).where(ArticleLike.article_id == article_id))
        db.execute(delete(Comment).where(Comment.article_id == article_id))
        db.delete(article)
    log.info("article %s deleted by user %s", article_id, user["user_id"])
    return {"status": "ok"}


@app.post("/articles/{article_id}/like", response_model=LikeOut)
def toggle_like(
    article_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> LikeOut:
    article = db.get(Article, article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")
    uid = user["user_id"]
    existing = db.scalar(
        select(ArticleLike).where(
            ArticleLike.article_id == article_id, ArticleLike.user_id == uid
        )
    )
    step = -1 if existing is not None else 1
    try:
        with atomic(db):
            if existing is not None:
                db.delete(existing)
            else:
                db.add(ArticleLike(article_id=article_id, user_id=uid))
                db.flush()
                if article.author_id != uid:
                    notify(
                        db,
                        article.author_id,
                        "like",
                        "New like on your article",
                        f"{user['email']} liked \"{article.title}\"",
                        link=f"/articles/{article_id}",
                    )
            db.execute(
                update(Article)
                .where(Article.id == article_id)
                .values(likes=Article.likes + step)
                .execution_options(synchronize_session=False)
            )
    except IntegrityError:
        log.info("like on article %s by user %s was already stored", article_id, uid)
    likes = db.scalar(select(Article.likes).where(Article.id == article_id)) or 0
    return LikeOut(liked=existing is None, likes=likes)


@app.get("/articles/{article_id}/comments", response_model=List[CommentOut])
def list_comments(article_id: int, db: Session = Depends(get_db)) -> List[CommentOut]:
    rows = db.scalars(
        select(Comment)
        .where(Comment.article_id == article_id)
        .order_by(Comment.created_at.asc(), Comment.id.asc())
    ).all()
    return [CommentOut.model_validate(c) for c in rows]


@app.post("/comments", response_model=CommentCreated, status_code=201)
def create_comment(
    body: CommentCreate,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CommentCreated:
    article = db.get(Article, body.article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")
    if body.parent_id is not None:
        parent = db.get(Comment, body.parent_id)
        if parent is None:
            raise HTTPException(status_code=404, detail="Parent comment not found")
        if parent.article_id != article.id:
            raise HTTPException(
                status_code=400, detail="Parent comment belongs to another article"
            )
    now = utcnow()
    comment = Comment(
        article_id=article.id,
        author_id=user["user_id"],
        parent_id=body.parent_id,
        content=body.content,
        created_at=now,
    )
    with atomic(db):
        db.add(comment)
        db.execute(
            update(Article)
            .where(Article.id == article.id)
            .values(comments_count=Article.comments_count + 1)
            .execution_options(synchronize_session=False)
        )
        if article.author_id != user["user_id"]:
            notify(
                db,
                article.author_id,
                "comment",
                "New comment on your article",
                f"{user['email']} commented on \"{article.title}\": {body.content[:50]}",
                link=f"/articles/{article.id}",
            )
    try:
        outcome = reward_comment(db, user["user_id"], comment.id, now)
    except StorageFailure:
        reward = reward_failed(db, user["user_id"], "Comment posted")
    else:
        reward = reward_out(
            outcome, "First comment today, +{reward} points", "Comment posted"
        )
    return CommentCreated(comment=CommentOut.model_validate(comment), reward=reward)


@app.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, object]:
    comment = db.get(Comment, comment_id)
    if comment is None:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.author_id != user["user_id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed to delete this comment")
    article_id = comment.article_id
    with atomic(db):
        # replies go with their parent
        removed = db.execute(
            delete(Comment)
            .where(or_(Comment.id == comment_id, Comment.parent_id == comment_id))
            .execution_options(synchronize_session=False)
        ).rowcount
        db.execute(
            update(Article)
            .where(Article.id == article_id)
            .values(comments_count=Article.comments_count - removed)
            .execution_options(synchronize_session=False)
        )
    return {"status": "ok", "removed": removed}


# --- Activities ---
def activity_out(db: Session, activity: Activity) -> ActivityOut:
    out = ActivityOut.model_validate(activity)
    out.participants = participants(db, activity.id)
    out.has_voting = bool(activity.options)
    return out


def _activity(db: Session, activity_id: int) -> Activity:
    activity = db.get(Activity, activity_id)
    if activity is None:
        raise HTTPException(status_code=404, detail="Activity not found")
    return activity


@app.get("/activities", response_model=ActivityPage)
def list_activities(
    status: Optional[str] = None,
    month: Optional[int] = Query(default=None, ge=1, le=12),
    year: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
    db: Session = Depends(get_db),
) -> ActivityPage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    where = []
    if status:
        where.append(Activity.status == status)
    if month and year:
        start, end = month_bounds(year, month)
        where += [Activity.starts_at >= start, Activity.starts_at < end]
    rows = db.scalars(
        select(Activity)
        .where(*where)
        .order_by(Activity.starts_at.asc(), Activity.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Activity).where(*where)) or 0
    return ActivityPage(
        activities=[activity_out(db, a) for a in rows],
        pagination=Pagination.of(page, limit, total),
    )


@app.get("/activities/calendar", response_model=Dict[str, List[CalendarEntry]])
def activity_calendar(
    month: Optional[int] = Query(default=None, ge=1, le=12),
    year: Optional[int] = None,
    db: Session = Depends(get_db),
) -> Dict[str, List[CalendarEntry]]:
    today = window_day(utcnow())
    days = calendar(db, year or today.year, month or today.month)
    return {
        day: [CalendarEntry.model_validate(a) for a in items]
        for day, items in days.items()
    }


@app.get("/activities/{activity_id}", response_model=ActivityDetail)
def get_activity(
    activity_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ActivityDetail:
    activity = _activity(db, activity_id)
    out = ActivityDetail.model_validate(activity)
    out.participants = participants(db, activity_id)
    out.has_voting = bool(activity.options)
    out.options = [VoteOptionOut.model_validate(o) for o in activity.options]
    out.is_registered = is_registered(db, user["user_id"], activity_id)
    out.voted_option_id = voted_option(db, user["user_id"], activity_id)
    return out


@app.post("/activities", response_model=ActivityDetail, status_code=201)
def create_activity(
    body: ActivityCreate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ActivityDetail:
    labels = [o.strip() for o in body.vote_options if o.strip()]
    activity = Activity(
        title=body.title.strip(),
        description=body.description,
        image_url=body.image_url,
        starts_at=to_utc(body.starts_at),
        location=body.location,
        max_participants=body.max_participants,
        is_quarterly=body.is_quarterly,
        vote_title=(body.vote_title or body.title) if labels else None,
        created_by=admin["user_id"],
        options=[VoteOption(label=label) for label in labels],
    )
    with atomic(db):
        db.add(activity)
    out = ActivityDetail.model_validate(activity)
    out.has_voting = bool(labels)
    out.options = [VoteOptionOut.model_validate(o) for o in activity.options]
    return out


@app.put("/activities/{activity_id}", response_model=ActivityOut)
def edit_activity(
    activity_id: int,
    body: ActivityUpdate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ActivityOut:
    activity = _activity(db, activity_id)
    changes = body.model_dump(exclude_none=True)
    if "starts_at" in changes:
        changes["starts_at"] = to_utc(changes["starts_at"])
    with atomic(db):
        for field, value in changes.items():
            setattr(activity, field, value)
    return activity_out(db, activity)


@app.delete("/activities/{activity_id}")
def delete_activity(
    activity_id: int,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, str]:
    activity = _activity(db, activity_id)
    with atomic(db):
        db.execute(delete(UserVote).where(UserVote.activity_id == activity_id))
        db.execute(
            delete(ActivityRegistration).where(
                ActivityRegistration.activity_id == activity_id
            )
        )
        db.delete(activity)
    log.info("activity %s deleted by user %s", activity_id, admin["user_id"])
    return {"status": "ok"}


@app.post("/activities/{activity_id}/register", response_model=RegistrationOut)
def register_for_activity(
    activity_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RegistrationOut:
    registered = toggle_registration(db, user["user_id"], activity_id)
    return RegistrationOut(
        registered=registered, participants=participants(db, activity_id)
    )


@app.post("/activities/{activity_id}/vote", response_model=VoteOptionOut)
def vote(
    activity_id: int,
    body: VoteIn,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> VoteOptionOut:
    option = cast_vote(db, user["user_id"], activity_id, body.option_id)
    return VoteOptionOut.model_validate(option)


# --- Courses ---
@app.get("/courses", response_model=CoursePage)
def list_courses(
    category: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    db: Session = Depends(get_db),
) -> CoursePage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    where = [Course.status == ACTIVE]
    if category:
        where.append(Course.category == category)
    rows = db.scalars(
        select(Course)
        .where(*where)
        .order_by(Course.created_at.desc(), Course.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Course).where(*where)) or 0
    return CoursePage(
        courses=[CourseOut.model_validate(c) for c in rows],
        pagination=Pagination.of(page, limit, total),
    )


@app.get("/courses/my", response_model=List[ProgressOut])
def my_courses(
    user: SessionData = Depends(get_current_user), db: Session = Depends(get_db)
) -> List[ProgressOut]:
    rows = db.scalars(
        select(CourseProgress)
        .where(CourseProgress.user_id == user["user_id"])
        .order_by(CourseProgress.last_studied_at.desc())
    ).all()
    return [ProgressOut.model_validate(p) for p in rows]


@app.post("/courses/{course_id}/progress", response_model=ProgressUpdated)
def update_progress(
    course_id: int,
    body: ProgressIn,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProgressUpdated:
    row, outcome = record_course_progress(db, user["user_id"], course_id, body.progress)
    return ProgressUpdated(
        progress=ProgressOut.model_validate(row),
        reward=reward_out(outcome, "Course completed, +{reward} points", "Progress saved"),
    )


# --- Mall ---
@app.get("/products", response_model=ProductPage)
def list_products(
    category: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
    db: Session = Depends(get_db),
) -> ProductPage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    where = [Product.status == ACTIVE]
    if category:
        where.append(Product.category == category)
    rows = db.scalars(
        select(Product)
        .where(*where)
        .order_by(
            Product.is_hot.desc(),
            Product.is_new.desc(),
            Product.created_at.desc(),
            Product.id.desc(),
        )
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    total = db.scalar(select(func.count()).select_from(Product).where(*where)) or 0
    return ProductPage(
        products=[ProductOut.model_validate(p) for p in rows],
        pagination=Pagination.of(page, limit, total),
    )


@app.get("/products/categories", response_model=List[CategoryOut])
def product_categories(db: Session = Depends(get_db)) -> List[CategoryOut]:
    rows = db.execute(
        select(Product.category, func.count(Product.id))
        .where(Product.status == ACTIVE, Product.category.is_not(None))
        .group_by(Product.category)
        .order_by(Product.category)
    ).all()
    return [CategoryOut(name=name, count=count) for name, count in rows]


@app.post("/products", response_model=ProductOut, status_code=201)
def create_product(
    body: ProductCreate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductOut:
    product = Product(**body.model_dump())
    with atomic(db):
        db.add(product)
    return ProductOut.model_validate(product)


@app.patch("/products/{product_id}", response_model=ProductOut)
def edit_product(
    product_id: int,
    body: ProductUpdate,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductOut:
    product = db.get(Product, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    with atomic(db):
        for field, value in body.model_dump(exclude_none=True).items():
            setattr(product, field, value)
    return ProductOut.model_validate(product)


@app.post("/products/orders", response_model=OrderOut, status_code=201)
def redeem(
    body: OrderCreate,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> OrderOut:
    order = authorize_spend(db, user["user_id"], body.product_id)
    return OrderOut.model_validate(order)


@app.get("/products/orders", response_model=OrderPage)
def my_orders(
    page: int = 1,
    limit: int = 10,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> OrderPage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    orders, total = list_orders(db, user["user_id"], page, limit)
    return OrderPage(
        orders=[OrderOut.model_validate(o) for o in orders],
        pagination=Pagination.of(page, limit, total),
    )


# --- Notifications ---
@app.get("/notifications", response_model=NotificationPage)
def notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationPage:
    page, limit = max(page, 1), max(1, min(limit, 100))
    items, total, unread = list_for(db, user["user_id"], page, limit, unread_only)
    return NotificationPage(
        notifications=[NotificationOut.model_validate(n) for n in items],
        unread_count=unread,
        pagination=Pagination.of(page, limit, total),
    )


def _own_notification(db: Session, notification_id: int, user_id: int) -> Notification:
    n = db.get(Notification, notification_id)
    if n is None or n.user_id != user_id:
        raise HTTPException(status_code=404, detail="Notification not found")
    return n


@app.post("/notifications/read-all")
def read_all(
    user: SessionData = Depends(get_current_user), db: Session = Depends(get_db)
) -> Dict[str, object]:
    return {"status": "ok", "updated": mark_all_read(db, user["user_id"])}


@app.post("/notifications/{notification_id}/read")
def read_one(
    notification_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, str]:
    n = _own_notification(db, notification_id, user["user_id"])
    with atomic(db):
        n.is_read = True
    return {"status": "ok"}


@app.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: int,
    user: SessionData = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, str]:
    n = _own_notification(db, notification_id, user["user_id"])
    with atomic(db):
        db.delete(n)
    return {"status": "ok"}
