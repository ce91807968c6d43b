from __future__ import annotations
from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def of(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=-(-total // limit))


# --- Accounts ---


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(min_length=6)
    employee_id: Optional[str] = None
    department: str = ""


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    department: Optional[str] = Field(default=None, max_length=80)


class UserOut(ORMModel):
    id: int
    employee_id: Optional[str]
    name: str
    email: str
    department: str
    role: str
    points: int
    level: int = 1


class LoginOut(BaseModel):
    token: str
    user: UserOut


# --- Ledger ---


class LedgerEntryOut(ORMModel):
    id: int
    direction: Literal["credit", "debit"]
    amount: int
    reason: str
    ref_type: Optional[str]
    ref_id: Optional[int]
    ts: datetime


class LedgerPageOut(BaseModel):
    entries: list[LedgerEntryOut]
    balance: int
    pagination: Pagination


class LeaderboardOut(BaseModel):
    user_id: int
    name: str
    department: str
    points: int
    rank: int
    medal: Literal["gold", "silver", "bronze", "none"]


class RewardOut(BaseModel):
    status: Literal["ok", "already_done", "failed"]
    granted: bool
    reward: int
    balance: int
    message: str


# --- Tasks ---


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    reward: int = Field(gt=0)
    kind: Literal["checkin", "read", "download", "learn"]
    is_active: bool = True


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    reward: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None


class TaskOut(ORMModel):
    id: int
    title: str
    reward: int
    kind: str
    is_active: bool
    is_completed: bool = False


# --- Articles & comments ---


class ArticleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    summary: str = ""
    content: str = ""
    category: Optional[str] = None
    status: Literal["published", "draft"] = "published"


class ArticleUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    summary: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    status: Optional[Literal["published", "draft"]] = None


class ArticleOut(ORMModel):
    id: int
    author_id: int
    title: str
    summary: str
    content: str
    category: Optional[str]
    status: str
    comments_count: int
    likes: int
    views: int
    published_at: Optional[datetime]
    created_at: datetime
    is_liked: bool = False


class ArticleCreated(BaseModel):
    article: ArticleOut
    reward: RewardOut


class LikeOut(BaseModel):
    liked: bool
    likes: int


class CommentCreate(BaseModel):
    article_id: int
    content: str = Field(min_length=1, max_length=2000)
    parent_id: Optional[int] = None


class CommentOut(ORMModel):
    id: int
    article_id: int
    author_id: int
    parent_id: Optional[int]
    content: str
    created_at: datetime


class CommentCreated(BaseModel):
    comment: CommentOut
    reward: RewardOut


# --- Courses ---


class CourseOut(ORMModel):
    id: int
    title: str
    instructor: str
    duration: str
    category: Optional[str]


class ProgressIn(BaseModel):
    progress: int = Field(ge=0, le=100)


class ProgressOut(ORMModel):
    course_id: int
    progress: int
    last_studied_at: datetime
    completed_at: Optional[datetime]
    course: Optional[CourseOut] = None


class ProgressUpdated(BaseModel):
    progress: ProgressOut
    reward: RewardOut


# --- Activities ---


class ActivityCreate(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    description: str = ""
    image_url: Optional[str] = None
    starts_at: datetime
    location: Optional[str] = None
    max_participants: Optional[int] = Field(default=None, gt=0)
    is_quarterly: bool = False
    vote_title: Optional[str] = Field(default=None, max_length=120)
    vote_options: list[str] = []


class ActivityUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    image_url: Optional[str] = None
    starts_at: Optional[datetime] = None
    location: Optional[str] = None
    status: Optional[Literal["upcoming", "ongoing", "ended"]] = None
    max_participants: Optional[int] = Field(default=None, gt=0)


class VoteOptionOut(ORMModel):
    id: int
    label: str
    count: int


class ActivityOut(ORMModel):
    id: int
    title: str
    description: str
    image_url: Optional[str]
    starts_at: datetime
    location: Optional[str]
    status: str
    max_participants: Optional[int]
    is_quarterly: bool
    vote_title: Optional[str]
    participants: int = 0
    has_voting: bool = False


class ActivityDetail(ActivityOut):
    options: list[VoteOptionOut] = []
    is_registered: bool = False
    voted_option_id: Optional[int] = None


class CalendarEntry(ORMModel):
    id: int
    title: str
    starts_at: datetime
    status: str


class RegistrationOut(BaseModel):
    registered: bool
    participants: int


class VoteIn(BaseModel):
    option_id: int


# --- Mall ---


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    image_url: Optional[str] = None
    category: Optional[str] = None
    price: int = Field(gt=0)
    stock: int = Field(ge=0)
    is_hot: bool = False
    is_new: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    price: Optional[int] = Field(default=None, gt=0)
    stock: Optional[int] = Field(default=None, ge=0)
    status: Optional[Literal["active", "inactive"]] = None
    is_hot: Optional[bool] = None
    is_new: Optional[bool] = None


class ProductOut(ORMModel):
    id: int
    name: str
    description: str
    image_url: Optional[str]
    category: Optional[str]
    price: int
    stock: int
    status: str
    is_hot: bool
    is_new: bool


class CategoryOut(BaseModel):
    name: str
    count: int


class OrderCreate(BaseModel):
    product_id: int


class OrderOut(ORMModel):
    id: int
    product_id: int
    points_spent: int
    status: str
    created_at: datetime
    product: Optional[ProductOut] = None


# --- Notifications ---


class NotificationOut(ORMModel):
    id: int
    type: str
    title: str
    content: str
    link: Optional[str]
    is_read: bool
    created_at: datetime


class NotificationPage(BaseModel):
    notifications: list[NotificationOut]
    unread_count: int
    pagination: Pagination


# --- Pages ---


class ArticlePage(BaseModel):
    articles: list[ArticleOut]
    pagination: Pagination


class ActivityPage(BaseModel):
    activities: list[ActivityOut]
    pagination: Pagination


class CoursePage(BaseModel):
    courses: list[CourseOut]
    pagination: Pagination


class ProductPage(BaseModel):
    products: list[ProductOut]
    pagination: Pagination


class OrderPage(BaseModel):
    orders: list[OrderOut]
    pagination: Pagination
