from __future__ import annotations
import os

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Asia/Shanghai")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Default reward table; daily tasks carry their own reward in `daily_tasks`.
CHECKIN_REWARD = int(os.getenv("CHECKIN_REWARD", "10"))
FIRST_COMMENT_REWARD = int(os.getenv("FIRST_COMMENT_REWARD", "5"))
ARTICLE_PUBLISH_REWARD = int(os.getenv("ARTICLE_PUBLISH_REWARD", "20"))
COURSE_COMPLETE_REWARD = int(os.getenv("COURSE_COMPLETE_REWARD", "50"))

# level = points // LEVEL_STEP + 1
LEVEL_STEP = int(os.getenv("LEVEL_STEP", "500"))

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin")

# (title, kind, reward) seeded on first start
DEFAULT_DAILY_TASKS = [
    ("Daily check-in", "checkin", CHECKIN_REWARD),
    ("Read a professional article", "read", 5),
    ("Download or preview a knowledge doc", "download", 5),
    ("Finish an online lesson", "learn", 50),
]
