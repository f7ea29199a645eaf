from __future__ import annotations

import os
import pathlib
import re
from zoneinfo import ZoneInfo

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
TIMEZONE_NAME = os.getenv("HOMEBASE_TIMEZONE", "America/Los_Angeles")
LOCAL_TZ = ZoneInfo(TIMEZONE_NAME)
LLM_DEBUG = os.getenv("LLM_DEBUG", "0") == "1"

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
URL_RE = re.compile(r"https?://[^\s]+")

# -------------------------
# Google Calendar
# -------------------------
ENABLE_GCAL = os.getenv("ENABLE_GCAL", "0") == "1"
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GCAL_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.events",
]

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
GOOGLE_TOKEN_DIR = pathlib.Path(
    os.getenv("GOOGLE_TOKEN_DIR", str(BASE_DIR / "gcal_tokens")))
OAUTH_STATE_MAX_AGE_SECONDS = int(os.getenv("OAUTH_STATE_MAX_AGE_SECONDS", "600"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
CALENDAR_CONNECT_URL = os.getenv(
    "CALENDAR_CONNECT_URL", f"{PUBLIC_BASE_URL}/auth/google/login")
CALENDAR_GUESTS = [
    email.strip() for email in os.getenv("CALENDAR_GUESTS", "").split(",")
    if email.strip()
]

# -------------------------
# Storage
# -------------------------
HOMEBASE_DATA_FILE = pathlib.Path(
    os.getenv("HOMEBASE_DATA_FILE", str(BASE_DIR / "homebase_data.json")))
HOMEBASE_THREADS_FILE = pathlib.Path(
    os.getenv("HOMEBASE_THREADS_FILE", str(BASE_DIR / "thread_state.json")))

# -------------------------
# Dialogue tunables
# -------------------------
IDEMPOTENCY_WINDOW_SECONDS = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "120"))
CALENDAR_WINDOW_PAST_DAYS = int(os.getenv("CALENDAR_WINDOW_PAST_DAYS", "30"))
CALENDAR_WINDOW_FUTURE_DAYS = int(os.getenv("CALENDAR_WINDOW_FUTURE_DAYS", "90"))
CANDIDATE_LIMIT = int(os.getenv("CANDIDATE_LIMIT", "50"))
FUZZY_CANDIDATE_LIMIT = int(os.getenv("FUZZY_CANDIDATE_LIMIT", "10"))
FUZZY_SIMILARITY_THRESHOLD = float(os.getenv("FUZZY_SIMILARITY_THRESHOLD", "0.2"))
AUTO_PICK_MIN_SCORE = int(os.getenv("AUTO_PICK_MIN_SCORE", "6"))
AUTO_PICK_MIN_GAP = int(os.getenv("AUTO_PICK_MIN_GAP", "3"))
LIST_RESULT_LIMIT = int(os.getenv("LIST_RESULT_LIMIT", "5"))
RECENT_CONTEXT_MESSAGES = int(os.getenv("RECENT_CONTEXT_MESSAGES", "6"))
CHAT_LOG_MAX_MESSAGES_PER_THREAD = int(os.getenv("CHAT_LOG_MAX_MESSAGES_PER_THREAD", "200"))
MAX_SELECTION_CANDIDATES_SHOWN = 5
CONTEXT_LINE_MAX_CHARS = 200
MAX_YEAR_ROLLOVER_DAYS = 365

TRANSACTION_SOURCES = [
    "amex",
    "hafsa_chase",
    "asif_chase",
    "asif_citi",
    "cash",
    "bofa",
    "zelle",
    "venmo",
]
