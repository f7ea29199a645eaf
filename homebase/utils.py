from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional
import re
import uuid

from .config import LLM_DEBUG, LOCAL_TZ, ISO_DATE_RE, URL_RE

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?\s*([ap]\.?m\.?)?$", re.IGNORECASE)
_HOURS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b", re.IGNORECASE)
_MINUTES_RE = re.compile(r"(\d+)\s*(?:minutes?|mins?|m)\b", re.IGNORECASE)

_AFFIRMATIVE = {
    "y",
    "yes",
    "yeah",
    "yep",
    "yup",
    "sure",
    "ok",
    "okay",
    "confirm",
    "confirmed",
    "correct",
    "do it",
    "go ahead",
    "please do",
    "sounds good",
    "looks good",
    "add it",
    "save it",
    "delete it",
    "apply it",
    "yes please",
}
_NEGATIVE = {"n", "no", "nope", "nah", "cancel", "stop", "don't", "dont", "no thanks"}


def _log_debug(message: str) -> None:
    if LLM_DEBUG:
        print(message, flush=True)


def now_local() -> datetime:
    return datetime.now(LOCAL_TZ)


def _now_iso() -> str:
    return now_local().isoformat(timespec="seconds")


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_text(text: Optional[str]) -> str:
    t = (text or "").strip()
    t = re.sub(r"\s+", " ", t)
    return t


def _reply_key(text: Optional[str]) -> str:
    t = normalize_text(text).lower()
    return re.sub(r"[.!?,]+$", "", t).strip()


def is_affirmative(text: Optional[str]) -> bool:
    key = _reply_key(text)
    if key in _AFFIRMATIVE:
        return True
    return key.startswith("yes ") or key.startswith("yes,")


def is_negative(text: Optional[str]) -> bool:
    return _reply_key(text) in _NEGATIVE


def extract_urls(text: Optional[str]) -> List[str]:
    return URL_RE.findall(text or "")


def strip_urls(text: Optional[str]) -> str:
    return normalize_text(URL_RE.sub("", text or ""))


def parse_duration_minutes(text: Optional[str]) -> Optional[int]:
    """Duration phrases such as "2 hours", "1.5 hrs" or "45 min" in minutes."""
    raw = text or ""
    total = 0.0
    found = False
    hours = _HOURS_RE.search(raw)
    if hours:
        total += float(hours.group(1)) * 60
        found = True
    minutes = _MINUTES_RE.search(raw)
    if minutes:
        total += int(minutes.group(1))
        found = True
    if not found or total <= 0:
        return None
    return int(round(total))


def parse_iso_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()[:10]
    if not ISO_DATE_RE.match(raw):
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        return None


def normalize_time_str(value: Any) -> Optional[str]:
    """Clock text ("9:30", "12:00 PM", "14:05:00") as zero padded HH:MM."""
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    hh = int(match.group(1))
    mm = int(match.group(2))
    meridiem = (match.group(3) or "").lower().replace(".", "")
    if meridiem == "pm" and hh < 12:
        hh += 12
    elif meridiem == "am" and hh == 12:
        hh = 0
    if hh > 23 or mm > 59:
        return None
    return f"{hh:02d}:{mm:02d}"


def parse_time(value: Any) -> Optional[time]:
    normalized = normalize_time_str(value)
    if not normalized:
        return None
    hh, mm = [int(x) for x in normalized.split(":")]
    return time(hh, mm)


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO text to an aware datetime in the local timezone. Date-only text maps to midnight."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=LOCAL_TZ)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if ISO_DATE_RE.match(raw):
        day = parse_iso_date(raw)
        return datetime.combine(day, time(0, 0), tzinfo=LOCAL_TZ) if day else None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=LOCAL_TZ)
    return dt.astimezone(LOCAL_TZ)


def combine_local(day: date, hm: Optional[str]) -> datetime:
    parsed = parse_time(hm) if hm else None
    return datetime.combine(day, parsed or time(0, 0), tzinfo=LOCAL_TZ)


def format_clock(dt: datetime) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


def format_clock_hm(hm: Optional[str]) -> Optional[str]:
    parsed = parse_time(hm)
    if parsed is None:
        return None
    return format_clock(datetime.combine(date.today(), parsed))


def format_month_day(dt: datetime) -> str:
    return dt.strftime("%b %d")


def day_bounds(day: date) -> tuple:
    start = datetime.combine(day, time(0, 0), tzinfo=LOCAL_TZ)
    return start, start + timedelta(days=1)


def parse_amount(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = value.strip().replace("$", "").replace(",", "")
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None
