from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional
import re

from zoneinfo import ZoneInfo

from .config import ISO_DATE_RE, TIMEZONE_NAME

_RRULE_FREQS = {"DAILY", "WEEKLY", "MONTHLY", "YEARLY"}
_FREQ_ALIASES = {
    "DAY": "DAILY",
    "WEEK": "WEEKLY",
    "BIWEEKLY": "WEEKLY",
    "MONTH": "MONTHLY",
    "ANNUALLY": "YEARLY",
    "YEAR": "YEARLY",
}
_RRULE_WEEKDAY_TO_INDEX = {
    "MO": 0,
    "TU": 1,
    "WE": 2,
    "TH": 3,
    "FR": 4,
    "SA": 5,
    "SU": 6,
}
_RRULE_INDEX_TO_WEEKDAY = ["MO", "TU", "WE", "TH", "FR", "SA", "SU"]
_WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
_FREQ_UNITS = {"DAILY": "days", "WEEKLY": "weeks", "MONTHLY": "months", "YEARLY": "years"}


def _normalize_int_list(value: Any,
                        min_val: int,
                        max_val: int,
                        allow_neg1: bool = False) -> List[int]:
    if not isinstance(value, list):
        return []
    out: List[int] = []
    seen: set[int] = set()
    for raw in value:
        try:
            iv = int(raw)
        except (TypeError, ValueError):
            continue
        if allow_neg1 and iv == -1:
            if iv not in seen:
                out.append(iv)
                seen.add(iv)
            continue
        if min_val <= iv <= max_val and iv not in seen:
            out.append(iv)
            seen.add(iv)
    return out


def _weekday_indexes(value: Any) -> List[int]:
    """Accepts [0, 2], ["MO", "WE"] or ["monday", "wed"]."""
    if isinstance(value, str):
        value = [v for v in re.split(r"[,\s]+", value) if v]
    if not isinstance(value, list):
        return []
    converted: List[Any] = []
    for raw in value:
        if isinstance(raw, str) and not raw.strip().lstrip("-").isdigit():
            code = raw.strip().upper()[:2]
            if code in _RRULE_WEEKDAY_TO_INDEX:
                converted.append(_RRULE_WEEKDAY_TO_INDEX[code])
            continue
        converted.append(raw)
    return _normalize_int_list(converted, 0, 6)


def _rrule_to_recurrence(rule: str) -> Optional[Dict[str, Any]]:
    core = rule.strip()
    if core.upper().startswith("RRULE:"):
        core = core[6:]
    values: Dict[str, str] = {}
    for part in core.split(";"):
        if "=" not in part:
            continue
        key, val = part.split("=", 1)
        values[key.strip().upper()] = val.strip()
    until = values.get("UNTIL")
    if until and re.match(r"^\d{8}", until):
        until = f"{until[:4]}-{until[4:6]}-{until[6:8]}"
    return {
        "freq": values.get("FREQ"),
        "interval": values.get("INTERVAL"),
        "byweekday": (values.get("BYDAY") or "").split(",") if values.get("BYDAY") else None,
        "bymonthday": (values.get("BYMONTHDAY") or "").split(",") if values.get("BYMONTHDAY") else None,
        "bymonth": (values.get("BYMONTH") or "").split(",") if values.get("BYMONTH") else None,
        "bysetpos": values.get("BYSETPOS"),
        "end": {"until": until, "count": values.get("COUNT")},
    }


def normalize_recurrence(recurrence: Any) -> Optional[Dict[str, Any]]:
    """Normalize an extracted recurrence into {freq, interval, byweekday, bymonthday,
    bysetpos, bymonth, end}. Returns None when there is no usable frequency."""
    if recurrence is None or recurrence is False:
        return None
    if isinstance(recurrence, list):
        rules = [r for r in recurrence if isinstance(r, str) and "FREQ=" in r.upper()]
        if not rules:
            return None
        recurrence = _rrule_to_recurrence(rules[0])
    elif isinstance(recurrence, str):
        if "FREQ=" in recurrence.upper():
            recurrence = _rrule_to_recurrence(recurrence)
        else:
            recurrence = {"freq": recurrence}
    if not isinstance(recurrence, dict):
        return None

    freq_raw = recurrence.get("freq") or recurrence.get("frequency") or ""
    freq = str(freq_raw).strip().upper()
    freq = _FREQ_ALIASES.get(freq, freq)
    if freq not in _RRULE_FREQS:
        return None

    interval_raw = recurrence.get("interval")
    try:
        interval = int(interval_raw) if interval_raw is not None else 1
    except (TypeError, ValueError):
        interval = 1
    if str(freq_raw).strip().upper() == "BIWEEKLY" and interval_raw is None:
        interval = 2
    if interval < 1:
        interval = 1

    byweekday = _weekday_indexes(
        recurrence.get("byweekday") if recurrence.get("byweekday") is not None
        else recurrence.get("by_day"))
    bymonthday = _normalize_int_list(recurrence.get("bymonthday"),
                                     1,
                                     31,
                                     allow_neg1=True)
    bymonth = _normalize_int_list(recurrence.get("bymonth"), 1, 12)

    bysetpos_raw = recurrence.get("bysetpos")
    bysetpos: Optional[int] = None
    if bysetpos_raw is not None:
        try:
            iv = int(bysetpos_raw)
            if iv == -1 or 1 <= iv <= 5:
                bysetpos = iv
        except (TypeError, ValueError):
            bysetpos = None

    end_raw = recurrence.get("end")
    if end_raw is None:
        end_raw = {"until": recurrence.get("until"), "count": recurrence.get("count")}
    end: Optional[Dict[str, Any]] = None
    if isinstance(end_raw, dict):
        until_raw = end_raw.get("until")
        count_raw = end_raw.get("count")
        until = (until_raw.strip()[:10] if isinstance(until_raw, str) else None)
        if until and not ISO_DATE_RE.match(until):
            until = None
        count: Optional[int] = None
        if count_raw is not None:
            try:
                count = int(count_raw)
            except (TypeError, ValueError):
                count = None
            if count is not None and count <= 0:
                count = None
        if until and count:
            count = None
        if until or count:
            end = {"until": until, "count": count}
    elif isinstance(end_raw, str) and ISO_DATE_RE.match(end_raw.strip()):
        end = {"until": end_raw.strip(), "count": None}
    elif isinstance(end_raw, (int, float)) and int(end_raw) > 0:
        end = {"until": None, "count": int(end_raw)}

    return {
        "freq": freq,
        "interval": interval,
        "byweekday": byweekday or None,
        "bymonthday": bymonthday or None,
        "bysetpos": bysetpos,
        "bymonth": bymonth or None,
        "end": end,
    }


def _format_rrule_until(until_date: date,
                        time_str: Optional[str],
                        tz_name: str) -> str:
    """Format UNTIL value for RRULE.
    Google Calendar requires UNTIL in UTC with Z suffix for timed events,
    or YYYYMMDD for all-day events."""
    tzinfo = ZoneInfo(tz_name)
    if isinstance(time_str, str) and re.match(r"^\d{2}:\d{2}$", time_str):
        hh, mm = [int(x) for x in time_str.split(":")]
        local_dt = datetime(until_date.year, until_date.month, until_date.day,
                            hh, mm, 0, tzinfo=tzinfo)
        utc_dt = local_dt.astimezone(ZoneInfo("UTC"))
        return utc_dt.strftime("%Y%m%dT%H%M%SZ")
    return until_date.strftime("%Y%m%d")


def _build_rrule_core(recurrence: Dict[str, Any],
                      time_str: Optional[str],
                      tz_name: str) -> Optional[str]:
    freq = recurrence.get("freq")
    if freq not in _RRULE_FREQS:
        return None

    parts = [f"FREQ={freq}"]
    interval = recurrence.get("interval") or 1
    if interval != 1:
        parts.append(f"INTERVAL={interval}")

    byweekday = recurrence.get("byweekday") or []
    if byweekday:
        parts.append("BYDAY=" + ",".join(_RRULE_INDEX_TO_WEEKDAY[int(w)] for w in byweekday))

    bymonthday = recurrence.get("bymonthday") or []
    if bymonthday:
        parts.append("BYMONTHDAY=" + ",".join(str(int(d)) for d in bymonthday))

    bymonth = recurrence.get("bymonth") or []
    if bymonth:
        parts.append("BYMONTH=" + ",".join(str(int(m)) for m in bymonth))

    if recurrence.get("bysetpos"):
        parts.append(f"BYSETPOS={int(recurrence['bysetpos'])}")

    end = recurrence.get("end") or {}
    until_raw = end.get("until")
    if isinstance(until_raw, str) and ISO_DATE_RE.match(until_raw):
        until_date = datetime.strptime(until_raw, "%Y-%m-%d").date()
        parts.append("UNTIL=" + _format_rrule_until(until_date, time_str, tz_name))
    elif end.get("count"):
        parts.append(f"COUNT={int(end['count'])}")

    return ";".join(parts)


def build_recurrence_rules(recurrence: Any,
                           start_time: Optional[str] = None,
                           tz_name: str = TIMEZONE_NAME) -> List[str]:
    """Google Calendar ``recurrence`` list for an event payload (empty when not recurring)."""
    normalized = normalize_recurrence(recurrence)
    if not normalized:
        return []
    core = _build_rrule_core(normalized, start_time, tz_name)
    return [f"RRULE:{core}"] if core else []


def describe_recurrence(recurrence: Any) -> Optional[str]:
    normalized = normalize_recurrence(recurrence)
    if not normalized:
        return None
    freq = normalized["freq"]
    interval = normalized["interval"]
    label = freq.lower() if interval == 1 else f"every {interval} {_FREQ_UNITS[freq]}"
    days = normalized.get("byweekday") or []
    if days:
        label += " on " + ", ".join(_WEEKDAY_LABELS[d] for d in days)
    end = normalized.get("end") or {}
    if end.get("until"):
        label += f" until {end['until']}"
    elif end.get("count"):
        label += f" ({end['count']} times)"
    return label
