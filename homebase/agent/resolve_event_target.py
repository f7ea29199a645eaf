from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from ..config import (
    AUTO_PICK_MIN_GAP,
    AUTO_PICK_MIN_SCORE,
    CALENDAR_WINDOW_FUTURE_DAYS,
    CALENDAR_WINDOW_PAST_DAYS,
    CANDIDATE_LIMIT,
    FUZZY_CANDIDATE_LIMIT,
    FUZZY_SIMILARITY_THRESHOLD,
    LIST_RESULT_LIMIT,
)
from ..models import CalendarEventRecord
from ..state import LocalStore
from ..utils import _log_debug, combine_local, day_bounds, now_local, parse_datetime, parse_iso_date

# Events without a start sort after everything else.
_FAR_DISTANCE = timedelta(days=3650)

_QUERY_STOPWORDS = {
    "when", "what", "next", "upcoming", "event", "events", "find", "show", "list", "the",
    "a", "an", "is", "are", "me", "please", "for", "today", "tonight", "tomorrow", "this",
    "morning", "afternoon", "evening",
}
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


class Candidate(BaseModel):
  record: CalendarEventRecord
  score: float
  distance: timedelta


def normalize_title(title: Optional[str]) -> str:
  cleaned = _NON_ALNUM_RE.sub(" ", (title or "").lower())
  return " ".join(cleaned.split())


def tokenize_title(title: Optional[str]) -> List[str]:
  return normalize_title(title).split()


def normalize_token(token: str) -> str:
  if token in ("swim", "swimming"):
    return "swim"
  if len(token) > 4 and token.endswith("ing"):
    return token[:-3]
  return token


def extract_query_tokens(text: Optional[str]) -> List[str]:
  """Search words of a free-form question, minus filler like "when is my next"."""
  tokens: List[str] = []
  for raw in normalize_title(text).split():
    if raw in _QUERY_STOPWORDS:
      continue
    token = normalize_token(raw)
    if token not in tokens:
      tokens.append(token)
  return tokens


def _trigrams(text: str) -> Set[str]:
  grams: Set[str] = set()
  for word in normalize_title(text).split():
    padded = f"  {word} "
    for i in range(len(padded) - 2):
      grams.add(padded[i:i + 3])
  return grams


def title_similarity(left: Optional[str], right: Optional[str]) -> float:
  """Trigram similarity in [0, 1]: shared trigrams over all trigrams of both titles."""
  a = _trigrams(left or "")
  b = _trigrams(right or "")
  if not a or not b:
    return 0.0
  return len(a & b) / float(len(a | b))


def auto_pick(candidates: List[Candidate],
              min_score: float = AUTO_PICK_MIN_SCORE,
              min_gap: float = AUTO_PICK_MIN_GAP) -> Optional[Candidate]:
  """Top candidate when it clearly beats the runner-up, else None.

  Only meaningful for two or more candidates; a single candidate is used as is
  by the callers.
  """
  if len(candidates) < 2:
    return None
  top_score = float(candidates[0].score)
  second_score = float(candidates[1].score)
  if top_score < min_score:
    return None
  if top_score >= second_score + min_gap:
    return candidates[0]
  return None


def serialize_candidates(candidates: List[Candidate]) -> List[Dict[str, Any]]:
  return [
      {"id": c.record.id, "title": c.record.title, "start_at": c.record.start_at}
      for c in candidates
  ]


class EventCandidateResolver:
  """Scores the user's mirrored calendar events against a partial query."""

  def __init__(self, store: LocalStore,
               now_fn: Callable[[], datetime] = now_local) -> None:
    self.store = store
    self.now_fn = now_fn

  def _window(self, now: datetime) -> Tuple[datetime, datetime]:
    today = now.date()
    start, _ = day_bounds(today - timedelta(days=CALENDAR_WINDOW_PAST_DAYS))
    _, end = day_bounds(today + timedelta(days=CALENDAR_WINDOW_FUTURE_DAYS))
    return start, end

  def _distance(self, record: CalendarEventRecord, now: datetime) -> timedelta:
    start_at = parse_datetime(record.start_at)
    if start_at is None:
      return _FAR_DISTANCE
    return abs(start_at - now)

  def _score(self, record: CalendarEventRecord, query_title: str, query_tokens: List[str],
             query_day: Optional[date], query_time: Optional[str]) -> float:
    event_title = normalize_title(record.title)
    event_tokens = set(tokenize_title(record.title))
    start_at = parse_datetime(record.start_at)
    score = 0
    if query_title:
      if event_title == query_title:
        score += 5
      if query_title in event_title:
        score += 3
      overlap = len(event_tokens & set(query_tokens))
      coverage = overlap / float(len(query_tokens)) if query_tokens else 0.0
      score += overlap
      score += int(coverage * 3 + 0.5)
    if query_day is not None and start_at is not None and start_at.date() == query_day:
      score += 3
    if query_time and start_at is not None:
      target = combine_local(start_at.date(), query_time)
      diff = abs(start_at - target)
      if diff <= timedelta(minutes=60):
        score += 2
      if diff <= timedelta(minutes=15):
        score += 1
    return score

  def candidates(self, user_id: str, query: Dict[str, Any]) -> List[Candidate]:
    """Strict scoring pass: positive scores only, best first, closest first on ties."""
    title = str(query.get("title") or "").strip()
    raw_date = str(query.get("date") or "").strip()
    raw_time = str(query.get("start_time") or "").strip()
    if not title and not raw_date:
      return []

    now = self.now_fn()
    query_day = parse_iso_date(raw_date) if raw_date else None
    if query_day is not None:
      start, end = day_bounds(query_day)
    else:
      start, end = self._window(now)
    records = self.store.events_between(user_id, start, end)[:CANDIDATE_LIMIT]

    query_title = normalize_title(title)
    query_tokens = tokenize_title(title)
    scored = []
    for record in records:
      score = self._score(record, query_title, query_tokens, query_day, raw_time or None)
      if score <= 0:
        continue
      scored.append(Candidate(record=record, score=score, distance=self._distance(record, now)))
    scored.sort(key=lambda c: (-c.score, c.distance))
    return scored

  def fuzzy_candidates(self, user_id: str, title: str) -> List[Candidate]:
    if not (title or "").strip():
      return []
    now = self.now_fn()
    start, end = self._window(now)
    matches = []
    for record in self.store.events_between(user_id, start, end):
      similarity = title_similarity(record.title, title)
      if similarity > FUZZY_SIMILARITY_THRESHOLD:
        matches.append((similarity, record))
    matches.sort(key=lambda pair: -pair[0])
    return [
        Candidate(record=record, score=round(similarity * 10, 2),
                  distance=self._distance(record, now))
        for similarity, record in matches[:FUZZY_CANDIDATE_LIMIT]
    ]

  def candidates_with_fallback(self, user_id: str, query: Dict[str, Any]) -> List[Candidate]:
    """Strict pass, then title only, then fuzzy title similarity. Never raises on bad input."""
    found = self.candidates(user_id, query)
    if found:
      return found
    title = str(query.get("title") or "").strip()
    if not title:
      return []
    relaxed = {k: v for k, v in query.items() if k not in ("date", "start_time")}
    found = self.candidates(user_id, relaxed)
    if found:
      _log_debug(f"[RESOLVER] relaxed match title={title!r} count={len(found)}")
      return found
    found = self.fuzzy_candidates(user_id, title)
    _log_debug(f"[RESOLVER] fuzzy match title={title!r} count={len(found)}")
    return found

  def list_events(self, user_id: str, title: str, raw_date: str) -> List[CalendarEventRecord]:
    """Events for a list question: a given day, an upcoming title, or today."""
    now = self.now_fn()
    day = parse_iso_date(raw_date) if raw_date else None
    if raw_date and day is not None:
      start, end = day_bounds(day)
    elif title:
      start, end = now, now + timedelta(days=CALENDAR_WINDOW_FUTURE_DAYS)
    else:
      start, end = day_bounds(now.date())
    records = self.store.events_between(user_id, start, end)
    if title:
      tokens = extract_query_tokens(title)
      records = [
          r for r in records
          if all(token in (r.title or "").lower() for token in tokens)
      ]
    events = records[:LIST_RESULT_LIMIT]
    if not events and title and not raw_date:
      events = [c.record for c in self.fuzzy_candidates(user_id, title)]
    return events
