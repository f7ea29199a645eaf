from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from ...models import CalendarEventRecord, ChatResponse
from ...utils import _log_debug, _reply_key
from ..actions import CalendarActions
from ..constants import ActionType, ErrorCode, RecurringScope, Status
from ..extractor import LLMExtractor
from ..question_agent import LLMQuestionAgent
from ..resolve_event_target import Candidate, EventCandidateResolver
from ..selection import pick_candidate
from ..turn import Turn, event_snapshot, respond

_INSTANCE_REPLIES = {"this", "this one", "just this", "just this one", "only this", "only this one",
                     "instance", "this event", "this occurrence", "just this event", "only this event"}
_SERIES_REPLIES = {"all", "all of them", "series", "the series", "whole series", "the whole series",
                   "every", "everything", "all events", "every one"}
_SERIES_RE = re.compile(r"\b(whole|entire) series\b|\ball (future|of them|occurrences|events)\b"
                        r"|\bevery (occurrence|one|week|time)\b")
_INSTANCE_RE = re.compile(r"\b(just|only) this( one)?\b|\bthis (occurrence|instance) only\b"
                          r"|\bonly (this|that) (event|occurrence|instance)\b")


def scope_from_text(text: Optional[str]) -> Optional[str]:
  """Scope named outright by a short reply or a telltale phrase."""
  normalized = _reply_key(text)
  if normalized in _INSTANCE_REPLIES:
    return RecurringScope.INSTANCE.value
  if normalized in _SERIES_REPLIES:
    return RecurringScope.SERIES.value
  if _SERIES_RE.search(normalized):
    return RecurringScope.SERIES.value
  if _INSTANCE_RE.search(normalized):
    return RecurringScope.INSTANCE.value
  return None


def clean_scope(value: Any) -> Optional[str]:
  if isinstance(value, str) and value.strip().lower() in (RecurringScope.INSTANCE.value,
                                                           RecurringScope.SERIES.value):
    return value.strip().lower()
  return None


def resolve_recurring_scope(extractor: LLMExtractor, text: str, context: str = "",
                            use_model: bool = True) -> Optional[str]:
  """instance / series / None. Phrases first, then the extractor when allowed."""
  scope = scope_from_text(text)
  if scope or not use_model or not (text or "").strip():
    return scope
  parsed = extractor.extract_recurring_scope(text, context=context)
  return clean_scope(parsed.recurring_scope)


def compact(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
  return {k: v for k, v in (data or {}).items() if v is not None and v != ""}


class EventMutationFlow:
  """Target resolution shared by the update and delete flows."""

  kind = ""
  intent = ""
  action_type = ActionType.UPDATE_CALENDAR_EVENT
  target_intent = ""

  def __init__(self, extractor: LLMExtractor, actions: CalendarActions,
               resolver: EventCandidateResolver, questions: LLMQuestionAgent) -> None:
    self.extractor = extractor
    self.actions = actions
    self.resolver = resolver
    self.questions = questions

  def clarify(self, turn: Turn, intent: str, missing: List[str], extracted: Dict[str, Any],
              fallback: str) -> ChatResponse:
    return respond(self.questions.clarify_missing_details(
        intent=intent,
        missing_fields=missing,
        extracted=extracted,
        fallback=fallback,
        context=turn.ctx.recent_context,
    ))

  def find_candidates(self, turn: Turn, target: Dict[str, Any]) -> List[Candidate]:
    found = self.resolver.candidates_with_fallback(turn.ctx.user_id, target)
    _log_debug(f"[FLOW] {self.kind} target={target} candidates={len(found)}")
    return found

  def recurring_scope(self, turn: Turn, record: Optional[CalendarEventRecord] = None) -> Optional[str]:
    use_model = record is None or record.recurring
    return resolve_recurring_scope(self.extractor, turn.text, turn.ctx.recent_context,
                                   use_model=use_model)

  def selected_record(self, turn: Turn, payload: Dict[str, Any]) -> Optional[CalendarEventRecord]:
    candidates = [c for c in payload.get("candidates") or [] if isinstance(c, dict)]
    index = pick_candidate(turn.text, [str(c.get("title") or "") for c in candidates])
    if index is None:
      return None
    return turn.store.get_event(candidates[index].get("id"))

  def log_selection(self, turn: Turn, record: CalendarEventRecord, payload: Dict[str, Any],
                    selection_kind: str) -> None:
    turn.log_action(ActionType.SELECT_CALENDAR_EVENT, Status.SUCCESS,
                    calendar_event_id=record.id,
                    calendar_id=record.calendar_id,
                    metadata={
                        "selection_kind": selection_kind,
                        "candidates": payload.get("candidates"),
                        "selected_event": event_snapshot(record),
                        "changes": payload.get("changes"),
                    })

  def load_target(self, turn: Turn, payload: Dict[str, Any]) -> Optional[CalendarEventRecord]:
    record = turn.store.get_event(payload.get("event_id"))
    if record is None or record.status != "active":
      return None
    return record

  def target_gone(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    snapshot = payload.get("snapshot")
    calendar_id = snapshot.get("calendar_id") if isinstance(snapshot, dict) else None
    turn.clear()
    turn.log_action(self.action_type, Status.ERROR, calendar_id=calendar_id,
                    metadata={"error_code": ErrorCode.EVENT_NOT_FOUND.value,
                              "event_id": payload.get("event_id"),
                              "snapshot": snapshot})
    return respond("I couldn't find that event anymore.", error_code=ErrorCode.EVENT_NOT_FOUND)
