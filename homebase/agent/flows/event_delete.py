from __future__ import annotations

from typing import Any, Dict, List

from ...models import CalendarEventRecord, ChatResponse
from ...utils import is_affirmative
from ..constants import ActionType, Intent, PendingAction
from ..formatters import format_candidates, format_event_record
from ..resolve_event_target import Candidate, auto_pick, serialize_candidates
from ..turn import Turn, event_snapshot, respond
from .event_mutation import EventMutationFlow, clean_scope, compact

TARGET_FIELDS = ["title", "date"]


class EventDeleteFlow(EventMutationFlow):
  kind = "event_delete"
  intent = Intent.DELETE_EVENT.value
  action_type = ActionType.DELETE_CALENDAR_EVENT
  target_intent = "delete_event_target"

  def handle_delete(self, turn: Turn) -> ChatResponse:
    query = self.extractor.extract_event_query(turn.text, context=turn.ctx.recent_context)
    if query.failure:
      return respond(query.failure)
    if query.error:
      turn.set_pending(PendingAction.CLARIFY_DELETE_TARGET, {})
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, {},
                          "Which event should I delete? Please share the title and date.")
    return self.find_and_delete(turn, compact(query.data))

  def handle_target_clarification(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    query = self.extractor.extract_event_query(turn.text, context=turn.ctx.recent_context)
    if query.failure:
      return respond(query.failure)
    if query.error:
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, {},
                          "I still need the event title or date.")
    return self.find_and_delete(turn, compact(query.data), clear_state=True)

  def handle_selection(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    """A numbered pick is the confirmation; only an unknown recurring scope asks again."""
    record = self.selected_record(turn, payload)
    if record is None:
      return respond("Reply with the number of the event you want.")
    self.log_selection(turn, record, payload, "delete")
    turn.clear()
    scope = self.recurring_scope(turn, record)
    if record.recurring and scope is None:
      return self.ask_scope(turn, record)
    return self.actions.delete_event(turn, record, scope=scope)

  def handle_recurring_scope(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    scope = self.recurring_scope(turn)
    if scope is None:
      return respond("Reply \"this\" to delete only this event or \"all\" for the whole series.")
    record = self.load_target(turn, payload)
    if record is None:
      return self.target_gone(turn, payload)
    turn.clear()
    return self.actions.delete_event(turn, record, scope=scope)

  def handle_confirmation(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    record = self.load_target(turn, payload)
    if record is None:
      return self.target_gone(turn, payload)
    turn.clear()
    if is_affirmative(turn.text):
      scope = clean_scope(payload.get("recurring_scope")) or self.recurring_scope(turn, record)
      return self.actions.delete_event(turn, record, scope=scope)
    return respond("Okay, I won’t delete it.")

  def find_and_delete(self, turn: Turn, target: Dict[str, Any],
                      clear_state: bool = False) -> ChatResponse:
    candidates = self.find_candidates(turn, target)
    if not candidates:
      turn.set_pending(PendingAction.CLARIFY_DELETE_TARGET, {})
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, {},
                          "I couldn't find that event. Can you share the title and date?")
    return self.handle_candidates(turn, candidates, clear_state)

  def handle_candidates(self, turn: Turn, candidates: List[Candidate],
                        clear_state: bool = False) -> ChatResponse:
    if len(candidates) > 1:
      picked = auto_pick(candidates)
      if picked is None:
        serialized = serialize_candidates(candidates)
        turn.set_pending(PendingAction.SELECT_EVENT_FOR_DELETE, {"candidates": serialized})
        return respond(f"Which event should I delete?\n{format_candidates(serialized)}")
      if clear_state:
        turn.clear()
      return self.confirm_or_delete(turn, picked.record)

    if clear_state:
      turn.clear()
    return self.confirm_or_delete(turn, candidates[0].record)

  def ask_scope(self, turn: Turn, record: CalendarEventRecord) -> ChatResponse:
    turn.set_pending(PendingAction.CLARIFY_RECURRING_SCOPE,
                     {"event_id": record.id, "snapshot": event_snapshot(record), "action": "delete"})
    return respond("This event repeats. Delete just this event or the whole series? "
                   "Reply \"this\" or \"all\".")

  def confirm_or_delete(self, turn: Turn, record: CalendarEventRecord) -> ChatResponse:
    scope = self.recurring_scope(turn, record)
    if record.recurring and scope is None:
      return self.ask_scope(turn, record)
    turn.set_pending(PendingAction.CONFIRM_DELETE,
                     {"event_id": record.id, "snapshot": event_snapshot(record),
                      "recurring_scope": scope})
    return respond(f"Delete this event?\n{format_event_record(record)}")
