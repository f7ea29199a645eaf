from __future__ import annotations

from typing import Any, Dict, List, Tuple

from ...models import CalendarEventRecord, ChatResponse
from ...recurrence import normalize_recurrence
from ...utils import is_affirmative, parse_duration_minutes
from ..constants import ActionType, Intent, PendingAction, RecurringScope
from ..formatters import format_candidates, format_event_changes
from ..resolve_event_target import Candidate, auto_pick, serialize_candidates
from ..schemas import normalize_confidence
from ..turn import Turn, event_snapshot, respond
from .event_mutation import EventMutationFlow, clean_scope, compact

TARGET_FIELDS = ["title", "date"]


class EventUpdateFlow(EventMutationFlow):
  """Move, rename or re-time an existing event, asking for whatever is unclear."""

  kind = "event_update"
  intent = Intent.UPDATE_EVENT.value
  action_type = ActionType.UPDATE_CALENDAR_EVENT
  target_intent = "update_event_target"
  changes_intent = "update_event_changes"

  def parse(self, turn: Turn, data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    changes = compact(data.get("changes"))
    if data.get("confidence"):
      changes["confidence"] = data["confidence"]
    duration = parse_duration_minutes(turn.text)
    if duration:
      changes["duration_minutes"] = duration
    recurrence = normalize_recurrence(changes.pop("recurrence", None))
    if recurrence:
      changes["recurrence"] = recurrence
    if not changes.get("recurrence_clear"):
      changes.pop("recurrence_clear", None)
    scope = clean_scope(changes.pop("recurring_scope", None))
    if scope:
      changes["recurring_scope"] = scope
    return changes, compact(data.get("target"))

  @staticmethod
  def missing_changes(changes: Dict[str, Any]) -> bool:
    return not {k for k in changes if k not in ("confidence", "recurring_scope")}

  def handle_update(self, turn: Turn) -> ChatResponse:
    extraction = self.extractor.extract_event_update(turn.text, context=turn.ctx.recent_context)
    if extraction.failure:
      return respond(extraction.failure)
    changes, target = self.parse(turn, extraction.data)

    if self.missing_changes(changes):
      turn.set_pending(PendingAction.CLARIFY_UPDATE_CHANGES, {"target": target})
      return self.clarify(turn, self.changes_intent, ["changes"], target,
                          "What should I change about the event?")

    if not target:
      recent = turn.last_event()
      if recent is not None:
        return self.confirm_or_update(turn, recent, changes)
      turn.set_pending(PendingAction.CLARIFY_UPDATE_TARGET, {"changes": changes})
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, changes,
                          "Which event should I update? Please share the title and date.")

    return self.find_and_update(turn, target, changes)

  def handle_target_clarification(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    changes = payload.get("changes") or {}
    query = self.extractor.extract_event_query(turn.text, context=turn.ctx.recent_context)
    if query.failure:
      return respond(query.failure)

    if query.error:
      recent = turn.last_event()
      if recent is not None:
        turn.clear()
        return self.confirm_or_update(turn, recent, changes)
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, changes,
                          "I still need the event title or date.")

    return self.find_and_update(turn, compact(query.data), changes, clear_state=True)

  def handle_changes_clarification(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    target = compact(payload.get("target"))
    extraction = self.extractor.extract_event_update(turn.text, context=turn.ctx.recent_context)
    if extraction.failure:
      return respond(extraction.failure)
    changes, extracted_target = self.parse(turn, extraction.data)

    if self.missing_changes(changes):
      return self.clarify(turn, self.changes_intent, ["changes"], target,
                          "I still need what to change (time, date, title, etc.).")

    target = target or extracted_target
    if not target:
      recent = turn.last_event()
      if recent is not None:
        turn.clear()
        return self.confirm_or_update(turn, recent, changes)
      turn.set_pending(PendingAction.CLARIFY_UPDATE_TARGET, {"changes": changes})
      return respond("Which event should I update? Please share the title and date.")

    return self.find_and_update(turn, target, changes, clear_state=True)

  def handle_selection(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    record = self.selected_record(turn, payload)
    if record is None:
      return respond("Reply with the number of the event you want.")
    self.log_selection(turn, record, payload, "update")
    turn.clear()
    return self.confirm_or_update(turn, record, dict(payload.get("changes") or {}))

  def handle_recurring_scope(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    scope = self.recurring_scope(turn)
    if scope is None:
      return respond("Reply \"this\" to change only this event or \"all\" for the whole series.")
    record = self.load_target(turn, payload)
    if record is None:
      return self.target_gone(turn, payload)
    turn.clear()
    changes = dict(payload.get("changes") or {}, recurring_scope=scope)
    return self.actions.apply_event_update(turn, record, changes, snapshot=payload.get("snapshot"))

  def handle_confirmation(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    record = self.load_target(turn, payload)
    if record is None:
      return self.target_gone(turn, payload)
    turn.clear()
    if is_affirmative(turn.text):
      return self.actions.apply_event_update(turn, record, dict(payload.get("changes") or {}),
                                             snapshot=payload.get("snapshot"))
    return respond("Okay, what should I change?")

  def find_and_update(self, turn: Turn, target: Dict[str, Any], changes: Dict[str, Any],
                      clear_state: bool = False) -> ChatResponse:
    candidates = self.find_candidates(turn, target)
    if not candidates:
      turn.set_pending(PendingAction.CLARIFY_UPDATE_TARGET, {"changes": changes})
      return self.clarify(turn, self.target_intent, TARGET_FIELDS, changes,
                          "I couldn't find that event. Can you share the title and date?")
    return self.handle_candidates(turn, candidates, changes, clear_state)

  def handle_candidates(self, turn: Turn, candidates: List[Candidate], changes: Dict[str, Any],
                        clear_state: bool = False) -> ChatResponse:
    if len(candidates) > 1:
      picked = auto_pick(candidates)
      if picked is None:
        serialized = serialize_candidates(candidates)
        turn.set_pending(PendingAction.SELECT_EVENT_FOR_UPDATE,
                         {"candidates": serialized, "changes": changes})
        return respond(f"Which event should I update?\n{format_candidates(serialized)}")
      if clear_state:
        turn.clear()
      return self.confirm_or_update(turn, picked.record, changes)

    if clear_state:
      turn.clear()
    return self.confirm_or_update(turn, candidates[0].record, changes)

  def confirm_or_update(self, turn: Turn, record: CalendarEventRecord,
                        changes: Dict[str, Any]) -> ChatResponse:
    changes = dict(changes)
    confidence = normalize_confidence(changes.get("confidence"))
    scope = clean_scope(changes.get("recurring_scope")) or self.recurring_scope(turn, record)
    snapshot = event_snapshot(record)
    scope_payload = {"event_id": record.id, "changes": changes, "snapshot": snapshot,
                     "action": "update"}

    if record.recurring and scope is None:
      turn.set_pending(PendingAction.CLARIFY_RECURRING_SCOPE, scope_payload)
      return respond("This event repeats. Update just this event or the whole series? "
                     "Reply \"this\" or \"all\".")

    if scope == RecurringScope.INSTANCE.value and (changes.get("recurrence")
                                                   or changes.get("recurrence_clear")):
      turn.set_pending(PendingAction.CLARIFY_RECURRING_SCOPE, scope_payload)
      return respond("Recurrence changes apply to the whole series. Update the series instead? "
                     "Reply \"all\" or \"this\" to pick.")

    if scope:
      changes["recurring_scope"] = scope

    if confidence != "high":
      turn.set_pending(PendingAction.CONFIRM_UPDATE,
                       {"event_id": record.id, "changes": changes, "snapshot": snapshot})
      return respond(f"I plan to update:\n{format_event_changes(record, changes)}\n\n"
                     "Should I apply this?")

    return self.actions.apply_event_update(turn, record, changes, snapshot=snapshot)
