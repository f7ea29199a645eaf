from __future__ import annotations

from typing import Any, Dict, List, Optional

from ...models import ChatResponse
from ...recurrence import normalize_recurrence
from ...utils import normalize_time_str, parse_iso_date
from ..constants import FlowKind, Intent, PendingAction
from ..formatters import format_event, format_extracted_events
from ..schemas import EventPayload, Extraction
from ..turn import Turn
from .base import Flow, Stage, extracted_items


def missing_event_fields(event: Dict[str, Any]) -> List[str]:
  missing = []
  if not str(event.get("title") or "").strip():
    missing.append("title")
  if parse_iso_date(event.get("date")) is None:
    missing.append("date")
  return missing


def normalize_event(event: Dict[str, Any]) -> Dict[str, Any]:
  """Clean one extracted event: HH:MM times, normalized recurrence, known keys only."""
  cleaned = dict(event)
  for key in ("start_time", "end_time"):
    if cleaned.get(key):
      cleaned[key] = normalize_time_str(cleaned[key]) or cleaned[key]
  cleaned["recurrence"] = normalize_recurrence(cleaned.get("recurrence"))
  if cleaned.get("confidence") not in ("low", "medium", "high"):
    cleaned.pop("confidence", None)
  payload = EventPayload.model_validate(cleaned)
  return payload.model_dump(exclude_none=True)


class EventFlow(Flow):
  kind = FlowKind.EVENT.value
  intent = Intent.CREATE_EVENT.value
  singular_label = "event"
  plural_label = "events"
  payload_key = "event"
  clarify_action = PendingAction.CLARIFY_EVENT_FIELDS.value
  confirm_action = PendingAction.CONFIRM_EVENT.value
  multi_action = PendingAction.SELECT_EVENT_FROM_EXTRACTION.value
  multi_payload_key = "events"
  error_missing_fields = ["title", "date", "time"]
  error_fallback = "What is the title, date, and time?"

  def extract(self, turn: Turn, image_ref: Optional[str] = None) -> Extraction:
    return self.extractor.extract_event(turn.text, image_ref=image_ref,
                                        context=turn.ctx.recent_context)

  def normalize(self, turn: Turn, payload: Dict[str, Any]) -> Dict[str, Any]:
    items = extracted_items(payload, "events")
    if len(items) == 1:
      payload = items[0]
    return normalize_event(payload)

  def missing_fields(self, payload: Dict[str, Any]) -> List[str]:
    return missing_event_fields(payload)

  def confirm_prompt(self, payload: Dict[str, Any], stage: Stage = "initial") -> str:
    base = "Got it. Here’s the event:" if stage == "corrected" else "I found this event:"
    return f"{base}\n\n{format_event(payload)}\n\nShould I add it?"

  def execute(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self.actions.create_event(turn, payload)

  def multi_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = extracted_items(payload, "events")
    return items if len(items) > 1 else []

  def multi_formatter(self, items: List[Dict[str, Any]]) -> str:
    return format_extracted_events(items)
