from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models import CalendarEventRecord, ChatResponse
from ..utils import _log_debug, day_bounds, extract_urls, is_affirmative, parse_amount, parse_iso_date
from .actions import CalendarActions
from .constants import ActionType, ErrorCode, FrontendAction, Intent, PendingAction, Status
from .extractor import LLMExtractor
from .flow_engine import FlowEngine, merge_image
from .flows.base import extracted_items
from .flows.memory import IMAGE_MEMORY_PROMPT
from .flows.registry import FlowRegistry
from .formatters import format_event_brief, format_memory_list, format_transaction_record
from .intent_router import LLMIntentRouter
from .resolve_event_target import EventCandidateResolver, extract_query_tokens
from .selection import ALL, selection_indices
from .turn import Turn, respond

TRANSACTION_SEARCH_LIMIT = 5
DIGEST_LOOKAHEAD_DAYS = 7

HELP_TEXT = (
    "Here's what I can do:\n"
    "- Add an event: \"Dentist next Tuesday at 3pm\" (or send a photo of a flyer)\n"
    "- Change or delete an event: \"Move dentist to 4pm\", \"Delete my dentist appointment\"\n"
    "- See your calendar: \"What's on Friday?\"\n"
    "- Log a purchase: \"$42 at Costco on amex\" (or send a receipt)\n"
    "- Remember things: \"Remember the wifi password is ...\", then ask \"What's the wifi password?\""
)

_CREATED_ACTIONS = {
    "event": FrontendAction.CALENDAR_EVENT_CREATED,
    "transaction": FrontendAction.TRANSACTION_CREATED,
}


class DialogueHandlers:
  """Handlers for intents and for replies to a pending action."""

  def __init__(self, engine: FlowEngine, registry: FlowRegistry, extractor: LLMExtractor,
               intents: LLMIntentRouter, actions: CalendarActions,
               resolver: EventCandidateResolver) -> None:
    self.engine = engine
    self.registry = registry
    self.extractor = extractor
    self.intents = intents
    self.actions = actions
    self.resolver = resolver

  # -------------------------
  # intents
  # -------------------------
  def route_intent(self, turn: Turn, intent: str, image_ref: Optional[str] = None) -> ChatResponse:
    _log_debug(f"[DISPATCH] thread={turn.ctx.thread_id} intent={intent}")
    if intent == Intent.CREATE_TRANSACTION.value:
      return self.engine.handle_create(turn, "transaction", image_ref=image_ref)
    if intent == Intent.CREATE_MEMORY.value:
      return self.engine.handle_create(turn, "memory", image_ref=image_ref)
    if intent == Intent.SEARCH_MEMORY.value:
      return self.handle_search_memory(turn)
    if intent == Intent.SEARCH_TRANSACTION.value:
      return self.handle_search_transaction(turn)
    if intent == Intent.UPDATE_EVENT.value:
      return self.registry.updates.handle_update(turn)
    if intent == Intent.DELETE_EVENT.value:
      return self.registry.deletes.handle_delete(turn)
    if intent == Intent.LIST_EVENTS.value:
      return self.handle_list_events(turn)
    if intent == Intent.DIGEST.value:
      return self.handle_digest(turn)
    if intent == Intent.HELP.value:
      return respond(HELP_TEXT)
    return self.engine.handle_create(turn, "event", image_ref=image_ref)

  def handle_clarified_intent(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    image_ref = payload.get("image_ref")
    result = self.intents.classify_intent(turn.text, has_image=bool(image_ref),
                                          context=turn.ctx.recent_context, image_ref=image_ref)
    if result.intent == Intent.AMBIGUOUS.value:
      return respond(self.intents.generate_intent_clarification(
          turn.text, has_image=bool(image_ref), context=turn.ctx.recent_context, is_followup=True))
    turn.clear()
    return self.route_intent(turn, result.intent, image_ref=image_ref)

  # -------------------------
  # corrections
  # -------------------------
  def _correction(self, turn: Turn, payload: Dict[str, Any], kind: str) -> ChatResponse:
    flow = self.registry.fetch(kind)
    current = payload.get(flow.payload_key) or {}
    image_ref = payload.get("image_ref")
    label = "Event" if kind == "event" else "Transaction"

    if image_ref and payload.get("missing_fields"):
      extraction = flow.extract(turn, image_ref)
      if not extraction.failure and not extraction.error:
        return self.engine.handle_correction(turn, kind, extraction.data, image_ref=image_ref)

    if kind == "event":
      result = self.extractor.apply_event_correction(current, turn.text)
    else:
      result = self.extractor.apply_transaction_correction(current, turn.text)
    if result.failure:
      turn.clear()
      return respond(result.failure)
    if result.error:
      turn.clear()
      return respond(result.message or f"I couldn't update the {label.lower()}.")
    return self.engine.handle_correction(turn, kind, result.data, image_ref=image_ref)

  def handle_event_correction(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._correction(turn, payload, "event")

  def handle_transaction_correction(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._correction(turn, payload, "transaction")

  def handle_memory_correction(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    if payload.get("force_content"):
      content = turn.text.strip()
      if not content:
        turn.set_pending(PendingAction.CLARIFY_MEMORY_FIELDS, payload)
        return respond(self.engine.questions.clarify_missing_details(
            intent=Intent.CREATE_MEMORY.value,
            missing_fields=["content"],
            extracted=payload.get("memory") or {},
            fallback="What should I remember from this image?",
            extra=IMAGE_MEMORY_PROMPT,
            context=turn.ctx.recent_context,
        ))
      data: Dict[str, Any] = {"content": content, "category": payload.get("category") or "image"}
      urls = extract_urls(turn.text)
      if urls:
        data["urls"] = urls
      turn.clear()
      return self.actions.create_memory(turn, data)

    extraction = self.extractor.extract_memory(turn.text, context=turn.ctx.recent_context)
    if extraction.failure:
      return respond(extraction.failure)
    if extraction.error:
      turn.set_pending(PendingAction.CLARIFY_MEMORY_FIELDS, {"memory": {}})
      return respond(self.engine.clarify(turn, Intent.CREATE_MEMORY.value, ["content"], {},
                                         extraction.message or "What should I remember?"))
    return self.engine.handle_correction(turn, "memory", extraction.data,
                                         image_ref=payload.get("image_ref"))

  # -------------------------
  # confirmations
  # -------------------------
  def _confirmation(self, turn: Turn, payload: Dict[str, Any], kind: str,
                    decline: str = "Okay, what should I change?") -> ChatResponse:
    flow = self.registry.fetch(kind)
    turn.clear()
    if is_affirmative(turn.text):
      return flow.execute(turn, payload.get(flow.payload_key) or {})
    return respond(decline)

  def handle_event_confirmation(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._confirmation(turn, payload, "event")

  def handle_transaction_confirmation(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._confirmation(turn, payload, "transaction")

  def handle_memory_confirmation(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._confirmation(turn, payload, "memory",
                              decline="Okay, tell me what you want to remember.")

  def handle_recurring_scope(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    if payload.get("action") == "delete":
      return self.registry.deletes.handle_recurring_scope(turn, payload)
    return self.registry.updates.handle_recurring_scope(turn, payload)

  # -------------------------
  # picking from an extraction
  # -------------------------
  def _extraction_selection(self, turn: Turn, payload: Dict[str, Any], kind: str) -> ChatResponse:
    flow = self.registry.fetch(kind)
    items = extracted_items(payload, flow.multi_payload_key)
    reprompt = f"Reply with the {flow.singular_label} numbers to add, or say \"all\"."
    if not items:
      return respond(reprompt)

    indices = selection_indices(turn.text, len(items))
    if indices == ALL:
      indices = list(range(len(items)))
    elif not indices:
      return respond(reprompt)
    selected = [flow.normalize(turn, items[i]) for i in indices]

    for entry in selected:
      missing = flow.missing_fields(entry)
      if not missing:
        continue
      pending = merge_image({flow.payload_key: entry, "missing_fields": missing},
                            payload.get("image_ref"))
      turn.set_pending(flow.clarify_action, pending)
      return respond(self.engine.clarify(
          turn, flow.intent, missing, entry,
          f"I need {', '.join(missing)} to add this {flow.singular_label}.",
          extra=flow.extra_prompt(turn, "missing", entry, missing)))

    labels: List[str] = []
    errors: List[str] = []
    done: List[int] = []
    for index, entry in zip(indices, selected):
      result = flow.execute(turn, entry)
      if result.error_code == ErrorCode.CALENDAR_AUTH_EXPIRED.value:
        if done:
          # the thread was rolled back; only offer what was not written yet
          turn.state.payload[flow.multi_payload_key] = [
              item for i, item in enumerate(items) if i not in done]
        return result
      if result.error_code:
        errors.append(result.text)
      else:
        done.append(index)
        labels.append(self._item_label(kind, entry))

    turn.clear()
    action = _CREATED_ACTIONS.get(kind)
    if errors:
      failed = "\n".join(f"- {err}" for err in errors)
      return respond(f"Added {len(selected) - len(errors)} {flow.plural_label}. Some failed:\n{failed}",
                     action=action)
    added = "\n".join(f"- {label}" for label in labels)
    return respond(f"Added {len(selected)} {flow.plural_label}. ✅\n{added}", action=action)

  @staticmethod
  def _item_label(kind: str, entry: Dict[str, Any]) -> str:
    if kind == "transaction":
      amount = parse_amount(entry.get("amount"))
      parts = [entry.get("merchant") or "Unknown merchant",
               f"${amount:.2f}" if amount is not None else "Unknown amount"]
      if entry.get("date"):
        parts.append(entry["date"])
      return " • ".join(parts)
    return entry.get("title") or "Untitled event"

  def handle_event_extraction_selection(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self._extraction_selection(turn, payload, "event")

  def handle_transaction_extraction_selection(self, turn: Turn,
                                              payload: Dict[str, Any]) -> ChatResponse:
    return self._extraction_selection(turn, payload, "transaction")

  # -------------------------
  # listing
  # -------------------------
  def _list_for_query(self, turn: Turn,
                      data: Dict[str, Any]) -> Tuple[List[CalendarEventRecord], str, str]:
    title = str(data.get("title") or "").strip()
    raw_date = str(data.get("date") or "").strip()
    if not raw_date and not title:
      title = " ".join(extract_query_tokens(turn.text))
    events = self.resolver.list_events(turn.ctx.user_id, title, raw_date)
    return events, title, raw_date

  def _list_clarify(self, turn: Turn, message: Optional[str]) -> ChatResponse:
    return respond(self.engine.clarify(turn, Intent.LIST_EVENTS.value, ["date", "title"], {},
                                       message or "What date or title should I look for?"))

  def handle_list_events(self, turn: Turn) -> ChatResponse:
    query = self.extractor.extract_event_query(turn.text, context=turn.ctx.recent_context)
    if query.failure:
      return respond(query.failure)
    if query.error:
      turn.set_pending(PendingAction.CLARIFY_LIST_QUERY, {"query": {}})
      return self._list_clarify(turn, query.message)

    data = query.data
    events, title, raw_date = self._list_for_query(turn, data)
    turn.log_action(ActionType.LIST_EVENTS, Status.SUCCESS,
                    metadata={"query": data, "result_count": len(events)})
    if not events:
      turn.set_pending(PendingAction.CLARIFY_LIST_QUERY, {"query": data})
      if not title and not raw_date:
        return respond("No events today. Want me to check what's next on your calendar?")
      return respond("I couldn't find any upcoming events that match. Want me to search a different title?")

    lines = "\n".join(format_event_brief(event) for event in events)
    header = "Here are the next matches:" if title else "Here are the next events:"
    return respond(f"{header}\n{lines}")

  def handle_list_query_clarification(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    query = self.extractor.extract_event_query(turn.text, context=turn.ctx.recent_context)
    if query.failure:
      return respond(query.failure)
    if query.error:
      return self._list_clarify(turn, query.message)

    events, title, raw_date = self._list_for_query(turn, query.data)
    if not events:
      if title or raw_date:
        return respond("Still nothing. Try a more specific title or date.")
      return respond("No events today. Want me to check what's next on your calendar?")
    turn.clear()
    lines = "\n".join(format_event_brief(event) for event in events)
    return respond(f"Here are the next matches:\n{lines}")

  def handle_digest(self, turn: Turn) -> ChatResponse:
    today = turn.ctx.now.date()
    start, end = day_bounds(today)
    todays = turn.store.events_between(turn.ctx.user_id, start, end)
    _, week_end = day_bounds(today + timedelta(days=DIGEST_LOOKAHEAD_DAYS))
    upcoming = turn.store.events_between(turn.ctx.user_id, end, week_end)

    if todays:
      lines = ["Today:"] + [f"- {format_event_brief(event)}" for event in todays]
    else:
      lines = ["Nothing on your calendar today."]
    noun = "event" if len(upcoming) == 1 else "events"
    lines.append(f"Next {DIGEST_LOOKAHEAD_DAYS} days: {len(upcoming)} {noun}.")
    return respond("\n".join(lines))

  # -------------------------
  # searches
  # -------------------------
  def handle_search_transaction(self, turn: Turn) -> ChatResponse:
    extraction = self.extractor.extract_transaction_query(turn.text, context=turn.ctx.recent_context)
    if extraction.failure or extraction.error:
      return respond("I couldn't understand what transactions you're looking for.")
    query = extraction.data
    rows = self.actions.search_transactions(turn.ctx.user_id, query)

    criteria = []
    if query.get("merchant"):
      criteria.append(f"merchant '{query['merchant']}'")
    if query.get("category"):
      criteria.append(f"category '{query['category']}'")
    start = parse_iso_date(query.get("start_date"))
    if start:
      criteria.append(f"after {start.strftime('%b %d')}")
    end = parse_iso_date(query.get("end_date"))
    if end:
      criteria.append(f"before {end.strftime('%b %d')}")
    if query.get("min_amount") not in (None, ""):
      criteria.append(f"over ${query['min_amount']}")
    if query.get("max_amount") not in (None, ""):
      criteria.append(f"under ${query['max_amount']}")

    if not rows:
      desc = ", ".join(criteria) if criteria else "all transactions"
      return respond(f"I couldn't find any transactions matching: {desc}.")

    try:
      limit = max(int(query.get("limit") or TRANSACTION_SEARCH_LIMIT), 1)
    except (TypeError, ValueError):
      limit = TRANSACTION_SEARCH_LIMIT
    total = sum(row.amount for row in rows)
    formatted = "\n".join(format_transaction_record(row) for row in rows[:limit])
    text = f"Found {len(rows)} transactions (Total: ${total:.2f})\n\n{formatted}"
    if len(rows) > limit:
      text += f"\n\n(Showing top {limit})"
    return respond(text)

  def handle_search_memory(self, turn: Turn) -> ChatResponse:
    extraction = self.extractor.extract_memory_query(turn.text)
    if extraction.failure:
      return respond(extraction.failure)
    query = str(extraction.data.get("query") or "").strip()
    if extraction.error or not query:
      return respond(self.engine.clarify(turn, Intent.SEARCH_MEMORY.value, ["query"], {},
                                         "What should I search for in your memories?"))

    memories = self.actions.search_memories(turn.ctx.user_id, query)
    if not memories:
      return respond("I couldn't find any memories about that.")
    answer = self.extractor.answer_from_memories(turn.text, memories)
    return respond(answer or format_memory_list(memories))
