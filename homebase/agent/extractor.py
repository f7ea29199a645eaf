from __future__ import annotations

import os
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel

from ..config import MAX_YEAR_ROLLOVER_DAYS, TIMEZONE_NAME, TRANSACTION_SOURCES
from ..models import MemoryRecord
from ..utils import _log_debug, now_local, parse_iso_date
from .llm_provider import get_agent_llm_settings, run_structured_completion, run_text_completion
from .schemas import (
    EventExtractionOutput,
    EventQueryOutput,
    EventUpdateOutput,
    Extraction,
    MemoryExtractionOutput,
    MemoryQueryOutput,
    RecurringScopeOutput,
    TransactionExtractionOutput,
    TransactionQueryOutput,
)

EXTRACT_MODEL = os.getenv("AGENT_EXTRACT_MODEL", "gpt-5-mini").strip()
_SETTINGS = get_agent_llm_settings("EXTRACT")
_MAX_COMPLETION_TOKENS = 4000

SYSTEM_PROMPT_TEMPLATE = """You extract structured data for a household assistant that manages a
calendar, a spending ledger and a memory notebook.
Today is {today} (Timezone: {timezone}).
Return JSON only. No markdown.
Use "context" (recent conversation lines) only to resolve references like "it" or "that".
"""

_RECURRENCE_SCHEMA = """{"frequency": "daily|weekly|monthly|yearly", "interval": 1, "by_day": ["MO", "TU"], "count": 10, "until": "YYYY-MM-DD"}"""

EVENT_DEVELOPER_PROMPT = f"""Extract calendar event details from the text (or the attached image). Return:
{{
  "title": "Event name",
  "date": "YYYY-MM-DD (if the year is missing, infer the closest future date)",
  "start_time": "HH:MM 24-hour, or null",
  "end_time": "HH:MM 24-hour, or null",
  "recurrence": {_RECURRENCE_SCHEMA} or null,
  "location": "Venue and/or address, or null",
  "description": "Other relevant details, or null",
  "confidence": "high if date and time are explicit, medium if some guessing was needed, low if very uncertain"
}}
If there are several events, return {{"events": [<objects with the same schema>]}}.
If there is no event information, return {{"error": "no_event_found", "message": "What's the title, date, and time? (You can say \\"all-day\\".)"}}.
"""

TRANSACTION_DEVELOPER_PROMPT = f"""Extract a financial transaction from the text (or the attached receipt, invoice or payment screenshot). Return:
{{
  "amount": 12.34,
  "merchant": "Merchant name",
  "date": "YYYY-MM-DD",
  "category": "Optional category",
  "source": "Required, one of: {', '.join(TRANSACTION_SOURCES)}",
  "confidence": "low|medium|high"
}}
If there are several transactions, return {{"transactions": [<objects with the same schema>]}}.
If there is no transaction, return {{"error": "no_transaction_found", "message": "I couldn't find a transaction in that message."}}.
"""

MEMORY_DEVELOPER_PROMPT = """Extract a memory to store. Return:
{"content": "Normalized memory content", "category": "Optional category", "confidence": "low|medium|high"}
If the text does not include a memory, return {"error": "no_memory_found", "message": "I couldn't find a memory in that message."}.
"""

CORRECTION_DEVELOPER_PROMPT = """"current" holds the details extracted so far and "text" is the user's correction.
Apply the correction and return the full object with the same structure, plus "confidence": "low|medium|high".
Keep every field the user did not change.
"""

EVENT_QUERY_DEVELOPER_PROMPT = """Extract the calendar event query from the user's message. Return:
{"title": "Event title or keywords (empty if not searching by title)", "date": "YYYY-MM-DD or empty", "start_time": "HH:MM or empty"}
Rules:
- "today", "tonight", "this morning/afternoon/evening" set date to today; "tomorrow" sets it to tomorrow.
- A bare weekday ("Friday") means its next occurrence.
- For date-only questions ("what am I doing tomorrow?") leave title empty; never use words like "doing" or "scheduled" as a title.
If nothing can be determined, return {"error": "no_event_query", "message": "Missing event details."}.
"""

EVENT_UPDATE_DEVELOPER_PROMPT = f"""Extract which event to update and the requested changes. Return:
{{
  "confidence": "low|medium|high",
  "target": {{"title": "Event title or keywords", "date": "YYYY-MM-DD", "start_time": "HH:MM"}},
  "changes": {{
    "title": "New title", "date": "YYYY-MM-DD", "start_time": "HH:MM", "end_time": "HH:MM",
    "duration_minutes": 120,
    "recurrence": {_RECURRENCE_SCHEMA},
    "recurrence_clear": true,
    "recurring_scope": "instance|series|unspecified",
    "location": "New location", "description": "New description"
  }}
}}
Only include fields the user mentioned. If no changes are specified, return {{"error": "no_changes", "message": "Missing update details."}}.
"""

RECURRING_SCOPE_DEVELOPER_PROMPT = """Decide whether the user wants to change just this occurrence or the whole recurring series. Return:
{"recurring_scope": "instance|series|unspecified", "recurrence_clear": true|false}
- "this", "just this", "only this", "this one" => instance
- "all", "every", "whole series", "all future", "series" => series
- If unclear, use "unspecified".
- "not recurring", "stop repeating", "remove recurrence" set recurrence_clear to true.
"""

TRANSACTION_QUERY_DEVELOPER_PROMPT = """Extract transaction search criteria. Return:
{"merchant": "Merchant or keywords", "category": "Category or keywords", "start_date": "YYYY-MM-DD", "end_date": "YYYY-MM-DD", "min_amount": 10.0, "max_amount": 100.0, "limit": 10}
- "last week" / "this month" set start_date and end_date accordingly.
- A service, activity or product ("haircuts", "oil change", "groceries") goes into merchant for keyword matching.
- Always make a best-effort extraction; omit fields you cannot determine.
"""

MEMORY_QUERY_DEVELOPER_PROMPT = """Extract what to search for in saved memories. Return {"query": "keywords to search"}.
If there is no query, return {"query": null}.
"""

MEMORY_ANSWER_SYSTEM_PROMPT = """Answer the user's question using only the memories provided.
If the memories don't help, say you don't know. Keep it short and plain text.
"""


def adjust_event_date(event: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
  """Roll a past (or far future) extracted date to its next occurrence within a year.

  Models often guess the wrong year for dates printed without one.
  """
  parsed = parse_iso_date(event.get("date"))
  if parsed is None:
    return event
  today = today or now_local().date()
  horizon = today + timedelta(days=MAX_YEAR_ROLLOVER_DAYS)
  if today <= parsed <= horizon:
    return event
  try:
    adjusted = date(today.year, parsed.month, parsed.day)
    if adjusted < today:
      adjusted = date(today.year + 1, parsed.month, parsed.day)
  except ValueError:
    return event
  if adjusted > horizon:
    return event
  updated = dict(event)
  updated["date"] = adjusted.isoformat()
  return updated


def _system_prompt() -> str:
  return SYSTEM_PROMPT_TEMPLATE.format(today=now_local().date().isoformat(),
                                       timezone=TIMEZONE_NAME)


def _structured(developer_prompt: str,
                payload: Dict[str, Any],
                response_model: Type[BaseModel],
                images: Optional[List[str]] = None):
  return run_structured_completion(
      model=EXTRACT_MODEL,
      system_prompt=_system_prompt(),
      developer_prompt=developer_prompt,
      user_payload=payload,
      response_model=response_model,
      images=images or [],
      reasoning_effort=_SETTINGS["reasoning_effort"],
      gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
      verbosity="low",
      max_completion_tokens=_MAX_COMPLETION_TOKENS,
  )


def _to_extraction(parsed: Optional[BaseModel], meta: Dict[str, Any],
                   failure_label: str) -> Extraction:
  if parsed is None:
    reason = meta.get("llm_error") or meta.get("unavailable_reason") or "no readable response"
    _log_debug(f"[EXTRACT] {failure_label} failed: {reason}")
    return Extraction(failure=f"{failure_label}: {reason}")
  data = parsed.model_dump(exclude_none=True)
  error = bool(data.pop("error", None))
  message = data.pop("message", None)
  return Extraction(data=data, error=error, message=message)


def _adjust_event_dates(extraction: Extraction) -> Extraction:
  if extraction.failure or extraction.error:
    return extraction
  data = adjust_event_date(extraction.data)
  if isinstance(data.get("events"), list):
    data["events"] = [adjust_event_date(item) for item in data["events"] if isinstance(item, dict)]
  extraction.data = data
  return extraction


class LLMExtractor:
  """Extraction collaborator backed by the configured chat model.

  Every method is side-effect free and never raises for model failures:
  they come back as ``Extraction.failure`` texts.
  """

  def extract_event(self, text: str, image_ref: Optional[str] = None,
                    context: str = "") -> Extraction:
    images = [image_ref] if image_ref else []
    parsed, _, meta = _structured(EVENT_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  EventExtractionOutput, images)
    label = "Image extraction error" if image_ref else "Text extraction error"
    return _adjust_event_dates(_to_extraction(parsed, meta, label))

  def extract_transaction(self, text: str, image_ref: Optional[str] = None,
                          context: str = "") -> Extraction:
    images = [image_ref] if image_ref else []
    parsed, _, meta = _structured(TRANSACTION_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  TransactionExtractionOutput, images)
    return _to_extraction(parsed, meta, "Transaction extraction error")

  def extract_memory(self, text: str, context: str = "") -> Extraction:
    parsed, _, meta = _structured(MEMORY_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  MemoryExtractionOutput)
    return _to_extraction(parsed, meta, "Memory error")

  def apply_event_correction(self, event: Dict[str, Any], text: str) -> Extraction:
    parsed, _, meta = _structured(CORRECTION_DEVELOPER_PROMPT + "\n" + EVENT_DEVELOPER_PROMPT,
                                  {"current": event, "text": text},
                                  EventExtractionOutput)
    return _adjust_event_dates(_to_extraction(parsed, meta, "Event correction error"))

  def apply_transaction_correction(self, transaction: Dict[str, Any], text: str) -> Extraction:
    parsed, _, meta = _structured(
        CORRECTION_DEVELOPER_PROMPT + "\n" + TRANSACTION_DEVELOPER_PROMPT,
        {"current": transaction, "text": text},
        TransactionExtractionOutput)
    return _to_extraction(parsed, meta, "Transaction correction error")

  def extract_event_query(self, text: str, context: str = "") -> Extraction:
    parsed, _, meta = _structured(EVENT_QUERY_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  EventQueryOutput)
    return _to_extraction(parsed, meta, "Event query error")

  def extract_event_update(self, text: str, context: str = "") -> Extraction:
    parsed, _, meta = _structured(EVENT_UPDATE_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  EventUpdateOutput)
    return _to_extraction(parsed, meta, "Update error")

  def extract_recurring_scope(self, text: str, context: str = "") -> RecurringScopeOutput:
    parsed, _, _ = _structured(RECURRING_SCOPE_DEVELOPER_PROMPT,
                               {"text": text, "context": context},
                               RecurringScopeOutput)
    return parsed or RecurringScopeOutput()

  def extract_transaction_query(self, text: str, context: str = "") -> Extraction:
    parsed, _, meta = _structured(TRANSACTION_QUERY_DEVELOPER_PROMPT,
                                  {"text": text, "context": context},
                                  TransactionQueryOutput)
    return _to_extraction(parsed, meta, "Transaction search error")

  def extract_memory_query(self, text: str) -> Extraction:
    parsed, _, meta = _structured(MEMORY_QUERY_DEVELOPER_PROMPT, {"text": text},
                                  MemoryQueryOutput)
    return _to_extraction(parsed, meta, "Memory search error")

  def answer_from_memories(self, question: str,
                           memories: List[MemoryRecord]) -> Optional[str]:
    payload = {
        "question": question,
        "memories": [
            {"content": m.content, "category": m.category, "urls": m.urls}
            for m in memories
        ],
    }
    text, _ = run_text_completion(
        model=EXTRACT_MODEL,
        system_prompt=MEMORY_ANSWER_SYSTEM_PROMPT,
        developer_prompt=None,
        user_payload=payload,
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        verbosity="low",
        max_completion_tokens=_MAX_COMPLETION_TOKENS,
    )
    return text or None
