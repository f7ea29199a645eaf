from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import CONTEXT_LINE_MAX_CHARS, MAX_SELECTION_CANDIDATES_SHOWN
from ..models import CalendarEventRecord, ChatMessageLog, MemoryRecord, TransactionRecord
from ..recurrence import describe_recurrence
from ..utils import combine_local, format_clock, format_clock_hm, format_month_day, parse_datetime, parse_iso_date


def format_recurrence(recurrence: Any) -> Optional[str]:
  if isinstance(recurrence, str) and recurrence.strip() and "FREQ=" not in recurrence.upper():
    return recurrence.strip()
  return describe_recurrence(recurrence)


def format_event(event: Dict[str, Any]) -> str:
  lines = []
  if event.get("title"):
    lines.append(f"Title: {event['title']}")
  if event.get("date"):
    lines.append(f"Date: {event['date']}")
  time_range = " - ".join(t for t in (event.get("start_time"), event.get("end_time")) if t)
  if time_range:
    lines.append(f"Time: {time_range}")
  recurrence_label = format_recurrence(event.get("recurrence"))
  if recurrence_label:
    lines.append(f"Repeats: {recurrence_label}")
  if event.get("location"):
    lines.append(f"Location: {event['location']}")
  if event.get("description"):
    lines.append(f"Details: {event['description']}")
  return "\n".join(lines)


def format_event_record(record: CalendarEventRecord) -> str:
  lines = [f"Title: {record.title}"]
  start_at = parse_datetime(record.start_at)
  if start_at is not None:
    lines.append(f"Date: {start_at.date().isoformat()}")
    if not record.all_day:
      lines.append(f"Time: {format_clock(start_at)}")
  return "\n".join(lines)


def format_event_brief(record: CalendarEventRecord) -> str:
  start_at = parse_datetime(record.start_at)
  if start_at is None:
    return record.title
  if record.all_day:
    return f"{format_month_day(start_at)} (all day) - {record.title}"
  time_label = format_clock(start_at)
  end_at = parse_datetime(record.end_at)
  if end_at is not None:
    time_label = f"{time_label}-{format_clock(end_at)}"
  return f"{format_month_day(start_at)} {time_label} - {record.title}"


def format_event_changes(record: CalendarEventRecord, changes: Dict[str, Any]) -> str:
  """Preview of an event after ``changes`` are applied."""
  start_at = parse_datetime(record.start_at)
  end_at = parse_datetime(record.end_at)
  lines = [f"Title: {changes.get('title') or record.title}"]
  day = changes.get("date") or (start_at.date().isoformat() if start_at else None)
  if day:
    lines.append(f"Date: {day}")
  start_label = format_clock_hm(changes.get("start_time")) or changes.get("start_time")
  if not start_label and start_at is not None and not record.all_day:
    start_label = format_clock(start_at)
  end_label = format_clock_hm(changes.get("end_time")) or changes.get("end_time")
  length = None
  if changes.get("duration_minutes"):
    length = timedelta(minutes=int(changes["duration_minutes"]))
  elif changes.get("start_time") and start_at is not None and end_at is not None \
      and end_at > start_at and not record.all_day:
    length = end_at - start_at
  if not end_label and length is not None and day:
    parsed_day = parse_iso_date(day)
    base_hm = changes.get("start_time") or (start_at.strftime("%H:%M") if start_at else None)
    if parsed_day is not None and base_hm:
      end_label = format_clock(combine_local(parsed_day, base_hm) + length)
  if not end_label and end_at is not None and not record.all_day:
    end_label = format_clock(end_at)
  time_range = " - ".join(t for t in (start_label, end_label) if t)
  if time_range:
    lines.append(f"Time: {time_range}")
  if changes.get("recurrence_clear"):
    lines.append("Repeats: none")
  else:
    recurrence_label = format_recurrence(changes.get("recurrence"))
    if recurrence_label:
      lines.append(f"Repeats: {recurrence_label}")
  location = changes.get("location") or record.location
  if location:
    lines.append(f"Location: {location}")
  description = changes.get("description") or record.description
  if description:
    lines.append(f"Details: {description}")
  return "\n".join(lines)


def format_transaction(transaction: Dict[str, Any]) -> str:
  lines = []
  for label, key in (("Merchant", "merchant"), ("Amount", "amount"), ("Date", "date"),
                     ("Category", "category"), ("Source", "source")):
    value = transaction.get(key)
    if value not in (None, ""):
      lines.append(f"{label}: {value}")
  return "\n".join(lines)


def format_transaction_record(record: TransactionRecord) -> str:
  parts = [record.date, record.merchant, f"${record.amount:.2f}"]
  if record.category:
    parts.append(record.category)
  parts.append(record.source)
  return " • ".join(parts)


def format_memory(memory: Dict[str, Any]) -> str:
  lines = []
  if memory.get("content"):
    lines.append(f"Content: {memory['content']}")
  if memory.get("category"):
    lines.append(f"Category: {memory['category']}")
  urls = memory.get("urls")
  if isinstance(urls, list) and urls:
    lines.append(f"Links: {', '.join(urls)}")
  return "\n".join(lines)


def format_memory_list(memories: List[MemoryRecord]) -> str:
  rows = []
  for memory in memories:
    label = f"[{memory.category}] " if memory.category else ""
    url_part = f" ({', '.join(memory.urls)})" if memory.urls else ""
    rows.append(f"• {label}{memory.content}{url_part}")
  return "\n".join(rows)


def format_candidates(candidates: List[Dict[str, Any]]) -> str:
  """Numbered list of serialized candidates ({id, title, start_at})."""
  rows = []
  for idx, entry in enumerate(candidates[:MAX_SELECTION_CANDIDATES_SHOWN]):
    start_at = parse_datetime(entry.get("start_at"))
    time_label = (f"{format_month_day(start_at)} {format_clock(start_at)}"
                  if start_at is not None else "Unknown time")
    rows.append(f"{idx + 1}) {entry.get('title')} — {time_label}")
  return "\n".join(rows)


def format_extracted_events(events: List[Dict[str, Any]]) -> str:
  rows = []
  for idx, event in enumerate(events[:MAX_SELECTION_CANDIDATES_SHOWN]):
    title = event.get("title") or "Untitled event"
    day = event.get("date") or "Unknown date"
    time_range = "-".join(t for t in (event.get("start_time"), event.get("end_time")) if t)
    rows.append(f"{idx + 1}) {title} — {day} {time_range or 'Unknown time'}")
  return "\n".join(rows)


def format_extracted_transactions(transactions: List[Dict[str, Any]]) -> str:
  rows = []
  for idx, transaction in enumerate(transactions[:MAX_SELECTION_CANDIDATES_SHOWN]):
    amount = transaction.get("amount")
    details = [
        transaction.get("merchant") or "Unknown merchant",
        f"${amount}" if amount not in (None, "") else "Unknown amount",
        transaction.get("date") or "Unknown date",
    ]
    if transaction.get("source"):
      details.append(transaction["source"])
    rows.append(f"{idx + 1}) {' • '.join(details)}")
  return "\n".join(rows)


def format_context_line(message: ChatMessageLog) -> Optional[str]:
  content = (message.text or "").strip()
  if not content and message.image_ref:
    content = "[image]"
  if not content:
    return None
  if len(content) > CONTEXT_LINE_MAX_CHARS:
    content = content[:CONTEXT_LINE_MAX_CHARS] + "..."
  label = "Assistant" if message.role == "assistant" else "User"
  return f"{label}: {content}"


def format_context(messages: List[ChatMessageLog]) -> str:
  lines = [format_context_line(m) for m in messages]
  return "\n".join(line for line in lines if line)
