from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import (
    CALENDAR_CONNECT_URL,
    CALENDAR_GUESTS,
    CALENDAR_WINDOW_FUTURE_DAYS,
    CALENDAR_WINDOW_PAST_DAYS,
    GOOGLE_CALENDAR_ID,
    TRANSACTION_SOURCES,
)
from ..gcal import GoogleCalendarClient, event_record_fields
from ..models import CalendarEventRecord, ChatResponse, MemoryRecord, TransactionRecord
from ..recurrence import build_recurrence_rules
from ..state import LocalStore
from ..utils import (
    _log_debug,
    combine_local,
    day_bounds,
    format_clock,
    new_id,
    normalize_time_str,
    now_local,
    parse_amount,
    parse_datetime,
    parse_iso_date,
)
from .constants import ActionType, ErrorCode, FrontendAction, RecordStatus, RecurringScope, Status, value_of
from .executor import ActionResult, CalendarExecutor, ErrorKind
from .idempotency import IdempotencyGuard
from .turn import Turn, respond

logger = logging.getLogger(__name__)

MEMORY_SEARCH_LIMIT = 10


def normalize_source(source: Any) -> Optional[str]:
  if not isinstance(source, str):
    return None
  key = source.strip().lower().replace(" ", "_").replace("-", "_")
  return key if key in TRANSACTION_SOURCES else None


def _raw_start(raw: Dict[str, Any]) -> Tuple[Optional[datetime], bool]:
  start = raw.get("start") or {}
  if start.get("dateTime"):
    return parse_datetime(start["dateTime"]), False
  day = parse_iso_date(start.get("date"))
  return (combine_local(day, None), True) if day else (None, False)


def event_date_label(raw: Dict[str, Any]) -> str:
  start, _ = _raw_start(raw)
  return start.date().isoformat() if start else "unknown"


def event_time_range(raw: Dict[str, Any]) -> str:
  start, all_day = _raw_start(raw)
  if start is None:
    return "unknown"
  if all_day:
    return "All day"
  end = parse_datetime((raw.get("end") or {}).get("dateTime"))
  if end is None:
    return format_clock(start)
  return f"{format_clock(start)} - {format_clock(end)}"


def record_time_range(record: CalendarEventRecord) -> str:
  start = parse_datetime(record.start_at)
  if start is None:
    return "unknown"
  if record.all_day:
    return "All day"
  end = parse_datetime(record.end_at)
  if end is None:
    return format_clock(start)
  return f"{format_clock(start)} - {format_clock(end)}"


def scope_label(scope: str, detached: bool = False) -> str:
  if scope == RecurringScope.SERIES.value:
    return "all events in the series"
  if detached:
    return "this event only (detached from the series)"
  return "this event only"


def build_event_updates(record: CalendarEventRecord,
                        changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
  """Calendar patch fields for ``changes``; None when nothing would change.

  A new start keeps the event's length unless an end time or a duration is given.
  """
  updates: Dict[str, Any] = {}
  for key in ("title", "location", "description"):
    if changes.get(key):
      updates[key] = changes[key]

  start_at = parse_datetime(record.start_at)
  end_at = parse_datetime(record.end_at)
  new_day = parse_iso_date(changes.get("date"))
  start_time = normalize_time_str(changes.get("start_time"))
  end_time = normalize_time_str(changes.get("end_time"))
  duration = changes.get("duration_minutes")

  if new_day or start_time or end_time or duration:
    day = new_day or (start_at.date() if start_at else None)
    if day is not None:
      if record.all_day and not start_time and not end_time:
        updates["date"] = day.isoformat()
      else:
        if not start_time and start_at is not None and not record.all_day:
          start_time = start_at.strftime("%H:%M")
        if start_time:
          start_dt = combine_local(day, start_time)
          if end_time:
            end_dt = combine_local(day, end_time)
          elif duration:
            end_dt = start_dt + timedelta(minutes=int(duration))
          elif start_at is not None and end_at is not None and end_at > start_at:
            end_dt = start_dt + (end_at - start_at)
          else:
            end_dt = start_dt + timedelta(hours=1)
          if end_dt.date() != day:
            end_dt = combine_local(day, "23:59")
          updates["date"] = day.isoformat()
          updates["start_time"] = start_time
          updates["end_time"] = end_dt.strftime("%H:%M")
        else:
          updates["date"] = day.isoformat()

  if changes.get("recurrence_clear"):
    updates["recurrence_clear"] = True
  elif changes.get("recurrence"):
    rules = build_recurrence_rules(changes["recurrence"], updates.get("start_time"))
    if rules:
      updates["recurrence_rules"] = rules
  return updates or None


def verify_event_updates(raw: Optional[Dict[str, Any]], updates: Dict[str, Any]) -> Dict[str, Any]:
  if not raw:
    return {"verified": False, "error": "missing_event"}
  mismatches = []
  for key, field in (("title", "summary"), ("location", "location"), ("description", "description")):
    if updates.get(key) and str(raw.get(field) or "") != str(updates[key]):
      mismatches.append(key)
  start = (raw.get("start") or {})
  end = (raw.get("end") or {})
  start_dt = parse_datetime(start.get("dateTime"))
  end_dt = parse_datetime(end.get("dateTime"))
  actual_date = start.get("date") or (start_dt.date().isoformat() if start_dt else None)
  actual_start = start_dt.strftime("%H:%M") if start_dt else None
  actual_end = end_dt.strftime("%H:%M") if end_dt else None
  if updates.get("date") and actual_date != updates["date"]:
    mismatches.append("date")
  if updates.get("start_time") and actual_start != updates["start_time"]:
    mismatches.append("start_time")
  if updates.get("end_time") and actual_end != updates["end_time"]:
    mismatches.append("end_time")
  if updates.get("recurrence_rules"):
    actual_rules = [str(r) for r in raw.get("recurrence") or []]
    if actual_rules != [str(r) for r in updates["recurrence_rules"]]:
      mismatches.append("recurrence")
  return {
      "verified": True,
      "mismatches": mismatches,
      "actual": {"date": actual_date, "start_time": actual_start, "end_time": actual_end},
  }


class CalendarActions:
  """Side effects of the dialogue: calendar writes, ledger rows and memories.

  Calendar failures come back from ``CalendarExecutor`` as results and are
  turned into replies here; an expired grant revokes the stored token and
  rolls the thread back so the user can retry after reconnecting.
  """

  def __init__(self,
               store: LocalStore,
               guard: IdempotencyGuard,
               calendar_factory: Callable[[str], GoogleCalendarClient] = GoogleCalendarClient,
               calendar_id: str = GOOGLE_CALENDAR_ID,
               guests: Optional[List[str]] = None,
               connect_url: str = CALENDAR_CONNECT_URL) -> None:
    self.store = store
    self.guard = guard
    self.calendar_factory = calendar_factory
    self.calendar_id = calendar_id
    self.guests = list(CALENDAR_GUESTS if guests is None else guests)
    self.connect_url = connect_url

  def executor_for(self, user_id: str) -> CalendarExecutor:
    return CalendarExecutor(self.calendar_factory(user_id))

  def attendees_for(self, user_email: Optional[str]) -> List[str]:
    attendees: List[str] = []
    for email in self.guests + ([user_email] if user_email else []):
      if email and email not in attendees:
        attendees.append(email)
    return attendees

  # -------------------------
  # failure replies
  # -------------------------
  def _not_connected(self, turn: Turn, action_type: ActionType,
                     record: Optional[CalendarEventRecord] = None) -> ChatResponse:
    turn.log_action(action_type, Status.ERROR,
                    calendar_event_id=record.id if record else None,
                    calendar_id=record.calendar_id if record else self.calendar_id,
                    metadata={"error_code": ErrorCode.INSUFFICIENT_PERMISSIONS.value,
                              "event_id": record.event_id if record else None})
    return respond(f"Please connect your calendar at {self.connect_url} first.",
                   error_code=ErrorCode.INSUFFICIENT_PERMISSIONS)

  def _auth_expired(self, turn: Turn, executor: CalendarExecutor, action_type: ActionType,
                    result: ActionResult, calendar_id: str,
                    record: Optional[CalendarEventRecord] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> ChatResponse:
    fingerprint = executor.token_fingerprint()
    executor.revoke()
    logger.warning("Revoked calendar token user_id=%s token_fingerprint=%s error=%s",
                   turn.ctx.user_id, fingerprint, result.message)
    turn.rollback()
    data = dict(metadata or {})
    data.update({"error_code": ErrorCode.CALENDAR_AUTH_EXPIRED.value, "error": result.message,
                 "token_fingerprint": fingerprint})
    turn.log_action(action_type, Status.ERROR,
                    calendar_event_id=record.id if record else None,
                    calendar_id=calendar_id, metadata=data)
    return respond(f"Your calendar authorization expired. Please reconnect at {self.connect_url}.",
                   error_code=ErrorCode.CALENDAR_AUTH_EXPIRED)

  def _failed(self, turn: Turn, executor: CalendarExecutor, action_type: ActionType,
              result: ActionResult, error_code: ErrorCode, label: str, calendar_id: str,
              record: Optional[CalendarEventRecord] = None,
              metadata: Optional[Dict[str, Any]] = None) -> ChatResponse:
    if result.kind == ErrorKind.AUTH_EXPIRED:
      return self._auth_expired(turn, executor, action_type, result, calendar_id,
                                record=record, metadata=metadata)
    if result.kind == ErrorKind.NOT_CONNECTED:
      return self._not_connected(turn, action_type, record)
    data = dict(metadata or {})
    data.update({"error_code": error_code.value, "error": result.message})
    turn.log_action(action_type, Status.ERROR,
                    calendar_event_id=record.id if record else None,
                    calendar_id=calendar_id, metadata=data)
    return respond(f"{label}: {result.message}", error_code=error_code)

  # -------------------------
  # calendar
  # -------------------------
  def create_event(self, turn: Turn, event: Dict[str, Any]) -> ChatResponse:
    action_type = ActionType.CREATE_CALENDAR_EVENT
    executor = self.executor_for(turn.ctx.user_id)
    if not executor.connected:
      return self._not_connected(turn, action_type)

    calendar_id = self.calendar_id
    attendees = self.attendees_for(turn.ctx.user_email)
    recurrence_rules = build_recurrence_rules(event.get("recurrence"), event.get("start_time"))
    signature = self.guard.signature(
        action_type, turn.ctx.user_id,
        {"event": event, "attendees": attendees, "calendar_id": calendar_id})
    if self.guard.is_duplicate(turn.state, action_type, signature, turn.ctx.now):
      turn.log_action(action_type, Status.DUPLICATE, calendar_id=calendar_id,
                      metadata={"error_code": "duplicate_request", "event": event})
      return respond("I already added that event. ✅", action=FrontendAction.CALENDAR_EVENT_CREATED)

    result = executor.create_event(calendar_id, event, attendees=attendees,
                                   recurrence_rules=recurrence_rules)
    if not result.ok:
      return self._failed(turn, executor, action_type, result, ErrorCode.CALENDAR_CREATE_FAILED,
                          "Calendar error", calendar_id, metadata={"event": event})

    raw = result.value or {}
    record = self.store.upsert_event(CalendarEventRecord(
        id=new_id(), user_id=turn.ctx.user_id, calendar_id=calendar_id,
        **event_record_fields(raw)))
    turn.log_action(action_type, Status.SUCCESS, calendar_event_id=record.id,
                    calendar_id=calendar_id,
                    metadata={
                        "event_id": record.event_id,
                        "title": record.title,
                        "confidence": event.get("confidence"),
                        "calendar_request": {"event": event, "attendees": attendees,
                                             "recurrence_rules": recurrence_rules},
                    })
    turn.remember_last_entity(record.id)
    self.guard.remember(turn.state, action_type, signature, turn.ctx.now)

    lines = [
        "Added to your calendar! ✅",
        f"Title: {raw.get('summary') or record.title}",
        f"Date: {event_date_label(raw)}",
        f"Time: {event_time_range(raw)}",
    ]
    if attendees:
      lines.append(f"Guests: {', '.join(attendees)}")
    if raw.get("htmlLink"):
      lines.append(f"Link: {raw['htmlLink']}")
    if recurrence_rules:
      lines.append(f"Recurrence: {', '.join(recurrence_rules)}")
    return respond("\n".join(lines), event_created=True,
                   action=FrontendAction.CALENDAR_EVENT_CREATED)

  def apply_event_update(self, turn: Turn, record: CalendarEventRecord,
                         changes: Dict[str, Any],
                         snapshot: Optional[Dict[str, Any]] = None) -> ChatResponse:
    action_type = ActionType.UPDATE_CALENDAR_EVENT
    executor = self.executor_for(turn.ctx.user_id)
    if not executor.connected:
      return self._not_connected(turn, action_type, record)

    updates = build_event_updates(record, changes)
    if updates is None:
      return respond("I need a new date or time to update the event.",
                     error_code=ErrorCode.MISSING_EVENT_UPDATE_FIELDS)

    scope = value_of(changes.get("recurring_scope")) or RecurringScope.INSTANCE.value
    if scope == RecurringScope.SERIES.value:
      target_event_id = record.recurring_event_id or record.event_id
    else:
      target_event_id = record.event_id
    calendar_id = record.calendar_id
    log_meta = {"event_id": target_event_id, "changes": changes, "scope": scope}

    signature = self.guard.signature(
        action_type, turn.ctx.user_id,
        {"event_id": target_event_id, "changes": changes, "scope": scope})
    if self.guard.is_duplicate(turn.state, action_type, signature, turn.ctx.now):
      turn.log_action(action_type, Status.DUPLICATE, calendar_event_id=record.id,
                      calendar_id=calendar_id,
                      metadata=dict(log_meta, error_code="duplicate_request"))
      return respond("I already applied that update. ✅", action=FrontendAction.CALENDAR_EVENT_UPDATED)

    result = executor.update_event(calendar_id, target_event_id, updates)
    if not result.ok:
      return self._failed(turn, executor, action_type, result, ErrorCode.CALENDAR_UPDATE_FAILED,
                          "Calendar update error", calendar_id, record=record, metadata=log_meta)
    patched = result.value or {}

    fetched = executor.get_event(calendar_id, target_event_id)
    verified_event = fetched.value if fetched.ok else None
    if fetched.ok:
      verification = verify_event_updates(verified_event, updates)
    else:
      verification = {"verified": False, "error": fetched.message}

    detached = None
    if scope == RecurringScope.INSTANCE.value and updates.get("recurrence_clear"):
      detach = executor.detach_instance(calendar_id, target_event_id, verified_event or patched)
      if not detach.ok:
        # the patch is already on the calendar; mirror it before reporting
        self.store.upsert_event(record.model_copy(update=self._patched_fields(
            record, verified_event or patched)))
        return self._failed(turn, executor, action_type, detach, ErrorCode.CALENDAR_UPDATE_FAILED,
                            "Calendar update error", calendar_id, record=record, metadata=log_meta)
      detached = detach.value or {}

    source = detached or verified_event or patched
    if detached:
      fields = event_record_fields(source)
      fields["status"] = RecordStatus.ACTIVE.value
      if not fields.get("start_at"):
        fields["start_at"] = record.start_at
    else:
      fields = self._patched_fields(record, source)
    updated = record.model_copy(update=fields)
    self.store.upsert_event(updated)

    turn.log_action(action_type, Status.SUCCESS, calendar_event_id=record.id,
                    calendar_id=calendar_id,
                    metadata=dict(log_meta,
                                  title=updated.title,
                                  updates=updates,
                                  snapshot=snapshot,
                                  detached_instance_id=target_event_id if detached else None,
                                  detached_event_id=detached.get("id") if detached else None,
                                  verification=verification))
    turn.remember_last_entity(record.id)
    self.guard.remember(turn.state, action_type, signature, turn.ctx.now)
    self.refresh_calendar_events(turn.ctx.user_id)

    mismatches = verification.get("mismatches") or []
    if mismatches:
      return respond(
          f"Updated the event, but these fields may not have changed: {', '.join(mismatches)}.",
          action=FrontendAction.CALENDAR_EVENT_UPDATED,
          error_code=ErrorCode.CALENDAR_UPDATE_PARTIAL)

    lines = [
        "Updated the event. ✅",
        f"Title: {source.get('summary') or updated.title}",
        f"Date: {event_date_label(source)}",
        f"Time: {event_time_range(source)}",
        f"Scope: {scope_label(scope, detached=bool(detached))}",
    ]
    if updates.get("recurrence_clear"):
      lines.append("Recurrence: cleared")
    elif updates.get("recurrence_rules"):
      lines.append(f"Recurrence: {', '.join(updates['recurrence_rules'])}")
    if detached:
      lines.append("Detached: this instance is now standalone")
    return respond("\n".join(lines), event_created=True,
                   action=FrontendAction.CALENDAR_EVENT_UPDATED)

  def delete_event(self, turn: Turn, record: CalendarEventRecord,
                   scope: Optional[str] = None) -> ChatResponse:
    action_type = ActionType.DELETE_CALENDAR_EVENT
    executor = self.executor_for(turn.ctx.user_id)
    if not executor.connected:
      return self._not_connected(turn, action_type, record)

    scope = value_of(scope) or RecurringScope.INSTANCE.value
    if scope == RecurringScope.SERIES.value:
      target_event_id = record.recurring_event_id or record.event_id
    else:
      target_event_id = record.event_id
    calendar_id = record.calendar_id
    log_meta = {"event_id": target_event_id, "scope": scope}

    signature = self.guard.signature(action_type, turn.ctx.user_id,
                                     {"event_id": target_event_id, "scope": scope})
    if self.guard.is_duplicate(turn.state, action_type, signature, turn.ctx.now):
      turn.log_action(action_type, Status.DUPLICATE, calendar_event_id=record.id,
                      calendar_id=calendar_id,
                      metadata=dict(log_meta, error_code="duplicate_request"))
      return respond("I already deleted that event. ✅", action=FrontendAction.CALENDAR_EVENT_DELETED)

    result = executor.delete_event(calendar_id, target_event_id)
    if not result.ok:
      return self._failed(turn, executor, action_type, result, ErrorCode.CALENDAR_DELETE_FAILED,
                          "Calendar delete error", calendar_id, record=record, metadata=log_meta)

    self._cancel_records(record, scope)
    turn.log_action(action_type, Status.SUCCESS, calendar_event_id=record.id,
                    calendar_id=calendar_id,
                    metadata=dict(log_meta, title=record.title,
                                  calendar_request={"calendar_id": calendar_id,
                                                    "event_id": target_event_id}))
    turn.remember_last_entity(record.id)
    self.guard.remember(turn.state, action_type, signature, turn.ctx.now)
    start = parse_datetime(record.start_at)
    lines = [
        "Deleted the event. ✅",
        f"Title: {record.title}",
        f"Date: {start.date().isoformat() if start else 'unknown'}",
        f"Time: {record_time_range(record)}",
        f"Scope: {scope_label(scope)}",
    ]
    return respond("\n".join(lines), event_created=True,
                   action=FrontendAction.CALENDAR_EVENT_DELETED)

  @staticmethod
  def _patched_fields(record: CalendarEventRecord, raw: Dict[str, Any]) -> Dict[str, Any]:
    """Record fields from a patched event, keeping the record's own ids."""
    fields = event_record_fields(raw)
    fields["event_id"] = record.event_id
    fields["recurring_event_id"] = record.recurring_event_id
    fields["status"] = RecordStatus.ACTIVE.value
    if not fields.get("start_at"):
      fields["start_at"] = record.start_at
    return fields

  def _cancel_records(self, record: CalendarEventRecord, scope: str) -> None:
    targets = [record]
    if scope == RecurringScope.SERIES.value and record.recurring_event_id:
      targets = [
          r for r in self.store.events
          if r.user_id == record.user_id and r.recurring_event_id == record.recurring_event_id
      ] or [record]
    for target in targets:
      self.store.upsert_event(target.model_copy(update={"status": RecordStatus.CANCELLED.value}))

  def refresh_calendar_events(self, user_id: str) -> int:
    """Mirror the calendar window into the local store; failures are only logged."""
    executor = self.executor_for(user_id)
    if not executor.connected:
      return 0
    today = now_local().date()
    time_min, _ = day_bounds(today - timedelta(days=CALENDAR_WINDOW_PAST_DAYS))
    _, time_max = day_bounds(today + timedelta(days=CALENDAR_WINDOW_FUTURE_DAYS))
    result = executor.list_events(self.calendar_id, time_min, time_max)
    if not result.ok:
      logger.warning("Calendar sync failed user_id=%s kind=%s error=%s",
                     user_id, value_of(result.kind), result.message)
      return 0
    synced = 0
    for raw in result.value or []:
      if not raw.get("id"):
        continue
      fields = event_record_fields(raw)
      if not fields.get("start_at"):
        continue
      existing = self.store.find_event_by_google_id(user_id, self.calendar_id, raw["id"])
      if existing is not None:
        self.store.upsert_event(existing.model_copy(update=fields))
      else:
        self.store.upsert_event(CalendarEventRecord(
            id=new_id(), user_id=user_id, calendar_id=self.calendar_id, **fields))
      synced += 1
    _log_debug(f"[GCAL] synced user={user_id} events={synced}")
    return synced

  # -------------------------
  # ledger / memories
  # -------------------------
  def create_transaction(self, turn: Turn, transaction: Dict[str, Any]) -> ChatResponse:
    action_type = ActionType.CREATE_TRANSACTION
    amount = parse_amount(transaction.get("amount"))
    source = normalize_source(transaction.get("source"))
    day = parse_iso_date(transaction.get("date")) or turn.ctx.now.date()
    if amount is None or source is None or not transaction.get("merchant"):
      message = "Transaction error: merchant, amount and a valid source are required."
      turn.log_action(action_type, Status.ERROR, metadata={"error": message,
                                                           "transaction": transaction})
      return respond(message)
    record = self.store.add_transaction(TransactionRecord(
        id=new_id(),
        user_id=turn.ctx.user_id,
        merchant=str(transaction["merchant"]),
        amount=amount,
        date=day.isoformat(),
        category=transaction.get("category"),
        source=source,
        notes=transaction.get("notes"),
    ))
    turn.log_action(action_type, Status.SUCCESS, metadata={"transaction_id": record.id})
    return respond("Added the transaction. ✅", action=FrontendAction.TRANSACTION_CREATED)

  def create_memory(self, turn: Turn, data: Dict[str, Any]) -> ChatResponse:
    content = str(data.get("content") or "").strip()
    if not content:
      turn.log_action(ActionType.CREATE_MEMORY, Status.ERROR, metadata={"error": "empty content"})
      return respond("Memory error: nothing to remember.")
    urls = [str(u).strip() for u in data.get("urls") or [] if str(u).strip()]
    record = self.store.add_memory(MemoryRecord(
        id=new_id(),
        user_id=turn.ctx.user_id,
        content=content,
        category=data.get("category"),
        urls=urls,
        image_ref=turn.ctx.image_ref,
    ))
    turn.log_action(ActionType.CREATE_MEMORY, Status.SUCCESS, metadata={"memory_id": record.id})
    return respond("Saved that memory. ✅", action=FrontendAction.MEMORY_CREATED)

  def search_memories(self, user_id: str, query: str) -> List[MemoryRecord]:
    terms = [t.lower() for t in (query or "").split() if t.strip()]
    found = []
    for memory in self.store.memories_for(user_id):
      haystack = f"{memory.content} {memory.category or ''}".lower()
      if all(term in haystack for term in terms):
        found.append(memory)
    found.sort(key=lambda m: m.created_at or "", reverse=True)
    return found[:MEMORY_SEARCH_LIMIT]

  def search_transactions(self, user_id: str, query: Dict[str, Any]) -> List[TransactionRecord]:
    """Ledger rows matching the extracted criteria, newest first."""
    merchant = str(query.get("merchant") or "").lower()
    category = str(query.get("category") or "").lower()
    start = parse_iso_date(query.get("start_date"))
    end = parse_iso_date(query.get("end_date"))
    min_amount = parse_amount(query.get("min_amount"))
    max_amount = parse_amount(query.get("max_amount"))
    rows = []
    for tx in self.store.transactions_for(user_id):
      tx_day = parse_iso_date(tx.date)
      if merchant and merchant not in tx.merchant.lower():
        continue
      if category and category not in (tx.category or "").lower():
        continue
      if start and (tx_day is None or tx_day < start):
        continue
      if end and (tx_day is None or tx_day > end):
        continue
      if min_amount is not None and tx.amount < min_amount:
        continue
      if max_amount is not None and tx.amount > max_amount:
        continue
      rows.append(tx)
    rows.sort(key=lambda t: (t.date, t.created_at or ""), reverse=True)
    return rows
