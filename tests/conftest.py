from __future__ import annotations

import copy
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from homebase.agent.dispatcher import DialogueDispatcher
from homebase.agent.idempotency import IdempotencyGuard
from homebase.agent.schemas import Extraction, IntentResult, PendingDecision, RecurringScopeOutput
from homebase.agent.state import InMemoryThreadStore
from homebase.gcal import CalendarError, build_event_body, build_patch_body, event_record_fields
from homebase.models import CalendarEventRecord, ChatMessageRequest
from homebase.state import LocalStore
from homebase.utils import combine_local, new_id, now_local


class FakeExtractor:
  """Canned extractor answers, queued per method name."""

  def __init__(self) -> None:
    self.queued: Dict[str, List[Any]] = {}
    self.calls: List[tuple] = []

  def queue(self, method: str, *results: Any) -> None:
    self.queued.setdefault(method, []).extend(results)

  def _next(self, method: str, default: Any) -> Any:
    items = self.queued.get(method) or []
    if items:
      return items.pop(0)
    return default

  def _extraction(self, method: str, *args: Any) -> Extraction:
    self.calls.append((method,) + args)
    result = self._next(method, Extraction(error=True, message=None))
    if isinstance(result, dict):
      return Extraction(data=result)
    return result

  def extract_event(self, text, image_ref=None, context=""):
    return self._extraction("extract_event", text, image_ref)

  def extract_transaction(self, text, image_ref=None, context=""):
    return self._extraction("extract_transaction", text, image_ref)

  def extract_memory(self, text, context=""):
    return self._extraction("extract_memory", text)

  def apply_event_correction(self, event, text):
    return self._extraction("apply_event_correction", event, text)

  def apply_transaction_correction(self, transaction, text):
    return self._extraction("apply_transaction_correction", transaction, text)

  def extract_event_query(self, text, context=""):
    return self._extraction("extract_event_query", text)

  def extract_event_update(self, text, context=""):
    return self._extraction("extract_event_update", text)

  def extract_transaction_query(self, text, context=""):
    return self._extraction("extract_transaction_query", text)

  def extract_memory_query(self, text):
    return self._extraction("extract_memory_query", text)

  def extract_recurring_scope(self, text, context=""):
    self.calls.append(("extract_recurring_scope", text))
    return self._next("extract_recurring_scope", RecurringScopeOutput())

  def answer_from_memories(self, question, memories):
    self.calls.append(("answer_from_memories", question))
    return self._next("answer_from_memories", None)

  def called(self, method: str) -> int:
    return sum(1 for call in self.calls if call[0] == method)


class FakeIntentRouter:

  def __init__(self) -> None:
    self.intents: List[str] = []
    self.decisions: List[PendingDecision] = []
    self.decide_calls = 0

  def classify_intent(self, text, has_image=False, context="", image_ref=None):
    intent = self.intents.pop(0) if self.intents else "create_event"
    return IntentResult(intent=intent)

  def classify_image_intent(self, text, image_ref, context=""):
    intent = self.intents.pop(0) if self.intents else "create_event"
    return IntentResult(intent=intent)

  def decide_pending_action(self, pending_action, payload, text, has_image=False, context=""):
    self.decide_calls += 1
    if self.decisions:
      return self.decisions.pop(0)
    return PendingDecision()

  def generate_intent_clarification(self, text, has_image=False, context="", is_followup=False):
    if is_followup:
      return "Sorry, still not sure. Event, transaction, or memory?"
    return "Would you like to add an event, log a transaction, or save a memory?"


class FakeQuestionAgent:

  def __init__(self) -> None:
    self.calls: List[Dict[str, Any]] = []

  def clarify_missing_details(self, intent, missing_fields, extracted, fallback,
                              extra=None, context=""):
    self.calls.append({"intent": intent, "missing_fields": list(missing_fields),
                       "extracted": extracted, "extra": extra})
    return fallback


class FakeCalendarClient:
  """In-memory Google Calendar for one household."""

  def __init__(self) -> None:
    self.events: Dict[str, Dict[str, Any]] = {}
    self.is_connected = True
    self.revoked = False
    self.fail_with: Optional[Exception] = None
    self.fail_titles: Dict[str, Exception] = {}
    self.detach_fail_with: Optional[Exception] = None
    self.inserts: List[Dict[str, Any]] = []
    self.patches: List[tuple] = []
    self.deletes: List[str] = []

  def _maybe_fail(self) -> None:
    if self.fail_with is not None:
      raise self.fail_with

  def connected(self) -> bool:
    return self.is_connected

  def token_fingerprint(self) -> Optional[str]:
    return "fp-1234"

  def revoke(self) -> None:
    self.revoked = True
    self.is_connected = False

  def reconnect(self) -> None:
    self.revoked = False
    self.is_connected = True
    self.fail_with = None
    self.fail_titles.clear()
    self.detach_fail_with = None

  def create_event(self, calendar_id, event, attendees=None, recurrence_rules=None):
    self._maybe_fail()
    if event.get("title") in self.fail_titles:
      raise self.fail_titles[event["title"]]
    body = build_event_body(event, attendees, recurrence_rules)
    body["id"] = f"g-{new_id()[:8]}"
    body["htmlLink"] = f"https://calendar.example/{body['id']}"
    self.events[body["id"]] = body
    self.inserts.append(body)
    return copy.deepcopy(body)

  def get_event(self, calendar_id, event_id):
    self._maybe_fail()
    if event_id not in self.events:
      raise CalendarError(f"not found: {event_id}")
    return copy.deepcopy(self.events[event_id])

  def update_event(self, calendar_id, event_id, updates):
    self._maybe_fail()
    if event_id not in self.events:
      raise CalendarError(f"not found: {event_id}")
    body = build_patch_body(updates)
    for key in ("start", "end"):
      if key in body:
        body[key] = {k: v for k, v in body[key].items() if v is not None}
    self.events[event_id].update(body)
    self.patches.append((event_id, updates))
    return copy.deepcopy(self.events[event_id])

  def delete_event(self, calendar_id, event_id):
    self._maybe_fail()
    self.events.pop(event_id, None)
    self.deletes.append(event_id)

  def list_events(self, calendar_id, time_min, time_max):
    self._maybe_fail()
    return [copy.deepcopy(e) for e in self.events.values()]

  def detach_instance(self, calendar_id, instance_id, event):
    self._maybe_fail()
    if self.detach_fail_with is not None:
      raise self.detach_fail_with
    body = {k: event[k] for k in ("summary", "start", "end") if k in event}
    body["id"] = f"g-{new_id()[:8]}"
    self.events[body["id"]] = body
    self.events.pop(instance_id, None)
    return copy.deepcopy(body)


class Harness:
  """A dispatcher wired to fakes plus helpers to seed events and send messages."""

  def __init__(self) -> None:
    self.store = LocalStore()
    self.threads = InMemoryThreadStore()
    self.extractor = FakeExtractor()
    self.intents = FakeIntentRouter()
    self.questions = FakeQuestionAgent()
    self.calendar = FakeCalendarClient()
    self.dispatcher = DialogueDispatcher(
        self.store,
        self.threads,
        extractor=self.extractor,
        intents=self.intents,
        questions=self.questions,
        calendar_factory=lambda user_id: self.calendar,
        guard=IdempotencyGuard(window_seconds=120),
    )

  def send(self, text: str = "", thread_id: str = "t1", user_id: str = "u1",
           image_ref: Optional[str] = None, intent: Optional[str] = None):
    if intent:
      self.intents.intents.append(intent)
    return self.dispatcher.process(ChatMessageRequest(
        user_id=user_id, thread_id=thread_id, text=text, image_ref=image_ref))

  def state(self, thread_id: str = "t1"):
    return self.threads.read(thread_id)

  def actions(self, thread_id: str = "t1", action_type: Optional[str] = None):
    entries = self.store.actions_for(thread_id)
    if action_type:
      entries = [a for a in entries if a.action_type == action_type]
    return entries

  def add_event(self, title: str, day, start: str = "10:00", minutes: int = 60,
                user_id: str = "u1", recurring_event_id: Optional[str] = None,
                recurrence: Optional[List[str]] = None) -> CalendarEventRecord:
    start_dt = combine_local(day, start)
    end_dt = start_dt + timedelta(minutes=minutes)
    google_id = f"g-{new_id()[:8]}"
    raw = {
        "id": google_id,
        "summary": title,
        "start": {"dateTime": start_dt.isoformat()},
        "end": {"dateTime": end_dt.isoformat()},
    }
    if recurring_event_id:
      raw["recurringEventId"] = recurring_event_id
    if recurrence:
      raw["recurrence"] = list(recurrence)
    self.calendar.events[google_id] = raw
    return self.store.upsert_event(CalendarEventRecord(
        id=new_id(), user_id=user_id, calendar_id="primary", **event_record_fields(raw)))


@pytest.fixture
def harness() -> Harness:
  return Harness()


@pytest.fixture
def tomorrow():
  return now_local().date() + timedelta(days=1)


@pytest.fixture
def today():
  return now_local().date()


