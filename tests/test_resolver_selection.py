from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from homebase.agent.flows.event_mutation import scope_from_text
from homebase.agent.idempotency import IdempotencyGuard
from homebase.agent.resolve_event_target import (
    Candidate,
    EventCandidateResolver,
    auto_pick,
    extract_query_tokens,
    title_similarity,
)
from homebase.agent.selection import ALL, pick_candidate, selection_indices
from homebase.agent.state import JsonThreadStore, LastAction, ThreadLocks, ThreadState
from homebase.models import CalendarEventRecord, ChatMessageLog
from homebase.state import LocalStore
from homebase.utils import now_local


def _candidates(*scores):
  return [
      Candidate(record=CalendarEventRecord(id=f"e{i}", user_id="u1", event_id=f"g{i}",
                                           title="Dentist", start_at="2024-05-01T09:00:00"),
                score=score, distance=timedelta(hours=i))
      for i, score in enumerate(scores)
  ]


@pytest.mark.parametrize("scores, picked", [
    ((10, 4), "e0"),
    ((7, 6), None),
    ((5, 1), None),
    ((9, 6), "e0"),
])
def test_auto_pick_needs_a_clear_winner(scores, picked):
  winner = auto_pick(_candidates(*scores))

  assert (winner.record.id if winner else None) == picked


def test_auto_pick_ignores_single_candidate():
  assert auto_pick(_candidates(12)) is None


def test_exact_title_and_day_rank_first(harness, tomorrow):
  harness.add_event("Dentist follow-up", tomorrow, "09:00")
  exact = harness.add_event("Dentist", tomorrow + timedelta(days=1), "14:00")
  resolver = EventCandidateResolver(harness.store)

  found = resolver.candidates("u1", {"title": "dentist"})

  assert [c.record.id for c in found][0] == exact.id
  assert found[0].score > found[1].score


def test_other_users_events_are_never_candidates(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00", user_id="someone-else")
  resolver = EventCandidateResolver(harness.store)

  assert resolver.candidates_with_fallback("u1", {"title": "dentist"}) == []


def test_fallback_relaxes_the_date(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  resolver = EventCandidateResolver(harness.store)
  query = {"title": "dentist", "date": (tomorrow + timedelta(days=5)).isoformat()}

  assert resolver.candidates("u1", query) == []
  assert [c.record.id for c in resolver.candidates_with_fallback("u1", query)] == [record.id]


def test_fallback_uses_fuzzy_title_match(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  resolver = EventCandidateResolver(harness.store)

  found = resolver.candidates_with_fallback("u1", {"title": "dentst"})

  assert [c.record.id for c in found] == [record.id]
  assert found[0].score == pytest.approx(5.0)


def test_fallback_gives_up_quietly(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  resolver = EventCandidateResolver(harness.store)

  assert resolver.candidates_with_fallback("u1", {"title": "zzz"}) == []
  assert resolver.candidates_with_fallback("u1", {"date": "not a date"}) == []
  assert resolver.candidates_with_fallback("u1", {}) == []


def test_cancelled_events_are_skipped(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.store.upsert_event(record.model_copy(update={"status": "cancelled"}))
  resolver = EventCandidateResolver(harness.store)

  assert resolver.candidates("u1", {"title": "dentist"}) == []


def test_title_similarity_bounds():
  assert title_similarity("Dentist", "dentist") == 1.0
  assert title_similarity("Dentist", "") == 0.0
  assert 0 < title_similarity("Swim practice", "swimming") < 1


def test_query_tokens_drop_filler_words():
  assert extract_query_tokens("When is the next swimming lesson?") == ["swim", "lesson"]


@pytest.mark.parametrize("text, expected", [
    ("2", [1]),
    ("1, 3", [0, 2]),
    ("the second one", [1]),
    ("last", [2]),
    ("4", []),
    ("all of them", ALL),
    ("hmm", []),
])
def test_selection_indices(text, expected):
  assert selection_indices(text, 3) == expected


def test_pick_candidate_by_number_or_title():
  titles = ["Dentist", "Piano lesson", "Swim practice"]

  assert pick_candidate("3", titles) == 2
  assert pick_candidate("piano", titles) == 1
  assert pick_candidate("1 and 2", titles) is None
  assert pick_candidate("yoga", titles) is None


@pytest.mark.parametrize("text, scope", [
    ("this", "instance"),
    ("Just this one.", "instance"),
    ("only this event", "instance"),
    ("all", "series"),
    ("the whole series", "series"),
    ("move all future occurrences", "series"),
    ("every week", "series"),
    ("maybe", None),
    ("", None),
])
def test_scope_from_text(text, scope):
  assert scope_from_text(text) == scope


def test_idempotency_guard_window():
  guard = IdempotencyGuard(window_seconds=120)
  state = ThreadState()
  now = now_local()
  signature = guard.signature("create_calendar_event", "u1", {"title": "Dentist"})

  assert not guard.is_duplicate(state, "create_calendar_event", signature, now)
  guard.remember(state, "create_calendar_event", signature, now)

  assert guard.is_duplicate(state, "create_calendar_event", signature, now + timedelta(seconds=119))
  assert not guard.is_duplicate(state, "create_calendar_event", signature,
                                now + timedelta(seconds=120))
  assert not guard.is_duplicate(state, "delete_calendar_event", signature, now)
  other = guard.signature("create_calendar_event", "u1", {"title": "Dentist", "date": "2024-05-01"})
  assert not guard.is_duplicate(state, "create_calendar_event", other, now)


def test_signature_ignores_key_order():
  guard = IdempotencyGuard()

  assert guard.signature("update_calendar_event", "u1", {"a": 1, "b": 2}) == \
      guard.signature("update_calendar_event", "u1", {"b": 2, "a": 1})
  assert guard.signature("update_calendar_event", "u1", {"a": 1}) != \
      guard.signature("update_calendar_event", "u2", {"a": 1})


def test_json_thread_store_round_trip(tmp_path):
  store = JsonThreadStore(tmp_path / "threads.json")
  state = ThreadState(last_entity_id="e1",
                      last_action=LastAction(action_type="create_calendar_event",
                                             signature="abc", created_at="2024-05-01T09:00:00"))
  state.set_pending("confirm_event", {"event": {"title": "Dentist"}})

  store.write("t1", state)
  loaded = JsonThreadStore(tmp_path / "threads.json").read("t1")

  assert loaded == state
  assert store.read("missing") == ThreadState()


def test_json_thread_store_survives_a_corrupt_file(tmp_path):
  path = tmp_path / "threads.json"
  path.write_text("{not json", encoding="utf-8")

  store = JsonThreadStore(path)

  assert store.read("t1") == ThreadState()
  store.write("t1", ThreadState(last_entity_id="e9"))
  assert store.read("t1").last_entity_id == "e9"


def test_set_pending_copies_payload():
  payload = {"event": {"title": "Dentist"}}
  state = ThreadState()

  state.set_pending("confirm_event", payload)
  payload["event"]["title"] = "Changed"

  assert state.payload["event"]["title"] == "Dentist"
  state.clear()
  assert (state.pending_action, state.payload) == (None, {})


def test_thread_locks_serialize_turns_and_are_dropped_after():
  locks = ThreadLocks()
  entered = threading.Event()

  def second_turn():
    with locks.for_thread("t1"):
      entered.set()

  with locks.for_thread("t1"):
    worker = threading.Thread(target=second_turn)
    worker.start()
    assert not entered.wait(0.1)
    assert len(locks) == 1
  worker.join(timeout=2)

  assert entered.is_set()
  assert len(locks) == 0


def test_local_store_caps_messages_per_thread(tmp_path):
  path = tmp_path / "homebase.json"
  store = LocalStore(path, max_messages_per_thread=3)
  for i in range(5):
    store.add_message(ChatMessageLog(id=f"m{i}", thread_id="t1", user_id="u1", role="user",
                                     text=f"message {i}"))
  store.add_message(ChatMessageLog(id="other", thread_id="t2", user_id="u1", role="user",
                                   text="hello"))

  assert [m.text for m in store.recent_messages("t1", 10)] == ["message 2", "message 3",
                                                               "message 4"]
  reloaded = LocalStore(path, max_messages_per_thread=3)
  assert [m.id for m in reloaded.messages] == ["m2", "m3", "m4", "other"]
  assert not (tmp_path / "homebase.json.tmp").exists()
