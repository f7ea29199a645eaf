from __future__ import annotations

from datetime import timedelta

from homebase.agent.schemas import Extraction


def test_delete_dentist_lists_similar_candidates_and_reply_picks_second(harness, tomorrow):
  first = harness.add_event("Dentist", tomorrow, "09:00")
  second = harness.add_event("Dentist", tomorrow + timedelta(days=3), "14:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})

  resp = harness.send("delete dentist", intent="delete_event")

  assert resp.text.startswith("Which event should I delete?")
  assert "1) Dentist" in resp.text and "2) Dentist" in resp.text
  state = harness.state()
  assert state.pending_action == "select_event_for_delete"
  assert [c["id"] for c in state.payload["candidates"]] == [first.id, second.id]

  resp = harness.send("2")

  assert resp.action == "calendar_event_deleted"
  assert resp.text.startswith("Deleted the event. ✅")
  assert harness.calendar.deletes == [second.event_id]
  state = harness.state()
  assert state.pending_action is None
  assert state.last_entity_id == second.id
  assert harness.store.get_event(second.id).status == "cancelled"
  assert harness.store.get_event(first.id).status == "active"
  selections = harness.actions(action_type="select_calendar_event")
  assert selections[0].metadata["selection_kind"] == "delete"


def test_single_match_asks_for_confirmation(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})

  resp = harness.send("delete dentist", intent="delete_event")

  assert resp.text.startswith("Delete this event?\nTitle: Dentist")
  state = harness.state()
  assert state.pending_action == "confirm_delete"
  assert state.payload["event_id"] == record.id
  assert state.payload["snapshot"]["event_id"] == record.event_id

  resp = harness.send("yes")

  assert resp.action == "calendar_event_deleted"
  assert harness.calendar.deletes == [record.event_id]


def test_declining_delete_keeps_event(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})
  harness.send("delete dentist", intent="delete_event")

  resp = harness.send("no")

  assert resp.text == "Okay, I won’t delete it."
  assert harness.calendar.deletes == []
  assert harness.store.get_event(record.id).status == "active"
  assert harness.state().pending_action is None


def test_clear_winner_is_auto_picked(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  dentist = harness.add_event("Dentist appointment", tomorrow, "15:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist appointment"})

  harness.send("delete my dentist appointment", intent="delete_event")

  state = harness.state()
  assert state.pending_action == "confirm_delete"
  assert state.payload["event_id"] == dentist.id


def test_no_match_asks_for_more_detail(harness):
  harness.extractor.queue("extract_event_query", {"title": "orthodontist"})

  resp = harness.send("delete orthodontist", intent="delete_event")

  assert resp.text == "I couldn't find that event. Can you share the title and date?"
  assert harness.state().pending_action == "clarify_delete_target"


def test_target_clarification_finds_event(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_query", Extraction(error=True),
                          {"title": "dentist", "date": tomorrow.isoformat()})

  harness.send("delete it", intent="delete_event")
  assert harness.state().pending_action == "clarify_delete_target"

  harness.send("the dentist tomorrow")

  state = harness.state()
  assert state.pending_action == "confirm_delete"
  assert state.payload["event_id"] == record.id


def test_recurring_delete_asks_scope_then_deletes_series(harness, tomorrow):
  a = harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  b = harness.add_event("Swim practice", tomorrow + timedelta(days=7), "17:00",
                        recurring_event_id="series-1")
  harness.extractor.queue("extract_event_query", {"title": "swim practice",
                                                  "date": tomorrow.isoformat()})

  resp = harness.send("delete swim practice tomorrow", intent="delete_event")

  assert "This event repeats" in resp.text
  state = harness.state()
  assert state.pending_action == "clarify_recurring_scope"
  assert state.payload["action"] == "delete"
  assert state.payload["event_id"] == a.id

  resp = harness.send("all")

  assert resp.action == "calendar_event_deleted"
  assert "Scope: all events in the series" in resp.text
  assert harness.calendar.deletes == ["series-1"]
  assert harness.store.get_event(a.id).status == "cancelled"
  assert harness.store.get_event(b.id).status == "cancelled"


def test_recurring_delete_of_one_instance(harness, tomorrow):
  a = harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  b = harness.add_event("Swim practice", tomorrow + timedelta(days=7), "17:00",
                        recurring_event_id="series-1")
  harness.extractor.queue("extract_event_query", {"title": "swim practice",
                                                  "date": tomorrow.isoformat()})
  harness.send("delete swim practice tomorrow", intent="delete_event")

  resp = harness.send("just this one")

  assert "Scope: this event only" in resp.text
  assert harness.calendar.deletes == [a.event_id]
  assert harness.store.get_event(b.id).status == "active"


def test_stale_target_reports_event_not_found(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})
  harness.send("delete dentist", intent="delete_event")
  harness.store.upsert_event(record.model_copy(update={"status": "cancelled"}))

  resp = harness.send("yes")

  assert resp.error_code == "event_not_found"
  assert resp.text == "I couldn't find that event anymore."
  assert harness.state().pending_action is None
  entry = harness.actions(action_type="delete_calendar_event")[-1]
  assert entry.metadata["error_code"] == "event_not_found"
  assert entry.calendar_id == "primary"


def test_repeated_delete_is_a_duplicate(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})
  harness.send("delete dentist", intent="delete_event")
  harness.send("yes")
  harness.store.upsert_event(record.model_copy(update={"status": "active"}))
  harness.threads.write("t1", harness.state().model_copy(update={
      "pending_action": "confirm_delete",
      "payload": {"event_id": record.id, "snapshot": {}, "recurring_scope": None},
  }))

  resp = harness.send("yes")

  assert resp.text == "I already deleted that event. ✅"
  assert harness.calendar.deletes == [record.event_id]
