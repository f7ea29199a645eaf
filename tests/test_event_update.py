from __future__ import annotations

from datetime import timedelta

from homebase.gcal import CalendarAuthError
from homebase.utils import parse_datetime


def _update(target=None, confidence="high", **changes):
  data = {"changes": changes, "confidence": confidence}
  if target is not None:
    data["target"] = target
  return data


def test_high_confidence_update_is_applied(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00", minutes=45)
  harness.extractor.queue("extract_event_update", _update({"title": "dentist"}, start_time="16:00"))

  resp = harness.send("Move dentist to 4pm", intent="update_event")

  assert resp.action == "calendar_event_updated"
  assert resp.text.startswith("Updated the event. ✅")
  assert "Scope: this event only" in resp.text
  event_id, updates = harness.calendar.patches[0]
  assert event_id == record.event_id
  assert updates["start_time"] == "16:00"
  assert updates["end_time"] == "16:45"
  updated = harness.store.get_event(record.id)
  assert parse_datetime(updated.start_at).strftime("%H:%M") == "16:00"
  assert harness.state().last_entity_id == record.id


def test_medium_confidence_update_shows_preview_first(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "dentist"}, confidence="medium", start_time="16:00"))

  resp = harness.send("Move dentist to 4pm", intent="update_event")

  assert resp.text.startswith("I plan to update:")
  assert "Time: 4:00 PM - 5:00 PM" in resp.text
  state = harness.state()
  assert state.pending_action == "confirm_update"
  assert state.payload["event_id"] == record.id
  assert state.payload["changes"]["start_time"] == "16:00"
  assert harness.calendar.patches == []

  resp = harness.send("yes")

  assert resp.action == "calendar_event_updated"
  assert len(harness.calendar.patches) == 1


def test_duration_phrase_sets_end_time(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_update", _update({"title": "dentist"}))

  harness.send("make the dentist 2 hours", intent="update_event")

  _, updates = harness.calendar.patches[0]
  assert updates["start_time"] == "09:00"
  assert updates["end_time"] == "11:00"


def test_missing_changes_asks_what_to_change(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_update", _update({"title": "dentist"}))

  resp = harness.send("change the dentist", intent="update_event")

  assert resp.text == "What should I change about the event?"
  state = harness.state()
  assert state.pending_action == "clarify_update_changes"
  assert state.payload == {"target": {"title": "dentist"}}

  harness.extractor.queue("extract_event_update", _update(start_time="11:00"))
  resp = harness.send("make it 11")

  assert resp.action == "calendar_event_updated"
  assert harness.calendar.patches[0][0] == record.event_id


def test_update_without_target_uses_last_event(harness, tomorrow):
  harness.extractor.queue("extract_event", {"title": "Dentist", "date": tomorrow.isoformat(),
                                            "start_time": "09:00", "confidence": "high"})
  harness.send("Dentist tomorrow at 9")
  created = harness.store.events[0]
  harness.extractor.queue("extract_event_update", _update(location="Main St clinic"))

  resp = harness.send("it's at the Main St clinic", intent="update_event")

  assert resp.action == "calendar_event_updated"
  event_id, updates = harness.calendar.patches[0]
  assert event_id == created.event_id
  assert updates == {"location": "Main St clinic"}


def test_update_without_target_or_history_asks_which_event(harness):
  harness.extractor.queue("extract_event_update", _update(start_time="16:00"))

  resp = harness.send("move it to 4pm", intent="update_event")

  assert resp.text == "Which event should I update? Please share the title and date."
  state = harness.state()
  assert state.pending_action == "clarify_update_target"
  assert state.payload["changes"]["start_time"] == "16:00"


def test_target_clarification_then_update(harness, tomorrow):
  record = harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_update", _update(start_time="16:00"))
  harness.send("move it to 4pm", intent="update_event")
  harness.extractor.queue("extract_event_query", {"title": "dentist"})

  resp = harness.send("the dentist one")

  assert resp.action == "calendar_event_updated"
  assert harness.calendar.patches[0][0] == record.event_id
  assert harness.state().pending_action is None


def test_ambiguous_target_asks_to_pick(harness, tomorrow):
  first = harness.add_event("Dentist", tomorrow, "09:00")
  harness.add_event("Dentist", tomorrow + timedelta(days=2), "09:00")
  harness.extractor.queue("extract_event_update", _update({"title": "dentist"}, start_time="16:00"))

  resp = harness.send("move dentist to 4pm", intent="update_event")

  assert resp.text.startswith("Which event should I update?")
  state = harness.state()
  assert state.pending_action == "select_event_for_update"
  assert state.payload["changes"]["start_time"] == "16:00"

  resp = harness.send("the first one")

  assert resp.action == "calendar_event_updated"
  assert harness.calendar.patches[0][0] == first.event_id
  selection = harness.actions(action_type="select_calendar_event")[0]
  assert selection.metadata["selection_kind"] == "update"


def test_recurring_update_asks_scope_and_applies_to_instance(harness, tomorrow):
  record = harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "swim practice", "date": tomorrow.isoformat()},
                                  start_time="18:00"))

  resp = harness.send("move swim practice tomorrow to 6", intent="update_event")

  assert resp.text.startswith("This event repeats.")
  state = harness.state()
  assert state.pending_action == "clarify_recurring_scope"
  assert state.payload["action"] == "update"
  assert state.payload["changes"]["start_time"] == "18:00"

  resp = harness.send("this")

  assert "Scope: this event only" in resp.text
  assert harness.calendar.patches[0][0] == record.event_id


def test_recurring_update_of_whole_series_targets_master(harness, tomorrow):
  harness.calendar.events["series-1"] = {
      "id": "series-1",
      "summary": "Swim practice",
      "start": {"dateTime": f"{tomorrow.isoformat()}T17:00:00"},
      "end": {"dateTime": f"{tomorrow.isoformat()}T18:00:00"},
      "recurrence": ["RRULE:FREQ=WEEKLY"],
  }
  harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "swim practice"}, title="Swim team"))

  resp = harness.send("rename swim practice to swim team for the whole series",
                      intent="update_event")

  assert "Scope: all events in the series" in resp.text
  assert harness.calendar.patches[0][0] == "series-1"


def test_recurrence_change_on_single_instance_asks_again(harness, tomorrow):
  harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "swim practice"}, recurrence_clear=True,
                                  recurring_scope="instance"))

  resp = harness.send("stop repeating swim practice, just this one", intent="update_event")

  assert resp.text.startswith("Recurrence changes apply to the whole series.")
  assert harness.state().pending_action == "clarify_recurring_scope"
  assert harness.calendar.patches == []


def _ask_to_stop_repeating(harness, tomorrow):
  record = harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "swim practice"}, recurrence_clear=True,
                                  recurring_scope="instance"))
  harness.send("stop repeating swim practice, just this one", intent="update_event")
  return record


def test_clearing_recurrence_on_one_instance_detaches_it(harness, tomorrow):
  record = _ask_to_stop_repeating(harness, tomorrow)

  resp = harness.send("just this one")

  assert resp.action == "calendar_event_updated"
  assert "Scope: this event only (detached from the series)" in resp.text
  assert "Recurrence: cleared" in resp.text
  assert resp.text.endswith("Detached: this instance is now standalone")
  assert harness.calendar.patches[0][0] == record.event_id
  updated = harness.store.get_event(record.id)
  assert updated.event_id != record.event_id
  assert updated.event_id in harness.calendar.events
  assert record.event_id not in harness.calendar.events
  assert updated.recurring_event_id is None
  entry = harness.actions(action_type="update_calendar_event")[-1]
  assert entry.metadata["detached_event_id"] == updated.event_id


def test_auth_expiry_while_detaching_keeps_the_scope_question(harness, tomorrow):
  record = _ask_to_stop_repeating(harness, tomorrow)
  harness.calendar.detach_fail_with = CalendarAuthError("invalid_grant")

  resp = harness.send("just this one")

  assert resp.error_code == "calendar_auth_expired"
  assert harness.state().pending_action == "clarify_recurring_scope"
  assert len(harness.calendar.patches) == 1
  assert harness.store.get_event(record.id).event_id == record.event_id

  harness.calendar.reconnect()
  resp = harness.send("just this one")

  assert resp.text.endswith("Detached: this instance is now standalone")
  assert harness.store.get_event(record.id).event_id != record.event_id
  assert harness.state().pending_action is None


def test_unverified_fields_are_reported(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  harness.calendar.update_event = lambda calendar_id, event_id, updates: dict(
      harness.calendar.events[event_id])
  harness.extractor.queue("extract_event_update", _update({"title": "dentist"}, title="Ortho"))

  resp = harness.send("rename dentist to ortho", intent="update_event")

  assert resp.error_code == "calendar_update_partial"
  assert "title" in resp.text


def test_repeated_update_is_a_duplicate(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  harness.extractor.queue("extract_event_update",
                          _update({"title": "dentist"}, location="Main St clinic"),
                          _update({"title": "dentist"}, location="Main St clinic"))

  harness.send("dentist is at Main St clinic", intent="update_event")
  resp = harness.send("dentist is at Main St clinic", intent="update_event")

  assert resp.text == "I already applied that update. ✅"
  assert len(harness.calendar.patches) == 1
