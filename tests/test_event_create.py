from __future__ import annotations

from datetime import timedelta

from homebase.agent.schemas import Extraction
from homebase.gcal import CalendarAuthError, CalendarError
from homebase.models import ChatMessageRequest


def _event(day, **extra):
  event = {"title": "Dentist", "date": day.isoformat(), "start_time": "15:00"}
  event.update(extra)
  return event


def test_high_confidence_event_is_created_without_confirmation(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))

  resp = harness.send("Dentist tomorrow at 3pm")

  assert resp.event_created is True
  assert resp.action == "calendar_event_created"
  assert resp.text.startswith("Added to your calendar! ✅")
  assert "Title: Dentist" in resp.text
  assert len(harness.calendar.inserts) == 1
  state = harness.state()
  assert state.pending_action is None
  assert state.last_entity_id == harness.store.events[0].id


def test_medium_confidence_asks_before_creating(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="medium"))

  resp = harness.send("Dentist tomorrow at 3pm")
  assert resp.text.startswith("I found this event:")
  assert resp.text.endswith("Should I add it?")
  assert harness.state().pending_action == "confirm_event"
  assert harness.calendar.inserts == []

  resp = harness.send("yes")
  assert resp.event_created is True
  assert harness.state().pending_action is None
  assert len(harness.calendar.inserts) == 1


def test_missing_confidence_is_treated_as_medium(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))

  harness.send("Dentist tomorrow at 3pm")

  assert harness.state().pending_action == "confirm_event"


def test_declined_confirmation_clears_state(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))
  harness.send("Dentist tomorrow at 3pm")

  resp = harness.send("no")

  assert resp.text == "Okay, what should I change?"
  assert harness.state().pending_action is None
  assert harness.calendar.inserts == []


def test_missing_date_asks_then_applies_correction(harness, tomorrow):
  harness.extractor.queue("extract_event", {"title": "Dentist", "start_time": "15:00"})

  resp = harness.send("Dentist at 3pm")
  state = harness.state()
  assert state.pending_action == "clarify_event_fields"
  assert state.payload["missing_fields"] == ["date"]
  assert state.payload["event"]["title"] == "Dentist"
  assert resp.text == "I need date to add this event."

  harness.extractor.queue("apply_event_correction", _event(tomorrow))
  resp = harness.send("tomorrow")

  assert resp.text.startswith("Got it. Here’s the event:")
  assert harness.state().pending_action == "confirm_event"
  assert harness.extractor.called("apply_event_correction") == 1


def test_extractor_error_asks_for_all_event_fields(harness):
  harness.extractor.queue("extract_event", Extraction(error=True, message="Which event?"))

  resp = harness.send("add something")

  assert resp.text == "Which event?"
  assert harness.state().pending_action == "clarify_event_fields"
  assert harness.questions.calls[-1]["missing_fields"] == ["title", "date", "time"]


def test_extractor_failure_text_is_returned_and_state_untouched(harness):
  harness.extractor.queue("extract_event", Extraction(failure="Event extraction failed: timeout"))

  resp = harness.send("Dentist tomorrow")

  assert resp.text == "Event extraction failed: timeout"
  assert harness.state().pending_action is None


def test_multiple_extracted_events_prompt_for_a_pick(harness, tomorrow):
  harness.extractor.queue("extract_event", {"events": [
      _event(tomorrow, title="Swim practice"),
      _event(tomorrow, title="Piano lesson", start_time="17:00"),
  ]})

  resp = harness.send("flyer text")
  assert resp.text.startswith("I found multiple events.")
  assert harness.state().pending_action == "select_event_from_extraction"

  resp = harness.send("all")
  assert resp.text.startswith("Added 2 events. ✅")
  assert "Swim practice" in resp.text and "Piano lesson" in resp.text
  assert len(harness.calendar.inserts) == 2
  assert harness.state().pending_action is None


def test_picked_extracted_event_with_missing_fields_moves_to_clarify(harness, tomorrow):
  harness.extractor.queue("extract_event", {"events": [
      _event(tomorrow, title="Swim practice"),
      {"title": "Piano lesson"},
  ]})
  harness.send("flyer text")

  resp = harness.send("2")

  state = harness.state()
  assert state.pending_action == "clarify_event_fields"
  assert state.payload["event"]["title"] == "Piano lesson"
  assert state.payload["missing_fields"] == ["date"]
  assert resp.text == "I need date to add this event."
  assert harness.calendar.inserts == []


def test_image_is_kept_on_pending_payload(harness, tomorrow):
  harness.extractor.queue("extract_event", {"title": "Bake sale"})

  harness.send("what's this?", image_ref="data:image/png;base64,AAAA")

  payload = harness.state().payload
  assert payload["image_ref"] == "data:image/png;base64,AAAA"
  assert harness.extractor.calls[0] == ("extract_event", "what's this?",
                                        "data:image/png;base64,AAAA")


def test_duplicate_create_is_suppressed(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"),
                          _event(tomorrow, confidence="high"))

  harness.send("Dentist tomorrow at 3pm")
  resp = harness.send("Dentist tomorrow at 3pm")

  assert resp.text == "I already added that event. ✅"
  assert resp.action == "calendar_event_created"
  assert len(harness.calendar.inserts) == 1
  statuses = [a.status for a in harness.actions(action_type="create_calendar_event")]
  assert statuses == ["success", "duplicate"]


def test_same_event_in_another_thread_is_not_a_duplicate(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"),
                          _event(tomorrow, confidence="high"))

  harness.send("Dentist tomorrow at 3pm", thread_id="t1")
  resp = harness.send("Dentist tomorrow at 3pm", thread_id="t2")

  assert resp.event_created is True
  assert len(harness.calendar.inserts) == 2


def test_calendar_not_connected(harness, tomorrow):
  harness.calendar.is_connected = False
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))

  resp = harness.send("Dentist tomorrow at 3pm")

  assert resp.error_code == "insufficient_permissions"
  assert resp.text.startswith("Please connect your calendar at ")


def test_auth_expired_revokes_token_and_rolls_back(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))
  harness.send("Dentist tomorrow at 3pm")
  harness.calendar.fail_with = CalendarAuthError("invalid_grant")

  resp = harness.send("yes")

  assert resp.error_code == "calendar_auth_expired"
  assert "Your calendar authorization expired" in resp.text
  assert harness.calendar.revoked is True
  state = harness.state()
  assert state.pending_action == "confirm_event"
  assert state.payload["event"]["title"] == "Dentist"
  entry = harness.actions(action_type="create_calendar_event")[-1]
  assert entry.status == "error"
  assert entry.metadata["token_fingerprint"] == "fp-1234"


def test_calendar_failure_reports_error(harness, tomorrow):
  harness.calendar.fail_with = CalendarError("backend unavailable")
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))

  resp = harness.send("Dentist tomorrow at 3pm")

  assert resp.error_code == "calendar_create_failed"
  assert resp.text == "Calendar error: backend unavailable"
  assert harness.state().pending_action is None


def test_guests_are_invited(harness, tomorrow):
  harness.dispatcher.actions.guests = ["partner@example.com"]
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))

  resp = harness.dispatcher.process(ChatMessageRequest(
      user_id="u1", thread_id="t1", text="Dentist", user_email="me@example.com"))

  attendees = [a["email"] for a in harness.calendar.inserts[0]["attendees"]]
  assert attendees == ["partner@example.com", "me@example.com"]
  assert "Guests: partner@example.com, me@example.com" in resp.text


def test_lunch_with_sam_scenario(harness, today):
  friday = today + timedelta(days=(4 - today.weekday()) % 7 or 7)
  harness.extractor.queue("extract_event", {"title": "lunch with Sam", "date": friday.isoformat(),
                                            "start_time": "12:00", "confidence": "medium"})

  resp = harness.send("lunch with Sam Friday at noon")

  assert "Title: lunch with Sam" in resp.text
  assert f"Date: {friday.isoformat()}" in resp.text
  assert "Time: 12:00" in resp.text
  assert harness.state().pending_action == "confirm_event"

  resp = harness.send("yes")

  assert resp.event_created is True
  state = harness.state()
  assert state.pending_action is None
  assert state.payload == {}
  assert harness.calendar.inserts[0]["summary"] == "lunch with Sam"


def test_failed_item_is_reported_and_the_rest_are_added(harness, tomorrow):
  harness.extractor.queue("extract_event", {"events": [
      _event(tomorrow, title="Swim practice"),
      _event(tomorrow, title="Piano lesson", start_time="17:00"),
      _event(tomorrow, title="Bake sale", start_time="18:00"),
  ]})
  harness.send("flyer text")
  harness.calendar.fail_titles["Piano lesson"] = CalendarError("quota exceeded")

  resp = harness.send("all")

  assert resp.text == "Added 2 events. Some failed:\n- Calendar error: quota exceeded"
  assert resp.action == "calendar_event_created"
  assert [body["summary"] for body in harness.calendar.inserts] == ["Swim practice", "Bake sale"]
  assert harness.state().pending_action is None
  statuses = [a.status for a in harness.actions(action_type="create_calendar_event")]
  assert statuses == ["success", "error", "success"]


def test_auth_expiry_mid_batch_only_offers_unwritten_events(harness, tomorrow):
  harness.extractor.queue("extract_event", {"events": [
      _event(tomorrow, title="Swim practice"),
      _event(tomorrow, title="Piano lesson", start_time="17:00"),
  ]})
  harness.send("flyer text")
  harness.calendar.fail_titles["Piano lesson"] = CalendarAuthError("invalid_grant")

  resp = harness.send("all")

  assert resp.error_code == "calendar_auth_expired"
  state = harness.state()
  assert state.pending_action == "select_event_from_extraction"
  assert [e["title"] for e in state.payload["events"]] == ["Piano lesson"]
  assert state.last_action is not None
  assert state.last_entity_id == harness.store.events[0].id

  harness.calendar.reconnect()
  resp = harness.send("all")

  assert resp.text.startswith("Added 1 events. ✅")
  titles = [body["summary"] for body in harness.calendar.inserts]
  assert titles == ["Swim practice", "Piano lesson"]
  assert harness.state().pending_action is None
