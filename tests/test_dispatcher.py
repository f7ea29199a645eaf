from __future__ import annotations

from homebase.agent.dispatcher import GENERIC_ERROR_TEXT
from homebase.agent.handlers import HELP_TEXT
from homebase.agent.schemas import PendingDecision


def _event(day, **extra):
  event = {"title": "Dentist", "date": day.isoformat(), "start_time": "15:00"}
  event.update(extra)
  return event


def test_empty_message_gets_a_hint(harness):
  resp = harness.send("")

  assert resp.text == "Send event details and I’ll add it to your calendar."
  assert harness.state().pending_action is None


def test_messages_are_logged_for_both_sides(harness):
  harness.send("help", intent="help")

  roles = [(m.role, m.text) for m in harness.store.recent_messages("t1", 10)]
  assert roles == [("user", "help"), ("assistant", HELP_TEXT)]


def test_ambiguous_intent_is_clarified_until_resolved(harness, tomorrow):
  resp = harness.send("tuesday", intent="ambiguous")

  assert resp.text == "Would you like to add an event, log a transaction, or save a memory?"
  assert harness.state().pending_action == "clarify_intent"

  resp = harness.send("not sure", intent="ambiguous")

  assert resp.text == "Sorry, still not sure. Event, transaction, or memory?"
  assert harness.state().pending_action == "clarify_intent"

  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))
  resp = harness.send("an event", intent="create_event")

  assert resp.event_created is True
  assert harness.state().pending_action is None


def test_new_intent_abandons_pending_action(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))
  harness.send("Dentist tomorrow at 3pm")
  assert harness.state().pending_action == "confirm_event"
  harness.intents.decisions.append(PendingDecision(decision="new_intent", intent="help"))

  resp = harness.send("actually, what can you do?")

  assert resp.text == HELP_TEXT
  assert harness.state().pending_action is None
  assert harness.calendar.inserts == []


def test_direct_reply_skips_the_pending_decision(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))
  harness.send("Dentist tomorrow at 3pm")

  harness.send("yes")

  assert harness.intents.decide_calls == 0
  assert len(harness.calendar.inserts) == 1


def test_continue_decision_keeps_the_pending_action(harness):
  harness.extractor.queue("extract_event", {"title": "Dentist", "start_time": "15:00"})
  harness.send("Dentist at 3pm")
  harness.extractor.queue("apply_event_correction", {"title": "Dentist", "start_time": "15:00"})

  resp = harness.send("umm the one with Dr. Lee")

  assert harness.intents.decide_calls == 1
  assert resp.text == "I still need date."
  assert harness.state().pending_action == "clarify_event_fields"


def test_unexpected_error_resets_thread(harness):
  harness.extractor.queue("extract_event", {"title": "Dentist", "start_time": "15:00"})
  harness.send("Dentist at 3pm")

  def boom(event, text):
    raise RuntimeError("model exploded")

  harness.extractor.apply_event_correction = boom

  resp = harness.send("tomorrow")

  assert resp.text == GENERIC_ERROR_TEXT
  assert resp.error_code is None
  assert harness.state().pending_action is None
  [entry] = harness.actions(action_type="chat_error")
  assert entry.status == "error"
  assert entry.metadata["error_class"] == "RuntimeError"
  assert entry.metadata["pending_action"] == "clarify_event_fields"


def test_unknown_pending_action_starts_over(harness):
  harness.threads.write("t1", harness.state().model_copy(update={
      "pending_action": "confirm_teleport",
      "payload": {"where": "mars"},
  }))

  resp = harness.send("what can you do?", intent="help")

  assert resp.text == HELP_TEXT
  assert harness.state().pending_action is None
  assert harness.state().payload == {}


def test_ambiguous_image_is_clarified_and_keeps_the_image(harness, today):
  resp = harness.send("", image_ref="https://example.com/photo.jpg", intent="ambiguous")

  assert resp.text == "Would you like to add an event, log a transaction, or save a memory?"
  state = harness.state()
  assert state.pending_action == "clarify_image_intent"
  assert state.payload == {"image_ref": "https://example.com/photo.jpg"}

  harness.extractor.queue("extract_transaction", {
      "merchant": "Costco", "amount": "12", "date": today.isoformat(), "source": "cash",
      "confidence": "high"})
  resp = harness.send("it's a receipt", intent="create_transaction")

  assert resp.action == "transaction_created"
  assert harness.extractor.calls[-1] == ("extract_transaction", "it's a receipt",
                                         "https://example.com/photo.jpg")


def test_clearing_state_keeps_entity_pointer_and_ledger(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow, confidence="high"))
  harness.send("Dentist tomorrow at 3pm")
  created = harness.state()

  harness.send("what can you do?", intent="help")

  state = harness.state()
  assert state.pending_action is None
  assert state.last_entity_id == created.last_entity_id
  assert state.last_action is not None
  assert state.last_action.action_type == "create_calendar_event"


def test_threads_do_not_share_state(harness, tomorrow):
  harness.extractor.queue("extract_event", _event(tomorrow))
  harness.send("Dentist tomorrow at 3pm", thread_id="t1")

  harness.send("what can you do?", thread_id="t2", intent="help")

  assert harness.state("t1").pending_action == "confirm_event"
  assert harness.state("t2").pending_action is None


def test_digest_lists_today_and_counts_the_week(harness, today, tomorrow):
  harness.add_event("School pickup", today, "08:00")
  harness.add_event("Dentist", tomorrow, "09:00")

  resp = harness.send("what's my day look like?", intent="digest")

  lines = resp.text.splitlines()
  assert lines[0] == "Today:"
  assert "School pickup" in lines[1]
  assert lines[-1] == "Next 7 days: 1 event."


def test_digest_with_empty_calendar(harness):
  resp = harness.send("morning digest", intent="digest")

  assert resp.text == "Nothing on your calendar today.\nNext 7 days: 0 events."


def test_list_events_for_a_day(harness, tomorrow):
  harness.add_event("Dentist", tomorrow, "09:00")
  harness.add_event("Piano lesson", tomorrow, "17:00")
  harness.extractor.queue("extract_event_query", {"date": tomorrow.isoformat()})

  resp = harness.send("what's on tomorrow?", intent="list_events")

  lines = resp.text.splitlines()
  assert lines[0] == "Here are the next events:"
  assert "Dentist" in lines[1] and "Piano lesson" in lines[2]
  [entry] = harness.actions(action_type="list_events")
  assert entry.metadata["result_count"] == 2


def test_list_events_without_match_asks_again(harness):
  harness.extractor.queue("extract_event_query", {"title": "yoga"})

  resp = harness.send("when is yoga?", intent="list_events")

  assert resp.text.startswith("I couldn't find any upcoming events that match.")
  assert harness.state().pending_action == "clarify_list_query"

  harness.extractor.queue("extract_event_query", {"title": "pilates"})
  resp = harness.send("try pilates")

  assert resp.text == "Still nothing. Try a more specific title or date."


def test_scope_reply_is_answered_without_the_decider(harness, tomorrow):
  record = harness.add_event("Swim practice", tomorrow, "17:00", recurring_event_id="series-1")
  harness.extractor.queue("extract_event_update", {
      "target": {"title": "swim practice"},
      "changes": {"start_time": "18:00"},
      "confidence": "high",
  })
  harness.send("move swim practice to 6pm", intent="update_event")
  assert harness.state().pending_action == "clarify_recurring_scope"
  harness.intents.decisions.append(PendingDecision(decision="new_intent", intent="help"))

  resp = harness.send("just this one")

  assert harness.intents.decide_calls == 0
  assert resp.action == "calendar_event_updated"
  assert harness.calendar.patches[0][0] == record.event_id
