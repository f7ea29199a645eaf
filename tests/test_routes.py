from __future__ import annotations

import urllib.parse

import pytest
import requests
from fastapi.testclient import TestClient

from homebase import gcal, routes
from homebase.app import app
from homebase.routes import get_dispatcher


@pytest.fixture
def client(harness):
  app.dependency_overrides[get_dispatcher] = lambda: harness.dispatcher
  yield TestClient(app)
  app.dependency_overrides.clear()


@pytest.fixture
def oauth_env(monkeypatch):
  monkeypatch.setattr(routes, "GOOGLE_CLIENT_ID", "client-123")
  monkeypatch.setattr(routes, "GOOGLE_CLIENT_SECRET", "shh")
  monkeypatch.setattr(routes, "GOOGLE_REDIRECT_URI", "https://homebase.example/auth/google/callback")
  monkeypatch.setattr(routes, "load_gcal_token_for_user", lambda user_id: {})
  monkeypatch.setattr(gcal, "oauth_state_store", {})


class _TokenResponse:

  def __init__(self, status_code, body):
    self.status_code = status_code
    self.ok = status_code < 400
    self._body = body
    self.text = str(body)

  def json(self):
    return self._body


def test_health(client):
  resp = client.get("/api/health")

  assert resp.status_code == 200
  assert resp.json()["ok"] is True


def test_chat_message_returns_response_shape(client, harness, tomorrow):
  harness.extractor.queue("extract_event", {"title": "Dentist", "date": tomorrow.isoformat(),
                                            "start_time": "15:00", "confidence": "high"})

  resp = client.post("/api/chat/messages",
                     json={"user_id": "u1", "thread_id": "t1", "text": "Dentist tomorrow 3pm"})

  assert resp.status_code == 200
  body = resp.json()
  assert set(body) == {"text", "event_created", "action", "error_code"}
  assert body["event_created"] is True
  assert body["action"] == "calendar_event_created"
  assert body["error_code"] is None


@pytest.mark.parametrize("payload", [
    {"user_id": "", "thread_id": "t1", "text": "hi"},
    {"user_id": "u1", "thread_id": "  ", "text": "hi"},
])
def test_chat_message_requires_ids(client, payload):
  resp = client.post("/api/chat/messages", json=payload)

  assert resp.status_code == 400


def test_thread_state_endpoint(client, harness, tomorrow):
  harness.extractor.queue("extract_event", {"title": "Dentist", "date": tomorrow.isoformat(),
                                            "start_time": "15:00"})
  client.post("/api/chat/messages", json={"user_id": "u1", "thread_id": "t9", "text": "Dentist"})

  resp = client.get("/api/chat/threads/t9/state")

  assert resp.status_code == 200
  body = resp.json()
  assert body["pending_action"] == "confirm_event"
  assert body["payload"]["event"]["title"] == "Dentist"


def test_calendar_sync_mirrors_events(client, harness, tomorrow):
  harness.calendar.events["g-sync"] = {
      "id": "g-sync",
      "summary": "Book club",
      "start": {"dateTime": f"{tomorrow.isoformat()}T19:00:00"},
      "end": {"dateTime": f"{tomorrow.isoformat()}T20:00:00"},
  }

  resp = client.post("/api/calendar/sync", params={"user_id": "u1"})

  assert resp.json() == {"ok": True, "synced": 1}
  assert [e.title for e in harness.store.events] == ["Book club"]


def test_login_redirects_to_google(client, oauth_env):
  resp = client.get("/auth/google/login", params={"user_id": "u1"}, follow_redirects=False)

  assert resp.status_code in (302, 307)
  location = urllib.parse.urlparse(resp.headers["location"])
  query = urllib.parse.parse_qs(location.query)
  assert location.netloc == "accounts.google.com"
  assert query["client_id"] == ["client-123"]
  assert query["prompt"] == ["consent"]
  assert query["access_type"] == ["offline"]
  [state_value] = query["state"]
  assert gcal.oauth_state_store[state_value]["user_id"] == "u1"


def test_login_without_oauth_config_fails(client, oauth_env, monkeypatch):
  monkeypatch.setattr(routes, "GOOGLE_CLIENT_ID", "")

  resp = client.get("/auth/google/login", params={"user_id": "u1"}, follow_redirects=False)

  assert resp.status_code == 500


def test_callback_rejects_unknown_state(client, oauth_env):
  resp = client.get("/auth/google/callback", params={"code": "abc", "state": "forged"})

  assert resp.status_code == 400
  assert resp.json()["detail"] == "State verification failed."


def test_callback_reports_provider_error(client, oauth_env):
  resp = client.get("/auth/google/callback", params={"error": "access_denied"})

  assert resp.json() == {"ok": False, "error": "access_denied"}


def test_callback_saves_token_for_state_owner(client, oauth_env, monkeypatch):
  saved = {}
  monkeypatch.setattr(routes, "save_gcal_token_for_user",
                      lambda user_id, data: saved.update({user_id: data}))
  monkeypatch.setattr(routes.requests, "post", lambda url, data, timeout: _TokenResponse(
      200, {"access_token": "at", "refresh_token": "rt", "expires_in": 3600}))
  gcal.store_oauth_state("good-state", "u7", "https://homebase.example/auth/google/callback")

  resp = client.get("/auth/google/callback", params={"code": "abc", "state": "good-state"})

  assert resp.json() == {"ok": True, "user_id": "u7"}
  assert saved["u7"]["token"] == "at"
  assert saved["u7"]["refresh_token"] == "rt"
  assert "good-state" not in gcal.oauth_state_store


def test_callback_token_endpoint_unreachable(client, oauth_env, monkeypatch):

  def unreachable(url, data, timeout):
    raise requests.ConnectionError("no route to host")

  monkeypatch.setattr(routes.requests, "post", unreachable)
  gcal.store_oauth_state("good-state", "u7")

  resp = client.get("/auth/google/callback", params={"code": "abc", "state": "good-state"})

  assert resp.status_code == 502
