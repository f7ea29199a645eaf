from __future__ import annotations

import hashlib
import json
import pathlib
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google.auth.transport.requests import Request as GoogleRequest
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import (
    ENABLE_GCAL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    GCAL_SCOPES,
    GOOGLE_TOKEN_DIR,
    LOCAL_TZ,
    OAUTH_STATE_MAX_AGE_SECONDS,
    TIMEZONE_NAME,
)
from .utils import _log_debug, combine_local, parse_iso_date


class CalendarError(Exception):
  """Any Google Calendar failure that is not an authorization problem."""


class CalendarAuthError(CalendarError):
  """The stored grant was rejected (401 / invalid_grant)."""


class CalendarNotConnected(CalendarError):
  """No OAuth token stored for the user."""


def is_gcal_configured() -> bool:
  return bool(ENABLE_GCAL and GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET
              and GOOGLE_REDIRECT_URI)


def _user_key(user_id: str) -> str:
  return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


def _user_token_path(user_id: str) -> pathlib.Path:
  return GOOGLE_TOKEN_DIR / f"token_{_user_key(user_id)}.json"


def _ensure_token_dir() -> None:
  try:
    GOOGLE_TOKEN_DIR.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    _log_debug(f"[GCAL] token dir error: {exc}")


def load_gcal_token_for_user(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
  if not user_id:
    return None
  path = _user_token_path(user_id)
  if not path.exists():
    return None
  try:
    with path.open("r", encoding="utf-8") as f:
      return json.load(f)
  except (OSError, ValueError):
    return None


def save_gcal_token_for_user(user_id: str, data: Dict[str, Any]) -> None:
  if not user_id:
    return
  _ensure_token_dir()
  path = _user_token_path(user_id)
  path.write_text(json.dumps(data, ensure_ascii=False, indent=2),
                  encoding="utf-8")


def clear_gcal_token_for_user(user_id: Optional[str]) -> None:
  if not user_id:
    return
  try:
    path = _user_token_path(user_id)
    if path.exists():
      path.unlink()
  except OSError as exc:
    _log_debug(f"[GCAL] token clear error: {exc}")


def token_fingerprint(token_data: Optional[Dict[str, Any]]) -> Optional[str]:
  if not isinstance(token_data, dict):
    return None
  secret = token_data.get("refresh_token") or token_data.get("token")
  if not secret:
    return None
  return hashlib.sha256(str(secret).encode("utf-8")).hexdigest()[:12]


# -------------------------
# OAuth state
# -------------------------
oauth_state_store: Dict[str, Dict[str, Any]] = {}


def new_oauth_state() -> str:
  return secrets.token_urlsafe(16)


def store_oauth_state(state_value: str,
                      user_id: str,
                      redirect_uri: Optional[str] = None) -> None:
  if not state_value or not user_id:
    return
  entry: Dict[str, Any] = {
      "user_id": user_id,
      "created_at": time.time(),
  }
  if redirect_uri:
    entry["redirect_uri"] = redirect_uri
  oauth_state_store[state_value] = entry


def pop_oauth_state(state_value: Optional[str]) -> Optional[Dict[str, Any]]:
  if not state_value:
    return None
  entry = oauth_state_store.pop(state_value, None)
  if not entry:
    return None
  created_at = entry.get("created_at")
  if created_at and (time.time() - float(created_at)) > OAUTH_STATE_MAX_AGE_SECONDS:
    return None
  return entry


def _time_body(day: str, hm: Optional[str]) -> Dict[str, Any]:
  parsed_day = parse_iso_date(day)
  if parsed_day is None:
    raise CalendarError(f"Invalid date: {day}")
  if hm:
    return {"dateTime": combine_local(parsed_day, hm).isoformat(),
            "timeZone": TIMEZONE_NAME, "date": None}
  return {"date": parsed_day.isoformat(), "dateTime": None}


def build_event_body(event: Dict[str, Any],
                     attendees: Optional[List[str]] = None,
                     recurrence_rules: Optional[List[str]] = None) -> Dict[str, Any]:
  """Insert body for an event payload {title, date, start_time, end_time, location, description}."""
  day = event.get("date")
  start_time = event.get("start_time")
  end_time = event.get("end_time")
  body: Dict[str, Any] = {"summary": event.get("title") or "Untitled"}
  start_day = parse_iso_date(day)
  if start_day is None:
    raise CalendarError(f"Invalid date: {day}")
  if start_time:
    start_dt = combine_local(start_day, start_time)
    end_dt = combine_local(start_day, end_time) if end_time else None
    if end_dt is None or end_dt <= start_dt:
      end_dt = start_dt + timedelta(hours=1)
    body["start"] = {"dateTime": start_dt.isoformat(), "timeZone": TIMEZONE_NAME}
    body["end"] = {"dateTime": end_dt.isoformat(), "timeZone": TIMEZONE_NAME}
  else:
    body["start"] = {"date": start_day.isoformat()}
    body["end"] = {"date": (start_day + timedelta(days=1)).isoformat()}
  if event.get("location"):
    body["location"] = event["location"]
  if event.get("description"):
    body["description"] = event["description"]
  if attendees:
    body["attendees"] = [{"email": email} for email in attendees]
    body["guestsCanModify"] = True
  if recurrence_rules:
    body["recurrence"] = list(recurrence_rules)
  return body


def build_patch_body(updates: Dict[str, Any]) -> Dict[str, Any]:
  body: Dict[str, Any] = {}
  if updates.get("title") is not None:
    body["summary"] = updates["title"]
  if updates.get("location") is not None:
    body["location"] = updates["location"]
  if updates.get("description") is not None:
    body["description"] = updates["description"]
  if updates.get("date"):
    if updates.get("start_time"):
      body["start"] = _time_body(updates["date"], updates["start_time"])
      body["end"] = _time_body(updates["date"], updates.get("end_time")
                               or updates["start_time"])
    else:
      day = parse_iso_date(updates["date"])
      if day is None:
        raise CalendarError(f"Invalid date: {updates['date']}")
      body["start"] = _time_body(day.isoformat(), None)
      body["end"] = _time_body((day + timedelta(days=1)).isoformat(), None)
  if updates.get("recurrence_rules"):
    body["recurrence"] = list(updates["recurrence_rules"])
  elif updates.get("recurrence_clear"):
    body["recurrence"] = []
  return body


def _parse_gcal_time(obj: Any) -> Optional[datetime]:
  if not isinstance(obj, dict):
    return None
  dt_value = obj.get("dateTime")
  if isinstance(dt_value, str):
    try:
      return datetime.fromisoformat(dt_value.replace("Z", "+00:00")).astimezone(LOCAL_TZ)
    except ValueError:
      return None
  day = parse_iso_date(obj.get("date"))
  if day is not None:
    return combine_local(day, None)
  return None


def event_record_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
  """Fields of a CalendarEventRecord taken from a Google event resource."""
  start = _parse_gcal_time(raw.get("start"))
  end = _parse_gcal_time(raw.get("end"))
  return {
      "event_id": raw.get("id"),
      "title": raw.get("summary") or "",
      "description": raw.get("description"),
      "location": raw.get("location"),
      "start_at": start.isoformat() if start else "",
      "end_at": end.isoformat() if end else None,
      "all_day": isinstance(raw.get("start"), dict) and "date" in raw["start"]
                 and not raw["start"].get("dateTime"),
      "recurring_event_id": raw.get("recurringEventId"),
      "recurrence": list(raw.get("recurrence") or []),
      "html_link": raw.get("htmlLink"),
      "status": "cancelled" if raw.get("status") == "cancelled" else "active",
  }


class GoogleCalendarClient:
  """Thin wrapper over the Calendar v3 service for one user.

  Every Google failure surfaces as CalendarError; rejected grants surface as
  CalendarAuthError so callers can ask the user to reconnect.
  """

  def __init__(self, user_id: str, service: Any = None) -> None:
    self.user_id = user_id
    self._service = service

  def token_fingerprint(self) -> Optional[str]:
    return token_fingerprint(load_gcal_token_for_user(self.user_id))

  def connected(self) -> bool:
    return self._service is not None or load_gcal_token_for_user(self.user_id) is not None

  def revoke(self) -> None:
    clear_gcal_token_for_user(self.user_id)
    self._service = None

  def _get_service(self):
    if self._service is not None:
      return self._service
    token_data = load_gcal_token_for_user(self.user_id)
    if not token_data:
      raise CalendarNotConnected("Google OAuth token not found.")
    creds = Credentials.from_authorized_user_info(token_data, GCAL_SCOPES)
    if creds.expired and creds.refresh_token:
      try:
        creds.refresh(GoogleRequest())
      except RefreshError as exc:
        raise CalendarAuthError(str(exc)) from exc
      save_gcal_token_for_user(self.user_id, json.loads(creds.to_json()))
    self._service = build("calendar", "v3", credentials=creds)
    return self._service

  def _execute(self, request) -> Any:
    try:
      return request.execute()
    except RefreshError as exc:
      raise CalendarAuthError(str(exc)) from exc
    except HttpError as exc:
      status = getattr(exc.resp, "status", None)
      if status == 401:
        raise CalendarAuthError(str(exc)) from exc
      raise CalendarError(f"Google Calendar request failed ({status}): {exc}") from exc

  def create_event(self,
                   calendar_id: str,
                   event: Dict[str, Any],
                   attendees: Optional[List[str]] = None,
                   recurrence_rules: Optional[List[str]] = None) -> Dict[str, Any]:
    body = build_event_body(event, attendees, recurrence_rules)
    _log_debug(f"[GCAL] insert calendar={calendar_id} summary={body.get('summary')}")
    service = self._get_service()
    return self._execute(service.events().insert(calendarId=calendar_id, body=body))

  def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
    service = self._get_service()
    return self._execute(service.events().get(calendarId=calendar_id, eventId=event_id))

  def update_event(self, calendar_id: str, event_id: str,
                   updates: Dict[str, Any]) -> Dict[str, Any]:
    body = build_patch_body(updates)
    _log_debug(f"[GCAL] patch calendar={calendar_id} event={event_id} keys={sorted(body)}")
    service = self._get_service()
    return self._execute(
        service.events().patch(calendarId=calendar_id, eventId=event_id, body=body))

  def delete_event(self, calendar_id: str, event_id: str) -> None:
    _log_debug(f"[GCAL] delete calendar={calendar_id} event={event_id}")
    service = self._get_service()
    self._execute(service.events().delete(calendarId=calendar_id, eventId=event_id))

  def list_events(self, calendar_id: str, time_min: datetime,
                  time_max: datetime) -> List[Dict[str, Any]]:
    service = self._get_service()
    items: List[Dict[str, Any]] = []
    page_token = None
    while True:
      response = self._execute(service.events().list(
          calendarId=calendar_id,
          timeMin=time_min.isoformat(),
          timeMax=time_max.isoformat(),
          singleEvents=True,
          orderBy="startTime",
          pageToken=page_token,
      ))
      items.extend(response.get("items") or [])
      page_token = response.get("nextPageToken")
      if not page_token:
        return items

  def detach_instance(self, calendar_id: str, instance_id: str,
                      event: Dict[str, Any]) -> Dict[str, Any]:
    """Replace one occurrence of a series with a standalone copy of it."""
    body = {
        key: event[key]
        for key in ("summary", "description", "location", "start", "end", "attendees")
        if event.get(key) is not None
    }
    service = self._get_service()
    created = self._execute(service.events().insert(calendarId=calendar_id, body=body))
    self._execute(service.events().delete(calendarId=calendar_id, eventId=instance_id))
    return created
