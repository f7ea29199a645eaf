from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from ..gcal import CalendarAuthError, CalendarError, CalendarNotConnected, GoogleCalendarClient
from ..utils import _log_debug


class ErrorKind(str, Enum):
  AUTH_EXPIRED = "auth_expired"
  NOT_CONNECTED = "not_connected"
  FAILURE = "failure"


class ActionResult(BaseModel):
  ok: bool
  value: Any = None
  kind: Optional[ErrorKind] = None
  message: str = ""

  @classmethod
  def success(cls, value: Any = None) -> "ActionResult":
    return cls(ok=True, value=value)

  @classmethod
  def failure(cls, kind: ErrorKind, message: str) -> "ActionResult":
    return cls(ok=False, kind=kind, message=message)


class CalendarExecutor:
  """Calendar calls for one user, returned as ``ActionResult`` instead of raised."""

  def __init__(self, client: GoogleCalendarClient) -> None:
    self.client = client

  @property
  def connected(self) -> bool:
    return self.client.connected()

  def token_fingerprint(self) -> Optional[str]:
    return self.client.token_fingerprint()

  def revoke(self) -> None:
    self.client.revoke()

  def _run(self, label: str, call: Callable[[], Any]) -> ActionResult:
    try:
      return ActionResult.success(call())
    except CalendarNotConnected as exc:
      return ActionResult.failure(ErrorKind.NOT_CONNECTED, str(exc))
    except CalendarAuthError as exc:
      _log_debug(f"[GCAL] {label} auth error: {exc}")
      return ActionResult.failure(ErrorKind.AUTH_EXPIRED, str(exc))
    except CalendarError as exc:
      _log_debug(f"[GCAL] {label} failed: {exc}")
      return ActionResult.failure(ErrorKind.FAILURE, str(exc))

  def create_event(self, calendar_id: str, event: Dict[str, Any],
                   attendees: Optional[List[str]] = None,
                   recurrence_rules: Optional[List[str]] = None) -> ActionResult:
    return self._run("create", lambda: self.client.create_event(
        calendar_id, event, attendees=attendees, recurrence_rules=recurrence_rules))

  def get_event(self, calendar_id: str, event_id: str) -> ActionResult:
    return self._run("get", lambda: self.client.get_event(calendar_id, event_id))

  def update_event(self, calendar_id: str, event_id: str,
                   updates: Dict[str, Any]) -> ActionResult:
    return self._run("update", lambda: self.client.update_event(calendar_id, event_id, updates))

  def delete_event(self, calendar_id: str, event_id: str) -> ActionResult:
    return self._run("delete", lambda: self.client.delete_event(calendar_id, event_id))

  def detach_instance(self, calendar_id: str, instance_id: str,
                      event: Dict[str, Any]) -> ActionResult:
    return self._run("detach", lambda: self.client.detach_instance(calendar_id, instance_id, event))

  def list_events(self, calendar_id: str, time_min: datetime,
                  time_max: datetime) -> ActionResult:
    return self._run("list", lambda: self.client.list_events(calendar_id, time_min, time_max))
