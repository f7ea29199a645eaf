from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..models import CalendarEventRecord, ChatActionLog, ChatResponse
from ..state import LocalStore
from ..utils import _log_debug, new_id
from .constants import value_of
from .state import ThreadState


class ConversationContext(BaseModel):
  """Everything a flow may know about the inbound message."""
  user_id: str
  thread_id: str
  text: str = ""
  image_ref: Optional[str] = None
  user_email: Optional[str] = None
  correlation_id: str
  now: datetime
  recent_context: str = ""

  @property
  def has_image(self) -> bool:
    return bool(self.image_ref)


def respond(text: str,
            event_created: bool = False,
            action: Any = None,
            error_code: Any = None) -> ChatResponse:
  return ChatResponse(text=text,
                      event_created=event_created,
                      action=value_of(action) if action else None,
                      error_code=value_of(error_code) if error_code else None)


def event_snapshot(record: CalendarEventRecord) -> Dict[str, Any]:
  return {
      "id": record.id,
      "event_id": record.event_id,
      "title": record.title,
      "start_at": record.start_at,
      "end_at": record.end_at,
      "calendar_id": record.calendar_id,
      "updated_at": record.updated_at,
  }


class Turn:
  """One inbound message being handled against one thread state."""

  def __init__(self, ctx: ConversationContext, state: ThreadState, store: LocalStore) -> None:
    self.ctx = ctx
    self.state = state
    self.store = store
    self._initial = state.model_copy(deep=True)

  @property
  def text(self) -> str:
    return self.ctx.text

  @property
  def pending_action(self) -> Optional[str]:
    return self.state.pending_action

  def set_pending(self, action: Any, payload: Optional[Dict[str, Any]] = None) -> None:
    _log_debug(f"[FLOW] thread={self.ctx.thread_id} pending -> {value_of(action)}")
    self.state.set_pending(value_of(action), payload)

  def clear(self) -> None:
    self.state.clear()

  def remember_last_entity(self, entity_id: str) -> None:
    self.state.last_entity_id = entity_id

  def last_event(self) -> Optional[CalendarEventRecord]:
    record = self.store.get_event(self.state.last_entity_id)
    if record is None or record.status != "active":
      return None
    return record

  def rollback(self) -> None:
    """Put the pending action back the way it was when the message arrived.

    ``last_entity_id`` and ``last_action`` only move after a write succeeds,
    so they keep whatever this turn already committed.
    """
    restored = self._initial.model_copy(deep=True)
    self.state.pending_action = restored.pending_action
    self.state.payload = restored.payload

  def log_action(self,
                 action_type: Any,
                 status: Any,
                 calendar_event_id: Optional[str] = None,
                 calendar_id: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None) -> None:
    data = {k: v for k, v in (metadata or {}).items() if v is not None}
    data["correlation_id"] = self.ctx.correlation_id
    self.store.log_action(ChatActionLog(
        id=new_id(),
        thread_id=self.ctx.thread_id,
        user_id=self.ctx.user_id,
        action_type=value_of(action_type),
        status=value_of(status),
        calendar_event_id=calendar_event_id,
        calendar_id=calendar_id,
        metadata=data,
    ))
