from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict

from ..config import IDEMPOTENCY_WINDOW_SECONDS
from ..utils import parse_datetime
from .constants import value_of
from .state import LastAction, ThreadState


def canonical_json(payload: Any) -> str:
  return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"),
                    default=str)


class IdempotencyGuard:
  """Suppresses a repeat of the thread's last side effect inside a short window."""

  def __init__(self, window_seconds: int = IDEMPOTENCY_WINDOW_SECONDS) -> None:
    self.window = timedelta(seconds=window_seconds)

  def signature(self, action_type: str, user_id: str, payload: Dict[str, Any]) -> str:
    raw = "|".join([value_of(action_type), str(user_id), canonical_json(payload)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()

  def is_duplicate(self, state: ThreadState, action_type: str, signature: str,
                   now: datetime) -> bool:
    last = state.last_action
    if last is None:
      return False
    if last.action_type != value_of(action_type) or last.signature != signature:
      return False
    created_at = parse_datetime(last.created_at)
    if created_at is None:
      return False
    return now - created_at < self.window

  def remember(self, state: ThreadState, action_type: str, signature: str,
               now: datetime) -> None:
    state.last_action = LastAction(action_type=value_of(action_type), signature=signature,
                                   created_at=now.isoformat())
