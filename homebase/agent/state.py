from __future__ import annotations

import contextlib
import copy
import json
import os
import pathlib
import threading
from typing import Any, Dict, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils import _log_debug


class LastAction(BaseModel):
  action_type: str
  signature: str
  created_at: str  # ISO datetime


class ThreadState(BaseModel):
  """Per-thread dialogue state.

  ``payload`` only has meaning together with ``pending_action``.
  """
  model_config = ConfigDict(extra="ignore")

  pending_action: Optional[str] = None
  payload: Dict[str, Any] = Field(default_factory=dict)
  last_entity_id: Optional[str] = None
  last_action: Optional[LastAction] = None

  def set_pending(self, action: str, payload: Optional[Dict[str, Any]] = None) -> None:
    self.pending_action = action
    self.payload = copy.deepcopy(payload or {})

  def clear(self) -> None:
    """Drop the pending action and its payload; the entity pointer and ledger survive."""
    self.pending_action = None
    self.payload = {}


class InMemoryThreadStore:

  def __init__(self) -> None:
    self._states: Dict[str, Dict[str, Any]] = {}
    self._lock = threading.Lock()

  def read(self, thread_id: str) -> ThreadState:
    with self._lock:
      stored = self._states.get(thread_id)
    if not isinstance(stored, dict):
      return ThreadState()
    return ThreadState.model_validate(copy.deepcopy(stored))

  def write(self, thread_id: str, state: ThreadState) -> None:
    if not thread_id:
      return
    with self._lock:
      self._states[thread_id] = state.model_dump(mode="json")


class JsonThreadStore:
  """Thread states in one JSON file; every write replaces the file atomically."""

  def __init__(self, path: pathlib.Path) -> None:
    self.path = path
    self._lock = threading.Lock()

  def _load_all(self) -> Dict[str, Any]:
    if not self.path.exists():
      return {}
    try:
      data = json.loads(self.path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
      _log_debug(f"[THREAD STORE] load failed: {exc}")
      return {}
    return data if isinstance(data, dict) else {}

  def read(self, thread_id: str) -> ThreadState:
    with self._lock:
      stored = self._load_all().get(thread_id)
    if not isinstance(stored, dict):
      return ThreadState()
    return ThreadState.model_validate(stored)

  def write(self, thread_id: str, state: ThreadState) -> None:
    if not thread_id:
      return
    with self._lock:
      states = self._load_all()
      states[thread_id] = state.model_dump(mode="json")
      tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
      tmp_path.write_text(json.dumps(states, ensure_ascii=False, indent=2), encoding="utf-8")
      os.replace(tmp_path, self.path)


class ThreadLocks:
  """One lock per thread id so turns of the same conversation run one at a time.

  A lock is dropped once no turn holds or waits on it.
  """

  def __init__(self) -> None:
    self._locks: Dict[str, threading.Lock] = {}
    self._users: Dict[str, int] = {}
    self._guard = threading.Lock()

  def __len__(self) -> int:
    return len(self._locks)

  @contextlib.contextmanager
  def for_thread(self, thread_id: str) -> Iterator[None]:
    with self._guard:
      lock = self._locks.setdefault(thread_id, threading.Lock())
      self._users[thread_id] = self._users.get(thread_id, 0) + 1
    try:
      with lock:
        yield
    finally:
      with self._guard:
        self._users[thread_id] -= 1
        if not self._users[thread_id]:
          del self._users[thread_id]
          del self._locks[thread_id]
