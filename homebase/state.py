from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import os
import pathlib
import threading

from .config import CHAT_LOG_MAX_MESSAGES_PER_THREAD
from .models import (
    CalendarEventRecord,
    ChatActionLog,
    ChatMessageLog,
    MemoryRecord,
    TransactionRecord,
)
from .utils import _log_debug, _now_iso, parse_datetime

# NOTE: every mutation goes through LocalStore methods so the JSON file stays in sync.


class LocalStore:
    """JSON-backed store for the calendar mirror, ledger, memories and chat logs.

    With ``path=None`` nothing touches the disk, which is what the tests use.
    """

    def __init__(self, path: Optional[pathlib.Path] = None,
                 max_messages_per_thread: int = CHAT_LOG_MAX_MESSAGES_PER_THREAD) -> None:
        self.path = path
        self.max_messages_per_thread = max_messages_per_thread
        self._lock = threading.RLock()
        self.events: List[CalendarEventRecord] = []
        self.transactions: List[TransactionRecord] = []
        self.memories: List[MemoryRecord] = []
        self.messages: List[ChatMessageLog] = []
        self.actions: List[ChatActionLog] = []
        self._load_from_disk()

    # -------------------------
    # persistence
    # -------------------------
    def _serialize_payload(self) -> Dict[str, Any]:
        return {
            "version": 1,
            "events": [e.model_dump() for e in self.events],
            "transactions": [t.model_dump() for t in self.transactions],
            "memories": [m.model_dump() for m in self.memories],
            "messages": [m.model_dump() for m in self.messages],
            "actions": [a.model_dump() for a in self.actions],
        }

    def _save_to_disk(self) -> None:
        if self.path is None:
            return
        try:
            payload = self._serialize_payload()
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str),
                                encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            _log_debug(f"[STORE] save failed: {exc}")

    def _load_from_disk(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _log_debug(f"[STORE] load failed: {exc}")
            return
        if not isinstance(data, dict):
            return
        self.events = self._load_list(data.get("events"), CalendarEventRecord)
        self.transactions = self._load_list(data.get("transactions"), TransactionRecord)
        self.memories = self._load_list(data.get("memories"), MemoryRecord)
        self.messages = self._load_list(data.get("messages"), ChatMessageLog)
        self.actions = self._load_list(data.get("actions"), ChatActionLog)

    @staticmethod
    def _load_list(raw: Any, model: Any) -> List[Any]:
        loaded: List[Any] = []
        if not isinstance(raw, list):
            return loaded
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                loaded.append(model.model_validate(item))
            except ValueError:
                continue
        return loaded

    # -------------------------
    # calendar events
    # -------------------------
    def upsert_event(self, record: CalendarEventRecord) -> CalendarEventRecord:
        with self._lock:
            record.updated_at = _now_iso()
            for index, existing in enumerate(self.events):
                if existing.id == record.id:
                    self.events[index] = record
                    break
            else:
                self.events.append(record)
            self._save_to_disk()
        return record

    def get_event(self, record_id: Optional[str]) -> Optional[CalendarEventRecord]:
        if not record_id:
            return None
        for record in self.events:
            if record.id == record_id:
                return record
        return None

    def find_event_by_google_id(self, user_id: str, calendar_id: str,
                                event_id: str) -> Optional[CalendarEventRecord]:
        for record in self.events:
            if (record.user_id == user_id and record.calendar_id == calendar_id
                    and record.event_id == event_id):
                return record
        return None

    def events_between(self, user_id: str, start: datetime,
                       end: datetime) -> List[CalendarEventRecord]:
        """Active events of ``user_id`` starting in ``[start, end)``, ordered by start."""
        found = []
        for record in self.events:
            if record.user_id != user_id or record.status != "active":
                continue
            start_at = parse_datetime(record.start_at)
            if start_at is None:
                continue
            if start <= start_at < end:
                found.append((start_at, record))
        found.sort(key=lambda pair: pair[0])
        return [record for _, record in found]

    # -------------------------
    # ledger / memories
    # -------------------------
    def add_transaction(self, record: TransactionRecord) -> TransactionRecord:
        with self._lock:
            record.created_at = record.created_at or _now_iso()
            self.transactions.append(record)
            self._save_to_disk()
        return record

    def transactions_for(self, user_id: str) -> List[TransactionRecord]:
        return [t for t in self.transactions if t.user_id == user_id]

    def add_memory(self, record: MemoryRecord) -> MemoryRecord:
        with self._lock:
            record.created_at = record.created_at or _now_iso()
            self.memories.append(record)
            self._save_to_disk()
        return record

    def memories_for(self, user_id: str) -> List[MemoryRecord]:
        return [m for m in self.memories if m.user_id == user_id]

    # -------------------------
    # chat logs
    # -------------------------
    def add_message(self, entry: ChatMessageLog) -> None:
        with self._lock:
            entry.created_at = entry.created_at or _now_iso()
            self.messages.append(entry)
            self._trim_thread_messages(entry.thread_id)
            self._save_to_disk()

    def _trim_thread_messages(self, thread_id: str) -> None:
        """Drop the oldest messages of a thread past the per-thread cap."""
        if self.max_messages_per_thread <= 0:
            return
        count = sum(1 for m in self.messages if m.thread_id == thread_id)
        excess = count - self.max_messages_per_thread
        if excess <= 0:
            return
        kept = []
        for message in self.messages:
            if excess > 0 and message.thread_id == thread_id:
                excess -= 1
                continue
            kept.append(message)
        self.messages = kept

    def recent_messages(self, thread_id: str, limit: int) -> List[ChatMessageLog]:
        thread_messages = [m for m in self.messages if m.thread_id == thread_id]
        return thread_messages[-limit:] if limit > 0 else []

    def log_action(self, entry: ChatActionLog) -> None:
        with self._lock:
            entry.created_at = entry.created_at or _now_iso()
            self.actions.append(entry)
            self._save_to_disk()

    def actions_for(self, thread_id: str) -> List[ChatActionLog]:
        return [a for a in self.actions if a.thread_id == thread_id]
