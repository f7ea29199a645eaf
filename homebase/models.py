from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any


class ChatMessageRequest(BaseModel):
    user_id: str
    thread_id: str
    text: str = ""
    image_ref: Optional[str] = None  # data URL or https URL
    user_email: Optional[str] = None


class ChatResponse(BaseModel):
    text: str
    event_created: bool = False
    action: Optional[str] = None
    error_code: Optional[str] = None


class CalendarEventRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    event_id: str
    calendar_id: str = "primary"
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: str  # ISO datetime, local midnight for all-day events
    end_at: Optional[str] = None
    all_day: bool = False
    recurring_event_id: Optional[str] = None
    recurrence: List[str] = Field(default_factory=list)
    html_link: Optional[str] = None
    status: str = "active"
    updated_at: Optional[str] = None

    @property
    def recurring(self) -> bool:
        return bool(self.recurring_event_id or self.recurrence)


class TransactionRecord(BaseModel):
    id: str
    user_id: str
    merchant: str
    amount: float
    date: str
    category: Optional[str] = None
    source: str
    notes: Optional[str] = None
    created_at: Optional[str] = None


class MemoryRecord(BaseModel):
    id: str
    user_id: str
    content: str
    category: Optional[str] = None
    urls: List[str] = Field(default_factory=list)
    image_ref: Optional[str] = None
    created_at: Optional[str] = None


class ChatMessageLog(BaseModel):
    id: str
    thread_id: str
    user_id: str
    role: str  # "user" | "assistant"
    text: str
    image_ref: Optional[str] = None
    created_at: Optional[str] = None


class ChatActionLog(BaseModel):
    id: str
    thread_id: str
    user_id: str
    action_type: str
    status: str
    calendar_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
