from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import CONFIDENCE_LEVELS

Confidence = Literal["low", "medium", "high"]


def normalize_confidence(value: Any, default: str = "medium") -> str:
  """Unknown or missing confidence falls back to ``default``."""
  if isinstance(value, str) and value.strip().lower() in CONFIDENCE_LEVELS:
    return value.strip().lower()
  return default


# ---------------------------------------------------------------------------
#  Flow payloads (what a pending action stores under its payload key)
# ---------------------------------------------------------------------------

class EventPayload(BaseModel):
  model_config = ConfigDict(extra="ignore")

  title: Optional[str] = None
  date: Optional[str] = None  # YYYY-MM-DD
  start_time: Optional[str] = None  # HH:MM
  end_time: Optional[str] = None
  location: Optional[str] = None
  description: Optional[str] = None
  recurrence: Optional[Dict[str, Any]] = None
  confidence: Optional[Confidence] = None


class TransactionPayload(BaseModel):
  model_config = ConfigDict(extra="ignore")

  merchant: Optional[str] = None
  amount: Optional[float] = None
  date: Optional[str] = None
  category: Optional[str] = None
  source: Optional[str] = None
  notes: Optional[str] = None
  confidence: Optional[Confidence] = None


class MemoryPayload(BaseModel):
  model_config = ConfigDict(extra="ignore")

  content: Optional[str] = None
  category: Optional[str] = None
  urls: List[str] = Field(default_factory=list)
  confidence: Optional[Confidence] = None


class Extraction(BaseModel):
  """Result of one extractor call.

  ``failure`` carries a user-facing text when the extractor could not be
  reached or returned nothing usable; ``error``/``message`` mirror the
  model's own "I could not find it" answer.
  """
  data: Dict[str, Any] = Field(default_factory=dict)
  error: bool = False
  message: Optional[str] = None
  failure: Optional[str] = None


# ---------------------------------------------------------------------------
#  Extractor LLM outputs (loose: the flows clean them up)
# ---------------------------------------------------------------------------

class EventItemOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  title: Optional[str] = None
  date: Optional[str] = None
  start_time: Optional[str] = None
  end_time: Optional[str] = None
  location: Optional[str] = None
  description: Optional[str] = None
  recurrence: Optional[Any] = None
  confidence: Optional[str] = None


class EventExtractionOutput(EventItemOutput):
  events: Optional[List[EventItemOutput]] = None
  error: Optional[Any] = None
  message: Optional[str] = None


class TransactionItemOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  merchant: Optional[str] = None
  amount: Optional[Any] = None
  date: Optional[str] = None
  category: Optional[str] = None
  source: Optional[str] = None
  notes: Optional[str] = None
  confidence: Optional[str] = None


class TransactionExtractionOutput(TransactionItemOutput):
  transactions: Optional[List[TransactionItemOutput]] = None
  error: Optional[Any] = None
  message: Optional[str] = None


class MemoryExtractionOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  content: Optional[str] = None
  category: Optional[str] = None
  urls: Optional[List[str]] = None
  confidence: Optional[str] = None
  error: Optional[Any] = None
  message: Optional[str] = None


class EventQueryOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  title: Optional[str] = None
  date: Optional[str] = None
  start_time: Optional[str] = None
  error: Optional[Any] = None
  message: Optional[str] = None


class EventChangesOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  title: Optional[str] = None
  date: Optional[str] = None
  start_time: Optional[str] = None
  end_time: Optional[str] = None
  location: Optional[str] = None
  description: Optional[str] = None
  recurrence: Optional[Any] = None
  duration_minutes: Optional[int] = None
  recurrence_clear: Optional[bool] = None
  recurring_scope: Optional[str] = None


class EventUpdateOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  target: Optional[EventQueryOutput] = None
  changes: Optional[EventChangesOutput] = None
  confidence: Optional[str] = None
  error: Optional[Any] = None
  message: Optional[str] = None


class RecurringScopeOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  recurring_scope: str = "unspecified"
  recurrence_clear: bool = False


class TransactionQueryOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  merchant: Optional[str] = None
  category: Optional[str] = None
  start_date: Optional[str] = None
  end_date: Optional[str] = None
  min_amount: Optional[Any] = None
  max_amount: Optional[Any] = None
  limit: Optional[int] = None


class MemoryQueryOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  query: Optional[str] = None


# ---------------------------------------------------------------------------
#  Intent router outputs
# ---------------------------------------------------------------------------

class IntentOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  intent: str = "create_event"
  confidence: Optional[str] = None


class PendingDecisionOutput(BaseModel):
  model_config = ConfigDict(extra="ignore")

  decision: Literal["continue", "new_intent"] = "continue"
  intent: Optional[str] = None


class IntentResult(BaseModel):
  intent: str
  confidence: str = "medium"


class PendingDecision(BaseModel):
  decision: str = "continue"
  intent: Optional[str] = None
