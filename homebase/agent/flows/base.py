from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from ...models import ChatResponse
from ..actions import CalendarActions
from ..extractor import LLMExtractor
from ..schemas import Extraction
from ..turn import Turn

Stage = Literal["initial", "corrected", "error", "missing"]


class Preflight(BaseModel):
  """Shortcut a flow can take before extraction."""
  action: Literal["execute", "return"]
  payload: Dict[str, Any] = {}
  result: Optional[ChatResponse] = None


class Flow:
  """Contract shared by the event, transaction and memory creation flows."""

  kind = ""
  intent = ""
  singular_label = ""
  plural_label = ""
  payload_key = ""
  clarify_action = ""
  confirm_action = ""
  multi_action: Optional[str] = None
  multi_payload_key: Optional[str] = None
  allow_multi_on_correction = False
  error_missing_fields: List[str] = []
  error_fallback: Optional[str] = None

  def __init__(self, extractor: LLMExtractor, actions: CalendarActions) -> None:
    self.extractor = extractor
    self.actions = actions

  def preflight(self, turn: Turn) -> Optional[Preflight]:
    return None

  def extract(self, turn: Turn, image_ref: Optional[str] = None) -> Extraction:
    raise NotImplementedError

  def normalize(self, turn: Turn, payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload

  def missing_fields(self, payload: Dict[str, Any]) -> List[str]:
    return []

  def missing_fallback(self, missing: List[str], payload: Dict[str, Any]) -> Optional[str]:
    return None

  def correction_fallback(self, missing: List[str], payload: Dict[str, Any]) -> Optional[str]:
    return None

  def confirm_prompt(self, payload: Dict[str, Any], stage: Stage = "initial") -> str:
    raise NotImplementedError

  def execute(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    raise NotImplementedError

  def multi_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    return []

  def multi_formatter(self, items: List[Dict[str, Any]]) -> str:
    return ""

  def extra_prompt(self, turn: Turn, stage: Stage, payload: Dict[str, Any],
                   missing: List[str]) -> Optional[str]:
    return None

  def pending_adjuster(self, turn: Turn, pending: Dict[str, Any], extracted: Dict[str, Any],
                       missing: List[str], stage: Stage) -> Dict[str, Any]:
    return pending


def extracted_items(payload: Any, key: str) -> List[Dict[str, Any]]:
  """Dict items of ``payload[key]`` (or of ``payload`` itself when it is a list)."""
  if isinstance(payload, list):
    return [item for item in payload if isinstance(item, dict)]
  if isinstance(payload, dict) and isinstance(payload.get(key), list):
    return [item for item in payload[key] if isinstance(item, dict)]
  return []
