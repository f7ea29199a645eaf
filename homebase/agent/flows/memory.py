from __future__ import annotations

from typing import Any, Dict, List, Optional

from ...models import ChatResponse
from ...utils import extract_urls, strip_urls
from ..constants import FlowKind, Intent, PendingAction
from ..formatters import format_memory
from ..schemas import Extraction, MemoryPayload
from ..turn import Turn
from .base import Flow, Preflight, Stage

IMAGE_MEMORY_PROMPT = ("An image is attached. Ask what the user wants to remember from the image. "
                       "Do not mention events.")
MEMORY_FALLBACK = "What should I remember?"


def missing_memory_fields(memory: Dict[str, Any]) -> List[str]:
  return [] if str(memory.get("content") or "").strip() else ["content"]


class MemoryFlow(Flow):
  kind = FlowKind.MEMORY.value
  intent = Intent.CREATE_MEMORY.value
  singular_label = "memory"
  plural_label = "memories"
  payload_key = "memory"
  clarify_action = PendingAction.CLARIFY_MEMORY_FIELDS.value
  confirm_action = PendingAction.CONFIRM_MEMORY.value
  error_missing_fields = ["content"]
  error_fallback = MEMORY_FALLBACK

  def preflight(self, turn: Turn) -> Optional[Preflight]:
    urls = extract_urls(turn.text)
    if turn.ctx.has_image and not turn.text.strip():
      return Preflight(action="execute",
                       payload={"content": "Saved image", "category": "image", "urls": urls})
    if urls and not strip_urls(turn.text):
      return Preflight(action="execute",
                       payload={"content": "Saved link", "category": "link", "urls": urls})
    return None

  def extract(self, turn: Turn, image_ref: Optional[str] = None) -> Extraction:
    return self.extractor.extract_memory(turn.text, context=turn.ctx.recent_context)

  def normalize(self, turn: Turn, payload: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = dict(payload)
    urls = extract_urls(turn.text)
    if urls:
      cleaned["urls"] = urls
    if cleaned.get("confidence") not in ("low", "medium", "high"):
      cleaned.pop("confidence", None)
    return MemoryPayload.model_validate(cleaned).model_dump(exclude_none=True)

  def missing_fields(self, payload: Dict[str, Any]) -> List[str]:
    return missing_memory_fields(payload)

  def missing_fallback(self, missing: List[str], payload: Dict[str, Any]) -> Optional[str]:
    return MEMORY_FALLBACK

  def correction_fallback(self, missing: List[str], payload: Dict[str, Any]) -> Optional[str]:
    return MEMORY_FALLBACK

  def confirm_prompt(self, payload: Dict[str, Any], stage: Stage = "initial") -> str:
    return f"Should I save this memory?\n\n{format_memory(payload)}"

  def execute(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self.actions.create_memory(turn, payload)

  def extra_prompt(self, turn: Turn, stage: Stage, payload: Dict[str, Any],
                   missing: List[str]) -> Optional[str]:
    if turn.ctx.has_image and "content" in missing:
      return IMAGE_MEMORY_PROMPT
    return None

  def pending_adjuster(self, turn: Turn, pending: Dict[str, Any], extracted: Dict[str, Any],
                       missing: List[str], stage: Stage) -> Dict[str, Any]:
    if turn.ctx.has_image and "content" in missing:
      return dict(pending, force_content=True, category="image")
    return pending
