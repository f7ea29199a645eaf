from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import ChatResponse
from ..utils import _log_debug
from .flows.base import Flow, Stage
from .flows.registry import FlowRegistry
from .question_agent import LLMQuestionAgent
from .schemas import normalize_confidence
from .turn import Turn, respond


def merge_image(payload: Dict[str, Any], image_ref: Optional[str]) -> Dict[str, Any]:
  if not image_ref:
    return payload
  return dict(payload, image_ref=image_ref)


class FlowEngine:
  """Create/correction lifecycle shared by every creation flow.

  preflight -> extract -> multi-item pick -> missing fields -> confidence gate -> execute
  """

  def __init__(self, registry: FlowRegistry, questions: LLMQuestionAgent) -> None:
    self.registry = registry
    self.questions = questions

  def clarify(self, turn: Turn, intent: str, missing: List[str], extracted: Dict[str, Any],
              fallback: str, extra: Optional[str] = None) -> str:
    return self.questions.clarify_missing_details(
        intent=intent,
        missing_fields=missing,
        extracted=extracted,
        fallback=fallback,
        extra=extra,
        context=turn.ctx.recent_context,
    )

  def _multi_prompt(self, turn: Turn, flow: Flow, items: List[Dict[str, Any]],
                    image_ref: Optional[str]) -> ChatResponse:
    turn.set_pending(flow.multi_action, merge_image({flow.multi_payload_key: items}, image_ref))
    return respond(
        f"I found multiple {flow.plural_label}. Reply with the numbers to add (e.g., 1,2) "
        f"or say \"all\":\n{flow.multi_formatter(items)}")

  def _missing_prompt(self, turn: Turn, flow: Flow, payload: Dict[str, Any], missing: List[str],
                      fallback: str, stage: Stage, image_ref: Optional[str]) -> ChatResponse:
    pending: Dict[str, Any] = {flow.payload_key: payload}
    if missing:
      pending["missing_fields"] = list(missing)
    pending = flow.pending_adjuster(turn, pending, payload, missing, stage)
    turn.set_pending(flow.clarify_action, merge_image(pending, image_ref))
    question = self.clarify(turn, flow.intent, missing, payload, fallback,
                            extra=flow.extra_prompt(turn, stage, payload, missing))
    return respond(question)

  def _gate(self, turn: Turn, flow: Flow, payload: Dict[str, Any], stage: Stage,
            image_ref: Optional[str]) -> ChatResponse:
    confidence = normalize_confidence(payload.get("confidence"))
    if confidence != "high":
      turn.set_pending(flow.confirm_action, merge_image({flow.payload_key: payload}, image_ref))
      return respond(flow.confirm_prompt(payload, stage))
    turn.clear()
    return flow.execute(turn, payload)

  def handle_create(self, turn: Turn, kind: str, image_ref: Optional[str] = None) -> ChatResponse:
    flow = self.registry.fetch(kind)
    image_ref = image_ref or turn.ctx.image_ref

    preflight = flow.preflight(turn)
    if preflight is not None:
      if preflight.action == "execute":
        turn.clear()
        return flow.execute(turn, preflight.payload)
      if preflight.result is not None:
        return preflight.result

    extraction = flow.extract(turn, image_ref)
    if extraction.failure:
      return respond(extraction.failure)
    payload = extraction.data

    items = flow.multi_items(payload)
    if items and flow.multi_action:
      return self._multi_prompt(turn, flow, items, image_ref)

    if extraction.error:
      fallback = extraction.message or flow.error_fallback or ""
      return self._missing_prompt(turn, flow, payload, list(flow.error_missing_fields),
                                  fallback, "error", image_ref)

    payload = flow.normalize(turn, payload)
    missing = flow.missing_fields(payload)
    _log_debug(f"[FLOW] create kind={kind} missing={missing} confidence={payload.get('confidence')}")
    if missing:
      fallback = (flow.missing_fallback(missing, payload)
                  or f"I need {', '.join(missing)} to add this {flow.singular_label}.")
      return self._missing_prompt(turn, flow, payload, missing, fallback, "missing", image_ref)

    return self._gate(turn, flow, payload, "initial", image_ref)

  def handle_correction(self, turn: Turn, kind: str, payload: Dict[str, Any],
                        image_ref: Optional[str] = None) -> ChatResponse:
    flow = self.registry.fetch(kind)

    items = flow.multi_items(payload)
    if flow.allow_multi_on_correction and items and flow.multi_action:
      return self._multi_prompt(turn, flow, items, image_ref)

    payload = flow.normalize(turn, payload)
    missing = flow.missing_fields(payload)
    _log_debug(f"[FLOW] correction kind={kind} missing={missing}")
    if missing:
      fallback = (flow.correction_fallback(missing, payload)
                  or f"I still need {', '.join(missing)}.")
      return self._missing_prompt(turn, flow, payload, missing, fallback, "corrected", image_ref)

    return self._gate(turn, flow, payload, "corrected", image_ref)
