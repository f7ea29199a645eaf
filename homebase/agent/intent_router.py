from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from ..config import TIMEZONE_NAME
from ..utils import now_local
from .constants import Intent
from .llm_provider import get_agent_llm_settings, run_structured_completion, run_text_completion
from .schemas import (
    IntentOutput,
    IntentResult,
    PendingDecision,
    PendingDecisionOutput,
    normalize_confidence,
)

INTENT_ROUTER_MODEL = os.getenv("AGENT_INTENT_MODEL", "gpt-5-nano").strip()
_SETTINGS = get_agent_llm_settings("INTENT")
_KNOWN_INTENTS = {intent.value for intent in Intent}
_MAX_COMPLETION_TOKENS = 2000
print(f"[INTENT_ROUTER] Loaded model: {INTENT_ROUTER_MODEL}, provider: {os.getenv('AGENT_LLM_PROVIDER', 'auto')}", flush=True)

INTENT_SYSTEM_PROMPT_TEMPLATE = """Intent classifier for a chat assistant that manages a household calendar, spending ledger and memories.
Return JSON only. No markdown.
Today is {today}. Timezone: {timezone}.
"""

INTENT_DEVELOPER_PROMPT = """Input: text, has_image, context.
Output: {"intent": "<one of the intents below>", "confidence": "low|medium|high"}

Intents:
- create_event: the user sends event details (title/date/time/location), including forwarded notices about rescheduled appointments.
- update_event: the user directly asks to change or move an existing event ("move my dentist to Friday").
- delete_event: cancel or delete an existing event.
- list_events: "what's coming up", "what's on the calendar", "when is my dentist appointment".
- create_transaction: a spend, charge, payment, receipt or statement. Always use it when the text explicitly says to add/log a transaction, even with an image.
- search_transaction: past spending ("how much did I spend", "when was the last time the kids got haircuts"). Never use search_memory for spending.
- create_memory: remember, save or note something that is not a transaction.
- search_memory: "do you remember", "what do we know about".
- digest: a daily or weekly summary.
- help: how to use the assistant.
- ambiguous: only when the goal is truly unclear.
If unsure between the concrete intents, default to create_event.
"""

IMAGE_INTENT_DEVELOPER_PROMPT = """Decide whether the attached image is a calendar event or a financial transaction.
Output: {"intent": "create_event" | "create_transaction" | "ambiguous", "confidence": "low|medium|high"}
Use "text" when it helps.
"""

PENDING_DECISION_DEVELOPER_PROMPT = """The assistant asked the user a question and is waiting for the answer.
Decide whether the new message answers that pending question or starts a different request.
Output: {"decision": "continue" | "new_intent", "intent": "<intent name or null>"}
- If the message directly answers the pending question, choose "continue".
- If it clearly starts a different task, choose "new_intent" and set intent to one of:
  create_event, update_event, delete_event, list_events, create_transaction, search_transaction, create_memory, search_memory, digest, help.
- If unsure, choose "continue".
"""

CLARIFY_INTENT_SYSTEM_PROMPT = """You help a user of an assistant that manages calendars, transactions and memories.
The user's message is unclear. Write one short, friendly clarification question (1-2 sentences).
Reference specific words from the message and offer 2-3 relevant options among:
add an event, update or delete an event, list upcoming events, log a transaction, save a memory.
Return only the question text.
"""

DEFAULT_CLARIFY_QUESTION = "Would you like to add an event, log a transaction, or save a memory?"
DEFAULT_FOLLOWUP_CLARIFY_QUESTION = (
    "I'm still not sure. Would you like to add an event, log a transaction, or save a memory?")


def _default_intent() -> IntentResult:
  return IntentResult(intent=Intent.CREATE_EVENT.value, confidence="low")


def _system_prompt() -> str:
  return INTENT_SYSTEM_PROMPT_TEMPLATE.format(today=now_local().date().isoformat(),
                                              timezone=TIMEZONE_NAME)


def _intent_result(parsed: Optional[IntentOutput]) -> IntentResult:
  if parsed is None:
    return _default_intent()
  intent = (parsed.intent or "").strip().lower()
  if intent not in _KNOWN_INTENTS:
    return _default_intent()
  return IntentResult(intent=intent, confidence=normalize_confidence(parsed.confidence))


class LLMIntentRouter:
  """Intent classification collaborator. Failures degrade to create_event/low."""

  def classify_intent(self, text: str, has_image: bool = False, context: str = "",
                      image_ref: Optional[str] = None) -> IntentResult:
    parsed, _, _ = run_structured_completion(
        model=INTENT_ROUTER_MODEL,
        system_prompt=_system_prompt(),
        developer_prompt=INTENT_DEVELOPER_PROMPT,
        user_payload={"text": text, "has_image": has_image, "context": context},
        response_model=IntentOutput,
        images=[image_ref] if image_ref else [],
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        max_completion_tokens=_MAX_COMPLETION_TOKENS,
    )
    return _intent_result(parsed)

  def classify_image_intent(self, text: str, image_ref: str, context: str = "") -> IntentResult:
    parsed, _, _ = run_structured_completion(
        model=INTENT_ROUTER_MODEL,
        system_prompt=_system_prompt(),
        developer_prompt=IMAGE_INTENT_DEVELOPER_PROMPT,
        user_payload={"text": text, "context": context},
        response_model=IntentOutput,
        images=[image_ref],
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        max_completion_tokens=_MAX_COMPLETION_TOKENS,
    )
    allowed = {Intent.CREATE_EVENT.value, Intent.CREATE_TRANSACTION.value}
    intent = (parsed.intent or "").strip().lower() if parsed else ""
    if intent not in allowed:
      return IntentResult(intent=Intent.AMBIGUOUS.value, confidence="low")
    return IntentResult(intent=intent, confidence=normalize_confidence(parsed.confidence))

  def decide_pending_action(self, pending_action: str, pending_payload: Dict[str, Any],
                            text: str, has_image: bool = False,
                            context: str = "") -> PendingDecision:
    summary = json.dumps(pending_payload, ensure_ascii=False, default=str)[:1500]
    parsed, _, _ = run_structured_completion(
        model=INTENT_ROUTER_MODEL,
        system_prompt=_system_prompt(),
        developer_prompt=PENDING_DECISION_DEVELOPER_PROMPT,
        user_payload={
            "pending_action": pending_action,
            "pending_payload": summary,
            "text": text,
            "has_image": has_image,
            "context": context,
        },
        response_model=PendingDecisionOutput,
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        max_completion_tokens=_MAX_COMPLETION_TOKENS,
    )
    if parsed is None:
      return PendingDecision()
    intent = (parsed.intent or "").strip().lower() or None
    if parsed.decision == "new_intent" and intent in _KNOWN_INTENTS:
      return PendingDecision(decision="new_intent", intent=intent)
    return PendingDecision()

  def generate_intent_clarification(self, text: str, has_image: bool = False,
                                    context: str = "", is_followup: bool = False) -> str:
    payload = {
        "text": text,
        "has_image": has_image,
        "context": context,
        "already_asked_once": is_followup,
    }
    question, _ = run_text_completion(
        model=INTENT_ROUTER_MODEL,
        system_prompt=CLARIFY_INTENT_SYSTEM_PROMPT,
        developer_prompt=None,
        user_payload=payload,
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        verbosity="low",
        max_completion_tokens=_MAX_COMPLETION_TOKENS,
    )
    if question:
      return question
    return DEFAULT_FOLLOWUP_CLARIFY_QUESTION if is_followup else DEFAULT_CLARIFY_QUESTION
