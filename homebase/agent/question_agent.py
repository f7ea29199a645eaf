from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from ..config import TIMEZONE_NAME
from ..utils import _log_debug, now_local
from .llm_provider import get_agent_llm_settings, run_text_completion

QUESTION_AGENT_MODEL = os.getenv("AGENT_QUESTION_MODEL", "gpt-5-nano").strip()
_SETTINGS = get_agent_llm_settings("QUESTION")
print(f"[QUESTION_AGENT] Loaded model: {QUESTION_AGENT_MODEL}, provider: {os.getenv('AGENT_LLM_PROVIDER', 'auto')}", flush=True)

QUESTION_SYSTEM_PROMPT_TEMPLATE = """You are a clarification question generator for a household assistant.
Today is {today} (Timezone: {timezone}).
Ask one concise, friendly question that gets the missing details.
Use natural, everyday language. Plain text only, no JSON, no markdown.
"""

QUESTION_DEVELOPER_PROMPT = """Available Data:
- intent: what the user is trying to do
- missing_fields: details still needed
- known_details: what was already understood
- extra: additional guidance to follow, if present
- context: recent conversation lines

Ask only for the missing fields. Do not repeat known details back at length.
"""


class LLMQuestionAgent:
  """Writes clarification questions; never fatal, falls back to the given text."""

  def clarify_missing_details(self,
                              intent: str,
                              missing_fields: List[str],
                              extracted: Dict[str, Any],
                              fallback: str,
                              extra: Optional[str] = None,
                              context: str = "") -> str:
    payload = {
        "intent": intent,
        "missing_fields": list(missing_fields),
        "known_details": extracted,
        "extra": extra or "",
        "context": context,
    }
    system_prompt = QUESTION_SYSTEM_PROMPT_TEMPLATE.format(
        today=now_local().date().isoformat(), timezone=TIMEZONE_NAME)
    text, llm_meta = run_text_completion(
        model=QUESTION_AGENT_MODEL,
        system_prompt=system_prompt,
        developer_prompt=QUESTION_DEVELOPER_PROMPT,
        user_payload=payload,
        reasoning_effort=_SETTINGS["reasoning_effort"],
        gemini_thinking_level=_SETTINGS["gemini_thinking_level"],
        verbosity="low",
        max_completion_tokens=2000,
    )
    if text:
      return text
    _log_debug(f"[QUESTION_AGENT] fallback used intent={intent} error={llm_meta.get('llm_error')}")
    return fallback
