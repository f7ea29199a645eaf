from __future__ import annotations

import base64
import json
import os
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

import requests
from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel, ValidationError

from ..llm import get_client

T = TypeVar("T", bound=BaseModel)

_gemini_client: Any = None
_gemini_api_key_cached: str = ""
_GEMINI_DEFAULT_THINKING_LEVEL = "MINIMAL"
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)
_IMAGE_FETCH_TIMEOUT_SECONDS = 15


def _is_llm_debug_enabled() -> bool:
  return os.getenv("LLM_DEBUG", "0").strip() == "1"


def _get_openai_reasoning_effort() -> str:
  return os.getenv("OPENAI_REASONING_EFFORT", "low").strip() or "low"


def _get_openai_verbosity() -> str:
  return os.getenv("OPENAI_VERBOSITY", "low").strip() or "low"


def _print_raw_output(*,
                      kind: str,
                      provider: str,
                      model: str,
                      raw_output: str,
                      image_count: int = 0) -> None:
  if not _is_llm_debug_enabled():
    return
  print(f"[AGENT LLM RAW] kind={kind} provider={provider} model={model} images={image_count}",
        flush=True)
  print(raw_output if raw_output else "(empty)", flush=True)
  print("[AGENT LLM RAW END]", flush=True)


def _extract_message_text(content: Any) -> str:
  if isinstance(content, str):
    return content.strip()
  if isinstance(content, list):
    chunks = []
    for item in content:
      if isinstance(item, dict):
        text_val = item.get("text")
        if isinstance(text_val, str) and text_val.strip():
          chunks.append(text_val.strip())
      elif isinstance(item, str) and item.strip():
        chunks.append(item.strip())
    return " ".join(chunks).strip()
  return ""


def _provider_for_model(model: str) -> str:
  provider = os.getenv("AGENT_LLM_PROVIDER", "auto").strip().lower()
  if provider in ("openai", "gemini"):
    return provider
  model_name = str(model or "").strip().lower()
  if model_name.startswith("gemini") or model_name.startswith("models/gemini"):
    return "gemini"
  return "openai"


def _canonical_gemini_model(model: str) -> str:
  model_name = str(model or "").strip()
  if not model_name:
    return "models/gemini-flash-latest"
  if model_name.startswith("models/"):
    return model_name
  return f"models/{model_name}"


def get_agent_llm_settings(prefix: str) -> Dict[str, Optional[str]]:
  """Per-agent reasoning overrides, e.g. AGENT_EXTRACT_REASONING_EFFORT."""
  prefix = prefix.upper().strip()
  return {
      "reasoning_effort": os.getenv(f"AGENT_{prefix}_REASONING_EFFORT"),
      "gemini_thinking_level": os.getenv(f"AGENT_{prefix}_THINKING_LEVEL"),
  }


def _gemini_text_from_response(response: Any) -> str:
  text = getattr(response, "text", None)
  if isinstance(text, str) and text.strip():
    return text.strip()
  candidates = getattr(response, "candidates", None)
  if not isinstance(candidates, list):
    return ""
  chunks = []
  for candidate in candidates:
    content = getattr(candidate, "content", None)
    parts = getattr(content, "parts", None) if content is not None else None
    if not isinstance(parts, list):
      continue
    for part in parts:
      text_val = getattr(part, "text", None)
      if isinstance(text_val, str) and text_val.strip():
        chunks.append(text_val.strip())
  return " ".join(chunks).strip()


def _gemini_client_or_reason() -> Tuple[Any, Optional[str]]:
  global _gemini_client, _gemini_api_key_cached
  gemini_api_key = os.getenv("GEMINI_API_KEY", "").strip()
  if not gemini_api_key:
    return None, "gemini_api_key_missing"
  if _gemini_client is None or _gemini_api_key_cached != gemini_api_key:
    _gemini_client = genai.Client(api_key=gemini_api_key)
    _gemini_api_key_cached = gemini_api_key
  return _gemini_client, None


def _compose_prompt(system_prompt: str,
                    user_content: str,
                    developer_prompt: Optional[str]) -> str:
  instruction = system_prompt
  if isinstance(developer_prompt, str) and developer_prompt.strip():
    instruction = f"{instruction}\n\n{developer_prompt.strip()}"
  return f"{instruction}\n\nUser:\n{user_content}"


def _clean_json_text(text: str) -> str:
  cleaned = (text or "").strip()
  if cleaned.startswith("```"):
    cleaned = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", cleaned).strip()
    cleaned = re.sub(r"\s*```$", "", cleaned).strip()
  return cleaned


def _validate_structured_response(response_model: Type[T],
                                  raw_output: str) -> Optional[T]:
  """Parse model output leniently: raw text, fenced text, the outermost
  ``{...}`` slice, then the first object of a top-level array."""
  if not raw_output:
    return None
  candidates = [raw_output, _clean_json_text(raw_output)]
  cleaned = candidates[-1]
  if cleaned:
    left = cleaned.find("{")
    right = cleaned.rfind("}")
    if left != -1 and right != -1 and right > left:
      candidates.append(cleaned[left:right + 1])
    if cleaned.startswith("["):
      try:
        arr = json.loads(cleaned)
      except ValueError:
        arr = None
      if isinstance(arr, list) and arr and isinstance(arr[0], dict):
        candidates.append(json.dumps(arr[0], ensure_ascii=False))
  seen = set()
  for candidate in candidates:
    text = (candidate or "").strip()
    if not text or text in seen:
      continue
    seen.add(text)
    try:
      return response_model.model_validate_json(text)
    except ValidationError:
      continue
  return None


def _gemini_thinking_level(override_level: Optional[str] = None) -> Optional[str]:
  raw = override_level
  if raw is None:
    raw = os.getenv("GEMINI_THINKING_LEVEL", _GEMINI_DEFAULT_THINKING_LEVEL)
  value = str(raw or "").strip().upper()
  if value in ("NONE", "MINIMAL", "LOW", "MEDIUM", "HIGH"):
    return value
  return None


def _build_gemini_config(max_completion_tokens: int,
                         structured: bool,
                         gemini_thinking_level: Optional[str] = None) -> Any:
  config: Dict[str, Any] = {}
  if structured:
    config["response_mime_type"] = "application/json"
  if isinstance(max_completion_tokens, int) and max_completion_tokens > 0:
    config["max_output_tokens"] = max_completion_tokens
  level = _gemini_thinking_level(override_level=gemini_thinking_level)
  if level:
    config["thinking_config"] = {"thinking_level": level}
  return genai_types.GenerateContentConfig(**config)


def _image_bytes(image_ref: str) -> Tuple[bytes, str]:
  match = _DATA_URL_RE.match(image_ref.strip())
  if match:
    return base64.b64decode(match.group("data")), match.group("mime")
  resp = requests.get(image_ref, timeout=_IMAGE_FETCH_TIMEOUT_SECONDS)
  resp.raise_for_status()
  mime = (resp.headers.get("Content-Type") or "image/jpeg").split(";")[0].strip()
  return resp.content, mime


def _gemini_contents(prompt: str, images: Sequence[str]) -> Any:
  if not images:
    return prompt
  contents: List[Any] = [prompt]
  for image_ref in images:
    data, mime = _image_bytes(image_ref)
    contents.append(genai_types.Part.from_bytes(data=data, mime_type=mime))
  return contents


def _gemini_generate(client: Any,
                     model: str,
                     prompt: str,
                     images: Sequence[str],
                     max_completion_tokens: int,
                     structured: bool,
                     gemini_thinking_level: Optional[str]) -> str:
  response = client.models.generate_content(
      model=_canonical_gemini_model(model),
      contents=_gemini_contents(prompt, images),
      config=_build_gemini_config(max_completion_tokens, structured,
                                  gemini_thinking_level),
  )
  return _gemini_text_from_response(response)


def _compose_openai_messages(system_prompt: str,
                             developer_prompt: Optional[str],
                             user_content: str,
                             images: Sequence[str],
                             structured: bool) -> List[Dict[str, Any]]:
  instruction = system_prompt
  if isinstance(developer_prompt, str) and developer_prompt.strip():
    instruction = f"{instruction}\n\n{developer_prompt.strip()}"

  # JSON mode requires the word "json" somewhere in the system prompt.
  if structured and "json" not in instruction.lower():
    instruction += "\n\nResponse must be a valid JSON object."

  content: Any = user_content
  if images:
    content = [{"type": "text", "text": user_content}]
    content.extend({"type": "image_url", "image_url": {"url": ref}} for ref in images)
  return [
      {"role": "system", "content": instruction},
      {"role": "user", "content": content},
  ]


def _complete(*,
              model: str,
              system_prompt: str,
              developer_prompt: Optional[str],
              user_payload: Dict[str, Any],
              images: Sequence[str],
              structured: bool,
              max_completion_tokens: int,
              reasoning_effort: Optional[str],
              verbosity: Optional[str],
              gemini_thinking_level: Optional[str]) -> Tuple[str, Dict[str, Any]]:
  if reasoning_effort is None:
    reasoning_effort = _get_openai_reasoning_effort()
  if verbosity is None:
    verbosity = _get_openai_verbosity()
  provider = _provider_for_model(model)
  user_content = json.dumps(user_payload, ensure_ascii=False, default=str)
  meta: Dict[str, Any] = {"model": model, "provider": provider}

  if provider == "gemini":
    client, unavailable_reason = _gemini_client_or_reason()
    if client is None:
      meta.update({"llm_available": False, "unavailable_reason": unavailable_reason})
      return "", meta
    prompt = _compose_prompt(system_prompt, user_content, developer_prompt)
    try:
      raw_output = _gemini_generate(client, model, prompt, images,
                                    max_completion_tokens, structured,
                                    gemini_thinking_level)
    except Exception as exc:  # SDK and image fetch errors
      print(f"[AGENT LLM ERROR] model={model} provider={provider} error={exc}", flush=True)
      meta.update({"llm_available": True, "llm_output_empty_or_error": True,
                   "llm_error": str(exc)})
      return "", meta
    meta.update({"llm_available": True, "thinking_level": gemini_thinking_level})
    return raw_output, meta

  try:
    client = get_client()
  except RuntimeError:
    meta.update({"llm_available": False, "unavailable_reason": "openai_api_key_missing"})
    return "", meta

  messages = _compose_openai_messages(system_prompt, developer_prompt,
                                      user_content, images, structured)
  kwargs: Dict[str, Any] = {
      "model": model,
      "messages": messages,
      "reasoning_effort": reasoning_effort,
      "verbosity": verbosity,
      "max_completion_tokens": max_completion_tokens,
  }
  if structured:
    kwargs["response_format"] = {"type": "json_object"}
  try:
    completion = client.chat.completions.create(**kwargs)
  except Exception as exc:  # openai SDK errors
    print(f"[AGENT LLM ERROR] model={model} provider={provider} error={exc}", flush=True)
    meta.update({"llm_available": True, "llm_output_empty_or_error": True,
                 "llm_error": str(exc), "reasoning_effort": reasoning_effort})
    return "", meta
  meta.update({"llm_available": True, "reasoning_effort": reasoning_effort})
  return _extract_message_text(completion.choices[0].message.content), meta


def run_structured_completion(
    *,
    model: str,
    system_prompt: str,
    developer_prompt: Optional[str],
    user_payload: Dict[str, Any],
    response_model: Type[T],
    max_completion_tokens: int,
    images: Sequence[str] = (),
    reasoning_effort: Optional[str] = None,
    verbosity: Optional[str] = None,
    gemini_thinking_level: Optional[str] = None,
) -> Tuple[Optional[T], str, Dict[str, Any]]:
  raw_output, meta = _complete(
      model=model,
      system_prompt=system_prompt,
      developer_prompt=developer_prompt,
      user_payload=user_payload,
      images=images,
      structured=True,
      max_completion_tokens=max_completion_tokens,
      reasoning_effort=reasoning_effort,
      verbosity=verbosity,
      gemini_thinking_level=gemini_thinking_level,
  )
  _print_raw_output(kind="structured", provider=meta["provider"], model=model,
                    raw_output=raw_output, image_count=len(images))
  parsed = _validate_structured_response(response_model, raw_output)
  if parsed is None and raw_output:
    meta["llm_output_empty_or_error"] = True
  return parsed, raw_output, meta


def run_text_completion(
    *,
    model: str,
    system_prompt: str,
    developer_prompt: Optional[str],
    user_payload: Dict[str, Any],
    max_completion_tokens: int,
    reasoning_effort: Optional[str] = None,
    verbosity: Optional[str] = None,
    gemini_thinking_level: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
  text, meta = _complete(
      model=model,
      system_prompt=system_prompt,
      developer_prompt=developer_prompt,
      user_payload=user_payload,
      images=(),
      structured=False,
      max_completion_tokens=max_completion_tokens,
      reasoning_effort=reasoning_effort,
      verbosity=verbosity,
      gemini_thinking_level=gemini_thinking_level,
  )
  _print_raw_output(kind="text", provider=meta["provider"], model=model, raw_output=text)
  return text, meta
