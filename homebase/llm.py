from __future__ import annotations

from typing import Optional

from openai import OpenAI

from .config import OPENAI_API_KEY

client: Optional[OpenAI] = OpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None


def get_client() -> OpenAI:
  if client is None:
    raise RuntimeError("OPENAI_API_KEY is not set")
  return client
