from __future__ import annotations

import logging

from fastapi import FastAPI

from .config import ENABLE_GCAL, GOOGLE_REDIRECT_URI, LLM_DEBUG, OPENAI_API_KEY
from .routes import router

logging.basicConfig(level=logging.DEBUG if LLM_DEBUG else logging.INFO)

print("OPENAI_API_KEY:", bool(OPENAI_API_KEY), flush=True)
print("ENABLE_GCAL:", ENABLE_GCAL, flush=True)
print("GOOGLE_REDIRECT_URI:", GOOGLE_REDIRECT_URI, flush=True)

app = FastAPI(title="homebase")
app.include_router(router)
