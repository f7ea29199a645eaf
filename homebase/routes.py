from __future__ import annotations

import logging
import urllib.parse
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from .agent.dispatcher import DialogueDispatcher
from .agent.state import JsonThreadStore
from .config import (
    GCAL_SCOPES,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    HOMEBASE_DATA_FILE,
    HOMEBASE_THREADS_FILE,
)
from .gcal import (
    is_gcal_configured,
    load_gcal_token_for_user,
    new_oauth_state,
    pop_oauth_state,
    save_gcal_token_for_user,
    store_oauth_state,
)
from .models import ChatMessageRequest, ChatResponse
from .state import LocalStore
from .utils import _log_debug

router = APIRouter()
logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


@lru_cache(maxsize=1)
def get_dispatcher() -> DialogueDispatcher:
  store = LocalStore(HOMEBASE_DATA_FILE)
  threads = JsonThreadStore(HOMEBASE_THREADS_FILE)
  return DialogueDispatcher(store, threads)


def _resolve_google_redirect_uri(request: Request) -> str:
  if GOOGLE_REDIRECT_URI:
    return GOOGLE_REDIRECT_URI
  return str(request.url_for("google_callback"))


def _require_oauth_config(redirect_uri: Optional[str]) -> None:
  if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET and redirect_uri):
    raise HTTPException(
        status_code=500,
        detail=
        "Google OAuth environment variables (GOOGLE_CLIENT_ID/SECRET/REDIRECT_URI) are not configured.",
    )


# -------------------------
# Chat
# -------------------------
@router.post("/api/chat/messages", response_model=ChatResponse)
def post_chat_message(payload: ChatMessageRequest,
                      dispatcher: DialogueDispatcher = Depends(get_dispatcher)):
  if not payload.user_id.strip() or not payload.thread_id.strip():
    raise HTTPException(status_code=400, detail="user_id and thread_id are required.")
  return dispatcher.process(payload)


@router.get("/api/chat/threads/{thread_id}/state")
def get_thread_state(thread_id: str,
                     dispatcher: DialogueDispatcher = Depends(get_dispatcher)):
  if not thread_id.strip():
    raise HTTPException(status_code=400, detail="thread_id is required.")
  return dispatcher.threads.read(thread_id).model_dump(mode="json")


@router.post("/api/calendar/sync")
def sync_calendar(user_id: str = Query(...),
                  dispatcher: DialogueDispatcher = Depends(get_dispatcher)):
  if not user_id.strip():
    raise HTTPException(status_code=400, detail="user_id is required.")
  synced = dispatcher.actions.refresh_calendar_events(user_id)
  return {"ok": True, "synced": synced}


@router.get("/api/health")
def health() -> Dict[str, Any]:
  return {"ok": True, "gcal_configured": is_gcal_configured()}


# -------------------------
# Google OAuth endpoints
# -------------------------
@router.get("/auth/google/login")
def google_login(request: Request, user_id: str = Query(...)):
  _log_debug(f"[GCAL] login start user={user_id}")
  if not user_id.strip():
    raise HTTPException(status_code=400, detail="user_id is required.")
  redirect_uri = _resolve_google_redirect_uri(request)
  _require_oauth_config(redirect_uri)

  state_value = new_oauth_state()
  existing_token = load_gcal_token_for_user(user_id) or {}
  prompt = request.query_params.get("prompt")
  if not prompt and (request.query_params.get("force") == "1"
                     or not existing_token.get("refresh_token")):
    prompt = "consent"
  params = {
      "client_id": GOOGLE_CLIENT_ID,
      "redirect_uri": redirect_uri,
      "response_type": "code",
      "scope": " ".join(GCAL_SCOPES),
      "access_type": "offline",
      "state": state_value,
  }
  if prompt:
    params["prompt"] = prompt
  url = GOOGLE_AUTH_URL + "?" + urllib.parse.urlencode(params)
  store_oauth_state(state_value, user_id, redirect_uri)
  _log_debug(f"[GCAL] login redirect url={url}")
  return RedirectResponse(url)


@router.get("/auth/google/callback", name="google_callback")
def google_callback(request: Request):
  code = request.query_params.get("code")
  error = request.query_params.get("error")
  state = request.query_params.get("state")
  _log_debug(f"[GCAL] callback start error={error} state={state}")
  if error:
    return JSONResponse({"ok": False, "error": error})
  if not code:
    raise HTTPException(status_code=400, detail="Missing code.")

  oauth_entry = pop_oauth_state(state)
  if not oauth_entry:
    raise HTTPException(status_code=400, detail="State verification failed.")
  user_id = oauth_entry["user_id"]
  redirect_uri = oauth_entry.get("redirect_uri") or GOOGLE_REDIRECT_URI
  _require_oauth_config(redirect_uri)

  data = {
      "code": code,
      "client_id": GOOGLE_CLIENT_ID,
      "client_secret": GOOGLE_CLIENT_SECRET,
      "redirect_uri": redirect_uri,
      "grant_type": "authorization_code",
  }
  try:
    resp = requests.post(GOOGLE_TOKEN_URL, data=data, timeout=15)
  except requests.RequestException as exc:
    logger.exception("Token exchange request failed user_id=%s", user_id)
    raise HTTPException(status_code=502, detail=f"Token exchange failed: {exc}") from exc
  if not resp.ok:
    _log_debug(f"[GCAL] token exchange failed: {resp.status_code} {resp.text}")
    raise HTTPException(status_code=500,
                        detail=f"Token exchange failed: {resp.status_code} {resp.text}")

  token_json = resp.json()
  access_token = token_json.get("access_token")
  refresh_token = token_json.get("refresh_token")
  expires_in = token_json.get("expires_in")
  if not refresh_token:
    refresh_token = (load_gcal_token_for_user(user_id) or {}).get("refresh_token")
  if not access_token or not refresh_token:
    raise HTTPException(
        status_code=500,
        detail="access_token/refresh_token missing. Retry with /auth/google/login?force=1",
    )

  expiry_dt = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in or 0))
  save_gcal_token_for_user(user_id, {
      "token": access_token,
      "refresh_token": refresh_token,
      "token_uri": GOOGLE_TOKEN_URL,
      "client_id": GOOGLE_CLIENT_ID,
      "client_secret": GOOGLE_CLIENT_SECRET,
      "scopes": GCAL_SCOPES,
      "expiry": expiry_dt.isoformat().replace("+00:00", "Z"),
  })
  _log_debug(f"[GCAL] token exchange success user={user_id}")
  return JSONResponse({"ok": True, "user_id": user_id})
