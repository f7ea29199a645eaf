from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Union

from ..config import RECENT_CONTEXT_MESSAGES
from ..gcal import GoogleCalendarClient
from ..models import ChatMessageLog, ChatMessageRequest, ChatResponse
from ..state import LocalStore
from ..utils import _log_debug, is_affirmative, is_negative, new_id, now_local
from .actions import CalendarActions
from .constants import DIRECT_REPLY_ACTIONS, ActionType, Intent, PendingAction, Status
from .extractor import LLMExtractor
from .flow_engine import FlowEngine
from .flows.event_mutation import scope_from_text
from .flows.registry import FlowRegistry
from .formatters import format_context
from .handlers import DialogueHandlers
from .idempotency import IdempotencyGuard
from .intent_router import LLMIntentRouter
from .question_agent import LLMQuestionAgent
from .resolve_event_target import EventCandidateResolver
from .selection import is_selection_reply
from .state import InMemoryThreadStore, JsonThreadStore, ThreadLocks
from .turn import ConversationContext, Turn, respond

logger = logging.getLogger(__name__)

ThreadStore = Union[InMemoryThreadStore, JsonThreadStore]
PendingHandler = Callable[[Turn, Dict[str, Any]], ChatResponse]

GENERIC_ERROR_TEXT = "Sorry, something went wrong. Let's start over."


class DialogueDispatcher:
  """Entry point for one inbound chat message.

  Decides whether the message continues the thread's pending action or starts
  a new intent, runs the matching handler and persists the resulting thread
  state. Turns of the same thread never overlap.
  """

  def __init__(self,
               store: LocalStore,
               threads: ThreadStore,
               extractor: Optional[LLMExtractor] = None,
               intents: Optional[LLMIntentRouter] = None,
               questions: Optional[LLMQuestionAgent] = None,
               calendar_factory: Callable[[str], GoogleCalendarClient] = GoogleCalendarClient,
               guard: Optional[IdempotencyGuard] = None,
               resolver: Optional[EventCandidateResolver] = None,
               actions: Optional[CalendarActions] = None) -> None:
    self.store = store
    self.threads = threads
    self.extractor = extractor or LLMExtractor()
    self.intents = intents or LLMIntentRouter()
    self.questions = questions or LLMQuestionAgent()
    self.guard = guard or IdempotencyGuard()
    self.resolver = resolver or EventCandidateResolver(store)
    self.actions = actions or CalendarActions(store, self.guard, calendar_factory=calendar_factory)
    self.registry = FlowRegistry(self.extractor, self.actions, self.resolver, self.questions)
    self.engine = FlowEngine(self.registry, self.questions)
    self.handlers = DialogueHandlers(self.engine, self.registry, self.extractor, self.intents,
                                     self.actions, self.resolver)
    self.locks = ThreadLocks()
    self._pending_handlers = self._build_pending_handlers()

  def _build_pending_handlers(self) -> Dict[str, PendingHandler]:
    h = self.handlers
    updates = self.registry.updates
    deletes = self.registry.deletes
    return {
        PendingAction.CLARIFY_INTENT.value: h.handle_clarified_intent,
        PendingAction.CLARIFY_IMAGE_INTENT.value: h.handle_clarified_intent,
        PendingAction.CLARIFY_EVENT_FIELDS.value: h.handle_event_correction,
        PendingAction.CONFIRM_EVENT.value: h.handle_event_confirmation,
        PendingAction.SELECT_EVENT_FROM_EXTRACTION.value: h.handle_event_extraction_selection,
        PendingAction.CLARIFY_UPDATE_CHANGES.value: updates.handle_changes_clarification,
        PendingAction.CLARIFY_UPDATE_TARGET.value: updates.handle_target_clarification,
        PendingAction.SELECT_EVENT_FOR_UPDATE.value: updates.handle_selection,
        PendingAction.CONFIRM_UPDATE.value: updates.handle_confirmation,
        PendingAction.CLARIFY_DELETE_TARGET.value: deletes.handle_target_clarification,
        PendingAction.SELECT_EVENT_FOR_DELETE.value: deletes.handle_selection,
        PendingAction.CONFIRM_DELETE.value: deletes.handle_confirmation,
        PendingAction.CLARIFY_RECURRING_SCOPE.value: h.handle_recurring_scope,
        PendingAction.CLARIFY_LIST_QUERY.value: h.handle_list_query_clarification,
        PendingAction.CLARIFY_TRANSACTION_FIELDS.value: h.handle_transaction_correction,
        PendingAction.CONFIRM_TRANSACTION.value: h.handle_transaction_confirmation,
        PendingAction.SELECT_TRANSACTION_FROM_EXTRACTION.value:
            h.handle_transaction_extraction_selection,
        PendingAction.CLARIFY_MEMORY_FIELDS.value: h.handle_memory_correction,
        PendingAction.CONFIRM_MEMORY.value: h.handle_memory_confirmation,
    }

  # -------------------------
  # entry point
  # -------------------------
  def process(self, request: ChatMessageRequest) -> ChatResponse:
    with self.locks.for_thread(request.thread_id):
      return self._process_locked(request)

  def _context(self, request: ChatMessageRequest) -> ConversationContext:
    recent = self.store.recent_messages(request.thread_id, RECENT_CONTEXT_MESSAGES)
    return ConversationContext(
        user_id=request.user_id,
        thread_id=request.thread_id,
        text=(request.text or "").strip(),
        image_ref=request.image_ref or None,
        user_email=request.user_email,
        correlation_id=new_id(),
        now=now_local(),
        recent_context=format_context(recent),
    )

  def _log_message(self, ctx: ConversationContext, role: str, text: str,
                   image_ref: Optional[str] = None) -> None:
    self.store.add_message(ChatMessageLog(id=new_id(), thread_id=ctx.thread_id,
                                          user_id=ctx.user_id, role=role, text=text,
                                          image_ref=image_ref))

  def _process_locked(self, request: ChatMessageRequest) -> ChatResponse:
    ctx = self._context(request)
    state = self.threads.read(ctx.thread_id)
    turn = Turn(ctx, state, self.store)
    self._log_message(ctx, "user", ctx.text, image_ref=ctx.image_ref)
    _log_debug(f"[DISPATCH] thread={ctx.thread_id} correlation={ctx.correlation_id} "
               f"pending={state.pending_action}")

    try:
      response = self.route(turn)
    except Exception as exc:
      logger.exception("Chat turn failed thread_id=%s correlation_id=%s",
                       ctx.thread_id, ctx.correlation_id)
      turn.log_action(ActionType.CHAT_ERROR, Status.ERROR,
                      metadata={"error": str(exc),
                                "error_class": type(exc).__name__,
                                "pending_action": turn.pending_action,
                                "payload": state.payload})
      turn.clear()
      response = respond(GENERIC_ERROR_TEXT)

    self.threads.write(ctx.thread_id, turn.state)
    self._log_message(ctx, "assistant", response.text)
    return response

  # -------------------------
  # routing
  # -------------------------
  def route(self, turn: Turn) -> ChatResponse:
    pending = turn.pending_action
    if pending:
      return self.handle_pending_action(turn, pending)
    return self.handle_new_message(turn)

  def _is_direct_reply(self, turn: Turn, pending: str) -> bool:
    if pending not in {action.value for action in DIRECT_REPLY_ACTIONS}:
      return False
    if is_affirmative(turn.text) or is_negative(turn.text):
      return True
    if pending == PendingAction.CLARIFY_RECURRING_SCOPE.value and scope_from_text(turn.text):
      return True
    candidates = turn.state.payload.get("candidates") or turn.state.payload.get("events") \
        or turn.state.payload.get("transactions") or []
    return is_selection_reply(turn.text, len(candidates) if isinstance(candidates, list) else 0)

  def handle_pending_action(self, turn: Turn, pending: str) -> ChatResponse:
    handler = self._pending_handlers.get(pending)
    if handler is None:
      logger.warning("Unknown pending action %s on thread %s; starting over",
                     pending, turn.ctx.thread_id)
      turn.clear()
      return self.handle_new_message(turn)

    if not self._is_direct_reply(turn, pending):
      decision = self.intents.decide_pending_action(pending, turn.state.payload, turn.text,
                                                    has_image=turn.ctx.has_image,
                                                    context=turn.ctx.recent_context)
      if decision.decision == "new_intent" and decision.intent:
        _log_debug(f"[DISPATCH] thread={turn.ctx.thread_id} leaves {pending} for {decision.intent}")
        turn.clear()
        return self.route_new_intent(turn, decision.intent)

    return handler(turn, dict(turn.state.payload))

  def handle_new_message(self, turn: Turn) -> ChatResponse:
    ctx = turn.ctx
    if ctx.has_image and not ctx.text:
      result = self.intents.classify_image_intent(ctx.text, ctx.image_ref,
                                                  context=ctx.recent_context)
      if result.intent == Intent.AMBIGUOUS.value:
        turn.set_pending(PendingAction.CLARIFY_IMAGE_INTENT, {"image_ref": ctx.image_ref})
        return respond(self.intents.generate_intent_clarification(
            ctx.text, has_image=True, context=ctx.recent_context))
      return self.handlers.route_intent(turn, result.intent, image_ref=ctx.image_ref)

    if not ctx.text and not ctx.has_image:
      return respond("Send event details and I’ll add it to your calendar.")

    result = self.intents.classify_intent(ctx.text, has_image=ctx.has_image,
                                          context=ctx.recent_context, image_ref=ctx.image_ref)
    return self.route_new_intent(turn, result.intent)

  def route_new_intent(self, turn: Turn, intent: str) -> ChatResponse:
    ctx = turn.ctx
    if intent == Intent.AMBIGUOUS.value:
      payload = {"image_ref": ctx.image_ref} if ctx.image_ref else {}
      turn.set_pending(PendingAction.CLARIFY_INTENT, payload)
      return respond(self.intents.generate_intent_clarification(
          ctx.text, has_image=ctx.has_image, context=ctx.recent_context))
    return self.handlers.route_intent(turn, intent, image_ref=ctx.image_ref)
