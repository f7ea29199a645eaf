from __future__ import annotations

from enum import Enum


class PendingAction(str, Enum):
  CLARIFY_IMAGE_INTENT = "clarify_image_intent"
  CLARIFY_INTENT = "clarify_intent"
  CLARIFY_EVENT_FIELDS = "clarify_event_fields"
  CONFIRM_EVENT = "confirm_event"
  SELECT_EVENT_FROM_EXTRACTION = "select_event_from_extraction"
  CLARIFY_UPDATE_CHANGES = "clarify_update_changes"
  CLARIFY_UPDATE_TARGET = "clarify_update_target"
  SELECT_EVENT_FOR_UPDATE = "select_event_for_update"
  CONFIRM_UPDATE = "confirm_update"
  CLARIFY_DELETE_TARGET = "clarify_delete_target"
  SELECT_EVENT_FOR_DELETE = "select_event_for_delete"
  CONFIRM_DELETE = "confirm_delete"
  CLARIFY_RECURRING_SCOPE = "clarify_recurring_scope"
  CLARIFY_LIST_QUERY = "clarify_list_query"
  CLARIFY_TRANSACTION_FIELDS = "clarify_transaction_fields"
  CONFIRM_TRANSACTION = "confirm_transaction"
  SELECT_TRANSACTION_FROM_EXTRACTION = "select_transaction_from_extraction"
  CLARIFY_MEMORY_FIELDS = "clarify_memory_fields"
  CONFIRM_MEMORY = "confirm_memory"


# Replies to these states are answered without asking the model whether the
# user switched topics.
DIRECT_REPLY_ACTIONS = {
    PendingAction.CONFIRM_EVENT,
    PendingAction.CONFIRM_UPDATE,
    PendingAction.CONFIRM_DELETE,
    PendingAction.CONFIRM_TRANSACTION,
    PendingAction.CONFIRM_MEMORY,
    PendingAction.SELECT_EVENT_FROM_EXTRACTION,
    PendingAction.SELECT_EVENT_FOR_UPDATE,
    PendingAction.SELECT_EVENT_FOR_DELETE,
    PendingAction.SELECT_TRANSACTION_FROM_EXTRACTION,
    PendingAction.CLARIFY_RECURRING_SCOPE,
}


class ActionType(str, Enum):
  CREATE_CALENDAR_EVENT = "create_calendar_event"
  UPDATE_CALENDAR_EVENT = "update_calendar_event"
  DELETE_CALENDAR_EVENT = "delete_calendar_event"
  SELECT_CALENDAR_EVENT = "select_calendar_event"
  LIST_EVENTS = "list_events"
  CREATE_TRANSACTION = "create_transaction"
  CREATE_MEMORY = "create_memory"
  CHAT_ERROR = "chat_error"


class Status(str, Enum):
  SUCCESS = "success"
  ERROR = "error"
  DUPLICATE = "duplicate"


class RecordStatus(str, Enum):
  ACTIVE = "active"
  CANCELLED = "cancelled"


class RecurringScope(str, Enum):
  INSTANCE = "instance"
  SERIES = "series"


class ErrorCode(str, Enum):
  EVENT_NOT_FOUND = "event_not_found"
  INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
  MISSING_EVENT_UPDATE_FIELDS = "missing_event_update_fields"
  CALENDAR_AUTH_EXPIRED = "calendar_auth_expired"
  CALENDAR_CREATE_FAILED = "calendar_create_failed"
  CALENDAR_UPDATE_FAILED = "calendar_update_failed"
  CALENDAR_DELETE_FAILED = "calendar_delete_failed"
  CALENDAR_UPDATE_PARTIAL = "calendar_update_partial"


class FrontendAction(str, Enum):
  CALENDAR_EVENT_CREATED = "calendar_event_created"
  CALENDAR_EVENT_UPDATED = "calendar_event_updated"
  CALENDAR_EVENT_DELETED = "calendar_event_deleted"
  TRANSACTION_CREATED = "transaction_created"
  MEMORY_CREATED = "memory_created"


class Intent(str, Enum):
  CREATE_EVENT = "create_event"
  UPDATE_EVENT = "update_event"
  DELETE_EVENT = "delete_event"
  LIST_EVENTS = "list_events"
  CREATE_TRANSACTION = "create_transaction"
  SEARCH_TRANSACTION = "search_transaction"
  CREATE_MEMORY = "create_memory"
  SEARCH_MEMORY = "search_memory"
  DIGEST = "digest"
  HELP = "help"
  AMBIGUOUS = "ambiguous"


class FlowKind(str, Enum):
  EVENT = "event"
  TRANSACTION = "transaction"
  MEMORY = "memory"


CONFIDENCE_LEVELS = ("low", "medium", "high")


def value_of(item):
  """Plain value for enum members so persisted state and responses hold strings."""
  return item.value if isinstance(item, Enum) else item
