from __future__ import annotations

from typing import Dict, Union

from ..actions import CalendarActions
from ..extractor import LLMExtractor
from ..question_agent import LLMQuestionAgent
from ..resolve_event_target import EventCandidateResolver
from .base import Flow
from .event import EventFlow
from .event_delete import EventDeleteFlow
from .event_update import EventUpdateFlow
from .memory import MemoryFlow
from .transaction import TransactionFlow

AnyFlow = Union[Flow, EventUpdateFlow, EventDeleteFlow]


class FlowRegistry:
  """Flows by kind: event, transaction, memory, event_update, event_delete."""

  def __init__(self, extractor: LLMExtractor, actions: CalendarActions,
               resolver: EventCandidateResolver, questions: LLMQuestionAgent) -> None:
    self._flows: Dict[str, AnyFlow] = {
        "event": EventFlow(extractor, actions),
        "transaction": TransactionFlow(extractor, actions),
        "memory": MemoryFlow(extractor, actions),
        "event_update": EventUpdateFlow(extractor, actions, resolver, questions),
        "event_delete": EventDeleteFlow(extractor, actions, resolver, questions),
    }

  def fetch(self, kind: str) -> AnyFlow:
    try:
      return self._flows[kind]
    except KeyError:
      raise KeyError(f"Unknown flow kind: {kind}") from None

  @property
  def updates(self) -> EventUpdateFlow:
    return self._flows["event_update"]

  @property
  def deletes(self) -> EventDeleteFlow:
    return self._flows["event_delete"]
