"""
Dialogue engine: thread state, flows, candidate resolution and dispatch.
"""

from .dispatcher import DialogueDispatcher
from .flow_engine import FlowEngine
from .idempotency import IdempotencyGuard
from .resolve_event_target import EventCandidateResolver
from .state import InMemoryThreadStore, JsonThreadStore, ThreadState

__all__ = [
    "DialogueDispatcher",
    "FlowEngine",
    "IdempotencyGuard",
    "EventCandidateResolver",
    "InMemoryThreadStore",
    "JsonThreadStore",
    "ThreadState",
]
