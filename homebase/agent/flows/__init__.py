"""
Creation flows (event, transaction, memory) and the event update/delete sub-flows.
"""

from .base import Flow, Preflight
from .event import EventFlow
from .event_delete import EventDeleteFlow
from .event_update import EventUpdateFlow
from .memory import MemoryFlow
from .registry import FlowRegistry
from .transaction import TransactionFlow

__all__ = [
    "Flow",
    "Preflight",
    "EventFlow",
    "EventUpdateFlow",
    "EventDeleteFlow",
    "TransactionFlow",
    "MemoryFlow",
    "FlowRegistry",
]
