"""Store abstractions for the realtime tree store and the document store."""

from .base import (
    SERVER_TIMESTAMP,
    ChildEvent,
    ChildEventType,
    DocumentStore,
    ListenerSlot,
    RealtimeStore,
    Subscription,
    join_path,
)
from .memory import InMemoryDocumentStore, InMemoryRealtimeStore

__all__ = [
    "SERVER_TIMESTAMP",
    "ChildEvent",
    "ChildEventType",
    "DocumentStore",
    "InMemoryDocumentStore",
    "InMemoryRealtimeStore",
    "ListenerSlot",
    "RealtimeStore",
    "Subscription",
    "join_path",
]
