"""
Ephemeral session store package
"""
from quiz_engine.store.doc_store import (
    KeyValueDocStore,
    InMemoryDocStore,
    RedisDocStore,
    WriteAck,
)

__all__ = ["KeyValueDocStore", "InMemoryDocStore", "RedisDocStore", "WriteAck"]
