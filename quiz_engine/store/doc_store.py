"""
Tree-shaped key/value document store

Documents are JSON objects addressed by slash separated paths. Every write
bumps a per-document version; `transact` is an optimistic read-modify-write
that retries when another writer got there first, and returns a WriteAck
whose version later readers can wait for.
"""
import copy
import json
import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from quiz_engine.exceptions import TransactionConflict

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Mutator = Callable[[Optional[Document]], Optional[Document]]


@dataclass
class WriteAck:
    """Outcome of a write; `committed` is False when the mutator aborted"""
    committed: bool
    value: Optional[Document]
    version: int
    retries: int = 0


class KeyValueDocStore(ABC):
    """Store contract used by the ledger and the sync coordinator"""

    @abstractmethod
    def get_versioned(self, path: str) -> Tuple[Optional[Document], int]:
        """Return (document, version); (None, 0) when absent"""

    @abstractmethod
    def set(self, path: str, doc: Document) -> WriteAck:
        """Unconditional write"""

    @abstractmethod
    def transact(self, path: str, fn: Mutator, max_retries: int = 25) -> WriteAck:
        """
        Apply `fn` atomically to the document at `path`

        `fn` receives a private copy of the current document (or None) and
        returns the new document, or None to abort without writing. It may
        run several times under contention, so it must not have side
        effects beyond its own return value.
        """

    @abstractmethod
    def read_tree(self, prefix: str) -> Dict[str, Document]:
        """All documents under `prefix`, keyed by path relative to it"""

    @abstractmethod
    def children(self, prefix: str) -> List[str]:
        """Immediate child names under `prefix`"""

    @abstractmethod
    def delete_tree(self, prefix: str) -> int:
        """Delete every document under `prefix`; returns the count removed"""

    def get(self, path: str) -> Optional[Document]:
        doc, _ = self.get_versioned(path)
        return doc

    def wait_for_version(self, path: str, version: int, timeout: float) -> bool:
        """
        Block until the document at `path` has reached `version`

        An absent document counts as satisfied: the write being waited on
        was acknowledged, so absence means it has since been deleted.
        """
        deadline = time.monotonic() + timeout
        while True:
            doc, current = self.get_versioned(path)
            if doc is None or current >= version:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)


class InMemoryDocStore(KeyValueDocStore):
    """Dict-backed store; CAS on version under a mutex"""

    def __init__(self):
        self._docs: Dict[str, Tuple[Document, int]] = {}
        self._cond = threading.Condition()

    def get_versioned(self, path: str) -> Tuple[Optional[Document], int]:
        with self._cond:
            entry = self._docs.get(path)
            if entry is None:
                return None, 0
            return copy.deepcopy(entry[0]), entry[1]

    def set(self, path: str, doc: Document) -> WriteAck:
        with self._cond:
            _, version = self._docs.get(path, (None, 0))
            version += 1
            self._docs[path] = (copy.deepcopy(doc), version)
            self._cond.notify_all()
        return WriteAck(True, doc, version)

    def transact(self, path: str, fn: Mutator, max_retries: int = 25) -> WriteAck:
        for attempt in range(max_retries + 1):
            current, version = self.get_versioned(path)
            updated = fn(current)
            if updated is None:
                return WriteAck(False, current, version, attempt)

            with self._cond:
                _, latest = self._docs.get(path, (None, 0))
                if latest == version:
                    self._docs[path] = (copy.deepcopy(updated), version + 1)
                    self._cond.notify_all()
                    return WriteAck(True, updated, version + 1, attempt)

            logger.debug(f"Transaction conflict on {path} (attempt {attempt + 1})")

        raise TransactionConflict(f"Too much contention on {path}")

    def read_tree(self, prefix: str) -> Dict[str, Document]:
        base = prefix.rstrip("/") + "/"
        with self._cond:
            return {
                path[len(base):]: copy.deepcopy(doc)
                for path, (doc, _) in self._docs.items()
                if path.startswith(base)
            }

    def children(self, prefix: str) -> List[str]:
        base = prefix.rstrip("/") + "/"
        with self._cond:
            names = {path[len(base):].split("/", 1)[0] for path in self._docs if path.startswith(base)}
        return sorted(names)

    def delete_tree(self, prefix: str) -> int:
        base = prefix.rstrip("/")
        with self._cond:
            doomed = [p for p in self._docs if p == base or p.startswith(base + "/")]
            for path in doomed:
                del self._docs[path]
            self._cond.notify_all()
        return len(doomed)

    def wait_for_version(self, path: str, version: int, timeout: float) -> bool:
        def reached():
            entry = self._docs.get(path)
            return entry is None or entry[1] >= version

        with self._cond:
            return self._cond.wait_for(reached, timeout=timeout)


class RedisDocStore(KeyValueDocStore):
    """
    Redis-backed store

    Each document is a string key holding {"v": version, "d": document};
    each inner node keeps a set of its child names so subtrees can be
    listed and removed without KEYS scans.
    """

    def __init__(self, client: redis.Redis, prefix: str = "quiz_engine:"):
        self.client = client
        self.prefix = prefix

    def _doc_key(self, path: str) -> str:
        return f"{self.prefix}doc:{path}"

    def _index_key(self, path: str) -> str:
        return f"{self.prefix}idx:{path}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Tuple[Optional[Document], int]:
        if raw is None:
            return None, 0
        envelope = json.loads(raw)
        return envelope["d"], envelope["v"]

    @staticmethod
    def _encode(doc: Document, version: int) -> str:
        return json.dumps({"v": version, "d": doc}, default=str)

    def _index(self, pipe, path: str) -> None:
        parts = path.split("/")
        for i in range(1, len(parts)):
            pipe.sadd(self._index_key("/".join(parts[:i])), parts[i])

    def get_versioned(self, path: str) -> Tuple[Optional[Document], int]:
        return self._decode(self.client.get(self._doc_key(path)))

    def set(self, path: str, doc: Document) -> WriteAck:
        # Routed through transact so the version increments atomically
        return self.transact(path, lambda _current: doc)

    def transact(self, path: str, fn: Mutator, max_retries: int = 25) -> WriteAck:
        key = self._doc_key(path)
        with self.client.pipeline() as pipe:
            for attempt in range(max_retries + 1):
                try:
                    pipe.watch(key)
                    current, version = self._decode(pipe.get(key))
                    updated = fn(copy.deepcopy(current))
                    if updated is None:
                        pipe.unwatch()
                        return WriteAck(False, current, version, attempt)

                    pipe.multi()
                    pipe.set(key, self._encode(updated, version + 1))
                    self._index(pipe, path)
                    pipe.execute()
                    return WriteAck(True, updated, version + 1, attempt)
                except redis.WatchError:
                    logger.debug(f"Transaction conflict on {path} (attempt {attempt + 1})")
                    continue

        raise TransactionConflict(f"Too much contention on {path}")

    def _descendants(self, prefix: str) -> List[str]:
        found = []
        pending = [prefix]
        while pending:
            node = pending.pop()
            for child in self.client.smembers(self._index_key(node)):
                child_path = f"{node}/{child}"
                found.append(child_path)
                pending.append(child_path)
        return found

    def read_tree(self, prefix: str) -> Dict[str, Document]:
        base = prefix.rstrip("/")
        paths = self._descendants(base)
        if not paths:
            return {}
        raws = self.client.mget([self._doc_key(p) for p in paths])
        tree = {}
        for path, raw in zip(paths, raws):
            doc, _ = self._decode(raw)
            if doc is not None:
                tree[path[len(base) + 1:]] = doc
        return tree

    def children(self, prefix: str) -> List[str]:
        return sorted(self.client.smembers(self._index_key(prefix.rstrip("/"))))

    def delete_tree(self, prefix: str) -> int:
        base = prefix.rstrip("/")
        paths = [base] + self._descendants(base)
        with self.client.pipeline() as pipe:
            pipe.delete(*[self._doc_key(p) for p in paths])
            pipe.delete(*[self._index_key(p) for p in paths])
            if "/" in base:
                parent, name = base.rsplit("/", 1)
                pipe.srem(self._index_key(parent), name)
            return pipe.execute()[0]
