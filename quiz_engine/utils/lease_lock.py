"""
Lease locks for single-flight reconciliation

A lease is holder-agnostic: whoever acquired it extends and releases it by
key. A crashed holder never releases, so the TTL is what frees the quiz.
"""
import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class LeaseLock(ABC):
    """acquire / extend / release primitives keyed by name"""

    @abstractmethod
    def acquire(self, key: str, ttl_seconds: int) -> bool:
        """Take the lease if nobody holds it; never blocks"""

    @abstractmethod
    def extend(self, key: str, ttl_seconds: int) -> bool:
        """Refresh the TTL of a held lease"""

    @abstractmethod
    def release(self, key: str) -> None:
        """Drop the lease"""


class RedisLeaseLock(LeaseLock):
    """SET NX EX based lease"""

    def __init__(self, client, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.set(self._key(key), "locked", nx=True, ex=ttl_seconds))
        except Exception as e:
            logger.error(f"Error acquiring lock {key}: {str(e)}")
            return False

    def extend(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(self.client.expire(self._key(key), ttl_seconds))
        except Exception as e:
            logger.error(f"Error extending lock {key}: {str(e)}")
            return False

    def release(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except Exception as e:
            # The TTL frees the key eventually
            logger.error(f"Error releasing lock {key}: {str(e)}")


class InMemoryLeaseLock(LeaseLock):
    """Process-local lease with the same expiry semantics"""

    def __init__(self, time_source: Callable[[], float] = time.monotonic):
        self._time = time_source
        self._expires: Dict[str, float] = {}
        self._mutex = threading.Lock()

    def acquire(self, key: str, ttl_seconds: int) -> bool:
        with self._mutex:
            now = self._time()
            expires_at = self._expires.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires[key] = now + ttl_seconds
            return True

    def extend(self, key: str, ttl_seconds: int) -> bool:
        with self._mutex:
            now = self._time()
            expires_at = self._expires.get(key)
            if expires_at is None or expires_at <= now:
                return False
            self._expires[key] = now + ttl_seconds
            return True

    def release(self, key: str) -> None:
        with self._mutex:
            self._expires.pop(key, None)

    def is_held(self, key: str) -> bool:
        with self._mutex:
            expires_at = self._expires.get(key)
            return expires_at is not None and expires_at > self._time()


class LeaseRenewer:
    """
    Background thread extending a lease every `interval` seconds

    Usage:
        with LeaseRenewer(lock, key, ttl, interval):
            ... long running work ...
    """

    def __init__(self, lock: LeaseLock, key: str, ttl_seconds: int, interval: float):
        self.lock = lock
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.interval = interval
        self.renewals = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-renewer:{key}",
            daemon=True
        )

    def _run(self):
        while not self._stop.wait(self.interval):
            if self.lock.extend(self.key, self.ttl_seconds):
                self.renewals += 1
                logger.debug(f"Lease {self.key} extended ({self.renewals})")
            else:
                logger.warning(f"Lease {self.key} could not be extended; it may have expired")

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
