"""
Service wiring

Builds every engine service with explicit collaborators so the API, the CLI
and the tests share one construction path.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from quiz_engine.config import Settings, settings as default_settings
from quiz_engine.services.attempt_ledger import AttemptLedger
from quiz_engine.services.catalog_service import Catalog, SqlCatalog
from quiz_engine.services.completion_service import CompletionDetector
from quiz_engine.services.event_service import EventBroadcaster
from quiz_engine.services.leaderboard_service import LeaderboardService
from quiz_engine.services.scoring_service import ScoringEngine
from quiz_engine.services.session_service import SessionService
from quiz_engine.services.sync_service import PeriodicSyncScheduler, SyncCoordinator, SyncDispatcher
from quiz_engine.services.validation_service import DataValidator
from quiz_engine.store.doc_store import InMemoryDocStore, KeyValueDocStore, RedisDocStore
from quiz_engine.utils.clock import Clock, utcnow
from quiz_engine.utils.event_bus import EventBus, InMemoryEventBus, RedisEventBus
from quiz_engine.utils.lease_lock import InMemoryLeaseLock, LeaseLock, RedisLeaseLock
from quiz_engine.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)


@dataclass
class Container:
    store: KeyValueDocStore
    lock: LeaseLock
    bus: EventBus
    catalog: Catalog
    session_factory: object
    scoring: ScoringEngine
    completion: CompletionDetector
    broadcaster: EventBroadcaster
    leaderboard: LeaderboardService
    sessions: SessionService
    ledger: AttemptLedger
    sync: SyncCoordinator
    dispatcher: Any
    scheduler: PeriodicSyncScheduler
    validator: DataValidator

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.dispatcher.shutdown(wait=True)


def build_container(
    config: Settings = None,
    session_factory=None,
    store: KeyValueDocStore = None,
    lock: LeaseLock = None,
    bus: EventBus = None,
    catalog: Catalog = None,
    dispatcher=None,
    clock: Clock = utcnow
) -> Container:
    """
    Assemble the engine

    Collaborators not passed in are created from settings: Redis backed when
    STORE_BACKEND / EVENT_BACKEND is "redis", in-process otherwise.
    """
    config = config or default_settings

    if session_factory is None:
        from quiz_engine.database import SessionLocal
        session_factory = SessionLocal

    client = None
    if "redis" in (config.STORE_BACKEND, config.EVENT_BACKEND) and (store is None or lock is None or bus is None):
        client = get_redis_client(config.REDIS_URL)

    if store is None or lock is None:
        if config.STORE_BACKEND == "redis":
            store = store or RedisDocStore(client, config.REDIS_KEY_PREFIX)
            lock = lock or RedisLeaseLock(client, config.REDIS_KEY_PREFIX)
        else:
            store = store or InMemoryDocStore()
            lock = lock or InMemoryLeaseLock()

    if bus is None:
        if config.EVENT_BACKEND == "redis":
            bus = RedisEventBus(client, config.REDIS_KEY_PREFIX)
        else:
            bus = InMemoryEventBus()

    catalog = catalog or SqlCatalog(session_factory)

    scoring = ScoringEngine(
        base_points=config.BASE_POINTS,
        speed_bonus=config.SPEED_BONUS,
        streak_bonus=config.STREAK_BONUS,
        speed_threshold_ms=config.SPEED_BONUS_THRESHOLD_MS,
        streak_min=config.STREAK_MIN,
        streak_cap=config.STREAK_CAP,
        retry_penalty=config.RETRY_PENALTY,
        default_difficulty=config.DEFAULT_DIFFICULTY,
    )
    completion = CompletionDetector()
    broadcaster = EventBroadcaster(bus, clock)
    leaderboard = LeaderboardService(store, broadcaster, clock)

    sync = SyncCoordinator(
        store,
        session_factory,
        catalog,
        completion,
        scoring,
        lock,
        broadcaster=broadcaster,
        clock=clock,
        lock_ttl=config.SYNC_LOCK_TTL,
        renew_interval=config.SYNC_LOCK_RENEW_INTERVAL,
        barrier_timeout=config.SYNC_BARRIER_TIMEOUT,
    )
    dispatcher = dispatcher or SyncDispatcher(
        sync,
        max_workers=config.SYNC_WORKERS,
        locked_retries=config.SYNC_LOCKED_RETRIES,
        retry_backoff=config.SYNC_RETRY_BACKOFF,
    )

    sessions = SessionService(store, catalog, broadcaster, dispatcher=dispatcher, clock=clock)
    ledger = AttemptLedger(
        store,
        catalog,
        sessions,
        scoring,
        completion,
        leaderboard,
        broadcaster,
        dispatcher=dispatcher,
        clock=clock,
        max_attempts=config.MAX_ATTEMPTS,
        max_response_time_ms=config.MAX_RESPONSE_TIME_MS,
        max_retries=config.TRANSACTION_MAX_RETRIES,
        top_finisher_count=config.TOP_FINISHER_COUNT,
    )
    scheduler = PeriodicSyncScheduler(sync, sessions.active_quiz_ids, config.PERIODIC_SYNC_INTERVAL)
    validator = DataValidator(store, session_factory, catalog, scoring)

    logger.info(
        f"Engine assembled: store={type(store).__name__}, lock={type(lock).__name__}, "
        f"bus={type(bus).__name__}, catalog={type(catalog).__name__}"
    )
    return Container(
        store=store,
        lock=lock,
        bus=bus,
        catalog=catalog,
        session_factory=session_factory,
        scoring=scoring,
        completion=completion,
        broadcaster=broadcaster,
        leaderboard=leaderboard,
        sessions=sessions,
        ledger=ledger,
        sync=sync,
        dispatcher=dispatcher,
        scheduler=scheduler,
        validator=validator,
    )


# Global instance, built on application startup
_container: Optional[Container] = None


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container


def get_container() -> Container:
    """FastAPI dependency returning the running engine"""
    global _container
    if _container is None:
        _container = build_container()
    return _container


def shutdown_container() -> None:
    """Stop the running engine's background workers, if it was built"""
    global _container
    if _container is not None:
        _container.shutdown()
        _container = None
