from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from typing import Generator, Optional, Protocol
from contextlib import contextmanager
from datetime import date
import threading
import time
import redis
from .config import settings

def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # PostgreSQL connection pool settings
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
    }

engine = create_engine(
    settings.get_database_url,
    **_engine_options(settings.get_database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


class KeyValueStore(Protocol):
    """Key-value capability with explicit TTL semantics."""

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str) -> int: ...


class RedisKeyValueStore:
    """KeyValueStore backed by a Redis client."""

    def __init__(self, client):
        self._client = client

    def set(self, key: str, value: str, ttl: int) -> None:
        self._client.setex(key, ttl, value)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def incr(self, key: str) -> int:
        # INCR keeps the key's existing TTL
        return int(self._client.incr(key))


class InMemoryKeyValueStore:
    """Dict-backed KeyValueStore used when TESTING is set.

    Entries expire ``ttl`` seconds after they were set; ``incr`` keeps the
    original expiry the way Redis does.
    """

    def __init__(self, now=time.monotonic):
        self._now = now
        self._data = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._data[key] = (str(value), self._now() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                # Redis semantics: a missing key starts at 0 with no expiry
                self._data[key] = ("1", float("inf"))
                return 1
            _, expires_at = self._data[key]
            value = int(current) + 1
            self._data[key] = (str(value), expires_at)
            return value

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._now() >= expires_at:
            del self._data[key]
            return None
        return value


if settings.TESTING:
    kv_store: KeyValueStore = InMemoryKeyValueStore()
else:
    kv_store = RedisKeyValueStore(redis.from_url(settings.REDIS_URL, decode_responses=True))


# Per-date serialization of check-then-write sequences. Dates share a fixed
# pool of locks; an operation only ever holds one of them.
_DATE_LOCK_POOL_SIZE = 64
_date_locks = tuple(threading.Lock() for _ in range(_DATE_LOCK_POOL_SIZE))

# Namespace for advisory lock keys so they don't collide with other users
_ADVISORY_LOCK_NAMESPACE = 7_340_000_000

def _lock_for(day: date) -> threading.Lock:
    return _date_locks[day.toordinal() % _DATE_LOCK_POOL_SIZE]

@contextmanager
def date_lock(db: Session, day: date):
    """Hold the booking lock for ``day`` until the block exits.

    Within the process the pool lock for the date is taken. On PostgreSQL a
    transaction-scoped advisory lock is also acquired, so other workers are
    serialized as well; it is released when the session commits or rolls
    back. The block must commit before it exits; an exception rolls back.
    """
    with _lock_for(day):
        if db.get_bind().dialect.name == "postgresql":
            db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": _ADVISORY_LOCK_NAMESPACE + day.toordinal()},
            )
        try:
            yield
        except Exception:
            db.rollback()
            raise

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Key-value store dependency
def get_kv_store() -> KeyValueStore:
    """Get the key-value store."""
    return kv_store

# Database initialization
def init_db():
    """Initialize database tables."""
    from ..models import appointment, audit_log, patient  # noqa: F401  register tables
    Base.metadata.create_all(bind=engine)
