"""
Named, TTL-bounded mutual-exclusion locks.

Lock names are namespaced by operation, e.g. ``build:<app_id>`` and
``publish:<app_id>``. A lock is live while ``now < expires_at``; an expired
lease is vacant and the next acquisition reclaims it. Release is
compare-and-release by token, so a holder whose lease was reclaimed cannot
release the new holder's lock.

Backends:
- DatabaseLockBackend: lease rows in the shared relational store, safe across
  processes and hosts.
- InMemoryLockBackend: a per-instance TTL map for single-process deployments
  and tests.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appforge.config import Settings
from appforge.core.datetime_utils import is_expired, utc_now
from appforge.core.errors import ConfigurationError, LockConflictError
from appforge.core.logging import get_logger
from appforge.models.lock_lease import LockLease

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def build_lock_name(app_id: str) -> str:
    return f"build:{app_id}"


def publish_lock_name(app_id: str) -> str:
    return f"publish:{app_id}"


@dataclass(frozen=True)
class LockToken:
    """Proof of ownership for an acquired lock."""

    name: str
    token: str
    expires_at: datetime


class LockBackend(ABC):
    """Storage for lock leases. All methods are non-blocking single attempts."""

    backend_name: str = "unknown"

    @abstractmethod
    async def try_acquire(self, name: str, token: str, ttl: timedelta) -> datetime | None:
        """Take the lease if it is vacant or expired; return its expiry or None."""

    @abstractmethod
    async def release(self, name: str, token: str) -> bool:
        """Release the lease only if it is still owned by ``token``."""

    @abstractmethod
    async def holder(self, name: str) -> str | None:
        """Token of the live holder, or None if the lock is vacant."""


class InMemoryLockBackend(LockBackend):
    """In-process TTL map. Each instance is an independent lock table."""

    backend_name = "memory"

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._leases: dict[str, tuple[str, datetime]] = {}
        self._mutex = threading.Lock()

    async def try_acquire(self, name: str, token: str, ttl: timedelta) -> datetime | None:
        now = self._clock()
        with self._mutex:
            existing = self._leases.get(name)
            if existing and not is_expired(existing[1], now):
                return None
            expires_at = now + ttl
            self._leases[name] = (token, expires_at)
            return expires_at

    async def release(self, name: str, token: str) -> bool:
        with self._mutex:
            existing = self._leases.get(name)
            if not existing or existing[0] != token:
                return False
            del self._leases[name]
            return True

    async def holder(self, name: str) -> str | None:
        now = self._clock()
        with self._mutex:
            existing = self._leases.get(name)
            if existing and not is_expired(existing[1], now):
                return existing[0]
            return None


class DatabaseLockBackend(LockBackend):
    """
    Lease rows in the ``lock_leases`` table.

    Each call runs in its own short transaction so lock state is never tied
    to a caller's unit of work. Reclaiming an expired lease is a conditional
    UPDATE on the previous token, so two workers racing for the same stale
    lease cannot both win.
    """

    backend_name = "database"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def try_acquire(self, name: str, token: str, ttl: timedelta) -> datetime | None:
        now = self._clock()
        expires_at = now + ttl

        async with self._session_factory() as session:
            lease = await session.scalar(select(LockLease).where(LockLease.name == name))

            if lease is None:
                session.add(LockLease(name=name, token=token, acquired_at=now, expires_at=expires_at))
                try:
                    await session.commit()
                except IntegrityError:
                    # Another worker inserted the row first
                    await session.rollback()
                    return None
                return expires_at

            if not is_expired(lease.expires_at, now):
                return None

            previous_token = lease.token
            result = await session.execute(
                update(LockLease)
                .where(
                    LockLease.name == name,
                    LockLease.token == previous_token,
                    LockLease.expires_at <= now,
                )
                .values(token=token, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount != 1:
                return None

            logger.bind(lock=name, previous_token=previous_token).warning("stale_lock_reclaimed")
            return expires_at

    async def release(self, name: str, token: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(LockLease)
                .where(LockLease.name == name, LockLease.token == token)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def holder(self, name: str) -> str | None:
        now = self._clock()
        async with self._session_factory() as session:
            lease = await session.scalar(select(LockLease).where(LockLease.name == name))
            if lease is not None and not is_expired(lease.expires_at, now):
                return lease.token
            return None


class LockManager:
    """
    Acquire, hold and release named locks on top of a backend.

    Acquisition polls the backend until ``acquire_timeout`` seconds have
    passed, then raises LockConflictError. A timeout of 0 means a single
    attempt.
    """

    def __init__(
        self,
        backend: LockBackend,
        acquire_timeout: float = 0.0,
        poll_interval: float = 0.25,
    ) -> None:
        self.backend = backend
        self.acquire_timeout = acquire_timeout
        self.poll_interval = poll_interval

    async def acquire(
        self,
        name: str,
        ttl_seconds: float,
        timeout: float | None = None,
    ) -> LockToken:
        """Acquire ``name`` for ``ttl_seconds`` or raise LockConflictError."""
        wait = self.acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait, 0.0)
        token = uuid4().hex
        ttl = timedelta(seconds=ttl_seconds)

        while True:
            expires_at = await self.backend.try_acquire(name, token, ttl)
            if expires_at is not None:
                logger.bind(lock=name, backend=self.backend.backend_name).debug("lock_acquired")
                return LockToken(name=name, token=token, expires_at=expires_at)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.bind(lock=name).info("lock_conflict")
                raise LockConflictError(name)
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def release(self, lock: LockToken) -> bool:
        """Release a lock; a no-op returning False if it was reclaimed."""
        released = await self.backend.release(lock.name, lock.token)
        if not released:
            logger.bind(lock=lock.name).warning("lock_release_skipped_not_owner")
        return released

    async def is_locked(self, name: str) -> bool:
        return await self.backend.holder(name) is not None

    async def holds(self, lock: LockToken) -> bool:
        """Whether ``lock`` is still the live holder of its name."""
        return await self.backend.holder(lock.name) == lock.token

    @asynccontextmanager
    async def hold(
        self,
        name: str,
        ttl_seconds: float,
        timeout: float | None = None,
    ) -> AsyncIterator[LockToken]:
        """Hold ``name`` for the duration of the block; always released on exit."""
        lock = await self.acquire(name, ttl_seconds, timeout=timeout)
        try:
            yield lock
        finally:
            try:
                await self.release(lock)
            except Exception as e:
                # The lease still expires after its TTL
                logger.bind(lock=name, error=str(e)).error("lock_release_failed")

    async def run_exclusive(
        self,
        name: str,
        ttl_seconds: float,
        fn: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` while holding ``name``."""
        async with self.hold(name, ttl_seconds, timeout=timeout):
            return await fn()


def create_lock_manager(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> LockManager:
    """Build the lock manager selected by ``settings.lock_backend``."""
    backend: LockBackend
    if settings.lock_backend == "memory":
        backend = InMemoryLockBackend()
    elif settings.lock_backend == "database":
        if session_factory is None:
            raise ConfigurationError("Database lock backend requires a session factory")
        backend = DatabaseLockBackend(session_factory)
    else:
        raise ConfigurationError(f"Unknown lock backend: {settings.lock_backend}")

    return LockManager(backend, acquire_timeout=settings.lock_acquire_timeout_seconds)
