"""Per-job ownership leases.

A lease is a marker at the job's output location naming its holder and an
expiry time. At most one live lease exists per key; a lease whose expiry
has passed belongs to a crashed worker and may be taken over.
"""

import json
import logging
import os
import socket
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)


def new_holder_id() -> str:
    """Identity of one acquisition: host, process and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Lease:
    """An acquired ownership marker."""
    key: str
    holder: str
    acquired_at: float
    expires_at: float

    def expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class OwnershipLock(ABC):
    """Create-if-absent lease store."""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        if ttl_seconds <= 0:
            raise ValueError("Lease TTL must be positive")
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _new_lease(self, key: str) -> Lease:
        now = self.clock()
        return Lease(key=key, holder=new_holder_id(), acquired_at=now, expires_at=now + self.ttl_seconds)

    @abstractmethod
    async def try_acquire(self, key: str) -> Optional[Lease]:
        """Take the lease for key.

        Returns:
            The lease, or None when another holder has a live lease
        """

    @abstractmethod
    async def release(self, lease: Lease) -> bool:
        """Drop the lease if it is still held by its holder.

        Returns:
            True if the marker was removed, False if it was not ours
        """

    @asynccontextmanager
    async def held(self, key: str) -> AsyncIterator[Optional[Lease]]:
        """Hold the lease for key for the duration of the block.

        Yields None on contention; the caller is expected to skip the job.
        """
        lease = await self.try_acquire(key)
        try:
            yield lease
        except BaseException:
            if lease is not None:
                try:
                    await self.release(lease)
                except Exception as e:
                    # the block's own error is the one that propagates
                    logger.warning(f"Could not release lease {key} ({e}), it expires in {self.ttl_seconds}s")
            raise
        else:
            if lease is not None:
                await self.release(lease)


class FileLeaseLock(OwnershipLock):
    """Leases as JSON marker files under a (possibly shared) directory.

    Creation relies on O_CREAT|O_EXCL. Expired markers and releases go
    through a rename to a private tombstone first, so only one worker can
    ever act on a given marker file.

    One window remains. A worker that judged a marker expired may rename
    away a fresh marker written by a faster taker in between; it then
    links the marker back. If yet another worker creates a marker before
    that link, the fresh marker cannot be restored and two holders run
    until one of them releases. It needs three workers racing on the same
    expired lease; _restore logs it as an error naming both holders.
    """

    def __init__(self, lock_dir: str, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds, clock)
        self.lock_dir = Path(lock_dir)

    def marker_path(self, key: str) -> Path:
        return self.lock_dir / key.lstrip("/")

    @staticmethod
    def _read(path: Path) -> Optional[Lease]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return Lease(
                key=raw["key"],
                holder=raw["holder"],
                acquired_at=float(raw["acquired_at"]),
                expires_at=float(raw["expires_at"]),
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError):
            # half-written or foreign content
            return None

    def _create(self, path: Path, lease: Lease) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(lease), f)
        return True

    def _tombstone(self, path: Path) -> Path:
        return path.with_name(f"{path.name}.{uuid.uuid4().hex}.tomb")

    def _restore(self, tomb: Path, path: Path) -> bool:
        """Put a marker taken by mistake back in place.

        Returns:
            False if another marker appeared meanwhile; both holders
            then believe they own the key
        """
        try:
            os.link(tomb, path)
            restored = True
        except FileExistsError:
            lost = self._read(tomb)
            current = self._read(path)
            logger.error(
                f"Lease marker {path} could not be restored: "
                f"{lost.holder if lost else 'unknown'} and "
                f"{current.holder if current else 'unknown'} both hold it"
            )
            restored = False
        tomb.unlink(missing_ok=True)
        return restored

    async def try_acquire(self, key: str) -> Optional[Lease]:
        path = self.marker_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        lease = self._new_lease(key)

        if self._create(path, lease):
            logger.debug(f"Acquired lease {key} as {lease.holder}")
            return lease

        now = self.clock()
        existing = self._read(path)
        if existing is None:
            try:
                # unreadable marker: judge staleness by its age
                stale = path.stat().st_mtime + self.ttl_seconds <= now
            except FileNotFoundError:
                stale = True
        else:
            stale = existing.expired(now)

        if not stale:
            holder = existing.holder if existing else "unknown"
            logger.info(f"Lease {key} is held by {holder}, skipping")
            return None

        tomb = self._tombstone(path)
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            pass
        else:
            taken = self._read(tomb)
            if taken is not None and not taken.expired(now):
                # lost a race with a fresher holder; hand the marker back
                self._restore(tomb, path)
                return None
            tomb.unlink(missing_ok=True)
            logger.warning(
                f"Took over expired lease {key}"
                + (f" from {existing.holder}" if existing else "")
            )

        if self._create(path, lease):
            return lease
        logger.info(f"Lease {key} was taken by another worker, skipping")
        return None

    async def release(self, lease: Lease) -> bool:
        path = self.marker_path(lease.key)
        current = self._read(path)
        if current is None or current.holder != lease.holder:
            logger.warning(f"Release of lease {lease.key} by {lease.holder} ignored, not the holder")
            return False

        tomb = self._tombstone(path)
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            return False

        taken = self._read(tomb)
        if taken is None or taken.holder != lease.holder:
            self._restore(tomb, path)
            logger.warning(f"Release of lease {lease.key} by {lease.holder} ignored, not the holder")
            return False

        tomb.unlink(missing_ok=True)
        logger.debug(f"Released lease {lease.key}")
        return True


# Deletes the key only while it still holds our holder id
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLeaseLock(OwnershipLock):
    """Leases as Redis keys set with NX and a millisecond expiry."""

    def __init__(self, client, ttl_seconds: float = 3600, prefix: str = "abrworker:lease:", clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds, clock)
        self.client = client
        self.prefix = prefix

    def _redis_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def try_acquire(self, key: str) -> Optional[Lease]:
        lease = self._new_lease(key)
        acquired = await self.client.set(
            self._redis_key(key),
            lease.holder,
            nx=True,
            px=int(self.ttl_seconds * 1000),
        )
        if not acquired:
            logger.info(f"Lease {key} is held by another worker, skipping")
            return None
        return lease

    async def release(self, lease: Lease) -> bool:
        removed = await self.client.eval(_RELEASE_SCRIPT, 1, self._redis_key(lease.key), lease.holder)
        if not removed:
            logger.warning(f"Release of lease {lease.key} by {lease.holder} ignored, not the holder")
            return False
        return True
