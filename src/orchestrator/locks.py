"""Per-environment, per-module locks.

Only one mutating operation may hold the lock for an (environment, module)
pair at a time. Locks are scoped per module, so independent modules of the
same environment can be mutated concurrently.

The lock table lives in an injectable store:
- MemoryLockStore: in-process, thread-safe (tests, single process)
- FileLockStore: one JSON file per lock, created atomically, shared between
  processes through the state directory

A lock whose heartbeat is older than the configured timeout is stale. Stale
locks are never taken over silently: acquire raises StaleLock and an
operator has to reclaim the lock explicitly, which is logged as an incident.
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterator, Optional

from common import module_slug
from orchestrator.errors import LockBusy, StaleLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lock:
    """Ownership record for one (environment, module) pair.

    Attributes:
        environment: Environment name
        module_id: Locked module
        holder: Run id holding the lock
        acquired_at: Timestamp of acquisition
        heartbeat_at: Last liveness signal from the holder
    """
    environment: str
    module_id: str
    holder: str
    acquired_at: float
    heartbeat_at: float

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the last heartbeat."""
        return (now if now is not None else time.time()) - self.heartbeat_at

    def to_dict(self) -> dict:
        return {
            'environment': self.environment,
            'module_id': self.module_id,
            'holder': self.holder,
            'acquired_at': self.acquired_at,
            'heartbeat_at': self.heartbeat_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Lock':
        return cls(
            environment=data['environment'],
            module_id=data['module_id'],
            holder=data['holder'],
            acquired_at=data['acquired_at'],
            heartbeat_at=data.get('heartbeat_at', data['acquired_at']),
        )


class MemoryLockStore:
    """Lock table held in memory, guarded by a mutex."""

    def __init__(self):
        self._locks: dict[tuple[str, str], Lock] = {}
        self._mutex = threading.Lock()

    def create(self, lock: Lock) -> bool:
        """Insert the lock unless the pair is already locked."""
        key = (lock.environment, lock.module_id)
        with self._mutex:
            if key in self._locks:
                return False
            self._locks[key] = lock
            return True

    def read(self, environment: str, module_id: str) -> Optional[Lock]:
        with self._mutex:
            return self._locks.get((environment, module_id))

    def update(self, lock: Lock) -> bool:
        """Replace the record if it is still owned by lock.holder."""
        key = (lock.environment, lock.module_id)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or current.holder != lock.holder:
                return False
            self._locks[key] = lock
            return True

    def delete(self, environment: str, module_id: str, holder: Optional[str] = None) -> bool:
        """Remove the lock (only if owned by holder, when given)."""
        key = (environment, module_id)
        with self._mutex:
            current = self._locks.get(key)
            if current is None or (holder is not None and current.holder != holder):
                return False
            del self._locks[key]
            return True

    def list(self, environment: Optional[str] = None) -> list[Lock]:
        with self._mutex:
            locks = list(self._locks.values())
        return sorted(
            (lk for lk in locks if environment is None or lk.environment == environment),
            key=lambda lk: (lk.environment, lk.module_id),
        )


class FileLockStore:
    """Lock table as files: {state_dir}/{environment}/locks/{module}.lock

    Creation uses O_CREAT|O_EXCL so that exactly one process wins.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._mutex = threading.Lock()

    def _path(self, environment: str, module_id: str) -> Path:
        return self.state_dir / environment / 'locks' / f'{module_slug(module_id)}.lock'

    def create(self, lock: Lock) -> bool:
        path = self._path(lock.environment, lock.module_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(lock.to_dict(), f)
        return True

    def read(self, environment: str, module_id: str) -> Optional[Lock]:
        return self._load(self._path(environment, module_id), environment, module_id)

    @staticmethod
    def _load(path: Path, environment: str, module_id: str) -> Optional[Lock]:
        try:
            with open(path, encoding='utf-8') as f:
                return Lock.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError):
            # Partially written by a concurrent create; treat as just acquired
            try:
                stat = path.stat()
            except FileNotFoundError:
                return None
            return Lock(environment, module_id, '<unknown>', stat.st_mtime, stat.st_mtime)

    def update(self, lock: Lock) -> bool:
        with self._mutex:
            current = self.read(lock.environment, lock.module_id)
            if current is None or current.holder != lock.holder:
                return False
            path = self._path(lock.environment, lock.module_id)
            tmp = path.with_suffix('.lock.tmp')
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(lock.to_dict(), f)
            tmp.replace(path)
            return True

    def delete(self, environment: str, module_id: str, holder: Optional[str] = None) -> bool:
        with self._mutex:
            current = self.read(environment, module_id)
            if current is None or (holder is not None and current.holder != holder):
                return False
            try:
                self._path(environment, module_id).unlink()
            except FileNotFoundError:
                return False
            return True

    def list(self, environment: Optional[str] = None) -> list[Lock]:
        if not self.state_dir.exists():
            return []
        envs = [environment] if environment else sorted(
            d.name for d in self.state_dir.iterdir() if d.is_dir())
        locks: list[Lock] = []
        for env in envs:
            locks_dir = self.state_dir / env / 'locks'
            if not locks_dir.exists():
                continue
            for path in sorted(locks_dir.glob('*.lock')):
                lock = self._load(path, env, path.stem.replace('__', '/'))
                if lock is not None:
                    locks.append(lock)
        return locks


class LockManager:
    """Acquires, heartbeats and releases module locks.

    Attributes:
        store: Lock table (MemoryLockStore or FileLockStore)
        timeout: Seconds without heartbeat after which a lock is stale
        wait: Default seconds to queue on a busy lock (0 = fail fast)
        poll_interval: Seconds between attempts while queued
    """

    def __init__(self, store, timeout: float = 3600, wait: float = 0, poll_interval: float = 1.0):
        self.store = store
        self.timeout = timeout
        self.wait = wait
        self.poll_interval = poll_interval

    def acquire(self, environment: str, module_id: str, holder: str) -> Lock:
        """Take the lock without blocking.

        Re-acquiring a lock already owned by holder returns it unchanged.

        Raises:
            LockBusy: Held by another live holder
            StaleLock: Held by a holder that stopped heartbeating
        """
        for _ in range(3):
            now = time.time()
            lock = Lock(environment, module_id, holder, acquired_at=now, heartbeat_at=now)
            if self.store.create(lock):
                logger.debug(f"[lock] {environment}/{module_id} acquired by {holder}")
                return lock

            existing = self.store.read(environment, module_id)
            if existing is None:
                continue  # released between create and read
            if existing.holder == holder:
                return existing
            age = existing.age(now)
            if age > self.timeout:
                logger.warning(
                    f"[lock] {environment}/{module_id} held by {existing.holder} "
                    f"is stale ({int(age)}s without heartbeat)"
                )
                raise StaleLock(environment, module_id, existing.holder, age)
            raise LockBusy(environment, module_id, existing.holder)

        raise LockBusy(environment, module_id, '<contended>')

    def acquire_wait(self, environment: str, module_id: str, holder: str,
                     wait: Optional[float] = None) -> Lock:
        """Take the lock, queueing on LockBusy for up to wait seconds.

        Raises:
            LockBusy: Still held when the wait expires
            StaleLock: The holder stopped heartbeating (never waited out)
        """
        wait = self.wait if wait is None else wait
        deadline = time.time() + wait
        while True:
            try:
                return self.acquire(environment, module_id, holder)
            except LockBusy as e:
                if time.time() >= deadline:
                    raise
                logger.info(f"[lock] {environment}/{module_id} busy ({e.holder}), waiting...")
                time.sleep(self.poll_interval)

    def release(self, lock: Lock) -> bool:
        """Release a lock owned by lock.holder.

        Returns:
            False if the lock was no longer held by this holder
        """
        released = self.store.delete(lock.environment, lock.module_id, holder=lock.holder)
        if released:
            logger.debug(f"[lock] {lock.environment}/{lock.module_id} released by {lock.holder}")
        else:
            logger.warning(
                f"[lock] {lock.environment}/{lock.module_id} was not held by {lock.holder} at release"
            )
        return released

    def heartbeat(self, lock: Lock) -> Lock:
        """Refresh the liveness signal of a held lock.

        Raises:
            LockBusy: The lock was reclaimed and now belongs to someone else
        """
        refreshed = replace(lock, heartbeat_at=time.time())
        if not self.store.update(refreshed):
            current = self.store.read(lock.environment, lock.module_id)
            raise LockBusy(lock.environment, lock.module_id, current.holder if current else '<none>')
        return refreshed

    def list_locks(self, environment: Optional[str] = None) -> list[Lock]:
        return self.store.list(environment)

    def reclaim(self, environment: str, module_id: str, operator: str, force: bool = False) -> Optional[Lock]:
        """Forcibly remove a stale lock. Logged as an operator-visible incident.

        Args:
            force: Also reclaim a lock that is not stale yet

        Returns:
            The reclaimed lock, or None if nothing was locked

        Raises:
            LockBusy: The lock is live and force is not set
        """
        existing = self.store.read(environment, module_id)
        if existing is None:
            return None
        age = existing.age()
        if age <= self.timeout and not force:
            raise LockBusy(environment, module_id, existing.holder)
        if not self.store.delete(environment, module_id, holder=existing.holder):
            return None
        logger.warning(
            f"[lock] INCIDENT: {operator} reclaimed {environment}/{module_id} from "
            f"{existing.holder} (acquired {time.ctime(existing.acquired_at)}, "
            f"{int(age)}s since last heartbeat)"
        )
        return existing

    @contextmanager
    def held(self, environment: str, module_id: str, holder: str,
             wait: Optional[float] = None) -> Iterator[Lock]:
        """Hold the lock for the duration of the block.

        The lock is heartbeated in the background and released on every
        exit path, including exceptions.
        """
        lock = self.acquire_wait(environment, module_id, holder, wait=wait)
        stop = threading.Event()
        beat = threading.Thread(
            target=self._heartbeat_loop, args=(lock, stop),
            name=f'lock-heartbeat-{module_slug(module_id)}', daemon=True,
        )
        beat.start()
        try:
            yield lock
        finally:
            stop.set()
            beat.join()
            self.release(lock)

    def _heartbeat_loop(self, lock: Lock, stop: threading.Event) -> None:
        interval = max(0.1, self.timeout / 3)
        while not stop.wait(interval):
            try:
                lock = self.heartbeat(lock)
            except LockBusy as e:
                logger.error(f"[lock] Lost {lock.environment}/{lock.module_id} to {e.holder}")
                return
