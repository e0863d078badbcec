"""Tests for orchestrator.locks (lock table and lock manager)."""

import sys
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from orchestrator.errors import LockBusy, StaleLock
from orchestrator.locks import FileLockStore, Lock, LockManager, MemoryLockStore


@pytest.fixture(params=['memory', 'file'])
def store(request, tmp_path):
    if request.param == 'memory':
        return MemoryLockStore()
    return FileLockStore(tmp_path)


def _old_lock(holder='run-old', age=7200):
    then = time.time() - age
    return Lock('prod', 'database', holder, acquired_at=then, heartbeat_at=then)


class TestLockStores:
    """Behaviour shared by MemoryLockStore and FileLockStore."""

    def test_create_is_exclusive(self, store):
        now = time.time()
        assert store.create(Lock('prod', 'database', 'a', now, now)) is True
        assert store.create(Lock('prod', 'database', 'b', now, now)) is False
        assert store.read('prod', 'database').holder == 'a'

    def test_delete_checks_holder(self, store):
        now = time.time()
        store.create(Lock('prod', 'database', 'a', now, now))
        assert store.delete('prod', 'database', holder='b') is False
        assert store.delete('prod', 'database', holder='a') is True
        assert store.read('prod', 'database') is None

    def test_update_checks_holder(self, store):
        now = time.time()
        lock = Lock('prod', 'database', 'a', now, now)
        store.create(lock)
        assert store.update(replace(lock, holder='b')) is False
        assert store.update(replace(lock, heartbeat_at=now + 5)) is True
        assert store.read('prod', 'database').heartbeat_at == now + 5

    def test_list_by_environment(self, store):
        now = time.time()
        store.create(Lock('prod', 'database', 'a', now, now))
        store.create(Lock('prod', 'app', 'a', now, now))
        store.create(Lock('nonprod', 'app', 'b', now, now))
        assert [lk.module_id for lk in store.list('prod')] == ['app', 'database']
        assert len(store.list()) == 3

    def test_path_like_module_ids(self, store):
        now = time.time()
        assert store.create(Lock('prod', 'data/database', 'a', now, now)) is True
        assert store.read('prod', 'data/database').module_id == 'data/database'


class TestFileLockStore:
    """File layout specifics."""

    def test_lock_file_location(self, tmp_path):
        store = FileLockStore(tmp_path)
        now = time.time()
        store.create(Lock('prod', 'data/database', 'a', now, now))
        assert (tmp_path / 'prod' / 'locks' / 'data__database.lock').exists()

    def test_list_tolerates_partially_written_lock(self, tmp_path):
        store = FileLockStore(tmp_path)
        now = time.time()
        store.create(Lock('prod', 'app', 'a', now, now))
        (tmp_path / 'prod' / 'locks' / 'data__database.lock').write_text('')

        locks = {lk.module_id: lk for lk in store.list('prod')}
        assert sorted(locks) == ['app', 'data/database']
        assert locks['data/database'].holder == '<unknown>'
        assert locks['data/database'].environment == 'prod'
        assert store.read('prod', 'data/database').holder == '<unknown>'

    def test_list_manager_reports_unreadable_lock(self, tmp_path):
        (tmp_path / 'prod' / 'locks').mkdir(parents=True)
        (tmp_path / 'prod' / 'locks' / 'database.lock').write_text('{"holder": ')
        manager = LockManager(FileLockStore(tmp_path), timeout=600)
        assert [lk.module_id for lk in manager.list_locks('prod')] == ['database']


class TestLockManager:
    """Tests for LockManager."""

    def test_acquire_and_release(self, store):
        manager = LockManager(store)
        lock = manager.acquire('prod', 'database', 'run-1')
        assert lock.holder == 'run-1'
        assert manager.release(lock) is True
        assert manager.list_locks('prod') == []

    def test_busy(self, store):
        manager = LockManager(store)
        manager.acquire('prod', 'database', 'run-1')
        with pytest.raises(LockBusy) as exc:
            manager.acquire('prod', 'database', 'run-2')
        assert exc.value.holder == 'run-1'

    def test_reacquire_by_same_holder(self, store):
        manager = LockManager(store)
        first = manager.acquire('prod', 'database', 'run-1')
        assert manager.acquire('prod', 'database', 'run-1') == first

    def test_independent_modules_lock_independently(self, store):
        manager = LockManager(store)
        manager.acquire('prod', 'database', 'run-1')
        assert manager.acquire('prod', 'app', 'run-2').holder == 'run-2'
        assert manager.acquire('nonprod', 'database', 'run-3').holder == 'run-3'

    def test_stale_lock_not_taken_over(self, store):
        manager = LockManager(store, timeout=60)
        store.create(_old_lock())
        with pytest.raises(StaleLock) as exc:
            manager.acquire('prod', 'database', 'run-new')
        assert exc.value.holder == 'run-old'
        assert store.read('prod', 'database').holder == 'run-old'

    def test_reclaim_stale_logs_incident(self, store, caplog):
        manager = LockManager(store, timeout=60)
        store.create(_old_lock())
        with caplog.at_level('WARNING'):
            reclaimed = manager.reclaim('prod', 'database', operator='alice')
        assert reclaimed.holder == 'run-old'
        assert 'INCIDENT' in caplog.text
        assert 'alice' in caplog.text
        assert manager.acquire('prod', 'database', 'run-new').holder == 'run-new'

    def test_reclaim_live_lock_requires_force(self, store):
        manager = LockManager(store, timeout=60)
        manager.acquire('prod', 'database', 'run-1')
        with pytest.raises(LockBusy):
            manager.reclaim('prod', 'database', operator='alice')
        assert manager.reclaim('prod', 'database', operator='alice', force=True).holder == 'run-1'

    def test_reclaim_nothing(self, store):
        assert LockManager(store).reclaim('prod', 'database', operator='alice') is None

    def test_acquire_wait_times_out(self, store):
        manager = LockManager(store, poll_interval=0.01)
        manager.acquire('prod', 'database', 'run-1')
        with pytest.raises(LockBusy):
            manager.acquire_wait('prod', 'database', 'run-2', wait=0.05)

    def test_acquire_wait_gets_released_lock(self, store):
        manager = LockManager(store, poll_interval=0.01)
        held = manager.acquire('prod', 'database', 'run-1')
        timer = threading.Timer(0.05, manager.release, args=(held,))
        timer.start()
        lock = manager.acquire_wait('prod', 'database', 'run-2', wait=5)
        timer.join()
        assert lock.holder == 'run-2'

    def test_heartbeat_after_reclaim_raises(self, store):
        manager = LockManager(store, timeout=60)
        lock = manager.acquire('prod', 'database', 'run-1')
        manager.reclaim('prod', 'database', operator='alice', force=True)
        manager.acquire('prod', 'database', 'run-2')
        with pytest.raises(LockBusy):
            manager.heartbeat(lock)

    def test_held_releases_on_exception(self, store):
        manager = LockManager(store)
        with pytest.raises(RuntimeError):
            with manager.held('prod', 'database', 'run-1'):
                assert store.read('prod', 'database').holder == 'run-1'
                raise RuntimeError('apply crashed')
        assert store.read('prod', 'database') is None

    def test_held_heartbeats(self, store):
        manager = LockManager(store, timeout=0.3)
        with manager.held('prod', 'database', 'run-1') as lock:
            time.sleep(0.35)
            current = store.read('prod', 'database')
            assert current.heartbeat_at > lock.heartbeat_at

    def test_concurrent_acquisition_single_winner(self, store):
        manager = LockManager(store)
        barrier = threading.Barrier(8)
        winners: list[str] = []
        losers: list[str] = []
        mutex = threading.Lock()

        def contend(holder):
            barrier.wait()
            try:
                manager.acquire('prod', 'database', holder)
            except LockBusy:
                with mutex:
                    losers.append(holder)
            else:
                with mutex:
                    winners.append(holder)

        threads = [threading.Thread(target=contend, args=(f'run-{i}',)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert store.read('prod', 'database').holder == winners[0]
