import threading

import pytest

from tusstore.errors import FileLockedError
from tusstore.memorylocker import MemoryLocker


def test_memory_locker():
    locker = MemoryLocker()

    lock1 = locker.new_lock("one")
    lock1.lock()
    with pytest.raises(FileLockedError):
        lock1.lock()

    lock2 = locker.new_lock("one")
    with pytest.raises(FileLockedError):
        lock2.lock()

    assert lock1.unlock() is None
    assert lock1.unlock() is None


def test_lock_can_be_taken_again_after_unlock():
    locker = MemoryLocker()
    lock = locker.new_lock("one")
    lock.lock()
    lock.unlock()
    other = locker.new_lock("one")
    other.lock()
    with pytest.raises(FileLockedError):
        lock.lock()


def test_different_ids_do_not_conflict():
    locker = MemoryLocker()
    locker.new_lock("one").lock()
    second = locker.new_lock("two")
    second.lock()
    with pytest.raises(FileLockedError):
        locker.new_lock("two").lock()


def test_separate_lockers_are_independent():
    first = MemoryLocker()
    second = MemoryLocker()
    first.new_lock("one").lock()
    second.new_lock("one").lock()
    with pytest.raises(FileLockedError):
        second.new_lock("one").lock()


def test_context_manager_releases_lock():
    locker = MemoryLocker()
    with locker.new_lock("one") as held:
        assert held.upload_id == "one"
        with pytest.raises(FileLockedError):
            locker.new_lock("one").lock()
    after = locker.new_lock("one")
    after.lock()
    with pytest.raises(FileLockedError):
        locker.new_lock("one").lock()


def test_context_manager_releases_on_exception():
    locker = MemoryLocker()
    with pytest.raises(RuntimeError):
        with locker.new_lock("one"):
            raise RuntimeError("boom")
    lock = locker.new_lock("one")
    lock.lock()
    with pytest.raises(FileLockedError):
        lock.lock()


def test_only_one_thread_acquires():
    locker = MemoryLocker()
    winners = []
    refused = []
    results_guard = threading.Lock()
    start = threading.Barrier(8)

    def attempt():
        lock = locker.new_lock("shared")
        start.wait()
        try:
            lock.lock()
        except FileLockedError as exc:
            with results_guard:
                refused.append(exc)
        else:
            with results_guard:
                winners.append(lock)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert len(refused) == 7
    assert winners[0].upload_id == "shared"
    assert all(exc.status_code == 423 for exc in refused)

    with pytest.raises(FileLockedError):
        locker.new_lock("shared").lock()
    winners[0].unlock()
    follower = locker.new_lock("shared")
    follower.lock()
    with pytest.raises(FileLockedError):
        locker.new_lock("shared").lock()