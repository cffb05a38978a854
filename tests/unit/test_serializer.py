"""
Unit tests for per-project mutual exclusion.
"""

import threading

import pytest

from harbormaster.core.errors import ProjectBusyError
from harbormaster.core.serializer import ProjectLocks


def test_idle_then_busy_then_idle():
    locks = ProjectLocks()
    assert locks.state("demo") is None

    with locks.hold("demo", "up"):
        assert locks.state("demo") == "up"

    assert locks.state("demo") is None


def test_contention_is_rejected_not_queued():
    locks = ProjectLocks()
    with locks.hold("demo", "up"):
        with pytest.raises(ProjectBusyError) as info:
            locks.try_acquire("demo", "scale")
    assert info.value.project == "demo"
    assert info.value.operation == "up"


def test_different_projects_are_independent():
    locks = ProjectLocks()
    with locks.hold("a", "up"):
        with locks.hold("b", "down"):
            assert locks.state("a") == "up"
            assert locks.state("b") == "down"


def test_released_on_exception():
    locks = ProjectLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("demo", "down"):
            raise RuntimeError("boom")
    assert locks.state("demo") is None


def test_only_one_thread_wins():
    locks = ProjectLocks()
    barrier = threading.Barrier(8)
    winners = []
    losers = []

    def contend():
        barrier.wait()
        try:
            locks.try_acquire("demo", "up")
            winners.append(1)
        except ProjectBusyError:
            losers.append(1)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 7
