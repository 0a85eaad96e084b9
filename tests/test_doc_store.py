import threading
import time

import pytest

from quiz_engine.exceptions import TransactionConflict
from quiz_engine.store import InMemoryDocStore


@pytest.fixture
def docs():
    return InMemoryDocStore()


def test_missing_document(docs):
    assert docs.get_versioned("sessions/q/meta") == (None, 0)
    assert docs.get("sessions/q/meta") is None


def test_set_bumps_version(docs):
    first = docs.set("a/b", {"x": 1})
    second = docs.set("a/b", {"x": 2})

    assert (first.version, second.version) == (1, 2)
    assert docs.get_versioned("a/b") == ({"x": 2}, 2)


def test_reads_are_private_copies(docs):
    docs.set("a/b", {"items": [1]})

    doc = docs.get("a/b")
    doc["items"].append(2)

    assert docs.get("a/b") == {"items": [1]}


def test_transact_abort_writes_nothing(docs):
    docs.set("a/b", {"x": 1})

    ack = docs.transact("a/b", lambda current: None)

    assert not ack.committed
    assert ack.value == {"x": 1}
    assert ack.version == 1


def test_transact_create_if_absent(docs):
    create = lambda current: {"n": 0} if current is None else None  # noqa: E731

    assert docs.transact("a/b", create).committed
    assert not docs.transact("a/b", create).committed


def test_transact_retries_on_conflict(docs):
    docs.set("counter", {"n": 0})
    calls = []

    def bump(current):
        calls.append(current["n"])
        if len(calls) == 1:
            # Another writer sneaks in between read and commit
            docs.set("counter", {"n": 10})
        return {"n": current["n"] + 1}

    ack = docs.transact("counter", bump)

    assert ack.committed
    assert ack.retries == 1
    assert calls == [0, 10]
    assert docs.get("counter") == {"n": 11}


def test_transact_gives_up_after_max_retries(docs):
    docs.set("counter", {"n": 0})

    def always_conflicting(current):
        docs.set("counter", {"n": current["n"] + 100})
        return {"n": -1}

    with pytest.raises(TransactionConflict):
        docs.transact("counter", always_conflicting, max_retries=3)


def test_concurrent_increments_lose_nothing(docs):
    docs.set("counter", {"n": 0})

    def worker():
        for _ in range(50):
            docs.transact("counter", lambda c: {"n": c["n"] + 1}, max_retries=1000)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert docs.get("counter") == {"n": 400}


def test_tree_operations(docs):
    docs.set("sessions/q1/meta", {"status": "active"})
    docs.set("sessions/q1/participants/u1", {"user_id": "u1"})
    docs.set("sessions/q1/participants/u2", {"user_id": "u2"})
    docs.set("sessions/q10/meta", {"status": "active"})

    assert docs.children("sessions") == ["q1", "q10"]
    assert docs.children("sessions/q1/participants") == ["u1", "u2"]
    assert set(docs.read_tree("sessions/q1")) == {"meta", "participants/u1", "participants/u2"}

    assert docs.delete_tree("sessions/q1") == 3
    assert docs.read_tree("sessions/q1") == {}
    assert docs.get("sessions/q10/meta") == {"status": "active"}


def test_wait_for_version_already_reached(docs):
    ack = docs.set("a/b", {"x": 1})

    assert docs.wait_for_version("a/b", ack.version, timeout=0.01)


def test_wait_for_version_deleted_document_counts_as_reached(docs):
    assert docs.wait_for_version("gone", 7, timeout=0.01)


def test_wait_for_version_times_out(docs):
    docs.set("a/b", {"x": 1})

    started = time.monotonic()
    assert not docs.wait_for_version("a/b", 2, timeout=0.05)
    assert time.monotonic() - started >= 0.04


def test_wait_for_version_wakes_on_write(docs):
    docs.set("a/b", {"x": 1})
    writer = threading.Timer(0.05, lambda: docs.set("a/b", {"x": 2}))
    writer.start()

    reached = docs.wait_for_version("a/b", 2, timeout=5)
    writer.join()

    assert reached
