import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from sensorhub.db import Store
from sensorhub.errors import StoreUnavailable


def _connection_lost():
    return OperationalError("SELECT 1", {}, Exception("connection lost"))


def test_ping(store):
    assert store.ping() is True


def test_retries_then_recovers_with_fresh_pool(store):
    engines = []
    calls = {"n": 0}

    def work(session):
        engines.append(store.engine)
        calls["n"] += 1
        if calls["n"] < 3:
            raise _connection_lost()
        return "ok"

    assert store.run(work) == "ok"
    assert calls["n"] == 3
    # the pool is rebuilt between attempts
    assert engines[0] is not engines[1] is not engines[2]


def test_exhausted_retries_surface_store_unavailable(store):
    calls = {"n": 0}

    def work(session):
        calls["n"] += 1
        raise _connection_lost()

    with pytest.raises(StoreUnavailable):
        store.run(work)
    assert calls["n"] == store.retries


def test_non_connection_errors_are_not_retried(store):
    calls = {"n": 0}

    def work(session):
        calls["n"] += 1
        raise IntegrityError("INSERT", {}, Exception("duplicate"))

    with pytest.raises(IntegrityError):
        store.run(work)
    assert calls["n"] == 1


def test_in_memory_store_shares_one_connection():
    mem = Store("sqlite://", retries=1)
    mem.init_db()
    assert mem.ping()
    mem.dispose()
