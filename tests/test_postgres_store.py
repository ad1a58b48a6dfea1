"""Tests for the Postgres state store's pool wiring, with the pools mocked out."""

from unittest.mock import MagicMock, patch

import pytest

from hand_pipeline.adapters.postgres_adapter import PostgresStateStore


@pytest.fixture
def pools():
    data_pool, lock_pool = MagicMock(name="data_pool"), MagicMock(name="lock_pool")
    with patch("hand_pipeline.adapters.postgres_adapter.ConnectionPool", side_effect=[data_pool, lock_pool]) as factory:
        yield factory, data_pool, lock_pool


def test_connect_opens_separate_lock_pool(pools):
    factory, data_pool, lock_pool = pools
    store = PostgresStateStore("postgresql://pipeline@db/pipeline", pool_size=5, lock_pool_size=3)

    store.connect()

    assert store.pool is data_pool
    assert store.lock_pool is lock_pool
    assert factory.call_args_list[0].kwargs["max_size"] == 5
    assert factory.call_args_list[1].kwargs["max_size"] == 3


def test_lock_pool_size_defaults_to_pool_size():
    assert PostgresStateStore("postgresql://db/pipeline", pool_size=7).lock_pool_size == 7


def test_stream_lock_holds_lock_pool_connection(pools):
    _, data_pool, lock_pool = pools
    store = PostgresStateStore("postgresql://pipeline@db/pipeline")
    store.connect()
    data_pool.connection.reset_mock()

    with store.stream_lock("stream-1"):
        lock_conn = lock_pool.connection.return_value.__enter__.return_value
        lock_conn.execute.assert_called_once_with("SELECT pg_advisory_lock(hashtext(%s))", ("stream-1",))

    lock_conn.execute.assert_called_with("SELECT pg_advisory_unlock(hashtext(%s))", ("stream-1",))
    data_pool.connection.assert_not_called()


def test_stream_lock_released_on_error(pools):
    _, _, lock_pool = pools
    store = PostgresStateStore("postgresql://pipeline@db/pipeline")
    store.connect()

    with pytest.raises(RuntimeError):
        with store.stream_lock("stream-1"):
            raise RuntimeError("remote call failed")

    lock_conn = lock_pool.connection.return_value.__enter__.return_value
    lock_conn.execute.assert_called_with("SELECT pg_advisory_unlock(hashtext(%s))", ("stream-1",))


def test_close_closes_both_pools(pools):
    _, data_pool, lock_pool = pools
    store = PostgresStateStore("postgresql://pipeline@db/pipeline")
    store.connect()

    store.close()

    data_pool.close.assert_called_once()
    lock_pool.close.assert_called_once()
