"""In-process parameter store: per-round sums and blocking pulls."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from clear_engine.errors import ConfigError, InvalidKeyError
from clear_engine.param_server import LocalParamStore


def test_single_device_round_completes_on_push():
    store = LocalParamStore()
    store.init_key(4, (2, 3))
    ticket = store.push(4, np.ones((2, 3), dtype=np.float32))
    assert ticket == 0
    np.testing.assert_array_equal(store.pull(4, ticket), np.ones((2, 3)))
    assert store.push(4, np.full((2, 3), 2.0, dtype=np.float32)) == 1
    np.testing.assert_array_equal(store.pull(4), np.full((2, 3), 2.0))


def test_pull_returns_a_copy():
    store = LocalParamStore()
    store.init_key(0, (1, 2))
    store.push(0, np.ones((1, 2), dtype=np.float32))
    value = store.pull(0)
    value[...] = 9
    np.testing.assert_array_equal(store.pull(0), np.ones((1, 2)))


def test_two_devices_sum_their_pushes():
    store = LocalParamStore(num_devices=2)
    store.init_key(1, (2,))
    results = [None, None]

    def worker(rank):
        ticket = store.push(1, np.full((2,), rank + 1.0, dtype=np.float32))
        results[rank] = store.pull(1, ticket)

    threads = [threading.Thread(target=worker, args=(rank,)) for rank in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert not any(t.is_alive() for t in threads)
    for value in results:
        np.testing.assert_array_equal(value, [3.0, 3.0])


def test_pull_waits_for_the_round():
    store = LocalParamStore(num_devices=2)
    store.init_key(0, (1,))
    ticket = store.push(0, np.ones((1,), dtype=np.float32))
    done = threading.Event()
    got = []

    def puller():
        got.append(store.pull(0, ticket))
        done.set()

    t = threading.Thread(target=puller)
    t.start()
    assert not done.wait(timeout=0.1)
    store.push(0, np.ones((1,), dtype=np.float32))
    assert done.wait(timeout=5)
    t.join(timeout=5)
    np.testing.assert_array_equal(got[0], [2.0])


def test_unknown_key():
    store = LocalParamStore()
    with pytest.raises(InvalidKeyError):
        store.pull(8)
    with pytest.raises(KeyError):
        store.push(8, np.zeros((1,), dtype=np.float32))


def test_shape_checks():
    store = LocalParamStore()
    store.init_key(0, (2, 2))
    store.init_key(0, (2, 2))
    assert store.keys() == [0]
    with pytest.raises(ConfigError):
        store.init_key(0, (4,))
    with pytest.raises(ConfigError):
        store.push(0, np.zeros((4,), dtype=np.float32))


def test_num_devices_must_be_positive():
    with pytest.raises(ConfigError):
        LocalParamStore(num_devices=0)
