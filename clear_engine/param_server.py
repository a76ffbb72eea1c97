# clear_engine/param_server.py

"""
Parameter store used by asynchronous updaters.

Values are addressed by integer keys (see updater.encode_data_key). A push
contributes one device's gradient to the current round of a key; a round is
complete once every device has pushed, and its value is the sum of the
pushed gradients. Pulling with the ticket returned by push blocks until that
round is complete.
"""

import logging
import threading
from typing import Dict, Optional, Tuple

import numpy as np

from .data import REAL_T
from .errors import ConfigError, InvalidKeyError


class ParamStore:
    """Interface of a key -> tensor store. Transport is up to the implementation."""

    def init_key(self, key: int, shape: Tuple[int, ...]) -> None:
        raise NotImplementedError

    def push(self, key: int, value: np.ndarray) -> int:
        """Contributes `value` to the current round of `key`; returns a ticket for pull()."""
        raise NotImplementedError

    def pull(self, key: int, ticket: Optional[int] = None) -> np.ndarray:
        """Returns the aggregated value, waiting for round `ticket` if given."""
        raise NotImplementedError


class _KeyState:
    def __init__(self, shape):
        self.shape = shape
        self.accum = np.zeros(shape, dtype=REAL_T)
        self.value = np.zeros(shape, dtype=REAL_T)
        self.num_pushed = 0
        self.rounds_done = 0


class LocalParamStore(ParamStore):
    """
    In-process store shared by `num_devices` workers.

    All methods are thread-safe. pull() blocks on a condition variable until the
    requested round is complete, so with num_devices == 1 it never waits.
    """

    def __init__(self, num_devices: int = 1):
        if num_devices <= 0:
            raise ConfigError(f"LocalParamStore: num_devices must be positive, got {num_devices}")
        self.num_devices = num_devices
        self._keys: Dict[int, _KeyState] = {}
        self._cond = threading.Condition()

    def init_key(self, key, shape):
        shape = tuple(int(d) for d in shape)
        with self._cond:
            state = self._keys.get(key)
            if state is None:
                self._keys[key] = _KeyState(shape)
                logging.debug(f"LocalParamStore: init key {key} shape={shape}")
            elif state.shape != shape:
                raise ConfigError(f"LocalParamStore: key {key} already has shape {state.shape}, got {shape}")

    def push(self, key, value):
        with self._cond:
            state = self._get(key)
            if value.shape != state.shape:
                raise ConfigError(f"LocalParamStore: push to key {key} with shape {value.shape}, "
                                  f"expected {state.shape}")
            ticket = state.rounds_done
            state.accum += value
            state.num_pushed += 1
            if state.num_pushed == self.num_devices:
                state.value = state.accum
                state.accum = np.zeros(state.shape, dtype=REAL_T)
                state.num_pushed = 0
                state.rounds_done += 1
                self._cond.notify_all()
            return ticket

    def pull(self, key, ticket=None):
        with self._cond:
            state = self._get(key)
            if ticket is not None:
                self._cond.wait_for(lambda: state.rounds_done > ticket)
            return state.value.copy()

    def keys(self):
        with self._cond:
            return sorted(self._keys)

    def _get(self, key) -> _KeyState:
        state = self._keys.get(key)
        if state is None:
            raise InvalidKeyError(f"LocalParamStore: key {key} was never initialized")
        return state
