# clear_engine/data.py

"""
Data records and iterator interfaces that feed the layer graph.

Two record types flow out of iterators:
    DataInst  - one training instance (index, data C x H x W, label)
    DataBatch - a fixed-shape mini-batch (N x C x H x W data, N x label_width labels)

A DataBatch returned by an iterator is a view into memory the iterator owns.
It is only valid until the next call to `next()`; copy it if it must live longer.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import parse_bool, parse_int
from .errors import ConfigError, UsageError

REAL_T = np.float32


@dataclass
class DataInst:
    """A single instance. `index` is its identity, stable across shuffling."""
    index: int
    data: np.ndarray   # (C, H, W)
    label: np.ndarray  # (label_width,)


@dataclass
class DataBatch:
    data: np.ndarray                   # (batch_size, C, H, W)
    label: np.ndarray                  # (batch_size, label_width)
    inst_index: Optional[np.ndarray]   # (batch_size,) identities, or None
    batch_size: int
    num_batch_padd: int = 0            # trailing rows that repeat the start of the epoch


class DataIterator:
    """
    Base class for restartable, finite-per-epoch iterators.

    Protocol:
        it.set_param(name, value)   # any number of times
        it.init()                   # once
        it.before_first()
        while it.next():
            use(it.value())

    Iterating with a for-loop rewinds first and runs one epoch.
    """

    def set_param(self, name: str, value: str) -> None:
        """Unrecognized keys are ignored."""

    def init(self) -> None:
        pass

    def before_first(self) -> None:
        raise NotImplementedError("Each iterator must implement before_first.")

    def next(self) -> bool:
        raise NotImplementedError("Each iterator must implement next.")

    def value(self):
        raise NotImplementedError("Each iterator must implement value.")

    def __iter__(self):
        self.before_first()
        while self.next():
            yield self.value()


# --- Instance iteration ---

class InstIterator(DataIterator):
    """
    Iterates over the DataInst records of an InstVector.

    With shuffle=1 the visiting order is a seeded permutation; the store
    itself is never reordered.
    """

    def __init__(self, store):
        self.store = store
        self.shuffle = False
        self.seed = 0
        self._order = None
        self._loc = 0
        self._current = None

    def set_param(self, name, value):
        if name == 'shuffle':
            self.shuffle = parse_bool(name, value)
        elif name == 'seed_data':
            self.seed = parse_int(name, value)

    def init(self):
        n = len(self.store)
        if self.shuffle:
            self._order = np.random.RandomState(self.seed).permutation(n)
        else:
            self._order = np.arange(n)
        self._loc = 0
        logging.debug(f"InstIterator: {n} instances, shuffle={int(self.shuffle)}")

    def before_first(self):
        if self._order is None:
            raise UsageError("InstIterator.init() must be called before iterating")
        self._loc = 0

    def next(self):
        if self._order is None:
            raise UsageError("InstIterator.init() must be called before iterating")
        if self._loc >= len(self._order):
            return False
        self._current = self.store[int(self._order[self._loc])]
        self._loc += 1
        return True

    def value(self) -> DataInst:
        if self._current is None:
            raise UsageError("InstIterator.value() called before a successful next()")
        return self._current


# --- Batch assembly ---

class BatchAdaptIterator(DataIterator):
    """
    Groups instances from a DataInst iterator into fixed-shape batches.

    Parameters:
        batch_size:  rows per batch (required).
        round_batch: 0 drops a trailing partial batch; 1 completes it by wrapping
                     around to the start of the epoch, recording the number of
                     wrapped rows in DataBatch.num_batch_padd.
        label_width: number of label values copied per instance (default 1).

    Any other parameter is forwarded to the wrapped iterator.
    """

    def __init__(self, base: DataIterator):
        self.base = base
        self.batch_size = 0
        self.round_batch = False
        self.label_width = 1
        self.silent = False
        self._out = None
        self._data_shape = None
        self._at_end = False

    def set_param(self, name, value):
        if name == 'batch_size':
            self.batch_size = parse_int(name, value)
        elif name == 'round_batch':
            self.round_batch = parse_bool(name, value)
        elif name == 'label_width':
            self.label_width = parse_int(name, value)
        elif name == 'silent':
            self.silent = parse_bool(name, value)
        self.base.set_param(name, value)

    def init(self):
        if self.batch_size <= 0:
            raise ConfigError(f"BatchAdaptIterator: batch_size must be positive, got {self.batch_size}")
        if self.label_width <= 0:
            raise ConfigError(f"BatchAdaptIterator: label_width must be positive, got {self.label_width}")
        self.base.init()
        self.base.before_first()
        if not self.base.next():
            raise ConfigError("BatchAdaptIterator: the wrapped iterator produced no instances")
        self._data_shape = tuple(self.base.value().data.shape)
        bs = self.batch_size
        self._out = DataBatch(
            data=np.zeros((bs,) + self._data_shape, dtype=REAL_T),
            label=np.zeros((bs, self.label_width), dtype=REAL_T),
            inst_index=np.zeros(bs, dtype=np.uint32),
            batch_size=bs,
        )
        self.before_first()
        if not self.silent:
            logging.info(f"BatchAdaptIterator: batch shape={self._out.data.shape}, "
                         f"round_batch={int(self.round_batch)}")

    def before_first(self):
        if self._out is None:
            raise UsageError("BatchAdaptIterator.init() must be called before iterating")
        self.base.before_first()
        self._at_end = False

    def next(self):
        if self._out is None:
            raise UsageError("BatchAdaptIterator.init() must be called before iterating")
        if self._at_end:
            return False
        top = 0
        while top < self.batch_size and self.base.next():
            self._copy_row(top, self.base.value())
            top += 1
        if top == self.batch_size:
            self._out.num_batch_padd = 0
            return True
        self._at_end = True
        if top == 0 or not self.round_batch:
            return False
        # complete the tail batch with instances from the start of the epoch
        num_padd = self.batch_size - top
        self.base.before_first()
        while top < self.batch_size:
            if not self.base.next():
                self.base.before_first()
                continue
            self._copy_row(top, self.base.value())
            top += 1
        self._out.num_batch_padd = num_padd
        return True

    def value(self) -> DataBatch:
        if self._out is None:
            raise UsageError("BatchAdaptIterator.init() must be called before iterating")
        return self._out

    def _copy_row(self, row: int, inst: DataInst) -> None:
        if tuple(inst.data.shape) != self._data_shape:
            raise ConfigError(f"BatchAdaptIterator: instance {inst.index} has shape "
                              f"{tuple(inst.data.shape)}, batch expects {self._data_shape}")
        if inst.label.size < self.label_width:
            raise ConfigError(f"BatchAdaptIterator: instance {inst.index} has {inst.label.size} "
                              f"label values, label_width is {self.label_width}")
        self._out.data[row] = inst.data
        self._out.label[row] = inst.label[:self.label_width]
        self._out.inst_index[row] = inst.index
