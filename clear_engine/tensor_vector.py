# clear_engine/tensor_vector.py

"""
Memory-compact storage for sequences of tensors that do not share a shape.

TensorVector packs N tensors into a single growable 1-D buffer and keeps two
parallel tables next to it:

    offsets: N + 1 entries, offsets[0] == 0, offsets[i+1] - offsets[i] == size(shapes[i])
    shapes:  N entries, the shape each slice is reinterpreted with

Indexing returns a NumPy view into the buffer (no copy). Holding thousands of
differently sized instances this way costs one allocation for the whole set
instead of one per instance.

InstVector combines an index array with two TensorVectors (data and label)
to hold DataInst records.
"""

from typing import List, Tuple

import numpy as np

from .data import REAL_T, DataInst
from .errors import ConfigError, OutOfRangeError

_INITIAL_CAPACITY = 64


class TensorVector:
    """
    Sequence of `ndim`-dimensional tensors carved out of one contiguous buffer.

    A view returned by indexing stays valid until the next push() that has to
    grow the buffer; after the load phase is over views are stable.
    """

    def __init__(self, ndim: int, dtype=REAL_T):
        self.ndim = ndim
        self.dtype = np.dtype(dtype)
        self._content = np.zeros(_INITIAL_CAPACITY, dtype=self.dtype)
        self.clear()

    def __len__(self) -> int:
        return len(self._shapes)

    def size(self) -> int:
        return len(self._shapes)

    def __getitem__(self, i: int) -> np.ndarray:
        return self.at(i)

    def at(self, i: int) -> np.ndarray:
        """Returns a view of the i-th tensor reshaped to its stored shape."""
        if not isinstance(i, (int, np.integer)) or i < 0 or i + 1 >= len(self._offsets):
            raise OutOfRangeError(f"TensorVector index {i} out of range (size {len(self)})")
        begin, end = self._offsets[i], self._offsets[i + 1]
        return self._content[begin:end].reshape(self._shapes[i])

    def back(self) -> np.ndarray:
        if not self._shapes:
            raise OutOfRangeError("TensorVector.back() called on an empty vector")
        return self.at(len(self) - 1)

    def push(self, shape: Tuple[int, ...]) -> None:
        """Appends a zero-filled tensor of the given shape."""
        shape = tuple(int(d) for d in shape)
        if len(shape) != self.ndim:
            raise ConfigError(f"TensorVector expects {self.ndim}-d shapes, got {shape}")
        begin = self._offsets[-1]
        end = begin + int(np.prod(shape, dtype=np.int64))
        self._reserve(end)
        self._content[begin:end] = 0
        self._shapes.append(shape)
        self._offsets.append(end)

    def clear(self) -> None:
        """Drops every tensor but keeps the allocated buffer for reuse."""
        self._offsets: List[int] = [0]
        self._shapes: List[Tuple[int, ...]] = []

    @property
    def offsets(self) -> Tuple[int, ...]:
        return tuple(self._offsets)

    @property
    def shapes(self) -> Tuple[Tuple[int, ...], ...]:
        return tuple(self._shapes)

    @property
    def capacity(self) -> int:
        return self._content.size

    def _reserve(self, needed: int) -> None:
        if needed <= self._content.size:
            return
        new_capacity = max(needed, 2 * self._content.size)
        grown = np.zeros(new_capacity, dtype=self.dtype)
        used = self._offsets[-1]
        grown[:used] = self._content[:used]
        self._content = grown


class InstVector:
    """
    Holds DataInst records (index, 3-d data, 1-d label) of non-uniform shape.

    Example:
        store = InstVector()
        store.push(7, (1, 28, 28), (1,))
        store.back().data[:] = image
        store.back().label[0] = 3.0
    """

    def __init__(self):
        self._index: List[int] = []
        self._data = TensorVector(3)
        self._label = TensorVector(1)

    def __len__(self) -> int:
        return len(self._index)

    def size(self) -> int:
        return len(self._index)

    def __getitem__(self, i: int) -> DataInst:
        return self.at(i)

    def at(self, i: int) -> DataInst:
        if not isinstance(i, (int, np.integer)) or i < 0 or i >= len(self._index):
            raise OutOfRangeError(f"InstVector index {i} out of range (size {len(self)})")
        return DataInst(index=self._index[i], data=self._data[i], label=self._label[i])

    def back(self) -> DataInst:
        if not self._index:
            raise OutOfRangeError("InstVector.back() called on an empty vector")
        return self.at(len(self) - 1)

    def push(self, index: int, data_shape: Tuple[int, int, int], label_shape: Tuple[int]) -> None:
        if index < 0:
            raise ConfigError(f"Instance index must be unsigned, got {index}")
        self._index.append(int(index))
        self._data.push(data_shape)
        self._label.push(label_shape)

    def clear(self) -> None:
        self._index.clear()
        self._data.clear()
        self._label.clear()

    @property
    def data(self) -> TensorVector:
        return self._data

    @property
    def label(self) -> TensorVector:
        return self._label
