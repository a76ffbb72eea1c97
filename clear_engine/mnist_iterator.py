# clear_engine/mnist_iterator.py

"""
Batch source over the MNIST binary format.

File layout (all integers are big-endian int32):
    image file: magic, count, rows, cols, then count*rows*cols unsigned bytes (row-major)
    label file: magic, count, then count unsigned bytes

The whole dataset is loaded once into one contiguous array. Batches handed
out by `next()`/`value()` are read-only views into that array, so they are only valid
until the next call to `next()`.
"""

import logging
import os
from typing import List

import numpy as np

from .config import parse_bool, parse_int
from .data import REAL_T, DataBatch, DataIterator
from .errors import ConfigError, FormatError, UsageError
from .tensor_vector import InstVector

RAND_MAGIC = 0            # base seed, `seed_data` is added to it
PIXEL_SCALE = 1.0 / 256.0  # raw bytes are mapped to [0, 1)
IMAGE_MAGIC = 2051
LABEL_MAGIC = 2049


def _read_exact(f, nbytes: int, path: str, what: str) -> bytes:
    # compare with the file size first, header counts are not trusted
    remaining = os.fstat(f.fileno()).st_size - f.tell()
    if remaining < nbytes:
        raise FormatError(f"{path}: truncated {what}, expected {nbytes} bytes, got {max(remaining, 0)}")
    buf = f.read(nbytes)
    if len(buf) != nbytes:
        raise FormatError(f"{path}: truncated {what}, expected {nbytes} bytes, got {len(buf)}")
    return buf


def _read_header(f, num_ints: int, path: str) -> List[int]:
    buf = _read_exact(f, 4 * num_ints, path, "header")
    return [int(v) for v in np.frombuffer(buf, dtype='>i4')]


def read_mnist_images(path: str) -> np.ndarray:
    """Returns a (count, rows, cols) uint8 array."""
    with open(path, 'rb') as f:
        magic, count, rows, cols = _read_header(f, 4, path)
        if magic != IMAGE_MAGIC:
            logging.warning(f"{path}: unexpected image magic {magic}, expected {IMAGE_MAGIC}")
        if count < 0 or rows <= 0 or cols <= 0:
            raise FormatError(f"{path}: invalid image header count={count}, rows={rows}, cols={cols}")
        payload = _read_exact(f, count * rows * cols, path, "image payload")
    return np.frombuffer(payload, dtype=np.uint8).reshape(count, rows, cols)


def read_mnist_labels(path: str) -> np.ndarray:
    """Returns a (count,) uint8 array."""
    with open(path, 'rb') as f:
        magic, count = _read_header(f, 2, path)
        if magic != LABEL_MAGIC:
            logging.warning(f"{path}: unexpected label magic {magic}, expected {LABEL_MAGIC}")
        if count < 0:
            raise FormatError(f"{path}: invalid label count {count}")
        payload = _read_exact(f, count, path, "label payload")
    return np.frombuffer(payload, dtype=np.uint8)


def _read_only(view: np.ndarray) -> np.ndarray:
    view.setflags(write=False)
    return view


class MNISTIterator(DataIterator):
    """
    Sequential mini-batches over an MNIST image/label file pair.

    Parameters (all strings, unknown names are ignored):
        path_img, path_label: dataset files
        batch_size:   rows per batch
        input_flat:   1 -> batches are (N, 1, 1, rows*cols) (default); 0 -> (N, 1, rows, cols)
        shuffle:      1 -> reorder once at init with a seeded permutation
        seed_data:    added to RAND_MAGIC to seed the shuffle
        index_offset: added to each instance's position to form its identity
        silent:       1 -> no load summary

    Only full batches are produced; a trailing remainder smaller than
    batch_size is skipped for the epoch.
    """

    def __init__(self):
        self.silent = False
        self.batch_size = 0
        self.mode = 1
        self.shuffle = False
        self.inst_offset = 0
        self.path_img = None
        self.path_label = None
        self.seed = RAND_MAGIC

        self._img = None      # (count, rows, cols) float32
        self._labels = None   # (count,) float32
        self._inst = None     # (count,) uint32 identities in storage order
        self._batch_shape = None
        self._loc = 0
        self._out = None

    def set_param(self, name, value):
        if name == 'silent':
            self.silent = parse_bool(name, value)
        elif name == 'batch_size':
            self.batch_size = parse_int(name, value)
        elif name == 'input_flat':
            self.mode = parse_int(name, value)
        elif name == 'shuffle':
            self.shuffle = parse_bool(name, value)
        elif name == 'index_offset':
            self.inst_offset = parse_int(name, value)
        elif name == 'path_img':
            self.path_img = value
        elif name == 'path_label':
            self.path_label = value
        elif name == 'seed_data':
            self.seed = RAND_MAGIC + parse_int(name, value)

    def init(self):
        if not self.path_img or not self.path_label:
            raise ConfigError("MNISTIterator: path_img and path_label must be set")
        if self.batch_size <= 0:
            raise ConfigError(f"MNISTIterator: batch_size must be positive, got {self.batch_size}")
        if self.inst_offset < 0:
            raise ConfigError(f"MNISTIterator: index_offset must be non-negative, got {self.inst_offset}")
        self._load_image()
        self._load_label()
        count, rows, cols = self._img.shape
        if self._labels.shape[0] != count:
            raise FormatError(f"MNISTIterator: {count} images but {self._labels.shape[0]} labels")
        if self.batch_size > count:
            raise ConfigError(f"MNISTIterator: batch_size {self.batch_size} exceeds dataset size {count}")

        if self.mode == 1:
            self._batch_shape = (self.batch_size, 1, 1, rows * cols)
        else:
            self._batch_shape = (self.batch_size, 1, rows, cols)
        if self.shuffle:
            self._shuffle()
        self._loc = 0
        if not self.silent:
            logging.info(f"MNISTIterator: load {count} images, shuffle={int(self.shuffle)}, "
                         f"shape={','.join(str(d) for d in self._batch_shape)}")

    def before_first(self):
        self._check_ready()
        self._loc = 0

    def next(self):
        self._check_ready()
        end = self._loc + self.batch_size
        if end > self._img.shape[0]:
            return False
        self._out = DataBatch(
            data=_read_only(self._img[self._loc:end].reshape(self._batch_shape)),
            label=_read_only(self._labels[self._loc:end].reshape(self.batch_size, 1)),
            inst_index=_read_only(self._inst[self._loc:end]),
            batch_size=self.batch_size,
        )
        self._loc = end
        return True

    def value(self) -> DataBatch:
        self._check_ready()
        if self._out is None:
            raise UsageError("MNISTIterator.value() called before a successful next()")
        return self._out

    @property
    def num_instances(self) -> int:
        self._check_ready()
        return self._img.shape[0]

    def to_instances(self) -> InstVector:
        """Copies the loaded dataset, in its current order, into an InstVector."""
        self._check_ready()
        count, rows, cols = self._img.shape
        store = InstVector()
        for i in range(count):
            store.push(int(self._inst[i]), (1, rows, cols), (1,))
        # push() may have re-based earlier slots, fill once the buffer is final
        for i in range(count):
            inst = store[i]
            inst.data[0] = self._img[i]
            inst.label[0] = self._labels[i]
        return store

    # --- loading ---

    def _load_image(self):
        raw = read_mnist_images(self.path_img)
        self._img = raw.astype(REAL_T) * REAL_T(PIXEL_SCALE)

    def _load_label(self):
        raw = read_mnist_labels(self.path_label)
        self._labels = raw.astype(REAL_T)
        self._inst = np.arange(raw.shape[0], dtype=np.uint32) + np.uint32(self.inst_offset)

    def _shuffle(self):
        rnd = np.random.RandomState(self.seed)
        rnd.shuffle(self._inst)
        ridx = (self._inst - np.uint32(self.inst_offset)).astype(np.int64)
        # reordered copies, then copy back so storage stays one array
        tmp_img = self._img[ridx]
        tmp_label = self._labels[ridx]
        self._img[:] = tmp_img
        self._labels[:] = tmp_label

    def _check_ready(self):
        if self._img is None:
            raise UsageError("MNISTIterator.init() must be called before iterating")
