# clear_engine/updater.py

"""
Parameter updaters.

Layers only accumulate gradients; an Updater owns one (weight, gradient) pair
and turns the accumulated gradient into a weight step.

Synchronous updaters (SGDUpdater, AdaGradUpdater) are called with
`update(epoch)` once the whole backward pass is done.

AsyncUpdater wraps a synchronous updater and a parameter store. The training
loop brackets each layer's backprop with it:

    before_all_forward()            # wait until the weight is current again
    ...forward of every layer...
    before_backprop(nodes_in, nodes_out)
    layer.backprop(...)
    after_backprop(do_update, epoch)  # push gradient / pull / apply, on a worker thread
    ...backprop of earlier layers runs while that is in flight...
    update_wait()                   # join the in-flight task

Terminology: an epoch is one mini-batch step, a round is one pass over the data.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

import numpy as np

from .config import parse_float, parse_int, parse_bool
from .data import REAL_T
from .errors import ConfigError, InvalidKeyError, UsageError
from .layer import Visitor
from .param_server import ParamStore
from .registry import Registry

# --- Parameter keys ---

# key(layer[i].wmat) == i * DATA_KEY_STEP + 0, key(layer[i].bias) == i * DATA_KEY_STEP + 1;
# the remaining offsets are reserved for future weight roles
DATA_KEY_STEP = 4
_TAG_OFFSETS = {'wmat': 0, 'bias': 1}
_OFFSET_TAGS = {offset: tag for tag, offset in _TAG_OFFSETS.items()}


def encode_data_key(layer_index: int, tag: str) -> int:
    """Encodes a layer index and weight tag into a unique parameter key."""
    if tag not in _TAG_OFFSETS:
        raise InvalidKeyError(f"encode_data_key: only support weight tag wmat or bias, got '{tag}'")
    if layer_index < 0:
        raise InvalidKeyError(f"encode_data_key: layer index must be non-negative, got {layer_index}")
    return layer_index * DATA_KEY_STEP + _TAG_OFFSETS[tag]


def decode_tag(key: int) -> str:
    """Decodes the weight tag from a parameter key."""
    offset = key % DATA_KEY_STEP
    if key < 0 or offset not in _OFFSET_TAGS:
        raise InvalidKeyError(f"decode_tag: invalid key {key}")
    return _OFFSET_TAGS[offset]


def decode_layer_index(key: int) -> int:
    decode_tag(key)
    return key // DATA_KEY_STEP


# --- Hyper-parameters ---

LR_SCHEDULES = ('constant', 'expdecay', 'polydecay', 'factor')


class UpdaterParam:
    """
    Hyper-parameters of one updater.

    A name prefixed with a weight tag ('wmat:lr', 'bias:wd') only applies to
    updaters of that tag. An untagged 'wd' only reaches 'wmat' updaters, so
    biases are not decayed unless asked for explicitly.
    """

    def __init__(self, tag: str):
        self.tag = tag
        self.base_lr = 0.01
        self.wd = 0.0
        self.momentum = 0.9
        self.clip_gradient = 0.0
        self.eps = 1e-8
        self.lr_schedule = 'constant'
        self.lr_gamma = 0.5
        self.lr_alpha = 0.5
        self.lr_step = 1
        self.lr_factor = 0.1
        self.lr_minimum = 0.0
        self.start_epoch = 0
        self.round_index = 0
        self.silent = False

    def set_param(self, name: str, value: str) -> None:
        prefix, sep, rest = name.partition(':')
        tagged = False
        if sep and prefix in _TAG_OFFSETS:
            if prefix != self.tag:
                return
            name, tagged = rest, True
        if name in ('lr', 'eta', 'learning_rate'):
            self.base_lr = parse_float(name, value)
        elif name == 'wd':
            if tagged or self.tag != 'bias':
                self.wd = parse_float(name, value)
        elif name == 'momentum':
            self.momentum = parse_float(name, value)
        elif name == 'clip_gradient':
            self.clip_gradient = parse_float(name, value)
        elif name == 'eps':
            self.eps = parse_float(name, value)
        elif name == 'lr:schedule':
            if value not in LR_SCHEDULES:
                raise ConfigError(f"Unknown lr:schedule '{value}'. Valid options: {list(LR_SCHEDULES)}")
            self.lr_schedule = value
        elif name == 'lr:gamma':
            self.lr_gamma = parse_float(name, value)
        elif name == 'lr:alpha':
            self.lr_alpha = parse_float(name, value)
        elif name == 'lr:step':
            self.lr_step = parse_int(name, value)
            if self.lr_step <= 0:
                raise ConfigError(f"lr:step must be positive, got {self.lr_step}")
        elif name == 'lr:factor':
            self.lr_factor = parse_float(name, value)
        elif name == 'lr:minimum_lr':
            self.lr_minimum = parse_float(name, value)
        elif name == 'lr:start_epoch':
            self.start_epoch = parse_int(name, value)
        elif name == 'silent':
            self.silent = parse_bool(name, value)

    def learning_rate(self, epoch: int) -> float:
        """Learning rate for a given epoch (mini-batch count) under the schedule."""
        if epoch < self.start_epoch:
            return self.base_lr
        steps = (epoch - self.start_epoch) // self.lr_step
        if self.lr_schedule == 'expdecay':
            lr = self.base_lr * self.lr_gamma ** steps
        elif self.lr_schedule == 'polydecay':
            lr = self.base_lr * (1.0 + steps * self.lr_gamma) ** (-self.lr_alpha)
        elif self.lr_schedule == 'factor':
            lr = self.base_lr * self.lr_factor ** steps
        else:
            lr = self.base_lr
        return max(lr, self.lr_minimum)


# --- Synchronous updaters ---

class Updater:
    """
    Applies accumulated gradients to one 2-D weight tensor.

    `update(epoch)` uses (and then clears) the owned gradient accumulator;
    `update(epoch, grad)` uses an externally supplied gradient instead and
    leaves the accumulator alone.
    """

    def __init__(self, weight: np.ndarray, grad: np.ndarray, tag: str):
        if weight.shape != grad.shape:
            raise ConfigError(f"Updater: weight shape {weight.shape} != gradient shape {grad.shape}")
        self.weight = weight
        self.grad = grad
        self.tag = tag
        self.param = UpdaterParam(tag)

    def init(self) -> None:
        if not self.param.silent:
            p = self.param
            logging.info(f"{self.__class__.__name__}[{self.tag}]: lr={p.base_lr}, wd={p.wd}, "
                         f"momentum={p.momentum}, schedule={p.lr_schedule}")

    def set_param(self, name: str, value: str) -> None:
        self.param.set_param(name, value)

    def start_round(self, round_index: int) -> None:
        self.param.round_index = round_index

    def apply_visitor(self, visitor: Visitor) -> None:
        visitor(self.tag, self.weight)

    def update(self, epoch: int, grad: Optional[np.ndarray] = None) -> None:
        if grad is None:
            self._apply(epoch, self.grad)
            self.grad[...] = 0
        else:
            if grad.shape != self.weight.shape:
                raise ConfigError(f"Updater: gradient shape {grad.shape} != weight shape {self.weight.shape}")
            self._apply(epoch, grad)

    def _prepare_grad(self, grad: np.ndarray) -> np.ndarray:
        p = self.param
        g = grad + p.wd * self.weight if p.wd != 0.0 else grad.copy()
        if p.clip_gradient > 0.0:
            np.clip(g, -p.clip_gradient, p.clip_gradient, out=g)
        return g

    def _apply(self, epoch: int, grad: np.ndarray) -> None:
        raise NotImplementedError


class SGDUpdater(Updater):
    """SGD with momentum: m = momentum * m - lr * (grad + wd * w); w += m."""

    def __init__(self, weight, grad, tag):
        super().__init__(weight, grad, tag)
        self.mom = np.zeros_like(weight)

    def apply_visitor(self, visitor):
        super().apply_visitor(visitor)
        visitor(f"{self.tag}:momentum", self.mom)

    def _apply(self, epoch, grad):
        lr = self.param.learning_rate(epoch)
        g = self._prepare_grad(grad)
        self.mom *= self.param.momentum
        self.mom -= lr * g
        self.weight += self.mom


class AdaGradUpdater(Updater):
    """AdaGrad: hist += g^2; w -= lr * g / (sqrt(hist) + eps)."""

    def __init__(self, weight, grad, tag):
        super().__init__(weight, grad, tag)
        self.hist = np.zeros_like(weight)

    def apply_visitor(self, visitor):
        super().apply_visitor(visitor)
        visitor(f"{self.tag}:hist", self.hist)

    def _apply(self, epoch, grad):
        lr = self.param.learning_rate(epoch)
        g = self._prepare_grad(grad)
        self.hist += g ** 2
        self.weight -= (lr * g / (np.sqrt(self.hist) + self.param.eps)).astype(REAL_T)


# --- Asynchronous updater ---

class AsyncUpdater(Updater):
    """
    Overlaps gradient communication and application with the rest of backprop.

    The gradient of one step is handed to a single worker thread, which pushes
    it to the parameter store, pulls the aggregated gradient and applies the
    wrapped updater. One worker per updater keeps applies for a key serialized.
    """

    def __init__(self, data_key: int, param_store: ParamStore, updater: Updater):
        super().__init__(updater.weight, updater.grad, updater.tag)
        if decode_tag(data_key) != updater.tag:
            raise InvalidKeyError(f"AsyncUpdater: key {data_key} does not encode tag '{updater.tag}'")
        self.data_key = data_key
        self.param_store = param_store
        self.updater = updater
        self.param = updater.param
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"updater-key{data_key}")
        self._pending: Optional[Future] = None
        self.param_store.init_key(data_key, updater.weight.shape)

    def init(self):
        self.updater.init()

    def set_param(self, name, value):
        self.updater.set_param(name, value)

    def start_round(self, round_index):
        self.updater.start_round(round_index)

    def apply_visitor(self, visitor):
        self.updater.apply_visitor(visitor)

    def update(self, epoch, grad=None):
        raise UsageError("AsyncUpdater.update: call after_backprop instead")

    def before_all_forward(self) -> None:
        """The weight is read during forward, so wait for any pending apply."""
        self.update_wait()

    def before_backprop(self, nodes_in, nodes_out) -> None:
        """Hook for updaters that want to see the layer's nodes; nothing to do here."""

    def after_backprop(self, do_update: bool, epoch: int) -> None:
        if not do_update:
            return
        if self._pending is not None:
            raise UsageError(f"AsyncUpdater[key={self.data_key}]: previous update still in flight, "
                             f"call update_wait() first")
        grad = self.grad.copy()
        self.grad[...] = 0
        self._pending = self._executor.submit(self._push_pull_apply, grad, epoch)

    def update_wait(self) -> None:
        """Blocks until the in-flight update is applied; returns at once if there is none."""
        if self._pending is None:
            return
        future, self._pending = self._pending, None
        future.result()

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    def close(self) -> None:
        try:
            self.update_wait()
        finally:
            self._executor.shutdown(wait=True)

    def _push_pull_apply(self, grad: np.ndarray, epoch: int) -> None:
        ticket = self.param_store.push(self.data_key, grad)
        total = self.param_store.pull(self.data_key, ticket)
        self.updater.update(epoch, total)
        logging.debug(f"AsyncUpdater[key={self.data_key}]: applied epoch {epoch}")


# --- Factories ---

def build_updater_registry() -> Registry:
    registry = Registry("updater")
    registry.register('sgd', SGDUpdater)
    registry.register('adagrad', AdaGradUpdater)
    return registry


def create_updater(registry: Registry, updater_type: str, weight: np.ndarray,
                   grad: np.ndarray, tag: str) -> Updater:
    """Creates a synchronous updater of the given type for one weight."""
    if tag not in _TAG_OFFSETS:
        raise InvalidKeyError(f"create_updater: only support weight tag wmat or bias, got '{tag}'")
    return registry.create(updater_type, weight, grad, tag)


def create_async_updaters(registry: Registry, layer_index: int, param_store: ParamStore,
                          updater_type: str, layer) -> List[AsyncUpdater]:
    """Creates one AsyncUpdater per learnable tensor of `layer`."""
    updaters = []
    for tag, pair in layer.weights().items():
        key = encode_data_key(layer_index, tag)
        base = create_updater(registry, updater_type, pair.weight, pair.grad, tag)
        updaters.append(AsyncUpdater(key, param_store, base))
    return updaters
