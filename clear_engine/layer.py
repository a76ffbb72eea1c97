# clear_engine/layer.py

"""
Layer interface of the computation graph.

Tensors flow between layers inside Nodes. Every Node wraps one rank-4 array
laid out as (batch, channel, height, width); fully connected data uses
(batch, 1, 1, features). A layer owns the Nodes it produces and only borrows
the Nodes it consumes.

The backward pass reuses the same buffers: once a layer's output Node has
been consumed by the next layer, the next layer's backprop overwrites it with
the gradient of the loss w.r.t. that output. A layer's backprop therefore
reads the gradient from `nodes_out[i].data` and writes the gradient w.r.t.
its input into `nodes_in[i].data`.

Call order for one connection:
    set_param(...)*  ->  init_connection  ->  (forward -> backprop)*
and on_batch_size_changed whenever only the batch dimension changes.
"""

import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import numpy as np

from .config import parse_bool, parse_float, parse_int
from .data import REAL_T
from .errors import ConfigError

# visitor(name, tensor), e.g. visitor('wmat', weight)
Visitor = Callable[[str, np.ndarray], None]


class Node:
    """A rank-4 tensor flowing between layers."""

    def __init__(self, shape: Optional[Tuple[int, int, int, int]] = None):
        self.data = None
        if shape is not None:
            self.resize(shape)

    @property
    def shape(self) -> Optional[Tuple[int, ...]]:
        return None if self.data is None else self.data.shape

    def resize(self, shape: Tuple[int, int, int, int]) -> None:
        """(Re)allocates a zeroed buffer, only when the shape actually changes."""
        shape = tuple(int(d) for d in shape)
        if len(shape) != 4:
            raise ConfigError(f"Node tensors are rank 4, got shape {shape}")
        if self.data is None or self.data.shape != shape:
            self.data = np.zeros(shape, dtype=REAL_T)


class ConnectState:
    """Per-connection scratch buffers owned by a single layer."""

    def __init__(self):
        self.states: List[np.ndarray] = []

    def resize(self, index: int, shape: Tuple[int, ...]) -> np.ndarray:
        while len(self.states) <= index:
            self.states.append(np.zeros((0,), dtype=REAL_T))
        shape = tuple(int(d) for d in shape)
        if self.states[index].shape != shape:
            self.states[index] = np.zeros(shape, dtype=REAL_T)
        return self.states[index]


class WeightPair(NamedTuple):
    weight: np.ndarray    # 2-D
    grad: np.ndarray      # same shape, accumulated by backprop


class LayerParam:
    """
    Configuration shared by the built-in layers.

    Recognized keys: kernel_size, kernel_height, kernel_width, pad, pad_y,
    pad_x, stride, nchannel, nhidden, no_bias, init_sigma, init_bias,
    random_type ('gaussian' or 'xavier'), grad_scale, silent.
    """

    def __init__(self):
        self.kernel_height = 0
        self.kernel_width = 0
        self.pad_y = 0
        self.pad_x = 0
        self.stride = 1
        self.num_channel = 0
        self.num_hidden = 0
        self.no_bias = False
        self.init_sigma = 0.01
        self.init_bias = 0.0
        self.random_type = 'gaussian'
        self.grad_scale = 1.0
        self.silent = False

    def set_param(self, name: str, value: str) -> None:
        if name == 'kernel_size':
            self.kernel_height = self.kernel_width = parse_int(name, value)
        elif name == 'kernel_height':
            self.kernel_height = parse_int(name, value)
        elif name == 'kernel_width':
            self.kernel_width = parse_int(name, value)
        elif name == 'pad':
            self.pad_y = self.pad_x = parse_int(name, value)
        elif name == 'pad_y':
            self.pad_y = parse_int(name, value)
        elif name == 'pad_x':
            self.pad_x = parse_int(name, value)
        elif name == 'stride':
            self.stride = parse_int(name, value)
        elif name == 'nchannel':
            self.num_channel = parse_int(name, value)
        elif name == 'nhidden':
            self.num_hidden = parse_int(name, value)
        elif name == 'no_bias':
            self.no_bias = parse_bool(name, value)
        elif name == 'init_sigma':
            self.init_sigma = parse_float(name, value)
        elif name == 'init_bias':
            self.init_bias = parse_float(name, value)
        elif name == 'random_type':
            if value not in ('gaussian', 'xavier'):
                raise ConfigError(f"Unknown random_type '{value}', expected 'gaussian' or 'xavier'")
            self.random_type = value
        elif name == 'grad_scale':
            self.grad_scale = parse_float(name, value)
        elif name == 'silent':
            self.silent = parse_bool(name, value)

    def random_init_weight(self, rng: np.random.RandomState, shape: Tuple[int, int]) -> np.ndarray:
        """Initializes a (fan_out, fan_in) weight matrix."""
        fan_out, fan_in = shape
        if self.random_type == 'xavier':
            # Xavier/Glorot uniform: limits sqrt(6 / (fan_in + fan_out))
            limit = np.sqrt(6.0 / (fan_in + fan_out))
            return rng.uniform(-limit, limit, shape).astype(REAL_T)
        return (rng.randn(*shape) * self.init_sigma).astype(REAL_T)


def check_connection(layer_name: str, nodes_in: List[Node], nodes_out: List[Node],
                     num_in: int = 1, num_out: int = 1) -> None:
    if len(nodes_in) != num_in or len(nodes_out) != num_out:
        raise ConfigError(f"{layer_name}: only support {num_in}-{num_out} connection, "
                          f"got {len(nodes_in)}-{len(nodes_out)}")
    for node in nodes_in:
        if node.data is None or node.data.ndim != 4:
            raise ConfigError(f"{layer_name}: input node must hold a rank-4 tensor")


class Layer:
    """
    Abstract base class for all layers in the graph.

    Subclasses implement init_connection, forward and backprop. Layers with
    learnable parameters also override weights() so updaters can be bound
    to each (weight, gradient) pair.
    """

    def __init__(self, rng: Optional[np.random.RandomState] = None):
        self.param = LayerParam()
        self.rng = rng if rng is not None else np.random.RandomState(0)

    def set_param(self, name: str, value: str) -> None:
        """Unknown keys are ignored."""
        self.param.set_param(name, value)

    def init_connection(self, nodes_in: List[Node], nodes_out: List[Node], cstate: ConnectState) -> None:
        """Validates arity, fixes output shapes and allocates scratch state."""
        raise NotImplementedError("Each layer must implement init_connection.")

    def on_batch_size_changed(self, nodes_in: List[Node], nodes_out: List[Node], cstate: ConnectState) -> None:
        """Resizes batch-dependent state. Most layers keep none."""

    def forward(self, is_train: bool, nodes_in: List[Node], nodes_out: List[Node], cstate: ConnectState) -> None:
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def backprop(self, prop_grad: bool, nodes_in: List[Node], nodes_out: List[Node], cstate: ConnectState) -> None:
        """
        Performs the backward pass for the layer.
        Accumulates parameter gradients and, if prop_grad, writes the input
        gradient into nodes_in.
        """
        raise NotImplementedError("Each layer must implement its own backward pass.")

    def weights(self) -> Dict[str, WeightPair]:
        """Learnable tensors keyed by tag ('wmat', 'bias'). Empty by default."""
        return {}

    def apply_visitor(self, visitor: Visitor) -> None:
        for tag, pair in self.weights().items():
            visitor(tag, pair.weight)

    def _log_shapes(self, nodes_in: List[Node], nodes_out: List[Node]) -> None:
        if not self.param.silent:
            logging.debug(f"{self.__class__.__name__}: {[n.shape for n in nodes_in]} -> "
                          f"{[n.shape for n in nodes_out]}")
