# clear_engine/model.py

"""
NumPy layer graph - building blocks and the sequential runner.

Main components:
1. Concrete layers on top of the Node/ConnectState interface in layer.py:
   - Convolution (conv), fully connected (fullc)
   - Activation (relu), reshaping (flatten)
   - Pooling (max_pooling, sum_pooling, avg_pooling; see pooling_layer.py)
   - Softmax loss (softmax)
2. Sequential: runs the layers forward in order and backward in reverse
   order, driving synchronous updaters after the backward pass or bracketing
   each layer's backprop with its asynchronous updaters
3. Cross-entropy loss and weight save/load through the visitor interface

All nodes are rank 4, (N, C, H, W); fully connected data is (N, 1, 1, D).
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .data import REAL_T, DataBatch
from .errors import ConfigError, UsageError
from .layer import ConnectState, Layer, Node, Visitor, WeightPair, check_connection
from .param_server import ParamStore
from .pooling_layer import AVG_POOLING, MAX_POOLING, SUM_POOLING, PoolingLayer
from .registry import Registry
from .updater import AsyncUpdater, Updater, create_async_updaters, create_updater


# --- Convolutional Layer ---

class ConvolutionLayer(Layer):
    """
    2D Convolutional Layer.

    Input:  (N, C_in, H_in, W_in)
    Output: (N, nchannel, H_out, W_out), H_out = (H_in + 2*pad_y - K_h) // stride + 1

    wmat is stored flattened as (nchannel, C_in*K_h*K_w) so that updaters see
    a 2-D tensor; bias is (1, nchannel).
    """

    def __init__(self, rng=None):
        super().__init__(rng)
        self.wmat = None
        self.bias = None
        self.gwmat = None
        self.gbias = None

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("ConvolutionLayer", nodes_in, nodes_out)
        p = self.param
        n, c_in, h, w = nodes_in[0].data.shape
        if p.num_channel <= 0:
            raise ConfigError("ConvolutionLayer: must set nchannel correctly")
        if p.kernel_height <= 0 or p.kernel_width <= 0 or p.stride <= 0:
            raise ConfigError("ConvolutionLayer: must set kernel_size and stride correctly")
        if p.kernel_height > h + 2 * p.pad_y or p.kernel_width > w + 2 * p.pad_x:
            raise ConfigError("ConvolutionLayer: kernel size exceeds padded input")

        h_out = (h + 2 * p.pad_y - p.kernel_height) // p.stride + 1
        w_out = (w + 2 * p.pad_x - p.kernel_width) // p.stride + 1
        fan_in = c_in * p.kernel_height * p.kernel_width
        if self.wmat is None or self.wmat.shape != (p.num_channel, fan_in):
            self.wmat = p.random_init_weight(self.rng, (p.num_channel, fan_in))
            self.bias = np.full((1, p.num_channel), p.init_bias, dtype=REAL_T)
            self.gwmat = np.zeros_like(self.wmat)
            self.gbias = np.zeros_like(self.bias)
        nodes_out[0].resize((n, p.num_channel, h_out, w_out))
        self.on_batch_size_changed(nodes_in, nodes_out, cstate)
        self._log_shapes(nodes_in, nodes_out)

    def on_batch_size_changed(self, nodes_in, nodes_out, cstate):
        p = self.param
        n, c_in, h, w = nodes_in[0].data.shape
        # padded input scratch, the border stays zero
        padded = cstate.resize(0, (n, c_in, h + 2 * p.pad_y, w + 2 * p.pad_x))
        padded[...] = 0

    def weights(self):
        pairs = {'wmat': WeightPair(self.wmat, self.gwmat)}
        if not self.param.no_bias:
            pairs['bias'] = WeightPair(self.bias, self.gbias)
        return pairs

    def _windows(self, out_shape):
        p = self.param
        _, _, h_out, w_out = out_shape
        for oy in range(h_out):
            for ox in range(w_out):
                y0, x0 = oy * p.stride, ox * p.stride
                yield oy, ox, y0, y0 + p.kernel_height, x0, x0 + p.kernel_width

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        p = self.param
        src = nodes_in[0].data
        n, _, h, w = src.shape
        padded = cstate.states[0]
        padded[:, :, p.pad_y:p.pad_y + h, p.pad_x:p.pad_x + w] = src
        out = nodes_out[0].data
        for oy, ox, y0, y1, x0, x1 in self._windows(out.shape):
            # receptive field of every sample, flattened to (N, C_in*K_h*K_w)
            patch = padded[:, :, y0:y1, x0:x1].reshape(n, -1)
            out[:, :, oy, ox] = patch @ self.wmat.T
        if not p.no_bias:
            out += self.bias.reshape(1, -1, 1, 1)

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        p = self.param
        grad_out = nodes_out[0].data
        n, c_in, h, w = nodes_in[0].data.shape
        padded = cstate.states[0]
        grad_padded = np.zeros_like(padded) if prop_grad else None
        if not p.no_bias:
            self.gbias += grad_out.sum(axis=(0, 2, 3)).reshape(1, -1)
        for oy, ox, y0, y1, x0, x1 in self._windows(grad_out.shape):
            g = grad_out[:, :, oy, ox]                      # (N, C_out)
            patch = padded[:, :, y0:y1, x0:x1].reshape(n, -1)
            self.gwmat += g.T @ patch
            if prop_grad:
                grad_padded[:, :, y0:y1, x0:x1] += (g @ self.wmat).reshape(n, c_in, y1 - y0, x1 - x0)
        if prop_grad:
            nodes_in[0].data[...] = grad_padded[:, :, p.pad_y:p.pad_y + h, p.pad_x:p.pad_x + w]


# --- Activation Layers ---

class ReLULayer(Layer):
    """Rectified Linear Unit activation layer."""

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("ReLULayer", nodes_in, nodes_out)
        nodes_out[0].resize(nodes_in[0].data.shape)

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        np.maximum(nodes_in[0].data, 0, out=nodes_out[0].data)

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        if prop_grad:
            # gradient is passed where the forward input was positive, else 0
            nodes_in[0].data[...] = nodes_out[0].data * (nodes_in[0].data > 0)


# --- Reshaping Layers ---

class FlattenLayer(Layer):
    """Flattens (N, C, H, W) into (N, 1, 1, C*H*W)."""

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("FlattenLayer", nodes_in, nodes_out)
        n, c, h, w = nodes_in[0].data.shape
        nodes_out[0].resize((n, 1, 1, c * h * w))

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        nodes_out[0].data[...] = nodes_in[0].data.reshape(nodes_out[0].data.shape)

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        if prop_grad:
            nodes_in[0].data[...] = nodes_out[0].data.reshape(nodes_in[0].data.shape)


# --- Fully Connected Layer ---

class FullConnectLayer(Layer):
    """
    Fully connected layer.
    Input shape: (N, C, H, W), treated as (N, C*H*W)
    Output shape: (N, 1, 1, nhidden)
    wmat: (nhidden, C*H*W), bias: (1, nhidden)
    """

    def __init__(self, rng=None):
        super().__init__(rng)
        self.wmat = None
        self.bias = None
        self.gwmat = None
        self.gbias = None

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("FullConnectLayer", nodes_in, nodes_out)
        p = self.param
        n, c, h, w = nodes_in[0].data.shape
        if p.num_hidden <= 0:
            raise ConfigError("FullConnectLayer: must set nhidden correctly")
        num_in = c * h * w
        if self.wmat is None or self.wmat.shape != (p.num_hidden, num_in):
            self.wmat = p.random_init_weight(self.rng, (p.num_hidden, num_in))
            self.bias = np.full((1, p.num_hidden), p.init_bias, dtype=REAL_T)
            self.gwmat = np.zeros_like(self.wmat)
            self.gbias = np.zeros_like(self.bias)
        nodes_out[0].resize((n, 1, 1, p.num_hidden))
        self._log_shapes(nodes_in, nodes_out)

    def weights(self):
        pairs = {'wmat': WeightPair(self.wmat, self.gwmat)}
        if not self.param.no_bias:
            pairs['bias'] = WeightPair(self.bias, self.gbias)
        return pairs

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        n = nodes_in[0].data.shape[0]
        x = nodes_in[0].data.reshape(n, -1)
        z = x @ self.wmat.T                    # (N, D_in) @ (D_in, D_out) -> (N, D_out)
        if not self.param.no_bias:
            z += self.bias
        nodes_out[0].data[...] = z.reshape(nodes_out[0].data.shape)

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        n = nodes_in[0].data.shape[0]
        x = nodes_in[0].data.reshape(n, -1)
        dz = nodes_out[0].data.reshape(n, -1)
        self.gwmat += dz.T @ x                 # (D_out, N) @ (N, D_in) -> (D_out, D_in)
        if not self.param.no_bias:
            self.gbias += dz.sum(axis=0, keepdims=True)
        if prop_grad:
            nodes_in[0].data[...] = (dz @ self.wmat).reshape(nodes_in[0].data.shape)


# --- Output Layer ---

class SoftmaxLayer(Layer):
    """
    Softmax with cross-entropy loss.

    forward writes class probabilities; backprop writes
    grad_scale * (prob - onehot(label)) / N into the input node. Labels are
    class indices, (N, 1), set with set_label before backprop.
    """

    def __init__(self, rng=None):
        super().__init__(rng)
        self.label = None

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("SoftmaxLayer", nodes_in, nodes_out)
        nodes_out[0].resize(nodes_in[0].data.shape)

    def set_label(self, label: np.ndarray) -> None:
        self.label = label

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        n = nodes_in[0].data.shape[0]
        z = nodes_in[0].data.reshape(n, -1)
        # shift for numerical stability
        exp_z = np.exp(z - np.max(z, axis=1, keepdims=True))
        probs = exp_z / np.sum(exp_z, axis=1, keepdims=True)
        nodes_out[0].data[...] = probs.reshape(nodes_out[0].data.shape)

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        if not prop_grad:
            return
        if self.label is None:
            raise UsageError("SoftmaxLayer.backprop: set_label must be called first")
        n = nodes_out[0].data.shape[0]
        probs = nodes_out[0].data.reshape(n, -1)
        grad = probs.copy()
        grad[np.arange(n), self.label.reshape(n, -1)[:, 0].astype(np.int64)] -= 1.0
        grad *= self.param.grad_scale / n
        nodes_in[0].data[...] = grad.reshape(nodes_in[0].data.shape)


def build_layer_registry() -> Registry:
    """Type tag -> layer constructor taking an optional rng."""
    registry = Registry("layer")
    registry.register('conv', ConvolutionLayer)
    registry.register('fullc', FullConnectLayer)
    registry.register('relu', ReLULayer)
    registry.register('flatten', FlattenLayer)
    registry.register('softmax', SoftmaxLayer)
    registry.register('max_pooling', lambda rng=None: PoolingLayer(MAX_POOLING, rng))
    registry.register('sum_pooling', lambda rng=None: PoolingLayer(SUM_POOLING, rng))
    registry.register('avg_pooling', lambda rng=None: PoolingLayer(AVG_POOLING, rng))
    return registry


# --- Loss Function ---

def compute_cross_entropy_loss(probs: np.ndarray, labels: np.ndarray) -> float:
    """
    Computes the Cross-Entropy loss.
    probs: (N, num_classes) or (N, 1, 1, num_classes) - softmax output
    labels: (N, 1) class indices
    """
    n = probs.shape[0]
    probs = probs.reshape(n, -1)
    idx = labels.reshape(n, -1)[:, 0].astype(np.int64)
    epsilon = 1e-9  # To prevent log(0)
    return float(-np.mean(np.log(probs[np.arange(n), idx] + epsilon)))


# --- Sequential Model ---

class Sequential:
    """
    A linear stack of layers with the nodes, connection states and updaters
    between them.

    nodes[i] is the input of layers[i] and nodes[i + 1] its output; nodes[0]
    borrows the batch data, every other node is owned by the layer writing it.
    """

    def __init__(self, layers: Optional[List[Layer]] = None):
        self.layers: List[Layer] = list(layers) if layers is not None else []
        self.nodes: List[Node] = []
        self.cstates: List[ConnectState] = []
        self.updaters: List[List[Updater]] = []
        self.async_update = False
        self.epoch_counter = 0
        self._updater_params: List[Tuple[str, str]] = []

    def add(self, layer: Layer) -> None:
        """Adds a layer to the model. Must happen before init_model."""
        if self.nodes:
            raise UsageError("Sequential.add: the model is already initialized")
        self.layers.append(layer)

    @property
    def batch_size(self) -> int:
        return self.nodes[0].data.shape[0] if self.nodes else 0

    def init_model(self, input_shape: Tuple[int, int, int, int]) -> None:
        """Creates the nodes and runs init_connection through the graph."""
        if not self.layers:
            raise ConfigError("Sequential.init_model: no layers added")
        self.nodes = [Node(input_shape)]
        self.cstates = []
        for i, layer in enumerate(self.layers):
            cstate = ConnectState()
            out = Node()
            layer.init_connection([self.nodes[i]], [out], cstate)
            if out.data is None:
                raise ConfigError(f"Layer {i} ({type(layer).__name__}) did not set its output shape")
            self.nodes.append(out)
            self.cstates.append(cstate)
        logging.info(f"Sequential: {len(self.layers)} layers, input {tuple(input_shape)} -> "
                     f"output {self.nodes[-1].shape}")

    def set_batch_size(self, batch_size: int) -> None:
        """Resizes every node's batch dimension and lets layers resize their state."""
        self._check_initialized()
        if batch_size == self.batch_size:
            return
        for node in self.nodes:
            node.resize((batch_size,) + node.data.shape[1:])
        for i, layer in enumerate(self.layers):
            layer.on_batch_size_changed([self.nodes[i]], [self.nodes[i + 1]], self.cstates[i])
        logging.debug(f"Sequential: batch size changed to {batch_size}")

    def create_updaters(self, updater_type: str, registry: Registry,
                        param_store: Optional[ParamStore] = None) -> None:
        """
        Binds an updater to every learnable tensor. With a param_store the
        updaters are asynchronous and keyed by encode_data_key.
        """
        self._check_initialized()
        self.close()
        self.async_update = param_store is not None
        self.updaters = []
        for i, layer in enumerate(self.layers):
            if self.async_update:
                ups = create_async_updaters(registry, i, param_store, updater_type, layer)
            else:
                ups = [create_updater(registry, updater_type, pair.weight, pair.grad, tag)
                       for tag, pair in layer.weights().items()]
            for up in ups:
                for name, value in self._updater_params:
                    up.set_param(name, value)
                up.init()
            self.updaters.append(ups)

    def set_param(self, name: str, value: str) -> None:
        """Updater hyper-parameters; kept so that updaters created later receive them too."""
        self._updater_params.append((name, value))
        for up in self._all_updaters():
            up.set_param(name, value)

    def forward(self, data: np.ndarray, is_train: bool = True) -> np.ndarray:
        """Runs every layer forward; returns the last node's data."""
        self._check_initialized()
        if data.ndim != 4 or data.shape[1:] != self.nodes[0].data.shape[1:]:
            raise ConfigError(f"Sequential.forward: input shape {data.shape} does not match "
                              f"model input {self.nodes[0].shape}")
        self.set_batch_size(data.shape[0])
        if self.async_update:
            for up in self._all_updaters():
                up.before_all_forward()
        self.nodes[0].data = np.asarray(data, dtype=REAL_T)
        for i, layer in enumerate(self.layers):
            layer.forward(is_train, [self.nodes[i]], [self.nodes[i + 1]], self.cstates[i])
        return self.nodes[-1].data

    def backprop(self, label: np.ndarray, epoch: int, do_update: bool = True) -> None:
        """
        Runs every layer backward from the loss layer. Asynchronous updaters
        start their update right after their layer's backprop; synchronous
        ones are applied once the whole pass is done.
        """
        self._check_initialized()
        loss_layer = self.layers[-1]
        if not isinstance(loss_layer, SoftmaxLayer):
            raise ConfigError("Sequential.backprop: the last layer must be a loss layer (softmax)")
        loss_layer.set_label(label)
        for i in reversed(range(len(self.layers))):
            ups = self.updaters[i] if self.updaters else []
            nodes_in, nodes_out = [self.nodes[i]], [self.nodes[i + 1]]
            if self.async_update:
                for up in ups:
                    up.before_backprop(nodes_in, nodes_out)
            # the input node of layer 0 is the batch, never write gradients into it
            self.layers[i].backprop(i > 0, nodes_in, nodes_out, self.cstates[i])
            if self.async_update:
                for up in ups:
                    up.after_backprop(do_update, epoch)
        if do_update and not self.async_update:
            for up in self._all_updaters():
                up.update(epoch)

    def train_batch(self, batch: DataBatch) -> float:
        """Forward, loss, backward and update on one batch; returns the loss."""
        probs = self.forward(batch.data, is_train=True)
        loss = compute_cross_entropy_loss(probs, batch.label)
        self.backprop(batch.label, self.epoch_counter)
        self.epoch_counter += 1
        return loss

    def predict(self, data: np.ndarray) -> np.ndarray:
        """Class probabilities, (N, num_classes)."""
        probs = self.forward(data, is_train=False)
        return probs.reshape(probs.shape[0], -1).copy()

    def start_round(self, round_index: int) -> None:
        for up in self._all_updaters():
            up.start_round(round_index)

    def update_wait(self) -> None:
        for up in self._all_updaters():
            if isinstance(up, AsyncUpdater):
                up.update_wait()

    def close(self) -> None:
        """Joins in-flight updates and stops the asynchronous workers."""
        for up in self._all_updaters():
            if isinstance(up, AsyncUpdater):
                up.close()

    def apply_visitor(self, visitor: Visitor) -> None:
        """Visits every learnable tensor as ('layer{i}:{tag}', tensor)."""
        for i, layer in enumerate(self.layers):
            layer.apply_visitor(lambda name, tensor, i=i: visitor(f"layer{i}:{name}", tensor))

    def save_weights(self, filename: str) -> None:
        """Saves every learnable tensor to a compressed .npz file."""
        self._check_initialized()
        self.update_wait()
        save_dict: Dict[str, np.ndarray] = {}
        self.apply_visitor(lambda name, tensor: save_dict.__setitem__(name, tensor))
        if not filename.endswith('.npz'):
            filename += '.npz'
        np.savez_compressed(filename, **save_dict)
        logging.info(f"Saved {len(save_dict)} tensors to {filename}")

    def load_weights(self, filename: str) -> None:
        """Copies tensors saved by save_weights into the initialized model, in place."""
        self._check_initialized()
        self.update_wait()
        with np.load(filename) as data:
            def _load(name, tensor):
                if name not in data.files:
                    raise ConfigError(f"Weight file {filename} has no entry '{name}'")
                if data[name].shape != tensor.shape:
                    raise ConfigError(f"Weight '{name}' has shape {data[name].shape} in {filename}, "
                                      f"model expects {tensor.shape}")
                tensor[...] = data[name]
            self.apply_visitor(_load)
        logging.info(f"Loaded weights from {filename}")

    def summary(self) -> str:
        """Text summary of the layers, their output shapes and parameter counts."""
        self._check_initialized()
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Sequential Summary\n"
        summary_str += "=" * 50 + "\n"
        summary_str += f"Input Shape: {self.nodes[0].shape}\n"
        total_params = 0
        for i, layer in enumerate(self.layers):
            layer_params = sum(pair.weight.size for pair in layer.weights().values())
            total_params += layer_params
            summary_str += f"Layer {i}: {layer.__class__.__name__}\n"
            summary_str += f"  Output Shape: {self.nodes[i + 1].shape}\n"
            summary_str += f"  Parameters: {layer_params}\n"
        summary_str += "-" * 50 + "\n"
        summary_str += f"Total Parameters: {total_params}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def _all_updaters(self):
        for ups in self.updaters:
            yield from ups

    def _check_initialized(self):
        if not self.nodes:
            raise UsageError("Sequential: call init_model first")
