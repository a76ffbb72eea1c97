# clear_engine/pooling_layer.py

"""
Spatial pooling (max / sum / average) with padding and stride.

Input shape:  (N, C, H, W)
Output shape: (N, C, out_h, out_w) with

    out_h = min(H + 2*pad_y - k_h + stride - 1, H + 2*pad_y - 1) // stride + 1
    out_w = min(W + 2*pad_x - k_w + stride - 1, W + 2*pad_x - 1) // stride + 1

The first term is a ceiling division; the min() stops it from counting a
window that would start beyond the padded input (this only matters when the
stride is larger than the kernel). Windows at the far edge may therefore hang
over the padded input; they are clipped to it.

Forward pads the input with zeros, reduces every window and, for average
pooling, scales by 1/(k_h*k_w). The reduced result is kept in the connection
state so that backprop can route gradients without recomputing the windows'
maxima:

    max: the whole upstream gradient goes to the first position (row-major)
         of the window holding the window's maximum
    sum: the upstream gradient is copied to every position of the window
    avg: the upstream gradient / (k_h*k_w) is copied to every position

Gradients of overlapping windows accumulate, and the padding border is
cropped off at the end.

Connection state:
    states[0]: pooled output, shape (N, C, out_h, out_w)
    states[1]: zero-padded input scratch, shape (N, C, H + 2*pad_y, W + 2*pad_x)
"""

from typing import Tuple

import numpy as np

from .errors import ConfigError
from .layer import Layer, check_connection

MAX_POOLING = 'max'
SUM_POOLING = 'sum'
AVG_POOLING = 'avg'
POOLING_MODES = (MAX_POOLING, SUM_POOLING, AVG_POOLING)


def pooling_output_size(in_size: int, kernel: int, pad: int, stride: int) -> int:
    """Output length along one spatial axis."""
    padded = in_size + 2 * pad
    return min(padded - kernel + stride - 1, padded - 1) // stride + 1


def pad_into(src: np.ndarray, dst: np.ndarray, pad_y: int, pad_x: int) -> np.ndarray:
    """Copies src into the centre of dst; dst's border must already be zero."""
    _, _, h, w = src.shape
    dst[:, :, pad_y:pad_y + h, pad_x:pad_x + w] = src
    return dst


def crop(src: np.ndarray, out_hw: Tuple[int, int], pad_y: int, pad_x: int) -> np.ndarray:
    """Inverse of pad_into: cuts the (H, W) centre out of a padded tensor."""
    h, w = out_hw
    return src[:, :, pad_y:pad_y + h, pad_x:pad_x + w]


def _windows(out_h: int, out_w: int, padded_h: int, padded_w: int,
             k_h: int, k_w: int, stride: int):
    """Yields (oy, ox, y0, y1, x0, x1) for every output cell, clipped to the padded input."""
    for oy in range(out_h):
        y0 = oy * stride
        y1 = min(y0 + k_h, padded_h)
        for ox in range(out_w):
            x0 = ox * stride
            x1 = min(x0 + k_w, padded_w)
            yield oy, ox, y0, y1, x0, x1


def pool(padded: np.ndarray, out: np.ndarray, mode: str, k_h: int, k_w: int, stride: int) -> np.ndarray:
    """Reduces every window of `padded` into `out` (no averaging scale applied)."""
    _, _, padded_h, padded_w = padded.shape
    _, _, out_h, out_w = out.shape
    for oy, ox, y0, y1, x0, x1 in _windows(out_h, out_w, padded_h, padded_w, k_h, k_w, stride):
        window = padded[:, :, y0:y1, x0:x1]
        if mode == MAX_POOLING:
            out[:, :, oy, ox] = window.max(axis=(2, 3))
        else:
            out[:, :, oy, ox] = window.sum(axis=(2, 3))
    return out


def unpool(padded: np.ndarray, pooled: np.ndarray, grad_out: np.ndarray, mode: str,
           k_h: int, k_w: int, stride: int) -> np.ndarray:
    """
    Routes grad_out back onto the padded input positions (no averaging scale applied).

    Args:
        padded: Zero-padded forward input, (N, C, Hp, Wp).
        pooled: Forward result of pool() on `padded`, (N, C, out_h, out_w).
        grad_out: Gradient w.r.t. the pooled output, same shape as `pooled`.

    Returns:
        Gradient w.r.t. `padded`, (N, C, Hp, Wp).
    """
    n, c, padded_h, padded_w = padded.shape
    _, _, out_h, out_w = pooled.shape
    grad_in = np.zeros_like(padded)
    batch_idx, chan_idx = np.indices((n, c))
    for oy, ox, y0, y1, x0, x1 in _windows(out_h, out_w, padded_h, padded_w, k_h, k_w, stride):
        grad = grad_out[:, :, oy, ox]
        if mode == MAX_POOLING:
            window = padded[:, :, y0:y1, x0:x1]
            hit = window == pooled[:, :, oy, ox][:, :, None, None]
            # argmax over a boolean mask picks the first hit in row-major order
            first = hit.reshape(n, c, -1).argmax(axis=2)
            dy, dx = np.unravel_index(first, (y1 - y0, x1 - x0))
            grad_in[batch_idx, chan_idx, y0 + dy, x0 + dx] += grad
        else:
            grad_in[:, :, y0:y1, x0:x1] += grad[:, :, None, None]
    return grad_in


class PoolingLayer(Layer):
    """
    Pooling layer for 2D inputs.

    Parameters: kernel_height/kernel_width (or kernel_size), pad_y/pad_x (or pad), stride.
    """

    def __init__(self, mode: str, rng=None):
        super().__init__(rng)
        if mode not in POOLING_MODES:
            raise ConfigError(f"Unknown pooling mode '{mode}'. Valid options: {list(POOLING_MODES)}")
        self.mode = mode
        self.in_shape = None  # (H, W) of the unpadded input

    def init_connection(self, nodes_in, nodes_out, cstate):
        check_connection("PoolingLayer", nodes_in, nodes_out)
        p = self.param
        n, c, h, w = nodes_in[0].data.shape
        if p.kernel_height <= 0 or p.kernel_width <= 0:
            raise ConfigError(f"PoolingLayer: kernel size must be positive, "
                              f"got {p.kernel_height}x{p.kernel_width}")
        if p.stride <= 0:
            raise ConfigError(f"PoolingLayer: stride must be positive, got {p.stride}")
        if p.pad_y < 0 or p.pad_x < 0:
            raise ConfigError(f"PoolingLayer: padding must be non-negative, got ({p.pad_y}, {p.pad_x})")
        if p.kernel_height > h + 2 * p.pad_y or p.kernel_width > w + 2 * p.pad_x:
            raise ConfigError(f"PoolingLayer: kernel size {p.kernel_height}x{p.kernel_width} "
                              f"exceeds padded input {h + 2 * p.pad_y}x{w + 2 * p.pad_x}")

        self.in_shape = (h, w)
        out_h = pooling_output_size(h, p.kernel_height, p.pad_y, p.stride)
        out_w = pooling_output_size(w, p.kernel_width, p.pad_x, p.stride)
        nodes_out[0].resize((n, c, out_h, out_w))
        self._resize_state(nodes_in, nodes_out, cstate)
        self._log_shapes(nodes_in, nodes_out)

    def on_batch_size_changed(self, nodes_in, nodes_out, cstate):
        self._resize_state(nodes_in, nodes_out, cstate)

    def forward(self, is_train, nodes_in, nodes_out, cstate):
        p = self.param
        pooled, padded = cstate.states[0], cstate.states[1]
        pad_into(nodes_in[0].data, padded, p.pad_y, p.pad_x)
        pool(padded, pooled, self.mode, p.kernel_height, p.kernel_width, p.stride)
        if self.mode == AVG_POOLING:
            pooled *= 1.0 / (p.kernel_height * p.kernel_width)
        nodes_out[0].data[...] = pooled

    def backprop(self, prop_grad, nodes_in, nodes_out, cstate):
        if not prop_grad:
            return
        p = self.param
        pooled, padded = cstate.states[0], cstate.states[1]
        grad_padded = unpool(pad_into(nodes_in[0].data, padded, p.pad_y, p.pad_x),
                             pooled, nodes_out[0].data, self.mode,
                             p.kernel_height, p.kernel_width, p.stride)
        grad_in = crop(grad_padded, self.in_shape, p.pad_y, p.pad_x)
        if self.mode == AVG_POOLING:
            grad_in = grad_in * (1.0 / (p.kernel_height * p.kernel_width))
        nodes_in[0].data[...] = grad_in

    def _resize_state(self, nodes_in, nodes_out, cstate):
        p = self.param
        n, c, h, w = nodes_in[0].data.shape
        cstate.resize(0, nodes_out[0].data.shape)
        padded = cstate.resize(1, (n, c, h + 2 * p.pad_y, w + 2 * p.pad_x))
        padded[...] = 0
