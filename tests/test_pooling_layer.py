"""Pooling layer: output sizes, forward values and gradient routing."""

from __future__ import annotations

import numpy as np
import pytest

from clear_engine.errors import ConfigError
from clear_engine.layer import ConnectState, Node
from clear_engine.pooling_layer import AVG_POOLING, MAX_POOLING, SUM_POOLING, PoolingLayer, pooling_output_size


def _connect(mode, x, **params):
    layer = PoolingLayer(mode)
    for name, value in params.items():
        layer.set_param(name, str(value))
    node_in, node_out, cstate = Node(x.shape), Node(), ConnectState()
    node_in.data[...] = x
    layer.init_connection([node_in], [node_out], cstate)
    return layer, node_in, node_out, cstate


def _forward(mode, x, **params):
    layer, node_in, node_out, cstate = _connect(mode, x, **params)
    layer.forward(True, [node_in], [node_out], cstate)
    return layer, node_in, node_out, cstate


def _backward(layer, node_in, node_out, cstate, grad_out):
    node_out.data[...] = grad_out
    layer.backprop(True, [node_in], [node_out], cstate)
    return node_in.data.copy()


def _reference_pool(x, mode, k, stride, pad):
    n, c, h, w = x.shape
    padded = np.pad(x.astype(np.float64), ((0, 0), (0, 0), (pad, pad), (pad, pad)))
    out_h = pooling_output_size(h, k, pad, stride)
    out_w = pooling_output_size(w, k, pad, stride)
    out = np.zeros((n, c, out_h, out_w))
    for oy in range(out_h):
        for ox in range(out_w):
            window = padded[:, :, oy * stride:oy * stride + k, ox * stride:ox * stride + k]
            if mode == MAX_POOLING:
                out[:, :, oy, ox] = window.max(axis=(2, 3))
            elif mode == SUM_POOLING:
                out[:, :, oy, ox] = window.sum(axis=(2, 3))
            else:
                out[:, :, oy, ox] = window.sum(axis=(2, 3)) / (k * k)
    return out


@pytest.mark.parametrize("in_size, kernel, pad, stride, expected", [
    (28, 2, 0, 2, 14),
    (28, 3, 1, 2, 15),
    (28, 3, 0, 2, 14),   # ceiling: the last window hangs over the edge
    (5, 1, 0, 3, 2),     # stride > kernel: no window may start past the input
    (4, 4, 0, 1, 1),
])
def test_output_size(in_size, kernel, pad, stride, expected):
    assert pooling_output_size(in_size, kernel, pad, stride) == expected


def test_init_connection_sets_shapes():
    x = np.zeros((2, 3, 28, 28), dtype=np.float32)
    layer, node_in, node_out, cstate = _connect(MAX_POOLING, x, kernel_size=3, stride=2, pad=1)
    assert node_out.shape == (2, 3, 15, 15)
    assert cstate.states[0].shape == (2, 3, 15, 15)
    assert cstate.states[1].shape == (2, 3, 30, 30)


@pytest.mark.parametrize("params", [
    {"kernel_size": 0, "stride": 1},
    {"kernel_size": 2, "stride": 0},
    {"kernel_size": 7, "stride": 1, "pad": 1},
    {"kernel_height": 2, "kernel_width": 5, "stride": 1},
])
def test_bad_geometry(params):
    x = np.zeros((1, 1, 4, 4), dtype=np.float32)
    with pytest.raises(ConfigError):
        _connect(MAX_POOLING, x, **params)


def test_rejects_multiple_inputs():
    layer = PoolingLayer(MAX_POOLING)
    layer.set_param("kernel_size", "2")
    with pytest.raises(ConfigError):
        layer.init_connection([Node((1, 1, 4, 4)), Node((1, 1, 4, 4))], [Node()], ConnectState())


def test_unknown_mode():
    with pytest.raises(ConfigError):
        PoolingLayer("median")


@pytest.mark.parametrize("mode", [MAX_POOLING, SUM_POOLING, AVG_POOLING])
@pytest.mark.parametrize("k, stride, pad", [(2, 2, 0), (3, 2, 1), (3, 1, 0), (2, 3, 1)])
def test_forward_matches_reference(mode, k, stride, pad):
    rng = np.random.RandomState(42)
    x = rng.randn(2, 3, 7, 7).astype(np.float32)
    _, _, node_out, _ = _forward(mode, x, kernel_size=k, stride=stride, pad=pad)
    expected = _reference_pool(x, mode, k, stride, pad)
    assert node_out.shape == expected.shape
    np.testing.assert_allclose(node_out.data, expected, rtol=1e-5, atol=1e-5)


def test_hanging_window_is_clipped():
    x = np.arange(9, dtype=np.float32).reshape(1, 1, 3, 3)
    _, _, node_out, _ = _forward(SUM_POOLING, x, kernel_size=2, stride=2)
    # windows: rows {0,1} / {2}, cols {0,1} / {2}
    np.testing.assert_array_equal(node_out.data[0, 0], [[0 + 1 + 3 + 4, 2 + 5], [6 + 7, 8]])


def test_max_backward_routes_to_argmax():
    x = np.array([[1, 3], [2, 0]], dtype=np.float32).reshape(1, 1, 2, 2)
    layer, node_in, node_out, cstate = _forward(MAX_POOLING, x, kernel_size=2, stride=2)
    assert node_out.data[0, 0, 0, 0] == 3
    grad = _backward(layer, node_in, node_out, cstate, np.full((1, 1, 1, 1), 5.0))
    np.testing.assert_array_equal(grad[0, 0], [[0, 5], [0, 0]])


def test_max_backward_ties_go_to_first_position():
    x = np.array([[1, 4], [4, 4]], dtype=np.float32).reshape(1, 1, 2, 2)
    layer, node_in, node_out, cstate = _forward(MAX_POOLING, x, kernel_size=2, stride=2)
    grad = _backward(layer, node_in, node_out, cstate, np.full((1, 1, 1, 1), 2.0))
    np.testing.assert_array_equal(grad[0, 0], [[0, 2], [0, 0]])


def test_max_backward_accumulates_over_overlapping_windows():
    x = np.array([[0, 0, 0], [0, 9, 0], [0, 0, 0]], dtype=np.float32).reshape(1, 1, 3, 3)
    layer, node_in, node_out, cstate = _forward(MAX_POOLING, x, kernel_size=2, stride=1)
    np.testing.assert_array_equal(node_out.data[0, 0], [[9, 9], [9, 9]])
    grad = _backward(layer, node_in, node_out, cstate, np.ones((1, 1, 2, 2)))
    assert grad[0, 0, 1, 1] == 4
    assert grad.sum() == 4


def test_max_backward_is_sparse():
    rng = np.random.RandomState(0)
    x = rng.permutation(2 * 3 * 8 * 8).astype(np.float32).reshape(2, 3, 8, 8)
    layer, node_in, node_out, cstate = _forward(MAX_POOLING, x, kernel_size=2, stride=2)
    upstream = rng.rand(2, 3, 4, 4).astype(np.float32) + 1.0
    grad = _backward(layer, node_in, node_out, cstate, upstream)

    for n in range(2):
        for c in range(3):
            for oy in range(4):
                for ox in range(4):
                    window = x[n, c, 2 * oy:2 * oy + 2, 2 * ox:2 * ox + 2]
                    gwin = grad[n, c, 2 * oy:2 * oy + 2, 2 * ox:2 * ox + 2]
                    dy, dx = np.unravel_index(window.argmax(), window.shape)
                    assert gwin[dy, dx] == upstream[n, c, oy, ox]
                    assert np.count_nonzero(gwin) == 1


def test_avg_backward_spreads_evenly():
    rng = np.random.RandomState(1)
    x = rng.randn(1, 2, 4, 4).astype(np.float32)
    layer, node_in, node_out, cstate = _forward(AVG_POOLING, x, kernel_size=2, stride=2)
    upstream = rng.randn(1, 2, 2, 2).astype(np.float32)
    grad = _backward(layer, node_in, node_out, cstate, upstream)

    expected = np.repeat(np.repeat(upstream, 2, axis=2), 2, axis=3) / 4
    np.testing.assert_allclose(grad, expected, rtol=1e-6)
    window_sums = grad.reshape(1, 2, 2, 2, 2, 2).sum(axis=(3, 5))
    np.testing.assert_allclose(window_sums, upstream, rtol=1e-5)


def test_sum_backward_broadcasts():
    x = np.ones((1, 1, 4, 4), dtype=np.float32)
    layer, node_in, node_out, cstate = _forward(SUM_POOLING, x, kernel_size=2, stride=2)
    upstream = np.array([[1, 2], [3, 4]], dtype=np.float32).reshape(1, 1, 2, 2)
    grad = _backward(layer, node_in, node_out, cstate, upstream)
    np.testing.assert_array_equal(grad[0, 0], [[1, 1, 2, 2], [1, 1, 2, 2], [3, 3, 4, 4], [3, 3, 4, 4]])


@pytest.mark.parametrize("mode", [MAX_POOLING, SUM_POOLING, AVG_POOLING])
@pytest.mark.parametrize("k, stride, pad", [(2, 2, 0), (3, 2, 1), (3, 1, 1), (2, 3, 1)])
def test_backward_is_adjoint_of_forward(mode, k, stride, pad):
    # sum(G * pool(x)) == sum(backprop(G) * x) for pooling that is linear around x
    rng = np.random.RandomState(7)
    x = rng.permutation(2 * 2 * 7 * 7).astype(np.float32).reshape(2, 2, 7, 7) - 50
    layer, node_in, node_out, cstate = _forward(mode, x, kernel_size=k, stride=stride, pad=pad)
    upstream = rng.randn(*node_out.shape).astype(np.float32)
    lhs = float(np.sum(upstream.astype(np.float64) * node_out.data))
    grad = _backward(layer, node_in, node_out, cstate, upstream)
    rhs = float(np.sum(grad.astype(np.float64) * x))
    assert grad.shape == x.shape
    assert lhs == pytest.approx(rhs, rel=1e-4, abs=1e-3)


def test_no_gradient_written_without_prop_grad():
    x = np.ones((1, 1, 4, 4), dtype=np.float32)
    layer, node_in, node_out, cstate = _forward(MAX_POOLING, x, kernel_size=2, stride=2)
    node_out.data[...] = 7
    layer.backprop(False, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(node_in.data, x)


def test_batch_size_change_resizes_state():
    x = np.zeros((4, 2, 6, 6), dtype=np.float32)
    layer, node_in, node_out, cstate = _connect(AVG_POOLING, x, kernel_size=2, stride=2, pad=1)
    node_in.resize((3, 2, 6, 6))
    node_out.resize((3, 2, 4, 4))
    layer.on_batch_size_changed([node_in], [node_out], cstate)
    assert cstate.states[0].shape == (3, 2, 4, 4)
    assert cstate.states[1].shape == (3, 2, 8, 8)

    node_in.data[...] = 1
    layer.forward(True, [node_in], [node_out], cstate)
    # corner windows see one real pixel and three padding zeros
    assert node_out.data[0, 0, 0, 0] == pytest.approx(0.25)
