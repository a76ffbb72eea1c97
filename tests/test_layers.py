"""Convolution, fully connected, activation and softmax layers."""

from __future__ import annotations

import numpy as np
import pytest

from clear_engine.errors import ConfigError, UsageError
from clear_engine.layer import ConnectState, LayerParam, Node
from clear_engine.model import (ConvolutionLayer, FlattenLayer, FullConnectLayer, ReLULayer,
                                SoftmaxLayer, build_layer_registry, compute_cross_entropy_loss)


def _connect(layer, shape, **params):
    for name, value in params.items():
        layer.set_param(name, str(value))
    node_in, node_out, cstate = Node(shape), Node(), ConnectState()
    layer.init_connection([node_in], [node_out], cstate)
    return node_in, node_out, cstate


def _reference_conv(x, wmat, bias, k, stride, pad):
    n, c, h, w = x.shape
    padded = np.pad(x.astype(np.float64), ((0, 0), (0, 0), (pad, pad), (pad, pad)))
    out_h = (h + 2 * pad - k) // stride + 1
    out_w = (w + 2 * pad - k) // stride + 1
    kernels = wmat.reshape(-1, c, k, k)
    out = np.zeros((n, kernels.shape[0], out_h, out_w))
    for oy in range(out_h):
        for ox in range(out_w):
            patch = padded[:, :, oy * stride:oy * stride + k, ox * stride:ox * stride + k]
            out[:, :, oy, ox] = np.einsum('nchw,ochw->no', patch, kernels)
    return out + bias.reshape(1, -1, 1, 1)


def test_xavier_and_gaussian_init():
    param = LayerParam()
    rng = np.random.RandomState(0)
    w = param.random_init_weight(rng, (30, 20))
    assert w.dtype == np.float32
    assert abs(float(w.std()) - 0.01) < 0.005

    param.set_param("random_type", "xavier")
    w = param.random_init_weight(rng, (30, 20))
    limit = np.sqrt(6.0 / 50)
    assert np.all(np.abs(w) <= limit)


def test_unknown_random_type():
    with pytest.raises(ConfigError):
        LayerParam().set_param("random_type", "uniform")


def test_conv_forward_matches_reference():
    rng = np.random.RandomState(3)
    layer = ConvolutionLayer(np.random.RandomState(0))
    node_in, node_out, cstate = _connect(layer, (2, 3, 6, 6), nchannel=4, kernel_size=3,
                                         stride=2, pad=1, init_bias=0.5, init_sigma=0.1)
    assert node_out.shape == (2, 4, 3, 3)
    assert layer.wmat.shape == (4, 27)
    assert layer.bias.shape == (1, 4)

    x = rng.randn(2, 3, 6, 6).astype(np.float32)
    node_in.data[...] = x
    layer.forward(True, [node_in], [node_out], cstate)
    expected = _reference_conv(x, layer.wmat, layer.bias, 3, 2, 1)
    np.testing.assert_allclose(node_out.data, expected, rtol=1e-4, atol=1e-5)


def test_conv_backward_gradients():
    # conv is linear in both x and wmat, so each gradient is the adjoint of forward
    rng = np.random.RandomState(4)
    layer = ConvolutionLayer(np.random.RandomState(1))
    node_in, node_out, cstate = _connect(layer, (2, 2, 5, 5), nchannel=3, kernel_size=3,
                                         pad=1, no_bias=1, init_sigma=0.5)
    x = rng.randn(2, 2, 5, 5).astype(np.float32)
    node_in.data[...] = x
    layer.forward(True, [node_in], [node_out], cstate)
    upstream = rng.randn(*node_out.shape).astype(np.float32)
    lhs = float(np.sum(upstream.astype(np.float64) * node_out.data))

    node_out.data[...] = upstream
    layer.backprop(True, [node_in], [node_out], cstate)

    assert 'bias' not in layer.weights()
    assert float(np.sum(layer.gwmat.astype(np.float64) * layer.wmat)) == pytest.approx(lhs, rel=1e-4, abs=1e-3)
    assert float(np.sum(node_in.data.astype(np.float64) * x)) == pytest.approx(lhs, rel=1e-4, abs=1e-3)


def test_conv_bias_gradient_sums_upstream():
    layer = ConvolutionLayer()
    node_in, node_out, cstate = _connect(layer, (2, 1, 4, 4), nchannel=2, kernel_size=2, stride=2)
    layer.forward(True, [node_in], [node_out], cstate)
    node_out.data[...] = 1.0
    layer.backprop(False, [node_in], [node_out], cstate)
    np.testing.assert_allclose(layer.gbias, [[8.0, 8.0]])


def test_conv_requires_nchannel():
    with pytest.raises(ConfigError):
        _connect(ConvolutionLayer(), (1, 1, 4, 4), kernel_size=3)


def test_fullc_forward_and_backward():
    rng = np.random.RandomState(5)
    layer = FullConnectLayer(np.random.RandomState(2))
    node_in, node_out, cstate = _connect(layer, (4, 2, 1, 3), nhidden=5, init_sigma=0.3)
    assert node_out.shape == (4, 1, 1, 5)
    assert layer.wmat.shape == (5, 6)

    x = rng.randn(4, 2, 1, 3).astype(np.float32)
    node_in.data[...] = x
    layer.forward(True, [node_in], [node_out], cstate)
    np.testing.assert_allclose(node_out.data.reshape(4, 5), x.reshape(4, 6) @ layer.wmat.T + layer.bias,
                               rtol=1e-5, atol=1e-6)

    dz = rng.randn(4, 5).astype(np.float32)
    node_out.data[...] = dz.reshape(4, 1, 1, 5)
    layer.backprop(True, [node_in], [node_out], cstate)
    np.testing.assert_allclose(layer.gwmat, dz.T @ x.reshape(4, 6), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(layer.gbias, dz.sum(axis=0, keepdims=True), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(node_in.data.reshape(4, 6), dz @ layer.wmat, rtol=1e-5, atol=1e-6)


def test_fullc_gradients_accumulate():
    layer = FullConnectLayer()
    node_in, node_out, cstate = _connect(layer, (1, 1, 1, 2), nhidden=1)
    node_in.data[...] = 1.0
    node_out.data[...] = 1.0
    layer.backprop(False, [node_in], [node_out], cstate)
    layer.backprop(False, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(layer.gwmat, [[2.0, 2.0]])


def test_relu_masks_gradient():
    layer = ReLULayer()
    node_in, node_out, cstate = _connect(layer, (1, 1, 1, 4))
    node_in.data[...] = np.array([-1, 0, 2, 3], dtype=np.float32).reshape(1, 1, 1, 4)
    layer.forward(True, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(node_out.data.ravel(), [0, 0, 2, 3])
    node_out.data[...] = 5
    layer.backprop(True, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(node_in.data.ravel(), [0, 0, 5, 5])


def test_flatten_round_trip():
    layer = FlattenLayer()
    node_in, node_out, cstate = _connect(layer, (2, 3, 2, 2))
    assert node_out.shape == (2, 1, 1, 12)
    x = np.arange(24, dtype=np.float32).reshape(2, 3, 2, 2)
    node_in.data[...] = x
    layer.forward(True, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(node_out.data.ravel(), x.ravel())
    node_in.data[...] = 0
    layer.backprop(True, [node_in], [node_out], cstate)
    np.testing.assert_array_equal(node_in.data, x)


def test_softmax_probabilities_and_gradient():
    layer = SoftmaxLayer()
    node_in, node_out, cstate = _connect(layer, (2, 1, 1, 3))
    node_in.data[...] = np.array([[1, 2, 3], [1000, 1000, 1000]], dtype=np.float32).reshape(2, 1, 1, 3)
    layer.forward(True, [node_in], [node_out], cstate)
    probs = node_out.data.reshape(2, 3).copy()
    np.testing.assert_allclose(probs.sum(axis=1), [1, 1], rtol=1e-6)
    np.testing.assert_allclose(probs[1], [1 / 3] * 3, rtol=1e-6)

    labels = np.array([[2], [0]], dtype=np.float32)
    layer.set_label(labels)
    layer.backprop(True, [node_in], [node_out], cstate)
    expected = probs.copy()
    expected[0, 2] -= 1
    expected[1, 0] -= 1
    np.testing.assert_allclose(node_in.data.reshape(2, 3), expected / 2, rtol=1e-6, atol=1e-7)

    loss = compute_cross_entropy_loss(probs, labels)
    assert loss == pytest.approx(-(np.log(probs[0, 2]) + np.log(probs[1, 0])) / 2, rel=1e-5)


def test_softmax_needs_label():
    layer = SoftmaxLayer()
    node_in, node_out, cstate = _connect(layer, (1, 1, 1, 2))
    with pytest.raises(UsageError):
        layer.backprop(True, [node_in], [node_out], cstate)


def test_layer_registry():
    registry = build_layer_registry()
    for tag in ('conv', 'fullc', 'relu', 'flatten', 'softmax', 'max_pooling', 'sum_pooling', 'avg_pooling'):
        assert tag in registry
    pool = registry.create('avg_pooling', np.random.RandomState(0))
    assert pool.mode == 'avg'
    with pytest.raises(ConfigError, match="Valid options"):
        registry.create('lstm')
    with pytest.raises(ConfigError):
        registry.register('relu', ReLULayer)
