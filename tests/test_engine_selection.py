"""Engine selection: DEFAULT resolution, fallback diagnostics, unsupported engines.

Build features are pinned per test, so these run the same on CPU-only
machines and on machines with cuDNN.
"""

from __future__ import annotations

import pytest
import torch

from strata.config import Engine
from strata.errors import UnsupportedEngineError
from strata.layers.common import SoftmaxLayer
from strata.layers.cudnn import (
    CuDNNConvolutionLayer,
    CuDNNPoolingLayer,
    CuDNNReLULayer,
    CuDNNSigmoidLayer,
    CuDNNSoftmaxLayer,
    CuDNNTanHLayer,
)
from strata.layers.engines import SELECTORS
from strata.layers.factory import create_layer
from strata.layers.neuron import ReLULayer, SigmoidLayer, TanHLayer
from strata.layers.vision import ConvolutionLayer, PoolingLayer
from tests.conftest import make_param

CASES = [
    ("CONVOLUTION", "convolution_param", {"num_output": 4, "kernel_size": 3}, ConvolutionLayer, CuDNNConvolutionLayer),
    ("POOLING", "pooling_param", {"kernel_size": 2, "stride": 2}, PoolingLayer, CuDNNPoolingLayer),
    ("RELU", "relu_param", {}, ReLULayer, CuDNNReLULayer),
    ("SIGMOID", "sigmoid_param", {}, SigmoidLayer, CuDNNSigmoidLayer),
    ("SOFTMAX", "softmax_param", {}, SoftmaxLayer, CuDNNSoftmaxLayer),
    ("TANH", "tanh_param", {}, TanHLayer, CuDNNTanHLayer),
]


def _param(layer_type, attr, fields, engine="default", **extra):
    return make_param(layer_type, **{attr: {**fields, "engine": engine}}, **extra)


def test_every_selector_is_registered():
    assert {t.name for t in SELECTORS} == {c[0] for c in CASES}


@pytest.mark.parametrize("layer_type,attr,fields,portable,_", CASES)
def test_default_is_portable_without_cudnn(cpu_only, layer_type, attr, fields, portable, _):
    layer = create_layer(_param(layer_type, attr, fields))
    assert type(layer) is portable
    assert layer.engine is Engine.TORCH


@pytest.mark.parametrize("layer_type,attr,fields,_,accelerated", CASES)
def test_default_is_cudnn_when_available(cudnn_build, layer_type, attr, fields, _, accelerated):
    layer = create_layer(_param(layer_type, attr, fields))
    assert type(layer) is accelerated
    assert layer.engine is Engine.CUDNN


@pytest.mark.parametrize("layer_type,attr,fields,portable,_", CASES)
def test_explicit_torch_engine_wins_over_cudnn(cudnn_build, layer_type, attr, fields, portable, _):
    layer = create_layer(_param(layer_type, attr, fields, engine="torch"))
    assert type(layer) is portable


@pytest.mark.parametrize("layer_type,attr,fields,_p,_a", CASES)
def test_cudnn_without_cudnn_build_raises(cpu_only, layer_type, attr, fields, _p, _a):
    with pytest.raises(UnsupportedEngineError) as err:
        create_layer(_param(layer_type, attr, fields, engine="cudnn", name="needs_cudnn"))
    assert "needs_cudnn" in str(err.value)
    assert "CUDNN" in str(err.value)


def test_unknown_engine_string_raises(cudnn_build):
    param = _param("RELU", "relu_param", {}, engine="caffe2", name="relu7")
    assert param.relu_param.engine == "caffe2"

    with pytest.raises(UnsupportedEngineError) as err:
        create_layer(param)
    assert isinstance(err.value, ValueError)
    assert "relu7" in str(err.value)
    assert "caffe2" in str(err.value)


def test_pooling_asymmetric_padding_falls_back(cudnn_build, capsys):
    param = _param("POOLING", "pooling_param", {"kernel_size": 3, "pad_h": 1, "pad_w": 0}, name="pool_asym")
    layer = create_layer(param)

    assert type(layer) is PoolingLayer
    assert layer.engine is Engine.TORCH
    out = capsys.readouterr().out
    assert "pool_asym" in out
    assert "falling back" in out


def test_pooling_multiple_tops_falls_back(cudnn_build, capsys):
    param = _param("POOLING", "pooling_param", {"kernel_size": 2, "stride": 2},
                   name="pool_mask", top=["pool", "mask"])
    layer = create_layer(param)

    assert type(layer) is PoolingLayer
    assert "multiple tops" in capsys.readouterr().out

    pooled, mask = layer(torch.arange(16, dtype=torch.float32).view(1, 1, 4, 4))
    assert pooled.flatten().tolist() == [5.0, 7.0, 13.0, 15.0]
    assert mask.flatten().tolist() == [5.0, 7.0, 13.0, 15.0]


def test_pooling_symmetric_padding_stays_on_cudnn(cudnn_build, capsys):
    param = _param("POOLING", "pooling_param", {"kernel_size": 3, "pad": 1})
    layer = create_layer(param)

    assert type(layer) is CuDNNPoolingLayer
    assert "falling back" not in capsys.readouterr().out


def test_portable_and_cudnn_variants_agree(cudnn_build):
    x = torch.randn(2, 3, 6, 6)
    fields = {"kernel_size": 3, "stride": 2, "pad": 1}
    fast = create_layer(_param("POOLING", "pooling_param", fields))
    slow = create_layer(_param("POOLING", "pooling_param", fields, engine="torch"))

    torch.testing.assert_close(fast(x)[0], slow(x)[0])
