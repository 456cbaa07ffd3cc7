"""Engine selection for layers with a portable and an accelerated variant.

    engine = param.<kind>_param.engine
    DEFAULT -> CUDNN if the build has cuDNN, else TORCH
    CUDNN   -> accelerated class, unless the configuration is one it cannot
               service; then the portable class plus a console note
    TORCH   -> portable class
    other   -> UnsupportedEngineError

Convolution, pooling, ReLU, sigmoid, softmax and tanh register their
selector here with ``register_layer_creator``.
"""

from __future__ import annotations

from typing import Callable, Mapping, Optional

import torch

from strata.config import Engine, LayerParameter, LayerType
from strata.console import console
from strata.errors import UnsupportedEngineError
from strata.layers.base import Layer
from strata.layers.common import SoftmaxLayer
from strata.layers.cudnn import (
    CuDNNConvolutionLayer,
    CuDNNPoolingLayer,
    CuDNNReLULayer,
    CuDNNSigmoidLayer,
    CuDNNSoftmaxLayer,
    CuDNNTanHLayer,
)
from strata.layers.factory import register_layer_creator
from strata.layers.neuron import ReLULayer, SigmoidLayer, TanHLayer
from strata.layers.vision import ConvolutionLayer, PoolingLayer
from strata.runtime import features

__all__ = [
    "Applicability",
    "EngineSelector",
    "SELECTORS",
    "resolve_default_engine",
    "engine_available",
    "cudnn_pooling_applicability",
]

# Returns why the engine cannot build this layer, or None if it can.
Applicability = Callable[[LayerParameter], Optional[str]]


def resolve_default_engine() -> Engine:
    return Engine.CUDNN if features().cudnn_available else Engine.TORCH


def engine_available(engine: Engine) -> bool:
    if engine is Engine.TORCH:
        return True
    if engine is Engine.CUDNN:
        return features().cudnn_available
    return False


class EngineSelector:
    """Creator that picks the implementation class for one layer type."""

    def __init__(
        self,
        layer_type: LayerType,
        param_attr: str,
        portable: type[Layer],
        accelerated: Mapping[Engine, type[Layer]],
        applicability: Optional[Mapping[Engine, Applicability]] = None,
    ):
        self.layer_type = layer_type
        self.param_attr = param_attr
        self.portable = portable
        self.accelerated = dict(accelerated)
        self.applicability = dict(applicability or {})

    def requested_engine(self, param: LayerParameter):
        return Engine.coerce(getattr(param, self.param_attr).engine)

    def available_engines(self) -> list[Engine]:
        return [Engine.TORCH] + [e for e in self.accelerated if engine_available(e)]

    def select(self, param: LayerParameter) -> tuple[Engine, type[Layer]]:
        engine = self.requested_engine(param)
        if not isinstance(engine, Engine):
            raise UnsupportedEngineError(param.name, engine, self.available_engines())
        if engine is Engine.DEFAULT:
            engine = resolve_default_engine()
        if engine is Engine.TORCH:
            return engine, self.portable
        cls = self.accelerated.get(engine)
        if cls is None or not engine_available(engine):
            raise UnsupportedEngineError(param.name, engine, self.available_engines())
        check = self.applicability.get(engine)
        reason = check(param) if check is not None else None
        if reason:
            console.info(
                f"Layer {param.name}: {reason}; falling back to the torch {self.layer_type.name.lower()} layer"
            )
            return Engine.TORCH, self.portable
        return engine, cls

    def __call__(self, param: LayerParameter, dtype: torch.dtype = torch.float32) -> Layer:
        engine, cls = self.select(param)
        layer = cls(param, dtype=dtype)
        layer.engine = engine
        return layer

    def __repr__(self) -> str:
        options = ", ".join(e.name for e in self.accelerated)
        return f"EngineSelector({self.layer_type.name}, portable={self.portable.__name__}, accelerated=[{options}])"


def cudnn_pooling_applicability(param: LayerParameter) -> Optional[str]:
    p = param.pooling_param
    pad_h, pad_w = p.pad_shape()
    if pad_h != pad_w:
        return "cuDNN does not support asymmetric padding"
    if len(param.top) > 1:
        return "cuDNN does not support multiple tops"
    return None


SELECTORS: dict[LayerType, EngineSelector] = {
    LayerType.CONVOLUTION: EngineSelector(
        LayerType.CONVOLUTION, "convolution_param", ConvolutionLayer, {Engine.CUDNN: CuDNNConvolutionLayer}
    ),
    LayerType.POOLING: EngineSelector(
        LayerType.POOLING, "pooling_param", PoolingLayer, {Engine.CUDNN: CuDNNPoolingLayer},
        applicability={Engine.CUDNN: cudnn_pooling_applicability},
    ),
    LayerType.RELU: EngineSelector(LayerType.RELU, "relu_param", ReLULayer, {Engine.CUDNN: CuDNNReLULayer}),
    LayerType.SIGMOID: EngineSelector(
        LayerType.SIGMOID, "sigmoid_param", SigmoidLayer, {Engine.CUDNN: CuDNNSigmoidLayer}
    ),
    LayerType.SOFTMAX: EngineSelector(
        LayerType.SOFTMAX, "softmax_param", SoftmaxLayer, {Engine.CUDNN: CuDNNSoftmaxLayer}
    ),
    LayerType.TANH: EngineSelector(LayerType.TANH, "tanh_param", TanHLayer, {Engine.CUDNN: CuDNNTanHLayer}),
}

for _layer_type, _selector in SELECTORS.items():
    register_layer_creator(_layer_type)(_selector)
