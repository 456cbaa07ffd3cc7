"""Elementwise (neuron) layers.

ReLU, sigmoid and tanh have a cuDNN variant as well and are registered
through their engine selectors in ``strata.layers.engines``; the rest are
registered here by class.
"""

from __future__ import annotations

import math

import torch
import torch.nn.functional as F

from strata.config import LayerType
from strata.layers.base import NeuronLayer
from strata.layers.factory import register_layer_class

__all__ = [
    "AbsValLayer",
    "BNLLLayer",
    "DropoutLayer",
    "ExpLayer",
    "PowerLayer",
    "ReLULayer",
    "SigmoidLayer",
    "TanHLayer",
    "ThresholdLayer",
]


@register_layer_class(LayerType.ABSVAL)
class AbsValLayer(NeuronLayer):
    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return torch.abs(x)


@register_layer_class(LayerType.BNLL)
class BNLLLayer(NeuronLayer):
    """Binomial normal log likelihood: log(1 + exp(x)), computed stably."""

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return F.softplus(x)


@register_layer_class(LayerType.DROPOUT)
class DropoutLayer(NeuronLayer):
    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        ratio = self.layer_param.dropout_param.dropout_ratio
        if not 0.0 <= ratio < 1.0:
            raise ValueError(f"dropout_ratio must be in [0, 1), got {ratio}")
        self.ratio = ratio

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return F.dropout(x, p=self.ratio, training=self.training)


@register_layer_class(LayerType.EXP)
class ExpLayer(NeuronLayer):
    """y = base ^ (shift + scale * x)."""

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.exp_param
        if p.base != -1.0 and p.base <= 0.0:
            raise ValueError(f"base must be strictly positive (or -1 for e), got {p.base}")
        log_base = 1.0 if p.base == -1.0 else math.log(p.base)
        self.inner_scale = log_base * p.scale
        self.outer_scale = 1.0 if p.shift == 0.0 else math.exp(log_base * p.shift)

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        y = torch.exp(x * self.inner_scale) if self.inner_scale != 1.0 else torch.exp(x)
        return y * self.outer_scale if self.outer_scale != 1.0 else y


@register_layer_class(LayerType.POWER)
class PowerLayer(NeuronLayer):
    """y = (shift + scale * x) ^ power."""

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        p = self.layer_param.power_param
        if p.scale == 0.0:
            value = 1.0 if p.power == 0.0 else p.shift ** p.power
            return torch.full_like(x, value)
        return torch.pow(p.shift + p.scale * x, p.power)


class ReLULayer(NeuronLayer):
    layer_type = LayerType.RELU

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        slope = self.layer_param.relu_param.negative_slope
        if slope:
            return F.leaky_relu(x, negative_slope=slope)
        return F.relu(x)


class SigmoidLayer(NeuronLayer):
    layer_type = LayerType.SIGMOID

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(x)


class TanHLayer(NeuronLayer):
    layer_type = LayerType.TANH

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return torch.tanh(x)


@register_layer_class(LayerType.THRESHOLD)
class ThresholdLayer(NeuronLayer):
    """1 where x > threshold, else 0."""

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        return (x > self.layer_param.threshold_param.threshold).to(x.dtype)
