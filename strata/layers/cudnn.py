"""cuDNN-accelerated variants.

Each class reuses the portable layer's math and only changes how it runs:
under ``torch.backends.cudnn.flags(enabled=True, benchmark=True)``. They are
never registered directly; the engine selectors in ``strata.layers.engines``
pick them when cuDNN is available and applicable.
"""

from __future__ import annotations

import torch

from strata.layers.common import SoftmaxLayer
from strata.layers.neuron import ReLULayer, SigmoidLayer, TanHLayer
from strata.layers.vision import ConvolutionLayer, PoolingLayer

__all__ = [
    "CuDNNConvolutionLayer",
    "CuDNNPoolingLayer",
    "CuDNNReLULayer",
    "CuDNNSigmoidLayer",
    "CuDNNSoftmaxLayer",
    "CuDNNTanHLayer",
]


def _cudnn():
    return torch.backends.cudnn.flags(enabled=True, benchmark=True)


class CuDNNConvolutionLayer(ConvolutionLayer):
    def compute(self, bottom):
        with _cudnn():
            return [self.convolve(x) for x in bottom]


class CuDNNPoolingLayer(PoolingLayer):
    """Single top, symmetric padding only."""

    def compute(self, bottom):
        with _cudnn():
            return self.pool(bottom[0])


class CuDNNReLULayer(ReLULayer):
    def compute(self, bottom):
        with _cudnn():
            return [self.neuron(bottom[0])]


class CuDNNSigmoidLayer(SigmoidLayer):
    def compute(self, bottom):
        with _cudnn():
            return [self.neuron(bottom[0])]


class CuDNNSoftmaxLayer(SoftmaxLayer):
    def compute(self, bottom):
        with _cudnn():
            return [torch.softmax(bottom[0], dim=1)]


class CuDNNTanHLayer(TanHLayer):
    def compute(self, bottom):
        with _cudnn():
            return [self.neuron(bottom[0])]
