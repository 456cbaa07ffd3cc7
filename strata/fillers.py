"""Weight fillers.

A small product family on top of the same registry machinery as layers:
the filler type string selects a ``Filler`` class per dtype.
"""

from __future__ import annotations

import math
from dataclasses import replace

import torch

from strata.config import FillerParameter
from strata.errors import ConfigError
from strata.registry import ProductFamily

__all__ = [
    "FILLERS",
    "Filler",
    "ConstantFiller",
    "UniformFiller",
    "GaussianFiller",
    "XavierFiller",
    "register_filler",
    "get_filler",
]

FILLERS: ProductFamily[str, "Filler"] = ProductFamily(
    "Filler", element_types=(torch.float32, torch.float64)
)


class Filler:
    def __init__(self, param: FillerParameter, dtype: torch.dtype = torch.float32):
        self.param = replace(param)
        self.dtype = dtype

    def fill(self, tensor: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def make(self, *shape: int, device: torch.device | str | None = None) -> torch.Tensor:
        return self.fill(torch.empty(*shape, dtype=self.dtype, device=device))


def register_filler(name: str):
    def deco(cls: type[Filler]) -> type[Filler]:
        FILLERS.register_all(name, lambda dtype: (lambda param: cls(param, dtype=dtype)))
        return cls
    return deco


@register_filler("constant")
class ConstantFiller(Filler):
    def fill(self, tensor: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            return tensor.fill_(self.param.value)


@register_filler("uniform")
class UniformFiller(Filler):
    def fill(self, tensor: torch.Tensor) -> torch.Tensor:
        if self.param.min > self.param.max:
            raise ConfigError(f"uniform filler: min ({self.param.min}) > max ({self.param.max})")
        with torch.no_grad():
            return tensor.uniform_(self.param.min, self.param.max)


@register_filler("gaussian")
class GaussianFiller(Filler):
    def fill(self, tensor: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            tensor.normal_(self.param.mean, self.param.std)
            sparse = self.param.sparse
            if sparse >= 0:
                # Keep on average `sparse` non-zero inputs per output unit.
                if tensor.dim() < 2:
                    raise ConfigError("sparse gaussian filler needs a tensor with at least 2 dims")
                num_outputs = tensor.shape[0]
                non_zero_prob = min(1.0, sparse / max(1, num_outputs))
                mask = torch.bernoulli(torch.full_like(tensor, non_zero_prob))
                tensor.mul_(mask)
            return tensor


@register_filler("xavier")
class XavierFiller(Filler):
    """Uniform in [-s, s] with s = sqrt(3 / fan_in)."""

    def fill(self, tensor: torch.Tensor) -> torch.Tensor:
        if tensor.dim() == 0 or tensor.numel() == 0:
            return tensor
        fan_in = tensor.numel() // tensor.shape[0]
        scale = math.sqrt(3.0 / max(1, fan_in))
        with torch.no_grad():
            return tensor.uniform_(-scale, scale)


def get_filler(param: FillerParameter, dtype: torch.dtype = torch.float32) -> Filler:
    return FILLERS.create(param.type.strip().lower(), dtype, param)
