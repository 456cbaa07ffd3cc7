"""Base classes for layers.

A layer is a ``torch.nn.Module`` built from a ``LayerParameter`` for one
element type. The built-ins register ``torch.float32`` and ``torch.float64``;
extensions may add other floating point slots. ``forward`` takes the
bottom tensors positionally and returns the list of top tensors.

Shape-dependent state (weights whose size depends on the input channels)
is created lazily in ``layer_setup`` on the first forward call.
"""

from __future__ import annotations

import copy
from typing import ClassVar, Optional

import torch
import torch.nn as nn

from strata.config import Engine, LayerParameter, LayerType

__all__ = [
    "ELEMENT_TYPES",
    "Layer",
    "NeuronLayer",
    "LossLayer",
    "DataLayer",
]

ELEMENT_TYPES: tuple[torch.dtype, ...] = (torch.float32, torch.float64)


class Layer(nn.Module):
    """Common interface of every layer.

    Subclasses declare their arity through the class attributes below; the
    checks run once, on the first forward call.
    """

    layer_type: ClassVar[LayerType] = LayerType.NONE
    exact_num_bottom: ClassVar[Optional[int]] = None
    min_bottom: ClassVar[Optional[int]] = None
    max_bottom: ClassVar[Optional[int]] = None
    exact_num_top: ClassVar[Optional[int]] = None
    min_top: ClassVar[Optional[int]] = None
    max_top: ClassVar[Optional[int]] = None

    def __init__(self, param: LayerParameter, dtype: torch.dtype = torch.float32):
        super().__init__()
        if not dtype.is_floating_point:
            raise TypeError(f"layers need a floating point element type, got {dtype}")
        # Products keep their own copy; the caller's config may change afterwards.
        self.layer_param = copy.deepcopy(param)
        self.dtype = dtype
        self.engine: Engine | None = None
        self._is_setup = False

    @property
    def name(self) -> str:
        return self.layer_param.name

    @property
    def type_name(self) -> str:
        return self.layer_type.name

    def layer_setup(self, bottom: list[torch.Tensor]) -> None:
        """Create shape-dependent state. Called once before the first forward."""

    def forward(self, *bottom: torch.Tensor) -> list[torch.Tensor]:
        bottom_list = list(bottom)
        if not self._is_setup:
            self.check_blob_counts(bottom_list)
            self.layer_setup(bottom_list)
            self._is_setup = True
        return self.compute(bottom_list)

    def compute(self, bottom: list[torch.Tensor]) -> list[torch.Tensor]:
        raise NotImplementedError

    def num_top(self) -> int:
        return len(self.layer_param.top)

    def check_blob_counts(self, bottom: list[torch.Tensor]) -> None:
        n_bottom, n_top = len(bottom), self.num_top()
        where = f"{self.type_name} layer {self.name!r}"
        if self.exact_num_bottom is not None and n_bottom != self.exact_num_bottom:
            raise ValueError(f"{where} takes {self.exact_num_bottom} bottom blob(s) as input, got {n_bottom}.")
        if self.min_bottom is not None and n_bottom < self.min_bottom:
            raise ValueError(f"{where} takes at least {self.min_bottom} bottom blob(s) as input, got {n_bottom}.")
        if self.max_bottom is not None and n_bottom > self.max_bottom:
            raise ValueError(f"{where} takes at most {self.max_bottom} bottom blob(s) as input, got {n_bottom}.")
        # An empty top list means "use the default": tops are not named yet.
        if not self.layer_param.top:
            return
        if self.exact_num_top is not None and n_top != self.exact_num_top:
            raise ValueError(f"{where} produces {self.exact_num_top} top blob(s) as output, declared {n_top}.")
        if self.min_top is not None and n_top < self.min_top:
            raise ValueError(f"{where} produces at least {self.min_top} top blob(s) as output, declared {n_top}.")
        if self.max_top is not None and n_top > self.max_top:
            raise ValueError(f"{where} produces at most {self.max_top} top blob(s) as output, declared {n_top}.")

    def extra_repr(self) -> str:
        engine = f", engine={self.engine.name}" if isinstance(self.engine, Engine) else ""
        return f"name={self.name!r}, dtype={self.dtype}{engine}"


class NeuronLayer(Layer):
    """Elementwise op: one bottom in, one top out, same shape."""

    exact_num_bottom = 1
    exact_num_top = 1

    def compute(self, bottom: list[torch.Tensor]) -> list[torch.Tensor]:
        return [self.neuron(bottom[0])]

    def neuron(self, x: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class LossLayer(Layer):
    """Prediction and target in, scalar loss out."""

    exact_num_bottom = 2
    exact_num_top = 1

    def loss_weight(self) -> float:
        weights = self.layer_param.loss_weight
        return float(weights[0]) if weights else 1.0

    def compute(self, bottom: list[torch.Tensor]) -> list[torch.Tensor]:
        return [self.loss_weight() * self.loss(bottom)]

    def loss(self, bottom: list[torch.Tensor]) -> torch.Tensor:
        raise NotImplementedError


class DataLayer(Layer):
    """Produces batches from a source; takes no bottoms."""

    exact_num_bottom = 0
    min_top = 1
    max_top = 2

    def compute(self, bottom: list[torch.Tensor]) -> list[torch.Tensor]:
        tops = self.next_batch()
        n_top = self.num_top() or len(tops)
        return tops[:n_top]

    def next_batch(self) -> list[torch.Tensor]:
        raise NotImplementedError

    def transform(self, batch: torch.Tensor) -> torch.Tensor:
        """Apply ``transform_param`` (mean subtraction, crop, mirror, scale)."""
        tp = self.layer_param.transform_param
        if tp.mean_value:
            mean = torch.tensor(tp.mean_value, dtype=batch.dtype, device=batch.device)
            if mean.numel() not in (1, batch.shape[1]):
                raise ValueError(
                    f"layer {self.name!r}: mean_value must have 1 or {batch.shape[1]} entries, got {mean.numel()}"
                )
            batch = batch - mean.view(1, -1, 1, 1)
        if tp.crop_size:
            h, w = batch.shape[-2:]
            size = tp.crop_size
            if size > h or size > w:
                raise ValueError(f"layer {self.name!r}: crop_size {size} exceeds input {h}x{w}")
            if self.training:
                y = int(torch.randint(0, h - size + 1, (1,)).item())
                x = int(torch.randint(0, w - size + 1, (1,)).item())
            else:
                y, x = (h - size) // 2, (w - size) // 2
            batch = batch[..., y:y + size, x:x + size]
        if tp.mirror and self.training and bool(torch.rand(()) < 0.5):
            batch = torch.flip(batch, dims=(-1,))
        if tp.scale != 1.0:
            batch = batch * tp.scale
        return batch.contiguous()
