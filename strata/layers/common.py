"""Layers that reshape, combine or route blobs.

``SoftmaxLayer`` is the portable softmax behind the softmax engine selector.
"""

from __future__ import annotations

import torch
import torch.nn as nn
import torch.nn.functional as F

from strata.config import EltwiseOp, LayerType
from strata.fillers import get_filler
from strata.layers.base import Layer
from strata.layers.factory import register_layer_class

__all__ = [
    "ArgMaxLayer",
    "ConcatLayer",
    "EltwiseLayer",
    "FlattenLayer",
    "InnerProductLayer",
    "MVNLayer",
    "SilenceLayer",
    "SliceLayer",
    "SoftmaxLayer",
    "SplitLayer",
]


@register_layer_class(LayerType.ARGMAX)
class ArgMaxLayer(Layer):
    """Indices of the top_k values per sample, shaped (N, 1 or 2, top_k, 1).

    With ``out_max_val`` the second channel holds the values themselves.
    """

    exact_num_bottom = 1
    exact_num_top = 1

    def layer_setup(self, bottom):
        p = self.layer_param.argmax_param
        dim = bottom[0][0].numel()
        if p.top_k < 1 or p.top_k > dim:
            raise ValueError(f"layer {self.name!r}: top_k must be in [1, {dim}], got {p.top_k}")

    def compute(self, bottom):
        p = self.layer_param.argmax_param
        x = bottom[0].reshape(bottom[0].shape[0], -1)
        values, indices = torch.topk(x, p.top_k, dim=1)
        indices = indices.to(x.dtype)
        if p.out_max_val:
            out = torch.stack((indices, values), dim=1)
        else:
            out = indices.unsqueeze(1)
        return [out.unsqueeze(-1)]


@register_layer_class(LayerType.CONCAT)
class ConcatLayer(Layer):
    min_bottom = 1
    exact_num_top = 1

    def layer_setup(self, bottom):
        dim = self.layer_param.concat_param.concat_dim
        ref = bottom[0]
        if not -ref.dim() <= dim < ref.dim():
            raise ValueError(f"layer {self.name!r}: concat_dim {dim} out of range for {ref.dim()}-d input")
        for blob in bottom[1:]:
            if blob.dim() != ref.dim() or any(
                a != b for i, (a, b) in enumerate(zip(blob.shape, ref.shape)) if i != dim % ref.dim()
            ):
                raise ValueError(f"layer {self.name!r}: bottoms differ outside concat_dim")

    def compute(self, bottom):
        return [torch.cat(bottom, dim=self.layer_param.concat_param.concat_dim)]


@register_layer_class(LayerType.ELTWISE)
class EltwiseLayer(Layer):
    min_bottom = 2
    exact_num_top = 1

    def layer_setup(self, bottom):
        p = self.layer_param.eltwise_param
        if p.coeff and p.operation is not EltwiseOp.SUM:
            raise ValueError(f"layer {self.name!r}: coefficients are only supported for SUM")
        if p.coeff and len(p.coeff) != len(bottom):
            raise ValueError(f"layer {self.name!r}: expected one coeff per bottom, got {len(p.coeff)}")
        for blob in bottom[1:]:
            if blob.shape != bottom[0].shape:
                raise ValueError(f"layer {self.name!r}: all bottoms must have the same shape")

    def compute(self, bottom):
        p = self.layer_param.eltwise_param
        if p.operation is EltwiseOp.PROD:
            out = bottom[0]
            for blob in bottom[1:]:
                out = out * blob
        elif p.operation is EltwiseOp.MAX:
            out = bottom[0]
            for blob in bottom[1:]:
                out = torch.maximum(out, blob)
        else:
            coeff = p.coeff or [1.0] * len(bottom)
            out = sum(c * blob for c, blob in zip(coeff, bottom))
        return [out]


@register_layer_class(LayerType.FLATTEN)
class FlattenLayer(Layer):
    """(N, C, H, W) -> (N, C*H*W, 1, 1)."""

    exact_num_bottom = 1
    exact_num_top = 1

    def compute(self, bottom):
        x = bottom[0]
        return [x.reshape(x.shape[0], -1, 1, 1)]


@register_layer_class(LayerType.INNER_PRODUCT)
class InnerProductLayer(Layer):
    """Fully connected layer; output shaped (N, num_output, 1, 1)."""

    exact_num_bottom = 1
    exact_num_top = 1

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        if self.layer_param.inner_product_param.num_output <= 0:
            raise ValueError(f"layer {self.name!r}: num_output must be positive")
        self.weight: nn.Parameter | None = None
        self.bias: nn.Parameter | None = None

    def layer_setup(self, bottom):
        p = self.layer_param.inner_product_param
        fan_in = bottom[0][0].numel()
        device = bottom[0].device
        self.weight = nn.Parameter(
            get_filler(p.weight_filler, self.dtype).make(p.num_output, fan_in, device=device)
        )
        if p.bias_term:
            self.bias = nn.Parameter(get_filler(p.bias_filler, self.dtype).make(p.num_output, device=device))

    def compute(self, bottom):
        x = bottom[0].reshape(bottom[0].shape[0], -1)
        y = F.linear(x, self.weight, self.bias)
        return [y.view(y.shape[0], -1, 1, 1)]


@register_layer_class(LayerType.MVN)
class MVNLayer(Layer):
    """Mean-variance normalization per sample, per channel unless across_channels."""

    exact_num_bottom = 1
    exact_num_top = 1
    eps = 1e-10

    def compute(self, bottom):
        p = self.layer_param.mvn_param
        x = bottom[0]
        n = x.shape[0]
        flat = x.reshape(n, -1) if p.across_channels else x.reshape(n, x.shape[1], -1)
        centered = flat - flat.mean(dim=-1, keepdim=True)
        if p.normalize_variance:
            std = centered.pow(2).mean(dim=-1, keepdim=True).sqrt()
            centered = centered / (std + self.eps)
        return [centered.view_as(x)]


@register_layer_class(LayerType.SILENCE)
class SilenceLayer(Layer):
    """Consumes its bottoms and produces nothing."""

    min_bottom = 1
    exact_num_top = 0

    def compute(self, bottom):
        return []


@register_layer_class(LayerType.SLICE)
class SliceLayer(Layer):
    exact_num_bottom = 1
    min_top = 1

    def _sizes(self, length: int) -> list[int]:
        p = self.layer_param.slice_param
        if p.slice_point:
            if self.num_top() and len(p.slice_point) != self.num_top() - 1:
                raise ValueError(f"layer {self.name!r}: need {self.num_top() - 1} slice points")
            points = [0, *p.slice_point, length]
            if any(b <= a for a, b in zip(points, points[1:])):
                raise ValueError(f"layer {self.name!r}: slice points must be increasing and inside the axis")
            return [b - a for a, b in zip(points, points[1:])]
        parts = self.num_top() or 1
        if length % parts != 0:
            raise ValueError(f"layer {self.name!r}: axis of size {length} does not split into {parts} equal parts")
        return [length // parts] * parts

    def compute(self, bottom):
        dim = self.layer_param.slice_param.slice_dim
        x = bottom[0]
        return list(torch.split(x, self._sizes(x.shape[dim]), dim=dim))


class SoftmaxLayer(Layer):
    """Softmax over the channel axis."""

    layer_type = LayerType.SOFTMAX
    exact_num_bottom = 1
    exact_num_top = 1

    def compute(self, bottom):
        with torch.backends.cudnn.flags(enabled=False):
            return [torch.softmax(bottom[0], dim=1)]


@register_layer_class(LayerType.SPLIT)
class SplitLayer(Layer):
    """Hands the same bottom to several consumers."""

    exact_num_bottom = 1
    min_top = 1

    def compute(self, bottom):
        return [bottom[0]] * max(1, self.num_top())
