"""Spatial layers: convolution, pooling, local response normalization, im2col.

``ConvolutionLayer`` and ``PoolingLayer`` are the portable implementations
behind the convolution and pooling engine selectors; they run with cuDNN
disabled so results do not depend on which kernels torch would pick.
"""

from __future__ import annotations

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from strata.config import LayerType, NormRegion, PoolMethod
from strata.fillers import get_filler
from strata.layers.base import Layer
from strata.layers.factory import register_layer_class

__all__ = [
    "ConvolutionLayer",
    "PoolingLayer",
    "LRNLayer",
    "Im2colLayer",
]


def _positive(name: str, value: tuple[int, int], layer: str) -> None:
    if value[0] <= 0 or value[1] <= 0:
        raise ValueError(f"layer {layer!r}: {name} must be positive, got {value}")


def _pooled_size(size: int, kernel: int, pad: int, stride: int) -> int:
    out = math.ceil((size + 2 * pad - kernel) / stride) + 1
    # The last window has to start inside the bottom or its leading pad.
    if (out - 1) * stride >= size + pad:
        out -= 1
    return out


class ConvolutionLayer(Layer):
    """2D convolution; every bottom is convolved with the same filters."""

    layer_type = LayerType.CONVOLUTION
    min_bottom = 1
    min_top = 1

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.convolution_param
        self.kernel = p.kernel_shape()
        self.pad = p.pad_shape()
        self.stride = p.stride_shape()
        self.group = p.group
        self.num_output = p.num_output
        _positive("kernel size", self.kernel, self.name)
        _positive("stride", self.stride, self.name)
        if self.num_output <= 0:
            raise ValueError(f"layer {self.name!r}: num_output must be positive")
        if self.num_output % self.group != 0:
            raise ValueError(f"layer {self.name!r}: num_output must be a multiple of group")
        self.weight: nn.Parameter | None = None
        self.bias: nn.Parameter | None = None

    def check_blob_counts(self, bottom):
        super().check_blob_counts(bottom)
        if self.layer_param.top and len(self.layer_param.top) != len(bottom):
            raise ValueError(f"layer {self.name!r}: needs as many tops as bottoms")

    def layer_setup(self, bottom):
        p = self.layer_param.convolution_param
        channels = bottom[0].shape[1]
        for blob in bottom[1:]:
            if blob.shape[1:] != bottom[0].shape[1:]:
                raise ValueError(f"layer {self.name!r}: all bottoms must have the same shape")
        if channels % self.group != 0:
            raise ValueError(f"layer {self.name!r}: number of input channels must be a multiple of group")
        device = bottom[0].device
        shape = (self.num_output, channels // self.group, *self.kernel)
        self.weight = nn.Parameter(get_filler(p.weight_filler, self.dtype).make(*shape, device=device))
        if p.bias_term:
            self.bias = nn.Parameter(get_filler(p.bias_filler, self.dtype).make(self.num_output, device=device))

    def convolve(self, x: torch.Tensor) -> torch.Tensor:
        return F.conv2d(x, self.weight, self.bias, stride=self.stride, padding=self.pad, groups=self.group)

    def compute(self, bottom):
        with torch.backends.cudnn.flags(enabled=False):
            return [self.convolve(x) for x in bottom]


class PoolingLayer(Layer):
    """Max, average or stochastic pooling over 2D windows.

    With MAX and two tops, the second top holds the argmax mask.
    """

    layer_type = LayerType.POOLING
    exact_num_bottom = 1
    min_top = 1
    max_top = 2

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.pooling_param
        self.method = p.pool
        self.global_pooling = p.global_pooling
        self.pad = p.pad_shape()
        self.stride = p.stride_shape()
        self.kernel = p.kernel_shape()
        if self.global_pooling:
            if p.kernel_size or p.kernel_h or p.kernel_w:
                raise ValueError(f"layer {self.name!r}: with global_pooling, kernel size cannot be specified")
        else:
            _positive("kernel size", self.kernel, self.name)
        _positive("stride", self.stride, self.name)
        if any(self.pad):
            if self.method not in (PoolMethod.MAX, PoolMethod.AVE):
                raise ValueError(f"layer {self.name!r}: padding implemented only for average and max pooling")
            if self.pad[0] >= self.kernel[0] or self.pad[1] >= self.kernel[1]:
                raise ValueError(f"layer {self.name!r}: pad must be smaller than the kernel")
        if self.num_top() > 1 and self.method is not PoolMethod.MAX:
            raise ValueError(f"layer {self.name!r}: only max pooling can produce a mask top")

    def layer_setup(self, bottom):
        if self.global_pooling:
            self.kernel = tuple(bottom[0].shape[-2:])
            self.pad = (0, 0)
            self.stride = (1, 1)

    def pooled_shape(self, h: int, w: int) -> tuple[int, int]:
        return (
            _pooled_size(h, self.kernel[0], self.pad[0], self.stride[0]),
            _pooled_size(w, self.kernel[1], self.pad[1], self.stride[1]),
        )

    def _pad_to_windows(self, x: torch.Tensor, lead: tuple[int, int], out_shape: tuple[int, int],
                        value: float = 0.0) -> torch.Tensor:
        # Leading pad plus whatever the last (ceil) window needs on the far side.
        # Negative far-side amounts crop rows no window reaches.
        h, w = x.shape[-2:]
        bottom = (out_shape[0] - 1) * self.stride[0] + self.kernel[0] - h - lead[0]
        right = (out_shape[1] - 1) * self.stride[1] + self.kernel[1] - w - lead[1]
        return F.pad(x, (lead[1], right, lead[0], bottom), value=value)

    def pool(self, x: torch.Tensor) -> list[torch.Tensor]:
        if self.method is PoolMethod.STOCHASTIC:
            return [self._stochastic(x)]
        if self.pad[0] > self.kernel[0] // 2 or self.pad[1] > self.kernel[1] // 2:
            # torch pools natively only while pad <= kernel // 2
            return self._pool_wide_pad(x)
        if self.method is PoolMethod.MAX:
            if self.num_top() > 1:
                y, mask = F.max_pool2d(
                    x, self.kernel, self.stride, self.pad, ceil_mode=True, return_indices=True
                )
                return [y, mask.to(x.dtype)]
            return [F.max_pool2d(x, self.kernel, self.stride, self.pad, ceil_mode=True)]
        return [F.avg_pool2d(x, self.kernel, self.stride, self.pad, ceil_mode=True, count_include_pad=True)]

    def _pool_wide_pad(self, x: torch.Tensor) -> list[torch.Tensor]:
        h, w = x.shape[-2:]
        out_shape = self.pooled_shape(h, w)
        if self.method is PoolMethod.MAX:
            padded = self._pad_to_windows(x, self.pad, out_shape, value=-math.inf)
            y, idx = F.max_pool2d(padded, self.kernel, self.stride, return_indices=True)
            if self.num_top() == 1:
                return [y]
            # Indices point into the padded plane; map them back onto the bottom.
            wp = padded.shape[-1]
            rows = torch.div(idx, wp, rounding_mode="floor") - self.pad[0]
            cols = idx % wp - self.pad[1]
            return [y, (rows * w + cols).to(x.dtype)]
        # Windows divide by their overlap with the padded plane, not the ceil overhang.
        ones = x.new_ones((1, 1, h + 2 * self.pad[0], w + 2 * self.pad[1]))
        total = F.avg_pool2d(self._pad_to_windows(x, self.pad, out_shape), self.kernel, self.stride)
        area = F.avg_pool2d(self._pad_to_windows(ones, (0, 0), out_shape), self.kernel, self.stride)
        return [total / area]

    def _stochastic(self, x: torch.Tensor) -> torch.Tensor:
        n, c, h, w = x.shape
        kh, kw = self.kernel
        out_h, out_w = self.pooled_shape(h, w)
        # Zeros past the edge carry no weight, so windows behave as if clipped.
        x = self._pad_to_windows(x, (0, 0), (out_h, out_w))
        cols = F.unfold(x, self.kernel, stride=self.stride)  # (N, C*kh*kw, L)
        cols = cols.view(n, c, kh * kw, -1).permute(0, 1, 3, 2)  # (N, C, L, K)
        total = cols.sum(dim=-1, keepdim=True)
        if self.training:
            probs = torch.where(total > 0, cols / total.clamp_min(1e-20), torch.full_like(cols, 1.0 / (kh * kw)))
            flat = probs.reshape(-1, kh * kw).clamp_min(0)
            idx = torch.multinomial(flat, 1)
            picked = torch.gather(cols.reshape(-1, kh * kw), 1, idx)
            out = picked.view(n, c, -1)
        else:
            weighted = (cols * cols).sum(dim=-1)
            out = torch.where(total.squeeze(-1) > 0, weighted / total.squeeze(-1).clamp_min(1e-20), torch.zeros_like(weighted))
        return out.view(n, c, out_h, out_w)

    def compute(self, bottom):
        with torch.backends.cudnn.flags(enabled=False):
            return self.pool(bottom[0])


@register_layer_class(LayerType.LRN)
class LRNLayer(Layer):
    exact_num_bottom = 1
    exact_num_top = 1

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.lrn_param
        if p.local_size % 2 == 0:
            raise ValueError(f"layer {self.name!r}: LRN only supports odd values for local_size")

    def compute(self, bottom):
        p = self.layer_param.lrn_param
        x = bottom[0]
        if p.norm_region is NormRegion.ACROSS_CHANNELS:
            return [F.local_response_norm(x, p.local_size, alpha=p.alpha, beta=p.beta, k=p.k)]
        pad = (p.local_size - 1) // 2
        mean_sq = F.avg_pool2d(x * x, p.local_size, stride=1, padding=pad, count_include_pad=True)
        return [x * torch.pow(1.0 + p.alpha * mean_sq, -p.beta)]


@register_layer_class(LayerType.IM2COL)
class Im2colLayer(Layer):
    """Rearranges image patches into columns (N, C*kh*kw, out_h, out_w)."""

    exact_num_bottom = 1
    exact_num_top = 1

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.convolution_param
        self.kernel = p.kernel_shape()
        self.pad = p.pad_shape()
        self.stride = p.stride_shape()
        _positive("kernel size", self.kernel, self.name)
        _positive("stride", self.stride, self.name)

    def compute(self, bottom):
        x = bottom[0]
        h, w = x.shape[-2:]
        out_h = math.floor((h + 2 * self.pad[0] - self.kernel[0]) / self.stride[0]) + 1
        out_w = math.floor((w + 2 * self.pad[1] - self.kernel[1]) / self.stride[1]) + 1
        cols = F.unfold(x, self.kernel, padding=self.pad, stride=self.stride)
        return [cols.view(x.shape[0], -1, out_h, out_w)]
