"""Loss layers and accuracy.

Labels arrive as floating blobs (data layers emit them in the layer's element
type) and are cast to indices here. Every loss is normalized by batch size
and scaled by the layer's first ``loss_weight``.
"""

from __future__ import annotations

import numpy as np
import torch
import torch.nn.functional as F

from strata.config import HingeNorm, LayerType
from strata.layers.base import Layer, LossLayer
from strata.layers.factory import register_layer_class

__all__ = [
    "AccuracyLayer",
    "ContrastiveLossLayer",
    "EuclideanLossLayer",
    "HingeLossLayer",
    "InfogainLossLayer",
    "MultinomialLogisticLossLayer",
    "SigmoidCrossEntropyLossLayer",
    "SoftmaxWithLossLayer",
]

LOG_THRESHOLD = 1e-20


def _labels(blob: torch.Tensor, num: int) -> torch.Tensor:
    labels = blob.reshape(-1)
    if labels.numel() != num:
        raise ValueError(f"expected {num} labels, got {labels.numel()}")
    return labels.long()


@register_layer_class(LayerType.ACCURACY)
class AccuracyLayer(Layer):
    """Fraction of samples whose label is among the top_k scores."""

    exact_num_bottom = 2
    exact_num_top = 1

    def layer_setup(self, bottom):
        top_k = self.layer_param.accuracy_param.top_k
        dim = bottom[0][0].numel()
        if top_k < 1 or top_k > dim:
            raise ValueError(f"layer {self.name!r}: top_k must be in [1, {dim}], got {top_k}")

    def compute(self, bottom):
        scores = bottom[0].reshape(bottom[0].shape[0], -1)
        labels = _labels(bottom[1], scores.shape[0])
        top = torch.topk(scores, self.layer_param.accuracy_param.top_k, dim=1).indices
        hits = (top == labels.unsqueeze(1)).any(dim=1)
        return [hits.to(scores.dtype).mean()]


@register_layer_class(LayerType.CONTRASTIVE_LOSS)
class ContrastiveLossLayer(LossLayer):
    """Pairs (a, b) with similarity flag y: y*d^2 + (1-y)*max(margin - d^2, 0)."""

    exact_num_bottom = 3

    def loss(self, bottom):
        a, b, sim = bottom
        n = a.shape[0]
        dist_sq = (a.reshape(n, -1) - b.reshape(n, -1)).pow(2).sum(dim=1)
        sim = sim.reshape(-1).to(a.dtype)
        margin = self.layer_param.contrastive_loss_param.margin
        per_pair = sim * dist_sq + (1 - sim) * torch.clamp(margin - dist_sq, min=0)
        return per_pair.sum() / (2.0 * n)


@register_layer_class(LayerType.EUCLIDEAN_LOSS)
class EuclideanLossLayer(LossLayer):
    def layer_setup(self, bottom):
        if bottom[0].numel() != bottom[1].numel():
            raise ValueError(f"layer {self.name!r}: inputs must have the same count")

    def loss(self, bottom):
        diff = bottom[0].reshape(-1) - bottom[1].reshape(-1)
        return diff.pow(2).sum() / (2.0 * bottom[0].shape[0])


@register_layer_class(LayerType.HINGE_LOSS)
class HingeLossLayer(LossLayer):
    """One-vs-all hinge loss with L1 or L2 norm."""

    def loss(self, bottom):
        scores = bottom[0].reshape(bottom[0].shape[0], -1)
        n = scores.shape[0]
        labels = _labels(bottom[1], n)
        sign = torch.ones_like(scores)
        sign[torch.arange(n, device=scores.device), labels] = -1.0
        margins = torch.clamp(1.0 + sign * scores, min=0)
        if self.layer_param.hinge_loss_param.norm is HingeNorm.L2:
            return margins.pow(2).sum() / n
        return margins.sum() / n


@register_layer_class(LayerType.INFOGAIN_LOSS)
class InfogainLossLayer(LossLayer):
    """Multinomial logistic loss weighted by an infogain matrix H.

    H comes from the third bottom if present, else from ``infogain_loss_param.source``
    (a ``.npy`` file).
    """

    exact_num_bottom = None
    min_bottom = 2
    max_bottom = 3

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        self.infogain: torch.Tensor | None = None

    def layer_setup(self, bottom):
        if len(bottom) == 3:
            return
        source = self.layer_param.infogain_loss_param.source
        if not source:
            raise ValueError(f"layer {self.name!r}: needs a third bottom or infogain_loss_param.source")
        matrix = np.load(source)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"layer {self.name!r}: infogain matrix must be square, got {matrix.shape}")
        self.infogain = torch.as_tensor(matrix, dtype=self.dtype, device=bottom[0].device)

    def loss(self, bottom):
        prob = bottom[0].reshape(bottom[0].shape[0], -1)
        n, dim = prob.shape
        labels = _labels(bottom[1], n)
        infogain = bottom[2].reshape(dim, dim) if len(bottom) == 3 else self.infogain
        log_prob = torch.log(torch.clamp(prob, min=LOG_THRESHOLD))
        return -(infogain[labels] * log_prob).sum() / n


@register_layer_class(LayerType.MULTINOMIAL_LOGISTIC_LOSS)
class MultinomialLogisticLossLayer(LossLayer):
    """-log(p[label]) averaged over the batch; expects probabilities."""

    def loss(self, bottom):
        prob = bottom[0].reshape(bottom[0].shape[0], -1)
        n = prob.shape[0]
        labels = _labels(bottom[1], n)
        picked = prob[torch.arange(n, device=prob.device), labels]
        return -torch.log(torch.clamp(picked, min=LOG_THRESHOLD)).sum() / n


@register_layer_class(LayerType.SIGMOID_CROSS_ENTROPY_LOSS)
class SigmoidCrossEntropyLossLayer(LossLayer):
    def layer_setup(self, bottom):
        if bottom[0].numel() != bottom[1].numel():
            raise ValueError(f"layer {self.name!r}: inputs must have the same count")

    def loss(self, bottom):
        logits = bottom[0]
        target = bottom[1].reshape(logits.shape).to(logits.dtype)
        total = F.binary_cross_entropy_with_logits(logits, target, reduction="sum")
        return total / logits.shape[0]


@register_layer_class(LayerType.SOFTMAX_LOSS)
class SoftmaxWithLossLayer(LossLayer):
    """Softmax followed by multinomial logistic loss, averaged over samples
    and spatial positions. A second top, if declared, receives the softmax.
    """

    exact_num_top = None
    min_top = 1
    max_top = 2

    def compute(self, bottom):
        logits = bottom[0]
        labels = bottom[1].reshape(logits.shape[0], *logits.shape[2:]).long()
        loss = F.cross_entropy(logits, labels) * self.loss_weight()
        if self.num_top() == 2:
            return [loss, torch.softmax(logits, dim=1)]
        return [loss]
