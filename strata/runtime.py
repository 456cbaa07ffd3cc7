"""Build feature detection (cuDNN + dataset bindings).

Strata picks between a portable torch implementation and an accelerated one
for a handful of layers, and between storage bindings for datasets. What is
"compiled in" for a Python process is whatever the interpreter can actually
load, so the features are probed once per process and cached:

- Pick the accelerated path when it is available and nothing forbids it.
- Report unavailable backends at the call site that needs them, not at import.
- Let hosts (and tests) swap the detected features for a pinned set.

Environment:
    STRATA_CPU_ONLY=1                    behave as a build without cuDNN
    STRATA_DISABLE_BACKENDS=lmdb,leveldb treat these dataset bindings as absent
"""

from __future__ import annotations

import importlib.util
import os
import threading
from dataclasses import dataclass
from typing import Final

import torch

__all__ = [
    "BuildFeatures",
    "has_module",
    "cudnn_supported",
    "detect_features",
    "features",
    "set_features",
]

_TRUTHY: Final = ("1", "true", "yes", "on")


def has_module(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError, AttributeError):
        return False


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


def _disabled_backends() -> set[str]:
    raw = os.environ.get("STRATA_DISABLE_BACKENDS", "")
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def cudnn_supported() -> bool:
    """Whether this runtime can execute cuDNN kernels.

    Requires a visible CUDA device and a torch build that ships cuDNN.
    """
    if _env_flag("STRATA_CPU_ONLY"):
        return False
    if not torch.cuda.is_available():
        return False
    return bool(torch.backends.cudnn.is_available())


@dataclass(frozen=True, slots=True)
class BuildFeatures:
    cuda_available: bool = False
    cudnn_available: bool = False
    leveldb_available: bool = False
    lmdb_available: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "cuda": self.cuda_available,
            "cudnn": self.cudnn_available,
            "leveldb": self.leveldb_available,
            "lmdb": self.lmdb_available,
        }


_FEATURES: BuildFeatures | None = None
_LOCK = threading.Lock()


def detect_features() -> BuildFeatures:
    """Probe the runtime. Does not touch the cached value."""
    disabled = _disabled_backends()
    return BuildFeatures(
        cuda_available=bool(torch.cuda.is_available()),
        cudnn_available=cudnn_supported(),
        leveldb_available=has_module("plyvel") and "leveldb" not in disabled,
        lmdb_available=has_module("lmdb") and "lmdb" not in disabled,
    )


def features() -> BuildFeatures:
    """Detected features for this process (computed once, idempotent)."""
    global _FEATURES
    if _FEATURES is None:
        with _LOCK:
            if _FEATURES is None:
                _FEATURES = detect_features()
    return _FEATURES


def set_features(value: BuildFeatures | None) -> BuildFeatures | None:
    """Pin the feature set; ``None`` re-detects on next access.

    Returns the previous value so callers can restore it.
    """
    global _FEATURES
    with _LOCK:
        previous = _FEATURES
        _FEATURES = value
    return previous
