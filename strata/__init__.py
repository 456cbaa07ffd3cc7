"""Strata: layer and dataset factories.

Keep this module light: importing ``strata`` must not import torch layers or
dataset bindings. The public entry points resolve lazily.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "create_layer",
    "dataset_factory",
    "initialize_registrations",
    "LayerParameter",
    "LayerType",
    "Engine",
    "Backend",
]


def __getattr__(name: str):  # pragma: no cover
    if name == "create_layer":
        from .layers.factory import create_layer as _create_layer

        return _create_layer
    if name == "dataset_factory":
        from .dataset.factory import dataset_factory as _dataset_factory

        return _dataset_factory
    if name == "initialize_registrations":
        from .bootstrap import initialize_registrations as _initialize_registrations

        return _initialize_registrations
    if name in ("LayerParameter", "LayerType", "Engine", "Backend"):
        from . import config as _config

        return getattr(_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
