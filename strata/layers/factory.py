"""Layer factory.

Layers register themselves when their module is imported, in one of two ways.

If the layer is built simply by its constructor, decorate the class:

    @register_layer_class(LayerType.ABSVAL)
    class AbsValLayer(NeuronLayer):
        ...

If construction needs its own logic (for example a choice between several
engines), decorate a creator taking ``(param, dtype)``:

    @register_layer_creator(LayerType.CONVOLUTION)
    def get_convolution_layer(param, dtype):
        ...

Either way the layer ends up in ``LAYERS`` once per element type; each
layer type is registered exactly once.

Registration is a side effect of importing the provider modules, so a
module that is never imported never registers. ``create_layer`` therefore
calls ``initialize_layer_factory()`` first, which imports every built-in
provider in a fixed order exactly once per process. Hosts can call it
themselves at startup to register eagerly.
"""

from __future__ import annotations

import threading
from functools import partial
from importlib import import_module
from typing import Callable, Sequence, TypeVar

import torch

from strata.config import LayerParameter, LayerType
from strata.console import console
from strata.layers.base import ELEMENT_TYPES, Layer
from strata.registry import ProductFamily

__all__ = [
    "LAYERS",
    "LayerCreator",
    "BUILTIN_LAYER_MODULES",
    "add_creator",
    "register_layer_creator",
    "register_layer_class",
    "create_layer",
    "get_layer",
    "initialize_layer_factory",
    "registered_layer_types",
    "as_dtype",
]

LayerCreator = Callable[[LayerParameter], Layer]
L = TypeVar("L", bound=type)

LAYERS: ProductFamily[LayerType, Layer] = ProductFamily("Layer", element_types=ELEMENT_TYPES)

BUILTIN_LAYER_MODULES: tuple[str, ...] = (
    "strata.layers.neuron",
    "strata.layers.vision",
    "strata.layers.common",
    "strata.layers.loss",
    "strata.layers.data",
    "strata.layers.engines",
)

_INITIALIZED = False
_INIT_LOCK = threading.Lock()

_DTYPE_NAMES = {
    "float": torch.float32,
    "float32": torch.float32,
    "single": torch.float32,
    "double": torch.float64,
    "float64": torch.float64,
}


def as_dtype(value: torch.dtype | str) -> torch.dtype:
    if isinstance(value, torch.dtype):
        return value
    try:
        return _DTYPE_NAMES[str(value).strip().lower().removeprefix("torch.")]
    except KeyError:
        raise TypeError(f"unknown element type {value!r}; expected one of {sorted(_DTYPE_NAMES)}") from None


def add_creator(layer_type: LayerType, dtype: torch.dtype, creator: LayerCreator) -> None:
    """Register ``creator`` for one (layer type, dtype) slot."""
    LAYERS.register(LayerType(layer_type), dtype, creator)


def register_layer_creator(
    layer_type: LayerType,
    element_types: Sequence[torch.dtype] = ELEMENT_TYPES,
):
    """Register ``fn(param, dtype) -> Layer`` for each element type."""

    def deco(fn: Callable[[LayerParameter, torch.dtype], Layer]):
        for dtype in element_types:
            add_creator(layer_type, dtype, partial(fn, dtype=dtype))
        return fn

    return deco


def register_layer_class(
    layer_type: LayerType,
    element_types: Sequence[torch.dtype] = ELEMENT_TYPES,
) -> Callable[[L], L]:
    """Register a ``Layer`` subclass built directly by its constructor."""

    def deco(cls: L) -> L:
        cls.layer_type = LayerType(layer_type)

        def make_creator(dtype: torch.dtype) -> LayerCreator:
            def creator(param: LayerParameter) -> Layer:
                return cls(param, dtype=dtype)

            creator.__name__ = f"create_{cls.__name__}"
            creator.__qualname__ = creator.__name__
            return creator

        for dtype in element_types:
            add_creator(layer_type, dtype, make_creator(dtype))
        return cls

    return deco


def initialize_layer_factory() -> bool:
    """Import every built-in layer provider (idempotent)."""
    global _INITIALIZED
    if _INITIALIZED:
        return True
    with _INIT_LOCK:
        if not _INITIALIZED:
            for module in BUILTIN_LAYER_MODULES:
                import_module(module)
            _INITIALIZED = True
    return True


def _discriminant(value):
    # Plain ints hash like their IntEnum member, so they index the registry as-is.
    if isinstance(value, str):
        return LayerType.__members__.get(value.strip().upper(), value)
    return value


def create_layer(param: LayerParameter, dtype: torch.dtype | str = torch.float32) -> Layer:
    """Build the layer described by ``param`` for element type ``dtype``."""
    initialize_layer_factory()
    dtype = as_dtype(dtype)
    console.info(f"Creating layer {param.name}")
    return LAYERS.create(_discriminant(param.type), dtype, param)


def get_layer(param: LayerParameter, dtype: torch.dtype | str = torch.float32) -> Layer:
    """Alias of ``create_layer``."""
    return create_layer(param, dtype)


def registered_layer_types(dtype: torch.dtype | str = torch.float32) -> list[LayerType]:
    initialize_layer_factory()
    return LAYERS.keys(as_dtype(dtype))
