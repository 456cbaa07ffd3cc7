"""Type-keyed constructor registries.

A *product family* (layers, datasets, fillers) owns one ``TypeRegistry`` per
element type. Each registry maps a discriminant (an enum member) to the
constructor that builds the concrete product for that element type:

    LAYERS = ProductFamily("Layer", element_types=(torch.float32, torch.float64))
    LAYERS.register(LayerType.RELU, torch.float32, make_relu)
    layer = LAYERS.create(LayerType.RELU, torch.float32, param)

Rules:
- A (discriminant, element type) slot is written exactly once; a second
  write raises DuplicateRegistrationError.
- A lookup miss raises UnknownDiscriminantError. There is no ``None`` path.
- Registries are created lazily on first access and live for the process.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, Optional, Sequence, TypeVar

from strata.errors import DuplicateRegistrationError, UnknownDiscriminantError

__all__ = [
    "Creator",
    "TypeRegistry",
    "ProductFamily",
]

K = TypeVar("K", bound=Hashable)
P = TypeVar("P")

Creator = Callable[[Any], P]


class TypeRegistry(Generic[K, P]):
    """Discriminant -> constructor map for one element type."""

    __slots__ = ("family", "element_type", "_creators", "_lock")

    def __init__(self, family: str, element_type: Hashable):
        self.family = family
        self.element_type = element_type
        self._creators: Dict[K, Creator] = {}
        self._lock = threading.Lock()

    def add(self, key: K, creator: Creator) -> None:
        if not callable(creator):
            raise TypeError(
                f"creator for {self.family} type {key!r} must be callable, got {type(creator).__name__}"
            )
        with self._lock:
            if key in self._creators:
                raise DuplicateRegistrationError(self.family, key, self.element_type)
            self._creators[key] = creator

    def get(self, key: K) -> Creator:
        try:
            return self._creators[key]
        except KeyError:
            raise UnknownDiscriminantError(
                self.family, key, self.element_type, known=self.keys()
            ) from None

    def create(self, key: K, config: Any) -> P:
        return self.get(key)(config)

    def keys(self) -> list[K]:
        return sorted(self._creators, key=_sort_key)

    def __contains__(self, key: object) -> bool:
        return key in self._creators

    def __len__(self) -> int:
        return len(self._creators)

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())

    def __repr__(self) -> str:
        return f"TypeRegistry({self.family!r}, {self.element_type!r}, n={len(self)})"


class ProductFamily(Generic[K, P]):
    """A set of per-element-type registries for one category of product.

    ``element_types`` lists the instantiations built-in providers register
    for. It does not restrict ``register``: an extension may add a slot for
    any hashable element type.
    """

    def __init__(self, name: str, element_types: Sequence[Hashable] = ()):
        self.name = name
        self.element_types = tuple(element_types)
        self._registries: Dict[Hashable, TypeRegistry[K, P]] = {}
        self._lock = threading.Lock()

    def registry(self, element_type: Hashable) -> TypeRegistry[K, P]:
        """The process-wide registry for ``element_type`` (created on first use)."""
        reg = self._registries.get(element_type)
        if reg is None:
            with self._lock:
                reg = self._registries.get(element_type)
                if reg is None:
                    reg = TypeRegistry(self.name, element_type)
                    self._registries[element_type] = reg
        return reg

    def register(self, key: K, element_type: Hashable, creator: Creator) -> None:
        self.registry(element_type).add(key, creator)

    def register_all(self, key: K, make_creator: Callable[[Hashable], Creator],
                     element_types: Optional[Sequence[Hashable]] = None) -> None:
        """Register ``make_creator(t)`` for every element type ``t``."""
        for element_type in element_types if element_types is not None else self.element_types:
            self.register(key, element_type, make_creator(element_type))

    def lookup(self, key: K, element_type: Hashable) -> Creator:
        reg = self._registries.get(element_type)
        if reg is None:
            raise UnknownDiscriminantError(self.name, key, element_type)
        return reg.get(key)

    def create(self, key: K, element_type: Hashable, config: Any) -> P:
        return self.lookup(key, element_type)(config)

    def keys(self, element_type: Hashable) -> list[K]:
        reg = self._registries.get(element_type)
        return reg.keys() if reg is not None else []

    def registered_element_types(self) -> list[Hashable]:
        return list(self._registries)

    def __contains__(self, item: object) -> bool:
        """``(key, element_type) in family``."""
        if not isinstance(item, tuple) or len(item) != 2:
            return False
        key, element_type = item
        reg = self._registries.get(element_type)
        return reg is not None and key in reg

    def __len__(self) -> int:
        """Number of filled (key, element type) slots."""
        return sum(len(r) for r in self._registries.values())

    def __repr__(self) -> str:
        return f"ProductFamily({self.name!r}, element_types={len(self._registries)}, slots={len(self)})"


def _sort_key(key: Any) -> tuple[int, Any]:
    value = getattr(key, "value", key)
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))
