"""Dataset factory.

Backends register their ``Dataset`` subclass once per supported element
type with ``@register_dataset(Backend.X)``. ``dataset_factory`` accepts
either a ``Backend`` member or its canonical string form:

    db = dataset_factory("leveldb", str, Datum)
    db = dataset_factory(Backend.LMDB, str, bytes)

Both forms resolve to the same registered constructor. Strings must match
exactly (``"leveldb"``, ``"lmdb"``). A backend whose Python binding is not
installed raises ``BuildUnavailableError`` here rather than on ``open``.
"""

from __future__ import annotations

import threading
from importlib import import_module
from typing import Any, Callable, Mapping, Optional, TypeVar

from strata.config import Backend
from strata.dataset.base import Dataset, Datum
from strata.errors import BuildUnavailableError, UnknownDiscriminantError
from strata.registry import ProductFamily
from strata.runtime import features

__all__ = [
    "DATASETS",
    "DATASET_ELEMENT_TYPES",
    "BUILTIN_DATASET_MODULES",
    "BACKEND_BINDINGS",
    "register_dataset",
    "initialize_dataset_factory",
    "backend_available",
    "parse_backend",
    "dataset_factory",
]

D = TypeVar("D", bound=type)

DATASET_ELEMENT_TYPES: tuple[tuple[type, type], ...] = (
    (str, str),
    (str, bytes),
    (str, Datum),
)

DATASETS: ProductFamily[Backend, Dataset] = ProductFamily("Dataset", element_types=DATASET_ELEMENT_TYPES)

BUILTIN_DATASET_MODULES: tuple[str, ...] = (
    "strata.dataset.leveldb_dataset",
    "strata.dataset.lmdb_dataset",
)

# Python distribution that provides each backend.
BACKEND_BINDINGS: dict[Backend, str] = {
    Backend.LEVELDB: "plyvel",
    Backend.LMDB: "lmdb",
}

_INITIALIZED = False
_INIT_LOCK = threading.Lock()


def register_dataset(backend: Backend) -> Callable[[D], D]:
    """Register a ``Dataset`` subclass for every built-in (key, value) pair."""

    def deco(cls: D) -> D:
        def make_creator(element_type: tuple[type, type]):
            key_type, value_type = element_type

            def creator(options: Optional[Mapping[str, Any]] = None) -> Dataset:
                return cls(key_type, value_type, **dict(options or {}))

            creator.__name__ = f"create_{cls.__name__}"
            return creator

        DATASETS.register_all(Backend(backend), make_creator)
        return cls

    return deco


def initialize_dataset_factory() -> bool:
    """Import every built-in dataset backend (idempotent)."""
    global _INITIALIZED
    if _INITIALIZED:
        return True
    with _INIT_LOCK:
        if not _INITIALIZED:
            for module in BUILTIN_DATASET_MODULES:
                import_module(module)
            _INITIALIZED = True
    return True


def parse_backend(backend: Backend | str | int) -> Backend:
    if isinstance(backend, Backend):
        return backend
    if isinstance(backend, str):
        parsed = Backend.from_string(backend)
    elif isinstance(backend, int) and not isinstance(backend, bool):
        parsed = Backend(backend) if backend in Backend._value2member_map_ else None
    else:
        parsed = None
    if parsed is None:
        raise UnknownDiscriminantError("Dataset", backend, known=[b.name.lower() for b in Backend])
    return parsed


def backend_available(backend: Backend | str) -> bool:
    backend = parse_backend(backend)
    flags = features()
    if backend is Backend.LEVELDB:
        return flags.leveldb_available
    if backend is Backend.LMDB:
        return flags.lmdb_available
    return False


def dataset_factory(
    backend: Backend | str,
    key_type: type = str,
    value_type: type = Datum,
    **options: Any,
) -> Dataset:
    """A new, unopened dataset for ``backend`` and element type (key_type, value_type)."""
    initialize_dataset_factory()
    backend = parse_backend(backend)
    element_type = (key_type, value_type)
    creator = DATASETS.lookup(backend, element_type)
    if not backend_available(backend):
        raise BuildUnavailableError(
            "Dataset", backend,
            f"the {BACKEND_BINDINGS[backend]!r} package is not installed or the backend is disabled",
        )
    return creator(options)
