"""Error taxonomy for Strata.

Every failure the factories can report has its own class so callers (and
tests) can tell them apart. None of these are caught inside the framework.
The one recoverable situation, an engine that cannot service a particular
configuration, is handled by falling back and is reported on the console
instead of raised.
"""

from __future__ import annotations

from typing import Any, Iterable

__all__ = [
    "StrataError",
    "ConfigError",
    "RegistryError",
    "DuplicateRegistrationError",
    "UnknownDiscriminantError",
    "UnsupportedEngineError",
    "BuildUnavailableError",
    "DatasetError",
]


class StrataError(Exception):
    """Base class for all Strata errors."""


class ConfigError(StrataError, ValueError):
    """A configuration value could not be parsed or is out of range."""


class RegistryError(StrataError):
    """Base class for registry failures."""


class DuplicateRegistrationError(RegistryError):
    """A constructor is already registered for this (discriminant, element type)."""

    def __init__(self, family: str, key: Any, element_type: Any):
        self.family = family
        self.key = key
        self.element_type = element_type
        super().__init__(
            f"{family} type {_name(key)} already registered for element type {_name(element_type)}."
        )


class UnknownDiscriminantError(RegistryError, LookupError):
    """No constructor is registered for the requested discriminant."""

    def __init__(
        self,
        family: str,
        key: Any,
        element_type: Any = None,
        known: Iterable[Any] = (),
    ):
        self.family = family
        self.key = key
        self.element_type = element_type
        known = [_name(k) for k in known]
        where = f" for element type {_name(element_type)}" if element_type is not None else ""
        also = f" (known: {', '.join(known)})" if known else " (nothing registered)"
        super().__init__(f"Unknown {family} type {_name(key)}{where}{also}")

    def __str__(self) -> str:
        # LookupError would otherwise repr() the message like KeyError does.
        return self.args[0]


class UnsupportedEngineError(StrataError, ValueError):
    """The requested engine is unknown or was not built into this runtime."""

    def __init__(self, layer: str, engine: Any, available: Iterable[Any] = ()):
        self.layer = layer
        self.engine = engine
        available = [_name(e) for e in available]
        hint = f" (available: {', '.join(available)})" if available else ""
        super().__init__(f"Layer {layer} has unknown engine {_name(engine)}{hint}.")


class BuildUnavailableError(StrataError, RuntimeError):
    """A product exists but its backend is not available in this build."""

    def __init__(self, family: str, key: Any, reason: str):
        self.family = family
        self.key = key
        self.reason = reason
        super().__init__(f"{family} type {_name(key)} is not available in this build: {reason}")


class DatasetError(StrataError, RuntimeError):
    """Misuse of a dataset handle (closed, read-only, already exists, ...)."""


def _name(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, tuple):
        return "(" + ", ".join(_name(v) for v in value) + ")"
    if isinstance(value, type):
        return value.__name__
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name
    return str(value)
