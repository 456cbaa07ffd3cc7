"""Registry semantics, on families private to each test."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from enum import IntEnum

import pytest

from strata.errors import DuplicateRegistrationError, RegistryError, UnknownDiscriminantError
from strata.registry import ProductFamily, TypeRegistry


class Shape(IntEnum):
    SQUARE = 2
    CIRCLE = 1
    TRIANGLE = 3


class Square:
    def __init__(self, config):
        self.config = config


class Circle:
    def __init__(self, config):
        self.config = config


def _family() -> ProductFamily:
    return ProductFamily("Shape", element_types=("f32", "f64"))


def test_lookup_returns_registered_creator():
    family = _family()
    family.register(Shape.SQUARE, "f32", Square)

    assert family.lookup(Shape.SQUARE, "f32") is Square
    product = family.create(Shape.SQUARE, "f32", {"side": 2})
    assert isinstance(product, Square)
    assert product.config == {"side": 2}


def test_duplicate_registration_raises():
    family = _family()
    family.register(Shape.SQUARE, "f32", Square)

    with pytest.raises(DuplicateRegistrationError) as err:
        family.register(Shape.SQUARE, "f32", Circle)

    assert isinstance(err.value, RegistryError)
    assert "SQUARE" in str(err.value)
    assert family.lookup(Shape.SQUARE, "f32") is Square


def test_unknown_key_lists_known_keys():
    family = _family()
    family.register(Shape.SQUARE, "f32", Square)
    family.register(Shape.CIRCLE, "f32", Circle)

    with pytest.raises(UnknownDiscriminantError) as err:
        family.lookup(Shape.TRIANGLE, "f32")

    assert isinstance(err.value, LookupError)
    message = str(err.value)
    assert "TRIANGLE" in message
    assert "CIRCLE, SQUARE" in message


def test_unknown_element_type_raises():
    family = _family()
    family.register(Shape.SQUARE, "f32", Square)

    with pytest.raises(UnknownDiscriminantError):
        family.lookup(Shape.SQUARE, "f64")


def test_element_types_are_independent():
    family = _family()
    family.register(Shape.SQUARE, "f32", Square)
    family.register(Shape.SQUARE, "f64", Circle)

    assert family.lookup(Shape.SQUARE, "f32") is Square
    assert family.lookup(Shape.SQUARE, "f64") is Circle
    assert (Shape.SQUARE, "f32") in family
    assert (Shape.CIRCLE, "f32") not in family
    assert len(family) == 2


def test_register_all_covers_every_element_type():
    family = _family()
    family.register_all(Shape.CIRCLE, lambda et: (lambda config: (et, config)))

    assert family.create(Shape.CIRCLE, "f32", 1) == ("f32", 1)
    assert family.create(Shape.CIRCLE, "f64", 2) == ("f64", 2)


def test_keys_sorted_by_value():
    family = _family()
    for shape, cls in ((Shape.TRIANGLE, Square), (Shape.SQUARE, Square), (Shape.CIRCLE, Circle)):
        family.register(shape, "f32", cls)

    assert family.keys("f32") == [Shape.CIRCLE, Shape.SQUARE, Shape.TRIANGLE]
    assert family.keys("f64") == []


def test_non_callable_creator_rejected():
    registry = TypeRegistry("Shape", "f32")
    with pytest.raises(TypeError):
        registry.add(Shape.SQUARE, "not callable")
    assert len(registry) == 0


def test_registry_is_created_once_under_concurrency():
    family = _family()
    barrier = threading.Barrier(8)

    def first_access(_):
        barrier.wait()
        return family.registry("f32")

    with ThreadPoolExecutor(max_workers=8) as pool:
        registries = list(pool.map(first_access, range(8)))

    assert all(r is registries[0] for r in registries)
    assert family.registered_element_types() == ["f32"]


def test_concurrent_duplicate_registration_admits_one():
    family = _family()
    barrier = threading.Barrier(4)
    errors = []

    def register(cls):
        barrier.wait()
        try:
            family.register(Shape.SQUARE, "f32", cls)
        except DuplicateRegistrationError as e:
            errors.append(e)

    threads = [threading.Thread(target=register, args=(c,)) for c in (Square, Circle, Square, Circle)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(errors) == 3
    assert family.lookup(Shape.SQUARE, "f32") in (Square, Circle)
