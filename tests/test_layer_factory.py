"""Layer factory: registration idioms, lookup and dtype independence."""

from __future__ import annotations

import sys

import pytest
import torch

from strata.config import LayerType
from strata.errors import DuplicateRegistrationError, UnknownDiscriminantError
from strata.layers.base import ELEMENT_TYPES, NeuronLayer
from strata.layers.factory import (
    BUILTIN_LAYER_MODULES,
    LAYERS,
    add_creator,
    as_dtype,
    create_layer,
    initialize_layer_factory,
    register_layer_class,
    register_layer_creator,
    registered_layer_types,
)
from strata.layers.neuron import AbsValLayer, ThresholdLayer
from strata.registry import TypeRegistry
from tests.conftest import make_param

UNIMPLEMENTED = (LayerType.NONE, LayerType.HDF5_DATA, LayerType.HDF5_OUTPUT, LayerType.WINDOW_DATA)


def test_initialize_imports_every_provider():
    assert initialize_layer_factory() is True
    assert initialize_layer_factory() is True
    for module in BUILTIN_LAYER_MODULES:
        assert module in sys.modules


@pytest.mark.parametrize("dtype", ELEMENT_TYPES)
def test_every_implemented_type_is_registered(dtype):
    registered = set(registered_layer_types(dtype))
    expected = set(LayerType) - set(UNIMPLEMENTED)
    assert registered == expected
    assert len(registered) == 35


@pytest.mark.parametrize("layer_type", UNIMPLEMENTED)
def test_unimplemented_types_raise(layer_type):
    with pytest.raises(UnknownDiscriminantError) as err:
        create_layer(make_param(layer_type.name))
    assert layer_type.name in str(err.value)


def test_lookup_returns_same_creator_and_expected_class():
    initialize_layer_factory()
    creator = LAYERS.lookup(LayerType.ABSVAL, torch.float32)
    assert LAYERS.lookup(LayerType.ABSVAL, torch.float32) is creator

    layer = creator(make_param("ABSVAL"))
    assert type(layer) is AbsValLayer
    assert type(create_layer(make_param("ABSVAL"))) is AbsValLayer


def test_float32_and_float64_slots_are_independent():
    initialize_layer_factory()
    f32 = LAYERS.lookup(LayerType.THRESHOLD, torch.float32)
    f64 = LAYERS.lookup(LayerType.THRESHOLD, torch.float64)
    assert f32 is not f64

    layer32 = create_layer(make_param("THRESHOLD"), torch.float32)
    layer64 = create_layer(make_param("THRESHOLD"), "double")
    assert isinstance(layer32, ThresholdLayer) and isinstance(layer64, ThresholdLayer)
    assert layer32.dtype is torch.float32
    assert layer64.dtype is torch.float64


def test_registering_a_taken_type_raises():
    initialize_layer_factory()

    with pytest.raises(DuplicateRegistrationError):
        @register_layer_class(LayerType.ABSVAL)
        class AnotherAbsVal(NeuronLayer):
            def neuron(self, x):
                return x.abs()

    with pytest.raises(DuplicateRegistrationError):
        @register_layer_creator(LayerType.CONVOLUTION)
        def another_convolution(param, dtype):
            raise AssertionError("never called")

    assert type(create_layer(make_param("ABSVAL"))) is AbsValLayer


def test_integer_and_string_discriminants():
    param = make_param("ABSVAL")
    param.type = int(LayerType.ABSVAL)
    assert type(create_layer(param)) is AbsValLayer

    param.type = "absval"
    assert type(create_layer(param)) is AbsValLayer

    param.type = 999
    with pytest.raises(UnknownDiscriminantError):
        create_layer(param)


def test_create_layer_logs_layer_name(capsys):
    create_layer(make_param("ABSVAL", name="abs1"))
    assert "Creating layer abs1" in capsys.readouterr().out


def test_product_keeps_its_own_copy_of_the_config():
    param = make_param("THRESHOLD", threshold_param={"threshold": 0.5})
    layer = create_layer(param)
    param.threshold_param.threshold = 10.0

    out = layer(torch.tensor([0.0, 1.0]))[0]
    assert out.tolist() == [0.0, 1.0]


def test_as_dtype():
    assert as_dtype("float") is torch.float32
    assert as_dtype("torch.float64") is torch.float64
    assert as_dtype(torch.float64) is torch.float64
    with pytest.raises(TypeError):
        as_dtype("int8")


def test_dtype_without_registrations_raises():
    with pytest.raises(UnknownDiscriminantError):
        create_layer(make_param("ABSVAL"), torch.float16)


def test_extension_can_register_another_float_type(monkeypatch):
    initialize_layer_factory()
    # Fresh float16 slot, removed again after the test.
    monkeypatch.setitem(LAYERS._registries, torch.float16, TypeRegistry("Layer", torch.float16))
    add_creator(LayerType.ABSVAL, torch.float16, lambda p: AbsValLayer(p, dtype=torch.float16))

    layer = create_layer(make_param("ABSVAL"), torch.float16)
    assert type(layer) is AbsValLayer
    assert layer.dtype is torch.float16
    out = layer(torch.tensor([-2.0, 3.0], dtype=torch.float16))[0]
    assert out.tolist() == [2.0, 3.0]


def test_layers_reject_integer_element_types():
    with pytest.raises(TypeError, match="floating point"):
        AbsValLayer(make_param("ABSVAL"), dtype=torch.int32)
