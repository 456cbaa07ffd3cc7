"""Layers and the layer factory.

Importing this package does not register anything by itself; call
``create_layer`` (or ``initialize_layer_factory``) and every built-in
provider module is imported once.
"""

from strata.layers.base import ELEMENT_TYPES, DataLayer, Layer, LossLayer, NeuronLayer
from strata.layers.factory import (
    LAYERS,
    add_creator,
    create_layer,
    get_layer,
    initialize_layer_factory,
    register_layer_class,
    register_layer_creator,
    registered_layer_types,
)

__all__ = [
    "ELEMENT_TYPES",
    "DataLayer",
    "Layer",
    "LossLayer",
    "NeuronLayer",
    "LAYERS",
    "add_creator",
    "create_layer",
    "get_layer",
    "initialize_layer_factory",
    "register_layer_class",
    "register_layer_creator",
    "registered_layer_types",
]
