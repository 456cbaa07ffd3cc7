from __future__ import annotations

import pytest

from strata.config import LayerParameter
from strata.console import console
from strata.runtime import BuildFeatures, set_features


def make_param(layer_type: str, name: str | None = None, **fields) -> LayerParameter:
    """LayerParameter from keyword fields, the same way configs are loaded."""
    return LayerParameter.from_dict({"name": name or layer_type.lower(), "type": layer_type, **fields})


@pytest.fixture
def pinned_features():
    """Pin build features for one test; yields a setter taking overrides."""
    previous = set_features(None)

    def pin(**flags: bool) -> BuildFeatures:
        pinned = BuildFeatures(**flags)
        set_features(pinned)
        return pinned

    yield pin
    set_features(previous)


@pytest.fixture
def cpu_only(pinned_features):
    return pinned_features(cuda_available=False, cudnn_available=False,
                           leveldb_available=True, lmdb_available=True)


@pytest.fixture
def cudnn_build(pinned_features):
    return pinned_features(cuda_available=True, cudnn_available=True,
                           leveldb_available=True, lmdb_available=True)


@pytest.fixture(autouse=True)
def loud_console(monkeypatch):
    """Diagnostics are asserted on; make sure STRATA_QUIET does not hide them."""
    monkeypatch.setattr(console, "quiet", False)
