"""Dataset factory dispatch, plus LevelDB/LMDB round trips when the bindings exist."""

from __future__ import annotations

import numpy as np
import pytest
import torch

from strata.config import Backend
from strata.dataset import Datum, Mode, dataset_factory
from strata.dataset.factory import DATASETS, initialize_dataset_factory, parse_backend
from strata.dataset.leveldb_dataset import LeveldbDataset
from strata.dataset.lmdb_dataset import LmdbDataset
from strata.errors import BuildUnavailableError, DatasetError, UnknownDiscriminantError
from strata.layers.factory import create_layer
from tests.conftest import make_param

BACKENDS = [
    pytest.param("leveldb", "plyvel", id="leveldb"),
    pytest.param("lmdb", "lmdb", id="lmdb"),
]


def test_string_and_enum_share_the_constructor(cpu_only):
    initialize_dataset_factory()
    for element_type in DATASETS.element_types:
        by_string = DATASETS.lookup(parse_backend("leveldb"), element_type)
        by_enum = DATASETS.lookup(Backend.LEVELDB, element_type)
        assert by_string is by_enum

    assert type(dataset_factory("leveldb")) is type(dataset_factory(Backend.LEVELDB)) is LeveldbDataset
    assert type(dataset_factory("lmdb", str, bytes)) is LmdbDataset


@pytest.mark.parametrize("name", ["unknown-backend", "LevelDB", " lmdb", "", "sqlite"])
def test_unknown_backend_string_raises(cpu_only, name):
    with pytest.raises(UnknownDiscriminantError) as err:
        dataset_factory(name)
    assert isinstance(err.value, LookupError)
    assert "leveldb" in str(err.value)


def test_unsupported_element_type_raises(cpu_only):
    with pytest.raises(UnknownDiscriminantError):
        dataset_factory("lmdb", int, str)


def test_unavailable_backend_raises_and_other_stays_usable(pinned_features):
    pinned_features(leveldb_available=True, lmdb_available=False)

    with pytest.raises(BuildUnavailableError) as err:
        dataset_factory("lmdb")
    assert isinstance(err.value, RuntimeError)
    assert "lmdb" in str(err.value)

    assert isinstance(dataset_factory("leveldb", str, str), LeveldbDataset)


def test_factory_returns_fresh_unopened_products(cpu_only):
    a = dataset_factory(Backend.LMDB, str, Datum)
    b = dataset_factory(Backend.LMDB, str, Datum)
    assert a is not b
    assert not a.is_open
    with pytest.raises(DatasetError):
        a.get("missing")


def test_datum_binary_record():
    datum = Datum(channels=2, height=1, width=2, data=bytes([1, 2, 3, 4]), label=7,
                  float_data=[0.5, -1.25], encoded=False)
    assert Datum.from_bytes(datum.to_bytes()) == datum

    with pytest.raises(DatasetError):
        Datum.from_bytes(datum.to_bytes()[:-1])


def test_datum_arrays():
    image = np.arange(12, dtype=np.uint8).reshape(3, 2, 2)
    datum = Datum.from_array(image, label=1)
    assert datum.data == image.tobytes()
    np.testing.assert_array_equal(datum.to_array(), image.astype(np.float32))

    floats = Datum.from_array(np.full((1, 2, 2), 0.25, dtype=np.float32))
    assert floats.data == b""
    assert floats.to_array().shape == (1, 2, 2)


@pytest.mark.parametrize("backend,binding", BACKENDS)
def test_round_trip(cpu_only, tmp_path, backend, binding):
    pytest.importorskip(binding)
    path = tmp_path / f"db_{backend}"

    db = dataset_factory(backend, str, str)
    with db.open(path, Mode.NEW):
        db.put("b", "second")
        db.put("a", "first")
        assert "a" not in db  # not committed yet
        assert db.commit() == 2
        assert db.get("a") == "first"

    db = dataset_factory(backend, str, str)
    with db.open(path, Mode.READ_ONLY):
        assert list(db) == [("a", "first"), ("b", "second")]
        assert list(db.keys()) == ["a", "b"]
        with pytest.raises(KeyError):
            db.get("c")
        with pytest.raises(DatasetError):
            db.put("c", "third")
    assert not db.is_open


@pytest.mark.parametrize("backend,binding", BACKENDS)
def test_new_over_existing_and_read_only_missing(cpu_only, tmp_path, backend, binding):
    pytest.importorskip(binding)
    path = tmp_path / "db"

    db = dataset_factory(backend, str, bytes)
    db.open(path, Mode.NEW)
    db.put("k", b"\x00\x01")
    db.commit()
    db.close()

    with pytest.raises(DatasetError):
        dataset_factory(backend, str, bytes).open(path, Mode.NEW)
    with pytest.raises(DatasetError):
        dataset_factory(backend, str, bytes).open(tmp_path / "absent", Mode.READ_ONLY)

    db = dataset_factory(backend, str, bytes)
    with db.open(path, Mode.READ_WRITE):
        db.put("l", b"\x02")
        db.commit()
        assert db.get("k") == b"\x00\x01"
        assert db.get("l") == b"\x02"


def test_close_drops_uncommitted_writes(cpu_only, tmp_path, capsys):
    pytest.importorskip("lmdb")
    db = dataset_factory("lmdb", str, str)
    db.open(tmp_path / "db", Mode.NEW)
    db.put("a", "lost")
    db.close()

    assert "uncommitted" in capsys.readouterr().out
    with db.open(tmp_path / "db", Mode.READ_ONLY):
        assert list(db) == []


def test_lmdb_map_full_is_a_dataset_error(cpu_only, tmp_path):
    pytest.importorskip("lmdb")
    db = LmdbDataset(str, bytes, map_size=1 << 16)
    db.open(tmp_path / "small", Mode.NEW)
    db.put("big", bytes(1 << 20))

    with pytest.raises(DatasetError, match="failed to write lmdb dataset"):
        db.commit()
    db.close()


@pytest.mark.parametrize("backend,binding", BACKENDS)
def test_data_layer_reads_and_cycles(cpu_only, tmp_path, backend, binding):
    pytest.importorskip(binding)
    path = tmp_path / "train"
    db = dataset_factory(backend, str, Datum)
    with db.open(path, Mode.NEW):
        for i in range(3):
            image = np.full((1, 2, 2), i, dtype=np.uint8)
            db.put(f"{i:08d}", Datum.from_array(image, label=i))
        db.commit()

    layer = create_layer(make_param(
        "DATA",
        top=["data", "label"],
        data_param={"source": str(path), "batch_size": 2, "backend": backend},
    ))
    data, label = layer()
    assert data.shape == (2, 1, 2, 2)
    assert data.dtype == torch.float32
    assert label.tolist() == [0.0, 1.0]

    _, label = layer()
    assert label.tolist() == [2.0, 0.0]
    layer.close()
