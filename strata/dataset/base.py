"""Key-value datasets.

A ``Dataset[K, V]`` is a handle on an on-disk key-value store. Keys and
values are translated to bytes by coders chosen from the element type
``(key_type, value_type)``:

    db = dataset_factory("lmdb", str, Datum)
    with db.open("train_lmdb", Mode.NEW):
        db.put("00000001", Datum(channels=1, height=2, width=2, data=b"\\x00" * 4, label=3))
        db.commit()

Writes are buffered until ``commit()``; reads and iteration only see
committed records. Iteration yields ``(key, value)`` in key order.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

import numpy as np

from strata.console import console
from strata.errors import DatasetError

__all__ = [
    "Mode",
    "Datum",
    "Coder",
    "StringCoder",
    "BytesCoder",
    "DatumCoder",
    "coder_for",
    "Dataset",
]

K = TypeVar("K")
V = TypeVar("V")


class Mode(str, Enum):
    NEW = "new"  # create; the database must not exist yet
    READ_WRITE = "read_write"
    READ_ONLY = "read_only"


@dataclass
class Datum:
    """One training record: a C x H x W image (bytes or floats) and a label."""

    channels: int = 0
    height: int = 0
    width: int = 0
    data: bytes = b""
    label: int = 0
    float_data: List[float] = field(default_factory=list)
    encoded: bool = False

    # channels, height, width, label, encoded, len(data), len(float_data)
    _HEADER = struct.Struct("<iiii?II")

    def to_bytes(self) -> bytes:
        floats = np.asarray(self.float_data, dtype="<f4").tobytes()
        header = self._HEADER.pack(
            self.channels, self.height, self.width, self.label,
            self.encoded, len(self.data), len(self.float_data),
        )
        return header + bytes(self.data) + floats

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Datum":
        size = cls._HEADER.size
        if len(raw) < size:
            raise DatasetError(f"truncated Datum record ({len(raw)} bytes)")
        channels, height, width, label, encoded, n_data, n_float = cls._HEADER.unpack_from(raw)
        if len(raw) != size + n_data + 4 * n_float:
            raise DatasetError("Datum record length does not match its header")
        data = bytes(raw[size:size + n_data])
        floats = []
        if n_float:
            floats = np.frombuffer(raw, dtype="<f4", count=n_float, offset=size + n_data).tolist()
        return cls(channels, height, width, data, label, floats, encoded)

    def to_array(self) -> np.ndarray:
        """The record as a float32 (C, H, W) array."""
        shape = (self.channels, self.height, self.width)
        if self.encoded:
            raise DatasetError("encoded Datum records must be decoded before use")
        if self.data:
            return np.frombuffer(self.data, dtype=np.uint8).reshape(shape).astype(np.float32)
        return np.asarray(self.float_data, dtype=np.float32).reshape(shape)

    @classmethod
    def from_array(cls, array: np.ndarray, label: int = 0) -> "Datum":
        """uint8 arrays are stored as bytes, anything else as float_data."""
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[None]
        if array.ndim != 3:
            raise ValueError(f"expected a (C, H, W) array, got shape {array.shape}")
        c, h, w = array.shape
        if array.dtype == np.uint8:
            return cls(c, h, w, data=array.tobytes(), label=int(label))
        return cls(c, h, w, label=int(label), float_data=array.astype(np.float32).ravel().tolist())


# =============================================================================
# CODERS
# =============================================================================


class Coder(Generic[V]):
    def encode(self, value: V) -> bytes:
        raise NotImplementedError

    def decode(self, raw: bytes) -> V:
        raise NotImplementedError


class StringCoder(Coder[str]):
    def encode(self, value: str) -> bytes:
        if not isinstance(value, str):
            raise TypeError(f"expected str, got {type(value).__name__}")
        return value.encode("utf-8")

    def decode(self, raw: bytes) -> str:
        return bytes(raw).decode("utf-8")


class BytesCoder(Coder[bytes]):
    def encode(self, value: bytes) -> bytes:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected bytes, got {type(value).__name__}")
        return bytes(value)

    def decode(self, raw: bytes) -> bytes:
        return bytes(raw)


class DatumCoder(Coder[Datum]):
    def encode(self, value: Datum) -> bytes:
        if not isinstance(value, Datum):
            raise TypeError(f"expected Datum, got {type(value).__name__}")
        return value.to_bytes()

    def decode(self, raw: bytes) -> Datum:
        return Datum.from_bytes(bytes(raw))


_CODERS: Dict[type, Coder] = {
    str: StringCoder(),
    bytes: BytesCoder(),
    Datum: DatumCoder(),
}


def coder_for(tp: type) -> Coder:
    try:
        return _CODERS[tp]
    except KeyError:
        raise TypeError(f"no coder for {tp!r}; expected one of {[t.__name__ for t in _CODERS]}") from None


# =============================================================================
# DATASET
# =============================================================================


class Dataset(ABC, Generic[K, V]):
    """Handle on a key-value store. Construction does not touch the disk."""

    backend_name: str = ""

    def __init__(self, key_type: type = str, value_type: type = Datum):
        self.key_type = key_type
        self.value_type = value_type
        self._key_coder = coder_for(key_type)
        self._value_coder = coder_for(value_type)
        self.path: Optional[str] = None
        self.mode: Optional[Mode] = None
        self._pending: Dict[bytes, bytes] = {}

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.mode is not None

    def open(self, path: Any, mode: Mode = Mode.READ_ONLY) -> "Dataset[K, V]":
        if self.is_open:
            raise DatasetError(f"{self.backend_name} dataset already open at {self.path}")
        mode = Mode(mode)
        path = str(path)
        self._open(path, mode)
        self.path, self.mode = path, mode
        return self

    def close(self) -> None:
        if not self.is_open:
            return
        if self._pending:
            console.warn(
                f"Closing {self.backend_name} dataset {self.path} with uncommitted writes",
                detail=f"{len(self._pending)} record(s) dropped",
            )
            self._pending.clear()
        self._close()
        self.path = self.mode = None

    def __enter__(self) -> "Dataset[K, V]":
        if not self.is_open:
            raise DatasetError("open() the dataset before entering its context")
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- records -------------------------------------------------------------

    def put(self, key: K, value: V) -> None:
        self._require_open()
        if self.mode is Mode.READ_ONLY:
            raise DatasetError(f"{self.backend_name} dataset {self.path} is read-only")
        self._pending[self._key_coder.encode(key)] = self._value_coder.encode(value)

    def get(self, key: K) -> V:
        self._require_open()
        raw = self._get(self._key_coder.encode(key))
        if raw is None:
            raise KeyError(key)
        return self._value_coder.decode(raw)

    def __contains__(self, key: object) -> bool:
        self._require_open()
        return self._get(self._key_coder.encode(key)) is not None

    def commit(self) -> int:
        """Write buffered records; returns how many were written."""
        self._require_open()
        if not self._pending:
            return 0
        items = sorted(self._pending.items())
        self._write(items)
        self._pending.clear()
        return len(items)

    def __iter__(self) -> Iterator[Tuple[K, V]]:
        self._require_open()
        for raw_key, raw_value in self._iterate():
            yield self._key_coder.decode(raw_key), self._value_coder.decode(raw_value)

    def keys(self) -> Iterator[K]:
        return (key for key, _ in self)

    def _require_open(self) -> None:
        if not self.is_open:
            raise DatasetError(f"{self.backend_name} dataset is not open")

    def __repr__(self) -> str:
        where = f"{self.path!r}, {self.mode.name}" if self.is_open else "closed"
        return f"{type(self).__name__}[{self.key_type.__name__}, {self.value_type.__name__}]({where})"

    # -- backend hooks -------------------------------------------------------

    @abstractmethod
    def _open(self, path: str, mode: Mode) -> None: ...

    @abstractmethod
    def _close(self) -> None: ...

    @abstractmethod
    def _get(self, key: bytes) -> Optional[bytes]: ...

    @abstractmethod
    def _write(self, items: Iterable[Tuple[bytes, bytes]]) -> None: ...

    @abstractmethod
    def _iterate(self) -> Iterator[Tuple[bytes, bytes]]: ...
