"""LMDB-backed dataset (through the ``lmdb`` binding)."""

from __future__ import annotations

import os
from typing import Iterable, Iterator, Optional, Tuple

from strata.config import Backend
from strata.dataset.base import Dataset, Datum, Mode
from strata.dataset.factory import register_dataset
from strata.errors import DatasetError

__all__ = ["LmdbDataset"]

DATA_FILE = "data.mdb"


@register_dataset(Backend.LMDB)
class LmdbDataset(Dataset):
    backend_name = "lmdb"

    def __init__(self, key_type=str, value_type=Datum, *, map_size: int = 1 << 30):
        super().__init__(key_type, value_type)
        self.map_size = map_size
        self._env = None

    def _open(self, path: str, mode: Mode) -> None:
        import lmdb

        exists = os.path.isfile(os.path.join(path, DATA_FILE))
        if mode is Mode.NEW:
            if exists:
                raise DatasetError(f"lmdb dataset {path} already exists")
            os.makedirs(path, exist_ok=True)
        elif mode is Mode.READ_ONLY and not exists:
            raise DatasetError(f"lmdb dataset {path} does not exist")
        readonly = mode is Mode.READ_ONLY
        try:
            self._env = lmdb.open(
                path,
                map_size=self.map_size,
                readonly=readonly,
                lock=not readonly,
                create=not readonly,
            )
        except lmdb.Error as e:
            raise DatasetError(f"failed to open lmdb dataset {path}: {e}") from e

    def _close(self) -> None:
        self._env.close()
        self._env = None

    def _get(self, key: bytes) -> Optional[bytes]:
        with self._env.begin() as txn:
            value = txn.get(key)
        return None if value is None else bytes(value)

    def _write(self, items: Iterable[Tuple[bytes, bytes]]) -> None:
        import lmdb

        try:
            with self._env.begin(write=True) as txn:
                for key, value in items:
                    txn.put(key, value)
        except lmdb.Error as e:
            raise DatasetError(f"failed to write lmdb dataset {self.path}: {e}") from e

    def _iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        with self._env.begin() as txn:
            for key, value in txn.cursor():
                yield bytes(key), bytes(value)
