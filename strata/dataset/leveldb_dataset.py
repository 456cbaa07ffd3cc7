"""LevelDB-backed dataset (through ``plyvel``)."""

from __future__ import annotations

import os
from typing import Iterable, Iterator, Optional, Tuple

from strata.config import Backend
from strata.dataset.base import Dataset, Datum, Mode
from strata.dataset.factory import register_dataset
from strata.errors import DatasetError

__all__ = ["LeveldbDataset"]


@register_dataset(Backend.LEVELDB)
class LeveldbDataset(Dataset):
    backend_name = "leveldb"

    def __init__(self, key_type=str, value_type=Datum, *, write_buffer_size: int = 4 << 20):
        super().__init__(key_type, value_type)
        self.write_buffer_size = write_buffer_size
        self._db = None

    def _open(self, path: str, mode: Mode) -> None:
        import plyvel

        exists = os.path.isdir(path)
        if mode is Mode.NEW and exists:
            raise DatasetError(f"leveldb dataset {path} already exists")
        if mode is Mode.READ_ONLY and not exists:
            raise DatasetError(f"leveldb dataset {path} does not exist")
        try:
            self._db = plyvel.DB(
                path,
                create_if_missing=mode is not Mode.READ_ONLY,
                error_if_exists=mode is Mode.NEW,
                write_buffer_size=self.write_buffer_size,
            )
        except plyvel.Error as e:
            raise DatasetError(f"failed to open leveldb dataset {path}: {e}") from e

    def _close(self) -> None:
        self._db.close()
        self._db = None

    def _get(self, key: bytes) -> Optional[bytes]:
        return self._db.get(key)

    def _write(self, items: Iterable[Tuple[bytes, bytes]]) -> None:
        import plyvel

        try:
            with self._db.write_batch(sync=True) as batch:
                for key, value in items:
                    batch.put(key, value)
        except plyvel.Error as e:
            raise DatasetError(f"failed to write leveldb dataset {self.path}: {e}") from e

    def _iterate(self) -> Iterator[Tuple[bytes, bytes]]:
        with self._db.iterator() as it:
            yield from it
