"""Data layers: they take no bottoms and emit (data, label) batches."""

from __future__ import annotations

import os
from typing import Generator, Optional

import matplotlib.image as mpimg
import numpy as np
import torch
import torch.nn.functional as F

from strata.config import FillerParameter, LayerType
from strata.console import console
from strata.dataset import Datum, Mode, dataset_factory
from strata.errors import DatasetError
from strata.fillers import ConstantFiller, get_filler
from strata.layers.base import DataLayer
from strata.layers.factory import register_layer_class

__all__ = [
    "DatabaseDataLayer",
    "DummyDataLayer",
    "ImageDataLayer",
    "MemoryDataLayer",
]


@register_layer_class(LayerType.DATA)
class DatabaseDataLayer(DataLayer):
    """Reads ``Datum`` records from a LevelDB or LMDB dataset, cycling at the end."""

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        if self.layer_param.data_param.batch_size <= 0:
            raise ValueError(f"layer {self.name!r}: data_param.batch_size must be positive")
        self.dataset = None
        self._cursor: Optional[Generator] = None

    def layer_setup(self, bottom):
        p = self.layer_param.data_param
        self.dataset = dataset_factory(p.backend, str, Datum)
        self.dataset.open(p.source, Mode.READ_ONLY)
        console.info(f"Opened {p.backend.name.lower()} dataset {p.source}")
        self._cursor = iter(self.dataset)
        if p.rand_skip:
            skip = int(torch.randint(0, p.rand_skip + 1, (1,)).item())
            console.info(f"Skipping first {skip} data points")
            for _ in range(skip):
                self._next_datum()

    def _next_datum(self) -> Datum:
        try:
            return next(self._cursor)[1]
        except StopIteration:
            console.info("Restarting data prefetching from start")
            self._cursor = iter(self.dataset)
            try:
                return next(self._cursor)[1]
            except StopIteration:
                raise DatasetError(f"dataset {self.dataset.path} is empty") from None

    def next_batch(self):
        batch_size = self.layer_param.data_param.batch_size
        images, labels = [], []
        for _ in range(batch_size):
            datum = self._next_datum()
            images.append(datum.to_array())
            labels.append(datum.label)
        data = torch.as_tensor(np.stack(images), dtype=self.dtype)
        label = torch.tensor(labels, dtype=self.dtype)
        return [self.transform(data), label]

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
            self._cursor = None
        if self.dataset is not None:
            self.dataset.close()


@register_layer_class(LayerType.DUMMY_DATA)
class DummyDataLayer(DataLayer):
    """Emits filler-generated blobs; one shape and filler per top, or one shared."""

    min_top = 1
    max_top = None

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.dummy_data_param
        self.count = self.num_top() or max(1, len(p.num))
        for field_name in ("num", "channels", "height", "width", "data_filler"):
            n = len(getattr(p, field_name))
            if field_name == "num" and n == 0:
                raise ValueError(f"layer {self.name!r}: dummy_data_param.num is required")
            if n not in (0, 1, self.count):
                raise ValueError(
                    f"layer {self.name!r}: dummy_data_param.{field_name} must have 0, 1 or {self.count} entries"
                )
        self.blobs: list[torch.Tensor] = []

    @staticmethod
    def _pick(values: list, i: int, default):
        if not values:
            return default
        return values[i] if len(values) > 1 else values[0]

    def layer_setup(self, bottom):
        p = self.layer_param.dummy_data_param
        self.fillers = []
        for i in range(self.count):
            shape = (
                self._pick(p.num, i, 1),
                self._pick(p.channels, i, 1),
                self._pick(p.height, i, 1),
                self._pick(p.width, i, 1),
            )
            filler = get_filler(self._pick(p.data_filler, i, FillerParameter()), self.dtype)
            self.fillers.append(filler)
            self.blobs.append(filler.make(*shape))

    def next_batch(self):
        # Constant blobs are reused; random ones are redrawn every batch.
        return [
            blob if isinstance(filler, ConstantFiller) else filler.make(*blob.shape)
            for filler, blob in zip(self.fillers, self.blobs)
        ]


@register_layer_class(LayerType.MEMORY_DATA)
class MemoryDataLayer(DataLayer):
    """Serves batches from arrays handed over with ``reset``."""

    exact_num_top = 2
    min_top = None
    max_top = None

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.memory_data_param
        if min(p.batch_size, p.channels, p.height, p.width) <= 0:
            raise ValueError(f"layer {self.name!r}: batch_size, channels, height and width must be positive")
        self.data: Optional[torch.Tensor] = None
        self.labels: Optional[torch.Tensor] = None
        self.pos = 0

    def reset(self, data, labels) -> None:
        p = self.layer_param.memory_data_param
        data = torch.as_tensor(np.asarray(data), dtype=self.dtype)
        labels = torch.as_tensor(np.asarray(labels), dtype=self.dtype).reshape(-1)
        expected = (p.channels, p.height, p.width)
        if data.dim() != 4 or tuple(data.shape[1:]) != expected:
            raise ValueError(f"layer {self.name!r}: data must be shaped (N, {p.channels}, {p.height}, {p.width})")
        if data.shape[0] != labels.shape[0]:
            raise ValueError(f"layer {self.name!r}: got {data.shape[0]} samples but {labels.shape[0]} labels")
        if data.shape[0] == 0 or data.shape[0] % p.batch_size != 0:
            raise ValueError(f"layer {self.name!r}: sample count must be a positive multiple of the batch size")
        self.data, self.labels, self.pos = data, labels, 0

    def next_batch(self):
        if self.data is None:
            raise RuntimeError(f"layer {self.name!r}: call reset() before forward")
        n = self.layer_param.memory_data_param.batch_size
        batch = [self.data[self.pos:self.pos + n], self.labels[self.pos:self.pos + n]]
        self.pos = (self.pos + n) % self.data.shape[0]
        return batch


@register_layer_class(LayerType.IMAGE_DATA)
class ImageDataLayer(DataLayer):
    """Reads images listed in a text file of ``<path> <label>`` lines."""

    def __init__(self, param, dtype=torch.float32):
        super().__init__(param, dtype)
        p = self.layer_param.image_data_param
        if p.batch_size <= 0:
            raise ValueError(f"layer {self.name!r}: image_data_param.batch_size must be positive")
        if (p.new_height > 0) != (p.new_width > 0):
            raise ValueError(f"layer {self.name!r}: new_height and new_width must be set together")
        self.lines: list[tuple[str, int]] = []
        self.order: list[int] = []
        self.pos = 0

    def layer_setup(self, bottom):
        p = self.layer_param.image_data_param
        with open(p.source, encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                path, _, label = raw.rpartition(" ")
                if not path:
                    raise ValueError(f"{p.source}: expected '<path> <label>', got {raw!r}")
                self.lines.append((path, int(label)))
        if not self.lines:
            raise DatasetError(f"{p.source}: no images listed")
        console.info(f"A total of {len(self.lines)} images")
        self._new_epoch()
        if p.rand_skip:
            self.pos = int(torch.randint(0, p.rand_skip + 1, (1,)).item()) % len(self.lines)

    def _new_epoch(self) -> None:
        if self.layer_param.image_data_param.shuffle:
            self.order = torch.randperm(len(self.lines)).tolist()
        else:
            self.order = list(range(len(self.lines)))
        self.pos = 0

    def read_image(self, path: str) -> torch.Tensor:
        p = self.layer_param.image_data_param
        image = np.asarray(mpimg.imread(os.path.join(p.root_folder, path)))
        if image.dtype != np.uint8:
            image = image * 255.0  # float images are in [0, 1]
        image = image.astype(np.float32)
        if image.ndim == 2:
            image = image[:, :, None]
        image = image[:, :, :3]  # drop alpha
        if p.is_color and image.shape[2] == 1:
            image = np.repeat(image, 3, axis=2)
        elif not p.is_color and image.shape[2] == 3:
            image = image.mean(axis=2, keepdims=True)
        tensor = torch.from_numpy(np.ascontiguousarray(image.transpose(2, 0, 1))).to(self.dtype)
        if p.new_height > 0:
            tensor = F.interpolate(
                tensor[None], size=(p.new_height, p.new_width), mode="bilinear", align_corners=False
            )[0]
        return tensor

    def next_batch(self):
        p = self.layer_param.image_data_param
        images, labels = [], []
        for _ in range(p.batch_size):
            path, label = self.lines[self.order[self.pos]]
            images.append(self.read_image(path))
            labels.append(label)
            self.pos += 1
            if self.pos >= len(self.lines):
                console.info("Restarting data prefetching from start")
                self._new_epoch()
        shapes = {tuple(img.shape) for img in images}
        if len(shapes) > 1:
            raise ValueError(f"layer {self.name!r}: images differ in size {sorted(shapes)}; set new_height/new_width")
        return [self.transform(torch.stack(images)), torch.tensor(labels, dtype=self.dtype)]
