"""Key-value datasets and their factory."""

from strata.dataset.base import Coder, Dataset, Datum, Mode, coder_for
from strata.dataset.factory import (
    DATASETS,
    backend_available,
    dataset_factory,
    initialize_dataset_factory,
    register_dataset,
)

__all__ = [
    "Coder",
    "Dataset",
    "Datum",
    "Mode",
    "coder_for",
    "DATASETS",
    "backend_available",
    "dataset_factory",
    "initialize_dataset_factory",
    "register_dataset",
]
