#!/usr/bin/env python3
"""Inspect what this Strata installation can build.

Usage:
    python -m strata               # layers, datasets and build features
    python -m strata --layers      # registered layer types per element type
    python -m strata --datasets    # dataset backends and their availability
    python -m strata --features    # detected build features
"""

from __future__ import annotations

import argparse
from typing import Sequence

import torch

from strata.bootstrap import initialize_registrations
from strata.config import Backend, LayerType
from strata.console import console
from strata.dataset.factory import BACKEND_BINDINGS, DATASETS, backend_available
from strata.layers.base import ELEMENT_TYPES
from strata.layers.engines import SELECTORS
from strata.layers.factory import LAYERS
from strata.runtime import features


def _mark(flag: bool) -> str:
    return "yes" if flag else "-"


def show_layers() -> None:
    rows = []
    for layer_type in LayerType:
        slots = [(layer_type, dtype) in LAYERS for dtype in ELEMENT_TYPES]
        if not any(slots):
            continue
        rows.append([
            layer_type.name,
            str(int(layer_type)),
            *(_mark(s) for s in slots),
            _mark(layer_type in SELECTORS),
        ])
    columns = ["type", "id", *(str(d).removeprefix("torch.") for d in ELEMENT_TYPES), "engine-selected"]
    console.table(f"Layers ({len(rows)} types)", columns, rows)


def show_datasets() -> None:
    rows = []
    for backend in Backend:
        element_types = [
            f"({k.__name__}, {v.__name__})"
            for (k, v) in DATASETS.element_types
            if (backend, (k, v)) in DATASETS
        ]
        rows.append([
            backend.name.lower(),
            BACKEND_BINDINGS[backend],
            _mark(backend_available(backend)),
            ", ".join(element_types),
        ])
    console.table("Datasets", ["backend", "binding", "available", "element types"], rows)


def show_features() -> None:
    flags = features()
    console.header(
        "Build features",
        torch=torch.__version__,
        **{name: _mark(value) for name, value in flags.as_dict().items()},
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="strata",
        description="Inspect registered layers, dataset backends and build features",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--layers", action="store_true", help="List registered layer types")
    parser.add_argument("--datasets", action="store_true", help="List dataset backends")
    parser.add_argument("--features", action="store_true", help="Show detected build features")
    args = parser.parse_args(argv)

    show_all = not (args.layers or args.datasets or args.features)
    initialize_registrations()
    if show_all or args.layers:
        show_layers()
    if show_all or args.datasets:
        show_datasets()
    if show_all or args.features:
        show_features()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
