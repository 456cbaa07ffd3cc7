"""Up-front registration of every built-in product.

Factories initialize themselves on first use, so calling this is optional.
Hosts that want registration (and any duplicate-registration error) to
happen at a known point call it once at startup.
"""

from __future__ import annotations

from strata.console import console

__all__ = ["initialize_registrations"]


def initialize_registrations(*, verbose: bool = False) -> dict[str, int]:
    """Register built-in layers, datasets and fillers (idempotent).

    Returns the number of filled registry slots per family.
    """
    from strata.dataset.factory import DATASETS, initialize_dataset_factory
    from strata.fillers import FILLERS
    from strata.layers.factory import LAYERS, initialize_layer_factory

    initialize_layer_factory()
    initialize_dataset_factory()

    counts = {family.name: len(family) for family in (LAYERS, DATASETS, FILLERS)}
    if verbose:
        console.success(
            "Registrations initialized",
            detail=", ".join(f"{name}: {n}" for name, n in counts.items()),
        )
    return counts
