"""
HPO Search Engine
=================

Responsibility:
- Grid of (tree_count, split_var_count) combinations.
- Repeated hold-out cross-validation shared across combinations and transforms.
- Parallel, order-independent fitting of independent units.
- Aggregation, best-combination selection, and persistence of the results table.
"""

from .hpo_search_engine import (
    CrossValidationSweep,
    SweepState,
    FitUnit,
    UnitResult,
    build_grid,
    derive_unit_seed,
    run_fit_unit,
)

__all__ = [
    'CrossValidationSweep',
    'SweepState',
    'FitUnit',
    'UnitResult',
    'build_grid',
    'derive_unit_seed',
    'run_fit_unit',
]
