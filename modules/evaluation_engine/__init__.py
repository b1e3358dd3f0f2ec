"""
Evaluation Engine
=================

Responsibility:
- Per-replicate MSE and error fraction in fitted and original units.
- Reduction of the (combination x replicate) matrix to one row per combination.
- Fit statistics for the final model's out-of-bag predictions.
"""

from .cv_metrics import (
    compute_replicate_metrics,
    aggregate_replicate_metrics,
    residual_table,
    fit_statistics,
    metric_names,
    total_sum_of_squares,
    error_fraction,
)

__all__ = [
    'compute_replicate_metrics',
    'aggregate_replicate_metrics',
    'residual_table',
    'fit_statistics',
    'metric_names',
    'total_sum_of_squares',
    'error_fraction',
]
