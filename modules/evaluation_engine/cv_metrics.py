"""
Error statistics for repeated hold-out cross-validation.

Per replicate and combination the validation residuals are reduced to a mean
squared error and an error fraction (residual sum of squares over the total
sum of squares of that replicate's validation responses). Aggregation then
averages each statistic over replicates, so every validation set carries the
same weight whatever its own spread.

An error fraction over a validation set whose responses are all equal
(SSTotal == 0) is NaN. The NaN is kept through aggregation so an affected
combination shows NaN rather than a silently biased mean.
"""
import logging
import math
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from modules.model_factory import ResponseTransform
from utils.exceptions import FitError
from utils import constants

logger = logging.getLogger(__name__)

IDENTITY_METRICS = ['mse', 'err_frac']
SQUARE_ROOT_METRICS = ['sqrt_mse', 'sqrt_err_frac', 'sqrt_orig_mse', 'sqrt_orig_err_frac']

GRID_COLUMNS = ['combination_index', constants.TREE_COUNT, constants.SPLIT_VAR_COUNT]


def metric_names(transform: ResponseTransform) -> List[str]:
    """Statistic names produced for a fit in the given units."""
    if ResponseTransform.parse(transform) is ResponseTransform.SQUARE_ROOT:
        return list(SQUARE_ROOT_METRICS)
    return list(IDENTITY_METRICS)


def total_sum_of_squares(actual) -> float:
    actual = np.asarray(actual, dtype=float)
    return float(np.sum((actual - actual.mean()) ** 2))


def error_fraction(residuals, ss_total: float) -> float:
    """Residual sum of squares / SSTotal; NaN when SSTotal is zero."""
    if ss_total <= 0.0:
        logger.warning("Validation responses are all equal (SSTotal == 0); error fraction set to NaN.")
        return float('nan')
    return float(np.sum(np.square(residuals)) / ss_total)


def compute_replicate_metrics(actual, predictions, transform: ResponseTransform) -> Dict[str, float]:
    """
    Statistics for one (replicate, combination) fit.

    Args:
        actual: Validation responses in original units.
        predictions: Forest predictions in the fitted units.
        transform: Units the forest was fitted in.

    Returns:
        identity: {'mse', 'err_frac'}
        square_root: {'sqrt_mse', 'sqrt_err_frac'} against sqrt(actual), and
        {'sqrt_orig_mse', 'sqrt_orig_err_frac'} with predictions squared
        against actual and SSTotal in original units.
    """
    transform = ResponseTransform.parse(transform)
    actual = np.asarray(actual, dtype=float)
    predictions = np.asarray(predictions, dtype=float)
    if actual.shape != predictions.shape:
        raise ValueError(f"Shape mismatch: actual {actual.shape} vs predictions {predictions.shape}")

    ss_total = total_sum_of_squares(actual)

    if transform is ResponseTransform.IDENTITY:
        resid = predictions - actual
        return {
            'mse': float(np.mean(resid ** 2)),
            'err_frac': error_fraction(resid, ss_total),
        }

    sqrt_actual = transform.forward(actual)
    sqrt_resid = predictions - sqrt_actual
    orig_resid = transform.inverse(predictions) - actual
    return {
        'sqrt_mse': float(np.mean(sqrt_resid ** 2)),
        'sqrt_err_frac': error_fraction(sqrt_resid, total_sum_of_squares(sqrt_actual)),
        'sqrt_orig_mse': float(np.mean(orig_resid ** 2)),
        'sqrt_orig_err_frac': error_fraction(orig_resid, ss_total),
    }


def residual_table(actual, predictions, transform: ResponseTransform, row_indices) -> pd.DataFrame:
    """Row-level actual/predicted/residual in original units (predictions back-transformed)."""
    transform = ResponseTransform.parse(transform)
    actual = np.asarray(actual, dtype=float)
    predicted = transform.inverse(predictions)
    return pd.DataFrame({
        'row_index': np.asarray(row_indices),
        'actual': actual,
        'predicted': predicted,
        'residual': actual - predicted,
    })


def mean_of(values: Iterable[float]) -> float:
    """Arithmetic mean with an exactly rounded sum, so input order never matters."""
    values = [float(v) for v in values]
    return math.fsum(values) / len(values)


def aggregate_replicate_metrics(replicate_metrics: pd.DataFrame, num_replicates: int,
                                metrics: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Reduce the (combination x replicate) table to one row per combination.

    Args:
        replicate_metrics: One row per (combination_index, replicate) holding
            the grid columns and the per-replicate statistics.
        num_replicates: Replicates every combination must have.
        metrics: Statistic columns to aggregate (default: all non-key columns).

    Returns:
        DataFrame with grid columns, n_replicates, cv_<metric>_mean and
        cv_<metric>_std per statistic, sorted by combination_index.

    Raises:
        FitError: If any combination is missing replicates or statistics.
    """
    if replicate_metrics.empty:
        raise FitError("No replicate results to aggregate.")

    if metrics is None:
        metrics = [c for c in replicate_metrics.columns if c not in GRID_COLUMNS + ['replicate']]

    rows = []
    for combo_idx, group in replicate_metrics.groupby('combination_index', sort=True):
        replicates = group['replicate'].nunique()
        if replicates != num_replicates or len(group) != num_replicates:
            raise FitError(
                f"Combination {combo_idx} has {len(group)} results over {replicates} replicates; "
                f"expected exactly {num_replicates}.",
                combination_index=int(combo_idx),
            )
        missing = [m for m in metrics if m not in group.columns]
        if missing:
            raise FitError(f"Combination {combo_idx} is missing statistics {missing}.",
                           combination_index=int(combo_idx))

        row = {
            'combination_index': int(combo_idx),
            constants.TREE_COUNT: int(group[constants.TREE_COUNT].iloc[0]),
            constants.SPLIT_VAR_COUNT: int(group[constants.SPLIT_VAR_COUNT].iloc[0]),
            'n_replicates': int(replicates),
        }
        for m in metrics:
            values = group.sort_values('replicate')[m].to_numpy(dtype=float)
            row[f'cv_{m}_mean'] = mean_of(values)
            row[f'cv_{m}_std'] = float(np.std(values))
        rows.append(row)

    summary = pd.DataFrame(rows)
    nan_cols = [c for c in summary.columns if c.endswith('_mean') and summary[c].isna().any()]
    if nan_cols:
        logger.warning(f"Aggregated statistics contain NaN (zero-variance validation sets): {nan_cols}")
    return summary


def fit_statistics(actual, predictions, transform: ResponseTransform) -> Dict[str, float]:
    """
    RMSE and explained fraction (1 - error fraction) of a set of predictions,
    in fitted units and, for square_root, projected back to original units.
    """
    transform = ResponseTransform.parse(transform)
    actual = np.asarray(actual, dtype=float)
    predictions = np.asarray(predictions, dtype=float)

    fitted_actual = transform.forward(actual)
    resid = predictions - fitted_actual
    stats = {
        'rmse': float(np.sqrt(np.mean(resid ** 2))),
        'explained_fraction': 1.0 - error_fraction(resid, total_sum_of_squares(fitted_actual)),
    }
    if transform is ResponseTransform.SQUARE_ROOT:
        orig_resid = transform.inverse(predictions) - actual
        stats['orig_rmse'] = float(np.sqrt(np.mean(orig_resid ** 2)))
        stats['orig_explained_fraction'] = 1.0 - error_fraction(orig_resid, total_sum_of_squares(actual))
    return stats
