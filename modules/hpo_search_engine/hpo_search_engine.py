import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import ParameterGrid

from modules.base.base_engine import BaseEngine
from modules.evaluation_engine import (
    aggregate_replicate_metrics,
    compute_replicate_metrics,
    metric_names,
    residual_table,
)
from modules.model_factory import ResponseTransform
from modules.split_engine import ReplicateSplit, generate_splits
from modules.training_engine.forest_adapter import ForestAdapter
from utils.error_handling import handle_engine_errors
from utils.exceptions import ConfigurationError, DegreeDayMLException, FitError, SweepStateError
from utils.file_io import save_dataframe
from utils.json_encoding import NumpyEncoder
from utils import constants


class SweepState(Enum):
    CONFIGURED = "configured"
    SPLITS_GENERATED = "splits_generated"
    FITTING = "fitting"
    AGGREGATED = "aggregated"
    PERSISTED = "persisted"


@dataclass(frozen=True)
class FitUnit:
    """One independent fit+predict: a replicate, a grid combination, and the fitted units."""
    replicate_index: int
    combination_index: int
    tree_count: int
    split_var_count: int
    transform: ResponseTransform
    random_state: Optional[int]


@dataclass(frozen=True)
class UnitResult:
    replicate_index: int
    combination_index: int
    transform: ResponseTransform
    metrics: Dict[str, float]
    residuals: Optional[pd.DataFrame] = None


def build_grid(tree_counts: List[int], split_var_counts: List[int]) -> List[Dict[str, int]]:
    """
    Cross product of the candidate sets. Tree count varies fastest, so the
    combinations for one split_var_count are contiguous.
    """
    grid = ParameterGrid({
        constants.SPLIT_VAR_COUNT: list(split_var_counts),
        constants.TREE_COUNT: list(tree_counts),
    })
    return [{k: int(v) for k, v in combo.items()} for combo in grid]


def derive_unit_seed(model_seed: Optional[int], replicate_index: int, combination_index: int) -> Optional[int]:
    """Forest seed for one unit, a pure function of its key so scheduling order cannot change it."""
    if model_seed is None:
        return None
    state = np.random.SeedSequence([model_seed, replicate_index, combination_index]).generate_state(1)
    return int(state[0])


def run_fit_unit(adapter: ForestAdapter, X: np.ndarray, y: np.ndarray, split: ReplicateSplit,
                 unit: FitUnit, keep_residuals: bool = False) -> UnitResult:
    """
    Fit on the split's training rows, predict its validation rows, and reduce
    to per-replicate statistics. Runs inside joblib workers; returns its own
    result instead of writing into shared state.
    """
    try:
        fitted = adapter.fit(
            X[split.train_indices], y[split.train_indices],
            tree_count=unit.tree_count,
            split_var_count=unit.split_var_count,
            transform=unit.transform,
            random_state=unit.random_state,
        )
        predictions = adapter.predict(fitted, X[split.validation_indices])
    except DegreeDayMLException:
        raise
    except Exception as e:
        raise FitError(
            f"Fit failed for replicate {unit.replicate_index}, combination {unit.combination_index} "
            f"(tree_count={unit.tree_count}, split_var_count={unit.split_var_count}, "
            f"transform={unit.transform.value}): {e}",
            replicate_index=unit.replicate_index,
            combination_index=unit.combination_index,
        ) from e

    actual = y[split.validation_indices]
    metrics = compute_replicate_metrics(actual, predictions, unit.transform)

    residuals = None
    if keep_residuals:
        residuals = residual_table(actual, predictions, unit.transform, split.validation_indices)
        residuals.insert(0, 'transform', unit.transform.value)
        residuals.insert(0, 'combination_index', unit.combination_index)
        residuals.insert(0, 'replicate', unit.replicate_index)

    return UnitResult(
        replicate_index=unit.replicate_index,
        combination_index=unit.combination_index,
        transform=unit.transform,
        metrics=metrics,
        residuals=residuals,
    )


class CrossValidationSweep(BaseEngine):
    """
    Repeated hold-out cross-validation over a (tree_count x split_var_count) grid.

    Lifecycle: CONFIGURED -> SPLITS_GENERATED -> FITTING -> AGGREGATED -> PERSISTED.
    Steps only move forward; a new sweep needs a new instance.

    - Splits are fixed before dispatch and shared by every combination and
      every response transform, so their errors are directly comparable.
    - Each (replicate, combination, transform) unit is fitted independently
      in a joblib pool; results are keyed, never order-dependent.
    - Any failed unit aborts the sweep. Averages assume a complete
      combinations x replicates matrix, so nothing partial is persisted.
    """

    def __init__(self, config: dict, logger: logging.Logger, adapter: Optional[ForestAdapter] = None):
        super().__init__(config, logger)
        hpo = config['hyperparameters']
        cv_cfg = config['cross_validation']
        model_cfg = config.get('model', {})

        self.grid = build_grid(hpo['candidate_tree_counts'], hpo['candidate_split_var_counts'])
        self.transforms = [ResponseTransform.parse(t) for t in hpo.get('response_transforms', ['identity'])]
        self.num_replicates = cv_cfg['num_replicates']
        self.held_out_fraction = cv_cfg['held_out_fraction']
        self.split_seed = config.get('_internal_seeds', {}).get('split', cv_cfg['seed'])
        self.model_seed = config.get('_internal_seeds', {}).get('model', model_cfg.get('seed'))

        execution = config.get('execution', {})
        self.n_jobs = execution.get('n_jobs', -1)
        self.progress_every = execution.get('progress_every', 100)

        # Parallelism lives at the unit level; each forest fits single-threaded.
        self.adapter = adapter or ForestAdapter(
            model_name=model_cfg.get('name', 'RandomForestRegressor'),
            params=model_cfg.get('params', {}),
            n_jobs=1,
        )

        self.metrics = []
        for transform in self.transforms:
            self.metrics.extend(metric_names(transform))
        self.selection_metric = self._resolve_selection_metric()

        self.state = SweepState.CONFIGURED
        self.X: Optional[np.ndarray] = None
        self.y: Optional[np.ndarray] = None
        self.feature_names: List[str] = []
        self.splits: List[ReplicateSplit] = []
        self.unit_results: Dict[tuple, UnitResult] = {}
        self.replicate_metrics: Optional[pd.DataFrame] = None
        self.summary: Optional[pd.DataFrame] = None
        self.best_configuration: Optional[Dict[str, Any]] = None

    def _get_engine_directory_name(self) -> str:
        return constants.CV_SWEEP_DIR

    def _resolve_selection_metric(self) -> str:
        final_cfg = self.config.get('final_model', {})
        configured = final_cfg.get('selection_metric')
        if configured is None:
            # Rank in the units the final model will be fitted in, when those were swept.
            final_transform = ResponseTransform.parse(
                final_cfg.get('response_transform', constants.TRANSFORM_IDENTITY)
            )
            if final_transform is ResponseTransform.SQUARE_ROOT and 'sqrt_orig_mse' in self.metrics:
                return 'sqrt_orig_mse'
            return 'mse' if 'mse' in self.metrics else 'sqrt_orig_mse'
        if configured not in self.metrics:
            raise ConfigurationError(
                f"selection_metric '{configured}' is not produced by transforms "
                f"{[t.value for t in self.transforms]}; choose one of {self.metrics}"
            )
        return configured

    def _require(self, expected: SweepState, action: str) -> None:
        if self.state is not expected:
            raise SweepStateError(
                f"Cannot {action} while sweep is {self.state.value}; expected {expected.value}."
            )

    # ------------------------------------------------------------------
    # CONFIGURED -> SPLITS_GENERATED
    # ------------------------------------------------------------------
    def validate_grid(self, n_predictors: int) -> None:
        """Reject split_var_counts larger than the predictor count before anything is drawn or fitted."""
        too_large = sorted({c[constants.SPLIT_VAR_COUNT] for c in self.grid
                            if c[constants.SPLIT_VAR_COUNT] > n_predictors})
        if too_large:
            raise ConfigurationError(
                f"split_var_count values {too_large} exceed the number of predictors ({n_predictors})."
            )

    def prepare(self, df: pd.DataFrame, splits: Optional[List[ReplicateSplit]] = None) -> List[ReplicateSplit]:
        """
        Materialize the dataset arrays and the replicate splits.

        Args:
            df: Response in the first column, predictors in the rest.
            splits: Precomputed splits (e.g. from ReplicateSplitEngine);
                generated here from the split seed when omitted.
        """
        self._require(SweepState.CONFIGURED, "generate splits")

        if df.shape[1] < 2:
            raise ConfigurationError("Dataset needs a response column and at least one predictor.")
        self.validate_grid(df.shape[1] - 1)

        if splits is None:
            splits = generate_splits(len(df), self.held_out_fraction, self.num_replicates, self.split_seed)
        if len(splits) != self.num_replicates:
            raise ConfigurationError(f"Expected {self.num_replicates} splits, got {len(splits)}.")
        for expected_idx, split in enumerate(splits):
            if split.replicate_index != expected_idx:
                raise ConfigurationError(f"Split {expected_idx} carries replicate_index {split.replicate_index}.")
            if split.train_size == 0 or split.validation_size == 0:
                raise ConfigurationError(f"Replicate {expected_idx} has an empty training or validation set.")

        self.feature_names = [str(c) for c in df.columns[1:]]
        self.y = df.iloc[:, 0].to_numpy(dtype=float)
        self.X = df.iloc[:, 1:].to_numpy(dtype=float)
        self.splits = list(splits)
        self.state = SweepState.SPLITS_GENERATED
        return self.splits

    # ------------------------------------------------------------------
    # SPLITS_GENERATED -> FITTING
    # ------------------------------------------------------------------
    def build_units(self) -> List[FitUnit]:
        units = []
        for split in self.splits:
            for combo_idx, combo in enumerate(self.grid):
                seed = derive_unit_seed(self.model_seed, split.replicate_index, combo_idx)
                for transform in self.transforms:
                    units.append(FitUnit(
                        replicate_index=split.replicate_index,
                        combination_index=combo_idx,
                        tree_count=combo[constants.TREE_COUNT],
                        split_var_count=combo[constants.SPLIT_VAR_COUNT],
                        transform=transform,
                        random_state=seed,
                    ))
        return units

    def fit_all(self) -> Dict[tuple, UnitResult]:
        """Dispatch every unit to the worker pool and collect results keyed by unit."""
        self._require(SweepState.SPLITS_GENERATED, "start fitting")
        self.state = SweepState.FITTING

        units = self.build_units()
        keep_residuals = self.config.get('outputs', {}).get('save_residuals', False)
        self.logger.info(
            f"Fitting {len(units)} units: {len(self.grid)} combinations x {len(self.splits)} replicates x "
            f"{len(self.transforms)} transforms (n_jobs={self.n_jobs})"
        )

        results: Dict[tuple, UnitResult] = {}
        outputs = Parallel(n_jobs=self.n_jobs, return_as="generator")(
            delayed(run_fit_unit)(self.adapter, self.X, self.y, self.splits[u.replicate_index], u, keep_residuals)
            for u in units
        )
        for done, result in enumerate(outputs, start=1):
            key = (result.replicate_index, result.combination_index, result.transform)
            if key in results:
                raise FitError(f"Duplicate result for unit {key}.",
                               replicate_index=result.replicate_index,
                               combination_index=result.combination_index)
            results[key] = result
            if self.progress_every and done % self.progress_every == 0:
                self.logger.info(f"Finished {done}/{len(units)} fit units...")

        expected = {(u.replicate_index, u.combination_index, u.transform) for u in units}
        missing = expected - set(results)
        if missing:
            r, c, _ = sorted(missing, key=lambda k: (k[0], k[1]))[0]
            raise FitError(f"{len(missing)} fit units returned no result.", replicate_index=r, combination_index=c)

        self.unit_results = results
        return results

    # ------------------------------------------------------------------
    # FITTING -> AGGREGATED
    # ------------------------------------------------------------------
    def aggregate(self) -> pd.DataFrame:
        """Reduce unit results to one row per combination and pick the best combination."""
        self._require(SweepState.FITTING, "aggregate")
        if not self.unit_results:
            raise SweepStateError("Cannot aggregate before every fit unit has finished.")

        rows = []
        for split in self.splits:
            for combo_idx, combo in enumerate(self.grid):
                row = {
                    'combination_index': combo_idx,
                    'replicate': split.replicate_index,
                    constants.TREE_COUNT: combo[constants.TREE_COUNT],
                    constants.SPLIT_VAR_COUNT: combo[constants.SPLIT_VAR_COUNT],
                }
                for transform in self.transforms:
                    row.update(self.unit_results[(split.replicate_index, combo_idx, transform)].metrics)
                rows.append(row)

        self.replicate_metrics = pd.DataFrame(rows)
        self.summary = aggregate_replicate_metrics(self.replicate_metrics, self.num_replicates, self.metrics)
        self.best_configuration = self._select_best(self.summary)
        self.state = SweepState.AGGREGATED
        return self.summary

    def _select_best(self, summary: pd.DataFrame) -> Optional[Dict[str, Any]]:
        column = f'cv_{self.selection_metric}_mean'
        scores = summary[column]
        if scores.isna().all():
            self.logger.warning(f"All combinations have NaN {column}; no best configuration selected.")
            return None

        best_row = summary.loc[scores.idxmin()]
        best = {
            constants.TREE_COUNT: int(best_row[constants.TREE_COUNT]),
            constants.SPLIT_VAR_COUNT: int(best_row[constants.SPLIT_VAR_COUNT]),
            'combination_index': int(best_row['combination_index']),
            'selection_metric': self.selection_metric,
            'metrics': {c: float(best_row[c]) for c in summary.columns if c.startswith('cv_')},
        }
        self.logger.info(
            f"Best combination: tree_count={best[constants.TREE_COUNT]}, "
            f"split_var_count={best[constants.SPLIT_VAR_COUNT]} ({column}={best_row[column]:.4f})"
        )
        return best

    # ------------------------------------------------------------------
    # AGGREGATED -> PERSISTED
    # ------------------------------------------------------------------
    def persist(self) -> None:
        """Write the aggregate table (and optional replicate-level tables)."""
        self._require(SweepState.AGGREGATED, "persist")
        outputs = self.config.get('outputs', {})
        excel_copy = outputs.get('save_excel_copy', False)
        csv_copy = outputs.get('save_csv_copy', False)

        summary_path = self.output_dir / constants.CV_SUMMARY_FILE
        save_dataframe(self.summary, summary_path, excel_copy=excel_copy, csv_copy=csv_copy, index=False)
        self.logger.info(f"CV summary saved to {summary_path}")

        if outputs.get('save_replicate_metrics', True):
            save_dataframe(self.replicate_metrics, self.output_dir / constants.REPLICATE_METRICS_FILE,
                           csv_copy=csv_copy, index=False)

        if outputs.get('save_residuals', False):
            frames = [r.residuals for r in self.unit_results.values() if r.residuals is not None]
            residuals = pd.concat(frames, ignore_index=True).sort_values(
                ['replicate', 'combination_index', 'transform', 'row_index'], ignore_index=True
            )
            save_dataframe(residuals, self.output_dir / constants.REPLICATE_RESIDUALS_FILE, index=False)

        with open(self.output_dir / constants.BEST_CONFIGURATION_FILE, 'w') as f:
            json.dump(self.best_configuration, f, indent=2, cls=NumpyEncoder)

        self.state = SweepState.PERSISTED

    @handle_engine_errors("Cross-Validation Sweep")
    def execute(self, df: pd.DataFrame, run_id: str, splits: Optional[List[ReplicateSplit]] = None) -> pd.DataFrame:
        """
        Run the full sweep.

        Args:
            df: Response in the first column, predictors in the rest.
            run_id: Run identifier.
            splits: Optional precomputed splits.

        Returns:
            Aggregated metric table, one row per (tree_count, split_var_count).
        """
        self.logger.info("Starting Cross-Validation Sweep...")
        self.prepare(df, splits)
        self.fit_all()
        summary = self.aggregate()
        self.persist()
        self.logger.info(f"Sweep complete: {len(summary)} combinations over {self.num_replicates} replicates.")
        return summary
