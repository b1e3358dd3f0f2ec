import json
import pytest
import numpy as np
import pandas as pd
from unittest.mock import Mock, patch

from modules.hpo_search_engine import (
    CrossValidationSweep, SweepState, build_grid, derive_unit_seed
)
from modules.model_factory import ResponseTransform
from modules.split_engine import generate_splits
from utils.exceptions import ConfigurationError, FitError, SweepStateError

@pytest.fixture
def mock_logger():
    return Mock()

@pytest.fixture
def dataset():
    """20 observations, response first, 3 predictors."""
    rng = np.random.default_rng(42)
    X = rng.uniform(0, 1, size=(20, 3))
    y = 500 * X[:, 0] + 50 * X[:, 1] + rng.uniform(0, 10, 20)
    return pd.DataFrame({'degdays': y, 'taxonA': X[:, 0], 'taxonB': X[:, 1], 'taxonC': X[:, 2]})

def make_config(tmp_path, tree_counts=(100,), split_var_counts=(2,), transforms=('identity',), **outputs):
    return {
        'cross_validation': {'held_out_fraction': 0.2, 'num_replicates': 5, 'seed': 42},
        'hyperparameters': {
            'candidate_tree_counts': list(tree_counts),
            'candidate_split_var_counts': list(split_var_counts),
            'response_transforms': list(transforms),
        },
        'model': {'name': 'RandomForestRegressor', 'params': {}},
        'execution': {'n_jobs': 1, 'progress_every': 0},
        '_internal_seeds': {'split': 42, 'model': 2042},
        'outputs': {'base_results_dir': str(tmp_path), **outputs},
    }

class OracleForest:
    """Stand-in learner that predicts the first predictor column verbatim."""
    def fit(self, X, y):
        return self

    def predict(self, X):
        return np.asarray(X)[:, 0]

class BrokenForest:
    def fit(self, X, y):
        raise RuntimeError("singular leaf")

def test_grid_order_varies_tree_count_fastest():
    grid = build_grid([10, 20, 30], [2, 4])
    assert [(g['tree_count'], g['split_var_count']) for g in grid] == [
        (10, 2), (20, 2), (30, 2), (10, 4), (20, 4), (30, 4)
    ]

def test_unit_seed_depends_only_on_unit_key():
    assert derive_unit_seed(7, 1, 2) == derive_unit_seed(7, 1, 2)
    assert derive_unit_seed(7, 1, 2) != derive_unit_seed(7, 2, 1)
    assert derive_unit_seed(None, 1, 2) is None

def test_end_to_end_single_combination(tmp_path, mock_logger, dataset):
    sweep = CrossValidationSweep(make_config(tmp_path), mock_logger)
    summary = sweep.execute(dataset, "run")

    assert sweep.state is SweepState.PERSISTED
    assert len(summary) == 1
    row = summary.iloc[0]
    assert row['tree_count'] == 100
    assert row['split_var_count'] == 2
    assert row['n_replicates'] == 5
    for col in ['cv_mse_mean', 'cv_err_frac_mean']:
        assert np.isfinite(row[col])
        assert row[col] >= 0
    assert all(split.validation_size == 4 for split in sweep.splits)

    out = tmp_path / "04_CrossValidationSweep"
    saved = pd.read_parquet(out / "cv_summary.parquet")
    assert len(saved) == 1
    best = json.loads((out / "best_configuration.json").read_text())
    assert best['tree_count'] == 100
    assert best['selection_metric'] == 'mse'

def test_sweep_is_reproducible(tmp_path, mock_logger, dataset):
    first = CrossValidationSweep(make_config(tmp_path / "a"), mock_logger).execute(dataset, "run")
    second = CrossValidationSweep(make_config(tmp_path / "b"), mock_logger).execute(dataset, "run")
    pd.testing.assert_frame_equal(first, second)

def test_one_row_per_combination_in_grid_order(tmp_path, mock_logger, dataset):
    config = make_config(tmp_path, tree_counts=(5, 10), split_var_counts=(1, 3))
    summary = CrossValidationSweep(config, mock_logger).execute(dataset, "run")
    assert list(summary['tree_count']) == [5, 10, 5, 10]
    assert list(summary['split_var_count']) == [1, 1, 3, 3]
    assert list(summary['combination_index']) == [0, 1, 2, 3]

def test_oracle_learner_metrics_follow_splits(tmp_path, mock_logger, dataset):
    """With a learner that returns the response itself, each transform's error is known exactly."""
    oracle = dataset.copy()
    oracle['taxonA'] = oracle['degdays']
    config = make_config(tmp_path, transforms=('identity', 'square_root'), save_replicate_metrics=True)

    with patch('modules.training_engine.forest_adapter.ModelFactory.create',
               side_effect=lambda name, params: OracleForest()):
        sweep = CrossValidationSweep(config, mock_logger)
        summary = sweep.execute(oracle, "run")

    row = summary.iloc[0]
    assert row['cv_mse_mean'] == 0.0
    assert row['cv_err_frac_mean'] == 0.0

    # Square-root fits return y in sqrt units, so the back-transformed prediction is y**2.
    y = oracle['degdays'].to_numpy()
    expected_mse = np.mean([np.mean((y[s.validation_indices] ** 2 - y[s.validation_indices]) ** 2)
                            for s in sweep.splits])
    assert row['cv_sqrt_orig_mse_mean'] == pytest.approx(expected_mse)

    per_replicate = pd.read_parquet(tmp_path / "04_CrossValidationSweep" / "replicate_metrics.parquet")
    assert len(per_replicate) == 5
    assert row['cv_sqrt_mse_mean'] == pytest.approx(per_replicate['sqrt_mse'].mean())

def test_transforms_share_splits(tmp_path, mock_logger, dataset):
    config = make_config(tmp_path, transforms=('identity', 'square_root'))
    sweep = CrossValidationSweep(config, mock_logger)
    sweep.prepare(dataset)
    units = sweep.build_units()

    assert len(units) == 5 * 2
    by_key = {}
    for u in units:
        by_key.setdefault((u.replicate_index, u.combination_index), set()).add(u.transform)
        assert u.random_state == derive_unit_seed(2042, u.replicate_index, u.combination_index)
    assert all(t == {ResponseTransform.IDENTITY, ResponseTransform.SQUARE_ROOT} for t in by_key.values())

def test_precomputed_splits_are_used(tmp_path, mock_logger, dataset):
    splits = generate_splits(20, 0.2, 5, seed=123)
    sweep = CrossValidationSweep(make_config(tmp_path), mock_logger)
    used = sweep.prepare(dataset, splits)
    for a, b in zip(used, splits):
        np.testing.assert_array_equal(a.validation_indices, b.validation_indices)

def test_wrong_number_of_splits_rejected(tmp_path, mock_logger, dataset):
    splits = generate_splits(20, 0.2, 3, seed=1)
    sweep = CrossValidationSweep(make_config(tmp_path), mock_logger)
    with pytest.raises(ConfigurationError, match="Expected 5 splits"):
        sweep.prepare(dataset, splits)

def test_failed_unit_aborts_without_output(tmp_path, mock_logger, dataset):
    with patch('modules.training_engine.forest_adapter.ModelFactory.create',
               side_effect=lambda name, params: BrokenForest()):
        sweep = CrossValidationSweep(make_config(tmp_path), mock_logger)
        with pytest.raises(FitError) as exc:
            sweep.execute(dataset, "run")

    assert exc.value.replicate_index == 0
    assert exc.value.combination_index == 0
    assert "singular leaf" in str(exc.value)
    assert not (tmp_path / "04_CrossValidationSweep" / "cv_summary.parquet").exists()
    assert sweep.summary is None

def test_split_var_count_above_predictors(tmp_path, mock_logger, dataset):
    sweep = CrossValidationSweep(make_config(tmp_path, split_var_counts=(2, 4)), mock_logger)
    with pytest.raises(ConfigurationError, match=r"\[4\]"):
        sweep.prepare(dataset)
    assert sweep.state is SweepState.CONFIGURED
    assert sweep.splits == []

def test_steps_must_run_in_order(tmp_path, mock_logger, dataset):
    sweep = CrossValidationSweep(make_config(tmp_path), mock_logger)
    with pytest.raises(SweepStateError):
        sweep.fit_all()
    with pytest.raises(SweepStateError):
        sweep.aggregate()
    with pytest.raises(SweepStateError):
        sweep.persist()

    sweep.prepare(dataset)
    assert sweep.state is SweepState.SPLITS_GENERATED
    with pytest.raises(SweepStateError):
        sweep.prepare(dataset)
    with pytest.raises(SweepStateError):
        sweep.aggregate()

def test_completed_sweep_cannot_rerun(tmp_path, mock_logger, dataset):
    sweep = CrossValidationSweep(make_config(tmp_path, tree_counts=(5,)), mock_logger)
    sweep.execute(dataset, "run")
    with pytest.raises(SweepStateError):
        sweep.execute(dataset, "run")

def test_residuals_saved_when_requested(tmp_path, mock_logger, dataset):
    config = make_config(tmp_path, tree_counts=(5,), save_residuals=True)
    CrossValidationSweep(config, mock_logger).execute(dataset, "run")
    residuals = pd.read_parquet(tmp_path / "04_CrossValidationSweep" / "replicate_residuals.parquet")
    # 5 replicates x 4 validation rows
    assert len(residuals) == 20
    np.testing.assert_allclose(residuals['residual'], residuals['actual'] - residuals['predicted'])

def test_invalid_selection_metric(tmp_path, mock_logger):
    config = make_config(tmp_path)
    config['final_model'] = {'selection_metric': 'sqrt_mse'}
    with pytest.raises(ConfigurationError, match="selection_metric"):
        CrossValidationSweep(config, mock_logger)

def test_default_selection_metric_without_identity(tmp_path, mock_logger):
    sweep = CrossValidationSweep(make_config(tmp_path, transforms=('square_root',)), mock_logger)
    assert sweep.selection_metric == 'sqrt_orig_mse'

def test_square_root_final_model_ranks_in_square_root_units(tmp_path, mock_logger):
    config = make_config(tmp_path, transforms=('identity', 'square_root'))
    config['final_model'] = {'response_transform': 'square_root'}
    sweep = CrossValidationSweep(config, mock_logger)
    assert sweep.selection_metric == 'sqrt_orig_mse'

def test_square_root_final_model_falls_back_when_not_swept(tmp_path, mock_logger):
    config = make_config(tmp_path, transforms=('identity',))
    config['final_model'] = {'response_transform': 'square_root'}
    assert CrossValidationSweep(config, mock_logger).selection_metric == 'mse'

def test_explicit_selection_metric_wins(tmp_path, mock_logger):
    config = make_config(tmp_path, transforms=('identity', 'square_root'))
    config['final_model'] = {'response_transform': 'square_root', 'selection_metric': 'err_frac'}
    assert CrossValidationSweep(config, mock_logger).selection_metric == 'err_frac'

def test_empty_validation_fraction_stops_before_splits_and_fits(tmp_path, mock_logger, dataset):
    config = make_config(tmp_path)
    # round(0.01 * 20) == 0
    config['cross_validation']['held_out_fraction'] = 0.01
    with patch('modules.training_engine.forest_adapter.ModelFactory.create') as mock_create:
        sweep = CrossValidationSweep(config, mock_logger)
        with pytest.raises(ConfigurationError, match="empty validation"):
            sweep.execute(dataset, "run")
        mock_create.assert_not_called()

    assert sweep.state is SweepState.CONFIGURED
    assert sweep.splits == []
    assert sweep.unit_results == {}
    assert not (tmp_path / "04_CrossValidationSweep" / "cv_summary.parquet").exists()
