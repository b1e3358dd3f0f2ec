import pytest
import numpy as np
from unittest.mock import patch, MagicMock

from modules.model_factory import ResponseTransform
from modules.training_engine import ForestAdapter, FittedForest
from utils.exceptions import ConfigurationError

@pytest.fixture
def regression_data():
    rng = np.random.default_rng(0)
    X = rng.uniform(0, 1, size=(40, 3))
    y = 100 * X[:, 0] + 10 * X[:, 1] + rng.normal(0, 1, 40) + 20
    return X, y

def test_fit_and_predict(regression_data):
    X, y = regression_data
    adapter = ForestAdapter(params={'min_samples_leaf': 1})
    fitted = adapter.fit(X, y, tree_count=25, split_var_count=2, random_state=1)

    assert isinstance(fitted, FittedForest)
    assert fitted.estimator.n_estimators == 25
    assert fitted.estimator.max_features == 2
    assert fitted.estimator.bootstrap is True
    preds = adapter.predict(fitted, X[:5])
    assert preds.shape == (5,)
    assert np.all(np.isfinite(preds))

def test_same_seed_same_predictions(regression_data):
    X, y = regression_data
    adapter = ForestAdapter()
    a = adapter.predict(adapter.fit(X, y, 20, 2, random_state=5), X)
    b = adapter.predict(adapter.fit(X, y, 20, 2, random_state=5), X)
    np.testing.assert_array_equal(a, b)

def test_square_root_fit_predicts_in_sqrt_units(regression_data):
    X, y = regression_data
    adapter = ForestAdapter()
    fitted = adapter.fit(X, y, 30, 3, transform=ResponseTransform.SQUARE_ROOT, random_state=0)
    preds = adapter.predict(fitted, X)

    assert fitted.transform is ResponseTransform.SQUARE_ROOT
    # forest predictions are averages of sqrt(y) leaf values
    assert preds.max() <= np.sqrt(y).max() + 1e-9
    assert preds.min() >= np.sqrt(y).min() - 1e-9

def test_sqrt_fit_sees_transformed_response(regression_data):
    X, y = regression_data
    estimator = MagicMock()
    with patch('modules.training_engine.forest_adapter.ModelFactory.create', return_value=estimator):
        ForestAdapter().fit(X, y, 10, 1, transform=ResponseTransform.SQUARE_ROOT)
    _, fitted_y = estimator.fit.call_args[0]
    np.testing.assert_allclose(fitted_y, np.sqrt(y))

def test_split_var_count_above_predictors_fails_before_fitting(regression_data):
    X, y = regression_data
    with patch('modules.training_engine.forest_adapter.ModelFactory.create') as mock_create:
        with pytest.raises(ConfigurationError, match="exceeds the number of predictors"):
            ForestAdapter().fit(X, y, tree_count=10, split_var_count=4)
        mock_create.assert_not_called()

@pytest.mark.parametrize("tree_count, split_var_count", [(0, 1), (10, 0)])
def test_non_positive_hyperparameters(regression_data, tree_count, split_var_count):
    X, y = regression_data
    with pytest.raises(ConfigurationError):
        ForestAdapter().fit(X, y, tree_count, split_var_count)

def test_params_passed_through_to_model(regression_data):
    X, y = regression_data
    estimator = MagicMock()
    with patch('modules.training_engine.forest_adapter.ModelFactory.create', return_value=estimator) as mock_create:
        ForestAdapter(params={'min_samples_leaf': 5}, n_jobs=2).fit(X, y, 50, 2, random_state=9)
    name, params = mock_create.call_args[0]
    assert name == 'RandomForestRegressor'
    assert params == {
        'min_samples_leaf': 5, 'n_estimators': 50, 'max_features': 2, 'random_state': 9, 'n_jobs': 2
    }
