from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from modules.model_factory import ModelFactory, ResponseTransform
from utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class FittedForest:
    """A trained forest together with the units and hyperparameters it was fitted with."""
    estimator: Any
    transform: ResponseTransform
    tree_count: int
    split_var_count: int


class ForestAdapter:
    """
    Thin fit/predict wrapper around a scikit-learn forest regressor.

    `tree_count` maps to n_estimators and `split_var_count` to max_features
    (the number of predictors considered at each split).
    """

    def __init__(self, model_name: str = 'RandomForestRegressor',
                 params: Optional[Dict[str, Any]] = None, n_jobs: int = 1):
        self.model_name = model_name
        self.params = dict(params or {})
        self.n_jobs = n_jobs

    @staticmethod
    def check_hyperparameters(tree_count: int, split_var_count: int, n_predictors: int) -> None:
        if tree_count < 1:
            raise ConfigurationError(f"tree_count must be >= 1, got {tree_count}")
        if split_var_count < 1:
            raise ConfigurationError(f"split_var_count must be >= 1, got {split_var_count}")
        if split_var_count > n_predictors:
            raise ConfigurationError(
                f"split_var_count ({split_var_count}) exceeds the number of predictors ({n_predictors})"
            )

    def fit(self, X, y, tree_count: int, split_var_count: int,
            transform: ResponseTransform = ResponseTransform.IDENTITY,
            random_state: Optional[int] = None, **extra_params) -> FittedForest:
        """
        Train `tree_count` trees, each on a bootstrap resample of (X, y), in
        the units given by `transform`.
        """
        X = np.asarray(X, dtype=float)
        self.check_hyperparameters(tree_count, split_var_count, X.shape[1])

        params = {
            **self.params,
            **extra_params,
            'n_estimators': int(tree_count),
            'max_features': int(split_var_count),
            'random_state': random_state,
            'n_jobs': self.n_jobs,
        }
        estimator = ModelFactory.create(self.model_name, params)
        estimator.fit(X, transform.forward(y))
        return FittedForest(
            estimator=estimator,
            transform=transform,
            tree_count=int(tree_count),
            split_var_count=int(split_var_count),
        )

    def predict(self, fitted: FittedForest, X) -> np.ndarray:
        """Predictions in the fitted units (square-root units for SQUARE_ROOT)."""
        return np.asarray(fitted.estimator.predict(np.asarray(X, dtype=float)), dtype=float)
