import pandas as pd
import numpy as np
import joblib
import logging
import json
import time
from typing import Any, Dict, Optional

from modules.base.base_engine import BaseEngine
from modules.evaluation_engine import fit_statistics
from modules.model_factory import ResponseTransform
from modules.training_engine.forest_adapter import ForestAdapter
from utils.error_handling import handle_engine_errors
from utils.exceptions import ConfigurationError, DegreeDayMLException, FitError
from utils.file_io import save_dataframe
from utils.json_encoding import NumpyEncoder
from utils import constants

class TrainingEngine(BaseEngine):
    """
    Fits the final forest on every observation with the chosen combination.

    Out-of-bag predictions stand in for held-out data: they give the
    residual table and the RMSE / explained-fraction summary, in fitted units
    and, for square-root fits, projected back to degree days.
    """

    def __init__(self, config: dict, logger: logging.Logger, adapter: Optional[ForestAdapter] = None):
        super().__init__(config, logger)
        self.final_cfg = config.get('final_model', {})
        model_cfg = config.get('model', {})
        self.adapter = adapter or ForestAdapter(
            model_name=model_cfg.get('name', 'RandomForestRegressor'),
            params=model_cfg.get('params', {}),
            n_jobs=config.get('execution', {}).get('n_jobs', -1),
        )
        self.model_seed = config.get('_internal_seeds', {}).get('model', model_cfg.get('seed'))

    def _get_engine_directory_name(self) -> str:
        return constants.FINAL_MODEL_DIR

    def validate(self, n_predictors: int) -> None:
        """Check explicit final_model hyperparameters against the dataset before any fitting starts."""
        tree_count = self.final_cfg.get(constants.TREE_COUNT)
        split_var_count = self.final_cfg.get(constants.SPLIT_VAR_COUNT)
        if tree_count is None and split_var_count is None:
            return
        ForestAdapter.check_hyperparameters(
            tree_count if tree_count is not None else 1,
            split_var_count if split_var_count is not None else 1,
            n_predictors,
        )

    def resolve_combination(self, best_configuration: Optional[Dict[str, Any]]) -> Dict[str, int]:
        """Explicit final_model values win; otherwise fall back to the sweep's best combination."""
        best = best_configuration or {}
        combo = {}
        for key in [constants.TREE_COUNT, constants.SPLIT_VAR_COUNT]:
            value = self.final_cfg.get(key)
            if value is None:
                value = best.get(key)
            if value is None:
                raise ConfigurationError(
                    f"final_model.{key} is not set and the sweep selected no best combination."
                )
            combo[key] = int(value)
        return combo

    @handle_engine_errors("Training")
    def execute(self, df: pd.DataFrame, best_configuration: Optional[Dict[str, Any]], run_id: str) -> Dict[str, Any]:
        """
        Train the final model on the full dataset.

        Args:
            df: Response in the first column, predictors in the rest.
            best_configuration: Output of the sweep (may be None when the
                combination is fixed in final_model).
            run_id: Run identifier.

        Returns:
            Dict with the combination, transform, fit statistics, the
            importance table and the fitted estimator.
        """
        self.logger.info("Starting Final Model Training...")

        combo = self.resolve_combination(best_configuration)
        transform = ResponseTransform.parse(self.final_cfg.get('response_transform', constants.TRANSFORM_IDENTITY))
        feature_names = [str(c) for c in df.columns[1:]]
        y = df.iloc[:, 0].to_numpy(dtype=float)
        X = df.iloc[:, 1:].to_numpy(dtype=float)

        self.logger.info(
            f"Training on {len(X)} samples with {len(feature_names)} features: "
            f"tree_count={combo[constants.TREE_COUNT]}, split_var_count={combo[constants.SPLIT_VAR_COUNT]}, "
            f"transform={transform.value}"
        )

        start_time = time.time()
        try:
            fitted = self.adapter.fit(
                X, y,
                tree_count=combo[constants.TREE_COUNT],
                split_var_count=combo[constants.SPLIT_VAR_COUNT],
                transform=transform,
                random_state=self.model_seed,
                oob_score=True,
            )
        except DegreeDayMLException:
            raise
        except Exception as e:
            raise FitError(f"Failed to train final model: {e}") from e
        duration = time.time() - start_time
        self.logger.info(f"Training completed in {duration:.2f} seconds.")

        oob_pred = np.asarray(fitted.estimator.oob_prediction_, dtype=float)
        stats = fit_statistics(y, oob_pred, transform)
        self.logger.info(f"Out-of-bag fit statistics: {stats}")

        importance = pd.DataFrame({
            'feature': feature_names,
            'importance': fitted.estimator.feature_importances_,
        }).sort_values('importance', ascending=False, ignore_index=True)
        importance['rank'] = np.arange(1, len(importance) + 1)

        oob_residuals = self._oob_residuals(y, oob_pred, transform)
        self._save_artifacts(fitted, combo, transform, feature_names, X.shape, duration,
                             stats, importance, oob_residuals)

        return {
            'combination': combo,
            'transform': transform.value,
            'fit_statistics': stats,
            'variable_importance': importance,
            'model': fitted,
        }

    @staticmethod
    def _oob_residuals(y: np.ndarray, oob_pred: np.ndarray, transform: ResponseTransform) -> pd.DataFrame:
        table = pd.DataFrame({
            'row_index': np.arange(len(y)),
            'actual': transform.forward(y),
            'predicted': oob_pred,
        })
        table['residual'] = table['actual'] - table['predicted']
        if transform is ResponseTransform.SQUARE_ROOT:
            table['orig_actual'] = y
            table['orig_predicted'] = transform.inverse(oob_pred)
            table['orig_residual'] = table['orig_actual'] - table['orig_predicted']
        return table

    def _save_artifacts(self, fitted, combo, transform, feature_names, shape, duration,
                        stats, importance, oob_residuals) -> None:
        outputs = self.config.get('outputs', {})
        excel_copy = outputs.get('save_excel_copy', False)
        csv_copy = outputs.get('save_csv_copy', False)

        save_dataframe(importance, self.output_dir / constants.VARIABLE_IMPORTANCE_FILE,
                       excel_copy=excel_copy, csv_copy=csv_copy, index=False)
        save_dataframe(oob_residuals, self.output_dir / constants.OOB_RESIDUALS_FILE,
                       csv_copy=csv_copy, index=False)

        with open(self.output_dir / constants.FIT_STATISTICS_FILE, 'w') as f:
            json.dump(stats, f, indent=2, cls=NumpyEncoder)

        if outputs.get('save_models', True):
            model_path = self.output_dir / constants.FINAL_MODEL_FILE
            joblib.dump(fitted.estimator, model_path)
            self.logger.info(f"Model saved to {model_path}")

            metadata = {
                'model': self.adapter.model_name,
                'params': self.adapter.params,
                'response_transform': transform.value,
                **combo,
                'features': feature_names,
                'input_shape': list(shape),
                'training_time_sec': duration,
                'timestamp': time.strftime("%Y-%m-%d %H:%M:%S")
            }
            with open(self.output_dir / constants.TRAINING_METADATA_FILE, 'w') as f:
                json.dump(metadata, f, indent=2, cls=NumpyEncoder)
