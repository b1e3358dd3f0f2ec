import inspect
from typing import Dict, Any, List
from sklearn.ensemble import ExtraTreesRegressor, RandomForestRegressor

from utils.exceptions import ConfigurationError

class ModelFactory:
    """
    Factory for the bagged tree ensembles the sweep can fit.

    Every model is built with bootstrap resampling on, so each tree sees a
    bootstrap sample of the training rows and each split considers a random
    subset of `max_features` predictors.
    """

    FOREST_MODELS = {
        'RandomForestRegressor': RandomForestRegressor,
        'ExtraTreesRegressor': ExtraTreesRegressor,
    }

    @classmethod
    def create(cls, model_name: str, params: Dict[str, Any] = None) -> Any:
        """
        Create and return an instantiated forest regressor.
        """
        if params is None:
            params = {}

        if model_name not in cls.FOREST_MODELS:
            raise ConfigurationError(
                f"Unknown model name: {model_name}. Available: {cls.get_available_models()}"
            )

        model_class = cls.FOREST_MODELS[model_name]
        valid_params = cls._filter_params(model_class, params)
        valid_params['bootstrap'] = True
        return model_class(**valid_params)

    @classmethod
    def get_available_models(cls) -> List[str]:
        """Return list of all supported model names."""
        return list(cls.FOREST_MODELS.keys())

    @staticmethod
    def _filter_params(model_class, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Remove parameters from `params` that are not accepted by `model_class` constructor.
        """
        sig = inspect.signature(model_class.__init__)

        valid_keys = [
            p.name for p in sig.parameters.values()
            if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
        ]

        return {k: v for k, v in params.items() if k in valid_keys}
