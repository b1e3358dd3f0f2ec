"""
Training Engine Module
======================

Responsibility:
- Fit/predict adapter around scikit-learn forests (ForestAdapter).
- Final model fit on all observations with out-of-bag diagnostics.
- Variable importance and residual tables.
- Persistence of the trained model (.pkl) and training metadata (.json).
"""

from .forest_adapter import ForestAdapter, FittedForest
from .training_engine import TrainingEngine

__all__ = ['ForestAdapter', 'FittedForest', 'TrainingEngine']
