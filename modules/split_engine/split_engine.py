"""
ReplicateSplitEngine for the degree-day cross-validation pipeline.

Draws the repeated hold-out splits used by every hyperparameter combination.
All splits are generated up front from a single seeded generator, so the
sequence depends only on (seed, dataset size, held-out fraction, replicate
count) and never on how the later fits are scheduled.
"""
import logging
from dataclasses import dataclass
from typing import List

import numpy as np
import pandas as pd

from modules.base.base_engine import BaseEngine
from utils.error_handling import handle_engine_errors
from utils.exceptions import ConfigurationError
from utils.file_io import save_dataframe
from utils import constants


@dataclass(frozen=True)
class ReplicateSplit:
    """Positional train/validation indices for one cross-validation replicate."""
    replicate_index: int
    train_indices: np.ndarray
    validation_indices: np.ndarray

    @property
    def train_size(self) -> int:
        return len(self.train_indices)

    @property
    def validation_size(self) -> int:
        return len(self.validation_indices)


def validation_size_for(n_rows: int, held_out_fraction: float) -> int:
    """
    Number of held-out rows, round(f * N), rejecting splits that would leave
    either side empty.
    """
    if not (0.0 < held_out_fraction < 1.0):
        raise ConfigurationError(
            f"held_out_fraction must be between 0 and 1 (exclusive), got {held_out_fraction}"
        )
    n_valid = int(round(held_out_fraction * n_rows))
    if n_valid == 0:
        raise ConfigurationError(
            f"held_out_fraction={held_out_fraction} with {n_rows} rows leaves an empty validation set."
        )
    if n_valid >= n_rows:
        raise ConfigurationError(
            f"held_out_fraction={held_out_fraction} with {n_rows} rows leaves an empty training set."
        )
    return n_valid


def generate_splits(n_rows: int, held_out_fraction: float, num_replicates: int, seed: int) -> List[ReplicateSplit]:
    """
    Produce `num_replicates` independent splits from one seeded generator.

    Validation rows are drawn uniformly without replacement; training rows
    are the complement. Both index arrays are sorted.
    """
    if num_replicates < 1:
        raise ConfigurationError(f"num_replicates must be >= 1, got {num_replicates}")
    n_valid = validation_size_for(n_rows, held_out_fraction)

    rng = np.random.default_rng(seed)
    all_rows = np.arange(n_rows)
    splits = []
    for r in range(num_replicates):
        held_out = np.sort(rng.choice(n_rows, size=n_valid, replace=False))
        train = np.setdiff1d(all_rows, held_out, assume_unique=True)
        splits.append(ReplicateSplit(replicate_index=r, train_indices=train, validation_indices=held_out))
    return splits


class ReplicateSplitEngine(BaseEngine):
    """
    Generates and optionally persists the repeated hold-out splits.
    """

    def __init__(self, config: dict, logger: logging.Logger):
        super().__init__(config, logger)
        cv_cfg = config['cross_validation']
        self.held_out_fraction = cv_cfg['held_out_fraction']
        self.num_replicates = cv_cfg['num_replicates']
        self.seed = config.get('_internal_seeds', {}).get('split', cv_cfg['seed'])

    def _get_engine_directory_name(self) -> str:
        return constants.REPLICATE_SPLITS_DIR

    def generate(self, n_rows: int) -> List[ReplicateSplit]:
        splits = generate_splits(n_rows, self.held_out_fraction, self.num_replicates, self.seed)
        self.logger.info(
            f"Generated {len(splits)} splits (seed={self.seed}): "
            f"train={splits[0].train_size}, validation={splits[0].validation_size} of {n_rows} rows"
        )
        return splits

    @handle_engine_errors("Replicate Splitting")
    def execute(self, df: pd.DataFrame, run_id: str) -> List[ReplicateSplit]:
        """
        Generate splits for the validated dataset.

        Returns:
            List of ReplicateSplit, one per replicate, in replicate order.
        """
        self.logger.info("Starting Replicate Split Engine execution...")
        splits = self.generate(len(df))

        if self.config.get('outputs', {}).get('save_splits', True):
            self._save_splits(splits)

        return splits

    def _save_splits(self, splits: List[ReplicateSplit]) -> None:
        """Persist as a long table: one row per (replicate, row_index)."""
        frames = []
        for split in splits:
            frames.append(pd.DataFrame({
                'replicate': split.replicate_index,
                'row_index': np.concatenate([split.train_indices, split.validation_indices]),
                'role': [constants.ROLE_TRAIN] * split.train_size
                        + [constants.ROLE_VALIDATION] * split.validation_size,
            }))
        table = pd.concat(frames, ignore_index=True)
        save_path = self.output_dir / constants.SPLITS_FILE
        save_dataframe(table, save_path, index=False)
        self.logger.info(f"Splits saved to {save_path}")
