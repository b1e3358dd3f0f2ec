import pandas as pd
import numpy as np
import logging
from pathlib import Path
from typing import Optional, List

from utils.exceptions import DataShapeError
from utils.error_handling import handle_engine_errors
from utils.file_io import save_dataframe, read_dataframe
from utils import constants

class DataManager:
    """
    Manages loading, validation, and preparation of the input dataset.

    The returned frame holds the response in its first column and the
    predictors (taxa abundance fractions) in the remaining columns. It is
    loaded once per run and treated as immutable by every downstream engine.
    """

    SUPPORTED_EXTENSIONS = {'.csv', '.parquet', '.xlsx'}

    def __init__(self, config: dict, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.data_cfg = config['data']
        self.response_column = self.data_cfg['response_column']
        self.data: Optional[pd.DataFrame] = None
        self.base_dir = Path(self.config.get('outputs', {}).get('base_results_dir', 'results'))

    @handle_engine_errors("Data Management")
    def execute(self, run_id: str) -> pd.DataFrame:
        """
        Execute complete data loading and validation workflow.

        Args:
            run_id: Unique identifier for the run.

        Returns:
            pd.DataFrame: Response column followed by predictor columns.
        """
        self.logger.info("Starting Data Manager execution...")

        output_dir = self.base_dir / constants.DATA_INTEGRITY_DIR
        output_dir.mkdir(parents=True, exist_ok=True)

        raw = self.load_data()

        if self.data_cfg.get('layout', 'wide') == 'long':
            wide = self.pivot_long_format(raw)
        else:
            wide = raw

        self.data = self.select_columns(wide)
        self.data = self.apply_response_cutoff(self.data)
        self.validate_values(self.data)
        stats_df = self.column_statistics(self.data)

        outputs = self.config.get('outputs', {})
        excel_copy = outputs.get('save_excel_copy', False)
        csv_copy = outputs.get('save_csv_copy', False)

        save_path = output_dir / constants.VALIDATED_DATA_FILE
        save_dataframe(self.data, save_path, excel_copy=excel_copy, csv_copy=csv_copy, index=False)
        save_dataframe(stats_df, output_dir / constants.COLUMN_STATS_FILE, excel_copy=excel_copy, index=False)
        self.logger.info(f"Saved validated data to {save_path}")

        self.logger.info(
            f"Dataset ready: {len(self.data)} observations, "
            f"{self.data.shape[1] - 1} predictors, response '{self.response_column}'"
        )
        return self.data

    def load_data(self) -> pd.DataFrame:
        """Load the raw table from the configured path (CSV, Parquet or Excel)."""
        file_path = Path(self.data_cfg['file_path'])

        if not file_path.exists():
            raise DataShapeError(f"Data file not found: {file_path}")

        ext = file_path.suffix.lower()
        if ext not in self.SUPPORTED_EXTENSIONS:
            raise DataShapeError(f"Unsupported file extension: {ext}")

        self.logger.info(f"Loading data from {file_path}")
        raw = read_dataframe(file_path)

        if raw.empty:
            raise DataShapeError("Loaded dataframe is empty.")

        self.logger.info(f"Data loaded successfully. Shape: {raw.shape}")
        return raw

    def pivot_long_format(self, raw: pd.DataFrame) -> pd.DataFrame:
        """
        Turn tidy (subject, response, taxon, fraction) rows into one row per
        subject and time point with one column per taxon.

        Excluded taxa (the pooled 'Rare' group by default) are removed first.
        Taxa never observed for a subject/time point are filled with 0.0.
        """
        long_cfg = self.data_cfg.get('long_format', {})
        subject_col = long_cfg.get('subject_column', 'subj')
        taxon_col = long_cfg.get('taxon_column', 'taxa')
        value_col = long_cfg.get('value_column', 'fracBySubjDay')
        exclude = long_cfg.get('exclude_taxa', ['Rare'])

        required = [subject_col, self.response_column, taxon_col, value_col]
        missing = [c for c in required if c not in raw.columns]
        if missing:
            raise DataShapeError(f"Missing long-format columns in dataset: {missing}")

        tidy = raw.loc[~raw[taxon_col].isin(exclude), required]
        if tidy.empty:
            raise DataShapeError("No rows left after excluding taxa " + str(exclude))

        keys = [subject_col, self.response_column, taxon_col]
        dupes = tidy.duplicated(subset=keys)
        if dupes.any():
            raise DataShapeError(
                f"{int(dupes.sum())} duplicate (subject, response, taxon) rows; cannot pivot to wide format."
            )

        wide = tidy.pivot(index=[subject_col, self.response_column], columns=taxon_col, values=value_col)
        wide = wide.fillna(0.0).reset_index().drop(columns=[subject_col])
        wide.columns.name = None

        self.logger.info(
            f"Pivoted long format: {len(tidy)} rows -> {len(wide)} observations x "
            f"{wide.shape[1] - 1} taxa (excluded: {exclude})"
        )
        return wide

    def select_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Order columns as [response, predictors...] and reject missing ones."""
        if self.response_column not in df.columns:
            raise DataShapeError(f"Missing response column '{self.response_column}' in dataset.")

        predictors: Optional[List[str]] = self.data_cfg.get('predictor_columns')
        if predictors:
            missing = [c for c in predictors if c not in df.columns]
            if missing:
                raise DataShapeError(f"Missing predictor columns in dataset: {missing}")
        else:
            drop = set(self.data_cfg.get('drop_columns', [])) | {self.response_column}
            predictors = [c for c in df.columns if c not in drop]

        if not predictors:
            raise DataShapeError("No predictor columns remain after dropping configured columns.")

        non_numeric = [
            c for c in [self.response_column] + predictors
            if not pd.api.types.is_numeric_dtype(df[c])
        ]
        if non_numeric:
            raise DataShapeError(f"Non-numeric values in columns: {non_numeric}")

        return df[[self.response_column] + predictors].astype('float64').reset_index(drop=True)

    def apply_response_cutoff(self, df: pd.DataFrame) -> pd.DataFrame:
        """Keep only observations at or below data.max_response, when set."""
        cutoff = self.data_cfg.get('max_response')
        if cutoff is None:
            return df

        kept = df[df[self.response_column] <= cutoff].reset_index(drop=True)
        self.logger.info(f"Response cutoff {cutoff}: kept {len(kept)} of {len(df)} observations.")
        if kept.empty:
            raise DataShapeError(f"No observations with {self.response_column} <= {cutoff}.")
        return kept

    def validate_values(self, df: pd.DataFrame) -> None:
        """Reject NaN/inf anywhere and negative responses; warn on fractions outside [0, 1]."""
        values = df.to_numpy()
        bad = ~np.isfinite(values)
        if bad.any():
            bad_cols = df.columns[bad.any(axis=0)].tolist()
            raise DataShapeError(f"NaN or infinite values in columns: {bad_cols}")

        response = df[self.response_column]
        if (response < 0).any():
            raise DataShapeError(
                f"Response '{self.response_column}' has {int((response < 0).sum())} negative values."
            )

        predictors = df.drop(columns=[self.response_column])
        outside = ((predictors < 0) | (predictors > 1)).any()
        if outside.any():
            self.logger.warning(
                f"Predictor columns with values outside [0, 1]: {outside[outside].index.tolist()}"
            )

    def column_statistics(self, df: pd.DataFrame) -> pd.DataFrame:
        """Per-column summary saved next to the validated data."""
        return pd.DataFrame({
            'column': df.columns,
            'role': ['response'] + ['predictor'] * (df.shape[1] - 1),
            'min': df.min().to_numpy(),
            'max': df.max().to_numpy(),
            'mean': df.mean().to_numpy(),
            'nonzero_count': (df != 0).sum().to_numpy(),
        })
