# utils/constants.py

# --- Top-Level Result Directories ---
# Sequentially numbered for proper sorting

CONFIG_DIR = "01_RunConfiguration"              # Run config, metadata, seeds
DATA_INTEGRITY_DIR = "02_DataQualityChecks"     # Validated dataset, column stats
REPLICATE_SPLITS_DIR = "03_ReplicateSplits"     # Train/validation indices per replicate
CV_SWEEP_DIR = "04_CrossValidationSweep"        # Aggregated and per-replicate CV metrics
FINAL_MODEL_DIR = "05_FinalModel"               # Forest fit on all rows

# --- File Names ---
CONFIG_USED_FILE = "config_used.json"
CONFIG_HASH_FILE = "config_hash.txt"
RUN_METADATA_FILE = "run_metadata.json"
VALIDATED_DATA_FILE = "validated_data.parquet"
COLUMN_STATS_FILE = "column_stats.parquet"
SPLITS_FILE = "replicate_splits.parquet"
CV_SUMMARY_FILE = "cv_summary.parquet"
REPLICATE_METRICS_FILE = "replicate_metrics.parquet"
REPLICATE_RESIDUALS_FILE = "replicate_residuals.parquet"
BEST_CONFIGURATION_FILE = "best_configuration.json"
FINAL_MODEL_FILE = "final_model.pkl"
TRAINING_METADATA_FILE = "training_metadata.json"
VARIABLE_IMPORTANCE_FILE = "variable_importance.parquet"
OOB_RESIDUALS_FILE = "oob_residuals.parquet"
FIT_STATISTICS_FILE = "fit_statistics.json"

# --- Hyperparameter Names (grid keys) ---
TREE_COUNT = "tree_count"
SPLIT_VAR_COUNT = "split_var_count"

# --- Response Transform Names ---
TRANSFORM_IDENTITY = "identity"
TRANSFORM_SQUARE_ROOT = "square_root"

# --- Split Table Roles ---
ROLE_TRAIN = "train"
ROLE_VALIDATION = "validation"
