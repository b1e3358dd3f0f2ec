import json
import os
import hashlib
import sys
import logging
import jsonschema
import joblib
import numpy as np
import pandas as pd
import sklearn
import psutil  # Required for memory awareness
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from sklearn.model_selection import ParameterGrid

from utils.exceptions import ConfigurationError
from utils import constants

class ConfigurationManager:
    """
    Manages system configuration loading, validation, and access.
    Acts as the single source of truth and safety guard for the pipeline.

    Validation happens in four passes:
    - Structural (JSON schema).
    - Logical (bounds on fractions, candidate lists, transforms).
    - Resources (grid size, total fit units, memory).
    - Normalization and seed propagation.
    """

    # Default Resource Limits (Safety Guardrails)
    DEFAULT_MAX_HPO_CONFIGS = 1000  # Prevent accidental combinatoric explosions
    DEFAULT_MAX_FIT_UNITS = 500000  # combinations x replicates x transforms

    TRANSFORM_ALIASES = {
        'identity': constants.TRANSFORM_IDENTITY,
        'square_root': constants.TRANSFORM_SQUARE_ROOT,
        'squareRoot': constants.TRANSFORM_SQUARE_ROOT,
        'sqrt': constants.TRANSFORM_SQUARE_ROOT,
    }

    def __init__(self, config_path: str = "config/config.json",
                 schema_path: str = "config/schema.json"):
        """
        Initialize the ConfigurationManager.

        Args:
            config_path (str): Path to the user configuration JSON.
            schema_path (str): Path to the JSON schema definition.
        """
        self.config_path = config_path
        self.schema_path = schema_path
        self.config: Dict[str, Any] = {}
        self.schema: Dict[str, Any] = {}
        self.run_id: Optional[str] = None
        self.logger = logging.getLogger("config_manager")

    def load_and_validate(self) -> Dict[str, Any]:
        """
        Main entry point. Loads config, validates schema/logic/resources,
        normalizes transforms, and propagates seeds.

        Returns:
            Dict[str, Any]: The fully validated and hydrated configuration.

        Raises:
            ConfigurationError: If any validation step fails.
        """
        self.config = self._load_json(self.config_path)
        self.schema = self._load_json(self.schema_path)

        self._validate_schema()
        self._normalize_transforms()
        self._validate_logic()
        self._validate_resources()
        self._propagate_seeds()

        return self.config

    def generate_run_id(self) -> str:
        """
        Generate or retrieve a unique run identifier based on timestamp.
        """
        if not self.run_id:
            self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.run_id

    def save_artifacts(self, output_dir: str) -> None:
        """
        Save configuration artifacts to the run directory for full reproducibility.

        Saves:
        1. config_used.json: The exact config object in memory.
        2. config_hash.txt: SHA256 hash for versioning.
        3. run_metadata.json: Environment details (Python version, Platform, etc.).
        """
        config_dir = Path(output_dir) / constants.CONFIG_DIR
        config_dir.mkdir(parents=True, exist_ok=True)

        with open(config_dir / constants.CONFIG_USED_FILE, 'w') as f:
            json.dump(self.config, f, indent=2)

        config_str = json.dumps(self.config, sort_keys=True)
        config_hash = hashlib.sha256(config_str.encode()).hexdigest()

        with open(config_dir / constants.CONFIG_HASH_FILE, 'w') as f:
            f.write(config_hash)

        metadata = {
            'run_id': self.run_id,
            'start_time': datetime.now().isoformat(),
            'python_version': sys.version,
            'platform': sys.platform,
            'config_hash': config_hash,
            'working_directory': os.getcwd(),
            'library_versions': {
                'numpy': np.__version__,
                'pandas': pd.__version__,
                'scikit-learn': sklearn.__version__,
                'joblib': joblib.__version__,
            },
        }

        with open(config_dir / constants.RUN_METADATA_FILE, 'w') as f:
            json.dump(metadata, f, indent=2)

    def _load_json(self, path: str) -> Dict[str, Any]:
        """Safely load a JSON file."""
        if not os.path.exists(path):
            raise ConfigurationError(f"File not found: {path}")
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {str(e)}")

    def _validate_schema(self) -> None:
        """Validate config structure against JSON schema."""
        try:
            jsonschema.validate(instance=self.config, schema=self.schema)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(f"Schema validation failed: {e.message}")

    def _normalize_transforms(self) -> None:
        """
        Accept a single transform name or a list of names and store the
        canonical list under hyperparameters.response_transforms.
        """
        hpo = self.config.setdefault('hyperparameters', {})
        raw = hpo.get('response_transforms', constants.TRANSFORM_IDENTITY)
        names = [raw] if isinstance(raw, str) else list(raw)
        if not names:
            raise ConfigurationError("response_transforms must name at least one transform.")

        normalized = []
        for name in names:
            if name not in self.TRANSFORM_ALIASES:
                raise ConfigurationError(
                    f"Unknown response transform '{name}'. "
                    f"Available: {sorted(set(self.TRANSFORM_ALIASES.values()))}"
                )
            canonical = self.TRANSFORM_ALIASES[name]
            if canonical not in normalized:
                normalized.append(canonical)
        hpo['response_transforms'] = normalized

        final_cfg = self.config.get('final_model', {})
        if 'response_transform' in final_cfg:
            name = final_cfg['response_transform']
            if name not in self.TRANSFORM_ALIASES:
                raise ConfigurationError(f"Unknown final_model.response_transform '{name}'.")
            final_cfg['response_transform'] = self.TRANSFORM_ALIASES[name]

    def _validate_logic(self) -> None:
        """Comprehensive logical validation."""
        # --- Data Section ---
        data = self.config.get('data', {})
        for key in ['file_path', 'response_column']:
            if not data.get(key):
                raise ConfigurationError(f"Data '{key}' must be specified and non-empty.")
        layout = data.get('layout', 'wide')
        if layout not in ('wide', 'long'):
            raise ConfigurationError(f"data.layout must be 'wide' or 'long', got {layout!r}")
        max_response = data.get('max_response')
        if max_response is not None and max_response < 0:
            raise ConfigurationError(f"data.max_response must be non-negative, got {max_response}")

        # --- Cross-Validation Section ---
        cv = self.config.get('cross_validation', {})
        fraction = cv.get('held_out_fraction', 0.2)
        if not (0.0 < fraction < 1.0):
            raise ConfigurationError(f"held_out_fraction must be between 0 and 1 (exclusive), got {fraction}")
        replicates = cv.get('num_replicates', 1)
        if replicates < 1:
            raise ConfigurationError(f"num_replicates must be >= 1, got {replicates}")
        if cv.get('seed', 0) < 0:
            raise ConfigurationError("cross_validation.seed must be non-negative.")

        # --- Hyperparameter Grid Section ---
        hpo = self.config.get('hyperparameters', {})
        for key in ['candidate_tree_counts', 'candidate_split_var_counts']:
            values = hpo.get(key)
            if not values:
                raise ConfigurationError(f"hyperparameters.{key} cannot be empty.")
            if any(v < 1 for v in values):
                raise ConfigurationError(f"hyperparameters.{key} must hold positive integers, got {values}")
            if len(set(values)) != len(values):
                raise ConfigurationError(f"hyperparameters.{key} contains duplicates: {values}")

        # --- Final Model Section ---
        final_cfg = self.config.get('final_model', {})
        for key in ['tree_count', 'split_var_count']:
            value = final_cfg.get(key)
            if value is not None and value < 1:
                raise ConfigurationError(f"final_model.{key} must be >= 1, got {value}")
        selection = final_cfg.get('selection_metric')
        if selection is not None and not selection:
            raise ConfigurationError("final_model.selection_metric must be non-empty when provided.")

        # --- Execution Section ---
        execution = self.config.get('execution', {})
        if 'n_jobs' in execution:
            n_jobs = execution['n_jobs']
            if n_jobs == 0 or n_jobs < -1:
                raise ConfigurationError(f"execution.n_jobs must be -1 (all cores) or a positive integer, got {n_jobs}")

    def _validate_resources(self) -> None:
        """
        Validate against system resources.
        Calculates total grid size and fit units and ensures they fit within safe limits.
        """
        resources = self.config.get('resources', {})
        hpo = self.config['hyperparameters']

        grid = ParameterGrid({
            constants.SPLIT_VAR_COUNT: hpo['candidate_split_var_counts'],
            constants.TREE_COUNT: hpo['candidate_tree_counts'],
        })
        total_configs = len(grid)

        max_configs = resources.get('max_hpo_configs', self.DEFAULT_MAX_HPO_CONFIGS)
        if total_configs > max_configs:
            raise ConfigurationError(
                f"HPO Grid Explosion Detected! Total configurations ({total_configs}) exceeds "
                f"safety limit ({max_configs}). Reduce grid search space or increase 'resources.max_hpo_configs'."
            )

        replicates = self.config.get('cross_validation', {}).get('num_replicates', 1)
        total_units = total_configs * replicates * len(hpo['response_transforms'])
        max_units = resources.get('max_fit_units', self.DEFAULT_MAX_FIT_UNITS)
        if total_units > max_units:
            raise ConfigurationError(
                f"Sweep would require {total_units} forest fits, exceeding the safety limit ({max_units}). "
                "Reduce num_replicates or the grid, or increase 'resources.max_fit_units'."
            )

        self.logger.info(
            f"HPO Grid Size validated: {total_configs} combinations, {total_units} fit units "
            f"(Limits: {max_configs} / {max_units})"
        )

        # Memory Limits Check
        system_ram_mb = int(psutil.virtual_memory().total / (1024 * 1024))
        # Default safety buffer: 80% of system RAM
        safe_ram_limit = int(system_ram_mb * 0.8)
        config_max_ram = resources.get('max_memory_mb', safe_ram_limit)

        if config_max_ram > system_ram_mb:
            self.logger.warning(
                f"Configured max_memory_mb ({config_max_ram}MB) exceeds physical system RAM ({system_ram_mb}MB). "
                "This may lead to instability."
            )

        self.config.setdefault('resources', {})['max_memory_mb'] = config_max_ram

    def _propagate_seeds(self) -> None:
        """
        Propagate the master seed to internal components.
        Only split generation draws from the split seed; forests get their own stream.
        """
        master_seed = self.config['cross_validation']['seed']
        model_seed = self.config.get('model', {}).get('seed')

        self.config['_internal_seeds'] = {
            'split': master_seed,
            'model': model_seed if model_seed is not None else master_seed + 2000,
        }
        self.logger.debug(f"Seeds propagated from master ({master_seed}): {self.config['_internal_seeds']}")
