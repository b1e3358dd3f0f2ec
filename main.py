#!/usr/bin/env python
"""
Degree-Day Random Forest Cross-Validation - Main Entry Point
Orchestrates data loading, repeated hold-out splitting, the hyperparameter
sweep, and the final model fit.
"""
import sys
import logging
import argparse
import traceback
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from modules.config_manager import ConfigurationManager
from modules.logging_config import LoggingConfigurator
from modules.data_manager import DataManager
from modules.split_engine import ReplicateSplitEngine
from modules.hpo_search_engine import CrossValidationSweep
from modules.training_engine import TrainingEngine
from utils.exceptions import DegreeDayMLException


def parse_arguments(argv=None):
    """
    Parse command-line arguments for configurable pipeline execution.

    Returns:
        argparse.Namespace: Parsed command-line arguments.
    """
    parser = argparse.ArgumentParser(
        description="Random forest cross-validation sweep for accumulated degree days",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config/config.json",
        help="Path to the configuration JSON file"
    )

    parser.add_argument(
        "--schema",
        type=str,
        default="config/schema.json",
        help="Path to the configuration JSON schema"
    )

    parser.add_argument(
        "--run-id",
        type=str,
        default=None,
        help="Optional run identifier (defaults to timestamp if not provided)"
    )

    parser.add_argument(
        "--skip-final-model",
        action="store_true",
        help="Run the cross-validation sweep only"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and setup without running the pipeline"
    )

    return parser.parse_args(argv)


def setup_run_directory(config: dict, run_id: str, logger: logging.Logger) -> Path:
    """
    Create the run directory: <base_results_dir>_<run_id>.

    Returns:
        Path of the run directory.
    """
    base_results_dir = config.get('outputs', {}).get('base_results_dir', 'results')
    run_dir = Path(f"{base_results_dir}_{run_id}").absolute()
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Created run directory: {run_dir}")
    return run_dir


def main(argv=None):
    """
    Main pipeline orchestration function.

    Returns:
        int: Exit code (0 for success, 1 for errors, 130 when interrupted)
    """
    logger = None

    try:
        args = parse_arguments(argv)

        print("\n" + "=" * 80)
        print("    DEGREE-DAY RANDOM FOREST CROSS-VALIDATION SWEEP")
        print("=" * 80 + "\n")

        # ---------------------------------------------------------------
        # PHASE 0: INITIALIZATION & VALIDATION
        # ---------------------------------------------------------------
        config_manager = ConfigurationManager(config_path=args.config, schema_path=args.schema)
        config = config_manager.load_and_validate()

        if args.verbose:
            config.setdefault('logging', {})['level'] = 'DEBUG'

        logging_configurator = LoggingConfigurator(config)
        logging_configurator.setup()
        logger = logging_configurator.get_logger('pipeline')

        logger.info("Pipeline initialization started")
        logger.info(f"Configuration loaded from: {args.config}")

        config_manager.run_id = args.run_id
        run_id = config_manager.generate_run_id()
        run_dir = setup_run_directory(config, run_id, logger)
        config['outputs']['base_results_dir'] = str(run_dir)
        config_manager.save_artifacts(str(run_dir))

        logger.info(f"Run ID: {run_id}")
        logger.info(f"Seeds: {config['_internal_seeds']}")

        if args.dry_run:
            logger.info("Dry run mode: validation complete. Exiting without running pipeline.")
            print("\n[SUCCESS] Configuration validated successfully.")
            return 0

        # ---------------------------------------------------------------
        # PHASE 1: DATA INGESTION & SPLITTING
        # ---------------------------------------------------------------
        logger.info("=" * 60)
        logger.info("PHASE 1: DATA INGESTION & SPLITTING")
        logger.info("=" * 60)

        dataset = DataManager(config, logger).execute(run_id)

        run_final_model = not args.skip_final_model and config.get('final_model', {}).get('enabled', True)
        n_predictors = dataset.shape[1] - 1

        sweep = CrossValidationSweep(config, logger)
        # Fail on impossible hyperparameters before any split is drawn
        sweep.validate_grid(n_predictors)
        training_engine = None
        if run_final_model:
            training_engine = TrainingEngine(config, logger)
            training_engine.validate(n_predictors)

        splits = ReplicateSplitEngine(config, logger).execute(dataset, run_id)

        # ---------------------------------------------------------------
        # PHASE 2: CROSS-VALIDATION SWEEP
        # ---------------------------------------------------------------
        logger.info("=" * 60)
        logger.info("PHASE 2: CROSS-VALIDATION SWEEP")
        logger.info("=" * 60)

        summary = sweep.execute(dataset, run_id, splits=splits)
        logger.info(f"Summary table: {len(summary)} rows")

        # ---------------------------------------------------------------
        # PHASE 3: FINAL MODEL
        # ---------------------------------------------------------------
        if training_engine is None:
            logger.info("PHASE 3: FINAL MODEL SKIPPED")
        else:
            logger.info("=" * 60)
            logger.info("PHASE 3: FINAL MODEL")
            logger.info("=" * 60)
            training_engine.execute(dataset, sweep.best_configuration, run_id)

        logger.info("-" * 60)
        logger.info("PIPELINE COMPLETED SUCCESSFULLY")
        logger.info(f"Output Directory: {run_dir}")
        logger.info("-" * 60)

        print(f"\n[SUCCESS] Pipeline completed. Results saved to: {run_dir}")
        return 0

    except DegreeDayMLException as e:
        msg = f"Pipeline Error: {str(e)}"
        print(f"\n[ERROR] {msg}")
        if logger:
            logger.critical(msg, exc_info=True)
        else:
            traceback.print_exc()
        return 1

    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Pipeline interrupted by user.")
        if logger:
            logger.warning("Pipeline interrupted by user (Ctrl+C)")
        return 130

    except Exception as e:
        msg = f"Unexpected Error: {str(e)}"
        print(f"\n[CRITICAL] {msg}")
        if logger:
            logger.critical(msg, exc_info=True)
        else:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
