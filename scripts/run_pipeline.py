#!/usr/bin/env python3
"""
Calibrated Photometric Stereo Pipeline

This script runs the complete photometric stereo pipeline from a YAML
configuration (mask, images and their calibrated light sources) to surface
albedo, surface normal and reprojection error images.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional, Union

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from cps import config as cps_config, evaluate, pipeline
from cps.errors import CpsError


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")


def run_pipeline(
    config_path: str,
    output_dir: Optional[str] = None,
    pinv_mode: Optional[Union[int, str]] = None,
    dtype: Optional[str] = None,
    summary: Optional[bool] = None
) -> Dict:
    """Run the complete photometric stereo pipeline.

    Args:
        config_path: Path to configuration file
        output_dir: Output directory, overriding the configuration
        pinv_mode: Pseudoinverse algorithm, overriding the configuration
        dtype: Working precision, overriding the configuration
        summary: Whether to save the summary figure, overriding the configuration

    Returns:
        Dictionary of reconstruction metrics
    """
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    # Load configuration and apply command-line overrides
    config = cps_config.load_config(config_path).with_overrides(
        output_dir=output_dir,
        pinv_mode=pinv_mode,
        dtype=dtype,
        summary_figure=summary,
    )
    os.makedirs(config.output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(config.output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    try:
        cps_config.describe_config(config)

        metrics = evaluate.ReconstructionMetrics()
        result = pipeline.run_reconstruction(config, metrics)

        with evaluate.Timer("Save Results") as timer:
            metrics.update("runtime_s", pipeline_timer.elapsed)
            metrics_dict = metrics.to_dict()
            metrics_dict["datetime"] = datetime.datetime.now().isoformat()

            pipeline.save_results(config.output_dir, result, config, metrics_dict)
            metrics.update_stage_timing("save_results", timer.elapsed)

        logger.info("\n" + metrics.summary())
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()

    return metrics.to_dict()


def main(argv=None):
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Calibrated Photometric Stereo Pipeline")
    parser.add_argument(
        "config_path",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default=None,
        help="Path to output directory (overrides the configuration)"
    )
    parser.add_argument(
        "--pinv-mode", "-p", dest="pinv_mode", default=None,
        choices=["svd_full", "normal", "svd_thin", "0", "1", "2"],
        help="Pseudoinverse algorithm"
    )
    parser.add_argument(
        "--dtype", "-d", dest="dtype", default=None,
        choices=["float32", "float64"],
        help="Working floating point precision"
    )
    parser.add_argument(
        "--summary", "-s", dest="summary", action="store_true", default=None,
        help="Save a summary figure of the results"
    )
    parser.add_argument(
        "--verbose", "-v", dest="verbose", action="store_true",
        help="Log matrix contents and solver details"
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    pinv_mode = int(args.pinv_mode) if args.pinv_mode and args.pinv_mode.isdigit() else args.pinv_mode

    # Run pipeline
    try:
        run_pipeline(
            args.config_path,
            args.output_dir,
            pinv_mode,
            args.dtype,
            args.summary
        )
    except CpsError as e:
        logger.error(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
