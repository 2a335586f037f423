"""Evaluation metrics for photometric stereo.

This module implements quality metrics for a reconstruction run, such as
the reprojection RMSE, the conditioning of the light source matrix and
counts of degenerate pixels, together with a timing utility.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Union

import numpy as np

from cps import linalg

logger = logging.getLogger(__name__)


def residual_rmse(Idiff: np.ndarray) -> float:
    """Root mean square of the reprojection residual (intensity units)."""
    Idiff = np.asarray(Idiff, dtype=np.float64)
    if Idiff.size == 0:
        logger.warning("Empty residual provided for RMSE calculation")
        return float("inf")
    return float(np.sqrt(np.mean(Idiff ** 2)))


def light_matrix_condition(L: np.ndarray) -> float:
    """Condition number of the light source matrix (inf if rank deficient)."""
    return linalg.condition_number(L)


class Timer:
    """Stopwatch usable as a context manager."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        """Initialize timer.

        Args:
            name: Timer name for logging
            logger: Logger to use (if None, uses module logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None

    def start(self) -> None:
        """Start the timer."""
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time.

        Returns:
            Elapsed time in seconds
        """
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        """Start timing when entering context."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop timing when exiting context."""
        self.stop()

    @property
    def elapsed(self) -> float:
        """Get elapsed time, frozen once the timer has been stopped.

        Returns:
            Elapsed time in seconds
        """
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class ReconstructionMetrics:
    """Class for calculating and storing reconstruction metrics."""

    def __init__(self):
        """Initialize metrics container."""
        self.metrics = {
            "n_images": 0,
            "n_pixels": 0,
            "color": 0,
            "intensity_scale": None,
            "n_degenerate_rows": 0,
            "n_undefined_normals": 0,
            "light_rank": None,
            "light_condition": None,
            "rmse_reprojection": None,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict]) -> None:
        """Update a specific metric.

        Args:
            metric_name: Name of the metric to update
            value: New value for the metric
        """
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        """Update timing for a specific pipeline stage.

        Args:
            stage_name: Name of the pipeline stage
            time_s: Time in seconds
        """
        self.metrics["stage_timings"][stage_name] = time_s

    def compute_from_result(self, result) -> None:
        """Compute metrics for a finished reconstruction.

        Args:
            result: ``ReconstructionResult`` of a pipeline run
        """
        self.metrics["n_images"] = int(result.L.shape[1])
        self.metrics["n_pixels"] = result.selection.n_pixels
        self.metrics["color"] = result.color
        self.metrics["intensity_scale"] = float(result.intensity_scale)

        # Rows of S forced to zero by the degeneracy policy
        self.metrics["n_degenerate_rows"] = int(np.sum(~np.any(result.S != 0, axis=1)))
        self.metrics["n_undefined_normals"] = int(np.sum(~np.any(result.N != 0, axis=1)))

        self.metrics["light_rank"] = linalg.numerical_rank(result.L)
        self.metrics["light_condition"] = light_matrix_condition(result.L)
        self.metrics["rmse_reprojection"] = residual_rmse(result.Idiff)

    def to_dict(self) -> Dict:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metrics, with its own copy of the stage timings
        """
        metrics = dict(self.metrics)
        metrics["stage_timings"] = dict(self.metrics["stage_timings"])
        return metrics

    def summary(self) -> str:
        """Generate a human-readable summary of metrics.

        Returns:
            Multi-line summary string
        """
        lines = [
            "Reconstruction Metrics:",
            f"  Images: {self.metrics['n_images']}",
            f"  Pixels: {self.metrics['n_pixels']} x {self.metrics['color']} channel(s)",
            f"  Intensity scale: {self.metrics['intensity_scale']}",
            f"  Degenerate rows: {self.metrics['n_degenerate_rows']}",
            f"  Undefined normals: {self.metrics['n_undefined_normals']}",
        ]

        if self.metrics["light_rank"] is not None:
            lines.append(
                f"  Light matrix: rank {self.metrics['light_rank']}, "
                f"condition {self.metrics['light_condition']:.2f}"
            )

        if self.metrics["rmse_reprojection"] is not None:
            lines.append(f"  Reprojection RMSE: {self.metrics['rmse_reprojection']:.4f}")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
