"""Calibrated photometric stereo pipeline.

The run proceeds strictly forward, each stage producing new arrays from the
outputs of the previous one:

    mask -> pixel selection -> (I, L) -> S -> (R, N) -> Idiff

Results are gathered in an immutable ``ReconstructionResult`` that is handed
to the writers in ``save_results``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from cps import evaluate, observation, solver, visualise
from cps.config import CpsConfig
from cps.linalg import PINV_SVD_FULL, PinvMode, numerical_rank

logger = logging.getLogger(__name__)

ALBEDO_IMAGE = "surfaceAlbedo.png"
NORMAL_IMAGE = "surfaceNormal.png"
ERROR_IMAGE = "reprojectionError.png"
SUMMARY_IMAGE = "summary.png"


def _freeze(array: np.ndarray) -> np.ndarray:
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class SurfaceSolution:
    """Solution of the Lambertian system for one set of observations."""

    S: np.ndarray      # (color * P, 3) scaled normals
    R: np.ndarray      # (color * P,) albedo
    N: np.ndarray      # (P, 3) normals, zero where undefined
    Idiff: np.ndarray  # (color * P, n_images) residual I - S L


@dataclass(frozen=True)
class ReconstructionResult:
    """Everything produced by one run, read-only once built."""

    selection: observation.PixelSelection
    color: int
    I: np.ndarray
    L: np.ndarray
    solution: SurfaceSolution
    intensity_scale: float = solver.INTENSITY_SCALE  # full-scale image intensity

    def __post_init__(self):
        for array in (self.I, self.L, self.S, self.R, self.N, self.Idiff):
            _freeze(array)

    @property
    def S(self) -> np.ndarray:
        return self.solution.S

    @property
    def R(self) -> np.ndarray:
        return self.solution.R

    @property
    def N(self) -> np.ndarray:
        return self.solution.N

    @property
    def Idiff(self) -> np.ndarray:
        return self.solution.Idiff


def solve_surface(
    I: np.ndarray,
    L: np.ndarray,
    n_pixels: int,
    color: int,
    pinv_mode: PinvMode = PINV_SVD_FULL,
    normal_averaging: str = "reference",
    intensity_scale: float = solver.INTENSITY_SCALE
) -> SurfaceSolution:
    """Solve for S, then albedo and normals, then the residual.

    Args:
        I: (color * n_pixels) x n_images observation matrix
        L: 3 x n_images light source matrix
        n_pixels: Number of selected pixels
        color: Number of colour channels
        pinv_mode: Pseudoinverse algorithm used to invert L
        normal_averaging: "reference" or "mean", see ``estimate_surface_normal``
        intensity_scale: Full-scale intensity of the images, scales the
            degeneracy threshold

    Returns:
        SurfaceSolution with S, R, N and Idiff
    """
    rank = numerical_rank(L)
    if rank < 3:
        logger.warning(
            f"Light source matrix has numerical rank {rank} < 3; "
            f"normals will be unreliable (need 3 non-coplanar lights)"
        )

    S = solver.estimate_surface(I, L, mode=pinv_mode, intensity_scale=intensity_scale)
    R = solver.estimate_surface_albedo(S)
    N = solver.estimate_surface_normal(S, R, n_pixels, color, averaging=normal_averaging)
    Idiff = solver.compute_error_lambertian(I, S, L)

    return SurfaceSolution(S=S, R=R, N=N, Idiff=Idiff)


def run_reconstruction(
    config: CpsConfig,
    metrics: Optional[evaluate.ReconstructionMetrics] = None
) -> ReconstructionResult:
    """Run every stage of a reconstruction described by ``config``.

    Args:
        config: Validated run configuration
        metrics: Optional metrics container receiving the stage timings

    Returns:
        ReconstructionResult of the run

    Raises:
        InvalidInputError: If the mask or an image is missing or malformed
    """
    if metrics is None:
        metrics = evaluate.ReconstructionMetrics()
    dtype = config.solver.numpy_dtype

    # === Stage 1: Select pixels ===
    with evaluate.Timer("Load Mask") as timer:
        selection = observation.load_available_pixels(config.mask_path)
        metrics.update_stage_timing("load_mask", timer.elapsed)

    # === Stage 2: Build I and L ===
    with evaluate.Timer("Load Observations") as timer:
        I, L, intensity_scale = observation.load_observation(
            selection, config.observations, config.color, dtype=dtype
        )
        metrics.update_stage_timing("load_observation", timer.elapsed)

    # === Stage 3: Solve S, R, N and the residual ===
    with evaluate.Timer("Solve Surface") as timer:
        solution = solve_surface(
            I,
            L,
            selection.n_pixels,
            config.color,
            pinv_mode=config.solver.pinv_mode,
            normal_averaging=config.solver.normal_averaging,
            intensity_scale=intensity_scale
        )
        metrics.update_stage_timing("solve_surface", timer.elapsed)

    result = ReconstructionResult(
        selection=selection,
        color=config.color,
        I=I,
        L=L,
        solution=solution,
        intensity_scale=intensity_scale,
    )
    metrics.compute_from_result(result)
    return result


def save_results(
    output_dir: str,
    result: ReconstructionResult,
    config: Optional[CpsConfig] = None,
    metrics: Optional[Dict] = None
) -> Dict[str, np.ndarray]:
    """Save reconstruction results to the output directory.

    Writes the albedo, normal and reprojection error images, the matrices
    of the run as ``.npy`` files and, when given, the metrics report. Albedo
    and residual are rescaled from the image intensity range to 8-bit
    before display, so 16-bit input yields the same images as 8-bit.

    Args:
        output_dir: Path to output directory
        result: Result of the run
        config: Run configuration (visualisation options are taken from it)
        metrics: Reconstruction metrics (optional)

    Returns:
        Dictionary of the written images keyed by kind
    """
    logger.info(f"Saving results to {output_dir}")
    os.makedirs(output_dir, exist_ok=True)

    vis = config.visualisation if config is not None else None
    albedo_mapping = vis.albedo_mapping if vis is not None else "affine"
    error_column = vis.error_column if vis is not None else "channel"

    # Albedo and residual are in image intensity units, display them as 8-bit
    display_scale = solver.INTENSITY_SCALE / result.intensity_scale

    sel = result.selection
    images = {
        "albedo": visualise.save_surface_albedo_to_image(
            result.R * display_scale, sel.indices, sel.width, sel.height, result.color,
            os.path.join(output_dir, ALBEDO_IMAGE), mapping=albedo_mapping
        ),
        "normal": visualise.save_surface_normal_to_image(
            result.N, sel.indices, sel.width, sel.height,
            os.path.join(output_dir, NORMAL_IMAGE)
        ),
    }

    if error_column == "channel" and result.Idiff.shape[1] < result.color:
        logger.warning(
            f"Only {result.Idiff.shape[1]} image(s) for {result.color} channel(s); "
            f"writing the RMS residual instead"
        )
        error_column = "rms"
    images["error"] = visualise.save_reprojection_error(
        result.Idiff * display_scale, sel.indices, sel.width, sel.height, result.color,
        os.path.join(output_dir, ERROR_IMAGE), column=error_column
    )

    arrays = {
        "pixels": sel.indices,
        "I": result.I,
        "L": result.L,
        "S": result.S,
        "R": result.R,
        "N": result.N,
        "Idiff": result.Idiff,
    }
    for name, array in arrays.items():
        with open(os.path.join(output_dir, f"{name}.npy"), "wb") as f:
            np.save(f, array)

    if metrics is not None:
        with open(os.path.join(output_dir, "report.json"), "w") as f:
            json.dump(metrics, f, indent=2)

    if vis is not None and vis.summary_figure:
        visualise.create_summary_figure(
            images["albedo"], images["normal"], images["error"],
            os.path.join(output_dir, SUMMARY_IMAGE),
            title="Surface albedo, surface normal, and reprojection error"
        )

    logger.info("Results saved successfully")
    return images
