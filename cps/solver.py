"""Lambertian photometric stereo solver.

This module solves the calibrated Lambertian system I = S L for the
scaled-normal matrix S, decomposes S into albedo and surface normals and
computes the reprojection residual of the fit.
"""

from __future__ import annotations

import logging

import numpy as np

from cps.linalg import PINV_SVD_FULL, PinvMode, pinv, working_dtype

logger = logging.getLogger(__name__)

NORMAL_AVERAGING = ("reference", "mean")

# Intensities are 8-bit per channel.
INTENSITY_SCALE = 255.0


def degeneracy_tolerance(dtype: np.dtype, intensity_scale: float = INTENSITY_SCALE) -> float:
    """Intensity norm below which a row of I carries no reliable signal.

    Args:
        dtype: Working floating dtype
        intensity_scale: Full-scale intensity of the input images

    Returns:
        Machine epsilon of ``dtype`` times ``intensity_scale``
    """
    return float(np.finfo(dtype).eps * intensity_scale)


def _check_system(I: np.ndarray, L: np.ndarray) -> None:
    if I.ndim != 2 or L.ndim != 2:
        raise ValueError(f"Expected 2D matrices, got I {I.shape} and L {L.shape}")
    if L.shape[0] != 3:
        raise ValueError(f"Light source matrix must have 3 rows, got shape {L.shape}")
    if I.shape[1] != L.shape[1]:
        raise ValueError(
            f"I has {I.shape[1]} image column(s) but L has {L.shape[1]} light column(s)"
        )


def estimate_surface(
    I: np.ndarray,
    L: np.ndarray,
    mode: PinvMode = PINV_SVD_FULL,
    intensity_scale: float = INTENSITY_SCALE
) -> np.ndarray:
    """Estimate the scaled surface normals S = I L+.

    Rows of I whose norm is below ``degeneracy_tolerance`` yield an exactly
    zero row of S, marking the pixel/channel as having no reliable signal.

    Args:
        I: (color * n_pixels) x n_images observation matrix
        L: 3 x n_images light source matrix
        mode: Pseudoinverse algorithm used to invert L
        intensity_scale: Full-scale intensity of the input images

    Returns:
        (color * n_pixels) x 3 matrix S
    """
    I = np.asarray(I)
    L = np.asarray(L)
    _check_system(I, L)

    dtype = working_dtype(I)
    I = I.astype(dtype, copy=False)
    L_inv = pinv(L.astype(dtype, copy=False), mode)
    S = I @ L_inv

    tol = degeneracy_tolerance(dtype, intensity_scale)
    degenerate = np.linalg.norm(I, axis=1) < tol
    S[degenerate] = 0

    logger.info(
        f"Estimated S of {S.shape[0]}x{S.shape[1]} matrix "
        f"({int(degenerate.sum())} degenerate row(s) zeroed, tol={tol:.3g})"
    )
    return S


def estimate_surface_albedo(S: np.ndarray) -> np.ndarray:
    """Albedo of every row of S, i.e. the Euclidean norm of the row."""
    S = np.asarray(S)
    if S.ndim != 2:
        raise ValueError(f"Expected a 2D matrix, got shape {S.shape}")
    return np.linalg.norm(S, axis=1)


def estimate_surface_normal(
    S: np.ndarray,
    R: np.ndarray,
    n_pixels: int,
    color: int,
    averaging: str = "reference"
) -> np.ndarray:
    """Combine the per-channel decompositions of S into one normal per pixel.

    For every pixel ``p`` whose albedo ``R[p]`` (first channel) is positive:

        N[p] = sum_c S[c * n_pixels + p] / R[c * n_pixels + p] / divisor

    where ``divisor`` is 3 for ``averaging="reference"`` and ``color`` for
    ``averaging="mean"``. The two agree for three-channel input. Pixels with
    ``R[p] <= 0`` keep a zero normal, which callers must read as "undefined",
    and channels with zero albedo contribute nothing to the sum.

    Args:
        S: (color * n_pixels) x 3 scaled normals
        R: (color * n_pixels,) albedo
        n_pixels: Number of selected pixels
        color: Number of colour channels
        averaging: "reference" or "mean"

    Returns:
        n_pixels x 3 matrix of normals
    """
    S = np.asarray(S)
    R = np.asarray(R).reshape(-1)
    if averaging not in NORMAL_AVERAGING:
        raise ValueError(f"Unknown normal averaging: {averaging!r} (expected one of {NORMAL_AVERAGING})")
    if S.shape != (n_pixels * color, 3):
        raise ValueError(f"Expected S of shape {(n_pixels * color, 3)}, got {S.shape}")
    if R.shape[0] != n_pixels * color:
        raise ValueError(f"Expected {n_pixels * color} albedo values, got {R.shape[0]}")

    divisor = 3.0 if averaging == "reference" else float(color)

    S_sub = S.reshape(color, n_pixels, 3)
    R_sub = R.reshape(color, n_pixels)

    R_inv = np.zeros_like(R_sub)
    positive = R_sub > 0
    R_inv[positive] = 1.0 / R_sub[positive]

    N = (R_inv[:, :, np.newaxis] * S_sub).sum(axis=0) / divisor
    N[~positive[0]] = 0

    logger.info(
        f"Estimated {n_pixels} normal(s), {int((~positive[0]).sum())} undefined (zero albedo)"
    )
    return N.astype(S.dtype, copy=False)


def compute_error_lambertian(I: np.ndarray, S: np.ndarray, L: np.ndarray) -> np.ndarray:
    """Reprojection residual I - S L of the Lambertian fit."""
    I = np.asarray(I)
    S = np.asarray(S)
    L = np.asarray(L)
    _check_system(I, L)
    if S.shape != (I.shape[0], 3):
        raise ValueError(f"Expected S of shape {(I.shape[0], 3)}, got {S.shape}")
    return I - S @ L
