"""Visualization utilities for photometric stereo results.

This module scatters the pixel-indexed results of a run (normals, albedo
and reprojection residual) back onto dense width x height images, writes
them to disk and assembles an overview figure.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import cv2
import matplotlib.pyplot as plt
import numpy as np

from cps.errors import CpsError
from cps.observation import pixel_coordinates

logger = logging.getLogger(__name__)


def scatter_to_image(
    values: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int
) -> np.ndarray:
    """Place per-pixel values into a dense image.

    Args:
        values: P x C values, one row per selected pixel
        indices: Row-major indices of the P selected pixels
        width: Image width
        height: Image height

    Returns:
        height x width x C image, zero outside the selection
    """
    values = np.asarray(values)
    if values.ndim == 1:
        values = values[:, np.newaxis]
    if values.shape[0] != len(indices):
        raise ValueError(f"Got {values.shape[0]} value row(s) for {len(indices)} pixel(s)")

    image = np.zeros((height, width, values.shape[1]), dtype=values.dtype)
    x, y = pixel_coordinates(indices, width)
    image[y, x] = values
    return image


def _channels_by_pixel(stacked: np.ndarray, n_pixels: int, color: int) -> np.ndarray:
    """Reshape a channel-stacked (color * P) vector into P x color."""
    stacked = np.asarray(stacked).reshape(-1)
    if stacked.shape[0] != n_pixels * color:
        raise ValueError(f"Expected {n_pixels * color} values, got {stacked.shape[0]}")
    return stacked.reshape(color, n_pixels).T


def surface_normal_to_image(
    N: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int
) -> np.ndarray:
    """Map normals from [-1, 1] to [0, 255] and scatter them into an RGB image."""
    return scatter_to_image(255 * (np.asarray(N) + 1) / 2, indices, width, height)


def surface_albedo_to_image(
    R: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int,
    color: int,
    mapping: str = "affine"
) -> np.ndarray:
    """Scatter the albedo into a ``color``-channel image.

    ``mapping="affine"`` applies the same 255 * (r + 1) / 2 mapping as the
    normals, so albedo 0 shows as mid grey and values above 1 saturate.
    ``mapping="minmax"`` stretches the observed albedo range to [0, 255].
    """
    values = _channels_by_pixel(R, len(indices), color)

    if mapping == "affine":
        values = 255 * (values + 1) / 2
    elif mapping == "minmax":
        lo = values.min() if values.size else 0.0
        hi = values.max() if values.size else 0.0
        if hi > lo:
            values = 255 * (values - lo) / (hi - lo)
        else:
            values = np.zeros_like(values)
    else:
        raise ValueError(f"Unknown albedo mapping: {mapping!r}")

    return scatter_to_image(values, indices, width, height)


def reprojection_error_to_image(
    Idiff: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int,
    color: int,
    column: str = "channel"
) -> np.ndarray:
    """Scatter the reprojection residual into a ``color``-channel image.

    ``column="channel"`` shows ``|Idiff[c * P + p, c]|``, the residual of
    image ``c`` for channel ``c``, which needs at least ``color`` images.
    ``column="rms"`` shows the root mean square residual over all images.
    """
    Idiff = np.asarray(Idiff)
    n_pixels = len(indices)
    if Idiff.ndim != 2 or Idiff.shape[0] != n_pixels * color:
        raise ValueError(f"Expected Idiff with {n_pixels * color} rows, got shape {Idiff.shape}")

    if column == "channel":
        if Idiff.shape[1] < color:
            raise ValueError(
                f"Channel-column residual needs at least {color} images, got {Idiff.shape[1]}"
            )
        values = np.empty((n_pixels, color), dtype=Idiff.dtype)
        for c in range(color):
            values[:, c] = np.abs(Idiff[c * n_pixels:(c + 1) * n_pixels, c])
    elif column == "rms":
        rms = np.sqrt(np.mean(Idiff ** 2, axis=1))
        values = _channels_by_pixel(rms, n_pixels, color)
    else:
        raise ValueError(f"Unknown residual column mode: {column!r}")

    return scatter_to_image(values, indices, width, height)


def save_image(path: str, image: np.ndarray) -> None:
    """Write a float image in [0, 255] to disk as 8-bit.

    Values are rounded and clipped; RGB images are written in OpenCV's BGR
    order so they open with the expected colours. Two-channel images are
    written as RGB with a zero blue channel.

    Raises:
        CpsError: If the image could not be written
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    img_u8 = np.clip(np.rint(image), 0, 255).astype(np.uint8)
    if img_u8.ndim == 3 and img_u8.shape[2] == 2:
        # PNG has no two-channel colour type, pad to RGB with an empty blue
        img_u8 = np.dstack([img_u8, np.zeros(img_u8.shape[:2], dtype=np.uint8)])

    if img_u8.ndim == 3 and img_u8.shape[2] == 1:
        img_u8 = img_u8[:, :, 0]
    elif img_u8.ndim == 3 and img_u8.shape[2] == 3:
        img_u8 = cv2.cvtColor(img_u8, cv2.COLOR_RGB2BGR)

    try:
        written = cv2.imwrite(path, img_u8)
    except cv2.error as e:
        raise CpsError(f"Failed to write {path}: {e}") from None
    if not written:
        raise CpsError(f"Failed to write {path}")

    logger.info(f"Saved {path}")


def save_surface_normal_to_image(
    N: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int,
    output_path: str
) -> np.ndarray:
    image = surface_normal_to_image(N, indices, width, height)
    save_image(output_path, image)
    return image


def save_surface_albedo_to_image(
    R: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int,
    color: int,
    output_path: str,
    mapping: str = "affine"
) -> np.ndarray:
    image = surface_albedo_to_image(R, indices, width, height, color, mapping)
    save_image(output_path, image)
    return image


def save_reprojection_error(
    Idiff: np.ndarray,
    indices: np.ndarray,
    width: int,
    height: int,
    color: int,
    output_path: str,
    column: str = "channel"
) -> np.ndarray:
    image = reprojection_error_to_image(Idiff, indices, width, height, color, column)
    save_image(output_path, image)
    return image


def _for_display(image: np.ndarray) -> np.ndarray:
    image = np.clip(np.asarray(image, dtype=np.float64) / 255.0, 0, 1)
    if image.ndim == 3 and image.shape[2] == 1:
        return image[:, :, 0]
    if image.ndim == 3 and image.shape[2] == 2:
        # pad to RGB so imshow accepts it
        return np.dstack([image, np.zeros(image.shape[:2])])
    return image


def create_summary_figure(
    albedo_image: np.ndarray,
    normal_image: np.ndarray,
    error_image: np.ndarray,
    output_path: str,
    title: Optional[str] = None
) -> None:
    """Save albedo, normals and reprojection error side by side.

    Args:
        albedo_image: Albedo image in [0, 255]
        normal_image: Normal image in [0, 255]
        error_image: Absolute residual image
        output_path: Path to save the figure
        title: Optional figure title
    """
    fig, axs = plt.subplots(1, 3, figsize=(18, 6))

    axs[0].imshow(_for_display(albedo_image), cmap="gray", vmin=0, vmax=1)
    axs[0].set_title("Surface Albedo")
    axs[0].axis("off")

    axs[1].imshow(_for_display(normal_image))
    axs[1].set_title("Surface Normal")
    axs[1].axis("off")

    # Residual magnitude, averaged over channels
    error = np.asarray(error_image, dtype=np.float64)
    if error.ndim == 3:
        error = error.mean(axis=2)
    err_max = error.max() if error.size else 0.0
    im = axs[2].imshow(error, cmap="inferno", vmin=0, vmax=err_max if err_max > 0 else 1)
    axs[2].set_title(f"Reprojection Error (max: {err_max:.2f})")
    axs[2].axis("off")
    cbar = plt.colorbar(im, ax=axs[2], fraction=0.046, pad=0.04)
    cbar.set_label("|I - SL|")

    if title:
        fig.suptitle(title)

    plt.tight_layout()

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Summary figure saved to {output_path}")
