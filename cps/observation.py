"""Observation assembly for photometric stereo.

This module turns a pixel mask and a list of calibrated observations into
the two matrices of the Lambertian system I = S L:

- the observation matrix I, one row per (colour channel, selected pixel) and
  one column per image, and
- the light source matrix L, one column per image holding the light
  direction scaled by the light intensity.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from cps.errors import InvalidInputError
from cps.solver import INTENSITY_SCALE

logger = logging.getLogger(__name__)

# Mask value marking a pixel as eligible for reconstruction.
MASK_ON = 255


@dataclass(frozen=True)
class Observation:
    """A single calibrated capture: image file and its light source."""

    image: str
    light_direction: Tuple[float, float, float]
    light_intensity: float = 1.0


@dataclass(frozen=True)
class PixelSelection:
    """Pixels selected by a mask, as row-major indices into a width x height image."""

    indices: np.ndarray  # (P,) strictly increasing, y * width + x
    width: int
    height: int

    @property
    def n_pixels(self) -> int:
        return int(self.indices.shape[0])


def pixel_indices_from_mask(mask: np.ndarray) -> np.ndarray:
    """Select the pixels of a mask that are fully on.

    Args:
        mask: HxW (or HxWx1) mask array

    Returns:
        Strictly increasing row-major indices of pixels equal to 255
    """
    mask = np.asarray(mask)
    if mask.ndim == 3 and mask.shape[2] == 1:
        mask = mask[:, :, 0]
    if mask.ndim != 2:
        raise InvalidInputError(f"Expected a single-channel mask, got shape {mask.shape}")

    # flatnonzero walks the array in C order, so indices are y * width + x
    return np.flatnonzero(mask == MASK_ON).astype(np.int64)


def pixel_coordinates(indices: np.ndarray, width: int) -> Tuple[np.ndarray, np.ndarray]:
    """Recover (x, y) image coordinates from row-major pixel indices.

    Args:
        indices: Pixel indices produced with the same ``width``
        width: Image width in pixels

    Returns:
        Tuple of (x, y) integer arrays
    """
    indices = np.asarray(indices, dtype=np.int64)
    return indices % width, indices // width


def read_image(path: str, flags: int = cv2.IMREAD_UNCHANGED) -> np.ndarray:
    """Read an image from disk, colour images in RGB channel order.

    Raises:
        InvalidInputError: If the file is missing or cannot be decoded
    """
    if not os.path.isfile(path):
        raise InvalidInputError(f"Image file does not exist: {path}")

    image = cv2.imread(path, flags)
    if image is None:
        raise InvalidInputError(f"Failed to read image: {path}")

    if image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)

    return image


def image_intensity_scale(image: np.ndarray) -> float:
    """Full-scale intensity of an image, from its pixel type.

    Integer images use the largest value of their type (255 for 8-bit, 65535
    for 16-bit); floating point images are taken to lie in [0, 1].
    """
    if np.issubdtype(image.dtype, np.integer):
        return float(np.iinfo(image.dtype).max)
    return 1.0


def load_available_pixels(mask_path: str) -> PixelSelection:
    """Load a mask image and select the pixels eligible for reconstruction.

    Args:
        mask_path: Path to a single-channel mask (0 or 255)

    Returns:
        PixelSelection holding the selected indices and the mask size

    Raises:
        InvalidInputError: If the mask cannot be read or selects no pixel
    """
    mask = read_image(mask_path, cv2.IMREAD_GRAYSCALE)
    height, width = mask.shape[:2]
    indices = pixel_indices_from_mask(mask)

    if indices.size == 0:
        raise InvalidInputError(f"Mask selects no pixel (no value equal to {MASK_ON}): {mask_path}")

    logger.info(f"Mask {mask_path}: {indices.size}/{width * height} pixels selected ({width}x{height})")
    return PixelSelection(indices=indices, width=width, height=height)


def build_observation_matrix(
    index_of_pixels: np.ndarray,
    observations: Sequence[Observation],
    color: int,
    width: int,
    height: Optional[int] = None,
    dtype: np.dtype = np.float32,
    return_intensity_scale: bool = False
) -> Union[np.ndarray, Tuple[np.ndarray, float]]:
    """Build the observation matrix I from the captured images.

    Row ``c * n_pixels + p`` holds colour channel ``c`` of the ``p``-th
    selected pixel, column ``f`` the ``f``-th image. Every image is read and
    scanned exactly once, at its native bit depth.

    Args:
        index_of_pixels: Row-major pixel indices, computed with ``width``
        observations: Calibrated observations, one per image
        color: Number of colour channels to use
        width: Image width the indices were computed with
        height: Expected image height (checked when given)
        dtype: Floating dtype of the matrix
        return_intensity_scale: Also return the full-scale intensity shared
            by the images (see ``image_intensity_scale``)

    Returns:
        (color * n_pixels) x n_images observation matrix, and the intensity
        scale when ``return_intensity_scale`` is set

    Raises:
        InvalidInputError: If an image is missing, unreadable or does not
            match the expected size, channel count or bit depth
    """
    index_of_pixels = np.asarray(index_of_pixels, dtype=np.int64)
    n_pixels = index_of_pixels.shape[0]
    n_images = len(observations)
    if color < 1:
        raise ValueError(f"Colour channel count must be positive, got {color}")

    I = np.zeros((n_pixels * color, n_images), dtype=dtype)
    x, y = pixel_coordinates(index_of_pixels, width)
    intensity_scale = None

    logger.info(f"Building I of {n_pixels * color}x{n_images} matrix")
    for f, obs in enumerate(tqdm(observations, desc="Reading observations")):
        img = read_image(obs.image)
        img_height, img_width = img.shape[:2]

        if img_width != width or (height is not None and img_height != height):
            raise InvalidInputError(
                f"Image {obs.image} is {img_width}x{img_height}, "
                f"expected {width}x{height if height is not None else img_height}"
            )
        if n_pixels > 0 and y[-1] >= img_height:
            raise InvalidInputError(f"Pixel index {index_of_pixels[-1]} lies outside image {obs.image}")

        scale = image_intensity_scale(img)
        if intensity_scale is None:
            intensity_scale = scale
        elif scale != intensity_scale:
            raise InvalidInputError(
                f"Image {obs.image} has full-scale intensity {scale:g}, "
                f"previous images have {intensity_scale:g}"
            )

        if img.ndim == 2:
            img = img[:, :, np.newaxis]
        if img.shape[2] < color:
            raise InvalidInputError(
                f"Image {obs.image} has {img.shape[2]} channel(s), {color} required"
            )

        # (n_pixels, color) -> channel-major column
        values = img[y, x, :color].astype(dtype)
        I[:, f] = values.T.reshape(-1)

    logger.debug(f"I =\n{I}")
    if return_intensity_scale:
        return I, intensity_scale if intensity_scale is not None else INTENSITY_SCALE
    return I


def build_light_source_matrix(
    observations: Sequence[Observation],
    dtype: np.dtype = np.float32
) -> np.ndarray:
    """Build the light source matrix L.

    Column ``f`` is the light direction of the ``f``-th observation scaled by
    its intensity. Directions are used as given, without renormalisation.

    Args:
        observations: Calibrated observations, one per image
        dtype: Floating dtype of the matrix

    Returns:
        3 x n_images light source matrix
    """
    n_images = len(observations)
    L = np.zeros((3, n_images), dtype=dtype)

    logger.info(f"Building L of 3x{n_images} matrix")
    for f, obs in enumerate(observations):
        direction = np.asarray(obs.light_direction, dtype=dtype)
        if direction.shape != (3,):
            raise InvalidInputError(
                f"Light direction of {obs.image} must have 3 components, got {direction.shape}"
            )
        L[:, f] = obs.light_intensity * direction

    logger.debug(f"L =\n{L}")
    return L


def load_observation(
    selection: PixelSelection,
    observations: Sequence[Observation],
    color: int,
    dtype: np.dtype = np.float32
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Build both the observation matrix and the light source matrix.

    Args:
        selection: Pixels selected by the mask
        observations: Calibrated observations, one per image
        color: Number of colour channels to use
        dtype: Floating dtype of the matrices

    Returns:
        Tuple of (I, L, intensity_scale), the last being the full-scale
        intensity of the images
    """
    I, intensity_scale = build_observation_matrix(
        selection.indices,
        observations,
        color,
        selection.width,
        height=selection.height,
        dtype=dtype,
        return_intensity_scale=True
    )
    L = build_light_source_matrix(observations, dtype=dtype)
    return I, L, intensity_scale
