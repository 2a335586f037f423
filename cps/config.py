"""Configuration loading for photometric stereo runs.

A run is described by a YAML file naming the output directory, the pixel
mask, the number of colour channels and one entry per captured image with
its light direction and intensity. The file is validated once, at load
time, into immutable records; see ``config.yaml`` at the repository root
for an annotated example.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import yaml

from cps.errors import ConfigError, LightDirectionError
from cps.linalg import PINV_SVD_FULL, resolve_pinv_mode
from cps.observation import Observation
from cps.solver import NORMAL_AVERAGING

logger = logging.getLogger(__name__)

REFLECTANCE_MODELS = ("lambertian",)
DTYPES = {"float32": np.float32, "float64": np.float64}
ALBEDO_MAPPINGS = ("affine", "minmax")
ERROR_COLUMNS = ("channel", "rms")
MAX_COLOR = 3
MIN_OBSERVATIONS = 3


@dataclass(frozen=True)
class SolverOptions:
    pinv_mode: int = PINV_SVD_FULL
    dtype: str = "float32"
    normal_averaging: str = "reference"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(DTYPES[self.dtype])


@dataclass(frozen=True)
class VisualisationOptions:
    albedo_mapping: str = "affine"
    error_column: str = "channel"
    summary_figure: bool = False


@dataclass(frozen=True)
class CpsConfig:
    """Validated description of a calibrated photometric stereo run."""

    output_dir: str
    mask_path: str
    observations: Tuple[Observation, ...]
    color: int = 1
    observation_dir: str = ""
    reflectance_model: str = "lambertian"
    solver: SolverOptions = field(default_factory=SolverOptions)
    visualisation: VisualisationOptions = field(default_factory=VisualisationOptions)

    @property
    def n_observations(self) -> int:
        return len(self.observations)

    def with_overrides(
        self,
        output_dir: Optional[str] = None,
        pinv_mode: Optional[Any] = None,
        dtype: Optional[str] = None,
        summary_figure: Optional[bool] = None
    ) -> "CpsConfig":
        """Return a copy with command-line overrides applied and validated."""
        solver = self.solver
        if pinv_mode is not None:
            solver = dataclasses.replace(solver, pinv_mode=_parse_pinv_mode(pinv_mode))
        if dtype is not None:
            solver = dataclasses.replace(solver, dtype=_parse_choice(dtype, tuple(DTYPES), "solver.dtype"))

        visualisation = self.visualisation
        if summary_figure is not None:
            visualisation = dataclasses.replace(visualisation, summary_figure=bool(summary_figure))

        return dataclasses.replace(
            self,
            output_dir=output_dir if output_dir is not None else self.output_dir,
            solver=solver,
            visualisation=visualisation,
        )


def parse_light_direction(value: Any) -> Tuple[float, float, float]:
    """Parse a light direction into three finite components.

    Accepts a sequence of three numbers or a string of three numbers
    separated by whitespace, commas or semicolons (e.g. ``"0.1 0.2 0.97"``).

    Raises:
        LightDirectionError: On a wrong component count, a non-numeric or
            non-finite component, or the zero vector
    """
    if isinstance(value, str):
        parts = [p for p in re.split(r"[\s,;]+", value.strip()) if p]
    elif isinstance(value, (list, tuple, np.ndarray)):
        parts = list(value)
    else:
        raise LightDirectionError(f"Light direction must be a list or a string, got {value!r}")

    if len(parts) != 3:
        raise LightDirectionError(f"Light direction must have 3 components, got {len(parts)}: {value!r}")

    components = []
    for part in parts:
        if isinstance(part, bool):
            raise LightDirectionError(f"Light direction component is not a number: {part!r}")
        try:
            component = float(part)
        except (TypeError, ValueError):
            raise LightDirectionError(f"Light direction component is not a number: {part!r}") from None
        if not math.isfinite(component):
            raise LightDirectionError(f"Light direction component is not finite: {part!r}")
        components.append(component)

    if all(c == 0.0 for c in components):
        raise LightDirectionError(f"Light direction is the zero vector: {value!r}")

    return tuple(components)


def parse_light_intensity(value: Any) -> float:
    """Parse a light intensity, defaulting to 1 when absent."""
    if value is None:
        return 1.0
    if isinstance(value, bool):
        raise ConfigError(f"Light intensity is not a number: {value!r}")
    try:
        intensity = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Light intensity is not a number: {value!r}") from None
    if not math.isfinite(intensity) or intensity < 0:
        raise ConfigError(f"Light intensity must be finite and non-negative, got {value!r}")
    return intensity


def _require(mapping: Mapping, key: str, where: str) -> Any:
    if not isinstance(mapping, Mapping):
        raise ConfigError(f"'{where}' must be a mapping")
    if key not in mapping or mapping[key] is None:
        raise ConfigError(f"Missing required key '{where}.{key}'" if where else f"Missing required key '{key}'")
    return mapping[key]


def _parse_choice(value: Any, choices: Sequence[str], name: str) -> str:
    if not isinstance(value, str) or value.strip().lower() not in choices:
        raise ConfigError(f"Invalid {name}: {value!r} (expected one of {list(choices)})")
    return value.strip().lower()


def _parse_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    return value


def _parse_pinv_mode(value: Any) -> int:
    try:
        return resolve_pinv_mode(value)
    except ValueError as e:
        raise ConfigError(f"Invalid solver.pinv_mode: {e}") from None


def _parse_color(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= MAX_COLOR:
        raise ConfigError(f"observation.color must be an integer in [1, {MAX_COLOR}], got {value!r}")
    return value


def _parse_observation(entry: Any, directory: str, index: int) -> Observation:
    where = f"observation.images[{index}]"
    image = _require(entry, "image", where)
    if not isinstance(image, str) or not image:
        raise ConfigError(f"{where}.image must be a non-empty string, got {image!r}")

    try:
        direction = parse_light_direction(_require(entry, "light_direction", where))
    except LightDirectionError as e:
        raise LightDirectionError(f"{where}: {e}") from None

    return Observation(
        image=os.path.join(directory, image),
        light_direction=direction,
        light_intensity=parse_light_intensity(entry.get("light_intensity")),
    )


def parse_config(raw: Mapping, base_dir: str = "") -> CpsConfig:
    """Validate a configuration mapping into a ``CpsConfig``.

    Args:
        raw: Mapping loaded from YAML
        base_dir: Directory relative observation directories are resolved against

    Returns:
        Validated configuration

    Raises:
        ConfigError: If a key is missing or a value is invalid
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("Configuration must be a mapping")

    output_dir = _require(raw, "output_dir", "")
    reflectance_model = _parse_choice(
        raw.get("reflectance_model", "lambertian"), REFLECTANCE_MODELS, "reflectance_model"
    )

    obs_section = _require(raw, "observation", "")
    directory = obs_section.get("directory", "") if isinstance(obs_section, Mapping) else ""
    directory = os.path.join(base_dir, str(directory)) if directory or base_dir else ""
    mask = _require(obs_section, "mask", "observation")
    color = _parse_color(obs_section.get("color", 1))

    entries = _require(obs_section, "images", "observation")
    if not isinstance(entries, list):
        raise ConfigError("observation.images must be a list")
    observations = tuple(
        _parse_observation(entry, directory, i) for i, entry in enumerate(entries)
    )
    if len(observations) < MIN_OBSERVATIONS:
        raise ConfigError(
            f"At least {MIN_OBSERVATIONS} observations are required, got {len(observations)}"
        )

    solver_section = raw.get("solver") or {}
    if not isinstance(solver_section, Mapping):
        raise ConfigError("'solver' must be a mapping")
    solver = SolverOptions(
        pinv_mode=_parse_pinv_mode(solver_section.get("pinv_mode", PINV_SVD_FULL)),
        dtype=_parse_choice(solver_section.get("dtype", "float32"), tuple(DTYPES), "solver.dtype"),
        normal_averaging=_parse_choice(
            solver_section.get("normal_averaging", "reference"), NORMAL_AVERAGING, "solver.normal_averaging"
        ),
    )

    vis_section = raw.get("visualisation") or {}
    if not isinstance(vis_section, Mapping):
        raise ConfigError("'visualisation' must be a mapping")
    visualisation = VisualisationOptions(
        albedo_mapping=_parse_choice(
            vis_section.get("albedo_mapping", "affine"), ALBEDO_MAPPINGS, "visualisation.albedo_mapping"
        ),
        error_column=_parse_choice(
            vis_section.get("error_column", "channel"), ERROR_COLUMNS, "visualisation.error_column"
        ),
        summary_figure=_parse_bool(vis_section.get("summary_figure", False), "visualisation.summary_figure"),
    )

    return CpsConfig(
        output_dir=str(output_dir),
        mask_path=os.path.join(directory, str(mask)),
        observations=observations,
        color=color,
        observation_dir=directory,
        reflectance_model=reflectance_model,
        solver=solver,
        visualisation=visualisation,
    )


def load_config(config_path: str) -> CpsConfig:
    """Load and validate a configuration from a YAML file.

    Relative ``observation.directory`` values are resolved against the
    directory holding the configuration file.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file is missing, is not valid YAML or holds an
            invalid configuration
    """
    if not os.path.isfile(config_path):
        raise ConfigError(f"Configuration file does not exist: {config_path}")

    logger.info(f"Loading configuration from {config_path}")
    with open(config_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from None

    return parse_config(raw, base_dir=os.path.dirname(os.path.abspath(config_path)))


def describe_config(config: CpsConfig) -> Dict[str, Any]:
    """Log the loaded configuration and return it as a plain dictionary."""
    logger.info("Photometric stereo configuration:")
    logger.info(f"  Directory for input:  {config.observation_dir}")
    logger.info(f"  Directory for output: {config.output_dir}")
    logger.info(f"  Reflectance model: {config.reflectance_model}")
    logger.info(f"  Image mask: {config.mask_path}")
    logger.info(f"  Number of images: {config.n_observations}")
    logger.info(f"  Number of colour channels: {config.color}")
    logger.info(
        f"  Solver: pinv_mode={config.solver.pinv_mode}, dtype={config.solver.dtype}, "
        f"normal_averaging={config.solver.normal_averaging}"
    )
    for n, obs in enumerate(config.observations):
        logger.debug(
            f"  Image[{n}]: {obs.image} direction={obs.light_direction} intensity={obs.light_intensity}"
        )

    return dataclasses.asdict(config)
