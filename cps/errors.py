"""Exceptions raised by the photometric stereo pipeline."""

from __future__ import annotations

import numpy as np


class CpsError(Exception):
    """Base class for all pipeline failures.

    The command-line entry point catches this, logs the message and aborts
    the run without writing partial results.
    """


class InvalidInputError(CpsError, ValueError):
    """Raised when an input precondition does not hold.

    Covers missing or unreadable files, malformed masks and images whose
    dimensions or channel counts do not match the run.
    """


class ConfigError(InvalidInputError):
    """Raised when a configuration file is missing a key or holds a bad value."""


class LightDirectionError(ConfigError):
    """Raised when a light direction cannot be parsed into three finite numbers."""


class SingularMatrixError(CpsError, np.linalg.LinAlgError):
    """Raised when a matrix that must be inverted exactly is rank deficient.

    The normal-equations pseudoinverse needs a full rank Gram matrix, which
    coplanar light directions do not give.
    """
