"""Calibrated photometric stereo using linear algebra.

A Python project that recovers per-pixel surface normals and albedo from a
set of images lit by known light sources, exposing every least-squares step
in clean, documented code.
"""

from __future__ import annotations

__version__ = "0.1.0"
