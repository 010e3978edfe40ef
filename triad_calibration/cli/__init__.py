"""CLI module for triaxial sensor calibration.

Provides a unified `triad` command-line interface for running robust
calibrations from YAML measurement files.
"""

from triad_calibration.cli.main import app

__all__ = ["app"]
