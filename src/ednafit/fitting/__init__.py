"""Spatial model fitting, calibration, simulation and residual diagnostics.

Re-export key submodules for convenient access.
"""

from . import (
    bayes,
    calibration,
    core,
    data_structures,
    errors,
    families,
    mesh,
    plotting,
    residuals,
    simulation,
)

__all__ = [
    "bayes",
    "calibration",
    "core",
    "data_structures",
    "errors",
    "families",
    "mesh",
    "plotting",
    "residuals",
    "simulation",
]
