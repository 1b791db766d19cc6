"""Testing utilities for ednafit.

This package contains synthetic data generators shared by the tests, the CLI
and the examples.
"""

from ednafit.testing.synthetic import (
    KNOWN_CONC_UL,
    EdnaData,
    PlatePopulation,
    draw_plate_coefficients,
    draw_plate_ids,
    make_edna_dataset,
    make_observations,
    make_spatial_dataset,
    make_standards,
    simulate_field,
)

__all__ = [
    "KNOWN_CONC_UL",
    "EdnaData",
    "PlatePopulation",
    "draw_plate_coefficients",
    "draw_plate_ids",
    "make_edna_dataset",
    "make_observations",
    "make_spatial_dataset",
    "make_standards",
    "simulate_field",
]
