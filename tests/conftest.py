"""
Package-wide test fixtures for ednafit.

Fits are expensive compared to the assertions made on them, so the fitted
models are session scoped and must be treated as read-only by the tests.
"""

from __future__ import annotations

import pandas as pd
import pytest

from ednafit.fitting.core import SpatialFit, fit_spatial
from ednafit.fitting.data_structures import FieldConfig
from ednafit.fitting.mesh import Mesh
from ednafit.testing.synthetic import (
    EdnaData,
    PlatePopulation,
    make_edna_dataset,
    make_spatial_dataset,
)

FIELD = FieldConfig(range=0.3, sigma_o=1.0)


@pytest.fixture(scope="session")
def edna_data() -> EdnaData:
    """A small calibrated eDNA study with moderate Ct noise."""
    return make_edna_dataset(
        seed=7, n_plates=8, n_replicates=3, n_locations=150, ct_sd=0.3, n_knots=20
    )


@pytest.fixture(scope="session")
def edna_fit(edna_data: EdnaData) -> SpatialFit:
    """Calibrated spatial fit of `edna_data` on its simulation mesh."""
    return fit_spatial(
        edna_data.observations,
        edna_data.mesh,
        standards=edna_data.standards,
        field=FIELD,
        plate_prior=PlatePopulation().prior(),
    )


@pytest.fixture(scope="session")
def gaussian_data() -> tuple[pd.DataFrame, Mesh]:
    """Gaussian spatial data."""
    return make_spatial_dataset(200, family="gaussian", sigma=0.3, seed=5, n_knots=20)


@pytest.fixture(scope="session")
def gaussian_fit(gaussian_data: tuple[pd.DataFrame, Mesh]) -> SpatialFit:
    """Gaussian spatial fit."""
    data, mesh = gaussian_data
    return fit_spatial(data, mesh, response="observed", family="gaussian", field=FIELD)


@pytest.fixture(scope="session")
def nb2_data() -> tuple[pd.DataFrame, Mesh]:
    """Overdispersed counts (NB2, phi = 0.5)."""
    return make_spatial_dataset(
        300, family="nbinom2", b0=1.0, phi=0.5, seed=3, n_knots=20
    )


@pytest.fixture(scope="session")
def poisson_fit(nb2_data: tuple[pd.DataFrame, Mesh]) -> SpatialFit:
    """Misspecified Poisson fit of NB2 counts."""
    data, mesh = nb2_data
    return fit_spatial(data, mesh, response="observed", family="poisson", field=FIELD)


@pytest.fixture(scope="session")
def nb2_fit(nb2_data: tuple[pd.DataFrame, Mesh]) -> SpatialFit:
    """Correctly specified NB2 fit."""
    data, mesh = nb2_data
    return fit_spatial(data, mesh, response="observed", family="nbinom2", field=FIELD)
