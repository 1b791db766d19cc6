r"""Spatial mesh: knots, triangulation, projection and field covariance.

The latent Gaussian field is represented by its values at mesh knots. A
field value at an arbitrary location is the barycentric interpolation of the
three knots of the enclosing Delaunay triangle; locations outside the convex
hull take the value of their nearest knot.

The knot covariance is Matérn with smoothness :math:`\nu = 1`

.. math::

    C(d) = \sigma^2 \kappa d \, K_1(\kappa d), \qquad \kappa = \sqrt{8} / \rho

where :math:`\rho` is the practical range (distance at which the correlation
drops to ~0.13).
"""

from __future__ import annotations

import logging
import typing
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy import sparse, special
from scipy.cluster.vq import kmeans2
from scipy.spatial import Delaunay, QhullError, cKDTree, distance_matrix

from ednafit.fitting.errors import ConfigurationError, MeshError

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayF

MIN_KNOTS = 3
JITTER = 1e-8  # Diagonal added to the knot correlation before Cholesky.

logger = logging.getLogger(__name__)


def matern_correlation(distance: ArrayF | float, range_: float) -> ArrayF:
    """Matérn (nu = 1) correlation at the given distances.

    Parameters
    ----------
    distance : ArrayF | float
        Non-negative distances.
    range_ : float
        Practical range, must be positive.

    Returns
    -------
    ArrayF
        Correlations in (0, 1], equal to 1 at distance 0.

    Raises
    ------
    ConfigurationError
        If `range_` is not positive.

    Examples
    --------
    >>> float(matern_correlation(0.0, 1.0))
    1.0
    >>> bool(0.1 < matern_correlation(1.0, 1.0) < 0.16)
    True
    """
    if not range_ > 0:
        msg = f"Matérn range must be positive, got {range_}."
        raise ConfigurationError(msg)
    kd = np.sqrt(8.0) / range_ * np.asarray(distance, dtype=float)
    with np.errstate(invalid="ignore"):
        corr = kd * special.kv(1, kd)
    return np.where(kd > 0, corr, 1.0)


@dataclass(frozen=True)
class Mesh:
    """Knots of a spatial mesh with their Delaunay triangulation.

    Attributes
    ----------
    knots : ArrayF
        Knot coordinates, shape (n_knots, 2).
    xy_cols : tuple[str, str]
        Coordinate column names used when projecting tables.
    """

    knots: ArrayF
    xy_cols: tuple[str, str] = ("X", "Y")
    _tri: Delaunay = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Validate knots and triangulate."""
        knots = np.asarray(self.knots, dtype=float)
        if knots.ndim != 2 or knots.shape[1] != 2:  # noqa: PLR2004
            msg = f"Mesh knots must have shape (n, 2), got {knots.shape}."
            raise MeshError(msg)
        if not np.all(np.isfinite(knots)):
            msg = "Mesh knots contain non-finite coordinates."
            raise MeshError(msg)
        if len(knots) < MIN_KNOTS:
            msg = f"A mesh needs at least {MIN_KNOTS} knots, got {len(knots)}."
            raise MeshError(msg, ["Lower `cutoff` or raise `n_knots`."])
        try:
            tri = Delaunay(knots)
        except QhullError as exc:
            msg = "Mesh knots are collinear or otherwise degenerate."
            raise MeshError(msg) from exc
        object.__setattr__(self, "knots", knots)
        object.__setattr__(self, "_tri", tri)

    @property
    def n_knots(self) -> int:
        """Number of knots."""
        return len(self.knots)

    def cholesky(self, range_: float, sigma: float) -> ArrayF:
        """Lower Cholesky factor of the knot covariance matrix."""
        corr = matern_correlation(distance_matrix(self.knots, self.knots), range_)
        corr[np.diag_indices_from(corr)] += JITTER
        try:
            chol = np.linalg.cholesky(corr)
        except np.linalg.LinAlgError as exc:
            msg = "Knot covariance is not positive definite (duplicated knots?)."
            raise MeshError(msg) from exc
        return sigma * chol

    def projection(self, coords: ArrayF) -> sparse.csr_matrix:
        """Sparse matrix mapping knot values to values at `coords`.

        Parameters
        ----------
        coords : ArrayF
            Locations, shape (n, 2).

        Returns
        -------
        sparse.csr_matrix
            Shape (n, n_knots); each row sums to one.

        Raises
        ------
        MeshError
            If coordinates are not finite or have the wrong shape.
        """
        coords = np.asarray(coords, dtype=float)
        if coords.ndim != 2 or coords.shape[1] != 2:  # noqa: PLR2004
            msg = f"Coordinates must have shape (n, 2), got {coords.shape}."
            raise MeshError(msg)
        if not np.all(np.isfinite(coords)):
            msg = "Coordinates contain non-finite values."
            raise MeshError(msg)
        n = len(coords)
        simplex = self._tri.find_simplex(coords)
        inside = simplex >= 0
        # Barycentric weights inside the hull
        trans = self._tri.transform[simplex[inside]]
        b = np.einsum("ijk,ik->ij", trans[:, :2], coords[inside] - trans[:, 2])
        bary = np.clip(np.c_[b, 1.0 - b.sum(axis=1)], 0.0, 1.0)
        bary /= bary.sum(axis=1, keepdims=True)
        rows_in = np.repeat(np.flatnonzero(inside), 3)
        cols_in = self._tri.simplices[simplex[inside]].ravel()
        # Nearest knot outside the hull
        rows_out = np.flatnonzero(~inside)
        if rows_out.size:
            _, cols_out = cKDTree(self.knots).query(coords[~inside])
            logger.debug("%d locations outside the mesh hull.", rows_out.size)
        else:
            cols_out = np.array([], dtype=int)
        rows = np.concatenate([rows_in, rows_out])
        cols = np.concatenate([cols_in, np.asarray(cols_out, dtype=int)])
        vals = np.concatenate([bary.ravel(), np.ones(rows_out.size)])
        return sparse.csr_matrix((vals, (rows, cols)), shape=(n, self.n_knots))

    def project(self, data: pd.DataFrame) -> sparse.csr_matrix:
        """Projection matrix for the coordinate columns of `data`."""
        missing = [c for c in self.xy_cols if c not in data.columns]
        if missing:
            msg = f"Coordinate columns {missing} not found in data."
            raise ConfigurationError(msg)
        return self.projection(data[list(self.xy_cols)].to_numpy(dtype=float))


def _thin(points: ArrayF, cutoff: float) -> ArrayF:
    """Greedily keep points at least `cutoff` apart."""
    kept: list[ArrayF] = []
    for p in points:
        if not kept or np.min(np.linalg.norm(np.asarray(kept) - p, axis=1)) >= cutoff:
            kept.append(p)
    return np.asarray(kept)


def make_mesh(
    data: pd.DataFrame,
    xy_cols: tuple[str, str] = ("X", "Y"),
    *,
    n_knots: int | None = None,
    cutoff: float | None = None,
    seed: int | None = None,
) -> Mesh:
    """Build a mesh from the coordinates of a table.

    Parameters
    ----------
    data : pd.DataFrame
        Table with coordinate columns.
    xy_cols : tuple[str, str]
        Coordinate column names.
    n_knots : int | None
        Number of k-means knots. Takes precedence over `cutoff`.
    cutoff : float | None
        Minimum distance between knots chosen among the data locations.
    seed : int | None
        Seed for the k-means initialization.

    Returns
    -------
    Mesh
        The mesh.

    Raises
    ------
    MeshError
        If coordinates are missing or not finite, or neither `n_knots` nor
        `cutoff` is given.

    Examples
    --------
    >>> rng = np.random.default_rng(1)
    >>> df = pd.DataFrame(rng.uniform(size=(100, 2)), columns=["X", "Y"])
    >>> make_mesh(df, n_knots=20, seed=1).n_knots <= 20
    True
    """
    missing = [c for c in xy_cols if c not in data.columns]
    if missing:
        msg = f"Coordinate columns {missing} not found in data."
        raise MeshError(msg)
    coords = data[list(xy_cols)].to_numpy(dtype=float)
    if not np.all(np.isfinite(coords)):
        msg = "Coordinates contain non-finite values."
        raise MeshError(msg)
    unique = np.unique(coords, axis=0)
    if n_knots is not None:
        if n_knots >= len(unique):
            knots = unique
        else:
            knots, _ = kmeans2(unique, n_knots, minit="++", seed=seed)
            knots = np.unique(knots, axis=0)
    elif cutoff is not None:
        knots = _thin(unique, cutoff)
    else:
        msg = "Cannot build a mesh without `n_knots` or `cutoff`."
        raise MeshError(msg, ["Pass n_knots=... or cutoff=..."])
    logger.debug("Mesh with %d knots from %d locations.", len(knots), len(unique))
    return Mesh(knots, tuple(xy_cols))  # type: ignore[arg-type]
