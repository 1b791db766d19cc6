"""Core data structures in `ednafit`.

Classes:
--------
- Block: A named, contiguous slice of the parameter vector.
- ParameterLayout: Ordered collection of blocks splitting a flat vector.
- FieldConfig: Spatial and spatiotemporal field options.
- FitControl: Optimizer and Hessian options.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass

import numpy as np

from ednafit.fitting.errors import ConfigurationError

if typing.TYPE_CHECKING:
    from ednafit.ednafit_types import ArrayDict, ArrayF, ArrayMask

FIELD_MODES = ("on", "off")
SPATIOTEMPORAL_MODES = ("off", "iid")


@dataclass(frozen=True)
class Block:
    """A named slice of the parameter vector.

    Attributes
    ----------
    name : str
        Block name (e.g. "b", "omega_s", "plate_re").
    size : int
        Number of scalar parameters.
    random : bool
        Whether the block holds whitened random effects with a standard
        normal penalty.
    field : bool
        Whether the block is a spatial or spatiotemporal field (redrawn when
        simulating with new random fields).
    labels : tuple[str, ...]
        Optional per-element labels, used by `tidy` tables.
    """

    name: str
    size: int
    random: bool = False
    field: bool = False
    labels: tuple[str, ...] = ()


class ParameterLayout:
    """Split a flat parameter vector into named blocks.

    Parameters
    ----------
    blocks : list[Block]
        Blocks in vector order. Names must be unique.

    Examples
    --------
    >>> lay = ParameterLayout([Block("b", 2), Block("omega_s", 3, random=True)])
    >>> lay.size
    5
    >>> lay.split(np.arange(5.0))["omega_s"]
    array([2., 3., 4.])
    """

    def __init__(self, blocks: list[Block]) -> None:
        names = [b.name for b in blocks]
        if len(set(names)) != len(names):
            msg = f"Duplicated parameter block names: {names}"
            raise ConfigurationError(msg)
        self.blocks = list(blocks)
        self._slices: dict[str, slice] = {}
        start = 0
        for b in self.blocks:
            self._slices[b.name] = slice(start, start + b.size)
            start += b.size
        self.size = start

    def __contains__(self, name: str) -> bool:
        """Whether a block with `name` exists."""
        return name in self._slices

    def __getitem__(self, name: str) -> slice:
        """Slice of block `name` in the flat vector."""
        return self._slices[name]

    def block(self, name: str) -> Block:
        """Block description by name."""
        for b in self.blocks:
            if b.name == name:
                return b
        raise KeyError(name)

    def split(self, theta: ArrayF) -> ArrayDict:
        """Views of `theta` for every block."""
        return {name: theta[s] for name, s in self._slices.items()}

    def _mask(self, attr: str) -> ArrayMask:
        mask = np.zeros(self.size, dtype=bool)
        for b in self.blocks:
            if getattr(b, attr):
                mask[self._slices[b.name]] = True
        return mask

    @property
    def random_mask(self) -> ArrayMask:
        """True for random-effect positions."""
        return self._mask("random")

    @property
    def fixed_mask(self) -> ArrayMask:
        """True for fixed-effect positions."""
        return ~self.random_mask

    @property
    def field_mask(self) -> ArrayMask:
        """True for spatial and spatiotemporal field positions."""
        return self._mask("field")

    def labels(self) -> list[str]:
        """Flat labels, `name[i]` for blocks without explicit labels."""
        out: list[str] = []
        for b in self.blocks:
            if b.labels:
                out.extend(b.labels)
            elif b.size == 1:
                out.append(b.name)
            else:
                out.extend(f"{b.name}[{i}]" for i in range(b.size))
        return out


@dataclass(frozen=True)
class FieldConfig:
    """Latent Gaussian field options.

    The field hyperparameters are treated as known: they play the role of
    fixed priors on the correlation length and field variance.

    Attributes
    ----------
    spatial : str
        "on" for a spatial field shared across time slices, "off" otherwise.
    spatiotemporal : str
        "iid" for independent fields per time slice, "off" otherwise.
    range : float
        Practical Matérn range (same units as coordinates).
    sigma_o : float
        Marginal SD of the spatial field.
    sigma_e : float
        Marginal SD of each spatiotemporal field.
    """

    spatial: str = "on"
    spatiotemporal: str = "off"
    range: float = 0.3
    sigma_o: float = 1.0
    sigma_e: float = 0.5

    def __post_init__(self) -> None:
        """Validate options."""
        if self.spatial not in FIELD_MODES:
            msg = f"spatial must be one of {FIELD_MODES}, got {self.spatial!r}."
            raise ConfigurationError(msg)
        if self.spatiotemporal not in SPATIOTEMPORAL_MODES:
            msg = (
                f"spatiotemporal must be one of {SPATIOTEMPORAL_MODES}, "
                f"got {self.spatiotemporal!r}."
            )
            raise ConfigurationError(msg)
        # Only the hyperparameters of fields that are switched on must be positive.
        invalid = [
            name
            for name, value, used in (
                ("range", self.range, self.has_field),
                ("sigma_o", self.sigma_o, self.spatial == "on"),
                ("sigma_e", self.sigma_e, self.spatiotemporal != "off"),
            )
            if used and value <= 0
        ]
        if invalid:
            msg = f"Field {', '.join(invalid)} must be positive."
            raise ConfigurationError(msg)

    @property
    def has_field(self) -> bool:
        """Whether any latent field is estimated."""
        return self.spatial == "on" or self.spatiotemporal != "off"


@dataclass(frozen=True)
class FitControl:
    """Optimizer and Hessian options.

    Attributes
    ----------
    maxiter : int
        Maximum L-BFGS-B iterations.
    grad_tol : float
        Largest acceptable |gradient| (relative to max(1, |objective|)) when
        the optimizer reports failure; above it the fit raises.
    hessian_step : float
        Relative finite-difference step for the Hessian.
    """

    maxiter: int = 5000
    grad_tol: float = 1e-3
    hessian_step: float = 1e-5
