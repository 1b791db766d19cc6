"""Diagnostic plots.

Functions return a :class:`matplotlib.figure.Figure` that is not attached to
pyplot, so they are safe in scripts, tests and notebooks alike.

    plot_qq: Normal QQ plot of residuals.
    plot_statistic_check: Simulated distribution of a summary statistic.
    plot_standard_curves: Standards with fitted or per-plate Ct curves.
"""

from __future__ import annotations

import typing

import numpy as np
from matplotlib import colormaps
from matplotlib.figure import Figure

from ednafit.fitting.calibration import COEF_NAMES, detection_indicator
from ednafit.fitting.residuals import qq_points

if typing.TYPE_CHECKING:
    import pandas as pd
    from matplotlib.axes import Axes

    from ednafit.ednafit_types import ArrayF
    from ednafit.fitting.residuals import StatisticCheck

COLOR_MAP = colormaps["tab10"]
MAX_PLATES = 10


def _apply_common_plot_style(ax: Axes, title: str, xlabel: str, ylabel: str) -> None:
    """Add grid, title and x_y_labels."""
    ax.grid(True)
    ax.set_title(title)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)


def plot_qq(residuals: ArrayF, title: str = "Residuals") -> Figure:
    """Normal QQ plot with the identity line."""
    theoretical, sample = qq_points(residuals)
    fig = Figure(figsize=(5, 5))
    ax = fig.add_subplot(111)
    ax.scatter(theoretical, sample, s=8, alpha=0.7)
    if len(sample):
        lim = float(max(np.abs(theoretical).max(), np.abs(sample).max()))
        ax.plot([-lim, lim], [-lim, lim], "k--", lw=1)
    _apply_common_plot_style(ax, title, "Theoretical quantiles", "Sample quantiles")
    return fig


def plot_statistic_check(check: StatisticCheck, name: str = "zero proportion") -> Figure:
    """Histogram of the simulated statistic with the observed value."""
    fig = Figure(figsize=(6, 4))
    ax = fig.add_subplot(111)
    ax.hist(check.simulated, bins=30, color="0.7", edgecolor="0.4")
    ax.axvline(check.observed, color="r", lw=2, label="observed")
    ax.legend()
    _apply_common_plot_style(ax, f"{name} (p = {check.p_value:.3f})", name, "count")
    return fig


def plot_standard_curves(
    standards: pd.DataFrame,
    coefs: pd.DataFrame,
    response: str = "ct",
    max_plates: int = MAX_PLATES,
) -> Figure:
    """Detected standards and Ct curves of the first plates.

    Parameters
    ----------
    standards : pd.DataFrame
        Calibration table.
    coefs : pd.DataFrame
        Coefficients indexed by plate (`random_effects()` or
        `fit_standard_curves` output).
    response : str
        Ct column.
    max_plates : int
        Number of plates drawn.

    Returns
    -------
    Figure
        Ct against log concentration (left) and detection curves (right).
    """
    fig = Figure(figsize=(11, 4.5))
    ax_ct = fig.add_subplot(121)
    ax_det = fig.add_subplot(122)
    det = detection_indicator(standards, response)
    x = np.log(standards["known_conc_ul"].to_numpy(dtype=float))
    plates = standards["plate"].astype(str).to_numpy()
    grid = np.linspace(x.min(), x.max(), 100)
    for i, plate in enumerate(list(coefs.index.astype(str))[:max_plates]):
        color = COLOR_MAP(i % COLOR_MAP.N)
        sel = plates == plate
        c = dict(zip(COEF_NAMES, coefs.loc[plate, list(COEF_NAMES)], strict=True))
        ax_ct.scatter(
            x[sel & det], standards[response].to_numpy()[sel & det], s=10, color=color
        )
        ax_ct.plot(grid, c["ct_intercept"] + c["ct_slope"] * grid, color=color, lw=1)
        lin = c["det_intercept"] + c["det_slope"] * grid
        ax_det.plot(grid, 1.0 / (1.0 + np.exp(-lin)), color=color, lw=1, label=plate)
    _apply_common_plot_style(ax_ct, "Standard curves", "log(conc)", "Ct")
    _apply_common_plot_style(ax_det, "Detection", "log(conc)", "P(detected)")
    ax_det.legend(fontsize="small")
    return fig
