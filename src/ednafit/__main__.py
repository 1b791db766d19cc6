"""Command-line interface."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import pandas as pd
from click import Context, Path as cPath

from ednafit import __out_dir__, configure_logging
from ednafit.fitting.core import fit_spatial
from ednafit.fitting.data_structures import FieldConfig
from ednafit.fitting.errors import EdnaFitError, FileFormatError
from ednafit.fitting.families import FAMILIES
from ednafit.fitting.mesh import make_mesh
from ednafit.fitting.plotting import (
    plot_qq,
    plot_standard_curves,
    plot_statistic_check,
)
from ednafit.fitting.residuals import (
    JointUncertaintyResiduals,
    MCMCResiduals,
    QuantileResiduals,
    SimulationResiduals,
    compare_statistic,
    compute_residuals,
    residual_dataframe,
    residual_statistics,
    validate_residuals,
)
from ednafit.testing.synthetic import make_edna_dataset

if TYPE_CHECKING:
    from collections.abc import Callable

    from ednafit.fitting.core import SpatialFit
    from ednafit.fitting.residuals import ResidualMode

RESIDUAL_MODES = ("quantile", "mcmc", "simulation", "mle-mvn")


@click.group()
@click.pass_context
@click.version_option(message="%(version)s")
@click.option("--verbose", "-v", count=True, help="Increase verbosity: -v for INFO, -vv for DEBUG. Default is WARNING.")  # fmt: skip
@click.option("--quiet", "-q", is_flag=True, help="Silence terminal output; show only ERROR messages.")  # fmt: skip
@click.option("--out", "-o", type=cPath(), help="Output folder.")
def ednafit(ctx: Context, verbose: int, quiet: bool, out: str) -> None:  # pragma: no cover
    """Simulate eDNA surveys and fit calibrated spatial models."""
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["QUIET"] = quiet
    if out:
        ctx.obj["OUT"] = out


def _setup(ctx: Context, command: str) -> tuple[Path, logging.Logger]:
    out = Path(ctx.obj.get("OUT", __out_dir__))
    out.mkdir(parents=True, exist_ok=True)
    configure_logging(
        verbose=ctx.obj.get("VERBOSE", 0),
        quiet=ctx.obj.get("QUIET", False),
        log_file=str(out / f"ednafit_{command}.log"),
    )
    logger = logging.getLogger(f"ednafit.cli.{command}")
    logger.debug("CLI started")
    return out, logger


def _read_table(path: str, required: tuple[str, ...]) -> pd.DataFrame:
    """Read a CSV table and check its columns."""
    try:
        table = pd.read_csv(path, dtype={"plate": str})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise FileFormatError(path, "CSV table", str(e)) from e
    missing = [c for c in required if c not in table.columns]
    if missing:
        raise FileFormatError(path, f"CSV with columns {list(required)}", f"missing {missing}")
    return table


######################################
# simulate                           #
######################################
@ednafit.command()
@click.pass_context
@click.option("--seed", type=int, default=123, show_default=True, help="Random seed.")
@click.option("--n-plates", type=int, default=50, show_default=True, help="Number of qPCR plates.")  # fmt: skip
@click.option("--n-replicates", type=int, default=3, show_default=True, help="Replicates per standard concentration.")  # fmt: skip
@click.option("--n-locations", type=int, default=500, show_default=True, help="Number of field samples.")  # fmt: skip
@click.option("--ct-sd", type=float, default=0.01, show_default=True, help="Ct noise SD.")  # fmt: skip
@click.option("--range", "range_", type=float, default=0.3, show_default=True, help="Field practical range.")  # fmt: skip
@click.option("--sigma-o", type=float, default=1.0, show_default=True, help="Spatial field SD.")  # fmt: skip
@click.option("--png/--no-png", default=True, show_default=True, help="Whether to export PNG files.")  # fmt: skip
def simulate(  # noqa: PLR0913
    ctx: Context,
    seed: int,
    n_plates: int,
    n_replicates: int,
    n_locations: int,
    ct_sd: float,
    range_: float,
    sigma_o: float,
    png: bool,
) -> None:
    """Write synthetic standards, observations and plate coefficients."""
    out, logger = _setup(ctx, "simulate")
    try:
        data = make_edna_dataset(
            seed, n_plates=n_plates, n_replicates=n_replicates,
            n_locations=n_locations, ct_sd=ct_sd, range_=range_, sigma_o=sigma_o,
        )  # fmt: skip
    except EdnaFitError as e:
        raise click.ClickException(str(e)) from e
    data.standards.to_csv(out / "standards.csv", index=False)
    data.observations.to_csv(out / "observations.csv", index=False)
    data.plate_coefs.to_csv(out / "plates.csv")
    if png:
        fig = plot_standard_curves(data.standards, data.plate_coefs)
        fig.savefig(out / "standard_curves.png")
    logger.info("Wrote synthetic tables to %s", out.resolve())
    click.echo(
        f"{len(data.standards)} standards, {len(data.observations)} observations -> {out}"
    )


def _fit_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by the commands that fit a model."""
    options = [
        click.argument("observations", type=cPath(exists=True, path_type=str)),
        click.argument("standards", type=cPath(exists=True, path_type=str), required=False),  # fmt: skip
        click.option("--response", default="ct", show_default=True, help="Response column."),  # fmt: skip
        click.option("--family", type=click.Choice(sorted(FAMILIES)), help="Response family without standards (default gaussian)."),  # fmt: skip
        click.option("--covariate", "covariates", multiple=True, help="Covariate column (repeatable)."),  # fmt: skip
        click.option("--time", type=str, help="Time column for spatiotemporal fields."),
        click.option("--spatiotemporal", type=click.Choice(["off", "iid"]), default="off", show_default=True, help="Spatiotemporal field."),  # fmt: skip
        click.option("--field/--no-field", default=True, show_default=True, help="Whether to include the spatial field."),  # fmt: skip
        click.option("--n-knots", type=int, default=40, show_default=True, help="Mesh knots."),  # fmt: skip
        click.option("--range", "range_", type=float, default=0.3, show_default=True, help="Field practical range."),  # fmt: skip
        click.option("--sigma-o", type=float, default=1.0, show_default=True, help="Spatial field SD."),  # fmt: skip
        click.option("--sigma-e", type=float, default=0.5, show_default=True, help="Spatiotemporal field SD."),  # fmt: skip
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _run_fit(  # noqa: PLR0913
    observations: str,
    standards: str | None,
    response: str,
    family: str | None,
    covariates: tuple[str, ...],
    time: str | None,
    spatiotemporal: str,
    field: bool,
    n_knots: int,
    range_: float,
    sigma_o: float,
    sigma_e: float,
) -> SpatialFit:
    obs = _read_table(observations, (response,))
    std = _read_table(standards, ("plate", "known_conc_ul")) if standards else None
    config = FieldConfig(
        spatial="on" if field else "off",
        spatiotemporal=spatiotemporal,
        range=range_,
        sigma_o=sigma_o,
        sigma_e=sigma_e,
    )
    mesh = make_mesh(obs, n_knots=n_knots, seed=0) if config.has_field else None
    return fit_spatial(
        obs, mesh, response=response, family=family, standards=std,
        covariates=covariates, time=time, field=config,
    )  # fmt: skip


######################################
# fit                                #
######################################
@ednafit.command()
@click.pass_context
@_fit_options
def fit(ctx: Context, **kwargs: Any) -> None:
    """Fit OBSERVATIONS, calibrated by STANDARDS when given.

    Writes tidy estimates, random effects and predictions as CSV.
    """
    out, logger = _setup(ctx, "fit")
    try:
        sfit = _run_fit(**kwargs)
    except EdnaFitError as e:
        raise click.ClickException(str(e)) from e
    tidy = pd.concat(
        [sfit.tidy("fixed").assign(effects="fixed"),
         sfit.tidy("ran_pars").assign(effects="ran_pars")],
        ignore_index=True,
    )  # fmt: skip
    tidy.to_csv(out / "tidy.csv", index=False)
    sfit.random_effects().to_csv(out / "random_effects.csv")
    sfit.predict().to_csv(out / "predictions.csv", index=False)
    logger.info("Sanity: %s", sfit.sanity())
    click.echo(sfit.pprint())


######################################
# residuals                          #
######################################
def _residual_mode(mode: str, n_sims: int, new_fields: bool) -> ResidualMode:
    if mode == "quantile":
        return QuantileResiduals()
    if mode == "mcmc":
        return MCMCResiduals()
    if mode == "simulation" and not new_fields:
        return SimulationResiduals(n_sims)
    return JointUncertaintyResiduals(
        n_sims, mle_mvn=mode == "mle-mvn", new_fields=new_fields
    )


@ednafit.command()
@click.pass_context
@_fit_options
@click.option("--mode", type=click.Choice(RESIDUAL_MODES), default="quantile", show_default=True, help="Residual type.")  # fmt: skip
@click.option("--n-sims", type=int, default=100, show_default=True, help="Simulations for simulation-based modes.")  # fmt: skip
@click.option("--new-fields", is_flag=True, help="Draw new random fields in simulations.")
@click.option("--seed", type=int, default=None, help="Random seed.")
@click.option("--png/--no-png", default=True, show_default=True, help="Whether to export PNG files.")  # fmt: skip
def residuals(  # noqa: PLR0913
    ctx: Context,
    mode: str,
    n_sims: int,
    new_fields: bool,
    seed: int | None,
    png: bool,
    **kwargs: Any,
) -> None:
    """Fit OBSERVATIONS and write residual diagnostics."""
    out, logger = _setup(ctx, "residuals")
    try:
        sfit = _run_fit(**kwargs)
        result = compute_residuals(
            sfit, _residual_mode(mode, n_sims, new_fields), seed=seed
        )
    except EdnaFitError as e:
        raise click.ClickException(str(e)) from e
    df = residual_dataframe(sfit, result)
    df.to_csv(out / "residuals.csv", index=False)
    residual_statistics(df).to_csv(out / "residual_statistics.csv")
    checks = validate_residuals(result.values)
    if png:
        plot_qq(result.values, title=f"{mode} residuals").savefig(out / "qq.png")
    if result.simulated is not None:
        check = compare_statistic(result.observed, result.simulated)
        click.echo(f"zero proportion: observed {check.observed:.3f}, p = {check.p_value:.3f}")
        if png:
            plot_statistic_check(check).savefig(out / "zero_proportion.png")
    logger.info("Residual checks: %s", checks)
    click.echo(f"{len(result.values)} residuals ({result.n_dropped} non-finite)")
    for name, ok in checks.items():
        click.echo(f"  {name}: {'yes' if ok else 'NO'}")
