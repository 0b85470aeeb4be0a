"""Command-line interface for almost-matching-exactly."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer

from .api import run_ame
from .datagen import gen_data
from .errors import AMEError, ConfigError
from .preprocess import load_tabular
from .results import AMEResult, estimate_ate

app = typer.Typer(help="FLAME and DAME matching on categorical covariates")


def _load(path: Path) -> pd.DataFrame:
    try:
        return load_tabular(path)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _echo_summary(result: AMEResult) -> None:
    """Pretty-print the main outputs of one run."""

    typer.secho("\nMatching", fg=typer.colors.CYAN)
    typer.echo(f"Matched units: {result.n_matched} of {len(result.data)}")
    typer.echo(f"Matched groups: {len(result.MGs)}")
    typer.echo(f"Iterations: {len(result.matching_covs) - 1}")
    typer.echo(f"Stopped because: {result.stop_reason}")

    if result.CATE is not None and result.MGs:
        typer.secho("\nAverage treatment effect", fg=typer.colors.CYAN)
        typer.echo(f"ATE: {estimate_ate(result):.4f}")


def _groups_table(result: AMEResult) -> pd.DataFrame:
    rows = []
    for group_id, (members, matched_on) in enumerate(zip(result.MGs, result.matched_on)):
        for member in members:
            rows.append({"group": group_id, "unit": member, **matched_on})
    table = pd.DataFrame(rows)
    if result.CATE is not None and not table.empty:
        table["CATE"] = result.CATE[table["group"].to_numpy()]
    return table


def _trace_table(result: AMEResult) -> pd.DataFrame:
    table = pd.DataFrame({"dropped": [";".join(names) for names in result.dropped]})
    if result.PE is not None:
        table["PE"] = result.PE
    if result.BF is not None:
        table["BF"] = result.BF
    return table


def _save_outputs(result: AMEResult, *, output_dir: Optional[Path], prefix: str) -> None:
    if output_dir is None:
        return
    output_dir.mkdir(parents=True, exist_ok=True)
    matched_path = output_dir / f"{prefix}_matched.csv"
    groups_path = output_dir / f"{prefix}_groups.csv"
    result.data.to_csv(matched_path, index_label="unit")
    _groups_table(result).to_csv(groups_path, index=False)
    typer.echo(f"Saved matched data to {matched_path}")
    typer.echo(f"Saved matched groups to {groups_path}")
    if result.PE is not None or result.BF is not None:
        trace_path = output_dir / f"{prefix}_trace.csv"
        _trace_table(result).to_csv(trace_path, index_label="iteration")
        typer.echo(f"Saved iteration trace to {trace_path}")


@app.command()
def run(
    data_path: Path = typer.Argument(..., help="Data to match (CSV or Parquet)."),
    holdout: str = typer.Option("0.1", help="Holdout file, or the fraction of the data to hold out."),
    algo: str = typer.Option("flame", help="Either 'flame' or 'dame'."),
    C: float = typer.Option(0.1, "--C", help="Weight of the balancing factor against predictive error."),
    treated_column: str = typer.Option("treated", help="Binary treatment indicator column."),
    outcome_column: str = typer.Option("outcome", help="Outcome column."),
    pe_method: str = typer.Option("ridge", help="Predictive error model: 'ridge' or 'xgb'."),
    n_flame_iters: int = typer.Option(0, help="DAME only: iterations run in FLAME mode first."),
    replace: bool = typer.Option(False, help="Allow units to be matched more than once."),
    missing_data: str = typer.Option("none", help="none, drop, impute, keep or ignore."),
    missing_holdout: str = typer.Option("none", help="none, drop, impute or ignore."),
    early_stop_iterations: Optional[int] = typer.Option(None, help="Maximum number of iterations."),
    early_stop_epsilon: float = typer.Option(0.25, help="Allowed relative PE increase over the baseline."),
    early_stop_bf: float = typer.Option(0.0, help="Stop when BF would fall below this value."),
    early_stop_pe: Optional[float] = typer.Option(None, help="Stop when PE would exceed this value."),
    early_stop_control: float = typer.Option(0.0, help="Stop when the unmatched control share would drop below this."),
    early_stop_treated: float = typer.Option(0.0, help="Stop when the unmatched treated share would drop below this."),
    missing_data_imputations: int = typer.Option(5, help="Imputed datasets when --missing-data impute."),
    missing_holdout_imputations: int = typer.Option(5, help="Imputed holdout sets when --missing-holdout impute."),
    impute_with_treatment: bool = typer.Option(True, help="Use the treatment as a predictor when imputing."),
    impute_with_outcome: bool = typer.Option(False, help="Use the outcome as a predictor when imputing."),
    return_pe: bool = typer.Option(False, help="Record the PE of every iteration."),
    return_bf: bool = typer.Option(False, help="Record the BF of every iteration."),
    random_state: int = typer.Option(0, help="Seed for the holdout split, imputation and PE models."),
    n_jobs: int = typer.Option(1, help="Parallel jobs across imputed datasets."),
    verbose: int = typer.Option(2, help="0 silent, 1 stop reason, 2 every 5 iterations, 3 every iteration."),
    output_dir: Optional[Path] = typer.Option(
        None, help="Optional directory where the matched data and matched groups are saved."
    ),
    prefix: str = typer.Option("ame", help="Prefix for saved artefacts."),
) -> None:
    """Run FLAME or DAME on a tabular dataset."""

    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format="%(levelname)s %(message)s")
    df = _load(data_path)
    try:
        holdout_spec = float(holdout)
    except ValueError:
        holdout_spec = _load(Path(holdout))

    kwargs = {}
    if early_stop_iterations is not None:
        kwargs["early_stop_iterations"] = early_stop_iterations
    if early_stop_pe is not None:
        kwargs["early_stop_pe"] = early_stop_pe
    try:
        results = run_ame(
            df,
            holdout_spec,
            algo=algo,
            C=C,
            treated_column_name=treated_column,
            outcome_column_name=outcome_column,
            PE_method=pe_method,
            n_flame_iters=n_flame_iters,
            replace=replace,
            missing_data=missing_data,
            missing_holdout=missing_holdout,
            early_stop_epsilon=early_stop_epsilon,
            early_stop_bf=early_stop_bf,
            early_stop_control=early_stop_control,
            early_stop_treated=early_stop_treated,
            missing_data_imputations=missing_data_imputations,
            missing_holdout_imputations=missing_holdout_imputations,
            impute_with_treatment=impute_with_treatment,
            impute_with_outcome=impute_with_outcome,
            return_pe=return_pe,
            return_bf=return_bf,
            random_state=random_state,
            n_jobs=n_jobs,
            verbose=verbose,
            **kwargs,
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except AMEError as exc:
        typer.secho(f"Matching failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    if isinstance(results, AMEResult):
        results = [results]
    for i, result in enumerate(results):
        if len(results) > 1:
            typer.secho(f"\nImputation {i + 1} of {len(results)}", fg=typer.colors.YELLOW)
        _echo_summary(result)
        _save_outputs(result, output_dir=output_dir, prefix=prefix if len(results) == 1 else f"{prefix}_{i + 1}")


@app.command()
def simulate(
    output_path: Path = typer.Argument(..., help="Where to write the simulated CSV."),
    n: int = typer.Option(250, help="Number of units."),
    p: int = typer.Option(5, help="Number of covariates."),
    n_levels: int = typer.Option(2, help="Levels per covariate."),
    seed: Optional[int] = typer.Option(None, help="Random seed."),
) -> None:
    """Write a synthetic dataset with categorical covariates."""

    df = gen_data(n, p, n_levels=n_levels, random_state=seed)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False)
    typer.echo(f"Saved {n} simulated units to {output_path}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
