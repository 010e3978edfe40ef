"""Calibration CLI commands."""

from dataclasses import replace
from pathlib import Path
from typing import Optional

import numpy as np
import typer
import yaml

from triad_calibration.calibration_io import load_measurements, save_calibration_result
from triad_calibration.cli.main import calibrate_app
from triad_calibration.config import CalibrationConfig, get_default_config
from triad_calibration.exceptions import CalibrationError
from triad_calibration.factory import SessionFactory
from triad_calibration.measurement_model import KnownNormMeasurementModel
from triad_calibration.parameters import PARAMETER_NAMES
from triad_calibration.session import CalibrationResult


def _print_result(result: CalibrationResult) -> None:
    params = result.parameters
    inliers = result.inliers_data

    typer.echo(f"Method:      {result.method.value}")
    typer.echo(f"Iterations:  {result.iterations}")
    typer.echo(f"Inliers:     {inliers.num_inliers}/{result.num_measurements} "
               f"(outlier ratio {inliers.outlier_ratio:.1%})")
    typer.echo(f"Refined:     {result.refined}")
    typer.echo(f"MSE:         {result.mse:.6e}")
    typer.echo(f"Chi-square:  {result.chi_sq:.6e}")
    typer.echo("")
    typer.echo("Bias:")
    typer.echo(f"  {np.array2string(params.bias, precision=9)}")
    typer.echo("Scale / cross-coupling matrix:")
    for row in params.matrix:
        typer.echo(f"  {np.array2string(row, precision=9)}")

    if result.covariance is not None:
        std = np.sqrt(np.maximum(np.diag(result.covariance), 0.0))
        typer.echo("Standard deviations:")
        for name, value in zip(PARAMETER_NAMES, std):
            typer.echo(f"  {name:>3}: {value:.3e}")


@calibrate_app.command("run")
def run_command(
    measurements_file: Path = typer.Option(..., "--measurements", help="Path to measurements YAML file"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="Path to calibration config YAML file"),
    method: Optional[str] = typer.Option(None, help="Robust method: ransac, lmeds, msac, prosac, promeds"),
    threshold: Optional[float] = typer.Option(None, help="Inlier (or LMedS stop) threshold"),
    common_axis: Optional[bool] = typer.Option(None, "--common-axis/--general", help="Assume common-axis sensor"),
    seed: Optional[int] = typer.Option(None, help="Random seed for subset sampling"),
    norm: Optional[float] = typer.Option(None, help="Known field magnitude; calibrate from magnitudes only"),
    output: Optional[Path] = typer.Option(None, help="Write the result to this YAML file"),
) -> None:
    """
    Run a robust calibration on a measurement file.

    Command-line options override values from the config file.

    Example:
        triad calibrate run --measurements data/mag.yaml --method ransac
            --threshold 1e-3 --output results/mag_calibration.yaml

        triad calibrate run --measurements data/accel.yaml --norm 9.81
    """
    try:
        config = CalibrationConfig.from_yaml(str(config_file)) if config_file else get_default_config()
        overrides = {
            key: value for key, value in (
                ('method', method),
                ('threshold', threshold),
                ('common_axis', common_axis),
                ('seed', seed),
            ) if value is not None
        }
        if overrides:
            config = replace(config, **overrides)
        measurements = load_measurements(str(measurements_file))
        model = KnownNormMeasurementModel(norm) if norm is not None else None
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    try:
        session = SessionFactory.from_config(config, measurements=measurements, model=model)
        result = session.calibrate()
    except (CalibrationError, ValueError) as e:
        typer.echo(f"Calibration failed: {e}", err=True)
        raise typer.Exit(1)

    _print_result(result)

    if output is not None:
        save_calibration_result(result, str(output))
        typer.echo(f"\nResult written to {output}")


@calibrate_app.command("example-config")
def example_config_command() -> None:
    """Print a calibration config YAML with default values."""
    typer.echo(yaml.safe_dump({'calibration': get_default_config().to_dict()},
                              default_flow_style=False, sort_keys=False), nl=False)
