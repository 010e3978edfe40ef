"""Main Typer CLI application for triaxial calibration tools."""

import logging

import typer

app = typer.Typer(
    help="Robust calibration tools for triaxial sensors",
    no_args_is_help=True,
)

calibrate_app = typer.Typer(help="Calibration commands")

app.add_typer(calibrate_app, name="calibrate")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _register_commands() -> None:
    """
    Import command modules to register commands with their respective apps.

    Commands use decorators like @calibrate_app.command() which register
    themselves when the module is imported.
    """
    from triad_calibration.cli import calibrate

    _ = calibrate


_register_commands()


if __name__ == "__main__":
    app()
