#!/usr/bin/env python3
"""Main CLI entry point for pbi-capture using Typer.

The ``run`` command logs into the portal, opens the analytics page, waits
for the embedded report to issue its query traffic and writes the captured
events to a JSON artifact.
"""

import asyncio
import logging
from enum import IntEnum
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .. import __version__
from ..capture.engine import CaptureEngine
from ..capture.errors import ConfigurationInvalidError, PersistenceError
from ..models.capture import RunOutcome, RunResult
from .config import load_configuration, print_configuration, validate_configuration

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes."""
    SUCCESS = 0            # Run completed, including runs that captured nothing
    LOGIN_FAILED = 2       # Login retry budget exhausted
    CONFIG_ERROR = 3       # Missing or invalid configuration
    RUNTIME_ERROR = 4      # Unexpected failure during the run
    PERSISTENCE_ERROR = 5  # Artifact could not be written


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


app = typer.Typer(
    name="pbi-capture",
    help="Capture Power BI report query traffic from the analytics portal",
    add_completion=False,
)


@app.callback()
def main():
    """
    pbi-capture - record the query requests an embedded report issues.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"pbi-capture v{__version__}")


def configure_logging(verbose: bool, quiet: bool) -> None:
    """Configure root logging once for the process."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def format_summary(result: RunResult) -> str:
    """One-line human readable run summary."""
    artifact = str(result.artifact_path) if result.artifact_path else "none"
    mode = "headless" if result.headless else "headful"
    line = (
        f"outcome={result.outcome.value} events={result.events_captured} "
        f"artifact={artifact} mode={mode} escalated={'yes' if result.escalated else 'no'} "
        f"login_attempts={result.login_attempts} targets={len(result.targets)}"
    )
    if result.duration_seconds is not None:
        line += f" duration={result.duration_seconds:.1f}s"
    return line


def exit_code_for(result: RunResult) -> ExitCode:
    if result.outcome == RunOutcome.LOGIN_FAILED:
        return ExitCode.LOGIN_FAILED
    return ExitCode.SUCCESS


@app.command()
def run(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a YAML or JSON configuration file")
    ] = None,

    # Browser options
    headful: Annotated[
        Optional[bool],
        typer.Option("--headful/--headless", help="Start with a visible browser window")
    ] = None,

    # Capture options
    policy: Annotated[
        Optional[str],
        typer.Option("--policy", help="Capture policy: fixed or cyclic")
    ] = None,

    wait_window_ms: Annotated[
        Optional[int],
        typer.Option("--wait-window-ms", help="Monitoring window in milliseconds")
    ] = None,

    escalate: Annotated[
        Optional[bool],
        typer.Option("--escalate/--no-escalate", help="Relaunch headful once if headless captured nothing")
    ] = None,

    backend: Annotated[
        Optional[str],
        typer.Option("--backend", help="Listener backend: page or cdp")
    ] = None,

    # Output options
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Artifact path")
    ] = None,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging")
    ] = False,

    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Warnings and errors only")
    ] = False,

    # Configuration debugging
    print_config: Annotated[
        bool,
        typer.Option("--print-config", help="Print effective configuration and exit")
    ] = False,
):
    """
    Log in, open the analytics page and capture report query traffic.

    Examples:

        # Credentials from the environment or a .env file
        pbi-capture run

        # Watch the browser and stop after a fixed two minute window
        pbi-capture run --headful --policy fixed --wait-window-ms 120000

        # Use the DevTools network backend and a custom artifact path
        pbi-capture run --backend cdp --output runs/queries.json
    """
    # Build CLI overrides dictionary - only include values that were explicitly provided
    cli_overrides = {}

    if headful is not None:
        cli_overrides["browser"] = {"headful": headful}

    capture_config = {}
    if policy is not None:
        capture_config["policy"] = policy
    if wait_window_ms is not None:
        capture_config["wait_window_ms"] = wait_window_ms
    if escalate is not None:
        capture_config["escalate"] = escalate
    if backend is not None:
        capture_config["backend"] = backend
    if capture_config:
        cli_overrides["capture"] = capture_config

    output_config = {}
    if output is not None:
        output_config["output_file"] = output
    if verbose:
        output_config["verbose"] = True
    if quiet:
        output_config["quiet"] = True
    if output_config:
        cli_overrides["output"] = output_config

    # Load configuration with precedence
    try:
        full_config = load_configuration(
            config_file=config_file,
            cli_overrides=cli_overrides,
            search_paths=[Path.cwd()]
        )

        if print_config:
            typer.echo("# Effective Configuration")
            typer.echo("# Loaded from: " + " -> ".join(full_config.loaded_from))
            typer.echo(print_configuration(full_config))
            raise typer.Exit()

        validate_configuration(full_config)

    except ConfigurationInvalidError as e:
        for problem in e.problems:
            typer.echo(f"❌ Configuration error: {problem}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    except typer.Exit:
        raise

    except Exception as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    configure_logging(full_config.output.verbose, full_config.output.quiet)
    logger.info(f"Configuration loaded from: {' -> '.join(full_config.loaded_from)}")

    engine = CaptureEngine(full_config.to_credentials(), full_config.to_engine_config())

    try:
        result = asyncio.run(engine.run())

    except PersistenceError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=ExitCode.PERSISTENCE_ERROR.value)

    except KeyboardInterrupt:
        typer.echo("\n⚠️  Capture interrupted by user", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        typer.echo(f"❌ Capture failed: {e}", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)

    typer.echo(format_summary(result))
    code = exit_code_for(result)
    if code != ExitCode.SUCCESS:
        typer.echo(f"❌ {result.error}", err=True)
    raise typer.Exit(code=code.value)


if __name__ == "__main__":
    app()
