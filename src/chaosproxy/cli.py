# src/chaosproxy/cli.py
"""CLI for the ChaosProxy fault-injecting reverse proxy.

Usage:
    chaosproxy serve --destination=http://127.0.0.1:9000                # No faults
    chaosproxy serve -d http://127.0.0.1:9000 --preset=lossy             # Use a preset
    chaosproxy serve --config=my_proxy.yaml --port=8400                  # Custom config
    chaosproxy serve -d http://api:80 --drop-probability=0.1 --seed=42   # Override faults
    chaosproxy presets                                                   # List presets
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import pydantic
import typer
import yaml

from chaosproxy.config import list_presets, load_config

app = typer.Typer(
    name="chaosproxy",
    help="ChaosProxy: Fault-injecting HTTP reverse proxy for resilience testing.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from chaosproxy import __version__

        typer.echo(f"chaosproxy {__version__}")
        raise typer.Exit()


def _fault_overrides(
    *,
    destination: str | None,
    drop_probability: float | None,
    pre_delay_rate: float | None,
    pre_delay_max_ms: float | None,
    post_delay_rate: float | None,
    post_delay_max_ms: float | None,
    seed: int | None,
) -> dict[str, Any]:
    """Collect the fault flags that were actually given."""
    given = {
        "destination": destination,
        "drop_probability": drop_probability,
        "pre_delay_rate": pre_delay_rate,
        "pre_delay_max_ms": pre_delay_max_ms,
        "post_delay_rate": post_delay_rate,
        "post_delay_max_ms": post_delay_max_ms,
        "seed": seed,
    }
    return {key: value for key, value in given.items() if value is not None}


@app.command()
def serve(
    # Configuration sources
    preset: Annotated[
        str | None,
        typer.Option(
            "--preset",
            "-p",
            help="Preset configuration to use. Use 'chaosproxy presets' to list available.",
        ),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to YAML configuration file.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    destination: Annotated[
        str | None,
        typer.Option("--destination", "-d", help="Absolute URL to forward requests to."),
    ] = None,
    # Server binding
    host: Annotated[
        str,
        typer.Option("--host", "-h", help="Host address to bind to."),
    ] = "127.0.0.1",
    port: Annotated[
        int,
        typer.Option("--port", "-P", help="Port to listen on.", min=1, max=65535),
    ] = 8300,
    # Fault overrides
    drop_probability: Annotated[
        float | None,
        typer.Option("--drop-probability", help="Probability of dropping a request.", min=0.0, max=1.0),
    ] = None,
    pre_delay_rate: Annotated[
        float | None,
        typer.Option("--pre-delay-rate", help="Exponential rate (per ms) of the delay before forwarding."),
    ] = None,
    pre_delay_max_ms: Annotated[
        float | None,
        typer.Option("--pre-delay-max-ms", help="Maximum delay before forwarding, in ms.", min=0.0),
    ] = None,
    post_delay_rate: Annotated[
        float | None,
        typer.Option("--post-delay-rate", help="Exponential rate (per ms) of the delay after the response."),
    ] = None,
    post_delay_max_ms: Annotated[
        float | None,
        typer.Option("--post-delay-max-ms", help="Maximum delay after the response, in ms.", min=0.0),
    ] = None,
    seed: Annotated[
        int | None,
        typer.Option("--seed", help="RNG seed for reproducible faults (0 = random).", min=0),
    ] = None,
    # Upstream
    timeout_sec: Annotated[
        float | None,
        typer.Option("--timeout-sec", help="Outbound network timeout in seconds.", min=0.001),
    ] = None,
    admin_prefix: Annotated[
        str | None,
        typer.Option("--admin-prefix", help="Mount health/stats/reset routes under this path prefix."),
    ] = None,
    # Logging
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level: DEBUG, INFO, WARNING, ERROR."),
    ] = None,
    json_logs: Annotated[
        bool | None,
        typer.Option("--json-logs/--console-logs", help="Emit JSON log lines."),
    ] = None,
    # Misc
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            callback=_version_callback,
            is_eager=True,
            help="Show version.",
        ),
    ] = False,
) -> None:
    """Start the ChaosProxy reverse proxy.

    Forwards every request to the destination, adding exponentially
    distributed delays before and after, and dropping a fraction of requests.

    Configuration precedence (highest to lowest):
    1. Command-line flags
    2. Config file (--config)
    3. Preset (--preset)
    4. Built-in defaults

    Examples:

        chaosproxy serve -d http://127.0.0.1:9000
        chaosproxy serve -d http://127.0.0.1:9000 --preset=slow_network
        chaosproxy serve -d http://127.0.0.1:9000 --drop-probability=0.25 --seed=7
    """
    cli_overrides: dict[str, Any] = {
        "server": {"host": host, "port": port},
    }

    fault_overrides = _fault_overrides(
        destination=destination,
        drop_probability=drop_probability,
        pre_delay_rate=pre_delay_rate,
        pre_delay_max_ms=pre_delay_max_ms,
        post_delay_rate=post_delay_rate,
        post_delay_max_ms=post_delay_max_ms,
        seed=seed,
    )
    if fault_overrides:
        cli_overrides["faults"] = fault_overrides
    if timeout_sec is not None:
        cli_overrides["upstream"] = {"timeout_sec": timeout_sec}
    if admin_prefix is not None:
        cli_overrides["admin_prefix"] = admin_prefix

    logging_overrides: dict[str, Any] = {}
    if log_level is not None:
        logging_overrides["level"] = log_level.upper()
    if json_logs is not None:
        logging_overrides["json_output"] = json_logs
    if logging_overrides:
        cli_overrides["logging"] = logging_overrides

    try:
        config = load_config(preset=preset, config_file=config_file, cli_overrides=cli_overrides)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e
    except (pydantic.ValidationError, yaml.YAMLError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    faults = config.faults
    typer.secho(
        f"Starting ChaosProxy on {config.server.host}:{config.server.port} -> {faults.destination}",
        fg=typer.colors.GREEN,
    )
    if preset:
        typer.echo(f"  Preset: {preset}")
    if config_file:
        typer.echo(f"  Config: {config_file}")
    typer.echo(f"  Drop probability: {faults.drop_probability:.3f}")
    if faults.pre_delay_rate > 0:
        typer.echo(f"  Pre-delay: mean {1 / faults.pre_delay_rate:.1f}ms, max {faults.pre_delay_max_ms:.0f}ms")
    else:
        typer.echo("  Pre-delay: disabled")
    if faults.post_delay_rate > 0:
        typer.echo(f"  Post-delay: mean {1 / faults.post_delay_rate:.1f}ms, max {faults.post_delay_max_ms:.0f}ms")
    else:
        typer.echo("  Post-delay: disabled")
    typer.echo(f"  Seed: {faults.seed if faults.seed else 'random'}")
    if config.admin_prefix:
        typer.echo(f"  Admin routes: {config.admin_prefix}/health, {config.admin_prefix}/stats")
    typer.echo()

    import uvicorn

    from chaosproxy.logging import configure_logging
    from chaosproxy.proxy import create_app

    configure_logging(json_output=config.logging.json_output, level=config.logging.level)
    proxy_app = create_app(config)
    uvicorn.run(
        proxy_app,
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    )


@app.command()
def presets() -> None:
    """List available preset configurations."""
    available = list_presets()
    if not available:
        typer.echo("No presets found.")
        return

    typer.secho("Available presets:", fg=typer.colors.GREEN)
    for name in sorted(available):
        typer.echo(f"  - {name}")

    typer.echo()
    typer.echo("Use with: chaosproxy serve --destination=<url> --preset=<name>")


@app.command()
def show_config(
    preset: Annotated[
        str | None,
        typer.Option("--preset", "-p", help="Preset to show configuration for."),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Config file to show.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    destination: Annotated[
        str | None,
        typer.Option("--destination", "-d", help="Destination URL (required unless the config file sets one)."),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: json or yaml."),
    ] = "yaml",
) -> None:
    """Show the effective configuration."""
    cli_overrides: dict[str, Any] | None = None
    if destination is not None:
        cli_overrides = {"faults": {"destination": destination}}
    try:
        config = load_config(preset=preset, config_file=config_file, cli_overrides=cli_overrides)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e
    except (pydantic.ValidationError, yaml.YAMLError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    config_dict = config.model_dump()
    if output_format == "json":
        typer.echo(json.dumps(config_dict, indent=2))
    else:
        typer.echo(yaml.dump(config_dict, default_flow_style=False, sort_keys=False))


def main() -> None:
    """Entry point for chaosproxy CLI."""
    app()


if __name__ == "__main__":
    main()
