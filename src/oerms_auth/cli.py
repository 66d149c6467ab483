"""Command-line interface for the OERMS auth companion app."""

from __future__ import annotations

import asyncio
import sys

import typer

from oerms_auth import __version__
from oerms_auth.config import Config, ConfigError, load_config
from oerms_auth.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="oerms-auth",
    help="OERMS auth core - OAuth2 PKCE login, session and policy gate",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"oerms-auth version {__version__}")
        typer.echo(f"Python {sys.version}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """OERMS auth CLI."""


@app.command()
def serve(
    config_path: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file (JSON or YAML)",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
) -> None:
    """Serve the login, callback, logout and session endpoints."""
    cli_args: dict[str, str | int | None] = {
        "log_level": log_level,
        "host": host,
        "port": port,
    }

    try:
        config = load_config(path=config_path, cli_args=cli_args)
        setup_logging(config)
        logger = get_logger(__name__)
        logger.info(
            "Starting %s (env: %s, auth server: %s)",
            config.app_name,
            config.environment.value,
            config.auth_server_url,
        )
        asyncio.run(_serve(config))
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        get_logger(__name__).info("Shutting down (keyboard interrupt)")
        raise typer.Exit(code=0) from None


async def _serve(config: Config) -> None:
    from oerms_auth.services import build_services
    from oerms_auth.web import create_app, run_app

    services = build_services(config)
    await run_app(create_app(services), config.host, config.port)


@app.command("login-url")
def login_url(
    config_path: str | None = typer.Option(
        None, "--config", "-c", help="Path to configuration file (JSON or YAML)"
    ),
) -> None:
    """Start a login and print the authorization URL to open in a browser.

    Requires file-backed storage so the callback can find the recorded
    state and verifier.
    """
    try:
        config = load_config(path=config_path)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1) from None

    if not config.storage_path:
        typer.echo("login-url needs storage_path and storage_encryption_key", err=True)
        raise typer.Exit(code=1)

    setup_logging(config)
    typer.echo(asyncio.run(_begin_login(config)))


async def _begin_login(config: Config) -> str:
    from oerms_auth.services import build_services

    services = build_services(config)
    try:
        return await services.oauth_flow.begin_login(services.protocol_state)
    finally:
        await services.oauth_flow.close()


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"oerms-auth version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
