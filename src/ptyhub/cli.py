"""CLI entry point for ptyhub."""

from __future__ import annotations

import logging

import typer

from ptyhub import __version__
from ptyhub.config import HubConfig

app = typer.Typer(
    name="ptyhub",
    help="Keep interactive CLI agents running and attach to them from the browser.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Bind address (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Listen port (default: from env/config)."
    ),
    command: str | None = typer.Option(
        None, "--command", help="Default agent command for new sessions."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the terminal multiplexer server."""
    import uvicorn

    from ptyhub.web.app import create_app

    setup_logging(verbose)

    config = HubConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if command:
        config.spawn.command = command

    typer.echo(f"ptyhub v{__version__}")
    typer.echo(f"Listening: http://{config.server.host}:{config.server.port}")
    typer.echo(f"Default command: {config.spawn.command}")
    typer.echo(f"Attach policy: {config.mux.attach_policy.value}")
    typer.echo("---")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def version() -> None:
    """Print the version."""
    typer.echo(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
