"""postflow CLI - Main entry point."""

import typer

from postflow_cli.commands import jobs
from postflow_core.config.settings import settings

app = typer.Typer(
    help="postflow - content automation job queue",
    no_args_is_help=True,
)

app.add_typer(jobs.app, name="jobs", help="Job administration")


@app.command("serve")
def serve(
    host: str = typer.Option(settings.host, help="Server host"),
    port: int = typer.Option(settings.port, help="Server port"),
    log_level: str = typer.Option(settings.log_level, help="Logging level"),
) -> None:
    """Run the API server with the job scheduler."""
    from postflow_server.main import serve as run_server

    run_server(host=host, port=port, log_level=log_level)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
