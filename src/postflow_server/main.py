import argparse
from typing import Optional, Sequence

from postflow_core.config.settings import settings
from postflow_core.logs import configure_logging


def serve(
    host: str,
    port: int,
    log_level: str,
) -> None:
    import uvicorn

    configure_logging(log_level)
    uvicorn.run(
        "postflow_server.app:app",
        host=host,
        port=port,
        reload=False,
        timeout_keep_alive=30,
        timeout_graceful_shutdown=60,
        log_level=log_level.lower(),
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="postflow-server")
    parser.add_argument("--host", "-H", default=settings.host, help="Server host")
    parser.add_argument("--port", "-p", type=int, default=settings.port, help="Server port")
    parser.add_argument("--log-level", "-l", default=settings.log_level, help="Logging level")

    args = parser.parse_args(argv)
    serve(host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
