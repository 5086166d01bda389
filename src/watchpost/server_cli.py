"""CLI entry point for the watchpost admin API server."""

import argparse
import os


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="watchpost-server",
        description="watchpost admin API and background scheduler",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    parser.add_argument(
        "--local",
        action="store_true",
        help="Local dev mode: SQLite database, console logs",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API only; scans, delivery and retention run elsewhere",
    )
    args = parser.parse_args(argv)

    # must be set before watchpost.config is imported by the app
    if args.local:
        os.environ["WATCHPOST_LOCAL_MODE"] = "1"
    if args.no_scheduler:
        os.environ["WATCHPOST_SCHEDULER_ENABLED"] = "0"

    import uvicorn

    uvicorn.run("watchpost.main:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
