"""CLI entrypoint for running the API server."""
from __future__ import annotations

import argparse
import os

from dotenv import load_dotenv


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the image generation jobs API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Port to bind (default: 8080)")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    args = parser.parse_args()

    # config reads the environment at import time, so .env must be loaded first.
    load_dotenv()
    from . import create_app

    app = create_app()
    manager = app.extensions["job_manager"]

    if not args.debug or os.environ.get("WERKZEUG_RUN_MAIN") == "true":
        print(f"Server running: API on http://{args.host}:{args.port}", flush=True)

    try:
        app.run(host=args.host, port=args.port, debug=args.debug)
    finally:
        manager.shutdown(wait=True)


if __name__ == "__main__":  # pragma: no cover
    main()
