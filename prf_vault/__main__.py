"""Command-line entry point to run the vault server."""

from __future__ import annotations

import argparse
import logging

from . import VaultSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PRF Vault relying party server")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8787, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format="%(message)s")
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    app = create_app(VaultSettings())
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
