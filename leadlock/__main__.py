"""Executable entrypoint: ``python -m leadlock``."""

from __future__ import annotations

import sys

import uvicorn

from leadlock.main import create_app
from leadlock.settings import ConfigurationError, load_settings, server_bind


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"leadlock: configuration error: {exc}", file=sys.stderr)
        sys.exit(2)
    host, port = server_bind()
    uvicorn.run(create_app(settings), host=host, port=port, workers=1)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
