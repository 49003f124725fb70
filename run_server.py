"""API server entry point.

Usage:
    python run_server.py

    # Custom host/port and downloader binary:
    python run_server.py --host 0.0.0.0 --port 9000 --downloader /opt/bin/apple-music-dl
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Music Downloader API Server")
    parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: 8080)")
    parser.add_argument("--downloader", default=None, help="Path to the apple-music-dl executable")
    parser.add_argument("--timeout", type=int, default=None, help="Default job timeout in seconds")
    parser.add_argument("--log-level", default=None, choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    import uvicorn

    from music_dl_api.api.config import ApiSettings
    from music_dl_api.api.main import create_app

    overrides = {
        "host": args.host,
        "port": args.port,
        "downloader_path": args.downloader,
        "default_timeout": args.timeout,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    settings = ApiSettings(**{k: v for k, v in overrides.items() if v is not None})
    app = create_app(settings)

    logger.info("Starting Music Downloader API on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
