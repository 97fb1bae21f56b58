#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py
    Gunicorn:     python run_server.py --gunicorn
                  (same as: gunicorn directory_sync.main:app -c gunicorn.conf.py)

Every worker process runs its own refresh coordinator. Builds from several
workers serialize on the scope's version pointer row, so extra workers cost
duplicate builds, not correctness.
"""

import argparse
import os
import subprocess

import uvicorn

from directory_sync.config import get_settings

APP = "directory_sync.main:app"


def run_dev_server(port: int) -> None:
    """Single process with auto-reload."""
    uvicorn.run(
        APP,
        host="127.0.0.1",
        port=port,
        reload=True,
        reload_dirs=["directory_sync"],
        log_level="debug",
    )


def run_prod_server(port: int) -> None:
    settings = get_settings()
    uvicorn.run(
        APP,
        host=settings.api_host,
        port=port,
        workers=settings.api_workers,
        log_level=settings.monitoring.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


def run_gunicorn() -> None:
    subprocess.run(["gunicorn", APP, "-c", "gunicorn.conf.py"], check=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Directory Category Sync API Server")
    parser.add_argument("--dev", action="store_true", help="Run with auto-reload")
    parser.add_argument("--gunicorn", action="store_true", help="Run under Gunicorn")
    parser.add_argument("--port", type=int, default=None, help="Port (default: API_PORT)")
    args = parser.parse_args()

    port = args.port or get_settings().api_port
    os.environ["API_PORT"] = str(port)

    if args.dev:
        run_dev_server(port)
    elif args.gunicorn:
        run_gunicorn()
    else:
        run_prod_server(port)


if __name__ == "__main__":
    main()
