"""
CORS File Proxy Server

Usage:
    python -m cors_proxy [--host HOST] [--port PORT]
"""

import argparse
import logging

import uvicorn

from .app import create_app
from .config import ProxySettings


def main():
    settings = ProxySettings.from_env()

    parser = argparse.ArgumentParser(description="CORS File Proxy Server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", "-p", type=int, default=settings.port)
    args = parser.parse_args()

    settings.host = args.host
    settings.port = args.port

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
