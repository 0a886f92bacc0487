"""
Nudge -- Web Entry Point

ASGI app for the Nudge JSON API and the daily cron trigger.

Usage:
    uvicorn app:app --host 0.0.0.0 --port 8000
    python app.py

The app imports from the nudge/ package and reads config.yaml from the
project root (environment variables supply the secrets).
"""

from __future__ import annotations

import os

import uvicorn

from nudge.api import create_app
from nudge.config import configure_logging, get_config

config = get_config(os.environ.get("NUDGE_CONFIG") or None)
configure_logging(config.logging)

app = create_app(config)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("NUDGE_HOST", "127.0.0.1"),
        port=int(os.environ.get("NUDGE_PORT", "8000")),
    )
