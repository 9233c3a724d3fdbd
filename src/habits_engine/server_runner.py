"""Helpers to launch the local HTTP service."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import uvicorn

from .config import EngineSettings, MonitorSettings
from .paths import get_db_path
from .webapp import create_app

logger = logging.getLogger(__name__)


def run_server(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    db_path: Optional[Path] = None,
    settings: Optional[EngineSettings] = None,
    monitor_settings: Optional[MonitorSettings] = None,
    open_browser: bool = False,
    log_level: str = "info",
) -> None:
    """Serve the API with the presence monitor on a background thread.

    Blocks until uvicorn shuts down; the app lifespan stops the monitor,
    which records the final UNKNOWN state.
    """
    db_path = db_path or get_db_path()
    settings = settings or EngineSettings()
    app = create_app(db_path=db_path, settings=settings, monitor_settings=monitor_settings)
    logger.info(
        "Serving on http://%s:%d (db=%s, bedtime tracking %s, inactivity %s)",
        host,
        port,
        db_path,
        "on" if settings.bedtime_tracking_enabled else "off",
        settings.inactivity_threshold,
    )

    if open_browser:
        threading.Thread(
            target=_open_docs_after_delay, args=(f"http://{host}:{port}/docs",), daemon=True
        ).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _open_docs_after_delay(url: str) -> None:
    time.sleep(1.0)
    try:
        webbrowser.open(url)
    except Exception:
        logger.exception("Failed to launch browser for %s", url)
