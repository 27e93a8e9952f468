"""
Status notifications for the surrounding UI.

Fire-and-forget: a sink that raises never disturbs the pipeline.
"""

from __future__ import annotations

from typing import Callable, Optional
from loguru import logger


StatusSink = Callable[[str], None]


def log_status(message: str) -> None:
    """Default sink: write status lines to the log."""
    logger.info(f"[status] {message}")


def notify(sink: Optional[StatusSink], message: str) -> None:
    if sink is None:
        return
    try:
        sink(message)
    except Exception as e:
        logger.warning(f"Status sink raised on '{message}': {e}")
