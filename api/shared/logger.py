"""
Centralized logging for the REViewer relay.

Uses Python's built-in logging module with one format for the whole
process, so relay, session and websocket messages line up in the
extension host's output channel.

Usage:
    from api.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Relay listening on port %d", port)
    logger.warning("Port %d in use, trying %d", port, port + 1)
    logger.error("Snapshot sink failed: %s", err)
"""

import logging
import sys

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the relay.

    Call once at startup (main.py). Subsequent calls only adjust the level.
    """
    global _configured
    resolved = getattr(logging, level.upper(), logging.INFO)
    if _configured:
        logging.getLogger().setLevel(resolved)
        return

    logging.basicConfig(
        level=resolved,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped to the relay namespace.

    Args:
        name: Module name (typically ``__name__``).
    """
    return logging.getLogger(name)
