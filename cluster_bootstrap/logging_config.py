"""Logging configuration for the cluster bootstrap orchestrator.

Node tasks run concurrently, so their log lines interleave. Every record
carries a ``node`` field, filled in by ``NodeLoggerAdapter`` for per-node
work and set to ``-`` for everything else, so lines can be grouped by node.
"""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(node)s] %(message)s"
NO_NODE = "-"


class NodeContextFilter(logging.Filter):
    """Give records logged outside a node task an empty ``node`` field."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "node"):
            record.node = NO_NODE
        return True


class NodeLoggerAdapter(logging.LoggerAdapter):
    """Logger bound to one node.

    Example:
        log = get_node_logger(__name__, "cp-0")
        log.info("Installing k3s")
    """

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra["node"] = self.extra["node"]
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        verbose: If True, set level to DEBUG
    """
    if verbose:
        level = "DEBUG"

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    node_filter = NodeContextFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    # Progress goes to the rich console; stderr only gets problems unless verbose
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if not verbose else logging.DEBUG)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(node_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(node_filter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Failed to create log file handler: {e}")

    # SSH transport and API client chatter drowns out the per-node lines
    for noisy in ("paramiko", "urllib3", "kubernetes", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_node_logger(name: str, node: str) -> NodeLoggerAdapter:
    """Get a logger whose records are tagged with a node name.

    Args:
        name: Logger name (typically __name__)
        node: Name of the node the caller is working on

    Returns:
        Adapter that sets the ``node`` field on every record
    """
    return NodeLoggerAdapter(logging.getLogger(name), {"node": node})
