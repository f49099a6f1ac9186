"""
Logging setup for relgraph.

Every module logs through logging.getLogger(__name__) with structured
`extra` fields; this module decides where those records go.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import RelgraphConfig


def setup_logging(config: RelgraphConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: relgraph configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

