"""Structured Logging & Delivery Tracing.

Provides structured JSON logging, delivery context propagation
(loop, tick, user and queue item IDs) and performance timing for the
notification engine.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import DeliveryContext, generate_tick_id
from src.logging_config.performance import log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "DeliveryContext",
    "configure_logging",
    "generate_tick_id",
    "get_logger",
    "log_performance",
]
