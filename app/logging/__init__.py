"""
Structured application logger with per-level formatting and secret scrubbing
"""
from app.logging.custom_logger import CustomLogger, get_logger
from app.logging.formatters import mask_identifier, scrub
from app.logging.log_levels import LogLevel

__all__ = [
    'CustomLogger',
    'LogLevel',
    'get_logger',
    'mask_identifier',
    'scrub',
]
