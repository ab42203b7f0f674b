"""
Custom logger with structured context.

Levels: info, warning, error, request, security
"""
import logging
from typing import Any, Dict

from app.logging.formatters import format_message
from app.logging.log_levels import LogLevel

LEVEL_MAP = {
    LogLevel.WARNING: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.REQUEST: logging.INFO,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.SECURITY: logging.WARNING,
}


class CustomLogger:
    """
    Thin wrapper over a stdlib logger that accepts keyword context.

    Handlers are configured once on the root logger by
    app.core.logging.setup_logging(); this class only formats.

    Usage:
        logger = CustomLogger("auth")
        logger.info("Token pair issued", user_id=123)
        logger.security("Account locked", user_id=123, attempts=5)
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _log(self, level: LogLevel, message: str, exc_info: bool = False, **context: Any) -> None:
        self.logger.log(
            LEVEL_MAP[level],
            format_message(level, message, context),
            extra={"custom_data": {"level": level.value, **context}},
            exc_info=exc_info,
        )

    def info(self, message: str, **context: Any) -> None:
        self._log(LogLevel.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(LogLevel.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = True, **context: Any) -> None:
        """
        Log a failure that requires attention.

        Example:
            try:
                ...
            except httpx.HTTPError:
                logger.error("SMS gateway rejected message", exc_info=True, channel="sms")
        """
        self._log(LogLevel.ERROR, message, exc_info=exc_info, **context)

    def request(
        self,
        message: str,
        method: str,
        path: str,
        status_code: int,
        duration: float,
        **context: Any
    ) -> None:
        self._log(
            LogLevel.REQUEST,
            message,
            method=method,
            path=path,
            status_code=status_code,
            duration=duration,
            **context
        )

    def security(self, message: str, **context: Any) -> None:
        """
        Log a security-relevant authentication event.

        Example:
            logger.security("Refresh token replay detected", user_id=42)
        """
        self._log(LogLevel.SECURITY, message, **context)


_loggers: Dict[str, CustomLogger] = {}


def get_logger(name: str) -> CustomLogger:
    """
    Return the shared CustomLogger for a name.

    Usage:
        from app.logging import get_logger
        logger = get_logger(__name__)
    """
    if name not in _loggers:
        _loggers[name] = CustomLogger(name)
    return _loggers[name]
