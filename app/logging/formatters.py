from typing import Any, Dict

from app.logging.log_levels import LogLevel

SENSITIVE_KEYS = {
    "password", "new_password", "token", "access_token", "refresh_token",
    "partial_token", "secret", "two_factor_secret", "code", "otp",
    "backup_code", "backup_codes", "authorization",
}

LEVEL_PREFIXES = {
    LogLevel.ERROR: "❌ [ERROR]",
    LogLevel.WARNING: "⚠️  [WARNING]",
    LogLevel.INFO: "ℹ️  [INFO]",
    LogLevel.REQUEST: "🌐 [REQUEST]",
    LogLevel.SECURITY: "🔐 [SECURITY]",
}


def scrub(context: Dict[str, Any]) -> Dict[str, Any]:
    """Replace values of sensitive keys so secrets never reach a log sink"""
    return {
        key: "[FILTERED]" if key.lower() in SENSITIVE_KEYS else value
        for key, value in context.items()
    }


def format_message(level: LogLevel, message: str, context: Dict[str, Any]) -> str:
    """
    Render a log line as "<prefix> message | key=value key=value".

    Context values are scrubbed before rendering.
    """
    prefix = LEVEL_PREFIXES.get(level, "")
    if not context:
        return f"{prefix} {message}".strip()
    rendered = " ".join(f"{key}={value}" for key, value in scrub(context).items())
    return f"{prefix} {message} | {rendered}".strip()


def mask_identifier(identifier: str) -> str:
    """
    Mask an email or phone number for display.

    "+15555550123" -> "****0123", "jane.doe@school.org" -> "ja****@school.org"
    """
    if not identifier:
        return "****"
    if "@" in identifier:
        local, _, domain = identifier.partition("@")
        if len(local) > 2:
            return f"{local[:2]}****@{domain}"
        return f"****@{domain}"
    if len(identifier) > 4:
        return "****" + identifier[-4:]
    return "****"
