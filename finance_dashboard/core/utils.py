"""Shared utility functions for the Finance Dashboard project."""

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

import colorlog

LOGGER_NAMESPACE = "finance-dashboard"
TOKEN_PREVIEW_LEN = 8


def get_logger(name: str) -> logging.Logger:
    """Get a logger with a colorized format for the project.

    Handlers live on the namespace logger; module loggers named "finance-dashboard.<part>"
    propagate to it, so a file handler added at startup sees every module's records.
    """
    root = logging.getLogger(LOGGER_NAMESPACE)
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    root.propagate = False
    return logging.getLogger(name)


logger = get_logger(f"{LOGGER_NAMESPACE}.utils")


def utcnow() -> datetime:
    """Get the current UTC time as an aware datetime."""
    return datetime.now(UTC)


def parse_amount(value: object) -> Decimal:
    """Parse an upstream amount (usually a string like "-12.50") into a signed Decimal.

    Unparseable values count as zero so a single bad row never breaks a report.
    """
    if value is None or value == "":
        return Decimal(0)
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip().replace(",", ""))
        except InvalidOperation:
            logger.warning(f"Could not parse amount {value!r}, treating it as 0")
            return Decimal(0)
    if not amount.is_finite():
        logger.warning(f"Non-finite amount {value!r}, treating it as 0")
        return Decimal(0)
    return amount


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO8601 date or datetime string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Could not parse timestamp {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def preview_secret(secret: str) -> str:
    """Return a loggable preview of a token or key."""
    return f"{secret[:TOKEN_PREVIEW_LEN]}..." if secret else "<empty>"
