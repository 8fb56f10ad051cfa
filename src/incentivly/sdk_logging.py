"""SDK log gating and request/response tracing.

Every module logs through ``logging.getLogger(__name__)`` under the
``incentivly`` package logger. That logger is silenced until the host
calls ``set_logging_enabled(True)``; nothing here ever raises.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

_PACKAGE_LOGGER = "incentivly"
_DISABLED_LEVEL = logging.CRITICAL + 1
_MASK = "***"

_package_logger = logging.getLogger(_PACKAGE_LOGGER)
_package_logger.addHandler(logging.NullHandler())
_package_logger.setLevel(_DISABLED_LEVEL)

_console_handler: logging.Handler | None = None

logger = logging.getLogger(__name__)


def set_logging_enabled(enabled: bool) -> None:
    """Turn SDK logging on (DEBUG) or off entirely.

    When enabled and the host has not configured logging, a console handler
    is attached so records are not lost to ``logging.lastResort``.
    """
    global _console_handler

    if enabled:
        _package_logger.setLevel(logging.DEBUG)
        if _console_handler is None and not logging.getLogger().handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                "[%(asctime)s.%(msecs)03d] %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            _package_logger.addHandler(handler)
            _console_handler = handler
        logger.info("Logging enabled")
    else:
        _package_logger.setLevel(_DISABLED_LEVEL)
        if _console_handler is not None:
            _package_logger.removeHandler(_console_handler)
            _console_handler = None


def is_logging_enabled() -> bool:
    return _package_logger.level != _DISABLED_LEVEL


def mask_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Copy ``headers`` with any authorization-like value replaced by ``***``."""
    if not headers:
        return {}
    return {
        key: _MASK if "authorization" in str(key).lower() else value
        for key, value in headers.items()
    }


def log_request(
    method: str,
    url: str,
    headers: Mapping[str, str] | None = None,
    body: Any = None,
) -> None:
    """Trace an outgoing API request."""
    logger.debug(
        "API REQUEST: %s %s headers=%s body=%s",
        method, url, mask_headers(headers), body,
    )


def log_response(
    status_code: int | None,
    headers: Mapping[str, str] | None = None,
    body: str | None = None,
    error: BaseException | None = None,
) -> None:
    """Trace an API response, or the error that replaced it."""
    if error is not None:
        logger.debug(
            "API RESPONSE: status=%s error=%s", status_code, error,
        )
        return
    logger.debug(
        "API RESPONSE: status=%s headers=%s body=%s",
        status_code, mask_headers(headers), body,
    )
